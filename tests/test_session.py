import asyncio

import pytest
from pydantic import ValidationError

from circulation.auth import LocalAuthProvider
from circulation.errors import InvalidCredentialsError, StoreError, UnknownProviderError
from circulation.models import Credentials
from circulation.notifications import SideEffects
from circulation.session import GuardDecision, SessionState, SessionStore, SnapshotStorage

PASSWORD = "s3cret-pass"


@pytest.fixture
def paths(tmp_path):
    return {
        "session": str(tmp_path / "session.json"),
        "snapshot": str(tmp_path / "storage.json"),
    }


def make_session(store, paths):
    auth = LocalAuthProvider(store, session_file=paths["session"])
    return SessionStore(auth, store, SnapshotStorage(paths["snapshot"]), side_effects=SideEffects(store))


def register_user(store, email="ada@example.com", name="Ada Lovelace"):
    """Dinleyicisi olmayan ayrı bir sağlayıcı ile kullanıcı oluştur."""
    session = asyncio.run(LocalAuthProvider(store).sign_up(email, PASSWORD, name))
    return session.user


async def settle(session_store):
    await session_store.auth.flush()
    if session_store.side_effects is not None:
        await session_store.side_effects.drain()


def test_initialize_without_session_is_anonymous(store, paths):
    session = make_session(store, paths)
    assert session.state == SessionState.INITIALIZING

    asyncio.run(session.initialize())

    assert session.state == SessionState.ANONYMOUS
    assert session.user is None
    assert not session.is_authenticated


def test_initialize_is_idempotent(store, paths):
    session = make_session(store, paths)
    calls = []
    original = session.auth.get_session

    async def counting_get_session():
        calls.append(1)
        return await original()

    session.auth.get_session = counting_get_session

    async def scenario():
        first = await session.initialize()
        second = await session.initialize()
        return first, second

    first, second = asyncio.run(scenario())
    assert first is second
    assert len(calls) == 1


def test_cancel_handle_detaches_listener(store, paths):
    session = make_session(store, paths)

    async def scenario():
        cancel = await session.initialize()
        cancel()
        await session.auth.sign_up("ada@example.com", PASSWORD, "Ada")
        await settle(session)

    asyncio.run(scenario())
    # Olay dinlenmediği için oturum anonim kalır
    assert session.state == SessionState.ANONYMOUS


def test_login_resolves_profile(store, paths):
    register_user(store)
    session = make_session(store, paths)

    async def scenario():
        await session.initialize()
        user = await session.login({"email": "ADA@example.com", "password": PASSWORD})
        await settle(session)
        return user

    user = asyncio.run(scenario())
    assert user.email == "ada@example.com"
    assert user.name == "Ada Lovelace"
    assert user.role == "user"
    assert session.state == SessionState.AUTHENTICATED
    snapshot = SnapshotStorage(paths["snapshot"]).get("auth-storage")
    assert snapshot == {"user": user.to_dict(), "is_authenticated": True, "is_admin": False}
    assert "password" not in str(snapshot)


def test_admin_role_comes_from_profile(store, paths):
    register_user(store)
    asyncio.run(store.update("profiles", {"role": "admin"}, {"email": "ada@example.com"}))
    session = make_session(store, paths)

    async def scenario():
        await session.initialize()
        return await session.login(Credentials(email="ada@example.com", password=PASSWORD))

    user = asyncio.run(scenario())
    assert user.is_admin
    assert session.is_admin


def test_invalid_credentials_propagate(store, paths):
    register_user(store)
    session = make_session(store, paths)

    async def scenario():
        await session.initialize()
        await session.login({"email": "ada@example.com", "password": "wrong-password"})

    with pytest.raises(InvalidCredentialsError):
        asyncio.run(scenario())
    assert session.state == SessionState.ANONYMOUS


def test_credentials_are_validated():
    with pytest.raises(ValidationError):
        Credentials(email="not-an-email", password=PASSWORD)
    with pytest.raises(ValidationError):
        Credentials(email="ada@example.com", password="123")


def test_register_creates_user_profile(store, paths):
    session = make_session(store, paths)

    async def scenario():
        await session.initialize()
        user = await session.register({"email": "grace@example.com", "password": PASSWORD,
                                       "full_name": "Grace Hopper"})
        await settle(session)
        profile = await store.select_one("profiles", {"id": user.id})
        return user, profile

    user, profile = asyncio.run(scenario())
    assert user.name == "Grace Hopper"
    assert profile["role"] == "user"
    assert profile["email"] == "grace@example.com"


def test_exactly_one_login_notification_per_session(store, paths):
    register_user(store)
    session = make_session(store, paths)

    async def login_notes():
        return await store.count("notifications", filters={"type": "LOGIN"})

    async def scenario():
        await session.initialize()
        await session.login({"email": "ada@example.com", "password": PASSWORD})
        await settle(session)
        # Token yenileme ve tekrar giriş aynı oturumda yeni bildirim üretmez
        await session.auth.refresh_session()
        await session.login({"email": "ada@example.com", "password": PASSWORD})
        await settle(session)
        same_session = await login_notes()

        await session.logout()
        await session.login({"email": "ada@example.com", "password": PASSWORD})
        await settle(session)
        return same_session, await login_notes()

    same_session, after_relogin = asyncio.run(scenario())
    assert same_session == 1
    assert after_relogin == 2


def test_restore_from_snapshot_without_anonymous_flash(store, paths):
    first = make_session(store, paths)

    async def sign_up():
        await first.initialize()
        await first.register({"email": "ada@example.com", "password": PASSWORD, "full_name": "Ada"})
        await settle(first)

    asyncio.run(sign_up())

    # Süreç yeniden başlar: aynı anlık görüntü ve kalıcı token
    restarted = make_session(store, paths)
    seen = []
    restarted.on_change(lambda s: seen.append((s.state, s.user.email if s.user else None)))

    async def scenario():
        await restarted.initialize()
        await settle(restarted)

    asyncio.run(scenario())
    assert seen[0] == (SessionState.INITIALIZING, "ada@example.com")
    assert seen[-1] == (SessionState.AUTHENTICATED, "ada@example.com")
    assert all(state != SessionState.ANONYMOUS for state, _ in seen)
    assert all(email is not None for _, email in seen)
    assert restarted.restored_from_snapshot


def test_restore_rereads_profile_changed_since_snapshot(store, paths):
    first = make_session(store, paths)

    async def sign_up():
        await first.initialize()
        user = await first.register({"email": "ada@example.com", "password": PASSWORD, "full_name": "Ada"})
        await settle(first)
        await store.update("profiles", {"role": "admin", "full_name": "Ada L."}, {"id": user.id})
        return user

    user = asyncio.run(sign_up())
    assert not first.is_admin

    restarted = make_session(store, paths)

    async def scenario():
        await restarted.initialize()
        await settle(restarted)

    asyncio.run(scenario())
    assert restarted.state == SessionState.AUTHENTICATED
    assert restarted.user.id == user.id
    assert restarted.user.name == "Ada L."
    assert restarted.is_admin


def test_restore_drops_role_revoked_since_snapshot(store, paths):
    first = make_session(store, paths)

    async def sign_up():
        await first.initialize()
        user = await first.register({"email": "root@example.com", "password": PASSWORD})
        await store.update("profiles", {"role": "admin"}, {"id": user.id})
        await first.fetch_profile((await first.auth.get_session()).user)
        await settle(first)
        await store.update("profiles", {"role": "user"}, {"id": user.id})

    asyncio.run(sign_up())
    assert first.is_admin

    restarted = make_session(store, paths)
    asyncio.run(restarted.initialize())
    assert restarted.restored_from_snapshot
    assert not restarted.is_admin


def test_guard_waits_while_initializing(store, paths):
    session = make_session(store, paths)
    assert session.guard(["admin"]).decision == GuardDecision.LOADING


def test_guard_decisions(store, paths):
    register_user(store)
    session = make_session(store, paths)
    asyncio.run(session.initialize())

    anonymous = session.guard(["user"])
    assert anonymous.decision == GuardDecision.REDIRECT_LOGIN
    assert anonymous.redirect_to == "/login"

    asyncio.run(session.login({"email": "ada@example.com", "password": PASSWORD}))

    assert session.guard(["user"]).decision == GuardDecision.ALLOW
    assert session.guard().decision == GuardDecision.ALLOW
    wrong_role = session.guard(["admin"])
    assert wrong_role.decision == GuardDecision.REDIRECT_HOME
    assert wrong_role.redirect_to == "/user/catalog"


def test_logout_clears_local_state_before_remote_sign_out(store, paths):
    register_user(store)
    session = make_session(store, paths)
    observed = {}

    async def failing_sign_out():
        observed["state"] = session.state
        observed["snapshot"] = session.storage.get("auth-storage")
        raise ConnectionError("network down")

    async def scenario():
        await session.initialize()
        await session.login({"email": "ada@example.com", "password": PASSWORD})
        session.auth.sign_out = failing_sign_out
        await session.logout()

    asyncio.run(scenario())
    assert observed == {"state": SessionState.ANONYMOUS, "snapshot": None}
    assert session.user is None
    assert session.guard().decision == GuardDecision.REDIRECT_LOGIN


def test_remote_sign_out_event_returns_to_anonymous(store, paths):
    register_user(store)
    session = make_session(store, paths)

    async def scenario():
        await session.initialize()
        await session.login({"email": "ada@example.com", "password": PASSWORD})
        await session.auth.sign_out()
        await settle(session)

    asyncio.run(scenario())
    assert session.state == SessionState.ANONYMOUS


def test_profile_lookup_failure_uses_fallback_identity(store, paths):
    register_user(store)
    session = make_session(store, paths)

    class BrokenStore:
        async def select_one(self, table, filters):
            raise StoreError("profiles table unavailable")

    async def scenario():
        await session.initialize()
        session.store = BrokenStore()
        return await session.login({"email": "ada@example.com", "password": PASSWORD})

    user = asyncio.run(scenario())
    assert user.name == "ada@example.com"
    assert user.role == "user"
    assert session.state == SessionState.AUTHENTICATED


def test_session_lookup_failure_clears_snapshot(store, paths):
    storage = SnapshotStorage(paths["snapshot"])
    storage.set("auth-storage", {"user": {"id": "x", "email": "x@example.com", "name": "X", "role": "user"},
                                 "is_authenticated": True, "is_admin": False})
    session = make_session(store, paths)

    async def broken_get_session():
        raise StoreError("backend unreachable")

    session.auth.get_session = broken_get_session
    asyncio.run(session.initialize())

    assert session.state == SessionState.ANONYMOUS
    assert storage.get("auth-storage") is None


def test_external_provider_sign_in(store, paths):
    session = make_session(store, paths)

    async def scenario():
        await session.initialize()
        redirect = await session.login_with_external_provider("GitHub")
        await session.auth.complete_oauth(redirect.state, "Linus@Example.com", "Linus")
        await settle(session)
        return redirect

    redirect = asyncio.run(scenario())
    assert redirect.provider == "github"
    assert "state=" in redirect.url
    assert session.state == SessionState.AUTHENTICATED
    assert session.user.email == "linus@example.com"
    assert asyncio.run(store.count("notifications", filters={"type": "LOGIN"})) == 1


def test_unknown_external_provider_is_rejected(store, paths):
    session = make_session(store, paths)
    with pytest.raises(UnknownProviderError):
        asyncio.run(session.login_with_external_provider("myspace"))
