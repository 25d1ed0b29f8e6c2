"""Authentication provider backed by the local store.

Implements password sign-up / sign-in, external-provider (OAuth style)
sign-in, session lookup, token refresh and sign-out. Passwords are hashed
with PBKDF2-SHA256 and random salts; access tokens are generated with the
``secrets`` module and stored in ``auth_sessions``.

State changes are pushed to listeners registered with
``on_auth_state_change``; delivery is asynchronous, like a hosted provider's
event stream.
"""

from __future__ import annotations

import asyncio
import hashlib
import inspect
import json
import logging
import os
import secrets
import uuid
from dataclasses import dataclass
from datetime import datetime, timedelta, timezone
from typing import Any, Callable, Dict, List, Optional, Set
from urllib.parse import urlencode

from circulation.config import settings
from circulation.database import LocalStore
from circulation.errors import (
    InvalidCredentialsError,
    SessionExpiredError,
    UnknownProviderError,
    UserAlreadyExistsError,
)
from circulation.models import AuthSession, AuthUser, Role

logger = logging.getLogger(__name__)

SIGNED_IN = "SIGNED_IN"
SIGNED_OUT = "SIGNED_OUT"
TOKEN_REFRESHED = "TOKEN_REFRESHED"
USER_UPDATED = "USER_UPDATED"

SUPPORTED_PROVIDERS = ("google", "github")

_HASH_ITERATIONS = 100_000


def _hash_password(password: str, salt: str) -> str:
    digest = hashlib.pbkdf2_hmac("sha256", password.encode("utf-8"), salt.encode("utf-8"), _HASH_ITERATIONS)
    return digest.hex()


@dataclass
class OAuthRedirect:
    """Where the caller must send the user to finish an external sign-in."""
    provider: str
    url: str
    state: str


class AuthSubscription:
    """Handle returned by ``on_auth_state_change``."""

    def __init__(self, provider: "LocalAuthProvider", callback: Callable):
        self._provider = provider
        self.callback = callback
        self.active = True

    def unsubscribe(self) -> None:
        if self.active:
            self.active = False
            self._provider._remove_listener(self)


class LocalAuthProvider:
    """Password and external-identity authentication over ``auth_users``."""

    def __init__(self, store: LocalStore, session_file: Optional[str] = None,
                 token_ttl_minutes: Optional[int] = None, redirect_url: Optional[str] = None):
        self.store = store
        self.session_file = session_file
        self.token_ttl = timedelta(minutes=token_ttl_minutes or settings.auth_token_ttl_minutes)
        self.redirect_url = redirect_url or settings.auth_redirect_url
        self._listeners: List[AuthSubscription] = []
        self._pending_oauth: Dict[str, str] = {}
        self._tasks: Set[asyncio.Task] = set()
        self._token: Optional[str] = self._load_token()

    # ------------------------- Token persistence ------------------------- #
    def _load_token(self) -> Optional[str]:
        if not self.session_file or not os.path.exists(self.session_file):
            return None
        try:
            with open(self.session_file, "r", encoding="utf-8") as f:
                return json.load(f).get("access_token")
        except (json.JSONDecodeError, OSError) as e:
            logger.warning(f"Could not read persisted auth token: {e}")
            return None

    def _save_token(self, token: Optional[str]) -> None:
        self._token = token
        if not self.session_file:
            return
        if token is None:
            if os.path.exists(self.session_file):
                os.remove(self.session_file)
            return
        directory = os.path.dirname(self.session_file)
        if directory:
            os.makedirs(directory, exist_ok=True)
        tmp_path = self.session_file + ".tmp"
        with open(tmp_path, "w", encoding="utf-8") as f:
            json.dump({"access_token": token}, f)
        os.replace(tmp_path, self.session_file)

    # ------------------------- Events ------------------------- #
    def on_auth_state_change(self, callback: Callable[[str, Optional[AuthSession]], Any]) -> AuthSubscription:
        subscription = AuthSubscription(self, callback)
        self._listeners.append(subscription)
        return subscription

    def _remove_listener(self, subscription: AuthSubscription) -> None:
        if subscription in self._listeners:
            self._listeners.remove(subscription)

    def _emit(self, event: str, session: Optional[AuthSession]) -> None:
        for subscription in list(self._listeners):
            task = asyncio.get_running_loop().create_task(self._deliver(subscription, event, session))
            self._tasks.add(task)
            task.add_done_callback(self._tasks.discard)

    @staticmethod
    async def _deliver(subscription: AuthSubscription, event: str, session: Optional[AuthSession]) -> None:
        if not subscription.active:
            return
        try:
            result = subscription.callback(event, session)
            if inspect.isawaitable(result):
                await result
        except Exception as e:
            logger.error(f"Auth listener failed on {event}: {e}")

    async def flush(self) -> None:
        """Wait until every queued auth event has been delivered."""
        while self._tasks:
            await asyncio.gather(*list(self._tasks), return_exceptions=True)

    # ------------------------- Sessions ------------------------- #
    async def _create_session(self, user: AuthUser) -> AuthSession:
        token = secrets.token_hex(32)
        expires_at = (datetime.now(timezone.utc) + self.token_ttl).isoformat()
        await self.store.insert("auth_sessions", {"token": token, "user_id": user.id, "expires_at": expires_at})
        self._save_token(token)
        return AuthSession(access_token=token, user=user, expires_at=expires_at)

    @staticmethod
    def _to_auth_user(row: Dict[str, Any]) -> AuthUser:
        metadata = row.get("metadata")
        return AuthUser(id=row["id"], email=row["email"],
                        metadata=json.loads(metadata) if metadata else {})

    async def get_session(self) -> Optional[AuthSession]:
        """Return the persisted session if its token is still valid."""
        if not self._token:
            return None
        row = await self.store.select_one("auth_sessions", {"token": self._token})
        if row is None:
            self._save_token(None)
            return None
        if datetime.fromisoformat(row["expires_at"]) <= datetime.now(timezone.utc):
            logger.info("Persisted auth session expired")
            self._save_token(None)
            return None
        user_row = await self.store.select_one("auth_users", {"id": row["user_id"]})
        if user_row is None:
            self._save_token(None)
            return None
        return AuthSession(access_token=row["token"], user=self._to_auth_user(user_row),
                           expires_at=row["expires_at"])

    async def refresh_session(self) -> AuthSession:
        """Rotate the access token and announce TOKEN_REFRESHED."""
        current = await self.get_session()
        if current is None:
            raise SessionExpiredError("Oturum bulunamadı ya da süresi doldu.")
        async with self.store.transaction() as tx:
            token = secrets.token_hex(32)
            expires_at = (datetime.now(timezone.utc) + self.token_ttl).isoformat()
            await tx.insert("auth_sessions", {"token": token, "user_id": current.user.id, "expires_at": expires_at})
            await tx.update("auth_sessions", {"expires_at": datetime.now(timezone.utc).isoformat()},
                            {"token": current.access_token})
        self._save_token(token)
        session = AuthSession(access_token=token, user=current.user, expires_at=expires_at)
        self._emit(TOKEN_REFRESHED, session)
        return session

    # ------------------------- Sign-up / sign-in ------------------------- #
    async def _create_user(self, email: str, full_name: Optional[str], provider: str,
                           password: Optional[str] = None) -> AuthUser:
        user_id = str(uuid.uuid4())
        salt = secrets.token_hex(16) if password else None
        password_hash = await asyncio.to_thread(_hash_password, password, salt) if password else None
        metadata = {"full_name": full_name} if full_name else {}
        async with self.store.transaction() as tx:
            if await tx.select_one("auth_users", {"email": email}) is not None:
                raise UserAlreadyExistsError(f"{email} zaten kayıtlı.")
            await tx.insert("auth_users", {
                "id": user_id, "email": email, "password_hash": password_hash,
                "salt": salt, "provider": provider, "metadata": metadata,
            })
            # İlk kimlik doğrulamada profil oluşturulur; rol varsayılan olarak 'user'
            await tx.insert("profiles", {
                "id": user_id, "email": email, "full_name": full_name, "role": Role.USER.value,
            })
        logger.info(f"Registered new {provider} user {email}")
        return AuthUser(id=user_id, email=email, metadata=metadata)

    async def sign_up(self, email: str, password: str, full_name: Optional[str] = None) -> AuthSession:
        user = await self._create_user(email, full_name, "email", password=password)
        session = await self._create_session(user)
        self._emit(SIGNED_IN, session)
        return session

    async def sign_in_with_password(self, email: str, password: str) -> AuthSession:
        row = await self.store.select_one("auth_users", {"email": email})
        if row is None or not row.get("password_hash"):
            raise InvalidCredentialsError("E-posta veya parola hatalı.")
        candidate = await asyncio.to_thread(_hash_password, password, row["salt"])
        if not secrets.compare_digest(candidate, row["password_hash"]):
            raise InvalidCredentialsError("E-posta veya parola hatalı.")
        session = await self._create_session(self._to_auth_user(row))
        self._emit(SIGNED_IN, session)
        return session

    async def sign_in_with_oauth(self, provider: str) -> OAuthRedirect:
        """Start an external sign-in; the result arrives later as SIGNED_IN."""
        provider = (provider or "").lower()
        if provider not in SUPPORTED_PROVIDERS:
            raise UnknownProviderError(f"Desteklenmeyen sağlayıcı: {provider}")
        state = secrets.token_urlsafe(16)
        self._pending_oauth[state] = provider
        query = urlencode({"provider": provider, "redirect_to": self.redirect_url, "state": state})
        return OAuthRedirect(provider=provider, url=f"{self.redirect_url}/auth/v1/authorize?{query}", state=state)

    async def complete_oauth(self, state: str, email: str, full_name: Optional[str] = None) -> AuthSession:
        """Finish an external sign-in started with ``sign_in_with_oauth``."""
        provider = self._pending_oauth.pop(state, None)
        if provider is None:
            raise InvalidCredentialsError("Geçersiz ya da kullanılmış OAuth durumu.")
        email = email.strip().lower()
        row = await self.store.select_one("auth_users", {"email": email})
        user = self._to_auth_user(row) if row else await self._create_user(email, full_name, provider)
        session = await self._create_session(user)
        self._emit(SIGNED_IN, session)
        return session

    async def sign_out(self) -> None:
        token = self._token
        self._save_token(None)
        if token:
            await self.store.update("auth_sessions", {"expires_at": datetime.now(timezone.utc).isoformat()},
                                    {"token": token})
        self._emit(SIGNED_OUT, None)
