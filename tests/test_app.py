import asyncio
from unittest.mock import AsyncMock

import pytest

from circulation.auth import LocalAuthProvider
from circulation.config import settings
from circulation.errors import NotAuthenticatedError, ReservationError, StoreUnavailableError
from circulation.reservations import LoanOutcome, ReturnOutcome
from circulation.services import http_client
from circulation.services.email_service import EmailService
from circulation.session import SessionState

PASSWORD = "s3cret-pass"


def test_start_resolves_session_and_is_idempotent(app):
    async def scenario():
        await app.start()
        await app.start()
        await app.close()

    asyncio.run(scenario())
    assert app.session.state == SessionState.ANONYMOUS


def test_loan_requires_authenticated_user(app):
    async def scenario():
        await app.start()
        await app.catalog.add_book({"title": "Dune", "author": "Frank Herbert"})
        await app.request_loan(1)

    with pytest.raises(NotAuthenticatedError):
        asyncio.run(scenario())


def test_signed_in_user_borrows_and_returns(app):
    async def scenario():
        await app.start()
        book = await app.catalog.add_book({"title": "Dune", "author": "Frank Herbert"})
        user = await app.session.register({"email": "ada@example.com", "password": PASSWORD, "full_name": "Ada"})
        loaned = await app.request_loan(book.id)
        mine = await app.views.user_loans(user.id)
        returned = await app.return_loan(loaned.loan.id, book.id)
        mine_after = await app.views.user_loans(user.id)
        await app.close()
        types = [row["type"] for row in await app.store.select("notifications", order_by="id")]
        return loaned, returned, mine.data, mine_after.data, types

    loaned, returned, mine, mine_after, types = asyncio.run(scenario())
    assert loaned.outcome == LoanOutcome.SUCCESS
    assert returned.outcome == ReturnOutcome.RETURNED
    assert len(mine.active) == 1
    assert mine_after.active == []
    assert len(mine_after.history) == 1
    assert sorted(types) == ["LOAN", "LOGIN", "RETURN"]


def test_admin_returns_another_users_loan(make_app, store):
    student = make_app()
    admin = make_app()

    async def scenario():
        await student.start()
        await admin.start()
        book = await student.catalog.add_book({"title": "Dune", "author": "Frank Herbert"})
        await student.session.register({"email": "ada@example.com", "password": PASSWORD})
        loaned = await student.request_loan(book.id)

        staff = await LocalAuthProvider(store).sign_up("admin@example.com", PASSWORD, "Admin")
        await store.update("profiles", {"role": "admin"}, {"id": staff.user.id})
        await admin.session.login({"email": "admin@example.com", "password": PASSWORD})
        returned = await admin.return_loan(loaned.loan.id, book.id)
        await student.close()
        await admin.close()
        return loaned, returned, await store.select_one("books", {"id": book.id})

    loaned, returned, book_row = asyncio.run(scenario())
    assert returned.outcome == ReturnOutcome.RETURNED
    assert returned.loan.user_id == loaned.loan.user_id
    assert book_row["status"] == "AVAILABLE"


def test_user_cannot_return_another_users_loan(make_app):
    owner = make_app()
    other = make_app()

    async def scenario():
        await owner.start()
        await other.start()
        book = await owner.catalog.add_book({"title": "Dune", "author": "Frank Herbert"})
        await owner.session.register({"email": "ada@example.com", "password": PASSWORD})
        loaned = await owner.request_loan(book.id)
        await other.session.register({"email": "bob@example.com", "password": PASSWORD})
        try:
            await other.return_loan(loaned.loan.id, book.id)
        finally:
            await owner.close()
            await other.close()

    with pytest.raises(ReservationError):
        asyncio.run(scenario())


def test_two_clients_on_one_store_start_together(make_app):
    first = make_app()
    second = make_app()

    async def scenario():
        await first.start()
        await second.start()
        names = sorted(ch.name for ch in first.store.hub.channels)
        await first.close()
        await second.close()
        return names

    names = asyncio.run(scenario())
    assert len(names) == len(set(names)) == 8


def test_offline_reads_serve_cache_and_writes_fail(app):
    async def scenario():
        await app.start()
        await app.catalog.add_book({"title": "Dune", "author": "Frank Herbert"})
        cached = await app.views.catalog_page()

        app.set_online(False)
        offline = await app.views.catalog_page()
        with pytest.raises(StoreUnavailableError):
            await app.catalog.add_book({"title": "Emma", "author": "Jane Austen"})

        app.set_online(True)
        await app.catalog.add_book({"title": "Emma", "author": "Jane Austen"})
        online = await app.views.catalog_page()
        await app.close()
        return cached.data, offline, online.data

    cached, offline, online = asyncio.run(scenario())
    assert cached.total == 1
    assert offline.data.total == 1
    assert online.total == 2


def test_email_side_effects_use_injected_service(make_app):
    email = AsyncMock()
    app = make_app(email_service=email)

    async def scenario():
        await app.start()
        book = await app.catalog.add_book({"title": "Dune", "author": "Frank Herbert"})
        await app.session.register({"email": "ada@example.com", "password": PASSWORD})
        await app.request_loan(book.id)
        await app.close()

    asyncio.run(scenario())
    assert email.send.await_count == 2


def test_close_releases_global_http_client_used_for_email(make_app, monkeypatch):
    monkeypatch.setattr(settings, "enable_email_notifications", True)
    app = make_app()
    assert isinstance(app.email_service, EmailService)

    async def scenario():
        await app.start()
        client = await http_client.get_http_client()
        await app.close()
        return client

    client = asyncio.run(scenario())
    assert client._client.is_closed
    assert http_client._global_client is None
