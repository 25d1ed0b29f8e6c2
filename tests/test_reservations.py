import asyncio

import pytest

from circulation.database import StoreTransaction
from circulation.errors import BookNotFoundError, LoanNotFoundError, ReservationError, StoreError
from circulation.notifications import SideEffects
from circulation.reservations import LoanOutcome, ReservationService, ReturnOutcome


@pytest.fixture
def service(store, cache):
    return ReservationService(store, cache, SideEffects(store))


def _setup(store, users=("alice", "bob"), books=((42, "Dune"),)):
    async def setup():
        for user in users:
            await store.insert("profiles", {"id": user, "email": f"{user}@example.com", "full_name": user.title()})
        for book_id, title in books:
            await store.insert("books", {"id": book_id, "title": title, "author": "Frank Herbert"})
    asyncio.run(setup())


def test_request_loan_marks_book_loaned_and_creates_loan(store, service):
    _setup(store)

    async def scenario():
        result = await service.request_loan(42, "alice")
        await service.side_effects.drain()
        book = await store.select_one("books", {"id": 42})
        loans = await store.select("loans")
        notes = await store.select("notifications")
        return result, book, loans, notes

    result, book, loans, notes = asyncio.run(scenario())
    assert result.outcome == LoanOutcome.SUCCESS
    assert result.ok
    assert result.loan.book_id == 42
    assert result.loan.user_id == "alice"
    assert result.loan.loan_date
    assert book["status"] == "LOANED"
    assert len(loans) == 1
    assert loans[0]["status"] == "ACTIVE"
    assert loans[0]["return_date"] is None
    assert [n["type"] for n in notes] == ["LOAN"]
    assert "Dune" in notes[0]["message"]


def test_two_simultaneous_requests_only_one_wins(store, service):
    _setup(store)

    async def scenario():
        results = await asyncio.gather(
            service.request_loan(42, "alice"),
            service.request_loan(42, "bob"),
        )
        loans = await store.select("loans")
        book = await store.select_one("books", {"id": 42})
        return results, loans, book

    results, loans, book = asyncio.run(scenario())
    outcomes = sorted(r.outcome.value for r in results)
    assert outcomes == ["ALREADY_TAKEN", "SUCCESS"]
    assert len(loans) == 1
    assert book["status"] == "LOANED"
    winner = next(r for r in results if r.ok)
    assert loans[0]["user_id"] == winner.loan.user_id


def test_many_concurrent_requests_produce_exactly_one_loan(store, service):
    users = [f"user{i}" for i in range(12)]
    _setup(store, users=users)

    async def scenario():
        results = await asyncio.gather(*[service.request_loan(42, user) for user in users])
        active = await store.count("loans", filters={"status": "ACTIVE"})
        return results, active

    results, active = asyncio.run(scenario())
    assert sum(1 for r in results if r.outcome == LoanOutcome.SUCCESS) == 1
    assert sum(1 for r in results if r.outcome == LoanOutcome.ALREADY_TAKEN) == len(users) - 1
    assert active == 1


def test_request_for_loaned_book_is_already_taken_not_error(store, service):
    _setup(store)

    async def scenario():
        await service.request_loan(42, "alice")
        return await service.request_loan(42, "bob")

    result = asyncio.run(scenario())
    assert result.outcome == LoanOutcome.ALREADY_TAKEN
    assert result.loan is None
    assert result.book.status == "LOANED"


def test_request_for_missing_book_raises(store, service):
    _setup(store)
    with pytest.raises(BookNotFoundError):
        asyncio.run(service.request_loan(999, "alice"))


def test_request_for_inactive_book_raises(store, service):
    _setup(store)
    asyncio.run(store.update("books", {"is_active": False}, {"id": 42}))
    with pytest.raises(BookNotFoundError):
        asyncio.run(service.request_loan(42, "alice"))


def test_failed_loan_insert_rolls_back_book_status(store, service):
    _setup(store)

    # Bilinmeyen kullanıcı yabancı anahtar kısıtına takılır
    with pytest.raises(StoreError):
        asyncio.run(service.request_loan(42, "ghost"))

    book = asyncio.run(store.select_one("books", {"id": 42}))
    assert book["status"] == "AVAILABLE"
    assert asyncio.run(store.count("loans")) == 0


def test_store_error_during_insert_rolls_back(store, service, monkeypatch):
    _setup(store)
    original_insert = StoreTransaction.insert

    async def failing_insert(self, table, values):
        if table == "loans":
            raise StoreError("disk I/O error")
        return await original_insert(self, table, values)

    monkeypatch.setattr(StoreTransaction, "insert", failing_insert)
    with pytest.raises(StoreError, match="disk I/O error"):
        asyncio.run(service.request_loan(42, "alice"))
    monkeypatch.undo()

    book = asyncio.run(store.select_one("books", {"id": 42}))
    assert book["status"] == "AVAILABLE"
    # Geri alınan işlemden sonra kitap yeniden ödünç verilebilir
    assert asyncio.run(service.request_loan(42, "alice")).ok


def test_return_loan_scenario(store, service, cache):
    _setup(store)

    async def scenario():
        await store.update("books", {"status": "LOANED"}, {"id": 42})
        await store.insert("loans", {"id": 7, "book_id": 42, "user_id": "alice",
                                     "loan_date": "2024-03-01T10:00:00+00:00"})

        async def catalog():
            return await store.select_one("books", {"id": 42})

        before = await cache.query(("books", "catalog", 42), catalog)
        result = await service.return_loan(7, 42, "alice")
        after = await cache.query(("books", "catalog", 42), catalog)
        loan = await store.select_one("loans", {"id": 7})
        await service.side_effects.drain()
        return before, result, after, loan

    before, result, after, loan = asyncio.run(scenario())
    assert before.data["status"] == "LOANED"
    assert result.outcome == ReturnOutcome.RETURNED
    assert loan["status"] == "RETURNED"
    assert loan["return_date"] is not None
    assert after.data["status"] == "AVAILABLE"


def test_return_is_idempotent(store, service):
    _setup(store)

    async def scenario():
        loaned = await service.request_loan(42, "alice")
        first = await service.return_loan(loaned.loan.id, 42, "alice")
        # Bu arada başka biri kitabı ödünç alır
        await service.request_loan(42, "bob")
        second = await service.return_loan(loaned.loan.id, 42, "alice")
        book = await store.select_one("books", {"id": 42})
        return first, second, book

    first, second, book = asyncio.run(scenario())
    assert first.outcome == ReturnOutcome.RETURNED
    assert second.outcome == ReturnOutcome.ALREADY_RETURNED
    # İkinci iade kitabın durumuna dokunmaz
    assert book["status"] == "LOANED"


def test_return_unknown_loan_raises(store, service):
    _setup(store)
    with pytest.raises(LoanNotFoundError):
        asyncio.run(service.return_loan(123, 42, "alice"))


def test_return_with_mismatched_book_rolls_back(store, service):
    _setup(store, books=((42, "Dune"), (43, "Emma")))

    async def scenario():
        loaned = await service.request_loan(42, "alice")
        with pytest.raises(ReservationError):
            await service.return_loan(loaned.loan.id, 43, "alice")
        loan = await store.select_one("loans", {"id": loaned.loan.id})
        book = await store.select_one("books", {"id": 42})
        return loan, book

    loan, book = asyncio.run(scenario())
    assert loan["status"] == "ACTIVE"
    assert loan["return_date"] is None
    assert book["status"] == "LOANED"


def test_loan_invalidates_cached_views(store, service, cache):
    _setup(store)

    async def scenario():
        async def count_available():
            return await store.count("books", filters={"status": "AVAILABLE"})

        before = await cache.query(("books", "available"), count_available)
        await service.request_loan(42, "alice")
        after = await cache.query(("books", "available"), count_available)
        return before.data, after.data

    assert asyncio.run(scenario()) == (1, 0)


def test_at_most_one_active_loan_per_book_over_many_operations(store, service):
    _setup(store, users=("alice", "bob", "carol"), books=((1, "A"), (2, "B")))

    async def scenario():
        for _ in range(3):
            results = await asyncio.gather(*[
                service.request_loan(book_id, user)
                for book_id in (1, 2) for user in ("alice", "bob", "carol")
            ])
            for r in results:
                if r.ok:
                    await service.return_loan(r.loan.id, r.loan.book_id, r.loan.user_id)
        rows = await store.select("loans")
        return rows

    rows = asyncio.run(scenario())
    assert len(rows) == 6
    assert all(row["status"] == "RETURNED" for row in rows)


def test_reconcile_repairs_foreign_writes(store, service):
    _setup(store, books=((1, "Orphan"), (2, "Hidden loan"), (3, "Consistent")))

    async def scenario():
        # Tutarsız satırlar: aktif ödüncü olmayan LOANED kitap, LOANED olmayan aktif ödünç
        await store.update("books", {"status": "LOANED"}, {"id": 1})
        await store.insert("loans", {"book_id": 2, "user_id": "alice", "loan_date": "2024-01-01T00:00:00+00:00"})
        await service.request_loan(3, "bob")
        report = await service.reconcile()
        books = {row["id"]: row["status"] for row in await store.select("books")}
        second = await service.reconcile()
        return report, books, second

    report, books, second = asyncio.run(scenario())
    assert report.released == [1]
    assert report.marked_loaned == [2]
    assert report.repaired == [1, 2]
    assert books == {1: "AVAILABLE", 2: "LOANED", 3: "LOANED"}
    assert second.repaired == []
