"""
Rezervasyon servisi: ödünç alma ve iade.

Ödünç alma, kitap satırı üzerinde tek bir koşullu güncelleme
(AVAILABLE -> LOANED) ile karara bağlanır; aynı kitap için yarışan isteklerden
yalnızca ilk commit edilen kazanır. Kitap güncellemesi ve ödünç kaydı tek bir
depo işleminde yapılır, bu yüzden yarım kalmış bir ödünç görülmez.
"""

import logging
from dataclasses import dataclass
from enum import Enum
from typing import List, Optional

from circulation.database import LocalStore, utc_now
from circulation.errors import BookNotFoundError, LoanNotFoundError, ReservationError
from circulation.models import Book, BookStatus, Loan, LoanStatus
from circulation.notifications import SideEffects
from circulation.query_cache import QueryCache

logger = logging.getLogger(__name__)

# Ödünç/iade sonrası geçersiz kılınan önbellek önekleri
LOAN_KEYS = (("books",), ("loans",), ("profiles",), ("dashboard",))
RETURN_KEYS = (("loans",), ("books",), ("profiles",), ("dashboard",))


class LoanOutcome(str, Enum):
    SUCCESS = "SUCCESS"
    ALREADY_TAKEN = "ALREADY_TAKEN"


class ReturnOutcome(str, Enum):
    RETURNED = "RETURNED"
    ALREADY_RETURNED = "ALREADY_RETURNED"


@dataclass
class LoanResult:
    outcome: LoanOutcome
    loan: Optional[Loan] = None
    book: Optional[Book] = None

    @property
    def ok(self) -> bool:
        return self.outcome == LoanOutcome.SUCCESS


@dataclass
class ReturnResult:
    outcome: ReturnOutcome
    loan: Optional[Loan] = None
    book: Optional[Book] = None


@dataclass
class ReconcileReport:
    """Onarılan kitap kimlikleri."""
    released: List[int]
    marked_loaned: List[int]

    @property
    def repaired(self) -> List[int]:
        return sorted(self.released + self.marked_loaned)


class ReservationService:
    """Ödünç verme ve iade işlemlerini yürüten servis."""

    def __init__(self, store: LocalStore, cache: QueryCache, side_effects: Optional[SideEffects] = None):
        self.store = store
        self.cache = cache
        self.side_effects = side_effects

    def _invalidate(self, prefixes) -> None:
        for prefix in prefixes:
            self.cache.invalidate(prefix)

    # ------------------------- Ödünç ------------------------- #
    async def _request_loan(self, book_id: int, user_id: str) -> LoanResult:
        async with self.store.transaction() as tx:
            rows = await tx.update(
                "books",
                {"status": BookStatus.LOANED},
                {"id": book_id, "status": BookStatus.AVAILABLE, "is_active": True},
            )
            if not rows:
                existing = await tx.select_one("books", {"id": book_id})
                if existing is None or not existing.get("is_active"):
                    raise BookNotFoundError(f"Kitap bulunamadı: #{book_id}")
                logger.info(f"Book #{book_id} already taken, request by {user_id} rejected")
                return LoanResult(LoanOutcome.ALREADY_TAKEN, book=Book.from_dict(existing))
            # Ekleme başarısız olursa kitap güncellemesi de geri alınır
            loan_row = await tx.insert("loans", {
                "book_id": book_id,
                "user_id": user_id,
                "status": LoanStatus.ACTIVE,
                "loan_date": utc_now(),
            })
        logger.info(f"Loan #{loan_row['id']} created: book #{book_id} -> {user_id}")
        return LoanResult(LoanOutcome.SUCCESS, loan=Loan.from_dict(loan_row), book=Book.from_dict(rows[0]))

    async def request_loan(self, book_id: int, user_id: str) -> LoanResult:
        """Kitabı kullanıcıya ödünç ver.

        Kitap başka biri tarafından alınmışsa ALREADY_TAKEN döner (hata değil);
        kitap yoksa ya da pasifse BookNotFoundError fırlatılır. Depo hataları
        işlem geri alındıktan sonra StoreError olarak iletilir.
        """
        async def on_success(result: LoanResult) -> None:
            if not result.ok:
                return
            self._invalidate(LOAN_KEYS)
            if self.side_effects is not None:
                self.side_effects.loan_created(result.loan, result.book)

        return await self.cache.mutate(
            lambda: self._request_loan(book_id, user_id),
            on_success=on_success,
        )

    # ------------------------- İade ------------------------- #
    async def _return_loan(self, loan_id: int, book_id: int, user_id: str) -> ReturnResult:
        async with self.store.transaction() as tx:
            loans = await tx.update(
                "loans",
                {"status": LoanStatus.RETURNED, "return_date": utc_now()},
                {"id": loan_id, "status": LoanStatus.ACTIVE},
            )
            if not loans:
                existing = await tx.select_one("loans", {"id": loan_id})
                if existing is None:
                    raise LoanNotFoundError(f"Ödünç kaydı bulunamadı: #{loan_id}")
                return ReturnResult(ReturnOutcome.ALREADY_RETURNED, loan=Loan.from_dict(existing))
            loan = Loan.from_dict(loans[0])
            if loan.book_id != book_id or loan.user_id != user_id:
                raise ReservationError(
                    f"Ödünç #{loan_id} kitap #{book_id} / kullanıcı {user_id} ile eşleşmiyor."
                )
            books = await tx.update(
                "books",
                {"status": BookStatus.AVAILABLE},
                {"id": book_id, "status": BookStatus.LOANED},
            )
            book_row = books[0] if books else await tx.select_one("books", {"id": book_id})
        if not books:
            logger.warning(f"Book #{book_id} was not LOANED while returning loan #{loan_id}")
        logger.info(f"Loan #{loan_id} returned by {user_id}")
        return ReturnResult(ReturnOutcome.RETURNED, loan=loan,
                            book=Book.from_dict(book_row) if book_row else None)

    async def return_loan(self, loan_id: int, book_id: int, user_id: str) -> ReturnResult:
        """Ödünç kaydını kapat ve kitabı rafa geri koy. Tekrar çağrılması zararsızdır."""
        async def on_success(result: ReturnResult) -> None:
            if result.outcome != ReturnOutcome.RETURNED:
                return
            self._invalidate(RETURN_KEYS)
            if self.side_effects is not None and result.book is not None:
                self.side_effects.loan_returned(result.loan, result.book)

        return await self.cache.mutate(
            lambda: self._return_loan(loan_id, book_id, user_id),
            on_success=on_success,
        )

    # ------------------------- Uzlaştırma ------------------------- #
    async def reconcile(self) -> ReconcileReport:
        """Kitap durumlarını aktif ödünç kayıtlarıyla eşitle."""
        async with self.store.transaction() as tx:
            active = await tx.select("loans", filters={"status": LoanStatus.ACTIVE})
            active_book_ids = sorted({row["book_id"] for row in active})
            loaned = await tx.select("books", filters={"status": BookStatus.LOANED})
            orphaned = [row["id"] for row in loaned if row["id"] not in active_book_ids]

            released: List[int] = []
            if orphaned:
                rows = await tx.update("books", {"status": BookStatus.AVAILABLE},
                                       {"id": orphaned, "status": BookStatus.LOANED})
                released = [row["id"] for row in rows]

            marked: List[int] = []
            if active_book_ids:
                rows = await tx.update("books", {"status": BookStatus.LOANED},
                                       {"id": active_book_ids, "status": BookStatus.AVAILABLE})
                marked = [row["id"] for row in rows]

        report = ReconcileReport(released=sorted(released), marked_loaned=sorted(marked))
        if report.repaired:
            logger.warning(f"Reconciled book statuses: released={report.released} loaned={report.marked_loaned}")
            self._invalidate(LOAN_KEYS)
        else:
            logger.info("Reconcile found no inconsistencies")
        return report
