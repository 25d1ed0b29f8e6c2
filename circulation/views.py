"""
Önbellekli okuma modelleri ve değişiklik akışı bağlantısı.

Her görünüm bir önbellek anahtarı altında tutulur; anahtarın ilk parçası
görünümün dayandığı koleksiyondur ("books", "loans", "profiles",
"notifications") ya da "dashboard". Hangi istemciden gelirse gelsin, bir
koleksiyondaki değişiklik o koleksiyona bağlı tüm görünümleri geçersiz kılar.
"""

import logging
import math
from collections import Counter
from dataclasses import dataclass, field
from datetime import datetime
from typing import Any, Callable, Dict, List, Optional

from circulation.config import settings
from circulation.database import LocalStore
from circulation.models import Book, BookStatus, Loan, LoanStatus, Notification, Profile
from circulation.notifications import NotificationService
from circulation.query_cache import QueryCache, QueryResult
from circulation.realtime import ChangeEvent, ChangeFeedSubscriber

logger = logging.getLogger(__name__)

# Koleksiyon -> geçersiz kılınacak önbellek önekleri
INVALIDATION_MAP: Dict[str, tuple] = {
    "books": (("books",), ("dashboard",), ("loans",)),
    "loans": (("loans",), ("dashboard",), ("profiles",)),
    "profiles": (("profiles",), ("dashboard",), ("loans",)),
    "notifications": (("notifications",),),
}

WEEKDAYS = ("Sun", "Mon", "Tue", "Wed", "Thu", "Fri", "Sat")


@dataclass
class CatalogPage:
    books: List[Book]
    total: int
    page: int
    page_size: int

    @property
    def total_pages(self) -> int:
        return max(1, math.ceil(self.total / self.page_size)) if self.page_size else 1


@dataclass
class UserLoans:
    active: List[Loan] = field(default_factory=list)
    history: List[Loan] = field(default_factory=list)


@dataclass
class DirectoryEntry:
    profile: Profile
    active_loans: int = 0


@dataclass
class Dashboard:
    total_books: int
    total_users: int
    active_loans: int
    available_books: int
    chart: List[Dict[str, Any]]
    top_books: List[Dict[str, Any]]


def weekday_chart(loan_dates) -> List[Dict[str, Any]]:
    """Ödünç tarihlerini haftanın günlerine göre say (Pazar ilk)."""
    counts = Counter()
    for value in loan_dates:
        if not value:
            continue
        try:
            day = datetime.fromisoformat(value)
        except ValueError:
            logger.debug(f"Skipping unparseable loan date {value!r}")
            continue
        counts[WEEKDAYS[(day.weekday() + 1) % 7]] += 1
    return [{"name": name, "loans": counts.get(name, 0)} for name in WEEKDAYS]


class CirculationViews:
    """Katalog, ödünçler, kullanıcı dizini, pano ve bildirim akışı."""

    def __init__(self, store: LocalStore, cache: QueryCache,
                 subscriber: Optional[ChangeFeedSubscriber] = None,
                 notifications: Optional[NotificationService] = None):
        self.store = store
        self.cache = cache
        self.subscriber = subscriber or ChangeFeedSubscriber(store.hub)
        self.notifications = notifications or NotificationService(store)
        self._unsubscribers: List[Callable[[], None]] = []

    # ------------------------- Değişiklik akışı ------------------------- #
    def start(self) -> None:
        if self._unsubscribers:
            return
        for collection in INVALIDATION_MAP:
            self._unsubscribers.append(self.subscriber.subscribe(collection, self._on_change))
        # Bağlantı yokken kaçırılan olaylar tekrar oynatılmaz; her şeyi geçersiz kıl
        self._unsubscribers.append(self.subscriber.on_reconnect(self.invalidate_all))
        logger.debug("Views subscribed to change feed")

    def stop(self) -> None:
        for unsubscribe in self._unsubscribers:
            unsubscribe()
        self._unsubscribers = []

    def _on_change(self, event: ChangeEvent) -> None:
        for prefix in INVALIDATION_MAP.get(event.table, ()):
            self.cache.invalidate(prefix)

    def invalidate_all(self) -> None:
        self.cache.invalidate(())

    # ------------------------- Katalog ------------------------- #
    async def catalog_page(self, page: int = 1, search: str = "", status: Optional[str] = None,
                           page_size: Optional[int] = None) -> QueryResult:
        page = max(1, page)
        page_size = page_size or settings.default_page_size
        search = (search or "").strip()
        if status is not None:
            status = BookStatus(status).value
        filters: Dict[str, Any] = {"is_active": True}
        if status:
            filters["status"] = status
        columns = ("title", "author", "category")

        async def fetch() -> CatalogPage:
            start = (page - 1) * page_size
            async with self.store.transaction(write=False) as tx:
                total = await tx.count("books", filters=filters, search=(columns, search))
                rows = await tx.select("books", filters=filters, search=(columns, search),
                                       order_by="title", range=(start, start + page_size - 1))
            return CatalogPage(books=[Book.from_dict(r) for r in rows], total=total,
                               page=page, page_size=page_size)

        return await self.cache.query(("books", "catalog", page, search, status, page_size), fetch)

    async def inventory_page(self, page: int = 1, search: str = "", status: Optional[str] = None,
                             page_size: Optional[int] = None) -> QueryResult:
        """Yönetici envanteri: pasif kitaplar dahil, kimliğe göre sıralı."""
        page = max(1, page)
        page_size = page_size or settings.default_page_size
        search = (search or "").strip()
        if status is not None:
            status = BookStatus(status).value
        filters = {"status": status} if status else None
        columns = ("title", "author")

        async def fetch() -> CatalogPage:
            start = (page - 1) * page_size
            async with self.store.transaction(write=False) as tx:
                total = await tx.count("books", filters=filters, search=(columns, search))
                rows = await tx.select("books", filters=filters, search=(columns, search),
                                       order_by="id", range=(start, start + page_size - 1))
            return CatalogPage(books=[Book.from_dict(r) for r in rows], total=total,
                               page=page, page_size=page_size)

        return await self.cache.query(("books", "inventory", page, search, status, page_size), fetch)

    async def featured_books(self, limit: Optional[int] = None) -> QueryResult:
        limit = limit or settings.featured_count

        async def fetch() -> List[Dict[str, Any]]:
            rows = await self.store.top_books(limit)
            return [dict(row, ranking=i + 1) for i, row in enumerate(rows)]

        return await self.cache.query(("books", "featured", limit), fetch)

    # ------------------------- Ödünçler ------------------------- #
    async def user_loans(self, user_id: str) -> QueryResult:
        async def fetch() -> UserLoans:
            rows = await self.store.select("loans", filters={"user_id": user_id}, order_by="loan_date",
                                           descending=True, embed={"book": ("books", "book_id")})
            result = UserLoans()
            for row in rows:
                loan = Loan.from_dict(row)
                (result.active if loan.is_active else result.history).append(loan)
            return result

        return await self.cache.query(("loans", "user", user_id), fetch)

    async def admin_loans(self, status: Optional[str] = None, search: str = "") -> QueryResult:
        if status is not None:
            status = LoanStatus(status).value
        term = (search or "").strip().lower()

        async def fetch() -> List[Loan]:
            filters = {"status": status} if status else None
            rows = await self.store.select("loans", filters=filters, order_by="loan_date", descending=True,
                                           embed={"book": ("books", "book_id"),
                                                  "profile": ("profiles", "user_id")})
            loans = [Loan.from_dict(row) for row in rows]
            if not term:
                return loans
            return [loan for loan in loans if self._loan_matches(loan, term)]

        return await self.cache.query(("loans", "admin", status, term), fetch)

    @staticmethod
    def _loan_matches(loan: Loan, term: str) -> bool:
        haystack = []
        if loan.book:
            haystack += [loan.book.get("title"), loan.book.get("author")]
        if loan.profile:
            haystack += [loan.profile.get("full_name"), loan.profile.get("email")]
        return any(term in (value or "").lower() for value in haystack)

    # ------------------------- Kullanıcı dizini ------------------------- #
    async def user_directory(self, search: str = "") -> QueryResult:
        search = (search or "").strip()

        async def fetch() -> List[DirectoryEntry]:
            async with self.store.transaction(write=False) as tx:
                profiles = await tx.select("profiles", search=(("full_name", "email"), search),
                                           order_by="created_at", descending=True)
                active = await tx.select("loans", filters={"status": LoanStatus.ACTIVE})
            per_user = Counter(row["user_id"] for row in active)
            return [DirectoryEntry(profile=Profile.from_dict(p), active_loans=per_user.get(p["id"], 0))
                    for p in profiles]

        return await self.cache.query(("profiles", "directory", search), fetch)

    # ------------------------- Pano ------------------------- #
    async def dashboard(self) -> QueryResult:
        async def fetch() -> Dashboard:
            async with self.store.transaction(write=False) as tx:
                total_books = await tx.count("books", filters={"is_active": True})
                total_users = await tx.count("profiles")
                active_loans = await tx.count("loans", filters={"status": LoanStatus.ACTIVE})
                loans = await tx.select("loans", order_by="loan_date", descending=True)
                top = await tx.top_books(settings.featured_count)
            return Dashboard(
                total_books=total_books,
                total_users=total_users,
                active_loans=active_loans,
                available_books=max(total_books - active_loans, 0),
                chart=weekday_chart(row["loan_date"] for row in loans),
                top_books=[dict(row, ranking=i + 1) for i, row in enumerate(top)],
            )

        # Pano her okumada tazelenir
        return await self.cache.query(("dashboard",), fetch, stale_time=0)

    # ------------------------- Bildirimler ------------------------- #
    async def notification_feed(self, user_id: str, unread_only: bool = False, limit: int = 20) -> QueryResult:
        async def fetch() -> List[Notification]:
            return await self.notifications.list_for_user(user_id, unread_only=unread_only, limit=limit)

        return await self.cache.query(("notifications", user_id, unread_only, limit), fetch)

    async def mark_notification_read(self, notification_id: int, user_id: str) -> bool:
        def on_success(changed: bool) -> None:
            if changed:
                self.cache.invalidate(("notifications", user_id))

        return await self.cache.mutate(
            lambda: self.notifications.mark_read(notification_id, user_id),
            on_success=on_success,
        )
