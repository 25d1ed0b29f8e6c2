"""
Uygulama kök nesnesi: tüm bileşenleri oluşturur ve birbirine enjekte eder.

Birden fazla istemciyi (ör. iki tarayıcı sekmesi) taklit etmek için aynı
LocalStore birden çok CirculationApp örneğine verilebilir; her biri kendi
önbelleğine, oturumuna ve değişiklik akışı aboneliklerine sahip olur.
"""

import logging
from typing import Optional

from circulation.auth import LocalAuthProvider
from circulation.catalog import CatalogService
from circulation.config import settings
from circulation.database import LocalStore
from circulation.errors import NotAuthenticatedError
from circulation.notifications import NotificationService, SideEffects
from circulation.query_cache import QueryCache
from circulation.realtime import ChangeFeedSubscriber
from circulation.reservations import LoanResult, ReservationService, ReturnResult
from circulation.services.email_service import EmailService
from circulation.services.http_client import OptimizedHTTPClient, cleanup_http_client
from circulation.session import SessionStore, SnapshotStorage
from circulation.views import CirculationViews

logger = logging.getLogger(__name__)


class CirculationApp:
    """Bir istemci sürecinin tüm çekirdek bileşenleri."""

    def __init__(
        self,
        db_file: Optional[str] = None,
        store: Optional[LocalStore] = None,
        snapshot_file: Optional[str] = None,
        session_file: Optional[str] = None,
        cache: Optional[QueryCache] = None,
        email_service: Optional[EmailService] = None,
        http_client: Optional[OptimizedHTTPClient] = None,
    ):
        self.store = store or LocalStore(db_file=db_file)
        self.cache = cache or QueryCache()
        # Enjekte edilmiş istemci yoksa e-posta servisi global istemciyi kullanır
        self._uses_global_client = False
        if email_service is None and settings.enable_email_notifications:
            email_service = EmailService(http_client=http_client)
            self._uses_global_client = http_client is None
        self.email_service = email_service
        self.side_effects = SideEffects(self.store, email_service=self.email_service)
        self.auth = LocalAuthProvider(self.store, session_file=session_file)
        self.session = SessionStore(self.auth, self.store, SnapshotStorage(snapshot_file),
                                    side_effects=self.side_effects)
        self.subscriber = ChangeFeedSubscriber(self.store.hub)
        self.notifications = NotificationService(self.store)
        self.catalog = CatalogService(self.store, self.cache)
        self.reservations = ReservationService(self.store, self.cache, self.side_effects)
        self.views = CirculationViews(self.store, self.cache, self.subscriber, self.notifications)
        self._http_client = http_client
        self._started = False

    async def start(self) -> None:
        """Değişiklik akışını bağla ve oturumu başlat."""
        if self._started:
            return
        self._started = True
        self.views.start()
        await self.session.initialize()
        logger.info(f"{settings.app_name} started (session: {self.session.state.value})")

    async def drain(self) -> None:
        """Bekleyen tüm olay, getirme ve yan etkileri tamamla."""
        for _ in range(5):
            await self.auth.flush()
            await self.store.hub.flush()
            await self.side_effects.drain()
            await self.cache.drain()
            if not (self.auth._tasks or self.store.hub._pending
                    or self.side_effects._tasks or self.cache._tasks):
                break

    async def close(self) -> None:
        await self.drain()
        self.views.stop()
        self.subscriber.close()
        if self.session._cancel is not None:
            self.session._cancel()
        if self._http_client is not None:
            await self._http_client.close()
        elif self._uses_global_client:
            await cleanup_http_client()
        self._started = False

    def set_online(self, online: bool) -> None:
        """Bağlantı durumunu depoya, akışa ve önbelleğe yay."""
        self.store.set_online(online)
        self.cache.set_online(online)

    def _current_user_id(self) -> str:
        if not self.session.is_authenticated:
            raise NotAuthenticatedError("Bu işlem için giriş yapılmalı.")
        return self.session.user.id

    async def request_loan(self, book_id: int) -> LoanResult:
        return await self.reservations.request_loan(book_id, self._current_user_id())

    async def return_loan(self, loan_id: int, book_id: int) -> ReturnResult:
        """İadeyi kaydet. Yönetici başkasının ödüncünü de kapatabilir."""
        user_id = self._current_user_id()
        if self.session.is_admin:
            row = await self.store.select_one("loans", {"id": loan_id})
            if row is not None:
                user_id = row["user_id"]
        return await self.reservations.return_loan(loan_id, book_id, user_id)
