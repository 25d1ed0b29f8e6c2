"""
Bildirim ve e-posta yan etkileri.

Başarılı bir ödünç/iade ya da giriş sonrası en iyi çaba ile çalışır: hatalar
günlüğe yazılır ve yutulur, asıl durum geçişini asla geri almaz.
"""

import asyncio
import logging
from typing import Any, Awaitable, Callable, List, Optional, Set

from circulation.database import LocalStore
from circulation.models import AuthUser, Book, Loan, Notification, NotificationType, Profile
from circulation.services.email_service import ADMIN, STUDENT, EmailMessage, EmailService

logger = logging.getLogger(__name__)


class SideEffects:
    """Ateşle-ve-unut yan etki kuyruğu."""

    def __init__(self, store: LocalStore, email_service: Optional[EmailService] = None):
        self.store = store
        self.email_service = email_service
        self._tasks: Set[asyncio.Task] = set()

    def enqueue(self, job: Callable[[], Awaitable[Any]], description: str) -> Optional[asyncio.Task]:
        """İşi arka planda çalıştır; hata çağırana asla ulaşmaz."""
        async def runner():
            try:
                await job()
            except Exception as e:
                logger.warning(f"Side effect '{description}' failed: {e}")

        try:
            loop = asyncio.get_running_loop()
        except RuntimeError:
            logger.warning(f"No running loop, dropping side effect '{description}'")
            return None
        task = loop.create_task(runner())
        self._tasks.add(task)
        task.add_done_callback(self._tasks.discard)
        return task

    async def drain(self) -> None:
        """Kuyruktaki tüm yan etkiler bitene kadar bekle."""
        while self._tasks:
            await asyncio.gather(*list(self._tasks), return_exceptions=True)

    # ------------------------- Kayıtlar ------------------------- #
    async def _notify(self, type_: NotificationType, message: str, user_id: Optional[str]) -> None:
        await self.store.insert("notifications", {
            "type": type_.value, "message": message, "user_id": user_id,
        })

    async def _send_email(self, email: EmailMessage) -> None:
        if self.email_service is None:
            return
        await self.email_service.send(email)

    async def _profile(self, user_id: str) -> Optional[Profile]:
        row = await self.store.select_one("profiles", {"id": user_id})
        return Profile.from_dict(row) if row else None

    async def record_login(self, user: AuthUser) -> None:
        """Giriş bildirimi; oturum başına tek kayıt çağıran tarafından garanti edilir."""
        try:
            await self._notify(NotificationType.LOGIN, f"Giriş algılandı: {user.email}", user.id)
        except Exception as e:
            logger.warning(f"Could not record login notification for {user.email}: {e}")

    def loan_created(self, loan: Loan, book: Book) -> None:
        async def job():
            profile = await self._profile(loan.user_id)
            name = (profile.full_name or profile.email) if profile else loan.user_id
            await self._notify(NotificationType.LOAN, f"{name}, '{book.title}' kitabını ödünç aldı.", loan.user_id)
            await self._send_email(EmailMessage(
                name=name,
                subject="Ödünç onayı",
                message=f"'{book.title}' ({book.author}) kitabını ödünç aldınız.",
                target=STUDENT,
            ))
            await self._send_email(EmailMessage(
                name="Yönetici",
                subject="Yeni ödünç",
                message=f"{name}, '{book.title}' kitabını ödünç aldı.",
                target=ADMIN,
            ))

        self.enqueue(job, f"loan #{loan.id} notifications")

    def loan_returned(self, loan: Loan, book: Book) -> None:
        async def job():
            profile = await self._profile(loan.user_id)
            name = (profile.full_name or profile.email) if profile else loan.user_id
            await self._notify(NotificationType.RETURN, f"{name}, '{book.title}' kitabını iade etti.", loan.user_id)
            await self._send_email(EmailMessage(
                name=name,
                subject="İade onayı",
                message=f"'{book.title}' kitabının iadesi alındı. Teşekkürler!",
                target=STUDENT,
            ))
            await self._send_email(EmailMessage(
                name="Yönetici",
                subject="Kitap iadesi",
                message=f"{name}, '{book.title}' kitabını iade etti.",
                target=ADMIN,
            ))

        self.enqueue(job, f"return of loan #{loan.id} notifications")


class NotificationService:
    """Bildirim akışı: listeleme ve okundu işaretleme (tek izin verilen değişiklik)."""

    def __init__(self, store: LocalStore):
        self.store = store

    async def list_for_user(self, user_id: str, unread_only: bool = False, limit: int = 20) -> List[Notification]:
        filters = {"user_id": user_id}
        if unread_only:
            filters["is_read"] = False
        rows = await self.store.select("notifications", filters=filters, order_by="created_at",
                                       descending=True, range=(0, max(limit, 1) - 1))
        return [Notification.from_dict(row) for row in rows]

    async def unread_count(self, user_id: str) -> int:
        return await self.store.count("notifications", filters={"user_id": user_id, "is_read": False})

    async def mark_read(self, notification_id: int, user_id: str) -> bool:
        rows = await self.store.update("notifications", {"is_read": True},
                                       {"id": notification_id, "user_id": user_id, "is_read": False})
        return bool(rows)

    async def mark_all_read(self, user_id: str) -> int:
        rows = await self.store.update("notifications", {"is_read": True},
                                       {"user_id": user_id, "is_read": False})
        return len(rows)
