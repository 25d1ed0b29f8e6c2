"""Katalog yönetimi: kitap ekleme, düzenleme ve pasifleştirme (yumuşak silme)."""

import logging
from typing import Iterable, List, Optional, Union

from circulation.database import LocalStore
from circulation.errors import BookNotFoundError, ReservationError
from circulation.models import Book, BookInput, BookStatus, BookUpdate
from circulation.query_cache import QueryCache

logger = logging.getLogger(__name__)

CATALOG_KEYS = (("books",), ("dashboard",))

# seed komutu için örnek katalog
SAMPLE_BOOKS = [
    {"title": "Suç ve Ceza", "author": "Fyodor Dostoyevski", "category": "Roman"},
    {"title": "Kürk Mantolu Madonna", "author": "Sabahattin Ali", "category": "Roman"},
    {"title": "İnce Memed", "author": "Yaşar Kemal", "category": "Roman"},
    {"title": "Nutuk", "author": "Mustafa Kemal Atatürk", "category": "Tarih"},
    {"title": "Kozmos", "author": "Carl Sagan", "category": "Bilim"},
    {"title": "Zamanın Kısa Tarihi", "author": "Stephen Hawking", "category": "Bilim"},
    {"title": "1984", "author": "George Orwell", "category": "Distopya"},
    {"title": "Hayvan Çiftliği", "author": "George Orwell", "category": "Distopya"},
    {"title": "Simyacı", "author": "Paulo Coelho", "category": "Roman"},
    {"title": "Sapiens", "author": "Yuval Noah Harari", "category": "Tarih"},
    {"title": "Clean Code", "author": "Robert C. Martin", "category": "Yazılım"},
    {"title": "The Pragmatic Programmer", "author": "Andrew Hunt", "category": "Yazılım"},
]


class CatalogService:
    """Kitap kayıtlarının yönetimi. Durum (AVAILABLE/LOANED) burada değiştirilmez."""

    def __init__(self, store: LocalStore, cache: Optional[QueryCache] = None):
        self.store = store
        self.cache = cache

    def _invalidate(self) -> None:
        if self.cache is None:
            return
        for prefix in CATALOG_KEYS:
            self.cache.invalidate(prefix)

    async def add_book(self, data: Union[BookInput, dict]) -> Book:
        book_input = data if isinstance(data, BookInput) else BookInput(**data)
        row = await self.store.insert("books", {
            "title": book_input.title.strip(),
            "author": book_input.author.strip(),
            "category": book_input.category,
            "status": BookStatus.AVAILABLE,
            "is_active": True,
        })
        self._invalidate()
        logger.info(f"Book #{row['id']} added: {row['title']}")
        return Book.from_dict(row)

    async def update_book(self, book_id: int, data: Union[BookUpdate, dict]) -> Book:
        update = data if isinstance(data, BookUpdate) else BookUpdate(**data)
        values = update.model_dump(exclude_unset=True)
        if not values:
            row = await self.store.select_one("books", {"id": book_id})
            if row is None:
                raise BookNotFoundError(f"Kitap bulunamadı: #{book_id}")
            return Book.from_dict(row)
        rows = await self.store.update("books", values, {"id": book_id})
        if not rows:
            raise BookNotFoundError(f"Kitap bulunamadı: #{book_id}")
        self._invalidate()
        return Book.from_dict(rows[0])

    async def deactivate_book(self, book_id: int) -> Book:
        """Kitabı katalogdan kaldır; ödünçteyken reddedilir."""
        async with self.store.transaction() as tx:
            rows = await tx.update("books", {"is_active": False},
                                   {"id": book_id, "status": BookStatus.AVAILABLE})
            if not rows:
                existing = await tx.select_one("books", {"id": book_id})
                if existing is None:
                    raise BookNotFoundError(f"Kitap bulunamadı: #{book_id}")
                raise ReservationError(f"Kitap #{book_id} ödünçte, pasifleştirilemez.")
        self._invalidate()
        logger.info(f"Book #{book_id} deactivated")
        return Book.from_dict(rows[0])

    async def get_book(self, book_id: int) -> Optional[Book]:
        row = await self.store.select_one("books", {"id": book_id})
        return Book.from_dict(row) if row else None

    async def seed(self, books: Optional[Iterable[dict]] = None) -> List[Book]:
        """Örnek kitapları ekle; aynı başlık ve yazar zaten varsa atla."""
        added: List[Book] = []
        for item in (books if books is not None else SAMPLE_BOOKS):
            book_input = BookInput(**item)
            existing = await self.store.select_one(
                "books", {"title": book_input.title, "author": book_input.author}
            )
            if existing is not None:
                continue
            added.append(await self.add_book(book_input))
        logger.info(f"Seeded {len(added)} books")
        return added
