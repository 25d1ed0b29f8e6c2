"""
Yerel arka uç deposu (SQLite).

Çekirdeğin tükettiği depo yüzeyini sağlar: filtreli seçim, sayma, ekleme,
etkilenen satırları döndüren (koşullu) güncelleme ve işlemler (transaction).
Commit edilen her yazma, değişiklik akışına (RealtimeHub) yayımlanır; böylece
aynı depoyu paylaşan diğer istemciler görünümlerini yenileyebilir.
"""

import asyncio
import json
import logging
import os
import sqlite3
from contextlib import asynccontextmanager
from datetime import datetime, timezone
from enum import Enum
from typing import Any, Dict, Iterable, List, Optional, Sequence, Tuple

from circulation.config import settings
from circulation.errors import StoreError, StoreUnavailableError
from circulation.realtime import ChangeEvent, RealtimeHub, INSERT, UPDATE

logger = logging.getLogger(__name__)

# Değişiklik akışına açık tablolar
WATCHED_TABLES = ("books", "loans", "profiles", "notifications")

SCHEMA = """
CREATE TABLE IF NOT EXISTS profiles (
    id TEXT PRIMARY KEY,
    email TEXT NOT NULL,
    full_name TEXT,
    role TEXT NOT NULL DEFAULT 'user' CHECK(role IN ('admin', 'user')),
    created_at TEXT DEFAULT (strftime('%Y-%m-%dT%H:%M:%fZ', 'now'))
);

CREATE TABLE IF NOT EXISTS books (
    id INTEGER PRIMARY KEY AUTOINCREMENT,
    title TEXT NOT NULL,
    author TEXT NOT NULL,
    category TEXT,
    status TEXT NOT NULL DEFAULT 'AVAILABLE' CHECK(status IN ('AVAILABLE', 'LOANED')),
    is_active INTEGER NOT NULL DEFAULT 1,
    created_at TEXT DEFAULT (strftime('%Y-%m-%dT%H:%M:%fZ', 'now'))
);

CREATE TABLE IF NOT EXISTS loans (
    id INTEGER PRIMARY KEY AUTOINCREMENT,
    book_id INTEGER NOT NULL,
    user_id TEXT NOT NULL,
    status TEXT NOT NULL DEFAULT 'ACTIVE' CHECK(status IN ('ACTIVE', 'RETURNED')),
    loan_date TEXT NOT NULL,
    return_date TEXT,
    FOREIGN KEY (book_id) REFERENCES books(id),
    FOREIGN KEY (user_id) REFERENCES profiles(id)
);

CREATE TABLE IF NOT EXISTS notifications (
    id INTEGER PRIMARY KEY AUTOINCREMENT,
    type TEXT NOT NULL CHECK(type IN ('LOGIN', 'LOAN', 'RETURN')),
    message TEXT NOT NULL,
    user_id TEXT,
    is_read INTEGER NOT NULL DEFAULT 0,
    created_at TEXT DEFAULT (strftime('%Y-%m-%dT%H:%M:%fZ', 'now'))
);

CREATE TABLE IF NOT EXISTS auth_users (
    id TEXT PRIMARY KEY,
    email TEXT UNIQUE NOT NULL,
    password_hash TEXT,
    salt TEXT,
    provider TEXT NOT NULL DEFAULT 'email',
    metadata TEXT,
    created_at TEXT DEFAULT (strftime('%Y-%m-%dT%H:%M:%fZ', 'now'))
);

CREATE TABLE IF NOT EXISTS auth_sessions (
    token TEXT PRIMARY KEY,
    user_id TEXT NOT NULL,
    expires_at TEXT NOT NULL,
    created_at TEXT DEFAULT (strftime('%Y-%m-%dT%H:%M:%fZ', 'now')),
    FOREIGN KEY (user_id) REFERENCES auth_users(id) ON DELETE CASCADE
);

-- Kitap başına en fazla bir ACTIVE ödünç
CREATE UNIQUE INDEX IF NOT EXISTS idx_loans_one_active ON loans(book_id) WHERE status = 'ACTIVE';
CREATE INDEX IF NOT EXISTS idx_loans_user_id ON loans(user_id);
CREATE INDEX IF NOT EXISTS idx_loans_loan_date ON loans(loan_date);
CREATE INDEX IF NOT EXISTS idx_books_title ON books(title);
CREATE INDEX IF NOT EXISTS idx_books_status ON books(status);
CREATE INDEX IF NOT EXISTS idx_notifications_user_id ON notifications(user_id);
CREATE INDEX IF NOT EXISTS idx_auth_sessions_user_id ON auth_sessions(user_id);
"""


def utc_now() -> str:
    return datetime.now(timezone.utc).isoformat()


Search = Tuple[Sequence[str], str]
Embed = Dict[str, Tuple[str, str]]


class StoreTransaction:
    """Tek bir bağlantı üzerinde çalışan işlem. Olaylar commit sonrası yayımlanır."""

    def __init__(self, store: "LocalStore", write: bool):
        self.store = store
        self.write = write
        self.events: List[ChangeEvent] = []
        self._conn: Optional[sqlite3.Connection] = None

    async def _run(self, fn, *args):
        self.store._check_online()
        try:
            return await asyncio.to_thread(fn, *args)
        except sqlite3.Error as e:
            raise StoreError(str(e)) from e

    async def _begin(self) -> None:
        # Yazma kilidi için iş parçacığında beklemek yerine olay döngüsünde
        # artan aralıklarla yeniden dene; böylece kilidi tutan işlem ilerleyebilir.
        self.store._check_online()
        loop = asyncio.get_running_loop()
        deadline = loop.time() + self.store.busy_timeout
        delay = 0.002

        def begin():
            conn = self.store._connect(timeout=0 if self.write else self.store.busy_timeout)
            try:
                conn.execute("BEGIN IMMEDIATE" if self.write else "BEGIN")
            except Exception:
                conn.close()
                raise
            return conn

        def close_orphan(fut: "asyncio.Future") -> None:
            if not fut.cancelled() and fut.exception() is None:
                fut.result().close()

        while True:
            pending = asyncio.ensure_future(asyncio.to_thread(begin))
            try:
                self._conn = await asyncio.shield(pending)
                return
            except asyncio.CancelledError:
                # İptal edilen görev yazma kilidini tutan bağlantıyı açık bırakmasın
                pending.add_done_callback(close_orphan)
                raise
            except sqlite3.OperationalError as e:
                if "locked" not in str(e) or loop.time() >= deadline:
                    raise StoreError(str(e)) from e
            except sqlite3.Error as e:
                raise StoreError(str(e)) from e
            await asyncio.sleep(delay)
            delay = min(delay * 2, 0.05)

    async def _commit(self) -> None:
        conn = self._conn
        self._conn = None

        def commit():
            try:
                conn.execute("COMMIT")
            finally:
                conn.close()

        await asyncio.to_thread(commit)

    async def _rollback(self) -> None:
        conn = self._conn
        self._conn = None
        if conn is None:
            return

        def rollback():
            try:
                conn.execute("ROLLBACK")
            except sqlite3.Error:
                pass
            finally:
                conn.close()

        await asyncio.to_thread(rollback)

    # ------------------------- Okuma ------------------------- #
    async def select(
        self,
        table: str,
        filters: Optional[Dict[str, Any]] = None,
        search: Optional[Search] = None,
        order_by: Optional[str] = None,
        descending: bool = False,
        range: Optional[Tuple[int, int]] = None,
        embed: Optional[Embed] = None,
    ) -> List[Dict[str, Any]]:
        where, params = self.store._where(table, filters, search)
        sql = f"SELECT * FROM {table}{where}"
        if order_by:
            self.store._check_column(table, order_by)
            sql += f" ORDER BY {order_by} {'DESC' if descending else 'ASC'}, id {'DESC' if descending else 'ASC'}"
        if range is not None:
            start, end = range
            if start < 0 or end < start:
                raise ValueError(f"Geçersiz aralık: {range}")
            sql += " LIMIT ? OFFSET ?"
            params = params + [end - start + 1, start]
        rows = await self._run(self._fetchall, sql, params)
        if embed and rows:
            await self._embed(rows, embed)
        return rows

    async def select_one(self, table: str, filters: Dict[str, Any]) -> Optional[Dict[str, Any]]:
        rows = await self.select(table, filters=filters, range=(0, 0))
        return rows[0] if rows else None

    async def count(
        self,
        table: str,
        filters: Optional[Dict[str, Any]] = None,
        search: Optional[Search] = None,
    ) -> int:
        where, params = self.store._where(table, filters, search)
        rows = await self._run(self._fetchall, f"SELECT COUNT(*) AS n FROM {table}{where}", params)
        return int(rows[0]["n"])

    async def top_books(self, limit: int = 5) -> List[Dict[str, Any]]:
        """En çok ödünç alınan kitaplar (loan_count ile)."""
        sql = """
            SELECT b.id, b.title, b.author, b.category, b.status, COUNT(l.id) AS loan_count
            FROM books b
            JOIN loans l ON l.book_id = b.id
            WHERE b.is_active = 1
            GROUP BY b.id
            ORDER BY loan_count DESC, b.title ASC
            LIMIT ?
        """
        return await self._run(self._fetchall, sql, [limit])

    async def _embed(self, rows: List[Dict[str, Any]], embed: Embed) -> None:
        # İlişkili satırları tek sorguda getirip her satıra ekle
        for alias, (ref_table, fk) in embed.items():
            ids = sorted({row[fk] for row in rows if row.get(fk) is not None}, key=str)
            related: Dict[Any, Dict[str, Any]] = {}
            if ids:
                for item in await self.select(ref_table, filters={"id": ids}):
                    related[item["id"]] = item
            for row in rows:
                row[alias] = related.get(row.get(fk))

    # ------------------------- Yazma ------------------------- #
    async def insert(self, table: str, values: Dict[str, Any]) -> Dict[str, Any]:
        self._require_write()
        for column in values:
            self.store._check_column(table, column)
        columns = ", ".join(values)
        placeholders = ", ".join("?" for _ in values)
        sql = f"INSERT INTO {table} ({columns}) VALUES ({placeholders}) RETURNING *"
        rows = await self._run(self._fetchall, sql, [self._encode(v) for v in values.values()])
        row = rows[0]
        self._record(INSERT, table, row, None)
        return row

    async def update(
        self,
        table: str,
        values: Dict[str, Any],
        filters: Dict[str, Any],
    ) -> List[Dict[str, Any]]:
        """Filtreye uyan satırları güncelle ve etkilenen satırları döndür.

        Filtre, beklenen önceki durumu da içerebilir (ör. status=AVAILABLE);
        bu durumda işlem tek bir atomik karşılaştır-ve-değiştir olur.
        """
        self._require_write()
        if not filters:
            raise ValueError("Filtresiz güncellemeye izin verilmiyor.")
        for column in values:
            self.store._check_column(table, column)
        assignments = ", ".join(f"{column} = ?" for column in values)
        where, params = self.store._where(table, filters, None)
        sql = f"UPDATE {table} SET {assignments}{where} RETURNING *"
        rows = await self._run(
            self._fetchall, sql, [self._encode(v) for v in values.values()] + params
        )
        for row in rows:
            self._record(UPDATE, table, row, {"id": row.get("id")})
        return rows

    def _require_write(self) -> None:
        if not self.write:
            raise StoreError("Salt okunur işlemde yazma yapılamaz.")

    def _record(self, event_type: str, table: str, new, old) -> None:
        if table in WATCHED_TABLES:
            self.events.append(ChangeEvent(event_type=event_type, table=table, new_record=dict(new), old_record=old))

    def _fetchall(self, sql: str, params: List[Any]) -> List[Dict[str, Any]]:
        cursor = self._conn.execute(sql, params)
        return [dict(row) for row in cursor.fetchall()]

    @staticmethod
    def _encode(value: Any) -> Any:
        if isinstance(value, bool):
            return int(value)
        if isinstance(value, Enum):
            return value.value
        if isinstance(value, (dict, list)):
            return json.dumps(value, ensure_ascii=False)
        return value


class LocalStore:
    """SQLite üzerinde çalışan, değişiklik akışı yayımlayan depo."""

    def __init__(self, db_file: Optional[str] = None, hub: Optional[RealtimeHub] = None,
                 busy_timeout: Optional[float] = None) -> None:
        self.db_file = db_file or settings.db_file
        self.hub = hub or RealtimeHub()
        self.busy_timeout = busy_timeout if busy_timeout is not None else settings.db_busy_timeout
        self.online = True
        self._columns: Dict[str, List[str]] = {}
        self.create_tables()

    def _connect(self, timeout: Optional[float] = None) -> sqlite3.Connection:
        conn = sqlite3.connect(self.db_file, timeout=self.busy_timeout if timeout is None else timeout,
                               check_same_thread=False, isolation_level=None)
        conn.row_factory = sqlite3.Row
        conn.execute("PRAGMA foreign_keys=ON;")
        return conn

    def create_tables(self) -> None:
        """Veritabanında mevcut değilse gerekli tabloları oluşturur."""
        directory = os.path.dirname(self.db_file)
        if directory:
            os.makedirs(directory, exist_ok=True)
        conn = self._connect()
        try:
            # Eşzamanlı okuyucular için WAL modu
            conn.execute("PRAGMA journal_mode=WAL;")
            conn.executescript(SCHEMA)
            for table in WATCHED_TABLES + ("auth_users", "auth_sessions"):
                cursor = conn.execute(f"PRAGMA table_info({table})")
                self._columns[table] = [column[1] for column in cursor.fetchall()]
        finally:
            conn.close()
        logger.debug(f"Store schema ready at {self.db_file}")

    # ------------------------- Bağlantı durumu ------------------------- #
    def set_online(self, online: bool) -> None:
        """Depo bağlantısını aç/kapat; değişiklik akışı da aynı durumu izler."""
        self.online = online
        self.hub.set_connected(online)

    def _check_online(self) -> None:
        if not self.online:
            raise StoreUnavailableError("Arka uç deposuna ulaşılamıyor.")

    # ------------------------- Sorgu yardımcıları ------------------------- #
    def _check_column(self, table: str, column: str) -> None:
        if table not in self._columns:
            raise ValueError(f"Bilinmeyen tablo: {table}")
        if column not in self._columns[table]:
            raise ValueError(f"Bilinmeyen sütun: {table}.{column}")

    def _where(self, table: str, filters: Optional[Dict[str, Any]],
               search: Optional[Search]) -> Tuple[str, List[Any]]:
        clauses: List[str] = []
        params: List[Any] = []
        for column, value in (filters or {}).items():
            self._check_column(table, column)
            if isinstance(value, (list, tuple, set)):
                values = list(value)
                if not values:
                    clauses.append("0 = 1")
                    continue
                clauses.append(f"{column} IN ({', '.join('?' for _ in values)})")
                params.extend(StoreTransaction._encode(v) for v in values)
            elif value is None:
                clauses.append(f"{column} IS NULL")
            else:
                clauses.append(f"{column} = ?")
                params.append(StoreTransaction._encode(value))
        if search:
            columns, term = search
            term = (term or "").strip()
            if term:
                parts = []
                for column in columns:
                    self._check_column(table, column)
                    parts.append(f"lower(coalesce({column}, '')) LIKE ?")
                    params.append(f"%{term.lower()}%")
                clauses.append("(" + " OR ".join(parts) + ")")
        if not clauses:
            return "", params
        return " WHERE " + " AND ".join(clauses), params

    # ------------------------- İşlemler ------------------------- #
    @asynccontextmanager
    async def transaction(self, write: bool = True):
        """Tüm adımları tek bir SQLite işleminde çalıştır.

        Yazma işlemleri BEGIN IMMEDIATE ile başlar; eşzamanlı yazarlar sıraya
        girer. Hata olursa her şey geri alınır ve hiçbir olay yayımlanmaz.
        """
        tx = StoreTransaction(self, write=write)
        await tx._begin()
        try:
            yield tx
        except BaseException:
            await tx._rollback()
            raise
        try:
            await tx._commit()
        except sqlite3.Error as e:
            raise StoreError(str(e)) from e
        self.hub.publish(tx.events)

    async def select(self, table: str, **kwargs) -> List[Dict[str, Any]]:
        async with self.transaction(write=False) as tx:
            return await tx.select(table, **kwargs)

    async def select_one(self, table: str, filters: Dict[str, Any]) -> Optional[Dict[str, Any]]:
        async with self.transaction(write=False) as tx:
            return await tx.select_one(table, filters)

    async def count(self, table: str, filters: Optional[Dict[str, Any]] = None,
                    search: Optional[Search] = None) -> int:
        async with self.transaction(write=False) as tx:
            return await tx.count(table, filters=filters, search=search)

    async def top_books(self, limit: int = 5) -> List[Dict[str, Any]]:
        async with self.transaction(write=False) as tx:
            return await tx.top_books(limit)

    async def insert(self, table: str, values: Dict[str, Any]) -> Dict[str, Any]:
        async with self.transaction() as tx:
            return await tx.insert(table, values)

    async def update(self, table: str, values: Dict[str, Any],
                     filters: Dict[str, Any]) -> List[Dict[str, Any]]:
        async with self.transaction() as tx:
            return await tx.update(table, values, filters)

    async def insert_many(self, table: str, rows: Iterable[Dict[str, Any]]) -> List[Dict[str, Any]]:
        async with self.transaction() as tx:
            return [await tx.insert(table, row) for row in rows]
