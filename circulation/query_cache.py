"""
Asenkron sorgu sonuçları için anahtarlı önbellek.

Her girdi bir yapılandırılmış anahtar (tuple) altında tutulur, ör.
("books", "catalog", sayfa, arama). Bir önek ile geçersiz kılmak, o önekle
başlayan tüm parametreli varyantları geçersiz kılar. Önbellek yalnızca türetilmiş
okuma modellerini tutar; hiçbir zaman yazma başlatmaz.
"""

import asyncio
import inspect
import logging
import time
from dataclasses import dataclass, field
from typing import Any, Awaitable, Callable, Dict, Hashable, Optional, Set, Tuple

from circulation.config import settings

logger = logging.getLogger(__name__)

ONLINE = "online"
OFFLINE_FIRST = "offlineFirst"
ALWAYS = "always"
NETWORK_MODES = (ONLINE, OFFLINE_FIRST, ALWAYS)

QueryKey = Tuple[Hashable, ...]
FetchFn = Callable[[], Awaitable[Any]]

# Bellek önbellek boyutu bu sınırı aşınca çöp toplama çalışır
MAX_ENTRIES = 1000


@dataclass
class QueryResult:
    """Bir okuma anında görünümün gördüğü durum."""
    data: Any = None
    is_loading: bool = False
    is_error: bool = False
    error: Optional[BaseException] = None
    is_fetching: bool = False
    is_stale: bool = False
    is_paused: bool = False
    updated_at: Optional[float] = None

    @property
    def is_success(self) -> bool:
        return not self.is_loading and not self.is_error and self.updated_at is not None


@dataclass
class _Entry:
    key: QueryKey
    data: Any = None
    has_data: bool = False
    updated_at: Optional[float] = None
    error: Optional[BaseException] = None
    invalidated: bool = False
    generation: int = 0
    fetch_fn: Optional[FetchFn] = None
    stale_time: float = 0.0
    retry: int = 0
    network_mode: str = OFFLINE_FIRST
    last_access: float = 0.0
    task: Optional[asyncio.Task] = field(default=None, repr=False)

    @property
    def is_fetching(self) -> bool:
        return self.task is not None and not self.task.done()


def _as_key(key) -> QueryKey:
    if isinstance(key, tuple):
        return key
    if isinstance(key, list):
        return tuple(key)
    return (key,)


async def _call_hook(hook: Optional[Callable], *args) -> None:
    if hook is None:
        return
    result = hook(*args)
    if inspect.isawaitable(result):
        await result


class QueryCache:
    """Eskime pencereleri, yeniden deneme ve geçersiz kılma destekli sorgu önbelleği."""

    def __init__(
        self,
        stale_time: Optional[float] = None,
        gc_time: Optional[float] = None,
        retry: Optional[int] = None,
        retry_backoff: Optional[float] = None,
        retry_max_delay: Optional[float] = None,
        network_mode: Optional[str] = None,
        clock: Callable[[], float] = time.monotonic,
    ):
        self.stale_time = settings.query_stale_time if stale_time is None else stale_time
        self.gc_time = settings.query_gc_time if gc_time is None else gc_time
        self.retry = settings.query_retry if retry is None else retry
        self.retry_backoff = settings.query_retry_backoff if retry_backoff is None else retry_backoff
        self.retry_max_delay = settings.query_retry_max_delay if retry_max_delay is None else retry_max_delay
        self.network_mode = network_mode or settings.query_network_mode
        if self.network_mode not in NETWORK_MODES:
            raise ValueError(f"Bilinmeyen ağ modu: {self.network_mode}")
        self.online = True
        self._clock = clock
        self._entries: Dict[QueryKey, _Entry] = {}
        self._tasks: Set[asyncio.Task] = set()
        self.cache_stats = {
            'hits': 0,
            'misses': 0,
            'fetches': 0,
            'background_fetches': 0,
            'errors': 0,
            'invalidations': 0,
        }

    # ------------------------- Okuma ------------------------- #
    async def query(
        self,
        key,
        fetch_fn: FetchFn,
        stale_time: Optional[float] = None,
        retry: Optional[int] = None,
        network_mode: Optional[str] = None,
    ) -> QueryResult:
        """Anahtarın değerini döndür; gerekirse getir.

        - Taze değer: getirme yapılmaz.
        - Süresi geçmiş değer: eski değer hemen döner, yenileme arka planda.
        - Geçersiz kılınmış ya da hiç olmayan değer: getirme beklenir.
        """
        key = _as_key(key)
        mode = network_mode or self.network_mode
        if mode not in NETWORK_MODES:
            raise ValueError(f"Bilinmeyen ağ modu: {mode}")
        if len(self._entries) > MAX_ENTRIES:
            self.collect_garbage()

        entry = self._entries.get(key)
        if entry is None:
            entry = _Entry(key=key)
            self._entries[key] = entry
        entry.fetch_fn = fetch_fn
        entry.stale_time = self.stale_time if stale_time is None else stale_time
        entry.retry = self.retry if retry is None else retry
        entry.network_mode = mode
        entry.last_access = self._clock()

        if entry.has_data and not entry.invalidated and not self._is_stale(entry):
            self.cache_stats['hits'] += 1
            return self._result(entry)

        if not self.online and mode != ALWAYS:
            if entry.has_data:
                # Çevrimdışı: elde ne varsa koşulsuz sun
                self.cache_stats['hits'] += 1
                return self._result(entry, paused=True)
            if mode == ONLINE:
                self.cache_stats['misses'] += 1
                return self._result(entry, paused=True)

        if entry.has_data and not entry.invalidated:
            self.cache_stats['hits'] += 1
            if self._start_fetch(entry, background=True) is not None:
                self.cache_stats['background_fetches'] += 1
            return self._result(entry)

        self.cache_stats['misses'] += 1
        # Getirme sırasında yeni bir geçersiz kılma gelirse bir kez daha getir
        for _ in range(3):
            task = self._start_fetch(entry)
            if task is None:
                break
            await asyncio.shield(task)
            if not entry.invalidated or entry.error is not None:
                break
        return self._result(entry)

    def peek(self, key) -> QueryResult:
        """Getirme yapmadan mevcut durumu döndür."""
        entry = self._entries.get(_as_key(key))
        if entry is None:
            return QueryResult(is_loading=False)
        return self._result(entry)

    def get_data(self, key) -> Any:
        entry = self._entries.get(_as_key(key))
        return entry.data if entry is not None and entry.has_data else None

    def set_data(self, key, data: Any) -> None:
        """Değeri doğrudan yaz (ör. değişiklik akışından gelen satırla yerinde güncelleme)."""
        key = _as_key(key)
        entry = self._entries.get(key)
        if entry is None:
            entry = _Entry(key=key, stale_time=self.stale_time, retry=self.retry,
                           network_mode=self.network_mode, last_access=self._clock())
            self._entries[key] = entry
        entry.data = data
        entry.has_data = True
        entry.updated_at = self._clock()
        entry.error = None

    def _is_stale(self, entry: _Entry) -> bool:
        if entry.updated_at is None:
            return True
        return self._clock() - entry.updated_at >= entry.stale_time

    def _result(self, entry: _Entry, paused: bool = False) -> QueryResult:
        fetching = entry.is_fetching
        return QueryResult(
            data=entry.data,
            is_loading=not entry.has_data and (fetching or paused),
            is_error=entry.error is not None,
            error=entry.error,
            is_fetching=fetching,
            is_stale=entry.invalidated or self._is_stale(entry),
            is_paused=paused,
            updated_at=entry.updated_at,
        )

    # ------------------------- Getirme ------------------------- #
    def _start_fetch(self, entry: _Entry, background: bool = False) -> Optional[asyncio.Task]:
        if entry.is_fetching:
            # Aynı anahtar için süren getirmeyi paylaş
            return entry.task
        if entry.fetch_fn is None:
            return None
        try:
            loop = asyncio.get_running_loop()
        except RuntimeError:
            return None
        task = loop.create_task(self._fetch(entry))
        entry.task = task
        self._tasks.add(task)
        task.add_done_callback(self._tasks.discard)
        if background:
            logger.debug(f"Background refresh for {entry.key}")
        return task

    async def _fetch(self, entry: _Entry) -> None:
        generation = entry.generation
        offline_single_attempt = not self.online and entry.network_mode == OFFLINE_FIRST
        retries = 0 if offline_single_attempt else max(0, entry.retry)
        fetch_fn = entry.fetch_fn
        for attempt in range(retries + 1):
            self.cache_stats['fetches'] += 1
            try:
                data = await fetch_fn()
            except asyncio.CancelledError:
                raise
            except Exception as e:
                if attempt < retries and (self.online or entry.network_mode == ALWAYS):
                    delay = min(self.retry_backoff * (2 ** attempt), self.retry_max_delay)
                    logger.debug(f"Fetch for {entry.key} failed ({e}), retrying in {delay}s")
                    await asyncio.sleep(delay)
                    continue
                self.cache_stats['errors'] += 1
                entry.error = e
                logger.warning(f"Query {entry.key} failed after {attempt + 1} attempt(s): {e}")
                return
            entry.data = data
            entry.has_data = True
            entry.updated_at = self._clock()
            entry.error = None
            # Getirme sürerken geçersiz kılındıysa değer hâlâ eski sayılır
            entry.invalidated = entry.generation != generation
            return

    # ------------------------- Geçersiz kılma ------------------------- #
    def _matching(self, prefix) -> list:
        prefix = _as_key(prefix)
        n = len(prefix)
        return [entry for key, entry in self._entries.items() if key[:n] == prefix]

    def invalidate(self, prefix, refetch: bool = True) -> int:
        """Önekle eşleşen tüm anahtarları geçersiz kıl.

        Daha önce okunmuş (getirme fonksiyonu bilinen) girdiler arka planda
        yeniden getirilir; sonraki okuma bu getirmeyi bekler.
        """
        count = 0
        for entry in self._matching(prefix):
            entry.invalidated = True
            entry.generation += 1
            count += 1
            if refetch and (self.online or entry.network_mode == ALWAYS):
                if entry.is_fetching:
                    continue
                self._start_fetch(entry, background=True)
        self.cache_stats['invalidations'] += count
        if count:
            logger.debug(f"Invalidated {count} cache entries for prefix {_as_key(prefix)}")
        return count

    def remove(self, prefix) -> int:
        entries = self._matching(prefix)
        for entry in entries:
            if entry.is_fetching:
                entry.task.cancel()
            self._entries.pop(entry.key, None)
        return len(entries)

    def clear(self) -> None:
        """Tüm önbelleği temizle."""
        for entry in self._entries.values():
            if entry.is_fetching:
                entry.task.cancel()
        self._entries.clear()

    def collect_garbage(self) -> int:
        """gc_time boyunca okunmamış ve getirmesi sürmeyen girdileri at."""
        now = self._clock()
        expired = [
            key for key, entry in self._entries.items()
            if not entry.is_fetching and now - entry.last_access >= self.gc_time
        ]
        for key in expired:
            self._entries.pop(key, None)
        return len(expired)

    # ------------------------- Bağlantı ------------------------- #
    def set_online(self, online: bool) -> None:
        was_offline = not self.online
        self.online = online
        if online and was_offline:
            # Çevrimdışıyken geçersiz kılınan girdileri yeniden getir
            for entry in list(self._entries.values()):
                if entry.invalidated and not entry.is_fetching:
                    self._start_fetch(entry, background=True)

    # ------------------------- Mutasyon ------------------------- #
    async def mutate(
        self,
        mutate_fn: Callable[[], Awaitable[Any]],
        on_success: Optional[Callable[[Any], Any]] = None,
        on_error: Optional[Callable[[BaseException], Any]] = None,
        on_settled: Optional[Callable[[Any, Optional[BaseException]], Any]] = None,
    ) -> Any:
        """Bir yazma işlemini çalıştır ve yaşam döngüsü kancalarını çağır.

        Mutasyonlar yeniden denenmez; hata, on_error sonrası çağırana iletilir.
        """
        try:
            result = await mutate_fn()
        except Exception as e:
            await _call_hook(on_error, e)
            await _call_hook(on_settled, None, e)
            raise
        await _call_hook(on_success, result)
        await _call_hook(on_settled, result, None)
        return result

    async def drain(self) -> None:
        """Süren tüm getirmeler bitene kadar bekle."""
        while self._tasks:
            await asyncio.gather(*list(self._tasks), return_exceptions=True)

    def get_stats(self) -> Dict[str, Any]:
        """Önbellek istatistiklerini al."""
        stats = self.cache_stats.copy()
        stats['entries'] = len(self._entries)
        stats['online'] = self.online
        if stats['hits'] + stats['misses'] > 0:
            stats['hit_ratio'] = stats['hits'] / (stats['hits'] + stats['misses'])
        else:
            stats['hit_ratio'] = 0.0
        return stats
