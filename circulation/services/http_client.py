import asyncio
import logging
from typing import Optional

import httpx

from circulation.config import settings

logger = logging.getLogger(__name__)

# Bu durum kodları geçici kabul edilir ve yeniden denenir
RETRYABLE_STATUS = {429, 502, 503, 504}


class OptimizedHTTPClient:
    """Bağlantı havuzu ve yeniden deneme mantığı ile optimize edilmiş HTTP istemcisi"""

    def __init__(self, timeout: Optional[float] = None, transport: Optional[httpx.AsyncBaseTransport] = None):
        # Daha iyi performans için bağlantı limitleri
        limits = httpx.Limits(
            max_keepalive_connections=20,
            max_connections=100,
            keepalive_expiry=30.0
        )

        # Zaman aşımı yapılandırması
        total = timeout or settings.http_timeout
        timeout_config = httpx.Timeout(
            timeout=total,
            connect=min(5.0, total),
            read=total,
            write=min(5.0, total)
        )

        self._client = httpx.AsyncClient(
            limits=limits,
            timeout=timeout_config,
            follow_redirects=True,
            transport=transport,
        )

    async def request_with_retry(self, method: str, url: str, retries: Optional[int] = None,
                                 backoff: float = 0.5, **kwargs) -> httpx.Response:
        """Üstel geri çekilme yeniden deneme mantığı ile istek.

        Ağ hataları ve geçici durum kodları yeniden denenir; deneme hakkı
        bitince son yanıt döner ya da son ağ hatası yükseltilir.
        """
        attempts = max(1, retries if retries is not None else settings.http_retries)
        last_error: Optional[Exception] = None
        for attempt in range(attempts):
            try:
                response = await self._client.request(method, url, **kwargs)
                if response.status_code not in RETRYABLE_STATUS or attempt == attempts - 1:
                    return response
                logger.warning(f"{method} {url} returned {response.status_code}, retrying")
            except httpx.RequestError as e:
                last_error = e
                logger.warning(f"{method} {url} failed on attempt {attempt + 1}: {e}")
                if attempt == attempts - 1:
                    raise
            await asyncio.sleep(backoff * (2 ** attempt))
        raise last_error or httpx.RequestError(f"{method} {url} failed")

    async def post_with_retry(self, url: str, **kwargs) -> httpx.Response:
        return await self.request_with_retry("POST", url, **kwargs)

    async def close(self):
        """HTTP istemcisini kapat"""
        await self._client.aclose()

    async def __aenter__(self):
        return self

    async def __aexit__(self, exc_type, exc_val, exc_tb):
        await self.close()


# Global HTTP istemci örneği
_global_client: Optional[OptimizedHTTPClient] = None


async def get_http_client() -> OptimizedHTTPClient:
    """Global HTTP istemci örneğini al veya oluştur"""
    global _global_client
    if _global_client is None:
        _global_client = OptimizedHTTPClient()
    return _global_client


async def cleanup_http_client():
    """Global HTTP istemcisini temizle"""
    global _global_client
    if _global_client:
        await _global_client.close()
        _global_client = None
