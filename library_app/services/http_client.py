import asyncio
import logging
from typing import Optional

import httpx

from library_app import __version__
from library_app.config import settings

logger = logging.getLogger(__name__)

# gateway errors are usually transient; anything else is returned as-is
RETRYABLE_STATUSES = frozenset({502, 503, 504})


class CatalogHTTPClient:
    """Shared async client for outbound catalog calls.

    One pooled ``httpx.AsyncClient`` per process. ``get_with_retry`` retries
    transport errors and gateway statuses with exponential backoff.
    """

    def __init__(self, timeout: Optional[float] = None, transport: Optional[httpx.AsyncBaseTransport] = None,
                 max_connections: int = 20):
        total = timeout or settings.google_books_timeout
        self._client = httpx.AsyncClient(
            limits=httpx.Limits(max_connections=max_connections, max_keepalive_connections=max_connections // 2),
            timeout=httpx.Timeout(total, connect=min(5.0, total)),
            headers={"User-Agent": f"{settings.app_name}/{__version__}"},
            follow_redirects=True,
            transport=transport,
        )

    async def get(self, url: str, **kwargs) -> httpx.Response:
        return await self._client.get(url, **kwargs)

    async def get_with_retry(self, url: str, retries: int = 3, backoff: float = 0.5,
                             **kwargs) -> Optional[httpx.Response]:
        """GET ``url``, retrying up to ``retries`` attempts in total.

        Returns the last response received, or None when every attempt
        failed before a response arrived.
        """
        response: Optional[httpx.Response] = None
        for attempt in range(1, retries + 1):
            try:
                response = await self.get(url, **kwargs)
            except httpx.RequestError as e:
                logger.warning("GET %s failed (attempt %d/%d): %s", url, attempt, retries, e)
                response = None
            else:
                if response.status_code not in RETRYABLE_STATUSES:
                    return response
                logger.warning("GET %s returned %d (attempt %d/%d)", url, response.status_code, attempt, retries)
            if attempt < retries:
                await asyncio.sleep(backoff * 2 ** (attempt - 1))
        return response

    async def close(self) -> None:
        await self._client.aclose()

    async def __aenter__(self) -> "CatalogHTTPClient":
        return self

    async def __aexit__(self, exc_type, exc_val, exc_tb) -> None:
        await self.close()


_shared_client: Optional[CatalogHTTPClient] = None


async def get_http_client() -> CatalogHTTPClient:
    global _shared_client
    if _shared_client is None:
        _shared_client = CatalogHTTPClient()
    return _shared_client


async def cleanup_http_client() -> None:
    """Close the shared client; called from the API lifespan on shutdown."""
    global _shared_client
    if _shared_client is not None:
        await _shared_client.close()
        _shared_client = None
