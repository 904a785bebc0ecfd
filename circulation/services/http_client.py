import asyncio
import logging
from typing import Optional

import httpx

from config import settings

logger = logging.getLogger(__name__)

DEFAULT_BACKOFF = 0.5


def retry_budget(timeout: float, retries: int, backoff: float = DEFAULT_BACKOFF) -> float:
    """Worst-case seconds for one ``get_with_retry`` call: every attempt times out
    and every backoff sleep is taken.
    """
    retries = max(1, retries)
    return timeout * retries + backoff * (2 ** (retries - 1) - 1)


class DirectoryHTTPClient:
    """Pooled async HTTP client for the external directory, with retry.

    TLS verification follows ``settings.directory_verify_tls``; response bodies
    are returned untouched.
    """

    def __init__(
        self,
        timeout: Optional[float] = None,
        verify: Optional[bool] = None,
        retries: Optional[int] = None,
        transport: Optional[httpx.AsyncBaseTransport] = None,
    ):
        limits = httpx.Limits(
            max_keepalive_connections=10,
            max_connections=20,
            keepalive_expiry=30.0
        )

        total = timeout if timeout is not None else settings.directory_timeout
        timeout_config = httpx.Timeout(
            timeout=total,
            connect=min(5.0, total),
        )

        self.verify = settings.directory_verify_tls if verify is None else verify
        self.retries = max(1, retries if retries is not None else settings.directory_retries)
        if not self.verify:
            logger.warning("TLS certificate verification is disabled for directory requests")

        self._client = httpx.AsyncClient(
            limits=limits,
            timeout=timeout_config,
            follow_redirects=True,
            verify=self.verify,
            transport=transport,
        )

    async def get(self, url: str, **kwargs) -> httpx.Response:
        """Async GET over the pooled connections."""
        return await self._client.get(url, **kwargs)

    async def get_with_retry(self, url: str, backoff: float = DEFAULT_BACKOFF, **kwargs) -> httpx.Response:
        """GET with exponential backoff on transport errors.

        HTTP error statuses are raised immediately (``raise_for_status``); the
        last transport error is re-raised once the retries are used up.
        """
        for attempt in range(self.retries):
            try:
                response = await self.get(url, **kwargs)
                response.raise_for_status()
                return response
            except httpx.TransportError as e:
                if attempt < self.retries - 1:
                    wait_time = backoff * (2 ** attempt)
                    logger.debug("GET %s failed (%s), retrying in %.1fs", url, e, wait_time)
                    await asyncio.sleep(wait_time)
                    continue
                raise
        raise RuntimeError("unreachable")  # pragma: no cover

    async def close(self):
        await self._client.aclose()

    async def __aenter__(self):
        return self

    async def __aexit__(self, exc_type, exc_val, exc_tb):
        await self.close()


# Shared client instance for the API process
_global_client: Optional[DirectoryHTTPClient] = None


async def get_http_client() -> DirectoryHTTPClient:
    """Return the shared client, creating it on first use."""
    global _global_client
    if _global_client is None:
        _global_client = DirectoryHTTPClient()
    return _global_client


async def cleanup_http_client():
    """Close the shared client."""
    global _global_client
    if _global_client:
        await _global_client.close()
        _global_client = None
