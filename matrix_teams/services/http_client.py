import httpx
import logging
from typing import Optional

logger = logging.getLogger(__name__)

# HTTP/2 needs the optional 'h2' package
try:
    import h2  # type: ignore  # noqa: F401
    _HTTP2_AVAILABLE = True
except ImportError:
    _HTTP2_AVAILABLE = False
    logger.debug("HTTP/2 disabled: 'h2' package is not installed.")


class OptimizedHTTPClient:
    """Pooled async HTTP client shared by the Matrix and Teams services"""

    def __init__(self, timeout: float = 10.0):
        limits = httpx.Limits(
            max_keepalive_connections=20,
            max_connections=100,
            keepalive_expiry=30.0
        )

        # Per-request timeouts passed by the services override the default
        client_timeout = httpx.Timeout(
            timeout=timeout,
            connect=5.0,
        )

        self._client = httpx.AsyncClient(
            limits=limits,
            timeout=client_timeout,
            follow_redirects=True,
            http2=_HTTP2_AVAILABLE
        )

    async def request(self, method: str, url: str, **kwargs) -> httpx.Response:
        return await self._client.request(method, url, **kwargs)

    @property
    def is_closed(self) -> bool:
        return self._client.is_closed

    async def close(self):
        """Close the underlying connection pool"""
        await self._client.aclose()


# Process-wide client
_global_client: Optional[OptimizedHTTPClient] = None


async def get_http_client() -> OptimizedHTTPClient:
    """Return the shared client, creating it on first use"""
    global _global_client
    if _global_client is None or _global_client.is_closed:
        _global_client = OptimizedHTTPClient()
    return _global_client


async def cleanup_http_client():
    """Close and forget the shared client"""
    global _global_client
    if _global_client:
        await _global_client.close()
        _global_client = None
