"""
HTTP client for reading from the rollout cache server.

Every failure mode (404, any other non-200 status, transport error, timeout,
undecodable body) is reported as a miss by returning None. Nothing here
raises to the caller.
"""

import asyncio
from types import TracebackType
from typing import Optional

import httpx

from rollout_replay.sdk.log import get_default_logger
from rollout_replay.sdk.rollout.types import CachedRequest, CacheServerResponse

logger = get_default_logger(__name__)

DEFAULT_TIMEOUT_SECONDS = 5.0


class CacheClient:
    """
    Read-only client for the rollout cache server.

    Used by the language model proxy to fetch cached spans together with the
    current metadata snapshot.
    """

    def __init__(self, cache_server_url: str, timeout: float = DEFAULT_TIMEOUT_SECONDS):
        """
        Initialize the cache client.

        Args:
            cache_server_url: Base URL of the cache server (e.g., "http://127.0.0.1:35667")
            timeout: Request timeout in seconds (default: 5.0)
        """
        self.base_url = cache_server_url.rstrip("/")
        self.timeout = timeout
        self._client: httpx.AsyncClient | None = None
        self._client_loop: asyncio.AbstractEventLoop | None = None

    def _get_client(self) -> httpx.AsyncClient:
        """Get or create the HTTP client for the running event loop."""
        loop = asyncio.get_running_loop()
        if (
            self._client is None
            or self._client.is_closed
            or self._client_loop is not loop
        ):
            # pooled connections belong to the loop that opened them
            self._client = httpx.AsyncClient(timeout=self.timeout)
            self._client_loop = loop
        return self._client

    async def close(self) -> None:
        """Close the HTTP client."""
        if self._client:
            if self._client_loop is asyncio.get_running_loop():
                await self._client.aclose()
            self._client = None
            self._client_loop = None

    async def __aenter__(self) -> "CacheClient":
        return self

    async def __aexit__(
        self,
        exc_type: Optional[type[BaseException]],
        exc_value: Optional[BaseException],
        traceback: Optional[TracebackType],
    ) -> None:
        await self.close()

    async def get_cached(self, path: str, index: int) -> CacheServerResponse | None:
        """
        Fetch a cached span and the current metadata by path and index.

        Args:
            path: Span path (e.g., "root.llm_call")
            index: Call index for this path (e.g., 0, 1, 2)

        Returns:
            CacheServerResponse | None: Span plus metadata on a hit, None otherwise
        """
        body: CachedRequest = {"path": path, "index": index}
        try:
            response = await self._get_client().post(
                f"{self.base_url}/cached", json=body
            )
        except httpx.TimeoutException:
            logger.debug(f"Timeout fetching cached span {index}:{path}")
            return None
        except httpx.HTTPError as e:
            logger.debug(f"Error fetching cached span {index}:{path}: {e}")
            return None
        except RuntimeError as e:
            logger.debug(f"Cache client unusable for {index}:{path}: {e}")
            self._client = None
            self._client_loop = None
            return None

        if response.status_code == 404:
            logger.debug(f"Cache miss for {index}:{path}")
            return None
        if response.status_code != 200:
            logger.debug(
                f"Cache server returned status {response.status_code} "
                f"for {index}:{path}"
            )
            return None

        try:
            data = response.json()
        except ValueError as e:
            logger.debug(f"Cache server returned invalid JSON for {index}:{path}: {e}")
            return None

        if not isinstance(data, dict) or not isinstance(data.get("span"), dict):
            logger.debug(f"Cache server returned no span for {index}:{path}")
            return None

        logger.debug(f"Cache hit for {index}:{path}")
        return data
