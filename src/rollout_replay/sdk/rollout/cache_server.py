"""
HTTP cache server for storing and serving recorded LLM spans.

The cache server stores:
- Cached spans keyed by index:path (e.g., "0:root.llm_call")
- Metadata: path-to-count mapping (e.g., {"root.llm_call": 2}) and per-path
  overrides (e.g., {"root.llm_call": {"system": "You are X."}})

Remote callers can only read. The owning harness writes through the
in-process `set_entry` / `set_entries` / `set_metadata` methods.
"""

import copy
import errno
import json
from typing import Awaitable, Callable, Optional

from aiohttp import web

from rollout_replay.sdk.log import get_default_logger
from rollout_replay.sdk.rollout.types import CacheMetadata, CachedSpan

logger = get_default_logger(__name__)

DEFAULT_START_PORT = 35667
MAX_PORT = 65535

CORS_HEADERS = {
    "Access-Control-Allow-Origin": "*",
    "Access-Control-Allow-Methods": "GET, POST, OPTIONS",
    "Access-Control-Allow-Headers": "Content-Type",
}


def cache_key(path: str, index: int) -> str:
    # index goes first so that paths may contain colons
    return f"{index}:{path}"


@web.middleware
async def cors_middleware(
    request: web.Request,
    handler: Callable[[web.Request], Awaitable[web.StreamResponse]],
) -> web.StreamResponse:
    if request.method == "OPTIONS":
        response: web.StreamResponse = web.Response(status=200)
    else:
        try:
            response = await handler(request)
        except web.HTTPException as e:
            e.headers.update(CORS_HEADERS)
            raise
    response.headers.update(CORS_HEADERS)
    return response


class CacheServer:
    """
    Loopback HTTP server serving cached spans to rollout workers.

    The server binds to the first free port at or above `start_port`, so that
    several workers can each run their own instance.
    """

    def __init__(self, start_port: int = DEFAULT_START_PORT, host: str = "127.0.0.1"):
        """
        Initialize the cache server.

        Args:
            start_port: First port to try. Use 0 for automatic assignment.
            host: Interface to bind to. Defaults to loopback.
        """
        self.start_port = start_port
        self.host = host
        self.port: Optional[int] = None
        self.app = web.Application(middlewares=[cors_middleware])
        self.runner: Optional[web.AppRunner] = None
        self.site: Optional[web.TCPSite] = None

        self._cached_spans: dict[str, CachedSpan] = {}
        self._metadata: CacheMetadata = {"pathToCount": {}, "overrides": {}}

        self._setup_routes()

    def _setup_routes(self) -> None:
        self.app.router.add_get("/health", self._health_handler)
        self.app.router.add_post("/cached", self._get_cached_handler)

    async def start(self) -> int:
        """
        Start the cache server.

        Returns:
            int: The port the server is listening on
        """
        self.runner = web.AppRunner(self.app)
        await self.runner.setup()

        port = self.start_port
        while True:
            site = web.TCPSite(self.runner, self.host, port)
            try:
                await site.start()
                break
            except OSError as e:
                if e.errno != errno.EADDRINUSE or port == 0 or port >= MAX_PORT:
                    await self.runner.cleanup()
                    self.runner = None
                    raise
                logger.debug(f"Port {port} is in use, trying {port + 1}")
                port += 1

        self.site = site
        # Get the actual port (important when port=0)
        if site._server and site._server.sockets:
            self.port = site._server.sockets[0].getsockname()[1]
        else:
            self.port = port

        logger.debug(f"Cache server started on {self.get_url()}")
        return self.port

    async def stop(self) -> None:
        """Stop the cache server and cleanup resources."""
        if self.runner:
            await self.runner.cleanup()
            self.runner = None
            self.site = None
        logger.debug("Cache server stopped")

    def get_url(self) -> str:
        """
        Get the cache server URL.

        Returns:
            str: Full URL of the cache server
        """
        if self.port is None:
            raise RuntimeError("Server not started yet")
        return f"http://{self.host}:{self.port}"

    # ========================================================================
    # In-process mutators, used by the owning harness only
    # ========================================================================

    def set_entry(self, key: str, entry: CachedSpan) -> None:
        self._cached_spans[key] = entry

    def set_entries(self, entries: dict[str, CachedSpan]) -> None:
        self._cached_spans.update(entries)
        logger.debug(f"Stored {len(entries)} cached spans")

    def set_metadata(self, metadata: CacheMetadata) -> None:
        """Replace the metadata as a whole."""
        self._metadata = {
            "pathToCount": dict(metadata.get("pathToCount") or {}),
            "overrides": dict(metadata.get("overrides") or {}),
        }
        logger.debug(
            f"Updated metadata: pathToCount={self._metadata['pathToCount']}, "
            f"overrides for {list(self._metadata['overrides'].keys())}"
        )

    def get_metadata(self) -> CacheMetadata:
        return copy.deepcopy(self._metadata)

    # ========================================================================
    # HTTP Handlers
    # ========================================================================

    async def _health_handler(self, request: web.Request) -> web.Response:
        """Health check endpoint."""
        return web.json_response({"status": "ok"})

    async def _get_cached_handler(self, request: web.Request) -> web.Response:
        """
        Fetch a cached span by path and index.

        Request body: {"path": "root.llm_call", "index": 0}
        Response: {"span": {...}, "pathToCount": {...}, "overrides": {...}},
        or 404 with no body on a miss
        """
        try:
            data = await request.json()
        except (json.JSONDecodeError, UnicodeDecodeError) as e:
            logger.debug(f"Invalid JSON in /cached request: {e}")
            return web.json_response({"error": "Invalid JSON"}, status=400)

        path = data.get("path") if isinstance(data, dict) else None
        index = data.get("index") if isinstance(data, dict) else None
        if (
            not isinstance(path, str)
            or not isinstance(index, int)
            or isinstance(index, bool)
        ):
            return web.json_response(
                {
                    "error": "Invalid request: path (string) and index (number) required"
                },
                status=400,
            )

        cached_span = self._cached_spans.get(cache_key(path, index))
        if cached_span is None:
            return web.Response(status=404)

        return web.json_response(
            {
                "span": cached_span,
                "pathToCount": self._metadata["pathToCount"],
                "overrides": self._metadata["overrides"],
            }
        )
