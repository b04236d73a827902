"""
Cache-aware proxy around a language model.

During a rollout session every call is resolved against the cache server by
its execution path and its per-path call index. Calls with a cached entry are
answered from the cache (as a complete response or a reconstructed stream)
without touching the live model. All other calls go to the live model, with
the path's system and tool overrides applied.
"""

import asyncio
import threading
from typing import Any

import wrapt

from rollout_replay.opentelemetry_lib.tracing.attributes import (
    PROMPT_MESSAGES,
    PROMPT_TOOLS,
    RESPONSE_FINISH_REASON,
    ROLLOUT_CACHE_INDEX,
    ROLLOUT_PATH_COUNT,
    ROLLOUT_SESSION_ID,
    SPAN_ORIGINAL_TYPE,
    SPAN_TYPE,
)
from rollout_replay.opentelemetry_lib.tracing.context import (
    get_current_span_path,
    set_current_span_attributes,
)
from rollout_replay.opentelemetry_lib.tracing.path_tracker import PathTracker
from rollout_replay.sdk.log import get_default_logger
from rollout_replay.sdk.rollout.cache_client import CacheClient
from rollout_replay.sdk.rollout.content import (
    ContentBlock,
    content_blocks_to_wire,
    convert_to_content_blocks,
)
from rollout_replay.sdk.rollout.overrides import apply_overrides
from rollout_replay.sdk.rollout.streaming import StreamReconstructor, empty_usage
from rollout_replay.sdk.rollout.types import (
    CachedSpan,
    CacheServerResponse,
    LanguageModelCallOptions,
    LanguageModelGenerateResult,
    LanguageModelStreamResult,
    RolloutPathOverride,
)
from rollout_replay.sdk.rollout_control import (
    get_cache_server_url,
    get_rollout_session_id,
    is_rollout_mode,
)
from rollout_replay.sdk.utils import json_dumps

logger = get_default_logger(__name__)

DEFAULT_FINISH_REASON = "stop"


class LanguageModelCacheProxy(wrapt.ObjectProxy):
    """
    Wraps a model exposing `async generate(options)` and `async stream(options)`.

    Anything else is forwarded to the wrapped model untouched.

    Call indices are counted per path for the lifetime of the proxy and are
    never persisted. The first call in a rollout session fetches the cache
    metadata once. Until metadata has been received, every call probes the
    cache; afterwards a path whose cached entries are used up goes straight
    to the live model.
    """

    def __init__(
        self,
        wrapped: Any,
        path_tracker: PathTracker | None = None,
        cache_client: CacheClient | None = None,
    ):
        super().__init__(wrapped)
        self._self_path_tracker = path_tracker
        self._self_cache_client = cache_client
        self._self_stream_reconstructor = StreamReconstructor()
        self._self_initialized = False
        self._self_metadata_known = False
        self._self_init_lock = asyncio.Lock()
        self._self_index_lock = threading.Lock()
        self._self_path_to_index: dict[str, int] = {}
        self._self_path_to_count: dict[str, int] = {}
        self._self_overrides: dict[str, RolloutPathOverride] = {}

    @property
    def provider(self) -> str | None:
        return getattr(self.__wrapped__, "provider", None)

    @property
    def model_id(self) -> str | None:
        return getattr(self.__wrapped__, "model_id", None)

    def _get_cache_client(self) -> CacheClient | None:
        if self._self_cache_client is None:
            cache_server_url = get_cache_server_url()
            if not cache_server_url:
                logger.warning("Cache server address not set, cache will not work")
                return None
            self._self_cache_client = CacheClient(cache_server_url)
            logger.debug(f"Created cache client for {cache_server_url}")
        return self._self_cache_client

    def _update_metadata(self, response: CacheServerResponse) -> None:
        self._self_path_to_count = dict(response.get("pathToCount") or {})
        self._self_overrides = dict(response.get("overrides") or {})
        self._self_metadata_known = True

    async def _ensure_initialized(self) -> None:
        """Fetch the initial metadata. Runs at most once per proxy."""
        if self._self_initialized:
            return

        async with self._self_init_lock:
            if self._self_initialized:
                return

            client = self._get_cache_client()
            if client is not None:
                # index 0 of the empty path only carries metadata
                if response := await client.get_cached("", 0):
                    self._update_metadata(response)
                logger.debug(
                    f"Initialized with path_to_count: {self._self_path_to_count}"
                )
            self._self_initialized = True

    def get_span_path(self) -> str | None:
        """Dot-joined path of the current call, None outside any tracked call."""
        try:
            span_path = get_current_span_path(self._self_path_tracker)
        except Exception as e:
            logger.debug(f"Failed to get span path: {e}")
            return None
        if not span_path:
            return None
        return ".".join(span_path)

    def get_current_index_for_path(self, path: str) -> int:
        """Return the call index for `path` and advance the counter."""
        with self._self_index_lock:
            current_index = self._self_path_to_index.get(path, 0)
            self._self_path_to_index[path] = current_index + 1
        return current_index

    def is_exhausted(self, path: str, index: int) -> bool:
        if not self._self_metadata_known:
            return False
        return index >= self._self_path_to_count.get(path, 0)

    def get_overrides(self, path: str) -> RolloutPathOverride | None:
        return self._self_overrides.get(path)

    async def _lookup(self, path: str) -> tuple[CachedSpan, int] | None:
        await self._ensure_initialized()

        index = self.get_current_index_for_path(path)
        if self.is_exhausted(path, index):
            logger.debug(
                f"Path {path} exhausted at index {index} "
                f"(count={self._self_path_to_count.get(path, 0)}), calling live model"
            )
            return None

        client = self._get_cache_client()
        if client is None:
            return None

        response = await client.get_cached(path, index)
        if response is None:
            logger.debug(f"No cached response for {index}:{path}, calling live model")
            return None

        self._update_metadata(response)
        return response["span"], index

    def _mark_cached(self, index: int) -> None:
        set_current_span_attributes(
            {
                SPAN_TYPE: "CACHED",
                SPAN_ORIGINAL_TYPE: "LLM",
                ROLLOUT_SESSION_ID: get_rollout_session_id(),
                ROLLOUT_CACHE_INDEX: index,
                ROLLOUT_PATH_COUNT: index + 1,
            }
        )

    def _cached_content(
        self, cached_span: CachedSpan
    ) -> tuple[list[ContentBlock], str]:
        blocks = convert_to_content_blocks(cached_span.get("output"))
        attributes = cached_span.get("attributes") or {}
        finish_reason = attributes.get(RESPONSE_FINISH_REASON) or DEFAULT_FINISH_REASON
        return blocks, finish_reason

    def _prepare_live_call(
        self, path: str, options: LanguageModelCallOptions
    ) -> LanguageModelCallOptions:
        path_override = self.get_overrides(path)
        if not path_override:
            return options

        modified_options = apply_overrides(options, path_override)
        # record what was actually sent
        set_current_span_attributes(
            {
                PROMPT_MESSAGES: json_dumps(modified_options.get("prompt") or []),
                PROMPT_TOOLS: (
                    [json_dumps(tool) for tool in modified_options["tools"]]
                    if modified_options.get("tools")
                    else None
                ),
            }
        )
        return modified_options

    async def _resolve_path(self) -> str | None:
        if not is_rollout_mode():
            return None
        await self._ensure_initialized()
        path = self.get_span_path()
        if path is None:
            return None
        set_current_span_attributes({ROLLOUT_SESSION_ID: get_rollout_session_id()})
        return path

    async def generate(
        self, options: LanguageModelCallOptions
    ) -> LanguageModelGenerateResult:
        path = await self._resolve_path()
        if path is None:
            return await self.__wrapped__.generate(options)

        if cached := await self._lookup(path):
            cached_span, index = cached
            blocks, finish_reason = self._cached_content(cached_span)
            self._mark_cached(index)
            logger.debug(f"Serving {index}:{path} from cache")
            return {
                "content": content_blocks_to_wire(blocks),
                "finishReason": finish_reason,
                "usage": empty_usage(),
                "warnings": [],
            }

        return await self.__wrapped__.generate(self._prepare_live_call(path, options))

    async def stream(self, options: LanguageModelCallOptions) -> LanguageModelStreamResult:
        path = await self._resolve_path()
        if path is None:
            return await self.__wrapped__.stream(options)

        if cached := await self._lookup(path):
            cached_span, index = cached
            blocks, finish_reason = self._cached_content(cached_span)
            self._mark_cached(index)
            logger.debug(f"Streaming {index}:{path} from cache")
            return {
                "stream": self._self_stream_reconstructor.synthesize_stream(
                    blocks, finish_reason
                )
            }

        return await self.__wrapped__.stream(self._prepare_live_call(path, options))


def wrap_language_model(
    model: Any,
    path_tracker: PathTracker | None = None,
    cache_client: CacheClient | None = None,
) -> LanguageModelCacheProxy:
    """
    Wrap a language model so that calls made during a rollout session are
    replayed from the cache where possible.

    Args:
        model: Object with `async generate(options)` and `async stream(options)`
        path_tracker: Registry used to resolve paths of spans that do not
            expose their attributes
        cache_client: Client for the cache server. Created from the configured
            cache server address on first use if omitted.

    Returns:
        LanguageModelCacheProxy: The wrapped model
    """
    return LanguageModelCacheProxy(
        model, path_tracker=path_tracker, cache_client=cache_client
    )
