from .sdk.client.asynchronous.async_client import AsyncRolloutTrackerClient
from .sdk.rollout import (
    CacheClient,
    CacheServer,
    LanguageModelCacheProxy,
    RolloutSessionClient,
    StreamReconstructor,
    wrap_language_model,
)
from .sdk.rollout_control import (
    clear_rollout_session,
    is_rollout_mode,
    set_rollout_session,
)
from .sdk.types import SerializedSpanContext
from .opentelemetry_lib.tracing.path_tracker import PathTracker
from .opentelemetry_lib.tracing.processor import RolloutSpanProcessor

__all__ = [
    "AsyncRolloutTrackerClient",
    "CacheClient",
    "CacheServer",
    "LanguageModelCacheProxy",
    "PathTracker",
    "RolloutSessionClient",
    "RolloutSpanProcessor",
    "SerializedSpanContext",
    "StreamReconstructor",
    "clear_rollout_session",
    "is_rollout_mode",
    "set_rollout_session",
    "wrap_language_model",
]
