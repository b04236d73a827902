"""
Rollout module for deterministic replay of agent model calls.

This module provides the cache server, its client, and the cache-aware
language model proxy, plus the best-effort session reporting channel.
"""

from .cache_client import CacheClient
from .cache_server import CacheServer
from .language_model import LanguageModelCacheProxy, wrap_language_model
from .session_client import RolloutSessionClient
from .streaming import StreamReconstructor

__all__ = [
    "CacheClient",
    "CacheServer",
    "LanguageModelCacheProxy",
    "RolloutSessionClient",
    "StreamReconstructor",
    "wrap_language_model",
]
