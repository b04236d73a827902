"""
Rollout control module for resolving rollout configuration.

A rollout is active only when both a session id and a cache server address
resolve. Values set in-process through `set_rollout_session` win over the
environment (and `.env` file), which is how a worker process spawned by the
harness receives them.
"""

from contextvars import ContextVar
from typing import Optional

from rollout_replay.sdk.utils import from_env

SESSION_ID_ENV = "ROLLOUT_SESSION_ID"
CACHE_SERVER_ADDRESS_ENV = "ROLLOUT_CACHE_SERVER_ADDRESS"
TRACKER_BASE_URL_ENV = "ROLLOUT_TRACKER_BASE_URL"
TRACKER_PORT_ENV = "ROLLOUT_TRACKER_PORT"
PROJECT_API_KEY_ENV = "ROLLOUT_PROJECT_API_KEY"

DEFAULT_TRACKER_BASE_URL = "https://api.lmnr.ai"

ROLLOUT_SESSION_ID: ContextVar[Optional[str]] = ContextVar(
    "__rollout_session_id", default=None
)

CACHE_SERVER_URL: ContextVar[Optional[str]] = ContextVar(
    "__rollout_cache_server_url", default=None
)


def get_rollout_session_id() -> Optional[str]:
    """
    Get the current rollout session ID.

    First checks the ContextVar, falls back to the environment.

    Returns:
        Optional[str]: Session ID if set, None otherwise
    """
    if session_id := ROLLOUT_SESSION_ID.get():
        return session_id
    return from_env(SESSION_ID_ENV)


def get_cache_server_url() -> Optional[str]:
    """
    Get the cache server URL.

    First checks the ContextVar, falls back to the environment.

    Returns:
        Optional[str]: Cache server URL if set, None otherwise
    """
    if url := CACHE_SERVER_URL.get():
        return url
    return from_env(CACHE_SERVER_ADDRESS_ENV)


def is_rollout_mode() -> bool:
    """
    Check if calls should be intercepted.

    Returns:
        bool: True if both a session id and a cache server address resolve
    """
    return bool(get_rollout_session_id()) and bool(get_cache_server_url())


def set_rollout_session(session_id: str, cache_server_url: str | None = None) -> None:
    ROLLOUT_SESSION_ID.set(session_id)
    if cache_server_url is not None:
        CACHE_SERVER_URL.set(cache_server_url)


def clear_rollout_session() -> None:
    ROLLOUT_SESSION_ID.set(None)
    CACHE_SERVER_URL.set(None)


def get_tracker_base_url() -> str:
    return from_env(TRACKER_BASE_URL_ENV) or DEFAULT_TRACKER_BASE_URL


def get_tracker_port() -> int | None:
    port = from_env(TRACKER_PORT_ENV)
    return int(port) if port else None


def get_project_api_key() -> str | None:
    return from_env(PROJECT_API_KEY_ENV)
