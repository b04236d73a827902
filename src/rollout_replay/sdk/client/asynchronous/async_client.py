"""
Rollout tracker HTTP client. Used to report rollout session progress.
"""

import httpx
import re
from typing import TypeVar
from types import TracebackType

from rollout_replay.sdk.client.asynchronous.resources import AsyncRolloutSessions
from rollout_replay.sdk.rollout_control import (
    PROJECT_API_KEY_ENV,
    get_project_api_key,
    get_tracker_base_url,
    get_tracker_port,
)

_T = TypeVar("_T", bound="AsyncRolloutTrackerClient")


class AsyncRolloutTrackerClient:
    __base_url: str
    __project_api_key: str
    __client: httpx.AsyncClient | None = None

    def __init__(
        self,
        base_url: str | None = None,
        project_api_key: str | None = None,
        port: int | None = None,
        timeout: int = 30,
    ):
        """Initializer for the rollout tracker HTTP client.

        Args:
            base_url (str | None): base URL of the tracker API. If not
                provided, the ROLLOUT_TRACKER_BASE_URL environment variable is
                used or we default to "https://api.lmnr.ai".
            project_api_key (str | None): project API key. If not provided,
                the ROLLOUT_PROJECT_API_KEY environment variable is used.
            port (int | None, optional): port of the tracker HTTP server.\
                Overrides any port in the base URL. Falls back to the
                ROLLOUT_TRACKER_PORT environment variable, then to 443.
            timeout (int, optional): global timeout seconds for the HTTP client.\
                Defaults to 30.
        """
        base_url = base_url or get_tracker_base_url()
        if port is None:
            port = get_tracker_port()
        # If port is already in the base URL, use it as is
        if match := re.search(r":(\d{1,5})$", base_url):
            base_url = base_url[: -len(match.group(0))]
            if port is None:
                port = int(match.group(1))

        base_url = base_url.rstrip("/")
        self.__base_url = f"{base_url}:{port or 443}"
        self.__project_api_key = project_api_key or get_project_api_key()
        if not self.__project_api_key:
            raise ValueError(
                f"Project API key is not set. Please set the {PROJECT_API_KEY_ENV} "
                "environment variable or pass project_api_key to the initializer."
            )

        self.__client = httpx.AsyncClient(headers=self._headers(), timeout=timeout)

        self.__rollouts = AsyncRolloutSessions(
            self.__client, self.__base_url, self.__project_api_key
        )

    @property
    def base_url(self) -> str:
        return self.__base_url

    @property
    def rollouts(self) -> AsyncRolloutSessions:
        """Get the rollout sessions resource.

        Returns:
            AsyncRolloutSessions: The rollout sessions resource instance.
        """
        return self.__rollouts

    @property
    def is_closed(self) -> bool:
        return self.__client is None or self.__client.is_closed

    async def close(self) -> None:
        """Close the underlying HTTPX client.

        The client will *not* be usable after this.
        """
        if self.__client is not None:
            await self.__client.aclose()

    async def __aenter__(self: _T) -> _T:
        return self

    async def __aexit__(
        self,
        exc_type: type[BaseException] | None,
        exc: BaseException | None,
        exc_tb: TracebackType | None,
    ) -> None:
        await self.close()

    def _headers(self) -> dict[str, str]:
        assert self.__project_api_key is not None, "Project API key is not set"
        return {
            "Authorization": "Bearer " + self.__project_api_key,
            "Content-Type": "application/json",
            "Accept": "application/json",
        }
