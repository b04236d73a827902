"""Rollout session resource for the asynchronous tracker client."""

from typing import Any

from rollout_replay.sdk.client.asynchronous.resources.base import BaseAsyncResource
from rollout_replay.sdk.client.types import SpanStartData
from rollout_replay.sdk.utils import format_id

SPAN_UPDATE_TIMEOUT_SECONDS = 5.0


class AsyncRolloutSessions(BaseAsyncResource):
    """
    Reports call-tree progress of a rollout session to the remote tracker.

    Session lifecycle (PENDING, RUNNING, FINISHED, STOPPED) is owned by the
    tracker; this resource only pushes span updates.
    """

    async def send_span_update(self, session_id: str, span_data: SpanStartData) -> None:
        """
        Send a span-start update for a rollout session.

        Args:
            session_id: Id of the rollout session
            span_data: Span data to send

        Raises:
            httpx.HTTPStatusError: If the tracker responds with a non-2xx status
            httpx.HTTPError: On transport failures
        """
        response = await self._client.patch(
            f"{self._base_url}/v1/rollouts/{session_id}/update",
            headers=self._headers(),
            json=span_update_payload(span_data),
            timeout=SPAN_UPDATE_TIMEOUT_SECONDS,
        )
        response.raise_for_status()


def span_update_payload(span_data: SpanStartData) -> dict[str, Any]:
    return {
        "type": "spanStart",
        "spanId": format_id(span_data["span_id"]),
        "traceId": format_id(span_data["trace_id"]),
        "parentSpanId": (
            format_id(span_data["parent_span_id"])
            if span_data["parent_span_id"] is not None
            else None
        ),
        "name": span_data["name"],
        "startTime": span_data["start_time"].isoformat(),
        "attributes": span_data["attributes"],
        "spanType": span_data["span_type"],
    }
