"""
Best-effort reporting of call-tree progress to the remote session tracker.

Every span started while a rollout session is configured is reported as a
`spanStart` update. Reports are detached: they run on the background loop,
their result is only logged, and no failure ever reaches the traced code.
"""

import concurrent.futures
import datetime
import uuid
from typing import Any, Mapping

from opentelemetry.sdk.trace import ReadableSpan

from rollout_replay.opentelemetry_lib.tracing.attributes import (
    AI_MODEL_ID,
    GEN_AI_REQUEST_MODEL,
    GEN_AI_RESPONSE_MODEL,
    GEN_AI_SYSTEM,
    PARENT_SPAN_IDS_PATH,
    PARENT_SPAN_PATH,
    SPAN_IDS_PATH,
    SPAN_INSTRUMENTATION_SOURCE,
    SPAN_LANGUAGE_VERSION,
    SPAN_ORIGINAL_TYPE,
    SPAN_PATH,
    SPAN_SDK_VERSION,
    SPAN_TYPE,
    TOOL_CALL_ID,
    TOOL_CALL_NAME,
    TOOL_CALL_SPAN_NAME,
)
from rollout_replay.sdk.client.asynchronous.async_client import (
    AsyncRolloutTrackerClient,
)
from rollout_replay.sdk.client.types import SpanStartData
from rollout_replay.sdk.log import get_default_logger
from rollout_replay.sdk.rollout import background
from rollout_replay.sdk.rollout_control import get_rollout_session_id
from rollout_replay.sdk.types import SpanType

logger = get_default_logger(__name__)

START_EVENT_ATTRIBUTES = (
    SPAN_PATH,
    SPAN_TYPE,
    SPAN_IDS_PATH,
    PARENT_SPAN_PATH,
    PARENT_SPAN_IDS_PATH,
    SPAN_INSTRUMENTATION_SOURCE,
    SPAN_SDK_VERSION,
    SPAN_LANGUAGE_VERSION,
    GEN_AI_REQUEST_MODEL,
    GEN_AI_RESPONSE_MODEL,
    GEN_AI_SYSTEM,
    SPAN_ORIGINAL_TYPE,
    AI_MODEL_ID,
)

LLM_ATTRIBUTE_PREFIXES = ("gen_ai.", "llm.")


def infer_span_type(name: str, attributes: Mapping[str, Any]) -> SpanType:
    """
    Classify a span from its name and attributes.

    An explicit span type wins. Generation attributes mark a model call, a
    tool-call name or tool-call attributes mark a tool call.
    """
    if span_type := attributes.get(SPAN_TYPE):
        return span_type

    if attributes.get(GEN_AI_SYSTEM) or any(
        key.startswith(LLM_ATTRIBUTE_PREFIXES) for key in attributes
    ):
        return "LLM"

    if (
        name == TOOL_CALL_SPAN_NAME
        or attributes.get(TOOL_CALL_ID)
        or attributes.get(TOOL_CALL_NAME)
    ):
        return "TOOL"

    return "DEFAULT"


def _to_json_value(value: Any) -> Any:
    # OpenTelemetry stores sequence attributes as tuples
    if isinstance(value, (tuple, list)):
        return list(value)
    return value


def attributes_for_start_event(
    name: str, attributes: Mapping[str, Any]
) -> dict[str, Any]:
    """Allow-listed subset of span attributes sent with a span-start update."""
    result = {
        key: _to_json_value(attributes[key])
        for key in START_EVENT_ATTRIBUTES
        if attributes.get(key) is not None
    }

    if GEN_AI_REQUEST_MODEL in result and GEN_AI_RESPONSE_MODEL not in result:
        result[GEN_AI_RESPONSE_MODEL] = result[GEN_AI_REQUEST_MODEL]

    result[SPAN_TYPE] = infer_span_type(name, attributes)
    return result


def _ns_to_datetime(ns: int | None) -> datetime.datetime:
    if ns is None:
        return datetime.datetime.now(datetime.timezone.utc)
    return datetime.datetime.fromtimestamp(ns / 1e9, tz=datetime.timezone.utc)


def span_start_data(span: ReadableSpan) -> SpanStartData:
    span_context = span.get_span_context()
    attributes = dict(span.attributes or {})
    return {
        "name": span.name,
        "span_id": uuid.UUID(int=span_context.span_id),
        "trace_id": uuid.UUID(int=span_context.trace_id),
        "parent_span_id": (
            uuid.UUID(int=span.parent.span_id) if span.parent is not None else None
        ),
        "start_time": _ns_to_datetime(span.start_time),
        "attributes": attributes_for_start_event(span.name, attributes),
        "span_type": infer_span_type(span.name, attributes),
    }


class RolloutSessionClient:
    """
    Sends span-start updates for the configured rollout session.

    The tracker client is created on first use, from the environment unless
    one is given. If it cannot be created (no API key), reporting is
    disabled with a single warning.
    """

    def __init__(
        self,
        tracker_client: AsyncRolloutTrackerClient | None = None,
        session_id: str | None = None,
    ):
        self._tracker_client = tracker_client
        self._session_id = session_id
        self._disabled = False
        self._owns_tracker_client = False

    @property
    def session_id(self) -> str | None:
        return self._session_id or get_rollout_session_id()

    def _get_tracker_client(self) -> AsyncRolloutTrackerClient | None:
        if self._tracker_client is None and not self._disabled:
            try:
                self._tracker_client = AsyncRolloutTrackerClient()
            except ValueError as e:
                logger.warning(f"Rollout session updates are disabled: {e}")
                self._disabled = True
            else:
                self._owns_tracker_client = True
                background.register_shutdown_hook(self._close_tracker_client)
        return self._tracker_client

    def report_span_start(
        self, span: ReadableSpan
    ) -> concurrent.futures.Future | None:
        """
        Report a started span without waiting for the result.

        Returns:
            concurrent.futures.Future | None: The detached send, None if
            nothing was sent
        """
        session_id = self.session_id
        if not session_id:
            return None

        tracker_client = self._get_tracker_client()
        if tracker_client is None:
            return None

        try:
            data = span_start_data(span)
        except Exception as e:
            logger.debug(f"Failed to build span update for {span.name}: {e}")
            return None

        return background.submit(self._send(tracker_client, session_id, data))

    async def _send(
        self,
        tracker_client: AsyncRolloutTrackerClient,
        session_id: str,
        data: SpanStartData,
    ) -> None:
        try:
            await tracker_client.rollouts.send_span_update(session_id, data)
        except Exception as e:
            logger.debug(f"Failed to send rollout span update: {e}")

    def flush(self, timeout: float = background.ASYNC_SEND_TIMEOUT_SECONDS) -> bool:
        """Wait for pending span updates. False if some did not finish in time."""
        return background.wait_for_pending_sends(timeout)

    async def _close_tracker_client(self) -> None:
        # a tracker client passed in by the caller is theirs to close
        if self._owns_tracker_client and self._tracker_client is not None:
            tracker_client = self._tracker_client
            self._tracker_client = None
            self._owns_tracker_client = False
            await tracker_client.close()

    def shutdown(self, timeout: float = background.ASYNC_SEND_TIMEOUT_SECONDS) -> bool:
        """
        Wait for pending span updates, then close the tracker client this
        session client created.

        Returns:
            bool: False if some updates did not finish in time
        """
        flushed = self.flush(timeout)
        if self._owns_tracker_client:
            future = background.submit(self._close_tracker_client())
            try:
                future.result(timeout=timeout)
            except Exception as e:
                logger.debug(f"Failed to close rollout tracker client: {e}")
        return flushed
