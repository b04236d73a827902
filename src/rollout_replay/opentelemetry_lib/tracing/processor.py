import logging
import threading
from typing import Sequence

from opentelemetry.sdk.trace.export import (
    SpanProcessor,
    SpanExporter,
    BatchSpanProcessor,
    SimpleSpanProcessor,
)
from opentelemetry.sdk.trace import ReadableSpan, Span
from opentelemetry.context import Context

from rollout_replay.opentelemetry_lib.tracing.attributes import (
    PARENT_SPAN_IDS_PATH,
    PARENT_SPAN_PATH,
    ROLLOUT_SESSION_ID,
    SPAN_IDS_PATH,
    SPAN_INSTRUMENTATION_SOURCE,
    SPAN_LANGUAGE_VERSION,
    SPAN_PATH,
    SPAN_SDK_VERSION,
)
from rollout_replay.opentelemetry_lib.tracing.path_tracker import PathTracker
from rollout_replay.sdk.log import get_default_logger
from rollout_replay.sdk.rollout.session_client import RolloutSessionClient
from rollout_replay.sdk.rollout_control import get_rollout_session_id
from rollout_replay.version import PYTHON_VERSION, __version__


class RolloutSpanProcessor(SpanProcessor):
    """
    Span lifecycle hook that assigns execution paths.

    On start, every span gets its path and ids path (computed by the owned
    `PathTracker`) written onto its attributes before any child can start.
    When a rollout session is configured the span is tagged with the session
    id and reported to the session tracker. Everything else is delegated to
    the wrapped processor, if any.
    """

    instance: SpanProcessor | None
    logger: logging.Logger
    path_tracker: PathTracker
    session_client: RolloutSessionClient
    _instance_lock: threading.RLock

    def __init__(
        self,
        path_tracker: PathTracker | None = None,
        exporter: SpanExporter | None = None,
        span_processor: SpanProcessor | None = None,
        disable_batch: bool = False,
        max_export_batch_size: int = 64,
        session_client: RolloutSessionClient | None = None,
    ):
        self._instance_lock = threading.RLock()
        self.logger = get_default_logger(__name__)
        self.path_tracker = path_tracker if path_tracker is not None else PathTracker()
        self.session_client = (
            session_client if session_client is not None else RolloutSessionClient()
        )
        self.exporter = exporter
        if span_processor is not None:
            self.instance = span_processor
        elif exporter is not None:
            self.instance = (
                SimpleSpanProcessor(exporter)
                if disable_batch
                else BatchSpanProcessor(
                    exporter, max_export_batch_size=max_export_batch_size
                )
            )
        else:
            self.instance = None

    def on_start(self, span: Span, parent_context: Context | None = None):
        attributes = span.attributes or {}
        span_path, span_ids_path = self.path_tracker.on_call_start(
            span.get_span_context().span_id,
            span.parent.span_id if span.parent else None,
            span.name,
            parent_path=list(attributes.get(PARENT_SPAN_PATH, tuple())) or None,
            parent_ids_path=list(attributes.get(PARENT_SPAN_IDS_PATH, tuple())) or None,
        )
        span.set_attribute(SPAN_PATH, span_path)
        span.set_attribute(SPAN_IDS_PATH, span_ids_path)

        span.set_attribute(SPAN_INSTRUMENTATION_SOURCE, "python")
        span.set_attribute(SPAN_SDK_VERSION, __version__)
        span.set_attribute(SPAN_LANGUAGE_VERSION, f"python@{PYTHON_VERSION}")

        if session_id := get_rollout_session_id():
            span.set_attribute(ROLLOUT_SESSION_ID, session_id)
            try:
                self.session_client.report_span_start(span)
            except Exception as e:
                self.logger.debug(f"Failed to report span start: {e}")

        if self.instance is not None:
            with self._instance_lock:
                self.instance.on_start(span, parent_context)

    def on_end(self, span: ReadableSpan):
        if self.instance is not None:
            with self._instance_lock:
                self.instance.on_end(span)

    def force_flush(self, timeout_millis: int = 30000) -> bool:
        if self.instance is None:
            return True
        with self._instance_lock:
            return self.instance.force_flush(timeout_millis)

    def shutdown(self):
        if self.instance is not None:
            with self._instance_lock:
                self.instance.shutdown()
        self.session_client.shutdown()

    def clear(self):
        self.path_tracker.reset()

    def set_parent_path_info(
        self, span_id: int, path: Sequence[str], ids_path: Sequence[str]
    ) -> None:
        """Seed path information for a parent span started in another process."""
        self.path_tracker.seed(span_id, path, ids_path)
