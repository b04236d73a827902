from typing import Any, Mapping

from opentelemetry import trace
from opentelemetry.util.types import AttributeValue

from rollout_replay.opentelemetry_lib.tracing.attributes import (
    SPAN_IDS_PATH,
    SPAN_PATH,
)
from rollout_replay.opentelemetry_lib.tracing.path_tracker import PathTracker


def _current_span() -> trace.Span | None:
    span = trace.get_current_span()
    if span is None or not span.get_span_context().is_valid:
        return None
    return span


def get_current_span_path(path_tracker: PathTracker | None = None) -> list[str] | None:
    """
    Path of the active span, None outside any tracked span.

    Reads the path attribute written at span start, and falls back to the
    registry for spans that do not expose their attributes.
    """
    span = _current_span()
    if span is None:
        return None

    attributes = getattr(span, "attributes", None) or {}
    if path := attributes.get(SPAN_PATH):
        return list(path)

    if path_tracker is not None:
        return path_tracker.get_path(span.get_span_context().span_id)
    return None


def get_current_span_ids_path(
    path_tracker: PathTracker | None = None,
) -> list[str] | None:
    span = _current_span()
    if span is None:
        return None

    attributes = getattr(span, "attributes", None) or {}
    if ids_path := attributes.get(SPAN_IDS_PATH):
        return list(ids_path)

    if path_tracker is not None:
        return path_tracker.get_ids_path(span.get_span_context().span_id)
    return None


def set_current_span_attributes(attributes: Mapping[str, Any]) -> None:
    """Set attributes on the active span if it is recording; None values are skipped."""
    span = _current_span()
    if span is None or not span.is_recording():
        return
    values: dict[str, AttributeValue] = {
        key: value for key, value in attributes.items() if value is not None
    }
    if values:
        span.set_attributes(values)
