import datetime
import uuid
from typing import Any, TypedDict

from rollout_replay.sdk.types import SpanType


class SpanStartData(TypedDict):
    name: str
    span_id: uuid.UUID
    parent_span_id: uuid.UUID | None
    trace_id: uuid.UUID
    start_time: datetime.datetime
    attributes: dict[str, Any]
    span_type: SpanType
