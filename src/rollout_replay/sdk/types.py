from __future__ import annotations

import json
import logging
import uuid
from typing import Any, Literal

from pydantic import BaseModel, Field

SpanType = Literal["DEFAULT", "LLM", "TOOL", "CACHED"]


class SerializedSpanContext(BaseModel):
    """
    A span context handed from one process to another so that the receiving
    process can continue the same call tree. `trace_id` and `span_id` are
    stored as UUIDs rather than OpenTelemetry integers, and the path
    information of the span is carried along so that children started in the
    receiving process resolve the same execution path.
    """

    trace_id: uuid.UUID
    span_id: uuid.UUID
    is_remote: bool = Field(default=True)
    span_path: list[str] = Field(default=[])
    span_ids_path: list[str] = Field(default=[])  # stringified UUIDs

    def __str__(self) -> str:
        return self.model_dump_json()

    @classmethod
    def deserialize(
        cls,
        span_context: SerializedSpanContext | dict[str, Any] | str,
        logger: logging.Logger | None = None,
    ) -> SerializedSpanContext:
        if logger is None:
            logger = logging.getLogger(__name__)

        if isinstance(span_context, SerializedSpanContext):
            return span_context
        elif isinstance(span_context, dict):
            # accept the camelCase keys some producers emit
            normalized = {
                "trace_id": span_context.get("trace_id")
                or span_context.get("traceId"),
                "span_id": span_context.get("span_id") or span_context.get("spanId"),
                "is_remote": span_context.get(
                    "is_remote", span_context.get("isRemote", True)
                ),
                "span_path": span_context.get("span_path")
                or span_context.get("spanPath")
                or [],
                "span_ids_path": span_context.get("span_ids_path")
                or span_context.get("spanIdsPath")
                or [],
            }
            return cls.model_validate(normalized)
        elif isinstance(span_context, str):
            try:
                return cls.model_validate_json(span_context)
            except Exception:
                logger.debug("Span context is not in snake_case, trying camelCase")
                return cls.deserialize(json.loads(span_context), logger)
        raise ValueError("Invalid span context given")
