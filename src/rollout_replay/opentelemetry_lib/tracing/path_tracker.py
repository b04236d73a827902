import threading
import uuid
from typing import Sequence

from rollout_replay.sdk.types import SerializedSpanContext


def stable_span_id(span_id: int) -> str:
    return str(uuid.UUID(int=span_id))


class PathTracker:
    """
    Registry of execution paths for started spans.

    For every span it records the path (span names from the root of the call
    tree) and the parallel ids path (stable span ids), so that children can
    extend their parent's path. Entries live until `reset`.

    One instance is owned by the span processor and handed by reference to
    anything else that needs to resolve paths.
    """

    def __init__(self):
        self._lock = threading.RLock()
        self._span_id_to_path: dict[int, list[str]] = {}
        self._span_id_to_ids_path: dict[int, list[str]] = {}

    def on_call_start(
        self,
        span_id: int,
        parent_span_id: int | None,
        name: str,
        parent_path: Sequence[str] | None = None,
        parent_ids_path: Sequence[str] | None = None,
    ) -> tuple[list[str], list[str]]:
        """
        Compute and store the path and ids path of a starting span.

        An explicit `parent_path` (propagated from another process) wins over
        the registry. Without either the span is a root.

        Returns:
            tuple[list[str], list[str]]: (path, ids path) of the span
        """
        with self._lock:
            if parent_path:
                base_path = list(parent_path)
                base_ids_path = list(parent_ids_path or [])
            elif parent_span_id is not None and parent_span_id in self._span_id_to_path:
                base_path = self._span_id_to_path[parent_span_id]
                base_ids_path = self._span_id_to_ids_path.get(parent_span_id, [])
            else:
                base_path = []
                base_ids_path = []

            span_path = base_path + [name]
            span_ids_path = base_ids_path + [stable_span_id(span_id)]

            self._span_id_to_path[span_id] = span_path
            self._span_id_to_ids_path[span_id] = span_ids_path

        return list(span_path), list(span_ids_path)

    def get_path(self, span_id: int) -> list[str] | None:
        with self._lock:
            path = self._span_id_to_path.get(span_id)
        return list(path) if path is not None else None

    def get_ids_path(self, span_id: int) -> list[str] | None:
        with self._lock:
            ids_path = self._span_id_to_ids_path.get(span_id)
        return list(ids_path) if ids_path is not None else None

    def seed(self, span_id: int, path: Sequence[str], ids_path: Sequence[str]) -> None:
        """Register path information for a span started in another process."""
        with self._lock:
            self._span_id_to_path[span_id] = list(path)
            self._span_id_to_ids_path[span_id] = list(ids_path)

    def seed_from_span_context(
        self, span_context: SerializedSpanContext | dict | str
    ) -> SerializedSpanContext:
        context = SerializedSpanContext.deserialize(span_context)
        self.seed(context.span_id.int, context.span_path, context.span_ids_path)
        return context

    def reset(self) -> None:
        with self._lock:
            self._span_id_to_path = {}
            self._span_id_to_ids_path = {}

    def __len__(self) -> int:
        with self._lock:
            return len(self._span_id_to_path)
