"""
Rebuild the stream a live streaming call would have produced from a flat list
of content blocks.

Each block is emitted as a start / single delta / end group, so a replayed
stream is structurally identical to a live one but arrives all at once.
"""

from typing import Any, AsyncIterator, Iterable, Sequence

from rollout_replay.sdk.rollout.content import (
    ContentBlock,
    ReasoningBlock,
    TextBlock,
    ToolCallBlock,
    content_blocks_adapter,
)
from rollout_replay.sdk.rollout.types import (
    LanguageModelStreamPart,
    LanguageModelUsage,
)


def empty_usage() -> LanguageModelUsage:
    """Usage reported for replayed calls; no tokens were spent."""
    return {"inputTokens": 0, "outputTokens": 0, "totalTokens": 0}


class StreamReconstructor:
    def synthesize(
        self,
        content: Sequence[ContentBlock | dict[str, Any]],
        finish_reason: str = "stop",
        usage: LanguageModelUsage | dict[str, Any] | None = None,
    ) -> list[LanguageModelStreamPart]:
        """
        Build the ordered stream parts for the given content.

        Args:
            content: Content blocks, as models or in their wire form
            finish_reason: Finish reason for the closing `finish` part
            usage: Usage for the closing `finish` part, zero usage if None

        Returns:
            list[LanguageModelStreamPart]: `stream-start`, one group per
            block, then exactly one `finish`
        """
        blocks = self._normalize(content)
        parts: list[LanguageModelStreamPart] = [{"type": "stream-start", "warnings": []}]

        text_index = 0
        tool_index = 0
        reasoning_index = 0

        for block in blocks:
            if isinstance(block, TextBlock):
                part_id = f"text-{text_index}"
                text_index += 1
                parts.append({"type": "text-start", "id": part_id})
                parts.append({"type": "text-delta", "id": part_id, "delta": block.text})
                parts.append({"type": "text-end", "id": part_id})
            elif isinstance(block, ToolCallBlock):
                part_id = f"tool-{tool_index}"
                tool_index += 1
                parts.append(
                    {
                        "type": "tool-input-start",
                        "id": part_id,
                        "toolName": block.tool_name,
                    }
                )
                parts.append(
                    {"type": "tool-input-delta", "id": part_id, "delta": block.input}
                )
                parts.append({"type": "tool-input-end", "id": part_id})
                parts.append(
                    {
                        "type": "tool-call",
                        "toolCallId": block.tool_call_id,
                        "toolName": block.tool_name,
                        "input": block.input,
                    }
                )
            elif isinstance(block, ReasoningBlock):
                part_id = f"reasoning-{reasoning_index}"
                reasoning_index += 1
                parts.append({"type": "reasoning-start", "id": part_id})
                parts.append(
                    {"type": "reasoning-delta", "id": part_id, "delta": block.text}
                )
                parts.append({"type": "reasoning-end", "id": part_id})

        parts.append(
            {
                "type": "finish",
                "finishReason": finish_reason,
                "usage": usage if usage is not None else empty_usage(),
            }
        )
        return parts

    def synthesize_stream(
        self,
        content: Sequence[ContentBlock | dict[str, Any]],
        finish_reason: str = "stop",
        usage: LanguageModelUsage | dict[str, Any] | None = None,
    ) -> "CachedStream":
        return CachedStream(self.synthesize(content, finish_reason, usage))

    @staticmethod
    def _normalize(
        content: Sequence[ContentBlock | dict[str, Any]],
    ) -> list[ContentBlock]:
        if all(
            isinstance(block, (TextBlock, ToolCallBlock, ReasoningBlock))
            for block in content
        ):
            return list(content)
        return content_blocks_adapter.validate_python(
            [
                block.to_wire() if hasattr(block, "to_wire") else block
                for block in content
            ]
        )


class CachedStream:
    """
    Async iterator over pre-built stream parts.

    Can be iterated once, like a live stream. `parts` exposes everything for
    callers that want to inspect the replay without consuming it.
    """

    def __init__(self, parts: Iterable[LanguageModelStreamPart]):
        self.parts = list(parts)
        self._position = 0

    def __aiter__(self) -> AsyncIterator[LanguageModelStreamPart]:
        return self

    async def __anext__(self) -> LanguageModelStreamPart:
        if self._position >= len(self.parts):
            raise StopAsyncIteration
        part = self.parts[self._position]
        self._position += 1
        return part
