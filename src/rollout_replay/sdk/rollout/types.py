from typing import Any, AsyncIterator, Literal, TypedDict
from typing_extensions import NotRequired


class LanguageModelTextBlock(TypedDict):
    type: Literal["text"]
    text: str


class LanguageModelToolDefinitionOverride(TypedDict):
    name: str
    description: NotRequired[str | None]
    parameters: NotRequired[dict[str, Any] | None]


class RolloutPathOverride(TypedDict):
    system: NotRequired[str | list[LanguageModelTextBlock] | None]
    tools: NotRequired[list[LanguageModelToolDefinitionOverride] | None]


class CachedSpan(TypedDict):
    name: str
    input: str
    output: str
    attributes: dict[str, Any]


class CacheMetadata(TypedDict):
    pathToCount: dict[str, int]
    overrides: NotRequired[dict[str, RolloutPathOverride] | None]


class CacheServerResponse(TypedDict):
    span: CachedSpan
    pathToCount: dict[str, int]
    overrides: NotRequired[dict[str, RolloutPathOverride] | None]


class CachedRequest(TypedDict):
    path: str
    index: int


# Shapes of the wrapped language model capability


class LanguageModelMessage(TypedDict):
    role: Literal["system", "user", "assistant", "tool"]
    content: Any


class LanguageModelFunctionTool(TypedDict):
    type: Literal["function"]
    name: str
    description: NotRequired[str | None]
    inputSchema: dict[str, Any]


class LanguageModelCallOptions(TypedDict, total=False):
    prompt: list[LanguageModelMessage]
    tools: list[LanguageModelFunctionTool | dict[str, Any]]


class LanguageModelUsage(TypedDict):
    inputTokens: int
    outputTokens: int
    totalTokens: int


class LanguageModelGenerateResult(TypedDict):
    content: list[dict[str, Any]]
    finishReason: str
    usage: LanguageModelUsage | dict[str, Any]
    warnings: list[Any]


class LanguageModelStreamResult(TypedDict):
    stream: AsyncIterator["LanguageModelStreamPart"]


# Stream parts, in the order a live streaming call emits them


class StreamStartPart(TypedDict):
    type: Literal["stream-start"]
    warnings: list[Any]


class TextStreamPart(TypedDict):
    type: Literal["text-start", "text-delta", "text-end"]
    id: str
    delta: NotRequired[str]


class ReasoningStreamPart(TypedDict):
    type: Literal["reasoning-start", "reasoning-delta", "reasoning-end"]
    id: str
    delta: NotRequired[str]


class ToolInputStreamPart(TypedDict):
    type: Literal["tool-input-start", "tool-input-delta", "tool-input-end"]
    id: str
    toolName: NotRequired[str]
    delta: NotRequired[str]


class ToolCallStreamPart(TypedDict):
    type: Literal["tool-call"]
    toolCallId: str
    toolName: str
    input: str


class FinishStreamPart(TypedDict):
    type: Literal["finish"]
    finishReason: str
    usage: LanguageModelUsage | dict[str, Any]


LanguageModelStreamPart = (
    StreamStartPart
    | TextStreamPart
    | ReasoningStreamPart
    | ToolInputStreamPart
    | ToolCallStreamPart
    | FinishStreamPart
)
