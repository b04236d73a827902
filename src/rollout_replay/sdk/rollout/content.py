"""
Normalized content blocks and conversion of cached span output into them.

Cached output is whatever the recording side serialized: a plain string, a
list of content items, or a list of role/content turns whose content may
itself be a JSON string. Conversion never raises. Anything that is not
recognized is kept as a `RawBlock` and finally rendered as text.
"""

from typing import Annotated, Any, Literal, Union

from pydantic import BaseModel, ConfigDict, Field, TypeAdapter
from pydantic.alias_generators import to_camel

from rollout_replay.sdk.log import get_default_logger
from rollout_replay.sdk.utils import json_dumps, try_parse_json

logger = get_default_logger(__name__)

TOOL_CALL_TYPES = ("tool-call", "tool_call")


class _Block(BaseModel):
    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True)

    def to_wire(self) -> dict[str, Any]:
        return self.model_dump(by_alias=True)


class TextBlock(_Block):
    type: Literal["text"] = "text"
    text: str = ""


class ToolCallBlock(_Block):
    type: Literal["tool-call"] = "tool-call"
    tool_call_id: str = ""
    tool_name: str = ""
    # JSON-encoded arguments, exactly as a live stream delivers them
    input: str = "{}"


class ReasoningBlock(_Block):
    type: Literal["reasoning"] = "reasoning"
    text: str = ""


class RawBlock(_Block):
    """An unrecognized item. Never leaves this module, see `degrade`."""

    type: Literal["raw"] = "raw"
    value: Any = None

    def degrade(self) -> TextBlock:
        if isinstance(self.value, str):
            return TextBlock(text=self.value)
        return TextBlock(text=json_dumps(self.value))


ContentBlock = Annotated[
    Union[TextBlock, ToolCallBlock, ReasoningBlock],
    Field(discriminator="type"),
]

content_blocks_adapter: TypeAdapter[list[ContentBlock]] = TypeAdapter(list[ContentBlock])


def _first_present(item: dict[str, Any], *keys: str) -> Any:
    for key in keys:
        if item.get(key) is not None:
            return item[key]
    return None


def _as_text(value: Any) -> str:
    if value is None:
        return ""
    return value if isinstance(value, str) else json_dumps(value)


def _stringify_tool_input(value: Any) -> str:
    if value is None:
        return "{}"
    if isinstance(value, str):
        # already serialized arguments
        return value
    return json_dumps(value)


def parse_content_item(item: Any) -> TextBlock | ToolCallBlock | ReasoningBlock | RawBlock:
    if not isinstance(item, dict):
        return RawBlock(value=item)

    item_type = item.get("type")
    if item_type == "text":
        return TextBlock(text=_as_text(item.get("text")))
    if item_type in TOOL_CALL_TYPES:
        call_id = _first_present(item, "toolCallId", "id")
        name = _first_present(item, "toolName", "name")
        return ToolCallBlock(
            tool_call_id=str(call_id) if call_id is not None else "",
            tool_name=str(name) if name is not None else "",
            input=_stringify_tool_input(_first_present(item, "input", "arguments")),
        )
    if item_type == "reasoning":
        return ReasoningBlock(text=_as_text(item.get("text")))
    return RawBlock(value=item)


def _parse_turn_content(content: Any) -> list[Any]:
    parsed = try_parse_json(content)
    if isinstance(parsed, list):
        return [parse_content_item(part) for part in parsed]
    if isinstance(parsed, str):
        return [TextBlock(text=parsed)]
    return [parse_content_item(parsed)]


def _is_turn(item: Any) -> bool:
    return isinstance(item, dict) and bool(item.get("role")) and bool(item.get("content"))


def convert_to_content_blocks(output: Any) -> list[ContentBlock]:
    """
    Convert a cached output value into content blocks.

    Args:
        output: The cached output, either still serialized or already parsed

    Returns:
        list[ContentBlock]: Text, tool-call and reasoning blocks in order
    """
    parsed = try_parse_json(output)

    if isinstance(parsed, str):
        return [TextBlock(text=parsed)]

    items = parsed if isinstance(parsed, list) else [parsed]
    blocks: list[Any] = []
    for item in items:
        if _is_turn(item):
            blocks.extend(_parse_turn_content(item["content"]))
        else:
            blocks.append(parse_content_item(item))

    result: list[ContentBlock] = []
    for block in blocks:
        if isinstance(block, RawBlock):
            logger.debug("Unrecognized cached content item, keeping it as text")
            result.append(block.degrade())
        else:
            result.append(block)
    return result


def content_blocks_to_wire(blocks: list[ContentBlock]) -> list[dict[str, Any]]:
    return [block.to_wire() for block in blocks]
