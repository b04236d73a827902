"""
Per-path request overrides applied before a call goes to the live model.

- system: replaces every system message with a single leading one
- tools: merged into the request's tool list by name
"""

from typing import Any

from rollout_replay.sdk.log import get_default_logger
from rollout_replay.sdk.rollout.types import (
    LanguageModelCallOptions,
    LanguageModelMessage,
    LanguageModelTextBlock,
    LanguageModelToolDefinitionOverride,
    RolloutPathOverride,
)

logger = get_default_logger(__name__)


def normalize_system_override(
    system: str | list[LanguageModelTextBlock] | None,
) -> str | None:
    """Flatten a system override to a single string, None if empty."""
    if not system:
        return None
    if isinstance(system, str):
        return system
    return "\n".join(
        (block.get("text") or "") if isinstance(block, dict) else str(block)
        for block in system
    )


def apply_system_override(
    prompt: list[LanguageModelMessage], system_override: str | None
) -> list[LanguageModelMessage]:
    if not system_override:
        return prompt

    without_system = [
        message for message in prompt or [] if message.get("role") != "system"
    ]
    return [{"role": "system", "content": system_override}, *without_system]


def _is_function_tool(tool: Any) -> bool:
    # tools without a type are treated as function tools
    return isinstance(tool, dict) and tool.get("type", "function") == "function"


def _tool_from_override(
    override: LanguageModelToolDefinitionOverride,
) -> dict[str, Any]:
    tool: dict[str, Any] = {"type": "function", "name": override["name"]}
    if override.get("description") is not None:
        tool["description"] = override["description"]
    tool["inputSchema"] = override["parameters"]
    return tool


def apply_tool_overrides(
    tools: list[dict[str, Any]] | None,
    tool_overrides: list[LanguageModelToolDefinitionOverride] | None,
) -> list[dict[str, Any]] | None:
    """
    Merge tool overrides into a tool list.

    An override for an existing function tool replaces its description and
    input schema only where the override supplies them. An override for an
    unknown tool is added only if it carries a parameter schema, otherwise it
    is dropped.

    Args:
        tools: The request's tools, None if it had none
        tool_overrides: Override definitions with name, description, parameters

    Returns:
        list[dict[str, Any]] | None: Updated tools, None if there are none
    """
    if not tool_overrides:
        return tools

    updated_tools = [dict(tool) if isinstance(tool, dict) else tool for tool in tools or []]

    for override in tool_overrides:
        name = override.get("name") if isinstance(override, dict) else None
        if not name:
            continue

        existing_index = next(
            (
                i
                for i, tool in enumerate(updated_tools)
                if _is_function_tool(tool) and tool.get("name") == name
            ),
            None,
        )

        if existing_index is not None:
            existing_tool = updated_tools[existing_index]
            description = override.get("description")
            parameters = override.get("parameters")
            updated_tools[existing_index] = {
                **existing_tool,
                "description": (
                    description
                    if description is not None
                    else existing_tool.get("description")
                ),
                "inputSchema": (
                    parameters
                    if parameters is not None
                    else existing_tool.get("inputSchema")
                ),
            }
        elif override.get("parameters"):
            updated_tools.append(_tool_from_override(override))
        else:
            logger.debug(f"Dropping override for unknown tool {name}: no parameters")

    return updated_tools or None


def apply_overrides(
    options: LanguageModelCallOptions, path_override: RolloutPathOverride | None
) -> LanguageModelCallOptions:
    """
    Return a copy of the call options with the path's overrides applied.

    The original options are never mutated.
    """
    if not path_override:
        return options

    modified_options: LanguageModelCallOptions = {**options}

    if system_override := normalize_system_override(path_override.get("system")):
        modified_options["prompt"] = apply_system_override(
            modified_options.get("prompt") or [], system_override
        )

    if tool_overrides := path_override.get("tools"):
        tools = apply_tool_overrides(modified_options.get("tools"), tool_overrides)
        if tools is not None:
            modified_options["tools"] = tools

    return modified_options
