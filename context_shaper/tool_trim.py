"""Reduce the token footprint of tool definitions without removing tools."""

import dataclasses
from dataclasses import dataclass

from context_shaper.llm import ToolDefinition
from context_shaper.tokens import estimate_tokens_for_tools

DEFAULT_MAX_SCHEMA_CHARS = 60_000

# Trimmed tools above this share of the headroom still crowd out the reply.
TOOL_CHOICE_RELAX_RATIO = 0.9

NON_FORCING_TOOL_CHOICES = frozenset({"auto", "none"})


@dataclass
class ToolTrimResult:
    """Outcome of tool trimming."""

    tools: list[ToolDefinition] | None
    tool_choice: str | None
    stripped_schemas: int = 0
    tool_choice_relaxed: bool = False


def forces_tool_use(tool_choice: str | None) -> bool:
    """Whether a tool-choice directive obliges the model to call a tool."""
    if tool_choice is None:
        return False
    return str(tool_choice).strip().lower() not in NON_FORCING_TOOL_CHOICES


def strip_schemas(
    tools: list[ToolDefinition] | None,
    max_schema_chars: int = DEFAULT_MAX_SCHEMA_CHARS,
) -> tuple[list[ToolDefinition] | None, int]:
    """Drop parameter schemas serialized above ``max_schema_chars``.

    Returns a new tool list and the number of schemas dropped.
    """
    if tools is None:
        return None, 0
    stripped = 0
    result: list[ToolDefinition] = []
    for tool in tools:
        if tool.parameters is not None and len(tool.schema_json()) > max_schema_chars:
            result.append(dataclasses.replace(tool, parameters=None))
            stripped += 1
        else:
            result.append(tool)
    return result, stripped


def trim_tools(
    tools: list[ToolDefinition] | None,
    tool_choice: str | None,
    remaining_budget_tokens: int,
    max_schema_chars: int = DEFAULT_MAX_SCHEMA_CHARS,
) -> ToolTrimResult:
    """Fit tool definitions into the token headroom left by the messages.

    Oversized parameter schemas are dropped (name and description stay, so
    the tool remains callable) and a forcing tool choice is relaxed to
    ``"auto"`` when the tools still do not leave room for the reply.

    Args:
        tools: Tool definitions offered to the model
        tool_choice: Current tool-choice directive
        remaining_budget_tokens: Tokens left after the messages
        max_schema_chars: Serialized schema size above which it is dropped

    Returns:
        ToolTrimResult with new tool list and effective tool choice
    """
    if not tools or estimate_tokens_for_tools(tools) <= remaining_budget_tokens:
        return ToolTrimResult(tools=list(tools) if tools is not None else None, tool_choice=tool_choice)

    trimmed, stripped = strip_schemas(tools, max_schema_chars)

    effective_choice = tool_choice
    relaxed = False
    if (
        forces_tool_use(tool_choice)
        and estimate_tokens_for_tools(trimmed) > remaining_budget_tokens * TOOL_CHOICE_RELAX_RATIO
    ):
        effective_choice = "auto"
        relaxed = True

    return ToolTrimResult(
        tools=trimmed,
        tool_choice=effective_choice,
        stripped_schemas=stripped,
        tool_choice_relaxed=relaxed,
    )
