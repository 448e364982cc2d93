"""Heuristic token estimation for messages and tool definitions.

No tokenizer is involved: one token is counted per four characters. The
numbers are deliberately cheap and slightly conservative so the safety
margin in the budget absorbs the difference to a real tokenizer.
"""

from typing import Iterable

from context_shaper.llm import Message, ToolDefinition

CHARS_PER_TOKEN = 4
MESSAGE_OVERHEAD_TOKENS = 4
TOOL_OVERHEAD_TOKENS = 10


def estimate_tokens_from_text(text: str | None) -> int:
    """Estimate tokens for a text; any non-empty text costs at least one."""
    if not text:
        return 0
    return max(1, len(text) // CHARS_PER_TOKEN)


def estimate_tokens_for_message(message: Message) -> int:
    """Estimate tokens for one conversation message.

    Fixed per-message overhead, the content, one token for a name and the
    function name plus raw arguments of every attached tool call.
    """
    total = MESSAGE_OVERHEAD_TOKENS
    total += estimate_tokens_from_text(message.text)
    if message.name:
        total += 1
    for call in message.tool_calls or ():
        total += estimate_tokens_from_text(call.name)
        total += estimate_tokens_from_text(call.arguments)
    return total


def estimate_tokens_for_tools(tools: Iterable[ToolDefinition] | None) -> int:
    """Estimate tokens for the tool definitions sent with a request."""
    if not tools:
        return 0
    total = 0
    for tool in tools:
        total += TOOL_OVERHEAD_TOKENS
        total += estimate_tokens_from_text(tool.name)
        total += estimate_tokens_from_text(tool.description)
        total += estimate_tokens_from_text(tool.schema_json())
    return total


def estimate_prompt_tokens(
    messages: Iterable[Message],
    tools: Iterable[ToolDefinition] | None = None,
) -> int:
    """Estimate the full prompt: every message plus the tool definitions."""
    return sum(estimate_tokens_for_message(m) for m in messages) + estimate_tokens_for_tools(tools)
