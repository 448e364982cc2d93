"""Fit a chat request into the model's context window.

Every outbound request goes through ``shape_request``: oversized messages are
clamped, the history is limited to ``max_messages``, older turns are
compressed middle-out, the oldest turns are dropped and tool schemas are
trimmed until the estimated prompt fits the budget. Nothing here raises for
degenerate input and nothing mutates the caller's messages or tools.
"""

import dataclasses
import math
from dataclasses import dataclass
from typing import Any, Sequence

from context_shaper.llm import Message, ToolDefinition
from context_shaper.middle_out import head_cut, middle_out
from context_shaper.tokens import (
    CHARS_PER_TOKEN,
    estimate_prompt_tokens,
    estimate_tokens_for_message,
    estimate_tokens_for_tools,
)
from context_shaper.tool_trim import DEFAULT_MAX_SCHEMA_CHARS, strip_schemas, trim_tools

DEFAULT_SAFETY_MARGIN_PCT = 0.1
MAX_SAFETY_MARGIN_PCT = 0.9
DEFAULT_FALLBACK_BUDGET = 128
DEFAULT_PRESERVE_RECENT = 6
DEFAULT_MAX_MESSAGE_CHARS = 100_000

# Middle-out allowance schedule for older turns (characters per message).
MIDDLE_OUT_START_CHARS = 4000
MIDDLE_OUT_MIN_CHARS = 100

# Floor for the content of the last surviving message.
MIN_SURVIVOR_TOKENS = 16


@dataclass(frozen=True)
class BudgetParameters:
    """Limits and switches for one shaping pass."""

    max_context_tokens: int
    max_completion_tokens: int
    max_messages: int | None = None
    middle_out: bool = True
    safety_margin_pct: float = DEFAULT_SAFETY_MARGIN_PCT
    preserve_recent: int = DEFAULT_PRESERVE_RECENT
    max_message_chars: int = DEFAULT_MAX_MESSAGE_CHARS
    max_schema_chars: int = DEFAULT_MAX_SCHEMA_CHARS
    fallback_budget: int = DEFAULT_FALLBACK_BUDGET

    @classmethod
    def from_config(
        cls,
        config: Any,
        context_length: int | None = None,
        max_completion_tokens: int | None = None,
    ) -> "BudgetParameters":
        """Build parameters from a ``Config``, with optional limit overrides."""
        budget = config.budget
        return cls(
            max_context_tokens=(
                config.model.context_length if context_length is None else context_length
            ),
            max_completion_tokens=(
                config.model.max_completion_tokens
                if max_completion_tokens is None
                else max_completion_tokens
            ),
            max_messages=budget.max_messages,
            middle_out=budget.middle_out,
            safety_margin_pct=budget.safety_margin_pct,
            preserve_recent=budget.preserve_recent,
            max_message_chars=budget.max_message_chars,
            max_schema_chars=budget.max_schema_chars,
            fallback_budget=budget.fallback_budget,
        )


@dataclass
class ShapeResult:
    """A request payload fitted to the budget, plus what it took."""

    shaped_messages: list[Message]
    shaped_tools: list[ToolDefinition] | None
    effective_tool_choice: str | None
    estimated_prompt_tokens: int
    budget_tokens: int = 0
    original_messages: int = 0
    dropped_messages: int = 0
    compressed_messages: int = 0
    stripped_schemas: int = 0
    tool_choice_relaxed: bool = False

    @property
    def over_budget(self) -> bool:
        return self.estimated_prompt_tokens > self.budget_tokens

    def context_window(self) -> dict[str, Any]:
        """Summarize the shaping pass for logs and status output."""
        budget = self.budget_tokens
        prompt = self.estimated_prompt_tokens
        return {
            "budget_tokens": budget,
            "prompt_tokens": prompt,
            "total_messages": self.original_messages,
            "included_messages": len(self.shaped_messages),
            "dropped_messages": self.dropped_messages,
            "compressed_messages": self.compressed_messages,
            "tools": len(self.shaped_tools or []),
            "stripped_schemas": self.stripped_schemas,
            "tool_choice_relaxed": 1 if self.tool_choice_relaxed else 0,
            "over_budget": 1 if self.over_budget else 0,
            "utilization": (prompt / budget) if budget else 0.0,
        }


def compute_budget(
    max_context_tokens: int,
    max_completion_tokens: int,
    safety_margin_pct: float = DEFAULT_SAFETY_MARGIN_PCT,
    fallback_budget: int = DEFAULT_FALLBACK_BUDGET,
) -> int:
    """Prompt token budget: the context window minus margin and reply.

    The margin is clamped into ``[0, 0.9]``; a budget at or below
    ``fallback_budget`` is raised to it.
    """
    margin = float(safety_margin_pct)
    if math.isnan(margin):
        margin = DEFAULT_SAFETY_MARGIN_PCT
    margin = min(max(margin, 0.0), MAX_SAFETY_MARGIN_PCT)
    budget = math.floor(int(max_context_tokens or 0) * (1.0 - margin)) - int(max_completion_tokens or 0)
    if budget <= fallback_budget:
        return fallback_budget
    return budget


def shape(
    messages: Sequence[Message] | None,
    tools: Sequence[ToolDefinition] | None,
    tool_choice: str | None,
    max_context_tokens: int,
    max_completion_tokens: int,
    max_messages: int | None = None,
    middle_out: bool = True,
    safety_margin_pct: float = DEFAULT_SAFETY_MARGIN_PCT,
) -> ShapeResult:
    """Shape a request with default limits for everything not given."""
    params = BudgetParameters(
        max_context_tokens=max_context_tokens,
        max_completion_tokens=max_completion_tokens,
        max_messages=max_messages,
        middle_out=middle_out,
        safety_margin_pct=safety_margin_pct,
    )
    return shape_request(messages, tools, tool_choice, params)


# Working entries pair the input position of a message with its current value.
_Entry = tuple[int, Message]


def shape_request(
    messages: Sequence[Message] | None,
    tools: Sequence[ToolDefinition] | None,
    tool_choice: str | None,
    params: BudgetParameters,
) -> ShapeResult:
    """Fit messages and tools into the budget described by ``params``.

    Args:
        messages: Conversation history, oldest first
        tools: Tool definitions offered to the model, or None
        tool_choice: Tool-choice directive ("auto", "required", a tool name)
        params: Budget limits and switches

    Returns:
        ShapeResult with new message and tool lists
    """
    budget = compute_budget(
        params.max_context_tokens,
        params.max_completion_tokens,
        params.safety_margin_pct,
        params.fallback_budget,
    )
    entries: list[_Entry] = list(enumerate(messages or []))
    original_count = len(entries)
    shaped_tools = list(tools) if tools is not None else None
    replaced: set[int] = set()

    # Absolute per-message ceiling, independent of the budget.
    ceiling = max(1, params.max_message_chars)
    for pos, (idx, message) in enumerate(entries):
        text = message.text
        if len(text) > ceiling:
            entries[pos] = (idx, _with_text(message, _reduce(text, ceiling, params.middle_out)))
            replaced.add(idx)

    if params.max_messages is not None:
        limit = max(1, params.max_messages)
        if len(entries) > limit:
            entries = entries[-limit:]

    costs = [estimate_tokens_for_message(m) for _, m in entries]
    tool_tokens = estimate_tokens_for_tools(shaped_tools)

    def _finish(tool_list, effective_choice, stripped=0, relaxed=False) -> ShapeResult:
        shaped = [m for _, m in entries]
        return ShapeResult(
            shaped_messages=shaped,
            shaped_tools=tool_list,
            effective_tool_choice=effective_choice,
            estimated_prompt_tokens=estimate_prompt_tokens(shaped, tool_list),
            budget_tokens=budget,
            original_messages=original_count,
            dropped_messages=original_count - len(shaped),
            compressed_messages=sum(1 for idx, _ in entries if idx in replaced),
            stripped_schemas=stripped,
            tool_choice_relaxed=relaxed,
        )

    if sum(costs) + tool_tokens <= budget:
        return _finish(shaped_tools, tool_choice)

    # Oversized schemas are stripped below anyway; history only makes room
    # for the tool cost that remains after that.
    planned_tools, _ = strip_schemas(shaped_tools, params.max_schema_chars)
    history_target = budget - estimate_tokens_for_tools(planned_tools)

    history_count = max(0, len(entries) - max(0, params.preserve_recent))
    if params.middle_out and history_count and sum(costs) > history_target:
        _compress_history(entries, costs, history_count, history_target, replaced)

    keeper = _keeper_index(entries)
    _drop_oldest(entries, costs, history_count, history_target, keeper)

    trim = trim_tools(shaped_tools, tool_choice, budget - sum(costs), params.max_schema_chars)
    shaped_tools = trim.tools
    tool_tokens = estimate_tokens_for_tools(shaped_tools)

    # Last resort: the recent window goes too, then the survivor is fitted.
    if sum(costs) + tool_tokens > budget:
        _drop_oldest(entries, costs, len(entries), budget - tool_tokens, keeper)
    if len(entries) == 1 and costs[0] + tool_tokens > budget:
        _fit_survivor(entries, costs, budget - tool_tokens, params.middle_out, replaced)

    return _finish(shaped_tools, trim.tool_choice, trim.stripped_schemas, trim.tool_choice_relaxed)


def _with_text(message: Message, text: str | None) -> Message:
    return dataclasses.replace(message, content=text)


def _reduce(text: str, max_chars: int, use_middle_out: bool) -> str:
    if use_middle_out:
        return middle_out(text, max_chars)
    return head_cut(text, max_chars)


def _keeper_index(entries: list[_Entry]) -> int | None:
    """Input position of the message that must survive: latest user turn."""
    for idx, message in reversed(entries):
        if message.role == "user":
            return idx
    return entries[-1][0] if entries else None


def _compress_history(
    entries: list[_Entry],
    costs: list[int],
    history_count: int,
    target_tokens: int,
    replaced: set[int],
) -> None:
    """Middle-out the first ``history_count`` entries with a shrinking allowance."""
    originals = [m.text for _, m in entries[:history_count]]
    longest = max(len(text) for text in originals)
    recent_tokens = sum(costs[history_count:])
    allowance = min(MIDDLE_OUT_START_CHARS, longest // 2)
    compressed: set[int] = set()

    while allowance >= MIDDLE_OUT_MIN_CHARS:
        compressed = set()
        for pos, text in enumerate(originals):
            idx, message = entries[pos]
            if len(text) > allowance:
                message = _with_text(message, middle_out(text, allowance))
                compressed.add(idx)
                entries[pos] = (idx, message)
                costs[pos] = estimate_tokens_for_message(message)
        if sum(costs[:history_count]) + recent_tokens <= target_tokens:
            break
        allowance //= 2

    replaced.update(compressed)


def _drop_oldest(
    entries: list[_Entry],
    costs: list[int],
    window: int,
    target_tokens: int,
    keeper: int | None,
) -> None:
    """Drop entries oldest-first among the first ``window`` until within target."""
    total = sum(costs)
    dropped: set[int] = set()
    for pos in range(min(window, len(entries))):
        if total <= target_tokens:
            break
        if entries[pos][0] == keeper:
            continue
        total -= costs[pos]
        dropped.add(pos)

    if dropped:
        entries[:] = [entry for pos, entry in enumerate(entries) if pos not in dropped]
        costs[:] = [cost for pos, cost in enumerate(costs) if pos not in dropped]


def _fit_survivor(
    entries: list[_Entry],
    costs: list[int],
    target_tokens: int,
    use_middle_out: bool,
    replaced: set[int],
) -> None:
    """Reduce the content of the only remaining message to the target."""
    idx, message = entries[0]
    text = message.text
    bare_tokens = estimate_tokens_for_message(_with_text(message, None))
    max_chars = max(target_tokens - bare_tokens, MIN_SURVIVOR_TOKENS) * CHARS_PER_TOKEN
    if len(text) <= max_chars:
        return
    message = _with_text(message, _reduce(text, max_chars, use_middle_out))
    entries[0] = (idx, message)
    costs[0] = estimate_tokens_for_message(message)
    replaced.add(idx)
