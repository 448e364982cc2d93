"""Conversation files: load a chat request from JSON, write shaped payloads."""

import json
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any

from context_shaper.exceptions import ConversationFormatError
from context_shaper.llm import (
    Message,
    ToolDefinition,
    message_from_dict,
    message_to_dict,
    tool_choice_payload,
    tool_from_dict,
    tool_to_dict,
)
from context_shaper.shaper import ShapeResult


@dataclass
class Conversation:
    """A chat request as stored on disk."""

    messages: list[Message] = field(default_factory=list)
    tools: list[ToolDefinition] | None = None
    tool_choice: str | None = None


def _tool_choice_from_payload(raw: Any) -> str | None:
    if raw is None or isinstance(raw, str):
        return raw
    if isinstance(raw, dict):
        function_obj = raw.get("function")
        if isinstance(function_obj, dict) and function_obj.get("name"):
            return str(function_obj["name"])
    raise ValueError(f"unsupported tool_choice: {raw!r}")


def parse_conversation(data: Any, source: str = "<data>") -> Conversation:
    """Build a Conversation from decoded JSON.

    Accepts an object with ``messages`` (and optional ``tools`` and
    ``tool_choice``) or a bare list of messages.
    """
    if isinstance(data, list):
        data = {"messages": data}
    if not isinstance(data, dict):
        raise ConversationFormatError(source, "expected an object or a list of messages")

    raw_messages = data.get("messages", [])
    if not isinstance(raw_messages, list):
        raise ConversationFormatError(source, "'messages' must be a list")
    raw_tools = data.get("tools")
    if raw_tools is not None and not isinstance(raw_tools, list):
        raise ConversationFormatError(source, "'tools' must be a list")

    try:
        messages = [message_from_dict(raw) for raw in raw_messages]
        tools = [tool_from_dict(raw) for raw in raw_tools] if raw_tools is not None else None
        tool_choice = _tool_choice_from_payload(data.get("tool_choice"))
    except ValueError as e:
        raise ConversationFormatError(source, str(e)) from e

    return Conversation(messages=messages, tools=tools, tool_choice=tool_choice)


def load_conversation(path: Path | str) -> Conversation:
    """Read a conversation JSON file."""
    file_path = Path(path).expanduser()
    try:
        data = json.loads(file_path.read_text(encoding="utf-8"))
    except OSError as e:
        raise ConversationFormatError(str(file_path), f"cannot read file: {e}") from e
    except json.JSONDecodeError as e:
        raise ConversationFormatError(str(file_path), f"invalid JSON: {e}") from e
    return parse_conversation(data, source=str(file_path))


def shape_result_to_payload(result: ShapeResult) -> dict[str, Any]:
    """Serialize a shaped request in OpenAI chat format with its report."""
    payload: dict[str, Any] = {
        "messages": [message_to_dict(message) for message in result.shaped_messages],
    }
    if result.shaped_tools is not None:
        payload["tools"] = [tool_to_dict(tool) for tool in result.shaped_tools]
    choice = tool_choice_payload(result.effective_tool_choice)
    if choice is not None:
        payload["tool_choice"] = choice
    payload["context_window"] = result.context_window()
    return payload
