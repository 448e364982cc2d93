"""Chat data model and OpenAI-compatible provider - direct HTTP calls."""

import json
import os
from abc import ABC, abstractmethod
from dataclasses import dataclass, field
from typing import TYPE_CHECKING, Any

import httpx

from context_shaper.exceptions import LLMAPIError, LLMError
from context_shaper.logging import get_logger

if TYPE_CHECKING:
    from context_shaper.shaper import ShapeResult

log = get_logger(__name__)


# Plain text, or structured JSON content (content parts or any JSON value).
MessageContent = str | list[Any] | dict[str, Any] | None


def _json_text(value: Any) -> str:
    """Serialize a JSON value compactly; never raises."""
    try:
        return json.dumps(value, ensure_ascii=False, default=str)
    except (TypeError, ValueError):
        return str(value)


def content_as_text(content: MessageContent) -> str:
    """Normalize message content to the text used for estimation.

    Strings pass through and ``None`` is empty. A list of content parts
    contributes the text of its text parts; any other structured value is
    measured by its JSON serialization.
    """
    if content is None:
        return ""
    if isinstance(content, str):
        return content
    if isinstance(content, list) and content and all(isinstance(part, dict) for part in content):
        texts = [
            str(part.get("text", ""))
            for part in content
            if str(part.get("type", "text")) == "text"
        ]
        if texts:
            return "\n".join(texts)
    return _json_text(content)


@dataclass(frozen=True)
class ToolCall:
    """A tool call attached to an assistant message."""

    id: str
    name: str
    arguments: str = ""  # raw JSON argument text

    def parsed_arguments(self) -> dict[str, Any]:
        """Decode arguments; malformed or non-object JSON yields an empty dict."""
        try:
            value = json.loads(self.arguments or "{}")
        except json.JSONDecodeError:
            return {}
        return value if isinstance(value, dict) else {}


@dataclass(frozen=True)
class Message:
    """A message in the conversation."""

    role: str  # "system", "user", "assistant", "tool"
    content: MessageContent = None
    name: str | None = None
    tool_calls: list[ToolCall] | None = None
    tool_call_id: str | None = None

    @property
    def text(self) -> str:
        return content_as_text(self.content)


@dataclass(frozen=True)
class ToolDefinition:
    """Definition of a tool for the LLM."""

    name: str
    description: str = ""
    parameters: Any = None  # JSON Schema value tree

    def schema_json(self) -> str:
        """Serialized parameter schema, empty when there is none."""
        if self.parameters is None:
            return ""
        return _json_text(self.parameters)


@dataclass
class LLMResponse:
    """Response from the LLM."""

    content: str
    tool_calls: list[ToolCall] = field(default_factory=list)
    model: str = ""
    usage: dict[str, int] = field(default_factory=dict)
    finish_reason: str = ""


def _arguments_text(arguments: Any) -> str:
    if arguments is None:
        return ""
    if isinstance(arguments, str):
        return arguments
    return _json_text(arguments)


def tool_call_from_dict(data: dict[str, Any], index: int = 1) -> ToolCall:
    """Parse an OpenAI-style tool call (nested ``function`` or flat)."""
    function_obj = data.get("function")
    if isinstance(function_obj, dict):
        name = function_obj.get("name", "")
        arguments = function_obj.get("arguments")
    else:
        name = data.get("name", "")
        arguments = data.get("arguments")
    call_id = str(data.get("id") or "").strip() or f"call_{index}"
    return ToolCall(id=call_id, name=str(name or ""), arguments=_arguments_text(arguments))


def message_from_dict(data: dict[str, Any]) -> Message:
    """Parse an OpenAI-style chat message.

    Raises:
        ValueError: If the value is not a message object with a role
    """
    if not isinstance(data, dict):
        raise ValueError(f"message must be an object, got {type(data).__name__}")
    role = str(data.get("role") or "").strip()
    if not role:
        raise ValueError("message is missing 'role'")

    raw_calls = data.get("tool_calls")
    tool_calls = None
    if isinstance(raw_calls, list) and raw_calls:
        tool_calls = [
            tool_call_from_dict(raw, idx)
            for idx, raw in enumerate(raw_calls, start=1)
            if isinstance(raw, dict)
        ]

    return Message(
        role=role,
        content=data.get("content"),
        name=data.get("name"),
        tool_calls=tool_calls,
        tool_call_id=data.get("tool_call_id"),
    )


def message_to_dict(message: Message) -> dict[str, Any]:
    """Serialize a message in OpenAI chat format."""
    entry: dict[str, Any] = {"role": message.role, "content": message.content}
    if message.name:
        entry["name"] = message.name
    if message.tool_calls:
        entry["tool_calls"] = [
            {
                "id": call.id,
                "type": "function",
                "function": {"name": call.name, "arguments": call.arguments or "{}"},
            }
            for call in message.tool_calls
        ]
    if message.tool_call_id:
        entry["tool_call_id"] = message.tool_call_id
    return entry


def tool_from_dict(data: dict[str, Any]) -> ToolDefinition:
    """Parse a tool definition in OpenAI (``function`` wrapper) or flat form.

    Raises:
        ValueError: If the value has no tool name
    """
    if not isinstance(data, dict):
        raise ValueError(f"tool must be an object, got {type(data).__name__}")
    function_obj = data.get("function") if isinstance(data.get("function"), dict) else data
    name = str(function_obj.get("name") or "").strip()
    if not name:
        raise ValueError("tool is missing 'name'")
    return ToolDefinition(
        name=name,
        description=str(function_obj.get("description") or ""),
        parameters=function_obj.get("parameters"),
    )


def tool_to_dict(tool: ToolDefinition) -> dict[str, Any]:
    """Serialize a tool definition in OpenAI format."""
    function: dict[str, Any] = {"name": tool.name, "description": tool.description or ""}
    if tool.parameters is not None:
        function["parameters"] = tool.parameters
    return {"type": "function", "function": function}


def tool_choice_payload(tool_choice: str | None) -> Any:
    """Wire form of a tool choice: keywords as-is, a tool name as an object."""
    if tool_choice is None:
        return None
    if tool_choice in ("auto", "none", "required"):
        return tool_choice
    return {"type": "function", "function": {"name": tool_choice}}


class LLMProvider(ABC):
    """Abstract base class for LLM providers."""

    @abstractmethod
    async def complete(
        self,
        messages: list[Message],
        tools: list[ToolDefinition] | None = None,
        tool_choice: str | None = None,
        temperature: float | None = None,
        max_tokens: int | None = None,
    ) -> LLMResponse:
        pass

    @abstractmethod
    def count_tokens(self, text: str) -> int:
        pass


PROVIDER_BASE_URLS = {
    "openai": "https://api.openai.com/v1",
    "openrouter": "https://openrouter.ai/api/v1",
    "requesty": "https://router.requesty.ai/v1",
    "lmstudio": "http://127.0.0.1:1234/v1",
}

PROVIDER_ALIASES = {
    "chatgpt": "openai",
    "lm-studio": "lmstudio",
    "lm_studio": "lmstudio",
}

PROVIDER_API_KEY_ENV = {
    "openai": "OPENAI_API_KEY",
    "openrouter": "OPENROUTER_API_KEY",
    "requesty": "REQUESTY_API_KEY",
}


class OpenAICompatibleProvider(LLMProvider):
    """Chat completions over an OpenAI-compatible HTTP API.

    Every request is shaped to the model's context window before it is sent.
    """

    def __init__(
        self,
        model: str,
        base_url: str,
        api_key: str | None = None,
        temperature: float = 0.7,
        max_tokens: int = 1024,
        context_length: int = 128000,
        provider: str = "openai",
        transport: httpx.AsyncBaseTransport | None = None,
    ):
        """Initialize provider.

        Args:
            model: Model id as the endpoint expects it
            base_url: API base URL (the part before /chat/completions)
            api_key: Optional bearer token
            temperature: Sampling temperature
            max_tokens: Completion tokens reserved per request
            context_length: Model context window in tokens
            provider: Provider name, for logs
            transport: Optional httpx transport (tests)
        """
        self.model = model
        self.base_url = base_url.rstrip("/")
        self.api_key = api_key
        self.temperature = temperature
        self.max_tokens = max_tokens
        self.context_length = context_length
        self.provider = provider
        self.last_shape: "ShapeResult | None" = None

        self.client = httpx.AsyncClient(
            timeout=120.0,
            follow_redirects=True,
            transport=transport,
        )

    def _headers(self) -> dict[str, str]:
        headers = {"Content-Type": "application/json"}
        if self.api_key:
            headers["Authorization"] = f"Bearer {self.api_key}"
        return headers

    def shape(
        self,
        messages: list[Message],
        tools: list[ToolDefinition] | None = None,
        tool_choice: str | None = None,
        max_tokens: int | None = None,
    ) -> "ShapeResult":
        """Fit a request to this model's context window using configured budget."""
        from context_shaper.config import get_config
        from context_shaper.shaper import BudgetParameters, shape_request

        params = BudgetParameters.from_config(
            get_config(),
            context_length=self.context_length,
            max_completion_tokens=max_tokens or self.max_tokens,
        )
        result = shape_request(messages, tools, tool_choice, params)
        self.last_shape = result

        log.debug("Shaped request context", model=self.model, **result.context_window())
        if result.dropped_messages or result.compressed_messages or result.stripped_schemas:
            log.info(
                "Context window pruned history",
                dropped_messages=result.dropped_messages,
                compressed_messages=result.compressed_messages,
                stripped_schemas=result.stripped_schemas,
                included_messages=len(result.shaped_messages),
                prompt_tokens=result.estimated_prompt_tokens,
                budget=result.budget_tokens,
            )
        if result.tool_choice_relaxed:
            log.info("Relaxed forced tool choice", requested=tool_choice, effective=result.effective_tool_choice)
        return result

    @staticmethod
    def _convert_messages(messages: list[Message]) -> list[dict[str, Any]]:
        """Convert messages to wire format.

        A tool result whose assistant call is no longer in the request is
        re-labelled as assistant context; OpenAI-style servers reject it
        otherwise.
        """
        result: list[dict[str, Any]] = []
        known_call_ids: set[str] = set()
        for message in messages:
            if message.role == "assistant" and message.tool_calls:
                known_call_ids.update(call.id for call in message.tool_calls if call.id)
            if message.role == "tool" and (message.tool_call_id or "") not in known_call_ids:
                tool_name = (message.name or "").strip() or "tool"
                result.append({
                    "role": "assistant",
                    "content": f"[tool_context:{tool_name}] {message.text}".strip(),
                })
                continue
            result.append(message_to_dict(message))
        return result

    def build_request_body(
        self,
        result: "ShapeResult",
        temperature: float | None = None,
        max_tokens: int | None = None,
    ) -> dict[str, Any]:
        """Serialize a shaped request into a chat-completions body."""
        body: dict[str, Any] = {
            "model": self.model,
            "messages": self._convert_messages(result.shaped_messages),
            "temperature": self.temperature if temperature is None else temperature,
            "max_tokens": max_tokens or self.max_tokens,
            "stream": False,
        }
        if result.shaped_tools:
            body["tools"] = [tool_to_dict(tool) for tool in result.shaped_tools]
            choice = tool_choice_payload(result.effective_tool_choice)
            if choice is not None:
                body["tool_choice"] = choice
        return body

    async def complete(
        self,
        messages: list[Message],
        tools: list[ToolDefinition] | None = None,
        tool_choice: str | None = None,
        temperature: float | None = None,
        max_tokens: int | None = None,
    ) -> LLMResponse:
        """Shape the request, send it and parse the completion."""
        url = f"{self.base_url}/chat/completions"
        result = self.shape(messages, tools, tool_choice, max_tokens)
        body = self.build_request_body(result, temperature=temperature, max_tokens=max_tokens)

        try:
            log.debug("Calling chat completions", model=self.model, url=url, msg_count=len(body["messages"]))

            response = await self.client.post(url, json=body, headers=self._headers())

            log.debug("Chat completions response status", status=response.status_code)

            if not response.is_success:
                raise LLMAPIError(
                    f"{self.provider} API error {response.status_code}: {response.text}",
                    status_code=response.status_code,
                )

            data = response.json()
        except LLMError:
            raise
        except httpx.HTTPError as e:
            raise LLMAPIError(f"{self.provider} HTTP error: {e}") from e
        except json.JSONDecodeError as e:
            raise LLMError(f"{self.provider} response decode error: {e}") from e

        return self._parse_response(data)

    def _parse_response(self, data: Any) -> LLMResponse:
        choices = data.get("choices") if isinstance(data, dict) else None
        if not isinstance(choices, list) or not choices:
            raise LLMError(f"{self.provider} response has no choices")

        choice = choices[0] if isinstance(choices[0], dict) else {}
        message = choice.get("message") or {}
        tool_calls = [
            tool_call_from_dict(raw, idx)
            for idx, raw in enumerate(message.get("tool_calls") or [], start=1)
            if isinstance(raw, dict)
        ]

        raw_usage = data.get("usage") or {}
        usage = {
            "prompt_tokens": int(raw_usage.get("prompt_tokens", 0) or 0),
            "completion_tokens": int(raw_usage.get("completion_tokens", 0) or 0),
            "total_tokens": int(raw_usage.get("total_tokens", 0) or 0),
        }

        return LLMResponse(
            content=content_as_text(message.get("content")),
            tool_calls=tool_calls,
            model=str(data.get("model") or self.model),
            usage=usage,
            finish_reason=str(choice.get("finish_reason") or ""),
        )

    async def fetch_context_length(self) -> int | None:
        """Look up the model's context window from the endpoint's model list.

        Updates ``context_length`` when the model is listed with a window.
        """
        url = f"{self.base_url}/models"
        try:
            response = await self.client.get(url, headers=self._headers())
            if not response.is_success:
                raise LLMAPIError(
                    f"{self.provider} models error {response.status_code}: {response.text}",
                    status_code=response.status_code,
                )
            data = response.json()
        except LLMError:
            raise
        except httpx.HTTPError as e:
            raise LLMAPIError(f"{self.provider} HTTP error: {e}") from e
        except json.JSONDecodeError as e:
            raise LLMError(f"{self.provider} models decode error: {e}") from e

        entries = data.get("data") if isinstance(data, dict) else data
        for entry in entries if isinstance(entries, list) else []:
            if not isinstance(entry, dict) or entry.get("id") != self.model:
                continue
            top_provider = entry.get("top_provider") or {}
            for value in (
                entry.get("context_length"),
                entry.get("max_context_length"),
                top_provider.get("context_length") if isinstance(top_provider, dict) else None,
            ):
                if isinstance(value, int) and value > 0:
                    log.info("Resolved model context length", model=self.model, context_length=value)
                    self.context_length = value
                    return value
        log.debug("Model context length not listed", model=self.model, url=url)
        return None

    def count_tokens(self, text: str) -> int:
        """Count tokens with the character heuristic used for budgeting."""
        from context_shaper.tokens import estimate_tokens_from_text

        return estimate_tokens_from_text(text)

    async def close(self):
        """Close the HTTP client."""
        await self.client.aclose()


def normalize_provider_name(provider: str) -> str:
    """Lowercase a provider name and resolve aliases."""
    key = str(provider or "").strip().lower()
    return PROVIDER_ALIASES.get(key, key)


def create_provider(
    provider: str = "openrouter",
    model: str = "openai/gpt-4o-mini",
    api_key: str | None = None,
    base_url: str | None = None,
    temperature: float = 0.7,
    max_tokens: int = 1024,
    context_length: int = 128000,
    transport: httpx.AsyncBaseTransport | None = None,
) -> LLMProvider:
    """Create an LLM provider.

    Args:
        provider: Provider name (openai, openrouter, requesty, lmstudio)
        model: Model name
        api_key: Optional API key (falls back to the provider's env var)
        base_url: Optional base URL overriding the provider default
        temperature: Default temperature
        max_tokens: Default completion tokens
        context_length: Model context window in tokens
        transport: Optional httpx transport

    Returns:
        Configured LLMProvider instance
    """
    name = normalize_provider_name(provider)
    if name not in PROVIDER_BASE_URLS:
        raise ValueError(
            f"Provider '{provider}' not supported. Use one of: {', '.join(sorted(PROVIDER_BASE_URLS))}."
        )
    env_var = PROVIDER_API_KEY_ENV.get(name)
    resolved_key = api_key or (os.environ.get(env_var) if env_var else None)
    return OpenAICompatibleProvider(
        model=model,
        base_url=base_url or PROVIDER_BASE_URLS[name],
        api_key=resolved_key or None,
        temperature=temperature,
        max_tokens=max_tokens,
        context_length=context_length,
        provider=name,
        transport=transport,
    )


# Global provider instance
_provider: LLMProvider | None = None


def get_provider() -> LLMProvider:
    """Get the global LLM provider instance."""
    global _provider
    if _provider is None:
        from context_shaper.config import get_config
        cfg = get_config()
        _provider = create_provider(
            provider=cfg.model.provider,
            model=cfg.model.model,
            api_key=cfg.model.api_key or None,
            base_url=cfg.model.base_url or None,
            temperature=cfg.model.temperature,
            max_tokens=cfg.model.max_completion_tokens,
            context_length=cfg.model.context_length,
        )
    return _provider


def set_provider(provider: LLMProvider | None) -> None:
    """Set the global LLM provider instance."""
    global _provider
    _provider = provider
