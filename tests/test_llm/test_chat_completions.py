import json
from typing import Any

import httpx
import pytest

from context_shaper.config import Config, get_config, set_config
from context_shaper.exceptions import LLMAPIError, LLMError
from context_shaper.llm import Message, OpenAICompatibleProvider, ToolCall, ToolDefinition


class _Recorder:
    def __init__(self, status_code: int = 200, payload: Any = None, text: str | None = None):
        self.status_code = status_code
        self.payload = payload
        self.text = text
        self.requests: list[httpx.Request] = []

    def __call__(self, request: httpx.Request) -> httpx.Response:
        self.requests.append(request)
        if self.text is not None:
            return httpx.Response(self.status_code, text=self.text)
        return httpx.Response(self.status_code, json=self.payload)

    @property
    def last_body(self) -> dict[str, Any]:
        return json.loads(self.requests[-1].content)


def _completion(content: str = "ok", tool_calls: list[dict[str, Any]] | None = None) -> dict[str, Any]:
    message: dict[str, Any] = {"role": "assistant", "content": content}
    if tool_calls:
        message["tool_calls"] = tool_calls
    return {
        "model": "test-model",
        "choices": [{"index": 0, "message": message, "finish_reason": "stop"}],
        "usage": {"prompt_tokens": 12, "completion_tokens": 3, "total_tokens": 15},
    }


def _provider(recorder: _Recorder, context_length: int = 128000, **kwargs: Any) -> OpenAICompatibleProvider:
    return OpenAICompatibleProvider(
        model="test-model",
        base_url="https://llm.example.test/v1",
        api_key="secret",
        context_length=context_length,
        transport=httpx.MockTransport(recorder),
        **kwargs,
    )


@pytest.fixture(autouse=True)
def _default_config():
    old_cfg = get_config().model_copy(deep=True)
    set_config(Config())
    try:
        yield
    finally:
        set_config(old_cfg)


@pytest.mark.asyncio
async def test_complete_posts_shaped_request_and_parses_reply():
    recorder = _Recorder(payload=_completion("Hello back"))
    provider = _provider(recorder)

    response = await provider.complete([Message(role="user", content="Hello")])

    request = recorder.requests[0]
    assert request.url == httpx.URL("https://llm.example.test/v1/chat/completions")
    assert request.headers["Authorization"] == "Bearer secret"
    body = recorder.last_body
    assert body["model"] == "test-model"
    assert body["messages"] == [{"role": "user", "content": "Hello"}]
    assert body["max_tokens"] == 1024
    assert "tools" not in body
    assert response.content == "Hello back"
    assert response.usage == {"prompt_tokens": 12, "completion_tokens": 3, "total_tokens": 15}
    assert response.finish_reason == "stop"
    assert provider.last_shape is not None
    assert provider.last_shape.dropped_messages == 0
    await provider.close()


@pytest.mark.asyncio
async def test_complete_parses_tool_calls():
    recorder = _Recorder(
        payload=_completion(
            "",
            tool_calls=[
                {
                    "id": "call_1",
                    "type": "function",
                    "function": {"name": "read_file", "arguments": '{"path": "a.txt"}'},
                }
            ],
        )
    )
    provider = _provider(recorder)

    response = await provider.complete(
        [Message(role="user", content="read a.txt")],
        tools=[ToolDefinition(name="read_file", description="Read", parameters={"type": "object"})],
        tool_choice="read_file",
    )

    body = recorder.last_body
    assert body["tools"][0]["function"]["name"] == "read_file"
    assert body["tool_choice"] == {"type": "function", "function": {"name": "read_file"}}
    assert response.tool_calls == [ToolCall(id="call_1", name="read_file", arguments='{"path": "a.txt"}')]
    assert response.tool_calls[0].parsed_arguments() == {"path": "a.txt"}


@pytest.mark.asyncio
async def test_complete_shapes_history_to_small_context_window():
    recorder = _Recorder(payload=_completion())
    provider = _provider(recorder, context_length=2000, max_tokens=500)
    messages = [
        Message(role="user" if idx % 2 == 0 else "assistant", content=f"turn {idx} " + "w" * 2000)
        for idx in range(12)
    ]

    await provider.complete(messages)

    body = recorder.last_body
    assert len(body["messages"]) < len(messages)
    assert provider.last_shape.estimated_prompt_tokens <= provider.last_shape.budget_tokens
    assert provider.last_shape.budget_tokens == 1300


@pytest.mark.asyncio
async def test_complete_relabels_orphan_tool_results():
    recorder = _Recorder(payload=_completion())
    provider = _provider(recorder)
    messages = [
        Message(role="user", content="check the file"),
        Message(role="tool", content="file body", tool_call_id="call_gone", name="read_file"),
        Message(
            role="assistant",
            content=None,
            tool_calls=[ToolCall(id="call_2", name="glob", arguments='{"pattern": "*.py"}')],
        ),
        Message(role="tool", content="a.py", tool_call_id="call_2", name="glob"),
    ]

    await provider.complete(messages)

    sent = recorder.last_body["messages"]
    assert sent[1] == {"role": "assistant", "content": "[tool_context:read_file] file body"}
    assert sent[2]["tool_calls"][0]["id"] == "call_2"
    assert sent[3] == {"role": "tool", "content": "a.py", "name": "glob", "tool_call_id": "call_2"}


@pytest.mark.asyncio
async def test_complete_raises_api_error_on_failure_status():
    recorder = _Recorder(status_code=429, text="rate limited")
    provider = _provider(recorder)

    with pytest.raises(LLMAPIError) as exc_info:
        await provider.complete([Message(role="user", content="hi")])

    assert exc_info.value.status_code == 429


@pytest.mark.asyncio
async def test_complete_raises_llm_error_on_invalid_json():
    recorder = _Recorder(text="<html>oops</html>")
    provider = _provider(recorder)

    with pytest.raises(LLMError):
        await provider.complete([Message(role="user", content="hi")])


@pytest.mark.asyncio
async def test_complete_raises_llm_error_without_choices():
    recorder = _Recorder(payload={"choices": []})
    provider = _provider(recorder)

    with pytest.raises(LLMError):
        await provider.complete([Message(role="user", content="hi")])


@pytest.mark.asyncio
async def test_complete_wraps_transport_errors():
    def _fail(request: httpx.Request) -> httpx.Response:
        raise httpx.ConnectError("connection refused", request=request)

    provider = OpenAICompatibleProvider(
        model="test-model",
        base_url="https://llm.example.test/v1",
        transport=httpx.MockTransport(_fail),
    )

    with pytest.raises(LLMAPIError):
        await provider.complete([Message(role="user", content="hi")])


@pytest.mark.asyncio
async def test_fetch_context_length_reads_model_listing():
    recorder = _Recorder(
        payload={
            "data": [
                {"id": "other", "context_length": 4096},
                {"id": "test-model", "context_length": 65536},
            ]
        }
    )
    provider = _provider(recorder, context_length=8000)

    value = await provider.fetch_context_length()

    assert recorder.requests[0].url == httpx.URL("https://llm.example.test/v1/models")
    assert value == 65536
    assert provider.context_length == 65536


@pytest.mark.asyncio
async def test_fetch_context_length_supports_lmstudio_field():
    recorder = _Recorder(payload={"data": [{"id": "test-model", "max_context_length": 32768}]})
    provider = _provider(recorder, context_length=8000)

    assert await provider.fetch_context_length() == 32768


@pytest.mark.asyncio
async def test_fetch_context_length_returns_none_for_unlisted_model():
    recorder = _Recorder(payload={"data": [{"id": "other", "context_length": 4096}]})
    provider = _provider(recorder, context_length=8000)

    assert await provider.fetch_context_length() is None
    assert provider.context_length == 8000
