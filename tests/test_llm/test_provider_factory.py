import pytest

import context_shaper.llm as llm_module
from context_shaper.config import Config, get_config, set_config
from context_shaper.llm import (
    PROVIDER_BASE_URLS,
    OpenAICompatibleProvider,
    create_provider,
    get_provider,
    set_provider,
)


def test_create_provider_uses_openrouter_defaults():
    provider = create_provider(provider="openrouter", model="openai/gpt-4o-mini", api_key="k")

    assert isinstance(provider, OpenAICompatibleProvider)
    assert provider.base_url == PROVIDER_BASE_URLS["openrouter"]
    assert provider.model == "openai/gpt-4o-mini"
    assert provider.api_key == "k"


def test_create_provider_supports_lmstudio_alias_and_custom_url():
    provider = create_provider(
        provider="LM-Studio",
        model="qwen2.5-coder-7b",
        base_url="http://localhost:1234/v1/",
        context_length=32768,
    )

    assert isinstance(provider, OpenAICompatibleProvider)
    assert provider.provider == "lmstudio"
    assert provider.base_url == "http://localhost:1234/v1"
    assert provider.context_length == 32768
    assert provider.api_key is None


def test_create_provider_supports_chatgpt_alias():
    provider = create_provider(provider="chatgpt", model="gpt-4o-mini")

    assert provider.provider == "openai"
    assert provider.base_url == PROVIDER_BASE_URLS["openai"]


def test_create_provider_uses_env_api_key(monkeypatch: pytest.MonkeyPatch):
    monkeypatch.setenv("OPENAI_API_KEY", "test-openai-key")

    provider = create_provider(provider="openai", model="gpt-4o-mini")

    assert provider.api_key == "test-openai-key"


def test_create_provider_rejects_unsupported_provider():
    with pytest.raises(ValueError):
        create_provider(provider="cohere", model="command-r")


def test_get_provider_builds_from_config():
    old_cfg = get_config().model_copy(deep=True)
    cfg = Config()
    cfg.model.provider = "requesty"
    cfg.model.model = "openai/gpt-4o"
    cfg.model.api_key = "rk"
    cfg.model.context_length = 64000
    cfg.model.max_completion_tokens = 2048
    set_config(cfg)
    set_provider(None)
    try:
        provider = get_provider()

        assert isinstance(provider, OpenAICompatibleProvider)
        assert provider.base_url == PROVIDER_BASE_URLS["requesty"]
        assert provider.api_key == "rk"
        assert provider.context_length == 64000
        assert provider.max_tokens == 2048
        assert get_provider() is provider
    finally:
        set_provider(None)
        set_config(old_cfg)


def test_count_tokens_uses_budget_heuristic():
    provider = create_provider(provider="openai", model="gpt-4o-mini", api_key="k")

    assert provider.count_tokens("Hello world") == 2
    assert provider.count_tokens("") == 0
    assert llm_module.content_as_text(None) == ""
