"""Tests for LLMClient provider abstraction."""

import pytest
from unittest.mock import Mock

from kbdraft.common.config import LLMConfig
from kbdraft.common.llm_client import LLMClient, resolve_provider


class TestLLMClientInit:
    def test_missing_anthropic_key_logs_info(self, caplog):
        import logging
        with caplog.at_level(logging.INFO, logger="kbdraft.common.llm_client"):
            client = LLMClient(provider="anthropic")
        assert not client.is_available
        assert "API key not provided" in caplog.text

    def test_missing_openai_key_logs_info(self, caplog):
        import logging
        with caplog.at_level(logging.INFO, logger="kbdraft.common.llm_client"):
            client = LLMClient(provider="openai")
        assert not client.is_available
        assert "API key not provided" in caplog.text

    def test_auto_provider_raises(self):
        with pytest.raises(ValueError, match="auto"):
            LLMClient(provider="auto")

    def test_unsupported_provider_logs_warning(self, caplog):
        import logging
        with caplog.at_level(logging.WARNING, logger="kbdraft.common.llm_client"):
            client = LLMClient(provider="unsupported_xyz")
        assert not client.is_available
        assert "Unsupported" in caplog.text


class TestResolveProvider:
    def test_explicit_provider_kept(self):
        assert resolve_provider(LLMConfig(provider="openai")) == "openai"

    def test_auto_picks_first_key(self):
        cfg = LLMConfig(provider="auto", openai_api_key="sk", google_api_key="g")
        assert resolve_provider(cfg) == "openai"

    def test_auto_prefers_anthropic(self):
        cfg = LLMConfig(provider="auto", anthropic_api_key="a", openai_api_key="sk")
        assert resolve_provider(cfg) == "anthropic"

    def test_auto_without_keys(self):
        assert resolve_provider(LLMConfig()) == "anthropic"

    def test_from_config_without_keys_is_unavailable(self):
        client = LLMClient.from_config(LLMConfig())
        assert client.provider == "anthropic"
        assert not client.is_available


class TestLLMClientGenerate:
    def _client(self, provider):
        client = LLMClient.__new__(LLMClient)
        client.provider = provider
        client.model = "test-model"
        client._client = Mock()
        return client

    def test_generate_raises_when_unavailable(self):
        client = LLMClient(provider="anthropic")
        with pytest.raises(RuntimeError, match="not available"):
            client.generate("test")

    def test_anthropic_passes_system_and_strips(self):
        client = self._client("anthropic")
        client._client.messages.create.return_value = Mock(content=[Mock(text="  summary  ")])

        result = client.generate("body", system="be brief", max_tokens=100)

        assert result == "summary"
        kwargs = client._client.messages.create.call_args.kwargs
        assert kwargs["system"] == "be brief"
        assert kwargs["max_tokens"] == 100
        assert kwargs["messages"] == [{"role": "user", "content": "body"}]

    def test_anthropic_empty_content(self):
        client = self._client("anthropic")
        client._client.messages.create.return_value = Mock(content=[])
        assert client.generate("body") == ""

    def test_openai_system_message_first(self):
        client = self._client("openai")
        choice = Mock()
        choice.message.content = "done"
        client._client.chat.completions.create.return_value = Mock(choices=[choice])

        assert client.generate("body", system="sys") == "done"
        messages = client._client.chat.completions.create.call_args.kwargs["messages"]
        assert messages[0] == {"role": "system", "content": "sys"}

    def test_openai_no_choices(self):
        client = self._client("openai")
        client._client.chat.completions.create.return_value = Mock(choices=[])
        assert client.generate("body") == ""
