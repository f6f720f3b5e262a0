"""Tests for the Gemini and Ollama provider adapters with mocked SDK clients."""

from __future__ import annotations

from types import SimpleNamespace
from unittest.mock import MagicMock

import pytest

from src.providers.base import CompletionProvider
from src.providers.gemini_provider import GeminiProvider
from src.providers.ollama_provider import OllamaProvider

CONFIG = {"temperature": 0.4, "top_p": 0.9, "max_tokens": 2048}


def _chunks(*texts):
    return iter([SimpleNamespace(text=text) for text in texts])


# -- Base contract ---------------------------------------------------------------------


class EchoProvider(CompletionProvider):
    @property
    def provider_name(self) -> str:
        return "Echo"

    def get_available_models(self):
        return ["echo"]

    def stream_chat(self, model_name, prompt, config):
        yield prompt


def test_base_structured_fallback_concatenates_roles() -> None:
    provider = EchoProvider()

    output = "".join(
        provider.stream_chat_structured(
            "echo",
            [{"role": "user", "content": "Hi"}, {"role": "assistant", "content": "Hello"}],
            CONFIG,
        )
    )

    assert output == "User: Hi\n\nAssistant: Hello"


def test_base_provider_has_no_conversation_handles() -> None:
    provider = EchoProvider()

    assert provider.supports_conversation_handles is False
    with pytest.raises(NotImplementedError):
        provider.start_conversation("echo", [], CONFIG)


# -- Gemini ----------------------------------------------------------------------------


def test_gemini_history_conversion_skips_leading_assistant_turns() -> None:
    history = [
        {"role": "assistant", "content": "Welcome"},
        {"role": "user", "content": "My name is John"},
        {"role": "assistant", "content": "Nice to meet you"},
    ]

    assert GeminiProvider.to_gemini_history(history) == [
        {"role": "user", "parts": ["My name is John"]},
        {"role": "model", "parts": ["Nice to meet you"]},
    ]


def test_gemini_start_conversation_seeds_chat_history() -> None:
    client = MagicMock()
    model = client.GenerativeModel.return_value
    provider = GeminiProvider(api_key="key", client=client)

    handle = provider.start_conversation("gemini-test", [{"role": "user", "content": "Hi"}], CONFIG)

    assert handle is model.start_chat.return_value
    client.GenerativeModel.assert_called_once_with(
        model_name="gemini-test",
        generation_config={"temperature": 0.4, "top_p": 0.9, "max_output_tokens": 2048},
    )
    model.start_chat.assert_called_once_with(history=[{"role": "user", "parts": ["Hi"]}])


def test_gemini_stream_conversation_yields_text_chunks() -> None:
    provider = GeminiProvider(api_key="key", client=MagicMock())
    chat = MagicMock()
    chat.send_message.return_value = _chunks("Hello ", None, "John")

    assert "".join(provider.stream_conversation(chat, "Who am I?")) == "Hello John"
    chat.send_message.assert_called_once_with("Who am I?", stream=True)


def test_gemini_structured_call_sends_converted_contents() -> None:
    client = MagicMock()
    model = client.GenerativeModel.return_value
    model.generate_content.return_value = _chunks("ok")
    provider = GeminiProvider(api_key="key", client=client)

    text = "".join(provider.stream_chat_structured("gemini-test", [{"role": "user", "content": "Hi"}], CONFIG))

    assert text == "ok"
    model.generate_content.assert_called_once_with([{"role": "user", "parts": ["Hi"]}], stream=True)


def test_gemini_propagates_sdk_errors() -> None:
    client = MagicMock()
    client.GenerativeModel.return_value.generate_content.side_effect = TimeoutError("slow")
    provider = GeminiProvider(api_key="key", client=client)

    with pytest.raises(TimeoutError):
        list(provider.stream_chat("gemini-test", "prompt", CONFIG))


def test_gemini_without_key_is_unconfigured(monkeypatch: pytest.MonkeyPatch) -> None:
    monkeypatch.setattr("src.providers.gemini_provider.get_api_key", lambda provider_key: None)
    provider = GeminiProvider()

    assert provider.get_available_models() == []
    with pytest.raises(RuntimeError):
        list(provider.stream_chat("gemini-test", "prompt", CONFIG))


# -- Ollama ----------------------------------------------------------------------------


def test_ollama_structured_chat_streams_message_content() -> None:
    client = MagicMock()
    client.chat.return_value = iter([
        {"message": {"role": "assistant", "content": "Your name "}},
        {"message": {"role": "assistant", "content": ""}},
        {"message": {"role": "assistant", "content": "is John."}},
    ])
    provider = OllamaProvider(host="http://ollama:11434", client=client)
    messages = [{"role": "user", "content": "What's my name?"}]

    text = "".join(provider.stream_chat_structured("llama3.1", messages, CONFIG))

    assert text == "Your name is John."
    client.chat.assert_called_once_with(
        model="llama3.1",
        messages=messages,
        stream=True,
        options={"temperature": 0.4, "top_p": 0.9, "num_predict": 2048},
    )


def test_ollama_one_shot_uses_generate() -> None:
    client = MagicMock()
    client.generate.return_value = iter([{"response": "Budget "}, {"response": "Review"}])
    provider = OllamaProvider(host="http://ollama:11434", client=client)

    assert "".join(provider.stream_chat("llama3.1", "title please", CONFIG)) == "Budget Review"


def test_ollama_lists_models_and_tolerates_unreachable_server() -> None:
    client = MagicMock()
    client.list.return_value = {"models": [{"model": "llama3.1"}, {"name": "mistral"}, {}]}
    provider = OllamaProvider(host="http://ollama:11434", client=client)

    assert provider.get_available_models() == ["llama3.1", "mistral"]

    client.list.side_effect = ConnectionError("refused")
    assert provider.get_available_models() == []


def test_ollama_has_no_conversation_handles() -> None:
    provider = OllamaProvider(host="http://ollama:11434", client=MagicMock())

    assert provider.supports_conversation_handles is False
    assert provider.provider_name == "Ollama"
