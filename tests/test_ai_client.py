"""
Tests für das LLM-Client Interface und das Fehler-Mapping der Adapter
"""

import json
from unittest.mock import patch

import pytest
import requests

from tone_drafter.ai_client import (
    AIClient,
    AnthropicClient,
    LocalOllamaClient,
    MistralClient,
    OpenAIClient,
    Prompt,
    _safe_response_text,
    build_client,
    resolve_model,
)
from tone_drafter.exceptions import ProviderError, ProviderErrorKind

PROMPT = Prompt(system="system", user="Bitte antworten", max_tokens=50)


def _response(status, payload=None, text=None):
    response = requests.Response()
    response.status_code = status
    response.url = "http://llm.test"
    if payload is not None:
        response._content = json.dumps(payload).encode("utf-8")
    else:
        response._content = (text or "").encode("utf-8")
    return response


def test_ai_client_interface():
    """AIClient ist abstrakt"""
    with pytest.raises(TypeError):
        AIClient("model")


def test_ollama_client_instantiation():
    client = LocalOllamaClient(model="mistral:7b", base_url="http://127.0.0.1:11434/", timeout=5)
    assert client.model == "mistral:7b"
    assert client.chat_url == "http://127.0.0.1:11434/api/chat"


@patch("tone_drafter.ai_client.requests.post")
def test_ollama_complete(mock_post):
    mock_post.return_value = _response(200, {"message": {"content": "Hallo Bob"}})
    client = LocalOllamaClient(timeout=5)

    assert client.complete(PROMPT) == "Hallo Bob"
    payload = mock_post.call_args.kwargs["json"]
    assert payload["messages"][0] == {"role": "system", "content": "system"}
    assert payload["options"]["num_predict"] == 50


@patch("tone_drafter.ai_client.requests.post")
def test_ollama_embed(mock_post):
    mock_post.return_value = _response(200, {"embedding": [0.1, 0.2, 0.3]})
    client = LocalOllamaClient(timeout=5)

    assert client.embed("Text", model="all-minilm:22m") == [0.1, 0.2, 0.3]
    assert mock_post.call_args.args[0].endswith("/api/embeddings")


@pytest.mark.parametrize(
    "status,kind,retryable",
    [
        (429, ProviderErrorKind.RATE_LIMITED, True),
        (401, ProviderErrorKind.AUTH_FAILED, False),
        (403, ProviderErrorKind.AUTH_FAILED, False),
        (503, ProviderErrorKind.TIMEOUT, True),
        (400, ProviderErrorKind.MALFORMED_RESPONSE, False),
    ],
)
@patch("tone_drafter.ai_client.requests.post")
def test_http_status_mapping(mock_post, status, kind, retryable):
    mock_post.return_value = _response(status, {"error": "nope"})
    client = OpenAIClient(api_key="sk-test", timeout=5)

    with pytest.raises(ProviderError) as exc_info:
        client.complete(PROMPT)

    assert exc_info.value.kind == kind
    assert exc_info.value.retryable is retryable
    assert exc_info.value.provider == "openai"


@pytest.mark.parametrize(
    "error", [requests.exceptions.Timeout("slow"), requests.exceptions.ConnectionError("down")]
)
@patch("tone_drafter.ai_client.requests.post")
def test_transport_errors_are_timeouts(mock_post, error):
    mock_post.side_effect = error
    client = MistralClient(api_key="key", timeout=5)

    with pytest.raises(ProviderError) as exc_info:
        client.complete(PROMPT)
    assert exc_info.value.kind == ProviderErrorKind.TIMEOUT


@patch("tone_drafter.ai_client.requests.post")
def test_non_json_body_is_malformed(mock_post):
    mock_post.return_value = _response(200, text="<html>oops</html>")
    with pytest.raises(ProviderError) as exc_info:
        LocalOllamaClient(timeout=5).complete(PROMPT)
    assert exc_info.value.kind == ProviderErrorKind.MALFORMED_RESPONSE


@patch("tone_drafter.ai_client.requests.post")
def test_missing_content_is_malformed(mock_post):
    mock_post.return_value = _response(200, {"choices": []})
    with pytest.raises(ProviderError) as exc_info:
        OpenAIClient(api_key="sk-test", timeout=5).complete(PROMPT)
    assert exc_info.value.kind == ProviderErrorKind.MALFORMED_RESPONSE


@patch("tone_drafter.ai_client.requests.post")
def test_openai_reasoning_model_parameters(mock_post):
    mock_post.return_value = _response(200, {"choices": [{"message": {"content": "ok"}}]})
    client = OpenAIClient(api_key="sk-test", model="o3-mini", timeout=5)

    client.complete(PROMPT)

    payload = mock_post.call_args.kwargs["json"]
    assert payload["max_completion_tokens"] == 50
    assert "temperature" not in payload
    assert mock_post.call_args.kwargs["headers"]["Authorization"] == "Bearer sk-test"


@patch("tone_drafter.ai_client.requests.post")
def test_anthropic_joins_text_blocks(mock_post):
    mock_post.return_value = _response(
        200,
        {"content": [{"type": "text", "text": "Hallo "}, {"type": "tool_use"}, {"type": "text", "text": "Bob"}]},
    )
    client = AnthropicClient(api_key="key", timeout=5)

    assert client.complete(PROMPT) == "Hallo Bob"
    assert mock_post.call_args.kwargs["json"]["system"] == "system"


def test_build_client_selects_adapter(monkeypatch):
    monkeypatch.setenv("OPENAI_API_KEY", "sk-env")
    client = build_client("openai", timeout=5)
    assert isinstance(client, OpenAIClient)
    assert client.api_key == "sk-env"
    assert client.model == "gpt-4o-mini"

    assert isinstance(build_client("ollama", model="phi3:mini", timeout=5), LocalOllamaClient)


def test_build_client_errors(monkeypatch):
    monkeypatch.delenv("ANTHROPIC_API_KEY", raising=False)
    with pytest.raises(ValueError):
        build_client("anthropic", timeout=5)
    with pytest.raises(ValueError):
        build_client("unknown", timeout=5)


def test_resolve_model_defaults():
    assert resolve_model("mistral", None) == "mistral-small-latest"
    assert resolve_model("mistral", " mistral-large-latest ") == "mistral-large-latest"


def test_safe_response_text_redacts_keys():
    response = _response(401, text="invalid key sk-abcdefghijklmnopqrstuvwxyz123 / Bearer abc.def")
    text = _safe_response_text(response)
    assert "sk-abcdefghijklmnopqrstuvwxyz123" not in text
    assert "[REDACTED_KEY]" in text
    assert "abc.def" not in text
