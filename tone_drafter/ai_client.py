"""
Tone Drafter - LLM-Client (Interface + Adapter)
Unterstützt: Ollama (lokal), OpenAI, Anthropic, Mistral (Cloud)

Jeder Adapter implementiert ``complete(prompt, model)`` und übersetzt
HTTP-/Transport-Fehler in ProviderError mit einheitlichem ``kind``.
Retries passieren nicht hier, sondern in der Job-Queue.
"""

import logging
import os
import re
from abc import ABC, abstractmethod
from dataclasses import dataclass
from typing import Any, Dict, List, Optional

import requests

from tone_drafter import config
from tone_drafter.exceptions import ProviderError, ProviderErrorKind

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class Prompt:
    """Provider-unabhängige Generierungsanfrage"""

    system: str
    user: str
    max_tokens: int = 1000
    temperature: float = 0.7


# Input Sanitization für Mail-Inhalte
def _sanitize_input(text: str, max_length: int = 20000) -> str:
    """Entfernt Steuerzeichen und begrenzt die Länge"""
    if not isinstance(text, str):
        return ""
    text = text[:max_length]
    text = re.sub(r"[\x00-\x08\x0b\x0c\x0e-\x1f\x7f-\x9f]", "", text)
    return text.strip()


# Safe Error Logging (API-Keys schwärzen)
def _safe_response_text(response) -> str:
    """Extrahiert Response-Text ohne API-Keys preiszugeben

    Schwärzt Muster wie sk-..., ak-... und Bearer-Tokens.
    """
    text = (getattr(response, "text", "") or "")[:200]
    text = re.sub(r"\b[a-z]{2}-[a-zA-Z0-9_\-]{20,}\b", "[REDACTED_KEY]", text)
    text = re.sub(r"(?i)bearer\s+[a-zA-Z0-9._\-]+", "Bearer [REDACTED_KEY]", text)
    return text


class AIClient(ABC):
    """Abstraktes Interface für LLM-Backends"""

    provider_type: str = ""

    def __init__(self, model: str, timeout: Optional[float] = None):
        self.model = model
        self.timeout = timeout if timeout is not None else config.get_llm_timeout()

    @abstractmethod
    def complete(self, prompt: Prompt, model: Optional[str] = None) -> str:
        """Generiert Text aus einem Prompt

        Raises:
            ProviderError: rate_limited, auth_failed, timeout, malformed_response
        """

    def embed(self, text: str, model: Optional[str] = None) -> List[float]:
        raise NotImplementedError(f"{self.__class__.__name__} bietet keine Embeddings an")

    @property
    def supports_embeddings(self) -> bool:
        return bool(PROVIDER_REGISTRY.get(self.provider_type, {}).get("supports_embeddings"))

    def _post(self, url: str, payload: Dict[str, Any], headers: Optional[Dict[str, str]] = None,
              timeout: Optional[float] = None) -> Dict[str, Any]:
        """POST + Fehler-Mapping auf ProviderErrorKind"""
        try:
            response = requests.post(
                url, json=payload, headers=headers or {}, timeout=timeout or self.timeout
            )
        except requests.exceptions.Timeout as exc:
            logger.warning(f"⏱️ {self.provider_type}-Request Timeout (model={self.model})")
            raise ProviderError(ProviderErrorKind.TIMEOUT, "Request timed out", self.provider_type) from exc
        except requests.exceptions.RequestException as exc:
            logger.warning(
                f"⚠️ {self.provider_type} Transportfehler (model={self.model}): {type(exc).__name__}"
            )
            raise ProviderError(
                ProviderErrorKind.TIMEOUT, f"Transportfehler: {type(exc).__name__}", self.provider_type
            ) from exc

        status = response.status_code
        if status == 429:
            raise ProviderError(ProviderErrorKind.RATE_LIMITED, "HTTP 429", self.provider_type, status)
        if status in (401, 403):
            logger.error(f"❌ {self.provider_type} Authentifizierung fehlgeschlagen (HTTP {status})")
            raise ProviderError(ProviderErrorKind.AUTH_FAILED, f"HTTP {status}", self.provider_type, status)

        try:
            response.raise_for_status()
        except requests.exceptions.HTTPError as exc:
            logger.error(
                f"❌ {self.provider_type} HTTP Error (model={self.model}): "
                f"{status} - {_safe_response_text(response)}"
            )
            # 5xx ist transient, andere 4xx sind ein fehlerhafter Request
            kind = ProviderErrorKind.TIMEOUT if status >= 500 else ProviderErrorKind.MALFORMED_RESPONSE
            raise ProviderError(kind, f"HTTP {status}", self.provider_type, status) from exc

        try:
            data = response.json()
        except ValueError as exc:
            raise ProviderError(
                ProviderErrorKind.MALFORMED_RESPONSE, "Antwort ist kein JSON", self.provider_type, status
            ) from exc
        if not isinstance(data, dict):
            raise ProviderError(
                ProviderErrorKind.MALFORMED_RESPONSE, "Antwort ist kein JSON-Objekt", self.provider_type, status
            )
        return data

    def _malformed(self, detail: str) -> ProviderError:
        return ProviderError(ProviderErrorKind.MALFORMED_RESPONSE, detail, self.provider_type)

    def _require_text(self, text: Any) -> str:
        if not isinstance(text, str) or not text.strip():
            raise self._malformed("Leere oder fehlende Textantwort")
        return text

    def _require_vector(self, vector: Any) -> List[float]:
        if not isinstance(vector, list) or not vector:
            raise self._malformed("Leerer oder fehlender Embedding-Vektor")
        try:
            return [float(v) for v in vector]
        except (TypeError, ValueError) as exc:
            raise self._malformed("Embedding enthält keine Zahlen") from exc


PROVIDER_REGISTRY: Dict[str, Dict[str, Any]] = {
    "ollama": {
        "label": "Ollama (lokal)",
        "is_cloud": False,
        "default_model": "llama3.2",
        "default_embedding_model": "all-minilm:22m",
        "models": ["llama3.2", "llama3.2:1b", "llama3.2:3b", "phi3:mini", "mistral"],
        "supports_embeddings": True,
        "requires_api_key": False,
    },
    "openai": {
        "label": "OpenAI (Cloud)",
        "is_cloud": True,
        "default_model": "gpt-4o-mini",
        "default_embedding_model": "text-embedding-3-small",
        "models": ["gpt-4o-mini", "gpt-4o", "gpt-4-turbo"],
        "supports_embeddings": True,
        "requires_api_key": True,
        "env_key": "OPENAI_API_KEY",
    },
    "anthropic": {
        "label": "Anthropic Claude (Cloud)",
        "is_cloud": True,
        "default_model": "claude-haiku-4-5-20251001",
        "models": [
            "claude-haiku-4-5-20251001",
            "claude-sonnet-4-5-20250929",
            "claude-opus-4-1-20250805",
        ],
        "supports_embeddings": False,
        "requires_api_key": True,
        "env_key": "ANTHROPIC_API_KEY",
    },
    "mistral": {
        "label": "Mistral AI (Cloud)",
        "is_cloud": True,
        "default_model": "mistral-small-latest",
        "default_embedding_model": "mistral-embed",
        "models": ["mistral-large-latest", "mistral-small-latest"],
        "supports_embeddings": True,
        "requires_api_key": True,
        "env_key": "MISTRAL_API_KEY",
    },
}


class LocalOllamaClient(AIClient):
    """Lokales LLM via Ollama"""

    provider_type = "ollama"

    def __init__(self, model: Optional[str] = None, base_url: Optional[str] = None,
                 timeout: Optional[float] = None) -> None:
        super().__init__(model or PROVIDER_REGISTRY["ollama"]["default_model"], timeout)
        self.base_url = (base_url or os.getenv("OLLAMA_BASE_URL", "http://127.0.0.1:11434")).rstrip("/")

    @property
    def chat_url(self) -> str:
        return f"{self.base_url}/api/chat"

    @property
    def embeddings_url(self) -> str:
        return f"{self.base_url}/api/embeddings"

    def complete(self, prompt: Prompt, model: Optional[str] = None) -> str:
        payload = {
            "model": model or self.model,
            "messages": [
                {"role": "system", "content": prompt.system},
                {"role": "user", "content": _sanitize_input(prompt.user)},
            ],
            "stream": False,
            "options": {"num_predict": prompt.max_tokens, "temperature": prompt.temperature},
        }
        data = self._post(self.chat_url, payload)
        message = data.get("message")
        if not isinstance(message, dict):
            raise self._malformed("Feld 'message' fehlt")
        return self._require_text(message.get("content"))

    def embed(self, text: str, model: Optional[str] = None) -> List[float]:
        payload = {
            "model": model or PROVIDER_REGISTRY["ollama"]["default_embedding_model"],
            "prompt": _sanitize_input(text, max_length=2000),
        }
        data = self._post(self.embeddings_url, payload, timeout=config.get_embedding_timeout())
        return self._require_vector(data.get("embedding"))


class OpenAIClient(AIClient):
    """OpenAI Chat Completions + Embeddings API"""

    provider_type = "openai"
    API_URL = "https://api.openai.com/v1/chat/completions"
    EMBEDDINGS_URL = "https://api.openai.com/v1/embeddings"

    def __init__(self, api_key: str, model: Optional[str] = None, base_url: Optional[str] = None,
                 timeout: Optional[float] = None):
        if not api_key:
            raise ValueError("OpenAI API Key fehlt")
        super().__init__(model or PROVIDER_REGISTRY["openai"]["default_model"], timeout)
        self.api_key = api_key
        if base_url:
            base = base_url.rstrip("/")
            self.API_URL = f"{base}/chat/completions"
            self.EMBEDDINGS_URL = f"{base}/embeddings"

    @property
    def _headers(self) -> Dict[str, str]:
        return {"Authorization": f"Bearer {self.api_key}", "Content-Type": "application/json"}

    def complete(self, prompt: Prompt, model: Optional[str] = None) -> str:
        model_name = model or self.model
        payload: Dict[str, Any] = {
            "model": model_name,
            "messages": [
                {"role": "system", "content": prompt.system},
                {"role": "user", "content": _sanitize_input(prompt.user)},
            ],
        }
        # Reasoning-Modelle (o1/o3/gpt-5) akzeptieren weder temperature noch max_tokens
        if model_name.startswith(("o1", "o3", "gpt-5")):
            payload["max_completion_tokens"] = prompt.max_tokens
        else:
            payload["max_tokens"] = prompt.max_tokens
            payload["temperature"] = prompt.temperature

        data = self._post(self.API_URL, payload, self._headers)
        try:
            content = data["choices"][0]["message"]["content"]
        except (KeyError, IndexError, TypeError) as exc:
            raise self._malformed("Unerwartete Struktur in 'choices'") from exc
        return self._require_text(content)

    def embed(self, text: str, model: Optional[str] = None) -> List[float]:
        payload = {
            "model": model or PROVIDER_REGISTRY["openai"]["default_embedding_model"],
            "input": _sanitize_input(text, max_length=8000),
        }
        data = self._post(self.EMBEDDINGS_URL, payload, self._headers, timeout=config.get_embedding_timeout())
        try:
            vector = data["data"][0]["embedding"]
        except (KeyError, IndexError, TypeError) as exc:
            raise self._malformed("Unerwartete Struktur in 'data'") from exc
        return self._require_vector(vector)


class AnthropicClient(AIClient):
    """Anthropic Claude Messages API"""

    provider_type = "anthropic"
    API_URL = "https://api.anthropic.com/v1/messages"

    def __init__(self, api_key: str, model: Optional[str] = None, base_url: Optional[str] = None,
                 timeout: Optional[float] = None):
        if not api_key:
            raise ValueError("Anthropic API Key fehlt")
        super().__init__(model or PROVIDER_REGISTRY["anthropic"]["default_model"], timeout)
        self.api_key = api_key
        if base_url:
            self.API_URL = f"{base_url.rstrip('/')}/v1/messages"

    def complete(self, prompt: Prompt, model: Optional[str] = None) -> str:
        payload = {
            "model": model or self.model,
            "max_tokens": prompt.max_tokens,
            "temperature": prompt.temperature,
            "system": prompt.system,
            "messages": [
                {
                    "role": "user",
                    "content": [{"type": "text", "text": _sanitize_input(prompt.user)}],
                }
            ],
        }
        headers = {
            "x-api-key": self.api_key,
            "content-type": "application/json",
            "anthropic-version": "2023-06-01",
        }
        data = self._post(self.API_URL, payload, headers)
        blocks = data.get("content")
        if not isinstance(blocks, list):
            raise self._malformed("Feld 'content' fehlt")
        text = "".join(
            block.get("text", "") for block in blocks
            if isinstance(block, dict) and block.get("type") == "text"
        )
        return self._require_text(text)


class MistralClient(AIClient):
    """Mistral AI Chat Completions + Embeddings API"""

    provider_type = "mistral"
    API_URL = "https://api.mistral.ai/v1/chat/completions"
    EMBEDDINGS_URL = "https://api.mistral.ai/v1/embeddings"

    def __init__(self, api_key: str, model: Optional[str] = None, base_url: Optional[str] = None,
                 timeout: Optional[float] = None):
        if not api_key:
            raise ValueError("Mistral API Key fehlt")
        super().__init__(model or PROVIDER_REGISTRY["mistral"]["default_model"], timeout)
        self.api_key = api_key
        if base_url:
            base = base_url.rstrip("/")
            self.API_URL = f"{base}/chat/completions"
            self.EMBEDDINGS_URL = f"{base}/embeddings"

    @property
    def _headers(self) -> Dict[str, str]:
        return {"Authorization": f"Bearer {self.api_key}", "Content-Type": "application/json"}

    def complete(self, prompt: Prompt, model: Optional[str] = None) -> str:
        payload = {
            "model": model or self.model,
            "messages": [
                {"role": "system", "content": prompt.system},
                {"role": "user", "content": _sanitize_input(prompt.user)},
            ],
            "max_tokens": prompt.max_tokens,
            "temperature": prompt.temperature,
        }
        data = self._post(self.API_URL, payload, self._headers)
        try:
            content = data["choices"][0]["message"]["content"]
        except (KeyError, IndexError, TypeError) as exc:
            raise self._malformed("Unerwartete Struktur in 'choices'") from exc
        return self._require_text(content)

    def embed(self, text: str, model: Optional[str] = None) -> List[float]:
        payload = {
            "model": model or PROVIDER_REGISTRY["mistral"]["default_embedding_model"],
            "input": [_sanitize_input(text, max_length=8000)],
        }
        data = self._post(self.EMBEDDINGS_URL, payload, self._headers, timeout=config.get_embedding_timeout())
        try:
            vector = data["data"][0]["embedding"]
        except (KeyError, IndexError, TypeError) as exc:
            raise self._malformed("Unerwartete Struktur in 'data'") from exc
        return self._require_vector(vector)


CLIENT_CLASSES = {
    "ollama": LocalOllamaClient,
    "openai": OpenAIClient,
    "anthropic": AnthropicClient,
    "mistral": MistralClient,
}


def resolve_model(provider: str, requested_model: Optional[str]) -> str:
    """Gibt das angeforderte Modell durch, sonst den Registry-Default"""
    if requested_model and requested_model.strip():
        return requested_model.strip()
    provider_config = PROVIDER_REGISTRY.get((provider or "ollama").lower()) or {}
    return provider_config.get("default_model", PROVIDER_REGISTRY["ollama"]["default_model"])


def provider_requires_api_key(provider: str) -> bool:
    provider_config = PROVIDER_REGISTRY.get((provider or "").lower())
    return bool(provider_config and provider_config.get("requires_api_key"))


def build_client(
    provider: str = "ollama",
    model: Optional[str] = None,
    api_key: Optional[str] = None,
    base_url: Optional[str] = None,
    timeout: Optional[float] = None,
) -> AIClient:
    """Wählt den Adapter über den Registry-Key

    Für Cloud-Provider ohne explizit übergebenen Key wird die
    Umgebungsvariable aus der Registry verwendet.
    """
    provider_key = (provider or "ollama").lower()
    if provider_key not in PROVIDER_REGISTRY:
        raise ValueError(f"Unbekanntes Backend: {provider}")

    resolved_model = resolve_model(provider_key, model)
    client_class = CLIENT_CLASSES[provider_key]

    if not provider_requires_api_key(provider_key):
        return client_class(model=resolved_model, base_url=base_url, timeout=timeout)

    env_key = PROVIDER_REGISTRY[provider_key]["env_key"]
    key = api_key or os.getenv(env_key, "")
    if not key:
        raise ValueError(f"{env_key} ist nicht gesetzt")
    return client_class(api_key=key, model=resolved_model, base_url=base_url, timeout=timeout)


def build_embedding_client() -> AIClient:
    """Embedding-Client laut EMBEDDING_PROVIDER/EMBEDDING_MODEL"""
    provider = config.get_embedding_provider()
    if not PROVIDER_REGISTRY.get(provider, {}).get("supports_embeddings"):
        raise ValueError(f"Provider {provider} bietet keine Embeddings an")
    return EmbeddingClient(build_client(provider, timeout=config.get_embedding_timeout()),
                           config.get_embedding_model())


class EmbeddingClient:
    """Bindet einen Adapter an ein festes Embedding-Modell"""

    def __init__(self, client: AIClient, model: Optional[str] = None):
        self.client = client
        self.model = model

    def embed(self, text: str) -> List[float]:
        return self.client.embed(text, model=self.model)
