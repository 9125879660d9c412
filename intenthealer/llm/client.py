from __future__ import annotations

import json
import logging
import os
from abc import ABC, abstractmethod
from collections.abc import Callable, Mapping
from dataclasses import dataclass
from types import MappingProxyType
from typing import Any
from urllib import error, request

from intenthealer.config.schema import LlmConfig
from intenthealer.core.exceptions import ProviderError
from intenthealer.llm.prompts import SYSTEM_PROMPT

log = logging.getLogger(__name__)

RETRYABLE_STATUSES = {408, 429, 500, 502, 503, 504}

Transport = Callable[[str, dict[str, Any], dict[str, str], float, str], dict[str, Any]]


@dataclass(frozen=True, slots=True)
class ProviderResponse:
    text: str
    input_tokens: int = 0
    output_tokens: int = 0


class ReasoningProvider(ABC):
    """Provider-neutral interface for heal arbitration."""

    provider_name = "unknown"

    @abstractmethod
    def complete(self, prompt: str, config: LlmConfig) -> ProviderResponse:
        raise NotImplementedError


class HttpReasoningProvider(ReasoningProvider):
    api_key_env = ""

    def __init__(self, api_key: str | None = None, transport: Transport | None = None) -> None:
        self.api_key = api_key
        self.transport = transport or _post_json

    def resolve_api_key(self, config: LlmConfig) -> str:
        api_key = self.api_key or os.getenv(config.api_key_env or self.api_key_env)
        if not api_key:
            raise ProviderError(
                f"{config.api_key_env or self.api_key_env} is required for provider {self.provider_name}",
                provider=self.provider_name,
            )
        return api_key


class OpenAIProvider(HttpReasoningProvider):
    provider_name = "openai"
    api_key_env = "OPENAI_API_KEY"
    endpoint = "https://api.openai.com/v1/chat/completions"

    def complete(self, prompt: str, config: LlmConfig) -> ProviderResponse:
        body = {
            "model": config.model,
            "temperature": config.temperature,
            "max_tokens": config.max_tokens,
            "messages": [
                {"role": "system", "content": SYSTEM_PROMPT},
                {"role": "user", "content": prompt},
            ],
        }
        response = self.transport(
            config.base_url or self.endpoint,
            body,
            {
                "Authorization": f"Bearer {self.resolve_api_key(config)}",
                "Content-Type": "application/json",
            },
            config.timeout_seconds,
            self.provider_name,
        )
        try:
            content = response["choices"][0]["message"]["content"]
        except (KeyError, IndexError, TypeError) as exc:
            raise ProviderError("OpenAI returned an unexpected payload", provider=self.provider_name) from exc
        usage = response.get("usage") or {}
        return ProviderResponse(content, usage.get("prompt_tokens", 0), usage.get("completion_tokens", 0))


class AnthropicProvider(HttpReasoningProvider):
    provider_name = "anthropic"
    api_key_env = "ANTHROPIC_API_KEY"
    endpoint = "https://api.anthropic.com/v1/messages"

    def complete(self, prompt: str, config: LlmConfig) -> ProviderResponse:
        body = {
            "model": config.model,
            "max_tokens": config.max_tokens,
            "temperature": config.temperature,
            "system": SYSTEM_PROMPT,
            "messages": [
                {"role": "user", "content": prompt},
            ],
        }
        response = self.transport(
            config.base_url or self.endpoint,
            body,
            {
                "x-api-key": self.resolve_api_key(config),
                "anthropic-version": "2023-06-01",
                "Content-Type": "application/json",
            },
            config.timeout_seconds,
            self.provider_name,
        )
        try:
            content = "".join(part.get("text", "") for part in response["content"] if isinstance(part, dict))
        except (KeyError, TypeError) as exc:
            raise ProviderError("Anthropic returned an unexpected payload", provider=self.provider_name) from exc
        usage = response.get("usage") or {}
        return ProviderResponse(content, usage.get("input_tokens", 0), usage.get("output_tokens", 0))


class GeminiProvider(HttpReasoningProvider):
    provider_name = "gemini"
    api_key_env = "GEMINI_API_KEY"
    endpoint_template = "https://generativelanguage.googleapis.com/v1beta/models/{model}:generateContent"

    def complete(self, prompt: str, config: LlmConfig) -> ProviderResponse:
        body = {
            "system_instruction": {
                "parts": [
                    {"text": SYSTEM_PROMPT},
                ]
            },
            "contents": [
                {
                    "role": "user",
                    "parts": [
                        {"text": prompt},
                    ],
                }
            ],
            "generationConfig": {
                "temperature": config.temperature,
                "maxOutputTokens": config.max_tokens,
            },
        }
        response = self.transport(
            config.base_url or self.endpoint_template.format(model=config.model),
            body,
            {
                "x-goog-api-key": self.resolve_api_key(config),
                "Content-Type": "application/json",
            },
            config.timeout_seconds,
            self.provider_name,
        )
        candidates = response.get("candidates", [])
        if not candidates:
            raise ProviderError("Gemini returned no candidates", provider=self.provider_name)
        parts = candidates[0].get("content", {}).get("parts", [])
        content = "".join(part.get("text", "") for part in parts if isinstance(part, dict)).strip()
        if not content:
            raise ProviderError("Gemini returned an empty response", provider=self.provider_name)
        usage = response.get("usageMetadata") or {}
        return ProviderResponse(content, usage.get("promptTokenCount", 0), usage.get("candidatesTokenCount", 0))


BUILTIN_PROVIDERS: Mapping[str, Callable[[], ReasoningProvider]] = MappingProxyType(
    {
        "openai": OpenAIProvider,
        "anthropic": AnthropicProvider,
        "gemini": GeminiProvider,
    }
)


class ProviderRegistry:
    """Provider factories by name; starts from the built-ins and is owned by one arbitrator."""

    def __init__(self, factories: Mapping[str, Callable[[], ReasoningProvider]] | None = None) -> None:
        self._factories = dict(BUILTIN_PROVIDERS)
        for name, factory in (factories or {}).items():
            self.register(name, factory)

    def __contains__(self, name: object) -> bool:
        return isinstance(name, str) and name.strip().lower() in self._factories

    def register(self, name: str, factory: Callable[[], ReasoningProvider]) -> None:
        self._factories[name.strip().lower()] = factory
        log.debug("Registered reasoning provider %s", name)

    def create(self, name: str) -> ReasoningProvider | None:
        factory = self._factories.get(name.strip().lower())
        return factory() if factory is not None else None


def create_provider(name: str) -> ReasoningProvider | None:
    factory = BUILTIN_PROVIDERS.get(name.strip().lower())
    return factory() if factory is not None else None


def is_retryable_status(status: int) -> bool:
    return status in RETRYABLE_STATUSES or 500 <= status < 600


def _post_json(
    url: str,
    payload: dict[str, Any],
    headers: dict[str, str],
    timeout: float,
    provider: str,
) -> dict[str, Any]:
    encoded = json.dumps(payload).encode("utf-8")
    req = request.Request(url, data=encoded, headers=headers, method="POST")
    try:
        with request.urlopen(req, timeout=timeout) as response:
            raw = response.read().decode("utf-8")
    except error.HTTPError as exc:
        detail = exc.read().decode("utf-8", errors="replace")
        raise ProviderError(
            f"{provider} request failed with status {exc.code}: {detail[:300]}",
            provider=provider,
            retryable=is_retryable_status(exc.code),
            status=exc.code,
        ) from exc
    except error.URLError as exc:
        reason = exc.reason
        retryable = isinstance(reason, (TimeoutError, ConnectionError)) or "timed out" in str(reason).lower()
        raise ProviderError(
            f"{provider} request could not be completed: {reason}",
            provider=provider,
            retryable=retryable,
        ) from exc
    except (TimeoutError, ConnectionError) as exc:
        raise ProviderError(f"{provider} request timed out or was reset: {exc}", provider=provider, retryable=True) from exc
    try:
        return json.loads(raw)
    except json.JSONDecodeError as exc:
        raise ProviderError(f"{provider} returned invalid JSON", provider=provider) from exc
