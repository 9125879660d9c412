from __future__ import annotations

import logging
import random
import time
from collections.abc import Callable, Mapping, Sequence
from dataclasses import dataclass

from intenthealer.config.schema import CandidateConfig, LlmConfig
from intenthealer.core.exceptions import AllProvidersFailedError, ArbitrationError, ProviderError, ResponseParseError
from intenthealer.core.metadata import ElementCandidate, FailureContext, HealDecision, UiSnapshot
from intenthealer.llm.client import ProviderRegistry, ProviderResponse, ReasoningProvider
from intenthealer.llm.parser import parse_heal_decision
from intenthealer.llm.prompts import build_healing_prompt

log = logging.getLogger(__name__)


@dataclass(frozen=True, slots=True)
class ArbitrationResult:
    decision: HealDecision
    provider: str
    model: str
    attempts: int
    input_tokens: int = 0
    output_tokens: int = 0
    cost_usd: float = 0.0


def backoff_delay(attempt: int, base_ms: int, max_ms: int, rng: Callable[[], float] = random.random) -> float:
    """Seconds to wait before retry ``attempt`` (1-based): capped exponential plus up to 10% jitter."""

    delay_ms = min(base_ms * 2 ** (attempt - 1), max_ms)
    return (delay_ms + delay_ms * 0.1 * rng()) / 1000.0


class ExternalArbitrator:
    """Asks a reasoning provider to choose among candidates, with retries and fallbacks."""

    def __init__(
        self,
        config: LlmConfig | None = None,
        providers: Mapping[str, ReasoningProvider] | None = None,
        candidate_config: CandidateConfig | None = None,
        sleep: Callable[[float], None] = time.sleep,
        rng: Callable[[], float] = random.random,
        registry: ProviderRegistry | None = None,
    ) -> None:
        self.config = config or LlmConfig()
        self.candidate_config = candidate_config or CandidateConfig()
        self.registry = registry if registry is not None else ProviderRegistry()
        self._providers = dict(providers or {})
        self._sleep = sleep
        self._rng = rng

    def chain(self) -> list[LlmConfig]:
        return [self.config] + [self.config.for_fallback(item) for item in self.config.fallback]

    def arbitrate(
        self,
        failure: FailureContext,
        snapshot: UiSnapshot,
        candidates: Sequence[ElementCandidate],
    ) -> ArbitrationResult:
        shown = list(candidates)[: self.candidate_config.max_prompt_candidates]
        prompt = build_healing_prompt(
            failure,
            snapshot,
            shown,
            max_candidates=self.candidate_config.max_prompt_candidates,
            max_field_length=self.candidate_config.max_field_length,
        )
        errors: list[tuple[str, Exception]] = []
        for provider_config in self.chain():
            provider = self._provider(provider_config.provider)
            if provider is None:
                log.warning("Skipping unknown reasoning provider %s", provider_config.provider)
                errors.append((provider_config.provider, ArbitrationError("Unknown provider")))
                continue
            try:
                response, attempts = self._call_with_retry(provider, prompt, provider_config)
                decision = parse_heal_decision(response.text, len(shown))
            except (ProviderError, ResponseParseError) as exc:
                log.warning("Provider %s/%s failed: %s", provider_config.provider, provider_config.model, exc)
                errors.append((provider_config.provider, exc))
                continue
            cost = (
                response.input_tokens / 1000 * provider_config.input_cost_per_1k
                + response.output_tokens / 1000 * provider_config.output_cost_per_1k
            )
            return ArbitrationResult(
                decision=decision,
                provider=provider_config.provider,
                model=provider_config.model,
                attempts=attempts,
                input_tokens=response.input_tokens,
                output_tokens=response.output_tokens,
                cost_usd=round(cost, 6),
            )
        raise AllProvidersFailedError(errors)

    def _call_with_retry(
        self,
        provider: ReasoningProvider,
        prompt: str,
        config: LlmConfig,
    ) -> tuple[ProviderResponse, int]:
        max_attempts = config.max_retries + 1
        attempt = 0
        while True:
            attempt += 1
            try:
                return provider.complete(prompt, config), attempt
            except ProviderError as exc:
                if not exc.retryable or attempt >= max_attempts:
                    raise
                delay = backoff_delay(attempt, config.base_delay_ms, config.max_delay_ms, self._rng)
                log.info(
                    "Provider %s attempt %s/%s failed (%s); retrying in %.2fs",
                    config.provider,
                    attempt,
                    max_attempts,
                    exc,
                    delay,
                )
                self._sleep(delay)

    def register_provider(self, name: str, factory: Callable[[], ReasoningProvider]) -> None:
        self.registry.register(name, factory)

    def _provider(self, name: str) -> ReasoningProvider | None:
        provider = self._providers.get(name)
        if provider is None:
            provider = self.registry.create(name)
            if provider is not None:
                self._providers[name] = provider
        return provider
