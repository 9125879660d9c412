from __future__ import annotations

import logging
import time
from collections.abc import Callable
from dataclasses import replace
from typing import Any

from intenthealer.config.schema import HealerConfig, HealPolicy
from intenthealer.core.breaker import CircuitBreaker
from intenthealer.core.cache import CacheKey, HealCache
from intenthealer.core.exceptions import ArbitrationError
from intenthealer.core.guardrails import GuardrailPolicy
from intenthealer.core.learning import PatternLearner
from intenthealer.core.locators import generate_locator
from intenthealer.core.metadata import (
    CandidateSource,
    ElementCandidate,
    ElementSnapshot,
    FailureContext,
    HealAttempt,
    HealDecision,
    HealOutcome,
    HealResult,
    UiSnapshot,
)
from intenthealer.core.metrics import MetricsCollector
from intenthealer.llm.arbitrator import ArbitrationResult, ExternalArbitrator
from intenthealer.logging.artifacts import ArtifactManager
from intenthealer.logging.audit import HealingAuditLogger
from intenthealer.utils.scoring import CandidateGenerator

log = logging.getLogger(__name__)


class Healer:
    """Runs the heal decision pipeline for one failed lookup at a time."""

    def __init__(
        self,
        config: HealerConfig,
        *,
        cache: HealCache,
        breaker: CircuitBreaker,
        learner: PatternLearner,
        guardrails: GuardrailPolicy,
        metrics: MetricsCollector,
        arbitrator: ExternalArbitrator | None = None,
        generator: CandidateGenerator | None = None,
        audit_logger: HealingAuditLogger | None = None,
        artifact_manager: ArtifactManager | None = None,
        timer: Callable[[], float] = time.perf_counter,
    ) -> None:
        self.config = config
        self.cache = cache
        self.breaker = breaker
        self.learner = learner
        self.guardrails = guardrails
        self.metrics = metrics
        self.arbitrator = arbitrator
        self.generator = generator or CandidateGenerator(config.candidates)
        self.audit_logger = audit_logger
        self.artifact_manager = artifact_manager
        self._timer = timer

    def heal(self, failure: FailureContext, snapshot: UiSnapshot, retry_of: HealResult | None = None) -> HealResult:
        """Runs the pipeline once; ``retry_of`` marks a re-heal of the same lookup after a stale cache hit."""

        started = self._timer()
        result = self._decide(failure, snapshot)
        result.duration_ms = round((self._timer() - started) * 1000, 3)
        result.failure_kind = failure.kind
        if retry_of is None:
            self.metrics.record(
                result.outcome,
                result.duration_ms,
                failure_kind=failure.kind,
                cache_hit=result.from_cache,
                input_tokens=result.input_tokens,
                output_tokens=result.output_tokens,
                cost_usd=result.cost_usd,
            )
        else:
            self.metrics.amend(
                retry_of.outcome,
                result.outcome,
                failure_kind=failure.kind,
                drop_cache_hit=retry_of.from_cache and not result.from_cache,
                input_tokens=result.input_tokens,
                output_tokens=result.output_tokens,
                cost_usd=result.cost_usd,
            )
        self._audit(failure, snapshot, result)
        log.info(
            "Heal %s for %s -> %s (%.2f) %s",
            result.outcome.value,
            failure.original_locator,
            result.healed_locator or "-",
            result.confidence,
            result.reason,
        )
        return result

    def confirm(self, result: HealResult, worked: bool) -> None:
        """Records whether a returned locator actually found the element."""

        if worked:
            if result.cache_key is not None:
                self.cache.record_success(result.cache_key)
            return

        previous = result.outcome
        result.outcome = HealOutcome.FAILED
        result.reason = f"Healed locator {result.healed_locator} did not match any element"
        self.metrics.amend(previous, HealOutcome.FAILED, failure_kind=result.failure_kind)
        if result.provider is not None and not result.from_cache:
            self.breaker.record_failure()
        if result.cache_key is not None:
            self.cache.record_failure(result.cache_key)
            self.cache.invalidate(result.cache_key)
        log.warning("Heal %s failed at use time", result.healed_locator)

    def report_stale(self, result: HealResult) -> None:
        """A cached locator failed at use time: evict it without counting a breaker failure."""

        if result.outcome is HealOutcome.SUCCESS:
            self.guardrails.release_heal()
        if result.cache_key is not None and self.cache.invalidate(result.cache_key):
            log.info("Evicted stale cached heal %s -> %s", result.cache_key.original, result.healed_locator)

    def _decide(self, failure: FailureContext, snapshot: UiSnapshot) -> HealResult:
        verdict = self.guardrails.check_pre(failure, snapshot.url)
        if not verdict.allowed:
            return HealResult(HealOutcome.REFUSED, reason=verdict.reason)

        # check_pre reserved one heal from the run budget; anything but SUCCESS gives it back.
        try:
            result = self._decide_reserved(failure, snapshot)
        except BaseException:
            self.guardrails.release_heal()
            raise
        if result.outcome is not HealOutcome.SUCCESS:
            self.guardrails.release_heal()
        return result

    def _decide_reserved(self, failure: FailureContext, snapshot: UiSnapshot) -> HealResult:
        key = CacheKey.build(snapshot.url, failure.original_locator, failure.action, failure.intent_hint)
        cached = self._from_cache(failure, snapshot, key)
        if cached is not None:
            return cached

        candidates = self._collect_candidates(failure, snapshot)
        arbitration: ArbitrationResult | None = None
        pool = candidates

        if self.arbitrator is not None and self.breaker.is_healing_allowed():
            pool = candidates or self.generator.page_candidates(snapshot)
            if not pool:
                return HealResult(HealOutcome.REFUSED, reason="No candidate elements on the page", cache_key=key)
            try:
                arbitration = self.arbitrator.arbitrate(failure, snapshot, pool)
            except ArbitrationError as exc:
                self.breaker.record_failure()
                log.warning("Arbitration failed, falling back to heuristics: %s", exc)
                pool = candidates
        elif self.arbitrator is not None:
            log.info("Circuit breaker is %s; using heuristic candidates only", self.breaker.state.value)

        if arbitration is not None:
            decision = arbitration.decision
            if not decision.can_heal:
                self.breaker.record_refusal()
                return self._usage(
                    HealResult(
                        HealOutcome.REFUSED,
                        reason=decision.refusal_reason or decision.reasoning or "Arbitrator declined to heal",
                        decision=decision,
                        confidence=decision.confidence,
                        candidates=pool,
                        cache_key=key,
                    ),
                    arbitration,
                )
            chosen = pool[decision.selected_candidate_index]
        else:
            if not pool:
                return HealResult(HealOutcome.REFUSED, reason="No heuristic candidates", cache_key=key)
            chosen = pool[0]
            decision = HealDecision(
                can_heal=True,
                confidence=chosen.confidence,
                selected_candidate_index=0,
                reasoning=f"Heuristic-only choice: {chosen.explanation}",
                alternative_indices=list(range(1, len(pool))),
            )

        result = HealResult(
            HealOutcome.SUCCESS,
            decision=decision,
            healed_locator=chosen.locator,
            confidence=decision.confidence,
            candidates=pool,
            cache_key=key,
        )
        if arbitration is not None:
            self._usage(result, arbitration)

        element = snapshot.element(chosen.element_index) if chosen.element_index is not None else None
        verdict = self.guardrails.check_post(failure, decision.confidence, chosen.locator, element, snapshot.url)
        if not verdict.allowed:
            if arbitration is not None:
                self.breaker.record_refusal()
            result.outcome = HealOutcome.REFUSED
            result.reason = verdict.reason
            return result

        if arbitration is not None:
            self.breaker.record_success()

        if self._suggest_only(failure):
            result.outcome = HealOutcome.SUGGESTED
            result.reason = "Heal suggested for review"
            return result

        self.cache.put(key, chosen.locator, decision.confidence, decision.reasoning)
        result.reason = decision.reasoning
        return result

    def _from_cache(self, failure: FailureContext, snapshot: UiSnapshot, key: CacheKey) -> HealResult | None:
        entry = self.cache.lookup(key)
        if entry is None:
            return None
        if self.guardrails.blacklist.is_blacklisted(snapshot.url, failure.original_locator, entry.healed):
            self.cache.invalidate(key)
            return None
        decision = HealDecision(
            can_heal=True,
            confidence=entry.confidence,
            reasoning=entry.reasoning or "Cached heal",
        )
        result = HealResult(
            HealOutcome.SUCCESS,
            reason="Cached heal",
            decision=decision,
            healed_locator=entry.healed,
            confidence=entry.confidence,
            from_cache=True,
            cache_key=key,
        )
        if self._suggest_only(failure):
            result.outcome = HealOutcome.SUGGESTED
            result.reason = "Cached heal suggested for review"
        return result

    def _collect_candidates(self, failure: FailureContext, snapshot: UiSnapshot) -> list[ElementCandidate]:
        original = failure.original_locator
        heuristic = self.generator.generate(snapshot, failure.intent_hint, failure.action)
        merged: dict[str, ElementCandidate] = {}
        for candidate in heuristic:
            merged.setdefault(candidate.locator.selector, candidate)

        for suggestion in self.learner.suggestions(original, failure.intent_hint):
            current = merged.get(suggestion.selector)
            if current is not None:
                if suggestion.confidence > current.confidence:
                    merged[suggestion.selector] = replace(
                        current,
                        confidence=suggestion.confidence,
                        explanation=f"{current.explanation}; {suggestion.explanation}",
                    )
                continue
            element = _match_element(snapshot, suggestion.selector)
            merged[suggestion.selector] = ElementCandidate(
                locator=suggestion.locator,
                confidence=suggestion.confidence,
                explanation=suggestion.explanation,
                tag=element.tag if element else "",
                attributes=dict(element.attributes) if element else {},
                element_index=element.index if element else None,
                source=CandidateSource.LEARNED,
            )

        kept: list[ElementCandidate] = []
        for candidate in merged.values():
            if self.learner.is_known_bad(original, candidate.locator):
                log.debug("Vetoed known-bad candidate %s for %s", candidate.locator, original)
                continue
            adjustment = self.learner.confidence_adjustment(original, candidate.locator)
            if adjustment:
                candidate = replace(candidate, confidence=round(max(0.0, min(1.0, candidate.confidence + adjustment)), 4))
            kept.append(candidate)
        kept.sort(key=lambda item: item.confidence, reverse=True)
        return kept

    def _suggest_only(self, failure: FailureContext) -> bool:
        if self.config.mode is HealPolicy.SUGGEST:
            return True
        return not self.guardrails.trust.level.can_auto_apply(failure.action)

    @staticmethod
    def _usage(result: HealResult, arbitration: ArbitrationResult) -> HealResult:
        result.provider = arbitration.provider
        result.input_tokens = arbitration.input_tokens
        result.output_tokens = arbitration.output_tokens
        result.cost_usd = arbitration.cost_usd
        return result

    def _audit(self, failure: FailureContext, snapshot: UiSnapshot, result: HealResult) -> None:
        if self.audit_logger is None:
            return
        artifact_paths: dict[str, str] = {}
        if self.artifact_manager is not None and not result.from_cache and snapshot.has_elements:
            path = self.artifact_manager.write_snapshot(str(failure.original_locator), snapshot)
            artifact_paths["snapshot"] = str(path)
        if snapshot.screenshot_path:
            artifact_paths["screenshot"] = snapshot.screenshot_path
        self.audit_logger.write(
            HealAttempt(
                original_locator=str(failure.original_locator),
                action=failure.action.value,
                failure_type=failure.exception_type or failure.kind.value,
                top_candidates=[_candidate_payload(item) for item in result.candidates[:5]],
                llm_provider=result.provider or "none",
                new_locator=str(result.healed_locator) if result.healed_locator else "",
                outcome=result.outcome.value,
                confidence=result.confidence,
                reason=result.reason,
                from_cache=result.from_cache,
                page_url=snapshot.url,
                artifact_paths=artifact_paths,
            )
        )


def _match_element(snapshot: UiSnapshot, selector: str) -> ElementSnapshot | None:
    for element in snapshot.elements:
        if element.id and f"#{element.id}" == selector:
            return element
        if generate_locator(element).selector == selector:
            return element
    return None


def _candidate_payload(candidate: ElementCandidate) -> dict[str, Any]:
    return {
        "locator": str(candidate.locator),
        "tag": candidate.tag,
        "confidence": candidate.confidence,
        "explanation": candidate.explanation,
        "source": candidate.source.value,
    }
