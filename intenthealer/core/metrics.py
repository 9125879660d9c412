from __future__ import annotations

import logging
import math
import threading
import time
from collections import deque
from collections.abc import Iterable
from dataclasses import dataclass

from intenthealer.core.metadata import FailureKind, HealOutcome

log = logging.getLogger(__name__)

MAX_LATENCY_SAMPLES = 1000


def percentile(samples: Iterable[float], p: float) -> float:
    ordered = sorted(samples)
    if not ordered:
        return 0.0
    index = math.ceil(p / 100 * len(ordered)) - 1
    index = max(0, min(index, len(ordered) - 1))
    return ordered[index]


def _rate(part: int, whole: int) -> float:
    return round(part / whole, 4) if whole else 0.0


_KIND_FIELDS = {
    HealOutcome.SUCCESS: "successes",
    HealOutcome.SUGGESTED: "suggestions",
    HealOutcome.REFUSED: "refusals",
    HealOutcome.FAILED: "failures",
}


@dataclass(slots=True)
class FailureKindStats:
    attempts: int = 0
    successes: int = 0
    suggestions: int = 0
    refusals: int = 0
    failures: int = 0

    @property
    def success_rate(self) -> float:
        return _rate(self.successes, self.attempts)


@dataclass(frozen=True, slots=True)
class MetricsSummary:
    total_attempts: int
    success_count: int
    suggested_count: int
    refusal_count: int
    failure_count: int
    false_heal_count: int
    cache_hits: int
    success_rate: float
    refusal_rate: float
    failure_rate: float
    false_heal_rate: float
    cache_hit_rate: float
    avg_latency_ms: float
    p50_latency_ms: float
    p90_latency_ms: float
    p99_latency_ms: float
    total_input_tokens: int
    total_output_tokens: int
    total_cost_usd: float
    session_seconds: float


class MetricsCollector:
    """Thread-safe heal outcome counters and latency percentiles."""

    def __init__(self) -> None:
        self._lock = threading.Lock()
        self._started = time.monotonic()
        self.reset()

    def record(
        self,
        outcome: HealOutcome,
        duration_ms: float,
        *,
        failure_kind: FailureKind | None = None,
        cache_hit: bool = False,
        input_tokens: int = 0,
        output_tokens: int = 0,
        cost_usd: float = 0.0,
    ) -> None:
        with self._lock:
            self._attempts += 1
            self._outcomes[outcome] += 1
            if cache_hit:
                self._cache_hits += 1
            self._input_tokens += input_tokens
            self._output_tokens += output_tokens
            self._cost_usd += cost_usd
            self._latencies.append(duration_ms)
            if failure_kind is not None:
                stats = self._by_kind.setdefault(failure_kind, FailureKindStats())
                stats.attempts += 1
                _bump(stats, outcome, 1)
        log.debug("Recorded heal outcome=%s duration=%.1fms cache_hit=%s", outcome.value, duration_ms, cache_hit)

    def amend(
        self,
        previous: HealOutcome,
        outcome: HealOutcome,
        *,
        failure_kind: FailureKind | None = None,
        drop_cache_hit: bool = False,
        input_tokens: int = 0,
        output_tokens: int = 0,
        cost_usd: float = 0.0,
    ) -> None:
        """Re-labels an attempt already counted by ``record``; the attempt total is unchanged."""

        with self._lock:
            self._outcomes[previous] = max(0, self._outcomes[previous] - 1)
            self._outcomes[outcome] += 1
            if drop_cache_hit:
                self._cache_hits = max(0, self._cache_hits - 1)
            self._input_tokens += input_tokens
            self._output_tokens += output_tokens
            self._cost_usd += cost_usd
            stats = self._by_kind.get(failure_kind) if failure_kind is not None else None
            if stats is not None:
                _bump(stats, previous, -1)
                _bump(stats, outcome, 1)
        log.debug("Amended heal outcome %s -> %s", previous.value, outcome.value)

    def record_false_heal(self) -> None:
        with self._lock:
            self._false_heals += 1
        log.warning("False heal recorded")

    def percentile(self, p: float) -> float:
        with self._lock:
            samples = list(self._latencies)
        return percentile(samples, p)

    def count(self, outcome: HealOutcome) -> int:
        with self._lock:
            return self._outcomes[outcome]

    def failure_kind_stats(self) -> dict[FailureKind, FailureKindStats]:
        with self._lock:
            return {
                kind: FailureKindStats(
                    stats.attempts, stats.successes, stats.suggestions, stats.refusals, stats.failures
                )
                for kind, stats in self._by_kind.items()
            }

    def summary(self) -> MetricsSummary:
        with self._lock:
            samples = list(self._latencies)
            attempts = self._attempts
            successes = self._outcomes[HealOutcome.SUCCESS]
            refusals = self._outcomes[HealOutcome.REFUSED]
            failures = self._outcomes[HealOutcome.FAILED]
            return MetricsSummary(
                total_attempts=attempts,
                success_count=successes,
                suggested_count=self._outcomes[HealOutcome.SUGGESTED],
                refusal_count=refusals,
                failure_count=failures,
                false_heal_count=self._false_heals,
                cache_hits=self._cache_hits,
                success_rate=_rate(successes, attempts),
                refusal_rate=_rate(refusals, attempts),
                failure_rate=_rate(failures, attempts),
                false_heal_rate=_rate(self._false_heals, successes),
                cache_hit_rate=_rate(self._cache_hits, attempts),
                avg_latency_ms=round(sum(samples) / len(samples), 4) if samples else 0.0,
                p50_latency_ms=percentile(samples, 50),
                p90_latency_ms=percentile(samples, 90),
                p99_latency_ms=percentile(samples, 99),
                total_input_tokens=self._input_tokens,
                total_output_tokens=self._output_tokens,
                total_cost_usd=round(self._cost_usd, 6),
                session_seconds=round(time.monotonic() - self._started, 3),
            )

    def reset(self) -> None:
        with self._lock:
            self._attempts = 0
            self._outcomes = {outcome: 0 for outcome in HealOutcome}
            self._false_heals = 0
            self._cache_hits = 0
            self._input_tokens = 0
            self._output_tokens = 0
            self._cost_usd = 0.0
            self._latencies: deque[float] = deque(maxlen=MAX_LATENCY_SAMPLES)
            self._by_kind: dict[FailureKind, FailureKindStats] = {}


def _bump(stats: FailureKindStats, outcome: HealOutcome, delta: int) -> None:
    name = _KIND_FIELDS[outcome]
    setattr(stats, name, max(0, getattr(stats, name) + delta))
