from __future__ import annotations

import logging
import threading
import time
from collections.abc import Callable, Mapping
from dataclasses import dataclass, field
from typing import Any

from intenthealer.config.schema import HealerConfig
from intenthealer.core.blacklist import BlacklistBundle, HealBlacklist
from intenthealer.core.breaker import CircuitBreaker
from intenthealer.core.cache import CacheBundle, HealCache
from intenthealer.core.feedback import FeedbackApi
from intenthealer.core.guardrails import GuardrailPolicy
from intenthealer.core.healer import Healer
from intenthealer.core.learning import PatternBundle, PatternLearner
from intenthealer.core.metadata import HealResult
from intenthealer.core.metrics import MetricsCollector
from intenthealer.core.trust import TrustLevelManager
from intenthealer.llm.arbitrator import ExternalArbitrator
from intenthealer.llm.client import ProviderRegistry, ReasoningProvider
from intenthealer.logging.artifacts import ArtifactManager
from intenthealer.logging.audit import HealingAuditLogger
from intenthealer.utils.scoring import CandidateGenerator

log = logging.getLogger(__name__)

CACHE_BUNDLE = "heal_cache"
BLACKLIST_BUNDLE = "heal_blacklist"
PATTERN_BUNDLE = "learned_patterns"


@dataclass(frozen=True, slots=True)
class Checkpoint:
    url: str
    label: str
    created_at: float


@dataclass(slots=True)
class ExecutionState:
    """Per-session navigation checkpoints and heal history."""

    session_id: str
    driver: Any = None
    checkpoints: list[Checkpoint] = field(default_factory=list)
    heals: list[HealResult] = field(default_factory=list)

    def checkpoint(self, url: str, label: str = "") -> Checkpoint:
        point = Checkpoint(url, label, time.time())
        self.checkpoints.append(point)
        return point

    def last_checkpoint(self) -> Checkpoint | None:
        return self.checkpoints[-1] if self.checkpoints else None

    def rollback(self) -> Checkpoint | None:
        return self.checkpoints.pop() if self.checkpoints else None

    def record_heal(self, result: HealResult) -> None:
        self.heals.append(result)


class SessionRegistry:
    """Execution state keyed by caller-supplied session ids."""

    def __init__(self) -> None:
        self._lock = threading.Lock()
        self._states: dict[str, ExecutionState] = {}

    def __contains__(self, session_id: object) -> bool:
        with self._lock:
            return session_id in self._states

    def __len__(self) -> int:
        with self._lock:
            return len(self._states)

    def register(self, session_id: str, driver: Any = None) -> ExecutionState:
        with self._lock:
            state = self._states.get(session_id)
            if state is None:
                state = ExecutionState(session_id, driver)
                self._states[session_id] = state
                log.debug("Registered session %s", session_id)
            elif driver is not None:
                state.driver = driver
            return state

    def get(self, session_id: str) -> ExecutionState | None:
        with self._lock:
            return self._states.get(session_id)

    def unregister(self, session_id: str) -> ExecutionState | None:
        with self._lock:
            state = self._states.pop(session_id, None)
        if state is not None:
            log.debug("Unregistered session %s", session_id)
        return state

    def session_ids(self) -> list[str]:
        with self._lock:
            return list(self._states)

    def clear(self) -> None:
        with self._lock:
            self._states.clear()


@dataclass(slots=True)
class HealerContext:
    """Owns every shared healing component for one test run."""

    config: HealerConfig
    cache: HealCache
    breaker: CircuitBreaker
    learner: PatternLearner
    metrics: MetricsCollector
    blacklist: HealBlacklist
    trust: TrustLevelManager
    guardrails: GuardrailPolicy
    arbitrator: ExternalArbitrator | None
    healer: Healer
    feedback: FeedbackApi
    sessions: SessionRegistry
    artifacts: ArtifactManager | None = None

    @classmethod
    def create(
        cls,
        config: HealerConfig | None = None,
        providers: Mapping[str, ReasoningProvider] | None = None,
        *,
        artifacts_root: str | None = None,
        use_arbitrator: bool = True,
        sleep: Callable[[float], None] = time.sleep,
        registry: ProviderRegistry | None = None,
    ) -> HealerContext:
        config = config or HealerConfig()
        cache = HealCache(config.cache)
        breaker = CircuitBreaker(config.circuit_breaker)
        learner = PatternLearner(config.learning)
        metrics = MetricsCollector()
        blacklist = HealBlacklist()
        trust = TrustLevelManager(config.trust)
        guardrails = GuardrailPolicy(config.guardrails, config.mode, blacklist, trust)
        arbitrator = None
        if use_arbitrator:
            arbitrator = ExternalArbitrator(config.llm, providers, config.candidates, sleep=sleep, registry=registry)
        artifacts = ArtifactManager(artifacts_root) if artifacts_root else None
        audit_logger = HealingAuditLogger(artifacts_root) if artifacts_root else None
        healer = Healer(
            config,
            cache=cache,
            breaker=breaker,
            learner=learner,
            guardrails=guardrails,
            metrics=metrics,
            arbitrator=arbitrator,
            generator=CandidateGenerator(config.candidates),
            audit_logger=audit_logger,
            artifact_manager=artifacts,
        )
        feedback = FeedbackApi(learner, trust, blacklist, metrics, cache)
        return cls(
            config=config,
            cache=cache,
            breaker=breaker,
            learner=learner,
            metrics=metrics,
            blacklist=blacklist,
            trust=trust,
            guardrails=guardrails,
            arbitrator=arbitrator,
            healer=healer,
            feedback=feedback,
            sessions=SessionRegistry(),
            artifacts=artifacts,
        )

    def start_run(self, clear_artifacts: bool = True) -> None:
        """Resets the per-run heal budget and, optionally, the previous run's artifacts."""

        self.guardrails.reset_budget()
        if clear_artifacts and self.artifacts is not None:
            removed = self.artifacts.reset()
            log.info("Cleared %d artifact(s) from %s", removed, self.artifacts.root)

    def save(self, artifacts: ArtifactManager | None = None) -> None:
        target = artifacts or self.artifacts
        if target is None:
            raise ValueError("No artifact manager to save into")
        target.write_bundle(CACHE_BUNDLE, self.cache.export_bundle())
        target.write_bundle(BLACKLIST_BUNDLE, self.blacklist.export_bundle())
        target.write_bundle(PATTERN_BUNDLE, self.learner.export_bundle())
        log.info("Saved healer state to %s", target.bundle_root)

    def load(self, artifacts: ArtifactManager | None = None) -> None:
        source = artifacts or self.artifacts
        if source is None:
            raise ValueError("No artifact manager to load from")
        cache_bundle = source.read_bundle(CACHE_BUNDLE, CacheBundle)
        if cache_bundle is not None:
            self.cache.import_bundle(cache_bundle)
        blacklist_bundle = source.read_bundle(BLACKLIST_BUNDLE, BlacklistBundle)
        if blacklist_bundle is not None:
            self.blacklist.import_bundle(blacklist_bundle)
        pattern_bundle = source.read_bundle(PATTERN_BUNDLE, PatternBundle)
        if pattern_bundle is not None:
            self.learner.import_bundle(pattern_bundle)

    def close(self) -> None:
        self.sessions.clear()
