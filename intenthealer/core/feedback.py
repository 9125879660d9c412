from __future__ import annotations

import logging
import threading
import time
import uuid
from collections.abc import Callable
from dataclasses import dataclass, field
from enum import Enum

from intenthealer.core.blacklist import HealBlacklist
from intenthealer.core.cache import HealCache
from intenthealer.core.learning import PatternLearner
from intenthealer.core.locators import LocatorInfo
from intenthealer.core.metrics import MetricsCollector
from intenthealer.core.trust import TrustLevelManager

log = logging.getLogger(__name__)


class FeedbackKind(str, Enum):
    POSITIVE = "positive"
    NEGATIVE = "negative"
    CORRECTION = "correction"
    FALSE_NEGATIVE = "false_negative"


@dataclass(frozen=True, slots=True)
class FeedbackRecord:
    kind: FeedbackKind
    original: LocatorInfo
    healed: LocatorInfo | None = None
    correct: LocatorInfo | None = None
    reason: str | None = None
    step_text: str | None = None
    record_id: str = field(default_factory=lambda: uuid.uuid4().hex)
    submitted_at: float = field(default_factory=time.time)


@dataclass(frozen=True, slots=True)
class FeedbackAck:
    accepted: bool
    message: str
    record_id: str | None = None


@dataclass(frozen=True, slots=True)
class FeedbackStats:
    total: int
    positive: int
    negative: int
    corrections: int
    false_negatives: int


FeedbackListener = Callable[[FeedbackRecord], None]


def _as_locator(value: LocatorInfo | str | None) -> LocatorInfo | None:
    if value is None or isinstance(value, LocatorInfo):
        return value
    return LocatorInfo.parse(value)


class FeedbackApi:
    """Entry point for tester verdicts on heals; routes them to trust, learning and blacklist."""

    def __init__(
        self,
        learner: PatternLearner,
        trust: TrustLevelManager,
        blacklist: HealBlacklist,
        metrics: MetricsCollector | None = None,
        cache: HealCache | None = None,
    ) -> None:
        self.learner = learner
        self.trust = trust
        self.blacklist = blacklist
        self.metrics = metrics
        self.cache = cache
        self._lock = threading.Lock()
        self._history: dict[str, FeedbackRecord] = {}
        self._listeners: list[FeedbackListener] = []

    def add_listener(self, listener: FeedbackListener) -> None:
        with self._lock:
            self._listeners.append(listener)

    def remove_listener(self, listener: FeedbackListener) -> None:
        with self._lock:
            if listener in self._listeners:
                self._listeners.remove(listener)

    def submit(
        self,
        kind: FeedbackKind | str,
        original_selector: LocatorInfo | str,
        healed_selector: LocatorInfo | str | None = None,
        correct_selector: LocatorInfo | str | None = None,
        reason: str | None = None,
        step_text: str | None = None,
        blacklist: bool = False,
    ) -> FeedbackAck:
        kind = FeedbackKind(kind)
        original = _as_locator(original_selector)
        healed = _as_locator(healed_selector)
        correct = _as_locator(correct_selector)

        problem = self._validate(kind, healed, correct)
        if problem:
            log.warning("Rejected %s feedback for %s: %s", kind.value, original, problem)
            return FeedbackAck(False, problem)

        record = FeedbackRecord(kind, original, healed, correct, reason, step_text)
        with self._lock:
            self._history[record.record_id] = record
            listeners = list(self._listeners)

        if kind is FeedbackKind.POSITIVE:
            self.trust.record_success()
            self.learner.reinforce(original, healed)
            message = "Positive feedback recorded"
        elif kind is FeedbackKind.NEGATIVE:
            self.trust.record_failure()
            self.learner.learn_negative(original, healed)
            self._reject_heal(original, healed, reason, blacklist)
            message = "Negative feedback recorded"
        elif kind is FeedbackKind.CORRECTION:
            self.trust.record_failure()
            self.learner.learn_correction(original, healed, correct, step_text)
            if healed is not None and healed.selector != correct.selector:
                self._reject_heal(original, healed, reason, blacklist)
            message = "Correction recorded"
        else:
            self.learner.learn_false_negative(original, correct)
            message = "False negative recorded"

        for listener in listeners:
            try:
                listener(record)
            except Exception:
                log.exception("Feedback listener %r failed", listener)
        log.info("%s for %s", message, original)
        return FeedbackAck(True, message, record.record_id)

    def history(self, limit: int | None = None) -> list[FeedbackRecord]:
        with self._lock:
            records = sorted(self._history.values(), key=lambda item: item.submitted_at, reverse=True)
        return records[:limit] if limit is not None else records

    def get(self, record_id: str) -> FeedbackRecord | None:
        with self._lock:
            return self._history.get(record_id)

    def stats(self) -> FeedbackStats:
        with self._lock:
            kinds = [record.kind for record in self._history.values()]
        return FeedbackStats(
            total=len(kinds),
            positive=kinds.count(FeedbackKind.POSITIVE),
            negative=kinds.count(FeedbackKind.NEGATIVE),
            corrections=kinds.count(FeedbackKind.CORRECTION),
            false_negatives=kinds.count(FeedbackKind.FALSE_NEGATIVE),
        )

    def _reject_heal(
        self,
        original: LocatorInfo,
        healed: LocatorInfo,
        reason: str | None,
        blacklist: bool,
    ) -> None:
        if self.metrics is not None:
            self.metrics.record_false_heal()
        if self.cache is not None:
            self.cache.invalidate_healed(healed)
        if blacklist:
            self.blacklist.add_pair(original, healed, reason or "Rejected by feedback")

    @staticmethod
    def _validate(kind: FeedbackKind, healed: LocatorInfo | None, correct: LocatorInfo | None) -> str | None:
        if kind in (FeedbackKind.POSITIVE, FeedbackKind.NEGATIVE) and healed is None:
            return f"{kind.value} feedback needs the healed selector"
        if kind in (FeedbackKind.CORRECTION, FeedbackKind.FALSE_NEGATIVE) and correct is None:
            return f"{kind.value} feedback needs the correct selector"
        return None
