from __future__ import annotations

import logging
import re
import threading
import time
from collections.abc import Callable
from dataclasses import dataclass, field
from datetime import UTC, datetime
from enum import Enum

from pydantic import BaseModel, Field

from intenthealer.config.schema import LearningConfig
from intenthealer.core.locators import LocatorInfo

log = logging.getLogger(__name__)

KNOWN_BAD_THRESHOLD = 2
FALSE_NEGATIVE_CONFIDENCE = 0.5
TRANSFORMATION_FACTOR = 0.9
ASSOCIATION_INITIAL_CONFIDENCE = 0.5
ASSOCIATION_STEP = 0.03
ASSOCIATION_CAP = 0.95
ASSOCIATION_MATCH_RATIO = 0.7
CONFIDENCE_CAP = 0.99

_STOP_WORDS = {"a", "an", "the", "in", "on", "at", "to", "for", "of", "with", "i", "user", "when", "then", "and", "given"}
_WORD_SPLIT = re.compile(r"\W+")


def selector_text(locator: LocatorInfo | str) -> str:
    """Identity string for a locator, so ``id=x`` and ``#x`` are the same pair."""

    if isinstance(locator, LocatorInfo):
        return locator.selector
    return LocatorInfo.parse(locator).selector


def extract_keywords(text: str | None) -> frozenset[str]:
    if not text:
        return frozenset()
    return frozenset(
        word for word in _WORD_SPLIT.split(text.lower()) if len(word) > 2 and word not in _STOP_WORDS
    )


class SuggestionKind(str, Enum):
    DIRECT = "direct"
    TRANSFORMATION = "transformation"
    ASSOCIATION = "association"


class TransformKind(str, Enum):
    ID_AFFIX = "id_affix"
    CLASS_SUBSTITUTION = "class_substitution"


@dataclass(frozen=True, slots=True)
class Transformation:
    kind: TransformKind
    source_fragment: str
    target_fragment: str

    @property
    def description(self) -> str:
        label = "ID" if self.kind is TransformKind.ID_AFFIX else "Class"
        return f"{label} transformation: {self.source_fragment} -> {self.target_fragment}"

    def apply(self, selector: str) -> str | None:
        if self.kind is TransformKind.ID_AFFIX:
            if not selector.startswith("#") or self.source_fragment not in selector[1:]:
                return None
            return "#" + selector[1:].replace(self.source_fragment, self.target_fragment, 1)
        marker = "." + self.source_fragment
        if marker not in selector:
            return None
        return selector.replace(marker, "." + self.target_fragment)


@dataclass(slots=True)
class LocatorPattern:
    source: str
    target: str
    confidence: float
    success_count: int = 0
    failure_count: int = 0
    transformation: Transformation | None = None
    last_used_at: float | None = None

    def record_success(self, step: float, now: float) -> None:
        self.success_count += 1
        self.confidence = round(min(CONFIDENCE_CAP, self.confidence + step), 4)
        self.last_used_at = now

    def record_failure(self, penalty: float, floor: float) -> None:
        self.failure_count += 1
        self.confidence = round(max(floor, self.confidence - penalty), 4)


@dataclass(slots=True)
class FailurePattern:
    original: str
    rejected: str
    failure_count: int = 0
    last_failure_at: float | None = None

    @property
    def key(self) -> str:
        return failure_key(self.original, self.rejected)


@dataclass(slots=True)
class ElementAssociation:
    keywords: frozenset[str]
    suggested: str
    variants: set[str] = field(default_factory=set)
    confidence: float = ASSOCIATION_INITIAL_CONFIDENCE
    use_count: int = 0

    @property
    def key(self) -> str:
        return " ".join(sorted(self.keywords))

    @property
    def description(self) -> str:
        return "Keywords: " + ", ".join(sorted(self.keywords))

    def matches(self, original: str, context: str | None) -> bool:
        if original in self.variants:
            return True
        if not context or not self.keywords:
            return False
        context_words = set(_WORD_SPLIT.split(context.lower()))
        matched = sum(1 for word in self.keywords if word in context_words)
        return matched >= len(self.keywords) * ASSOCIATION_MATCH_RATIO

    def record_success(self) -> None:
        self.use_count += 1
        self.confidence = round(min(ASSOCIATION_CAP, self.confidence + ASSOCIATION_STEP), 4)


@dataclass(frozen=True, slots=True)
class PatternSuggestion:
    selector: str
    confidence: float
    explanation: str
    kind: SuggestionKind

    @property
    def locator(self) -> LocatorInfo:
        return LocatorInfo.parse(self.selector)


@dataclass(frozen=True, slots=True)
class PatternStats:
    locator_patterns: int
    associations: int
    failure_patterns: int
    total_corrections: int
    patterns_applied: int
    top_patterns: list[tuple[str, str, float]]


class TransformationModel(BaseModel):
    kind: TransformKind
    source_fragment: str
    target_fragment: str


class LocatorPatternModel(BaseModel):
    source: str
    target: str
    confidence: float
    success_count: int = 0
    failure_count: int = 0
    transformation: TransformationModel | None = None


class FailurePatternModel(BaseModel):
    original: str
    rejected: str
    failure_count: int


class ElementAssociationModel(BaseModel):
    keywords: list[str]
    suggested: str
    variants: list[str] = Field(default_factory=list)
    confidence: float
    use_count: int = 0


class PatternBundle(BaseModel):
    exported_at: str = Field(default_factory=lambda: datetime.now(UTC).isoformat())
    locator_patterns: list[LocatorPatternModel] = Field(default_factory=list)
    failure_patterns: list[FailurePatternModel] = Field(default_factory=list)
    associations: list[ElementAssociationModel] = Field(default_factory=list)


def failure_key(original: str, rejected: str) -> str:
    return f"{original}|||{rejected}"


def _common_prefix(left: str, right: str) -> str:
    size = 0
    for a, b in zip(left, right):
        if a != b:
            break
        size += 1
    return left[:size]


def _common_suffix(left: str, right: str) -> str:
    return _common_prefix(left[::-1], right[::-1])[::-1]


def _class_name(selector: str) -> str | None:
    dot = selector.find(".")
    if dot < 0:
        return None
    end = len(selector)
    for stop in (" ", "[", ".", ":", ">"):
        position = selector.find(stop, dot + 1)
        if position >= 0:
            end = min(end, position)
    name = selector[dot + 1 : end]
    return name or None


def mine_transformation(source: str, target: str) -> Transformation | None:
    """Finds a rule that turns ``source`` into ``target`` and could apply elsewhere."""

    if source.startswith("#") and target.startswith("#"):
        source_id, target_id = source[1:], target[1:]
        prefix = _common_prefix(source_id, target_id)
        suffix = _common_suffix(source_id[len(prefix) :], target_id[len(prefix) :])
        if len(prefix) > 2 or len(suffix) > 2:
            source_mid = source_id[len(prefix) : len(source_id) - len(suffix)]
            target_mid = target_id[len(prefix) : len(target_id) - len(suffix)]
            if source_mid:
                return Transformation(TransformKind.ID_AFFIX, source_mid, target_mid)

    if "." in source and "." in target:
        source_class = _class_name(source)
        target_class = _class_name(target)
        if source_class and target_class and source_class != target_class:
            return Transformation(TransformKind.CLASS_SUBSTITUTION, source_class, target_class)
    return None


class PatternLearner:
    """Learns locator fixes from feedback and proposes or vetoes candidates."""

    def __init__(self, config: LearningConfig | None = None, clock: Callable[[], float] = time.time) -> None:
        self.config = config or LearningConfig()
        self._clock = clock
        self._lock = threading.RLock()
        self._patterns: dict[str, LocatorPattern] = {}
        self._failures: dict[str, FailurePattern] = {}
        self._associations: dict[str, ElementAssociation] = {}
        self._total_corrections = 0
        self._patterns_applied = 0

    def learn_correction(
        self,
        original: LocatorInfo | str,
        healed: LocatorInfo | str | None,
        correct: LocatorInfo | str,
        step_text: str | None = None,
    ) -> LocatorPattern:
        source = selector_text(original)
        target = selector_text(correct)
        rejected = selector_text(healed) if healed is not None else None
        now = self._clock()
        with self._lock:
            self._total_corrections += 1
            pattern = self._patterns.get(source)
            if pattern is None:
                pattern = LocatorPattern(source, target, self.config.initial_confidence)
                self._patterns[source] = pattern
            pattern.target = target
            pattern.record_success(self.config.confidence_step, now)
            pattern.transformation = mine_transformation(source, target) or pattern.transformation

            if rejected is not None and rejected != target:
                self._record_failure(source, rejected, now)

            keywords = extract_keywords(step_text)
            if keywords:
                association = self._associations.get(" ".join(sorted(keywords)))
                if association is None:
                    association = ElementAssociation(keywords, target)
                    self._associations[association.key] = association
                association.suggested = target
                association.variants.add(source)
                association.record_success()

            self._enforce_limits()
        log.debug("Learned correction %s -> %s (%.2f)", source, target, pattern.confidence)
        return pattern

    def learn_negative(self, original: LocatorInfo | str, healed: LocatorInfo | str) -> None:
        source = selector_text(original)
        rejected = selector_text(healed)
        with self._lock:
            self._record_failure(source, rejected, self._clock())
            pattern = self._patterns.get(source)
            if pattern is not None and pattern.target == rejected:
                pattern.record_failure(self.config.confidence_penalty, self.config.confidence_floor)
                log.debug("Penalised pattern %s -> %s (%.2f)", source, rejected, pattern.confidence)

    def reinforce(self, original: LocatorInfo | str, healed: LocatorInfo | str) -> None:
        source = selector_text(original)
        target = selector_text(healed)
        with self._lock:
            pattern = self._patterns.get(source)
            if pattern is not None and pattern.target == target:
                pattern.record_success(self.config.confidence_step, self._clock())
                self._patterns_applied += 1

    def learn_false_negative(self, original: LocatorInfo | str, correct: LocatorInfo | str) -> LocatorPattern:
        source = selector_text(original)
        target = selector_text(correct)
        with self._lock:
            pattern = LocatorPattern(
                source,
                target,
                FALSE_NEGATIVE_CONFIDENCE,
                transformation=mine_transformation(source, target),
            )
            self._patterns[source] = pattern
            self._enforce_limits()
        return pattern

    def is_known_bad(self, original: LocatorInfo | str, proposed: LocatorInfo | str) -> bool:
        with self._lock:
            failure = self._failures.get(failure_key(selector_text(original), selector_text(proposed)))
            return failure is not None and failure.failure_count >= KNOWN_BAD_THRESHOLD

    def confidence_adjustment(self, original: LocatorInfo | str, proposed: LocatorInfo | str) -> float:
        source = selector_text(original)
        target = selector_text(proposed)
        with self._lock:
            pattern = self._patterns.get(source)
            if pattern is not None and pattern.target == target:
                return round(min(0.2, pattern.success_count * 0.02), 4)
            failure = self._failures.get(failure_key(source, target))
            if failure is not None:
                return -round(min(0.3, failure.failure_count * 0.05), 4)
        return 0.0

    def suggestions(self, original: LocatorInfo | str, context: str | None = None) -> list[PatternSuggestion]:
        if not self.config.enabled:
            return []
        source = selector_text(original)
        found: list[PatternSuggestion] = []
        with self._lock:
            direct = self._patterns.get(source)
            if direct is not None:
                found.append(
                    PatternSuggestion(direct.target, direct.confidence, "Direct pattern match", SuggestionKind.DIRECT)
                )
            for pattern in self._patterns.values():
                if pattern.transformation is None or pattern.source == source:
                    continue
                transformed = pattern.transformation.apply(source)
                if transformed and transformed != source:
                    found.append(
                        PatternSuggestion(
                            transformed,
                            round(pattern.confidence * TRANSFORMATION_FACTOR, 4),
                            pattern.transformation.description,
                            SuggestionKind.TRANSFORMATION,
                        )
                    )
            for association in self._associations.values():
                if association.matches(source, context):
                    found.append(
                        PatternSuggestion(
                            association.suggested,
                            association.confidence,
                            f"Element association: {association.description}",
                            SuggestionKind.ASSOCIATION,
                        )
                    )
            found = [item for item in found if not self._is_known_bad(source, item.selector)]

        best: dict[str, PatternSuggestion] = {}
        for item in found:
            if item.confidence < self.config.min_confidence_to_apply:
                continue
            current = best.get(item.selector)
            if current is None or item.confidence > current.confidence:
                best[item.selector] = item
        return sorted(best.values(), key=lambda item: item.confidence, reverse=True)

    def suggest(self, original: LocatorInfo | str, context: str | None = None) -> PatternSuggestion | None:
        ranked = self.suggestions(original, context)
        return ranked[0] if ranked else None

    def pattern_for(self, original: LocatorInfo | str) -> LocatorPattern | None:
        with self._lock:
            return self._patterns.get(selector_text(original))

    def patterns(self) -> list[LocatorPattern]:
        with self._lock:
            return list(self._patterns.values())

    def stats(self) -> PatternStats:
        with self._lock:
            top = sorted(self._patterns.values(), key=lambda item: item.success_count, reverse=True)[:5]
            return PatternStats(
                locator_patterns=len(self._patterns),
                associations=len(self._associations),
                failure_patterns=len(self._failures),
                total_corrections=self._total_corrections,
                patterns_applied=self._patterns_applied,
                top_patterns=[(item.source, item.target, item.confidence) for item in top],
            )

    def export_bundle(self) -> PatternBundle:
        with self._lock:
            return PatternBundle(
                locator_patterns=[_pattern_model(item) for item in self._patterns.values()],
                failure_patterns=[
                    FailurePatternModel(original=item.original, rejected=item.rejected, failure_count=item.failure_count)
                    for item in self._failures.values()
                ],
                associations=[
                    ElementAssociationModel(
                        keywords=sorted(item.keywords),
                        suggested=item.suggested,
                        variants=sorted(item.variants),
                        confidence=item.confidence,
                        use_count=item.use_count,
                    )
                    for item in self._associations.values()
                ],
            )

    def import_bundle(self, bundle: PatternBundle) -> None:
        with self._lock:
            for item in bundle.locator_patterns:
                transformation = None
                if item.transformation is not None:
                    transformation = Transformation(
                        item.transformation.kind,
                        item.transformation.source_fragment,
                        item.transformation.target_fragment,
                    )
                self._patterns[item.source] = LocatorPattern(
                    source=item.source,
                    target=item.target,
                    confidence=min(CONFIDENCE_CAP, max(self.config.confidence_floor, item.confidence)),
                    success_count=item.success_count,
                    failure_count=item.failure_count,
                    transformation=transformation,
                )
            for item in bundle.failure_patterns:
                failure = FailurePattern(item.original, item.rejected, item.failure_count)
                self._failures[failure.key] = failure
            for item in bundle.associations:
                association = ElementAssociation(
                    keywords=frozenset(item.keywords),
                    suggested=item.suggested,
                    variants=set(item.variants),
                    confidence=item.confidence,
                    use_count=item.use_count,
                )
                self._associations[association.key] = association
            self._enforce_limits()
        log.info(
            "Imported %s locator patterns, %s associations, %s failure patterns",
            len(bundle.locator_patterns),
            len(bundle.associations),
            len(bundle.failure_patterns),
        )

    def reset(self) -> None:
        with self._lock:
            self._patterns.clear()
            self._failures.clear()
            self._associations.clear()
            self._total_corrections = 0
            self._patterns_applied = 0
        log.info("Pattern learner reset")

    def _is_known_bad(self, source: str, target: str) -> bool:
        failure = self._failures.get(failure_key(source, target))
        return failure is not None and failure.failure_count >= KNOWN_BAD_THRESHOLD

    def _record_failure(self, source: str, rejected: str, now: float) -> None:
        key = failure_key(source, rejected)
        failure = self._failures.get(key)
        if failure is None:
            failure = FailurePattern(source, rejected)
            self._failures[key] = failure
        failure.failure_count += 1
        failure.last_failure_at = now

    def _enforce_limits(self) -> None:
        overflow = len(self._patterns) - self.config.max_patterns
        if overflow <= 0:
            return
        weakest = sorted(self._patterns.values(), key=lambda item: item.confidence)[:overflow]
        for item in weakest:
            del self._patterns[item.source]
        log.debug("Trimmed %s low-confidence patterns", overflow)


def _pattern_model(pattern: LocatorPattern) -> LocatorPatternModel:
    transformation = None
    if pattern.transformation is not None:
        transformation = TransformationModel(
            kind=pattern.transformation.kind,
            source_fragment=pattern.transformation.source_fragment,
            target_fragment=pattern.transformation.target_fragment,
        )
    return LocatorPatternModel(
        source=pattern.source,
        target=pattern.target,
        confidence=pattern.confidence,
        success_count=pattern.success_count,
        failure_count=pattern.failure_count,
        transformation=transformation,
    )
