from __future__ import annotations

import logging
import re
import threading
from dataclasses import dataclass
from enum import Enum

from intenthealer.config.schema import GuardrailConfig, HealPolicy
from intenthealer.core.blacklist import HealBlacklist
from intenthealer.core.locators import LocatorInfo
from intenthealer.core.metadata import ElementSnapshot, FailureContext
from intenthealer.core.trust import TrustLevel, TrustLevelManager

log = logging.getLogger(__name__)


class GuardrailKind(str, Enum):
    PROCEED = "proceed"
    POLICY_OFF = "policy_off"
    NOT_HEALABLE = "not_healable"
    ASSERTION_STEP = "assertion_step"
    FORBIDDEN_URL = "forbidden_url"
    BUDGET_EXHAUSTED = "budget_exhausted"
    LOW_CONFIDENCE = "low_confidence"
    DESTRUCTIVE = "destructive"
    BLACKLISTED = "blacklisted"
    NOT_INTERACTABLE = "not_interactable"


@dataclass(frozen=True, slots=True)
class GuardrailVerdict:
    kind: GuardrailKind
    reason: str = ""

    @property
    def allowed(self) -> bool:
        return self.kind is GuardrailKind.PROCEED

    @classmethod
    def proceed(cls) -> GuardrailVerdict:
        return cls(GuardrailKind.PROCEED)


class GuardrailPolicy:
    """Safety checks around a heal: before any arbitration and after a candidate is chosen."""

    def __init__(
        self,
        config: GuardrailConfig | None = None,
        mode: HealPolicy = HealPolicy.AUTO_SAFE,
        blacklist: HealBlacklist | None = None,
        trust: TrustLevelManager | None = None,
    ) -> None:
        self.config = config or GuardrailConfig()
        self.mode = mode
        self.blacklist = blacklist if blacklist is not None else HealBlacklist()
        self.trust = trust if trust is not None else TrustLevelManager()
        self._lock = threading.Lock()
        self._heals_used = 0

    @property
    def heals_used(self) -> int:
        with self._lock:
            return self._heals_used

    def release_heal(self) -> None:
        """Returns a heal reserved by ``check_pre`` that did not end in a SUCCESS."""

        with self._lock:
            self._heals_used = max(0, self._heals_used - 1)

    def reset_budget(self) -> None:
        with self._lock:
            self._heals_used = 0

    def effective_min_confidence(self, level: TrustLevel | None = None) -> float:
        level = self.trust.level if level is None else level
        base = self.config.min_confidence
        if level >= TrustLevel.L3_AUTO:
            return base
        tightened = min(0.99, base + self.config.trust_confidence_step * (TrustLevel.L3_AUTO - level))
        return round(max(base, tightened), 4)

    def check_pre(self, failure: FailureContext, page_url: str | None = None) -> GuardrailVerdict:
        if self.mode is HealPolicy.OFF:
            return self._refuse(GuardrailKind.POLICY_OFF, "Healing is turned off")
        if failure.step_keyword.strip().lower() == "then":
            return self._refuse(GuardrailKind.ASSERTION_STEP, "Assertion steps are never healed")
        if not failure.kind.healable:
            return self._refuse(GuardrailKind.NOT_HEALABLE, f"Failure kind {failure.kind.value} is not healable")
        if page_url:
            for pattern in self.config.forbidden_url_patterns:
                if re.fullmatch(pattern, page_url):
                    return self._refuse(GuardrailKind.FORBIDDEN_URL, f"Page URL matches forbidden pattern {pattern}")
        if failure.step_text and self.find_forbidden_keyword(failure.step_text):
            log.warning("Step text for %s mentions a destructive keyword", failure.original_locator)
        # A proceed verdict holds one heal of the run budget until the caller releases it.
        with self._lock:
            exhausted = self._heals_used >= self.config.max_heals_per_run
            if not exhausted:
                self._heals_used += 1
        if exhausted:
            return self._refuse(
                GuardrailKind.BUDGET_EXHAUSTED,
                f"Heal budget of {self.config.max_heals_per_run} per run is exhausted",
            )
        return GuardrailVerdict.proceed()

    def check_post(
        self,
        failure: FailureContext,
        confidence: float,
        healed: LocatorInfo,
        element: ElementSnapshot | None,
        page_url: str | None = None,
    ) -> GuardrailVerdict:
        minimum = self.effective_min_confidence()
        if confidence < minimum:
            return self._refuse(
                GuardrailKind.LOW_CONFIDENCE,
                f"Confidence {confidence:.2f} below threshold {minimum:.2f}",
            )
        if element is not None and not self._destructive_allowed(failure):
            for text in (element.text, element.aria_label, element.value):
                keyword = self.find_forbidden_keyword(text)
                if keyword:
                    return self._refuse(GuardrailKind.DESTRUCTIVE, f"Element looks destructive ({keyword})")
        if self.blacklist.is_blacklisted(page_url, failure.original_locator, healed):
            return self._refuse(GuardrailKind.BLACKLISTED, f"Heal {failure.original_locator} -> {healed} is blacklisted")
        if element is not None and self.config.refuse_hidden_elements:
            if not element.visible:
                return self._refuse(GuardrailKind.NOT_INTERACTABLE, "Chosen element is not visible")
            if not element.enabled:
                return self._refuse(GuardrailKind.NOT_INTERACTABLE, "Chosen element is not enabled")
        return GuardrailVerdict.proceed()

    def find_forbidden_keyword(self, text: str | None) -> str | None:
        if not text:
            return None
        lowered = text.lower()
        for keyword in self.config.forbidden_keywords:
            if keyword.lower() in lowered:
                return keyword
        return None

    def _destructive_allowed(self, failure: FailureContext) -> bool:
        return self.config.allow_destructive or self.mode is HealPolicy.AUTO_ALL or failure.destructive_allowed

    def _refuse(self, kind: GuardrailKind, reason: str) -> GuardrailVerdict:
        log.info("Guardrail refused heal: %s", reason)
        return GuardrailVerdict(kind, reason)
