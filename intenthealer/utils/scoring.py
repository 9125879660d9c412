from __future__ import annotations

import logging
import re
from collections.abc import Iterable
from difflib import SequenceMatcher
from enum import Enum

from intenthealer.config.schema import CandidateConfig
from intenthealer.core.locators import generate_locator
from intenthealer.core.metadata import (
    ActionType,
    CandidateSource,
    ElementCandidate,
    ElementSnapshot,
    UiSnapshot,
)

log = logging.getLogger(__name__)

_WORD_SPLIT = re.compile(r"\W+")
FUZZY_MATCH_RATIO = 0.85
_COMMON_STOP_WORDS = {"a", "an", "the", "in", "on", "at", "to", "for", "of", "with", "from", "i", "user", "and", "field"}
_TEXT_INPUT_TYPES = {"", "text", "email", "password", "search", "tel", "url", "number"}
_CLICKABLE_INPUT_TYPES = {"submit", "button", "reset", "image"}
_CHECKABLE_WORDS = {"check", "uncheck", "tick", "untick", "toggle"}
_SUBMIT_WORDS = ("login", "log in", "sign", "submit", "save", "continue", "send", "register", "search")
_DROPDOWN_MARKERS = ("dropdown", "select", "combo")
_TYPE_KEYWORDS = {
    "email": ("email", "mail", "e-mail"),
    "password": ("password", "pwd", "secret"),
    "tel": ("phone", "telephone", "mobile", "cell"),
    "url": ("url", "website", "link", "address"),
    "number": ("number", "amount", "quantity", "count"),
    "search": ("search", "find", "query"),
}


class ControlFamily(str, Enum):
    INPUT = "input"
    CLICKABLE = "clickable"
    SELECT = "select"
    CHECKABLE = "checkable"


_FAMILY_STOP_WORDS = {
    ControlFamily.INPUT: {"enter", "type", "input", "fill", "click"},
    ControlFamily.CLICKABLE: {"click", "press", "tap", "button"},
    ControlFamily.SELECT: {"select", "choose", "pick", "dropdown"},
    ControlFamily.CHECKABLE: {"check", "uncheck", "tick", "untick", "toggle", "checkbox"},
}


def infer_family(action: ActionType, intent: str = "") -> ControlFamily:
    if action in (ActionType.TYPE, ActionType.CLEAR):
        return ControlFamily.INPUT
    if action is ActionType.SELECT:
        return ControlFamily.SELECT
    if set(_WORD_SPLIT.split(intent.lower())) & _CHECKABLE_WORDS:
        return ControlFamily.CHECKABLE
    return ControlFamily.CLICKABLE


def extract_keywords(intent: str, family: ControlFamily) -> set[str]:
    stop_words = _COMMON_STOP_WORDS | _FAMILY_STOP_WORDS[family]
    return {word for word in _WORD_SPLIT.split(intent.lower()) if len(word) > 2 and word not in stop_words}


def text_similarity(text: str, keywords: set[str], intent: str) -> float:
    """Share of keywords found in ``text``, or 0.5 when one contains the other outright.

    A keyword also counts when a word of ``text`` is a near spelling of it.
    """

    if not text:
        return 0.0
    lowered = text.lower().strip()
    words = _WORD_SPLIT.split(lowered)
    keyword_score = sum(1 for keyword in keywords if _mentions(lowered, words, keyword)) / len(keywords) if keywords else 0.0
    substring_score = 0.0
    if len(lowered) > 2 and intent and (lowered in intent or intent in lowered):
        substring_score = 0.5
    return max(keyword_score, substring_score)


def _mentions(text: str, words: list[str], keyword: str) -> bool:
    if keyword in text:
        return True
    return any(SequenceMatcher(a=word, b=keyword).ratio() >= FUZZY_MATCH_RATIO for word in words if word)


def find_label(element: ElementSnapshot, snapshot: UiSnapshot) -> str:
    """Label text for a control: ``label[for]``, wrapping label, preceding label, ``aria-labelledby``."""

    if element.id:
        for other in snapshot.elements:
            if other.tag == "label" and other.attributes.get("for") == element.id and other.text:
                return other.text
    if element.wrapping_label:
        return element.wrapping_label
    if element.nearby_labels:
        return element.nearby_labels[0]
    labelled_by = element.attributes.get("aria-labelledby", "")
    parts = []
    for reference in labelled_by.split():
        target = snapshot.element_by_id(reference)
        if target is not None and target.text:
            parts.append(target.text)
    return " ".join(parts)


def element_family(element: ElementSnapshot) -> ControlFamily | None:
    tag = element.tag
    input_type = element.type.lower()
    role = element.aria_role.lower()
    if tag == "select":
        return ControlFamily.SELECT
    if tag == "input" and input_type in ("checkbox", "radio") or role in ("checkbox", "switch", "radio"):
        return ControlFamily.CHECKABLE
    if tag == "textarea" or (tag == "input" and input_type in _TEXT_INPUT_TYPES):
        return ControlFamily.INPUT
    if element.attributes.get("contenteditable", "").lower() == "true" or role == "textbox":
        return ControlFamily.INPUT
    if tag in ("button", "a") or (tag == "input" and input_type in _CLICKABLE_INPUT_TYPES):
        return ControlFamily.CLICKABLE
    if role in ("button", "link", "menuitem", "tab"):
        return ControlFamily.CLICKABLE
    if role in ("listbox", "combobox") or _is_custom_dropdown(element):
        return ControlFamily.SELECT
    return None


def _is_custom_dropdown(element: ElementSnapshot) -> bool:
    if element.tag == "select":
        return False
    if element.aria_role.lower() in ("listbox", "combobox"):
        return True
    markers = " ".join(element.classes).lower() + " " + element.attributes.get("data-testid", "").lower()
    return any(marker in markers for marker in _DROPDOWN_MARKERS)


class CandidateGenerator:
    """Ranks snapshot elements as replacements for a failed locator, by intent."""

    def __init__(self, config: CandidateConfig | None = None) -> None:
        self.config = config or CandidateConfig()

    def generate(
        self,
        snapshot: UiSnapshot,
        intent: str,
        action: ActionType = ActionType.CLICK,
        family: ControlFamily | None = None,
    ) -> list[ElementCandidate]:
        family = family or infer_family(action, intent)
        keywords = extract_keywords(intent, family)
        intent_lower = intent.lower().strip()
        scored: list[ElementCandidate] = []
        for element in snapshot.elements:
            try:
                candidate = self._score_element(element, snapshot, family, keywords, intent_lower)
            except Exception as exc:
                log.debug("Skipping element %s while scoring: %s", element.index, exc)
                continue
            if candidate is not None and candidate.confidence >= self.config.min_score:
                scored.append(candidate)
        scored.sort(key=lambda item: item.confidence, reverse=True)
        return scored[: self.config.max_candidates]

    def page_candidates(self, snapshot: UiSnapshot, limit: int | None = None) -> list[ElementCandidate]:
        """Unscored interactive elements, for arbitration when no heuristic match exists."""

        limit = limit or self.config.max_prompt_candidates
        picked: list[ElementCandidate] = []
        for element in snapshot.interactive_elements():
            if not element.visible:
                continue
            picked.append(
                ElementCandidate(
                    locator=generate_locator(element),
                    confidence=0.0,
                    explanation="Interactive element on page",
                    tag=element.tag,
                    attributes=dict(element.attributes),
                    element_index=element.index,
                    source=CandidateSource.PAGE,
                )
            )
            if len(picked) >= limit:
                break
        return picked

    def _score_element(
        self,
        element: ElementSnapshot,
        snapshot: UiSnapshot,
        family: ControlFamily,
        keywords: set[str],
        intent: str,
    ) -> ElementCandidate | None:
        own_family = element_family(element)
        if own_family is not family:
            return None
        if family is ControlFamily.INPUT:
            score, reasons = self._score_input(element, snapshot, keywords, intent)
        elif family is ControlFamily.CLICKABLE:
            score, reasons = self._score_clickable(element, keywords, intent)
        elif family is ControlFamily.SELECT and _is_custom_dropdown(element):
            score, reasons = self._score_custom_dropdown(element, keywords, intent)
        elif family is ControlFamily.SELECT:
            score, reasons = self._score_select(element, snapshot, keywords, intent)
        else:
            score, reasons = self._score_checkable(element, snapshot, keywords, intent)
        confidence = round(max(0.0, min(1.0, score)), 4)
        log.debug("Scored element %s (%s) at %.4f", element.index, element.tag, confidence)
        return ElementCandidate(
            locator=generate_locator(element),
            confidence=confidence,
            explanation=", ".join(reasons) or "weak match",
            tag=element.tag,
            attributes=dict(element.attributes),
            element_index=element.index,
            source=CandidateSource.HEURISTIC,
        )

    def _score_input(
        self, element: ElementSnapshot, snapshot: UiSnapshot, keywords: set[str], intent: str
    ) -> tuple[float, list[str]]:
        signals = [
            ("label", find_label(element, snapshot), 0.4),
            ("aria-label", element.aria_label, 0.35),
            ("placeholder", element.placeholder, 0.3),
            ("name", element.name, 0.2),
            ("id", element.id, 0.15),
        ]
        score, reasons = _weighted(signals, keywords, intent)
        type_keywords = _TYPE_KEYWORDS.get(element.type.lower(), ())
        if any(keyword in intent for keyword in type_keywords):
            score += 0.15
            reasons.append(f"type={element.type.lower()}")
        return score + _usable_bonus(element, reasons), reasons

    def _score_clickable(self, element: ElementSnapshot, keywords: set[str], intent: str) -> tuple[float, list[str]]:
        signals = [
            ("text", element.text, 0.5),
            ("aria-label", element.aria_label, 0.35),
        ]
        score, reasons = _weighted(signals, keywords, intent)
        value_title = max(text_similarity(element.value, keywords, intent), text_similarity(element.title, keywords, intent))
        if value_title:
            score += value_title * 0.2
            reasons.append("value/title match")
        id_name = max(text_similarity(element.id, keywords, intent), text_similarity(element.name, keywords, intent))
        if id_name:
            score += id_name * 0.15
            reasons.append("id/name match")
        is_submit = element.type.lower() == "submit" or (element.tag == "button" and not element.type)
        if is_submit and any(word in intent for word in _SUBMIT_WORDS):
            score += 0.2
            reasons.append("submit control")
        return score + _usable_bonus(element, reasons), reasons

    def _score_select(
        self, element: ElementSnapshot, snapshot: UiSnapshot, keywords: set[str], intent: str
    ) -> tuple[float, list[str]]:
        signals = [
            ("label", find_label(element, snapshot), 0.4),
            ("aria-label", element.aria_label, 0.35),
            ("name", element.name, 0.2),
            ("id", element.id, 0.15),
        ]
        score, reasons = _weighted(signals, keywords, intent)
        if any(keyword in option.lower() for option in element.options for keyword in keywords):
            score += 0.15
            reasons.append("option match")
        return score + _usable_bonus(element, reasons), reasons

    def _score_custom_dropdown(self, element: ElementSnapshot, keywords: set[str], intent: str) -> tuple[float, list[str]]:
        signals = [
            ("aria-label", element.aria_label, 0.35),
            ("text", element.text, 0.25),
            ("data-testid", element.attributes.get("data-testid", ""), 0.2),
            ("id", element.id, 0.15),
        ]
        score, reasons = _weighted(signals, keywords, intent)
        if element.aria_role.lower() in ("listbox", "combobox"):
            score += 0.1
            reasons.append(f"role={element.aria_role.lower()}")
        if element.visible:
            score += 0.05
            reasons.append("visible")
        return score, reasons

    def _score_checkable(
        self, element: ElementSnapshot, snapshot: UiSnapshot, keywords: set[str], intent: str
    ) -> tuple[float, list[str]]:
        signals = [
            ("label", find_label(element, snapshot), 0.45),
            ("aria-label", element.aria_label, 0.35),
            ("name", element.name, 0.2),
            ("id", element.id, 0.15),
        ]
        score, reasons = _weighted(signals, keywords, intent)
        return score + _usable_bonus(element, reasons), reasons


def _weighted(signals: Iterable[tuple[str, str, float]], keywords: set[str], intent: str) -> tuple[float, list[str]]:
    score = 0.0
    reasons: list[str] = []
    for name, text, weight in signals:
        similarity = text_similarity(text, keywords, intent)
        if similarity:
            score += similarity * weight
            reasons.append(f"{name} match")
    return score, reasons


def _usable_bonus(element: ElementSnapshot, reasons: list[str]) -> float:
    if element.visible and element.enabled:
        reasons.append("visible and enabled")
        return 0.1
    return 0.0
