from __future__ import annotations

from dataclasses import dataclass, field
from enum import Enum
from typing import Any

from intenthealer.core.locators import LocatorInfo

_INTERACTIVE_TAGS = {"input", "button", "a", "select", "textarea", "option"}
_INTERACTIVE_ROLES = {"button", "link", "checkbox", "radio", "switch", "listbox", "combobox", "option", "tab", "menuitem", "textbox"}


class ActionType(str, Enum):
    CLICK = "click"
    TYPE = "type"
    SELECT = "select"
    CLEAR = "clear"
    HOVER = "hover"
    DOUBLE_CLICK = "double_click"
    RIGHT_CLICK = "right_click"
    SUBMIT = "submit"
    UNKNOWN = "unknown"


class FailureKind(str, Enum):
    ELEMENT_NOT_FOUND = "element_not_found"
    STALE_ELEMENT = "stale_element"
    CLICK_INTERCEPTED = "click_intercepted"
    NOT_INTERACTABLE = "not_interactable"
    TIMEOUT = "timeout"
    ASSERTION_FAILURE = "assertion_failure"
    UNKNOWN = "unknown"

    @property
    def healable(self) -> bool:
        return self not in (FailureKind.ASSERTION_FAILURE, FailureKind.UNKNOWN)

    @classmethod
    def from_exception_name(cls, name: str) -> FailureKind:
        lowered = name.lower()
        if "nosuchelement" in lowered or "invalidselector" in lowered:
            return cls.ELEMENT_NOT_FOUND
        if "stale" in lowered:
            return cls.STALE_ELEMENT
        if "intercepted" in lowered:
            return cls.CLICK_INTERCEPTED
        if "notinteractable" in lowered:
            return cls.NOT_INTERACTABLE
        if "timeout" in lowered:
            return cls.TIMEOUT
        if "assertion" in lowered:
            return cls.ASSERTION_FAILURE
        return cls.UNKNOWN


class HealOutcome(str, Enum):
    SUCCESS = "success"
    SUGGESTED = "suggested"
    REFUSED = "refused"
    FAILED = "failed"


class CandidateSource(str, Enum):
    HEURISTIC = "heuristic"
    LEARNED = "learned"
    PAGE = "page"


@dataclass(frozen=True, slots=True)
class ElementRect:
    x: float = 0.0
    y: float = 0.0
    width: float = 0.0
    height: float = 0.0


@dataclass(frozen=True, slots=True)
class ElementSnapshot:
    index: int
    tag: str
    id: str = ""
    name: str = ""
    type: str = ""
    classes: tuple[str, ...] = ()
    text: str = ""
    aria_label: str = ""
    aria_role: str = ""
    placeholder: str = ""
    title: str = ""
    value: str = ""
    attributes: dict[str, str] = field(default_factory=dict, hash=False, compare=False)
    rect: ElementRect = field(default_factory=ElementRect)
    visible: bool = True
    enabled: bool = True
    nearby_labels: tuple[str, ...] = ()
    wrapping_label: str = ""
    container: str = ""
    options: tuple[str, ...] = ()

    @property
    def is_interactive(self) -> bool:
        if self.tag in _INTERACTIVE_TAGS:
            return True
        if self.aria_role in _INTERACTIVE_ROLES:
            return True
        return self.attributes.get("contenteditable", "").lower() == "true"

    @property
    def best_label(self) -> str:
        for value in (self.aria_label, self.text, self.placeholder, self.title, self.value, self.name, self.id):
            if value:
                return value.strip()
        return ""

    @classmethod
    def from_payload(cls, index: int, payload: dict[str, Any]) -> ElementSnapshot:
        attributes = {str(key): str(value) for key, value in (payload.get("attributes") or {}).items()}
        classes = payload.get("classes")
        if classes is None:
            classes = attributes.get("class", "").split()
        rect = payload.get("rect") or {}
        return cls(
            index=index,
            tag=str(payload.get("tag", "")).lower(),
            id=payload.get("id") or attributes.get("id", ""),
            name=payload.get("name") or attributes.get("name", ""),
            type=payload.get("type") or attributes.get("type", ""),
            classes=tuple(item for item in classes if item),
            text=(payload.get("text") or "").strip(),
            aria_label=payload.get("aria_label") or attributes.get("aria-label", ""),
            aria_role=payload.get("aria_role") or attributes.get("role", ""),
            placeholder=payload.get("placeholder") or attributes.get("placeholder", ""),
            title=payload.get("title") or attributes.get("title", ""),
            value=payload.get("value") or attributes.get("value", ""),
            attributes=attributes,
            rect=ElementRect(
                x=float(rect.get("x", 0.0)),
                y=float(rect.get("y", 0.0)),
                width=float(rect.get("width", 0.0)),
                height=float(rect.get("height", 0.0)),
            ),
            visible=bool(payload.get("visible", True)),
            enabled=bool(payload.get("enabled", True)),
            nearby_labels=tuple(payload.get("nearby_labels") or ()),
            wrapping_label=payload.get("wrapping_label") or "",
            container=payload.get("container") or "",
            options=tuple(payload.get("options") or ()),
        )


@dataclass(frozen=True, slots=True)
class UiSnapshot:
    url: str
    title: str = ""
    detected_language: str = ""
    elements: tuple[ElementSnapshot, ...] = ()
    screenshot_path: str | None = None

    @property
    def has_elements(self) -> bool:
        return bool(self.elements)

    def interactive_elements(self) -> list[ElementSnapshot]:
        return [element for element in self.elements if element.is_interactive]

    def element(self, index: int) -> ElementSnapshot | None:
        for element in self.elements:
            if element.index == index:
                return element
        return None

    def element_by_id(self, element_id: str) -> ElementSnapshot | None:
        for element in self.elements:
            if element.id == element_id:
                return element
        return None

    @classmethod
    def from_payload(cls, payload: dict[str, Any]) -> UiSnapshot:
        elements = tuple(
            ElementSnapshot.from_payload(position, item)
            for position, item in enumerate(payload.get("elements") or [])
        )
        return cls(
            url=payload.get("url", ""),
            title=payload.get("title", ""),
            detected_language=payload.get("detected_language", ""),
            elements=elements,
            screenshot_path=payload.get("screenshot_path"),
        )


@dataclass(frozen=True, slots=True)
class FailureContext:
    original_locator: LocatorInfo
    action: ActionType = ActionType.CLICK
    kind: FailureKind = FailureKind.ELEMENT_NOT_FOUND
    exception_type: str = ""
    exception_message: str = ""
    feature: str = ""
    scenario: str = ""
    step_id: str = ""
    step_keyword: str = ""
    step_text: str = ""
    source_location: str = ""
    intent: str = ""
    destructive_allowed: bool = False

    @property
    def intent_hint(self) -> str:
        return self.intent or self.step_text


@dataclass(slots=True)
class ElementCandidate:
    locator: LocatorInfo
    confidence: float
    explanation: str
    tag: str = ""
    attributes: dict[str, str] = field(default_factory=dict)
    element_index: int | None = None
    source: CandidateSource = CandidateSource.HEURISTIC


@dataclass(slots=True)
class HealDecision:
    can_heal: bool
    confidence: float
    selected_candidate_index: int | None = None
    reasoning: str = ""
    alternative_indices: list[int] = field(default_factory=list)
    warnings: list[str] = field(default_factory=list)
    refusal_reason: str | None = None

    def __post_init__(self) -> None:
        if not self.can_heal and self.selected_candidate_index is not None:
            raise ValueError("A refused heal decision cannot select a candidate")

    @classmethod
    def refuse(cls, reason: str, confidence: float = 0.0) -> HealDecision:
        return cls(can_heal=False, confidence=confidence, reasoning=reason, refusal_reason=reason)


@dataclass(slots=True)
class HealResult:
    outcome: HealOutcome
    reason: str = ""
    decision: HealDecision | None = None
    healed_locator: LocatorInfo | None = None
    confidence: float = 0.0
    candidates: list[ElementCandidate] = field(default_factory=list)
    from_cache: bool = False
    cache_key: Any = None
    provider: str | None = None
    failure_kind: FailureKind | None = None
    duration_ms: float = 0.0
    input_tokens: int = 0
    output_tokens: int = 0
    cost_usd: float = 0.0

    @property
    def succeeded(self) -> bool:
        return self.outcome is HealOutcome.SUCCESS


@dataclass(slots=True)
class HealAttempt:
    original_locator: str
    action: str
    failure_type: str
    top_candidates: list[dict[str, Any]]
    llm_provider: str
    new_locator: str
    outcome: str
    confidence: float
    reason: str
    from_cache: bool = False
    page_url: str = ""
    artifact_paths: dict[str, str] = field(default_factory=dict)


@dataclass(slots=True)
class Found:
    element: Any
    locator: LocatorInfo
    heal: HealResult | None = None


@dataclass(slots=True)
class NotFound:
    reason: str
    heal: HealResult | None = None


FindResult = Found | NotFound
