from __future__ import annotations

import re
from dataclasses import dataclass
from enum import Enum
from typing import TYPE_CHECKING

if TYPE_CHECKING:
    from intenthealer.core.metadata import ElementSnapshot

_UUID_LIKE = re.compile(r"[0-9a-f]{8}-[0-9a-f]{4}-", re.IGNORECASE)
_LONG_DIGITS = re.compile(r"\d{5,}")
_HEX_RUN = re.compile(r"[0-9a-f]{6,}", re.IGNORECASE)
_DIGIT_RUN = re.compile(r"\d{4,}")
_STABLE_INPUT_TYPES = {"checkbox", "radio", "text", "password", "email", "number"}


class LocatorStrategy(str, Enum):
    ID = "id"
    NAME = "name"
    CLASS = "class"
    CSS = "css"
    XPATH = "xpath"
    LINK_TEXT = "link"
    PARTIAL_LINK_TEXT = "partial_link"
    TAG = "tag"


_BY_VALUES = {
    LocatorStrategy.ID: "id",
    LocatorStrategy.NAME: "name",
    LocatorStrategy.CLASS: "class name",
    LocatorStrategy.CSS: "css selector",
    LocatorStrategy.XPATH: "xpath",
    LocatorStrategy.LINK_TEXT: "link text",
    LocatorStrategy.PARTIAL_LINK_TEXT: "partial link text",
    LocatorStrategy.TAG: "tag name",
}
_STRATEGY_BY_BY = {value: key for key, value in _BY_VALUES.items()}
_PREFIX_ALIASES = {
    "id": LocatorStrategy.ID,
    "name": LocatorStrategy.NAME,
    "class": LocatorStrategy.CLASS,
    "classname": LocatorStrategy.CLASS,
    "css": LocatorStrategy.CSS,
    "xpath": LocatorStrategy.XPATH,
    "link": LocatorStrategy.LINK_TEXT,
    "linktext": LocatorStrategy.LINK_TEXT,
    "partial_link": LocatorStrategy.PARTIAL_LINK_TEXT,
    "partiallinktext": LocatorStrategy.PARTIAL_LINK_TEXT,
    "tag": LocatorStrategy.TAG,
    "tagname": LocatorStrategy.TAG,
}


def infer_selector_type(selector: str) -> str:
    stripped = selector.strip()
    if stripped.startswith("/") or stripped.startswith("("):
        return "xpath"
    return "css"


@dataclass(frozen=True, slots=True)
class LocatorInfo:
    strategy: LocatorStrategy
    value: str

    def __str__(self) -> str:
        return f"{self.strategy.value}={self.value}"

    @classmethod
    def parse(cls, text: str) -> LocatorInfo:
        """Reads ``strategy=value`` notation, falling back to a raw selector."""

        stripped = text.strip()
        prefix, sep, rest = stripped.partition("=")
        if sep and rest:
            strategy = _PREFIX_ALIASES.get(prefix.strip().lower())
            if strategy is not None:
                return cls(strategy, rest)
        return cls.from_selector(stripped)

    @classmethod
    def from_selector(cls, selector: str) -> LocatorInfo:
        stripped = selector.strip()
        if infer_selector_type(stripped) == "xpath":
            return cls(LocatorStrategy.XPATH, stripped)
        return cls(LocatorStrategy.CSS, stripped)

    @classmethod
    def from_by(cls, by: str, value: str) -> LocatorInfo:
        strategy = _STRATEGY_BY_BY.get(by)
        if strategy is None:
            raise ValueError(f"Unsupported locator strategy: {by}")
        return cls(strategy, value)

    def to_by(self) -> tuple[str, str]:
        return _BY_VALUES[self.strategy], self.value

    @property
    def selector(self) -> str:
        """Canonical selector text; ``id=x`` and ``css=#x`` share one form."""

        if self.strategy is LocatorStrategy.ID:
            return f"#{self.value}"
        if self.strategy is LocatorStrategy.NAME:
            return f"[name='{self.value}']"
        if self.strategy is LocatorStrategy.CLASS:
            return f".{self.value}"
        if self.strategy in (LocatorStrategy.CSS, LocatorStrategy.XPATH, LocatorStrategy.TAG):
            return self.value
        return str(self)


def looks_like_dynamic_id(value: str) -> bool:
    return bool(
        _UUID_LIKE.search(value)
        or value.isdigit()
        or len(value) > 50
        or "ember" in value
        or "react" in value
        or _LONG_DIGITS.search(value)
    )


def looks_like_dynamic_class(value: str) -> bool:
    return bool(_HEX_RUN.search(value) or _DIGIT_RUN.search(value) or "_" in value)


def generate_locator(element: ElementSnapshot) -> LocatorInfo:
    """Builds the most stable locator the captured attributes allow."""

    if element.id and not looks_like_dynamic_id(element.id):
        return LocatorInfo(LocatorStrategy.ID, element.id)
    if element.name:
        return LocatorInfo(LocatorStrategy.NAME, element.name)

    tag = (element.tag or "div").lower()
    css = tag
    stable_classes = [name for name in element.classes if not looks_like_dynamic_class(name)]
    for class_name in stable_classes[:2]:
        css += "." + class_name.replace(" ", "")
    if tag == "input" and element.type and element.type.lower() in _STABLE_INPUT_TYPES:
        css += f'[type="{element.type.lower()}"]'

    text = (element.text or "").strip()
    if css == tag and text and len(text) <= 30:
        quoted = f'"{text}"' if "'" in text else f"'{text}'"
        return LocatorInfo(LocatorStrategy.XPATH, f"//{tag}[contains(text(),{quoted})]")
    return LocatorInfo(LocatorStrategy.CSS, css)
