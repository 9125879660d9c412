from __future__ import annotations

import json
from collections.abc import Iterable
from dataclasses import dataclass, field
from typing import Any

from intenthealer.config.schema import LlmConfig
from intenthealer.core.exceptions import ProviderError
from intenthealer.core.locators import LocatorInfo
from intenthealer.core.metadata import (
    ActionType,
    ElementSnapshot,
    FailureContext,
    UiSnapshot,
)
from intenthealer.llm.client import ProviderResponse, ReasoningProvider

LOGIN_URL = "https://the-internet.herokuapp.com/login"


class FakeClock:
    """Manually advanced clock for breaker, cache and trust tests."""

    def __init__(self, start: float = 1000.0) -> None:
        self.now = start

    def __call__(self) -> float:
        return self.now

    def advance(self, seconds: float) -> None:
        self.now += seconds


class ScriptedProvider(ReasoningProvider):
    """Replays a fixed list of replies; exceptions in the script are raised."""

    def __init__(self, name: str, script: Iterable[Any]) -> None:
        self.provider_name = name
        self.script = list(script)
        self.calls: list[tuple[str, LlmConfig]] = []

    def complete(self, prompt: str, config: LlmConfig) -> ProviderResponse:
        self.calls.append((prompt, config))
        if not self.script:
            raise ProviderError(f"{self.provider_name} script exhausted", provider=self.provider_name)
        item = self.script.pop(0)
        if isinstance(item, Exception):
            raise item
        if isinstance(item, ProviderResponse):
            return item
        if isinstance(item, dict):
            return ProviderResponse(json.dumps(item), 120, 40)
        return ProviderResponse(str(item), 120, 40)


def heal_reply(index: int, confidence: float = 0.92, reasoning: str = "Same purpose") -> dict[str, Any]:
    return {
        "can_heal": True,
        "confidence": confidence,
        "selected_element_index": index,
        "reasoning": reasoning,
        "alternative_indices": [],
        "warnings": [],
        "refusal_reason": None,
    }


def refusal_reply(reason: str = "No candidate fits", confidence: float = 0.2) -> dict[str, Any]:
    return {
        "can_heal": False,
        "confidence": confidence,
        "selected_element_index": None,
        "reasoning": reason,
        "refusal_reason": reason,
    }


def retryable(provider: str = "openai", status: int = 429) -> ProviderError:
    return ProviderError(f"{provider} returned {status}", provider=provider, retryable=True, status=status)


def terminal(provider: str = "openai", status: int = 401) -> ProviderError:
    return ProviderError(f"{provider} returned {status}", provider=provider, retryable=False, status=status)


def element(index: int, tag: str, **fields: Any) -> ElementSnapshot:
    classes = fields.pop("classes", ())
    attributes = dict(fields.pop("attributes", {}))
    if classes:
        attributes.setdefault("class", " ".join(classes))
    for name in ("id", "name", "type"):
        if fields.get(name):
            attributes.setdefault(name, fields[name])
    return ElementSnapshot(index=index, tag=tag, classes=tuple(classes), attributes=attributes, **fields)


def login_page_snapshot(url: str = LOGIN_URL, **button_fields: Any) -> UiSnapshot:
    button = {"type": "submit", "classes": ("radius",), "text": "Login"}
    button.update(button_fields)
    return UiSnapshot(
        url=url,
        title="The Internet",
        detected_language="en",
        elements=(
            element(0, "label", text="Username", attributes={"for": "username"}),
            element(1, "input", id="username", name="username", type="text"),
            element(2, "label", text="Password", attributes={"for": "password"}),
            element(3, "input", id="password", name="password", type="password"),
            element(4, "button", **button),
            element(5, "a", text="Elemental Selenium", attributes={"href": "http://elementalselenium.com/"}),
        ),
    )


def click_failure(selector: str = "#login-btn", intent: str = "Click the Login button", **fields: Any) -> FailureContext:
    return FailureContext(
        original_locator=LocatorInfo.parse(selector),
        action=fields.pop("action", ActionType.CLICK),
        exception_type="NoSuchElementException",
        exception_message=f"Unable to locate element: {selector}",
        intent=intent,
        step_text=fields.pop("step_text", intent),
        **fields,
    )


@dataclass
class FakeElement:
    locator: str
    text: str = ""
    clicks: int = 0
    typed: list[str] = field(default_factory=list)
    failures: list[Exception] = field(default_factory=list)

    def click(self) -> None:
        if self.failures:
            raise self.failures.pop(0)
        self.clicks += 1

    def clear(self) -> None:
        self.typed.clear()

    def send_keys(self, value: str) -> None:
        if self.failures:
            raise self.failures.pop(0)
        self.typed.append(value)


class FakeDriver:
    """Answers ``find_elements`` from a table of ``(by, value)`` pairs."""

    def __init__(self, url: str = LOGIN_URL, elements: dict[tuple[str, str], list[Any]] | None = None) -> None:
        self.current_url = url
        self.title = "The Internet"
        self.elements = dict(elements or {})
        self.lookups: list[tuple[str, str]] = []
        self.script_payload: dict[str, Any] | Exception | None = None

    def find_elements(self, by: str, value: str) -> list[Any]:
        self.lookups.append((by, value))
        return list(self.elements.get((by, value), []))

    def execute_script(self, script: str, *args: Any) -> Any:
        if isinstance(self.script_payload, Exception):
            raise self.script_payload
        return self.script_payload

    def get_screenshot_as_file(self, filename: str) -> bool:
        with open(filename, "wb") as handle:
            handle.write(b"\x89PNG")
        return True

    def quit(self) -> None:
        self.elements.clear()
