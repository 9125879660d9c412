from __future__ import annotations

import logging
from collections.abc import Callable, Iterator
from contextlib import contextmanager
from dataclasses import replace
from typing import TYPE_CHECKING, Any

from selenium.common.exceptions import (
    InvalidSelectorException,
    NoSuchElementException,
    StaleElementReferenceException,
    WebDriverException,
)

from intenthealer.core.healer import Healer
from intenthealer.core.locators import LocatorInfo
from intenthealer.core.metadata import (
    ActionType,
    FailureContext,
    FailureKind,
    FindResult,
    Found,
    HealOutcome,
    HealResult,
    NotFound,
    UiSnapshot,
)
from intenthealer.logging.artifacts import ArtifactManager
from intenthealer.utils.dom_extract import capture_snapshot
from intenthealer.utils.wait import wait_until

if TYPE_CHECKING:
    from intenthealer.core.context import ExecutionState

log = logging.getLogger(__name__)


class SafeFinder:
    """Element lookup that returns Found or NotFound and heals on a miss."""

    def __init__(
        self,
        driver,
        healer: Healer,
        *,
        state: ExecutionState | None = None,
        timeout: float = 0.0,
        interval: float = 0.2,
        snapshot: Callable[[Any], UiSnapshot] = capture_snapshot,
        artifacts: ArtifactManager | None = None,
    ) -> None:
        self.driver = driver
        self.healer = healer
        self.state = state
        self.timeout = timeout
        self.interval = interval
        self.artifacts = artifacts
        self._snapshot = snapshot

    def find(
        self,
        locator: LocatorInfo | str,
        action: ActionType = ActionType.CLICK,
        intent: str = "",
        **context: Any,
    ) -> FindResult:
        locator = locator if isinstance(locator, LocatorInfo) else LocatorInfo.parse(locator)
        element, kind = self._locate(locator, self.timeout)
        if element is not None:
            return Found(element, locator)

        exception_type = (
            "StaleElementReferenceException" if kind is FailureKind.STALE_ELEMENT else "NoSuchElementException"
        )
        failure = FailureContext(
            original_locator=locator,
            action=action,
            kind=kind,
            exception_type=exception_type,
            exception_message=f"No element matched {locator}",
            intent=intent,
            step_text=context.pop("step_text", intent),
            **context,
        )
        snapshot = self._capture(failure)
        if self.state is not None:
            self.state.checkpoint(snapshot.url, str(locator))
        return self._resolve(failure, self.healer.heal(failure, snapshot), retried=False)

    def find_element(self, locator: LocatorInfo | str, action: ActionType = ActionType.CLICK, intent: str = ""):
        """Like ``find`` but raises ``NoSuchElementException`` when healing produced nothing."""

        result = self.find(locator, action, intent)
        if isinstance(result, Found):
            return result.element
        raise NoSuchElementException(result.reason)

    def _resolve(self, failure: FailureContext, result: HealResult, retried: bool) -> FindResult:
        if result.outcome is not HealOutcome.SUCCESS or result.healed_locator is None:
            reason = result.reason or f"Heal {result.outcome.value}"
            if result.outcome is HealOutcome.SUGGESTED and result.healed_locator is not None:
                reason = f"{reason}: {result.healed_locator}"
            return NotFound(reason, heal=result)

        element, _ = self._locate(result.healed_locator, 0)
        if element is not None:
            self.healer.confirm(result, worked=True)
            if self.state is not None:
                self.state.record_heal(result)
            return Found(element, result.healed_locator, heal=result)

        if result.from_cache and not retried:
            log.info("Cached heal %s no longer matches; healing again", result.healed_locator)
            self.healer.report_stale(result)
            snapshot = self._capture(failure)
            return self._resolve(failure, self.healer.heal(failure, snapshot, retry_of=result), retried=True)

        self.healer.confirm(result, worked=False)
        return NotFound(result.reason, heal=result)

    def _capture(self, failure: FailureContext) -> UiSnapshot:
        snapshot = self._snapshot(self.driver)
        if self.artifacts is None:
            return snapshot
        path = self.artifacts.screenshot_path(str(failure.original_locator))
        try:
            saved = self.driver.get_screenshot_as_file(str(path))
        except WebDriverException as exc:
            log.warning("Screenshot for %s failed: %s", failure.original_locator, exc.msg or exc)
            return snapshot
        return replace(snapshot, screenshot_path=str(path)) if saved else snapshot

    def _locate(self, locator: LocatorInfo, timeout: float) -> tuple[Any, FailureKind]:
        by, value = locator.to_by()

        def first_match():
            try:
                matches = self.driver.find_elements(by, value)
            except InvalidSelectorException:
                return None
            return matches[0] if matches else None

        try:
            element = wait_until(first_match, timeout, self.interval)
        except StaleElementReferenceException:
            return None, FailureKind.STALE_ELEMENT
        return element, FailureKind.ELEMENT_NOT_FOUND


class HealingWebDriver:
    """Wraps a Selenium driver; ``find_element`` heals before giving up."""

    def __init__(self, driver, finder: SafeFinder) -> None:
        self._driver = driver
        self._finder = finder
        self._intent = ""
        self._action = ActionType.CLICK

    @property
    def wrapped_driver(self):
        return self._driver

    @property
    def finder(self) -> SafeFinder:
        return self._finder

    @contextmanager
    def intent(self, text: str, action: ActionType = ActionType.CLICK) -> Iterator[HealingWebDriver]:
        previous = (self._intent, self._action)
        self._intent, self._action = text, action
        try:
            yield self
        finally:
            self._intent, self._action = previous

    def find_element(self, by: str = "id", value: str | None = None):
        result = self._finder.find(LocatorInfo.from_by(by, value or ""), self._action, self._intent)
        if isinstance(result, Found):
            return result.element
        raise NoSuchElementException(result.reason)

    def find_elements(self, by: str = "id", value: str | None = None) -> list:
        matches = self._driver.find_elements(by, value)
        if matches:
            return matches
        result = self._finder.find(LocatorInfo.from_by(by, value or ""), self._action, self._intent)
        if isinstance(result, Found):
            return [result.element]
        return []

    def __getattr__(self, name: str):
        return getattr(self._driver, name)
