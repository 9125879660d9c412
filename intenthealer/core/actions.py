from __future__ import annotations

import logging

from selenium.common.exceptions import (
    ElementNotInteractableException,
    NoSuchElementException,
    StaleElementReferenceException,
)
from selenium.webdriver.support.ui import Select

from intenthealer.core.finder import SafeFinder
from intenthealer.core.locators import LocatorInfo
from intenthealer.core.metadata import ActionType, Found

log = logging.getLogger(__name__)


class SafeActions:
    """High-level browser actions routed through the healing pipeline."""

    def __init__(self, finder: SafeFinder) -> None:
        self.finder = finder

    def click(self, locator: LocatorInfo | str, intent: str = "") -> None:
        element = self._element(locator, ActionType.CLICK, intent)
        try:
            element.click()
        except (ElementNotInteractableException, StaleElementReferenceException) as exc:
            log.debug("Retrying click on %s after %s", locator, type(exc).__name__)
            self._element(locator, ActionType.CLICK, intent).click()

    def type(self, locator: LocatorInfo | str, value: str, intent: str = "", clear_first: bool = True) -> None:
        element = self._element(locator, ActionType.TYPE, intent)
        try:
            if clear_first:
                element.clear()
            element.send_keys(value)
        except (ElementNotInteractableException, StaleElementReferenceException) as exc:
            log.debug("Retrying type on %s after %s", locator, type(exc).__name__)
            element = self._element(locator, ActionType.TYPE, intent)
            if clear_first:
                element.clear()
            element.send_keys(value)

    def select(self, locator: LocatorInfo | str, visible_text: str, intent: str = "") -> None:
        element = self._element(locator, ActionType.SELECT, intent)
        try:
            Select(element).select_by_visible_text(visible_text)
        except StaleElementReferenceException:
            Select(self._element(locator, ActionType.SELECT, intent)).select_by_visible_text(visible_text)

    def _element(self, locator: LocatorInfo | str, action: ActionType, intent: str):
        result = self.finder.find(locator, action, intent)
        if isinstance(result, Found):
            return result.element
        raise NoSuchElementException(result.reason)
