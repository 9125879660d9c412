from __future__ import annotations

import logging
import threading
import time
from collections import deque
from collections.abc import Callable
from dataclasses import dataclass
from enum import IntEnum

from intenthealer.config.schema import TrustConfig
from intenthealer.core.metadata import ActionType

log = logging.getLogger(__name__)

SAFE_ACTIONS = {ActionType.CLICK, ActionType.TYPE, ActionType.CLEAR}


class TrustLevel(IntEnum):
    L0_SHADOW = 0
    L1_MANUAL = 1
    L2_SAFE = 2
    L3_AUTO = 3
    L4_SILENT = 4

    def can_auto_apply(self, action: ActionType) -> bool:
        if self <= TrustLevel.L1_MANUAL:
            return False
        if self is TrustLevel.L2_SAFE:
            return action in SAFE_ACTIONS
        return True


@dataclass(frozen=True, slots=True)
class TrustStats:
    level: TrustLevel
    consecutive_successes: int
    recent_failures: int


class TrustLevelManager:
    """Moves the trust level up on a streak of confirmed heals and down on bursts of failures."""

    def __init__(self, config: TrustConfig | None = None, clock: Callable[[], float] = time.time) -> None:
        self.config = config or TrustConfig()
        self._clock = clock
        self._lock = threading.Lock()
        self._level = TrustLevel(self.config.initial_level)
        self._consecutive_successes = 0
        self._failures: deque[float] = deque()

    @property
    def level(self) -> TrustLevel:
        with self._lock:
            return self._level

    def record_success(self) -> TrustLevel:
        with self._lock:
            self._consecutive_successes += 1
            if self._consecutive_successes >= self.config.promotion_threshold and self._level < TrustLevel.L4_SILENT:
                self._change(TrustLevel(self._level + 1), "promoted")
                self._consecutive_successes = 0
            return self._level

    def record_failure(self) -> TrustLevel:
        with self._lock:
            now = self._clock()
            self._consecutive_successes = 0
            self._failures.append(now)
            self._prune(now)
            if len(self._failures) >= self.config.demotion_threshold and self._level > TrustLevel.L0_SHADOW:
                self._change(TrustLevel(self._level - 1), "demoted")
                self._failures.clear()
            return self._level

    def set_level(self, level: TrustLevel) -> None:
        with self._lock:
            self._change(level, "set")
            self._consecutive_successes = 0
            self._failures.clear()

    def reset(self) -> None:
        self.set_level(TrustLevel(self.config.initial_level))

    def stats(self) -> TrustStats:
        with self._lock:
            self._prune(self._clock())
            return TrustStats(self._level, self._consecutive_successes, len(self._failures))

    def _prune(self, now: float) -> None:
        while self._failures and now - self._failures[0] > self.config.demotion_window_seconds:
            self._failures.popleft()

    def _change(self, level: TrustLevel, verb: str) -> None:
        if level is self._level:
            return
        log.info("Trust level %s: %s -> %s", verb, self._level.name, level.name)
        self._level = level
