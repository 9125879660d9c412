from __future__ import annotations

import logging
import re
import threading
import time
import uuid
from collections.abc import Callable
from dataclasses import dataclass, field
from datetime import UTC, datetime

from pydantic import BaseModel, Field

from intenthealer.core.locators import LocatorInfo, LocatorStrategy

log = logging.getLogger(__name__)


@dataclass(frozen=True, slots=True)
class BlacklistEntry:
    original: LocatorInfo | None
    healed: LocatorInfo | None = None
    page_pattern: str | None = None
    reason: str = ""
    created_at: float = 0.0
    expires_at: float | None = None
    entry_id: str = field(default_factory=lambda: uuid.uuid4().hex)

    def is_expired(self, now: float) -> bool:
        return self.expires_at is not None and now > self.expires_at

    def matches(self, page_url: str | None, original: LocatorInfo | None, healed: LocatorInfo | None) -> bool:
        if not _same_locator(self.original, original):
            return False
        if not _same_locator(self.healed, healed):
            return False
        if self.page_pattern is not None:
            return bool(page_url) and re.fullmatch(self.page_pattern, page_url) is not None
        return True


def _same_locator(expected: LocatorInfo | None, actual: LocatorInfo | None) -> bool:
    if expected is None:
        return True
    if actual is None:
        return False
    return expected == actual or expected.selector == actual.selector


class BlacklistEntryModel(BaseModel):
    entry_id: str
    original_strategy: str | None = None
    original_value: str | None = None
    healed_strategy: str | None = None
    healed_value: str | None = None
    page_pattern: str | None = None
    reason: str = ""
    created_at: float
    expires_at: float | None = None


class BlacklistBundle(BaseModel):
    exported_at: str = Field(default_factory=lambda: datetime.now(UTC).isoformat())
    entries: list[BlacklistEntryModel] = Field(default_factory=list)


class HealBlacklist:
    """Heal pairs that must never be applied again."""

    def __init__(self, clock: Callable[[], float] = time.time) -> None:
        self._clock = clock
        self._lock = threading.Lock()
        self._entries: dict[str, BlacklistEntry] = {}
        self._blocked = 0

    def __len__(self) -> int:
        with self._lock:
            return len(self._entries)

    @property
    def blocked_count(self) -> int:
        with self._lock:
            return self._blocked

    def add(
        self,
        original: LocatorInfo | None,
        healed: LocatorInfo | None = None,
        *,
        reason: str = "",
        page_pattern: str | None = None,
        ttl_seconds: float | None = None,
    ) -> BlacklistEntry:
        if page_pattern is not None:
            re.compile(page_pattern)
        now = self._clock()
        entry = BlacklistEntry(
            original=original,
            healed=healed,
            page_pattern=page_pattern,
            reason=reason,
            created_at=now,
            expires_at=now + ttl_seconds if ttl_seconds else None,
        )
        with self._lock:
            self._entries[entry.entry_id] = entry
        log.info("Blacklisted %s -> %s (%s)", original, healed or "*", reason or "no reason")
        return entry

    def add_pair(self, original: LocatorInfo, healed: LocatorInfo, reason: str = "") -> BlacklistEntry:
        return self.add(original, healed, reason=reason)

    def is_blacklisted(self, page_url: str | None, original: LocatorInfo, healed: LocatorInfo | None) -> bool:
        self.cleanup()
        with self._lock:
            for entry in self._entries.values():
                if entry.matches(page_url, original, healed):
                    self._blocked += 1
                    log.info("Heal %s -> %s blocked by blacklist: %s", original, healed, entry.reason)
                    return True
        return False

    def remove(self, entry_id: str) -> bool:
        with self._lock:
            return self._entries.pop(entry_id, None) is not None

    def remove_by_original(self, original: LocatorInfo) -> int:
        with self._lock:
            doomed = [
                entry_id
                for entry_id, entry in self._entries.items()
                if entry.original is not None and _same_locator(entry.original, original)
            ]
            for entry_id in doomed:
                del self._entries[entry_id]
        if doomed:
            log.info("Removed %s blacklist entries for %s", len(doomed), original)
        return len(doomed)

    def entries(self) -> list[BlacklistEntry]:
        self.cleanup()
        with self._lock:
            return list(self._entries.values())

    def cleanup(self) -> int:
        now = self._clock()
        with self._lock:
            expired = [entry_id for entry_id, entry in self._entries.items() if entry.is_expired(now)]
            for entry_id in expired:
                del self._entries[entry_id]
        return len(expired)

    def clear(self) -> None:
        with self._lock:
            self._entries.clear()

    def export_bundle(self) -> BlacklistBundle:
        with self._lock:
            return BlacklistBundle(entries=[_entry_model(entry) for entry in self._entries.values()])

    def import_bundle(self, bundle: BlacklistBundle) -> int:
        now = self._clock()
        imported = 0
        with self._lock:
            for item in bundle.entries:
                if item.expires_at is not None and now > item.expires_at:
                    continue
                self._entries[item.entry_id] = BlacklistEntry(
                    original=_locator(item.original_strategy, item.original_value),
                    healed=_locator(item.healed_strategy, item.healed_value),
                    page_pattern=item.page_pattern,
                    reason=item.reason,
                    created_at=item.created_at,
                    expires_at=item.expires_at,
                    entry_id=item.entry_id,
                )
                imported += 1
        return imported


def _locator(strategy: str | None, value: str | None) -> LocatorInfo | None:
    if strategy is None or value is None:
        return None
    return LocatorInfo(LocatorStrategy(strategy), value)


def _entry_model(entry: BlacklistEntry) -> BlacklistEntryModel:
    return BlacklistEntryModel(
        entry_id=entry.entry_id,
        original_strategy=entry.original.strategy.value if entry.original else None,
        original_value=entry.original.value if entry.original else None,
        healed_strategy=entry.healed.strategy.value if entry.healed else None,
        healed_value=entry.healed.value if entry.healed else None,
        page_pattern=entry.page_pattern,
        reason=entry.reason,
        created_at=entry.created_at,
        expires_at=entry.expires_at,
    )
