from __future__ import annotations

import hashlib
import logging
import re
import threading
import time
from collections.abc import Callable
from dataclasses import dataclass
from datetime import UTC, datetime
from urllib.parse import urlsplit

from pydantic import BaseModel, Field

from intenthealer.config.schema import CacheConfig
from intenthealer.core.locators import LocatorInfo, LocatorStrategy
from intenthealer.core.metadata import ActionType

log = logging.getLogger(__name__)

_UUID_SEGMENT = re.compile(r"/[0-9a-f]{8}-[0-9a-f]{4}-[0-9a-f]{4}-[0-9a-f]{4}-[0-9a-f]{12}(?=/|$)", re.IGNORECASE)
_NUMERIC_SEGMENT = re.compile(r"/\d+(?=/|$)")
_WHITESPACE = re.compile(r"\s+")


def normalize_page_pattern(url: str) -> str:
    """Reduces a URL to its page template so heals carry over between instances."""

    if not url:
        return ""
    parts = urlsplit(url)
    path = _UUID_SEGMENT.sub("/{uuid}", parts.path)
    path = _NUMERIC_SEGMENT.sub("/{id}", path)
    if parts.scheme and parts.netloc:
        return f"{parts.scheme}://{parts.netloc}{path}"
    return path


def normalize_intent(intent: str | None) -> str:
    return _WHITESPACE.sub(" ", (intent or "").strip().lower())


@dataclass(frozen=True, slots=True)
class CacheKey:
    page_pattern: str
    original: LocatorInfo
    action: str
    intent_hint: str
    digest: str

    @classmethod
    def build(
        cls,
        url: str,
        original: LocatorInfo,
        action: ActionType | str,
        intent_hint: str | None = None,
    ) -> CacheKey:
        pattern = normalize_page_pattern(url)
        action_name = action.value if isinstance(action, ActionType) else str(action).lower()
        hint = normalize_intent(intent_hint)
        raw = "|".join([pattern, original.strategy.value, original.value, action_name, hint])
        digest = hashlib.sha256(raw.encode("utf-8")).hexdigest()[:16]
        return cls(pattern, original, action_name, hint, digest)


@dataclass(slots=True)
class CacheEntry:
    key: CacheKey
    healed: LocatorInfo
    confidence: float
    reasoning: str
    created_at: float
    last_accessed_at: float
    hit_count: int = 0
    success_count: int = 0
    failure_count: int = 0

    def is_expired(self, now: float, ttl_seconds: float) -> bool:
        return now - self.created_at > ttl_seconds

    @property
    def should_evict(self) -> bool:
        uses = self.success_count + self.failure_count
        return uses >= 3 and self.failure_count / uses > 0.5


@dataclass(frozen=True, slots=True)
class CacheStats:
    size: int
    hits: int
    misses: int
    puts: int
    evictions: int

    @property
    def hit_rate(self) -> float:
        total = self.hits + self.misses
        return round(self.hits / total, 4) if total else 0.0


class CachedHealModel(BaseModel):
    page_pattern: str
    original_strategy: str
    original_value: str
    action: str
    intent_hint: str = ""
    healed_strategy: str
    healed_value: str
    confidence: float
    reasoning: str = ""
    created_at: float
    success_count: int = 0
    failure_count: int = 0


class CacheBundle(BaseModel):
    exported_at: str = Field(default_factory=lambda: datetime.now(UTC).isoformat())
    entries: list[CachedHealModel] = Field(default_factory=list)


class HealCache:
    """Keeps prior heal decisions keyed by page template, locator, action and intent."""

    def __init__(self, config: CacheConfig | None = None, clock: Callable[[], float] = time.time) -> None:
        self.config = config or CacheConfig()
        self._clock = clock
        self._entries: dict[str, CacheEntry] = {}
        self._lock = threading.RLock()
        self._hits = 0
        self._misses = 0
        self._puts = 0
        self._evictions = 0

    def __len__(self) -> int:
        with self._lock:
            return len(self._entries)

    def lookup(self, key: CacheKey) -> CacheEntry | None:
        if not self.config.enabled:
            return None
        with self._lock:
            entry = self._entries.get(key.digest)
            if entry is None:
                self._misses += 1
                return None
            now = self._clock()
            if entry.is_expired(now, self.config.ttl_seconds) or entry.should_evict:
                del self._entries[key.digest]
                self._evictions += 1
                self._misses += 1
                log.debug("Dropped cache entry %s for %s", key.digest, key.original)
                return None
            entry.hit_count += 1
            entry.last_accessed_at = now
            self._hits += 1
            return entry

    def get(self, key: CacheKey) -> LocatorInfo | None:
        entry = self.lookup(key)
        return entry.healed if entry is not None else None

    def put(self, key: CacheKey, healed: LocatorInfo, confidence: float, reasoning: str = "") -> bool:
        if not self.config.enabled or confidence < self.config.min_confidence_to_cache:
            return False
        with self._lock:
            now = self._clock()
            if key.digest not in self._entries and len(self._entries) >= self.config.max_entries:
                self._evict_one()
            self._entries[key.digest] = CacheEntry(
                key=key,
                healed=healed,
                confidence=confidence,
                reasoning=reasoning,
                created_at=now,
                last_accessed_at=now,
            )
            self._puts += 1
        log.debug("Cached heal %s -> %s (%.2f)", key.original, healed, confidence)
        return True

    def record_success(self, key: CacheKey) -> None:
        with self._lock:
            entry = self._entries.get(key.digest)
            if entry is not None:
                entry.success_count += 1

    def record_failure(self, key: CacheKey) -> None:
        with self._lock:
            entry = self._entries.get(key.digest)
            if entry is not None:
                entry.failure_count += 1

    def invalidate(self, key: CacheKey) -> bool:
        with self._lock:
            removed = self._entries.pop(key.digest, None)
            if removed is not None:
                self._evictions += 1
            return removed is not None

    def invalidate_page(self, url_or_pattern: str) -> int:
        pattern = normalize_page_pattern(url_or_pattern)
        return self._invalidate_where(lambda entry: entry.key.page_pattern == pattern)

    def invalidate_healed(self, healed: LocatorInfo) -> int:
        return self._invalidate_where(lambda entry: entry.healed.selector == healed.selector)

    def cleanup(self) -> int:
        now = self._clock()
        return self._invalidate_where(
            lambda entry: entry.is_expired(now, self.config.ttl_seconds) or entry.should_evict
        )

    def clear(self) -> None:
        with self._lock:
            self._entries.clear()
            self._hits = 0
            self._misses = 0
            self._puts = 0
            self._evictions = 0

    def stats(self) -> CacheStats:
        with self._lock:
            return CacheStats(
                size=len(self._entries),
                hits=self._hits,
                misses=self._misses,
                puts=self._puts,
                evictions=self._evictions,
            )

    def export_bundle(self) -> CacheBundle:
        with self._lock:
            entries = list(self._entries.values())
        return CacheBundle(
            entries=[
                CachedHealModel(
                    page_pattern=entry.key.page_pattern,
                    original_strategy=entry.key.original.strategy.value,
                    original_value=entry.key.original.value,
                    action=entry.key.action,
                    intent_hint=entry.key.intent_hint,
                    healed_strategy=entry.healed.strategy.value,
                    healed_value=entry.healed.value,
                    confidence=entry.confidence,
                    reasoning=entry.reasoning,
                    created_at=entry.created_at,
                    success_count=entry.success_count,
                    failure_count=entry.failure_count,
                )
                for entry in entries
            ]
        )

    def import_bundle(self, bundle: CacheBundle) -> int:
        now = self._clock()
        imported = 0
        with self._lock:
            for item in bundle.entries:
                if now - item.created_at > self.config.ttl_seconds:
                    continue
                original = LocatorInfo(LocatorStrategy(item.original_strategy), item.original_value)
                key = CacheKey.build(item.page_pattern, original, item.action, item.intent_hint)
                if key.digest not in self._entries and len(self._entries) >= self.config.max_entries:
                    self._evict_one()
                self._entries[key.digest] = CacheEntry(
                    key=key,
                    healed=LocatorInfo(LocatorStrategy(item.healed_strategy), item.healed_value),
                    confidence=item.confidence,
                    reasoning=item.reasoning,
                    created_at=item.created_at,
                    last_accessed_at=item.created_at,
                    success_count=item.success_count,
                    failure_count=item.failure_count,
                )
                imported += 1
        log.info("Imported %s cached heals", imported)
        return imported

    def _evict_one(self) -> None:
        victim = min(
            self._entries.values(),
            key=lambda entry: (entry.confidence, entry.last_accessed_at),
        )
        del self._entries[victim.key.digest]
        self._evictions += 1
        log.debug("Evicted cache entry %s at capacity", victim.key.digest)

    def _invalidate_where(self, predicate: Callable[[CacheEntry], bool]) -> int:
        with self._lock:
            doomed = [digest for digest, entry in self._entries.items() if predicate(entry)]
            for digest in doomed:
                del self._entries[digest]
            self._evictions += len(doomed)
            return len(doomed)
