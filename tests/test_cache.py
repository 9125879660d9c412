from __future__ import annotations

import pytest

from intenthealer.config.schema import CacheConfig
from intenthealer.core.cache import CacheKey, HealCache, normalize_page_pattern
from intenthealer.core.locators import LocatorInfo
from intenthealer.core.metadata import ActionType

ORIGINAL = LocatorInfo.parse("#login-btn")
HEALED = LocatorInfo.parse("button.radius")


@pytest.mark.parametrize(
    ("first", "second"),
    [
        ("https://shop.test/orders/1234?tab=items", "https://shop.test/orders/98#summary"),
        (
            "https://shop.test/users/3f2b8c1e-9a0d-4c55-b7e1-1d2f3a4b5c6d/profile",
            "https://shop.test/users/0e2b8c1e-1a0d-4c55-b7e1-1d2f3a4b5c6f/profile",
        ),
        ("https://shop.test/login", "https://shop.test/login?next=/home"),
    ],
)
def test_pages_sharing_a_pattern_share_cached_heals(first, second):
    assert normalize_page_pattern(first) == normalize_page_pattern(second)
    cache = HealCache()
    cache.put(CacheKey.build(first, ORIGINAL, ActionType.CLICK, "Click login"), HEALED, 0.9)
    assert cache.get(CacheKey.build(second, ORIGINAL, ActionType.CLICK, "click   LOGIN")) == HEALED


def test_key_separates_actions_and_pages():
    base = CacheKey.build("https://shop.test/login", ORIGINAL, ActionType.CLICK)
    assert base.digest != CacheKey.build("https://shop.test/login", ORIGINAL, ActionType.TYPE).digest
    assert base.digest != CacheKey.build("https://shop.test/signup", ORIGINAL, ActionType.CLICK).digest
    assert len(base.digest) == 16
    assert normalize_page_pattern("https://shop.test/orders/12/items") == "https://shop.test/orders/{id}/items"


def test_low_confidence_heals_are_not_cached():
    cache = HealCache(CacheConfig(min_confidence_to_cache=0.7))
    key = CacheKey.build("https://shop.test/login", ORIGINAL, ActionType.CLICK)
    assert not cache.put(key, HEALED, 0.69)
    assert cache.get(key) is None
    assert cache.put(key, HEALED, 0.7)


def test_same_key_holds_one_entry():
    cache = HealCache()
    key = CacheKey.build("https://shop.test/login", ORIGINAL, ActionType.CLICK)
    cache.put(key, HEALED, 0.8)
    cache.put(key, LocatorInfo.parse("#submit"), 0.95)
    assert len(cache) == 1
    assert cache.get(key) == LocatorInfo.parse("#submit")


def test_entries_expire_after_ttl(clock):
    cache = HealCache(CacheConfig(ttl_seconds=60), clock=clock)
    key = CacheKey.build("https://shop.test/login", ORIGINAL, ActionType.CLICK)
    cache.put(key, HEALED, 0.9)
    clock.advance(60)
    assert cache.get(key) == HEALED
    clock.advance(1)
    assert cache.get(key) is None
    assert cache.stats().evictions == 1


def test_capacity_evicts_lowest_confidence_then_oldest(clock):
    cache = HealCache(CacheConfig(max_entries=2), clock=clock)
    strong = CacheKey.build("https://shop.test/a", ORIGINAL, ActionType.CLICK)
    weak = CacheKey.build("https://shop.test/b", ORIGINAL, ActionType.CLICK)
    newest = CacheKey.build("https://shop.test/c", ORIGINAL, ActionType.CLICK)
    cache.put(strong, HEALED, 0.95)
    clock.advance(1)
    cache.put(weak, HEALED, 0.75)
    clock.advance(1)
    cache.put(newest, HEALED, 0.8)
    assert cache.get(weak) is None
    assert cache.get(strong) == HEALED
    assert cache.get(newest) == HEALED


def test_failing_entries_are_evicted():
    cache = HealCache()
    key = CacheKey.build("https://shop.test/login", ORIGINAL, ActionType.CLICK)
    cache.put(key, HEALED, 0.9)
    cache.record_success(key)
    cache.record_failure(key)
    cache.record_failure(key)
    assert cache.get(key) is None


def test_invalidate_by_page_and_healed_locator():
    cache = HealCache()
    login = CacheKey.build("https://shop.test/login", ORIGINAL, ActionType.CLICK)
    other = CacheKey.build("https://shop.test/cart", LocatorInfo.parse("#checkout"), ActionType.CLICK)
    cache.put(login, HEALED, 0.9)
    cache.put(other, LocatorInfo.parse("#pay"), 0.9)
    assert cache.invalidate_page("https://shop.test/login?x=1") == 1
    assert cache.invalidate_healed(LocatorInfo.parse("id=pay")) == 1
    assert len(cache) == 0


def test_bundle_round_trip_skips_expired(clock):
    source = HealCache(CacheConfig(ttl_seconds=100), clock=clock)
    old = CacheKey.build("https://shop.test/old", ORIGINAL, ActionType.CLICK)
    fresh = CacheKey.build("https://shop.test/login", ORIGINAL, ActionType.CLICK, "click login")
    source.put(old, HEALED, 0.9)
    clock.advance(50)
    source.put(fresh, HEALED, 0.9)
    bundle = source.export_bundle()

    clock.advance(60)
    target = HealCache(CacheConfig(ttl_seconds=100), clock=clock)
    assert target.import_bundle(bundle) == 1
    assert target.get(fresh) == HEALED
    assert target.get(old) is None
