from __future__ import annotations

from intenthealer.core.cache import CacheKey
from intenthealer.core.feedback import FeedbackKind
from intenthealer.core.locators import LocatorInfo
from intenthealer.core.metadata import ActionType
from intenthealer.core.trust import TrustLevel


def test_identical_corrections_reinforce_one_pattern(make_context):
    context = make_context(use_arbitrator=False)
    first = context.feedback.submit(FeedbackKind.CORRECTION, "#old-id", correct_selector="#new-id")
    confidence = context.learner.pattern_for("#old-id").confidence
    second = context.feedback.submit("correction", "#old-id", correct_selector="#new-id")

    assert first.accepted and second.accepted
    assert first.record_id != second.record_id
    assert len(context.learner.patterns()) == 1
    assert context.learner.pattern_for("#old-id").confidence > confidence


def test_feedback_missing_selectors_is_rejected(make_context):
    context = make_context(use_arbitrator=False)
    assert not context.feedback.submit("positive", "#old-id").accepted
    assert not context.feedback.submit("correction", "#old-id", healed_selector="#x").accepted
    assert context.feedback.stats().total == 0


def test_negative_feedback_blacklists_and_evicts(make_context):
    context = make_context(use_arbitrator=False)
    key = CacheKey.build("https://shop.test/login", LocatorInfo.parse("#login-btn"), ActionType.CLICK)
    context.cache.put(key, LocatorInfo.parse("#delete"), 0.9)

    ack = context.feedback.submit("negative", "#login-btn", "#delete", reason="Deleted the account", blacklist=True)

    assert ack.accepted
    assert context.cache.get(key) is None
    assert context.blacklist.is_blacklisted(None, LocatorInfo.parse("#login-btn"), LocatorInfo.parse("id=delete"))
    assert context.metrics.summary().false_heal_count == 1


def test_positive_streak_promotes_trust(make_context):
    context = make_context(use_arbitrator=False)
    for _ in range(10):
        context.feedback.submit("positive", "#login-btn", "button.radius")
    assert context.trust.level is TrustLevel.L4_SILENT
    assert context.feedback.stats().positive == 10


def test_listeners_are_notified_and_isolated(make_context):
    context = make_context(use_arbitrator=False)
    received = []

    def broken(record):
        raise RuntimeError("listener bug")

    context.feedback.add_listener(broken)
    context.feedback.add_listener(received.append)
    ack = context.feedback.submit("false_negative", "#search", correct_selector="#site-search")

    assert ack.accepted
    assert received[0].kind is FeedbackKind.FALSE_NEGATIVE
    assert context.feedback.get(ack.record_id) is received[0]
    assert context.feedback.history(limit=1) == [received[0]]

    context.feedback.remove_listener(received.append)
    context.feedback.submit("false_negative", "#search", correct_selector="#site-search")
    assert len(received) == 1
