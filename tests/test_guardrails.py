from __future__ import annotations

import pytest

from intenthealer.config.schema import GuardrailConfig, HealPolicy, TrustConfig
from intenthealer.core.blacklist import HealBlacklist
from intenthealer.core.guardrails import GuardrailKind, GuardrailPolicy
from intenthealer.core.locators import LocatorInfo
from intenthealer.core.metadata import ActionType, FailureKind
from intenthealer.core.trust import TrustLevel, TrustLevelManager
from tests.helpers import LOGIN_URL, click_failure, element

HEALED = LocatorInfo.parse("button.radius")
BUTTON = element(4, "button", type="submit", classes=("radius",), text="Login")


@pytest.mark.parametrize("minimum", [0.0, 0.05, 0.3, 0.5, 0.79, 0.8, 0.95, 1.0])
def test_rejects_any_confidence_below_the_minimum(minimum):
    policy = GuardrailPolicy(GuardrailConfig(min_confidence=minimum))
    failure = click_failure()
    for confidence in (minimum - 0.01, minimum - 0.5, minimum / 2):
        if confidence < minimum:
            verdict = policy.check_post(failure, confidence, HEALED, BUTTON, LOGIN_URL)
            assert verdict.kind is GuardrailKind.LOW_CONFIDENCE
    assert policy.check_post(failure, minimum, HEALED, BUTTON, LOGIN_URL).allowed


def test_lower_trust_raises_the_bar():
    trust = TrustLevelManager(TrustConfig(initial_level=1))
    policy = GuardrailPolicy(GuardrailConfig(min_confidence=0.8), trust=trust)
    assert policy.effective_min_confidence() == 0.9
    assert policy.effective_min_confidence(TrustLevel.L0_SHADOW) == 0.95
    assert policy.effective_min_confidence(TrustLevel.L4_SILENT) == 0.8
    verdict = policy.check_post(click_failure(), 0.85, HEALED, BUTTON, LOGIN_URL)
    assert verdict.kind is GuardrailKind.LOW_CONFIDENCE


def test_destructive_elements_need_explicit_permission():
    delete = element(7, "button", id="delete-account", text="Delete account")
    localized = element(8, "button", aria_label="Konto löschen")
    policy = GuardrailPolicy()
    assert policy.check_post(click_failure(), 0.95, LocatorInfo.parse("#delete-account"), delete).kind is GuardrailKind.DESTRUCTIVE
    assert policy.check_post(click_failure(), 0.95, LocatorInfo.parse("#x"), localized).kind is GuardrailKind.DESTRUCTIVE

    allowed = click_failure(destructive_allowed=True)
    assert policy.check_post(allowed, 0.95, LocatorInfo.parse("#delete-account"), delete).allowed
    assert GuardrailPolicy(mode=HealPolicy.AUTO_ALL).check_post(click_failure(), 0.95, HEALED, delete).allowed


def test_hidden_and_disabled_elements_are_refused():
    policy = GuardrailPolicy()
    hidden = element(4, "button", text="Login", visible=False)
    disabled = element(4, "button", text="Login", enabled=False)
    assert policy.check_post(click_failure(), 0.95, HEALED, hidden).kind is GuardrailKind.NOT_INTERACTABLE
    assert policy.check_post(click_failure(), 0.95, HEALED, disabled).kind is GuardrailKind.NOT_INTERACTABLE


def test_blacklisted_pairs_are_refused(clock):
    blacklist = HealBlacklist(clock=clock)
    policy = GuardrailPolicy(blacklist=blacklist)
    blacklist.add(LocatorInfo.parse("id=login-btn"), HEALED, reason="wrong button", ttl_seconds=60)
    verdict = policy.check_post(click_failure(), 0.95, HEALED, BUTTON, LOGIN_URL)
    assert verdict.kind is GuardrailKind.BLACKLISTED
    assert blacklist.blocked_count == 1

    clock.advance(61)
    assert policy.check_post(click_failure(), 0.95, HEALED, BUTTON, LOGIN_URL).allowed
    assert len(blacklist) == 0


def test_feedback_blacklist_reaches_the_guardrails(make_context):
    context = make_context(use_arbitrator=False)
    assert context.guardrails.blacklist is context.blacklist
    assert context.guardrails.trust is context.trust

    context.feedback.submit("negative", "#login-btn", "button.radius", reason="wrong button", blacklist=True)

    verdict = context.guardrails.check_post(click_failure(), 0.95, HEALED, BUTTON, LOGIN_URL)
    assert verdict.kind is GuardrailKind.BLACKLISTED


def test_blacklist_page_patterns_and_bundles(clock):
    blacklist = HealBlacklist(clock=clock)
    entry = blacklist.add(LocatorInfo.parse("#login-btn"), page_pattern=r"https://.*/admin/.*", reason="admin pages")
    assert blacklist.is_blacklisted("https://shop.test/admin/users", LocatorInfo.parse("#login-btn"), HEALED)
    assert not blacklist.is_blacklisted(LOGIN_URL, LocatorInfo.parse("#login-btn"), HEALED)

    restored = HealBlacklist(clock=clock)
    assert restored.import_bundle(blacklist.export_bundle()) == 1
    assert restored.entries()[0].entry_id == entry.entry_id
    assert restored.remove_by_original(LocatorInfo.parse("id=login-btn")) == 1


def test_pre_checks_refuse_before_any_work():
    assert GuardrailPolicy(mode=HealPolicy.OFF).check_pre(click_failure()).kind is GuardrailKind.POLICY_OFF
    assert GuardrailPolicy().check_pre(click_failure(step_keyword="Then")).kind is GuardrailKind.ASSERTION_STEP
    assertion = click_failure(kind=FailureKind.ASSERTION_FAILURE)
    assert GuardrailPolicy().check_pre(assertion).kind is GuardrailKind.NOT_HEALABLE

    forbidden = GuardrailPolicy(GuardrailConfig(forbidden_url_patterns=[r".*/checkout/.*"]))
    verdict = forbidden.check_pre(click_failure(), "https://shop.test/checkout/pay")
    assert verdict.kind is GuardrailKind.FORBIDDEN_URL

    budget = GuardrailPolicy(GuardrailConfig(max_heals_per_run=2))
    assert budget.check_pre(click_failure()).allowed
    assert budget.check_pre(click_failure()).allowed
    assert budget.heals_used == 2
    assert budget.check_pre(click_failure()).kind is GuardrailKind.BUDGET_EXHAUSTED
    budget.release_heal()
    assert budget.check_pre(click_failure()).allowed
    budget.reset_budget()
    assert budget.heals_used == 0


def test_trust_promotes_on_streaks_and_demotes_on_bursts(clock):
    trust = TrustLevelManager(TrustConfig(initial_level=2, promotion_threshold=3, demotion_threshold=2), clock=clock)
    for _ in range(3):
        trust.record_success()
    assert trust.level is TrustLevel.L3_AUTO

    trust.record_failure()
    clock.advance(3601)
    trust.record_failure()
    assert trust.level is TrustLevel.L3_AUTO
    trust.record_failure()
    assert trust.level is TrustLevel.L2_SAFE


def test_trust_levels_gate_auto_apply():
    assert not TrustLevel.L1_MANUAL.can_auto_apply(ActionType.CLICK)
    assert TrustLevel.L2_SAFE.can_auto_apply(ActionType.TYPE)
    assert not TrustLevel.L2_SAFE.can_auto_apply(ActionType.SELECT)
    assert TrustLevel.L3_AUTO.can_auto_apply(ActionType.SELECT)
