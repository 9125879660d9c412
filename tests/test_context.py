from __future__ import annotations

import pytest

from intenthealer.core.context import HealerContext, SessionRegistry
from intenthealer.core.locators import LocatorInfo
from intenthealer.core.metadata import HealOutcome
from tests.helpers import click_failure, login_page_snapshot


def test_state_survives_save_and_load(make_context, artifact_manager):
    context = make_context(use_arbitrator=False)
    context.healer.heal(click_failure(), login_page_snapshot())
    context.blacklist.add_pair(LocatorInfo.parse("#cancel"), LocatorInfo.parse("#delete"), "destructive")
    for _ in range(2):
        context.feedback.submit("correction", "#old-id", correct_selector="#new-id")
    context.save(artifact_manager)

    restored = make_context(use_arbitrator=False)
    restored.load(artifact_manager)
    again = restored.healer.heal(click_failure(), login_page_snapshot())

    assert again.outcome is HealOutcome.SUCCESS
    assert again.from_cache
    assert len(restored.blacklist) == 1
    assert restored.learner.suggest("#old-id").selector == "#new-id"


def test_load_without_saved_bundles_is_a_no_op(make_context, artifact_manager):
    context = make_context(use_arbitrator=False)
    context.load(artifact_manager)
    assert len(context.cache) == 0


def test_context_without_artifacts_cannot_save():
    context = HealerContext.create(use_arbitrator=False)
    assert context.arbitrator is None
    with pytest.raises(ValueError):
        context.save()


def test_contexts_do_not_share_state(make_context):
    first = make_context(use_arbitrator=False)
    second = make_context(use_arbitrator=False)
    first.breaker.force_open()
    first.healer.heal(click_failure(), login_page_snapshot())
    assert second.breaker.is_healing_allowed()
    assert len(second.cache) == 0


def test_session_registry_keeps_per_session_checkpoints():
    registry = SessionRegistry()
    one = registry.register("worker-1", driver="driver-1")
    two = registry.register("worker-2")
    one.checkpoint("https://shop.test/cart", "before checkout")

    assert registry.register("worker-1") is one
    assert registry.get("worker-2").last_checkpoint() is None
    assert "worker-1" in registry
    assert len(registry) == 2
    assert one.rollback().label == "before checkout"
    assert one.rollback() is None

    assert registry.unregister("worker-2") is two
    assert registry.session_ids() == ["worker-1"]


def test_start_run_clears_last_run_output_but_keeps_bundles(make_context):
    context = make_context(use_arbitrator=False)
    context.healer.heal(click_failure(), login_page_snapshot())
    context.save()
    assert context.healer.audit_logger.read_attempts()
    assert list(context.artifacts.snapshot_root.iterdir())

    context.start_run()

    assert context.healer.audit_logger.read_attempts() == []
    assert not list(context.artifacts.snapshot_root.iterdir())
    assert context.guardrails.heals_used == 0
    restored = make_context(use_arbitrator=False)
    restored.load()
    assert len(restored.cache) == 1

    assert context.artifacts.reset(keep_bundles=False) == 3
    assert not list(context.artifacts.bundle_root.iterdir())
