from __future__ import annotations

import pytest

from intenthealer.config.schema import FallbackProviderConfig, LlmConfig
from intenthealer.core.exceptions import AllProvidersFailedError, ProviderError, ResponseParseError
from intenthealer.core.metadata import HealDecision
from intenthealer.llm.arbitrator import ExternalArbitrator, backoff_delay
from intenthealer.llm.client import AnthropicProvider, OpenAIProvider, ProviderRegistry, is_retryable_status
from intenthealer.llm.parser import parse_heal_decision
from intenthealer.llm.prompts import build_healing_prompt
from intenthealer.utils.scoring import CandidateGenerator
from tests.helpers import (
    ScriptedProvider,
    click_failure,
    heal_reply,
    login_page_snapshot,
    refusal_reply,
    retryable,
    terminal,
)


def _candidates(snapshot):
    return CandidateGenerator().generate(snapshot, "Click the Login button")


def test_two_timeouts_then_success_makes_three_calls(sleeps):
    snapshot = login_page_snapshot()
    provider = ScriptedProvider("openai", [retryable(status=408), retryable(status=408), heal_reply(0)])
    arbitrator = ExternalArbitrator(LlmConfig(max_retries=2), {"openai": provider}, sleep=sleeps.append, rng=lambda: 0.0)

    result = arbitrator.arbitrate(click_failure(), snapshot, _candidates(snapshot))

    assert result.decision.can_heal
    assert result.decision.selected_candidate_index == 0
    assert result.attempts == 3
    assert len(provider.calls) == 3
    assert sleeps == [1.0, 2.0]


def test_backoff_is_capped_with_bounded_jitter():
    assert backoff_delay(1, 1000, 32000, lambda: 0.0) == 1.0
    assert backoff_delay(3, 1000, 32000, lambda: 0.0) == 4.0
    assert backoff_delay(10, 1000, 32000, lambda: 0.0) == 32.0
    assert backoff_delay(1, 1000, 32000, lambda: 1.0) == pytest.approx(1.1)


def test_terminal_errors_skip_retries_and_fall_back(sleeps):
    snapshot = login_page_snapshot()
    primary = ScriptedProvider("openai", [terminal(status=401)])
    backup = ScriptedProvider("anthropic", [heal_reply(0, confidence=0.88)])
    config = LlmConfig(fallback=[FallbackProviderConfig(provider="anthropic", model="claude-3-5-haiku-latest", input_cost_per_1k=1.0)])
    arbitrator = ExternalArbitrator(config, {"openai": primary, "anthropic": backup}, sleep=sleeps.append)

    result = arbitrator.arbitrate(click_failure(), snapshot, _candidates(snapshot))

    assert len(primary.calls) == 1
    assert sleeps == []
    assert result.provider == "anthropic"
    assert result.model == "claude-3-5-haiku-latest"
    assert backup.calls[0][1].model == "claude-3-5-haiku-latest"
    assert result.cost_usd == 0.12


def test_unparseable_reply_advances_the_chain(sleeps):
    snapshot = login_page_snapshot()
    primary = ScriptedProvider("openai", ["I think it is the login button."])
    backup = ScriptedProvider("gemini", [heal_reply(0)])
    config = LlmConfig(fallback=[FallbackProviderConfig(provider="gemini", model="gemini-1.5-flash")])
    arbitrator = ExternalArbitrator(config, {"openai": primary, "gemini": backup}, sleep=sleeps.append)

    assert arbitrator.arbitrate(click_failure(), snapshot, _candidates(snapshot)).provider == "gemini"


def test_all_providers_exhausted_raises_with_each_error(sleeps):
    snapshot = login_page_snapshot()
    primary = ScriptedProvider("openai", [retryable(), retryable()])
    backup = ScriptedProvider("anthropic", [terminal("anthropic", 403)])
    config = LlmConfig(
        max_retries=1,
        fallback=[
            FallbackProviderConfig(provider="anthropic", model="haiku"),
            FallbackProviderConfig(provider="nobody", model="none"),
        ],
    )
    arbitrator = ExternalArbitrator(config, {"openai": primary, "anthropic": backup}, sleep=sleeps.append)

    with pytest.raises(AllProvidersFailedError) as caught:
        arbitrator.arbitrate(click_failure(), snapshot, _candidates(snapshot))
    assert [name for name, _ in caught.value.errors] == ["openai", "anthropic", "nobody"]
    assert len(primary.calls) == 2
    assert len(sleeps) == 1


def test_refusal_is_a_decision_not_an_error(sleeps):
    snapshot = login_page_snapshot()
    provider = ScriptedProvider("openai", [refusal_reply()])
    arbitrator = ExternalArbitrator(LlmConfig(), {"openai": provider}, sleep=sleeps.append)
    decision = arbitrator.arbitrate(click_failure(), snapshot, _candidates(snapshot)).decision
    assert not decision.can_heal
    assert decision.selected_candidate_index is None
    assert decision.refusal_reason == "No candidate fits"


def test_parser_strips_fences_and_repairs_once():
    fenced = '```json\n{"can_heal": true, "confidence": 1.4, "selected_element_index": 1}\n```'
    decision = parse_heal_decision(fenced, 2)
    assert decision.confidence == 1.0
    assert decision.selected_candidate_index == 1

    chatty = 'Sure! {"can_heal": false, "confidence": 0.3, "selected_element_index": 0, "refusal_reason": "ambiguous"} Hope that helps.'
    refused = parse_heal_decision(chatty, 2)
    assert not refused.can_heal
    assert refused.selected_candidate_index is None

    for broken in ("", "no json here", '{"confidence": 0.9}', '{"can_heal": true, "confidence": 0.9}'):
        with pytest.raises(ResponseParseError):
            parse_heal_decision(broken, 2)
    with pytest.raises(ResponseParseError):
        parse_heal_decision('{"can_heal": true, "confidence": 0.9, "selected_element_index": 5}', 2)


def test_refusing_decision_cannot_select_a_candidate():
    with pytest.raises(ValueError):
        HealDecision(can_heal=False, confidence=0.1, selected_candidate_index=0)
    assert HealDecision.refuse("nope").selected_candidate_index is None


def test_prompt_lists_every_section_and_numbered_candidates():
    snapshot = login_page_snapshot()
    candidates = _candidates(snapshot)
    prompt = build_healing_prompt(click_failure(feature="Login", scenario="Valid user"), snapshot, candidates)
    for section in ("Test Context", "Failure Information", "Current Page State", "Candidate Elements", "Your Task", "Response Format"):
        assert section in prompt
    assert "[0] <button>" in prompt
    assert "selected_element_index" in prompt
    assert "#login-btn" in prompt


def test_http_providers_map_payloads_and_classify_errors():
    seen = {}

    def transport(url, payload, headers, timeout, provider):
        seen.update(url=url, headers=headers, timeout=timeout)
        return {"choices": [{"message": {"content": '{"can_heal": false, "confidence": 0.1}'}}], "usage": {"prompt_tokens": 11, "completion_tokens": 7}}

    response = OpenAIProvider(api_key="sk-test", transport=transport).complete("prompt", LlmConfig(timeout_seconds=5))
    assert response.input_tokens == 11
    assert response.output_tokens == 7
    assert seen["headers"]["Authorization"] == "Bearer sk-test"
    assert seen["timeout"] == 5

    def anthropic_transport(url, payload, headers, timeout, provider):
        return {"content": [{"type": "text", "text": "{}"}], "usage": {"input_tokens": 3, "output_tokens": 2}}

    assert AnthropicProvider(api_key="key", transport=anthropic_transport).complete("p", LlmConfig()).text == "{}"

    assert is_retryable_status(429)
    assert is_retryable_status(503)
    assert not is_retryable_status(401)


def test_missing_api_key_is_terminal(monkeypatch):
    monkeypatch.delenv("OPENAI_API_KEY", raising=False)
    with pytest.raises(ProviderError) as caught:
        OpenAIProvider().complete("prompt", LlmConfig())
    assert not caught.value.retryable


def test_registered_providers_join_the_chain(sleeps):
    snapshot = login_page_snapshot()
    arbitrator = ExternalArbitrator(LlmConfig(provider="scripted", model="replay"), sleep=sleeps.append)
    arbitrator.register_provider("scripted", lambda: ScriptedProvider("scripted", [heal_reply(0)]))
    assert arbitrator.arbitrate(click_failure(), snapshot, _candidates(snapshot)).provider == "scripted"


def test_registrations_stay_with_their_arbitrator(sleeps):
    config = LlmConfig(provider="scripted", model="replay")
    registry = ProviderRegistry({"Scripted": lambda: ScriptedProvider("scripted", [heal_reply(0)])})
    snapshot = login_page_snapshot()

    assert "scripted" in registry
    assert ExternalArbitrator(config, registry=registry, sleep=sleeps.append).arbitrate(
        click_failure(), snapshot, _candidates(snapshot)
    ).provider == "scripted"
    with pytest.raises(AllProvidersFailedError):
        ExternalArbitrator(config, sleep=sleeps.append).arbitrate(click_failure(), snapshot, _candidates(snapshot))
    assert "scripted" not in ProviderRegistry()
