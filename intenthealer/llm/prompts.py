from __future__ import annotations

from collections.abc import Sequence

from intenthealer.core.metadata import ElementCandidate, FailureContext, UiSnapshot

SYSTEM_PROMPT = """You repair broken UI test locators. You are shown a failed test step and a numbered list of candidate elements from the current page.
Rules:
1. Choose only from the numbered candidates. Never invent elements, attributes or selectors.
2. Choose an element only when it clearly serves the same purpose as the failed step.
3. Refuse when no candidate fits, when several fit equally, or when the action would be destructive.
4. Reply with a single JSON object matching the requested schema and nothing else."""

RESPONSE_SCHEMA = """{
  "can_heal": true | false,
  "confidence": 0.0-1.0,
  "selected_element_index": <candidate number or null>,
  "reasoning": "<one or two sentences>",
  "alternative_indices": [<other plausible candidate numbers>],
  "warnings": ["<anything the tester should double-check>"],
  "refusal_reason": "<why no candidate was chosen, or null>"
}"""

CONFIDENCE_GUIDE = """Confidence guide:
- 0.9-1.0: the element unambiguously matches the intent
- 0.7-0.9: a strong match with minor differences
- 0.5-0.7: plausible but uncertain
- below 0.5: do not heal; set can_heal to false"""

_ELEMENT_FIELDS = ("id", "name", "type", "text", "aria_label", "placeholder", "title", "value")


def truncate(value: str, limit: int) -> str:
    text = " ".join(str(value).split())
    if len(text) <= limit:
        return text
    return text[: max(limit - 3, 0)] + "..."


def render_candidates(
    candidates: Sequence[ElementCandidate],
    snapshot: UiSnapshot,
    max_field_length: int = 100,
) -> str:
    lines: list[str] = []
    for position, candidate in enumerate(candidates):
        parts = [f"[{position}] <{candidate.tag or 'element'}>", f"locator={truncate(str(candidate.locator), max_field_length)}"]
        element = snapshot.element(candidate.element_index) if candidate.element_index is not None else None
        if element is not None:
            for field_name in _ELEMENT_FIELDS:
                value = getattr(element, field_name)
                if value:
                    parts.append(f"{field_name}={truncate(value, max_field_length)!r}")
            if element.classes:
                parts.append(f"classes={truncate(' '.join(element.classes), max_field_length)!r}")
            if not element.visible:
                parts.append("hidden")
            if not element.enabled:
                parts.append("disabled")
        parts.append(f"heuristic_score={candidate.confidence:.2f}")
        if candidate.explanation:
            parts.append(f"why={truncate(candidate.explanation, max_field_length)!r}")
        lines.append(" ".join(parts))
    return "\n".join(lines) if lines else "(no candidates)"


def build_healing_prompt(
    failure: FailureContext,
    snapshot: UiSnapshot,
    candidates: Sequence[ElementCandidate],
    max_candidates: int = 20,
    max_field_length: int = 100,
) -> str:
    """Renders the arbitration prompt; candidate numbers are positions in ``candidates``."""

    shown = list(candidates)[:max_candidates]
    sections = [
        "## Test Context",
        f"Feature: {truncate(failure.feature or '-', max_field_length)}",
        f"Scenario: {truncate(failure.scenario or '-', max_field_length)}",
        f"Step: {truncate(' '.join(filter(None, [failure.step_keyword, failure.step_text])) or '-', max_field_length)}",
        f"Intent: {truncate(failure.intent_hint or '-', max_field_length)}",
        "",
        "## Failure Information",
        f"Exception: {truncate(failure.exception_type or failure.kind.value, max_field_length)}",
        f"Message: {truncate(failure.exception_message or '-', max_field_length)}",
        f"Original Locator: {truncate(str(failure.original_locator), max_field_length)}",
        f"Action: {failure.action.value}",
        "",
        "## Current Page State",
        f"URL: {truncate(snapshot.url or '-', max_field_length)}",
        f"Title: {truncate(snapshot.title or '-', max_field_length)}",
        f"Detected Language: {snapshot.detected_language or 'unknown'}",
        "",
        "## Candidate Elements",
        render_candidates(shown, snapshot, max_field_length),
        "",
        "## Your Task",
        "Pick the candidate that performs the same user-facing purpose as the failed step.",
        "Prefer elements whose visible text, label or accessible name matches the intent.",
        "Refuse if the best candidate is hidden, disabled, ambiguous or destructive.",
        "",
        "## Response Format",
        "Respond with JSON only:",
        RESPONSE_SCHEMA,
        "",
        CONFIDENCE_GUIDE,
    ]
    return "\n".join(sections)
