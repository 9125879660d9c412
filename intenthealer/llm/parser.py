from __future__ import annotations

import json
import re
from typing import Any

from intenthealer.core.exceptions import ResponseParseError
from intenthealer.core.metadata import HealDecision

_FENCE = re.compile(r"```(?:json)?\s*(.*?)```", re.DOTALL | re.IGNORECASE)


def extract_json_text(response: str) -> str:
    stripped = response.strip()
    fenced = _FENCE.search(stripped)
    if fenced:
        return fenced.group(1).strip()
    return stripped


def _repair(response: str) -> str | None:
    start = response.find("{")
    end = response.rfind("}")
    if start < 0 or end <= start:
        return None
    return response[start : end + 1]


def _load_object(response: str) -> dict[str, Any]:
    text = extract_json_text(response)
    try:
        payload = json.loads(text)
    except json.JSONDecodeError:
        repaired = _repair(response)
        if repaired is None:
            raise ResponseParseError("Response does not contain a JSON object") from None
        try:
            payload = json.loads(repaired)
        except json.JSONDecodeError as exc:
            raise ResponseParseError(f"Response JSON could not be repaired: {exc}") from exc
    if not isinstance(payload, dict):
        raise ResponseParseError("Response JSON is not an object")
    return payload


def _int_list(value: Any, candidate_count: int) -> list[int]:
    if not isinstance(value, list):
        return []
    return [item for item in value if isinstance(item, int) and not isinstance(item, bool) and 0 <= item < candidate_count]


def parse_heal_decision(response: str, candidate_count: int) -> HealDecision:
    """Reads a provider reply into a HealDecision; missing fields are errors, not defaults."""

    if not response or not response.strip():
        raise ResponseParseError("Provider returned an empty response")
    payload = _load_object(response)

    if "can_heal" not in payload or not isinstance(payload["can_heal"], bool):
        raise ResponseParseError("Response is missing boolean field 'can_heal'")
    if "confidence" not in payload:
        raise ResponseParseError("Response is missing field 'confidence'")
    try:
        confidence = float(payload["confidence"])
    except (TypeError, ValueError) as exc:
        raise ResponseParseError("Field 'confidence' is not a number") from exc
    confidence = round(max(0.0, min(1.0, confidence)), 4)

    can_heal = payload["can_heal"]
    index: int | None = None
    if can_heal:
        raw_index = payload.get("selected_element_index")
        if raw_index is None or isinstance(raw_index, bool):
            raise ResponseParseError("Response is missing field 'selected_element_index'")
        try:
            index = int(raw_index)
        except (TypeError, ValueError) as exc:
            raise ResponseParseError("Field 'selected_element_index' is not an integer") from exc
        if index < 0 or index >= candidate_count:
            raise ResponseParseError(f"Selected index {index} is outside the {candidate_count} listed candidates")

    warnings = payload.get("warnings")
    refusal_reason = payload.get("refusal_reason")
    return HealDecision(
        can_heal=can_heal,
        confidence=confidence,
        selected_candidate_index=index,
        reasoning=str(payload.get("reasoning") or ""),
        alternative_indices=_int_list(payload.get("alternative_indices"), candidate_count),
        warnings=[str(item) for item in warnings] if isinstance(warnings, list) else [],
        refusal_reason=str(refusal_reason) if refusal_reason and not can_heal else None,
    )
