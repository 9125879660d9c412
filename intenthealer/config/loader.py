from __future__ import annotations

import json
import logging
import os
from collections.abc import Mapping
from pathlib import Path

from pydantic import ValidationError

from intenthealer.config.schema import HealerConfig, HealPolicy
from intenthealer.core.exceptions import ConfigurationError

log = logging.getLogger(__name__)


class ConfigLoader:
    """Loads and validates the JSON healer configuration."""

    @staticmethod
    def load(path: str | Path, env: Mapping[str, str] | None = None) -> HealerConfig:
        config_path = Path(path)
        with config_path.open("r", encoding="utf-8") as handle:
            payload = json.load(handle)
        try:
            config = HealerConfig.model_validate(payload)
        except ValidationError as exc:
            raise ConfigurationError(f"Invalid healer configuration in {config_path}: {exc}") from exc
        return ConfigLoader.apply_env(config, os.environ if env is None else env)

    @staticmethod
    def from_env(env: Mapping[str, str] | None = None) -> HealerConfig:
        return ConfigLoader.apply_env(HealerConfig(), os.environ if env is None else env)

    @staticmethod
    def apply_env(config: HealerConfig, env: Mapping[str, str]) -> HealerConfig:
        config = config.model_copy(deep=True)

        mode = env.get("HEALER_MODE", "").strip()
        if mode:
            try:
                config.mode = HealPolicy(mode.lower())
            except ValueError:
                log.warning("Ignoring invalid HEALER_MODE=%s", mode)

        provider = env.get("LLM_PROVIDER", "").strip()
        if provider:
            config.llm.provider = provider.lower()

        model = env.get("LLM_MODEL", "").strip()
        if model:
            config.llm.model = model

        min_confidence = env.get("HEALER_MIN_CONFIDENCE", "").strip()
        if min_confidence:
            try:
                value = float(min_confidence)
            except ValueError:
                log.warning("Ignoring invalid HEALER_MIN_CONFIDENCE=%s", min_confidence)
            else:
                if 0 <= value <= 1:
                    config.guardrails.min_confidence = value
                else:
                    log.warning("Ignoring out-of-range HEALER_MIN_CONFIDENCE=%s", min_confidence)
        return config
