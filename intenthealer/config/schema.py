from __future__ import annotations

from enum import Enum

from pydantic import BaseModel, Field, field_validator

DEFAULT_FORBIDDEN_KEYWORDS = [
    "delete",
    "remove",
    "cancel",
    "unsubscribe",
    "terminate",
    "deactivate",
    "permanently",
    "irreversible",
    "close account",
    "削除",
    "取り消し",
    "löschen",
    "supprimer",
    "eliminar",
    "удалить",
    "מחק",
    "حذف",
]


class HealPolicy(str, Enum):
    OFF = "off"
    SUGGEST = "suggest"
    AUTO_SAFE = "auto_safe"
    AUTO_ALL = "auto_all"


def _unit_interval(value: float, field_name: str) -> float:
    if value < 0 or value > 1:
        raise ValueError(f"{field_name} must be between 0 and 1")
    return value


class FallbackProviderConfig(BaseModel):
    provider: str
    model: str
    api_key_env: str | None = None
    base_url: str | None = None
    input_cost_per_1k: float = 0.0
    output_cost_per_1k: float = 0.0

    @field_validator("provider")
    @classmethod
    def normalize_provider(cls, value: str) -> str:
        return value.strip().lower()


class LlmConfig(BaseModel):
    provider: str = "openai"
    model: str = "gpt-4o-mini"
    api_key_env: str | None = None
    base_url: str | None = None
    timeout_seconds: float = 30.0
    max_retries: int = 2
    temperature: float = 0.1
    max_tokens: int = 800
    base_delay_ms: int = 1000
    max_delay_ms: int = 32000
    input_cost_per_1k: float = 0.00015
    output_cost_per_1k: float = 0.0006
    fallback: list[FallbackProviderConfig] = Field(default_factory=list)

    @field_validator("provider")
    @classmethod
    def normalize_provider(cls, value: str) -> str:
        return value.strip().lower()

    @field_validator("max_retries")
    @classmethod
    def validate_retries(cls, value: int) -> int:
        if value < 0:
            raise ValueError("max_retries cannot be negative")
        return value

    @field_validator("timeout_seconds")
    @classmethod
    def validate_timeout(cls, value: float) -> float:
        if value <= 0:
            raise ValueError("timeout_seconds must be positive")
        return value

    def for_fallback(self, fallback: FallbackProviderConfig) -> LlmConfig:
        """Fallbacks keep their own provider and model but inherit call settings."""

        return self.model_copy(
            update={
                "provider": fallback.provider,
                "model": fallback.model,
                "api_key_env": fallback.api_key_env,
                "base_url": fallback.base_url,
                "input_cost_per_1k": fallback.input_cost_per_1k,
                "output_cost_per_1k": fallback.output_cost_per_1k,
                "fallback": [],
            }
        )


class GuardrailConfig(BaseModel):
    min_confidence: float = 0.8
    max_heals_per_run: int = 50
    allow_destructive: bool = False
    forbidden_keywords: list[str] = Field(default_factory=lambda: list(DEFAULT_FORBIDDEN_KEYWORDS))
    forbidden_url_patterns: list[str] = Field(default_factory=list)
    trust_confidence_step: float = 0.05
    refuse_hidden_elements: bool = True

    @field_validator("min_confidence")
    @classmethod
    def validate_min_confidence(cls, value: float) -> float:
        return _unit_interval(value, "min_confidence")

    @field_validator("max_heals_per_run")
    @classmethod
    def validate_budget(cls, value: int) -> int:
        if value <= 0:
            raise ValueError("max_heals_per_run must be positive")
        return value


class CircuitBreakerConfig(BaseModel):
    enabled: bool = True
    failure_threshold: int = 3
    success_threshold_to_close: int = 2
    open_duration_seconds: float = 1800.0
    half_open_max_attempts: int = 3

    @field_validator("failure_threshold", "success_threshold_to_close", "half_open_max_attempts")
    @classmethod
    def validate_positive(cls, value: int) -> int:
        if value <= 0:
            raise ValueError("circuit breaker thresholds must be positive")
        return value


class CacheConfig(BaseModel):
    enabled: bool = True
    ttl_seconds: float = 24 * 3600
    max_entries: int = 10000
    min_confidence_to_cache: float = 0.7

    @field_validator("min_confidence_to_cache")
    @classmethod
    def validate_min_confidence(cls, value: float) -> float:
        return _unit_interval(value, "min_confidence_to_cache")

    @field_validator("max_entries")
    @classmethod
    def validate_capacity(cls, value: int) -> int:
        if value <= 0:
            raise ValueError("max_entries must be positive")
        return value


class LearningConfig(BaseModel):
    enabled: bool = True
    initial_confidence: float = 0.6
    confidence_step: float = 0.05
    confidence_penalty: float = 0.1
    confidence_floor: float = 0.1
    min_confidence_to_apply: float = 0.7
    max_patterns: int = 1000


class TrustConfig(BaseModel):
    initial_level: int = 3
    promotion_threshold: int = 10
    demotion_threshold: int = 3
    demotion_window_seconds: float = 3600.0

    @field_validator("initial_level")
    @classmethod
    def validate_level(cls, value: int) -> int:
        if value < 0 or value > 4:
            raise ValueError("initial_level must be between 0 and 4")
        return value


class CandidateConfig(BaseModel):
    min_score: float = 0.3
    max_candidates: int = 5
    max_prompt_candidates: int = 20
    max_field_length: int = 100


class HealerConfig(BaseModel):
    mode: HealPolicy = HealPolicy.AUTO_SAFE
    llm: LlmConfig = Field(default_factory=LlmConfig)
    guardrails: GuardrailConfig = Field(default_factory=GuardrailConfig)
    circuit_breaker: CircuitBreakerConfig = Field(default_factory=CircuitBreakerConfig)
    cache: CacheConfig = Field(default_factory=CacheConfig)
    learning: LearningConfig = Field(default_factory=LearningConfig)
    trust: TrustConfig = Field(default_factory=TrustConfig)
    candidates: CandidateConfig = Field(default_factory=CandidateConfig)
    artifacts_dir: str = "artifacts"

    @field_validator("mode", mode="before")
    @classmethod
    def normalize_mode(cls, value: object) -> object:
        if isinstance(value, str):
            return value.strip().lower()
        return value
