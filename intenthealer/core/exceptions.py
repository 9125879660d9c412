from __future__ import annotations


class HealingError(RuntimeError):
    """Raised when selector healing fails."""


class ConfigurationError(HealingError):
    """Raised when the healer configuration cannot be used."""


class ArbitrationError(HealingError):
    """Base class for failures of the external arbitration step."""


class ProviderError(ArbitrationError):
    """A single reasoning provider call failed.

    ``retryable`` separates transient failures (rate limit, timeout, 5xx,
    connection reset) from terminal ones (auth, malformed request).
    """

    def __init__(
        self,
        message: str,
        *,
        provider: str = "unknown",
        retryable: bool = False,
        status: int | None = None,
    ) -> None:
        super().__init__(message)
        self.provider = provider
        self.retryable = retryable
        self.status = status


class ResponseParseError(ArbitrationError):
    """Raised when a provider response cannot be read as a heal decision."""


class AllProvidersFailedError(ArbitrationError):
    """Raised when the primary provider and every fallback failed."""

    def __init__(self, errors: list[tuple[str, Exception]]) -> None:
        self.errors = errors
        detail = "; ".join(f"{name}: {exc}" for name, exc in errors) or "no providers configured"
        super().__init__(f"All reasoning providers failed ({detail})")
