"""Typed error hierarchy for embedding providers."""

from __future__ import annotations

from dataclasses import dataclass

__all__ = [
    "EmbeddingProviderError",
    "EmbeddingProviderConfigurationError",
    "EmbeddingProviderRequestError",
    "EmbeddingProviderRetryableError",
    "EmbeddingProviderRateLimitError",
    "EmbeddingProviderRetryExceededError",
    "EmbeddingProviderInputTooLargeError",
    "EmbeddingProviderDimMismatchError",
]


@dataclass(slots=True)
class EmbeddingProviderError(RuntimeError):
    """Base error raised by embedding providers."""

    message: str
    provider: str
    model: str
    request_id: str | None = None
    status_code: int | None = None

    def __post_init__(self) -> None:
        RuntimeError.__init__(self, self.message)


@dataclass(slots=True)
class EmbeddingProviderConfigurationError(EmbeddingProviderError):
    """Raised when credentials or provider settings are unusable."""


@dataclass(slots=True)
class EmbeddingProviderRequestError(EmbeddingProviderError):
    """Raised for non-retryable request errors, including empty inputs."""


@dataclass(slots=True)
class EmbeddingProviderRetryableError(EmbeddingProviderError):
    """Raised for transport or server-side errors worth retrying."""


@dataclass(slots=True)
class EmbeddingProviderRateLimitError(EmbeddingProviderRetryableError):
    """Raised when the provider answers with a rate limiting response."""


@dataclass(slots=True)
class EmbeddingProviderRetryExceededError(EmbeddingProviderError):
    """Raised once the bounded retry budget is spent."""

    attempts: int = 0


@dataclass(slots=True)
class EmbeddingProviderInputTooLargeError(EmbeddingProviderError):
    """Raised when a single document exceeds the model's token limit."""

    token_count: int | None = None
    limit: int | None = None


@dataclass(slots=True)
class EmbeddingProviderDimMismatchError(EmbeddingProviderError):
    """Raised when returned vectors do not match the expected dimension."""

    expected: int | None = None
    actual: int | None = None
