"""Embedding provider contracts and registry used by the batch indexer."""

from __future__ import annotations

import os
from dataclasses import dataclass
from types import MappingProxyType
from typing import (
    TYPE_CHECKING,
    Callable,
    Mapping,
    Protocol,
    Sequence,
    runtime_checkable,
)

from postindex.core.logging import Logger

__all__ = [
    "DEFAULT_AUTO_CONCURRENCY",
    "EmbeddingVector",
    "EmbeddingMatrix",
    "EmbedRequestOptions",
    "EmbeddingProviderCaps",
    "EmbeddingProviderModel",
    "EmbeddingsProvider",
    "ProviderFactory",
    "ProviderInitContext",
    "ProviderRegistry",
    "ProviderRegistryError",
    "ProviderNotRegisteredError",
    "resolve_worker_count",
    "OpenAIEmbeddingsProvider",
    "openai_provider_factory",
    "register_builtin_providers",
    "create_default_provider_registry",
]

DEFAULT_AUTO_CONCURRENCY = 4

EmbeddingVector = tuple[float, ...]
EmbeddingMatrix = tuple[EmbeddingVector, ...]


@dataclass(frozen=True, slots=True)
class EmbedRequestOptions:
    """Per-call tuning shared across embedding providers."""

    max_batch_size: int
    timeout: float | None = None
    max_input_tokens: int | None = None

    def __post_init__(self) -> None:
        if self.max_batch_size < 1:
            raise ValueError("max_batch_size must be >= 1")
        if self.timeout is not None and self.timeout <= 0:
            raise ValueError("timeout must be positive when provided")
        if self.max_input_tokens is not None and self.max_input_tokens < 1:
            raise ValueError("max_input_tokens must be >= 1 when set")


@dataclass(frozen=True, slots=True)
class EmbeddingProviderCaps:
    """Limits a provider advertises for batch and worker planning."""

    max_batch_size: int
    max_parallel_requests: int
    max_input_tokens: int | None = None
    max_request_tokens: int | None = None

    def __post_init__(self) -> None:
        if self.max_batch_size < 1:
            raise ValueError("max_batch_size must be >= 1")
        if self.max_parallel_requests < 1:
            raise ValueError("max_parallel_requests must be >= 1")


@dataclass(frozen=True, slots=True)
class EmbeddingProviderModel:
    """Model descriptor returned when resolving dimensions."""

    provider: str
    name: str
    dim: int | None = None

    def __post_init__(self) -> None:
        provider = self.provider.strip().lower()
        if not provider:
            raise ValueError("provider cannot be empty")
        object.__setattr__(self, "provider", provider)

        name = self.name.strip()
        if not name:
            raise ValueError("model name cannot be empty")
        object.__setattr__(self, "name", name)

        if self.dim is not None and self.dim < 1:
            raise ValueError("dim must be >= 1 when provided")

    @property
    def key(self) -> str:
        """Return the canonical provider:model key."""

        return f"{self.provider}:{self.name}"


@runtime_checkable
class EmbeddingsProvider(Protocol):
    """Boundary contract for embedding providers."""

    def describe_model(self, model: str) -> EmbeddingProviderModel:
        """Return provider metadata for ``model``."""

    def capabilities(
        self,
        *,
        model: str | None = None,
    ) -> EmbeddingProviderCaps:
        """Return provider-level or model-specific capability hints."""

    def embed_texts(
        self,
        texts: Sequence[str],
        *,
        model: str,
        options: EmbedRequestOptions,
    ) -> EmbeddingMatrix:
        """Embed ``texts`` in order, one vector per input.

        Empty strings are rejected with
        :class:`~postindex.embeddings.errors.EmbeddingProviderRequestError`.
        """


def resolve_worker_count(
    *,
    requested: int | str | None,
    configured: int | str,
    provider_caps: EmbeddingProviderCaps,
    logger: Logger,
    default_limit: int = DEFAULT_AUTO_CONCURRENCY,
) -> int:
    """Size the per-entity worker pool.

    The result is the smallest of the requested (or configured) limit, the
    provider's parallel request cap, and the CPU count.
    """

    raw = configured if requested is None else requested
    source = "config" if requested is None else "override"
    if isinstance(raw, str) and raw.strip().lower() == "auto":
        base_limit = default_limit
    else:
        try:
            base_limit = int(raw)
        except ValueError as exc:
            raise ValueError(
                f"Concurrency must be a positive integer or 'auto' (got {raw!r})."
            ) from exc
        if base_limit < 1:
            raise ValueError("Concurrency must be >= 1.")

    cpu_limit = max(1, os.cpu_count() or 1)
    provider_limit = max(1, provider_caps.max_parallel_requests)
    resolved = max(1, min(base_limit, provider_limit, cpu_limit))

    logger.info(
        "worker-count-resolved",
        resolved=resolved,
        requested=raw,
        source=source,
        cpu_limit=cpu_limit,
        provider_limit=provider_limit,
        base_limit=base_limit,
        clamped=resolved < base_limit,
    )
    return resolved


@dataclass(frozen=True, slots=True)
class ProviderInitContext:
    """Construction context supplied to provider factories."""

    logger: Logger
    config: Mapping[str, object] | None = None

    def __post_init__(self) -> None:
        config = dict(self.config or {})
        object.__setattr__(self, "config", MappingProxyType(config))


ProviderFactory = Callable[[ProviderInitContext], EmbeddingsProvider]
"""Factory callable responsible for instantiating providers."""


class ProviderRegistryError(RuntimeError):
    """Base error type raised when interacting with the provider registry."""


class ProviderNotRegisteredError(ProviderRegistryError):
    """Raised when a provider lookup fails for the requested key."""


class ProviderRegistry:
    """Mutable registry mapping provider keys to factory callables."""

    def __init__(
        self,
        factories: Mapping[str, ProviderFactory] | None = None,
    ) -> None:
        self._factories: dict[str, ProviderFactory] = {}
        for key, factory in (factories or {}).items():
            self.register(key, factory)

    @staticmethod
    def _normalize_key(key: str) -> str:
        normalized = key.strip().lower()
        if not normalized:
            raise ValueError("provider key cannot be empty")
        return normalized

    def register(self, key: str, factory: ProviderFactory) -> None:
        """Register ``factory`` under ``key``; errors if key already present."""

        normalized = self._normalize_key(key)
        if normalized in self._factories:
            raise ProviderRegistryError(
                f"Provider {normalized!r} already registered",
            )
        self._factories[normalized] = factory

    def create(
        self,
        key: str,
        *,
        logger: Logger,
        config: Mapping[str, object] | None = None,
    ) -> EmbeddingsProvider:
        """Instantiate the provider registered under ``key``."""

        normalized = self._normalize_key(key)
        try:
            factory = self._factories[normalized]
        except KeyError as exc:
            raise ProviderNotRegisteredError(
                f"No embedding provider registered under {normalized!r}",
            ) from exc
        return factory(ProviderInitContext(logger=logger, config=config))

    def snapshot(self) -> Mapping[str, ProviderFactory]:
        """Return an immutable view of registered provider factories."""

        return MappingProxyType(dict(self._factories))


if TYPE_CHECKING:  # pragma: no cover - type checker imports only
    from .openai import OpenAIEmbeddingsProvider, openai_provider_factory


def __getattr__(name: str) -> object:
    if name in {"OpenAIEmbeddingsProvider", "openai_provider_factory"}:
        from . import openai as _openai

        return getattr(_openai, name)

    message = f"module {__name__!r} has no attribute {name!r}"
    raise AttributeError(message)


def __dir__() -> list[str]:
    return sorted({*globals(), *__all__})


def register_builtin_providers(
    registry: ProviderRegistry,
) -> ProviderRegistry:
    """Register built-in embedding providers on ``registry``."""

    if "openai" not in registry.snapshot():
        from .openai import openai_provider_factory

        registry.register("openai", openai_provider_factory)
    return registry


def create_default_provider_registry() -> ProviderRegistry:
    """Return a provider registry populated with built-in providers."""

    return register_builtin_providers(ProviderRegistry())
