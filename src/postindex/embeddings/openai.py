"""OpenAI embeddings provider."""

from __future__ import annotations

import os
import random
import threading
import time
from dataclasses import dataclass
from typing import Callable, Mapping, Sequence

import httpx
import tiktoken
from openai import (
    APIConnectionError,
    APIStatusError,
    APITimeoutError,
    AuthenticationError,
    OpenAI,
    PermissionDeniedError,
    RateLimitError,
)

from postindex.core.logging import Logger

from . import (
    DEFAULT_AUTO_CONCURRENCY,
    EmbedRequestOptions,
    EmbeddingMatrix,
    EmbeddingProviderCaps,
    EmbeddingProviderModel,
    EmbeddingVector,
    EmbeddingsProvider,
    ProviderInitContext,
)
from .errors import (
    EmbeddingProviderConfigurationError,
    EmbeddingProviderDimMismatchError,
    EmbeddingProviderError,
    EmbeddingProviderInputTooLargeError,
    EmbeddingProviderRequestError,
    EmbeddingProviderRetryExceededError,
)

__all__ = [
    "OpenAIEmbeddingsProvider",
    "openai_provider_factory",
]

PROVIDER_KEY = "openai"

_DEFAULT_TIMEOUT = 30.0
_TOKEN_PAD = 8
_BACKOFF_BASE = 0.5
_BACKOFF_MULTIPLIER = 2.0
_BACKOFF_CAP = 8.0
_JITTER_RATIO = 0.2
_MAX_ATTEMPTS = 5


@dataclass(frozen=True, slots=True)
class _ModelLimits:
    dim: int
    max_batch_size: int
    max_parallel_requests: int
    max_input_tokens: int


_KNOWN_MODELS: Mapping[str, _ModelLimits] = {
    "text-embedding-ada-002": _ModelLimits(1_536, 128, 4, 8_191),
    "text-embedding-3-small": _ModelLimits(1_536, 128, 4, 8_191),
    "text-embedding-3-large": _ModelLimits(3_072, 64, 4, 8_191),
}
_FALLBACK_LIMITS = _ModelLimits(0, 128, DEFAULT_AUTO_CONCURRENCY, 8_191)


@dataclass(slots=True)
class _Batch:
    texts: tuple[str, ...]
    tokens: int


def _normalize_model_name(model: str) -> str:
    normalized = model.strip()
    if not normalized:
        raise ValueError("model cannot be blank")
    return normalized


def _resolve_timeout(config: Mapping[str, object]) -> float:
    candidate = config.get("timeout")
    if candidate is None:
        return _DEFAULT_TIMEOUT
    if not isinstance(candidate, (int, float)) or candidate <= 0:
        raise ValueError("embedding timeout must be a positive number.")
    return float(candidate)


class OpenAIEmbeddingsProvider(EmbeddingsProvider):
    """Embed document bodies via the OpenAI embeddings API.

    Requests are split by the model's batch and token limits and retried with
    jittered exponential backoff on rate limits, timeouts, and 5xx answers.
    """

    def __init__(
        self,
        *,
        logger: Logger,
        config: Mapping[str, object] | None = None,
        client: OpenAI | None = None,
        sleep: Callable[[float], None] = time.sleep,
        now: Callable[[], float] = time.perf_counter,
    ) -> None:
        self.logger = logger
        self._config = dict(config or {})
        self._sleep = sleep
        self._now = now
        self._token_cache: dict[tuple[str, str], int] = {}
        self._dim_cache: dict[str, int] = {}
        self._stats = {"requests": 0, "retries": 0, "failures": 0}
        self._lock = threading.Lock()
        self._client = client or self._build_client()

    @property
    def stats(self) -> Mapping[str, int]:
        """Return counters captured during the provider lifetime."""

        with self._lock:
            return dict(self._stats)

    def describe_model(self, model: str) -> EmbeddingProviderModel:
        name = _normalize_model_name(model)
        limits = _KNOWN_MODELS.get(name)
        if limits:
            dim = limits.dim
        else:
            with self._lock:
                dim = self._dim_cache.get(name)
        return EmbeddingProviderModel(provider=PROVIDER_KEY, name=name, dim=dim)

    def capabilities(
        self,
        *,
        model: str | None = None,
    ) -> EmbeddingProviderCaps:
        limits = _FALLBACK_LIMITS
        if model is not None:
            limits = _KNOWN_MODELS.get(
                _normalize_model_name(model),
                _FALLBACK_LIMITS,
            )
        return EmbeddingProviderCaps(
            max_batch_size=limits.max_batch_size,
            max_parallel_requests=limits.max_parallel_requests,
            max_input_tokens=limits.max_input_tokens,
            max_request_tokens=limits.max_input_tokens,
        )

    def embed_texts(
        self,
        texts: Sequence[str],
        *,
        model: str,
        options: EmbedRequestOptions,
    ) -> EmbeddingMatrix:
        if not texts:
            return ()

        name = _normalize_model_name(model)
        caps = self.capabilities(model=name)
        batch_limit = min(options.max_batch_size, caps.max_batch_size)
        token_limit = caps.max_request_tokens or 8_191
        if options.max_input_tokens is not None:
            token_limit = min(token_limit, options.max_input_tokens)

        prepared = [self._prepare_text(text, model=name) for text in texts]
        token_counts = [
            self._estimate_tokens(model=name, text=text) for text in prepared
        ]
        batches = self._chunk_batches(
            prepared,
            token_counts,
            limit=batch_limit,
            token_limit=token_limit,
            model=name,
        )

        expected = self.describe_model(name).dim
        results: list[EmbeddingVector] = []
        for batch in batches:
            vectors = self._invoke_with_retries(
                model=name,
                batch=batch.texts,
                token_count=batch.tokens,
                timeout=options.timeout,
            )
            if len(vectors) != len(batch.texts):
                raise EmbeddingProviderRequestError(
                    (
                        "OpenAI returned "
                        f"{len(vectors)} vectors for {len(batch.texts)} inputs."
                    ),
                    provider=PROVIDER_KEY,
                    model=name,
                )
            for vector in vectors:
                if expected is None:
                    with self._lock:
                        expected = self._dim_cache.setdefault(
                            name,
                            len(vector),
                        )
                if len(vector) != expected:
                    raise EmbeddingProviderDimMismatchError(
                        "Embedding dimension mismatch in OpenAI response.",
                        provider=PROVIDER_KEY,
                        model=name,
                        expected=expected,
                        actual=len(vector),
                    )
                results.append(tuple(float(value) for value in vector))

        return tuple(results)

    def _build_client(self) -> OpenAI:
        api_key = self._config.get("api_key") or os.environ.get(
            "OPENAI_API_KEY"
        )
        if not api_key:
            raise EmbeddingProviderConfigurationError(
                "An OpenAI API key is required (set OPENAI_API_KEY).",
                provider=PROVIDER_KEY,
                model="*",
            )

        return OpenAI(
            api_key=str(api_key),
            base_url=os.environ.get("OPENAI_BASE_URL"),
            organization=os.environ.get("OPENAI_ORG_ID"),
            timeout=_resolve_timeout(self._config),
            max_retries=0,
        )

    def _prepare_text(self, text: str, *, model: str) -> str:
        if not isinstance(text, str) or not text:
            raise EmbeddingProviderRequestError(
                "Embedding inputs must be non-empty strings.",
                provider=PROVIDER_KEY,
                model=model,
            )
        # Newlines degrade ada-002 embeddings.
        return text.replace("\r\n", " ").replace("\r", " ").replace("\n", " ")

    def _chunk_batches(
        self,
        texts: Sequence[str],
        token_counts: Sequence[int],
        *,
        limit: int,
        token_limit: int,
        model: str,
    ) -> tuple[_Batch, ...]:
        batches: list[_Batch] = []
        current: list[str] = []
        current_tokens = 0

        for text, tokens in zip(texts, token_counts):
            if tokens > token_limit:
                raise EmbeddingProviderInputTooLargeError(
                    (
                        "Input text exceeds OpenAI token limit "
                        f"({tokens} > {token_limit})."
                    ),
                    provider=PROVIDER_KEY,
                    model=model,
                    token_count=tokens,
                    limit=token_limit,
                )
            if current and (
                len(current) >= limit or current_tokens + tokens > token_limit
            ):
                batches.append(_Batch(tuple(current), current_tokens))
                current = []
                current_tokens = 0
            current.append(text)
            current_tokens += tokens

        if current:
            batches.append(_Batch(tuple(current), current_tokens))
        return tuple(batches)

    def _estimate_tokens(self, *, model: str, text: str) -> int:
        key = (model, text)
        with self._lock:
            cached = self._token_cache.get(key)
        if cached is not None:
            return cached

        try:
            encoding = tiktoken.encoding_for_model(model)
        except KeyError:
            encoding = tiktoken.get_encoding("cl100k_base")
        estimate = _TOKEN_PAD + len(encoding.encode(text))
        with self._lock:
            self._token_cache[key] = estimate
        return estimate

    def _invoke_with_retries(
        self,
        *,
        model: str,
        batch: Sequence[str],
        token_count: int,
        timeout: float | None = None,
    ) -> list[list[float]]:
        jitter_source = random.Random()
        extra: dict[str, object] = {}
        if timeout is not None:
            extra["timeout"] = timeout

        for attempt in range(1, _MAX_ATTEMPTS + 1):
            start = self._now()
            try:
                response = self._client.embeddings.create(
                    model=model,
                    input=list(batch),
                    **extra,
                )
            except Exception as exc:
                status, request_id = self._extract_context(exc)
                if not self._is_retryable(exc):
                    self._bump("failures")
                    raise self._translate_exception(
                        exc,
                        model=model,
                        status=status,
                        request_id=request_id,
                    ) from exc
                if attempt == _MAX_ATTEMPTS:
                    self._bump("failures")
                    raise EmbeddingProviderRetryExceededError(
                        (
                            "Failed to embed texts after "
                            f"{attempt} attempts: {exc}"
                        ),
                        provider=PROVIDER_KEY,
                        model=model,
                        status_code=status,
                        request_id=request_id,
                        attempts=attempt,
                    ) from exc

                delay = self._compute_backoff(
                    attempt=attempt,
                    rng=jitter_source,
                )
                self.logger.warning(
                    "openai-embed-retry",
                    provider=PROVIDER_KEY,
                    model=model,
                    attempt=attempt,
                    max_attempts=_MAX_ATTEMPTS,
                    retry_delay=delay,
                    error_type=exc.__class__.__name__,
                    status_code=status,
                    request_id=request_id,
                )
                self._bump("retries")
                self._sleep(delay)
                continue

            self._bump("requests")
            self.logger.debug(
                "openai-embed-request",
                provider=PROVIDER_KEY,
                model=model,
                batch_size=len(batch),
                token_count=token_count,
                latency=self._now() - start,
                attempts=attempt,
            )
            return [list(item.embedding) for item in response.data]

        raise AssertionError("unreachable")  # pragma: no cover

    def _bump(self, counter: str) -> None:
        with self._lock:
            self._stats[counter] += 1

    @staticmethod
    def _compute_backoff(*, attempt: int, rng: random.Random) -> float:
        base = _BACKOFF_BASE * (_BACKOFF_MULTIPLIER ** (attempt - 1))
        base = min(base, _BACKOFF_CAP)
        jitter = 1.0 + rng.uniform(-_JITTER_RATIO, _JITTER_RATIO)
        return round(base * jitter, 2)

    @staticmethod
    def _is_retryable(exc: Exception) -> bool:
        if isinstance(
            exc,
            (
                RateLimitError,
                APITimeoutError,
                APIConnectionError,
                httpx.TimeoutException,
                httpx.NetworkError,
            ),
        ):
            return True
        if isinstance(exc, APIStatusError):
            return exc.status_code >= 500
        return False

    @staticmethod
    def _extract_context(exc: Exception) -> tuple[int | None, str | None]:
        status = getattr(exc, "status_code", None)
        request_id = getattr(exc, "request_id", None)
        return (
            status if isinstance(status, int) else None,
            request_id if isinstance(request_id, str) else None,
        )

    @staticmethod
    def _translate_exception(
        exc: Exception,
        *,
        model: str,
        status: int | None,
        request_id: str | None,
    ) -> EmbeddingProviderError:
        message = str(exc) or exc.__class__.__name__
        error_type: type[EmbeddingProviderError]
        if isinstance(exc, (AuthenticationError, PermissionDeniedError)):
            error_type = EmbeddingProviderConfigurationError
        else:
            error_type = EmbeddingProviderRequestError
        return error_type(
            message,
            provider=PROVIDER_KEY,
            model=model,
            status_code=status,
            request_id=request_id,
        )


def openai_provider_factory(
    context: ProviderInitContext,
) -> OpenAIEmbeddingsProvider:
    """Factory registered with the provider registry."""

    return OpenAIEmbeddingsProvider(
        logger=context.logger,
        config=context.config,
    )
