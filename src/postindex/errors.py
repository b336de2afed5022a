"""Error taxonomy shared by the :mod:`postindex` pipeline components."""

from __future__ import annotations

from typing import TYPE_CHECKING, Any, Iterable, Mapping

if TYPE_CHECKING:  # pragma: no cover - type checker imports only
    from postindex.pipeline.models import IndexCursor

__all__ = [
    "PipelineError",
    "ConfigurationError",
    "WarehouseQueryError",
    "IndexStateError",
    "VectorStoreError",
    "TransformError",
    "IndexWriteError",
    "PipelineCancelledError",
]


class PipelineError(RuntimeError):
    """Base error raised by pipeline components."""


class ConfigurationError(PipelineError):
    """Raised when required settings are missing or invalid.

    Example:
        >>> error = ConfigurationError("missing", missing=["store.url"])
        >>> error.missing
        ('store.url',)
    """

    def __init__(self, message: str, *, missing: Iterable[str] = ()) -> None:
        super().__init__(message)
        self.missing = tuple(missing)


class WarehouseQueryError(PipelineError):
    """Raised on warehouse connection, authentication, or query failures."""


class IndexStateError(PipelineError):
    """Raised when the vector index state cannot be read."""


class VectorStoreError(PipelineError):
    """Raised by vector store implementations on backend failures."""


class TransformError(PipelineError):
    """Raised when a warehouse row cannot be converted into a record."""

    def __init__(
        self,
        message: str,
        *,
        row: Mapping[str, Any] | None = None,
    ) -> None:
        super().__init__(message)
        self.row = dict(row) if row is not None else None


class IndexWriteError(PipelineError):
    """Raised when a batch write fails part-way through indexing."""

    def __init__(
        self,
        message: str,
        *,
        cursor: "IndexCursor",
        failed_batch: int,
    ) -> None:
        super().__init__(message)
        self.cursor = cursor
        self.failed_batch = failed_batch

    @property
    def indexed_count(self) -> int:
        """Return how many documents were written before the failure."""

        return self.cursor.indexed


class PipelineCancelledError(PipelineError):
    """Raised when a run is cancelled between indexer batches."""

    def __init__(self, message: str, *, cursor: "IndexCursor") -> None:
        super().__init__(message)
        self.cursor = cursor

    @property
    def indexed_count(self) -> int:
        """Return how many documents were written before cancellation."""

        return self.cursor.indexed
