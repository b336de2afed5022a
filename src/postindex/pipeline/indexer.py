"""Embed and write documents to the vector store in bounded batches."""

from __future__ import annotations

import threading
from dataclasses import dataclass
from typing import Sequence, TypeVar

from postindex.core.logging import Logger, get_logger
from postindex.embeddings import EmbeddingsProvider, EmbedRequestOptions
from postindex.embeddings.errors import EmbeddingProviderError
from postindex.errors import (
    IndexWriteError,
    PipelineCancelledError,
    VectorStoreError,
)
from postindex.pipeline.models import Document, IndexCursor, IndexReport
from postindex.pipeline.store import VectorRecord, VectorStore

__all__ = ["BatchIndexer", "partition"]

T = TypeVar("T")


def partition(items: Sequence[T], size: int) -> list[Sequence[T]]:
    """Split ``items`` into contiguous chunks of at most ``size``.

    Example:
        >>> [list(chunk) for chunk in partition([1, 2, 3, 4, 5], 2)]
        [[1, 2], [3, 4], [5]]
    """

    if size < 1:
        raise ValueError("size must be >= 1")
    return [items[start : start + size] for start in range(0, len(items), size)]


@dataclass(slots=True)
class BatchIndexer:
    """Write documents one batch at a time.

    Each batch is embedded and then upserted with a single store call.
    Batches run strictly in sequence. A failing batch stops the run without
    retrying or undoing earlier batches.
    """

    store: VectorStore
    embedder: EmbeddingsProvider
    model: str
    collection: str
    batch_size: int = 100
    embed_timeout: float | None = None
    logger: Logger | None = None

    def __post_init__(self) -> None:
        if self.batch_size < 1:
            raise ValueError("batch_size must be >= 1")
        if self.logger is None:
            self.logger = get_logger(__name__, component="indexer")
        caps = self.embedder.capabilities(model=self.model)
        if caps.max_batch_size < self.batch_size:
            self.logger.info(
                "indexer-batch-size-clamped",
                requested=self.batch_size,
                provider_limit=caps.max_batch_size,
            )
            self.batch_size = caps.max_batch_size

    def index(
        self,
        documents: Sequence[Document],
        *,
        cancel: threading.Event | None = None,
        resume: IndexCursor | None = None,
    ) -> IndexReport:
        """Index ``documents`` and return the verified count.

        Args:
            documents: Documents to write, already de-duplicated by ID.
            cancel: Checked before each batch; when set the run stops with
                :class:`PipelineCancelledError`.
            resume: Cursor from an earlier attempt over the same documents;
                batches it already wrote are skipped.

        Raises:
            IndexWriteError: A batch failed to embed or write.
            PipelineCancelledError: ``cancel`` was set between batches.
        """

        batches = partition(documents, self.batch_size)
        cursor = IndexCursor(
            batches_written=resume.batches_written if resume else 0,
            indexed=resume.indexed if resume else 0,
        )
        skipped_batches = min(cursor.batches_written, len(batches))
        if skipped_batches:
            self.logger.info(
                "indexer-resume",
                skipped_batches=skipped_batches,
                already_indexed=cursor.indexed,
            )

        sizes: list[int] = []
        options = EmbedRequestOptions(
            max_batch_size=self.batch_size,
            timeout=self.embed_timeout,
        )
        for number, batch in enumerate(
            batches[skipped_batches:],
            start=skipped_batches + 1,
        ):
            if cancel is not None and cancel.is_set():
                self.logger.warning(
                    "indexer-cancelled",
                    batch=number,
                    batches=len(batches),
                    indexed=cursor.indexed,
                )
                raise PipelineCancelledError(
                    f"Indexing cancelled before batch {number}/{len(batches)}.",
                    cursor=cursor,
                )
            written = self._write_batch(
                batch,
                number=number,
                total=len(batches),
                cursor=cursor,
                options=options,
            )
            cursor.advance(written)
            sizes.append(len(batch))
            self.logger.info(
                "indexer-batch-written",
                batch=number,
                batches=len(batches),
                size=len(batch),
                written=written,
                indexed=cursor.indexed,
            )

        return IndexReport(
            requested=len(documents),
            indexed=cursor.indexed,
            batches=len(sizes),
            skipped_batches=skipped_batches,
            batch_sizes=tuple(sizes),
        )

    def _write_batch(
        self,
        batch: Sequence[Document],
        *,
        number: int,
        total: int,
        cursor: IndexCursor,
        options: EmbedRequestOptions,
    ) -> int:
        try:
            vectors = self.embedder.embed_texts(
                [document.page_content for document in batch],
                model=self.model,
                options=options,
            )
            if len(vectors) != len(batch):
                raise VectorStoreError(
                    f"Expected {len(batch)} embeddings, got {len(vectors)}."
                )
            records = [
                VectorRecord(
                    id=document.publication_id,
                    content=document.page_content,
                    metadata=dict(document.metadata),
                    embedding=tuple(vector),
                )
                for document, vector in zip(batch, vectors)
            ]
            return self.store.upsert(self.collection, records)
        except (EmbeddingProviderError, VectorStoreError) as exc:
            self.logger.error(
                "indexer-batch-failed",
                batch=number,
                batches=total,
                indexed=cursor.indexed,
                error=str(exc),
                error_type=type(exc).__name__,
            )
            raise IndexWriteError(
                f"Batch {number}/{total} failed after {cursor.indexed} "
                f"documents were indexed: {exc}",
                cursor=cursor,
                failed_batch=number,
            ) from exc
