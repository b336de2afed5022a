"""Tests for :mod:`postindex.pipeline.indexer`."""

from __future__ import annotations

import math
import threading
from typing import Sequence

import pytest

from fakes import COLLECTION, RecordingStore, StubEmbedder
from postindex.errors import IndexWriteError, PipelineCancelledError
from postindex.pipeline.indexer import BatchIndexer, partition
from postindex.pipeline.models import Document
from postindex.pipeline.store import VectorRecord


def _documents(count: int) -> list[Document]:
    return [
        Document(
            page_content=f"publication body {index}",
            metadata={
                "publication_id": f"p{index}",
                "author": "0x05",
                "timestamp": f"2023-05-01T10:{index:02d}:00+00:00",
            },
        )
        for index in range(count)
    ]


def _indexer(store, embedder, logger, batch_size: int = 4) -> BatchIndexer:
    return BatchIndexer(
        store=store,
        embedder=embedder,
        model="stub-model",
        collection=COLLECTION,
        batch_size=batch_size,
        logger=logger,
    )


@pytest.mark.parametrize("size", [1, 2, 3, 7])
def test_partition_is_contiguous_and_bounded(size: int) -> None:
    items = list(range(10))

    chunks = partition(items, size)

    assert [item for chunk in chunks for item in chunk] == items
    assert all(1 <= len(chunk) <= size for chunk in chunks)
    assert len(chunks) == math.ceil(len(items) / size)


def test_partition_rejects_zero() -> None:
    with pytest.raises(ValueError):
        partition([1], 0)


def test_six_documents_with_batch_four_write_twice(
    store,
    embedder,
    logger,
) -> None:
    indexer = _indexer(store, embedder, logger)

    report = indexer.index(_documents(6))

    assert [len(ids) for _, ids in store.upsert_calls] == [4, 2]
    assert report.indexed == 6
    assert report.batches == 2
    assert report.batch_sizes == (4, 2)
    stored = store.records(COLLECTION)
    assert len(stored) == 6
    assert all(len(record.embedding) == 3 for record in stored)


@pytest.mark.parametrize("count", [0, 1, 4, 5, 8, 9])
def test_one_store_call_per_batch(store, embedder, logger, count: int) -> None:
    indexer = _indexer(store, embedder, logger)

    report = indexer.index(_documents(count))

    assert len(store.upsert_calls) == math.ceil(count / 4)
    assert len(embedder.calls) == math.ceil(count / 4)
    assert report.indexed == count


def test_records_carry_document_metadata(store, embedder, logger) -> None:
    indexer = _indexer(store, embedder, logger)

    indexer.index(_documents(1))

    (record,) = store.records(COLLECTION)
    assert record.id == "p0"
    assert record.content == "publication body 0"
    assert record.metadata["author"] == "0x05"


def test_store_failure_stops_and_reports_progress(embedder, logger) -> None:
    store = RecordingStore(fail_on_call=2)
    indexer = _indexer(store, embedder, logger)

    with pytest.raises(IndexWriteError) as excinfo:
        indexer.index(_documents(10))

    error = excinfo.value
    assert error.indexed_count == 4
    assert error.failed_batch == 2
    assert error.cursor.batches_written == 1
    assert len(store.upsert_calls) == 2
    assert len(store.records(COLLECTION)) == 4


def test_embedding_failure_writes_nothing(store, logger) -> None:
    embedder = StubEmbedder(fail_on_call=1)
    indexer = _indexer(store, embedder, logger)

    with pytest.raises(IndexWriteError) as excinfo:
        indexer.index(_documents(3))

    assert excinfo.value.indexed_count == 0
    assert store.upsert_calls == []


def test_resume_skips_batches_already_written(embedder, logger) -> None:
    store = RecordingStore(fail_on_call=2)
    indexer = _indexer(store, embedder, logger)
    documents = _documents(10)

    with pytest.raises(IndexWriteError) as excinfo:
        indexer.index(documents)

    store.fail_on_call = None
    report = indexer.index(documents, resume=excinfo.value.cursor)

    assert report.skipped_batches == 1
    assert report.batches == 2
    assert report.indexed == 10
    assert [ids for _, ids in store.upsert_calls[2:]] == [
        ("p4", "p5", "p6", "p7"),
        ("p8", "p9"),
    ]
    assert len(store.records(COLLECTION)) == 10


def test_cancel_before_first_batch(store, embedder, logger) -> None:
    cancel = threading.Event()
    cancel.set()
    indexer = _indexer(store, embedder, logger)

    with pytest.raises(PipelineCancelledError) as excinfo:
        indexer.index(_documents(5), cancel=cancel)

    assert excinfo.value.indexed_count == 0
    assert store.upsert_calls == []


def test_cancel_between_batches_keeps_written_batches(
    embedder,
    logger,
) -> None:
    cancel = threading.Event()

    class CancellingStore(RecordingStore):
        def upsert(
            self,
            collection: str,
            records: Sequence[VectorRecord],
        ) -> int:
            written = super().upsert(collection, records)
            cancel.set()
            return written

    store = CancellingStore()
    indexer = _indexer(store, embedder, logger)

    with pytest.raises(PipelineCancelledError) as excinfo:
        indexer.index(_documents(9), cancel=cancel)

    assert excinfo.value.indexed_count == 4
    assert excinfo.value.cursor.batches_written == 1
    assert len(store.records(COLLECTION)) == 4


def test_batch_size_is_clamped_to_provider_limit(store, logger) -> None:
    embedder = StubEmbedder(max_batch_size=2)
    indexer = _indexer(store, embedder, logger, batch_size=4)

    indexer.index(_documents(5))

    assert indexer.batch_size == 2
    assert [len(ids) for _, ids in store.upsert_calls] == [2, 2, 1]


def test_batch_size_must_be_positive(store, embedder, logger) -> None:
    with pytest.raises(ValueError):
        _indexer(store, embedder, logger, batch_size=0)
