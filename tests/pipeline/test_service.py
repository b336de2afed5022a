"""Tests for :mod:`postindex.pipeline.service`."""

from __future__ import annotations

import threading

import pytest
from structlog.testing import capture_logs

from fakes import (
    COLLECTION,
    FakeWarehouse,
    RecordingStore,
    StubEmbedder,
    indexed_record,
    make_row,
    ts,
)
from postindex.core.config import load_config, load_packaged_defaults
from postindex.embeddings import ProviderRegistry
from postindex.errors import (
    ConfigurationError,
    IndexWriteError,
    PipelineCancelledError,
    WarehouseQueryError,
)
from postindex.pipeline.models import Document, RunState
from postindex.pipeline.service import build_sync_service, dedupe_documents


def _service(config, warehouse, store, embedder=None, logger=None):
    return build_sync_service(
        config,
        logger=logger,
        warehouse_client=warehouse,
        store=store,
        embedder=embedder or StubEmbedder(),
    )


def test_first_run_backfills_every_entity(runtime_config, store) -> None:
    runtime_config.pipeline.batch_size = 4
    warehouse = FakeWarehouse(
        [
            make_row(entity, f"{entity}-{n}", f"2023-05-0{n}T10:00")
            for entity in ("a", "b", "c")
            for n in (1, 2)
        ]
    )
    service = _service(runtime_config, warehouse, store)

    summary = service.run(entities=["a", "b", "c"])

    (result,) = summary.results
    assert result.state is RunState.DONE
    assert result.plan.new == {"a", "b", "c"}
    assert result.plan.existing == frozenset()
    assert result.fetched == 6
    assert result.transformed == 6
    assert [len(ids) for _, ids in store.upsert_calls] == [4, 2]
    assert summary.total_indexed == 6
    assert summary.ok


def test_incremental_run_fetches_past_the_high_water_mark(
    runtime_config,
    store,
) -> None:
    store.upsert(COLLECTION, [indexed_record("A-1", "A", "2023-05-01T10:00")])
    warehouse = FakeWarehouse(
        [
            make_row("A", "A-1", "2023-05-01T10:00"),
            make_row("A", "A-2", "2023-05-02T10:00"),
            make_row("B", "B-1", "2021-01-01T00:00"),
        ]
    )
    service = _service(runtime_config, warehouse, store)

    summary = service.run(entities=["A", "B"])

    (result,) = summary.results
    assert result.plan.new == {"B"}
    assert result.plan.existing == {"A"}
    assert result.plan.cutoffs == {"A": ts("2023-05-01T10:00")}
    (query,) = warehouse.queries
    assert query.param("new_entities").value == ("B",)
    assert query.param("existing_entities").value == ("A",)
    assert query.param("existing_cutoffs").value == (ts("2023-05-01T10:00"),)
    assert result.indexed == 3
    assert store.upsert_calls[1:] == [(COLLECTION, ("B-1", "A-1", "A-2"))]


def test_warehouse_failure_fails_the_run_without_writes(
    runtime_config,
    store,
) -> None:
    warehouse = FakeWarehouse(error=WarehouseQueryError("connection refused"))
    service = _service(runtime_config, warehouse, store)

    summary = service.run()

    (result,) = summary.results
    assert result.state is RunState.FAILED
    assert isinstance(result.error, WarehouseQueryError)
    assert result.indexed == 0
    assert store.upsert_calls == []
    assert not summary.ok


def test_run_walks_the_state_machine(runtime_config, store) -> None:
    warehouse = FakeWarehouse([make_row("0x05", "p1", "2023-05-01T10:00")])

    with capture_logs() as logs:
        service = _service(runtime_config, warehouse, store)
        service.run()

    states = [
        entry["state"] for entry in logs if entry["event"] == "pipeline-state"
    ]
    assert states == [
        "reading_state",
        "planning",
        "fetching",
        "transforming",
        "indexing",
        "done",
    ]


def test_rerun_without_new_rows_rewrites_only_boundary_records(
    runtime_config,
    store,
) -> None:
    warehouse = FakeWarehouse(
        [
            make_row("0x05", "p0", "2023-05-01T09:00"),
            make_row("0x05", "p1", "2023-05-01T10:00"),
            make_row("0x8e", "p2", "2023-05-01T11:00"),
        ]
    )
    service = _service(runtime_config, warehouse, store)

    first = service.run()
    second = service.run()

    assert first.total_indexed == 3
    assert second.ok
    assert second.results[0].plan.existing == {"0x05", "0x8e"}
    assert second.results[0].fetched == 2
    assert store.upsert_calls[-1] == (COLLECTION, ("p1", "p2"))
    assert len(store.records(COLLECTION)) == 3


def test_rerun_recovers_entity_that_failed_behind_a_newer_one(
    runtime_config,
) -> None:
    runtime_config.pipeline.batch_size = 2
    store = RecordingStore(fail_for_id="B-2")
    warehouse = FakeWarehouse(
        [
            make_row("A", "A-1", "2024-01-01T00:00"),
            *(
                make_row("B", f"B-{n}", f"202{n}-01-01T00:00")
                for n in range(4)
            ),
        ]
    )
    service = _service(runtime_config, warehouse, store)

    first = service.run(mode="per-entity", entities=["A", "B"], concurrency=2)

    assert [result.state for result in first.results] == [
        RunState.DONE,
        RunState.FAILED,
    ]
    indexed = sorted(record.id for record in store.records(COLLECTION))
    assert indexed == ["A-1", "B-0", "B-1"]

    store.fail_for_id = None
    second = service.run(mode="per-entity", entities=["A", "B"], concurrency=2)

    assert second.ok
    assert second.results[1].plan.cutoffs == {"B": ts("2021-01-01T00:00")}
    indexed = sorted(record.id for record in store.records(COLLECTION))
    assert indexed == ["A-1", "B-0", "B-1", "B-2", "B-3"]


def test_rerun_completes_timestamp_group_split_by_failed_batch(
    runtime_config,
) -> None:
    runtime_config.pipeline.batch_size = 2
    store = RecordingStore(fail_on_call=2)
    warehouse = FakeWarehouse(
        [
            make_row("A", "A-3", "2023-01-02T00:00"),
            make_row("A", "A-1", "2023-01-01T00:00"),
            make_row("A", "A-2", "2023-01-02T00:00"),
        ]
    )
    service = _service(runtime_config, warehouse, store)

    (first,) = service.run(entities=["A"]).results

    assert first.state is RunState.FAILED
    assert store.upsert_calls[0] == (COLLECTION, ("A-1", "A-2"))
    assert sorted(r.id for r in store.records(COLLECTION)) == ["A-1", "A-2"]

    store.fail_on_call = None
    (second,) = service.run(entities=["A"]).results

    assert second.ok
    assert second.fetched == 2
    indexed = sorted(record.id for record in store.records(COLLECTION))
    assert indexed == ["A-1", "A-2", "A-3"]


def test_rows_failing_transform_are_skipped(runtime_config, store) -> None:
    bad = make_row("0x05", "p2", "2023-05-01T10:00")
    bad["timestamp"] = "garbage"
    warehouse = FakeWarehouse([make_row("0x05", "p1", "2023-05-01T10:00"), bad])
    service = _service(runtime_config, warehouse, store)

    (result,) = service.run().results

    assert result.ok
    assert result.fetched == 2
    assert result.skipped == 1
    assert result.indexed == 1


def test_duplicate_publications_are_indexed_once(runtime_config, store) -> None:
    warehouse = FakeWarehouse(
        [
            make_row("0x05", "p1", "2023-05-01T10:00", content="y" * 100),
            make_row("0x05", "p1", "2023-05-01T10:00", content="z" * 100),
        ]
    )
    service = _service(runtime_config, warehouse, store)

    (result,) = service.run().results

    assert result.duplicates == 1
    assert result.indexed == 1
    (record,) = store.records(COLLECTION)
    assert record.content == "y" * 100


def test_dedupe_documents_keeps_first() -> None:
    documents = [
        Document(page_content=body, metadata={"publication_id": pid})
        for pid, body in (("p1", "one"), ("p2", "two"), ("p1", "three"))
    ]

    unique, dropped = dedupe_documents(documents)

    assert [d.page_content for d in unique] == ["one", "two"]
    assert dropped == 1


def test_index_failure_reports_partial_progress(runtime_config) -> None:
    runtime_config.pipeline.batch_size = 1
    store = RecordingStore(fail_on_call=2)
    warehouse = FakeWarehouse(
        [make_row("0x05", f"p{n}", f"2023-05-0{n}T10:00") for n in (1, 2, 3)]
    )
    service = _service(runtime_config, warehouse, store)

    (result,) = service.run().results

    assert result.state is RunState.FAILED
    assert isinstance(result.error, IndexWriteError)
    assert result.indexed == 1
    assert result.batches == 1


def test_cancelled_run_is_failed_with_cancel_error(
    runtime_config,
    store,
) -> None:
    warehouse = FakeWarehouse([make_row("0x05", "p1", "2023-05-01T10:00")])
    service = _service(runtime_config, warehouse, store)
    cancel = threading.Event()
    cancel.set()

    (result,) = service.run(cancel=cancel).results

    assert isinstance(result.error, PipelineCancelledError)
    assert store.upsert_calls == []


def test_per_entity_failures_are_isolated(runtime_config) -> None:
    store = RecordingStore(fail_for_author="b")
    warehouse = FakeWarehouse(
        [
            make_row("a", "a-1", "2023-05-01T10:00"),
            make_row("a", "a-2", "2023-05-02T10:00"),
            make_row("b", "b-1", "2023-05-01T10:00"),
            make_row("c", "c-1", "2023-05-01T10:00"),
        ]
    )
    service = _service(runtime_config, warehouse, store)

    summary = service.run(
        mode="per-entity",
        entities=["a", "b", "c"],
        concurrency=2,
    )

    assert summary.mode == "per-entity"
    assert [result.label for result in summary.results] == ["a", "b", "c"]
    assert [result.state for result in summary.results] == [
        RunState.DONE,
        RunState.FAILED,
        RunState.DONE,
    ]
    assert summary.total_indexed == 3
    assert len(summary.failed) == 1
    assert not summary.ok
    assert len(warehouse.queries) == 3


def test_per_entity_mode_uses_configured_mode(runtime_config, store) -> None:
    runtime_config.pipeline.mode = "per-entity"
    warehouse = FakeWarehouse([make_row("0x05", "p1", "2023-05-01T10:00")])
    service = _service(runtime_config, warehouse, store)

    summary = service.run()

    assert summary.mode == "per-entity"
    assert [result.label for result in summary.results] == ["0x05", "0x8e"]
    assert summary.total_indexed == 1


def test_per_entity_rejects_bad_concurrency(runtime_config, store) -> None:
    service = _service(runtime_config, FakeWarehouse(), store)

    with pytest.raises(ValueError):
        service.run(mode="per-entity", concurrency="lots")


def test_no_targets_completes_without_querying(runtime_config, store) -> None:
    runtime_config.pipeline.entities = {}
    warehouse = FakeWarehouse()
    service = _service(runtime_config, warehouse, store)

    summary = service.run()

    assert summary.ok
    assert summary.total_indexed == 0
    assert warehouse.queries == []


def test_targets_include_discovered_entities(runtime_config, store) -> None:
    runtime_config.pipeline.min_followers = 1000
    warehouse = FakeWarehouse(followers={"0x01": 5000, "0x05": 2000, "0x99": 1})
    service = _service(runtime_config, warehouse, store)

    targets = service.targets()

    assert [entity.id for entity in targets] == ["0x05", "0x8e", "0x01"]
    assert targets[0].display_name == "stani"
    assert targets[0].follower_count == 2000
    assert targets[2].follower_count == 5000


def test_explicit_entities_replace_configured_set(runtime_config, store) -> None:
    runtime_config.pipeline.min_followers = 1000
    warehouse = FakeWarehouse(followers={"0x01": 5000})
    service = _service(runtime_config, warehouse, store)

    targets = service.targets(["0x8e", "0x42"])

    assert [entity.id for entity in targets] == ["0x8e", "0x42"]
    assert targets[0].display_name == "alice"
    assert warehouse.queries == []


def test_plan_is_a_dry_run(runtime_config, store) -> None:
    store.upsert(COLLECTION, [indexed_record("p1", "0x05", "2023-05-01T10:00")])
    warehouse = FakeWarehouse([make_row("0x05", "p9", "2023-06-01T10:00")])
    service = _service(runtime_config, warehouse, store)

    state, plan = service.plan()

    assert state.authors == {"0x05"}
    assert plan.existing == {"0x05"}
    assert plan.new == {"0x8e"}
    assert warehouse.queries == []
    assert len(store.upsert_calls) == 1


def test_build_requires_runtime_settings(store) -> None:
    config = load_config(defaults=load_packaged_defaults())

    with pytest.raises(ConfigurationError) as excinfo:
        _service(config, FakeWarehouse(), store)

    assert "embedding.api_key" in excinfo.value.missing


def test_build_rejects_unknown_provider(runtime_config) -> None:
    runtime_config.embedding.provider = "nope"

    with pytest.raises(ConfigurationError, match="not registered"):
        build_sync_service(
            runtime_config,
            providers=ProviderRegistry(),
            warehouse_client=FakeWarehouse(),
            store=RecordingStore(),
        )


def test_build_rejects_dimension_mismatch(runtime_config) -> None:
    runtime_config.embedding.provider = "stub"
    registry = ProviderRegistry({"stub": lambda context: StubEmbedder(dim=5)})

    with pytest.raises(ConfigurationError, match="store.dimension"):
        build_sync_service(
            runtime_config,
            providers=registry,
            warehouse_client=FakeWarehouse(),
            store=RecordingStore(),
        )


def test_summary_mapping(runtime_config, store) -> None:
    warehouse = FakeWarehouse([make_row("0x05", "p1", "2023-05-01T10:00")])
    service = _service(runtime_config, warehouse, store)

    payload = service.run().to_mapping()

    assert payload["mode"] == "combined"
    assert payload["total_indexed"] == 1
    assert payload["failed"] == 0
    assert payload["targets"][0] == {
        "id": "0x05",
        "name": "stani",
        "followers": None,
    }
    assert payload["results"][0]["label"] == "combined"
