"""Orchestrate pipeline runs and expose the sync service to the CLI."""

from __future__ import annotations

import threading
from concurrent.futures import ThreadPoolExecutor
from dataclasses import dataclass, field
from typing import Any, Iterable, Mapping, Sequence

from postindex.core.config import AppConfig, PipelineMode, PipelineSettings
from postindex.core.logging import Logger, get_logger, run_context
from postindex.embeddings import (
    EmbeddingProviderCaps,
    EmbeddingsProvider,
    ProviderNotRegisteredError,
    ProviderRegistry,
    create_default_provider_registry,
    resolve_worker_count,
)
from postindex.errors import (
    ConfigurationError,
    IndexWriteError,
    PipelineCancelledError,
    PipelineError,
)
from postindex.pipeline.indexer import BatchIndexer
from postindex.pipeline.models import (
    Document,
    Entity,
    IndexState,
    RunResult,
    RunState,
    SyncPlan,
)
from postindex.pipeline.planner import SyncPlanner, resolve_targets
from postindex.pipeline.state import IndexStateReader
from postindex.pipeline.store import (
    PgVectorStore,
    VectorStore,
    pgvector_connection_factory,
)
from postindex.pipeline.transform import records_from_rows, transform
from postindex.pipeline.warehouse import (
    BigQueryWarehouseClient,
    PublicationQueryBuilder,
    PublicationSource,
    WarehouseClient,
)

__all__ = [
    "PipelineOrchestrator",
    "SyncService",
    "SyncSummary",
    "build_sync_service",
    "dedupe_documents",
]


def dedupe_documents(
    documents: Iterable[Document],
) -> tuple[list[Document], int]:
    """Keep the first document per publication ID.

    Returns:
        The unique documents in input order and the number dropped.
    """

    seen: set[str] = set()
    unique: list[Document] = []
    dropped = 0
    for document in documents:
        if document.publication_id in seen:
            dropped += 1
            continue
        seen.add(document.publication_id)
        unique.append(document)
    return unique, dropped


@dataclass(slots=True)
class PipelineOrchestrator:
    """Run one pass of read state, plan, fetch, transform, and index."""

    source: PublicationSource
    state_reader: IndexStateReader
    indexer: BatchIndexer
    planner: SyncPlanner = field(default_factory=SyncPlanner)
    logger: Logger | None = None

    def __post_init__(self) -> None:
        if self.logger is None:
            self.logger = get_logger(__name__, component="orchestrator")

    def _enter(self, result: RunResult, state: RunState) -> None:
        self.logger.info(
            "pipeline-state",
            label=result.label,
            previous=result.state.value,
            state=state.value,
        )
        result.state = state

    def run(
        self,
        targets: Sequence[str],
        *,
        state: IndexState | None = None,
        cancel: threading.Event | None = None,
        label: str | None = None,
    ) -> RunResult:
        """Execute one run over ``targets``.

        Args:
            targets: Entity IDs to sync.
            state: Pre-read index state shared across runs; read fresh when
                omitted.
            cancel: Cooperative cancellation flag checked between batches.
            label: Name used in logs and the result.

        Returns:
            A terminal :class:`RunResult`. Pipeline errors are captured on
            the result rather than raised.
        """

        result = RunResult(label=label, entities=tuple(targets))
        try:
            self._enter(result, RunState.READING_STATE)
            if state is None:
                state = self.state_reader.read()

            self._enter(result, RunState.PLANNING)
            plan = self.planner.plan(targets, state)
            result.plan = plan
            if plan.is_empty:
                self.logger.info("pipeline-nothing-to-sync", label=label)
                self._enter(result, RunState.DONE)
                return result

            self._enter(result, RunState.FETCHING)
            rows = self.source.fetch_rows(plan.predicate())
            result.fetched = len(rows)

            self._enter(result, RunState.TRANSFORMING)
            records, result.skipped = records_from_rows(
                rows,
                logger=self.logger,
            )
            # Oldest first; a failed run leaves an indexed prefix per author.
            records.sort(
                key=lambda record: (record.timestamp, record.publication_id)
            )
            documents, result.duplicates = dedupe_documents(
                transform(records)
            )
            result.transformed = len(documents)
            if result.duplicates:
                self.logger.warning(
                    "pipeline-duplicates-dropped",
                    label=label,
                    duplicates=result.duplicates,
                )

            self._enter(result, RunState.INDEXING)
            report = self.indexer.index(documents, cancel=cancel)
            result.indexed = report.indexed
            result.batches = report.batches
        except (IndexWriteError, PipelineCancelledError) as exc:
            result.indexed = exc.indexed_count
            result.batches = exc.cursor.batches_written
            return self._fail(result, exc)
        except PipelineError as exc:
            return self._fail(result, exc)

        self._enter(result, RunState.DONE)
        self.logger.info(
            "pipeline-complete",
            label=label,
            fetched=result.fetched,
            skipped=result.skipped,
            duplicates=result.duplicates,
            indexed=result.indexed,
            batches=result.batches,
        )
        return result

    def _fail(self, result: RunResult, error: PipelineError) -> RunResult:
        failed_in = result.state
        result.error = error
        self._enter(result, RunState.FAILED)
        self.logger.error(
            "pipeline-failed",
            label=result.label,
            failed_in=failed_in.value,
            error=str(error),
            error_type=type(error).__name__,
            indexed=result.indexed,
        )
        return result


@dataclass(frozen=True, slots=True)
class SyncSummary:
    """Aggregate outcome of a :meth:`SyncService.run` call."""

    mode: PipelineMode
    targets: tuple[Entity, ...]
    results: tuple[RunResult, ...]

    @property
    def total_indexed(self) -> int:
        return sum(result.indexed for result in self.results)

    @property
    def failed(self) -> tuple[RunResult, ...]:
        return tuple(result for result in self.results if not result.ok)

    @property
    def ok(self) -> bool:
        return not self.failed

    def to_mapping(self) -> dict[str, Any]:
        return {
            "mode": self.mode,
            "targets": [
                {
                    "id": entity.id,
                    "name": entity.display_name,
                    "followers": entity.follower_count,
                }
                for entity in self.targets
            ],
            "results": [result.to_mapping() for result in self.results],
            "total_indexed": self.total_indexed,
            "failed": len(self.failed),
        }


@dataclass(slots=True)
class SyncService:
    """Resolve target entities and drive orchestrated runs."""

    orchestrator: PipelineOrchestrator
    settings: PipelineSettings
    provider_caps: EmbeddingProviderCaps
    logger: Logger | None = None

    def __post_init__(self) -> None:
        if self.logger is None:
            self.logger = get_logger(__name__, component="sync-service")

    @property
    def display_names(self) -> Mapping[str, str]:
        return self.settings.entities

    def targets(
        self,
        entities: Sequence[str] | None = None,
    ) -> tuple[Entity, ...]:
        """Return the entities to sync.

        Explicit ``entities`` replace the configured set. Otherwise the
        configured IDs are joined with profiles discovered by follower count
        when ``min_followers`` is set.
        """

        names = self.display_names
        if entities:
            ids = resolve_targets(entities)
            return tuple(Entity(id=i, display_name=names.get(i)) for i in ids)

        discovered: tuple[Entity, ...] = ()
        if self.settings.min_followers is not None:
            discovered = self.orchestrator.source.discover_entities(
                self.settings.min_followers,
                display_names=dict(names),
            )
        by_id = {entity.id: entity for entity in discovered}
        ids = resolve_targets(names.keys(), by_id.keys())
        return tuple(
            by_id.get(i, Entity(id=i, display_name=names.get(i))) for i in ids
        )

    def state(self) -> IndexState:
        """Return the current index state."""

        return self.orchestrator.state_reader.read()

    def plan(
        self,
        entities: Sequence[str] | None = None,
    ) -> tuple[IndexState, SyncPlan]:
        """Dry run: read the index state and plan without fetching."""

        targets = self.targets(entities)
        state = self.state()
        plan = self.orchestrator.planner.plan(
            [entity.id for entity in targets],
            state,
        )
        return state, plan

    def run(
        self,
        *,
        mode: PipelineMode | None = None,
        entities: Sequence[str] | None = None,
        concurrency: int | str | None = None,
        cancel: threading.Event | None = None,
    ) -> SyncSummary:
        """Sync every target entity and return the combined summary.

        Raises:
            PipelineError: Target discovery or the shared index-state read
                failed, so no run was attempted.
        """

        resolved_mode = mode or self.settings.mode
        targets = self.targets(entities)
        self.logger.info(
            "sync-start",
            mode=resolved_mode,
            targets=len(targets),
        )

        if resolved_mode == "per-entity":
            results = self._run_per_entity(
                targets,
                concurrency=concurrency,
                cancel=cancel,
            )
        else:
            with run_context(run="combined"):
                result = self.orchestrator.run(
                    [entity.id for entity in targets],
                    cancel=cancel,
                    label="combined",
                )
            results = (result,)

        summary = SyncSummary(
            mode=resolved_mode,
            targets=targets,
            results=results,
        )
        self.logger.info(
            "sync-complete",
            mode=resolved_mode,
            total_indexed=summary.total_indexed,
            failed=len(summary.failed),
        )
        return summary

    def _run_per_entity(
        self,
        targets: Sequence[Entity],
        *,
        concurrency: int | str | None,
        cancel: threading.Event | None,
    ) -> tuple[RunResult, ...]:
        if not targets:
            return ()
        state = self.state()
        workers = resolve_worker_count(
            requested=concurrency,
            configured=self.settings.max_concurrency,
            provider_caps=self.provider_caps,
            logger=self.logger,
        )
        workers = min(workers, len(targets))

        def run_one(entity: Entity) -> RunResult:
            with run_context(entity=entity.id, name=entity.label):
                result = self.orchestrator.run(
                    [entity.id],
                    state=state,
                    cancel=cancel,
                    label=entity.id,
                )
                self.logger.info(
                    "entity-indexed",
                    entity=entity.id,
                    name=entity.label,
                    state=result.state.value,
                    indexed=result.indexed,
                )
                return result

        with ThreadPoolExecutor(
            max_workers=workers,
            thread_name_prefix="postindex-entity",
        ) as executor:
            return tuple(executor.map(run_one, targets))


def _create_embedder(
    config: AppConfig,
    *,
    providers: ProviderRegistry,
    logger: Logger,
) -> EmbeddingsProvider:
    key = config.embedding.provider
    try:
        embedder = providers.create(
            key,
            logger=logger.bind(component="embedding-provider", provider=key),
            config=config.embedding.provider_config(),
        )
    except ProviderNotRegisteredError as exc:
        raise ConfigurationError(
            f"Embedding provider {key!r} is not registered."
        ) from exc

    dim = embedder.describe_model(config.embedding.model).dim
    if dim is not None and dim != config.store.dimension:
        raise ConfigurationError(
            f"Embedding model {config.embedding.model!r} produces {dim}-d "
            f"vectors but store.dimension is {config.store.dimension}."
        )
    return embedder


def build_sync_service(
    config: AppConfig,
    *,
    logger: Logger | None = None,
    providers: ProviderRegistry | None = None,
    warehouse_client: WarehouseClient | None = None,
    store: VectorStore | None = None,
    embedder: EmbeddingsProvider | None = None,
) -> SyncService:
    """Wire a :class:`SyncService` from ``config``.

    Required settings are validated before any client is constructed.

    Raises:
        ConfigurationError: A required setting is missing or invalid.
    """

    config.require_runtime()
    log = logger or get_logger(__name__, component="pipeline")

    if embedder is None:
        embedder = _create_embedder(
            config,
            providers=providers or create_default_provider_registry(),
            logger=log,
        )
    if warehouse_client is None:
        warehouse_client = BigQueryWarehouseClient(
            config.warehouse,
            logger=log.bind(component="warehouse"),
        )
    if store is None:
        store = PgVectorStore(
            pgvector_connection_factory(config.store),
            dimension=config.store.dimension,
            logger=log.bind(component="pgvector"),
        )

    collection = config.store.collection
    source = PublicationSource(
        client=warehouse_client,
        builder=PublicationQueryBuilder.from_settings(
            config.warehouse,
            min_content_length=config.pipeline.min_content_length,
        ),
        logger=log.bind(component="publication-source"),
    )
    orchestrator = PipelineOrchestrator(
        source=source,
        state_reader=IndexStateReader(
            store=store,
            collection=collection,
            logger=log.bind(component="index-state"),
        ),
        indexer=BatchIndexer(
            store=store,
            embedder=embedder,
            model=config.embedding.model,
            collection=collection,
            batch_size=config.pipeline.batch_size,
            embed_timeout=config.embedding.timeout,
            logger=log.bind(component="indexer"),
        ),
        planner=SyncPlanner(logger=log.bind(component="planner")),
        logger=log.bind(component="orchestrator"),
    )
    return SyncService(
        orchestrator=orchestrator,
        settings=config.pipeline,
        provider_caps=embedder.capabilities(model=config.embedding.model),
        logger=log.bind(component="sync-service"),
    )
