"""Incremental warehouse-to-vector-store indexing pipeline.

Data flows one way: the warehouse source is filtered by the planner against
the current index state, rows are transformed into documents, and the batch
indexer embeds and writes them to the vector store.
"""

from __future__ import annotations

from .indexer import BatchIndexer
from .models import (
    Document,
    Entity,
    FetchPredicate,
    IndexCursor,
    IndexReport,
    IndexState,
    Record,
    RunResult,
    RunState,
    SyncPlan,
)
from .planner import SyncPlanner, resolve_targets
from .service import (
    PipelineOrchestrator,
    SyncService,
    SyncSummary,
    build_sync_service,
)
from .state import IndexStateReader
from .store import MemoryVectorStore, PgVectorStore, VectorRecord, VectorStore
from .transform import transform
from .warehouse import (
    BigQueryWarehouseClient,
    PublicationQueryBuilder,
    PublicationSource,
    WarehouseClient,
    WarehouseQuery,
)

__all__ = [
    "BatchIndexer",
    "BigQueryWarehouseClient",
    "Document",
    "Entity",
    "FetchPredicate",
    "IndexCursor",
    "IndexReport",
    "IndexState",
    "IndexStateReader",
    "MemoryVectorStore",
    "PgVectorStore",
    "PipelineOrchestrator",
    "PublicationQueryBuilder",
    "PublicationSource",
    "Record",
    "RunResult",
    "RunState",
    "SyncPlan",
    "SyncPlanner",
    "SyncService",
    "SyncSummary",
    "VectorRecord",
    "VectorStore",
    "WarehouseClient",
    "WarehouseQuery",
    "build_sync_service",
    "resolve_targets",
    "transform",
]
