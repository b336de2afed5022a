"""Vector store interfaces with in-memory and pgvector implementations."""

from __future__ import annotations

import json
import threading
from dataclasses import dataclass, field
from typing import TYPE_CHECKING, Any, Callable, Iterable, Protocol, Sequence

import psycopg
from psycopg import errors as pg_errors
from psycopg import sql

from postindex.core.logging import Logger, get_logger
from postindex.errors import VectorStoreError

if TYPE_CHECKING:  # pragma: no cover - type checker imports only
    from postindex.core.config import StoreSettings

__all__ = [
    "VectorRecord",
    "VectorStore",
    "MemoryVectorStore",
    "PgVectorStore",
    "pgvector_connection_factory",
]


@dataclass(frozen=True, slots=True)
class VectorRecord:
    """One stored document: ID, body, metadata and (optionally) its vector."""

    id: str
    content: str
    metadata: dict[str, Any] = field(default_factory=dict)
    embedding: tuple[float, ...] | None = None


class VectorStore(Protocol):
    """Storage contract used by the indexer and the index state reader."""

    def upsert(self, collection: str, records: Sequence[VectorRecord]) -> int:
        """Insert or replace ``records`` by ID; return rows written."""

    def query_distinct(self, collection: str, field: str) -> set[str]:
        """Return distinct non-null values of metadata ``field``."""

    def query_top(
        self,
        collection: str,
        *,
        order_by: str,
        limit: int,
    ) -> list[VectorRecord]:
        """Return records ordered by metadata ``order_by`` descending."""

    def query_latest(
        self,
        collection: str,
        *,
        group_by: str,
        order_by: str,
    ) -> dict[str, str]:
        """Return the greatest metadata ``order_by`` per ``group_by`` value."""


class MemoryVectorStore:
    """Thread-safe in-memory store used for tests and dry runs."""

    def __init__(self) -> None:
        self._collections: dict[str, dict[str, VectorRecord]] = {}
        self._lock = threading.Lock()

    def upsert(self, collection: str, records: Sequence[VectorRecord]) -> int:
        with self._lock:
            target = self._collections.setdefault(collection, {})
            for record in records:
                target[record.id] = record
        return len(records)

    def query_distinct(self, collection: str, field: str) -> set[str]:
        with self._lock:
            records = list(self._collections.get(collection, {}).values())
        return {
            str(record.metadata[field])
            for record in records
            if record.metadata.get(field) is not None
        }

    def query_top(
        self,
        collection: str,
        *,
        order_by: str,
        limit: int,
    ) -> list[VectorRecord]:
        with self._lock:
            records = [
                record
                for record in self._collections.get(collection, {}).values()
                if record.metadata.get(order_by) is not None
            ]
        records.sort(key=lambda record: str(record.metadata[order_by]))
        records.reverse()
        return records[:limit]

    def query_latest(
        self,
        collection: str,
        *,
        group_by: str,
        order_by: str,
    ) -> dict[str, str]:
        with self._lock:
            records = list(self._collections.get(collection, {}).values())
        latest: dict[str, str] = {}
        for record in records:
            key = record.metadata.get(group_by)
            value = record.metadata.get(order_by)
            if key is None or value is None:
                continue
            key, value = str(key), str(value)
            if value > latest.get(key, ""):
                latest[key] = value
        return latest

    def records(self, collection: str) -> list[VectorRecord]:
        """Return a snapshot of every record stored in ``collection``."""

        with self._lock:
            return list(self._collections.get(collection, {}).values())


def _format_vector_literal(vector: Iterable[float]) -> str:
    return "[" + ",".join(f"{value:.10f}" for value in vector) + "]"


def _load_metadata(value: object) -> dict[str, Any]:
    if isinstance(value, dict):
        return dict(value)
    if isinstance(value, str):
        return json.loads(value)
    return {}


class PgVectorStore:
    """PostgreSQL + pgvector store (the engine behind Supabase vector tables).

    Each collection is a table ``(id TEXT PRIMARY KEY, content TEXT,
    metadata JSONB, embedding vector(n))``. Every call opens its own
    connection, so concurrent writers never share one. A missing table reads
    as an empty collection.
    """

    def __init__(
        self,
        connection_factory: Callable[[], psycopg.Connection],
        *,
        dimension: int = 1536,
        logger: Logger | None = None,
    ) -> None:
        if dimension < 1:
            raise ValueError("dimension must be >= 1")
        self._connection_factory = connection_factory
        self._dimension = dimension
        self._logger = logger or get_logger(__name__, component="pgvector")
        self._initialized: set[str] = set()
        self._schema_lock = threading.Lock()

    def _connect(self) -> psycopg.Connection:
        try:
            return self._connection_factory()
        except psycopg.Error as exc:
            raise VectorStoreError(
                f"Failed to connect to the vector store: {exc}"
            ) from exc

    def _ensure_schema(self, conn: psycopg.Connection, collection: str) -> None:
        with self._schema_lock:
            if collection in self._initialized:
                return
            with conn.cursor() as cur:
                cur.execute("CREATE EXTENSION IF NOT EXISTS vector")
                cur.execute(
                    sql.SQL(
                        """
                        CREATE TABLE IF NOT EXISTS {table} (
                            id TEXT PRIMARY KEY,
                            content TEXT NOT NULL,
                            metadata JSONB NOT NULL DEFAULT '{{}}',
                            embedding vector({dimension})
                        )
                        """
                    ).format(
                        table=sql.Identifier(collection),
                        dimension=sql.Literal(self._dimension),
                    )
                )
            conn.commit()
            self._initialized.add(collection)

    def upsert(self, collection: str, records: Sequence[VectorRecord]) -> int:
        if not records:
            return 0
        insert_sql = sql.SQL(
            """
            INSERT INTO {table} (id, content, metadata, embedding)
            VALUES (%s, %s, %s::jsonb, %s::vector)
            ON CONFLICT (id) DO UPDATE
            SET content = EXCLUDED.content,
                metadata = EXCLUDED.metadata,
                embedding = EXCLUDED.embedding
            """
        ).format(table=sql.Identifier(collection))

        conn = self._connect()
        try:
            self._ensure_schema(conn, collection)
            written = 0
            with conn.cursor() as cur:
                for record in records:
                    if record.embedding is None:
                        raise VectorStoreError(
                            f"Record {record.id!r} has no embedding."
                        )
                    cur.execute(
                        insert_sql,
                        (
                            record.id,
                            record.content,
                            json.dumps(record.metadata),
                            _format_vector_literal(record.embedding),
                        ),
                    )
                    written += max(cur.rowcount, 0)
            conn.commit()
        except psycopg.Error as exc:
            conn.rollback()
            raise VectorStoreError(
                f"Failed to upsert into {collection!r}: {exc}"
            ) from exc
        except VectorStoreError:
            conn.rollback()
            raise
        finally:
            conn.close()

        self._logger.debug(
            "pgvector-upsert",
            collection=collection,
            requested=len(records),
            written=written,
        )
        return written

    def _read(
        self,
        collection: str,
        query: sql.Composable,
        params: Sequence[object],
    ) -> list[tuple[Any, ...]]:
        conn = self._connect()
        try:
            with conn.cursor() as cur:
                cur.execute(query, params)
                return list(cur.fetchall())
        except pg_errors.UndefinedTable:
            self._logger.info("pgvector-collection-missing", collection=collection)
            return []
        except psycopg.Error as exc:
            raise VectorStoreError(
                f"Failed to read from {collection!r}: {exc}"
            ) from exc
        finally:
            conn.close()

    def query_distinct(self, collection: str, field: str) -> set[str]:
        query = sql.SQL(
            """
            SELECT DISTINCT metadata ->> %s
            FROM {table}
            WHERE metadata ->> %s IS NOT NULL
            """
        ).format(table=sql.Identifier(collection))
        rows = self._read(collection, query, (field, field))
        return {str(row[0]) for row in rows}

    def query_top(
        self,
        collection: str,
        *,
        order_by: str,
        limit: int,
    ) -> list[VectorRecord]:
        if limit < 1:
            raise ValueError("limit must be >= 1")
        query = sql.SQL(
            """
            SELECT id, content, metadata
            FROM {table}
            WHERE metadata ->> %s IS NOT NULL
            ORDER BY metadata ->> %s DESC
            LIMIT %s
            """
        ).format(table=sql.Identifier(collection))
        rows = self._read(collection, query, (order_by, order_by, limit))
        return [
            VectorRecord(
                id=str(item_id),
                content=content or "",
                metadata=_load_metadata(metadata),
            )
            for item_id, content, metadata in rows
        ]

    def query_latest(
        self,
        collection: str,
        *,
        group_by: str,
        order_by: str,
    ) -> dict[str, str]:
        query = sql.SQL(
            """
            SELECT metadata ->> %s AS key, MAX(metadata ->> %s) AS latest
            FROM {table}
            WHERE metadata ->> %s IS NOT NULL
              AND metadata ->> %s IS NOT NULL
            GROUP BY 1
            """
        ).format(table=sql.Identifier(collection))
        rows = self._read(
            collection,
            query,
            (group_by, order_by, group_by, order_by),
        )
        return {str(key): str(latest) for key, latest in rows}


def pgvector_connection_factory(
    settings: "StoreSettings",
) -> Callable[[], psycopg.Connection]:
    """Return a factory opening connections described by ``settings``."""

    if not settings.url:
        raise ValueError("store.url is required for the pgvector store")
    url = settings.url
    password = (
        settings.api_key.get_secret_value()
        if settings.api_key is not None
        else None
    )

    def connect() -> psycopg.Connection:
        kwargs: dict[str, Any] = {"connect_timeout": settings.connect_timeout}
        if password:
            kwargs["password"] = password
        return psycopg.connect(url, **kwargs)

    return connect
