"""Warehouse access: parameterized BigQuery queries for publications."""

from __future__ import annotations

import concurrent.futures
import re
from dataclasses import dataclass, field
from typing import TYPE_CHECKING, Any, Callable, Protocol

from google.api_core.exceptions import GoogleAPIError
from google.auth.exceptions import GoogleAuthError
from google.cloud import bigquery
from google.cloud.bigquery.retry import DEFAULT_RETRY
from google.oauth2 import service_account

from postindex.core.logging import Logger, get_logger
from postindex.errors import WarehouseQueryError
from postindex.pipeline.models import Entity, FetchPredicate

if TYPE_CHECKING:  # pragma: no cover - type checker imports only
    from postindex.core.config import WarehouseSettings

__all__ = [
    "QueryParameter",
    "WarehouseQuery",
    "WarehouseClient",
    "BigQueryWarehouseClient",
    "PublicationQueryBuilder",
    "PublicationSource",
]

_TABLE_PATTERN = re.compile(r"^[A-Za-z0-9_][A-Za-z0-9_.\-]*$")
_COLUMN_PATTERN = re.compile(r"^[A-Za-z_][A-Za-z0-9_]*$")

Row = dict[str, Any]


@dataclass(frozen=True, slots=True)
class QueryParameter:
    """A named, typed value bound into a warehouse query."""

    name: str
    type: str
    value: Any
    array: bool = False

    def __post_init__(self) -> None:
        if not _COLUMN_PATTERN.fullmatch(self.name):
            raise ValueError(f"invalid parameter name {self.name!r}")
        if self.array:
            object.__setattr__(self, "value", tuple(self.value))


@dataclass(frozen=True, slots=True)
class WarehouseQuery:
    """SQL text plus its bound parameters."""

    sql: str
    params: tuple[QueryParameter, ...] = ()
    label: str = "query"

    def param(self, name: str) -> QueryParameter:
        for parameter in self.params:
            if parameter.name == name:
                return parameter
        raise KeyError(name)

    @property
    def param_names(self) -> frozenset[str]:
        return frozenset(parameter.name for parameter in self.params)


class WarehouseClient(Protocol):
    """Executes a query and returns materialized rows."""

    def query(self, query: WarehouseQuery) -> list[Row]:
        """Run ``query`` raising :class:`WarehouseQueryError` on failure."""


def _bigquery_parameter(
    parameter: QueryParameter,
) -> bigquery.ScalarQueryParameter | bigquery.ArrayQueryParameter:
    if parameter.array:
        return bigquery.ArrayQueryParameter(
            parameter.name,
            parameter.type,
            list(parameter.value),
        )
    return bigquery.ScalarQueryParameter(
        parameter.name,
        parameter.type,
        parameter.value,
    )


class BigQueryWarehouseClient:
    """:class:`WarehouseClient` backed by ``google-cloud-bigquery``.

    The underlying client is built lazily from service-account credentials so
    construction never performs I/O.
    """

    def __init__(
        self,
        settings: "WarehouseSettings",
        *,
        logger: Logger | None = None,
        client_factory: Callable[[], bigquery.Client] | None = None,
    ) -> None:
        self._settings = settings
        self._logger = logger or get_logger(__name__, component="warehouse")
        self._client_factory = client_factory or self._build_client
        self._client: bigquery.Client | None = None

    def _build_client(self) -> bigquery.Client:
        info = self._settings.credentials_info()
        credentials = service_account.Credentials.from_service_account_info(
            info
        )
        return bigquery.Client(
            project=self._settings.project,
            credentials=credentials,
            location=self._settings.location,
        )

    def _get_client(self) -> bigquery.Client:
        if self._client is None:
            try:
                self._client = self._client_factory()
            except (GoogleAuthError, ValueError) as exc:
                raise WarehouseQueryError(
                    f"Failed to authenticate with the warehouse: {exc}"
                ) from exc
        return self._client

    def query(self, query: WarehouseQuery) -> list[Row]:
        client = self._get_client()
        timeout = self._settings.timeout
        job_config = bigquery.QueryJobConfig(
            query_parameters=[_bigquery_parameter(p) for p in query.params],
        )
        self._logger.info(
            "warehouse-query",
            query=query.label,
            params=sorted(query.param_names),
        )
        try:
            job = client.query(
                query.sql,
                job_config=job_config,
                retry=DEFAULT_RETRY.with_deadline(timeout),
                timeout=timeout,
            )
            rows = [dict(row.items()) for row in job.result(timeout=timeout)]
        except (GoogleAPIError, GoogleAuthError) as exc:
            raise WarehouseQueryError(
                f"Warehouse query {query.label!r} failed: {exc}"
            ) from exc
        except concurrent.futures.TimeoutError as exc:
            raise WarehouseQueryError(
                f"Warehouse query {query.label!r} timed out after {timeout}s"
            ) from exc

        self._logger.info(
            "warehouse-query-complete",
            query=query.label,
            rows=len(rows),
        )
        return rows


def _validate_identifier(value: str, pattern: re.Pattern[str]) -> str:
    if not pattern.fullmatch(value):
        raise ValueError(f"{value!r} is not a valid identifier")
    return value


@dataclass(frozen=True, slots=True)
class PublicationQueryBuilder:
    """Render the publication and entity-discovery queries.

    Table and column names are configuration, validated as identifiers.
    Every other value is bound as a query parameter.
    """

    publication_table: str = "lens-public-data.v2_polygon.publication_record"
    metadata_table: str = "lens-public-data.v2_polygon.publication_metadata"
    follower_table: str = (
        "lens-public-data.v2_polygon.global_stats_profile_follower"
    )
    follower_count_column: str = "total_followers"
    min_content_length: int = 70

    def __post_init__(self) -> None:
        for table in (
            self.publication_table,
            self.metadata_table,
            self.follower_table,
        ):
            _validate_identifier(table, _TABLE_PATTERN)
        _validate_identifier(self.follower_count_column, _COLUMN_PATTERN)
        if self.min_content_length < 0:
            raise ValueError("min_content_length must be >= 0")

    @classmethod
    def from_settings(
        cls,
        settings: "WarehouseSettings",
        *,
        min_content_length: int,
    ) -> "PublicationQueryBuilder":
        return cls(
            publication_table=settings.publication_table,
            metadata_table=settings.metadata_table,
            follower_table=settings.follower_table,
            follower_count_column=settings.follower_count_column,
            min_content_length=min_content_length,
        )

    def publications(self, predicate: FetchPredicate) -> WarehouseQuery:
        """Return the publication query for ``predicate``.

        Raises:
            ValueError: If ``predicate`` selects no entities.
        """

        if predicate.is_empty:
            raise ValueError("cannot build a publication query for no entities")

        clauses: list[str] = []
        params: list[QueryParameter] = [
            QueryParameter(
                "min_content_length",
                "INT64",
                self.min_content_length,
            ),
        ]
        if predicate.new_entities:
            clauses.append("pr.profile_id IN UNNEST(@new_entities)")
            params.append(
                QueryParameter(
                    "new_entities",
                    "STRING",
                    predicate.new_entities,
                    array=True,
                )
            )
        if predicate.existing_entities:
            clauses.append(
                "EXISTS (SELECT 1 FROM UNNEST(@existing_entities) AS entity "
                "WITH OFFSET AS position "
                "WHERE entity = pr.profile_id "
                "AND pm.timestamp >= @existing_cutoffs[OFFSET(position)])"
            )
            params.extend(
                (
                    QueryParameter(
                        "existing_entities",
                        "STRING",
                        predicate.existing_entities,
                        array=True,
                    ),
                    QueryParameter(
                        "existing_cutoffs",
                        "TIMESTAMP",
                        predicate.cutoffs,
                        array=True,
                    ),
                )
            )

        sql = "\n".join(
            (
                "SELECT",
                "  pr.profile_id AS entity_id,",
                "  pr.publication_id,",
                "  pm.content,",
                "  pm.main_content_focus AS content_focus,",
                "  pr.publication_type,",
                "  pr.parent_publication_id,",
                "  pm.timestamp",
                f"FROM `{self.publication_table}` pr",
                f"JOIN `{self.metadata_table}` pm",
                "  ON pr.publication_id = pm.publication_id",
                "WHERE pr.publication_type != 'MIRROR'",
                "  AND pr.is_hidden = false",
                "  AND LENGTH(pm.content) > @min_content_length",
                "  AND (" + " OR ".join(clauses) + ")",
                "ORDER BY pm.timestamp, pr.publication_id",
            )
        )
        return WarehouseQuery(sql=sql, params=tuple(params), label="publications")

    def entities(self, min_followers: int) -> WarehouseQuery:
        """Return the discovery query for profiles at or above a threshold."""

        if min_followers < 0:
            raise ValueError("min_followers must be >= 0")
        column = self.follower_count_column
        sql = "\n".join(
            (
                "SELECT",
                "  profile_id AS entity_id,",
                f"  {column} AS follower_count",
                f"FROM `{self.follower_table}`",
                f"WHERE {column} >= @min_followers",
                f"ORDER BY {column} DESC, profile_id",
            )
        )
        return WarehouseQuery(
            sql=sql,
            params=(QueryParameter("min_followers", "INT64", min_followers),),
            label="entities",
        )


@dataclass(slots=True)
class PublicationSource:
    """Pairs a :class:`WarehouseClient` with a :class:`PublicationQueryBuilder`."""

    client: WarehouseClient
    builder: PublicationQueryBuilder = field(
        default_factory=PublicationQueryBuilder
    )
    logger: Logger | None = None

    def __post_init__(self) -> None:
        if self.logger is None:
            self.logger = get_logger(__name__, component="publication-source")

    def fetch_rows(self, predicate: FetchPredicate) -> list[Row]:
        """Return raw publication rows matching ``predicate``.

        An empty predicate issues no query.
        """

        if predicate.is_empty:
            self.logger.info("warehouse-fetch-skipped", reason="no-entities")
            return []
        return self.client.query(self.builder.publications(predicate))

    def discover_entities(
        self,
        min_followers: int,
        *,
        display_names: dict[str, str] | None = None,
    ) -> tuple[Entity, ...]:
        """Return profiles whose follower count meets ``min_followers``."""

        names = display_names or {}
        rows = self.client.query(self.builder.entities(min_followers))
        entities: list[Entity] = []
        for row in rows:
            entity_id = str(row.get("entity_id") or "").strip()
            if not entity_id:
                continue
            count = row.get("follower_count")
            entities.append(
                Entity(
                    id=entity_id,
                    display_name=names.get(entity_id),
                    follower_count=None if count is None else int(count),
                )
            )
        self.logger.info(
            "entities-discovered",
            min_followers=min_followers,
            count=len(entities),
        )
        return tuple(entities)
