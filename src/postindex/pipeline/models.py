"""Typed values passed between pipeline stages."""

from __future__ import annotations

from dataclasses import dataclass, field
from datetime import datetime, timezone
from enum import StrEnum
from types import MappingProxyType
from typing import Any, Iterable, Mapping

__all__ = [
    "Entity",
    "Record",
    "Document",
    "IndexState",
    "FetchPredicate",
    "SyncPlan",
    "RunState",
    "IndexCursor",
    "IndexReport",
    "RunResult",
    "parse_timestamp",
    "format_timestamp",
    "unique_ids",
]


def parse_timestamp(value: Any, *, field: str = "timestamp") -> datetime:
    """Return ``value`` as a timezone-aware UTC datetime.

    Naive values are assumed to be UTC.

    Example:
        >>> parse_timestamp("2023-05-01T10:00:00Z").isoformat()
        '2023-05-01T10:00:00+00:00'
    """

    if isinstance(value, datetime):
        parsed = value
    elif isinstance(value, str):
        stripped = value.strip()
        if not stripped:
            raise ValueError(f"{field} cannot be empty")
        if stripped.endswith("Z"):
            stripped = f"{stripped[:-1]}+00:00"
        try:
            parsed = datetime.fromisoformat(stripped)
        except ValueError as exc:
            message = f"{field} must be ISO-8601 (got {value!r})"
            raise ValueError(message) from exc
    else:
        raise TypeError(
            f"{field} must be ISO-8601 string or datetime; got {type(value)!r}"
        )
    if parsed.tzinfo is None:
        return parsed.replace(tzinfo=timezone.utc)
    return parsed.astimezone(timezone.utc)


def format_timestamp(value: datetime) -> str:
    """Render ``value`` as the ISO-8601 UTC string stored in metadata."""

    return parse_timestamp(value).isoformat()


def _require_text(value: Any, *, field: str) -> str:
    if value is None:
        raise ValueError(f"{field} is required")
    result = str(value).strip()
    if not result:
        raise ValueError(f"{field} cannot be empty")
    return result


def _optional_text(value: Any) -> str | None:
    if value is None:
        return None
    result = str(value).strip()
    return result or None


@dataclass(frozen=True, slots=True)
class Entity:
    """A content-producing profile."""

    id: str
    display_name: str | None = None
    follower_count: int | None = None

    @property
    def label(self) -> str:
        """Return the display name when known, otherwise the ID."""

        return self.display_name or self.id


@dataclass(frozen=True, slots=True)
class Record:
    """One warehouse row describing a publication."""

    entity_id: str
    publication_id: str
    content: str | None
    content_focus: str | None
    publication_type: str | None
    parent_publication_id: str | None
    timestamp: datetime

    @classmethod
    def from_row(cls, row: Mapping[str, Any]) -> "Record":
        """Build a record from a warehouse row mapping.

        Raises:
            ValueError: If identifiers are missing or the timestamp is invalid.
            TypeError: If the timestamp has an unsupported type.
        """

        content = row.get("content")
        return cls(
            entity_id=_require_text(row.get("entity_id"), field="entity_id"),
            publication_id=_require_text(
                row.get("publication_id"),
                field="publication_id",
            ),
            content=None if content is None else str(content),
            content_focus=_optional_text(row.get("content_focus")),
            publication_type=_optional_text(row.get("publication_type")),
            parent_publication_id=_optional_text(
                row.get("parent_publication_id")
            ),
            timestamp=parse_timestamp(row.get("timestamp")),
        )


@dataclass(frozen=True, slots=True)
class Document:
    """Indexable unit produced from a :class:`Record`."""

    page_content: str
    metadata: Mapping[str, Any]

    def __post_init__(self) -> None:
        if not self.page_content:
            raise ValueError("page_content cannot be empty")
        if not self.metadata.get("publication_id"):
            raise ValueError("metadata.publication_id is required")
        object.__setattr__(self, "metadata", dict(self.metadata))

    @property
    def publication_id(self) -> str:
        return str(self.metadata["publication_id"])

    def to_mapping(self) -> dict[str, Any]:
        return {
            "page_content": self.page_content,
            "metadata": dict(self.metadata),
        }


def _format_marks(marks: Mapping[str, datetime]) -> dict[str, str]:
    return {key: format_timestamp(marks[key]) for key in sorted(marks)}


@dataclass(frozen=True, slots=True)
class IndexState:
    """Snapshot of what the vector index already holds.

    ``author_latest`` maps each author to the newest timestamp indexed for
    that author alone; ``latest_timestamp`` is the maximum across the index.
    """

    authors: frozenset[str] = frozenset()
    latest_timestamp: datetime | None = None
    author_latest: Mapping[str, datetime] = field(default_factory=dict)

    def __post_init__(self) -> None:
        object.__setattr__(
            self,
            "author_latest",
            MappingProxyType(dict(self.author_latest)),
        )

    @property
    def is_empty(self) -> bool:
        return self.latest_timestamp is None

    def high_water_mark(self, author: str) -> datetime | None:
        """Return the newest indexed timestamp for ``author``."""

        return self.author_latest.get(author)

    def to_mapping(self) -> dict[str, Any]:
        return {
            "authors": sorted(self.authors),
            "latest_timestamp": (
                None
                if self.latest_timestamp is None
                else format_timestamp(self.latest_timestamp)
            ),
            "author_latest": _format_marks(self.author_latest),
        }


@dataclass(frozen=True, slots=True)
class FetchPredicate:
    """Bound values for the incremental fetch.

    Matches records whose entity is in ``new_entities``, or whose entity is
    ``existing_entities[i]`` and whose timestamp is at or after
    ``cutoffs[i]``. The inclusive bound re-reads the records sharing the
    high-water timestamp; writes are upserts by publication ID, so a tie
    group split by a failed batch is completed on the next run.
    """

    new_entities: tuple[str, ...] = ()
    existing_entities: tuple[str, ...] = ()
    cutoffs: tuple[datetime, ...] = ()

    def __post_init__(self) -> None:
        if len(self.cutoffs) != len(self.existing_entities):
            raise ValueError("each existing entity requires exactly one cutoff")

    @property
    def is_empty(self) -> bool:
        return not self.new_entities and not self.existing_entities


@dataclass(frozen=True, slots=True)
class SyncPlan:
    """Disjoint partition of target entities plus per-entity cutoffs.

    Every existing entity carries its own cutoff: the newest timestamp
    indexed for it. New entities are backfilled in full.
    """

    new: frozenset[str] = frozenset()
    existing: frozenset[str] = frozenset()
    cutoffs: Mapping[str, datetime] = field(default_factory=dict)

    def __post_init__(self) -> None:
        overlap = self.new & self.existing
        if overlap:
            raise ValueError(
                f"entities cannot be both new and existing: {sorted(overlap)}"
            )
        if set(self.cutoffs) != set(self.existing):
            raise ValueError("cutoffs must cover exactly the existing entities")
        object.__setattr__(self, "cutoffs", MappingProxyType(dict(self.cutoffs)))

    @property
    def targets(self) -> frozenset[str]:
        return self.new | self.existing

    @property
    def is_empty(self) -> bool:
        return not self.new and not self.existing

    @property
    def cutoff(self) -> datetime | None:
        """Earliest cutoff across existing entities, ``None`` for a backfill."""

        return min(self.cutoffs.values()) if self.cutoffs else None

    def predicate(self) -> FetchPredicate:
        """Return the fetch predicate with entities in sorted order."""

        existing = tuple(sorted(self.existing))
        return FetchPredicate(
            new_entities=tuple(sorted(self.new)),
            existing_entities=existing,
            cutoffs=tuple(self.cutoffs[entity] for entity in existing),
        )

    def to_mapping(self) -> dict[str, Any]:
        return {
            "new": sorted(self.new),
            "existing": sorted(self.existing),
            "cutoff": (
                None if self.cutoff is None else format_timestamp(self.cutoff)
            ),
            "cutoffs": _format_marks(self.cutoffs),
        }


class RunState(StrEnum):
    """Pipeline run states, in transition order."""

    IDLE = "idle"
    READING_STATE = "reading_state"
    PLANNING = "planning"
    FETCHING = "fetching"
    TRANSFORMING = "transforming"
    INDEXING = "indexing"
    DONE = "done"
    FAILED = "failed"

    @property
    def is_terminal(self) -> bool:
        return self in (RunState.DONE, RunState.FAILED)


@dataclass(slots=True)
class IndexCursor:
    """Progress marker for a single indexing run.

    ``batches_written`` counts contiguous batches confirmed by the store, so
    a resumed run can skip exactly those batches.
    """

    batches_written: int = 0
    indexed: int = 0

    def advance(self, count: int) -> None:
        self.batches_written += 1
        self.indexed += count


@dataclass(frozen=True, slots=True)
class IndexReport:
    """Outcome of a completed :class:`BatchIndexer` call."""

    requested: int
    indexed: int
    batches: int
    skipped_batches: int = 0
    batch_sizes: tuple[int, ...] = ()


@dataclass(slots=True)
class RunResult:
    """Terminal outcome of one orchestrated run."""

    state: RunState = RunState.IDLE
    label: str | None = None
    plan: SyncPlan | None = None
    fetched: int = 0
    skipped: int = 0
    transformed: int = 0
    duplicates: int = 0
    indexed: int = 0
    batches: int = 0
    error: BaseException | None = None
    entities: tuple[str, ...] = field(default_factory=tuple)

    @property
    def ok(self) -> bool:
        return self.state is RunState.DONE

    def to_mapping(self) -> dict[str, Any]:
        payload: dict[str, Any] = {
            "state": self.state.value,
            "fetched": self.fetched,
            "skipped": self.skipped,
            "transformed": self.transformed,
            "duplicates": self.duplicates,
            "indexed": self.indexed,
            "batches": self.batches,
        }
        if self.label is not None:
            payload["label"] = self.label
        if self.entities:
            payload["entities"] = list(self.entities)
        if self.plan is not None:
            payload["plan"] = self.plan.to_mapping()
        if self.error is not None:
            payload["error"] = str(self.error)
            payload["error_type"] = type(self.error).__name__
        return payload


def unique_ids(values: Iterable[str]) -> tuple[str, ...]:
    """Return stripped, non-empty ``values`` de-duplicated in order.

    Example:
        >>> unique_ids([" a", "b", "a", ""])
        ('a', 'b')
    """

    seen: dict[str, None] = {}
    for value in values:
        normalized = str(value).strip()
        if normalized:
            seen.setdefault(normalized, None)
    return tuple(seen)
