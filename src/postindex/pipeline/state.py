"""Read the current index state (known authors and high-water marks)."""

from __future__ import annotations

from dataclasses import dataclass
from datetime import datetime

from postindex.core.logging import Logger, get_logger
from postindex.errors import IndexStateError, VectorStoreError
from postindex.pipeline.models import IndexState, parse_timestamp
from postindex.pipeline.store import VectorStore

__all__ = ["IndexStateReader"]


@dataclass(slots=True)
class IndexStateReader:
    """Derive :class:`IndexState` from the documents already in the store."""

    store: VectorStore
    collection: str
    author_field: str = "author"
    timestamp_field: str = "timestamp"
    logger: Logger | None = None

    def __post_init__(self) -> None:
        if self.logger is None:
            self.logger = get_logger(__name__, component="index-state")

    def current_authors(self) -> frozenset[str]:
        """Return the distinct author IDs present in the collection."""

        try:
            values = self.store.query_distinct(
                self.collection,
                self.author_field,
            )
        except VectorStoreError as exc:
            raise IndexStateError(
                f"Failed to read indexed authors from {self.collection!r}: {exc}"
            ) from exc
        return frozenset(values)

    def latest_timestamp(self) -> datetime | None:
        """Return the newest indexed timestamp, or ``None`` when empty."""

        try:
            top = self.store.query_top(
                self.collection,
                order_by=self.timestamp_field,
                limit=1,
            )
        except VectorStoreError as exc:
            raise IndexStateError(
                f"Failed to read the latest timestamp from "
                f"{self.collection!r}: {exc}"
            ) from exc
        if not top:
            return None
        raw = top[0].metadata.get(self.timestamp_field)
        try:
            return parse_timestamp(raw, field=self.timestamp_field)
        except (TypeError, ValueError) as exc:
            raise IndexStateError(
                f"Indexed document {top[0].id!r} has an unreadable "
                f"timestamp {raw!r}."
            ) from exc

    def latest_by_author(self) -> dict[str, datetime]:
        """Return the newest indexed timestamp of each author."""

        try:
            raw = self.store.query_latest(
                self.collection,
                group_by=self.author_field,
                order_by=self.timestamp_field,
            )
        except VectorStoreError as exc:
            raise IndexStateError(
                f"Failed to read per-author timestamps from "
                f"{self.collection!r}: {exc}"
            ) from exc

        marks: dict[str, datetime] = {}
        for author, value in raw.items():
            try:
                marks[author] = parse_timestamp(
                    value,
                    field=self.timestamp_field,
                )
            except (TypeError, ValueError) as exc:
                raise IndexStateError(
                    f"Author {author!r} has an unreadable latest timestamp "
                    f"{value!r}."
                ) from exc
        return marks

    def read(self) -> IndexState:
        """Return a snapshot of authors and their high-water marks."""

        state = IndexState(
            authors=self.current_authors(),
            latest_timestamp=self.latest_timestamp(),
            author_latest=self.latest_by_author(),
        )
        self.logger.info(
            "index-state-read",
            collection=self.collection,
            authors=len(state.authors),
            latest_timestamp=(
                None
                if state.latest_timestamp is None
                else state.latest_timestamp.isoformat()
            ),
        )
        return state
