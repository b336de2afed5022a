"""Turn warehouse rows into records and records into indexable documents."""

from __future__ import annotations

from typing import Any, Iterable, Mapping, Sequence

from postindex.core.logging import Logger
from postindex.errors import TransformError
from postindex.pipeline.models import Document, Record, format_timestamp

__all__ = [
    "PLACEHOLDER_CONTENT",
    "record_from_row",
    "records_from_rows",
    "to_document",
    "transform",
]

# Embedding APIs reject empty strings.
PLACEHOLDER_CONTENT = " "


def record_from_row(row: Mapping[str, Any]) -> Record:
    """Build a :class:`Record` from one warehouse row.

    Raises:
        TransformError: If the row lacks identifiers or has a bad timestamp.
    """

    try:
        return Record.from_row(row)
    except (TypeError, ValueError) as exc:
        raise TransformError(f"Malformed warehouse row: {exc}", row=row) from exc


def records_from_rows(
    rows: Iterable[Mapping[str, Any]],
    *,
    logger: Logger,
) -> tuple[list[Record], int]:
    """Convert ``rows`` skipping malformed ones.

    Returns:
        The parsed records in input order and the number of skipped rows.
    """

    records: list[Record] = []
    skipped = 0
    for position, row in enumerate(rows):
        try:
            records.append(record_from_row(row))
        except TransformError as exc:
            skipped += 1
            logger.warning(
                "transform-row-skipped",
                position=position,
                publication_id=row.get("publication_id"),
                error=str(exc),
            )
    return records, skipped


def to_document(record: Record) -> Document:
    return Document(
        page_content=record.content or PLACEHOLDER_CONTENT,
        metadata={
            "publication_id": record.publication_id,
            "main_content_focus": record.content_focus,
            "author": record.entity_id,
            "publication_type": record.publication_type,
            "parent_publication_id": record.parent_publication_id,
            "timestamp": format_timestamp(record.timestamp),
        },
    )


def transform(records: Sequence[Record]) -> list[Document]:
    """Map each record to exactly one document, preserving order."""

    return [to_document(record) for record in records]
