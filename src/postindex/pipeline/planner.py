"""Partition target entities into new and existing against the index."""

from __future__ import annotations

from dataclasses import dataclass
from datetime import datetime
from typing import Iterable

from postindex.core.logging import Logger, get_logger
from postindex.pipeline.models import IndexState, SyncPlan, unique_ids

__all__ = ["SyncPlanner", "resolve_targets"]


def resolve_targets(
    configured: Iterable[str],
    discovered: Iterable[str] = (),
) -> tuple[str, ...]:
    """Return configured IDs followed by newly discovered ones, de-duplicated.

    Example:
        >>> resolve_targets(["0x05", "0x8e"], ["0x8e", "0x01"])
        ('0x05', '0x8e', '0x01')
    """

    return unique_ids([*configured, *discovered])


@dataclass(slots=True)
class SyncPlanner:
    """Compute the :class:`SyncPlan` for one run.

    Entities already authoring timestamped documents in the index are
    *existing* and are fetched incrementally from their own newest indexed
    timestamp. Everything else is *new* and gets a full backfill.
    """

    logger: Logger | None = None

    def __post_init__(self) -> None:
        if self.logger is None:
            self.logger = get_logger(__name__, component="planner")

    def plan(self, targets: Iterable[str], state: IndexState) -> SyncPlan:
        target_set = frozenset(unique_ids(targets))
        cutoffs: dict[str, datetime] = {}
        untimed: set[str] = set()
        for entity in target_set & state.authors:
            mark = state.high_water_mark(entity)
            if mark is None:
                untimed.add(entity)
            else:
                cutoffs[entity] = mark
        if untimed:
            self.logger.warning(
                "sync-plan-untimed-authors",
                authors=sorted(untimed),
            )
        existing = frozenset(cutoffs)
        plan = SyncPlan(
            new=target_set - existing,
            existing=existing,
            cutoffs=cutoffs,
        )

        self.logger.info(
            "sync-plan",
            targets=len(target_set),
            new=len(plan.new),
            existing=len(plan.existing),
            cutoff=None if plan.cutoff is None else plan.cutoff.isoformat(),
        )
        return plan
