"""Transaction event router: replay filter, table classification, dispatch.

Only inserts into the three lifecycle tables are mirrored.  Everything else
(replayed positions, other tables, updates and deletes, DDL) is a silent
no-op reported through RouteResult.  Writer failures are raised, never
swallowed, and never retried here.
"""

from __future__ import annotations

from dataclasses import dataclass
from enum import StrEnum

import structlog

from txn_relay.config.models import SourceTables
from txn_relay.errors import EventProcessingError
from txn_relay.sinks.base import LifecycleWriter
from txn_relay.sources.base import (
    RowAction,
    RowChangeEvent,
    SchemaChangeEvent,
)
from txn_relay.sources.position import PositionTracker

logger = structlog.get_logger()


class RouteStatus(StrEnum):
    APPLIED = "applied"
    SKIPPED_REPLAY = "skipped_replay"
    IGNORED_TABLE = "ignored_table"
    IGNORED_ACTION = "ignored_action"
    IGNORED_SCHEMA_CHANGE = "ignored_schema_change"


@dataclass(frozen=True, slots=True)
class RouteResult:
    status: RouteStatus
    writer: str | None = None
    rowcount: int = 0


_REPLAY = RouteResult(RouteStatus.SKIPPED_REPLAY)
_IGNORED_TABLE = RouteResult(RouteStatus.IGNORED_TABLE)
_IGNORED_ACTION = RouteResult(RouteStatus.IGNORED_ACTION)
_IGNORED_SCHEMA_CHANGE = RouteResult(RouteStatus.IGNORED_SCHEMA_CHANGE)


def build_routing_rules(
    tables: SourceTables,
    start: LifecycleWriter,
    stop: LifecycleWriter,
    stop_failed: LifecycleWriter,
) -> dict[str, LifecycleWriter]:
    """Map each lifecycle source table to its writer."""
    return {
        tables.start: start,
        tables.stop: stop,
        tables.stop_failed: stop_failed,
    }


class TransactionEventRouter:
    """Routes binlog row events to lifecycle writers.

    Events are handled one at a time in the order the source delivers them;
    the source awaits each call before reading further.
    """

    def __init__(
        self,
        tracker: PositionTracker,
        rules: dict[str, LifecycleWriter],
    ) -> None:
        if len(rules) != 3:
            msg = f"Expected 3 routing rules, got {len(rules)}"
            raise ValueError(msg)
        self._tracker = tracker
        self._rules = dict(rules)
        self._stats: dict[RouteStatus, int] = dict.fromkeys(RouteStatus, 0)

    @property
    def tracked_tables(self) -> frozenset[str]:
        return frozenset(self._rules)

    @property
    def stats(self) -> dict[RouteStatus, int]:
        """Events seen per outcome since startup."""
        return dict(self._stats)

    def _count(self, result: RouteResult) -> RouteResult:
        self._stats[result.status] += 1
        return result

    async def on_row_event(self, event: RowChangeEvent) -> RouteResult:
        if self._tracker.is_replay(event.position):
            return self._count(_REPLAY)

        writer = self._rules.get(event.source_table)
        if writer is None:
            return self._count(_IGNORED_TABLE)
        if event.action != RowAction.INSERT:
            return self._count(_IGNORED_ACTION)

        try:
            record = writer.record_type.from_columns(event.columns)
            rowcount = await writer.write(record)
        except EventProcessingError as exc:
            exc.table = event.source_table
            raise

        logger.debug(
            "router.applied",
            table=event.source_table,
            writer=writer.name,
            position=str(event.position),
        )
        return self._count(
            RouteResult(RouteStatus.APPLIED, writer=writer.name, rowcount=rowcount)
        )

    async def on_schema_change(self, event: SchemaChangeEvent) -> RouteResult:
        """DDL is observed for position bookkeeping only, never mirrored."""
        if self._tracker.is_replay(event.position):
            return self._count(_REPLAY)
        return self._count(_IGNORED_SCHEMA_CHANGE)
