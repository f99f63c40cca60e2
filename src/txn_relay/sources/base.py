"""Replication event types and the event source protocol.

Defines LogPosition, RowChangeEvent and SchemaChangeEvent (what the binlog
source delivers) and EventSource / EventHandler (the delivery contract the
router plugs into).
"""

from __future__ import annotations

from dataclasses import dataclass
from enum import StrEnum
from typing import Any, Protocol, runtime_checkable


@dataclass(frozen=True, slots=True)
class LogPosition:
    """A point in the replication log.

    An empty ``log_name`` means the position is unknown.
    """

    log_name: str
    offset: int

    def __post_init__(self) -> None:
        if self.offset < 0:
            msg = f"Log offset must be non-negative, got {self.offset}"
            raise ValueError(msg)

    def __str__(self) -> str:
        return f"{self.log_name or '<unknown>'}:{self.offset}"


class RowAction(StrEnum):
    """Row-level change kinds carried by the binlog."""

    INSERT = "insert"
    UPDATE = "update"
    DELETE = "delete"


@dataclass(frozen=True, slots=True)
class RowChangeEvent:
    """One changed row, with its column values in table order."""

    source_table: str
    action: RowAction
    position: LogPosition
    columns: tuple[Any, ...]
    schema: str = ""


@dataclass(frozen=True, slots=True)
class SchemaChangeEvent:
    """A DDL statement observed in the binlog."""

    position: LogPosition
    schema: str = ""
    query: str = ""


@runtime_checkable
class EventHandler(Protocol):
    """Receives events from an EventSource, one at a time, in log order."""

    async def on_row_event(self, event: RowChangeEvent) -> Any: ...

    async def on_schema_change(self, event: SchemaChangeEvent) -> Any: ...


@runtime_checkable
class EventSource(Protocol):
    """Protocol every replication event source must satisfy.

    ``start`` awaits each handler call before reading the next event, so an
    exception raised by the handler ends the stream.
    """

    async def start(self, handler: EventHandler) -> None:
        """Begin streaming; deliver each event to *handler*."""
        ...

    def stop(self) -> None:
        """Signal the source to stop streaming."""
        ...
