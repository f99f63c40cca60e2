"""Shared fakes for relay unit tests."""

from __future__ import annotations

import asyncio
from typing import Any

import psycopg2
import pytest

from txn_relay.config.models import DestinationConfig, RelayConfig, SourceConfig
from txn_relay.sources.base import (
    EventHandler,
    LogPosition,
    RowAction,
    RowChangeEvent,
    SchemaChangeEvent,
)

BINLOG = "mysql-bin.000004"

_START_COLUMNS = (
    "transaction_pk",
    "event_timestamp",
    "connector_pk",
    "id_tag",
    "start_timestamp",
    "start_value",
)
_STOP_COLUMNS = ("stop_timestamp", "stop_value", "stop_reason")
_STOP_FAILED_COLUMNS = (*_STOP_COLUMNS, "fail_reason")


class InMemoryPool:
    """Drop-in for DestinationPool that applies writer statements to a dict."""

    def __init__(self) -> None:
        self.rows: dict[int, dict[str, Any]] = {}
        self.statements: list[tuple[str, tuple[Any, ...]]] = []
        self.is_open = False
        self.fail_with: Exception | None = None

    def open(self) -> None:
        self.is_open = True

    def close(self) -> None:
        self.is_open = False

    def execute(self, sql: str, params: tuple[Any, ...]) -> int:
        if self.fail_with is not None:
            raise self.fail_with
        self.statements.append((sql, params))
        if sql.startswith("INSERT"):
            pk = params[0]
            if pk in self.rows:
                msg = f"duplicate key value: transaction_pk={pk}"
                raise psycopg2.IntegrityError(msg)
            self.rows[pk] = dict(zip(_START_COLUMNS, params, strict=True))
            return 1
        columns = _STOP_FAILED_COLUMNS if "fail_reason" in sql else _STOP_COLUMNS
        row = self.rows.get(params[-1])
        if row is None:
            return 0
        row.update(zip(columns, params[:-1], strict=True))
        return 1


class ScriptedSource:
    """EventSource that delivers a fixed list of events.

    With ``hold_open`` it keeps the stream alive after the script until
    ``stop()`` is called, like a live binlog would.
    """

    def __init__(
        self,
        events: list[RowChangeEvent | SchemaChangeEvent],
        *,
        hold_open: bool = False,
    ) -> None:
        self._events = events
        self._hold_open = hold_open
        self._stopped = asyncio.Event()
        self.delivered: list[Any] = []
        self.results: list[Any] = []
        self.stopped = False

    async def start(self, handler: EventHandler) -> None:
        for event in self._events:
            if isinstance(event, SchemaChangeEvent):
                result = await handler.on_schema_change(event)
            else:
                result = await handler.on_row_event(event)
            self.delivered.append(event)
            self.results.append(result)
        if self._hold_open:
            await self._stopped.wait()

    def stop(self) -> None:
        self.stopped = True
        self._stopped.set()


def row_event(
    table: str,
    columns: list[Any],
    *,
    offset: int = 2000,
    action: RowAction = RowAction.INSERT,
    log_name: str = BINLOG,
) -> RowChangeEvent:
    return RowChangeEvent(
        source_table=table,
        action=action,
        position=LogPosition(log_name, offset),
        columns=tuple(columns),
    )


def start_columns(pk: int) -> list[Any]:
    return [pk, "2024-01-01T00:00:00Z", 7, "TAG1", "2024-01-01T00:00:01Z", 0]


def stop_columns(pk: int) -> list[Any]:
    return [pk, "2024-01-01T01:00:00Z", "station", "2024-01-01T01:00:00Z", 100, "Local"]


def stop_failed_columns(pk: int) -> list[Any]:
    return [*stop_columns(pk), "meter error"]


@pytest.fixture
def baseline() -> LogPosition:
    return LogPosition(BINLOG, 1000)


@pytest.fixture
def pool() -> InMemoryPool:
    return InMemoryPool()


@pytest.fixture
def relay_config() -> RelayConfig:
    return RelayConfig(
        source=SourceConfig(database="stevedb"),
        destination=DestinationConfig(database="txdb"),
    )
