"""Transaction lifecycle writers.

Each writer maps one source record onto one parameterized statement against
the destination transaction table:

- StartWriter       inserts a new transaction row
- StopNormalWriter  sets the stop fields of an existing row
- StopFailedWriter  sets the stop fields plus the fail reason

A stop for an unknown transaction updates zero rows; that is not an error.
"""

from __future__ import annotations

import asyncio
from abc import ABC, abstractmethod
from typing import Any, ClassVar

import psycopg2
import structlog

from txn_relay.errors import DestinationWriteError
from txn_relay.routing.records import StartRecord, StopFailedRecord, StopRecord
from txn_relay.sinks.pool import DestinationPool

logger = structlog.get_logger()


class _PooledWriter(ABC):
    """Shared plumbing: run the statement in the executor, wrap driver errors.

    Subclasses supply ``SQL`` with a ``{table}`` placeholder and map their
    record onto its parameters.
    """

    name: ClassVar[str]
    record_type: ClassVar[type]
    SQL: ClassVar[str]

    def __init__(self, pool: DestinationPool, target_table: str = "transaction") -> None:
        self._pool = pool
        self._sql = self.SQL.format(table=target_table)

    @abstractmethod
    def parameters(self, record: Any) -> tuple[Any, ...]: ...

    async def write(self, record: Any) -> int:
        if not isinstance(record, self.record_type):
            msg = (
                f"{type(self).__name__} expects {self.record_type.__name__}, "
                f"got {type(record).__name__}"
            )
            raise TypeError(msg)

        params = self.parameters(record)
        loop = asyncio.get_running_loop()
        try:
            rowcount = await loop.run_in_executor(
                None, self._pool.execute, self._sql, params
            )
        except psycopg2.Error as exc:
            msg = (
                f"{self.name} write for transaction {record.transaction_pk} "
                f"failed: {exc}"
            )
            raise DestinationWriteError(msg) from exc

        logger.debug(
            "writer.applied",
            writer=self.name,
            transaction_pk=record.transaction_pk,
            rowcount=rowcount,
        )
        return rowcount


class StartWriter(_PooledWriter):
    """Creates the destination row when a transaction starts."""

    name = "start"
    record_type = StartRecord
    SQL = (
        "INSERT INTO {table} "
        "(transaction_pk, event_timestamp, connector_pk, id_tag, "
        "start_timestamp, start_value) "
        "VALUES (%s, %s, %s, %s, %s, %s)"
    )

    def parameters(self, record: StartRecord) -> tuple[Any, ...]:
        return (
            record.transaction_pk,
            record.event_timestamp,
            record.connector_pk,
            record.id_tag,
            record.start_timestamp,
            record.start_value,
        )


class StopNormalWriter(_PooledWriter):
    """Records a regular stop on an existing transaction row."""

    name = "stop"
    record_type = StopRecord
    SQL = (
        "UPDATE {table} "
        "SET stop_timestamp = %s, stop_value = %s, stop_reason = %s "
        "WHERE transaction_pk = %s"
    )

    def parameters(self, record: StopRecord) -> tuple[Any, ...]:
        return (
            record.stop_timestamp,
            record.stop_value,
            record.stop_reason,
            record.transaction_pk,
        )


class StopFailedWriter(_PooledWriter):
    """Records a failed stop, including why the stop failed."""

    name = "stop_failed"
    record_type = StopFailedRecord
    SQL = (
        "UPDATE {table} "
        "SET stop_timestamp = %s, stop_value = %s, stop_reason = %s, "
        "fail_reason = %s "
        "WHERE transaction_pk = %s"
    )

    def parameters(self, record: StopFailedRecord) -> tuple[Any, ...]:
        return (
            record.stop_timestamp,
            record.stop_value,
            record.stop_reason,
            record.fail_reason,
            record.transaction_pk,
        )
