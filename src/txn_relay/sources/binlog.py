"""MySQL binlog event source.

Streams row and DDL events with ``pymysqlreplication``, converts them into
RowChangeEvent / SchemaChangeEvent, and hands them to an EventHandler one at
a time.  The blocking binlog read runs in the default executor so the event
loop stays free for signal handling.

Reconnects with exponential backoff when the replication connection drops,
resuming from the end of the last event the handler accepted.
"""

from __future__ import annotations

import asyncio
import socket
from contextlib import suppress
from typing import Any

import pymysql
import structlog
from pymysqlreplication import BinLogStreamReader
from pymysqlreplication.event import HeartbeatLogEvent, QueryEvent
from pymysqlreplication.row_event import (
    DeleteRowsEvent,
    UpdateRowsEvent,
    WriteRowsEvent,
)

from txn_relay.config.models import SourceConfig
from txn_relay.sources.base import (
    EventHandler,
    LogPosition,
    RowAction,
    RowChangeEvent,
    SchemaChangeEvent,
)

logger = structlog.get_logger()

_BACKOFF_BASE = 1.0
_BACKOFF_CAP = 60.0

# Transaction control statements arrive as QueryEvents but are not DDL.
_NON_DDL_QUERIES = frozenset({"BEGIN", "COMMIT", "ROLLBACK"})

_ROW_EVENT_TYPES: dict[type, tuple[RowAction, str]] = {
    WriteRowsEvent: (RowAction.INSERT, "values"),
    UpdateRowsEvent: (RowAction.UPDATE, "after_values"),
    DeleteRowsEvent: (RowAction.DELETE, "values"),
}


def _decode(value: Any) -> str:
    if isinstance(value, bytes):
        return value.decode("utf-8", errors="replace")
    return value or ""


def convert_event(
    binlog_event: Any, log_file: str | None
) -> list[RowChangeEvent] | SchemaChangeEvent | None:
    """Convert a pymysqlreplication event into relay events.

    Row events yield one RowChangeEvent per affected row, all sharing the
    binlog event's position.  Returns None for heartbeats and transaction
    control statements.

    Column values are taken in table order.  Unless the server runs with
    ``binlog_row_metadata=FULL`` the reader cannot name them and keys them
    ``UNKNOWN_COL0``, ``UNKNOWN_COL1``, ...; order is all the records need.
    """
    position = LogPosition(log_name=log_file or "", offset=binlog_event.packet.log_pos)

    for event_type, (action, values_key) in _ROW_EVENT_TYPES.items():
        if isinstance(binlog_event, event_type):
            return [
                RowChangeEvent(
                    source_table=binlog_event.table,
                    action=action,
                    position=position,
                    columns=tuple(row[values_key].values()),
                    schema=binlog_event.schema,
                )
                for row in binlog_event.rows
            ]

    if isinstance(binlog_event, QueryEvent):
        query = _decode(binlog_event.query).strip()
        if query.upper() in _NON_DDL_QUERIES:
            return None
        return SchemaChangeEvent(
            position=position,
            schema=_decode(binlog_event.schema),
            query=query,
        )
    return None


class _StreamStopped(Exception):
    """Raised in the reader thread when a stopping source is asked to connect."""


def _interrupt(conn: Any) -> None:
    # Wakes a thread blocked in recv() on this connection.
    sock = getattr(conn, "_sock", None)
    if sock is not None:
        with suppress(OSError):
            sock.shutdown(socket.SHUT_RDWR)


class BinlogEventSource:
    """Tails the MySQL binlog and delivers events in log order.

    The first connection starts at *start_position* (when it has a log
    name); later connections resume after the last delivered event.

    The server sends a heartbeat every ``heartbeat_seconds`` so a read on
    an idle binlog still returns periodically.  ``stop()`` additionally shuts
    down the replication sockets, waking a blocked reader at once, and the
    connection factory refuses to reconnect after that.
    """

    def __init__(
        self,
        config: SourceConfig,
        start_position: LogPosition | None = None,
        *,
        backoff_base: float = _BACKOFF_BASE,
        backoff_cap: float = _BACKOFF_CAP,
        max_retries: int = 0,
    ) -> None:
        self._config = config
        self._running = False
        self._stream: Any = None
        self._connections: list[Any] = []
        self._backoff_base = backoff_base
        self._backoff_cap = backoff_cap
        self._max_retries = max_retries
        self._log_file: str | None = None
        self._log_pos: int | None = None
        if start_position is not None and start_position.log_name:
            self._log_file = start_position.log_name
            self._log_pos = start_position.offset

    @property
    def resume_position(self) -> LogPosition | None:
        """Where the next connection will start streaming."""
        if self._log_file is None or self._log_pos is None:
            return None
        return LogPosition(self._log_file, self._log_pos)

    def _connect(self, **settings: Any) -> Any:
        """Connection factory for the stream reader (runs in the reader thread)."""
        if not self._running:
            raise _StreamStopped
        conn = pymysql.connect(**settings)
        self._connections.append(conn)
        return conn

    def _open_stream(self) -> Any:
        stream_kwargs: dict[str, Any] = {
            "connection_settings": {
                "host": self._config.host,
                "port": self._config.port,
                "user": self._config.username,
                "passwd": self._config.password.get_secret_value(),
                "connect_timeout": int(self._config.connect_timeout_seconds),
                "read_timeout": self._config.read_timeout_seconds,
            },
            "server_id": self._config.server_id,
            "blocking": True,
            "resume_stream": True,
            "slave_heartbeat": self._config.heartbeat_seconds,
            "pymysql_wrapper": self._connect,
            "only_events": [*_ROW_EVENT_TYPES, QueryEvent, HeartbeatLogEvent],
            "only_schemas": [self._config.database],
        }
        if self._log_file is not None:
            stream_kwargs["log_file"] = self._log_file
            stream_kwargs["log_pos"] = self._log_pos
        return BinLogStreamReader(**stream_kwargs)

    async def start(self, handler: EventHandler) -> None:
        """Stream until stopped, reconnecting on connection loss.

        Handler exceptions are not connection errors: they end the stream
        and propagate to the caller.
        """
        self._running = True
        attempt = 0
        backoff = self._backoff_base

        logger.info(
            "binlog.starting",
            host=self._config.host,
            database=self._config.database,
            server_id=self._config.server_id,
            position=str(self.resume_position) if self.resume_position else None,
        )

        while self._running:
            try:
                await self._stream_events(handler)
                break
            except (pymysql.MySQLError, OSError):
                if not self._running:
                    break
                attempt += 1
                if self._max_retries > 0 and attempt >= self._max_retries:
                    logger.error(
                        "binlog.max_retries_exceeded",
                        max_retries=self._max_retries,
                    )
                    raise
                logger.warning(
                    "binlog.connection_lost",
                    attempt=attempt,
                    backoff_seconds=backoff,
                    exc_info=True,
                )
                await asyncio.sleep(backoff)
                backoff = min(backoff * 2, self._backoff_cap)
            except asyncio.CancelledError:
                # The reader thread may still be inside fetchone.
                self._running = False
                raise
            finally:
                self._close_stream()

        logger.info("binlog.stopped")

    async def _stream_events(self, handler: EventHandler) -> None:
        loop = asyncio.get_running_loop()
        self._stream = self._open_stream()
        stream = self._stream
        logger.info("binlog.connected", position=str(self.resume_position))

        while self._running:
            try:
                binlog_event = await loop.run_in_executor(None, stream.fetchone)
            except _StreamStopped:
                return
            if binlog_event is None:
                # Stream closed underneath us (stop() or server side).
                if self._running:
                    msg = "Binlog stream ended unexpectedly"
                    raise pymysql.err.OperationalError(msg)
                return

            converted = convert_event(binlog_event, stream.log_file)
            if isinstance(converted, SchemaChangeEvent):
                await handler.on_schema_change(converted)
            elif converted is not None:
                for event in converted:
                    await handler.on_row_event(event)

            self._log_file = stream.log_file
            self._log_pos = stream.log_pos

    def _close_stream(self) -> None:
        connections, self._connections = self._connections, []
        for conn in connections:
            _interrupt(conn)
        if self._stream is not None:
            try:
                self._stream.close()
            except Exception:
                logger.debug("binlog.close_failed", exc_info=True)
            self._stream = None

    def stop(self) -> None:
        """Stop streaming and wake a reader blocked on the replication socket.

        The stream is closed by ``start()`` once the pending read returns.
        """
        self._running = False
        for conn in list(self._connections):
            _interrupt(conn)
