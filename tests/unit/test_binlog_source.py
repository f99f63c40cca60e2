"""Unit tests for the binlog event source with a mocked replication stream."""

from __future__ import annotations

import asyncio
import socket
import threading
import time
from unittest.mock import AsyncMock, MagicMock, patch

import pymysql
import pymysql.connections
import pytest
from pymysqlreplication.event import HeartbeatLogEvent, QueryEvent
from pymysqlreplication.row_event import (
    DeleteRowsEvent,
    UpdateRowsEvent,
    WriteRowsEvent,
)

from txn_relay.config.models import SourceConfig
from txn_relay.errors import DestinationWriteError
from txn_relay.pipeline.runner import Relay
from txn_relay.sources.base import (
    LogPosition,
    RowAction,
    RowChangeEvent,
    SchemaChangeEvent,
)
from txn_relay.sources.binlog import BinlogEventSource, _StreamStopped, convert_event


def _rows_event(cls, table, rows, log_pos=2000, schema="stevedb"):
    event = MagicMock(spec=cls)
    event.table = table
    event.schema = schema
    event.rows = rows
    event.packet = MagicMock(log_pos=log_pos)
    return event


def _query_event(query, log_pos=2000, schema=b"stevedb"):
    event = MagicMock(spec=QueryEvent)
    event.query = query
    event.schema = schema
    event.packet = MagicMock(log_pos=log_pos)
    return event


class RecordingHandler:
    def __init__(self, on_row=None) -> None:
        self.rows: list[RowChangeEvent] = []
        self.ddl: list[SchemaChangeEvent] = []
        self._on_row = on_row

    async def on_row_event(self, event):
        self.rows.append(event)
        if self._on_row is not None:
            self._on_row(event)

    async def on_schema_change(self, event):
        self.ddl.append(event)


class TestConvertEvent:
    def test_insert_rows_are_positional(self):
        event = _rows_event(
            WriteRowsEvent,
            "transaction_start",
            [{"values": {"transaction_pk": 42, "event_timestamp": "t", "x": 7}}],
            log_pos=1543,
        )
        [converted] = convert_event(event, "mysql-bin.000002")

        assert converted.source_table == "transaction_start"
        assert converted.action == RowAction.INSERT
        assert converted.position == LogPosition("mysql-bin.000002", 1543)
        assert converted.columns == (42, "t", 7)
        assert converted.schema == "stevedb"

    def test_multi_row_insert_yields_one_event_per_row(self):
        event = _rows_event(
            WriteRowsEvent,
            "transaction_start",
            [{"values": {"pk": 1}}, {"values": {"pk": 2}}],
        )
        converted = convert_event(event, "mysql-bin.000002")
        assert [e.columns for e in converted] == [(1,), (2,)]
        assert len({e.position for e in converted}) == 1

    def test_update_uses_after_image(self):
        event = _rows_event(
            UpdateRowsEvent,
            "transaction_start",
            [{"before_values": {"pk": 1, "v": "old"}, "after_values": {"pk": 1, "v": "new"}}],
        )
        [converted] = convert_event(event, "mysql-bin.000002")
        assert converted.action == RowAction.UPDATE
        assert converted.columns == (1, "new")

    def test_delete(self):
        event = _rows_event(DeleteRowsEvent, "transaction_stop", [{"values": {"pk": 9}}])
        [converted] = convert_event(event, "mysql-bin.000002")
        assert converted.action == RowAction.DELETE

    def test_ddl_becomes_schema_change(self):
        event = _query_event("ALTER TABLE transaction_start ADD x INT", log_pos=3000)
        converted = convert_event(event, "mysql-bin.000002")
        assert isinstance(converted, SchemaChangeEvent)
        assert converted.position == LogPosition("mysql-bin.000002", 3000)
        assert converted.schema == "stevedb"

    @pytest.mark.parametrize("query", ["BEGIN", "COMMIT", " begin "])
    def test_transaction_control_is_dropped(self, query):
        assert convert_event(_query_event(query), "mysql-bin.000002") is None

    def test_unknown_log_file(self):
        event = _rows_event(WriteRowsEvent, "t", [{"values": {"pk": 1}}])
        [converted] = convert_event(event, None)
        assert converted.position.log_name == ""

    def test_unnamed_columns_keep_table_order(self):
        # Without full row metadata the reader keys values UNKNOWN_COL<i>.
        values = {f"UNKNOWN_COL{i}": v for i, v in enumerate([5, "t0", 3, "TAG", "t1", 0])}
        event = _rows_event(WriteRowsEvent, "transaction_start", [{"values": values}])
        [converted] = convert_event(event, "mysql-bin.000002")
        assert converted.columns == (5, "t0", 3, "TAG", "t1", 0)

    def test_heartbeat_is_dropped(self):
        event = MagicMock(spec=HeartbeatLogEvent)
        event.packet = MagicMock(log_pos=2000)
        assert convert_event(event, "mysql-bin.000002") is None


class TestBinlogEventSource:
    def test_starts_at_baseline(self):
        source = BinlogEventSource(
            SourceConfig(database="stevedb", password="pw", server_id=7),
            LogPosition("mysql-bin.000002", 1543),
        )
        with patch("txn_relay.sources.binlog.BinLogStreamReader") as reader_cls:
            source._open_stream()

        kwargs = reader_cls.call_args.kwargs
        assert kwargs["log_file"] == "mysql-bin.000002"
        assert kwargs["log_pos"] == 1543
        assert kwargs["server_id"] == 7
        assert kwargs["blocking"] is True
        assert kwargs["resume_stream"] is True
        assert kwargs["only_schemas"] == ["stevedb"]
        assert kwargs["connection_settings"]["passwd"] == "pw"
        assert kwargs["slave_heartbeat"] == 5.0
        assert kwargs["connection_settings"]["read_timeout"] == 15.0
        assert kwargs["pymysql_wrapper"] == source._connect
        assert HeartbeatLogEvent in kwargs["only_events"]

    def test_unknown_baseline_streams_from_current(self):
        source = BinlogEventSource(SourceConfig(database="stevedb"), LogPosition("", 0))
        with patch("txn_relay.sources.binlog.BinLogStreamReader") as reader_cls:
            source._open_stream()
        assert "log_file" not in reader_cls.call_args.kwargs
        assert source.resume_position is None

    @pytest.mark.asyncio
    async def test_delivers_in_order_and_tracks_position(self):
        source = BinlogEventSource(
            SourceConfig(database="stevedb"), LogPosition("mysql-bin.000002", 4)
        )
        events = [
            _rows_event(WriteRowsEvent, "transaction_start", [{"values": {"pk": 1}}], 100),
            _query_event("ALTER TABLE x ADD y INT", 200),
            _rows_event(WriteRowsEvent, "transaction_stop", [{"values": {"pk": 1}}], 300),
        ]
        stream = MagicMock()
        stream.log_file = "mysql-bin.000002"
        stream.log_pos = 300
        stream.fetchone.side_effect = events

        handler = RecordingHandler(
            on_row=lambda e: source.stop() if e.source_table == "transaction_stop" else None
        )
        with patch.object(source, "_open_stream", return_value=stream):
            await source.start(handler)

        assert [e.source_table for e in handler.rows] == [
            "transaction_start",
            "transaction_stop",
        ]
        assert [e.position.offset for e in handler.rows] == [100, 300]
        assert len(handler.ddl) == 1
        assert source.resume_position == LogPosition("mysql-bin.000002", 300)
        stream.close.assert_called()

    @pytest.mark.asyncio
    async def test_handler_error_ends_stream_without_reconnect(self):
        source = BinlogEventSource(SourceConfig(database="stevedb"))
        stream = MagicMock()
        stream.log_file = "mysql-bin.000002"
        stream.fetchone.side_effect = [
            _rows_event(WriteRowsEvent, "transaction_start", [{"values": {"pk": 1}}]),
        ]

        def boom(event):
            raise DestinationWriteError("write failed")

        with (
            patch.object(source, "_open_stream", return_value=stream) as open_stream,
            pytest.raises(DestinationWriteError),
        ):
            await source.start(RecordingHandler(on_row=boom))

        open_stream.assert_called_once()

    @pytest.mark.asyncio
    async def test_reconnects_on_connection_error(self):
        source = BinlogEventSource(SourceConfig(database="stevedb"), max_retries=5)
        call_count = 0

        async def mock_stream(handler):
            nonlocal call_count
            call_count += 1
            if call_count < 3:
                raise pymysql.err.OperationalError(2013, "Lost connection")
            source._running = False

        with (
            patch.object(source, "_stream_events", side_effect=mock_stream),
            patch("txn_relay.sources.binlog.asyncio.sleep", new=AsyncMock()) as sleep,
        ):
            await source.start(RecordingHandler())

        assert call_count == 3
        assert [c.args[0] for c in sleep.await_args_list] == [1.0, 2.0]

    @pytest.mark.asyncio
    async def test_max_retries_exceeded_raises(self):
        source = BinlogEventSource(SourceConfig(database="stevedb"), max_retries=2)

        async def always_fail(handler):
            raise pymysql.err.OperationalError(2003, "Can't connect")

        with (
            patch.object(source, "_stream_events", side_effect=always_fail),
            patch("txn_relay.sources.binlog.asyncio.sleep", new=AsyncMock()),
            pytest.raises(pymysql.err.OperationalError),
        ):
            await source.start(RecordingHandler())

    @pytest.mark.asyncio
    async def test_unexpected_end_of_stream_reconnects(self):
        source = BinlogEventSource(SourceConfig(database="stevedb"), max_retries=1)
        stream = MagicMock()
        stream.fetchone.return_value = None

        with (
            patch.object(source, "_open_stream", return_value=stream),
            patch("txn_relay.sources.binlog.asyncio.sleep", new=AsyncMock()),
            pytest.raises(pymysql.err.OperationalError, match="ended unexpectedly"),
        ):
            await source.start(RecordingHandler())

    def test_connect_refused_once_stopped(self):
        source = BinlogEventSource(SourceConfig(database="stevedb"))
        source._running = True
        source.stop()
        with pytest.raises(_StreamStopped):
            source._connect(host="localhost")


_RealConnection = pymysql.connections.Connection


class _SilentPeers:
    """pymysql connections whose server end never sends a byte."""

    def __init__(self) -> None:
        self.peers: list[socket.socket] = []
        # Unblocks any reader left behind so a hang fails instead of stalling.
        self._watchdog = threading.Timer(10.0, self.close)

    def connect(self, **settings):
        ours, theirs = socket.socketpair()
        self.peers.append(theirs)
        conn = _RealConnection(defer_connect=True)
        conn._sock = ours
        conn._rfile = ours.makefile("rb")
        conn._next_seq_id = 0
        conn._current_timeout = None
        conn._closed = False
        return conn

    def __enter__(self):
        self._watchdog.start()
        return self

    def __exit__(self, *exc_info):
        self._watchdog.cancel()
        self.close()

    def close(self) -> None:
        for peer in self.peers:
            peer.close()


class _IdleBinlogStream:
    """Reads packets like BinLogStreamReader, reconnecting on a lost connection."""

    log_file = "mysql-bin.000004"
    log_pos = 1000

    def __init__(self, connect) -> None:
        self._connect = connect
        self._conn = None
        self.returned = threading.Event()

    def fetchone(self):
        try:
            while True:
                if self._conn is None:
                    self._conn = self._connect()
                try:
                    self._conn._read_packet()
                except pymysql.err.OperationalError:
                    self._conn = None
        finally:
            self.returned.set()

    def close(self) -> None:
        if self._conn is not None:
            self._conn.close()


@pytest.mark.asyncio
class TestStopWhileIdle:
    async def test_source_stop_wakes_blocked_reader(self):
        source = BinlogEventSource(
            SourceConfig(database="stevedb"), LogPosition("mysql-bin.000004", 1000)
        )
        stream = _IdleBinlogStream(source._connect)

        with (
            _SilentPeers() as peers,
            patch("txn_relay.sources.binlog.pymysql.connect", side_effect=peers.connect),
            patch.object(source, "_open_stream", return_value=stream),
        ):
            task = asyncio.create_task(source.start(RecordingHandler()))
            await asyncio.sleep(0.3)
            assert not task.done()

            started = time.monotonic()
            source.stop()
            await asyncio.wait_for(task, timeout=5)
            elapsed = time.monotonic() - started

        assert elapsed < 2
        assert stream.returned.is_set()
        assert len(peers.peers) == 1

    async def test_relay_shuts_down_on_idle_binlog(self, relay_config, pool, baseline):
        source = BinlogEventSource(relay_config.source, baseline)
        stream = _IdleBinlogStream(source._connect)
        relay = Relay(relay_config, source=source, pool=pool, baseline=baseline)

        with (
            _SilentPeers() as peers,
            patch("txn_relay.sources.binlog.pymysql.connect", side_effect=peers.connect),
            patch.object(source, "_open_stream", return_value=stream),
        ):
            run_task = asyncio.create_task(relay.run())
            await asyncio.sleep(0.3)
            assert not run_task.done()

            started = time.monotonic()
            relay.stop()
            await asyncio.wait_for(run_task, timeout=5)
            elapsed = time.monotonic() - started
            reader_done = await asyncio.to_thread(stream.returned.wait, 5)

        assert elapsed < 2
        assert reader_done
        assert pool.is_open is False
