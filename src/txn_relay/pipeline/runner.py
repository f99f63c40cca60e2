"""Relay orchestrator: baseline, destination pool, then the binlog stream."""

from __future__ import annotations

import asyncio
import signal
from contextlib import suppress
from typing import Any

import structlog

from txn_relay.config.models import RelayConfig, WriteErrorPolicy
from txn_relay.errors import EventProcessingError
from txn_relay.routing.router import (
    RouteResult,
    TransactionEventRouter,
    build_routing_rules,
)
from txn_relay.sinks.lifecycle import StartWriter, StopFailedWriter, StopNormalWriter
from txn_relay.sinks.pool import DestinationPool
from txn_relay.sources.base import (
    EventSource,
    LogPosition,
    RowChangeEvent,
    SchemaChangeEvent,
)
from txn_relay.sources.binlog import BinlogEventSource
from txn_relay.sources.position import PositionTracker, fetch_current_position

logger = structlog.get_logger()


class Relay:
    """Mirrors transaction lifecycle rows from the MySQL binlog into PostgreSQL.

    Startup is strictly ordered and any failure aborts it: capture the
    baseline position, open the destination pool, then stream.  The stream
    runs as its own task; a termination signal (or ``stop()``) cancels it.

    With ``on_write_error=stop`` the first event that cannot be mirrored
    ends the relay and the error is re-raised from ``run()``.  With ``skip``
    the event is logged and streaming continues.
    """

    def __init__(
        self,
        config: RelayConfig,
        *,
        source: EventSource | None = None,
        pool: DestinationPool | None = None,
        baseline: LogPosition | None = None,
    ) -> None:
        self._config = config
        self._source = source
        self._pool = pool or DestinationPool(config.destination, config.retry)
        self._baseline = baseline
        self._router: TransactionEventRouter | None = None
        self._stop_event: asyncio.Event | None = None
        self._stream_task: asyncio.Task[None] | None = None
        self._skipped = 0

    @property
    def router(self) -> TransactionEventRouter | None:
        return self._router

    @property
    def baseline(self) -> LogPosition | None:
        return self._baseline

    def start(self) -> None:
        """Run the relay until a termination signal arrives (blocking)."""
        asyncio.run(self._start_async())

    async def _start_async(self) -> None:
        loop = asyncio.get_running_loop()
        for sig in (signal.SIGINT, signal.SIGTERM):
            loop.add_signal_handler(sig, self._on_signal, sig)
        try:
            await self.run()
        finally:
            for sig in (signal.SIGINT, signal.SIGTERM):
                loop.remove_signal_handler(sig)

    def _on_signal(self, signum: int) -> None:
        logger.info("relay.shutdown_signal", signal=signal.Signals(signum).name)
        self.stop()

    def _build_router(self, baseline: LogPosition) -> TransactionEventRouter:
        table = self._config.destination.target_table
        rules = build_routing_rules(
            self._config.source.tables,
            start=StartWriter(self._pool, table),
            stop=StopNormalWriter(self._pool, table),
            stop_failed=StopFailedWriter(self._pool, table),
        )
        tracker = PositionTracker(
            baseline, rotation_aware=self._config.source.rotation_aware
        )
        return TransactionEventRouter(tracker, rules)

    async def run(self) -> None:
        self._stop_event = asyncio.Event()

        # 1. Baseline, read before anything streams
        if self._baseline is None:
            self._baseline = fetch_current_position(self._config.source)

        # 2. Destination pool
        if not self._pool.is_open:
            self._pool.open()

        try:
            # 3. Router + writers
            self._router = self._build_router(self._baseline)

            # 4. Event source, starting at the baseline
            if self._source is None:
                self._source = BinlogEventSource(
                    self._config.source,
                    self._baseline,
                    backoff_base=self._config.reconnect_backoff_base,
                    backoff_cap=self._config.reconnect_backoff_cap,
                    max_retries=self._config.reconnect_max_retries,
                )

            logger.info(
                "relay.started",
                relay_id=self._config.relay_id,
                baseline=str(self._baseline),
                tables=sorted(self._router.tracked_tables),
                target_table=self._config.destination.target_table,
                on_write_error=self._config.on_write_error.value,
            )

            # 5. Stream until the source ends, fails, or we are told to stop
            self._stream_task = asyncio.create_task(self._source.start(self))
            stop_waiter = asyncio.create_task(self._stop_event.wait())
            try:
                await asyncio.wait(
                    {self._stream_task, stop_waiter},
                    return_when=asyncio.FIRST_COMPLETED,
                )
            finally:
                stop_waiter.cancel()

            if self._stream_task.done() and not self._stream_task.cancelled():
                exc = self._stream_task.exception()
                if exc is not None:
                    # Reported once, by whoever catches it from run().
                    raise exc
                if not self._stop_event.is_set():
                    logger.warning("relay.stream_ended", relay_id=self._config.relay_id)
        finally:
            await self._shutdown()

    async def on_row_event(self, event: RowChangeEvent) -> RouteResult | None:
        assert self._router is not None
        try:
            return await self._router.on_row_event(event)
        except EventProcessingError as exc:
            if self._config.on_write_error == WriteErrorPolicy.STOP:
                raise
            self._skipped += 1
            logger.error(
                "relay.event_skipped",
                table=event.source_table,
                position=str(event.position),
                error=str(exc),
                error_type=type(exc).__name__,
                skipped_total=self._skipped,
            )
            return None

    async def on_schema_change(self, event: SchemaChangeEvent) -> RouteResult:
        assert self._router is not None
        return await self._router.on_schema_change(event)

    async def _shutdown(self) -> None:
        """Cancel the stream task, then release destination connections."""
        if self._source is not None:
            self._source.stop()
        task = self._stream_task
        if task is not None and not task.done():
            task.cancel()
            with suppress(asyncio.CancelledError):
                await task
        self._stream_task = None

        self._pool.close()

        stats: dict[str, Any] = {}
        if self._router is not None:
            stats = {status.value: n for status, n in self._router.stats.items()}
        logger.info(
            "relay.stopped",
            relay_id=self._config.relay_id,
            skipped=self._skipped,
            **stats,
        )

    def stop(self) -> None:
        """Ask the relay to stop; safe to call from a signal handler."""
        if self._stop_event is not None:
            self._stop_event.set()
