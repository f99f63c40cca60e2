"""Startup baseline position and the replay filter."""

from __future__ import annotations

from typing import Any

import pymysql
import structlog

from txn_relay.config.models import SourceConfig
from txn_relay.errors import BaselineError, SourceConnectionError
from txn_relay.sources.base import LogPosition

logger = structlog.get_logger()

# MySQL 8.4 removed SHOW MASTER STATUS in favour of SHOW BINARY LOG STATUS.
_STATUS_QUERIES = ("SHOW MASTER STATUS", "SHOW BINARY LOG STATUS")


class PositionTracker:
    """Decides whether an event predates the startup baseline.

    Events before the baseline are assumed to be reflected in the
    destination already.  If the baseline log name is empty every event is
    treated as a replay: the relay then mirrors nothing until it is
    restarted against a source that reports a real position.
    """

    def __init__(self, baseline: LogPosition, *, rotation_aware: bool = False) -> None:
        self._baseline = baseline
        self._rotation_aware = rotation_aware

    @property
    def baseline(self) -> LogPosition:
        return self._baseline

    def is_replay(self, position: LogPosition) -> bool:
        if self._baseline.log_name == "":
            return True
        if (
            self._rotation_aware
            and position.log_name
            and position.log_name > self._baseline.log_name
        ):
            return False
        return position.offset < self._baseline.offset


def _connect(config: SourceConfig) -> Any:
    try:
        return pymysql.connect(
            host=config.host,
            port=config.port,
            user=config.username,
            password=config.password.get_secret_value(),
            database=config.database,
            connect_timeout=int(config.connect_timeout_seconds),
        )
    except pymysql.MySQLError as exc:
        msg = f"Cannot connect to MySQL source at {config.host}:{config.port}"
        raise SourceConnectionError(msg) from exc


def query_current_position(conn: Any) -> LogPosition:
    """Read the server's current binlog file and offset over *conn*."""
    last_exc: Exception | None = None
    for query in _STATUS_QUERIES:
        try:
            with conn.cursor() as cur:
                cur.execute(query)
                row = cur.fetchone()
        except pymysql.err.ProgrammingError as exc:
            last_exc = exc
            continue
        except pymysql.MySQLError as exc:
            msg = f"Binlog status query failed: {exc}"
            raise BaselineError(msg) from exc
        if row is None:
            msg = "Binlog status returned no rows; is binary logging enabled?"
            raise BaselineError(msg)
        log_name, offset = row[0], row[1]
        return LogPosition(log_name=log_name or "", offset=int(offset))

    msg = "Server supports no known binlog status query"
    raise BaselineError(msg) from last_exc


def fetch_current_position(config: SourceConfig) -> LogPosition:
    """Connect to the source and capture its current binlog position."""
    conn = _connect(config)
    try:
        position = query_current_position(conn)
    finally:
        conn.close()
    logger.info(
        "position.baseline_captured",
        log_name=position.log_name,
        offset=position.offset,
    )
    if not position.log_name:
        logger.warning(
            "position.baseline_unknown",
            detail="empty log name, every event will be treated as replay",
        )
    return position
