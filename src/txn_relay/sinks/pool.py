"""Long-lived PostgreSQL connection pool for the destination store."""

from __future__ import annotations

import contextlib
import time
from collections.abc import Iterator
from typing import Any

import psycopg2
import psycopg2.pool
import structlog
from tenacity import (
    retry,
    retry_if_exception_type,
    stop_after_attempt,
    wait_exponential_jitter,
)

from txn_relay.config.models import DestinationConfig, RetryConfig
from txn_relay.errors import DestinationConnectionError

logger = structlog.get_logger()


class DestinationPool:
    """Owns the destination connections; one acquire/release per statement.

    Pooled connections carry TCP keepalives, and one that sat idle longer
    than ``validate_after_idle_seconds`` is pinged on checkout and replaced
    if the server has dropped it.  Connections that fail with
    ``OperationalError`` are discarded instead of being returned to the
    pool.  When ``retry.max_attempts`` is above one, such statements are
    retried on a fresh connection.
    """

    def __init__(
        self, config: DestinationConfig, retry_config: RetryConfig | None = None
    ) -> None:
        self._config = config
        self._retry = retry_config or RetryConfig()
        self._pool: Any = None
        # id(conn) -> monotonic time it was last returned healthy
        self._last_used: dict[int, float] = {}

    @property
    def is_open(self) -> bool:
        return self._pool is not None

    def _connect_kwargs(self) -> dict[str, Any]:
        return {
            "host": self._config.host,
            "port": self._config.port,
            "dbname": self._config.database,
            "user": self._config.username,
            "password": self._config.password.get_secret_value(),
            "sslmode": self._config.sslmode.value,
            "connect_timeout": self._config.connect_timeout_seconds,
            "keepalives": 1,
            "keepalives_idle": self._config.keepalives_idle_seconds,
            "keepalives_interval": self._config.keepalives_interval_seconds,
            "keepalives_count": self._config.keepalives_count,
        }

    def open(self) -> None:
        """Create the pool and verify the destination answers."""
        try:
            self._pool = psycopg2.pool.ThreadedConnectionPool(
                self._config.pool_min_size,
                self._config.pool_max_size,
                **self._connect_kwargs(),
            )
            with self.connection() as conn:
                cur = conn.cursor()
                cur.execute("SELECT 1")
                cur.close()
        except psycopg2.Error as exc:
            self.close()
            msg = (
                f"Cannot connect to PostgreSQL destination at "
                f"{self._config.host}:{self._config.port}"
            )
            raise DestinationConnectionError(msg) from exc
        logger.info(
            "destination.pool_opened",
            host=self._config.host,
            database=self._config.database,
            max_size=self._config.pool_max_size,
        )

    def _idle_too_long(self, conn: Any) -> bool:
        last_used = self._last_used.get(id(conn))
        if last_used is None:
            return False
        return time.monotonic() - last_used >= self._config.validate_after_idle_seconds

    @staticmethod
    def _responds(conn: Any) -> bool:
        try:
            cur = conn.cursor()
            cur.execute("SELECT 1")
            cur.close()
            conn.rollback()
        except (psycopg2.OperationalError, psycopg2.InterfaceError):
            return False
        return True

    def _release(self, conn: Any, *, discard: bool) -> None:
        if discard:
            self._last_used.pop(id(conn), None)
        else:
            self._last_used[id(conn)] = time.monotonic()
        self._pool.putconn(conn, close=discard)

    def _checkout(self) -> Any:
        conn = self._pool.getconn()
        if conn.closed or (self._idle_too_long(conn) and not self._responds(conn)):
            logger.warning("destination.stale_connection_replaced")
            self._release(conn, discard=True)
            conn = self._pool.getconn()
        return conn

    @contextlib.contextmanager
    def connection(self) -> Iterator[Any]:
        """Borrow a live connection; broken ones are closed on release."""
        if self._pool is None:
            msg = "Destination pool is not open"
            raise psycopg2.InterfaceError(msg)
        conn = self._checkout()
        broken = False
        try:
            yield conn
        except psycopg2.OperationalError:
            broken = True
            raise
        finally:
            self._release(conn, discard=broken or bool(conn.closed))

    def execute(self, sql: str, params: tuple[Any, ...]) -> int:
        """Run one statement in its own transaction; return the row count."""

        @retry(
            stop=stop_after_attempt(self._retry.max_attempts),
            wait=wait_exponential_jitter(
                initial=self._retry.initial_wait_seconds,
                max=self._retry.max_wait_seconds,
                jitter=1 if self._retry.jitter else 0,
            ),
            retry=retry_if_exception_type(psycopg2.OperationalError),
            reraise=True,
        )
        def _execute() -> int:
            with self.connection() as conn:
                try:
                    cur = conn.cursor()
                    cur.execute(sql, params)
                    rowcount = int(cur.rowcount)
                    conn.commit()
                    cur.close()
                except psycopg2.OperationalError:
                    logger.warning("destination.connection_lost")
                    raise
                except Exception:
                    with contextlib.suppress(Exception):
                        conn.rollback()
                    raise
                return rowcount

        return _execute()

    def close(self) -> None:
        if self._pool is not None:
            self._pool.closeall()
            self._pool = None
            self._last_used.clear()
            logger.info("destination.pool_closed")
