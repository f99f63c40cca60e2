"""Exception hierarchy for the relay.

Startup errors (``BaselineError``, ``*ConnectionError``) abort the process
before streaming begins.  ``EventProcessingError`` subclasses are raised
per event and travel back through the router to the event source.
"""

from __future__ import annotations

from typing import Any


class RelayError(Exception):
    """Base class for all relay errors."""


class BaselineError(RelayError):
    """The current binlog position could not be determined at startup."""


class SourceConnectionError(RelayError):
    """The MySQL source could not be reached."""


class DestinationConnectionError(RelayError):
    """The PostgreSQL destination could not be reached."""


class EventProcessingError(RelayError):
    """A single row-change event could not be mirrored."""

    def __init__(self, message: str, *, table: str | None = None) -> None:
        super().__init__(message)
        self.table = table


class ColumnMismatchError(EventProcessingError):
    """A column tuple does not match the record shape of its source table."""

    def __init__(
        self,
        message: str,
        *,
        table: str | None = None,
        columns: tuple[Any, ...] = (),
    ) -> None:
        super().__init__(message, table=table)
        self.columns = columns


class DestinationWriteError(EventProcessingError):
    """The destination rejected or failed a write."""
