"""Lifecycle writer protocol.

A writer turns one typed source record into exactly one destination
statement.  The router looks up ``record_type`` to validate a row's
columns before calling ``write``.
"""

from __future__ import annotations

from typing import Any, Protocol, runtime_checkable


@runtime_checkable
class LifecycleWriter(Protocol):
    """Protocol every transaction lifecycle writer must satisfy."""

    @property
    def name(self) -> str:
        """Short label for logs (``start``, ``stop``, ``stop_failed``)."""
        ...

    @property
    def record_type(self) -> Any:
        """Record class with a ``from_columns`` constructor."""
        ...

    async def write(self, record: Any) -> int:
        """Apply *record* to the destination; return the affected row count."""
        ...
