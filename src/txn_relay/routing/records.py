"""Typed records for the three transaction lifecycle tables.

Binlog rows carry positional values only.  Each record class pins the
column order of its source table and checks the tuple once, so a schema
drift surfaces as a ColumnMismatchError instead of a mis-assigned write.
"""

from __future__ import annotations

from dataclasses import dataclass
from typing import Any, ClassVar, Self

from txn_relay.errors import ColumnMismatchError


def _check_columns(
    record: str, columns: tuple[Any, ...] | list[Any], arity: int
) -> tuple[Any, ...]:
    values = tuple(columns)
    if len(values) != arity:
        msg = f"{record} expects {arity} columns, got {len(values)}"
        raise ColumnMismatchError(msg, columns=values)
    identifier = values[0]
    # bool is an int subclass but never a valid primary key.
    if not isinstance(identifier, int) or isinstance(identifier, bool):
        msg = (
            f"{record} expects an integer transaction id in column 0, "
            f"got {type(identifier).__name__}"
        )
        raise ColumnMismatchError(msg, columns=values)
    return values


@dataclass(frozen=True, slots=True)
class StartRecord:
    """Row of the transaction start table.

    Columns: transaction_pk, event_timestamp, connector_pk, id_tag,
    start_timestamp, start_value.
    """

    ARITY: ClassVar[int] = 6

    transaction_pk: int
    event_timestamp: Any
    connector_pk: Any
    id_tag: Any
    start_timestamp: Any
    start_value: Any

    @classmethod
    def from_columns(cls, columns: tuple[Any, ...] | list[Any]) -> Self:
        return cls(*_check_columns(cls.__name__, columns, cls.ARITY))


@dataclass(frozen=True, slots=True)
class StopRecord:
    """Row of the transaction stop table.

    Columns: transaction_pk, event_timestamp, event_actor, stop_timestamp,
    stop_value, stop_reason.
    """

    ARITY: ClassVar[int] = 6

    transaction_pk: int
    event_timestamp: Any
    event_actor: Any
    stop_timestamp: Any
    stop_value: Any
    stop_reason: Any

    @classmethod
    def from_columns(cls, columns: tuple[Any, ...] | list[Any]) -> Self:
        return cls(*_check_columns(cls.__name__, columns, cls.ARITY))


@dataclass(frozen=True, slots=True)
class StopFailedRecord:
    """Row of the failed transaction stop table: a stop row plus fail_reason."""

    ARITY: ClassVar[int] = 7

    transaction_pk: int
    event_timestamp: Any
    event_actor: Any
    stop_timestamp: Any
    stop_value: Any
    stop_reason: Any
    fail_reason: Any

    @classmethod
    def from_columns(cls, columns: tuple[Any, ...] | list[Any]) -> Self:
        return cls(*_check_columns(cls.__name__, columns, cls.ARITY))
