"""Full-record snapshots for the import change log.

A snapshot is a JSON-safe dict of every mapped column, keyed by column name.
It must be taken from the persisted state: ``before`` right after the record
is loaded, ``after`` once the write has been flushed.
"""

from __future__ import annotations

import enum
import uuid
from datetime import date, datetime
from decimal import Decimal
from typing import Any

from sqlalchemy import Date, DateTime, Numeric, Uuid
from sqlalchemy import Enum as SAEnum
from sqlalchemy import inspect as sa_inspect
from sqlalchemy.sql.schema import Table


def _to_json(value: Any) -> Any:
    if value is None:
        return None
    if isinstance(value, enum.Enum):
        return value.value
    if isinstance(value, uuid.UUID):
        return str(value)
    if isinstance(value, Decimal):
        return str(value)
    if isinstance(value, (datetime, date)):
        return value.isoformat()
    return value


def take_snapshot(record: object) -> dict[str, Any]:
    mapper = sa_inspect(record).mapper
    snapshot: dict[str, Any] = {}
    for attr in mapper.column_attrs:
        column = attr.columns[0]
        snapshot[column.key] = _to_json(getattr(record, attr.key))
    return snapshot


def _from_json(column_type: Any, value: Any) -> Any:
    if value is None:
        return None
    if isinstance(column_type, SAEnum) and column_type.enum_class is not None:
        return column_type.enum_class(value)
    if isinstance(column_type, Uuid):
        return value if isinstance(value, uuid.UUID) else uuid.UUID(str(value))
    if isinstance(column_type, DateTime):
        return value if isinstance(value, datetime) else datetime.fromisoformat(value)
    if isinstance(column_type, Date):
        return value if isinstance(value, date) else date.fromisoformat(value)
    if isinstance(column_type, Numeric):
        return Decimal(str(value))
    return value


def snapshot_to_row(table: Table, snapshot: dict[str, Any]) -> dict[str, Any]:
    """Convert a snapshot back into typed column values for a Core statement.

    Keys that no longer exist on the table are rejected instead of silently
    dropped, since a partial restore would not reproduce the original record.
    """
    unknown = set(snapshot) - set(table.c.keys())
    if unknown:
        raise KeyError(f"Snapshot for {table.name} has unknown columns: {', '.join(sorted(unknown))}")
    return {key: _from_json(table.c[key].type, value) for key, value in snapshot.items()}
