from __future__ import annotations

import time
from collections.abc import Callable, Iterable, Sequence
from dataclasses import dataclass
from typing import Any

from psycopg2 import sql
from psycopg2.extras import execute_values

"""Batched INSERT ... ON CONFLICT for the raw store.

Rows are sent with ``psycopg2.extras.execute_values``; ``RETURNING (xmax = 0)``
tells inserted rows from updated ones so callers can report both counts.
Outcomes come back in input order.
"""

__all__ = [
    "BatchUpsertError",
    "BatchMetrics",
    "UpsertResult",
    "batch_upsert",
]


class BatchUpsertError(Exception):
    """Wraps the driver error of a failed page; the original is ``__cause__``."""


@dataclass(frozen=True)
class BatchMetrics:
    """Timing of a single execute_values call."""
    batch_size: int
    elapsed_seconds: float
    start_time: float
    end_time: float


@dataclass(frozen=True)
class UpsertResult:
    inserted: list[bool]  # per input row: True inserted, False updated

    @property
    def inserted_rows(self) -> int:
        return sum(1 for flag in self.inserted if flag)

    @property
    def updated_rows(self) -> int:
        return sum(1 for flag in self.inserted if not flag)


def build_upsert_sql(
    table: str,
    columns: Sequence[str],
    conflict_columns: Sequence[str],
    update_columns: Sequence[str],
) -> sql.Composed:
    assignments = sql.SQL(", ").join(
        sql.SQL("{col} = EXCLUDED.{col}").format(col=sql.Identifier(c)) for c in update_columns
    )
    return sql.SQL(
        "INSERT INTO {table} ({cols}) VALUES %s "
        "ON CONFLICT ({conflict}) DO UPDATE SET {assignments} "
        "RETURNING (xmax = 0) AS inserted"
    ).format(
        table=sql.Identifier(table),
        cols=sql.SQL(", ").join(sql.Identifier(c) for c in columns),
        conflict=sql.SQL(", ").join(sql.Identifier(c) for c in conflict_columns),
        assignments=assignments,
    )


def batch_upsert(
    cursor: Any,
    table: str,
    columns: Sequence[str],
    rows: Iterable[Sequence[Any]],
    conflict_columns: Sequence[str] = ("id",),
    update_columns: Sequence[str] | None = None,
    page_size: int = 500,
    metrics_callback: Callable[[BatchMetrics], None] | None = None,
) -> UpsertResult:
    """Upsert ``rows`` into ``table``.

    ``update_columns`` defaults to every column outside the conflict target,
    i.e. a wholesale overwrite of the existing row. ``metrics_callback`` is
    not invoked for an empty ``rows``.
    """
    rows_list = list(rows)
    if not rows_list:
        return UpsertResult(inserted=[])

    if update_columns is None:
        update_columns = [c for c in columns if c not in conflict_columns]
    query = build_upsert_sql(table, columns, conflict_columns, update_columns)

    start_time = time.time()
    try:
        returned = execute_values(cursor, query, rows_list, page_size=page_size, fetch=True)
    except Exception as e:
        raise BatchUpsertError(str(e)) from e
    finally:
        end_time = time.time()
        if metrics_callback is not None:
            metrics_callback(
                BatchMetrics(
                    batch_size=len(rows_list),
                    elapsed_seconds=end_time - start_time,
                    start_time=start_time,
                    end_time=end_time,
                )
            )

    return UpsertResult(inserted=[bool(r[0]) for r in returned or []])
