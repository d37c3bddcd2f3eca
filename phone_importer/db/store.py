from __future__ import annotations

import logging
import os
from collections.abc import Callable, Iterator, Mapping, Sequence
from dataclasses import replace
from datetime import UTC, datetime
from pathlib import Path
from typing import Any, Protocol

import psycopg2
from psycopg2 import errorcodes, sql
from psycopg2.extras import Json

from ..config.loader import DatabaseConfig
from ..models.phone_record import COMPANY_FIELDS, is_blank
from ..models.store_rows import RawRow, UpsertOutcome, ValidatedRow
from .batch_upsert import BatchUpsertError, batch_upsert

"""Persistence layer for the raw and validated phone stores.

``PhoneStore`` is the interface the synchronizer talks to. Two
implementations ship with the package:

- ``InMemoryPhoneStore``: dict backed, enforces the primary key and the
  unique email constraint; used for dry runs and tests
- ``PostgresPhoneStore``: psycopg2 backed, one commit per write so a failing
  record never rolls back its neighbours

Every failure surfaces as ``StoreError`` with a ``retryable`` flag.
"""

__all__ = [
    "SCHEMA_PATH",
    "RAW_TABLE",
    "VALIDATED_TABLE",
    "StoreError",
    "PhoneStore",
    "InMemoryPhoneStore",
    "PostgresPhoneStore",
    "classify_db_error",
    "resolve_dsn",
]

logger = logging.getLogger(__name__)

SCHEMA_PATH = Path(__file__).with_name("schema.sql")
RAW_TABLE = "backup_table"
VALIDATED_TABLE = "check_table"
UNIQUE_EMAIL = "unique_email"
PRIMARY_KEY = "primary_key"

RAW_COLUMNS = (
    "id", "phone_number", "company_name", "physical_address", "email", "website",
    "source_file", "metadata",
)
VALIDATED_COLUMNS = (
    "id", "phone", "status", "company_name", "physical_address", "email", "website",
    "created_at", "updated_at",
)
UPDATABLE_FIELDS = frozenset(COMPANY_FIELDS) | {"status"}

_RETRYABLE_CODES = {
    errorcodes.SERIALIZATION_FAILURE,  # 40001
    errorcodes.DEADLOCK_DETECTED,  # 40P01
    errorcodes.LOCK_NOT_AVAILABLE,  # 55P03
}


class StoreError(Exception):
    """A store operation failed.

    ``retryable`` marks transient failures (lost connection, serialization
    failure, deadlock). ``constraint`` names the violated constraint, if any.
    """

    def __init__(self, message: str, retryable: bool = False, constraint: str | None = None) -> None:
        super().__init__(message)
        self.message = message
        self.retryable = retryable
        self.constraint = constraint


class PhoneStore(Protocol):
    def find_raw_by_id(self, record_id: str) -> RawRow | None: ...

    def upsert_raw(self, row: RawRow) -> UpsertOutcome: ...

    def upsert_raw_many(self, rows: Sequence[RawRow]) -> list[UpsertOutcome]: ...

    def find_validated_by_id(self, record_id: str) -> ValidatedRow | None: ...

    def find_validated_by_id_and_phone(self, record_id: str, phone: str) -> ValidatedRow | None: ...

    def find_validated_by_phone(self, phone: str) -> list[ValidatedRow]: ...

    def iter_validated(self) -> Iterator[ValidatedRow]: ...

    def insert_validated(self, row: ValidatedRow) -> ValidatedRow: ...

    def update_validated_fields(
        self, record_id: str, phone: str, fields: Mapping[str, Any]
    ) -> ValidatedRow: ...


def _check_fields(fields: Mapping[str, Any]) -> None:
    unknown = set(fields) - UPDATABLE_FIELDS
    if unknown:
        raise StoreError(f"cannot update fields: {sorted(unknown)}")


def _utcnow() -> datetime:
    return datetime.now(UTC)


class InMemoryPhoneStore:
    """Dict-backed store with the same constraints as the PostgreSQL schema."""

    def __init__(self, clock: Callable[[], datetime] = _utcnow) -> None:
        self._clock = clock
        self.raw: dict[str, RawRow] = {}
        self.validated: dict[str, ValidatedRow] = {}

    # raw store

    def find_raw_by_id(self, record_id: str) -> RawRow | None:
        return self.raw.get(record_id)

    def upsert_raw(self, row: RawRow) -> UpsertOutcome:
        now = self._clock()
        existing = self.raw.get(row.id)
        if existing is None:
            self.raw[row.id] = replace(row, created_at=now, updated_at=now)
            return UpsertOutcome.INSERTED
        self.raw[row.id] = replace(row, created_at=existing.created_at, updated_at=now)
        return UpsertOutcome.UPDATED

    def upsert_raw_many(self, rows: Sequence[RawRow]) -> list[UpsertOutcome]:
        return [self.upsert_raw(r) for r in rows]

    # validated store

    def find_validated_by_id(self, record_id: str) -> ValidatedRow | None:
        return self.validated.get(record_id)

    def find_validated_by_id_and_phone(self, record_id: str, phone: str) -> ValidatedRow | None:
        row = self.validated.get(record_id)
        if row is not None and row.phone == phone:
            return row
        return None

    def find_validated_by_phone(self, phone: str) -> list[ValidatedRow]:
        return [r for r in self.validated.values() if r.phone == phone]

    def iter_validated(self) -> Iterator[ValidatedRow]:
        return iter(list(self.validated.values()))

    def _check_email(self, record_id: str, email: str | None) -> None:
        if is_blank(email):
            return
        for other in self.validated.values():
            if other.id != record_id and other.email == email:
                raise StoreError(
                    f"email {email!r} already belongs to record {other.id}",
                    retryable=False,
                    constraint=UNIQUE_EMAIL,
                )

    def insert_validated(self, row: ValidatedRow) -> ValidatedRow:
        if row.id in self.validated:
            raise StoreError(f"record {row.id} already exists", constraint=PRIMARY_KEY)
        self._check_email(row.id, row.email)
        now = self._clock()
        stored = replace(row, created_at=row.created_at or now, updated_at=now)
        self.validated[row.id] = stored
        return stored

    def update_validated_fields(
        self, record_id: str, phone: str, fields: Mapping[str, Any]
    ) -> ValidatedRow:
        _check_fields(fields)
        existing = self.validated.get(record_id)
        if existing is None:
            raise StoreError(f"record {record_id} not found")
        if "email" in fields:
            self._check_email(record_id, fields["email"])
        stored = replace(existing, phone=phone, updated_at=self._clock(), **fields)
        self.validated[record_id] = stored
        return stored


def classify_db_error(err: BaseException) -> StoreError:
    """Map a psycopg2 error onto StoreError."""
    code = getattr(err, "pgcode", None)
    if code == errorcodes.UNIQUE_VIOLATION:
        diag = getattr(err, "diag", None)
        name = getattr(diag, "constraint_name", None) or ""
        if name == UNIQUE_EMAIL or "email" in name:
            constraint = UNIQUE_EMAIL
        elif name.endswith("_pkey"):
            constraint = PRIMARY_KEY
        else:
            constraint = name or None
        return StoreError(str(err).strip(), retryable=False, constraint=constraint)
    if code in _RETRYABLE_CODES:
        return StoreError(str(err).strip(), retryable=True)
    if isinstance(err, (psycopg2.OperationalError, psycopg2.InterfaceError)):
        return StoreError(str(err).strip(), retryable=True)
    return StoreError(str(err).strip(), retryable=False)


def resolve_dsn(db_cfg: DatabaseConfig) -> str:
    """Connection string: DATABASE_URL / PGDSN, then the config DSN, then PG* over config fields."""
    dsn = os.getenv("DATABASE_URL") or os.getenv("PGDSN") or db_cfg.dsn
    if dsn:
        return dsn
    host = os.getenv("PGHOST", db_cfg.host or "localhost")
    port = os.getenv("PGPORT", str(db_cfg.port) if db_cfg.port else "5432")
    user = os.getenv("PGUSER", db_cfg.user or "postgres")
    password = os.getenv("PGPASSWORD", db_cfg.password or "")
    database = os.getenv("PGDATABASE", db_cfg.database or "postgres")
    dsn = f"host={host} port={port} user={user} dbname={database}"
    if password:
        dsn += f" password={password}"
    return dsn


def _validated_from_tuple(values: Sequence[Any]) -> ValidatedRow:
    return ValidatedRow(**dict(zip(VALIDATED_COLUMNS, values)))


class PostgresPhoneStore:
    def __init__(self, conn: Any, page_size: int = 500) -> None:
        self.conn = conn
        self.page_size = page_size

    @classmethod
    def connect(cls, db_cfg: DatabaseConfig, page_size: int = 500) -> PostgresPhoneStore:
        try:
            conn = psycopg2.connect(resolve_dsn(db_cfg))
        except psycopg2.Error as e:
            raise classify_db_error(e) from e
        conn.autocommit = False
        return cls(conn, page_size=page_size)

    def close(self) -> None:
        if not self.conn.closed:
            self.conn.close()

    def ensure_schema(self) -> None:
        self._write(lambda cur: cur.execute(SCHEMA_PATH.read_text(encoding="utf-8")))
        logger.info("schema ensured (%s, %s)", RAW_TABLE, VALIDATED_TABLE)

    def _rollback(self) -> None:
        if not self.conn.closed:
            self.conn.rollback()

    def _write(self, action: Callable[[Any], Any]) -> Any:
        """Run ``action(cursor)`` and commit; roll back and classify on failure."""
        try:
            with self.conn.cursor() as cur:
                result = action(cur)
            self.conn.commit()
            return result
        except BatchUpsertError as e:
            self._rollback()
            raise classify_db_error(e.__cause__ or e) from e
        except psycopg2.Error as e:
            self._rollback()
            raise classify_db_error(e) from e

    def _read(self, query: sql.Composable, params: Sequence[Any]) -> list[tuple[Any, ...]]:
        try:
            with self.conn.cursor() as cur:
                cur.execute(query, params)
                rows = cur.fetchall()
            self.conn.commit()
            return rows
        except psycopg2.Error as e:
            self._rollback()
            raise classify_db_error(e) from e

    # raw store

    def find_raw_by_id(self, record_id: str) -> RawRow | None:
        query = sql.SQL(
            "SELECT id, phone_number, source_file, company_name, physical_address, email, website, "
            "metadata, created_at, updated_at FROM {table} WHERE id = %s"
        ).format(table=sql.Identifier(RAW_TABLE))
        rows = self._read(query, (record_id,))
        if not rows:
            return None
        (rid, phone, source, name, address, email, website, meta, created, updated) = rows[0]
        return RawRow(
            id=rid, phone_number=phone, source_file=source, company_name=name,
            physical_address=address, email=email, website=website,
            metadata=meta or {}, created_at=created, updated_at=updated,
        )

    @staticmethod
    def _raw_values(row: RawRow) -> tuple[Any, ...]:
        return (
            row.id, row.phone_number, row.company_name, row.physical_address, row.email,
            row.website, row.source_file, Json(row.metadata),
        )

    def upsert_raw_many(self, rows: Sequence[RawRow]) -> list[UpsertOutcome]:
        if not rows:
            return []
        result = self._write(
            lambda cur: batch_upsert(
                cur, RAW_TABLE, RAW_COLUMNS, [self._raw_values(r) for r in rows],
                conflict_columns=("id",), page_size=self.page_size,
                metrics_callback=lambda m: logger.debug(
                    "raw page: %d row(s) in %.3fs", m.batch_size, m.elapsed_seconds
                ),
            )
        )
        return [UpsertOutcome.INSERTED if flag else UpsertOutcome.UPDATED for flag in result.inserted]

    def upsert_raw(self, row: RawRow) -> UpsertOutcome:
        return self.upsert_raw_many([row])[0]

    # validated store

    def _select_validated(self, where: str, params: Sequence[Any]) -> list[ValidatedRow]:
        query = sql.SQL("SELECT {cols} FROM {table} WHERE " + where + " ORDER BY created_at, id").format(
            cols=sql.SQL(", ").join(sql.Identifier(c) for c in VALIDATED_COLUMNS),
            table=sql.Identifier(VALIDATED_TABLE),
        )
        return [_validated_from_tuple(r) for r in self._read(query, params)]

    def find_validated_by_id(self, record_id: str) -> ValidatedRow | None:
        rows = self._select_validated("id = %s", (record_id,))
        return rows[0] if rows else None

    def find_validated_by_id_and_phone(self, record_id: str, phone: str) -> ValidatedRow | None:
        rows = self._select_validated("id = %s AND phone = %s", (record_id, phone))
        return rows[0] if rows else None

    def find_validated_by_phone(self, phone: str) -> list[ValidatedRow]:
        return self._select_validated("phone = %s", (phone,))

    def iter_validated(self) -> Iterator[ValidatedRow]:
        return iter(self._select_validated("TRUE", ()))

    def insert_validated(self, row: ValidatedRow) -> ValidatedRow:
        cols = [c for c in VALIDATED_COLUMNS if c not in ("created_at", "updated_at")]
        if row.created_at is not None:
            cols.append("created_at")
        query = sql.SQL("INSERT INTO {table} ({cols}) VALUES ({vals}) RETURNING {ret}").format(
            table=sql.Identifier(VALIDATED_TABLE),
            cols=sql.SQL(", ").join(sql.Identifier(c) for c in cols),
            vals=sql.SQL(", ").join(sql.Placeholder() for _ in cols),
            ret=sql.SQL(", ").join(sql.Identifier(c) for c in VALIDATED_COLUMNS),
        )
        params = [getattr(row, c) for c in cols]

        def run(cur: Any) -> tuple[Any, ...]:
            cur.execute(query, params)
            return cur.fetchone()

        return _validated_from_tuple(self._write(run))

    def update_validated_fields(
        self, record_id: str, phone: str, fields: Mapping[str, Any]
    ) -> ValidatedRow:
        _check_fields(fields)
        names = ["phone", *fields]
        query = sql.SQL("UPDATE {table} SET {assign} WHERE id = %s RETURNING {ret}").format(
            table=sql.Identifier(VALIDATED_TABLE),
            assign=sql.SQL(", ").join(
                sql.SQL("{} = %s").format(sql.Identifier(n)) for n in names
            ),
            ret=sql.SQL(", ").join(sql.Identifier(c) for c in VALIDATED_COLUMNS),
        )
        params = [phone, *fields.values(), record_id]

        def run(cur: Any) -> tuple[Any, ...] | None:
            cur.execute(query, params)
            return cur.fetchone()

        returned = self._write(run)
        if returned is None:
            raise StoreError(f"record {record_id} not found")
        return _validated_from_tuple(returned)
