from __future__ import annotations

from datetime import UTC, datetime
from types import SimpleNamespace
from typing import Any

import psycopg2
import pytest

from phone_importer.config.loader import DatabaseConfig
from phone_importer.db import batch_upsert as batch_mod
from phone_importer.db.store import (
    SCHEMA_PATH,
    PostgresPhoneStore,
    StoreError,
    classify_db_error,
    resolve_dsn,
)
from phone_importer.models.store_rows import RawRow, UpsertOutcome, ValidatedRow


class FakeUniqueViolation(psycopg2.Error):
    pgcode = "23505"

    def __init__(self, constraint: str) -> None:
        super().__init__(f"duplicate key value violates unique constraint \"{constraint}\"")
        self._constraint = constraint

    @property
    def diag(self):  # type: ignore[override]
        return SimpleNamespace(constraint_name=self._constraint)


class FakeDeadlock(psycopg2.Error):
    pgcode = "40P01"


class FakeCursor:
    def __init__(self, conn: FakeConnection) -> None:
        self.conn = conn

    def __enter__(self) -> FakeCursor:
        return self

    def __exit__(self, *exc: Any) -> None:
        return None

    def execute(self, query: Any, params: Any = None) -> None:
        self.conn.executed.append((query, params))
        if self.conn.fail_with is not None:
            err, self.conn.fail_with = self.conn.fail_with, None
            raise err

    def fetchone(self):
        return self.conn.results.pop(0) if self.conn.results else None

    def fetchall(self):
        rows = self.conn.results
        self.conn.results = []
        return rows


class FakeConnection:
    def __init__(self) -> None:
        self.executed: list[tuple[Any, Any]] = []
        self.results: list[tuple[Any, ...]] = []
        self.fail_with: Exception | None = None
        self.commits = 0
        self.rollbacks = 0
        self.closed = 0

    def cursor(self) -> FakeCursor:
        return FakeCursor(self)

    def commit(self) -> None:
        self.commits += 1

    def rollback(self) -> None:
        self.rollbacks += 1

    def close(self) -> None:
        self.closed = 1


NOW = datetime(2024, 1, 1, tzinfo=UTC)


def _validated_tuple(rid: str = "a", phone: str = "88881111", email: str | None = None):
    return (rid, phone, True, "Acme", None, email, None, NOW, NOW)


def test_classify_unique_email():
    err = classify_db_error(FakeUniqueViolation("unique_email"))
    assert err.constraint == "unique_email"
    assert err.retryable is False


def test_classify_primary_key():
    assert classify_db_error(FakeUniqueViolation("check_table_pkey")).constraint == "primary_key"


def test_classify_retryable():
    assert classify_db_error(FakeDeadlock("deadlock detected")).retryable is True
    assert classify_db_error(psycopg2.OperationalError("server closed the connection")).retryable is True
    assert classify_db_error(psycopg2.ProgrammingError("syntax error")).retryable is False


def test_resolve_dsn_prefers_environment(monkeypatch):
    cfg = DatabaseConfig(host="db", port=5433, user="u", password="p", database="phones")
    monkeypatch.delenv("DATABASE_URL", raising=False)
    monkeypatch.delenv("PGDSN", raising=False)
    for var in ("PGHOST", "PGPORT", "PGUSER", "PGPASSWORD", "PGDATABASE"):
        monkeypatch.delenv(var, raising=False)
    assert resolve_dsn(cfg) == "host=db port=5433 user=u dbname=phones password=p"

    monkeypatch.setenv("PGHOST", "envhost")
    assert resolve_dsn(cfg).startswith("host=envhost ")

    monkeypatch.setenv("DATABASE_URL", "postgresql://x@y/z")
    assert resolve_dsn(cfg) == "postgresql://x@y/z"


def test_ensure_schema_executes_packaged_sql():
    conn = FakeConnection()
    PostgresPhoneStore(conn).ensure_schema()
    assert conn.executed[0][0] == SCHEMA_PATH.read_text(encoding="utf-8")
    assert "CREATE UNIQUE INDEX IF NOT EXISTS unique_email" in conn.executed[0][0]
    assert conn.commits == 1


def test_find_validated_by_id_maps_row():
    conn = FakeConnection()
    conn.results = [_validated_tuple(email="a@x.sg")]
    row = PostgresPhoneStore(conn).find_validated_by_id("a")
    assert row == ValidatedRow(
        id="a", phone="88881111", status=True, company_name="Acme", email="a@x.sg",
        created_at=NOW, updated_at=NOW,
    )
    assert conn.executed[0][1] == ("a",)


def test_find_validated_missing_returns_none():
    conn = FakeConnection()
    assert PostgresPhoneStore(conn).find_validated_by_id("nope") is None


def test_insert_validated_unique_email_is_classified_and_rolled_back():
    conn = FakeConnection()
    conn.fail_with = FakeUniqueViolation("unique_email")
    store = PostgresPhoneStore(conn)
    with pytest.raises(StoreError) as exc:
        store.insert_validated(ValidatedRow(id="b", phone="1", status=True, email="a@x.sg"))
    assert exc.value.constraint == "unique_email"
    assert conn.rollbacks == 1
    assert conn.commits == 0


def test_update_validated_fields_returns_row():
    conn = FakeConnection()
    conn.results = [_validated_tuple()]
    row = PostgresPhoneStore(conn).update_validated_fields("a", "88881111", {"company_name": "Acme"})
    assert row.company_name == "Acme"
    assert conn.executed[0][1] == ["88881111", "Acme", "a"]
    assert conn.commits == 1


def test_update_validated_fields_missing_row():
    conn = FakeConnection()
    with pytest.raises(StoreError):
        PostgresPhoneStore(conn).update_validated_fields("a", "1", {"status": True})


def test_upsert_raw_many_uses_batch_upsert(monkeypatch):
    calls: list[dict[str, Any]] = []

    def fake_execute_values(cur, query, rows, page_size=100, fetch=False):
        calls.append({"rows": rows, "page_size": page_size, "fetch": fetch})
        return [(True,), (False,)]

    monkeypatch.setattr(batch_mod, "execute_values", fake_execute_values)
    conn = FakeConnection()
    store = PostgresPhoneStore(conn, page_size=50)
    outcomes = store.upsert_raw_many([
        RawRow(id="a", phone_number="88881111", source_file="f", metadata={"row_number": 2}),
        RawRow(id="b", phone_number="91234567", source_file="f"),
    ])
    assert outcomes == [UpsertOutcome.INSERTED, UpsertOutcome.UPDATED]
    assert calls[0]["page_size"] == 50
    assert calls[0]["fetch"] is True
    first = calls[0]["rows"][0]
    assert first[:7] == ("a", "88881111", None, None, None, None, "f")
    assert first[7].adapted == {"row_number": 2}
    assert conn.commits == 1


def test_upsert_raw_many_failure_is_classified(monkeypatch):
    def boom(*args, **kwargs):
        raise psycopg2.OperationalError("connection lost")

    monkeypatch.setattr(batch_mod, "execute_values", boom)
    conn = FakeConnection()
    with pytest.raises(StoreError) as exc:
        PostgresPhoneStore(conn).upsert_raw_many([RawRow(id="a", phone_number="1", source_file="f")])
    assert exc.value.retryable is True
    assert conn.rollbacks == 1
