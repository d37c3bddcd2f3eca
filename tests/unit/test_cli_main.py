from __future__ import annotations

import logging
from pathlib import Path

import psycopg2
import pytest

from phone_importer.cli.__main__ import EXIT_FATAL, EXIT_PARTIAL_FAILURE, EXIT_SUCCESS_ALL
from phone_importer.cli.__main__ import main as cli_main
from phone_importer.db.store import InMemoryPhoneStore, StoreError
from phone_importer.logging.init import get_logger
from tests.conftest import write_workbook


@pytest.fixture()
def offline(monkeypatch):
    monkeypatch.setenv("DISABLE_DB_CONNECT", "1")


def test_cli_no_files_success(write_config, temp_workdir: Path, offline, capsys):
    code = cli_main([])
    out = capsys.readouterr().out
    assert code == EXIT_SUCCESS_ALL
    assert "INFO mode=dry-run (in-memory store)" in out
    assert "SUMMARY files=0 success=0 partial=0 failed=0 no_data=0 records=0" in out


def test_cli_imports_workbooks(write_config, temp_workdir: Path, offline, capsys):
    write_workbook(temp_workdir / "data" / "book.xlsx", {
        "S": [["Phone", "Company Name"], ["88881111", "Acme"], ["12345678", "TBC"]],
    })
    code = cli_main([])
    out = capsys.readouterr().out
    assert code == EXIT_SUCCESS_ALL
    assert "book.xlsx: status=success" in out
    assert "SUMMARY files=1 success=1 partial=0 failed=0 no_data=0 records=2 duplicates=0 inserted=2" in out


def test_cli_missing_config(temp_workdir: Path, capsys):
    code = cli_main([])
    assert code == EXIT_FATAL
    assert "ERROR config: config file not found" in capsys.readouterr().out


def test_cli_directory_missing(write_config, temp_workdir: Path, offline, capsys):
    text = write_config.read_text(encoding="utf-8").replace("./data", "./missing_dir")
    write_config.write_text(text, encoding="utf-8")
    code = cli_main([])
    assert code == EXIT_FATAL
    assert "ERROR processing: Directory not found:" in capsys.readouterr().out


def test_cli_corrupt_workbook_exit_code(write_config, temp_workdir: Path, offline, capsys):
    (temp_workdir / "data" / "broken.xlsx").write_bytes(b"garbage")
    code = cli_main(["--dry-run"])
    out = capsys.readouterr().out
    assert code == EXIT_PARTIAL_FAILURE
    assert "failed=1" in out
    assert list((temp_workdir / "logs").glob("errors-*.log"))


def test_cli_database_unreachable(write_config, temp_workdir: Path, monkeypatch, capsys):
    monkeypatch.delenv("DISABLE_DB_CONNECT", raising=False)

    def refuse(dsn):
        raise psycopg2.OperationalError("could not connect to server")

    monkeypatch.setattr(psycopg2, "connect", refuse)
    code = cli_main([])
    assert code == EXIT_FATAL
    assert "ERROR database: could not connect to server" in capsys.readouterr().out


def test_cli_env_file_enables_offline_mode(write_config, temp_workdir: Path, monkeypatch, capsys):
    monkeypatch.setenv("DISABLE_DB_CONNECT", "0")
    (temp_workdir / ".env").write_text("DISABLE_DB_CONNECT=1\n", encoding="utf-8")
    assert cli_main([]) == EXIT_SUCCESS_ALL
    assert "mode=dry-run" in capsys.readouterr().out


def test_cli_maintenance_passes(write_config, temp_workdir: Path, offline, capsys):
    write_workbook(temp_workdir / "data" / "book.xlsx", {
        "S": [["ID", "Phone", "Company Name"], ["A1", "88881111", "Acme"], ["A2", "91234567", "Beta"]],
    })
    code = cli_main(["--consolidate", "--revalidate", "--debug"])
    out = capsys.readouterr().out
    assert code == EXIT_SUCCESS_ALL
    assert "consolidate: groups=0" in out
    assert "revalidate: processed=2 valid=2 invalid=0 changed=0" in out
    assert "DEBUG debug mode enabled" in out


def test_cli_maintenance_unreadable_store_is_fatal(write_config, temp_workdir: Path, offline, monkeypatch, capsys):
    def unreadable(self):
        raise StoreError("connection reset", retryable=False)

    monkeypatch.setattr(InMemoryPhoneStore, "iter_validated", unreadable)
    code = cli_main(["--consolidate"])
    out = capsys.readouterr().out
    assert code == EXIT_FATAL
    assert "ERROR database: connection reset" in out
    assert "SUMMARY" not in out


def test_cli_debug_flag_sets_logger_level(write_config, temp_workdir: Path, offline):
    cli_main(["--debug"])
    logger = get_logger()
    assert logger.level == logging.DEBUG
    assert all(h.level == logging.DEBUG for h in logger.handlers)
