# Shared pytest fixtures
from __future__ import annotations

import tempfile
from collections.abc import Callable
from pathlib import Path
from typing import Any

import pandas as pd
import pytest

from phone_importer.db.store import InMemoryPhoneStore
from phone_importer.logging.init import reset_logging

SheetRows = list[list[Any]]


@pytest.fixture()
def temp_workdir(monkeypatch) -> Path:
    with tempfile.TemporaryDirectory() as d:
        p = Path(d)
        (p / "config").mkdir()
        (p / "data").mkdir()
        (p / "logs").mkdir()
        monkeypatch.chdir(p)
        monkeypatch.delenv("DATABASE_URL", raising=False)
        monkeypatch.delenv("PGDSN", raising=False)
        yield p


@pytest.fixture()
def sample_config_yaml() -> str:
    return """source_directory: ./data
source_glob: "*.xlsx"
mode: adaptive
national_format:
  country_code: "65"
  local_length: 8
  leading_digits: "689"
detection:
  header_scan_rows: 10
  sample_rows: 10
sync:
  raw_page_size: 100
  max_attempts: 2
  backoff_seconds: 0
placeholders: ["TBC"]
database:
  host: localhost
  port: 5432
  user: appuser
  password: secret
  database: phones
"""


@pytest.fixture()
def write_config(temp_workdir: Path, sample_config_yaml: str) -> Path:
    cfg = temp_workdir / "config" / "import.yml"
    cfg.write_text(sample_config_yaml, encoding="utf-8")
    return cfg


def write_workbook(path: Path, sheets: dict[str, SheetRows]) -> Path:
    """Write raw rows (no pandas header) to an .xlsx file."""
    path.parent.mkdir(parents=True, exist_ok=True)
    with pd.ExcelWriter(path, engine="openpyxl") as writer:
        for name, rows in sheets.items():
            pd.DataFrame(rows).to_excel(writer, sheet_name=name, header=False, index=False)
    return path


@pytest.fixture()
def make_workbook(tmp_path: Path) -> Callable[..., Path]:
    counter = {"n": 0}

    def _make(sheets: dict[str, SheetRows], name: str | None = None, directory: Path | None = None) -> Path:
        counter["n"] += 1
        file_name = name or f"book{counter['n']}.xlsx"
        return write_workbook((directory or tmp_path) / file_name, sheets)

    return _make


@pytest.fixture()
def memory_store() -> InMemoryPhoneStore:
    return InMemoryPhoneStore()


@pytest.fixture()
def no_sleep() -> Callable[[float], None]:
    delays: list[float] = []

    def _sleep(seconds: float) -> None:
        delays.append(seconds)

    _sleep.delays = delays  # type: ignore[attr-defined]
    return _sleep


@pytest.fixture(autouse=True)
def _fresh_logging():
    reset_logging()
    yield
    reset_logging()
