from __future__ import annotations

from dataclasses import dataclass, field
from datetime import datetime
from enum import Enum
from typing import Any

"""Result models for workbook processing and store synchronization.

ProcessingReport is what callers of ``process_workbook`` receive. RunResult
and WorkbookStat aggregate a directory run for the CLI SUMMARY line.
"""

__all__ = [
    "ProcessingStatus",
    "RowError",
    "SheetReport",
    "RecordFailure",
    "SyncResult",
    "ConsolidationResult",
    "RevalidationResult",
    "ProcessingReport",
    "WorkbookStat",
    "RunResult",
]


class ProcessingStatus(Enum):
    """Outcome of one workbook.

    - SUCCESS: records extracted and every write succeeded
    - PARTIAL: some records failed to persist (the rest were written)
    - NO_DATA: no sheet yielded a phone record (expected for mismatched uploads)
    - FAILED: the workbook could not be decoded; nothing was written
    """
    SUCCESS = "success"
    PARTIAL = "partial"
    NO_DATA = "no_data"
    FAILED = "failed"


@dataclass(frozen=True)
class RowError:
    """A row skipped during expansion."""
    sheet: str
    row_number: int  # 1-based
    message: str


@dataclass(frozen=True)
class SheetReport:
    sheet_name: str
    header_row_index: int | None
    data_rows: int
    records: int
    roles: dict[str, Any]
    row_errors: tuple[RowError, ...] = ()
    id_collisions: tuple[str, ...] = ()


@dataclass(frozen=True)
class RecordFailure:
    """A record that could not be persisted after the retry budget."""
    record_id: str
    phone: str
    stage: str  # raw | validated | consolidate | revalidate
    message: str
    retryable: bool
    attempts: int
    constraint: str | None = None


@dataclass
class SyncResult:
    """Counters accumulated while writing one batch to one store."""
    inserted: int = 0
    updated: int = 0
    unchanged: int = 0
    merged_fields: int = 0  # blank fields filled by the completeness merge
    failures: list[RecordFailure] = field(default_factory=list)

    @property
    def succeeded(self) -> int:
        return self.inserted + self.updated + self.unchanged

    @property
    def failed(self) -> int:
        return len(self.failures)


@dataclass(frozen=True)
class ConsolidationResult:
    groups_examined: int
    rows_updated: int
    fields_filled: int
    failures: tuple[RecordFailure, ...] = ()


@dataclass(frozen=True)
class RevalidationResult:
    processed: int
    valid: int
    invalid: int
    changed: int
    failures: tuple[RecordFailure, ...] = ()


@dataclass(frozen=True)
class ProcessingReport:
    source_label: str
    status: ProcessingStatus
    total_records: int
    records_per_sheet: dict[str, int]
    sheets: tuple[SheetReport, ...]
    duplicate_count: int
    duplicate_ids: tuple[str, ...]
    valid_numbers: int
    invalid_numbers: int
    raw_inserted: int = 0
    raw_updated: int = 0
    validated_inserted: int = 0
    validated_updated: int = 0
    merged_fields: int = 0
    failures: tuple[RecordFailure, ...] = ()
    error: str | None = None
    elapsed_seconds: float = 0.0

    @property
    def role_decisions(self) -> dict[str, dict[str, Any]]:
        return {s.sheet_name: s.roles for s in self.sheets}

    @property
    def row_errors(self) -> tuple[RowError, ...]:
        return tuple(e for s in self.sheets for e in s.row_errors)

    @property
    def id_collisions(self) -> tuple[str, ...]:
        return tuple(c for s in self.sheets for c in s.id_collisions)

    @property
    def no_extractable_data(self) -> bool:
        return self.status is ProcessingStatus.NO_DATA

    @property
    def persisted_records(self) -> int:
        return self.validated_inserted + self.validated_updated


@dataclass(frozen=True)
class WorkbookStat:
    """Per-workbook line of a directory run."""
    file_name: str
    status: str
    records: int
    failures: int
    elapsed_seconds: float


@dataclass(frozen=True)
class RunResult:
    """Aggregated results of a directory run."""
    success_files: int
    partial_files: int
    failed_files: int
    no_data_files: int
    total_records: int
    duplicate_count: int
    validated_inserted: int
    validated_updated: int
    start_time: datetime
    end_time: datetime
    elapsed_seconds: float
    file_stats: list[WorkbookStat] | None = None

    @property
    def total_files(self) -> int:
        return self.success_files + self.partial_files + self.failed_files + self.no_data_files
