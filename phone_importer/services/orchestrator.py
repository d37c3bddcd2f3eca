from __future__ import annotations

import logging
import re
import time
from collections.abc import Callable
from datetime import UTC, datetime
from pathlib import Path

from ..config.loader import PipelineConfig
from ..db.store import PhoneStore
from ..excel.reader import CellGrid, DecodeError, Document, decode
from ..excel.structure import detect_structure, is_blank_row
from ..logging.error_log import ErrorLogBuffer
from ..models.column_roles import ColumnRoleMap, CompanyField, RoleSource
from ..models.error_record import FILE_LEVEL_SHEET, ErrorRecord
from ..models.phone_record import PhoneRecord, RowContext
from ..models.processing_result import (
    ProcessingReport,
    ProcessingStatus,
    RecordFailure,
    RunResult,
    SheetReport,
    WorkbookStat,
)
from .column_roles import ColumnRoleCache, infer_column_roles
from .phone import NationalFormat, PhoneNormalizer
from .progress import ProgressTracker
from .reconciler import dedupe_batch
from .row_expander import expand_sheet
from .summary import render_report_line
from .synchronizer import RetryPolicy, Synchronizer
from .values import ValueFilter

"""Workbook pipeline.

``process_workbook`` runs one uploaded document end to end:

decode -> per sheet: detect structure, infer column roles, expand rows
-> raw store sync -> batch dedupe -> validated store promotion

``process_workbook_direct`` is the simplified ingest for workbooks that follow
the fixed ``Id / Phone / Company Name / ...`` layout. ``process_directory``
drives either one over every workbook of the configured source directory.
"""

__all__ = [
    "ProcessingError",
    "DIRECT_HEADERS",
    "process_workbook",
    "process_workbook_direct",
    "scan_workbooks",
    "process_directory",
]

logger = logging.getLogger(__name__)


class ProcessingError(Exception):
    """Fatal error of a directory run (missing or unreadable source directory)."""


class _Pipeline:
    """Per-call collaborators built from the config."""

    def __init__(
        self,
        store: PhoneStore,
        config: PipelineConfig,
        sleep: Callable[[float], None],
    ) -> None:
        self.config = config
        self.normalizer = PhoneNormalizer(NationalFormat.from_config(config.national_format))
        self.values = ValueFilter(config.placeholders)
        self.sync = Synchronizer(
            store,
            self.normalizer,
            retry=RetryPolicy.from_config(config.sync),
            sleep=sleep,
            page_size=config.sync.raw_page_size,
        )


def _extract_adaptive(
    sheets: list[tuple[str, CellGrid]],
    pipeline: _Pipeline,
    cache: ColumnRoleCache | None,
) -> tuple[list[PhoneRecord], list[SheetReport]]:
    detection = pipeline.config.detection
    records: list[PhoneRecord] = []
    reports: list[SheetReport] = []
    for sheet_name, grid in sheets:
        structure = detect_structure(grid, detection.header_scan_rows)
        roles = infer_column_roles(structure, pipeline.normalizer, detection, cache)
        if not roles.has_phone_columns:
            logger.info("sheet %r: no phone column found, skipped", sheet_name)
        extraction = expand_sheet(sheet_name, structure, roles, pipeline.normalizer, pipeline.values)
        records.extend(extraction.records)
        reports.append(
            SheetReport(
                sheet_name=sheet_name,
                header_row_index=structure.header_row_index,
                data_rows=len(structure.data_rows),
                records=len(extraction.records),
                roles=roles.describe(),
                row_errors=tuple(extraction.row_errors),
                id_collisions=tuple(extraction.id_collisions),
            )
        )
    return records, reports


def _log_errors(
    error_log: ErrorLogBuffer | None,
    source_label: str,
    sheets: list[SheetReport],
    failures: list[RecordFailure],
) -> None:
    if error_log is None:
        return
    entries = [
        ErrorRecord.create(source_label, err.sheet, err.row_number, "ROW_PROCESSING_ERROR", err.message)
        for sheet in sheets
        for err in sheet.row_errors
    ]
    for failure in failures:
        error_type = "STORE_CONSTRAINT" if failure.constraint else "STORE_ERROR"
        entries.append(
            ErrorRecord.create(
                source_label, FILE_LEVEL_SHEET, -1, error_type,
                f"{failure.stage}: {failure.message}", record_id=failure.record_id,
            )
        )
    error_log.extend(entries)


def _count_validity(records: list[PhoneRecord]) -> tuple[int, int]:
    valid = sum(1 for r in records if r.is_valid_national_number)
    return valid, len(records) - valid


def _no_data_report(
    source_label: str, sheets: list[SheetReport], started: float
) -> ProcessingReport:
    logger.warning("%s: no phone records found in any sheet", source_label)
    return ProcessingReport(
        source_label=source_label,
        status=ProcessingStatus.NO_DATA,
        total_records=0,
        records_per_sheet={s.sheet_name: 0 for s in sheets},
        sheets=tuple(sheets),
        duplicate_count=0,
        duplicate_ids=(),
        valid_numbers=0,
        invalid_numbers=0,
        elapsed_seconds=time.perf_counter() - started,
    )


def process_workbook(
    document: Document,
    source_label: str,
    store: PhoneStore,
    config: PipelineConfig | None = None,
    cache: ColumnRoleCache | None = None,
    *,
    error_log: ErrorLogBuffer | None = None,
    sleep: Callable[[float], None] = time.sleep,
) -> ProcessingReport:
    """Extract phone records from ``document`` and synchronise both stores.

    Raises:
        DecodeError: the document cannot be decoded; nothing is written.
    """
    started = time.perf_counter()
    cfg = config or PipelineConfig.default()
    pipeline = _Pipeline(store, cfg, sleep)

    sheets = decode(document)
    records, sheet_reports = _extract_adaptive(sheets, pipeline, cache)
    if not records:
        _log_errors(error_log, source_label, sheet_reports, [])
        return _no_data_report(source_label, sheet_reports, started)

    # both stores receive first occurrences only, with duplicates' data folded in
    dedup = dedupe_batch(records)
    raw = pipeline.sync.sync_raw(dedup.unique_records, source_label)
    failures: list[RecordFailure] = list(raw.failures)
    validated_inserted = validated_updated = merged_fields = 0
    if cfg.sync.promote:
        promoted = pipeline.sync.promote(dedup.unique_records)
        validated_inserted = promoted.inserted
        validated_updated = promoted.updated
        merged_fields = promoted.merged_fields
        failures.extend(promoted.failures)
        failures.extend(promoted.merge_failures)

    _log_errors(error_log, source_label, sheet_reports, failures)
    valid, invalid = _count_validity(records)
    return ProcessingReport(
        source_label=source_label,
        status=ProcessingStatus.PARTIAL if failures else ProcessingStatus.SUCCESS,
        total_records=len(records),
        records_per_sheet={s.sheet_name: s.records for s in sheet_reports},
        sheets=tuple(sheet_reports),
        duplicate_count=dedup.duplicate_count,
        duplicate_ids=tuple(dedup.duplicate_ids),
        valid_numbers=valid,
        invalid_numbers=invalid,
        raw_inserted=raw.inserted,
        raw_updated=raw.updated,
        validated_inserted=validated_inserted,
        validated_updated=validated_updated,
        merged_fields=merged_fields,
        failures=tuple(failures),
        elapsed_seconds=time.perf_counter() - started,
    )


# header names accepted by the direct ingest, matched exactly first and then
# with case and punctuation ignored
DIRECT_HEADERS: dict[str, list[str]] = {
    "id": ["Id", "ID", "No", "Number", "Record ID", "RecordID"],
    "phone": [
        "Phone", "Phone Number", "Phone No", "Contact", "Contact Number", "Contact No",
        "Tel", "Telephone", "Tel No", "Telephone Number", "Mobile", "Mobile Number",
        "Mobile No", "HP", "Handphone", "Hand Phone", "WhatsApp", "WhatsApp Number",
    ],
    CompanyField.NAME.value: [
        "Company Name", "Company", "Name", "Business Name", "Organisation", "Organization",
    ],
    CompanyField.ADDRESS.value: ["Physical Address", "Address", "Addr", "Location"],
    CompanyField.EMAIL.value: ["Email", "E-mail", "Mail", "Email Address"],
    CompanyField.WEBSITE.value: ["Website", "Web", "URL", "Site", "Homepage"],
}

_NON_ALNUM_RE = re.compile(r"[^a-z0-9]")


def _loose(text: str) -> str:
    return _NON_ALNUM_RE.sub("", text.lower())


def _at(row: list[str], col: int | None) -> str:
    if col is None or col >= len(row):
        return ""
    return row[col]


def _direct_column(header: list[str], names: list[str]) -> int | None:
    stripped = [h.strip() for h in header]
    for name in names:
        if name in stripped:
            return stripped.index(name)
    loose = [_loose(h) for h in stripped]
    for name in names:
        key = _loose(name)
        if key in loose:
            return loose.index(key)
    return None


def _extract_direct(
    sheets: list[tuple[str, CellGrid]], pipeline: _Pipeline
) -> tuple[list[PhoneRecord], list[SheetReport]]:
    records: list[PhoneRecord] = []
    reports: list[SheetReport] = []
    for sheet_name, grid in sheets:
        header = grid[0] if grid else []
        cols = {key: _direct_column(header, names) for key, names in DIRECT_HEADERS.items()}
        phone_col = cols["phone"]
        roles = ColumnRoleMap(
            phone_columns=(phone_col,) if phone_col is not None else (),
            id_column=cols["id"],
            company_columns={
                kind: cols[kind.value] for kind in CompanyField if cols[kind.value] is not None
            },
            phone_source=RoleSource.HEADER if phone_col is not None else None,
            id_source=RoleSource.HEADER if cols["id"] is not None else None,
        )
        sheet_records: list[PhoneRecord] = []
        data = [(pos, row) for pos, row in enumerate(grid[1:], start=1) if not is_blank_row(row)]
        if phone_col is not None:
            for n, (pos, row) in enumerate(data, start=1):
                digits, valid = pipeline.normalizer.classify(_at(row, phone_col))
                if not digits:
                    continue
                sheet_records.append(
                    PhoneRecord(
                        id=pipeline.values.clean(_at(row, cols["id"])) or f"Row_{n}",
                        phone_number=digits,
                        source_sheet=sheet_name,
                        is_valid_national_number=valid,
                        context=RowContext(row_position=pos, phone_column=phone_col),
                        **{
                            kind.value: pipeline.values.clean(_at(row, cols[kind.value]))
                            for kind in CompanyField
                        },
                    )
                )
        records.extend(sheet_records)
        reports.append(
            SheetReport(
                sheet_name=sheet_name,
                header_row_index=0 if grid else None,
                data_rows=len(data),
                records=len(sheet_records),
                roles=roles.describe(),
            )
        )
    return records, reports


def process_workbook_direct(
    document: Document,
    source_label: str,
    store: PhoneStore,
    config: PipelineConfig | None = None,
    cache: ColumnRoleCache | None = None,
    *,
    error_log: ErrorLogBuffer | None = None,
    sleep: Callable[[float], None] = time.sleep,
) -> ProcessingReport:
    """Simplified ingest keyed by (id, phone); validated store only.

    The first row of each sheet is the header. When no sheet matches the fixed
    layout, extraction falls back to the adaptive detection.
    """
    started = time.perf_counter()
    cfg = config or PipelineConfig.default()
    pipeline = _Pipeline(store, cfg, sleep)

    sheets = decode(document)
    records, sheet_reports = _extract_direct(sheets, pipeline)
    if not records:
        logger.info("%s: fixed layout not found, falling back to adaptive detection", source_label)
        records, sheet_reports = _extract_adaptive(sheets, pipeline, cache)
    if not records:
        _log_errors(error_log, source_label, sheet_reports, [])
        return _no_data_report(source_label, sheet_reports, started)

    promoted = pipeline.sync.promote_direct(records)
    failures = list(promoted.failures)
    _log_errors(error_log, source_label, sheet_reports, failures)
    valid, invalid = _count_validity(records)
    return ProcessingReport(
        source_label=source_label,
        status=ProcessingStatus.PARTIAL if failures else ProcessingStatus.SUCCESS,
        total_records=len(records),
        records_per_sheet={s.sheet_name: s.records for s in sheet_reports},
        sheets=tuple(sheet_reports),
        duplicate_count=0,
        duplicate_ids=(),
        valid_numbers=valid,
        invalid_numbers=invalid,
        validated_inserted=promoted.inserted,
        validated_updated=promoted.updated,
        failures=tuple(failures),
        elapsed_seconds=time.perf_counter() - started,
    )


def scan_workbooks(directory: Path, pattern: str = "*.xlsx") -> list[Path]:
    """Workbooks directly inside ``directory`` (non-recursive), sorted by name.

    Raises:
        ProcessingError: the directory is missing or unreadable
    """
    if not directory.exists():
        raise ProcessingError(f"Directory not found: {directory}")
    if not directory.is_dir():
        raise ProcessingError(f"Path is not a directory: {directory}")
    try:
        # skip Excel lock files (~$name.xlsx)
        return sorted(
            p for p in directory.glob(pattern) if p.is_file() and not p.name.startswith("~$")
        )
    except OSError as e:
        raise ProcessingError(f"Error reading directory {directory}: {e}") from e


def process_directory(
    config: PipelineConfig,
    store: PhoneStore,
    cache: ColumnRoleCache | None = None,
    *,
    error_log: ErrorLogBuffer | None = None,
    sleep: Callable[[float], None] = time.sleep,
) -> RunResult:
    """Run the configured pipeline over every workbook of the source directory."""
    start_time = datetime.now(UTC)
    log = error_log if error_log is not None else ErrorLogBuffer()
    files = scan_workbooks(Path(config.source_directory), config.source_glob)
    # role_cache_size 0 disables caching
    if cache is None and config.detection.role_cache_size > 0:
        cache = ColumnRoleCache(config.detection.role_cache_size)
    run = process_workbook_direct if config.mode == "direct" else process_workbook

    counts = {status: 0 for status in ProcessingStatus}
    total_records = duplicates = inserted = updated = 0
    stats: list[WorkbookStat] = []

    with ProgressTracker(len(files)) as progress:
        for path in files:
            progress.start_file(path)
            file_start = time.perf_counter()
            records = failures = 0
            try:
                report = run(path, path.name, store, config, cache, error_log=log, sleep=sleep)
            except DecodeError as e:
                status = ProcessingStatus.FAILED
                logger.error("%s: %s", path.name, e)
                log.append(ErrorRecord.create(path.name, FILE_LEVEL_SHEET, -1, "DECODE_ERROR", str(e)))
            except Exception as e:
                status = ProcessingStatus.FAILED
                logger.exception("%s: unexpected failure", path.name)
                log.append(ErrorRecord.create(path.name, FILE_LEVEL_SHEET, -1, "UNEXPECTED_ERROR", str(e)))
            else:
                status = report.status
                records = report.total_records
                failures = len(report.failures)
                total_records += report.total_records
                duplicates += report.duplicate_count
                inserted += report.validated_inserted
                updated += report.validated_updated
                logger.info(render_report_line(report))
            counts[status] += 1
            progress.finish_file(records)
            stats.append(
                WorkbookStat(
                    file_name=path.name,
                    status=status.value,
                    records=records,
                    failures=failures,
                    elapsed_seconds=time.perf_counter() - file_start,
                )
            )

    log_path = log.flush()
    if log_path is not None:
        logger.warning("errors written to %s", log_path)

    end_time = datetime.now(UTC)
    return RunResult(
        success_files=counts[ProcessingStatus.SUCCESS],
        partial_files=counts[ProcessingStatus.PARTIAL],
        failed_files=counts[ProcessingStatus.FAILED],
        no_data_files=counts[ProcessingStatus.NO_DATA],
        total_records=total_records,
        duplicate_count=duplicates,
        validated_inserted=inserted,
        validated_updated=updated,
        start_time=start_time,
        end_time=end_time,
        elapsed_seconds=(end_time - start_time).total_seconds(),
        file_stats=stats,
    )
