from __future__ import annotations

from ..models.processing_result import ProcessingReport, RunResult

"""SUMMARY line rendering.

Directory runs end with exactly one line of the form::

    SUMMARY files=3 success=2 partial=0 failed=1 no_data=0 records=120 duplicates=4 inserted=100 updated=16 elapsed_sec=1.25

Wrappers parse it with ``key=value`` splitting, so keys are stable and values
never contain spaces.
"""

__all__ = [
    "format_seconds",
    "render_summary_line",
    "render_report_line",
]


def format_seconds(value: float) -> str:
    """Render seconds without scientific notation or trailing zeros."""
    if value == 0:
        return "0"
    if value == int(value):
        return str(int(value))
    return f"{value:.3f}".rstrip("0").rstrip(".") or "0"


def render_summary_line(result: RunResult) -> str:
    return (
        f"SUMMARY files={result.total_files} "
        f"success={result.success_files} "
        f"partial={result.partial_files} "
        f"failed={result.failed_files} "
        f"no_data={result.no_data_files} "
        f"records={result.total_records} "
        f"duplicates={result.duplicate_count} "
        f"inserted={result.validated_inserted} "
        f"updated={result.validated_updated} "
        f"elapsed_sec={format_seconds(result.elapsed_seconds)}"
    )


def render_report_line(report: ProcessingReport) -> str:
    """One-line digest of a single workbook, logged after it is processed."""
    return (
        f"{report.source_label}: status={report.status.value} "
        f"sheets={len(report.sheets)} records={report.total_records} "
        f"valid={report.valid_numbers} invalid={report.invalid_numbers} "
        f"duplicates={report.duplicate_count} "
        f"inserted={report.validated_inserted} updated={report.validated_updated} "
        f"failures={len(report.failures)} row_errors={len(report.row_errors)}"
    )
