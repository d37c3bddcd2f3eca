from __future__ import annotations

import json
from dataclasses import asdict, dataclass
from datetime import UTC, datetime

"""ErrorRecord model for the JSON Lines error log.

Row numbers are 1-based sheet rows. ``row=-1`` marks entries that are not
tied to a sheet row: workbook-level failures and per-record store failures.
"""

__all__ = [
    "ErrorRecord",
    "FILE_LEVEL_SHEET",
]

FILE_LEVEL_SHEET = "<FILE_LEVEL>"


@dataclass(frozen=True)
class ErrorRecord:
    """Structured error record for JSON Lines logging.

    Attributes:
        timestamp: ISO8601 UTC timestamp with 'Z' suffix
        file: source label of the workbook being processed
        sheet: sheet name, or ``<FILE_LEVEL>``
        row: 1-based sheet row, -1 when not applicable
        error_type: classification in UPPER_SNAKE_CASE
        message: human readable description
        record_id: phone record identity when the error concerns one record
    """
    timestamp: str
    file: str
    sheet: str
    row: int
    error_type: str
    message: str
    record_id: str | None = None

    @staticmethod
    def create(
        file: str,
        sheet: str,
        row: int,
        error_type: str,
        message: str,
        record_id: str | None = None,
    ) -> ErrorRecord:
        ts = datetime.now(UTC).isoformat().replace("+00:00", "Z")
        return ErrorRecord(
            timestamp=ts,
            file=file,
            sheet=sheet,
            row=row,
            error_type=error_type,
            message=message,
            record_id=record_id,
        )

    def to_json_line(self) -> str:
        return json.dumps(asdict(self), ensure_ascii=False)
