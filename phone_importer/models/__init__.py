"""Domain models for the phone workbook importer.

Re-exports the classes shared across the excel, services and db layers.
"""

from .column_roles import ColumnRoleMap, CompanyField, RoleSource
from .error_record import ErrorRecord
from .phone_record import COMPANY_FIELDS, PhoneRecord, RowContext, is_blank
from .processing_result import (
    ProcessingReport,
    ProcessingStatus,
    RecordFailure,
    RowError,
    SheetReport,
    SyncResult,
)
from .store_rows import RawRow, UpsertOutcome, ValidatedRow

__all__ = [
    # Column roles
    "ColumnRoleMap",
    "CompanyField",
    "RoleSource",
    # Records
    "COMPANY_FIELDS",
    "PhoneRecord",
    "RowContext",
    "is_blank",
    # Store rows
    "RawRow",
    "ValidatedRow",
    "UpsertOutcome",
    # Results
    "ErrorRecord",
    "ProcessingReport",
    "ProcessingStatus",
    "RecordFailure",
    "RowError",
    "SheetReport",
    "SyncResult",
]
