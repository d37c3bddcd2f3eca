from __future__ import annotations

from dataclasses import dataclass, field
from typing import Any

from .column_roles import CompanyField

"""PhoneRecord: the central unit of work of the pipeline.

Created by the row expander. Only the duplicate reconciler (company fields)
and the synchronizer (validation status) mutate it afterwards.
"""

__all__ = [
    "COMPANY_FIELDS",
    "RowContext",
    "PhoneRecord",
    "is_blank",
]

COMPANY_FIELDS: tuple[str, ...] = tuple(f.value for f in CompanyField)


def is_blank(value: Any) -> bool:
    """None and whitespace-only strings count as unset."""
    if value is None:
        return True
    return isinstance(value, str) and not value.strip()


@dataclass(frozen=True)
class RowContext:
    """Where a record came from inside its sheet."""
    row_position: int  # 0-based index into the sheet's cell grid
    phone_column: int
    phone_sequence: int | None = None  # 1-based, multi-phone rows only
    total_phones_in_row: int = 1
    base_row_id: str | None = None
    sibling_ids: tuple[str, ...] = ()
    extra_columns: dict[str, str] = field(default_factory=dict)

    @property
    def is_multi_phone_row(self) -> bool:
        return self.total_phones_in_row > 1

    @property
    def row_number(self) -> int:
        """1-based row number as shown by spreadsheet applications."""
        return self.row_position + 1


@dataclass
class PhoneRecord:
    id: str
    phone_number: str
    source_sheet: str
    is_valid_national_number: bool
    context: RowContext
    company_name: str | None = None
    physical_address: str | None = None
    email: str | None = None
    website: str | None = None

    def company_fields(self) -> dict[str, str | None]:
        return {name: getattr(self, name) for name in COMPANY_FIELDS}

    def metadata(self) -> dict[str, Any]:
        """Row-context blob stored alongside the raw row."""
        ctx = self.context
        meta: dict[str, Any] = {
            "source_sheet": self.source_sheet,
            "row_number": ctx.row_number,
            "phone_column_index": ctx.phone_column,
            "is_valid_national_number": self.is_valid_national_number,
        }
        if ctx.is_multi_phone_row:
            meta["multi_phone_info"] = {
                "phone_sequence": ctx.phone_sequence,
                "total_phones_in_row": ctx.total_phones_in_row,
                "base_row_id": ctx.base_row_id,
                "sibling_ids": list(ctx.sibling_ids),
            }
        if ctx.extra_columns:
            meta["extra_columns"] = dict(ctx.extra_columns)
        return meta
