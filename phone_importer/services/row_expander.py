from __future__ import annotations

import logging
from dataclasses import dataclass, field

from ..excel.structure import SheetStructure
from ..models.column_roles import ColumnRoleMap, CompanyField
from ..models.phone_record import PhoneRecord, RowContext
from ..models.processing_result import RowError
from .phone import PhoneNormalizer
from .values import ValueFilter

"""Row expansion: one sheet row in, zero or more PhoneRecords out.

A row yields one record per phone column holding a number. Identity rule:

- identifier column present, one phone in the row: ``id = identifier``
- identifier column present, k > 1 phones: ``id = f"{identifier}_{seq}"``
  with seq 1..k in phone-column order
- no identifier column, or a blank identifier cell: ``id = phone digits``

Generated suffixed ids that clash with a literal identifier of the same sheet,
or with an id already issued for an earlier row, get an ``_r{row}`` suffix and
are reported as collisions.
"""

__all__ = [
    "RowProcessingError",
    "SheetExtraction",
    "IdRegistry",
    "expand_row",
    "expand_sheet",
]

logger = logging.getLogger(__name__)


class RowProcessingError(Exception):
    """Raised when a single row cannot be expanded."""

    def __init__(self, sheet: str, row_number: int, message: str) -> None:
        super().__init__(f"{sheet} row {row_number}: {message}")
        self.sheet = sheet
        self.row_number = row_number
        self.message = message


@dataclass
class SheetExtraction:
    sheet_name: str
    records: list[PhoneRecord] = field(default_factory=list)
    row_errors: list[RowError] = field(default_factory=list)
    id_collisions: list[str] = field(default_factory=list)


class IdRegistry:
    """Ids seen within one sheet."""

    def __init__(self, literal_ids: set[str] | None = None) -> None:
        self.literal_ids = set(literal_ids or ())
        self.issued: set[str] = set()
        self.collisions: list[str] = []

    def claim_generated(self, candidate: str, row_number: int) -> str:
        if candidate in self.literal_ids or candidate in self.issued:
            resolved = f"{candidate}_r{row_number}"
            self.collisions.append(candidate)
            logger.warning(
                "generated id %s already used in sheet; row %d uses %s", candidate, row_number, resolved
            )
            candidate = resolved
        self.issued.add(candidate)
        return candidate

    def claim(self, candidate: str) -> str:
        self.issued.add(candidate)
        return candidate


def _cell(row: list[str], col: int | None) -> str:
    if col is None or col >= len(row):
        return ""
    return row[col]


def expand_row(
    row: list[str],
    row_position: int,
    roles: ColumnRoleMap,
    sheet_name: str,
    normalizer: PhoneNormalizer,
    value_filter: ValueFilter | None = None,
    registry: IdRegistry | None = None,
) -> list[PhoneRecord]:
    vf = value_filter or ValueFilter()
    reg = registry or IdRegistry()
    row_number = row_position + 1

    tuples: list[tuple[str, int, bool]] = []
    for col in roles.phone_columns:
        digits, valid = normalizer.classify(_cell(row, col))
        if digits:
            tuples.append((digits, col, valid))
    if not tuples:
        return []

    base_id = vf.clean(_cell(row, roles.id_column)) if roles.id_column is not None else None
    multi = len(tuples) > 1

    ids: list[str] = []
    if base_id is not None and not multi:
        ids.append(reg.claim(base_id))
    elif base_id is not None:
        for seq in range(1, len(tuples) + 1):
            ids.append(reg.claim_generated(f"{base_id}_{seq}", row_number))
    else:
        seen: set[str] = set()
        for seq, (digits, _, _) in enumerate(tuples, start=1):
            if digits in seen:
                # same number twice in one row
                ids.append(reg.claim_generated(f"{digits}_{seq}", row_number))
            else:
                ids.append(reg.claim(digits))
            seen.add(digits)

    company = {
        kind.value: vf.clean(_cell(row, col)) for kind, col in roles.company_columns.items()
    }
    role_cols = roles.role_columns()
    extra = {
        f"column_{i}": cell.strip()
        for i, cell in enumerate(row)
        if i not in role_cols and cell.strip()
    }

    records: list[PhoneRecord] = []
    for seq, ((digits, col, valid), record_id) in enumerate(zip(tuples, ids), start=1):
        ctx = RowContext(
            row_position=row_position,
            phone_column=col,
            phone_sequence=seq if multi else None,
            total_phones_in_row=len(tuples),
            base_row_id=(base_id or ids[0]) if multi else None,
            sibling_ids=tuple(i for i in ids if i != record_id),
            extra_columns=extra,
        )
        records.append(
            PhoneRecord(
                id=record_id,
                phone_number=digits,
                source_sheet=sheet_name,
                is_valid_national_number=valid,
                context=ctx,
                company_name=company.get(CompanyField.NAME.value),
                physical_address=company.get(CompanyField.ADDRESS.value),
                email=company.get(CompanyField.EMAIL.value),
                website=company.get(CompanyField.WEBSITE.value),
            )
        )
    return records


def expand_sheet(
    sheet_name: str,
    structure: SheetStructure,
    roles: ColumnRoleMap,
    normalizer: PhoneNormalizer,
    value_filter: ValueFilter | None = None,
) -> SheetExtraction:
    """Expand every data row; rows that fail are logged and skipped."""
    result = SheetExtraction(sheet_name=sheet_name)
    if not roles.has_phone_columns:
        return result

    vf = value_filter or ValueFilter()
    literal_ids: set[str] = set()
    if roles.id_column is not None:
        for row in structure.data_rows:
            value = vf.clean(_cell(row, roles.id_column))
            if value is not None:
                literal_ids.add(value)
    registry = IdRegistry(literal_ids)

    for row, position in zip(structure.data_rows, structure.row_positions):
        try:
            result.records.extend(
                expand_row(row, position, roles, sheet_name, normalizer, vf, registry)
            )
        except Exception as e:
            err = RowProcessingError(sheet_name, position + 1, str(e))
            logger.warning("skipping row: %s", err)
            result.row_errors.append(RowError(sheet=sheet_name, row_number=err.row_number, message=err.message))

    result.id_collisions.extend(registry.collisions)
    return result
