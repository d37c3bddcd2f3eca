from __future__ import annotations

import logging
from collections.abc import Collection, Mapping, Sequence
from dataclasses import dataclass, field
from datetime import datetime
from typing import Any

from ..models.phone_record import COMPANY_FIELDS, PhoneRecord, is_blank
from ..models.store_rows import ValidatedRow

"""Duplicate reconciliation.

Company data only ever accretes: a non-blank field is never replaced or
cleared, a blank one is filled from the first source that has a value.

- ``dedupe_batch``: duplicates by phone number inside one upload
- ``field_union``: the single-row merge rule
- ``plan_completeness_merge``: fills stored rows sharing a phone from the
  most complete row of their group
"""

__all__ = [
    "BatchDedupResult",
    "FieldFill",
    "completeness_score",
    "dedupe_batch",
    "field_union",
    "plan_completeness_merge",
]

logger = logging.getLogger(__name__)


def completeness_score(fields: Mapping[str, Any]) -> int:
    """Number of non-blank company fields."""
    return sum(1 for name in COMPANY_FIELDS if not is_blank(fields.get(name)))


def field_union(old: Mapping[str, Any], incoming: Mapping[str, Any]) -> dict[str, Any]:
    """Merge company fields: keep every non-blank ``old`` value, fill blanks from ``incoming``."""
    merged: dict[str, Any] = {}
    for name in COMPANY_FIELDS:
        current = old.get(name)
        candidate = incoming.get(name)
        if is_blank(current) and not is_blank(candidate):
            merged[name] = candidate
        else:
            merged[name] = current
    return merged


@dataclass
class BatchDedupResult:
    unique_records: list[PhoneRecord] = field(default_factory=list)
    duplicates: list[PhoneRecord] = field(default_factory=list)
    groups: dict[str, list[PhoneRecord]] = field(default_factory=dict)

    @property
    def duplicate_ids(self) -> list[str]:
        return [r.id for r in self.duplicates]

    @property
    def duplicate_count(self) -> int:
        return len(self.duplicates)


def dedupe_batch(records: Sequence[PhoneRecord]) -> BatchDedupResult:
    """Keep the first record per phone number and fold later ones into it.

    Folding fills the kept record's blank company fields in place; the
    duplicates are returned unchanged so they can still be written raw.
    """
    result = BatchDedupResult()
    first: dict[str, PhoneRecord] = {}
    for rec in records:
        group = result.groups.setdefault(rec.phone_number, [])
        group.append(rec)
        kept = first.get(rec.phone_number)
        if kept is None:
            first[rec.phone_number] = rec
            result.unique_records.append(rec)
            continue
        result.duplicates.append(rec)
        merged = field_union(kept.company_fields(), rec.company_fields())
        for name, value in merged.items():
            setattr(kept, name, value)
    if result.duplicates:
        logger.info(
            "batch duplicates: %d record(s) share a phone with an earlier record", result.duplicate_count
        )
    return result


@dataclass(frozen=True)
class FieldFill:
    """Blank fields of ``target_id`` to fill from the donor row."""
    target_id: str
    phone: str
    donor_id: str
    fields: dict[str, str]


def _donor(rows: Sequence[ValidatedRow]) -> ValidatedRow:
    # highest score; ties go to the earliest created_at, then input order
    def key(item: tuple[int, ValidatedRow]) -> tuple[int, bool, datetime, int]:
        idx, row = item
        created = row.created_at
        return (
            -row.completeness(),
            created is None,
            created or datetime.min,
            idx,
        )
    return min(enumerate(rows), key=key)[1]


def plan_completeness_merge(
    rows: Sequence[ValidatedRow], exclude: Collection[str] = ()
) -> list[FieldFill]:
    """Plan fills for every phone group of ``rows``; nothing is written here.

    Fields named in ``exclude`` are never copied from the donor.
    """
    groups: dict[str, list[ValidatedRow]] = {}
    for row in rows:
        groups.setdefault(row.phone, []).append(row)

    fills: list[FieldFill] = []
    for phone, members in groups.items():
        if len(members) < 2:
            continue
        donor = _donor(members)
        donor_fields = {k: v for k, v in donor.company_fields().items() if k not in exclude}
        for member in members:
            if member is donor:
                continue
            merged = field_union(member.company_fields(), donor_fields)
            changed = {
                name: value for name, value in merged.items()
                if value != member.company_fields()[name]
            }
            if changed:
                fills.append(FieldFill(member.id, phone, donor.id, changed))
    return fills
