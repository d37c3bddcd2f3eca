from __future__ import annotations

from dataclasses import dataclass, field
from datetime import datetime
from enum import Enum
from typing import Any

from .phone_record import COMPANY_FIELDS, is_blank

"""Row shapes of the two stores.

- RawRow: one row per extraction, keyed by ``id``; re-uploads overwrite it.
- ValidatedRow: one row per canonical identity, carrying the validation
  status and the accreted company data.
"""

__all__ = [
    "UpsertOutcome",
    "RawRow",
    "ValidatedRow",
]


class UpsertOutcome(Enum):
    INSERTED = "inserted"
    UPDATED = "updated"


@dataclass(frozen=True)
class RawRow:
    id: str
    phone_number: str
    source_file: str
    company_name: str | None = None
    physical_address: str | None = None
    email: str | None = None
    website: str | None = None
    metadata: dict[str, Any] = field(default_factory=dict)
    created_at: datetime | None = None
    updated_at: datetime | None = None


@dataclass(frozen=True)
class ValidatedRow:
    id: str
    phone: str
    status: bool | None
    company_name: str | None = None
    physical_address: str | None = None
    email: str | None = None
    website: str | None = None
    created_at: datetime | None = None
    updated_at: datetime | None = None

    def company_fields(self) -> dict[str, str | None]:
        return {name: getattr(self, name) for name in COMPANY_FIELDS}

    def completeness(self) -> int:
        return sum(1 for v in self.company_fields().values() if not is_blank(v))
