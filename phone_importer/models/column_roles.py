from __future__ import annotations

from dataclasses import dataclass, field
from enum import Enum
from types import MappingProxyType
from typing import Any, Mapping

"""Column role models.

A ColumnRoleMap says, for one sheet, which column indices carry phone numbers,
which one carries a record identifier, and which ones carry company attributes.
It is built once per sheet and never mutated afterwards.
"""

__all__ = [
    "CompanyField",
    "RoleSource",
    "ColumnRoleMap",
]


class CompanyField(Enum):
    """Company attribute kinds; values are the PhoneRecord attribute names."""
    NAME = "company_name"
    ADDRESS = "physical_address"
    EMAIL = "email"
    WEBSITE = "website"


class RoleSource(Enum):
    """How a role was decided."""
    HEADER = "header"
    PATTERN = "pattern"


@dataclass(frozen=True)
class ColumnRoleMap:
    phone_columns: tuple[int, ...] = ()
    id_column: int | None = None
    company_columns: Mapping[CompanyField, int] = field(default_factory=dict)
    phone_source: RoleSource | None = None
    id_source: RoleSource | None = None

    def __post_init__(self) -> None:
        # read-only view so the map cannot be edited after inference
        object.__setattr__(
            self, "company_columns", MappingProxyType(dict(self.company_columns))
        )

    @property
    def has_phone_columns(self) -> bool:
        return bool(self.phone_columns)

    def role_columns(self) -> set[int]:
        """All column indices that carry any role."""
        cols = set(self.phone_columns) | set(self.company_columns.values())
        if self.id_column is not None:
            cols.add(self.id_column)
        return cols

    def describe(self) -> dict[str, Any]:
        """Plain-dict rendering used in reports and logs."""
        return {
            "phone_columns": list(self.phone_columns),
            "phone_source": self.phone_source.value if self.phone_source else None,
            "id_column": self.id_column,
            "id_source": self.id_source.value if self.id_source else None,
            "company_columns": {
                kind.value: idx for kind, idx in sorted(
                    self.company_columns.items(), key=lambda kv: kv[1]
                )
            },
        }
