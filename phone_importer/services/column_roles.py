from __future__ import annotations

import hashlib
import logging
import re
from collections import OrderedDict
from collections.abc import Set as AbstractSet
from dataclasses import dataclass, field

from ..config.loader import DetectionConfig
from ..excel.structure import SheetStructure
from ..models.column_roles import ColumnRoleMap, CompanyField, RoleSource
from .phone import PhoneNormalizer

"""Column role inference.

Roles are decided by an ordered list of strategies per role kind; the first
strategy returning a result wins:

1. header synonyms (phone, identifier, company attributes)
2. phone pattern fallback: share of sampled cells cleaning to a valid number
3. identifier pattern fallback: first column whose sampled values are unique

Header results depend only on the header row, so they can be memoised in a
caller-owned ``ColumnRoleCache`` keyed by a hash of the normalised header.
Pattern results depend on the data and are always recomputed.
"""

__all__ = [
    "HeaderRoles",
    "ColumnRoleCache",
    "HeaderSynonymStrategy",
    "PhonePatternStrategy",
    "IdentifierPatternStrategy",
    "header_key",
    "infer_column_roles",
]

logger = logging.getLogger(__name__)

PHONE_HEADER_PATTERNS = [
    r"phone", r"mobile", r"contact", r"\btel", r"\bcell", r"handphone",
    r"\bhp\b", r"whats\s*app", r"手机", r"电话",
]
ID_HEADER_PATTERNS = [
    r"^id$", r"identifier", r"^no\.?$", r"^s/?n$", r"record\s*id", r"序号", r"编号",
]
# checked in this order after phone and identifier
COMPANY_HEADER_PATTERNS: list[tuple[CompanyField, list[str]]] = [
    (CompanyField.EMAIL, [r"e-?mail", r"\bmail\b", r"邮箱"]),
    (CompanyField.WEBSITE, [r"website", r"\burl\b", r"\bsite\b", r"\bweb\b", r"homepage", r"网站"]),
    (CompanyField.ADDRESS, [r"address", r"\baddr\b", r"location", r"地址"]),
    (CompanyField.NAME, [r"company", r"name", r"business", r"organi[sz]ation", r"公司", r"企业"]),
]


def _compile(patterns: list[str]) -> list[re.Pattern[str]]:
    return [re.compile(p, re.IGNORECASE) for p in patterns]


_PHONE_RES = _compile(PHONE_HEADER_PATTERNS)
_ID_RES = _compile(ID_HEADER_PATTERNS)
_COMPANY_RES = [(kind, _compile(pats)) for kind, pats in COMPANY_HEADER_PATTERNS]


def _matches(text: str, regexes: list[re.Pattern[str]]) -> bool:
    return any(r.search(text) for r in regexes)


@dataclass(frozen=True)
class HeaderRoles:
    """Roles decided from the header row alone."""
    phone_columns: tuple[int, ...] = ()
    id_column: int | None = None
    company_columns: dict[CompanyField, int] = field(default_factory=dict)


def header_key(header: list[str]) -> str:
    """SHA-256 of the normalised header row."""
    normalised = "\x1f".join(cell.strip().casefold() for cell in header)
    return hashlib.sha256(normalised.encode("utf-8")).hexdigest()


class ColumnRoleCache:
    """Bounded LRU of header-phase role decisions, owned by the caller."""

    def __init__(self, max_entries: int = 256) -> None:
        if max_entries < 1:
            raise ValueError("max_entries must be >= 1")
        self.max_entries = max_entries
        self._entries: OrderedDict[str, HeaderRoles] = OrderedDict()
        self.hits = 0
        self.misses = 0

    def get(self, key: str) -> HeaderRoles | None:
        roles = self._entries.get(key)
        if roles is None:
            self.misses += 1
            return None
        self._entries.move_to_end(key)
        self.hits += 1
        return roles

    def put(self, key: str, roles: HeaderRoles) -> None:
        self._entries[key] = roles
        self._entries.move_to_end(key)
        while len(self._entries) > self.max_entries:
            self._entries.popitem(last=False)

    def __len__(self) -> int:
        return len(self._entries)

    def __contains__(self, key: str) -> bool:
        return key in self._entries


class HeaderSynonymStrategy:
    source = RoleSource.HEADER

    def infer(self, header: list[str]) -> HeaderRoles:
        phones: list[int] = []
        id_col: int | None = None
        company: dict[CompanyField, int] = {}
        for idx, raw in enumerate(header):
            text = raw.strip()
            if not text:
                continue
            if _matches(text, _PHONE_RES):
                phones.append(idx)
                continue
            if _matches(text, _ID_RES):
                if id_col is None:
                    id_col = idx
                continue
            for kind, regexes in _COMPANY_RES:
                if _matches(text, regexes):
                    company.setdefault(kind, idx)
                    break
        return HeaderRoles(phone_columns=tuple(phones), id_column=id_col, company_columns=company)


def _sample_columns(structure: SheetStructure, sample_rows: int) -> dict[int, list[str]]:
    """Non-blank sampled cells per column."""
    columns: dict[int, list[str]] = {}
    width = structure.width
    for row in structure.data_rows[:sample_rows]:
        for col in range(width):
            cell = row[col].strip() if col < len(row) else ""
            columns.setdefault(col, [])
            if cell:
                columns[col].append(cell)
    return columns


class PhonePatternStrategy:
    source = RoleSource.PATTERN

    def __init__(self, normalizer: PhoneNormalizer, sample_rows: int = 10, threshold: float = 0.5) -> None:
        self.normalizer = normalizer
        self.sample_rows = sample_rows
        self.threshold = threshold

    def infer(
        self, structure: SheetStructure, excluded: AbstractSet[int] = frozenset()
    ) -> tuple[int, ...] | None:
        found: list[int] = []
        for col, cells in sorted(_sample_columns(structure, self.sample_rows).items()):
            if not cells or col in excluded:
                continue
            valid = sum(1 for c in cells if self.normalizer.is_valid(self.normalizer.clean(c)))
            if valid / len(cells) > self.threshold:
                found.append(col)
        return tuple(found) or None


class IdentifierPatternStrategy:
    source = RoleSource.PATTERN

    def __init__(self, sample_rows: int = 10, min_samples: int = 3) -> None:
        self.sample_rows = sample_rows
        self.min_samples = min_samples

    def infer(self, structure: SheetStructure, excluded: AbstractSet[int]) -> int | None:
        for col, cells in sorted(_sample_columns(structure, self.sample_rows).items()):
            if col in excluded:
                continue
            if len(cells) >= self.min_samples and len(set(cells)) == len(cells):
                return col
        return None


def infer_column_roles(
    structure: SheetStructure,
    normalizer: PhoneNormalizer,
    config: DetectionConfig | None = None,
    cache: ColumnRoleCache | None = None,
) -> ColumnRoleMap:
    """Decide the role of every column of one sheet."""
    cfg = config or DetectionConfig()

    header_roles = HeaderRoles()
    if structure.has_header:
        key = header_key(structure.header)
        cached = cache.get(key) if cache is not None else None
        if cached is not None:
            header_roles = cached
        else:
            header_roles = HeaderSynonymStrategy().infer(structure.header)
            if cache is not None:
                cache.put(key, header_roles)

    phone_columns = header_roles.phone_columns
    phone_source = RoleSource.HEADER if phone_columns else None
    if not phone_columns:
        # columns claimed by a header role are never re-read as phones
        claimed = set(header_roles.company_columns.values())
        if header_roles.id_column is not None:
            claimed.add(header_roles.id_column)
        detected = PhonePatternStrategy(
            normalizer, cfg.sample_rows, cfg.phone_ratio_threshold
        ).infer(structure, claimed)
        if detected:
            phone_columns = detected
            phone_source = RoleSource.PATTERN

    company_columns = dict(header_roles.company_columns)

    id_column = header_roles.id_column
    id_source = RoleSource.HEADER if id_column is not None else None
    if id_column is None and phone_columns:
        excluded = set(phone_columns) | set(company_columns.values())
        id_column = IdentifierPatternStrategy(cfg.sample_rows, cfg.id_min_samples).infer(structure, excluded)
        if id_column is not None:
            id_source = RoleSource.PATTERN

    roles = ColumnRoleMap(
        phone_columns=tuple(phone_columns),
        id_column=id_column,
        company_columns=company_columns,
        phone_source=phone_source,
        id_source=id_source,
    )
    logger.debug("column roles: %s", roles.describe())
    return roles
