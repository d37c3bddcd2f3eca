from __future__ import annotations

import re
from collections.abc import Iterable

"""Value normalisation for extracted company fields.

Sheets exported from other tools leave placeholder text in cells that were
merged or never filled ("-", "N/A", "#N/A", "..."). Every extracted field is
passed through ``ValueFilter.clean`` so such placeholders become ``None``.
"""

__all__ = [
    "DEFAULT_PLACEHOLDERS",
    "ValueFilter",
]

DEFAULT_PLACEHOLDERS: frozenset[str] = frozenset({
    "n/a",
    "na",
    "#n/a",
    "null",
    "none",
    "nil",
    "undefined",
    "nan",
})

# runs of dashes, dots, pipes, underscores or slashes only
_FILLER_RE = re.compile(r"^[\-–—._|/\\]+$")


class ValueFilter:
    def __init__(self, extra_placeholders: Iterable[str] = ()) -> None:
        self._placeholders = DEFAULT_PLACEHOLDERS | {p.strip().casefold() for p in extra_placeholders}

    def is_placeholder(self, value: str | None) -> bool:
        if value is None:
            return True
        text = value.strip()
        if not text:
            return True
        if _FILLER_RE.match(text):
            return True
        return text.casefold() in self._placeholders

    def clean(self, value: str | None) -> str | None:
        """Trimmed value, or None when the cell holds nothing meaningful."""
        if self.is_placeholder(value):
            return None
        return value.strip()  # type: ignore[union-attr]
