from __future__ import annotations

import re
from dataclasses import dataclass

from ..config.loader import NationalFormatConfig

"""Phone number cleaning and national-format validation.

The default format is Singapore: 8 local digits starting with 6, 8 or 9 and
country code 65. Cleaning never rejects a number; validation only marks it.
"""

__all__ = [
    "NationalFormat",
    "PhoneNormalizer",
]

_NON_DIGIT_RE = re.compile(r"\D")
# numeric cells re-read as text: "88881111.0", "6588881111.00"
_FLOAT_TEXT_RE = re.compile(r"^\s*\+?(\d+)\.0+\s*$")


@dataclass(frozen=True)
class NationalFormat:
    country_code: str = "65"
    local_length: int = 8
    leading_digits: str = "689"

    @classmethod
    def from_config(cls, cfg: NationalFormatConfig) -> NationalFormat:
        return cls(
            country_code=cfg.country_code,
            local_length=cfg.local_length,
            leading_digits=cfg.leading_digits,
        )

    @property
    def pattern(self) -> str:
        return rf"^[{re.escape(self.leading_digits)}]\d{{{self.local_length - 1}}}$"


class PhoneNormalizer:
    def __init__(self, fmt: NationalFormat | None = None) -> None:
        self.format = fmt or NationalFormat()
        self._valid_re = re.compile(self.format.pattern)

    def clean(self, raw: str | None) -> str | None:
        """Digits of ``raw`` with the country code dropped; None when no digits."""
        if raw is None:
            return None
        text = str(raw)
        m = _FLOAT_TEXT_RE.match(text)
        if m:
            text = m.group(1)
        digits = _NON_DIGIT_RE.sub("", text)
        if not digits:
            return None
        code = self.format.country_code
        if digits.startswith(code) and len(digits) == len(code) + self.format.local_length:
            digits = digits[len(code):]
        return digits

    def is_valid(self, digits: str | None) -> bool:
        if not digits:
            return False
        return self._valid_re.fullmatch(digits) is not None

    def classify(self, raw: str | None) -> tuple[str | None, bool]:
        digits = self.clean(raw)
        return digits, self.is_valid(digits)
