from __future__ import annotations

import io
import logging
import math
import os
import zipfile
from datetime import date, datetime
from pathlib import Path
from typing import Any, BinaryIO, Union

import pandas as pd
from openpyxl.utils.exceptions import InvalidFileException

"""Workbook decoder.

Turns an uploaded .xlsx document into ``[(sheet_name, cell_grid), ...]`` in
workbook order. Every cell becomes text; blank cells become "". Numeric cells
that hold whole numbers are rendered without a trailing ".0" so phone numbers
typed as numbers survive intact.
"""

__all__ = [
    "CellGrid",
    "DecodeError",
    "Document",
    "cell_text",
    "decode",
]

logger = logging.getLogger(__name__)

CellGrid = list[list[str]]
Document = Union[bytes, bytearray, str, os.PathLike, BinaryIO]

# OLE2 compound file: legacy .xls or a password-protected .xlsx
_OLE2_MAGIC = b"\xd0\xcf\x11\xe0\xa1\xb1\x1a\xe1"


class DecodeError(Exception):
    """Raised when a document cannot be decoded into sheets."""


def cell_text(value: Any) -> str:
    """Render one decoded cell as text."""
    if value is None:
        return ""
    if isinstance(value, float):
        if math.isnan(value):
            return ""
        if value.is_integer():
            return str(int(value))
        return repr(value)
    if isinstance(value, bool):
        return "TRUE" if value else "FALSE"
    if value is pd.NaT:
        return ""
    if isinstance(value, (datetime, date)):
        return value.isoformat()
    return str(value).strip()


def _read_document(document: Document) -> bytes:
    if isinstance(document, (bytes, bytearray)):
        return bytes(document)
    if isinstance(document, (str, os.PathLike)):
        path = Path(document)
        try:
            return path.read_bytes()
        except OSError as e:
            raise DecodeError(f"cannot read workbook {path}: {e}") from e
    read = getattr(document, "read", None)
    if read is None:
        raise DecodeError(f"unsupported document type: {type(document).__name__}")
    data = read()
    if not isinstance(data, (bytes, bytearray)):
        raise DecodeError("document stream must be opened in binary mode")
    return bytes(data)


def decode(document: Document) -> list[tuple[str, CellGrid]]:
    """Decode a workbook into (sheet name, cell grid) pairs.

    Raises DecodeError for empty, corrupt, encrypted or unrecognised input.
    """
    data = _read_document(document)
    if not data:
        raise DecodeError("document is empty")
    if data.startswith(_OLE2_MAGIC):
        raise DecodeError("workbook is encrypted or in legacy .xls format")
    if not zipfile.is_zipfile(io.BytesIO(data)):
        raise DecodeError("document is not an .xlsx workbook")

    sheets: list[tuple[str, CellGrid]] = []
    try:
        with pd.ExcelFile(io.BytesIO(data), engine="openpyxl") as xls:
            for name in xls.sheet_names:
                # raw read; header detection happens later per sheet
                df = xls.parse(name, header=None, dtype=object, keep_default_na=False)
                grid = [[cell_text(v) for v in row] for row in df.itertuples(index=False, name=None)]
                sheets.append((str(name), grid))
    except (zipfile.BadZipFile, InvalidFileException, KeyError, ValueError, OSError) as e:
        raise DecodeError(f"corrupt workbook: {e}") from e

    logger.debug("decoded %d sheet(s): %s", len(sheets), [s for s, _ in sheets])
    return sheets
