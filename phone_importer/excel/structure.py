from __future__ import annotations

from dataclasses import dataclass, field

from .reader import CellGrid

"""Header row detection for sheets of unknown shape.

Uploads are often prefixed by title rows, blank spacer rows or notes. The
first row inside the scan window with at least two non-blank cells is taken
as the header; a sheet without such a row is treated as headerless data.
"""

__all__ = [
    "DEFAULT_SCAN_ROWS",
    "SheetStructure",
    "detect_structure",
    "is_blank_row",
]

DEFAULT_SCAN_ROWS = 10
_MIN_HEADER_CELLS = 2


def is_blank_row(row: list[str]) -> bool:
    return all(not cell.strip() for cell in row)


@dataclass(frozen=True)
class SheetStructure:
    header_row_index: int | None
    header: list[str] = field(default_factory=list)
    data_rows: CellGrid = field(default_factory=list)
    row_positions: list[int] = field(default_factory=list)  # grid index of each data row

    @property
    def has_header(self) -> bool:
        return self.header_row_index is not None

    @property
    def width(self) -> int:
        widths = [len(self.header)] + [len(r) for r in self.data_rows]
        return max(widths)


def detect_structure(grid: CellGrid, scan_rows: int = DEFAULT_SCAN_ROWS) -> SheetStructure:
    header_idx: int | None = None
    for idx, row in enumerate(grid[:scan_rows]):
        if sum(1 for cell in row if cell.strip()) >= _MIN_HEADER_CELLS:
            header_idx = idx
            break

    start = 0 if header_idx is None else header_idx + 1
    data_rows: CellGrid = []
    positions: list[int] = []
    for idx in range(start, len(grid)):
        row = grid[idx]
        if is_blank_row(row):
            continue
        data_rows.append(list(row))
        positions.append(idx)

    header = [cell.strip() for cell in grid[header_idx]] if header_idx is not None else []
    return SheetStructure(
        header_row_index=header_idx,
        header=header,
        data_rows=data_rows,
        row_positions=positions,
    )
