"""In-memory workbook grid shared by the loader, the importer and the exporter."""

from __future__ import annotations

from dataclasses import dataclass
from datetime import date, datetime
from decimal import Decimal
from typing import Any, Iterable, Optional, Union

Cell = Union[None, str, int, float, Decimal, date]
Row = tuple


def coerce_cell(value: Any) -> Cell:
    """Fold a raw cell from openpyxl/pandas/csv into the grid's cell kinds."""
    if value is None:
        return None
    if isinstance(value, bool):
        return int(value)
    if isinstance(value, datetime):
        return value.date() if value.time() == datetime.min.time() else value
    if isinstance(value, (date, int, Decimal, str)):
        if isinstance(value, str) and not value.strip():
            return None
        return value
    if isinstance(value, float):
        if value != value:  # NaN from pandas
            return None
        return value
    if hasattr(value, "to_pydatetime"):
        return coerce_cell(value.to_pydatetime())
    if hasattr(value, "item"):
        return coerce_cell(value.item())
    text = str(value)
    return text if text.strip() else None


def is_blank(value: Cell) -> bool:
    return value is None or (isinstance(value, str) and not value.strip())


def cell_text(value: Cell) -> str:
    if value is None:
        return ""
    if isinstance(value, float) and value.is_integer():
        return str(int(value))
    return str(value).strip()


@dataclass(frozen=True)
class Sheet:
    name: str
    rows: tuple[Row, ...] = ()
    band_rows: int = 0

    @classmethod
    def from_rows(cls, name: str, rows: Iterable[Iterable[Any]], band_rows: int = 0) -> "Sheet":
        built = tuple(tuple(coerce_cell(value) for value in row) for row in rows)
        return cls(name=name, rows=built, band_rows=band_rows)

    @property
    def width(self) -> int:
        return max((len(row) for row in self.rows), default=0)

    def row(self, index: int) -> Row:
        if 0 <= index < len(self.rows):
            return self.rows[index]
        return ()

    def cell(self, row_index: int, column: Optional[int]) -> Cell:
        if column is None:
            return None
        row = self.row(row_index)
        return row[column] if 0 <= column < len(row) else None


@dataclass(frozen=True)
class WorkbookGrid:
    sheets: tuple[Sheet, ...] = ()

    @property
    def sheet_names(self) -> list[str]:
        return [sheet.name for sheet in self.sheets]

    def sheet(self, name: str) -> Sheet:
        for sheet in self.sheets:
            if sheet.name == name:
                return sheet
        raise KeyError(f"Sheet '{name}' not found. Available: {', '.join(self.sheet_names) or '[none]'}")

    def first_sheet(self) -> Sheet:
        if not self.sheets:
            raise ValueError("Workbook has no sheets")
        return self.sheets[0]
