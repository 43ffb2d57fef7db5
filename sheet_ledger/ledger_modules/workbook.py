from __future__ import annotations

from dataclasses import dataclass, field
from datetime import date
from decimal import Decimal
from pathlib import Path
from typing import Optional, Sequence

import openpyxl
from openpyxl.styles import Alignment, Font, PatternFill
from openpyxl.utils import get_column_letter

from sheet_ledger.grid import Sheet, WorkbookGrid
from sheet_ledger.ledger_modules.payload import FreeText, IncomePayload, UnknownPayload, decode_description
from sheet_ledger.ledger_modules.preprocessing import classify_category
from sheet_ledger.ledger_modules.shared import (
    DAY_NAMES_ID,
    DEDUCTION_KEYS,
    MONTH_NAMES_ID,
    TRUCK_RULES,
    UNCLASSIFIED,
    ZERO,
    ClassificationRule,
    NormalizedRecord,
)

INCOME_HEADERS = [
    "No", "Date", "Day", "Product", "Qty", "Price", "Total",
    "Loading", "Market", "DO", "Total Bayar", "Notes",
]
PLAIN_HEADERS = ["No", "Date", "Category", "Description", "Amount"]
SUMMARY_HEADERS = ["Section", "Records", "Qty", "Gross", "Deductions", "Net"]
SUMMARY_SHEET = "Summary"
TOTAL_LABEL = "TOTAL"
BAND_ROWS = 2

HEADER_COLOR = "1F4E78"
MONEY_FORMAT = "#,##0"
DATE_FORMAT = "DD/MM/YYYY"


@dataclass
class RecordGroup:
    rule: ClassificationRule
    records: list[NormalizedRecord] = field(default_factory=list)
    decoded: list = field(default_factory=list)

    @property
    def is_income(self) -> bool:
        return any(isinstance(item, IncomePayload) for item in self.decoded)

    @property
    def quantity(self) -> int:
        return sum(item.quantity for item in self.decoded if isinstance(item, IncomePayload))

    @property
    def gross(self) -> Decimal:
        return sum((item.gross for item in self.decoded if isinstance(item, IncomePayload)), ZERO)

    def deduction(self, key: str) -> Decimal:
        return sum(
            (item.deduction_total_for(key) for item in self.decoded if isinstance(item, IncomePayload)),
            ZERO,
        )

    @property
    def deductions(self) -> Decimal:
        return sum((self.deduction(key) for key in DEDUCTION_KEYS), ZERO)

    @property
    def net(self) -> Decimal:
        """Payload net for structured rows, record amount for everything else."""
        total = ZERO
        for record, item in zip(self.records, self.decoded):
            total += item.net if isinstance(item, IncomePayload) else record.amount
        return total

    def to_totals(self) -> dict:
        return {
            "section": self.rule.label,
            "records": len(self.records),
            "quantity": self.quantity,
            "gross": str(self.gross),
            "deductions": str(self.deductions),
            "net": str(self.net),
        }


def group_records(records: Sequence[NormalizedRecord]) -> list[RecordGroup]:
    """Bucket records by classified category, in rule-table order with the unclassified group last."""
    order = [*TRUCK_RULES, UNCLASSIFIED]
    groups = {rule.key: RecordGroup(rule) for rule in order}
    for record in records:
        group = groups[classify_category(record.category).key]
        group.records.append(record)
        group.decoded.append(decode_description(record.description))
    return [groups[rule.key] for rule in order if groups[rule.key].records]


def format_date_id(value: date) -> str:
    return f"{value.day} {MONTH_NAMES_ID[value.month - 1]} {value.year}"


def date_range_label(records: Sequence[NormalizedRecord]) -> str:
    dates = sorted(record.trans_date for record in records)
    if not dates:
        return "-"
    return f"{format_date_id(dates[0])} - {format_date_id(dates[-1])}"


def _band(title: str, records: Sequence[NormalizedRecord]) -> list[list]:
    return [[title], [date_range_label(records)]]


def _income_row(number: int, record: NormalizedRecord, item) -> list:
    day = DAY_NAMES_ID[record.trans_date.weekday()]
    if isinstance(item, IncomePayload):
        return [
            number,
            record.trans_date,
            day,
            item.product_label,
            item.quantity,
            item.unit_price,
            item.gross,
            *[item.deduction_total_for(key) or None for key in DEDUCTION_KEYS],
            item.net,
            item.notes,
        ]
    text = item.text if isinstance(item, FreeText) else record.description
    return [number, record.trans_date, day, record.category, None, None, None, None, None, None, record.amount, text]


def _income_sheet(group: RecordGroup, title: str) -> Sheet:
    rows = _band(f"{title} {group.rule.label.upper()}", group.records)
    rows.append(list(INCOME_HEADERS))
    for number, (record, item) in enumerate(zip(group.records, group.decoded), start=1):
        rows.append(_income_row(number, record, item))
    rows.append([
        TOTAL_LABEL, None, None, None,
        group.quantity, None, group.gross,
        *[group.deduction(key) for key in DEDUCTION_KEYS],
        group.net, None,
    ])
    return Sheet(group.rule.label, tuple(tuple(row) for row in rows), band_rows=BAND_ROWS)


def _plain_description(record: NormalizedRecord, item) -> str:
    if isinstance(item, FreeText):
        return item.text
    if isinstance(item, UnknownPayload):
        return record.description
    return item.notes


def _plain_sheet(group: RecordGroup, title: str) -> Sheet:
    rows = _band(f"{title} {group.rule.label.upper()}", group.records)
    rows.append(list(PLAIN_HEADERS))
    for number, (record, item) in enumerate(zip(group.records, group.decoded), start=1):
        rows.append([number, record.trans_date, record.category, _plain_description(record, item), record.amount])
    rows.append([TOTAL_LABEL, None, None, None, sum((r.amount for r in group.records), ZERO)])
    return Sheet(group.rule.label, tuple(tuple(row) for row in rows), band_rows=BAND_ROWS)


def _summary_sheet(groups: Sequence[RecordGroup], records: Sequence[NormalizedRecord], title: str) -> Sheet:
    rows = _band(f"{title} RINGKASAN", records)
    rows.append(list(SUMMARY_HEADERS))
    for group in groups:
        if group.is_income:
            rows.append([group.rule.label, len(group.records), group.quantity, group.gross, group.deductions, group.net])
        else:
            rows.append([group.rule.label, len(group.records), None, None, None, group.net])
    rows.append([
        TOTAL_LABEL,
        sum(len(group.records) for group in groups),
        sum(group.quantity for group in groups),
        sum((group.gross for group in groups), ZERO),
        sum((group.deductions for group in groups), ZERO),
        sum((group.net for group in groups), ZERO),
    ])
    return Sheet(SUMMARY_SHEET, tuple(tuple(row) for row in rows), band_rows=BAND_ROWS)


def assemble_export(
    records: Sequence[NormalizedRecord],
    *,
    title: str = "LAPORAN",
    include_summary: bool = True,
) -> WorkbookGrid:
    """One sheet per non-empty classification group, plus an optional summary sheet.

    Sections follow the truck rule order with the unclassified group last;
    rows keep the order the records were given in.
    """
    groups = group_records(records)
    sheets = [
        _income_sheet(group, title) if group.is_income else _plain_sheet(group, title)
        for group in groups
    ]
    if include_summary and groups:
        sheets.append(_summary_sheet(groups, records, title))
    return WorkbookGrid(tuple(sheets))


def _header_fill(hex_color: str) -> PatternFill:
    return PatternFill("solid", fgColor=hex_color)


def _header_font() -> Font:
    return Font(bold=True, color="FFFFFF")


def _infer_col_widths(rows: Sequence[Sequence], min_width: int = 10, max_width: int = 60, sample: int = 300) -> list[int]:
    width = max((len(row) for row in rows), default=0)
    widths = [min_width] * width
    for row in rows[: sample + 1]:
        for i, val in enumerate(row):
            if val is None:
                continue
            text = format_date_id(val) if isinstance(val, date) else str(val)
            widths[i] = max(widths[i], min(max_width, len(text) + 2))
    return widths


def _style_sheet(ws, sheet: Sheet, width: int, header_color: str) -> None:
    """Merge the title band, style the header, bold the totals row, freeze panes and size columns."""
    last_column = get_column_letter(max(width, 1))
    for row_index in range(1, sheet.band_rows + 1):
        if width > 1:
            ws.merge_cells(f"A{row_index}:{last_column}{row_index}")
        ws[f"A{row_index}"].font = Font(bold=True, size=12 if row_index == 1 else 11)
        ws[f"A{row_index}"].alignment = Alignment(horizontal="center", vertical="center")

    header_row = sheet.band_rows + 1
    fill = _header_fill(header_color)
    font = _header_font()
    for cell in ws[header_row]:
        cell.font = font
        cell.fill = fill
        cell.alignment = Alignment(horizontal="center", vertical="center", wrap_text=False)
    ws.freeze_panes = f"A{header_row + 1}"

    if len(sheet.rows) > header_row and sheet.rows[-1] and sheet.rows[-1][0] == TOTAL_LABEL:
        for cell in ws[len(sheet.rows)]:
            cell.font = Font(bold=True)

    for row in ws.iter_rows(min_row=header_row + 1):
        for cell in row:
            if isinstance(cell.value, date):
                cell.number_format = DATE_FORMAT
            elif isinstance(cell.value, (Decimal, float)):
                cell.number_format = MONEY_FORMAT

    for i, col_width in enumerate(_infer_col_widths(sheet.rows[header_row - 1:]), start=1):
        ws.column_dimensions[get_column_letter(i)].width = col_width


def write_workbook(grid: WorkbookGrid, output_path: Path, header_color: Optional[str] = None) -> Path:
    wb = openpyxl.Workbook()
    wb.remove(wb.active)
    for sheet in grid.sheets:
        ws = wb.create_sheet(title=sheet.name[:31])
        for row in sheet.rows:
            ws.append(list(row))
        width = max((len(row) for row in sheet.rows[sheet.band_rows:]), default=sheet.width)
        _style_sheet(ws, sheet, width, header_color or HEADER_COLOR)
    if not grid.sheets:
        wb.create_sheet(title=SUMMARY_SHEET)
    output_path = Path(output_path)
    output_path.parent.mkdir(parents=True, exist_ok=True)
    wb.save(output_path)
    return output_path
