from __future__ import annotations

from dataclasses import dataclass, field
from datetime import date
from decimal import ROUND_HALF_UP, Decimal
from typing import Optional

from sheet_ledger.grid import Sheet, cell_text, is_blank
from sheet_ledger.ledger_modules.normalization import (
    format_rupiah,
    normalize_amount,
    normalize_date,
    normalize_quantity,
    per_load_rate,
)
from sheet_ledger.ledger_modules.payload import IncomePayload, encode_payload
from sheet_ledger.ledger_modules.preprocessing import classify_product
from sheet_ledger.ledger_modules.shared import (
    CENTS,
    DEDUCTION_KEYS,
    DEFAULT_CATEGORY,
    FEE_FIELD_BY_DEDUCTION,
    SUMMARY_ROW_RE,
    ZERO,
    CandidateRow,
    ClassificationRule,
    ColumnMapping,
)

TEMPLATE_SOURCE_TAG = "excel-template"


@dataclass
class SheetRows:
    sheet_name: str
    candidates: list[CandidateRow] = field(default_factory=list)
    skipped: int = 0


def _is_summary_row(row: tuple) -> bool:
    text = " ".join(value for value in row if isinstance(value, str))
    return bool(SUMMARY_ROW_RE.search(text))


def import_note(sheet_name: str, row_number: int) -> str:
    return f"Imported from {sheet_name} - Row {row_number}"


def _template_row(
    sheet: Sheet,
    index: int,
    mapping: ColumnMapping,
    truck: ClassificationRule,
    trans_date: Optional[date],
) -> CandidateRow:
    row_number = index + 1
    quantity = normalize_quantity(sheet.cell(index, mapping.index("quantity")))
    product_name = cell_text(sheet.cell(index, mapping.index("productName")))
    category = f"{product_name} - {truck.label}" if product_name else truck.label

    reasons = []
    if trans_date is None:
        reasons.append("missing date")
    if quantity <= 0:
        reasons.append("quantity must be greater than 0")
    if not product_name:
        reasons.append("missing product name")
    if quantity <= 0 or not product_name:
        return CandidateRow(
            sheet_name=sheet.name,
            row_number=row_number,
            trans_date=trans_date,
            category=category,
            description="",
            amount=ZERO,
            valid=False,
            reasons=tuple(reasons),
        )

    gross_cell = normalize_amount(sheet.cell(index, mapping.index("grossTotal")))
    unit_price = normalize_amount(sheet.cell(index, mapping.index("unitPrice")))
    if unit_price == 0 and gross_cell > 0:
        unit_price = (gross_cell / quantity).quantize(CENTS, rounding=ROUND_HALF_UP)

    rates = {}
    for key in DEDUCTION_KEYS:
        column = mapping.index(FEE_FIELD_BY_DEDUCTION[key])
        if column is None:
            continue
        rate = per_load_rate(normalize_amount(sheet.cell(index, column)), quantity)
        if rate > 0:
            rates[key] = rate

    product = classify_product(product_name)
    payload = IncomePayload.build(
        product_key=product.key,
        product_label=product_name,
        truck_key=truck.key,
        truck_label=truck.label,
        quantity=quantity,
        unit_price=unit_price,
        per_load_deductions=rates,
        notes=import_note(sheet.name, row_number),
        imported_from=TEMPLATE_SOURCE_TAG,
    )

    warnings = []
    if mapping.resolved("grossTotal") and gross_cell != 0 and gross_cell != payload.gross:
        warnings.append(
            f"Total column {format_rupiah(gross_cell)} differs from qty x price {format_rupiah(payload.gross)}"
        )
    net_cell = normalize_amount(sheet.cell(index, mapping.index("netTotal")))
    if mapping.resolved("netTotal") and net_cell != 0 and net_cell != payload.net:
        warnings.append(
            f"Total Bayar column {format_rupiah(net_cell)} differs from computed net {format_rupiah(payload.net)}"
        )
    if payload.net < 0:
        reasons.append("net amount is negative")

    return CandidateRow(
        sheet_name=sheet.name,
        row_number=row_number,
        trans_date=trans_date,
        category=category,
        description=encode_payload(payload),
        amount=payload.net.quantize(CENTS, rounding=ROUND_HALF_UP),
        valid=not reasons,
        reasons=tuple(reasons),
        warnings=tuple(warnings),
    )


def normalize_template_rows(
    sheet: Sheet,
    header_index: int,
    mapping: ColumnMapping,
    truck: ClassificationRule,
) -> SheetRows:
    """Turn a template sheet's data rows into income candidates.

    Blank and summary/total rows are skipped. An empty date cell inherits the
    last valid date seen above it in the same sheet.
    """
    result = SheetRows(sheet.name)
    last_date: Optional[date] = None
    date_column = mapping.index("date")
    for index in range(header_index + 1, len(sheet.rows)):
        row = sheet.rows[index]
        if all(is_blank(value) for value in row):
            result.skipped += 1
            continue
        if _is_summary_row(row):
            result.skipped += 1
            continue
        parsed = normalize_date(sheet.cell(index, date_column))
        if parsed is not None:
            last_date = parsed
        result.candidates.append(_template_row(sheet, index, mapping, truck, parsed or last_date))
    return result


def normalize_generic_rows(sheet: Sheet, header_index: int, mapping: ColumnMapping) -> SheetRows:
    result = SheetRows(sheet.name)
    for index in range(header_index + 1, len(sheet.rows)):
        row = sheet.rows[index]
        if all(is_blank(value) for value in row):
            result.skipped += 1
            continue
        trans_date = normalize_date(sheet.cell(index, mapping.index("date")))
        category = cell_text(sheet.cell(index, mapping.index("category"))) or DEFAULT_CATEGORY
        description = cell_text(sheet.cell(index, mapping.index("description")))
        amount = normalize_amount(sheet.cell(index, mapping.index("amount")))

        reasons = []
        if trans_date is None:
            reasons.append("missing or unreadable date")
        if amount <= 0:
            reasons.append("amount must be greater than 0")
        result.candidates.append(
            CandidateRow(
                sheet_name=sheet.name,
                row_number=index + 1,
                trans_date=trans_date,
                category=category,
                description=description,
                amount=amount,
                valid=not reasons,
                reasons=tuple(reasons),
            )
        )
    return result


def newest_first(candidates: list[CandidateRow]) -> list[CandidateRow]:
    """Stable sort by date descending; undated rows sink to the end."""
    dated = [row for row in candidates if row.trans_date is not None]
    undated = [row for row in candidates if row.trans_date is None]
    dated.sort(key=lambda row: row.trans_date, reverse=True)
    return dated + undated
