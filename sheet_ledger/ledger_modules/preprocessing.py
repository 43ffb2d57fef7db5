from __future__ import annotations

import re
from typing import Iterable, Optional, Sequence

from sheet_ledger.grid import Cell, Sheet, cell_text, is_blank
from sheet_ledger.ledger_modules.shared import (
    COLUMN_RULES,
    FIELD_LABELS,
    HEADER_SCAN_ROWS,
    HEADER_SIGNATURES,
    OTHER_PRODUCT,
    PRODUCT_RULES,
    REQUIRED_FIELDS,
    TRUCK_RULES,
    UNCLASSIFIED,
    ClassificationRule,
    ColumnMapping,
    ColumnRule,
)

_WS_RE = re.compile(r"\s+")


def _squash(text: str) -> str:
    return _WS_RE.sub("", text).upper()


def match_rule(
    text: Optional[str],
    rules: Sequence[ClassificationRule],
    default: Optional[ClassificationRule] = None,
) -> Optional[ClassificationRule]:
    """First rule whose pattern occurs in ``text``, whitespace and case ignored."""
    if not text:
        return default
    squashed = _squash(text)
    for rule in rules:
        if any(_squash(pattern) in squashed for pattern in rule.patterns):
            return rule
    return default


def classify_sheet(name: str) -> Optional[ClassificationRule]:
    return match_rule(name, TRUCK_RULES)


def classify_category(category: str) -> ClassificationRule:
    return match_rule(category, TRUCK_RULES, UNCLASSIFIED)


def classify_product(product_name: str) -> ClassificationRule:
    return match_rule(product_name, PRODUCT_RULES, OTHER_PRODUCT)


def importable_sheets(sheets: Iterable[Sheet]) -> list[tuple[Sheet, ClassificationRule]]:
    """Sheets whose names match a truck rule, in workbook order."""
    selected = []
    for sheet in sheets:
        rule = classify_sheet(sheet.name)
        if rule is not None:
            selected.append((sheet, rule))
    return selected


def _header_text(value: Cell) -> str:
    return " ".join(cell_text(value).lower().split())


def _rule_for(kind: str, field: str) -> ColumnRule:
    for rule in COLUMN_RULES[kind]:
        if rule.field == field:
            return rule
    raise KeyError(field)


def _cell_matches(value: Cell, rule: ColumnRule) -> bool:
    text = _header_text(value)
    return bool(text) and any(pattern in text for pattern in rule.patterns)


def locate_header_row(sheet: Sheet, kind: str) -> Optional[int]:
    """Index of the first row among the first scan rows holding every signature group."""
    signature = [_rule_for(kind, field) for field in HEADER_SIGNATURES[kind]]
    for index, row in enumerate(sheet.rows[:HEADER_SCAN_ROWS]):
        if all(any(_cell_matches(value, rule) for value in row) for rule in signature):
            return index
    return None


def first_non_empty_row(sheet: Sheet) -> Optional[int]:
    for index, row in enumerate(sheet.rows):
        if any(not is_blank(value) for value in row):
            return index
    return None


def auto_map_columns(header_row: Sequence[Cell], kind: str) -> ColumnMapping:
    """Walk the rule table in order; each field takes the first unclaimed matching column."""
    labels = [_header_text(value) for value in header_row]
    claimed: set[int] = set()
    columns: dict[str, int] = {}
    for rule in COLUMN_RULES[kind]:
        for index, label in enumerate(labels):
            if index in claimed or not label:
                continue
            if any(pattern in label for pattern in rule.patterns):
                columns[rule.field] = index
                claimed.add(index)
                break
    return ColumnMapping(columns)


def apply_manual_mapping(
    base: ColumnMapping,
    overrides: dict[str, Optional[int]],
    width: Optional[int] = None,
) -> ColumnMapping:
    mapping = base
    for name, index in overrides.items():
        if index is not None and width is not None and index >= width:
            raise ValueError(f"Column {index} for '{name}' is outside the sheet ({width} columns)")
        mapping = mapping.with_column(name, index)
    return mapping


def missing_fields(mapping: ColumnMapping, kind: str) -> list[str]:
    return [name for name in REQUIRED_FIELDS[kind] if not mapping.resolved(name)]


def describe_missing(missing: Sequence[str]) -> str:
    labels = ", ".join(FIELD_LABELS.get(name, name) for name in missing)
    return f"Missing required columns: {labels}"


def header_labels(sheet: Sheet, header_index: int) -> list[str]:
    row = sheet.row(header_index)
    return [cell_text(value) or f"[col {i + 1}]" for i, value in enumerate(row)]
