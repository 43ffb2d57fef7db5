from __future__ import annotations

import re
from dataclasses import dataclass, field
from datetime import date
from decimal import Decimal
from typing import Optional

HEADER_SCAN_ROWS = 15
DEFAULT_CATEGORY = "Lainnya"
CENTS = Decimal("0.01")
WHOLE = Decimal("1")
ZERO = Decimal("0.00")

TEMPLATE_IMPORT = "template"
GENERIC_IMPORT = "generic"

DEDUCTION_KEYS = ("loading", "market", "broker")
DEDUCTION_LABELS = {
    "loading": "Loading",
    "market": "Market",
    "broker": "Broker",
}
FEE_FIELD_BY_DEDUCTION = {
    "loading": "loadingFee",
    "market": "marketFee",
    "broker": "brokerFee",
}

SEMANTIC_FIELDS = (
    "date",
    "day",
    "category",
    "productName",
    "quantity",
    "unitPrice",
    "grossTotal",
    "loadingFee",
    "marketFee",
    "brokerFee",
    "netTotal",
    "description",
    "amount",
)

FIELD_LABELS = {
    "date": "Tanggal",
    "day": "Hari",
    "category": "Kategori",
    "productName": "Produk",
    "quantity": "Qty",
    "unitPrice": "Harga",
    "grossTotal": "Total",
    "loadingFee": "Loading",
    "marketFee": "Market",
    "brokerFee": "DO",
    "netTotal": "Total Bayar",
    "description": "Deskripsi",
    "amount": "Jumlah/Amount",
}

REQUIRED_FIELDS = {
    TEMPLATE_IMPORT: ("date", "quantity", "productName"),
    GENERIC_IMPORT: ("date", "category", "amount"),
}

MONTH_NAMES_ID = (
    "JANUARI", "FEBRUARI", "MARET", "APRIL", "MEI", "JUNI",
    "JULI", "AGUSTUS", "SEPTEMBER", "OKTOBER", "NOVEMBER", "DESEMBER",
)
DAY_NAMES_ID = ("Senin", "Selasa", "Rabu", "Kamis", "Jumat", "Sabtu", "Minggu")

# Rows matching this in the template flow are report furniture, not data.
SUMMARY_ROW_RE = re.compile(r"(summary|total)", re.IGNORECASE)


@dataclass(frozen=True)
class ColumnRule:
    field: str
    patterns: tuple[str, ...]


@dataclass(frozen=True)
class ClassificationRule:
    patterns: tuple[str, ...]
    key: str
    label: str


# Order matters: a column claimed by an earlier rule is not offered to later
# ones, so "Total Bayar" lands on netTotal before grossTotal sees it.
TEMPLATE_COLUMN_RULES = (
    ColumnRule("date", ("date", "tanggal", "tgl")),
    ColumnRule("day", ("day", "hari")),
    ColumnRule("productName", ("product", "produk", "nama produk", "barang")),
    ColumnRule("quantity", ("qty", "quantity", "jumlah", "rit")),
    ColumnRule("unitPrice", ("price", "harga", "unit price")),
    ColumnRule("netTotal", ("total bayar", "netto", "net", "dibayar", "bayar", "net payment")),
    ColumnRule("grossTotal", ("total", "gross", "subtotal")),
    ColumnRule("loadingFee", ("loading", "load", "biaya loading")),
    ColumnRule("marketFee", ("market", "pasar", "biaya market")),
    ColumnRule("brokerFee", ("d.o", "delivery order", "broker", "do")),
)

GENERIC_COLUMN_RULES = (
    ColumnRule("date", ("tanggal", "date", "tgl")),
    ColumnRule("category", ("kategori", "category", "jenis")),
    ColumnRule("description", ("deskripsi", "description", "keterangan", "notes")),
    ColumnRule("amount", ("jumlah", "amount", "nominal", "total", "harga")),
)

COLUMN_RULES = {
    TEMPLATE_IMPORT: TEMPLATE_COLUMN_RULES,
    GENERIC_IMPORT: GENERIC_COLUMN_RULES,
}

# A header row must contain a cell matching every group listed here.
HEADER_SIGNATURES = {
    TEMPLATE_IMPORT: ("date", "quantity"),
    GENERIC_IMPORT: ("date", "amount"),
}

TRUCK_RULES = (
    ClassificationRule(("TRONTON",), "tronton", "Tronton"),
    ClassificationRule(("COLTDIESEL", "COLT DIESEL"), "colt", "Colt Diesel"),
    ClassificationRule(("EXPANDING",), "expanding", "Expanding"),
)
UNCLASSIFIED = ClassificationRule((), "other", DEFAULT_CATEGORY)

PRODUCT_RULES = (
    ClassificationRule(("AYAK",), "pasirAyak", "Pasir Ayak"),
    ClassificationRule(("LEMPUNG",), "pasirLempung", "Pasir Lempung"),
)
OTHER_PRODUCT = ClassificationRule((), "other", "Lainnya")


@dataclass(frozen=True)
class ColumnMapping:
    """Semantic field -> zero-based column index for one sheet.

    Fields missing from ``columns`` are unresolved.
    """

    columns: dict[str, int] = field(default_factory=dict)

    def index(self, name: str) -> Optional[int]:
        return self.columns.get(name)

    def resolved(self, name: str) -> bool:
        return name in self.columns

    def with_column(self, name: str, index: Optional[int]) -> "ColumnMapping":
        if name not in SEMANTIC_FIELDS:
            raise ValueError(f"Unknown field '{name}'. Known: {', '.join(SEMANTIC_FIELDS)}")
        columns = dict(self.columns)
        if index is None:
            columns.pop(name, None)
        else:
            if index < 0:
                raise ValueError(f"Column index for '{name}' must be >= 0, got {index}")
            columns[name] = index
        return ColumnMapping(columns)

    def to_dict(self) -> dict[str, int]:
        return {name: self.columns[name] for name in SEMANTIC_FIELDS if name in self.columns}


@dataclass(frozen=True)
class NormalizedRecord:
    trans_date: date
    category: str
    description: str
    amount: Decimal

    def to_dict(self) -> dict:
        return {
            "trans_date": self.trans_date.isoformat(),
            "category": self.category,
            "description": self.description,
            "amount": str(self.amount),
        }


@dataclass(frozen=True)
class CandidateRow:
    """One parsed data row as shown in the import preview."""

    sheet_name: str
    row_number: int
    trans_date: Optional[date]
    category: str
    description: str
    amount: Decimal
    valid: bool
    reasons: tuple[str, ...] = ()
    warnings: tuple[str, ...] = ()

    def to_record(self) -> NormalizedRecord:
        if not self.valid or self.trans_date is None:
            raise ValueError(
                f"Row {self.row_number} of '{self.sheet_name}' is not importable: "
                + "; ".join(self.reasons or ("invalid",))
            )
        return NormalizedRecord(self.trans_date, self.category, self.description, self.amount)

    def to_dict(self) -> dict:
        return {
            "sheet": self.sheet_name,
            "row": self.row_number,
            "trans_date": self.trans_date.isoformat() if self.trans_date else None,
            "category": self.category,
            "description": self.description,
            "amount": str(self.amount),
            "valid": self.valid,
            "reasons": list(self.reasons),
            "warnings": list(self.warnings),
        }
