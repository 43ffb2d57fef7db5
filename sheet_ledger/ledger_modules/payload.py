"""Structured ``income-v1`` payloads carried in a record's description.

Decoding is total: every description decodes to exactly one of
``IncomePayload``, ``UnknownPayload`` or ``FreeText``.
"""

from __future__ import annotations

from dataclasses import dataclass, field
from decimal import ROUND_HALF_UP, Decimal, InvalidOperation
from typing import Any, Optional, Union

import simplejson

from sheet_ledger.ledger_modules.shared import CENTS, DEDUCTION_KEYS

INCOME_TYPE = "income-v1"
TYPE_KEY = "__type"


def _as_decimal(value: Any) -> Decimal:
    if isinstance(value, bool):
        raise ValueError("boolean is not an amount")
    if isinstance(value, Decimal):
        return value
    if isinstance(value, (int, float, str)):
        try:
            return Decimal(str(value))
        except InvalidOperation as exc:
            raise ValueError(f"not a number: {value!r}") from exc
    raise ValueError(f"not a number: {value!r}")


def _json_number(value: Decimal) -> int | Decimal:
    if value == value.to_integral_value():
        return int(value)
    return value


def _to_cents(value: Any) -> Decimal:
    return Decimal(value).quantize(CENTS, rounding=ROUND_HALF_UP)


@dataclass(frozen=True)
class IncomePayload:
    product_key: str
    product_label: str
    truck_key: str
    truck_label: str
    quantity: int
    unit_price: Decimal
    per_load_deductions: dict[str, Decimal]
    gross: Decimal
    per_load_deduction_total: Decimal
    deduction_total: Decimal
    net: Decimal
    notes: str = ""
    imported_from: str = ""

    @classmethod
    def build(
        cls,
        *,
        product_key: str,
        product_label: str,
        truck_key: str,
        truck_label: str,
        quantity: int,
        unit_price: Decimal,
        per_load_deductions: dict[str, Decimal],
        notes: str = "",
        imported_from: str = "",
    ) -> "IncomePayload":
        """Derive gross, deduction totals and net from quantity, price and rates.

        Price and rates are rounded half-up to cents first, so every derived
        total is cent-exact.
        """
        unknown = set(per_load_deductions) - set(DEDUCTION_KEYS)
        if unknown:
            raise ValueError(f"Unknown deduction keys: {', '.join(sorted(unknown))}")
        deductions = {
            key: _to_cents(per_load_deductions[key])
            for key in DEDUCTION_KEYS
            if key in per_load_deductions
        }
        unit_price = _to_cents(unit_price)
        gross = unit_price * quantity
        per_load_total = sum(deductions.values(), Decimal("0"))
        deduction_total = per_load_total * quantity
        return cls(
            product_key=product_key,
            product_label=product_label,
            truck_key=truck_key,
            truck_label=truck_label,
            quantity=quantity,
            unit_price=unit_price,
            per_load_deductions=deductions,
            gross=gross,
            per_load_deduction_total=per_load_total,
            deduction_total=deduction_total,
            net=gross - deduction_total,
            notes=notes,
            imported_from=imported_from,
        )

    def deduction_total_for(self, key: str) -> Decimal:
        return self.per_load_deductions.get(key, Decimal("0")) * self.quantity

    def to_json_dict(self) -> dict[str, Any]:
        data: dict[str, Any] = {
            TYPE_KEY: INCOME_TYPE,
            "productKey": self.product_key,
            "productLabel": self.product_label,
            "truckKey": self.truck_key,
            "truckLabel": self.truck_label,
            "quantity": self.quantity,
            "unitPrice": _json_number(self.unit_price),
            "perLoadDeductions": {
                key: _json_number(value) for key, value in self.per_load_deductions.items()
            },
            "gross": _json_number(self.gross),
            "perLoadDeductionTotal": _json_number(self.per_load_deduction_total),
            "deductionTotal": _json_number(self.deduction_total),
            "net": _json_number(self.net),
            "notes": self.notes,
        }
        if self.imported_from:
            data["importedFrom"] = self.imported_from
        return data

    @classmethod
    def from_json_dict(cls, data: dict[str, Any]) -> "IncomePayload":
        quantity = data.get("quantity")
        if isinstance(quantity, bool) or not isinstance(quantity, (int, Decimal)):
            raise ValueError("quantity must be an integer")
        if isinstance(quantity, Decimal):
            if quantity != quantity.to_integral_value():
                raise ValueError("quantity must be an integer")
            quantity = int(quantity)
        raw_deductions = data.get("perLoadDeductions") or {}
        if not isinstance(raw_deductions, dict):
            raise ValueError("perLoadDeductions must be an object")
        deductions = {str(key): _as_decimal(value) for key, value in raw_deductions.items()}
        return cls(
            product_key=str(data.get("productKey") or "other"),
            product_label=str(data.get("productLabel") or ""),
            truck_key=str(data.get("truckKey") or ""),
            truck_label=str(data.get("truckLabel") or ""),
            quantity=quantity,
            unit_price=_as_decimal(data["unitPrice"]),
            per_load_deductions=deductions,
            gross=_as_decimal(data["gross"]),
            per_load_deduction_total=_as_decimal(data.get("perLoadDeductionTotal", 0)),
            deduction_total=_as_decimal(data.get("deductionTotal", 0)),
            net=_as_decimal(data["net"]),
            notes=str(data.get("notes") or ""),
            imported_from=str(data.get("importedFrom") or ""),
        )


@dataclass(frozen=True)
class UnknownPayload:
    """A JSON object tagged with a type this version does not understand."""

    type_tag: str
    data: dict[str, Any] = field(default_factory=dict)


@dataclass(frozen=True)
class FreeText:
    text: str


DecodedDescription = Union[IncomePayload, UnknownPayload, FreeText]


def encode_payload(payload: IncomePayload) -> str:
    return simplejson.dumps(payload.to_json_dict(), ensure_ascii=False, use_decimal=True)


def decode_description(text: Optional[str]) -> DecodedDescription:
    raw = text or ""
    stripped = raw.strip()
    if not stripped.startswith("{"):
        return FreeText(raw)
    try:
        data = simplejson.loads(stripped, use_decimal=True)
    except ValueError:
        return FreeText(raw)
    if not isinstance(data, dict):
        return FreeText(raw)
    type_tag = data.get(TYPE_KEY)
    if type_tag != INCOME_TYPE:
        if isinstance(type_tag, str) and type_tag:
            return UnknownPayload(type_tag, data)
        return FreeText(raw)
    try:
        return IncomePayload.from_json_dict(data)
    except (KeyError, ValueError):
        return FreeText(raw)


def decode_payload(text: Optional[str]) -> Optional[IncomePayload]:
    decoded = decode_description(text)
    return decoded if isinstance(decoded, IncomePayload) else None
