"""Product catalog with default prices and per-load deductions, plus manual income entry."""

from __future__ import annotations

from dataclasses import dataclass, field
from datetime import date
from decimal import ROUND_HALF_UP, Decimal
from typing import Optional

from sheet_ledger.ledger_modules.payload import IncomePayload, encode_payload
from sheet_ledger.ledger_modules.shared import CENTS, PRODUCT_RULES, TRUCK_RULES, NormalizedRecord


@dataclass(frozen=True)
class TruckOption:
    key: str
    label: str
    price: Decimal
    deductions: dict[str, Decimal] = field(default_factory=dict)


@dataclass(frozen=True)
class Product:
    key: str
    label: str
    trucks: tuple[TruckOption, ...]

    def truck(self, key: str) -> TruckOption:
        for option in self.trucks:
            if option.key == key:
                return option
        available = ", ".join(option.key for option in self.trucks)
        raise ValueError(f"Truck '{key}' is not offered for {self.label}. Available: {available}")


def _label(rules, key: str) -> str:
    return next(rule.label for rule in rules if rule.key == key)


PRODUCT_CATALOG = (
    Product(
        key="pasirAyak",
        label=_label(PRODUCT_RULES, "pasirAyak"),
        trucks=(
            TruckOption(
                "tronton",
                _label(TRUCK_RULES, "tronton"),
                Decimal("1100000"),
                {"loading": Decimal("50000"), "market": Decimal("35000"), "broker": Decimal("40000")},
            ),
            TruckOption(
                "colt",
                _label(TRUCK_RULES, "colt"),
                Decimal("300000"),
                {"loading": Decimal("10000"), "market": Decimal("10000"), "broker": Decimal("40000")},
            ),
        ),
    ),
    Product(
        key="pasirLempung",
        label=_label(PRODUCT_RULES, "pasirLempung"),
        trucks=(
            TruckOption(
                "colt",
                _label(TRUCK_RULES, "colt"),
                Decimal("300000"),
                {"loading": Decimal("10000"), "market": Decimal("10000")},
            ),
        ),
    ),
)


def find_product(key: str) -> Product:
    for product in PRODUCT_CATALOG:
        if product.key == key:
            return product
    available = ", ".join(product.key for product in PRODUCT_CATALOG)
    raise ValueError(f"Unknown product '{key}'. Available: {available}")


def build_income_entry(
    *,
    trans_date: date,
    product_key: str,
    truck_key: str,
    quantity: int,
    unit_price: Optional[Decimal] = None,
    deductions: Optional[dict[str, Decimal]] = None,
    notes: str = "",
) -> NormalizedRecord:
    """Record for one manually entered income line.

    Price and deductions default to the catalog values for the product/truck
    pair. Pass ``deductions={}`` to enter a line without deductions.
    """
    if quantity < 1:
        raise ValueError("quantity must be at least 1")
    product = find_product(product_key)
    truck = product.truck(truck_key)
    payload = IncomePayload.build(
        product_key=product.key,
        product_label=product.label,
        truck_key=truck.key,
        truck_label=truck.label,
        quantity=quantity,
        unit_price=truck.price if unit_price is None else Decimal(unit_price),
        per_load_deductions=dict(truck.deductions if deductions is None else deductions),
        notes=notes,
    )
    if payload.net < 0:
        raise ValueError(f"Deductions exceed the gross amount (net {payload.net})")
    return NormalizedRecord(
        trans_date=trans_date,
        category=f"{product.label} - {truck.label}",
        description=encode_payload(payload),
        amount=payload.net.quantize(CENTS, rounding=ROUND_HALF_UP),
    )
