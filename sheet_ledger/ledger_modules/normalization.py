from __future__ import annotations

import math
import re
import warnings
from datetime import date, datetime, timedelta
from decimal import ROUND_HALF_UP, Decimal, InvalidOperation
from typing import Any, Optional

import pandas as pd

from sheet_ledger.ledger_modules.shared import CENTS, MONTH_NAMES_ID, WHOLE, ZERO

EXCEL_EPOCH = datetime(1899, 12, 30)
MAX_SERIAL = 2958465  # 9999-12-31

ISO_DATE_RE = re.compile(r"^(\d{4})-(\d{1,2})-(\d{1,2})(?:[T ].*)?$")
DAY_FIRST_RE = re.compile(r"^(\d{1,2})[/-](\d{1,2})[/-](\d{4}|\d{2})$")
SERIAL_TEXT_RE = re.compile(r"^\d{5}$")
CURRENCY_RE = re.compile(r"(?i)(rp|idr)|[$€£¥₹]|\s+")
PLAIN_NUMBER_RE = re.compile(r"[+-]?\d+(\.\d+)?")
TRAILING_DASH_RE = re.compile(r"[.,]?-+$")
LEADING_INT_RE = re.compile(r"^\s*([+-]?\d+)")

ENGLISH_MONTHS = (
    "January", "February", "March", "April", "May", "June",
    "July", "August", "September", "October", "November", "December",
)
_ID_MONTH_RE = re.compile(r"\b(" + "|".join(MONTH_NAMES_ID) + r")\b", re.IGNORECASE)


def _is_number(value: Any) -> bool:
    return isinstance(value, (int, float, Decimal)) and not isinstance(value, bool)


def _from_serial(serial: float | Decimal) -> Optional[date]:
    if isinstance(serial, float) and not math.isfinite(serial):
        return None
    if isinstance(serial, Decimal) and not serial.is_finite():
        return None
    whole = math.floor(serial)
    if whole < 1 or whole > MAX_SERIAL:
        return None
    return (EXCEL_EPOCH + timedelta(days=int(whole))).date()


def _safe_date(year: int, month: int, day: int) -> Optional[date]:
    try:
        return date(year, month, day)
    except ValueError:
        return None


def _english_months(text: str) -> str:
    return _ID_MONTH_RE.sub(lambda m: ENGLISH_MONTHS[MONTH_NAMES_ID.index(m.group(1).upper())], text)


def _fallback_parse(text: str) -> Optional[date]:
    # Bare digit runs are quantities or codes, not dates.
    if text.isdigit() or not re.search(r"\d", text):
        return None
    with warnings.catch_warnings():
        warnings.simplefilter("ignore")
        try:
            parsed = pd.to_datetime(_english_months(text), dayfirst=True, errors="coerce")
        except (ValueError, TypeError, OverflowError):
            return None
    if parsed is None or pd.isna(parsed):
        return None
    return parsed.date()


def normalize_date(value: Any) -> Optional[date]:
    """Return the calendar day a cell denotes, or ``None``.

    Accepts native dates, spreadsheet day serials, ISO text, day-first
    ``DD/MM/YYYY`` / ``DD-MM-YYYY`` / ``DD/MM/YY`` text and five-digit serial
    strings. Anything else goes through pandas as a last resort. Never raises.
    """
    if value is None or isinstance(value, bool):
        return None
    if isinstance(value, datetime):
        return value.date()
    if isinstance(value, date):
        return value
    if _is_number(value):
        return _from_serial(value)
    if hasattr(value, "to_pydatetime"):
        return normalize_date(value.to_pydatetime())

    text = str(value).strip()
    if not text:
        return None

    m = ISO_DATE_RE.match(text)
    if m:
        return _safe_date(int(m.group(1)), int(m.group(2)), int(m.group(3)))

    # Day-first only; an impossible day/month is rejected rather than swapped.
    m = DAY_FIRST_RE.match(text)
    if m:
        day, month, year_text = int(m.group(1)), int(m.group(2)), m.group(3)
        year = int(year_text)
        if len(year_text) == 2:
            year += 2000 if year < 50 else 1900
        return _safe_date(year, month, day)

    if SERIAL_TEXT_RE.match(text):
        return _from_serial(int(text))

    return _fallback_parse(text)


def normalize_amount(value: Any) -> Decimal:
    """Parse an Indonesian-formatted money cell into a cent-quantized Decimal.

    ``"Rp 1.100.000,-"`` -> ``Decimal("1100000.00")``. Residue that is not a
    plain number after cleanup yields ``Decimal("0.00")``.
    """
    if value is None or isinstance(value, bool):
        return ZERO
    if isinstance(value, float):
        if not math.isfinite(value):
            return ZERO
        return Decimal(repr(value)).quantize(CENTS, rounding=ROUND_HALF_UP)
    if isinstance(value, (int, Decimal)):
        if isinstance(value, Decimal) and not value.is_finite():
            return ZERO
        return Decimal(value).quantize(CENTS, rounding=ROUND_HALF_UP)

    text = TRAILING_DASH_RE.sub("", CURRENCY_RE.sub("", str(value)))
    text = text.replace(".", "").replace(",", ".")
    if not PLAIN_NUMBER_RE.fullmatch(text):
        return ZERO
    try:
        return Decimal(text).quantize(CENTS, rounding=ROUND_HALF_UP)
    except InvalidOperation:
        return ZERO


def normalize_quantity(value: Any) -> int:
    """Whole loads from a cell; ``"15 rit"`` -> 15, unparseable -> 0."""
    if value is None or isinstance(value, bool):
        return 0
    if isinstance(value, int):
        return value
    if isinstance(value, float):
        return int(value) if math.isfinite(value) else 0
    if isinstance(value, Decimal):
        return int(value) if value.is_finite() else 0
    m = LEADING_INT_RE.match(str(value))
    return int(m.group(1)) if m else 0


def per_load_rate(fee_total: Decimal, quantity: int) -> Decimal:
    """Fee column total spread over the loads, rounded half-up to whole units."""
    if quantity <= 0:
        return Decimal("0")
    return (Decimal(fee_total) / Decimal(quantity)).quantize(WHOLE, rounding=ROUND_HALF_UP)


def format_rupiah(amount: Decimal) -> str:
    whole = Decimal(amount).quantize(WHOLE, rounding=ROUND_HALF_UP)
    return "Rp " + f"{whole:,}".replace(",", ".")
