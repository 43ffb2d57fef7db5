"""
loader.py: read a spreadsheet file into a WorkbookGrid.

Supports: .xlsx .xlsm (openpyxl, cached values), .xls (pandas + xlrd),
.ods (pandas + odfpy), .csv (chardet encoding detection).

Public API:
    grid = load_workbook_grid("path/to/file.xlsx")

Raises FileNotFoundError for a missing path, ValueError for corrupt,
encrypted or unsupported files, and ImportError with an install hint when an
optional engine is missing.
"""

from __future__ import annotations

import csv
import importlib
import io
import zipfile
from pathlib import Path
from typing import Any

import chardet
import pandas as pd
from openpyxl import load_workbook

from sheet_ledger.grid import Sheet, WorkbookGrid
from sheet_ledger.logging_setup import get_logger

log = get_logger(__name__)

MODERN_WORKBOOK_FORMATS = {".xlsx", ".xlsm"}
PANDAS_WORKBOOK_FORMATS = {".xls": "xlrd", ".ods": "odf"}
TEXT_FORMATS = {".csv"}
SUPPORTED_FORMATS = MODERN_WORKBOOK_FORMATS | set(PANDAS_WORKBOOK_FORMATS) | TEXT_FORMATS

OLE_MAGIC = b"\xd0\xcf\x11\xe0\xa1\xb1\x1a\xe1"


def is_encrypted_ooxml(file_path: Path) -> bool:
    if file_path.suffix.lower() not in MODERN_WORKBOOK_FORMATS:
        return False
    with file_path.open("rb") as handle:
        if handle.read(len(OLE_MAGIC)) == OLE_MAGIC:
            # Office wraps password-protected OOXML in an OLE container.
            return True
    try:
        with zipfile.ZipFile(file_path) as archive:
            names = set(archive.namelist())
    except zipfile.BadZipFile:
        return False
    return {"EncryptedPackage", "EncryptionInfo"}.issubset(names)


def _detect_encoding(raw: bytes) -> str:
    result = chardet.detect(raw)
    detected = result.get("encoding") or "utf-8"
    log.debug("chardet picked %s (confidence %.2f)", detected, result.get("confidence") or 0.0)
    return detected


def _read_text_safely(raw: bytes, preferred_encoding: str) -> str:
    """Decode line by line: UTF-8, then the detected encoding, then latin-1."""
    decoded_lines: list[str] = []
    for raw_line in raw.split(b"\n"):
        decoded: str | None = None
        for enc in ("utf-8", preferred_encoding, "latin-1"):
            try:
                decoded = raw_line.decode(enc)
                break
            except (LookupError, UnicodeDecodeError):
                continue
        if decoded is None:
            decoded = raw_line.decode("cp1252", errors="replace")
        decoded_lines.append(decoded.replace("\x00", "").replace("\ufeff", ""))
    return "\n".join(decoded_lines)


def _detect_delimiter(text: str) -> str:
    sample = "\n".join([line for line in text.splitlines() if line.strip()][:25])
    if not sample:
        return ","
    try:
        return csv.Sniffer().sniff(sample, delimiters=",;\t|").delimiter
    except csv.Error:
        return ","


def _load_csv(path: Path) -> WorkbookGrid:
    raw = path.read_bytes()
    text = _read_text_safely(raw, _detect_encoding(raw))
    delimiter = _detect_delimiter(text)
    rows = list(csv.reader(io.StringIO(text), delimiter=delimiter))
    return WorkbookGrid((Sheet.from_rows(path.stem, rows),))


def _load_openpyxl(path: Path) -> WorkbookGrid:
    if is_encrypted_ooxml(path):
        raise ValueError("Password-protected / encrypted workbooks are not supported")
    try:
        workbook = load_workbook(
            path,
            data_only=True,
            read_only=True,
            keep_vba=path.suffix.lower() == ".xlsm",
        )
    except Exception as exc:
        raise ValueError(f"Could not open workbook: {exc}") from exc
    try:
        sheets = []
        for worksheet in workbook.worksheets:
            rows = worksheet.iter_rows(values_only=True)
            sheets.append(Sheet.from_rows(worksheet.title, rows))
    finally:
        workbook.close()
    return WorkbookGrid(tuple(sheets))


def _frame_rows(frame: pd.DataFrame) -> list[list[Any]]:
    return frame.astype(object).where(frame.notna(), None).values.tolist()


def _load_pandas(path: Path, suffix: str) -> WorkbookGrid:
    engine = PANDAS_WORKBOOK_FORMATS[suffix]
    try:
        importlib.import_module(engine)
    except ImportError:
        package = "xlrd" if engine == "xlrd" else "odfpy"
        raise ImportError(f"{suffix} files require {package} - run: pip install {package}")
    try:
        frames = pd.read_excel(path, sheet_name=None, header=None, engine=engine)
    except Exception as exc:
        raise ValueError(f"Could not open workbook: {exc}") from exc
    return WorkbookGrid(
        tuple(Sheet.from_rows(str(name), _frame_rows(frame)) for name, frame in frames.items())
    )


def load_workbook_grid(path: str | Path) -> WorkbookGrid:
    path = Path(path)
    if not path.exists():
        raise FileNotFoundError(f"File not found: {path}")
    suffix = path.suffix.lower()
    if suffix not in SUPPORTED_FORMATS:
        raise ValueError(
            f"Unsupported file type '{suffix or '[missing extension]'}'. "
            f"Supported: {', '.join(sorted(SUPPORTED_FORMATS))}"
        )
    if suffix in MODERN_WORKBOOK_FORMATS:
        grid = _load_openpyxl(path)
    elif suffix in TEXT_FORMATS:
        grid = _load_csv(path)
    else:
        grid = _load_pandas(path, suffix)
    if not grid.sheets:
        raise ValueError(f"Workbook has no sheets: {path.name}")
    log.info("Loaded %s: %d sheet(s)", path.name, len(grid.sheets))
    return grid
