"""Import session state machine.

The session is an immutable value. Every transition function takes a session
and returns a new one; only ``commit`` talks to the persistence collaborator.
User-correctable problems land in ``session.error`` and leave the stage
unchanged. Driving the machine out of order raises ``InvalidTransition``.
"""

from __future__ import annotations

import enum
from dataclasses import dataclass, field, replace
from pathlib import Path
from typing import Optional, Sequence, Union

from sheet_ledger.grid import WorkbookGrid
from sheet_ledger.ledger_modules.preprocessing import (
    apply_manual_mapping,
    auto_map_columns,
    classify_sheet,
    describe_missing,
    first_non_empty_row,
    header_labels,
    importable_sheets,
    locate_header_row,
    missing_fields,
)
from sheet_ledger.ledger_modules.rows import (
    SheetRows,
    newest_first,
    normalize_generic_rows,
    normalize_template_rows,
)
from sheet_ledger.ledger_modules.shared import (
    GENERIC_IMPORT,
    TEMPLATE_IMPORT,
    TRUCK_RULES,
    ZERO,
    CandidateRow,
    ColumnMapping,
)
from sheet_ledger.loader import load_workbook_grid
from sheet_ledger.logging_setup import get_logger
from sheet_ledger.store import BulkCreateResult, StoreError, TransactionStore

log = get_logger(__name__)


class Stage(enum.Enum):
    UPLOAD = "upload"
    SHEET_SELECTION = "sheet_selection"
    COLUMN_MAPPING = "column_mapping"
    PREVIEW = "preview"
    COMMITTED = "committed"
    CANCELLED = "cancelled"


TERMINAL_STAGES = {Stage.COMMITTED, Stage.CANCELLED}


class InvalidTransition(ValueError):
    pass


@dataclass(frozen=True)
class ImportSession:
    kind: str = TEMPLATE_IMPORT
    stage: Stage = Stage.UPLOAD
    source_grid: Optional[WorkbookGrid] = None
    source_name: str = ""
    available_sheets: tuple[str, ...] = ()
    selected_sheets: tuple[str, ...] = ()
    header_rows: dict[str, int] = field(default_factory=dict)
    headers: tuple[str, ...] = ()
    mapping: ColumnMapping = field(default_factory=ColumnMapping)
    candidates: tuple[CandidateRow, ...] = ()
    skipped_rows: int = 0
    sheet_errors: tuple[str, ...] = ()
    error: Optional[str] = None
    commit_result: Optional[BulkCreateResult] = None

    @property
    def valid_candidates(self) -> list[CandidateRow]:
        return [row for row in self.candidates if row.valid]

    @property
    def invalid_candidates(self) -> list[CandidateRow]:
        return [row for row in self.candidates if not row.valid]


def new_session(kind: str = TEMPLATE_IMPORT) -> ImportSession:
    if kind not in (TEMPLATE_IMPORT, GENERIC_IMPORT):
        raise ValueError(f"Unknown import kind '{kind}'")
    return ImportSession(kind=kind)


def _require(state: ImportSession, *stages: Stage) -> None:
    if state.stage not in stages:
        allowed = ", ".join(stage.value for stage in stages)
        raise InvalidTransition(f"Session is in '{state.stage.value}', expected one of: {allowed}")


def upload(state: ImportSession, grid: WorkbookGrid, source_name: str = "") -> ImportSession:
    _require(state, Stage.UPLOAD)
    base = replace(state, source_name=source_name, error=None, sheet_errors=())
    if state.kind == TEMPLATE_IMPORT:
        return _upload_template(base, grid)
    return _upload_generic(base, grid)


def _upload_template(state: ImportSession, grid: WorkbookGrid) -> ImportSession:
    names = tuple(sheet.name for sheet, _ in importable_sheets(grid.sheets))
    if not names:
        patterns = ", ".join(rule.patterns[-1] for rule in TRUCK_RULES)
        return replace(state, error=f"No sheet name matches a truck type ({patterns})")
    log.info("%s: %d importable sheet(s) of %d", state.source_name, len(names), len(grid.sheets))
    return replace(
        state,
        stage=Stage.SHEET_SELECTION,
        source_grid=grid,
        available_sheets=names,
        selected_sheets=names,
    )


def _upload_generic(state: ImportSession, grid: WorkbookGrid) -> ImportSession:
    if not grid.sheets:
        return replace(state, error="Workbook has no sheets")
    sheet = grid.first_sheet()
    header_index = locate_header_row(sheet, GENERIC_IMPORT)
    if header_index is None:
        header_index = first_non_empty_row(sheet)
    if header_index is None:
        return replace(state, error=f"Sheet '{sheet.name}' is empty")
    return replace(
        state,
        stage=Stage.COLUMN_MAPPING,
        source_grid=grid,
        available_sheets=(sheet.name,),
        selected_sheets=(sheet.name,),
        header_rows={sheet.name: header_index},
        headers=tuple(header_labels(sheet, header_index)),
        mapping=auto_map_columns(sheet.row(header_index), GENERIC_IMPORT),
    )


def upload_file(state: ImportSession, path: Union[str, Path]) -> ImportSession:
    """Read ``path`` and upload it; unreadable files leave the session in Upload with an error."""
    _require(state, Stage.UPLOAD)
    try:
        grid = load_workbook_grid(path)
    except (FileNotFoundError, ValueError, ImportError) as exc:
        log.warning("Upload of %s failed: %s", path, exc)
        return replace(state, error=str(exc))
    return upload(state, grid, Path(path).name)


def select_sheets(state: ImportSession, names: Sequence[str]) -> ImportSession:
    _require(state, Stage.SHEET_SELECTION)
    unknown = [name for name in names if name not in state.available_sheets]
    if unknown:
        return replace(state, error=f"Not an importable sheet: {', '.join(unknown)}")
    ordered = tuple(name for name in state.available_sheets if name in set(names))
    return replace(state, selected_sheets=ordered, error=None)


def toggle_sheet(state: ImportSession, name: str) -> ImportSession:
    _require(state, Stage.SHEET_SELECTION)
    if name in state.selected_sheets:
        return select_sheets(state, [n for n in state.selected_sheets if n != name])
    return select_sheets(state, [*state.selected_sheets, name])


def set_mapping(state: ImportSession, overrides: dict[str, Optional[int]]) -> ImportSession:
    _require(state, Stage.COLUMN_MAPPING)
    try:
        mapping = apply_manual_mapping(state.mapping, overrides, width=len(state.headers))
    except ValueError as exc:
        return replace(state, error=str(exc))
    return replace(state, mapping=mapping, error=None)


def build_preview(state: ImportSession) -> ImportSession:
    _require(state, Stage.SHEET_SELECTION, Stage.COLUMN_MAPPING)
    if state.kind == TEMPLATE_IMPORT:
        return _preview_template(state)
    return _preview_generic(state)


def _to_preview(state: ImportSession, parsed: list[SheetRows], **changes) -> ImportSession:
    candidates = [row for sheet_rows in parsed for row in sheet_rows.candidates]
    skipped = sum(sheet_rows.skipped for sheet_rows in parsed)
    if not candidates:
        message = "; ".join(changes.get("sheet_errors", ())) or "No data rows found"
        return replace(state, error=message, **changes)
    if state.kind == TEMPLATE_IMPORT:
        candidates = newest_first(candidates)
    return replace(
        state,
        stage=Stage.PREVIEW,
        candidates=tuple(candidates),
        skipped_rows=skipped,
        error=None,
        **changes,
    )


def _preview_template(state: ImportSession) -> ImportSession:
    if not state.selected_sheets:
        return replace(state, error="Select at least one sheet to import")
    grid = state.source_grid
    parsed: list[SheetRows] = []
    sheet_errors: list[str] = []
    header_rows: dict[str, int] = {}
    for name in state.selected_sheets:
        sheet = grid.sheet(name)
        header_index = locate_header_row(sheet, TEMPLATE_IMPORT)
        if header_index is None:
            sheet_errors.append(f"Could not find a header row in sheet '{name}'")
            continue
        mapping = auto_map_columns(sheet.row(header_index), TEMPLATE_IMPORT)
        missing = missing_fields(mapping, TEMPLATE_IMPORT)
        if missing:
            sheet_errors.append(f"Sheet '{name}': {describe_missing(missing)}")
            continue
        header_rows[name] = header_index
        parsed.append(normalize_template_rows(sheet, header_index, mapping, classify_sheet(name)))
    for message in sheet_errors:
        log.warning(message)
    return _to_preview(state, parsed, sheet_errors=tuple(sheet_errors), header_rows=header_rows)


def _preview_generic(state: ImportSession) -> ImportSession:
    missing = missing_fields(state.mapping, GENERIC_IMPORT)
    if missing:
        return replace(state, error=describe_missing(missing))
    name = state.selected_sheets[0]
    sheet = state.source_grid.sheet(name)
    parsed = [normalize_generic_rows(sheet, state.header_rows[name], state.mapping)]
    return _to_preview(state, parsed)


def back(state: ImportSession) -> ImportSession:
    _require(state, Stage.PREVIEW)
    previous = Stage.SHEET_SELECTION if state.kind == TEMPLATE_IMPORT else Stage.COLUMN_MAPPING
    return replace(state, stage=previous, candidates=(), skipped_rows=0, error=None)


def cancel(state: ImportSession) -> ImportSession:
    return replace(
        state,
        stage=Stage.CANCELLED,
        source_grid=None,
        candidates=(),
        error=None,
    )


def commit(state: ImportSession, store: TransactionStore) -> ImportSession:
    """Send the valid candidates, in preview order, to ``store.bulk_create``.

    Per-record failures are a normal outcome and are kept on the session. A
    transport failure leaves the session in Preview with an error.
    """
    _require(state, Stage.PREVIEW)
    records = [row.to_record() for row in state.valid_candidates]
    if not records:
        return replace(state, error="No valid rows to import")
    try:
        result = store.bulk_create(records)
    except StoreError as exc:
        log.error("Commit failed: %s", exc)
        return replace(state, error=str(exc))
    if result.failed:
        log.warning("Committed %d record(s), %d failed", result.imported, result.failed)
    return replace(state, stage=Stage.COMMITTED, commit_result=result, error=None)


def preview_summary(state: ImportSession) -> dict:
    valid = state.valid_candidates
    return {
        "candidates": len(state.candidates),
        "valid": len(valid),
        "invalid": len(state.invalid_candidates),
        "skipped_rows": state.skipped_rows,
        "rows_with_warnings": sum(1 for row in state.candidates if row.warnings),
        "valid_amount_total": str(sum((row.amount for row in valid), ZERO)),
        "sheets": list(state.selected_sheets),
        "sheet_errors": list(state.sheet_errors),
    }


@dataclass(frozen=True)
class Upload:
    grid: WorkbookGrid
    source_name: str = ""


@dataclass(frozen=True)
class SelectSheets:
    names: tuple[str, ...]


@dataclass(frozen=True)
class ToggleSheet:
    name: str


@dataclass(frozen=True)
class SetMapping:
    overrides: dict[str, Optional[int]]


@dataclass(frozen=True)
class BuildPreview:
    pass


@dataclass(frozen=True)
class Back:
    pass


@dataclass(frozen=True)
class Cancel:
    pass


Event = Union[Upload, SelectSheets, ToggleSheet, SetMapping, BuildPreview, Back, Cancel]


def transition(state: ImportSession, event: Event) -> ImportSession:
    if state.stage in TERMINAL_STAGES:
        raise InvalidTransition(f"Session is already {state.stage.value}")
    if isinstance(event, Upload):
        return upload(state, event.grid, event.source_name)
    if isinstance(event, SelectSheets):
        return select_sheets(state, event.names)
    if isinstance(event, ToggleSheet):
        return toggle_sheet(state, event.name)
    if isinstance(event, SetMapping):
        return set_mapping(state, event.overrides)
    if isinstance(event, BuildPreview):
        return build_preview(state)
    if isinstance(event, Back):
        return back(state)
    if isinstance(event, Cancel):
        return cancel(state)
    raise InvalidTransition(f"Unknown event: {event!r}")
