from __future__ import annotations

import argparse
import json
import os
import sys
from datetime import datetime, timezone
from decimal import Decimal
from pathlib import Path
from typing import Any

from openpyxl.utils import column_index_from_string

from sheet_ledger import __version__ as TOOL_VERSION
from sheet_ledger import session as import_session
from sheet_ledger.contracts import build_contract, build_run_summary
from sheet_ledger.grid import WorkbookGrid
from sheet_ledger.ledger_modules.preprocessing import (
    auto_map_columns,
    classify_sheet,
    describe_missing,
    first_non_empty_row,
    header_labels,
    locate_header_row,
    missing_fields,
)
from sheet_ledger.ledger_modules.shared import GENERIC_IMPORT, SEMANTIC_FIELDS, TEMPLATE_IMPORT
from sheet_ledger.ledger_modules.workbook import assemble_export, group_records, write_workbook
from sheet_ledger.loader import load_workbook_grid
from sheet_ledger.logging_setup import configure_logging, get_logger
from sheet_ledger.store import RESOURCES, HttpTransactionStore, StoreError, records_from_json

log = get_logger(__name__)

EXIT_SUCCESS = 0
EXIT_COMMAND_ERROR = 1
EXIT_PARSE_FAILED = 2
EXIT_NOTHING_TO_IMPORT = 4
EXIT_PARTIAL = 6

OUTPUT_STAMP_ENV = "SHEET_LEDGER_OUTPUT_STAMP"


class CliError(Exception):
    def __init__(self, message: str, code: int = EXIT_COMMAND_ERROR) -> None:
        super().__init__(message)
        self.code = code


class SheetLedgerArgumentParser(argparse.ArgumentParser):
    def error(self, message: str) -> None:
        raise CliError(message, EXIT_COMMAND_ERROR)


def eprint(message: str) -> None:
    print(message, file=sys.stderr)


def emit_human(message: str, *, quiet: bool = False) -> None:
    if not quiet:
        eprint(message)


def _json_default(value: Any) -> Any:
    if isinstance(value, Decimal):
        return str(value)
    if isinstance(value, Path):
        return str(value)
    raise TypeError(f"Object of type {type(value).__name__} is not JSON serializable")


def json_dumps(payload: Any) -> str:
    return json.dumps(payload, indent=2, ensure_ascii=False, sort_keys=True, default=_json_default)


def timestamp_token() -> str:
    override = os.environ.get(OUTPUT_STAMP_ENV)
    if override:
        return override
    return datetime.now(timezone.utc).strftime("%Y%m%dT%H%M%SZ")


def default_export_path(resource: str) -> Path:
    return Path.cwd() / "sheet-ledger-output" / f"{resource}-{timestamp_token()}.xlsx"


def classify_exception(exc: Exception) -> int:
    if isinstance(exc, CliError):
        return exc.code
    if isinstance(exc, (ImportError, UnicodeDecodeError)):
        return EXIT_PARSE_FAILED
    if isinstance(exc, FileNotFoundError):
        return EXIT_COMMAND_ERROR
    if isinstance(exc, ValueError):
        return EXIT_PARSE_FAILED
    return EXIT_COMMAND_ERROR


def load_grid(input_path: Path) -> WorkbookGrid:
    try:
        return load_workbook_grid(input_path)
    except (FileNotFoundError, ValueError, ImportError) as exc:
        raise CliError(str(exc), classify_exception(exc)) from exc


def parse_column_ref(text: str) -> int:
    """Zero-based column from ``3`` or a spreadsheet letter such as ``D``."""
    text = text.strip()
    if text.isdigit():
        return int(text)
    try:
        return column_index_from_string(text.upper()) - 1
    except ValueError as exc:
        raise CliError(f"Invalid column reference '{text}'", EXIT_COMMAND_ERROR) from exc


def parse_mapping_overrides(items: list[str] | None) -> dict[str, int | None]:
    overrides: dict[str, int | None] = {}
    for item in items or []:
        name, sep, ref = item.partition("=")
        name = name.strip()
        if not sep or name not in SEMANTIC_FIELDS:
            raise CliError(
                f"Invalid --map '{item}'. Use field=column with field one of: {', '.join(SEMANTIC_FIELDS)}",
                EXIT_COMMAND_ERROR,
            )
        overrides[name] = None if ref.strip() in {"", "-"} else parse_column_ref(ref)
    return overrides


def build_parser() -> argparse.ArgumentParser:
    parser = SheetLedgerArgumentParser(prog="sheet-ledger")
    parser.add_argument("--log-level", dest="log_level", default=None, help="Logging level (default: SHEET_LEDGER_LOG_LEVEL or WARNING)")
    subparsers = parser.add_subparsers(dest="command", required=True)

    inspect = subparsers.add_parser("inspect", help="Show sheets, header rows and detected columns.")
    inspect.add_argument("input", help="Input workbook path")
    inspect.add_argument("--generic", action="store_true", help="Inspect for the generic single-sheet import")
    inspect.add_argument("--json", action="store_true", help="Write machine JSON to stdout")

    import_cmd = subparsers.add_parser("import", help="Import a workbook into the ledger API.")
    import_cmd.add_argument("input", help="Input workbook path")
    import_cmd.add_argument("--generic", action="store_true", help="Generic single-sheet import with column mapping")
    import_cmd.add_argument("--type", dest="resource", choices=RESOURCES, default="incomes", help="Target resource")
    import_cmd.add_argument("--map", dest="mappings", action="append", metavar="FIELD=COLUMN", help="Manual column mapping (generic import)")
    import_cmd.add_argument("--sheet", dest="sheets", action="append", metavar="NAME", help="Only import these sheets (template import)")
    import_cmd.add_argument("--exclude-sheet", dest="exclude_sheets", action="append", metavar="NAME", help="Skip these sheets (template import)")
    import_cmd.add_argument("--dry-run", action="store_true", help="Build the preview without sending anything")
    import_cmd.add_argument("--show-rows", action="store_true", help="Include every candidate row in the JSON output")
    import_cmd.add_argument("--api-url", dest="api_url", help="API base URL (default: SHEET_LEDGER_API_URL)")
    import_cmd.add_argument("--token", help="Bearer token (default: SHEET_LEDGER_API_TOKEN)")
    import_cmd.add_argument("--json", action="store_true", help="Write machine JSON to stdout")
    import_cmd.add_argument("-q", "--quiet", action="store_true", help="Minimal human logs")

    export = subparsers.add_parser("export", help="Export ledger records into a multi-sheet report.")
    source = export.add_mutually_exclusive_group()
    source.add_argument("--api-url", dest="api_url", help="API base URL (default: SHEET_LEDGER_API_URL)")
    source.add_argument("--from-json", dest="from_json", help="Read records from a JSON file instead of the API")
    export.add_argument("--token", help="Bearer token (default: SHEET_LEDGER_API_TOKEN)")
    export.add_argument("--type", dest="resource", choices=RESOURCES, default="incomes", help="Source resource")
    export.add_argument("--output", help="Output .xlsx path")
    export.add_argument("--title", default="LAPORAN", help="Title band prefix")
    export.add_argument("--no-summary", dest="summary", action="store_false", help="Skip the summary sheet")
    export.add_argument("--json", action="store_true", help="Write machine JSON to stdout")
    export.add_argument("-q", "--quiet", action="store_true", help="Minimal human logs")

    subparsers.add_parser("version", help="Print version")
    return parser


def maybe_emit_json_stdout(payload: Any, enabled: bool) -> None:
    if enabled:
        print(json_dumps(payload))


def inspect_grid(grid: WorkbookGrid, kind: str) -> list[dict[str, Any]]:
    sheets = []
    for sheet in grid.sheets:
        rule = classify_sheet(sheet.name)
        header_index = locate_header_row(sheet, kind)
        if header_index is None and kind == GENERIC_IMPORT:
            header_index = first_non_empty_row(sheet)
        entry: dict[str, Any] = {
            "name": sheet.name,
            "rows": len(sheet.rows),
            "truck_key": rule.key if rule else None,
            "importable": kind == GENERIC_IMPORT or rule is not None,
            "header_row": header_index + 1 if header_index is not None else None,
            "headers": [],
            "mapping": {},
            "missing_fields": [],
        }
        if header_index is not None:
            mapping = auto_map_columns(sheet.row(header_index), kind)
            entry["headers"] = header_labels(sheet, header_index)
            entry["mapping"] = mapping.to_dict()
            entry["missing_fields"] = missing_fields(mapping, kind)
        sheets.append(entry)
        if kind == GENERIC_IMPORT:
            break
    return sheets


def run_inspect(args: argparse.Namespace) -> int:
    input_path = Path(args.input)
    grid = load_grid(input_path)
    kind = GENERIC_IMPORT if args.generic else TEMPLATE_IMPORT
    sheets = inspect_grid(grid, kind)
    payload = {
        "contract": build_contract("ledger.inspect"),
        "file": str(input_path),
        "kind": kind,
        "sheets": sheets,
    }
    if args.json:
        maybe_emit_json_stdout(payload, True)
        return EXIT_SUCCESS
    lines = ["sheet-ledger inspect", f"File: {input_path}", f"Kind: {kind}"]
    for entry in sheets:
        status = "importable" if entry["importable"] else "skipped"
        lines.append(f"- {entry['name']} ({status}, {entry['rows']} rows)")
        if entry["header_row"]:
            lines.append(f"    header row {entry['header_row']}: {entry['mapping']}")
        if entry["missing_fields"]:
            lines.append(f"    {describe_missing(entry['missing_fields'])}")
    print("\n".join(lines))
    return EXIT_SUCCESS


def prepare_session(args: argparse.Namespace, grid: WorkbookGrid, input_path: Path) -> import_session.ImportSession:
    kind = GENERIC_IMPORT if args.generic else TEMPLATE_IMPORT
    state = import_session.upload(import_session.new_session(kind), grid, input_path.name)
    if state.error:
        raise CliError(state.error, EXIT_PARSE_FAILED)

    if kind == TEMPLATE_IMPORT:
        names = list(args.sheets or state.available_sheets)
        excluded = set(args.exclude_sheets or [])
        state = import_session.select_sheets(state, [name for name in names if name not in excluded])
    else:
        state = import_session.set_mapping(state, parse_mapping_overrides(args.mappings))
    if state.error:
        raise CliError(state.error, EXIT_COMMAND_ERROR)

    state = import_session.build_preview(state)
    if state.error:
        code = EXIT_NOTHING_TO_IMPORT if state.error == "No data rows found" else EXIT_PARSE_FAILED
        raise CliError(state.error, code)
    return state


def run_import(args: argparse.Namespace) -> int:
    input_path = Path(args.input)
    grid = load_grid(input_path)
    state = prepare_session(args, grid, input_path)
    preview = import_session.preview_summary(state)
    warnings = list(state.sheet_errors)
    for row in state.candidates:
        warnings.extend(f"{row.sheet_name} row {row.row_number}: {message}" for message in row.warnings)

    emit_human(
        f"Preview: {preview['valid']} valid, {preview['invalid']} invalid, "
        f"{preview['skipped_rows']} skipped row(s)",
        quiet=args.quiet,
    )

    details: dict[str, Any] = {"resource": args.resource, "dry_run": args.dry_run}
    if args.show_rows:
        details["rows"] = [row.to_dict() for row in state.candidates]

    if not state.valid_candidates:
        summary = build_run_summary(
            contract="ledger.import_summary",
            command="import",
            input_path=input_path,
            status="empty",
            metrics=preview,
            warnings=warnings,
            details=details,
        )
        maybe_emit_json_stdout(summary, args.json)
        emit_human("No valid rows to import.", quiet=args.quiet)
        return EXIT_NOTHING_TO_IMPORT

    if args.dry_run:
        summary = build_run_summary(
            contract="ledger.import_summary",
            command="import",
            input_path=input_path,
            status="dry_run",
            metrics=preview,
            warnings=warnings,
            details=details,
        )
        maybe_emit_json_stdout(summary, args.json)
        return EXIT_SUCCESS

    try:
        store = HttpTransactionStore.from_env(args.resource, base_url=args.api_url, token=args.token)
    except ValueError as exc:
        raise CliError(str(exc), EXIT_COMMAND_ERROR) from exc
    state = import_session.commit(state, store)
    if state.error:
        raise CliError(state.error, EXIT_COMMAND_ERROR)

    result = state.commit_result
    details["commit"] = result.to_dict()
    status = "partial" if result.failed else "ok"
    summary = build_run_summary(
        contract="ledger.import_summary",
        command="import",
        input_path=input_path,
        status=status,
        metrics=preview,
        warnings=warnings,
        details=details,
    )
    maybe_emit_json_stdout(summary, args.json)
    emit_human(f"Imported {result.imported} record(s), {result.failed} failed", quiet=args.quiet)
    for index, message in result.errors:
        emit_human(f"  record {index}: {message}", quiet=args.quiet)
    return EXIT_PARTIAL if result.failed else EXIT_SUCCESS


def load_export_records(args: argparse.Namespace):
    if args.from_json:
        path = Path(args.from_json)
        try:
            items = json.loads(path.read_text(encoding="utf-8"))
        except FileNotFoundError as exc:
            raise CliError(f"File not found: {path}", EXIT_COMMAND_ERROR) from exc
        except ValueError as exc:
            raise CliError(f"Could not parse {path}: {exc}", EXIT_PARSE_FAILED) from exc
        if isinstance(items, dict):
            items = items.get("data")
        if not isinstance(items, list):
            raise CliError(f"{path} must hold a JSON list of records", EXIT_PARSE_FAILED)
        try:
            return records_from_json(items), path
        except (ValueError, AttributeError) as exc:
            raise CliError(f"Could not read records from {path}: {exc}", EXIT_PARSE_FAILED) from exc

    try:
        store = HttpTransactionStore.from_env(args.resource, base_url=args.api_url, token=args.token)
        return store.find_all(), None
    except ValueError as exc:
        raise CliError(str(exc), EXIT_COMMAND_ERROR) from exc
    except StoreError as exc:
        raise CliError(str(exc), EXIT_COMMAND_ERROR) from exc


def run_export(args: argparse.Namespace) -> int:
    records, input_path = load_export_records(args)
    output_path = Path(args.output) if args.output else default_export_path(args.resource)
    if output_path.suffix.lower() != ".xlsx":
        raise CliError("Export output must be an .xlsx path", EXIT_COMMAND_ERROR)

    grid = assemble_export(records, title=args.title, include_summary=args.summary)
    write_workbook(grid, output_path)
    groups = group_records(records)
    summary = build_run_summary(
        contract="ledger.export_summary",
        command="export",
        input_path=input_path,
        output_path=output_path,
        metrics={
            "records": len(records),
            "sheets": [sheet.name for sheet in grid.sheets],
            "sections": [group.to_totals() for group in groups],
        },
        details={"resource": args.resource},
    )
    maybe_emit_json_stdout(summary, args.json)
    emit_human(f"Wrote {len(records)} record(s) to {output_path}", quiet=args.quiet)
    return EXIT_SUCCESS


def run_version() -> int:
    print(f"sheet-ledger {TOOL_VERSION}")
    return EXIT_SUCCESS


def main(argv: list[str] | None = None) -> int:
    try:
        parser = build_parser()
        args = parser.parse_args(argv)
        configure_logging(args.log_level)
        log.debug("sheet-ledger %s %s", TOOL_VERSION, args.command)
        if args.command == "inspect":
            return run_inspect(args)
        if args.command == "import":
            return run_import(args)
        if args.command == "export":
            return run_export(args)
        if args.command == "version":
            return run_version()
        raise CliError(f"Unknown command: {args.command}", EXIT_COMMAND_ERROR)
    except CliError as exc:
        eprint(str(exc))
        return exc.code


if __name__ == "__main__":
    raise SystemExit(main())
