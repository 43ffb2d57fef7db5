from __future__ import annotations

import json
import os
import subprocess
import sys
import tempfile
import unittest
from datetime import datetime
from pathlib import Path

import openpyxl

ROOT = Path(__file__).resolve().parents[1]
CLI = [sys.executable, "-m", "sheet_ledger.cli"]
FIXED_STAMP = "20260301T010203Z"

TEMPLATE_HEADER = ["No", "Tanggal", "Produk", "Qty", "Harga", "Loading", "Market", "DO", "Total Bayar"]


def run_cli(*args: str, env: dict[str, str] | None = None, cwd: Path | None = None) -> subprocess.CompletedProcess[str]:
    merged_env = dict(os.environ)
    merged_env["SHEET_LEDGER_OUTPUT_STAMP"] = FIXED_STAMP
    merged_env.pop("SHEET_LEDGER_API_URL", None)
    merged_env.pop("SHEET_LEDGER_API_TOKEN", None)
    merged_env["PYTHONPATH"] = os.pathsep.join(filter(None, [str(ROOT), merged_env.get("PYTHONPATH")]))
    if env:
        merged_env.update(env)
    return subprocess.run(
        [*CLI, *args],
        cwd=cwd or ROOT,
        capture_output=True,
        text=True,
        env=merged_env,
    )


def write_xlsx(path: Path, sheets: dict[str, list[list]]) -> Path:
    workbook = openpyxl.Workbook()
    workbook.remove(workbook.active)
    for name, rows in sheets.items():
        worksheet = workbook.create_sheet(name)
        for row in rows:
            worksheet.append(row)
    workbook.save(path)
    return path


def template_workbook(path: Path) -> Path:
    return write_xlsx(path, {
        "Rekap": [["catatan"]],
        "TRONTON": [
            ["LAPORAN TRONTON"],
            TEMPLATE_HEADER,
            [1, datetime(2024, 1, 5), "Pasir Ayak", 2, 1100000, 100000, 70000, 80000, 1950000],
            [2, None, "Pasir Ayak", 0, 1100000],
            ["TOTAL", None, None, 2, None, None, None, None, 1950000],
        ],
    })


class SheetLedgerCliTests(unittest.TestCase):
    def test_version_prints_version(self):
        proc = run_cli("version")
        self.assertEqual(proc.returncode, 0, proc.stderr)
        self.assertTrue(proc.stdout.startswith("sheet-ledger "))

    def test_missing_arguments_return_exit_1(self):
        proc = run_cli("import")
        self.assertEqual(proc.returncode, 1)
        self.assertIn("input", proc.stderr)

    def test_inspect_json_lists_importable_sheets(self):
        with tempfile.TemporaryDirectory() as tmpdir:
            path = template_workbook(Path(tmpdir) / "laporan.xlsx")
            proc = run_cli("inspect", str(path), "--json")
        self.assertEqual(proc.returncode, 0, proc.stderr)
        payload = json.loads(proc.stdout)
        self.assertEqual(payload["contract"]["name"], "ledger.inspect")
        sheets = {entry["name"]: entry for entry in payload["sheets"]}
        self.assertFalse(sheets["Rekap"]["importable"])
        self.assertEqual(sheets["TRONTON"]["truck_key"], "tronton")
        self.assertEqual(sheets["TRONTON"]["header_row"], 2)
        self.assertEqual(sheets["TRONTON"]["mapping"]["netTotal"], 8)
        self.assertEqual(sheets["TRONTON"]["missing_fields"], [])

    def test_import_dry_run_reports_the_preview(self):
        with tempfile.TemporaryDirectory() as tmpdir:
            path = template_workbook(Path(tmpdir) / "laporan.xlsx")
            proc = run_cli("import", str(path), "--dry-run", "--json", "--show-rows", "-q")
        self.assertEqual(proc.returncode, 0, proc.stderr)
        summary = json.loads(proc.stdout)
        self.assertEqual(summary["contract"]["name"], "ledger.import_summary")
        self.assertEqual(summary["status"], "dry_run")
        self.assertEqual(summary["metrics"]["valid"], 1)
        self.assertEqual(summary["metrics"]["invalid"], 1)
        self.assertEqual(summary["metrics"]["skipped_rows"], 1)
        self.assertEqual(len(summary["rows"]), 2)
        self.assertEqual(proc.stderr.strip(), "")

    def test_import_with_no_valid_rows_returns_exit_4(self):
        with tempfile.TemporaryDirectory() as tmpdir:
            path = write_xlsx(Path(tmpdir) / "kosong.xlsx", {
                "TRONTON": [TEMPLATE_HEADER, [1, "05/01/2024", "Pasir Ayak", 0, 1100000]],
            })
            proc = run_cli("import", str(path), "--json")
        self.assertEqual(proc.returncode, 4, proc.stderr)
        self.assertEqual(json.loads(proc.stdout)["status"], "empty")

    def test_import_header_only_sheet_returns_exit_4(self):
        with tempfile.TemporaryDirectory() as tmpdir:
            path = write_xlsx(Path(tmpdir) / "header.xlsx", {"TRONTON": [TEMPLATE_HEADER]})
            proc = run_cli("import", str(path))
        self.assertEqual(proc.returncode, 4)
        self.assertIn("No data rows found", proc.stderr)

    def test_import_without_api_url_returns_exit_1(self):
        with tempfile.TemporaryDirectory() as tmpdir:
            path = template_workbook(Path(tmpdir) / "laporan.xlsx")
            proc = run_cli("import", str(path))
        self.assertEqual(proc.returncode, 1)
        self.assertIn("SHEET_LEDGER_API_URL", proc.stderr)

    def test_import_unreachable_api_returns_exit_1(self):
        with tempfile.TemporaryDirectory() as tmpdir:
            path = template_workbook(Path(tmpdir) / "laporan.xlsx")
            proc = run_cli("import", str(path), "--api-url", "http://127.0.0.1:9", "-q")
        self.assertEqual(proc.returncode, 1)
        self.assertIn("failed", proc.stderr)

    def test_import_missing_file_returns_exit_1(self):
        proc = run_cli("import", "does-not-exist.xlsx")
        self.assertEqual(proc.returncode, 1)
        self.assertIn("File not found", proc.stderr)

    def test_import_unreadable_input_returns_exit_2(self):
        with tempfile.TemporaryDirectory() as tmpdir:
            path = Path(tmpdir) / "corrupt.xlsx"
            path.write_bytes(b"not a workbook")
            proc = run_cli("import", str(path))
        self.assertEqual(proc.returncode, 2)
        self.assertIn("Could not open workbook", proc.stderr)

    def test_import_without_truck_sheets_returns_exit_2(self):
        with tempfile.TemporaryDirectory() as tmpdir:
            path = write_xlsx(Path(tmpdir) / "lain.xlsx", {"Sheet1": [TEMPLATE_HEADER]})
            proc = run_cli("import", str(path))
        self.assertEqual(proc.returncode, 2)
        self.assertIn("No sheet name matches a truck type", proc.stderr)

    def test_generic_import_uses_manual_mapping(self):
        with tempfile.TemporaryDirectory() as tmpdir:
            path = Path(tmpdir) / "pengeluaran.csv"
            path.write_text(
                "Tanggal,Keterangan,Nominal,Pos\n2024-01-05,Solar,\"Rp 500.000\",Operasional\n",
                encoding="utf-8",
            )
            missing = run_cli("import", str(path), "--generic", "--type", "expenses", "--dry-run")
            mapped = run_cli(
                "import", str(path), "--generic", "--type", "expenses", "--dry-run", "--json",
                "--map", "category=D",
            )
            bad = run_cli("import", str(path), "--generic", "--map", "colour=1")
        self.assertEqual(missing.returncode, 2)
        self.assertIn("Missing required columns: Kategori", missing.stderr)
        self.assertEqual(mapped.returncode, 0, mapped.stderr)
        summary = json.loads(mapped.stdout)
        self.assertEqual(summary["resource"], "expenses")
        self.assertEqual(summary["metrics"]["valid"], 1)
        self.assertEqual(bad.returncode, 1)
        self.assertIn("Invalid --map", bad.stderr)

    def test_export_from_json_writes_report(self):
        records = [
            {"trans_date": "2024-01-05", "category": "Beli solar", "description": "Solar", "amount": 500000},
            {"trans_date": "2024-01-06", "category": "Pasir Ayak - Tronton", "description": "manual", "amount": 1100000},
        ]
        with tempfile.TemporaryDirectory() as tmpdir:
            source = Path(tmpdir) / "incomes.json"
            source.write_text(json.dumps({"data": records}), encoding="utf-8")
            output = Path(tmpdir) / "out" / "report.xlsx"
            proc = run_cli("export", "--from-json", str(source), "--output", str(output), "--json")
            self.assertEqual(proc.returncode, 0, proc.stderr)
            self.assertTrue(output.exists())
            wb = openpyxl.load_workbook(output)
            try:
                self.assertEqual(wb.sheetnames, ["Tronton", "Lainnya", "Summary"])
            finally:
                wb.close()
        summary = json.loads(proc.stdout)
        self.assertEqual(summary["contract"]["name"], "ledger.export_summary")
        self.assertEqual(summary["metrics"]["records"], 2)
        self.assertEqual(summary["metrics"]["sections"][0]["net"], "1100000.00")

    def test_export_default_output_uses_stamped_path(self):
        with tempfile.TemporaryDirectory() as tmpdir:
            source = Path(tmpdir) / "incomes.json"
            source.write_text("[]", encoding="utf-8")
            proc = run_cli("export", "--from-json", str(source), cwd=Path(tmpdir))
            self.assertEqual(proc.returncode, 0, proc.stderr)
            expected = Path(tmpdir) / "sheet-ledger-output" / f"incomes-{FIXED_STAMP}.xlsx"
            self.assertTrue(expected.exists())
            self.assertIn("Wrote 0 record(s)", proc.stderr)

    def test_export_rejects_non_xlsx_output_and_bad_json(self):
        with tempfile.TemporaryDirectory() as tmpdir:
            source = Path(tmpdir) / "incomes.json"
            source.write_text("[]", encoding="utf-8")
            wrong_suffix = run_cli("export", "--from-json", str(source), "--output", str(Path(tmpdir) / "r.csv"))
            source.write_text("{not json", encoding="utf-8")
            broken = run_cli("export", "--from-json", str(source), "--output", str(Path(tmpdir) / "r.xlsx"))
        self.assertEqual(wrong_suffix.returncode, 1)
        self.assertIn(".xlsx", wrong_suffix.stderr)
        self.assertEqual(broken.returncode, 2)


if __name__ == "__main__":
    unittest.main()
