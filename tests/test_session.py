import tempfile
import unittest
from datetime import date
from decimal import Decimal
from pathlib import Path

from sheet_ledger import session as s
from sheet_ledger.grid import Sheet, WorkbookGrid
from sheet_ledger.ledger_modules.payload import decode_payload
from sheet_ledger.store import BulkCreateResult, InMemoryStore, StoreError

HEADER = ["No", "Tanggal", "Produk", "Qty", "Harga", "Loading", "Total Bayar"]


def template_grid(rows_by_sheet: dict) -> WorkbookGrid:
    return WorkbookGrid(tuple(
        Sheet.from_rows(name, rows) for name, rows in rows_by_sheet.items()
    ))


def ten_valid_rows():
    return [HEADER] + [
        [i, f"{i:02d}/01/2024", "Pasir Ayak", 1, 1100000, 50000] for i in range(1, 11)
    ]


class RecordingStore(InMemoryStore):
    def __init__(self, reject=()):
        super().__init__(reject=set(reject))
        self.calls = []

    def bulk_create(self, records):
        self.calls.append(list(records))
        return super().bulk_create(records)


class FailingStore:
    def bulk_create(self, records):
        raise StoreError("POST http://api/incomes/bulk failed: connection refused")

    def find_all(self):
        return []


class TemplateFlowTests(unittest.TestCase):
    def test_happy_path_through_commit(self):
        grid = template_grid({"Rekap": [["ringkasan"]], "TRONTON": ten_valid_rows()})
        state = s.upload(s.new_session(), grid, "laporan.xlsx")
        self.assertEqual(state.stage, s.Stage.SHEET_SELECTION)
        self.assertEqual(state.available_sheets, ("TRONTON",))
        self.assertEqual(state.selected_sheets, ("TRONTON",))

        state = s.build_preview(state)
        self.assertEqual(state.stage, s.Stage.PREVIEW)
        self.assertEqual(len(state.candidates), 10)
        self.assertEqual(state.candidates[0].trans_date, date(2024, 1, 10))

        store = RecordingStore()
        state = s.commit(state, store)
        self.assertEqual(state.stage, s.Stage.COMMITTED)
        self.assertEqual(state.commit_result, BulkCreateResult(10, 0, ()))
        for record in store.records:
            self.assertEqual(decode_payload(record.description).net, record.amount)

    def test_partial_commit_reports_per_record_failures(self):
        state = s.build_preview(s.upload(s.new_session(), template_grid({"TRONTON": ten_valid_rows()})))
        store = RecordingStore(reject={3, 7})
        state = s.commit(state, store)
        self.assertEqual(state.stage, s.Stage.COMMITTED)
        result = state.commit_result
        self.assertEqual((result.imported, result.failed), (8, 2))
        self.assertEqual([index for index, _ in result.errors], [3, 7])
        self.assertEqual(result.to_dict()["errors"][0]["index"], 3)
        self.assertEqual(len(store.records), 8)

    def test_invalid_rows_are_previewed_but_never_sent(self):
        rows = ten_valid_rows()[:3] + [[99, "05/01/2024", "Pasir Ayak", 0, 1100000, 0]]
        state = s.build_preview(s.upload(s.new_session(), template_grid({"TRONTON": rows})))
        self.assertEqual(len(state.candidates), 3)
        zero = [row for row in state.candidates if not row.valid]
        self.assertEqual(len(zero), 1)
        self.assertEqual(zero[0].row_number, 4)

        store = RecordingStore()
        s.commit(state, store)
        self.assertEqual(len(store.calls), 1)
        self.assertEqual(len(store.calls[0]), 2)
        self.assertTrue(all(record.amount > 0 for record in store.calls[0]))

    def test_preview_lists_candidates_from_every_selected_sheet(self):
        grid = template_grid({
            "TRONTON": [HEADER, [1, "01/01/2024", "Pasir Ayak", 1, 1100000]],
            "COLT DIESEL": [HEADER, [1, "02/01/2024", "Pasir Lempung", 2, 300000]],
            "EXPANDING": [["no header here"]],
        })
        state = s.build_preview(s.upload(s.new_session(), grid))
        self.assertEqual(state.stage, s.Stage.PREVIEW)
        self.assertEqual([row.sheet_name for row in state.candidates], ["COLT DIESEL", "TRONTON"])
        self.assertEqual(state.sheet_errors, ("Could not find a header row in sheet 'EXPANDING'",))
        self.assertEqual(s.preview_summary(state)["valid"], 2)

    def test_preview_summary_counts_invalid_rows(self):
        grid = template_grid({
            "TRONTON": [
                HEADER,
                [1, "01/01/2024", "Pasir Ayak", 1, 1100000],
                [2, "02/01/2024", "Pasir Ayak", 0, 1100000],
            ],
        })
        state = s.build_preview(s.upload(s.new_session(), grid))
        summary = s.preview_summary(state)
        self.assertEqual(summary["candidates"], 2)
        self.assertEqual(summary["valid"], 1)
        self.assertEqual(summary["invalid"], 1)
        self.assertEqual([row.row_number for row in state.invalid_candidates], [3])

    def test_sheet_selection_toggles_and_rejects_unknown_names(self):
        grid = template_grid({"TRONTON": ten_valid_rows(), "COLT DIESEL": ten_valid_rows()})
        state = s.upload(s.new_session(), grid)
        state = s.toggle_sheet(state, "TRONTON")
        self.assertEqual(state.selected_sheets, ("COLT DIESEL",))
        state = s.toggle_sheet(state, "TRONTON")
        self.assertEqual(state.selected_sheets, ("TRONTON", "COLT DIESEL"))

        bad = s.select_sheets(state, ["Rekap"])
        self.assertEqual(bad.stage, s.Stage.SHEET_SELECTION)
        self.assertIn("Rekap", bad.error)

        empty = s.build_preview(s.select_sheets(state, []))
        self.assertEqual(empty.stage, s.Stage.SHEET_SELECTION)
        self.assertEqual(empty.error, "Select at least one sheet to import")

    def test_upload_without_truck_sheets_stays_in_upload(self):
        state = s.upload(s.new_session(), template_grid({"Sheet1": [["a"]]}))
        self.assertEqual(state.stage, s.Stage.UPLOAD)
        self.assertIn("No sheet name matches a truck type", state.error)

    def test_back_returns_to_selection_and_clears_candidates(self):
        state = s.build_preview(s.upload(s.new_session(), template_grid({"TRONTON": ten_valid_rows()})))
        state = s.transition(state, s.Back())
        self.assertEqual(state.stage, s.Stage.SHEET_SELECTION)
        self.assertEqual(state.candidates, ())
        state = s.transition(state, s.BuildPreview())
        self.assertEqual(state.stage, s.Stage.PREVIEW)

    def test_commit_with_no_valid_rows_is_blocked(self):
        rows = [HEADER, [1, "01/01/2024", "Pasir Ayak", 0, 1100000]]
        state = s.build_preview(s.upload(s.new_session(), template_grid({"TRONTON": rows})))
        store = RecordingStore()
        state = s.commit(state, store)
        self.assertEqual(state.stage, s.Stage.PREVIEW)
        self.assertEqual(state.error, "No valid rows to import")
        self.assertEqual(store.calls, [])

    def test_transport_failure_keeps_the_preview(self):
        state = s.build_preview(s.upload(s.new_session(), template_grid({"TRONTON": ten_valid_rows()})))
        state = s.commit(state, FailingStore())
        self.assertEqual(state.stage, s.Stage.PREVIEW)
        self.assertIn("connection refused", state.error)
        self.assertIsNone(state.commit_result)


class GenericFlowTests(unittest.TestCase):
    def grid(self):
        return template_grid({
            "Pengeluaran": [
                ["Tanggal", "Keterangan", "Jumlah", "Jenis Biaya"],
                ["2024-01-05", "Solar", "Rp 500.000", "Operasional"],
                ["2024-01-06", "Makan", 75000, None],
            ],
            "Lain": [["ignored"]],
        })

    def test_mapping_is_seeded_then_completed_manually(self):
        state = s.upload(s.new_session("generic"), self.grid())
        self.assertEqual(state.stage, s.Stage.COLUMN_MAPPING)
        self.assertEqual(state.headers, ("Tanggal", "Keterangan", "Jumlah", "Jenis Biaya"))
        self.assertEqual(state.mapping.to_dict(), {"date": 0, "category": 3, "description": 1, "amount": 2})

        state = s.transition(state, s.SetMapping({"category": None}))
        blocked = s.build_preview(state)
        self.assertEqual(blocked.stage, s.Stage.COLUMN_MAPPING)
        self.assertEqual(blocked.error, "Missing required columns: Kategori")

        state = s.set_mapping(state, {"category": 3})
        state = s.build_preview(state)
        self.assertEqual(state.stage, s.Stage.PREVIEW)
        self.assertEqual([row.category for row in state.candidates], ["Operasional", "Lainnya"])
        self.assertEqual(state.candidates[0].amount, Decimal("500000.00"))

        state = s.back(state)
        self.assertEqual(state.stage, s.Stage.COLUMN_MAPPING)

    def test_out_of_range_mapping_is_reported(self):
        state = s.upload(s.new_session("generic"), self.grid())
        state = s.set_mapping(state, {"amount": 9})
        self.assertEqual(state.stage, s.Stage.COLUMN_MAPPING)
        self.assertIn("outside the sheet", state.error)
        self.assertEqual(state.mapping.index("amount"), 2)


class LifecycleTests(unittest.TestCase):
    def test_cancel_from_any_stage_releases_the_grid(self):
        grid = template_grid({"TRONTON": ten_valid_rows()})
        for state in (
            s.new_session(),
            s.upload(s.new_session(), grid),
            s.build_preview(s.upload(s.new_session(), grid)),
        ):
            with self.subTest(stage=state.stage):
                cancelled = s.transition(state, s.Cancel())
                self.assertEqual(cancelled.stage, s.Stage.CANCELLED)
                self.assertIsNone(cancelled.source_grid)
                self.assertEqual(cancelled.candidates, ())

    def test_terminal_sessions_reject_further_events(self):
        cancelled = s.cancel(s.new_session())
        with self.assertRaises(s.InvalidTransition):
            s.transition(cancelled, s.Upload(WorkbookGrid()))

    def test_out_of_order_events_raise(self):
        with self.assertRaises(s.InvalidTransition):
            s.build_preview(s.new_session())
        with self.assertRaises(s.InvalidTransition):
            s.commit(s.new_session(), InMemoryStore())

    def test_transitions_do_not_mutate_the_previous_value(self):
        start = s.new_session()
        s.upload(start, template_grid({"TRONTON": ten_valid_rows()}))
        self.assertEqual(start.stage, s.Stage.UPLOAD)
        self.assertIsNone(start.source_grid)

    def test_unreadable_file_keeps_session_in_upload(self):
        with tempfile.TemporaryDirectory() as tmpdir:
            path = Path(tmpdir) / "broken.xlsx"
            path.write_bytes(b"not a zip file")
            state = s.upload_file(s.new_session(), path)
            self.assertEqual(state.stage, s.Stage.UPLOAD)
            self.assertIn("Could not open workbook", state.error)

            missing = s.upload_file(s.new_session(), Path(tmpdir) / "missing.xlsx")
            self.assertEqual(missing.stage, s.Stage.UPLOAD)
            self.assertIn("File not found", missing.error)


if __name__ == "__main__":
    unittest.main()
