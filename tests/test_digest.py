import json
import unittest
from datetime import date
from pathlib import Path
from tempfile import TemporaryDirectory

from harvester.artifacts import ArtifactStore
from harvester.discovery import Candidate, CandidateOrigin
from harvester.digest import (
    DigestError,
    main,
    previous_month,
    write_miss_report,
    write_monthly_manifest,
    write_weekly_summary,
)
from harvester.persistence import RunLedger
from harvester.sequencer import ItemReport, ItemStatus, SkipReason

PAYLOAD = b"%PDF-1.4\n" + b"x" * 64


class DigestTestCase(unittest.TestCase):
    def setUp(self) -> None:
        self._tmp = TemporaryDirectory()
        self.root = Path(self._tmp.name)
        self.store = ArtifactStore(self.root / "PDFS")
        for published, identifier in (
            (date(2025, 10, 30), 9040),
            (date(2025, 11, 2), 9053),
            (date(2025, 11, 28), 9257),
            (date(2025, 12, 1), 9260),
        ):
            self.store.write(identifier, published, PAYLOAD)
        self.cursor = self.root / "storage" / "digest_cursor.json"
        self.reports = self.root / "reports"

    def tearDown(self) -> None:
        self._tmp.cleanup()

    def test_previous_month_wraps_year(self) -> None:
        self.assertEqual(previous_month(date(2026, 1, 15)), (2025, 12))
        self.assertEqual(previous_month(date(2025, 12, 1)), (2025, 11))

    def test_weekly_summary_advances_cursor(self) -> None:
        self.cursor.parent.mkdir(parents=True)
        self.cursor.write_text(json.dumps({"last_reported_id": 9053}), encoding="utf-8")

        report = write_weekly_summary(self.store, self.reports, self.cursor, today=date(2025, 12, 1))

        self.assertEqual([entry.identifier for entry in report.entries], [9257, 9260])
        self.assertEqual(report.path.name, "weekly-2025-12-01.txt")
        content = report.path.read_text(encoding="utf-8")
        self.assertIn("Total new artifacts: 2", content)
        self.assertIn("Item #9257 (20251128-9257.pdf)", content)
        self.assertEqual(json.loads(self.cursor.read_text(encoding="utf-8"))["last_reported_id"], 9260)

        again = write_weekly_summary(self.store, self.reports, self.cursor, today=date(2025, 12, 8))
        self.assertEqual(again.entries, [])
        self.assertIn("Total new artifacts: 0", again.path.read_text(encoding="utf-8"))

    def test_weekly_summary_rejects_bad_cursor(self) -> None:
        self.cursor.parent.mkdir(parents=True)
        self.cursor.write_text(json.dumps({"last_reported_id": "soon"}), encoding="utf-8")

        with self.assertRaises(DigestError):
            write_weekly_summary(self.store, self.reports, self.cursor, today=date(2025, 12, 1))

    def test_monthly_manifest_lists_previous_month(self) -> None:
        report = write_monthly_manifest(self.store, today=date(2025, 12, 1))

        self.assertEqual(report.path.name, "archive-2025-11.txt")
        lines = report.path.read_text(encoding="utf-8").splitlines()
        self.assertEqual(lines[0], "# Archive for 2025-11")
        self.assertEqual(lines[1], "# Total artifacts: 2")
        self.assertEqual(lines[3:], ["20251102-9053.pdf", "20251128-9257.pdf"])

    def test_monthly_manifest_keeps_backup(self) -> None:
        write_monthly_manifest(self.store, today=date(2025, 12, 1))
        self.store.write(9100, date(2025, 11, 15), PAYLOAD)

        write_monthly_manifest(self.store, today=date(2025, 12, 2))

        backup = self.store.root / "archive-2025-11.txt.bak"
        self.assertIn("# Total artifacts: 2", backup.read_text(encoding="utf-8"))
        self.assertIn("20251115-9100.pdf", (self.store.root / "archive-2025-11.txt").read_text(encoding="utf-8"))

    def test_cli_weekly(self) -> None:
        code = main(
            [
                "--output-dir",
                str(self.store.root),
                "weekly",
                "--report-dir",
                str(self.reports),
                "--cursor-file",
                str(self.cursor),
            ],
            today=date(2025, 12, 1),
        )

        self.assertEqual(code, 0)
        self.assertTrue((self.reports / "weekly-2025-12-01.txt").exists())
        self.assertEqual(json.loads(self.cursor.read_text(encoding="utf-8"))["last_reported_id"], 9260)

    def _record_miss(self, ledger: RunLedger, identifier: int) -> None:
        run_id = ledger.start_run("incremental", identifier - 1, 1)
        candidate = Candidate(identifier, CandidateOrigin.LISTING, f"https://example.com/?recent_news_id={identifier}")
        report = ItemReport(
            candidate,
            ItemStatus.SKIPPED,
            reason=SkipReason.NO_CONTENT,
            detail="extracted text below threshold",
        )
        ledger.record_outcome(run_id, report)

    def test_miss_report_lists_ledger_skips(self) -> None:
        ledger = RunLedger.from_url("sqlite://")
        self._record_miss(ledger, 9258)

        path = write_miss_report(ledger, self.reports, today=date(2025, 12, 1))

        self.assertEqual(path.name, "misses-2025-12-01.txt")
        content = path.read_text(encoding="utf-8")
        self.assertIn("Listed: 1", content)
        self.assertIn("Item #9258 no_content (extracted text below threshold)", content)

    def test_cli_misses(self) -> None:
        db_url = f"sqlite:///{(self.root / 'ledger.sqlite3').as_posix()}"
        self._record_miss(RunLedger.from_url(db_url), 9259)

        code = main(
            ["misses", "--db-url", db_url, "--report-dir", str(self.reports)],
            today=date(2025, 12, 1),
        )

        self.assertEqual(code, 0)
        self.assertIn("Item #9259", (self.reports / "misses-2025-12-01.txt").read_text(encoding="utf-8"))


if __name__ == "__main__":  # pragma: no cover
    unittest.main()
