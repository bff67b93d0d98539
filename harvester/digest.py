"""Plain-text reports over produced artifacts and recorded misses."""

from __future__ import annotations

import argparse
import json
import logging
from dataclasses import dataclass
from datetime import date, datetime, timezone
from pathlib import Path
from typing import Sequence

from .artifacts import ArtifactName, ArtifactStore
from .config import DEFAULT_DB_URL, DEFAULT_OUTPUT_DIR, DEFAULT_STORAGE_ROOT
from .persistence import LedgerError, RunLedger
from .watermark import atomic_write_json

LOGGER = logging.getLogger(__name__)

DEFAULT_REPORT_DIR = Path("reports")
DEFAULT_CURSOR_FILE = DEFAULT_STORAGE_ROOT / "digest_cursor.json"


class DigestError(RuntimeError):
    """Raised when the digest cursor cannot be read."""


@dataclass(slots=True)
class DigestReport:
    path: Path
    entries: list[ArtifactName]


def previous_month(today: date) -> tuple[int, int]:
    if today.month == 1:
        return today.year - 1, 12
    return today.year, today.month - 1


def load_cursor(path: Path) -> int:
    if not path.exists():
        return 0
    try:
        record = json.loads(path.read_text(encoding="utf-8"))
    except (OSError, json.JSONDecodeError) as exc:
        raise DigestError(f"Unreadable digest cursor at {path}: {exc}") from exc
    value = record.get("last_reported_id") if isinstance(record, dict) else None
    if isinstance(value, bool) or not isinstance(value, int) or value < 0:
        raise DigestError(f"Digest cursor at {path} has no valid last_reported_id")
    return value


def write_weekly_summary(
    store: ArtifactStore,
    report_dir: Path,
    cursor_file: Path,
    *,
    today: date,
) -> DigestReport:
    """List artifacts newer than the cursor and move the cursor past them."""

    cursor = load_cursor(cursor_file)
    entries = [name for name in store.iter_artifacts() if name.identifier > cursor]
    if entries:
        LOGGER.info("Weekly summary covers %d new artifact(s)", len(entries))
    else:
        LOGGER.info("No new artifacts since %d for the weekly summary", cursor)

    lines = [
        f"WEEKLY SUMMARY - {today.isoformat()}",
        "",
        f"Total new artifacts: {len(entries)}",
        "",
    ]
    lines.extend(f"* {entry.published:%Y%m%d} - Item #{entry.identifier} ({entry.filename})" for entry in entries)

    report_dir.mkdir(parents=True, exist_ok=True)
    path = report_dir / f"weekly-{today.isoformat()}.txt"
    path.write_text("\n".join(lines) + "\n", encoding="utf-8")

    atomic_write_json(
        cursor_file,
        {
            "last_reported_id": entries[-1].identifier if entries else cursor,
            "last_reported_at": datetime.now(timezone.utc).isoformat(),
        },
    )
    LOGGER.info("Weekly summary saved: %s", path)
    return DigestReport(path=path, entries=entries)


def write_monthly_manifest(store: ArtifactStore, *, today: date) -> DigestReport:
    """Write ``archive-YYYY-MM.txt`` for the month before ``today``."""

    year, month = previous_month(today)
    entries = sorted(
        (name for name in store.iter_artifacts() if (name.published.year, name.published.month) == (year, month)),
        key=lambda name: name.filename,
    )
    label = f"{year:04d}-{month:02d}"
    lines = [f"# Archive for {label}", f"# Total artifacts: {len(entries)}", ""]
    lines.extend(entry.filename for entry in entries)

    store.root.mkdir(parents=True, exist_ok=True)
    path = store.root / f"archive-{label}.txt"
    if path.exists():
        backup = path.with_name(path.name + ".bak")
        backup.write_bytes(path.read_bytes())
        LOGGER.info("Backup created: %s", backup.name)
    path.write_text("\n".join(lines) + "\n", encoding="utf-8")
    LOGGER.info("Monthly archive written: %s (%d entries)", path.name, len(entries))
    return DigestReport(path=path, entries=entries)


def write_miss_report(ledger: RunLedger, report_dir: Path, *, today: date, limit: int = 20) -> Path:
    """List the most recent skipped identifiers recorded in the run ledger."""

    misses = ledger.recent_misses(limit)
    lines = [f"RECENT MISSES - {today.isoformat()}", "", f"Listed: {len(misses)}", ""]
    for miss in misses:
        detail = f" ({miss.detail})" if miss.detail else ""
        reason = miss.reason or "unknown"
        lines.append(f"* {miss.recorded_at:%Y-%m-%d %H:%M} - Item #{miss.identifier} {reason}{detail}")

    report_dir.mkdir(parents=True, exist_ok=True)
    path = report_dir / f"misses-{today.isoformat()}.txt"
    path.write_text("\n".join(lines) + "\n", encoding="utf-8")
    LOGGER.info("Miss report saved: %s (%d entries)", path, len(misses))
    return path


def build_arg_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(description="Summarise produced artifacts and recorded misses")
    parser.add_argument("--output-dir", type=Path, default=DEFAULT_OUTPUT_DIR, help="Artifact directory")
    subparsers = parser.add_subparsers(dest="command", required=True)

    weekly = subparsers.add_parser("weekly", help="Summarise artifacts added since the last summary")
    weekly.add_argument("--report-dir", type=Path, default=DEFAULT_REPORT_DIR, help="Where summaries are written")
    weekly.add_argument("--cursor-file", type=Path, default=DEFAULT_CURSOR_FILE, help="Digest cursor JSON file")

    subparsers.add_parser("monthly", help="List last month's artifacts")

    misses = subparsers.add_parser("misses", help="List items the ledger recorded as skipped")
    misses.add_argument("--db-url", type=str, default=DEFAULT_DB_URL, help="SQLAlchemy URL of the run ledger")
    misses.add_argument("--limit", type=int, default=20, help="Number of misses to list")
    misses.add_argument("--report-dir", type=Path, default=DEFAULT_REPORT_DIR, help="Where the report is written")
    return parser


def main(argv: Sequence[str] | None = None, *, today: date | None = None) -> int:
    logging.basicConfig(level=logging.INFO, format="%(asctime)s [%(levelname)s] %(name)s: %(message)s")
    args = build_arg_parser().parse_args(argv)
    today = today or datetime.now(timezone.utc).date()
    store = ArtifactStore(args.output_dir)

    if args.command == "weekly":
        try:
            write_weekly_summary(store, args.report_dir, args.cursor_file, today=today)
        except DigestError as exc:
            LOGGER.error("%s", exc)
            return 1
    elif args.command == "misses":
        try:
            write_miss_report(RunLedger.from_url(args.db_url), args.report_dir, today=today, limit=args.limit)
        except LedgerError as exc:
            LOGGER.error("Run ledger unavailable: %s", exc)
            return 1
    else:
        write_monthly_manifest(store, today=today)
    return 0


if __name__ == "__main__":  # pragma: no cover - CLI entrypoint
    raise SystemExit(main())
