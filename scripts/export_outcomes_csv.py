#!/usr/bin/env python3
import argparse
import csv
import os
from typing import Dict

from sqlalchemy import create_engine, select

from models import IngestRun, ItemOutcome


TABLES: Dict[str, type] = {
    "ingest_runs": IngestRun,
    "item_outcomes": ItemOutcome,
}


def export_table(connection, table: str, status: str | None, output_path: str) -> int:
    model = TABLES[table]
    statement = select(model.__table__)
    if status is not None:
        statement = statement.where(model.__table__.c.status == status)
    result = connection.execute(statement)
    columns = list(result.keys())
    count = 0
    with open(output_path, "w", encoding="utf-8", newline="") as file:
        writer = csv.writer(file)
        writer.writerow(columns)
        for row in result:
            writer.writerow(row)
            count += 1
    return count


def parse_args() -> argparse.Namespace:
    parser = argparse.ArgumentParser(
        description="Export the run ledger to CSV, optionally filtered by status."
    )
    parser.add_argument(
        "--db-url",
        default="sqlite:///storage/ledger.sqlite3",
        help="Ledger database URL (default: sqlite:///storage/ledger.sqlite3)",
    )
    parser.add_argument(
        "--status",
        help="Only export rows with this status, e.g. skipped or failed.",
    )
    parser.add_argument(
        "--output-dir",
        default="exports",
        help="Directory to write CSV files (default: exports)",
    )
    parser.add_argument(
        "--tables",
        default="ingest_runs,item_outcomes",
        help="Comma-separated list of tables to export.",
    )
    return parser.parse_args()


def main() -> int:
    args = parse_args()
    tables = [t.strip() for t in args.tables.split(",") if t.strip()]
    unknown = [t for t in tables if t not in TABLES]
    if unknown:
        raise SystemExit(f"Unknown tables: {', '.join(unknown)}")

    os.makedirs(args.output_dir, exist_ok=True)

    engine = create_engine(args.db_url)
    with engine.connect() as connection:
        for table in tables:
            output_path = os.path.join(args.output_dir, f"{table}.csv")
            count = export_table(connection, table, args.status, output_path)
            print(f"Wrote {count} rows to {output_path}")

    return 0


if __name__ == "__main__":
    raise SystemExit(main())
