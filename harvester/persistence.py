"""Run ledger: durable record of every run and per-item outcome."""

from __future__ import annotations

import logging
from dataclasses import dataclass
from datetime import datetime, timezone
from typing import TYPE_CHECKING, Iterable
from uuid import UUID

from sqlalchemy import create_engine, func, select
from sqlalchemy.orm import sessionmaker

from models import Base, IngestRun, ItemOutcome

if TYPE_CHECKING:
    from .sequencer import ItemReport, RunSummary

LOGGER = logging.getLogger(__name__)


class LedgerError(RuntimeError):
    """Raised when the run ledger cannot be read or written."""


@dataclass(slots=True)
class RecordedMiss:
    identifier: int
    reason: str | None
    detail: str | None
    recorded_at: datetime


class RunLedger:
    """Persist runs and item outcomes through SQLAlchemy sessions."""

    def __init__(self, session_factory) -> None:
        self._session_factory = session_factory

    @classmethod
    def from_url(cls, db_url: str) -> "RunLedger":
        try:
            engine = create_engine(db_url)
            Base.metadata.create_all(engine)  # ensure required tables exist before queries
        except Exception as exc:
            raise LedgerError(f"Cannot open ledger {db_url}: {exc}") from exc
        return cls(sessionmaker(bind=engine))

    def start_run(self, mode: str, watermark_before: int, candidates: int) -> str:
        try:
            with self._session_factory() as session:
                run = IngestRun(
                    mode=mode,
                    status="running",
                    watermark_before=watermark_before,
                    candidates=candidates,
                    started_at=datetime.now(timezone.utc),
                )
                session.add(run)
                session.flush()
                run_id = str(run.id)
                session.commit()
                return run_id
        except Exception as exc:
            raise LedgerError(str(exc)) from exc

    def record_outcome(self, run_id: str, report: "ItemReport") -> None:
        try:
            with self._session_factory() as session:
                session.add(
                    ItemOutcome(
                        run_id=UUID(run_id),
                        identifier=report.candidate.identifier,
                        origin=report.candidate.origin.value,
                        url=report.candidate.url,
                        status=report.status.value,
                        reason=report.reason.value if report.reason else None,
                        detail=report.detail,
                        strategy=report.strategy,
                        artifact_name=report.artifact.filename if report.artifact else None,
                        artifact_size=report.artifact.size if report.artifact else None,
                        checksum=report.artifact.checksum if report.artifact else None,
                    )
                )
                session.commit()
        except Exception as exc:
            raise LedgerError(str(exc)) from exc

    def finish_run(self, run_id: str, summary: "RunSummary") -> None:
        try:
            with self._session_factory() as session:
                run = session.get(IngestRun, UUID(run_id))
                if run is None:
                    raise LedgerError(f"Unknown run {run_id}")
                run.status = "failed" if summary.fatal else "completed"
                run.watermark_after = summary.watermark_after
                run.attempted = summary.attempted
                run.rendered = summary.rendered
                run.skipped = summary.skipped_total
                run.caught_up = summary.caught_up
                run.error = summary.fatal
                run.finished_at = datetime.now(timezone.utc)
                session.commit()
        except LedgerError:
            raise
        except Exception as exc:
            raise LedgerError(str(exc)) from exc

    def failure_count(self, identifier: int, reasons: Iterable[str]) -> int:
        """Number of distinct runs in which ``identifier`` missed for one of ``reasons``."""

        reason_values = list(reasons)
        if not reason_values:
            return 0
        try:
            with self._session_factory() as session:
                statement = select(func.count(func.distinct(ItemOutcome.run_id))).where(
                    ItemOutcome.identifier == identifier,
                    ItemOutcome.reason.in_(reason_values),
                )
                return int(session.execute(statement).scalar_one())
        except Exception as exc:
            raise LedgerError(str(exc)) from exc

    def recent_misses(self, limit: int = 20) -> list[RecordedMiss]:
        try:
            with self._session_factory() as session:
                statement = (
                    select(ItemOutcome)
                    .where(ItemOutcome.status == "skipped")
                    .order_by(ItemOutcome.created_at.desc(), ItemOutcome.identifier.desc())
                    .limit(limit)
                )
                return [
                    RecordedMiss(
                        identifier=row.identifier,
                        reason=row.reason,
                        detail=row.detail,
                        recorded_at=row.created_at,
                    )
                    for row in session.scalars(statement)
                ]
        except Exception as exc:
            raise LedgerError(str(exc)) from exc
