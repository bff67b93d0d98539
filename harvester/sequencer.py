"""Crash-consistent ingestion loop: fetch, extract, render, verify, advance."""

from __future__ import annotations

import logging
from collections import Counter
from dataclasses import dataclass, field
from datetime import date, datetime, timezone
from enum import Enum
from typing import Callable, Sequence

from .artifacts import (
    Artifact,
    ArtifactExistsError,
    ArtifactStore,
    persist_raw_html,
    persist_rejected_text,
)
from .commit import ArtifactCommitter
from .config import IngestConfig
from .discovery import (
    Candidate,
    CandidateOrigin,
    DiscoveryUnavailable,
    IdentifierDiscovery,
    PageFetcher,
    select_mode,
)
from .extraction import ContentExtractor, NoContent, Unavailable
from .http_client import FetchStatus
from .persistence import LedgerError, RunLedger
from .render import ArtifactGenerator, RenderFailure
from .watermark import IngestMode, RegressionRejected, WatermarkStore

LOGGER = logging.getLogger(__name__)


class SequencerState(str, Enum):
    IDLE = "idle"
    DISCOVERING = "discovering"
    FETCHING = "fetching"
    EXTRACTING = "extracting"
    RENDERING = "rendering"
    VERIFYING = "verifying"
    ADVANCING = "advancing"
    FATAL = "fatal"


class ItemStatus(str, Enum):
    RENDERED = "rendered"
    ALREADY_PRESENT = "already_present"
    SKIPPED = "skipped"


class SkipReason(str, Enum):
    NOT_FOUND = "not_found"
    TRANSIENT_FETCH = "transient_fetch_failure"
    UNAVAILABLE = "unavailable"
    NO_CONTENT = "no_content"
    RENDER_FAILURE = "render_failure"
    ARTIFACT_INVALID = "artifact_invalid"


class SkipAction(str, Enum):
    ADVANCE = "advance"
    DEFER = "defer"
    RETRY = "retry"


# What a skipped candidate does to the watermark. Probe candidates that were
# never published are deferred: a later success moves past them, a trailing
# run of them does not.
SKIP_POLICY: dict[tuple[SkipReason, CandidateOrigin], SkipAction] = {
    (SkipReason.NOT_FOUND, CandidateOrigin.LISTING): SkipAction.ADVANCE,
    (SkipReason.NOT_FOUND, CandidateOrigin.PROBE): SkipAction.DEFER,
    (SkipReason.UNAVAILABLE, CandidateOrigin.LISTING): SkipAction.ADVANCE,
    (SkipReason.UNAVAILABLE, CandidateOrigin.PROBE): SkipAction.DEFER,
    (SkipReason.NO_CONTENT, CandidateOrigin.LISTING): SkipAction.ADVANCE,
    (SkipReason.NO_CONTENT, CandidateOrigin.PROBE): SkipAction.ADVANCE,
    (SkipReason.TRANSIENT_FETCH, CandidateOrigin.LISTING): SkipAction.RETRY,
    (SkipReason.TRANSIENT_FETCH, CandidateOrigin.PROBE): SkipAction.RETRY,
    (SkipReason.RENDER_FAILURE, CandidateOrigin.LISTING): SkipAction.RETRY,
    (SkipReason.RENDER_FAILURE, CandidateOrigin.PROBE): SkipAction.RETRY,
    (SkipReason.ARTIFACT_INVALID, CandidateOrigin.LISTING): SkipAction.RETRY,
    (SkipReason.ARTIFACT_INVALID, CandidateOrigin.PROBE): SkipAction.RETRY,
}
RETRYABLE_REASONS = frozenset(
    reason for (reason, _origin), action in SKIP_POLICY.items() if action is SkipAction.RETRY
)


@dataclass(slots=True)
class ItemReport:
    candidate: Candidate
    status: ItemStatus
    reason: SkipReason | None = None
    detail: str | None = None
    strategy: str | None = None
    artifact: Artifact | None = None
    published: date | None = None
    date_is_fallback: bool = True

    @property
    def produced(self) -> bool:
        return self.status in (ItemStatus.RENDERED, ItemStatus.ALREADY_PRESENT)


@dataclass(slots=True)
class RunSummary:
    mode: IngestMode
    watermark_before: int
    watermark_after: int
    candidates: int = 0
    attempted: int = 0
    rendered: int = 0
    already_present: int = 0
    skipped: Counter = field(default_factory=Counter)
    held_at: int | None = None
    caught_up: bool = False
    fatal: str | None = None
    commit_ok: bool | None = None
    artifacts: list[Artifact] = field(default_factory=list)
    reports: list[ItemReport] = field(default_factory=list)

    @property
    def skipped_total(self) -> int:
        return sum(self.skipped.values())

    @property
    def produced(self) -> int:
        return self.rendered + self.already_present

    @property
    def nothing_new(self) -> bool:
        return self.candidates == 0

    @property
    def zero_output(self) -> bool:
        """Candidates existed yet nothing was produced.

        A catch-up probe that only ran past the head of the source is not an
        alert: those identifiers simply do not exist yet.
        """

        if self.nothing_new or self.produced:
            return False
        if self.mode is IngestMode.CATCHUP:
            probe_misses = self.skipped[SkipReason.NOT_FOUND] + self.skipped[SkipReason.UNAVAILABLE]
            if probe_misses == self.skipped_total:
                return False
        return True

    def record(self, report: ItemReport) -> None:
        self.attempted += 1
        self.reports.append(report)
        if report.status is ItemStatus.RENDERED:
            self.rendered += 1
            if report.artifact:
                self.artifacts.append(report.artifact)
        elif report.status is ItemStatus.ALREADY_PRESENT:
            self.already_present += 1
        elif report.reason is not None:
            self.skipped[report.reason] += 1

    def describe(self) -> str:
        skipped = ", ".join(f"{reason.value}={count}" for reason, count in sorted(
            self.skipped.items(), key=lambda item: item[0].value
        )) or "none"
        return (
            f"mode={self.mode.value} candidates={self.candidates} attempted={self.attempted} "
            f"rendered={self.rendered} already_present={self.already_present} skipped[{skipped}] "
            f"watermark={self.watermark_before}->{self.watermark_after}"
            + (f" held_at={self.held_at}" if self.held_at is not None else "")
            + (" caught_up" if self.caught_up else "")
        )


class IngestionSequencer:
    """Process candidates one at a time, advancing the watermark only after durable output."""

    def __init__(
        self,
        config: IngestConfig,
        *,
        store: WatermarkStore,
        fetcher: PageFetcher,
        extractor: ContentExtractor,
        generator: ArtifactGenerator,
        artifacts: ArtifactStore,
        discovery: IdentifierDiscovery | None = None,
        ledger: RunLedger | None = None,
        committer: ArtifactCommitter | None = None,
        clock: Callable[[], datetime] | None = None,
    ) -> None:
        self._config = config
        self._store = store
        self._fetcher = fetcher
        self._extractor = extractor
        self._generator = generator
        self._artifacts = artifacts
        self._discovery = discovery or IdentifierDiscovery(fetcher, config.source, config.discovery)
        self._ledger = ledger
        self._committer = committer
        self._clock = clock or (lambda: datetime.now(timezone.utc))
        self.state = SequencerState.IDLE

    def _transition(self, state: SequencerState) -> None:
        LOGGER.debug("State %s -> %s", self.state.value, state.value)
        self.state = state

    def run(self) -> RunSummary:
        now = self._clock()
        recover_from = self._config.recover_from
        floor = self._artifacts.highest_identifier() if recover_from is not None else None
        watermark = self._store.load(now=now, recover_from=recover_from, floor=floor)

        mode = select_mode(now, watermark, self._config.discovery.catchup_after)
        summary = RunSummary(
            mode=mode,
            watermark_before=watermark.last_processed_id,
            watermark_after=watermark.last_processed_id,
        )
        LOGGER.info(
            "Run start: watermark=%d last_run_at=%s mode=%s",
            watermark.last_processed_id,
            watermark.last_run_at.isoformat(),
            mode.value,
        )
        run_id = self._ledger_call("start_run", mode.value, watermark.last_processed_id, 0)

        self._transition(SequencerState.DISCOVERING)
        try:
            discovered = self._discovery.discover(watermark, mode)
        except DiscoveryUnavailable as exc:
            self._fail(summary, run_id, exc)
            raise

        summary.candidates = len(discovered.candidates)
        if not discovered.candidates:
            LOGGER.info("Nothing new above watermark %d", watermark.last_processed_id)

        try:
            self._process_candidates(discovered.candidates, summary, run_id)
        except RegressionRejected as exc:
            self._fail(summary, run_id, exc)
            raise

        next_mode = IngestMode.INCREMENTAL
        if mode is IngestMode.CATCHUP and not summary.caught_up:
            next_mode = IngestMode.CATCHUP
        self._store.record_run(next_mode, self._clock())
        summary.watermark_after = self._store.current.last_processed_id

        if self._committer is not None and summary.artifacts:
            paths = [artifact.path for artifact in summary.artifacts]
            summary.commit_ok = self._committer.commit(paths, extra=[self._store.path])

        self._transition(SequencerState.IDLE)
        if run_id:
            self._ledger_call("finish_run", run_id, summary)
        LOGGER.info("Run complete: %s", summary.describe())
        return summary

    def _fail(self, summary: RunSummary, run_id: str | None, exc: Exception) -> None:
        self._transition(SequencerState.FATAL)
        summary.fatal = f"{type(exc).__name__}: {exc}"
        summary.watermark_after = self._store.current.last_processed_id
        LOGGER.error("Run aborted: %s", summary.fatal)
        if run_id:
            self._ledger_call("finish_run", run_id, summary)

    def _process_candidates(
        self,
        candidates: Sequence[Candidate],
        summary: RunSummary,
        run_id: str | None,
    ) -> None:
        probe_misses = 0
        probe_miss_limit = self._config.discovery.probe_miss_limit
        recency_floor = self._clock().date() - self._config.discovery.recency

        for candidate in candidates:
            report = self._process(candidate)
            summary.record(report)
            if run_id:
                self._ledger_call("record_outcome", run_id, report)

            if report.produced:
                probe_misses = 0
                self._advance(candidate, report, summary)
                if (
                    summary.mode is IngestMode.CATCHUP
                    and not report.date_is_fallback
                    and report.published is not None
                    and report.published >= recency_floor
                ):
                    LOGGER.info(
                        "Catch-up reached %d published %s; switching back to incremental",
                        candidate.identifier,
                        report.published.isoformat(),
                    )
                    summary.caught_up = True
                    break
                continue

            action = self._skip_action(candidate, report)
            if action is SkipAction.ADVANCE:
                self._advance(candidate, report, summary)
            elif action is SkipAction.RETRY:
                if summary.held_at is None:
                    summary.held_at = candidate.identifier
                    LOGGER.warning(
                        "Holding watermark below %d until it can be retried next run",
                        candidate.identifier,
                    )

            if candidate.origin is CandidateOrigin.PROBE and action is SkipAction.DEFER:
                probe_misses += 1
                if probe_miss_limit and probe_misses >= probe_miss_limit:
                    LOGGER.info(
                        "%d consecutive probe misses ending at %d; assuming head of source reached",
                        probe_misses,
                        candidate.identifier,
                    )
                    summary.caught_up = True
                    break
            else:
                probe_misses = 0

        if (
            summary.mode is IngestMode.CATCHUP
            and not summary.caught_up
            and summary.attempted
            and probe_misses == summary.attempted
        ):
            LOGGER.info("Every probe in this window was missing; assuming head of source reached")
            summary.caught_up = True

    def _skip_action(self, candidate: Candidate, report: ItemReport) -> SkipAction:
        action = SKIP_POLICY[(report.reason, candidate.origin)]
        if action is not SkipAction.RETRY:
            return action

        policy = self._config.failure_policy
        if not policy.hold_on_retryable or self._ledger is None:
            LOGGER.warning("Recording %d as a miss (%s) and moving on", candidate.identifier, report.reason.value)
            return SkipAction.ADVANCE
        try:
            previous = self._ledger.failure_count(
                candidate.identifier, [reason.value for reason in RETRYABLE_REASONS]
            )
        except LedgerError as exc:
            LOGGER.warning("Ledger lookup failed for %d: %s", candidate.identifier, exc)
            return SkipAction.RETRY
        # The current run's outcome is already recorded.
        if previous >= policy.max_retry_runs:
            LOGGER.warning(
                "%d failed in %d runs (%s); recording as a permanent miss",
                candidate.identifier,
                previous,
                report.reason.value,
            )
            return SkipAction.ADVANCE
        return SkipAction.RETRY

    def _advance(self, candidate: Candidate, report: ItemReport, summary: RunSummary) -> None:
        if summary.held_at is not None and candidate.identifier > summary.held_at:
            LOGGER.debug("Not advancing past held identifier %d to %d", summary.held_at, candidate.identifier)
            return
        self._transition(SequencerState.ADVANCING)
        self._store.advance(
            candidate.identifier,
            candidate.url,
            self._clock(),
            date_used=report.published,
        )
        summary.watermark_after = self._store.current.last_processed_id

    def _process(self, candidate: Candidate) -> ItemReport:
        existing = self._artifacts.find_existing(candidate.identifier)
        if existing is not None:
            LOGGER.info("Artifact %s already present; skipping render", existing.filename)
            parsed = self._artifacts.parse_name(existing.filename)
            return ItemReport(
                candidate,
                ItemStatus.ALREADY_PRESENT,
                artifact=existing,
                published=parsed.published if parsed else None,
            )

        self._transition(SequencerState.FETCHING)
        LOGGER.info("Processing %d (%s)", candidate.identifier, candidate.url)
        outcome = self._fetcher.fetch(candidate.url)
        if outcome.status is FetchStatus.NOT_FOUND:
            LOGGER.warning("Item %d not found: %s", candidate.identifier, outcome.reason)
            return self._skip(candidate, SkipReason.NOT_FOUND, outcome.reason)
        if outcome.status is FetchStatus.TRANSIENT:
            return self._skip(candidate, SkipReason.TRANSIENT_FETCH, outcome.reason)

        if self._config.raw_html_cache_enabled:
            self._dump(
                candidate.identifier,
                persist_raw_html,
                self._config.raw_html_path(candidate.identifier),
                outcome.body or "",
            )

        self._transition(SequencerState.EXTRACTING)
        today = self._clock().date()
        result = self._extractor.extract(outcome, today=today)
        if isinstance(result, Unavailable):
            return self._skip(candidate, SkipReason.UNAVAILABLE, result.reason)
        if isinstance(result, NoContent):
            self._dump(
                candidate.identifier,
                persist_rejected_text,
                self._config.debug_dir,
                candidate.identifier,
                result.text,
            )
            LOGGER.warning("Item %d has no usable content: %s", candidate.identifier, result.reason)
            return self._skip(candidate, SkipReason.NO_CONTENT, result.reason)
        if len(result.text) < self._extractor.min_text_length:
            return self._skip(candidate, SkipReason.NO_CONTENT, "extracted text below threshold")

        self._transition(SequencerState.RENDERING)
        target_name = self._artifacts.filename_for(candidate.identifier, result.estimated_date)
        try:
            payload = self._generator.render(result.text, target_name, title=result.title)
        except RenderFailure as exc:
            LOGGER.error("Render failed for %d: %s", candidate.identifier, exc)
            return self._skip(candidate, SkipReason.RENDER_FAILURE, str(exc), strategy=result.strategy)

        self._transition(SequencerState.VERIFYING)
        try:
            artifact = self._artifacts.write(candidate.identifier, result.estimated_date, payload)
        except ArtifactExistsError as exc:
            LOGGER.warning("%s", exc)
            existing = self._artifacts.find_existing(candidate.identifier)
            if existing is None:
                return self._skip(candidate, SkipReason.ARTIFACT_INVALID, str(exc))
            return ItemReport(candidate, ItemStatus.ALREADY_PRESENT, artifact=existing)
        except OSError as exc:
            LOGGER.error("Writing artifact for %d failed: %s", candidate.identifier, exc)
            return self._skip(candidate, SkipReason.ARTIFACT_INVALID, f"write failed: {exc}")

        if not self._artifacts.verify(artifact):
            self._artifacts.discard(artifact)
            return self._skip(
                candidate,
                SkipReason.ARTIFACT_INVALID,
                f"artifact {artifact.filename} failed verification ({artifact.size} bytes)",
            )

        LOGGER.info("Artifact created: %s (%d bytes, %s)", artifact.filename, artifact.size, result.strategy)
        return ItemReport(
            candidate,
            ItemStatus.RENDERED,
            strategy=result.strategy,
            artifact=artifact,
            published=result.estimated_date,
            date_is_fallback=result.date_is_fallback,
        )

    def _dump(self, identifier: int, writer: Callable[..., object], *args: object) -> None:
        """Debug dumps are best effort and never stop the run."""

        try:
            writer(*args)
        except OSError as exc:
            LOGGER.warning("Could not write debug dump for %d: %s", identifier, exc)

    def _skip(
        self,
        candidate: Candidate,
        reason: SkipReason,
        detail: str | None,
        *,
        strategy: str | None = None,
    ) -> ItemReport:
        return ItemReport(candidate, ItemStatus.SKIPPED, reason=reason, detail=detail, strategy=strategy)

    def _ledger_call(self, method: str, *args):
        if self._ledger is None:
            return None
        try:
            return getattr(self._ledger, method)(*args)
        except LedgerError as exc:
            LOGGER.warning("Run ledger %s failed: %s", method, exc)
            return None
