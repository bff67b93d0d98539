"""Candidate identifier discovery: listing scans and sequential probes."""

from __future__ import annotations

import logging
import re
from dataclasses import dataclass, field
from datetime import datetime, timedelta
from enum import Enum
from typing import Iterable, Protocol

from .config import DiscoveryConfig, SourceConfig
from .http_client import FetchOutcome
from .watermark import IngestMode, Watermark

LOGGER = logging.getLogger(__name__)


class DiscoveryUnavailable(RuntimeError):
    """Raised when candidates cannot be safely determined for this run."""


class CandidateOrigin(str, Enum):
    LISTING = "listing"
    PROBE = "probe"


@dataclass(frozen=True, slots=True)
class Candidate:
    identifier: int
    origin: CandidateOrigin
    url: str


@dataclass(slots=True)
class DiscoveryResult:
    mode: IngestMode
    candidates: list[Candidate] = field(default_factory=list)
    listed_total: int = 0


class PageFetcher(Protocol):
    def fetch(self, url: str) -> FetchOutcome:  # pragma: no cover - interface only
        ...


def select_mode(
    now: datetime,
    watermark: Watermark,
    threshold: timedelta,
) -> IngestMode:
    """Pick the discovery strategy for a run.

    A run that left the watermark mid catch-up keeps probing until the backlog
    is cleared; otherwise the gap since the last run decides.
    """

    if watermark.last_mode is IngestMode.CATCHUP:
        return IngestMode.CATCHUP
    gap = now - watermark.last_run_at
    if gap > threshold:
        return IngestMode.CATCHUP
    return IngestMode.INCREMENTAL


def parse_listing_identifiers(html: str, pattern: str | re.Pattern[str]) -> list[int]:
    """Return every identifier embedded in ``html`` in document order."""

    compiled = re.compile(pattern) if isinstance(pattern, str) else pattern
    identifiers: list[int] = []
    for match in compiled.finditer(html):
        try:
            identifiers.append(int(match.group(1)))
        except (IndexError, ValueError):
            continue
    return identifiers


def newer_than(identifiers: Iterable[int], watermark_id: int) -> list[int]:
    return sorted({identifier for identifier in identifiers if identifier > watermark_id})


class IdentifierDiscovery:
    """Produce the ordered candidates for a run."""

    def __init__(
        self,
        fetcher: PageFetcher,
        source: SourceConfig,
        config: DiscoveryConfig,
    ) -> None:
        self._fetcher = fetcher
        self._source = source
        self._config = config
        self._pattern = re.compile(source.identifier_pattern)

    def discover(self, watermark: Watermark, mode: IngestMode) -> DiscoveryResult:
        if mode is IngestMode.CATCHUP:
            result = self._catchup(watermark)
        else:
            result = self._incremental(watermark)

        limit = self._config.max_candidates
        if limit is not None and limit > 0 and len(result.candidates) > limit:
            LOGGER.info("Capping %d candidates to %d for this run", len(result.candidates), limit)
            result.candidates = result.candidates[:limit]
        return result

    def _incremental(self, watermark: Watermark) -> DiscoveryResult:
        listing_url = self._source.listing_url()
        outcome = self._fetcher.fetch(listing_url)
        if not outcome.ok:
            raise DiscoveryUnavailable(
                f"Listing page {listing_url} unavailable: {outcome.status.value} ({outcome.reason})"
            )

        body = outcome.body or ""
        identifiers = parse_listing_identifiers(body, self._pattern)
        if not identifiers:
            if body.strip():
                raise DiscoveryUnavailable(
                    f"Listing page {listing_url} contained no identifiers matching {self._pattern.pattern!r}"
                )
            LOGGER.info("Listing page %s is empty; nothing new", listing_url)
            return DiscoveryResult(mode=IngestMode.INCREMENTAL)

        fresh = newer_than(identifiers, watermark.last_processed_id)
        LOGGER.info(
            "Listing %s referenced %d identifiers; %d newer than %d",
            listing_url,
            len(set(identifiers)),
            len(fresh),
            watermark.last_processed_id,
        )
        return DiscoveryResult(
            mode=IngestMode.INCREMENTAL,
            candidates=[
                Candidate(identifier, CandidateOrigin.LISTING, self._source.item_url(identifier))
                for identifier in fresh
            ],
            listed_total=len(set(identifiers)),
        )

    def _catchup(self, watermark: Watermark) -> DiscoveryResult:
        start = watermark.last_processed_id + 1
        stop = watermark.last_processed_id + self._config.catchup_window
        LOGGER.info("Catch-up probe range %d..%d", start, stop)
        return DiscoveryResult(
            mode=IngestMode.CATCHUP,
            candidates=[
                Candidate(identifier, CandidateOrigin.PROBE, self._source.item_url(identifier))
                for identifier in range(start, stop + 1)
            ],
        )
