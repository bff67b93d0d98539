import unittest
from datetime import datetime, timedelta, timezone

from harvester.config import DiscoveryConfig, SourceConfig
from harvester.discovery import (
    CandidateOrigin,
    DiscoveryUnavailable,
    IdentifierDiscovery,
    newer_than,
    parse_listing_identifiers,
    select_mode,
)
from harvester.http_client import FetchOutcome, FetchStatus
from harvester.watermark import IngestMode, Watermark

NOW = datetime(2025, 12, 1, 9, 0, tzinfo=timezone.utc)

LISTING = """
<html><body>
  <a href="/article.cfm?recent_news_id=9260">Newest</a>
  <a href="/article.cfm?recent_news_id=9259">Another</a>
  <a href="article.cfm?recent_news_id=9257">Third</a>
  <a href="/article.cfm?recent_news_id=9256">Already seen</a>
  <a href="/article.cfm?recent_news_id=9260">Duplicate link</a>
  <a href="/article.cfm?recent_news_id=9100">Old</a>
</body></html>
"""


class StubFetcher:
    def __init__(self, outcome: FetchOutcome) -> None:
        self._outcome = outcome
        self.requested: list[str] = []

    def fetch(self, url: str) -> FetchOutcome:
        self.requested.append(url)
        return self._outcome


def _watermark(identifier: int, *, last_run_at: datetime = NOW, mode=IngestMode.INCREMENTAL) -> Watermark:
    return Watermark(
        last_processed_id=identifier,
        last_processed_reference="",
        last_run_at=last_run_at,
        last_date_used=last_run_at.date(),
        current_date=last_run_at.date(),
        last_mode=mode,
    )


class SelectModeTestCase(unittest.TestCase):
    def test_recent_run_is_incremental(self) -> None:
        watermark = _watermark(1, last_run_at=NOW - timedelta(days=1))
        self.assertIs(select_mode(NOW, watermark, timedelta(days=7)), IngestMode.INCREMENTAL)

    def test_gap_equal_to_threshold_stays_incremental(self) -> None:
        watermark = _watermark(1, last_run_at=NOW - timedelta(days=7))
        self.assertIs(select_mode(NOW, watermark, timedelta(days=7)), IngestMode.INCREMENTAL)

    def test_long_gap_switches_to_catchup(self) -> None:
        watermark = _watermark(1, last_run_at=NOW - timedelta(days=10))
        self.assertIs(select_mode(NOW, watermark, timedelta(days=7)), IngestMode.CATCHUP)

    def test_unfinished_catchup_is_sticky(self) -> None:
        watermark = _watermark(1, last_run_at=NOW - timedelta(hours=2), mode=IngestMode.CATCHUP)
        self.assertIs(select_mode(NOW, watermark, timedelta(days=7)), IngestMode.CATCHUP)


class ListingParsingTestCase(unittest.TestCase):
    def test_extracts_identifiers_in_document_order(self) -> None:
        identifiers = parse_listing_identifiers(LISTING, SourceConfig().identifier_pattern)
        self.assertEqual(identifiers, [9260, 9259, 9257, 9256, 9260, 9100])

    def test_newer_than_is_sorted_and_unique(self) -> None:
        self.assertEqual(newer_than([9260, 9259, 9257, 9256, 9260, 9100], 9256), [9257, 9259, 9260])


class IdentifierDiscoveryTestCase(unittest.TestCase):
    def test_incremental_uses_listing(self) -> None:
        fetcher = StubFetcher(FetchOutcome("https://www.prophecynewswatch.com/", FetchStatus.OK, body=LISTING))
        discovery = IdentifierDiscovery(fetcher, SourceConfig(), DiscoveryConfig())

        result = discovery.discover(_watermark(9256), IngestMode.INCREMENTAL)

        self.assertEqual([c.identifier for c in result.candidates], [9257, 9259, 9260])
        self.assertTrue(all(c.origin is CandidateOrigin.LISTING for c in result.candidates))
        self.assertEqual(
            result.candidates[0].url,
            "https://www.prophecynewswatch.com/article.cfm?recent_news_id=9257",
        )
        self.assertEqual(fetcher.requested, ["https://www.prophecynewswatch.com/"])
        self.assertEqual(result.listed_total, 5)

    def test_incremental_nothing_newer(self) -> None:
        fetcher = StubFetcher(FetchOutcome("https://www.prophecynewswatch.com/", FetchStatus.OK, body=LISTING))
        discovery = IdentifierDiscovery(fetcher, SourceConfig(), DiscoveryConfig())

        result = discovery.discover(_watermark(9260), IngestMode.INCREMENTAL)

        self.assertEqual(result.candidates, [])

    def test_unreachable_listing_is_fatal(self) -> None:
        fetcher = StubFetcher(FetchOutcome("https://www.prophecynewswatch.com/", FetchStatus.TRANSIENT, reason="503"))
        discovery = IdentifierDiscovery(fetcher, SourceConfig(), DiscoveryConfig())

        with self.assertRaises(DiscoveryUnavailable):
            discovery.discover(_watermark(9256), IngestMode.INCREMENTAL)

    def test_listing_without_identifiers_is_fatal(self) -> None:
        outcome = FetchOutcome("https://www.prophecynewswatch.com/", FetchStatus.OK, body="<html>maintenance</html>")
        discovery = IdentifierDiscovery(StubFetcher(outcome), SourceConfig(), DiscoveryConfig())

        with self.assertRaises(DiscoveryUnavailable):
            discovery.discover(_watermark(9256), IngestMode.INCREMENTAL)

    def test_catchup_probes_window_without_fetching(self) -> None:
        fetcher = StubFetcher(FetchOutcome("unused", FetchStatus.TRANSIENT))
        discovery = IdentifierDiscovery(fetcher, SourceConfig(), DiscoveryConfig(catchup_window=50))

        result = discovery.discover(_watermark(9256), IngestMode.CATCHUP)

        identifiers = [c.identifier for c in result.candidates]
        self.assertEqual(identifiers, list(range(9257, 9307)))
        self.assertTrue(all(c.origin is CandidateOrigin.PROBE for c in result.candidates))
        self.assertEqual(fetcher.requested, [])

    def test_max_candidates_caps_lowest_first(self) -> None:
        fetcher = StubFetcher(FetchOutcome("https://www.prophecynewswatch.com/", FetchStatus.OK, body=LISTING))
        discovery = IdentifierDiscovery(fetcher, SourceConfig(), DiscoveryConfig(max_candidates=1))

        result = discovery.discover(_watermark(9256), IngestMode.INCREMENTAL)

        self.assertEqual([c.identifier for c in result.candidates], [9257])


if __name__ == "__main__":  # pragma: no cover
    unittest.main()
