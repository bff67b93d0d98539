"""Command-line entrypoint for a single watermark-driven ingestion run."""

from __future__ import annotations

import argparse
import logging
from contextlib import ExitStack
from datetime import datetime, timedelta
from pathlib import Path
from typing import Callable, Sequence

from .artifacts import ArtifactStore
from .commit import GitCommitter
from .config import DEFAULT_DB_URL, IngestConfig
from .discovery import DiscoveryUnavailable, IdentifierDiscovery, PageFetcher
from .extraction import ContentExtractor, ExtractionError, load_template_revisions
from .http_client import HttpFetcher
from .persistence import LedgerError, RunLedger
from .render import ArtifactGenerator, PdfRenderer
from .sequencer import IngestionSequencer, RunSummary
from .watermark import CorruptState, RegressionRejected, WatermarkStore

LOGGER = logging.getLogger(__name__)

EXIT_OK = 0
EXIT_FATAL = 1
EXIT_NO_OUTPUT = 3


def build_arg_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(description="Ingest new items above the persisted watermark")
    parser.add_argument("--state-file", type=Path, default=None, help="Path to the watermark JSON file")
    parser.add_argument("--output-dir", type=Path, default=None, help="Directory receiving artifacts")
    parser.add_argument(
        "--storage-root",
        type=Path,
        default=None,
        help="Directory for the run ledger and digest cursor",
    )
    parser.add_argument("--db-url", type=str, default=None, help="SQLAlchemy URL of the run ledger")
    parser.add_argument("--no-ledger", action="store_true", help="Do not record runs in the ledger")
    parser.add_argument(
        "--seed-id",
        type=int,
        default=None,
        help="Baseline identifier used when no watermark file exists yet",
    )
    parser.add_argument(
        "--recover-from",
        type=int,
        default=None,
        help="Operator baseline used when the watermark file is corrupt",
    )
    parser.add_argument("--base-url", type=str, default=None, help="Root URL of the source site")
    parser.add_argument(
        "--catchup-window",
        type=int,
        default=None,
        help="Number of sequential identifiers probed per catch-up run",
    )
    parser.add_argument(
        "--catchup-after-days",
        type=int,
        default=None,
        help="Days since the last run after which catch-up mode is used",
    )
    parser.add_argument(
        "--probe-miss-limit",
        type=int,
        default=None,
        help="Stop catch-up after this many consecutive missing probes (default: off)",
    )
    parser.add_argument(
        "--max-candidates",
        type=int,
        default=None,
        help="Process at most this many candidates per run",
    )
    parser.add_argument(
        "--min-text-length",
        type=int,
        default=None,
        help="Minimum extracted characters required before rendering",
    )
    parser.add_argument(
        "--templates-file",
        type=Path,
        default=None,
        help="JSON file with additional template revisions tried before the built-in ones",
    )
    parser.add_argument("--debug-dir", type=Path, default=None, help="Directory for rejected text dumps")
    parser.add_argument("--raw-html-cache", action="store_true", help="Persist raw HTML payloads for debugging")
    parser.add_argument("--git-commit", action="store_true", help="Commit new artifacts and the watermark")
    parser.add_argument("--git-repo", type=Path, default=None, help="Git work tree used with --git-commit")
    parser.add_argument("--proxy", type=str, default=None, help="Proxy URL for outbound requests")
    parser.add_argument("--user-agent", type=str, default=None, help="Override the HTTP User-Agent header")
    parser.add_argument(
        "--request-timeout",
        type=float,
        default=None,
        help="Per-request timeout in seconds",
    )
    parser.add_argument(
        "--log-level",
        type=str,
        default="INFO",
        choices=["DEBUG", "INFO", "WARNING", "ERROR"],
        help="Logging verbosity",
    )
    return parser


def configure_logging(level: str = "INFO") -> None:
    logging.basicConfig(
        level=getattr(logging, level.upper(), logging.INFO),
        format="%(asctime)s [%(levelname)s] %(name)s: %(message)s",
    )


def build_config(args: argparse.Namespace) -> IngestConfig:
    config = IngestConfig.from_env()

    if args.state_file is not None:
        config.state_file = args.state_file
    if args.output_dir is not None:
        config.output_dir = args.output_dir
    if args.storage_root is not None:
        config.storage_root = args.storage_root
        if config.db_url == DEFAULT_DB_URL:
            config.db_url = f"sqlite:///{(args.storage_root / 'ledger.sqlite3').as_posix()}"
    if args.no_ledger:
        config.db_url = None
    elif args.db_url:
        config.db_url = args.db_url
    if args.seed_id is not None:
        config.seed_id = args.seed_id
    if args.recover_from is not None:
        config.recover_from = args.recover_from
    if args.base_url:
        config.source.base_url = args.base_url
    if args.catchup_window is not None:
        config.discovery.catchup_window = args.catchup_window
    if args.catchup_after_days is not None:
        config.discovery.catchup_after = timedelta(days=args.catchup_after_days)
    if args.probe_miss_limit is not None:
        config.discovery.probe_miss_limit = args.probe_miss_limit or None
    if args.max_candidates is not None:
        if args.max_candidates < 1:
            raise ValueError("--max-candidates must be at least 1")
        config.discovery.max_candidates = args.max_candidates
    if args.min_text_length is not None:
        config.extraction.min_text_length = args.min_text_length
    if args.templates_file is not None:
        config.extraction.templates_file = args.templates_file
    if args.debug_dir is not None:
        config.debug_dir = args.debug_dir
    config.raw_html_cache_enabled = args.raw_html_cache or config.raw_html_cache_enabled
    config.git_commit = args.git_commit or config.git_commit
    if args.git_repo is not None:
        config.git_repo = args.git_repo
    if args.proxy:
        config.proxy_url = args.proxy
    if args.user_agent:
        config.user_agent = args.user_agent
    if args.request_timeout is not None:
        config.timeout.request_timeout = args.request_timeout

    config.validate()
    return config


def build_extractor(config: IngestConfig) -> ContentExtractor:
    if config.extraction.templates_file is None:
        return ContentExtractor(min_text_length=config.extraction.min_text_length)
    extra = load_template_revisions(config.extraction.templates_file)
    LOGGER.info("Loaded %d template revision(s) from %s", len(extra), config.extraction.templates_file)
    return ContentExtractor.with_extra_revisions(extra, min_text_length=config.extraction.min_text_length)


def open_ledger(config: IngestConfig) -> RunLedger | None:
    if not config.db_url:
        return None
    try:
        return RunLedger.from_url(config.db_url)
    except LedgerError as exc:
        LOGGER.warning("Run ledger unavailable, continuing without it: %s", exc)
        return None


def run_ingestion(
    config: IngestConfig,
    *,
    fetcher: PageFetcher | None = None,
    renderer: ArtifactGenerator | None = None,
    ledger: RunLedger | None = None,
    clock: Callable[[], datetime] | None = None,
) -> RunSummary:
    """Wire the collaborators for ``config`` and execute one run."""

    config.ensure_directories()
    extractor = build_extractor(config)
    artifacts = ArtifactStore(
        config.output_dir,
        extension=config.layout.extension,
        min_size=config.min_artifact_bytes,
    )
    store = WatermarkStore(config.state_file, seed_id=config.seed_id)
    committer = None
    if config.git_commit:
        committer = GitCommitter(config.git_repo or Path.cwd())

    with ExitStack() as stack:
        if fetcher is None:
            fetcher = stack.enter_context(HttpFetcher(config))
        sequencer = IngestionSequencer(
            config,
            store=store,
            fetcher=fetcher,
            extractor=extractor,
            generator=renderer or PdfRenderer(config.layout),
            artifacts=artifacts,
            discovery=IdentifierDiscovery(fetcher, config.source, config.discovery),
            ledger=ledger if ledger is not None else open_ledger(config),
            committer=committer,
            clock=clock,
        )
        return sequencer.run()


def exit_code_for(summary: RunSummary) -> int:
    if summary.fatal:
        return EXIT_FATAL
    if summary.commit_ok is False:
        return EXIT_FATAL
    if summary.zero_output:
        return EXIT_NO_OUTPUT
    return EXIT_OK


def main(argv: Sequence[str] | None = None) -> int:
    parser = build_arg_parser()
    args = parser.parse_args(argv)
    configure_logging(args.log_level)

    try:
        config = build_config(args)
    except ValueError as exc:
        parser.error(str(exc))

    try:
        summary = run_ingestion(config)
    except (CorruptState, DiscoveryUnavailable, RegressionRejected) as exc:
        LOGGER.error("Ingestion aborted: %s", exc)
        return EXIT_FATAL
    except ExtractionError as exc:
        LOGGER.error("Template configuration rejected: %s", exc)
        return EXIT_FATAL

    code = exit_code_for(summary)
    if code == EXIT_NO_OUTPUT:
        LOGGER.error("No artifacts produced from %d candidate(s)", summary.candidates)
    elif code == EXIT_FATAL:
        LOGGER.error("Artifacts were produced but could not be committed")
    return code


if __name__ == "__main__":  # pragma: no cover - CLI entrypoint
    raise SystemExit(main())
