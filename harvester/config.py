"""Configuration utilities shared by the ingestion run and its reports."""

from __future__ import annotations

import os
from dataclasses import dataclass, field
from datetime import timedelta
from pathlib import Path
from typing import Optional
from urllib.parse import urljoin, urlsplit

DEFAULT_STATE_FILE = Path("state.json")
DEFAULT_OUTPUT_DIR = Path("PDFS")
DEFAULT_STORAGE_ROOT = Path("storage")
DEFAULT_DEBUG_DIR = Path("TMP")
DEFAULT_DB_URL = f"sqlite:///{(DEFAULT_STORAGE_ROOT / 'ledger.sqlite3').as_posix()}"

DEFAULT_BASE_URL = "https://www.prophecynewswatch.com"
DEFAULT_USER_AGENT = "harvester/1.0 (+watermark ingestion)"


def _env_str(name: str) -> str | None:
    value = os.getenv(name)
    if value is None:
        return None
    cleaned = value.strip()
    return cleaned or None


def _env_bool(name: str, default: bool = False) -> bool:
    value = os.getenv(name)
    if value is None:
        return default
    return value.strip().lower() in {"1", "true", "yes", "on"}


def _env_int(name: str, default: int) -> int:
    value = _env_str(name)
    if value is None:
        return default
    try:
        parsed = int(value)
    except ValueError as exc:
        raise ValueError(f"Environment variable {name} must be an integer (got {value!r})") from exc
    if parsed < 0:
        raise ValueError(f"Environment variable {name} must not be negative")
    return parsed


@dataclass(slots=True)
class SourceConfig:
    """Where items and the listing page live on the remote source."""

    base_url: str = DEFAULT_BASE_URL
    listing_path: str = "/"
    item_path_template: str = "/article.cfm?recent_news_id={identifier}"
    identifier_pattern: str = r"recent_news_id=(\d+)"
    removal_redirect_paths: tuple[str, ...] = ("/", "/index.cfm")

    def listing_url(self) -> str:
        return urljoin(f"{self.base_url.rstrip('/')}/", self.listing_path.lstrip("/"))

    def item_url(self, identifier: int) -> str:
        path = self.item_path_template.format(identifier=identifier)
        return urljoin(f"{self.base_url.rstrip('/')}/", path.lstrip("/"))


@dataclass(slots=True)
class DiscoveryConfig:
    catchup_after: timedelta = timedelta(days=7)
    catchup_window: int = 50
    recency: timedelta = timedelta(days=1)
    probe_miss_limit: int | None = None
    max_candidates: int | None = None


@dataclass(slots=True)
class ExtractionConfig:
    min_text_length: int = 50
    templates_file: Optional[Path] = None


@dataclass(slots=True)
class RetryConfig:
    max_attempts: int = 2
    backoff_factor: float = 1.5
    base_delay: float = 1.0


@dataclass(slots=True)
class TimeoutConfig:
    request_timeout: float = 20.0


@dataclass(slots=True)
class LayoutConfig:
    """Page layout handed to the renderer for every artifact."""

    page_size: str = "letter"
    margin_mm: float = 20.0
    title_font_size: float = 18.0
    body_font_size: float = 11.0
    line_height: float = 1.4
    extension: str = "pdf"


@dataclass(slots=True)
class FailurePolicyConfig:
    """Controls how retryable per-item failures interact with the watermark."""

    hold_on_retryable: bool = True
    max_retry_runs: int = 3


@dataclass(slots=True)
class IngestConfig:
    state_file: Path = DEFAULT_STATE_FILE
    output_dir: Path = DEFAULT_OUTPUT_DIR
    storage_root: Path = DEFAULT_STORAGE_ROOT
    debug_dir: Optional[Path] = DEFAULT_DEBUG_DIR
    db_url: Optional[str] = DEFAULT_DB_URL
    user_agent: str = DEFAULT_USER_AGENT
    proxy_url: Optional[str] = None
    seed_id: int = 0
    recover_from: Optional[int] = None
    min_artifact_bytes: int = 256
    raw_html_cache_enabled: bool = False
    git_commit: bool = False
    git_repo: Optional[Path] = None
    source: SourceConfig = field(default_factory=SourceConfig)
    discovery: DiscoveryConfig = field(default_factory=DiscoveryConfig)
    extraction: ExtractionConfig = field(default_factory=ExtractionConfig)
    retry: RetryConfig = field(default_factory=RetryConfig)
    timeout: TimeoutConfig = field(default_factory=TimeoutConfig)
    layout: LayoutConfig = field(default_factory=LayoutConfig)
    failure_policy: FailurePolicyConfig = field(default_factory=FailurePolicyConfig)

    @classmethod
    def from_env(cls) -> "IngestConfig":
        """Return defaults overridden by ``HARVESTER_*`` environment variables."""

        config = cls()
        state_file = _env_str("HARVESTER_STATE_FILE")
        if state_file:
            config.state_file = Path(state_file)
        output_dir = _env_str("HARVESTER_OUTPUT_DIR")
        if output_dir:
            config.output_dir = Path(output_dir)
        db_url = _env_str("HARVESTER_DB_URL")
        if db_url:
            config.db_url = None if db_url.lower() == "none" else db_url
        base_url = _env_str("HARVESTER_BASE_URL")
        if base_url:
            config.source.base_url = base_url
        user_agent = _env_str("HARVESTER_USER_AGENT")
        if user_agent:
            config.user_agent = user_agent
        config.discovery.catchup_window = _env_int(
            "HARVESTER_CATCHUP_WINDOW", config.discovery.catchup_window
        )
        catchup_days = _env_int("HARVESTER_CATCHUP_AFTER_DAYS", config.discovery.catchup_after.days)
        config.discovery.catchup_after = timedelta(days=catchup_days)
        config.extraction.min_text_length = _env_int(
            "HARVESTER_MIN_TEXT_LENGTH", config.extraction.min_text_length
        )
        config.git_commit = _env_bool("HARVESTER_GIT_COMMIT", config.git_commit)
        return config

    def validate(self) -> None:
        if self.seed_id < 0:
            raise ValueError("Seed identifier must not be negative")
        if self.recover_from is not None and self.recover_from < 0:
            raise ValueError("Recovery baseline must not be negative")
        if self.discovery.catchup_window < 1:
            raise ValueError("Catch-up window must be at least 1")
        if self.discovery.catchup_after <= timedelta(0):
            raise ValueError("Catch-up threshold must be positive")
        if self.extraction.min_text_length < 1:
            raise ValueError("Minimum text length must be at least 1")
        if self.retry.max_attempts < 1:
            raise ValueError("Fetch attempts must be at least 1")
        if self.timeout.request_timeout <= 0:
            raise ValueError("Request timeout must be positive")
        base = urlsplit(self.source.base_url)
        if base.scheme not in {"http", "https"} or not base.netloc:
            raise ValueError(f"Base URL must be an absolute http(s) URL (got {self.source.base_url!r})")
        if "{identifier}" not in self.source.item_path_template:
            raise ValueError("Item path template must contain '{identifier}'")

    def ensure_directories(self) -> None:
        self.output_dir.mkdir(parents=True, exist_ok=True)
        self.storage_root.mkdir(parents=True, exist_ok=True)
        self.state_file.parent.mkdir(parents=True, exist_ok=True)
        if self.debug_dir:
            self.debug_dir.mkdir(parents=True, exist_ok=True)

    def raw_html_path(self, identifier: int) -> Path | None:
        if not self.debug_dir:
            return None
        return self.debug_dir / "raw" / f"{identifier}.html"
