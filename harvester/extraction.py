"""Plain-text extraction from item pages across template revisions."""

from __future__ import annotations

import html as html_lib
import json
import logging
import re
from dataclasses import dataclass
from datetime import date, datetime, timedelta
from pathlib import Path
from typing import Iterable, Sequence, Union

from bs4 import BeautifulSoup, Tag

from .http_client import FetchOutcome, FetchStatus

LOGGER = logging.getLogger(__name__)

_NOISE_TAGS = ["script", "style", "noscript", "template", "iframe", "svg"]
_CHROME_TAGS = ["nav", "header", "footer", "aside", "form", "button", "menu"]
_BLOCK_TAGS = ["p", "blockquote", "li", "h2", "h3", "h4", "h5", "pre"]
_CHROME_RE = re.compile(
    r"(^|[\s_-])(nav|navbar|menu|footer|header|sidebar|comments?|share|social|advert|ads?|banner|cookie|related)([\s_-]|$)",
    re.IGNORECASE,
)
_TAG_RE = re.compile(r"<[^>]+>")
_HSPACE_RE = re.compile(r"[ \t\f\v\r\xa0]+")
_BLANK_RUN_RE = re.compile(r"\n{3,}")

_MONTH_NAMES = {
    "jan": 1,
    "feb": 2,
    "mar": 3,
    "apr": 4,
    "may": 5,
    "jun": 6,
    "jul": 7,
    "aug": 8,
    "sep": 9,
    "oct": 10,
    "nov": 11,
    "dec": 12,
}
_MONTH = (
    r"(?P<month>Jan(?:uary)?|Feb(?:ruary)?|Mar(?:ch)?|Apr(?:il)?|May|June?|July?|Aug(?:ust)?"
    r"|Sep(?:t(?:ember)?)?|Oct(?:ober)?|Nov(?:ember)?|Dec(?:ember)?)"
)
_DATE_PATTERNS = (
    re.compile(r"\b" + _MONTH + r"\.?\s+(?P<day>\d{1,2})(?:st|nd|rd|th)?,?\s+(?P<year>\d{4})\b", re.IGNORECASE),
    re.compile(r"\b(?P<day>\d{1,2})(?:st|nd|rd|th)?\s+" + _MONTH + r"\.?,?\s+(?P<year>\d{4})\b", re.IGNORECASE),
    re.compile(r"\b(?P<year>\d{4})-(?P<month>\d{1,2})-(?P<day>\d{1,2})\b"),
    re.compile(r"\b(?P<month>\d{1,2})/(?P<day>\d{1,2})/(?P<year>\d{4})\b"),
)
_DATE_META = (
    {"property": "article:published_time"},
    {"name": "pubdate"},
    {"name": "date"},
    {"itemprop": "datePublished"},
)
_EARLIEST_PLAUSIBLE_YEAR = 1995


@dataclass(frozen=True, slots=True)
class TemplateRevision:
    """One known markup revision of the item page."""

    name: str
    selectors: tuple[str, ...] = ()
    block_pattern: str | None = None


CURRENT_TEMPLATE = TemplateRevision(
    "current",
    selectors=("div.article-content", "div[itemprop='articleBody']"),
)
# Newest first.
LEGACY_TEMPLATES: tuple[TemplateRevision, ...] = (
    TemplateRevision("legacy-article-tag", selectors=("article",)),
    TemplateRevision("legacy-table-layout", selectors=("td.articletext", "div#articletext")),
    TemplateRevision(
        "legacy-comment-anchored",
        block_pattern=r"<!--\s*BEGIN ARTICLE\s*-->(?P<body>.*?)<!--\s*END ARTICLE\s*-->",
    ),
)


@dataclass(frozen=True, slots=True)
class Extracted:
    text: str
    estimated_date: date
    title: str
    strategy: str
    date_is_fallback: bool = False


@dataclass(frozen=True, slots=True)
class NoContent:
    reason: str
    text: str = ""

    @property
    def best_length(self) -> int:
        return len(self.text)


@dataclass(frozen=True, slots=True)
class Unavailable:
    reason: str


ExtractionResult = Union[Extracted, NoContent, Unavailable]


class ExtractionError(ValueError):
    """Raised when extraction is requested for an unusable fetch or template file."""


@dataclass(slots=True)
class _Page:
    html: str
    soup: BeautifulSoup


def normalize_text(raw: str) -> str:
    """Collapse whitespace, drop residual markup and keep paragraph breaks."""

    text = html_lib.unescape(raw or "")
    text = _TAG_RE.sub(" ", text)
    text = _HSPACE_RE.sub(" ", text)
    lines = [line.strip() for line in text.split("\n")]
    text = "\n".join(lines)
    text = _BLANK_RUN_RE.sub("\n\n", text)
    return text.strip()


def _isolate(markup: str) -> BeautifulSoup:
    fragment = BeautifulSoup(markup, "html.parser")
    for junk in fragment.find_all(_NOISE_TAGS):
        junk.decompose()
    for line_break in fragment.find_all("br"):
        line_break.replace_with("\n")
    return fragment


def container_text(markup: str) -> str:
    fragment = _isolate(markup)
    blocks = [block for block in fragment.find_all(_BLOCK_TAGS) if not block.find_parent(_BLOCK_TAGS)]
    if blocks:
        return "\n\n".join(block.get_text(" ") for block in blocks)
    return fragment.get_text(" ")


def _is_chrome(tag: Tag) -> bool:
    if tag.name in ("html", "body"):
        return False
    classes = tag.get("class") or []
    if isinstance(classes, str):
        classes = [classes]
    identity = " ".join([*classes, tag.get("id") or ""])
    return bool(identity.strip()) and bool(_CHROME_RE.search(identity))


class ExtractionStrategy:
    """Base interface for one link in the extraction chain."""

    name: str = "strategy"
    structural: bool = True

    def extract(self, page: _Page) -> str | None:  # pragma: no cover - interface only
        raise NotImplementedError


class SelectorStrategy(ExtractionStrategy):
    def __init__(self, name: str, selectors: Sequence[str]) -> None:
        self.name = name
        self._selectors = tuple(selectors)

    def extract(self, page: _Page) -> str | None:
        for selector in self._selectors:
            container = page.soup.select_one(selector)
            if container is not None:
                return container_text(str(container))
        return None


class RegexBlockStrategy(ExtractionStrategy):
    def __init__(self, name: str, pattern: str) -> None:
        self.name = name
        self._pattern = re.compile(pattern, re.IGNORECASE | re.DOTALL)

    def extract(self, page: _Page) -> str | None:
        match = self._pattern.search(page.html)
        if not match:
            return None
        body = match.group("body") if "body" in self._pattern.groupindex else match.group(1)
        return container_text(body)


class WholeDocumentStrategy(ExtractionStrategy):
    name = "whole-document"
    structural = False

    def extract(self, page: _Page) -> str | None:
        document = _isolate(page.html)
        for chrome in document.find_all(_CHROME_TAGS):
            chrome.decompose()
        for element in document.find_all(_is_chrome):
            if element.decomposed:
                continue
            element.decompose()
        root = document.body or document
        return root.get_text("\n")


def strategies_for(revision: TemplateRevision) -> list[ExtractionStrategy]:
    strategies: list[ExtractionStrategy] = []
    if revision.selectors:
        strategies.append(SelectorStrategy(revision.name, revision.selectors))
    if revision.block_pattern:
        strategies.append(RegexBlockStrategy(f"{revision.name}:block", revision.block_pattern))
    return strategies


def load_template_revisions(path: Path) -> tuple[TemplateRevision, ...]:
    """Load additional template revisions, newest first, from a JSON list."""

    try:
        payload = json.loads(path.read_text(encoding="utf-8"))
    except (OSError, json.JSONDecodeError) as exc:
        raise ExtractionError(f"Cannot read template revisions from {path}: {exc}") from exc
    if not isinstance(payload, list):
        raise ExtractionError("Template revisions file must contain a JSON list")

    revisions: list[TemplateRevision] = []
    for index, entry in enumerate(payload):
        if not isinstance(entry, dict) or not isinstance(entry.get("name"), str):
            raise ExtractionError(f"Template revision #{index} needs a string 'name'")
        selectors = entry.get("selectors") or []
        pattern = entry.get("block_pattern")
        if not isinstance(selectors, list) or not all(isinstance(item, str) for item in selectors):
            raise ExtractionError(f"Template revision {entry['name']!r} has invalid selectors")
        if pattern is not None and not isinstance(pattern, str):
            raise ExtractionError(f"Template revision {entry['name']!r} has an invalid block_pattern")
        if not selectors and not pattern:
            raise ExtractionError(f"Template revision {entry['name']!r} defines no selectors or pattern")
        if pattern is not None:
            try:
                re.compile(pattern)
            except re.error as exc:
                raise ExtractionError(f"Template revision {entry['name']!r}: {exc}") from exc
        revisions.append(TemplateRevision(entry["name"], tuple(selectors), pattern))
    return tuple(revisions)


def extract_title(soup: BeautifulSoup) -> str:
    heading = soup.find("h1")
    if heading and heading.get_text(strip=True):
        return normalize_text(heading.get_text(" "))

    og_title = soup.find("meta", attrs={"property": "og:title"})
    if og_title and og_title.get("content"):
        return normalize_text(og_title["content"])

    if soup.title and soup.title.get_text(strip=True):
        return normalize_text(soup.title.get_text().split("|")[0])
    return "Untitled Article"


def _month_number(raw: str) -> int:
    if raw.isdigit():
        return int(raw)
    return _MONTH_NAMES[raw[:3].lower()]


def parse_text_date(text: str, *, today: date) -> date | None:
    for pattern in _DATE_PATTERNS:
        for match in pattern.finditer(text):
            try:
                candidate = date(
                    int(match.group("year")),
                    _month_number(match.group("month")),
                    int(match.group("day")),
                )
            except (KeyError, ValueError):
                continue
            if _EARLIEST_PLAUSIBLE_YEAR <= candidate.year and candidate <= today + timedelta(days=1):
                return candidate
    return None


def _parse_iso_date(raw: str) -> date | None:
    cleaned = raw.strip().replace("Z", "+00:00")
    if not cleaned:
        return None
    try:
        return datetime.fromisoformat(cleaned).date()
    except ValueError:
        pass
    try:
        return date.fromisoformat(cleaned[:10])
    except ValueError:
        return None


def extract_publish_date(soup: BeautifulSoup, *, today: date) -> date | None:
    for attrs in _DATE_META:
        meta = soup.find("meta", attrs=attrs)
        if meta and meta.get("content"):
            parsed = _parse_iso_date(meta["content"]) or parse_text_date(meta["content"], today=today)
            if parsed:
                return parsed

    for time_tag in soup.find_all("time"):
        if time_tag.get("datetime"):
            parsed = _parse_iso_date(time_tag["datetime"])
            if parsed:
                return parsed
        parsed = parse_text_date(time_tag.get_text(" ", strip=True), today=today)
        if parsed:
            return parsed

    for element in soup.select("[class*='date'], [id*='date']"):
        parsed = parse_text_date(element.get_text(" ", strip=True), today=today)
        if parsed:
            return parsed

    return parse_text_date(soup.get_text(" "), today=today)


class ContentExtractor:
    """Apply the prioritized strategy chain to one fetched page."""

    def __init__(
        self,
        *,
        min_text_length: int = 50,
        revisions: Iterable[TemplateRevision] | None = None,
    ) -> None:
        self._min_text_length = min_text_length
        ordered = list(revisions) if revisions is not None else [CURRENT_TEMPLATE, *LEGACY_TEMPLATES]
        self._structural: list[ExtractionStrategy] = []
        for revision in ordered:
            self._structural.extend(strategies_for(revision))
        self._fallback = WholeDocumentStrategy()

    @classmethod
    def with_extra_revisions(
        cls,
        extra: Sequence[TemplateRevision],
        *,
        min_text_length: int = 50,
    ) -> "ContentExtractor":
        return cls(
            min_text_length=min_text_length,
            revisions=[*extra, CURRENT_TEMPLATE, *LEGACY_TEMPLATES],
        )

    @property
    def min_text_length(self) -> int:
        return self._min_text_length

    @property
    def strategy_names(self) -> list[str]:
        return [strategy.name for strategy in self._structural] + [self._fallback.name]

    def extract(self, outcome: FetchOutcome, *, today: date) -> ExtractionResult:
        if outcome.status is FetchStatus.NOT_FOUND:
            return Unavailable(outcome.reason or "not found")
        if outcome.status is not FetchStatus.OK:
            raise ExtractionError(f"Cannot extract from a failed fetch of {outcome.url}")
        return self.extract_html(outcome.body or "", today=today)

    def extract_html(self, html: str, *, today: date) -> ExtractionResult:
        page = _Page(html=html, soup=BeautifulSoup(html, "html.parser"))

        matched_structure = False
        best_text = ""
        for strategy in self._structural:
            raw = strategy.extract(page)
            if raw is None:
                continue
            matched_structure = True
            text = normalize_text(raw)
            if len(text) >= self._min_text_length:
                return self._extracted(page, text, strategy.name, today)
            LOGGER.debug("Strategy %s matched but produced only %d chars", strategy.name, len(text))
            if len(text) > len(best_text):
                best_text = text

        if matched_structure:
            return NoContent(
                f"structural matches below {self._min_text_length} chars",
                text=best_text,
            )

        text = normalize_text(self._fallback.extract(page) or "")
        if len(text) >= self._min_text_length:
            return self._extracted(page, text, self._fallback.name, today)
        return NoContent(
            f"no template matched and page text below {self._min_text_length} chars",
            text=text,
        )

    def _extracted(self, page: _Page, text: str, strategy: str, today: date) -> Extracted:
        published = extract_publish_date(page.soup, today=today)
        return Extracted(
            text=text,
            estimated_date=published or today,
            title=extract_title(page.soup),
            strategy=strategy,
            date_is_fallback=published is None,
        )
