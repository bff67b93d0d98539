"""Shared stand-ins for the network and renderer used by the run-level tests."""

from datetime import date

from harvester.http_client import FetchOutcome, FetchStatus
from harvester.render import RenderFailure

BASE = "https://www.prophecynewswatch.com"
LISTING_URL = f"{BASE}/"
BODY = (
    "<p>Residents across the valley woke to find the river had dropped to its lowest level in decades.</p>"
    "<p>Local officials said emergency measures would remain in place until the seasonal rains return.</p>"
)


def item_url(identifier: int) -> str:
    return f"{BASE}/article.cfm?recent_news_id={identifier}"


def item_page(identifier: int, published: date | None = date(2025, 11, 28), body: str = BODY) -> str:
    meta = f"<meta property='article:published_time' content='{published.isoformat()}'>" if published else ""
    return (
        f"<html><head><title>Item {identifier} | Example</title>{meta}</head><body>"
        f"<h1>Item {identifier}</h1><div class='article-content'>{body}</div></body></html>"
    )


def listing_page(*identifiers: int) -> str:
    links = "".join(f"<a href='/article.cfm?recent_news_id={i}'>Item {i}</a>" for i in identifiers)
    return f"<html><body>{links}</body></html>"


class FakeFetcher:
    def __init__(self, pages: dict[str, str] | None = None, failures: dict[str, FetchStatus] | None = None) -> None:
        self.pages = dict(pages or {})
        self.failures = dict(failures or {})
        self.requested: list[str] = []

    def fetch(self, url: str) -> FetchOutcome:
        self.requested.append(url)
        if url in self.failures:
            return FetchOutcome(url, self.failures[url], reason="simulated")
        if url in self.pages:
            return FetchOutcome(url, FetchStatus.OK, body=self.pages[url], status_code=200)
        return FetchOutcome(url, FetchStatus.NOT_FOUND, status_code=404, reason="status 404")

    def item_requests(self) -> list[int]:
        return [int(url.rsplit("=", 1)[1]) for url in self.requested if "recent_news_id=" in url]


class FakeRenderer:
    def __init__(self, fail_ids: set[int] | None = None) -> None:
        self.fail_ids = set(fail_ids or ())
        self.rendered: list[int] = []

    def render(self, text: str, target_name: str, *, title: str | None = None) -> bytes:
        identifier = int(target_name.split("-", 1)[1].split(".", 1)[0])
        if identifier in self.fail_ids:
            raise RenderFailure(f"cannot render {target_name}")
        self.rendered.append(identifier)
        return (b"%PDF-1.4\n" + text.encode("utf-8")).ljust(512, b" ")
