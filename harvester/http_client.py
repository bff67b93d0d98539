"""HTTP utilities for fetching listing and item pages."""

from __future__ import annotations

import logging
import time
from dataclasses import dataclass
from enum import Enum
from typing import Callable
from urllib.parse import urlsplit

import httpx

from .config import IngestConfig

LOGGER = logging.getLogger(__name__)

_NOT_FOUND_STATUS_CODES = {
    httpx.codes.NOT_FOUND,
    httpx.codes.GONE,
}


class FetchStatus(str, Enum):
    OK = "ok"
    NOT_FOUND = "not_found"
    TRANSIENT = "transient"


@dataclass(slots=True)
class FetchOutcome:
    url: str
    status: FetchStatus
    body: str | None = None
    status_code: int | None = None
    reason: str | None = None
    attempts: int = 1

    @property
    def ok(self) -> bool:
        return self.status is FetchStatus.OK


def validate_locator(url: str) -> str:
    cleaned = (url or "").strip()
    parts = urlsplit(cleaned)
    if parts.scheme not in {"http", "https"} or not parts.netloc:
        raise ValueError(f"Malformed locator {url!r}")
    return cleaned


class HttpFetcher:
    """Bounded, timeout-guarded page retrieval with a single retry."""

    def __init__(
        self,
        config: IngestConfig,
        *,
        client: httpx.Client | None = None,
        transport: httpx.BaseTransport | None = None,
        sleep: Callable[[float], None] = time.sleep,
    ) -> None:
        self._config = config
        self._transport = transport
        self._client = client or self._build_client()
        self._owns_client = client is None
        self._sleep = sleep
        self._removal_paths = {
            path.rstrip("/") or "/" for path in config.source.removal_redirect_paths
        }

    def _build_client(self) -> httpx.Client:
        kwargs: dict[str, object] = {
            "timeout": self._config.timeout.request_timeout,
            "headers": {"User-Agent": self._config.user_agent},
            "follow_redirects": True,
        }
        if self._config.proxy_url:
            kwargs["proxy"] = self._config.proxy_url
        if self._transport:
            kwargs["transport"] = self._transport
        return httpx.Client(**kwargs)

    def fetch(self, url: str) -> FetchOutcome:
        url = validate_locator(url)
        max_attempts = max(1, self._config.retry.max_attempts)
        attempt = 1

        while True:
            outcome = self._attempt(url)
            outcome.attempts = attempt
            if outcome.status is not FetchStatus.TRANSIENT or attempt >= max_attempts:
                break
            delay = self._config.retry.base_delay * (self._config.retry.backoff_factor ** (attempt - 1))
            LOGGER.warning("Transient failure fetching %s (%s); retrying in %.1fs", url, outcome.reason, delay)
            self._sleep(delay)
            attempt += 1

        if outcome.status is not FetchStatus.TRANSIENT:
            return outcome
        LOGGER.error("Giving up on %s after %d attempts: %s", url, outcome.attempts, outcome.reason)
        return outcome

    def _attempt(self, url: str) -> FetchOutcome:
        try:
            response = self._client.get(url)
        except httpx.TimeoutException as exc:
            return FetchOutcome(url, FetchStatus.TRANSIENT, reason=f"timeout: {exc}")
        except httpx.HTTPError as exc:
            return FetchOutcome(url, FetchStatus.TRANSIENT, reason=f"{type(exc).__name__}: {exc}")

        if response.status_code in _NOT_FOUND_STATUS_CODES:
            return FetchOutcome(
                url,
                FetchStatus.NOT_FOUND,
                status_code=response.status_code,
                reason=f"status {response.status_code}",
            )

        if response.history and self._is_removal_redirect(url, response):
            return FetchOutcome(
                url,
                FetchStatus.NOT_FOUND,
                status_code=response.status_code,
                reason=f"redirected to {response.url}",
            )

        if response.status_code != httpx.codes.OK:
            return FetchOutcome(
                url,
                FetchStatus.TRANSIENT,
                status_code=response.status_code,
                reason=f"unexpected status {response.status_code}",
            )

        content_type = response.headers.get("content-type", "")
        if "html" not in content_type:
            return FetchOutcome(
                url,
                FetchStatus.TRANSIENT,
                status_code=response.status_code,
                reason=f"unsupported content type '{content_type}'",
            )

        return FetchOutcome(url, FetchStatus.OK, body=response.text, status_code=response.status_code)

    def _is_removal_redirect(self, requested: str, response: httpx.Response) -> bool:
        final = response.url
        path = final.path.rstrip("/") or "/"
        requested_path = urlsplit(requested).path.rstrip("/") or "/"
        if path == requested_path:
            return False
        return path in self._removal_paths and not final.query

    def close(self) -> None:
        if self._owns_client:
            self._client.close()

    def __enter__(self) -> "HttpFetcher":
        return self

    def __exit__(self, *_exc_info) -> None:
        self.close()
