"""
Polite, retrying retrieval of XContest listing and detail pages.

Every navigation is followed by a mandatory pause so the scraper stays under
XContest's anti-bot radar. Failures never escape: after the retry budget is
spent a listing degrades to an empty page and a detail page to ``None``.
"""

from __future__ import annotations

import logging
import time
from dataclasses import dataclass, field
from typing import Any, Callable, Generic, Mapping, TypeVar
from urllib.parse import urlencode

from tenacity import (
    RetryCallState,
    RetryError,
    Retrying,
    retry_if_exception_type,
    stop_after_attempt,
    wait_incrementing,
)
from tenacity.wait import wait_base

from src.services.browser import Browser
from src.services.parsing import parse_number

LOGGER = logging.getLogger(__name__)

LISTING_URL = "https://www.xcontest.org/world/en/flights-search/"
PAGE_SIZE = 100
DEFAULT_DELAY_MS = 3000
DEFAULT_TIMEOUT_MS = 30000
DEFAULT_MAX_ATTEMPTS = 3

T = TypeVar("T")


class NavigationError(RuntimeError):
    """Raised when the browser reports a failed navigation."""


@dataclass
class RetryOutcome(Generic[T]):
    ok: bool
    value: T | None
    attempts: int
    error: Exception | None = None


def linear_backoff(delay_ms: int) -> wait_base:
    """Wait that grows by ``2 * delay_ms`` per failed attempt."""
    step = delay_ms * 2 / 1000
    return wait_incrementing(start=step, increment=step)


@dataclass
class RetryPolicy:
    max_attempts: int = DEFAULT_MAX_ATTEMPTS
    backoff: wait_base = field(default_factory=lambda: linear_backoff(DEFAULT_DELAY_MS))
    sleep: Callable[[float], None] = time.sleep

    def run(self, operation: Callable[[], T], label: str = "operation") -> RetryOutcome[T]:
        def log_attempt(retry_state: RetryCallState) -> None:
            error = retry_state.outcome.exception() if retry_state.outcome else None
            LOGGER.warning("Retry %s/%s for %s: %s", retry_state.attempt_number, self.max_attempts, label, error)

        retrying = Retrying(
            stop=stop_after_attempt(self.max_attempts),
            wait=self.backoff,
            retry=retry_if_exception_type(Exception),
            sleep=self.sleep,
            after=log_attempt,
        )
        try:
            for attempt in retrying:
                with attempt:
                    value = operation()
        except RetryError as exc:
            LOGGER.error("Failed %s after %s attempts", label, self.max_attempts)
            return RetryOutcome(
                ok=False,
                value=None,
                attempts=exc.last_attempt.attempt_number,
                error=exc.last_attempt.exception(),
            )
        return RetryOutcome(ok=True, value=value, attempts=attempt.retry_state.attempt_number)


@dataclass(frozen=True)
class ListingStub:
    external_id: str
    url: str | None
    pilot_name: str | None = None
    date_text: str | None = None
    launch_name: str | None = None
    distance_text: str | None = None
    points_text: str | None = None
    duration_text: str | None = None
    glider_category: str | None = None
    route_type: str | None = None


@dataclass(frozen=True)
class FlightDetail:
    launch_lat: float
    launch_lng: float
    max_alt: int | None = None
    launch_alt: int | None = None
    alt_gain: int | None = None
    raw_text: str = ""

    @property
    def has_geodata(self) -> bool:
        return not (self.launch_lat == 0 and self.launch_lng == 0)


def build_listing_url(year: int, country: str | None, region: str | None, page_index: int) -> str:
    params: dict[str, str] = {}
    if country:
        params["filter[country]"] = country
    if region:
        params["filter[region]"] = region
    params["filter[date_mode]"] = "dmy"
    params["filter[date]"] = str(year)
    offset = page_index * PAGE_SIZE
    if offset > 0:
        params["list[start]"] = str(offset)
    params["list[num]"] = str(PAGE_SIZE)
    return f"{LISTING_URL}?{urlencode(params)}"


def _text(fields: Mapping[str, Any], key: str) -> str | None:
    value = fields.get(key)
    if value is None:
        return None
    text = str(value).strip()
    return text or None


def _whole(value: Any) -> int | None:
    number = parse_number(value)
    return int(round(number)) if number is not None else None


def stub_from_fields(fields: Mapping[str, Any]) -> ListingStub | None:
    external_id = _text(fields, "id")
    if not external_id:
        return None
    return ListingStub(
        external_id=external_id,
        url=_text(fields, "url"),
        pilot_name=_text(fields, "pilot"),
        date_text=_text(fields, "date"),
        launch_name=_text(fields, "launch"),
        distance_text=_text(fields, "distance"),
        points_text=_text(fields, "points"),
        duration_text=_text(fields, "duration"),
        glider_category=_text(fields, "glider"),
        route_type=_text(fields, "type"),
    )


def detail_from_fields(fields: Any) -> FlightDetail | None:
    if not isinstance(fields, Mapping):
        return None
    return FlightDetail(
        launch_lat=parse_number(fields.get("launch_lat")) or 0.0,
        launch_lng=parse_number(fields.get("launch_lng")) or 0.0,
        max_alt=_whole(fields.get("max_alt")),
        launch_alt=_whole(fields.get("launch_alt")),
        alt_gain=_whole(fields.get("alt_gain")),
        raw_text=str(fields.get("raw_text") or ""),
    )


class PageFetcher:
    """Sequential page retrieval through a `Browser`, one request at a time."""

    def __init__(
        self,
        browser: Browser,
        delay_ms: int = DEFAULT_DELAY_MS,
        timeout_ms: int = DEFAULT_TIMEOUT_MS,
        retry_policy: RetryPolicy | None = None,
        sleep: Callable[[float], None] = time.sleep,
    ) -> None:
        self.browser = browser
        self.delay_ms = max(0, delay_ms)
        self.timeout_ms = timeout_ms
        self.sleep = sleep
        self.retry_policy = retry_policy or RetryPolicy(backoff=linear_backoff(self.delay_ms), sleep=sleep)

    def _load(self, url: str, extract: Callable[[], T]) -> T:
        if not self.browser.navigate(url, self.timeout_ms):
            raise NavigationError(f"Navigation failed for {url}")
        self.sleep(self.delay_ms / 1000)
        return extract()

    def fetch_listing(self, year: int, country: str | None, region: str | None, page_index: int) -> list[ListingStub]:
        url = build_listing_url(year, country, region, page_index)
        LOGGER.info("Scraping: %s", url)
        outcome = self.retry_policy.run(
            lambda: self._load(url, self.browser.evaluate_listing_extraction),
            label=url,
        )
        if not outcome.ok or not outcome.value:
            return []
        stubs = []
        for fields in outcome.value:
            stub = stub_from_fields(fields) if isinstance(fields, Mapping) else None
            if stub is not None:
                stubs.append(stub)
        discarded = len(outcome.value) - len(stubs)
        if discarded:
            LOGGER.debug("Discarded %s listing rows without a flight id", discarded)
        return stubs

    def fetch_detail(self, url: str) -> FlightDetail | None:
        outcome = self.retry_policy.run(
            lambda: self._load(url, self.browser.evaluate_detail_extraction),
            label=url,
        )
        if not outcome.ok:
            return None
        return detail_from_fields(outcome.value)
