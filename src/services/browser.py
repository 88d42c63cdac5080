"""
Browser capability used by the page fetcher.

`PlaywrightBrowser` drives a single headless Chromium page. Field extraction is
done on the rendered HTML with BeautifulSoup so the heuristics can be exercised
without a browser.
"""

from __future__ import annotations

import logging
import re
from typing import Any, Protocol, Sequence
from urllib.parse import urljoin

from bs4 import BeautifulSoup

LOGGER = logging.getLogger(__name__)

USER_AGENT = (
    "Mozilla/5.0 (Macintosh; Intel Mac OS X 10_15_7) AppleWebKit/537.36 "
    "(KHTML, like Gecko) Chrome/120.0.0.0 Safari/537.36"
)
VIEWPORT = {"width": 1920, "height": 1080}

# Primary selector first, fallbacks after; the first non-empty hit wins.
LISTING_ROW_SELECTORS = ("table.flights tbody tr", "table.XClist tbody tr")
LISTING_FIELD_SELECTORS: dict[str, tuple[str, ...]] = {
    "pilot": (".plt", ".pilot"),
    "date": (".date", "td:nth-of-type(1)"),
    "launch": (".lau", ".launch"),
    "distance": (".km", ".distance"),
    "points": (".pts", ".points"),
    "duration": (".dur", ".duration", ".time"),
    "glider": (".gld", ".glider"),
    "type": (".typ", ".route", ".type"),
}
DETAIL_LINK_SELECTOR = "a[href*='/flights/detail:']"
DETAIL_ID_PATTERN = re.compile(r"detail:([^/?#]+)")
MIN_LISTING_CELLS = 5

STATS_PANEL_SELECTORS = (".flight-info", ".detail-info", ".stats")
LAUNCH_COORD_PATTERN = re.compile(r"launch.*?(-?\d+\.\d+).*?(-?\d+\.\d+)", re.IGNORECASE)
MAX_ALT_PATTERN = re.compile(r"max[.\s]*alt[.\s:]*(\d+)\s*m", re.IGNORECASE)
LAUNCH_ALT_PATTERN = re.compile(r"launch[.\s]*alt[.\s:]*(\d+)\s*m", re.IGNORECASE)
ALT_GAIN_PATTERN = re.compile(r"alt[.\s]*gain[.\s:]*(\d+)\s*m", re.IGNORECASE)
RAW_TEXT_LIMIT = 500


class Browser(Protocol):
    def navigate(self, url: str, timeout_ms: int) -> bool: ...

    def evaluate_listing_extraction(self) -> list[dict[str, str]]: ...

    def evaluate_detail_extraction(self) -> dict[str, Any]: ...

    def close(self) -> None: ...


def _clean(value: str | None) -> str:
    return re.sub(r"\s+", " ", value or "").strip()


def _select_text(node: Any, selectors: Sequence[str]) -> str:
    for selector in selectors:
        hit = node.select_one(selector)
        if hit is not None:
            text = _clean(hit.get_text(" "))
            if text:
                return text
    return ""


def extract_listing_rows(html: str, base_url: str = "https://www.xcontest.org") -> list[dict[str, str]]:
    """Pull one field map per flight row out of a rendered listing page."""
    soup = BeautifulSoup(html or "", "html.parser")
    rows: list[Any] = []
    for selector in LISTING_ROW_SELECTORS:
        rows = soup.select(selector)
        if rows:
            break
    results: list[dict[str, str]] = []
    for row in rows:
        if len(row.find_all("td")) < MIN_LISTING_CELLS:
            continue
        link = row.select_one(DETAIL_LINK_SELECTOR)
        href = link.get("href", "") if link is not None else ""
        if href:
            href = urljoin(base_url, href)
        match = DETAIL_ID_PATTERN.search(href)
        fields = {"id": match.group(1) if match else "", "url": href}
        for name, selectors in LISTING_FIELD_SELECTORS.items():
            fields[name] = _select_text(row, selectors)
        results.append(fields)
    return results


def _int_or_none(pattern: re.Pattern[str], text: str) -> int | None:
    match = pattern.search(text)
    return int(match.group(1)) if match else None


def extract_detail_fields(html: str) -> dict[str, Any]:
    """Heuristic scrape of a flight detail page.

    Lossy by nature: the last script mentioning ``launch`` followed by two
    decimals supplies the coordinates, and the stats panel text supplies
    altitudes. Anything unmatched comes back as ``None`` (coordinates as 0.0).
    """
    soup = BeautifulSoup(html or "", "html.parser")
    lat, lng = 0.0, 0.0
    for script in soup.find_all("script"):
        match = LAUNCH_COORD_PATTERN.search(script.string or script.get_text() or "")
        if match:
            lat, lng = float(match.group(1)), float(match.group(2))
    stats_text = _select_text(soup, STATS_PANEL_SELECTORS)
    return {
        "launch_lat": lat,
        "launch_lng": lng,
        "max_alt": _int_or_none(MAX_ALT_PATTERN, stats_text),
        "launch_alt": _int_or_none(LAUNCH_ALT_PATTERN, stats_text),
        "alt_gain": _int_or_none(ALT_GAIN_PATTERN, stats_text),
        "raw_text": stats_text[:RAW_TEXT_LIMIT],
    }


class PlaywrightBrowser:
    """Single-page headless Chromium session, opened lazily and closed once."""

    def __init__(self, headless: bool = True, user_agent: str = USER_AGENT) -> None:
        self.headless = headless
        self.user_agent = user_agent
        self._playwright = None
        self._browser = None
        self._page = None

    def _ensure_page(self) -> Any:
        if self._page is None:
            from playwright.sync_api import sync_playwright

            self._playwright = sync_playwright().start()
            self._browser = self._playwright.chromium.launch(headless=self.headless)
            context = self._browser.new_context(user_agent=self.user_agent, viewport=VIEWPORT)
            self._page = context.new_page()
        return self._page

    def navigate(self, url: str, timeout_ms: int) -> bool:
        page = self._ensure_page()
        response = page.goto(url, wait_until="networkidle", timeout=timeout_ms)
        if response is not None and not response.ok:
            LOGGER.warning("Navigation to %s returned HTTP %s", url, response.status)
            return False
        return True

    def evaluate_listing_extraction(self) -> list[dict[str, str]]:
        page = self._ensure_page()
        return extract_listing_rows(page.content(), base_url=page.url or "https://www.xcontest.org")

    def evaluate_detail_extraction(self) -> dict[str, Any]:
        return extract_detail_fields(self._ensure_page().content())

    def close(self) -> None:
        try:
            if self._browser is not None:
                self._browser.close()
            if self._playwright is not None:
                self._playwright.stop()
        except Exception:  # noqa: BLE001
            LOGGER.debug("Failed to close Playwright browser cleanly", exc_info=True)
        finally:
            self._playwright = None
            self._browser = None
            self._page = None
