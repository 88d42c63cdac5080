"""
Scrape XContest flights around a target point and store them against
clustered launch sites. The module exposes `run_scrape_job` for callers and a
`main` entry point used by `scripts/run_scrape.py`.
"""

from __future__ import annotations

import argparse
import logging
import os
import sys
import time
from dataclasses import dataclass
from datetime import date
from pathlib import Path
from typing import Any, Callable, Iterable, Sequence

from dotenv import load_dotenv

from src.services.browser import Browser, PlaywrightBrowser
from src.services.fetcher import DEFAULT_DELAY_MS, PAGE_SIZE, FlightDetail, ListingStub, PageFetcher
from src.services.geo import haversine_distance_km
from src.services.geocoding import DEFAULT_CACHE_PATH, ReverseGeocoder
from src.services.jobs import JobTracker
from src.services.normalizer import NormalizedFlight, load_flight_dump
from src.services.parsing import parse_date, parse_duration, parse_number
from src.services.sites import SiteLocator, SiteResolver
from src.services.storage import DEFAULT_DB_PATH, FlightRecord, Job, SQLiteStorage, Storage

LOGGER = logging.getLogger(__name__)

DEFAULT_COUNTRY = "US"


class ScrapeJobFailed(RuntimeError):
    """Raised once a job has been recorded as FAILED."""

    def __init__(self, job: Job, message: str) -> None:
        super().__init__(message)
        self.job = job


@dataclass
class ScrapeOptions:
    lat: float
    lng: float
    radius_km: float
    date_from: str
    date_to: str
    country: str | None = DEFAULT_COUNTRY
    region: str | None = None
    delay_ms: int = DEFAULT_DELAY_MS

    def __post_init__(self) -> None:
        start = date.fromisoformat(self.date_from)
        end = date.fromisoformat(self.date_to)
        if start > end:
            raise ValueError(f"date_from {self.date_from} is after date_to {self.date_to}")
        if self.radius_km < 0:
            raise ValueError("radius_km must be non-negative")
        if not -90 <= self.lat <= 90 or not -180 <= self.lng <= 180:
            raise ValueError(f"Invalid target coordinates {self.lat},{self.lng}")

    def years(self) -> range:
        return range(date.fromisoformat(self.date_from).year, date.fromisoformat(self.date_to).year + 1)

    def job_params(self) -> dict[str, Any]:
        return {
            "region": self.region or f"{self.lat},{self.lng} r={self.radius_km}km",
            "center_lat": self.lat,
            "center_lng": self.lng,
            "radius_km": self.radius_km,
            "date_from": self.date_from,
            "date_to": self.date_to,
        }


def compute_alt_gain(explicit: float | None, max_alt: float | None, launch_alt: float | None) -> int | None:
    if explicit is not None:
        return int(round(explicit))
    if max_alt is not None and launch_alt is not None:
        return int(round(max_alt - launch_alt))
    return None


def _whole(value: float | None) -> int | None:
    return int(round(value)) if value is not None else None


class IngestionPipeline:
    """Single-worker ingestion: pages, flights and sites are handled strictly in order."""

    def __init__(
        self,
        storage: Storage,
        fetcher: PageFetcher | None = None,
        site_resolver: SiteResolver | None = None,
        tracker: JobTracker | None = None,
    ) -> None:
        self.storage = storage
        self.fetcher = fetcher
        self.site_resolver = site_resolver or SiteResolver(storage)
        self.tracker = tracker or JobTracker(storage)

    def run(self, options: ScrapeOptions) -> Job:
        job = self.tracker.start(options.job_params())
        try:
            for year in options.years():
                self._ingest_year(job, year, options)
        except Exception as exc:
            self.tracker.fail(job, str(exc) or exc.__class__.__name__)
            raise ScrapeJobFailed(job, job.error or "") from exc
        self.tracker.complete(job)
        return job

    def import_flights(self, flights: Iterable[NormalizedFlight], options: ScrapeOptions) -> Job:
        """Store already-normalized flights (e.g. a saved XContest dump) as a job of its own."""
        job = self.tracker.start(options.job_params())
        batch = 0
        stored = 0
        try:
            for flight in flights:
                stored += self.process_normalized(flight, options)
                batch += 1
                if batch == PAGE_SIZE:
                    self.tracker.record_progress(job, stored)
                    batch = stored = 0
            if batch:
                self.tracker.record_progress(job, stored)
        except Exception as exc:
            job.flights_found += stored
            self.tracker.fail(job, str(exc) or exc.__class__.__name__)
            raise ScrapeJobFailed(job, job.error or "") from exc
        self.tracker.complete(job)
        return job

    def _ingest_year(self, job: Job, year: int, options: ScrapeOptions) -> None:
        if self.fetcher is None:
            raise RuntimeError("A page fetcher is required to scrape listings")
        LOGGER.info("Scraping year %s...", year)
        page_index = 0
        while True:
            stubs = self.fetcher.fetch_listing(year, options.country, options.region, page_index)
            if not stubs:
                break
            LOGGER.info("Page %s: found %s flights", page_index, len(stubs))
            stored = 0
            try:
                for stub in stubs:
                    if self.process_stub(stub, options):
                        stored += 1
            finally:
                # Flush what this page stored even when a stub blew up mid-page.
                if stored:
                    self.tracker.record_progress(job, stored)
            LOGGER.info("Stored %s flights within radius", stored)
            if len(stubs) < PAGE_SIZE:
                break
            page_index += 1

    def process_stub(self, stub: ListingStub, options: ScrapeOptions) -> bool:
        if self.storage.find_flight_by_external_id(stub.external_id) is not None:
            LOGGER.debug("Flight %s already stored; skipping", stub.external_id)
            return False
        if not stub.url:
            LOGGER.debug("Flight %s has no detail URL; skipping", stub.external_id)
            return False
        detail = self.fetcher.fetch_detail(stub.url)
        if detail is None or not detail.has_geodata:
            LOGGER.debug("No usable detail for flight %s", stub.external_id)
            return False
        if not self._within_radius(detail.launch_lat, detail.launch_lng, options):
            return False
        try:
            values = self._stub_values(stub, detail)
        except (TypeError, ValueError, OverflowError):
            LOGGER.debug("Dropping malformed flight %s", stub.external_id, exc_info=True)
            return False
        if values is None:
            LOGGER.debug("Unparseable date '%s' for flight %s", stub.date_text, stub.external_id)
            return False
        self._store(values, site_name=stub.launch_name, site_elevation=detail.launch_alt)
        return True

    def process_normalized(self, flight: NormalizedFlight, options: ScrapeOptions) -> bool:
        if self.storage.find_flight_by_external_id(flight.external_id) is not None:
            return False
        if flight.launch_lat is None or flight.launch_lng is None:
            return False
        if flight.launch_lat == 0 and flight.launch_lng == 0:
            return False
        if not options.date_from <= flight.flight_date <= options.date_to:
            return False
        if not self._within_radius(flight.launch_lat, flight.launch_lng, options):
            return False
        year, month, _ = flight.flight_date.split("-")
        values = {
            "external_id": flight.external_id,
            "launch_lat": flight.launch_lat,
            "launch_lng": flight.launch_lng,
            "flight_date": flight.flight_date,
            "flight_year": int(year),
            "flight_month": int(month),
            "pilot_name": flight.pilot_name,
            "pilot_country": flight.pilot_country,
            "launch_alt_m": _whole(flight.launch_alt),
            "max_alt_m": _whole(flight.max_alt),
            "alt_gain_m": compute_alt_gain(None, flight.max_alt, flight.launch_alt),
            "total_alt_gain_m": _whole(flight.total_alt_gain),
            "distance_km": flight.distance_km,
            "five_point_distance_km": flight.five_point_distance_km,
            "points": flight.points,
            "duration_min": flight.duration_min,
            "avg_speed_kmh": flight.avg_speed_kmh,
            "glider_category": flight.glider_category,
            "route_type": flight.route_type,
            "source_url": flight.url,
        }
        self._store(values, site_name=None, site_elevation=_whole(flight.launch_alt))
        return True

    @staticmethod
    def _within_radius(lat: float, lng: float, options: ScrapeOptions) -> bool:
        distance = haversine_distance_km(options.lat, options.lng, lat, lng)
        if distance > options.radius_km:
            LOGGER.debug("Launch %.4f,%.4f is %.1f km out; outside radius", lat, lng, distance)
            return False
        return True

    @staticmethod
    def _stub_values(stub: ListingStub, detail: FlightDetail) -> dict[str, Any] | None:
        flight_date = parse_date(stub.date_text)
        if not flight_date:
            return None
        year, month, _ = flight_date.split("-")
        return {
            "external_id": stub.external_id,
            "launch_lat": detail.launch_lat,
            "launch_lng": detail.launch_lng,
            "flight_date": flight_date,
            "flight_year": int(year),
            "flight_month": int(month),
            "pilot_name": stub.pilot_name,
            "launch_alt_m": detail.launch_alt,
            "max_alt_m": detail.max_alt,
            "alt_gain_m": compute_alt_gain(detail.alt_gain, detail.max_alt, detail.launch_alt),
            "distance_km": parse_number(stub.distance_text),
            "points": parse_number(stub.points_text),
            "duration_min": parse_duration(stub.duration_text),
            "glider_category": stub.glider_category,
            "route_type": stub.route_type,
            "source_url": stub.url,
        }

    def _store(self, values: dict[str, Any], site_name: str | None, site_elevation: int | None) -> None:
        site_id = self.site_resolver.resolve_or_create(
            values["launch_lat"],
            values["launch_lng"],
            site_name,
            site_elevation,
        )
        self.storage.insert_flight(FlightRecord(site_id=site_id, **values))


def run_scrape_job(
    options: ScrapeOptions,
    storage: Storage | None = None,
    browser: Browser | None = None,
    locator: SiteLocator | None = None,
    sleep: Callable[[float], None] = time.sleep,
) -> Job:
    """Run one scrape job end to end and return the COMPLETED job.

    Raises `ScrapeJobFailed` carrying the FAILED job when the run aborts. The
    browser session, and a storage opened here, are closed whatever the outcome.
    """
    owned_storage = SQLiteStorage(_db_path_from_env()) if storage is None else None
    storage = owned_storage or storage
    browser = browser if browser is not None else PlaywrightBrowser(headless=_env_flag("XC_HEADLESS", True))
    fetcher = PageFetcher(browser, delay_ms=options.delay_ms, sleep=sleep)
    pipeline = IngestionPipeline(storage, fetcher, SiteResolver(storage, locator=locator))
    try:
        return pipeline.run(options)
    finally:
        browser.close()
        if owned_storage is not None:
            owned_storage.close()


def _env_flag(name: str, default: bool) -> bool:
    value = os.getenv(name)
    if value is None or not value.strip():
        return default
    return value.strip().lower() in {"1", "true", "yes", "on"}


def _db_path_from_env() -> Path:
    return Path(os.getenv("XC_DB_PATH") or DEFAULT_DB_PATH)


def _load_env() -> None:
    if load_dotenv(dotenv_path=Path(__file__).resolve().parents[2] / ".env"):
        LOGGER.debug("Loaded environment variables from .env file.")


def _configure_logging(level: str) -> None:
    logging.basicConfig(
        level=getattr(logging, level.upper(), logging.INFO),
        format="%(asctime)s %(levelname)s %(name)s: %(message)s",
        stream=sys.stdout,
        force=True,
    )


def _build_locator(args: argparse.Namespace) -> ReverseGeocoder | None:
    if not (args.reverse_geocode or _env_flag("XC_REVERSE_GEOCODE", False)):
        return None
    cache_path = args.geocode_cache or Path(os.getenv("XC_GEOCODE_CACHE") or DEFAULT_CACHE_PATH)
    return ReverseGeocoder(cache_path=cache_path)


def _add_common_arguments(parser: argparse.ArgumentParser) -> None:
    parser.add_argument("--lat", type=float, default=37.7749, help="Target latitude (default: 37.7749).")
    parser.add_argument("--lng", type=float, default=-122.4194, help="Target longitude (default: -122.4194).")
    parser.add_argument("--radius", type=float, default=100.0, help="Radius around the target in km (default: 100).")
    parser.add_argument("--from-date", default="2024-01-01", help="First flight date (YYYY-MM-DD).")
    parser.add_argument("--to-date", default="2025-12-31", help="Last flight date (YYYY-MM-DD).")
    parser.add_argument("--db-path", type=Path, default=None, help="SQLite database (default: $XC_DB_PATH).")
    parser.add_argument(
        "--reverse-geocode",
        action="store_true",
        help="Look up country/region for newly created sites via Nominatim.",
    )
    parser.add_argument("--geocode-cache", type=Path, default=None, help="SQLite cache for reverse geocoding.")
    parser.add_argument("--log-level", default="INFO", help="Python logging level (default: INFO).")


def main(argv: Sequence[str] | None = None) -> int:
    parser = argparse.ArgumentParser(description="Scrape XContest flights around a launch area.")
    _add_common_arguments(parser)
    parser.add_argument("--country", default=DEFAULT_COUNTRY, help="XContest country filter (default: US).")
    parser.add_argument("--region", default=None, help="Optional XContest region filter.")
    parser.add_argument(
        "--delay",
        type=int,
        default=None,
        help="Delay between requests in ms (default: $XC_DELAY_MS or 3000).",
    )
    args = parser.parse_args(argv)

    _configure_logging(args.log_level)
    _load_env()
    delay_ms = args.delay if args.delay is not None else int(os.getenv("XC_DELAY_MS") or DEFAULT_DELAY_MS)
    try:
        options = ScrapeOptions(
            lat=args.lat,
            lng=args.lng,
            radius_km=args.radius,
            date_from=args.from_date,
            date_to=args.to_date,
            country=args.country,
            region=args.region,
            delay_ms=delay_ms,
        )
    except ValueError as exc:
        parser.error(str(exc))
    LOGGER.info(
        "Target: %s, %s (radius: %skm), dates %s to %s, country %s%s, delay %sms",
        options.lat,
        options.lng,
        options.radius_km,
        options.date_from,
        options.date_to,
        options.country,
        f", region {options.region}" if options.region else "",
        options.delay_ms,
    )
    storage = SQLiteStorage(args.db_path or _db_path_from_env())
    try:
        job = run_scrape_job(options, storage=storage, locator=_build_locator(args))
    except Exception:  # noqa: BLE001
        LOGGER.exception("Scrape failed.")
        return 1
    finally:
        storage.close()
    LOGGER.info("Scrape job #%s stored %s flights", job.id, job.flights_found)
    return 0


def import_main(argv: Sequence[str] | None = None) -> int:
    parser = argparse.ArgumentParser(description="Import saved XContest flight payloads (JSON or page scripts).")
    parser.add_argument("paths", nargs="+", type=Path, help="Files holding XContest flight data.")
    _add_common_arguments(parser)
    args = parser.parse_args(argv)

    _configure_logging(args.log_level)
    _load_env()
    try:
        options = ScrapeOptions(
            lat=args.lat,
            lng=args.lng,
            radius_km=args.radius,
            date_from=args.from_date,
            date_to=args.to_date,
            region="import",
        )
    except ValueError as exc:
        parser.error(str(exc))
    flights = load_flight_dump([path.read_text(encoding="utf-8") for path in args.paths])
    LOGGER.info("Normalized %s flights from %s files", len(flights), len(args.paths))
    storage = SQLiteStorage(args.db_path or _db_path_from_env())
    pipeline = IngestionPipeline(storage, site_resolver=SiteResolver(storage, locator=_build_locator(args)))
    try:
        job = pipeline.import_flights(flights, options)
    except Exception:  # noqa: BLE001
        LOGGER.exception("Import failed.")
        return 1
    finally:
        storage.close()
    LOGGER.info("Import job #%s stored %s flights", job.id, job.flights_found)
    return 0


if __name__ == "__main__":
    sys.exit(main())
