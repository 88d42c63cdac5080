from __future__ import annotations

from pathlib import Path
from typing import Any

import pytest

from src.services import ingestion
from src.services.fetcher import PAGE_SIZE, FlightDetail, ListingStub
from src.services.ingestion import (
    IngestionPipeline,
    ScrapeJobFailed,
    ScrapeOptions,
    compute_alt_gain,
    run_scrape_job,
)
from src.services.normalizer import NormalizedFlight
from src.services.storage import FlightRecord, SQLiteStorage

CENTER = (37.5, -122.0)
DETAIL_URL = "https://www.xcontest.org/world/en/flights/detail:{}"


def make_options(**overrides: Any) -> ScrapeOptions:
    values: dict[str, Any] = {
        "lat": CENTER[0],
        "lng": CENTER[1],
        "radius_km": 50.0,
        "date_from": "2024-01-01",
        "date_to": "2024-12-31",
        "delay_ms": 0,
    }
    values.update(overrides)
    return ScrapeOptions(**values)


def make_stub(external_id: str, **overrides: Any) -> ListingStub:
    values: dict[str, Any] = {
        "external_id": external_id,
        "url": DETAIL_URL.format(external_id),
        "pilot_name": "Jane Doe",
        "date_text": "05.03.2024",
        "launch_name": "Mission Peak",
        "distance_text": "42.5 km",
        "points_text": "61.2 p.",
        "duration_text": "01:30:00",
        "glider_category": "EN-B",
        "route_type": "free flight",
    }
    values.update(overrides)
    return ListingStub(**values)


class FakeFetcher:
    def __init__(
        self,
        pages: dict[tuple[int, int], list[ListingStub]],
        details: dict[str, FlightDetail | None] | None = None,
    ) -> None:
        self.pages = pages
        self.details = details or {}
        self.listing_calls: list[tuple[int, int]] = []
        self.detail_calls: list[str] = []

    def fetch_listing(self, year: int, country: str | None, region: str | None, page_index: int) -> list[ListingStub]:
        self.listing_calls.append((year, page_index))
        return self.pages.get((year, page_index), [])

    def fetch_detail(self, url: str) -> FlightDetail | None:
        self.detail_calls.append(url)
        return self.details.get(url, FlightDetail(launch_lat=37.51, launch_lng=-121.88, launch_alt=640, max_alt=2100))


def make_pipeline(tmp_path: Path, fetcher: FakeFetcher) -> tuple[IngestionPipeline, SQLiteStorage]:
    storage = SQLiteStorage(tmp_path / "flights.sqlite")
    return IngestionPipeline(storage, fetcher), storage  # type: ignore[arg-type]


def test_pipeline_stores_parsed_flights(tmp_path: Path) -> None:
    fetcher = FakeFetcher({(2024, 0): [make_stub("a1")]})
    pipeline, storage = make_pipeline(tmp_path, fetcher)

    job = pipeline.run(make_options())

    assert job.status == "completed"
    assert job.flights_found == 1
    flight = storage.find_flight_by_external_id("a1")
    assert flight is not None
    assert flight.flight_date == "2024-03-05"
    assert (flight.flight_year, flight.flight_month) == (2024, 3)
    assert flight.duration_min == 90
    assert flight.distance_km == 42.5
    assert flight.points == 61.2
    assert flight.alt_gain_m == 1460
    assert flight.launch_alt_m == 640
    assert flight.source_url == DETAIL_URL.format("a1")
    sites = storage.find_all_sites()
    assert [site.name for site in sites] == ["Mission Peak"]
    assert flight.site_id == sites[0].id
    assert sites[0].elevation_m == 640


def test_pipeline_skips_unusable_flights(tmp_path: Path) -> None:
    stubs = [
        make_stub("far"),
        make_stub("nogeo"),
        make_stub("nodetail"),
        make_stub("baddate", date_text="sometime"),
        make_stub("nourl", url=None),
        make_stub("good"),
    ]
    details = {
        DETAIL_URL.format("far"): FlightDetail(launch_lat=34.05, launch_lng=-118.24),
        DETAIL_URL.format("nogeo"): FlightDetail(launch_lat=0.0, launch_lng=0.0, max_alt=1500),
        DETAIL_URL.format("nodetail"): None,
    }
    fetcher = FakeFetcher({(2024, 0): stubs}, details)
    pipeline, storage = make_pipeline(tmp_path, fetcher)

    job = pipeline.run(make_options())

    assert job.flights_found == 1
    assert [flight.external_id for flight in storage.list_flights()] == ["good"]
    assert DETAIL_URL.format("nourl") not in fetcher.detail_calls


def test_pagination_stops_on_short_page_and_spans_years(tmp_path: Path) -> None:
    full_page = [make_stub(f"x{i}", url=None) for i in range(PAGE_SIZE)]
    fetcher = FakeFetcher(
        {
            (2023, 0): full_page,
            (2023, 1): [make_stub("y1")],
            (2024, 0): [],
        }
    )
    pipeline, _ = make_pipeline(tmp_path, fetcher)

    job = pipeline.run(make_options(date_from="2023-06-01", date_to="2024-02-01"))

    assert fetcher.listing_calls == [(2023, 0), (2023, 1), (2024, 0)]
    assert job.flights_found == 1


def test_reingesting_the_same_flight_is_idempotent(tmp_path: Path) -> None:
    storage = SQLiteStorage(tmp_path / "flights.sqlite")
    for _ in range(2):
        fetcher = FakeFetcher({(2024, 0): [make_stub("dup")]})
        IngestionPipeline(storage, fetcher).run(make_options())  # type: ignore[arg-type]

    assert len(storage.list_flights()) == 1
    jobs = storage.list_jobs()
    assert [job.flights_found for job in jobs] == [0, 1]
    assert all(job.status == "completed" for job in jobs)


class FlakyStorage(SQLiteStorage):
    def __init__(self, db_path: Path, fail_after: int) -> None:
        super().__init__(db_path)
        self.fail_after = fail_after

    def insert_flight(self, record: FlightRecord) -> FlightRecord:
        if self.fail_after <= 0:
            raise RuntimeError("database unreachable")
        self.fail_after -= 1
        return super().insert_flight(record)


def test_fatal_error_marks_job_failed_with_partial_count(tmp_path: Path) -> None:
    storage = FlakyStorage(tmp_path / "flights.sqlite", fail_after=1)
    fetcher = FakeFetcher({(2024, 0): [make_stub("a"), make_stub("b"), make_stub("c")]})
    pipeline = IngestionPipeline(storage, fetcher)  # type: ignore[arg-type]

    with pytest.raises(ScrapeJobFailed) as excinfo:
        pipeline.run(make_options())

    assert str(excinfo.value) == "database unreachable"
    stored = storage.get_job(excinfo.value.job.id)
    assert stored is not None
    assert stored.status == "failed"
    assert stored.error == "database unreachable"
    assert stored.flights_found == 1


def test_compute_alt_gain_prefers_explicit_value() -> None:
    assert compute_alt_gain(1200, 2000, 500) == 1200
    assert compute_alt_gain(None, 2000, 500) == 1500
    assert compute_alt_gain(None, 2000, None) is None
    assert compute_alt_gain(None, None, 500) is None


def test_scrape_options_validate_inputs() -> None:
    with pytest.raises(ValueError):
        make_options(date_from="2024-05-01", date_to="2024-01-01")
    with pytest.raises(ValueError):
        make_options(radius_km=-1)
    with pytest.raises(ValueError):
        make_options(date_from="05/01/2024")
    assert list(make_options(date_from="2022-12-31", date_to="2024-01-01").years()) == [2022, 2023, 2024]


def test_import_flights_uses_the_same_filters(tmp_path: Path) -> None:
    storage = SQLiteStorage(tmp_path / "flights.sqlite")
    pipeline = IngestionPipeline(storage)
    flights = [
        NormalizedFlight(external_id="n1", flight_date="2024-04-01", launch_lat=37.52, launch_lng=-121.9,
                         launch_alt=600, max_alt=1900, duration_seconds=3600),
        NormalizedFlight(external_id="n2", flight_date="2024-04-02", launch_lat=None, launch_lng=None),
        NormalizedFlight(external_id="n3", flight_date="2023-04-02", launch_lat=37.52, launch_lng=-121.9),
        NormalizedFlight(external_id="n4", flight_date="2024-04-03", launch_lat=45.0, launch_lng=7.0),
    ]

    job = pipeline.import_flights(flights, make_options())

    assert job.status == "completed"
    assert job.flights_found == 1
    flight = storage.find_flight_by_external_id("n1")
    assert flight is not None
    assert flight.alt_gain_m == 1300
    assert flight.duration_min == 60
    assert storage.find_all_sites()[0].name == "Site at 37.5200, -121.9000"


class FakeBrowser:
    """Serves one listing page and per-URL detail maps, like the Playwright adapter."""

    def __init__(self, rows: list[dict[str, str]], details: dict[str, Any]) -> None:
        self.rows = rows
        self.details = details
        self.current = ""
        self.closed = 0

    def navigate(self, url: str, timeout_ms: int) -> bool:
        if url in self.details and isinstance(self.details[url], Exception):
            raise self.details[url]
        self.current = url
        return True

    def evaluate_listing_extraction(self) -> list[dict[str, str]]:
        if "list%5Bstart%5D" in self.current:
            return []
        return self.rows

    def evaluate_detail_extraction(self) -> dict[str, Any]:
        return self.details[self.current]

    def close(self) -> None:
        self.closed += 1


LISTING_ROWS = [
    {"id": "f1", "url": DETAIL_URL.format("f1"), "pilot": "Jane Doe", "date": "05.03.2024", "launch": "Mission Peak",
     "distance": "42.1 km", "points": "50.0 p.", "duration": "1:30", "glider": "EN-B", "type": "free flight"},
    {"id": "", "url": "", "pilot": "Ghost", "date": "06.03.2024"},
    {"id": "f2", "url": DETAIL_URL.format("f2"), "pilot": "John Roe", "date": "2024-03-07", "launch": "Ed Levin",
     "distance": "80 km", "points": "112 p.", "duration": "03:10:00", "glider": "EN-C", "type": "FAI triangle"},
]


def test_run_scrape_job_end_to_end(tmp_path: Path) -> None:
    storage = SQLiteStorage(tmp_path / "flights.sqlite")
    browser = FakeBrowser(
        LISTING_ROWS,
        {
            DETAIL_URL.format("f1"): {"launch_lat": 37.5126, "launch_lng": -121.8805, "max_alt": 2100, "launch_alt": 640},
            DETAIL_URL.format("f2"): {"launch_lat": 37.4736, "launch_lng": -121.8639, "alt_gain": 900},
        },
    )

    job = run_scrape_job(make_options(), storage=storage, browser=browser, sleep=lambda seconds: None)

    assert job.status == "completed"
    assert job.flights_found == 2
    stored = storage.get_job(job.id)
    assert stored is not None
    assert stored.flights_found == 2
    assert sorted(flight.external_id for flight in storage.list_flights()) == ["f1", "f2"]
    assert len(storage.find_all_sites()) == 2
    assert browser.closed == 1


def test_run_scrape_job_with_failing_details_still_completes(tmp_path: Path) -> None:
    storage = SQLiteStorage(tmp_path / "flights.sqlite")
    browser = FakeBrowser(
        LISTING_ROWS,
        {
            DETAIL_URL.format("f1"): TimeoutError("Timeout 30000ms exceeded"),
            DETAIL_URL.format("f2"): TimeoutError("Timeout 30000ms exceeded"),
        },
    )

    job = run_scrape_job(make_options(), storage=storage, browser=browser, sleep=lambda seconds: None)

    assert job.status == "completed"
    assert job.flights_found == 0
    assert storage.list_flights() == []
    assert browser.closed == 1


def test_run_scrape_job_closes_browser_on_failure(tmp_path: Path) -> None:
    storage = FlakyStorage(tmp_path / "flights.sqlite", fail_after=0)
    browser = FakeBrowser(
        LISTING_ROWS,
        {
            DETAIL_URL.format("f1"): {"launch_lat": 37.5126, "launch_lng": -121.8805},
            DETAIL_URL.format("f2"): {"launch_lat": 37.4736, "launch_lng": -121.8639},
        },
    )

    with pytest.raises(ScrapeJobFailed) as excinfo:
        run_scrape_job(make_options(), storage=storage, browser=browser, sleep=lambda seconds: None)

    assert excinfo.value.job.status == "failed"
    assert excinfo.value.job.flights_found == 0
    assert browser.closed == 1


def test_overflowing_duration_does_not_fail_the_job(tmp_path: Path) -> None:
    fetcher = FakeFetcher({(2024, 0): [make_stub("bad", duration_text="9" * 400), make_stub("ok")]})
    pipeline, storage = make_pipeline(tmp_path, fetcher)

    job = pipeline.run(make_options())

    assert job.status == "completed"
    assert job.flights_found == 2
    bad = storage.find_flight_by_external_id("bad")
    assert bad is not None
    assert bad.duration_min is None


def test_run_scrape_job_closes_storage_it_opens(tmp_path: Path, monkeypatch) -> None:
    opened: list[SQLiteStorage] = []

    class TrackedStorage(SQLiteStorage):
        closed = False

        def __init__(self, db_path: Path) -> None:
            super().__init__(db_path)
            opened.append(self)

        def close(self) -> None:
            self.closed = True
            super().close()

    monkeypatch.setenv("XC_DB_PATH", str(tmp_path / "env.sqlite"))
    monkeypatch.setattr(ingestion, "SQLiteStorage", TrackedStorage)
    browser = FakeBrowser([], {})

    job = run_scrape_job(make_options(), browser=browser, sleep=lambda seconds: None)

    assert job.status == "completed"
    assert len(opened) == 1
    assert opened[0].closed
    assert browser.closed == 1


def test_run_scrape_job_leaves_caller_storage_open(tmp_path: Path) -> None:
    storage = SQLiteStorage(tmp_path / "flights.sqlite")

    job = run_scrape_job(make_options(), storage=storage, browser=FakeBrowser([], {}), sleep=lambda seconds: None)

    stored = storage.get_job(job.id)
    assert stored is not None
    assert stored.status == "completed"
