"""
FastAPI app exposing stored launch sites, flights and scrape jobs.
"""

from __future__ import annotations

import logging
import os
from pathlib import Path
from typing import Iterator, Optional

from fastapi import Depends, FastAPI, HTTPException, Query
from fastapi.middleware.cors import CORSMiddleware
from pydantic import BaseModel, Field

from src.services.jobs import JobStatus
from src.services.storage import DEFAULT_DB_PATH, FlightRecord, Job, Site, SQLiteStorage

MAX_ROWS = 2000
LOGGER = logging.getLogger("xc_sites_api")
if not LOGGER.handlers:
    LOGGER.setLevel(logging.INFO)
    LOG_PATH = Path("logs")
    LOG_PATH.mkdir(parents=True, exist_ok=True)
    file_handler = logging.FileHandler(LOG_PATH / "api_requests.log")
    formatter = logging.Formatter("%(asctime)s %(levelname)s %(message)s")
    file_handler.setFormatter(formatter)
    LOGGER.addHandler(file_handler)


def get_storage() -> Iterator[SQLiteStorage]:
    storage = SQLiteStorage(Path(os.getenv("XC_DB_PATH") or DEFAULT_DB_PATH))
    try:
        yield storage
    finally:
        storage.close()


class SiteOut(BaseModel):
    id: int
    name: str
    lat: float = Field(..., description="Latitude in decimal degrees")
    lng: float = Field(..., description="Longitude in decimal degrees")
    elevationM: Optional[int] = None
    country: Optional[str] = None
    region: Optional[str] = None


class FlightOut(BaseModel):
    id: int
    externalId: str
    siteId: Optional[int] = None
    pilotName: Optional[str] = None
    pilotCountry: Optional[str] = None
    launchLat: float
    launchLng: float
    launchAltM: Optional[int] = None
    maxAltM: Optional[int] = None
    altGainM: Optional[int] = None
    totalAltGainM: Optional[int] = None
    distanceKm: Optional[float] = None
    fivePointDistanceKm: Optional[float] = None
    points: Optional[float] = None
    durationMin: Optional[int] = None
    avgSpeedKmh: Optional[float] = None
    gliderCategory: Optional[str] = None
    flightDate: str
    routeType: Optional[str] = None
    sourceUrl: Optional[str] = None


class SiteDetailOut(SiteOut):
    flights: list[FlightOut] = Field(default_factory=list)


class JobOut(BaseModel):
    id: int
    region: Optional[str] = None
    status: str
    dateFrom: Optional[str] = None
    dateTo: Optional[str] = None
    flightsFound: int = 0
    error: Optional[str] = None
    createdAt: Optional[str] = None
    completedAt: Optional[str] = None


app = FastAPI(title="XC Sites API", version="0.1.0")

app.add_middleware(
    CORSMiddleware,
    allow_origins=["http://localhost:3000", "http://localhost:5173"],
    allow_credentials=False,
    allow_methods=["*"],
    allow_headers=["*"],
)


def _site_out(site: Site) -> SiteOut:
    return SiteOut(
        id=site.id,
        name=site.name,
        lat=site.lat,
        lng=site.lng,
        elevationM=site.elevation_m,
        country=site.country,
        region=site.region,
    )


def _flight_out(flight: FlightRecord) -> FlightOut:
    return FlightOut(
        id=flight.id,
        externalId=flight.external_id,
        siteId=flight.site_id,
        pilotName=flight.pilot_name,
        pilotCountry=flight.pilot_country,
        launchLat=flight.launch_lat,
        launchLng=flight.launch_lng,
        launchAltM=flight.launch_alt_m,
        maxAltM=flight.max_alt_m,
        altGainM=flight.alt_gain_m,
        totalAltGainM=flight.total_alt_gain_m,
        distanceKm=flight.distance_km,
        fivePointDistanceKm=flight.five_point_distance_km,
        points=flight.points,
        durationMin=flight.duration_min,
        avgSpeedKmh=flight.avg_speed_kmh,
        gliderCategory=flight.glider_category,
        flightDate=flight.flight_date,
        routeType=flight.route_type,
        sourceUrl=flight.source_url,
    )


def _job_out(job: Job) -> JobOut:
    return JobOut(
        id=job.id,
        region=job.region,
        status=job.status,
        dateFrom=job.date_from,
        dateTo=job.date_to,
        flightsFound=job.flights_found or 0,
        error=job.error,
        createdAt=job.created_at,
        completedAt=job.completed_at,
    )


@app.get("/health")
def health() -> dict[str, str]:
    return {"status": "ok"}


@app.get("/api/sites", response_model=list[SiteOut])
def get_sites(storage: SQLiteStorage = Depends(get_storage)) -> list[SiteOut]:
    LOGGER.info("Fetching sites")
    return [_site_out(site) for site in storage.find_all_sites()]


@app.get("/api/sites/{site_id}", response_model=SiteDetailOut)
def get_site(
    site_id: int,
    limit: int = Query(200, ge=1, le=MAX_ROWS, description="Maximum number of flights to include."),
    storage: SQLiteStorage = Depends(get_storage),
) -> SiteDetailOut:
    LOGGER.info("Fetching site %s", site_id)
    site = storage.get_site(site_id)
    if site is None:
        raise HTTPException(status_code=404, detail=f"Site {site_id} not found")
    flights = [_flight_out(flight) for flight in storage.list_flights(site_id=site_id, limit=limit)]
    return SiteDetailOut(**_site_out(site).model_dump(), flights=flights)


@app.get("/api/flights", response_model=list[FlightOut])
def get_flights(
    site_id: Optional[int] = Query(default=None, description="Only flights launched from this site."),
    year: Optional[int] = Query(default=None, ge=1990, le=2100, description="Only flights from this year."),
    limit: int = Query(500, ge=1, le=MAX_ROWS),
    storage: SQLiteStorage = Depends(get_storage),
) -> list[FlightOut]:
    LOGGER.info("Fetching flights site_id=%s year=%s limit=%s", site_id, year, limit)
    return [_flight_out(flight) for flight in storage.list_flights(site_id=site_id, year=year, limit=limit)]


@app.get("/api/jobs", response_model=list[JobOut])
def get_jobs(
    status: Optional[str] = Query(default=None, description="pending, running, completed or failed."),
    storage: SQLiteStorage = Depends(get_storage),
) -> list[JobOut]:
    if status and status not in {item.value for item in JobStatus}:
        raise HTTPException(status_code=400, detail=f"Unknown job status {status!r}")
    return [_job_out(job) for job in storage.list_jobs(status=status)]


@app.get("/api/jobs/{job_id}", response_model=JobOut)
def get_job(job_id: int, storage: SQLiteStorage = Depends(get_storage)) -> JobOut:
    job = storage.get_job(job_id)
    if job is None:
        raise HTTPException(status_code=404, detail=f"Job {job_id} not found")
    return _job_out(job)
