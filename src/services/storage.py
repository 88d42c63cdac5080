"""
Storage contract for the ingestion pipeline plus a SQLite implementation.

The pipeline only talks to the small `Storage` protocol below; the SQLite
adapter keeps sites, flights and scrape jobs in a single database file.
"""

from __future__ import annotations

import logging
import sqlite3
import threading
from dataclasses import asdict, dataclass, fields
from datetime import datetime, timezone
from pathlib import Path
from typing import Any, Mapping, Optional, Protocol, Sequence

LOGGER = logging.getLogger(__name__)

DEFAULT_DB_PATH = Path("datasets/xc/flights.sqlite")


class StorageError(RuntimeError):
    """Raised when a write violates the storage contract."""


def utc_now_iso() -> str:
    return datetime.now(timezone.utc).isoformat()


@dataclass
class Site:
    name: str
    lat: float
    lng: float
    elevation_m: int | None = None
    country: str | None = None
    region: str | None = None
    id: int | None = None
    created_at: str | None = None


@dataclass
class FlightRecord:
    external_id: str
    launch_lat: float
    launch_lng: float
    flight_date: str
    flight_year: int
    flight_month: int
    site_id: int | None = None
    pilot_name: str | None = None
    pilot_country: str | None = None
    launch_alt_m: int | None = None
    max_alt_m: int | None = None
    alt_gain_m: int | None = None
    total_alt_gain_m: int | None = None
    distance_km: float | None = None
    five_point_distance_km: float | None = None
    points: float | None = None
    duration_min: int | None = None
    avg_speed_kmh: float | None = None
    glider_category: str | None = None
    route_type: str | None = None
    source_url: str | None = None
    id: int | None = None
    created_at: str | None = None


@dataclass
class Job:
    status: str
    region: str | None = None
    center_lat: float | None = None
    center_lng: float | None = None
    radius_km: float | None = None
    date_from: str | None = None
    date_to: str | None = None
    flights_found: int = 0
    error: str | None = None
    id: int | None = None
    created_at: str | None = None
    updated_at: str | None = None
    completed_at: str | None = None


class Storage(Protocol):
    def find_flight_by_external_id(self, external_id: str) -> Optional[FlightRecord]: ...

    def insert_flight(self, record: FlightRecord) -> FlightRecord: ...

    def find_all_sites(self) -> Sequence[Site]: ...

    def insert_site(self, site: Site) -> Site: ...

    def create_job(self, params: Mapping[str, Any]) -> Job: ...

    def update_job(self, job_id: int, values: Mapping[str, Any]) -> None: ...


SCHEMA = """
PRAGMA journal_mode=WAL;
CREATE TABLE IF NOT EXISTS sites (
    id INTEGER PRIMARY KEY AUTOINCREMENT,
    name TEXT NOT NULL,
    lat REAL NOT NULL,
    lng REAL NOT NULL,
    elevation_m INTEGER,
    country TEXT,
    region TEXT,
    created_at TEXT NOT NULL
);
CREATE TABLE IF NOT EXISTS flights (
    id INTEGER PRIMARY KEY AUTOINCREMENT,
    external_id TEXT NOT NULL,
    site_id INTEGER REFERENCES sites(id),
    pilot_name TEXT,
    pilot_country TEXT,
    launch_lat REAL NOT NULL,
    launch_lng REAL NOT NULL,
    launch_alt_m INTEGER,
    max_alt_m INTEGER,
    alt_gain_m INTEGER,
    total_alt_gain_m INTEGER,
    distance_km REAL,
    five_point_distance_km REAL,
    points REAL,
    duration_min INTEGER,
    avg_speed_kmh REAL,
    glider_category TEXT,
    flight_date TEXT NOT NULL,
    flight_year INTEGER NOT NULL,
    flight_month INTEGER NOT NULL,
    route_type TEXT,
    source_url TEXT,
    created_at TEXT NOT NULL
);
CREATE TABLE IF NOT EXISTS scrape_jobs (
    id INTEGER PRIMARY KEY AUTOINCREMENT,
    region TEXT,
    center_lat REAL,
    center_lng REAL,
    radius_km REAL,
    status TEXT NOT NULL DEFAULT 'pending',
    date_from TEXT,
    date_to TEXT,
    flights_found INTEGER DEFAULT 0,
    error TEXT,
    created_at TEXT NOT NULL,
    updated_at TEXT NOT NULL,
    completed_at TEXT
);
CREATE UNIQUE INDEX IF NOT EXISTS idx_flights_external_id ON flights(external_id);
CREATE INDEX IF NOT EXISTS idx_flights_site_id ON flights(site_id);
CREATE INDEX IF NOT EXISTS idx_flights_date ON flights(flight_date);
CREATE INDEX IF NOT EXISTS idx_flights_year_month ON flights(flight_year, flight_month);
CREATE INDEX IF NOT EXISTS idx_sites_lat_lng ON sites(lat, lng);
CREATE INDEX IF NOT EXISTS idx_scrape_jobs_status ON scrape_jobs(status);
"""

JOB_COLUMNS = frozenset(field.name for field in fields(Job)) - {"id", "created_at"}


def _row_to(model: type, row: sqlite3.Row) -> Any:
    names = {field.name for field in fields(model)}
    return model(**{key: row[key] for key in row.keys() if key in names})


class SQLiteStorage:
    """Thread-safe SQLite store for sites, flights and scrape jobs."""

    def __init__(self, db_path: Path = DEFAULT_DB_PATH) -> None:
        self.db_path = Path(db_path)
        self.db_path.parent.mkdir(parents=True, exist_ok=True)
        self.conn = sqlite3.connect(self.db_path, check_same_thread=False)
        self.conn.row_factory = sqlite3.Row
        self.conn.executescript(SCHEMA)
        self.conn.commit()
        self.lock = threading.Lock()
        LOGGER.debug("Opened flight store at %s", self.db_path)

    def close(self) -> None:
        with self.lock:
            self.conn.close()

    def find_flight_by_external_id(self, external_id: str) -> Optional[FlightRecord]:
        with self.lock:
            row = self.conn.execute(
                "SELECT * FROM flights WHERE external_id = ? LIMIT 1",
                (external_id,),
            ).fetchone()
        return _row_to(FlightRecord, row) if row else None

    def insert_flight(self, record: FlightRecord) -> FlightRecord:
        values = asdict(record)
        values.pop("id")
        values["created_at"] = values["created_at"] or utc_now_iso()
        columns = ", ".join(values)
        placeholders = ", ".join("?" for _ in values)
        try:
            with self.lock:
                cursor = self.conn.execute(
                    f"INSERT INTO flights ({columns}) VALUES ({placeholders})",
                    tuple(values.values()),
                )
                self.conn.commit()
        except sqlite3.IntegrityError as exc:
            raise StorageError(f"Flight {record.external_id} already stored") from exc
        record.id = cursor.lastrowid
        record.created_at = values["created_at"]
        return record

    def list_flights(
        self,
        site_id: int | None = None,
        year: int | None = None,
        limit: int = 500,
    ) -> list[FlightRecord]:
        sql = "SELECT * FROM flights WHERE 1 = 1"
        params: list[object] = []
        if site_id is not None:
            sql += " AND site_id = ?"
            params.append(site_id)
        if year is not None:
            sql += " AND flight_year = ?"
            params.append(year)
        sql += " ORDER BY flight_date DESC, id DESC LIMIT ?"
        params.append(limit)
        with self.lock:
            rows = self.conn.execute(sql, params).fetchall()
        return [_row_to(FlightRecord, row) for row in rows]

    def find_all_sites(self) -> list[Site]:
        with self.lock:
            rows = self.conn.execute("SELECT * FROM sites ORDER BY id").fetchall()
        return [_row_to(Site, row) for row in rows]

    def get_site(self, site_id: int) -> Optional[Site]:
        with self.lock:
            row = self.conn.execute("SELECT * FROM sites WHERE id = ?", (site_id,)).fetchone()
        return _row_to(Site, row) if row else None

    def insert_site(self, site: Site) -> Site:
        created_at = site.created_at or utc_now_iso()
        with self.lock:
            cursor = self.conn.execute(
                """
                INSERT INTO sites (name, lat, lng, elevation_m, country, region, created_at)
                VALUES (?, ?, ?, ?, ?, ?, ?)
                """,
                (site.name, site.lat, site.lng, site.elevation_m, site.country, site.region, created_at),
            )
            self.conn.commit()
        site.id = cursor.lastrowid
        site.created_at = created_at
        return site

    def create_job(self, params: Mapping[str, Any]) -> Job:
        unknown = set(params) - JOB_COLUMNS
        if unknown:
            raise StorageError(f"Unknown job fields: {sorted(unknown)}")
        now = utc_now_iso()
        values = {"status": "pending", "flights_found": 0, **params, "created_at": now, "updated_at": now}
        columns = ", ".join(values)
        placeholders = ", ".join("?" for _ in values)
        with self.lock:
            cursor = self.conn.execute(
                f"INSERT INTO scrape_jobs ({columns}) VALUES ({placeholders})",
                tuple(values.values()),
            )
            self.conn.commit()
        job = self.get_job(cursor.lastrowid)
        if job is None:
            raise StorageError("Scrape job vanished after insert")
        return job

    def update_job(self, job_id: int, values: Mapping[str, Any]) -> None:
        unknown = set(values) - JOB_COLUMNS
        if unknown:
            raise StorageError(f"Unknown job fields: {sorted(unknown)}")
        payload = {**values, "updated_at": values.get("updated_at") or utc_now_iso()}
        assignments = ", ".join(f"{column} = ?" for column in payload)
        with self.lock:
            cursor = self.conn.execute(
                f"UPDATE scrape_jobs SET {assignments} WHERE id = ?",
                (*payload.values(), job_id),
            )
            self.conn.commit()
        if cursor.rowcount == 0:
            raise StorageError(f"Scrape job {job_id} not found")

    def get_job(self, job_id: int) -> Optional[Job]:
        with self.lock:
            row = self.conn.execute("SELECT * FROM scrape_jobs WHERE id = ?", (job_id,)).fetchone()
        return _row_to(Job, row) if row else None

    def list_jobs(self, status: str | None = None, limit: int = 100) -> list[Job]:
        sql = "SELECT * FROM scrape_jobs"
        params: list[object] = []
        if status:
            sql += " WHERE status = ?"
            params.append(status)
        sql += " ORDER BY id DESC LIMIT ?"
        params.append(limit)
        with self.lock:
            rows = self.conn.execute(sql, params).fetchall()
        return [_row_to(Job, row) for row in rows]
