"""
Reverse geocoding for new launch sites, backed by a SQLite cache and
OpenStreetMap's Nominatim API.
"""

from __future__ import annotations

import json
import logging
import sqlite3
import threading
import time
from dataclasses import dataclass
from datetime import datetime, timedelta, timezone
from pathlib import Path
from typing import Optional

import requests

LOGGER = logging.getLogger(__name__)

DEFAULT_CACHE_PATH = Path("datasets/xc/geocache.sqlite")
# ~100 m; launches closer than that share a cache entry.
CACHE_PRECISION = 3


@dataclass
class SiteLocation:
    country: str | None
    region: str | None
    raw: dict[str, object]
    source: str = "unknown"


class SQLiteCache:
    """Lightweight cache that stores rounded coordinates -> address mappings."""

    def __init__(self, db_path: Path) -> None:
        self.db_path = db_path
        self.db_path.parent.mkdir(parents=True, exist_ok=True)
        self.conn = sqlite3.connect(self.db_path, check_same_thread=False)
        self.conn.execute(
            """
            CREATE TABLE IF NOT EXISTS reverse_geocache (
                query TEXT PRIMARY KEY,
                country TEXT,
                region TEXT,
                raw_response TEXT,
                fetched_at TEXT
            )
            """
        )
        self.conn.commit()
        self.lock = threading.Lock()

    def get(self, query: str) -> Optional[tuple[str | None, str | None, dict[str, object], str | None]]:
        with self.lock:
            cursor = self.conn.execute(
                "SELECT country, region, raw_response, fetched_at FROM reverse_geocache WHERE query = ?",
                (query,),
            )
            row = cursor.fetchone()
        if not row:
            return None
        raw: dict[str, object] = {}
        if row[2]:
            try:
                raw = json.loads(row[2])
            except json.JSONDecodeError:
                raw = {}
        return (row[0], row[1], raw, row[3])

    def set(self, query: str, country: str | None, region: str | None, raw: dict[str, object]) -> None:
        raw_blob = json.dumps(raw) if raw else None
        with self.lock:
            self.conn.execute(
                """
                INSERT OR REPLACE INTO reverse_geocache (query, country, region, raw_response, fetched_at)
                VALUES (?, ?, ?, ?, ?)
                """,
                (
                    query,
                    country,
                    region,
                    raw_blob,
                    datetime.now(timezone.utc).isoformat(),
                ),
            )
            self.conn.commit()


class ReverseGeocoder:
    """Resolve launch coordinates to country/region via Nominatim and cache locally."""

    endpoint = "https://nominatim.openstreetmap.org/reverse"

    def __init__(
        self,
        cache_path: Path = DEFAULT_CACHE_PATH,
        min_interval: float = 1.1,
        user_agent: str = "xc-sites-ingestor/0.1 (https://example.com/contact)",
        failure_ttl_days: int = 7,
    ) -> None:
        self.cache = SQLiteCache(cache_path)
        self.min_interval = min_interval
        self.user_agent = user_agent
        self.failure_ttl_days = failure_ttl_days
        self._last_request = 0.0
        self.stats: dict[str, int] = {
            "cache_hits": 0,
            "nominatim_hits": 0,
            "failures": 0,
        }

    @staticmethod
    def cache_key(lat: float, lng: float) -> str:
        return f"{round(lat, CACHE_PRECISION):.{CACHE_PRECISION}f},{round(lng, CACHE_PRECISION):.{CACHE_PRECISION}f}"

    def lookup(self, lat: float, lng: float) -> Optional[SiteLocation]:
        query = self.cache_key(lat, lng)
        cached = self.cache.get(query)
        if cached:
            country, region, raw, fetched_at = cached
            if country or region:
                self.stats["cache_hits"] += 1
                return SiteLocation(country=country, region=region, raw=raw, source="cache")
            if self._failure_is_fresh(fetched_at):
                LOGGER.debug("Skipping reverse geocode for %s due to recent failure cache.", query)
                return None
        payload = self._fetch(lat, lng)
        if not payload:
            self.cache.set(query, None, None, raw={})
            self.stats["failures"] += 1
            return None
        address = payload.get("address") if isinstance(payload.get("address"), dict) else {}
        country_code = address.get("country_code")
        region = address.get("state") or address.get("region") or address.get("county")
        result = SiteLocation(
            country=country_code.upper() if isinstance(country_code, str) else None,
            region=region if isinstance(region, str) else None,
            raw=payload,
            source="nominatim",
        )
        self.cache.set(query, result.country, result.region, payload)
        self.stats["nominatim_hits"] += 1
        return result

    def _failure_is_fresh(self, fetched_at: str | None) -> bool:
        if not fetched_at:
            return False
        try:
            ts = datetime.fromisoformat(fetched_at)
        except ValueError:
            return False
        if ts.tzinfo is None:
            ts = ts.replace(tzinfo=timezone.utc)
        return datetime.now(timezone.utc) - ts < timedelta(days=self.failure_ttl_days)

    def _fetch(self, lat: float, lng: float) -> Optional[dict[str, object]]:
        elapsed = time.monotonic() - self._last_request
        if elapsed < self.min_interval:
            time.sleep(self.min_interval - elapsed)
        params = {
            "lat": f"{lat:.6f}",
            "lon": f"{lng:.6f}",
            "format": "json",
            "zoom": 10,
            "addressdetails": 1,
        }
        headers = {
            "User-Agent": self.user_agent,
        }
        try:
            response = requests.get(self.endpoint, params=params, headers=headers, timeout=25)
            self._last_request = time.monotonic()
            response.raise_for_status()
            payload = response.json()
            if isinstance(payload, dict) and not payload.get("error"):
                return payload
            LOGGER.debug("Discarding reverse geocode payload for %s,%s: %s", lat, lng, payload)
        except (requests.RequestException, ValueError):
            LOGGER.exception("Reverse geocoding request failed for %s,%s", lat, lng)
        return None
