"""Cluster launch coordinates into sites."""

from __future__ import annotations

import logging
from typing import Optional, Protocol

from src.services.geo import haversine_distance_km
from src.services.geocoding import SiteLocation
from src.services.storage import Site, Storage

LOGGER = logging.getLogger(__name__)

CLUSTER_THRESHOLD_KM = 0.5


class SiteLocator(Protocol):
    def lookup(self, lat: float, lng: float) -> Optional[SiteLocation]: ...


class SiteResolver:
    """Map a launch coordinate to an existing site or create a new one.

    The scan returns the first site within the threshold in storage order,
    which is not necessarily the nearest one. Two sites created concurrently
    for nearby launches can end up duplicated; the pipeline runs one worker
    per job so this does not happen in practice.
    """

    def __init__(
        self,
        storage: Storage,
        threshold_km: float = CLUSTER_THRESHOLD_KM,
        locator: SiteLocator | None = None,
    ) -> None:
        self.storage = storage
        self.threshold_km = threshold_km
        self.locator = locator

    def find_existing(self, lat: float, lng: float) -> Site | None:
        for site in self.storage.find_all_sites():
            if haversine_distance_km(lat, lng, site.lat, site.lng) < self.threshold_km:
                return site
        return None

    def resolve_or_create(
        self,
        lat: float,
        lng: float,
        candidate_name: str | None = None,
        candidate_elevation: int | None = None,
    ) -> int:
        existing = self.find_existing(lat, lng)
        if existing is not None:
            return existing.id
        site = Site(
            name=(candidate_name or "").strip() or f"Site at {lat:.4f}, {lng:.4f}",
            lat=lat,
            lng=lng,
            elevation_m=candidate_elevation,
        )
        if self.locator is not None:
            location = self.locator.lookup(lat, lng)
            if location is not None:
                site.country = location.country
                site.region = location.region
        created = self.storage.insert_site(site)
        LOGGER.info("Created site #%s '%s' at %.4f,%.4f", created.id, created.name, lat, lng)
        return created.id
