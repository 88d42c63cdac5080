"""Scrape job lifecycle and progress counters."""

from __future__ import annotations

import argparse
import logging
import os
import sys
from datetime import datetime, timedelta, timezone
from enum import Enum
from pathlib import Path
from typing import Any, Mapping

from src.services.storage import DEFAULT_DB_PATH, Job, SQLiteStorage, Storage, utc_now_iso

LOGGER = logging.getLogger(__name__)

DEFAULT_STALE_HOURS = 6.0
STALE_JOB_MESSAGE = "Worker stopped without finishing the job"


class JobStatus(str, Enum):
    PENDING = "pending"
    RUNNING = "running"
    COMPLETED = "completed"
    FAILED = "failed"


TERMINAL_STATUSES = frozenset({JobStatus.COMPLETED.value, JobStatus.FAILED.value})


class JobStateError(RuntimeError):
    """Raised when a finished job would be mutated again."""


class JobTracker:
    """Owns every status and counter change on a scrape job record."""

    def __init__(self, storage: Storage) -> None:
        self.storage = storage

    def start(self, params: Mapping[str, Any]) -> Job:
        job = self.storage.create_job({**params, "status": JobStatus.PENDING.value, "flights_found": 0})
        self._apply(job, status=JobStatus.RUNNING.value)
        LOGGER.info("Scrape job #%s started (%s)", job.id, job.region)
        return job

    def record_progress(self, job: Job, stored: int) -> None:
        if stored < 0:
            raise ValueError("stored count cannot be negative")
        self._apply(job, flights_found=job.flights_found + stored)

    def complete(self, job: Job) -> None:
        self._apply(job, status=JobStatus.COMPLETED.value, completed_at=utc_now_iso())
        LOGGER.info("Scrape job #%s completed. Total flights stored: %s", job.id, job.flights_found)

    def fail(self, job: Job, message: str) -> None:
        self._apply(
            job,
            status=JobStatus.FAILED.value,
            error=message,
            completed_at=utc_now_iso(),
        )
        LOGGER.error("Scrape job #%s failed after %s flights: %s", job.id, job.flights_found, message)

    def _apply(self, job: Job, **values: Any) -> None:
        if job.status in TERMINAL_STATUSES:
            raise JobStateError(f"Scrape job #{job.id} is already {job.status}")
        # Counters travel with every update so a failure keeps the partial count.
        values.setdefault("flights_found", job.flights_found)
        self.storage.update_job(job.id, values)
        for key, value in values.items():
            setattr(job, key, value)


def find_stale_jobs(jobs: list[Job], max_age: timedelta, now: datetime | None = None) -> list[Job]:
    """Return RUNNING jobs whose last update is older than ``max_age``.

    A killed worker leaves its job RUNNING forever; age is the only signal.
    """
    now = now or datetime.now(timezone.utc)
    cutoff = now - max_age
    stale = []
    for job in jobs:
        if job.status != JobStatus.RUNNING.value:
            continue
        stamp = job.updated_at or job.created_at
        if not stamp:
            continue
        try:
            seen = datetime.fromisoformat(stamp)
        except ValueError:
            LOGGER.debug("Unparseable timestamp on job #%s: %s", job.id, stamp)
            continue
        if seen.tzinfo is None:
            seen = seen.replace(tzinfo=timezone.utc)
        if seen < cutoff:
            stale.append(job)
    return stale


def main(argv: list[str] | None = None) -> int:
    parser = argparse.ArgumentParser(description="Report scrape jobs stuck in RUNNING.")
    parser.add_argument("--db-path", type=Path, default=None, help="SQLite database (default: $XC_DB_PATH).")
    parser.add_argument(
        "--max-age-hours",
        type=float,
        default=DEFAULT_STALE_HOURS,
        help=f"Age after which a RUNNING job counts as stuck (default: {DEFAULT_STALE_HOURS}).",
    )
    parser.add_argument(
        "--mark-failed",
        action="store_true",
        help="Close stuck jobs as FAILED, keeping their partial flight counts.",
    )
    parser.add_argument("--log-level", default="INFO", help="Python logging level (default: INFO).")
    args = parser.parse_args(argv)

    logging.basicConfig(
        level=getattr(logging, args.log_level.upper(), logging.INFO),
        format="%(asctime)s %(levelname)s %(name)s: %(message)s",
        stream=sys.stdout,
        force=True,
    )
    storage = SQLiteStorage(args.db_path or Path(os.getenv("XC_DB_PATH") or DEFAULT_DB_PATH))
    try:
        running = storage.list_jobs(status=JobStatus.RUNNING.value, limit=1000)
        stale = find_stale_jobs(running, timedelta(hours=args.max_age_hours))
        tracker = JobTracker(storage)
        for job in stale:
            print(f"job #{job.id} region={job.region} flights={job.flights_found} last_update={job.updated_at}")
            if args.mark_failed:
                tracker.fail(job, STALE_JOB_MESSAGE)
    finally:
        storage.close()
    print(f"{len(stale)} stale of {len(running)} running jobs")
    return 0


if __name__ == "__main__":
    raise SystemExit(main())
