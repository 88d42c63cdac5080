#!/usr/bin/env python3
"""
Entry point used by cron to scrape XContest flights around a launch area.

Usage:
    python3 scripts/run_scrape.py --lat 37.77 --lng -122.42 --radius 100 --from-date 2024-01-01 --to-date 2024-12-31
"""

from __future__ import annotations

import sys
from pathlib import Path

REPO_ROOT = Path(__file__).resolve().parents[1]
if str(REPO_ROOT) not in sys.path:
    sys.path.insert(0, str(REPO_ROOT))

from src.services.ingestion import main  # noqa: E402


if __name__ == "__main__":
    raise SystemExit(main())
