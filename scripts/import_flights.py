#!/usr/bin/env python3
"""
Import saved XContest flight payloads into the flight store.

Usage:
    python3 scripts/import_flights.py dumps/flights_2024.json --lat 46.5 --lng 11.3 --radius 50
"""

from __future__ import annotations

import sys
from pathlib import Path

REPO_ROOT = Path(__file__).resolve().parents[1]
if str(REPO_ROOT) not in sys.path:
    sys.path.insert(0, str(REPO_ROOT))

from src.services.ingestion import import_main as main  # noqa: E402


if __name__ == "__main__":
    raise SystemExit(main())
