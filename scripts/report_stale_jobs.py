#!/usr/bin/env python3
"""
Report (and optionally close) scrape jobs stuck in RUNNING.

Usage:
    python3 scripts/report_stale_jobs.py --max-age-hours 6 --mark-failed
"""

from __future__ import annotations

import sys
from pathlib import Path

REPO_ROOT = Path(__file__).resolve().parents[1]
if str(REPO_ROOT) not in sys.path:
    sys.path.insert(0, str(REPO_ROOT))

from src.services.jobs import main  # noqa: E402


if __name__ == "__main__":
    raise SystemExit(main())
