"""Date, duration and number parsing for scraped XContest labels."""

from __future__ import annotations

import math
import re
from datetime import date

ISO_DATE_PATTERN = re.compile(r"(\d{4})-(\d{2})-(\d{2})")
DOTTED_DATE_PATTERN = re.compile(r"(\d{1,2})\.(\d{1,2})\.(\d{4})")
SLASHED_DATE_PATTERN = re.compile(r"(\d{1,2})/(\d{1,2})/(\d{4})")

HMS_PATTERN = re.compile(r"(\d+):(\d+):(\d+)")
HM_PATTERN = re.compile(r"(\d+):(\d+)")
NUMBER_PATTERN = re.compile(r"-?\d+(?:[.,]\d+)*")


def _round_half_up(value: float) -> int | None:
    if not math.isfinite(value):
        return None
    return int(math.floor(value + 0.5))


def _build_date(year: str, month: str, day: str) -> str | None:
    try:
        return date(int(year), int(month), int(day)).isoformat()
    except ValueError:
        return None


def parse_date(raw: object) -> str | None:
    """Return an ISO ``YYYY-MM-DD`` date or ``None`` when nothing matches.

    Accepts ISO dates, ``DD.MM.YYYY`` and ``DD/MM/YYYY`` anywhere in the text,
    so listing cells such as ``"05.03.2024 13:22"`` still parse.
    """
    if raw is None:
        return None
    text = str(raw).strip()
    if not text:
        return None
    match = ISO_DATE_PATTERN.search(text)
    if match:
        return _build_date(match.group(1), match.group(2), match.group(3))
    for pattern in (DOTTED_DATE_PATTERN, SLASHED_DATE_PATTERN):
        match = pattern.search(text)
        if match:
            return _build_date(match.group(3), match.group(2), match.group(1))
    return None


def parse_duration(raw: object) -> int | None:
    """Return a duration in whole minutes.

    ``HH:MM:SS`` and ``HH:MM`` are clock durations; a bare number is minutes.
    Seconds count as ``seconds / 60`` before rounding.
    """
    if raw is None:
        return None
    text = str(raw).strip()
    if not text:
        return None
    match = HMS_PATTERN.search(text)
    if match:
        hours, minutes, seconds = (int(part) for part in match.groups())
        return (hours * 3600 + minutes * 60 + seconds + 30) // 60
    match = HM_PATTERN.search(text)
    if match:
        hours, minutes = (int(part) for part in match.groups())
        return hours * 60 + minutes
    value = parse_number(text)
    if value is None:
        return None
    return _round_half_up(value)


def parse_duration_seconds(raw: object) -> int | None:
    if raw is None or isinstance(raw, bool):
        return None
    if isinstance(raw, (int, float)):
        if isinstance(raw, float) and not math.isfinite(raw):
            return None
        return int(raw)
    text = str(raw).strip()
    match = HMS_PATTERN.search(text)
    if match:
        hours, minutes, seconds = (int(part) for part in match.groups())
        return hours * 3600 + minutes * 60 + seconds
    match = HM_PATTERN.search(text)
    if match:
        minutes, seconds = (int(part) for part in match.groups())
        return minutes * 60 + seconds
    return None


def parse_number(raw: object) -> float | None:
    """Pull the first number out of a label like ``"123.45 km"`` or ``"1,234.5 p."``."""
    if raw is None or isinstance(raw, bool):
        return None
    if isinstance(raw, (int, float)):
        try:
            value = float(raw)
        except OverflowError:
            return None
        return value if math.isfinite(value) else None
    text = str(raw).replace("\u00a0", " ").strip()
    match = NUMBER_PATTERN.search(text)
    if not match:
        return None
    token = match.group(0)
    if "," in token and "." in token:
        token = token.replace(",", "")
    elif token.count(",") == 1:
        token = token.replace(",", ".")
    else:
        token = token.replace(",", "")
    try:
        value = float(token)
    except ValueError:
        return None
    return value if math.isfinite(value) else None
