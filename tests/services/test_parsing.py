from __future__ import annotations

import pytest

from src.services.parsing import parse_date, parse_duration, parse_duration_seconds, parse_number


@pytest.mark.parametrize(
    ("raw", "expected"),
    [
        ("2024-03-05", "2024-03-05"),
        ("05.03.2024", "2024-03-05"),
        ("05/03/2024", "2024-03-05"),
        ("5.3.2024 13:22", "2024-03-05"),
        ("flown 2024-07-14T10:00:00Z", "2024-07-14"),
    ],
)
def test_parse_date_accepts_known_formats(raw: str, expected: str) -> None:
    assert parse_date(raw) == expected


@pytest.mark.parametrize("raw", ["not a date", "", None, "31.02.2024", "2024-13-01"])
def test_parse_date_rejects_garbage(raw: str | None) -> None:
    assert parse_date(raw) is None


@pytest.mark.parametrize(
    ("raw", "expected"),
    [
        ("01:30:00", 90),
        ("1:30", 90),
        ("45", 45),
        ("01:30:30", 91),
        ("00:00:29", 0),
        ("2:05:45 h", 126),
        ("12.4", 12),
    ],
)
def test_parse_duration_minutes(raw: str, expected: int) -> None:
    assert parse_duration(raw) == expected


@pytest.mark.parametrize("raw", ["", None, "n/a"])
def test_parse_duration_rejects_garbage(raw: str | None) -> None:
    assert parse_duration(raw) is None


def test_parse_duration_seconds_handles_numbers_and_clock_strings() -> None:
    assert parse_duration_seconds(5400) == 5400
    assert parse_duration_seconds("01:30:00") == 5400
    assert parse_duration_seconds("12:30") == 750
    assert parse_duration_seconds("soon") is None
    assert parse_duration_seconds(True) is None


@pytest.mark.parametrize(
    ("raw", "expected"),
    [
        ("123.45 km", 123.45),
        ("1,234.5 p.", 1234.5),
        ("12,5", 12.5),
        (87, 87.0),
        ("-3.5", -3.5),
    ],
)
def test_parse_number_pulls_first_number(raw: object, expected: float) -> None:
    assert parse_number(raw) == pytest.approx(expected)


def test_parse_number_returns_none_without_digits() -> None:
    assert parse_number("km") is None
    assert parse_number(None) is None
    assert parse_number(False) is None


@pytest.mark.parametrize("raw", ["9" * 400, "9" * 400 + " km", float("inf"), float("-inf"), float("nan"), 10**400])
def test_parse_number_rejects_values_beyond_float_range(raw: object) -> None:
    assert parse_number(raw) is None


@pytest.mark.parametrize("raw", ["9" * 400, "9" * 400 + " min"])
def test_parse_duration_drops_overflowing_numbers(raw: str) -> None:
    assert parse_duration(raw) is None


def test_parse_duration_keeps_long_clock_durations_exact() -> None:
    assert parse_duration("99999999999999999999:00:30") == 99999999999999999999 * 60 + 1


@pytest.mark.parametrize("raw", [float("inf"), float("-inf"), float("nan")])
def test_parse_duration_seconds_rejects_non_finite_numbers(raw: float) -> None:
    assert parse_duration_seconds(raw) is None
