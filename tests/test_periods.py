from datetime import datetime, timedelta, timezone

import pytest

from periods import ConfigurationError, MonthRange, parse_month, resolve_month


def _utc(*args) -> datetime:
    return datetime(*args, tzinfo=timezone.utc)


def test_leap_february_in_utc_spans_29_days() -> None:
    rng = resolve_month("2024-02", "UTC")

    assert rng.label == "2024-02"
    assert rng.start == _utc(2024, 2, 1)
    assert rng.end == _utc(2024, 3, 1)
    assert rng.end - rng.start == timedelta(days=29)


def test_december_rolls_over_to_next_year() -> None:
    rng = resolve_month("2023-12", "UTC")

    assert rng.start == _utc(2023, 12, 1)
    assert rng.end == _utc(2024, 1, 1)


def test_boundaries_use_local_midnight_of_the_zone() -> None:
    # CET (+1) at the start, CEST (+2) once DST began on 2024-03-31
    rng = resolve_month("2024-03", "Europe/Warsaw")

    assert rng.start == _utc(2024, 2, 29, 23, 0)
    assert rng.end == _utc(2024, 3, 31, 22, 0)


def test_negative_offset_zone_across_dst_end() -> None:
    rng = resolve_month("2024-11", "America/New_York")

    assert rng.start == _utc(2024, 11, 1, 4, 0)
    assert rng.end == _utc(2024, 12, 1, 5, 0)


def test_range_is_half_open() -> None:
    rng = resolve_month("2024-05", "Asia/Tokyo")

    assert rng.end > rng.start
    assert rng.contains(rng.start)
    assert not rng.contains(rng.end)
    assert rng.contains(rng.end - timedelta(microseconds=1))


def test_current_month_follows_user_timezone_not_utc() -> None:
    now = _utc(2024, 1, 31, 23, 30)

    assert resolve_month(None, "UTC", now=now).label == "2024-01"
    assert resolve_month(None, "Europe/Warsaw", now=now).label == "2024-02"
    assert resolve_month(None, "America/Los_Angeles", now=now).label == "2024-01"


def test_current_month_range_matches_explicit_label() -> None:
    now = _utc(2024, 7, 15, 12, 0)

    implicit = resolve_month(None, "Australia/Sydney", now=now)
    explicit = resolve_month("2024-07", "Australia/Sydney")

    assert implicit == explicit


def test_unknown_timezone_raises_configuration_error() -> None:
    with pytest.raises(ConfigurationError):
        resolve_month("2024-01", "Mars/Olympus_Mons")


def test_empty_timezone_raises_configuration_error() -> None:
    with pytest.raises(ConfigurationError):
        resolve_month(None, "")


def test_malformed_label_is_rejected() -> None:
    with pytest.raises(ValueError):
        parse_month("2024-13")
    with pytest.raises(ValueError):
        parse_month("2024-1")


def test_naive_bounds_drop_tzinfo() -> None:
    rng = MonthRange(start=_utc(2024, 1, 1), end=_utc(2024, 2, 1), label="2024-01")

    assert rng.naive_start == datetime(2024, 1, 1)
    assert rng.naive_end.tzinfo is None
