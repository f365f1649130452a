"""Unit tests for dashboard date range resolution."""
from datetime import datetime, timedelta

import pytest

from subscription_analytics.services.dashboard_service import MAX_DASHBOARD_RANGE_DAYS, resolve_date_range

NOW = datetime(2024, 6, 30, 12, 0)


def test_explicit_dates_win_over_period() -> None:
    date_range = resolve_date_range(datetime(2024, 1, 1), datetime(2024, 1, 7), "90d", now=NOW)

    assert (date_range.start, date_range.end) == (datetime(2024, 1, 1), datetime(2024, 1, 7))


@pytest.mark.parametrize("period,days", [("7d", 7), ("30d", 30), ("90d", 90), ("1y", 365), ("all", 30), (None, 30)])
def test_period_ends_now(period, days) -> None:
    date_range = resolve_date_range(None, None, period, now=NOW)

    assert date_range.end == NOW
    assert date_range.end - date_range.start == timedelta(days=days)


def test_all_time_is_no_range_when_allowed() -> None:
    assert resolve_date_range(None, None, "all", allow_all_time=True, now=NOW) is None


def test_reversed_range_is_rejected() -> None:
    with pytest.raises(ValueError):
        resolve_date_range(datetime(2024, 2, 1), datetime(2024, 1, 1), None)


def test_span_is_capped_when_requested() -> None:
    """A year of daily chart points is accepted, a decade is not."""
    start = datetime(2024, 1, 1)

    capped = resolve_date_range(
        start, start + timedelta(days=MAX_DASHBOARD_RANGE_DAYS), None, max_days=MAX_DASHBOARD_RANGE_DAYS
    )
    assert capped.end - capped.start == timedelta(days=MAX_DASHBOARD_RANGE_DAYS)

    with pytest.raises(ValueError, match="366 days"):
        resolve_date_range(start, start + timedelta(days=3650), None, max_days=MAX_DASHBOARD_RANGE_DAYS)

    # Uncapped callers, such as the metrics endpoint, accept any span
    assert resolve_date_range(start, start + timedelta(days=3650), None) is not None
