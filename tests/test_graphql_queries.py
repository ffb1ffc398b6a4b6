from datetime import datetime, timezone

from cdn_dashboard.graphql_queries import (
    ZONE_DAILY_QUERY,
    ZONE_HOURLY_QUERY,
    build_query_window,
    format_datetime,
)


def test_query_window(query_window):
    assert query_window.days_since == '2024-01-30'
    assert query_window.days_until == '2024-03-15'
    assert query_window.hours_since == '2024-03-12T12:00:00Z'
    assert query_window.hours_until == '2024-03-15T12:00:00Z'


def test_naive_datetimes_are_utc():
    window = build_query_window(now=datetime(2024, 3, 15, 12, 30, 15, 999))
    assert window.hours_until == '2024-03-15T12:30:15Z'
    assert format_datetime(datetime(2024, 1, 1, tzinfo=timezone.utc)) == '2024-01-01T00:00:00Z'


def test_queries_carry_limits():
    assert 'limit: 100' in ZONE_DAILY_QUERY
    assert 'date_geq: $since' in ZONE_DAILY_QUERY
    assert 'limit: 72' in ZONE_HOURLY_QUERY
    assert 'datetime_geq: $since' in ZONE_HOURLY_QUERY
