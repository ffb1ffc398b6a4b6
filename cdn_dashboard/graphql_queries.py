from typing import Dict, Optional
from datetime import datetime, timedelta, timezone
import logging
from dataclasses import dataclass

logger = logging.getLogger(__name__)

# Query windows and API limits
DAILY_LOOKBACK_DAYS = 45
HOURLY_LOOKBACK_HOURS = 72
DAILY_LIMIT = 100
HOURLY_LIMIT = 72
ZONE_LIST_LIMIT = 50

GRAPHQL_URL = "https://api.cloudflare.com/client/v4/graphql"


@dataclass(frozen=True)
class QueryWindow:
    """Daily and hourly lookback windows shared by every zone in one cycle."""
    days_since: str
    days_until: str
    hours_since: str
    hours_until: str
    start: datetime
    end: datetime

    def __str__(self) -> str:
        return (f"QueryWindow(days {self.days_since}..{self.days_until}, "
                f"hours {self.hours_since}..{self.hours_until})")


def format_datetime(value: datetime) -> str:
    """Render a UTC timestamp the way the analytics APIs expect it."""
    if value.tzinfo is None:
        value = value.replace(tzinfo=timezone.utc)
    return value.astimezone(timezone.utc).replace(microsecond=0).strftime("%Y-%m-%dT%H:%M:%SZ")


def build_query_window(
    now: Optional[datetime] = None,
    days: int = DAILY_LOOKBACK_DAYS,
    hours: int = HOURLY_LOOKBACK_HOURS
) -> QueryWindow:
    """Compute the lookback windows from server time."""
    end = now or datetime.now(timezone.utc)
    if end.tzinfo is None:
        end = end.replace(tzinfo=timezone.utc)

    window = QueryWindow(
        days_since=(end - timedelta(days=days)).date().isoformat(),
        days_until=end.date().isoformat(),
        hours_since=format_datetime(end - timedelta(hours=hours)),
        hours_until=format_datetime(end),
        start=end - timedelta(days=days),
        end=end,
    )
    logger.debug(f"Built {window}")
    return window


ZONE_DAILY_QUERY = """
query ZoneDaily($zone: String!, $since: Date!, $until: Date!) {
  viewer {
    zones(filter: { zoneTag: $zone }) {
      httpRequests1dGroups(
        filter: { date_geq: $since, date_leq: $until }
        limit: %d
        orderBy: [date_DESC]
      ) {
        dimensions {
          date
        }
        sum {
          requests
          bytes
          threats
          cachedRequests
          cachedBytes
        }
      }
    }
  }
}
""" % DAILY_LIMIT

ZONE_HOURLY_QUERY = """
query ZoneHourly($zone: String!, $since: Time!, $until: Time!) {
  viewer {
    zones(filter: { zoneTag: $zone }) {
      httpRequests1hGroups(
        filter: { datetime_geq: $since, datetime_leq: $until }
        limit: %d
        orderBy: [datetime_DESC]
      ) {
        dimensions {
          datetime
        }
        sum {
          requests
          bytes
          threats
          cachedRequests
          cachedBytes
        }
      }
    }
  }
}
""" % HOURLY_LIMIT

TOKEN_ZONES_QUERY = """
query AccessibleZones {
  viewer {
    zones(limit: %d) {
      zoneTag
    }
  }
}
""" % ZONE_LIST_LIMIT

ZONE_INFO_QUERY = """
query ZoneInfo($zoneId: String!) {
  viewer {
    zones(filter: { zoneTag: $zoneId }) {
      zoneTag
    }
  }
}
"""


def daily_variables(zone_id: str, window: QueryWindow) -> Dict:
    return {"zone": zone_id, "since": window.days_since, "until": window.days_until}


def hourly_variables(zone_id: str, window: QueryWindow) -> Dict:
    return {"zone": zone_id, "since": window.hours_since, "until": window.hours_until}
