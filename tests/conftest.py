import asyncio
from datetime import datetime, timezone

import aiohttp
import pytest

from cdn_dashboard.config import Settings
from cdn_dashboard.graphql_queries import build_query_window
from cdn_dashboard.types import Account, MetricPoint, Zone, ZoneResult, PROVIDER_CLOUDFLARE


class FakeAdapter:
    """Stands in for a provider adapter; answers from canned per-zone results."""

    def __init__(self, provider=PROVIDER_CLOUDFLARE, results=None, gate=None):
        self.provider = provider
        self.results = results or {}
        self.gate = gate
        self.fetched = []
        self.validated = []
        self.validation_result = {'valid': True, 'accessibleZones': 1, 'zones': []}

    async def fetch_zone_metrics(self, account, zone, window):
        self.fetched.append(zone.zone_id)
        if self.gate is not None:
            await self.gate.wait()
        result = self.results.get(zone.zone_id)
        if result is None:
            return ZoneResult(
                zone_id=zone.zone_id,
                domain=zone.domain,
                days=[MetricPoint(timestamp='2024-01-01', requests=10, cachedRequests=5)],
            )
        return result

    async def validate_account(self, account):
        self.validated.append(account.name)
        return self.validation_result

    async def validate_credentials(self, credentials):
        self.validated.append(dict(credentials))
        return self.validation_result


@pytest.fixture
def env(tmp_path):
    return {
        'DATA_DIR': str(tmp_path / 'data'),
        'CONFIG_PATH': str(tmp_path / 'config.json'),
        'ZONES_FILE': str(tmp_path / 'zones.yml'),
        'WEB_ROOT': str(tmp_path / 'web'),
        'LOG_DIR': str(tmp_path / 'logs'),
        'REFRESH_ON_START': 'false',
    }


@pytest.fixture
def settings(env):
    return Settings(env=env)


@pytest.fixture
def cloudflare_account():
    return Account.create(
        name='Main',
        provider=PROVIDER_CLOUDFLARE,
        credentials={'token': 'cf-token'},
        zones=[Zone('zone-a', 'a.example.com'), Zone('zone-b', 'b.example.com')],
    )


@pytest.fixture
def query_window():
    return build_query_window(now=datetime(2024, 3, 15, 12, 0, tzinfo=timezone.utc))


@pytest.fixture
def fake_adapter():
    return FakeAdapter()


@pytest.fixture
def make_adapter():
    return FakeAdapter


@pytest.fixture
async def http_session():
    async with aiohttp.ClientSession() as session:
        yield session


@pytest.fixture
async def gate():
    return asyncio.Event()


@pytest.fixture
def sample_daily_response():
    """Cloudflare httpRequests1dGroups answer, deliberately out of order."""
    return {
        "data": {
            "viewer": {
                "zones": [{
                    "httpRequests1dGroups": [
                        {
                            "dimensions": {"date": "2024-03-13"},
                            "sum": {
                                "requests": 1200,
                                "bytes": 52428800,
                                "threats": 3,
                                "cachedRequests": 900,
                                "cachedBytes": 41943040
                            }
                        },
                        {
                            "dimensions": {"date": "2024-03-15"},
                            "sum": {
                                "requests": 800,
                                "bytes": 10485760,
                                "threats": 0,
                                "cachedRequests": 500,
                                "cachedBytes": 8388608
                            }
                        },
                        {
                            "dimensions": {"date": "2024-03-14"},
                            "sum": {
                                "requests": 1000,
                                "bytes": 20971520,
                                "threats": None,
                                "cachedRequests": 700,
                                "cachedBytes": 16777216
                            }
                        }
                    ]
                }]
            }
        },
        "errors": None
    }


@pytest.fixture
def sample_hourly_response():
    return {
        "data": {
            "viewer": {
                "zones": [{
                    "httpRequests1hGroups": [
                        {
                            "dimensions": {"datetime": "2024-03-15T10:00:00Z"},
                            "sum": {"requests": 40, "bytes": 4096, "threats": 0,
                                    "cachedRequests": 30, "cachedBytes": 2048}
                        },
                        {
                            "dimensions": {"datetime": "2024-03-15T11:00:00Z"},
                            "sum": {"requests": 50, "bytes": 8192, "threats": 1,
                                    "cachedRequests": 35, "cachedBytes": 4096}
                        }
                    ]
                }]
            }
        }
    }


@pytest.fixture
def sample_timing_response():
    """EdgeOne DescribeTimingL7AnalysisData answer for two days."""
    return {
        "Response": {
            "Data": [{
                "TypeKey": "zone-2o0i9a5hc1xy",
                "TypeValue": [
                    {
                        "MetricName": "l7Flow_request",
                        "Detail": [
                            {"Timestamp": 1710374400, "Value": 120},
                            {"Timestamp": 1710460800, "Value": 80}
                        ]
                    },
                    {
                        "MetricName": "l7Flow_outFlux",
                        "Detail": [
                            {"Timestamp": 1710374400, "Value": 4096},
                            {"Timestamp": 1710460800, "Value": 2048}
                        ]
                    }
                ]
            }],
            "RequestId": "5e0a2b4e-df6f-4e3d-a2c5-0c6d1d1f2ab1"
        }
    }
