"""
Client for the edgeone.ai site statistics API (bearer ApiKey auth).

This is the web-analytics side of EdgeOne (page views, visitors, visits), not
the TEO traffic metrics the refresh cycle collects. The dashboard reads it on
demand through the /api/edgeone-ai endpoints.
"""
import asyncio
import json
import logging
from datetime import datetime, timedelta, timezone
from typing import Dict, Optional

import aiohttp

from .errors import ProviderAuthError, ProviderError, ProviderResponseError, ProviderTransientError

logger = logging.getLogger(__name__)

PROVIDER_EDGEONE_AI = 'edgeone-ai'
EDGEONE_AI_BASE_URL = 'https://edgeone.ai/api/v1'
DEFAULT_RANGE = timedelta(days=7)

AUTH_HINTS = {
    401: 'ApiKey invalid or expired',
    403: 'Insufficient permission',
}


def iso_utc(moment: datetime) -> str:
    """UTC timestamp with millisecond precision, e.g. ``2024-03-15T12:00:00.000Z``."""
    moment = moment.astimezone(timezone.utc)
    return moment.strftime('%Y-%m-%dT%H:%M:%S.') + f'{moment.microsecond // 1000:03d}Z'


def parse_moment(value: Optional[str], default: datetime) -> datetime:
    """Parse an ISO date or datetime query value; naive values are taken as UTC."""
    if not value:
        return default
    text = value.strip()
    if text.endswith('Z'):
        text = text[:-1] + '+00:00'
    moment = datetime.fromisoformat(text)
    if moment.tzinfo is None:
        moment = moment.replace(tzinfo=timezone.utc)
    return moment


def comparison_range(start: datetime, end: datetime):
    """The window of the same length ending just before ``start``."""
    return start - (end - start), start - timedelta(milliseconds=1)


def format_stats(data: Dict) -> Dict:
    return {
        'pageviews': data.get('pageviews') or data.get('views') or 0,
        'visitors': data.get('visitors') or data.get('uniques') or 0,
        'visits': data.get('visits') or data.get('sessions') or 0,
        'bounces': data.get('bounces') or 0,
        'totaltime': data.get('totaltime') or data.get('visitDuration') or 0,
    }


def format_metrics(data: Dict, field: str) -> Dict:
    values = data.get('values')
    return {
        'field': field,
        'total': data.get('total') or 0,
        'unique': data.get('unique') or 0,
        'values': [
            {
                'value': point.get('value') or 0,
                'count': point.get('count') or 0,
                'date': point.get('date') or point.get('timestamp'),
            }
            for point in values if isinstance(point, dict)
        ] if isinstance(values, list) else [],
    }


class EdgeOneAIClient:
    """Read-only calls against one edgeone.ai account."""

    def __init__(
        self,
        session: aiohttp.ClientSession,
        api_key: str,
        base_url: str = EDGEONE_AI_BASE_URL,
        request_timeout: int = 30
    ):
        self.session = session
        self.api_key = api_key
        self.base_url = base_url.rstrip('/')
        self.timeout = aiohttp.ClientTimeout(total=request_timeout)

    async def _get(self, path: str, params: Dict) -> Dict:
        """GET one endpoint and return its ``data`` member."""
        headers = {
            'Authorization': f'Bearer {self.api_key}',
            'Content-Type': 'application/json'
        }
        try:
            async with self.session.get(
                f'{self.base_url}{path}',
                headers=headers,
                params=params,
                timeout=self.timeout
            ) as response:
                status = response.status
                text = await response.text()
        except asyncio.TimeoutError:
            raise ProviderTransientError('Request to edgeone.ai timed out', provider=PROVIDER_EDGEONE_AI)
        except aiohttp.ClientConnectorError as e:
            raise ProviderTransientError(
                f"Could not connect to the edgeone.ai API: {str(e)}",
                provider=PROVIDER_EDGEONE_AI
            )
        except aiohttp.ClientError as e:
            raise ProviderTransientError(
                f"edgeone.ai request failed: {str(e) or type(e).__name__}",
                provider=PROVIDER_EDGEONE_AI
            )

        try:
            body = json.loads(text) if text else {}
        except json.JSONDecodeError as e:
            raise ProviderResponseError(
                f"Error parsing edgeone.ai response: {str(e)}",
                provider=PROVIDER_EDGEONE_AI,
                status=status
            )
        message = body.get('message') if isinstance(body, dict) else None

        if status in AUTH_HINTS:
            raise ProviderAuthError(
                f"HTTP {status}: {message or AUTH_HINTS[status]}",
                provider=PROVIDER_EDGEONE_AI,
                status=status,
                hint=AUTH_HINTS[status]
            )
        if status == 429 or status >= 500:
            raise ProviderTransientError(
                message or f"HTTP {status}: edgeone.ai API call failed",
                provider=PROVIDER_EDGEONE_AI,
                status=status
            )
        if status != 200:
            raise ProviderResponseError(
                message or f"HTTP {status}: edgeone.ai API call failed",
                provider=PROVIDER_EDGEONE_AI,
                status=status
            )

        if not isinstance(body, dict) or body.get('code') != 0:
            raise ProviderResponseError(message or 'edgeone.ai returned an error', provider=PROVIDER_EDGEONE_AI)
        data = body.get('data')
        return data if isinstance(data, dict) else {}

    async def get_stats(self, site_id: str, start: datetime, end: datetime,
                        unit: str = 'day', tz: str = 'UTC') -> Dict:
        """Site totals for ``[start, end]`` plus the same figures for the preceding window."""
        logger.info(f"edgeone.ai stats for site {site_id}: {iso_utc(start)} to {iso_utc(end)} by {unit}")
        data = await self._get(f'/sites/{site_id}/stats', {
            'startDate': iso_utc(start),
            'endDate': iso_utc(end),
            'unit': unit,
            'timezone': tz
        })
        stats = format_stats(data)
        stats.update({'unit': unit, 'startDate': iso_utc(start), 'endDate': iso_utc(end), 'timezone': tz})

        comparison_start, comparison_end = comparison_range(start, end)
        try:
            previous = await self._get(f'/sites/{site_id}/stats', {
                'startDate': iso_utc(comparison_start),
                'endDate': iso_utc(comparison_end),
                'unit': unit,
                'timezone': tz
            })
            stats['comparison'] = format_stats(previous)
        except ProviderError as e:
            logger.warning(f"edgeone.ai comparison window unavailable for site {site_id}: {str(e)}")
            stats['comparison'] = None
        return stats

    async def get_metrics(self, site_id: str, start: datetime, end: datetime,
                          field: str = 'pageviews') -> Dict:
        """Per-value breakdown of one metric field."""
        logger.info(f"edgeone.ai {field} metrics for site {site_id}")
        data = await self._get(f'/sites/{site_id}/metrics', {
            'startDate': iso_utc(start),
            'endDate': iso_utc(end),
            'field': field
        })
        metrics = format_metrics(data, field)
        metrics.update({'startDate': iso_utc(start), 'endDate': iso_utc(end)})
        return metrics
