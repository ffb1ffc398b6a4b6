"""
Tencent Cloud EdgeOne (TEO) API client.

Requests are signed with TC3-HMAC-SHA256. The credential scope carries the UTC
date of the request timestamp, so the timestamp is read from the clock for
every request; a cached date signs requests that the API rejects after midnight.
"""
import asyncio
import hashlib
import hmac
import json
import logging
import time
from datetime import datetime, timezone
from typing import Callable, Dict, List, Optional, Tuple

import aiohttp

from .errors import (
    ProviderAuthError,
    ProviderResponseError,
    ProviderTransientError,
)
from .graphql_queries import QueryWindow
from .types import MetricPoint, PROVIDER_EDGEONE

logger = logging.getLogger(__name__)

EDGEONE_HOST = 'teo.tencentcloudapi.com'
EDGEONE_ENDPOINT = f'https://{EDGEONE_HOST}/'
EDGEONE_SERVICE = 'teo'
EDGEONE_API_VERSION = '2022-09-01'
SIGNATURE_ALGORITHM = 'TC3-HMAC-SHA256'
CONTENT_TYPE = 'application/json'
SIGNED_HEADERS = 'content-type;host'

FLOW_METRICS = ('l7Flow_request', 'l7Flow_outFlux')
CACHE_METRICS = ('l7Cache_request', 'l7Cache_outFlux')

# Unified counter each EdgeOne metric feeds
METRIC_FIELD_MAP = {
    'l7Flow_request': 'requests',
    'l7Flow_outFlux': 'bytes',
    'l7Cache_request': 'cachedRequests',
    'l7Cache_outFlux': 'cachedBytes',
}

AUTH_ERROR_HINTS = {
    'AuthFailure.SignatureExpire': 'Signature expired, check the server clock and retry',
    'AuthFailure.SignatureFailure': 'Signature check failed, check the SecretKey',
    'AuthFailure.SecretIdNotFound': 'SecretId not found',
    'AuthFailure.InvalidSecretId': 'SecretId is invalid',
    'AuthFailure.UnauthorizedOperation': 'Credentials lack permission for EdgeOne',
}
DEFAULT_AUTH_HINT = 'Authentication failed, check SecretId and SecretKey'
VALID_SECRET_ID_PREFIXES = ('AKID', 'IKID')


def _sha256_hex(data: bytes) -> str:
    return hashlib.sha256(data).hexdigest()


def _hmac_sha256(key: bytes, message: str) -> bytes:
    return hmac.new(key, message.encode('utf-8'), hashlib.sha256).digest()


def request_date(timestamp: int) -> str:
    """UTC date (YYYY-MM-DD) of a unix timestamp, as used in the credential scope."""
    return datetime.fromtimestamp(timestamp, tz=timezone.utc).strftime('%Y-%m-%d')


def derive_signing_key(secret_key: str, date: str, service: str = EDGEONE_SERVICE) -> bytes:
    secret_date = _hmac_sha256(('TC3' + secret_key).encode('utf-8'), date)
    secret_service = _hmac_sha256(secret_date, service)
    return _hmac_sha256(secret_service, 'tc3_request')


def build_canonical_request(payload: bytes, method: str = 'POST', path: str = '/') -> str:
    canonical_headers = f'content-type:{CONTENT_TYPE}\nhost:{EDGEONE_HOST}\n'
    return '\n'.join([
        method,
        path,
        '',
        canonical_headers,
        SIGNED_HEADERS,
        _sha256_hex(payload),
    ])


def build_string_to_sign(canonical_request: str, timestamp: int, service: str = EDGEONE_SERVICE) -> str:
    scope = f'{request_date(timestamp)}/{service}/tc3_request'
    return '\n'.join([
        SIGNATURE_ALGORITHM,
        str(timestamp),
        scope,
        _sha256_hex(canonical_request.encode('utf-8')),
    ])


def sign_request(secret_key: str, payload: bytes, timestamp: int,
                 method: str = 'POST', path: str = '/') -> str:
    """Hex TC3 signature for one request body at one timestamp."""
    string_to_sign = build_string_to_sign(build_canonical_request(payload, method, path), timestamp)
    signing_key = derive_signing_key(secret_key, request_date(timestamp))
    return hmac.new(signing_key, string_to_sign.encode('utf-8'), hashlib.sha256).hexdigest()


def build_headers(secret_id: str, secret_key: str, action: str, payload: bytes,
                  timestamp: int, region: Optional[str] = None) -> Dict[str, str]:
    signature = sign_request(secret_key, payload, timestamp)
    scope = f'{request_date(timestamp)}/{EDGEONE_SERVICE}/tc3_request'
    headers = {
        'Authorization': (
            f'{SIGNATURE_ALGORITHM} Credential={secret_id}/{scope}, '
            f'SignedHeaders={SIGNED_HEADERS}, Signature={signature}'
        ),
        'Content-Type': CONTENT_TYPE,
        'Host': EDGEONE_HOST,
        'X-TC-Action': action,
        'X-TC-Timestamp': str(timestamp),
        'X-TC-Version': EDGEONE_API_VERSION,
    }
    if region:
        headers['X-TC-Region'] = region
    return headers


def mask_secret_id(secret_id: str) -> str:
    return (secret_id[:4] + '...') if secret_id else ''


def points_from_timing_data(response: Dict, granularity: str) -> Dict[str, MetricPoint]:
    """
    Fold a DescribeTimingL7*Data response into MetricPoints keyed by timestamp.

    ``granularity`` is "day" or "hour" and decides how timestamps are rendered.
    """
    points: Dict[str, MetricPoint] = {}
    for series in response.get('Data') or []:
        for metric in series.get('TypeValue') or []:
            field = METRIC_FIELD_MAP.get(metric.get('MetricName'))
            if field is None:
                continue
            for detail in metric.get('Detail') or []:
                raw_ts = detail.get('Timestamp')
                if raw_ts is None:
                    continue
                moment = datetime.fromtimestamp(int(raw_ts), tz=timezone.utc)
                if granularity == 'day':
                    key = moment.strftime('%Y-%m-%d')
                else:
                    key = moment.strftime('%Y-%m-%dT%H:00:00Z')
                point = points.setdefault(key, MetricPoint(timestamp=key))
                setattr(point, field, getattr(point, field) + max(int(detail.get('Value') or 0), 0))
    return points


class EdgeOneAPIClient:
    """Signed calls against the TEO API for one SecretId/SecretKey pair."""

    def __init__(
        self,
        session: aiohttp.ClientSession,
        secret_id: str,
        secret_key: str,
        region: Optional[str] = None,
        request_timeout: int = 30,
        endpoint: str = EDGEONE_ENDPOINT,
        clock: Callable[[], float] = time.time
    ):
        self.session = session
        self.secret_id = secret_id
        self.secret_key = secret_key
        self.region = region
        self.endpoint = endpoint
        self.clock = clock
        self.timeout = aiohttp.ClientTimeout(total=request_timeout)

    async def call(self, action: str, params: Dict) -> Dict:
        """Sign and send one API action, returning the ``Response`` member."""
        payload = json.dumps(params, separators=(',', ':')).encode('utf-8')
        timestamp = int(self.clock())
        headers = build_headers(self.secret_id, self.secret_key, action, payload, timestamp, self.region)

        logger.debug(f"EdgeOne {action} as {mask_secret_id(self.secret_id)} (region {self.region})")

        try:
            async with self.session.post(
                self.endpoint,
                data=payload,
                headers=headers,
                timeout=self.timeout
            ) as response:
                status = response.status
                text = await response.text()
        except asyncio.TimeoutError:
            raise ProviderTransientError('Request to EdgeOne timed out', provider=PROVIDER_EDGEONE)
        except aiohttp.ClientConnectorError as e:
            raise ProviderTransientError(
                f"Could not connect to the Tencent Cloud API: {str(e)}",
                provider=PROVIDER_EDGEONE
            )
        except aiohttp.ClientError as e:
            raise ProviderTransientError(
                f"EdgeOne request failed: {str(e) or type(e).__name__}",
                provider=PROVIDER_EDGEONE
            )

        if status == 429 or status >= 500:
            raise ProviderTransientError(f"HTTP {status} from EdgeOne", provider=PROVIDER_EDGEONE, status=status)

        try:
            body = json.loads(text)
        except json.JSONDecodeError as e:
            raise ProviderResponseError(
                f"Error parsing EdgeOne response: {str(e)}",
                provider=PROVIDER_EDGEONE,
                status=status
            )

        result = body.get('Response') if isinstance(body, dict) else None
        if not isinstance(result, dict):
            raise ProviderResponseError('EdgeOne response has no Response object', provider=PROVIDER_EDGEONE)

        error = result.get('Error')
        if error:
            code = str(error.get('Code', ''))
            message = str(error.get('Message', code))
            if code.startswith('AuthFailure'):
                hint = AUTH_ERROR_HINTS.get(code, DEFAULT_AUTH_HINT)
                raise ProviderAuthError(f"{code}: {message}", provider=PROVIDER_EDGEONE, status=status, hint=hint)
            if code.startswith('RequestLimitExceeded'):
                raise ProviderTransientError(f"{code}: {message}", provider=PROVIDER_EDGEONE, status=status)
            raise ProviderResponseError(f"{code}: {message}", provider=PROVIDER_EDGEONE, status=status)

        if status != 200:
            raise ProviderResponseError(f"HTTP {status} from EdgeOne", provider=PROVIDER_EDGEONE, status=status)

        return result

    async def describe_zones(self, limit: int = 50) -> List[Dict]:
        """List the sites visible to the credentials as ``{id, domain, name}``."""
        result = await self.call('DescribeZones', {'Limit': limit, 'Offset': 0})
        zones = result.get('Zones')
        if not isinstance(zones, list):
            raise ProviderResponseError('Zones field is not a list', provider=PROVIDER_EDGEONE)
        return [
            {'id': zone.get('ZoneId'), 'domain': zone.get('ZoneName'), 'name': zone.get('ZoneName')}
            for zone in zones
            if isinstance(zone, dict)
        ]

    async def _timing_points(self, action: str, metrics: Tuple[str, ...], zone_id: str,
                             start: str, end: str, interval: str) -> Dict[str, MetricPoint]:
        result = await self.call(action, {
            'StartTime': start,
            'EndTime': end,
            'MetricNames': list(metrics),
            'ZoneIds': [zone_id],
            'Interval': interval,
        })
        return points_from_timing_data(result, interval)

    async def fetch_series(self, zone_id: str, window: QueryWindow, interval: str) -> List[MetricPoint]:
        """Flow and cache counters for one site, merged per day or per hour."""
        if interval == 'day':
            start, end = f'{window.days_since}T00:00:00Z', window.hours_until
        else:
            start, end = window.hours_since, window.hours_until

        flow = await self._timing_points('DescribeTimingL7AnalysisData', FLOW_METRICS,
                                         zone_id, start, end, interval)
        cache = await self._timing_points('DescribeTimingL7CacheData', CACHE_METRICS,
                                          zone_id, start, end, interval)

        for key, cached in cache.items():
            point = flow.setdefault(key, MetricPoint(timestamp=key))
            point.cachedRequests += cached.cachedRequests
            point.cachedBytes += cached.cachedBytes

        return list(flow.values())


def validate_secret_id(secret_id: str) -> Optional[str]:
    """Return an error message when the SecretId has the wrong shape."""
    if not secret_id.startswith(VALID_SECRET_ID_PREFIXES):
        return 'SecretId is invalid, it should start with AKID or IKID'
    return None
