# api_client.py
import asyncio
import json
import logging
from typing import Dict, List, Optional, Any

import aiohttp

from .errors import (
    ProviderAuthError,
    ProviderResponseError,
    ProviderTransientError,
)
from .graphql_queries import (
    GRAPHQL_URL,
    ZONE_DAILY_QUERY,
    ZONE_HOURLY_QUERY,
    TOKEN_ZONES_QUERY,
    ZONE_INFO_QUERY,
    QueryWindow,
    daily_variables,
    hourly_variables,
)
from .types import MetricPoint, PROVIDER_CLOUDFLARE

logger = logging.getLogger(__name__)

AUTH_HINTS = {
    401: 'Token invalid or expired',
    403: 'Token lacks permission (needs Analytics:Read on the zone)',
}


def parse_groups(groups: Any, dimension: str) -> List[MetricPoint]:
    """Translate httpRequests1dGroups / 1hGroups rows into MetricPoints."""
    if not isinstance(groups, list):
        raise ProviderResponseError(
            f"Expected a list of groups, got {type(groups).__name__}",
            provider=PROVIDER_CLOUDFLARE
        )

    points = []
    for group in groups:
        if not isinstance(group, dict):
            logger.warning(f"Skipping invalid group type: {type(group)}")
            continue
        timestamp = (group.get('dimensions') or {}).get(dimension)
        if not timestamp:
            logger.warning(f"Skipping group without {dimension}")
            continue
        sums = group.get('sum') or {}
        points.append(MetricPoint(
            timestamp=str(timestamp),
            requests=sums.get('requests'),
            bytes=sums.get('bytes'),
            threats=sums.get('threats'),
            cachedRequests=sums.get('cachedRequests'),
            cachedBytes=sums.get('cachedBytes'),
        ))
    return points


def _first_zone(data: Dict) -> Dict:
    zones = ((data.get('viewer') or {}).get('zones')) or []
    if not zones:
        raise ProviderResponseError(
            'Zone not found or not accessible with this token',
            provider=PROVIDER_CLOUDFLARE
        )
    return zones[0]


class CloudflareAPIClient:
    """Async client for the Cloudflare GraphQL Analytics API (bearer-token auth)."""

    def __init__(
        self,
        session: aiohttp.ClientSession,
        request_timeout: int = 30,
        validation_timeout: int = 15,
        graphql_url: str = GRAPHQL_URL
    ):
        self.session = session
        self.graphql_url = graphql_url
        self.request_timeout = aiohttp.ClientTimeout(total=request_timeout)
        self.validation_timeout = aiohttp.ClientTimeout(total=validation_timeout)

    async def _post_graphql(
        self,
        token: str,
        query: str,
        variables: Optional[Dict] = None,
        timeout: Optional[aiohttp.ClientTimeout] = None
    ) -> Dict:
        """Run one GraphQL query and return its ``data`` member."""
        headers = {
            'Authorization': f'Bearer {token}',
            'Content-Type': 'application/json'
        }
        body = {'query': query}
        if variables:
            body['variables'] = variables

        try:
            async with self.session.post(
                self.graphql_url,
                headers=headers,
                json=body,
                timeout=timeout or self.request_timeout
            ) as response:
                status = response.status
                text = await response.text()
        except asyncio.TimeoutError:
            raise ProviderTransientError('Request to Cloudflare timed out', provider=PROVIDER_CLOUDFLARE)
        except aiohttp.ClientError as e:
            raise ProviderTransientError(
                f"Could not reach Cloudflare: {str(e) or type(e).__name__}",
                provider=PROVIDER_CLOUDFLARE
            )

        if status in AUTH_HINTS:
            raise ProviderAuthError(
                f"HTTP {status}: {AUTH_HINTS[status]}",
                provider=PROVIDER_CLOUDFLARE,
                status=status,
                hint=AUTH_HINTS[status]
            )
        if status == 429 or status >= 500:
            raise ProviderTransientError(
                f"HTTP {status} from Cloudflare",
                provider=PROVIDER_CLOUDFLARE,
                status=status
            )
        if status != 200:
            logger.error(f"""
HTTP Error:
----------
Status Code: {status}
Response Body: {text[:2000]}
""")
            raise ProviderResponseError(f"HTTP {status} from Cloudflare", provider=PROVIDER_CLOUDFLARE, status=status)

        try:
            payload = json.loads(text)
        except json.JSONDecodeError as e:
            raise ProviderResponseError(
                f"Error parsing JSON response: {str(e)}",
                provider=PROVIDER_CLOUDFLARE
            )

        if not isinstance(payload, dict):
            raise ProviderResponseError('Unexpected response body', provider=PROVIDER_CLOUDFLARE)

        errors = payload.get('errors')
        if errors:
            logger.error(f"""
GraphQL Errors:
-------------
{json.dumps(errors, indent=2)}
Query Variables: {json.dumps(variables or {}, indent=2)}
""")
            messages = '; '.join(
                str(e.get('message', e)) if isinstance(e, dict) else str(e)
                for e in errors
            )
            raise ProviderResponseError(messages or 'GraphQL error', provider=PROVIDER_CLOUDFLARE)

        data = payload.get('data')
        if not isinstance(data, dict):
            raise ProviderResponseError('Response has no data', provider=PROVIDER_CLOUDFLARE)
        return data

    async def fetch_daily(self, token: str, zone_id: str, window: QueryWindow) -> List[MetricPoint]:
        data = await self._post_graphql(token, ZONE_DAILY_QUERY, daily_variables(zone_id, window))
        return parse_groups(_first_zone(data).get('httpRequests1dGroups') or [], 'date')

    async def fetch_hourly(self, token: str, zone_id: str, window: QueryWindow) -> List[MetricPoint]:
        data = await self._post_graphql(token, ZONE_HOURLY_QUERY, hourly_variables(zone_id, window))
        return parse_groups(_first_zone(data).get('httpRequests1hGroups') or [], 'datetime')

    async def validate_token(self, token: str) -> Dict:
        """Probe a token by listing the zones it can see."""
        if not token:
            return {'valid': False, 'error': 'Token is empty'}

        try:
            data = await self._post_graphql(token, TOKEN_ZONES_QUERY, timeout=self.validation_timeout)
        except ProviderAuthError as e:
            logger.error(f"Token validation rejected: {str(e)}")
            return {'valid': False, 'error': e.hint or str(e), 'httpStatus': e.status}
        except ProviderTransientError as e:
            logger.error(f"Token validation failed: {str(e)}")
            result = {'valid': False, 'error': str(e)}
            if e.status:
                result['httpStatus'] = e.status
            return result
        except ProviderResponseError as e:
            logger.error(f"Token validation failed: {str(e)}")
            return {'valid': False, 'error': f"API access denied: {str(e)}"}

        zones = (data.get('viewer') or {}).get('zones')
        if not isinstance(zones, list):
            return {'valid': False, 'error': 'Token has no zone access'}

        logger.info(f"Token can access {len(zones)} zone(s)")
        return {
            'valid': True,
            'accessibleZones': len(zones),
            'zones': zones
        }

    async def get_zone_info(self, token: str, zone_id: str) -> Optional[Dict]:
        """Return the zone if the token can see it, None otherwise."""
        try:
            data = await self._post_graphql(
                token,
                ZONE_INFO_QUERY,
                {'zoneId': zone_id},
                timeout=self.validation_timeout
            )
            return _first_zone(data)
        except (ProviderAuthError, ProviderTransientError, ProviderResponseError) as e:
            logger.error(f"Zone {zone_id} lookup failed: {str(e)}")
            return None
