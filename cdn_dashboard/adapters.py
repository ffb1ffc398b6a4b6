import logging
import traceback
from typing import Dict, Optional, Type

import aiohttp

from .api_client import CloudflareAPIClient
from .config import DEFAULT_EDGEONE_REGION
from .edgeone_client import EDGEONE_ENDPOINT, EdgeOneAPIClient, mask_secret_id, validate_secret_id
from .errors import ProviderAuthError, ProviderError
from .graphql_queries import QueryWindow
from .types import (
    Account,
    Zone,
    ZoneResult,
    normalize_points,
    PROVIDER_CLOUDFLARE,
    PROVIDER_EDGEONE,
)

logger = logging.getLogger(__name__)


def describe_error(error: Exception) -> str:
    """Short, user-facing text for a failed fetch."""
    if isinstance(error, ProviderAuthError) and error.hint:
        return f"{error.hint} ({str(error)})"
    if isinstance(error, ProviderError):
        return str(error)
    return f"{type(error).__name__}: {str(error)}" if str(error) else type(error).__name__


class ProviderAdapter:
    """Fetches one zone's metrics and reports it in the unified shape."""

    provider: str = ''

    def __init__(self, session: aiohttp.ClientSession, request_timeout: int = 30, validation_timeout: int = 15):
        self.session = session
        self.request_timeout = request_timeout
        self.validation_timeout = validation_timeout

    async def _fetch(self, account: Account, zone: Zone, window: QueryWindow) -> ZoneResult:
        raise NotImplementedError

    async def fetch_zone_metrics(self, account: Account, zone: Zone, window: QueryWindow) -> ZoneResult:
        """Never raises: every failure becomes ``ZoneResult.error``."""
        try:
            result = await self._fetch(account, zone, window)
        except ProviderError as e:
            logger.error(f"Zone {zone.domain} ({account.name}) failed: {str(e)}")
            return ZoneResult.failed(zone, describe_error(e))
        except Exception as e:
            logger.error(f"Unexpected error for zone {zone.domain} ({account.name}): {str(e)}")
            logger.error(traceback.format_exc())
            return ZoneResult.failed(zone, describe_error(e))

        logger.info(f"Zone {zone.domain} fetched ({len(result.days)} days, {len(result.hours)} hours)")
        return result

    async def validate_account(self, account: Account) -> Dict:
        return await self.validate_credentials(dict(account.credentials))

    async def validate_credentials(self, credentials: Dict) -> Dict:
        """Onboarding check: ``{'valid': True, ...}`` or ``{'valid': False, 'error': ...}``."""
        raise NotImplementedError


class CloudflareAdapter(ProviderAdapter):
    provider = PROVIDER_CLOUDFLARE

    def __init__(self, session: aiohttp.ClientSession, request_timeout: int = 30,
                 validation_timeout: int = 15, client: Optional[CloudflareAPIClient] = None):
        super().__init__(session, request_timeout, validation_timeout)
        self.client = client or CloudflareAPIClient(
            session,
            request_timeout=request_timeout,
            validation_timeout=validation_timeout
        )

    async def _fetch(self, account: Account, zone: Zone, window: QueryWindow) -> ZoneResult:
        token = account.credential('token')
        days = await self.client.fetch_daily(token, zone.zone_id, window)
        hours = await self.client.fetch_hourly(token, zone.zone_id, window)
        return ZoneResult(
            zone_id=zone.zone_id,
            domain=zone.domain,
            days=normalize_points(days),
            hours=normalize_points(hours),
        )

    async def validate_credentials(self, credentials: Dict) -> Dict:
        return await self.client.validate_token(str(credentials.get('token') or '').strip())

    async def validate_account(self, account: Account) -> Dict:
        """Check the token and, when it works, which configured zones it can see."""
        validation = await self.client.validate_token(account.credential('token'))
        if not validation.get('valid'):
            logger.error(f"""
Token validation failed for account {account.name}:
-------------------------------
Error: {validation.get('error')}
HTTP Status: {validation.get('httpStatus')}
Check that the token is correct, not expired, and has Analytics:Read on its zones.
""")
            return validation

        logger.info(f"Account {account.name} token valid, {validation.get('accessibleZones')} zone(s) accessible")
        for zone in account.zones:
            info = await self.client.get_zone_info(account.credential('token'), zone.zone_id)
            if info:
                logger.info(f"  Zone {zone.domain} ({zone.zone_id}) accessible")
            else:
                logger.error(f"  Zone {zone.domain} ({zone.zone_id}) not accessible")
        return validation


class EdgeOneAdapter(ProviderAdapter):
    provider = PROVIDER_EDGEONE
    endpoint = EDGEONE_ENDPOINT

    def client_for(self, account: Account, request_timeout: Optional[int] = None) -> EdgeOneAPIClient:
        return EdgeOneAPIClient(
            self.session,
            account.credential('secretId'),
            account.credential('secretKey'),
            region=account.credential('region') or None,
            request_timeout=request_timeout or self.request_timeout,
            endpoint=self.endpoint
        )

    async def validate_credentials(self, credentials: Dict) -> Dict:
        secret_id = str(credentials.get('secretId') or '').strip()
        secret_key = str(credentials.get('secretKey') or '').strip()
        region = str(credentials.get('region') or DEFAULT_EDGEONE_REGION)

        if not secret_id or not secret_key:
            return {'valid': False, 'error': 'SecretId and SecretKey are required'}
        shape_error = validate_secret_id(secret_id)
        if shape_error:
            return {'valid': False, 'error': shape_error}

        logger.info(f"Validating EdgeOne credentials {mask_secret_id(secret_id)} in {region}")
        account = Account.create('validation', PROVIDER_EDGEONE, {
            'secretId': secret_id, 'secretKey': secret_key, 'region': region
        })
        try:
            sites = await self.client_for(account, request_timeout=self.validation_timeout).describe_zones()
        except ProviderAuthError as e:
            logger.error(f"EdgeOne validation rejected: {str(e)}")
            return {'valid': False, 'error': e.hint or str(e)}
        except ProviderError as e:
            logger.error(f"EdgeOne validation failed: {str(e)}")
            return {'valid': False, 'error': str(e)}

        logger.info(f"EdgeOne credentials valid, {len(sites)} site(s)")
        return {'valid': True, 'user': {'id': mask_secret_id(secret_id)}, 'sites': sites}

    async def _fetch(self, account: Account, zone: Zone, window: QueryWindow) -> ZoneResult:
        client = self.client_for(account)
        logger.debug(f"EdgeOne site {zone.domain} with {mask_secret_id(account.credential('secretId'))}")
        days = await client.fetch_series(zone.zone_id, window, 'day')
        hours = await client.fetch_series(zone.zone_id, window, 'hour')
        return ZoneResult(
            zone_id=zone.zone_id,
            domain=zone.domain,
            days=normalize_points(days),
            hours=normalize_points(hours),
        )


ADAPTERS: Dict[str, Type[ProviderAdapter]] = {
    PROVIDER_CLOUDFLARE: CloudflareAdapter,
    PROVIDER_EDGEONE: EdgeOneAdapter,
}


def get_adapter(provider: str, session: aiohttp.ClientSession,
                request_timeout: int = 30, validation_timeout: int = 15) -> ProviderAdapter:
    try:
        adapter_cls = ADAPTERS[provider]
    except KeyError:
        raise ValueError(f"No adapter for provider: {provider}")
    return adapter_cls(session, request_timeout=request_timeout, validation_timeout=validation_timeout)


def build_adapters(session: aiohttp.ClientSession, request_timeout: int = 30,
                   validation_timeout: int = 15) -> Dict[str, ProviderAdapter]:
    return {
        provider: get_adapter(provider, session, request_timeout, validation_timeout)
        for provider in ADAPTERS
    }
