import logging
from typing import Dict, Optional, Sequence

import aiohttp

from .adapters import ProviderAdapter, build_adapters
from .config import Settings, load_accounts
from .credentials import CredentialStore
from .scheduler import AggregationScheduler
from .storage import ConfigDocumentStore, SnapshotStore
from .types import Account

logger = logging.getLogger(__name__)


class AppContext:
    """
    Everything a request handler or the scheduler needs, passed explicitly.

    Owns the account registry resolved at startup, both document stores, the
    credential store (and through it the active session) and, once started,
    the shared HTTP session, the provider adapters and the scheduler.
    """

    def __init__(self, settings: Settings, accounts: Optional[Sequence[Account]] = None):
        self.settings = settings
        self.accounts = tuple(accounts) if accounts is not None else load_accounts(
            settings.env, settings.zones_file
        )
        self.snapshot_store = SnapshotStore(settings.snapshot_path)
        self.config_store = ConfigDocumentStore(settings.config_path)
        self.credentials = CredentialStore(self.config_store)

        self.http_session: Optional[aiohttp.ClientSession] = None
        self.adapters: Dict[str, ProviderAdapter] = {}
        self.scheduler: Optional[AggregationScheduler] = None

    async def start(self, adapters: Optional[Dict[str, ProviderAdapter]] = None) -> None:
        """Open the shared HTTP session and wire adapters into the scheduler."""
        if self.http_session is None:
            self.http_session = aiohttp.ClientSession()
        self.adapters = adapters if adapters is not None else build_adapters(
            self.http_session,
            request_timeout=self.settings.request_timeout,
            validation_timeout=self.settings.validation_timeout
        )
        self.scheduler = AggregationScheduler(
            self.accounts,
            self.adapters,
            self.snapshot_store,
            self.config_store,
            interval=self.settings.refresh_interval,
            max_concurrency=self.settings.max_concurrency
        )

        logger.info(f"Configuration loaded: {len(self.accounts)} account(s)")
        for index, account in enumerate(self.accounts, start=1):
            logger.info(f"  Account {index}: {account.name} [{account.provider}] ({len(account.zones)} zones)")

    async def close(self) -> None:
        if self.http_session is not None:
            await self.http_session.close()
            self.http_session = None
