"""
Refresh cycle orchestration.

A cycle re-reads the config document, fetches every enabled zone concurrently,
and replaces the snapshot once all zones have reported. Only one cycle runs at
a time: a trigger that arrives while a cycle is running is dropped.

Cloudflare tokens are validated once per process, lazily, before the first
cycle. A token revoked after that is only noticed through zone fetch errors.
"""
import asyncio
import logging
import traceback
from datetime import datetime, timezone
from typing import Callable, Dict, List, Optional, Sequence

from .adapters import ProviderAdapter
from .config import merge_accounts, provider_enabled
from .errors import PersistenceError
from .formatters import format_snapshot_summary
from .graphql_queries import QueryWindow, build_query_window
from .storage import ConfigDocumentStore, SnapshotStore
from .types import (
    Account,
    AccountResult,
    CycleResult,
    Snapshot,
    Zone,
    ZoneResult,
    PROVIDER_CLOUDFLARE,
)

logger = logging.getLogger(__name__)


def _now() -> str:
    return datetime.now(timezone.utc).isoformat()


class AggregationScheduler:
    """Runs refresh cycles on a timer and on demand, one at a time."""

    def __init__(
        self,
        accounts: Sequence[Account],
        adapters: Dict[str, ProviderAdapter],
        snapshot_store: SnapshotStore,
        config_store: ConfigDocumentStore,
        interval: int = 3600,
        max_concurrency: int = 5,
        window_factory: Callable[[], QueryWindow] = build_query_window
    ):
        self.accounts = tuple(accounts)
        self.adapters = adapters
        self.snapshot_store = snapshot_store
        self.config_store = config_store
        self.interval = interval
        self.max_concurrency = max_concurrency
        self.window_factory = window_factory

        self._running = False
        self._tokens_validated = False
        self.last_result: Optional[CycleResult] = None

    @property
    def running(self) -> bool:
        return self._running

    def cycle_accounts(self, document: Dict) -> List[Account]:
        """Registry accounts first, then accounts added through the config document."""
        accounts = merge_accounts(self.accounts, document)
        enabled = [a for a in accounts if provider_enabled(document, a.provider) and a.provider in self.adapters]
        skipped = len(accounts) - len(enabled)
        if skipped:
            logger.info(f"Skipping {skipped} account(s) of disabled providers")
        return enabled

    async def trigger(self, reason: str = 'manual') -> Optional[CycleResult]:
        """Run one cycle now. Returns None when a cycle is already running."""
        # Test-and-set with no await in between; the event loop makes this atomic
        if self._running:
            logger.warning(f"Refresh ({reason}) dropped, a cycle is already running")
            return None
        self._running = True
        try:
            result = await self._run_cycle(reason)
        finally:
            self._running = False
        self.last_result = result
        return result

    async def _validate_tokens(self, accounts: List[Account]) -> None:
        adapter = self.adapters.get(PROVIDER_CLOUDFLARE)
        targets = [a for a in accounts if a.provider == PROVIDER_CLOUDFLARE]
        if adapter is None or not targets:
            return

        logger.info(f"Validating tokens of {len(targets)} Cloudflare account(s)")
        for account in targets:
            try:
                await adapter.validate_account(account)
            except Exception as e:
                logger.error(f"Token validation for {account.name} raised: {str(e)}")
        logger.info("Token validation finished")

    async def _fetch_zone(self, semaphore: asyncio.Semaphore, account: Account,
                          zone: Zone, window: QueryWindow) -> ZoneResult:
        async with semaphore:
            return await self.adapters[account.provider].fetch_zone_metrics(account, zone, window)

    async def _run_cycle(self, reason: str) -> CycleResult:
        started_at = _now()
        logger.info(f"Refresh cycle started ({reason})")

        try:
            document = self.config_store.load()
            accounts = self.cycle_accounts(document)

            if not self._tokens_validated:
                self._tokens_validated = True
                await self._validate_tokens(accounts)

            window = self.window_factory()
            semaphore = asyncio.Semaphore(self.max_concurrency)

            tasks = [
                [asyncio.ensure_future(self._fetch_zone(semaphore, account, zone, window)) for zone in account.zones]
                for account in accounts
            ]
            await asyncio.gather(*[task for account_tasks in tasks for task in account_tasks])

            snapshot = Snapshot(accounts=[
                AccountResult(name=account.name, zones=[task.result() for task in account_tasks])
                for account, account_tasks in zip(accounts, tasks)
            ])
        except Exception as e:
            logger.error(f"Refresh cycle failed: {str(e)}")
            logger.error(traceback.format_exc())
            return CycleResult(success=False, started_at=started_at, finished_at=_now(), reason=str(e))

        zones = sum(len(a.zones) for a in snapshot.accounts)
        errors = sum(1 for z in snapshot.iter_zones() if z.error)

        try:
            self.snapshot_store.replace(snapshot)
        except PersistenceError as e:
            logger.error(f"Refresh cycle could not save the snapshot: {str(e)}")
            return CycleResult(success=False, started_at=started_at, finished_at=_now(),
                               zones=zones, errors=errors, reason=str(e))

        logger.info(f"""
Refresh cycle finished:
-------------------
Accounts: {len(snapshot.accounts)}
Zones: {zones}
Zones with errors: {errors}
{format_snapshot_summary(snapshot)}
""")
        return CycleResult(success=True, started_at=started_at, finished_at=_now(), zones=zones, errors=errors)

    async def run_forever(self, run_immediately: bool = True) -> None:
        """Fixed-interval timer. Cancel the task to stop it."""
        if run_immediately:
            await self.trigger('startup')
        while True:
            await asyncio.sleep(self.interval)
            await self.trigger('scheduled')
