"""
Sync Orchestrator

Runs one end-to-end synchronization of a connected account:
profile -> friends -> library -> inventory. Stages are independent; a failed
stage is recorded as the run's last error and the next stage still runs.
Every run writes exactly one sync_history row that ends as success or failed.

Syncs of the same account are serialized with a per-account lock, so the
manual "sync now" path and the auto-sync timer can overlap safely.
"""

import asyncio
from typing import Awaitable, Callable, Dict, List, Optional

from .config import ConfigManager
from .constants import LOCAL_ACCOUNT_ID, LOCAL_PLAYTIME_SYNC_INTERVAL, LOCAL_STEAM_ACCOUNT_ID
from .database import DatabaseManager
from .events import EventHub, EventKind
from .local_scanner import LocalScanner
from .logger import setup_logger
from .models import (
    Account,
    Notification,
    Platform,
    SyncProgress,
    SyncResult,
    SyncStatus,
    SyncType,
)
from .providers.base import ProviderClient
from .task_registry import TaskRegistry

logger = setup_logger()

PLATFORM_NAMES = {
    Platform.STEAM: "Steam",
    Platform.EPIC: "Epic",
    Platform.GOG: "GOG",
    Platform.PLAYHUB: "PlayHub",
}

# Accounts that own locally discovered games and have nothing to sync remotely
PLACEHOLDER_ACCOUNTS = {LOCAL_STEAM_ACCOUNT_ID, LOCAL_ACCOUNT_ID}


class SyncOrchestrator:
    def __init__(
        self,
        db: DatabaseManager,
        events: EventHub,
        providers: Dict[Platform, ProviderClient],
        scanner: Optional[LocalScanner] = None,
    ):
        self.db = db
        self.events = events
        self.providers = providers
        self.scanner = scanner
        self._locks: Dict[str, asyncio.Lock] = {}

    def _lock_for(self, account_id: str) -> asyncio.Lock:
        lock = self._locks.get(account_id)
        if lock is None:
            lock = self._locks[account_id] = asyncio.Lock()
        return lock

    def is_syncing(self, account_id: str) -> bool:
        lock = self._locks.get(account_id)
        return lock is not None and lock.locked()

    async def _progress(self, account: Account, message: str, percent: int):
        await self.events.emit(
            EventKind.SYNC_PROGRESS,
            SyncProgress(message=message, percent=percent, platform=account.platform, account_id=account.id),
        )

    async def _notify(self, kind: str, title: str, body: str, **data):
        await self.events.emit(EventKind.NOTIFICATION, Notification(kind=kind, title=title, body=body, data=data))

    async def sync_account(self, account_id: str, sync_type: SyncType = SyncType.FULL) -> SyncResult:
        """
        Synchronize one account. Waits if a sync of the same account is running.

        Returns:
            SyncResult; expected failures are reported in it, never raised
        """
        account = await self.db.get_account(account_id)
        if account is None:
            return SyncResult(success=False, error="Account not found")
        if not account.is_connected:
            return SyncResult(success=False, error="Account is disconnected")
        client = self.providers.get(account.platform)
        if client is None:
            return SyncResult(success=False, error=f"No provider for {account.platform}")

        lock = self._lock_for(account.id)
        if lock.locked():
            logger.info(f"Sync of {account.id} already running, waiting for it to finish")
        async with lock:
            # Re-read: credentials may have been refreshed by the run we waited on
            account = await self.db.get_account(account_id) or account
            return await self._run(account, client, sync_type)

    async def _run(self, account: Account, client: ProviderClient, sync_type: SyncType) -> SyncResult:
        name = PLATFORM_NAMES.get(account.platform, account.platform.value)
        total = 0
        last_error: Optional[str] = None
        history_id: Optional[int] = None

        async def stage(label: str, percent: int, step: Callable[[], Awaitable[int]]):
            nonlocal total, last_error
            await self._progress(account, label, percent)
            try:
                total += await step()
            except Exception as e:
                last_error = str(e) or type(e).__name__
                logger.warning(f"{client.tag} {label} failed for {account.id}: {last_error}")

        try:
            history_id = await self._start_history(account, sync_type)
            logger.info(f"{client.tag} Starting {sync_type} sync of {account.id}")
            await self._progress(account, f"Starting {name} sync...", 0)

            await stage("Updating profile...", 10, lambda: self._sync_profile(account, client))
            await stage("Syncing friends list...", 30, lambda: self._sync_friends(account, client, name))
            if sync_type is SyncType.FULL:
                await stage("Syncing game library...", 60, lambda: self._sync_library(account, client, name))
                if client.supports_inventory:
                    await stage("Syncing inventory...", 80, lambda: self._sync_inventory(account, client))

            await self.db.mark_account_synced(account.id)
        except asyncio.CancelledError:
            last_error = "Sync cancelled"
            raise
        except Exception as e:
            last_error = str(e) or type(e).__name__
            logger.error(f"{client.tag} Sync of {account.id} aborted: {e}", exc_info=True)
        finally:
            if history_id is not None:
                if last_error is None:
                    await self.db.finish_sync_history(history_id, SyncStatus.SUCCESS, total)
                else:
                    await self.db.finish_sync_history(history_id, SyncStatus.FAILED, total, last_error)

        if last_error is not None:
            await self._progress(account, f"Sync failed: {last_error}", 0)
            await self._notify("sync", f"{name} sync failed", last_error, account_id=account.id)
            return SyncResult(success=False, items_synced=total, error=last_error, history_id=history_id)

        await self._progress(account, "Sync complete!", 100)
        logger.info(f"{client.tag} Sync of {account.id} complete: {total} items")
        return SyncResult(success=True, items_synced=total, history_id=history_id)

    async def _start_history(self, account: Account, sync_type: SyncType) -> int:
        """
        Write the in_progress row. The insert commits in a worker thread even if
        this task is cancelled, so a cancelled caller still waits for its id.
        """
        insert = asyncio.ensure_future(self.db.start_sync_history(account.platform, account.id, sync_type))
        try:
            return await asyncio.shield(insert)
        except asyncio.CancelledError:
            history_id = None
            try:
                history_id = await insert
            except Exception as e:
                logger.error(f"Sync history row for {account.id} was not written: {e}")
            if history_id is not None:
                await self.db.finish_sync_history(history_id, SyncStatus.FAILED, 0, "Sync cancelled")
            raise

    # ----- stages -----

    async def _sync_profile(self, account: Account, client: ProviderClient) -> int:
        profile = await client.with_auth(account, lambda creds: client.fetch_profile(account, creds))
        if profile.display_name != account.username or (profile.avatar_url and profile.avatar_url != account.avatar_url):
            account.username = profile.display_name
            account.avatar_url = profile.avatar_url or account.avatar_url
            # auth_data=None keeps the stored blob
            await self.db.upsert_account(Account(
                id=account.id,
                platform=account.platform,
                username=account.username,
                status=account.status,
                avatar_url=account.avatar_url,
            ))
        return 0

    async def _sync_friends(self, account: Account, client: ProviderClient, name: str) -> int:
        friends = await client.with_auth(account, lambda creds: client.fetch_friends(account, creds))
        if not friends:
            return 0
        new_ids = await self.db.upsert_friends(account.id, account.platform, friends)
        if new_ids:
            await self._notify(
                "friend",
                f"New {name} Friends",
                f"Found {len(new_ids)} new friends on {name}.",
                friend_ids=new_ids,
            )
        return len(friends)

    async def _sync_library(self, account: Account, client: ProviderClient, name: str) -> int:
        games = await client.with_auth(account, lambda creds: client.fetch_library(account, creds))
        outcome = await self.db.merge_games(account.id, account.platform, games)
        if outcome.inserted:
            await self._notify(
                "game",
                f"New {name} Games",
                f"Added {len(outcome.inserted)} new games to your library.",
                game_ids=outcome.inserted,
            )
        await self._scan_installed(account.platform)
        return len(games)

    async def _sync_inventory(self, account: Account, client: ProviderClient) -> int:
        items = await client.with_auth(account, lambda creds: client.fetch_inventory(account, creds))
        return await self.db.upsert_inventory(account.id, account.platform, items)

    async def _scan_installed(self, platform: Platform):
        """Refresh installed flags after a library merge; never fails the stage."""
        if self.scanner is None:
            return
        scan = {Platform.STEAM: self.scanner.scan_steam, Platform.GOG: self.scanner.scan_gog}.get(platform)
        if scan is None:
            return
        try:
            await scan()
        except Exception as e:
            logger.warning(f"Installed scan after {platform} sync failed: {e}")


class AutoSyncScheduler:
    """
    Background timers: a full sync of every connected account on the
    configured interval, and the local Steam playtime import every five minutes.
    """

    AUTO_SYNC_KEY = "auto-sync"
    LOCAL_PLAYTIME_KEY = "local-playtime"

    def __init__(
        self,
        orchestrator: SyncOrchestrator,
        db: DatabaseManager,
        config: ConfigManager,
        tasks: TaskRegistry,
        scanner: Optional[LocalScanner] = None,
        initial_delay: float = 5.0,
    ):
        self.orchestrator = orchestrator
        self.db = db
        self.config = config
        self.tasks = tasks
        self.scanner = scanner
        self.initial_delay = initial_delay

    def start(self):
        if self.config.get_auto_sync_enabled():
            self.tasks.spawn(self._auto_sync_loop(), name="auto-sync", key=self.AUTO_SYNC_KEY)
            logger.info(f"Auto-sync every {self.config.get_auto_sync_interval() / 60:.0f} minutes")
        if self.scanner is not None:
            self.tasks.spawn(self._local_playtime_loop(), name="local-playtime", key=self.LOCAL_PLAYTIME_KEY)

    def stop(self):
        self.tasks.cancel(self.AUTO_SYNC_KEY)
        self.tasks.cancel(self.LOCAL_PLAYTIME_KEY)

    async def sync_all_connected(self) -> List[SyncResult]:
        accounts = [
            account for account in await self.db.get_accounts(connected_only=True)
            if account.id not in PLACEHOLDER_ACCOUNTS and account.platform in self.orchestrator.providers
        ]
        if not accounts:
            logger.debug("Auto-sync: no connected accounts")
            return []
        logger.info(f"Auto-sync: syncing {len(accounts)} accounts")
        return await asyncio.gather(*[self.orchestrator.sync_account(account.id) for account in accounts])

    async def _auto_sync_loop(self):
        interval = self.config.get_auto_sync_interval()
        while True:
            await asyncio.sleep(interval)
            try:
                await self.sync_all_connected()
            except Exception as e:
                logger.error(f"Auto-sync run failed: {e}", exc_info=True)

    async def _local_playtime_loop(self):
        await asyncio.sleep(self.initial_delay)
        while True:
            try:
                await self.scanner.sync_steam_playtime()
            except Exception as e:
                logger.error(f"Local Steam playtime import failed: {e}", exc_info=True)
            await asyncio.sleep(LOCAL_PLAYTIME_SYNC_INTERVAL)
