"""
Service container and request/response surface.

Everything is constructed once at process start and handed to consumers by
reference. In-memory state (metadata caches, per-account sync locks, session
watchers) lives on these objects for the lifetime of the process.
"""

from pathlib import Path
from typing import Any, Callable, Dict, List, Optional

from .config import ConfigManager, get_data_dir, is_portable
from .constants import LOCAL_STEAM_ACCOUNT_ID
from .database import DatabaseManager
from .discord_presence import PresenceBroadcaster
from .events import EventHub, EventKind
from .exceptions import AuthFlowError, ConfigurationError, ProviderError
from .library import LibraryService
from .local_scanner import LocalScanner
from .logger import setup_logger
from .metadata_service import MetadataService
from .models import (
    Account,
    AccountStatus,
    AuthResult,
    LaunchResult,
    PlaySession,
    Platform,
    PresenceStatus,
    PresenceUpdate,
    SyncResult,
    SyncType,
)
from .presence import PresenceArbiter
from .providers import (
    AuthWindow,
    ConsoleAuthWindow,
    CredentialVault,
    EpicClient,
    GogClient,
    HttpClient,
    ProviderClient,
    SteamClient,
)
from .secure_store import SecureStore
from .session_tracker import SessionTracker
from .social import SocialService
from .sync_orchestrator import AutoSyncScheduler, SyncOrchestrator
from .task_registry import TaskRegistry

logger = setup_logger()

METADATA_MAX_RETRIES = 3


class PlayHubServices:
    def __init__(
        self,
        config: Optional[ConfigManager] = None,
        data_dir: Optional[Path] = None,
        auth_window: Optional[AuthWindow] = None,
        providers: Optional[Dict[Platform, ProviderClient]] = None,
        presence_factory=None,
        process_lister=None,
    ):
        self.config = config or ConfigManager()
        self.data_dir = Path(data_dir) if data_dir else get_data_dir()
        self.secure_store = SecureStore.for_data_dir(self.data_dir, is_portable())
        self.db = DatabaseManager(self.data_dir / "playhub.db")
        self.events = EventHub()
        self.tasks = TaskRegistry()

        self.http = HttpClient(
            timeout=self.config.get_request_timeout(),
            max_retries=self.config.get_max_retries(),
        )
        self.metadata_http = HttpClient(max_retries=METADATA_MAX_RETRIES)
        self.vault = CredentialVault(self.secure_store, self.db)
        self.auth_window = auth_window or ConsoleAuthWindow()

        if providers is None:
            providers = {
                platform: cls(self.http, self.config, self.vault, self.auth_window)
                for platform, cls in (
                    (Platform.STEAM, SteamClient),
                    (Platform.EPIC, EpicClient),
                    (Platform.GOG, GogClient),
                )
            }
        self.providers = providers

        self.scanner = LocalScanner(self.db, self.config)
        self.orchestrator = SyncOrchestrator(self.db, self.events, self.providers, self.scanner)
        self.scheduler = AutoSyncScheduler(self.orchestrator, self.db, self.config, self.tasks, self.scanner)

        self.presence = PresenceArbiter(self.db, self.events, self.config.get_local_user_id)
        broadcaster_kwargs = {"presence_factory": presence_factory} if presence_factory else {}
        self.broadcaster = PresenceBroadcaster(self.config, **broadcaster_kwargs)

        tracker_kwargs: Dict[str, Any] = {
            "poll_interval": self.config.get_poll_interval(),
            "fallback_timeout": self.config.get_fallback_timeout(),
        }
        if process_lister is not None:
            tracker_kwargs["process_lister"] = process_lister
        self.sessions = SessionTracker(
            self.db, self.presence, self.broadcaster, self.events, self.tasks, **tracker_kwargs
        )

        self.metadata = MetadataService(self.db, self.metadata_http)
        self.library = LibraryService(self.db)
        self.social = SocialService(self.db, self.secure_store)
        self._started = False

    # ----- lifecycle -----

    async def start(self, background: bool = True):
        """
        Open the store and repair state left by an unclean exit.

        Args:
            background: also start the installed-game scan and the sync timers
        """
        if self._started:
            return
        await self.db.initialize()

        orphans = await self.db.close_orphaned_sessions()
        if orphans:
            logger.info(f"Closed {orphans} sessions left open by a previous run")
        interrupted = await self.db.fail_interrupted_syncs()
        if interrupted:
            logger.info(f"Marked {interrupted} interrupted syncs as failed")

        if background:
            self.tasks.spawn(self._initial_scan(), name="initial-scan", key="initial-scan")
            self.scheduler.start()
        self._started = True
        logger.info("PlayHub services started")

    async def _initial_scan(self):
        try:
            await self.scanner.scan_all()
        except Exception as e:
            logger.error(f"Initial installed-game scan failed: {e}", exc_info=True)

    async def shutdown(self):
        logger.info("Shutting down PlayHub services...")
        await self.tasks.cancel_all_tasks()
        await self.broadcaster.disconnect()
        await self.http.close()
        await self.metadata_http.close()
        await self.db.close()
        self._started = False

    async def __aenter__(self):
        await self.start()
        return self

    async def __aexit__(self, exc_type, exc, tb):
        await self.shutdown()

    def subscribe(self, kind: EventKind, callback: Callable[[Any], Any]) -> Callable[[], None]:
        return self.events.subscribe(kind, callback)

    # ----- sessions -----

    async def launch_game(self, game_id: str) -> LaunchResult:
        return await self.sessions.launch(game_id)

    async def get_session_history(self, game_id: str, limit: int = 50) -> List[PlaySession]:
        return await self.sessions.get_session_history(game_id, limit)

    async def get_current_session(self, game_id: str) -> Optional[PlaySession]:
        return await self.sessions.get_current_session(game_id)

    # ----- sync -----

    async def sync_now(
        self,
        account_id: Optional[str] = None,
        platform: Optional[Platform] = None,
        sync_type: SyncType = SyncType.FULL,
    ) -> SyncResult:
        """Sync one account, or the most recent connected account of ``platform``."""
        if account_id is None:
            if platform is None:
                return SyncResult(success=False, error="No account or platform given")
            account = await self.db.get_latest_account(platform)
            if account is None:
                return SyncResult(success=False, error=f"No connected {platform} account")
            account_id = account.id
        return await self.orchestrator.sync_account(account_id, sync_type)

    async def sync_all(self) -> List[SyncResult]:
        return await self.scheduler.sync_all_connected()

    # ----- accounts -----

    async def connect(self, platform: Platform, sync: bool = True) -> AuthResult:
        """
        Run the platform login and store the account with sealed credentials.
        A full sync of the new account is started in the background.
        """
        client = self.providers.get(platform)
        if client is None:
            return AuthResult(success=False, error=f"{platform} cannot be connected")

        try:
            session = await client.authenticate()
        except AuthFlowError as e:
            logger.warning(f"{client.tag} Login failed: {e.reason}")
            return AuthResult(success=False, error=str(e))
        except (ConfigurationError, ProviderError) as e:
            logger.warning(f"{client.tag} Login failed: {e}")
            return AuthResult(success=False, error=str(e))

        account_id = client.account_id_for(session.profile.user_id)
        existing = await self.db.get_account(account_id)
        credentials = session.credentials
        if existing is not None:
            credentials = client.merge_credentials(self.vault.open(existing.auth_data), credentials)

        account = await self.db.upsert_account(Account(
            id=account_id,
            platform=platform,
            username=session.profile.display_name,
            status=AccountStatus.CONNECTED,
            auth_data=self.vault.seal(credentials),
            avatar_url=session.profile.avatar_url,
        ))
        if account is None:
            return AuthResult(success=False, error="Could not save account")

        if platform is Platform.STEAM:
            moved = await self.db.rehome_games(LOCAL_STEAM_ACCOUNT_ID, account_id)
            if moved:
                logger.info(f"[STEAM] Moved {moved} locally found games to {account_id}")

        logger.info(f"{client.tag} Connected {account_id} ({account.username})")
        if sync:
            self.tasks.spawn(
                self.orchestrator.sync_account(account_id),
                name=f"sync-{account_id}",
                key=f"sync:{account_id}",
            )
        return AuthResult(success=True, account_id=account_id, username=account.username)

    async def disconnect(self, account_id: str) -> bool:
        account = await self.db.get_account(account_id)
        if account is None:
            return False
        client = self.providers.get(account.platform)
        if client is None:
            return await self.db.disconnect_account(account_id)
        await client.disconnect(self.db, account)
        return True

    async def get_accounts(self) -> List[Account]:
        return await self.db.get_accounts()

    async def save_steam_api_key(self, account_id: str, api_key: str) -> bool:
        account = await self.db.get_account(account_id)
        client = self.providers.get(Platform.STEAM)
        if account is None or account.platform is not Platform.STEAM or not isinstance(client, SteamClient):
            return False
        return await client.save_api_key(account, api_key)

    # ----- presence -----

    async def get_presence(self) -> PresenceStatus:
        return await self.presence.get()

    async def set_presence(self, update: PresenceUpdate) -> PresenceStatus:
        return await self.presence.set(update)

    def get_presence_enabled(self) -> bool:
        return self.broadcaster.is_enabled

    async def set_presence_enabled(self, enabled: bool):
        await self.broadcaster.set_enabled(enabled)

    # ----- local library -----

    async def scan_installed(self) -> int:
        return await self.scanner.scan_all()

    async def import_local_playtime(self) -> int:
        return await self.scanner.sync_steam_playtime()

    async def enrich_metadata(self) -> int:
        return await self.metadata.enrich_missing()


async def run_with_services(coro_factory, **kwargs):
    """Start a container, run ``coro_factory(services)`` and always shut down."""
    services = PlayHubServices(**kwargs)
    await services.start(background=False)
    try:
        return await coro_factory(services)
    finally:
        await services.shutdown()

