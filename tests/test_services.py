"""
Tests for the service container: lifecycle, account connection and the
sync entry points. Providers are replaced with in-memory fakes.
"""

import pytest
import pytest_asyncio

from conftest import FakeProvider
from playhub.config import ConfigManager
from playhub.constants import LOCAL_STEAM_ACCOUNT_ID
from playhub.exceptions import AuthFailure, AuthFlowError, ProviderError
from playhub.models import (
    Account,
    AccountStatus,
    Credentials,
    IntentState,
    Platform,
    PresenceSource,
    PresenceUpdate,
    RemoteGame,
    SyncStatus,
    SyncType,
    now_iso,
)
from playhub.services import PlayHubServices, run_with_services


@pytest.fixture(autouse=True)
def no_local_clients(monkeypatch):
    monkeypatch.delenv("PORTABLE_EXECUTABLE_DIR", raising=False)
    monkeypatch.delenv("PLAYHUB_PORTABLE", raising=False)
    monkeypatch.setattr("playhub.local_scanner.detect_steam_paths", lambda config: [])


def make_services(tmp_path):
    services = PlayHubServices(
        config=ConfigManager(tmp_path / "config.ini"),
        data_dir=tmp_path,
        providers={},
    )
    steam = FakeProvider(services.vault, games=[RemoteGame(platform_game_id="10", title="Alpha")])
    services.providers[Platform.STEAM] = steam
    return services, steam


@pytest_asyncio.fixture
async def services(tmp_path):
    container, _ = make_services(tmp_path)
    await container.start(background=False)
    yield container
    await container.shutdown()


@pytest.fixture
def steam(services):
    return services.providers[Platform.STEAM]


class TestLifecycle:
    @pytest.mark.asyncio
    async def test_start_repairs_unclean_exit(self, tmp_path):
        first, _ = make_services(tmp_path)
        await first.start(background=False)
        await first.db.upsert_account(Account(id="steam_1", platform=Platform.STEAM, username="P"))
        await first.db.merge_games("steam_1", Platform.STEAM, [RemoteGame(platform_game_id="1", title="A")])
        session_id = await first.db.open_session("steam_1", now_iso())
        history_id = await first.db.start_sync_history(Platform.STEAM, "steam_1", SyncType.FULL)
        await first.shutdown()

        second, _ = make_services(tmp_path)
        await second.start(background=False)
        try:
            session = await second.db.get_session(session_id)
            assert session.duration_seconds == 0
            assert not session.is_open
            assert (await second.db.get_sync_entry(history_id)).status is SyncStatus.FAILED
        finally:
            await second.shutdown()

    @pytest.mark.asyncio
    async def test_background_start_registers_tasks(self, tmp_path):
        container, _ = make_services(tmp_path)
        await container.start()
        try:
            assert container.tasks.get(container.scheduler.AUTO_SYNC_KEY) is not None
        finally:
            await container.shutdown()
        assert container.tasks.get_active_task_count() == 0

    @pytest.mark.asyncio
    async def test_run_with_services(self, tmp_path):
        async def count_games(services):
            return await services.db.count_games()

        assert await run_with_services(
            count_games,
            config=ConfigManager(tmp_path / "config.ini"),
            data_dir=tmp_path,
            providers={},
        ) == 0


class TestConnect:
    @pytest.mark.asyncio
    async def test_connect_stores_sealed_credentials(self, services, steam):
        result = await services.connect(Platform.STEAM, sync=False)

        assert result.success
        assert result.account_id == "steam_123"
        assert result.username == "Player One"
        account = await services.db.get_account("steam_123")
        assert account.status is AccountStatus.CONNECTED
        assert "token" not in account.auth_data
        assert services.vault.open(account.auth_data).access_token == "token"

    @pytest.mark.asyncio
    async def test_steam_connect_adopts_locally_found_games(self, services):
        await services.db.upsert_account(Account(id=LOCAL_STEAM_ACCOUNT_ID, platform=Platform.STEAM, username="Local"))
        await services.db.merge_games(LOCAL_STEAM_ACCOUNT_ID, Platform.STEAM, [
            RemoteGame(platform_game_id="440", title="Team Fortress 2"),
        ])

        await services.connect(Platform.STEAM, sync=False)

        assert (await services.db.get_game("steam_440")).account_id == "steam_123"

    @pytest.mark.asyncio
    async def test_reconnect_merges_with_stored_credentials(self, services, steam, monkeypatch):
        await services.db.upsert_account(Account(
            id="steam_123",
            platform=Platform.STEAM,
            username="Old",
            status=AccountStatus.DISCONNECTED,
            auth_data=services.vault.seal(Credentials(api_key="KEY")),
        ))
        monkeypatch.setattr(steam, "merge_credentials",
                            lambda previous, fresh: Credentials(access_token=fresh.access_token, api_key=previous.api_key))

        await services.connect(Platform.STEAM, sync=False)

        account = await services.db.get_account("steam_123")
        assert account.is_connected
        assert account.username == "Player One"
        assert services.vault.open(account.auth_data).api_key == "KEY"

    @pytest.mark.asyncio
    @pytest.mark.parametrize("error, message", [
        (AuthFlowError(AuthFailure.USER_CLOSED_WINDOW), "user_closed_window"),
        (ProviderError("profile unavailable"), "profile unavailable"),
    ])
    async def test_failed_login(self, services, steam, monkeypatch, error, message):
        async def fail():
            raise error
        monkeypatch.setattr(steam, "authenticate", fail)

        result = await services.connect(Platform.STEAM, sync=False)

        assert not result.success
        assert result.error == message
        assert await services.get_accounts() == []

    @pytest.mark.asyncio
    async def test_unknown_platform(self, services):
        result = await services.connect(Platform.GOG, sync=False)
        assert not result.success

    @pytest.mark.asyncio
    async def test_connect_starts_a_sync(self, services):
        result = await services.connect(Platform.STEAM)

        task = services.tasks.get(f"sync:{result.account_id}")
        sync_result = await task
        assert sync_result.success
        assert await services.db.count_games(result.account_id) == 1

    @pytest.mark.asyncio
    async def test_disconnect(self, services):
        await services.connect(Platform.STEAM, sync=False)

        assert await services.disconnect("steam_123")
        assert not (await services.db.get_account("steam_123")).is_connected
        assert not await services.disconnect("steam_404")


class TestSync:
    @pytest.mark.asyncio
    async def test_sync_by_platform_uses_latest_account(self, services, steam):
        await services.connect(Platform.STEAM, sync=False)

        result = await services.sync_now(platform=Platform.STEAM)

        assert result.success
        assert steam.calls[:3] == ["profile", "friends", "library"]

    @pytest.mark.asyncio
    async def test_nothing_to_sync(self, services):
        assert (await services.sync_now()).error == "No account or platform given"
        assert (await services.sync_now(platform=Platform.EPIC)).error == "No connected epic account"

    @pytest.mark.asyncio
    async def test_sync_all(self, services):
        await services.connect(Platform.STEAM, sync=False)
        results = await services.sync_all()
        assert [r.success for r in results] == [True]


class TestPresence:
    @pytest.mark.asyncio
    async def test_manual_presence_round_trip(self, services):
        status = await services.set_presence(PresenceUpdate(
            source=PresenceSource.MANUAL, intent_state=IntentState.COMPETITIVE,
        ))
        assert status.intent_state is IntentState.COMPETITIVE
        assert (await services.get_presence()).intent_state is IntentState.COMPETITIVE
