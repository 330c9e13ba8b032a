"""
Tests for the Discord broadcaster. pypresence is replaced by a recording
fake through the presence_factory hook.
"""

import pytest
from pypresence import DiscordNotFound

from playhub.discord_presence import PresenceBroadcaster, state_label
from playhub.models import IntentState


class FakePresence:
    instances = []

    def __init__(self, client_id, fail_connect=None, fail_update=None):
        self.client_id = client_id
        self.fail_connect = fail_connect
        self.fail_update = fail_update
        self.updates = []
        self.cleared = 0
        self.closed = False
        FakePresence.instances.append(self)

    def connect(self):
        if self.fail_connect:
            raise self.fail_connect

    def update(self, **activity):
        if self.fail_update:
            raise self.fail_update
        self.updates.append(activity)

    def clear(self):
        self.cleared += 1

    def close(self):
        self.closed = True


@pytest.fixture
def discord_config(config, monkeypatch):
    monkeypatch.delenv("DISCORD_RICH_PRESENCE_CLIENT_ID", raising=False)
    config.set_value("Discord", "client_id", "1234567890")
    FakePresence.instances = []
    return config


def make_broadcaster(config, **failures):
    return PresenceBroadcaster(config, presence_factory=lambda client_id: FakePresence(client_id, **failures))


class TestStateLabel:
    def test_known_intents(self):
        assert state_label(IntentState.OPEN_FOR_COOP) == "Open for co-op"
        assert state_label(IntentState.STORY_MODE) == "Story mode"

    def test_custom_and_unknown(self):
        assert state_label(IntentState.CUSTOM, "Raid night") == "Raid night"
        assert state_label(IntentState.CUSTOM) == "Using PlayHub"
        assert state_label(None) == "Using PlayHub"


class TestBroadcast:
    @pytest.mark.asyncio
    async def test_game_activity(self, discord_config):
        broadcaster = make_broadcaster(discord_config)

        sent = await broadcaster.set_game_activity(
            "steam_10", "Portal 2", "2024-01-01T10:00:00+00:00", IntentState.OPEN_FOR_COOP
        )

        assert sent
        assert broadcaster.is_connected
        rpc = FakePresence.instances[0]
        assert rpc.client_id == "1234567890"
        assert rpc.updates == [{
            "details": "Playing Portal 2",
            "state": "Open for co-op",
            "large_image": "playhub",
            "large_text": "PlayHub",
            "start": 1704103200,
        }]

    @pytest.mark.asyncio
    async def test_reuses_the_connection(self, discord_config):
        broadcaster = make_broadcaster(discord_config)
        await broadcaster.set_game_activity("steam_10", "Portal 2", None)
        await broadcaster.set_game_activity("steam_20", "Half-Life", None)

        assert len(FakePresence.instances) == 1
        assert "start" not in FakePresence.instances[0].updates[1]

    @pytest.mark.asyncio
    async def test_disabled_sends_nothing(self, discord_config):
        discord_config.set_discord_presence_enabled(False)
        broadcaster = make_broadcaster(discord_config)

        assert not await broadcaster.set_game_activity("steam_10", "Portal 2", None)
        assert FakePresence.instances == []

    @pytest.mark.asyncio
    async def test_missing_client_id(self, discord_config):
        discord_config.set_value("Discord", "client_id", "")
        broadcaster = make_broadcaster(discord_config)

        assert not await broadcaster.set_game_activity("steam_10", "Portal 2", None)
        assert FakePresence.instances == []

    @pytest.mark.asyncio
    async def test_discord_not_running(self, discord_config):
        broadcaster = make_broadcaster(discord_config, fail_connect=DiscordNotFound())

        assert not await broadcaster.set_game_activity("steam_10", "Portal 2", None)
        assert not broadcaster.is_connected

    @pytest.mark.asyncio
    async def test_update_failure_drops_connection(self, discord_config):
        broadcaster = make_broadcaster(discord_config, fail_update=RuntimeError("pipe closed"))

        assert not await broadcaster.set_game_activity("steam_10", "Portal 2", None)
        assert not broadcaster.is_connected


class TestLifecycle:
    @pytest.mark.asyncio
    async def test_clear_without_connection_is_a_no_op(self, discord_config):
        broadcaster = make_broadcaster(discord_config)
        await broadcaster.clear()
        assert FakePresence.instances == []

    @pytest.mark.asyncio
    async def test_disabling_persists_and_closes(self, discord_config):
        broadcaster = make_broadcaster(discord_config)
        await broadcaster.set_game_activity("steam_10", "Portal 2", None)
        rpc = FakePresence.instances[0]

        await broadcaster.set_enabled(False)

        assert rpc.cleared == 1
        assert rpc.closed
        assert not broadcaster.is_connected
        assert not discord_config.get_discord_presence_enabled()
