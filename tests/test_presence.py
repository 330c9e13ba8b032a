"""
Tests for the presence arbiter: precedence of manual writes, metadata merge,
the intent rule table and session linkage.
"""

import pytest

from playhub.events import EventKind
from playhub.models import (
    IntentMetadata,
    IntentState,
    PresenceSource,
    PresenceState,
    PresenceStatus,
    PresenceUpdate,
    VisibilityScope,
    encode_json,
)
from playhub.presence import INTENT_RULES, PresenceArbiter, apply_intent_rules, status_from_row


@pytest.fixture
def arbiter(db, events):
    return PresenceArbiter(db, events, lambda: "local")


def manual(**fields):
    return PresenceUpdate(source=PresenceSource.MANUAL, **fields)


def auto(**fields):
    return PresenceUpdate(source=PresenceSource.AUTO, **fields)


class TestRead:
    @pytest.mark.asyncio
    async def test_default_record_is_created_lazily(self, arbiter, db):
        assert await db.get_presence_row("local") is None

        status = await arbiter.get()
        assert status.user_id == "local"
        assert status.presence_state is PresenceState.ONLINE
        assert status.intent_state is IntentState.IDLE
        assert status.visibility_scope is VisibilityScope.FRIENDS
        assert status.source is PresenceSource.AUTO
        assert await db.get_presence_row("local") is not None

    def test_out_of_range_values_are_coerced(self):
        status = status_from_row({
            "user_id": "local",
            "presence_state": "levitating",
            "intent_state": "speedrunning",
            "intent_metadata": "not json",
            "visibility_scope": "everyone",
            "expires_at": "",
            "updated_at": None,
            "source": "robot",
        })
        assert status.presence_state is PresenceState.ONLINE
        assert status.intent_state is IntentState.IDLE
        assert status.visibility_scope is VisibilityScope.FRIENDS
        assert status.intent_metadata == IntentMetadata()
        assert status.expires_at is None
        assert status.source is PresenceSource.AUTO


class TestPrecedence:
    @pytest.mark.asyncio
    async def test_auto_write_cannot_override_manual(self, arbiter, db):
        await arbiter.set(manual(intent_state=IntentState.COMPETITIVE))
        before = await db.get_presence_row("local")

        result = await arbiter.set(auto(
            intent_state=IntentState.OPEN_FOR_COOP,
            intent_metadata=IntentMetadata(current_game_id="steam_1"),
        ))

        assert result.intent_state is IntentState.COMPETITIVE
        assert await db.get_presence_row("local") == before

    @pytest.mark.asyncio
    async def test_manual_write_always_applies(self, arbiter):
        await arbiter.set(manual(intent_state=IntentState.COMPETITIVE))
        result = await arbiter.set(manual(intent_state=IntentState.LOOKING_FOR_PARTY))
        assert result.intent_state is IntentState.LOOKING_FOR_PARTY

    @pytest.mark.asyncio
    async def test_auto_over_auto_applies(self, arbiter):
        await arbiter.set(auto(intent_state=IntentState.OPEN_FOR_COOP))
        result = await arbiter.set(auto(intent_state=IntentState.IDLE))
        assert result.intent_state is IntentState.IDLE

    @pytest.mark.asyncio
    async def test_rejected_write_emits_nothing(self, arbiter, recorded):
        await arbiter.set(manual(intent_state=IntentState.STORY_MODE))
        await arbiter.set(auto(intent_state=IntentState.IDLE))
        assert len(recorded[EventKind.PRESENCE_CHANGED]) == 1

    @pytest.mark.asyncio
    async def test_source_given_as_text(self, arbiter, db):
        applied = await arbiter.set(PresenceUpdate(source="manual", intent_state=IntentState.COMPETITIVE))
        assert applied.source is PresenceSource.MANUAL
        before = await db.get_presence_row("local")

        result = await arbiter.set(PresenceUpdate(source="auto", intent_state=IntentState.OPEN_FOR_COOP))

        assert result.intent_state is IntentState.COMPETITIVE
        assert await db.get_presence_row("local") == before


class TestMetadata:
    @pytest.mark.asyncio
    async def test_metadata_is_shallow_merged(self, arbiter):
        await arbiter.set(manual(intent_metadata=IntentMetadata(voice_chat_allowed=True, estimated_session_length=90)))
        result = await arbiter.set(manual(intent_metadata=IntentMetadata(estimated_session_length=30)))

        assert result.intent_metadata.get("voice_chat_allowed") is True
        assert result.intent_metadata.get("estimated_session_length") == 30

    @pytest.mark.asyncio
    async def test_none_clears_a_field(self, arbiter):
        await arbiter.set(manual(intent_metadata=IntentMetadata(custom_label="raid night")))
        result = await arbiter.set(manual(intent_metadata=IntentMetadata(custom_label=None)))
        assert result.intent_metadata.get("custom_label") is None

    @pytest.mark.asyncio
    async def test_story_mode_forces_not_joinable(self, arbiter, db):
        result = await arbiter.set(manual(
            intent_state=IntentState.STORY_MODE,
            intent_metadata=IntentMetadata(joinable=True),
        ))
        assert result.intent_metadata.joinable is False
        assert (await arbiter.get()).intent_metadata.joinable is False

    @pytest.mark.asyncio
    async def test_open_for_coop_forces_joinable(self, arbiter):
        result = await arbiter.set(manual(
            intent_state=IntentState.OPEN_FOR_COOP,
            intent_metadata=IntentMetadata(joinable=False),
        ))
        assert result.intent_metadata.joinable is True

    @pytest.mark.asyncio
    async def test_testing_mods_warns_about_instability(self, arbiter):
        result = await arbiter.set(manual(intent_state=IntentState.TESTING_MODS))
        assert result.intent_metadata.instability_warning is True

    def test_rules_leave_other_intents_untouched(self):
        status = PresenceStatus(
            user_id="local",
            intent_state=IntentState.COMPETITIVE,
            intent_metadata=IntentMetadata(joinable=True),
        )
        assert IntentState.COMPETITIVE not in INTENT_RULES
        assert encode_json(apply_intent_rules(status).intent_metadata) == b'{"joinable":true}'


class TestSessionLinkage:
    @pytest.mark.asyncio
    async def test_session_start_and_end(self, arbiter):
        started = await arbiter.on_session_start("steam_10")
        assert started.intent_state is IntentState.OPEN_FOR_COOP
        assert started.intent_metadata.current_game_id == "steam_10"
        assert started.intent_metadata.joinable is True

        ended = await arbiter.on_session_end("steam_10")
        assert ended.intent_state is IntentState.IDLE
        assert ended.intent_metadata.get("current_game_id") is None

    @pytest.mark.asyncio
    async def test_end_of_another_game_is_ignored(self, arbiter):
        await arbiter.on_session_start("steam_10")
        result = await arbiter.on_session_end("steam_20")
        assert result.intent_state is IntentState.OPEN_FOR_COOP
        assert result.intent_metadata.current_game_id == "steam_10"

    @pytest.mark.asyncio
    async def test_session_does_not_override_manual_choice(self, arbiter):
        await arbiter.set(manual(intent_state=IntentState.STORY_MODE))
        result = await arbiter.on_session_start("steam_10")
        assert result.intent_state is IntentState.STORY_MODE
        assert result.source is PresenceSource.MANUAL
