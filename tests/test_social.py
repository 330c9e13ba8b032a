"""
Tests for friends and encrypted direct messages.
"""

import pytest

from playhub.models import Platform, RemoteFriend
from playhub.social import SocialService


@pytest.fixture
def social(db, secure_store):
    return SocialService(db, secure_store)


class TestFriends:
    @pytest.mark.asyncio
    async def test_add_and_remove_local_friend(self, social):
        friend = await social.add_local_friend("  Sam ")

        assert friend.platform is Platform.PLAYHUB
        assert friend.username == "Sam"
        assert [f.id for f in await social.get_friends(Platform.PLAYHUB)] == [friend.id]

        assert await social.remove_local_friend(friend.id)
        assert await social.get_friends() == []

    @pytest.mark.asyncio
    async def test_blank_username(self, social):
        with pytest.raises(ValueError):
            await social.add_local_friend("   ")

    @pytest.mark.asyncio
    async def test_synced_friends_are_not_removed(self, social, db):
        await db.upsert_friends("steam_1", Platform.STEAM, [RemoteFriend(external_id="a", username="Alice")])

        assert not await social.remove_local_friend("steam_a")
        assert not await social.remove_local_friend("steam_unknown")
        assert len(await social.get_friends()) == 1


class TestMessages:
    @pytest.mark.asyncio
    async def test_bodies_are_encrypted_at_rest(self, social, db):
        await social.send_message("steam_a", "meet at 8?")

        rows = await db.get_message_rows("steam_a")
        assert len(rows) == 1
        assert rows[0]["body"] != "meet at 8?"
        assert "meet" not in rows[0]["body"]

    @pytest.mark.asyncio
    async def test_conversation_reads_back_in_order(self, social):
        await social.send_message("steam_a", "ready?", is_quick=True)
        await social.receive_message("steam_a", "yes")

        messages = await social.get_messages("steam_a")

        assert [(m.direction, m.body) for m in messages] == [("outgoing", "ready?"), ("incoming", "yes")]
        assert messages[0].is_quick
        assert messages[1].read_at is not None
        assert messages[0].read_at is None

    @pytest.mark.asyncio
    async def test_undecryptable_body_reads_as_empty(self, social, db):
        await db.insert_message("steam_a", "incoming", "not-a-valid-blob")
        messages = await social.get_messages("steam_a")
        assert [m.body for m in messages] == [""]
