"""
Tests for library search and the user-authored game fields.
"""

import pytest
import pytest_asyncio

from playhub.constants import LOCAL_ACCOUNT_ID
from playhub.exceptions import GameNotFoundError
from playhub.library import LibraryService
from playhub.models import Platform, RemoteGame


@pytest.fixture
def library(db):
    return LibraryService(db)


@pytest_asyncio.fixture
async def seeded(db):
    await db.merge_games("steam_1", Platform.STEAM, [
        RemoteGame(platform_game_id="400", title="Portal"),
        RemoteGame(platform_game_id="620", title="Portal 2"),
        RemoteGame(platform_game_id="220", title="Half-Life 2"),
    ])
    await db.merge_games("epic_1", Platform.EPIC, [
        RemoteGame(platform_game_id="tpc", title="The Portal Chronicles"),
    ])
    return db


class TestSearch:
    @pytest.mark.asyncio
    async def test_direct_matches_rank_by_kind(self, library, seeded):
        results = await library.search("Portal")

        direct = [(r.game.title, r.match_type) for r in results if r.match_type != "fuzzy"]
        assert direct == [
            ("Portal", "exact"),
            ("Portal 2", "prefix"),
            ("The Portal Chronicles", "contains"),
        ]
        assert [r.score for r in results[:3]] == [100.0, 90.0, 75.0]

    @pytest.mark.asyncio
    async def test_fuzzy_matches_rank_below_direct_ones(self, library, seeded):
        results = await library.search("Portl")

        assert results
        assert all(r.match_type == "fuzzy" for r in results)
        assert all(r.score <= 50 for r in results)
        assert results[0].game.title.startswith("Portal")

    @pytest.mark.asyncio
    async def test_platform_filter_and_limit(self, library, seeded):
        results = await library.search("portal", platform=Platform.EPIC)
        assert [r.game.id for r in results] == ["epic_tpc"]
        assert len(await library.search("portal", limit=1)) == 1

    @pytest.mark.asyncio
    async def test_empty_query(self, library, seeded):
        assert await library.search("") == []
        assert await library.search("!!!") == []


class TestUserFields:
    @pytest.mark.asyncio
    async def test_favorites(self, library, seeded):
        assert await library.toggle_favorite("steam_400") is True
        assert [g.id for g in await library.get_favorites()] == ["steam_400"]
        assert await library.toggle_favorite("steam_400") is False
        assert await library.get_favorites() == []

    @pytest.mark.asyncio
    async def test_rating_bounds(self, library, seeded):
        assert await library.set_rating("steam_400", 9)
        assert (await library.get_game("steam_400")).user_rating == 9
        with pytest.raises(ValueError):
            await library.set_rating("steam_400", 11)
        assert await library.set_rating("steam_400", None)
        assert (await library.get_game("steam_400")).user_rating is None

    @pytest.mark.asyncio
    async def test_unknown_game(self, library):
        with pytest.raises(GameNotFoundError):
            await library.toggle_favorite("steam_missing")
        with pytest.raises(GameNotFoundError):
            await library.add_note("steam_missing", "hello")

    @pytest.mark.asyncio
    async def test_tags_and_notes(self, library, seeded):
        tags = await library.set_tags("steam_620", ["Co-op", "Puzzle"])
        assert [t.name for t in tags] == ["Co-op", "Puzzle"]
        assert [t.name for t in await library.get_tags("steam_620")] == ["Co-op", "Puzzle"]

        note_id = await library.add_note("steam_620", "Finish the co-op campaign")
        assert [n.id for n in await library.get_notes("steam_620")] == [note_id]

    @pytest.mark.asyncio
    async def test_stats(self, library, seeded, db):
        await db.update_game("steam_400", playtime_seconds=3600, last_played="2024-01-01T00:00:00+00:00")
        stats = await library.get_stats()
        assert stats.total_games == 4
        assert stats.total_playtime_seconds == 3600
        assert stats.by_platform == {"steam": 3, "epic": 1}
        assert stats.recently_played == ["steam_400"]


class TestCustomGames:
    @pytest.mark.asyncio
    async def test_add_and_remove(self, library, db, tmp_path):
        exe = tmp_path / "game" / "run.exe"

        game = await library.add_custom_game("  My Mod  ", str(exe))

        assert game.id.startswith("custom_")
        assert game.platform is Platform.PLAYHUB
        assert game.title == "My Mod"
        assert game.account_id == LOCAL_ACCOUNT_ID
        assert game.install_path == str(exe.parent)
        assert game.is_installed
        assert (await db.get_account(LOCAL_ACCOUNT_ID)).platform is Platform.PLAYHUB

        assert await library.remove_custom_game(game.id)
        assert await library.get_game(game.id) is None

    @pytest.mark.asyncio
    async def test_validation(self, library):
        with pytest.raises(ValueError):
            await library.add_custom_game(" ", "/games/run.exe")
        with pytest.raises(ValueError):
            await library.add_custom_game("Title", "")

    @pytest.mark.asyncio
    async def test_synced_games_cannot_be_removed(self, library, seeded):
        with pytest.raises(ValueError):
            await library.remove_custom_game("steam_400")
        assert await library.get_game("steam_400") is not None
