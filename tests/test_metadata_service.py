"""
Tests for store metadata enrichment. The HTTP client is mocked.
"""

from unittest.mock import AsyncMock, Mock

import pytest

from playhub.constants import STEAM_APPDETAILS_URL, STEAM_LIBRARY_CAPSULE_URL, STEAM_STORESEARCH_URL
from playhub.exceptions import TransientNetworkError
from playhub.metadata_service import MetadataService, parse_app_details
from playhub.models import Platform


def app_details(app_id, **fields):
    data = {
        "type": "game",
        "short_description": "A puzzle game",
        "developers": ["Valve"],
        "publishers": ["Valve"],
        "release_date": {"date": "18 Apr, 2011"},
        "genres": [{"description": "Puzzle"}],
        "screenshots": [{"path_thumbnail": "https://shots/1.jpg"}],
        "movies": [{"mp4": {"480": "https://movies/1.mp4"}}],
        "background": "https://bg.jpg",
    }
    data.update(fields)
    return {str(app_id): {"success": True, "data": data}}


@pytest.fixture
def http():
    client = Mock()
    client.get_json = AsyncMock()
    return client


@pytest.fixture
def service(db, http):
    return MetadataService(db, http)


class TestParse:
    def test_app_details(self):
        details = parse_app_details("620", app_details(620))
        assert details["developer"] == "Valve"
        assert details["genres"] == ["Puzzle"]
        assert details["screenshots"] == ["https://shots/1.jpg"]
        assert details["movies"] == ["https://movies/1.mp4"]
        assert details["release_date"] == "18 Apr, 2011"
        assert details["cover"] == STEAM_LIBRARY_CAPSULE_URL.format(app_id="620")

    def test_unsuccessful_lookup(self):
        assert parse_app_details("1", {"1": {"success": False}}) is None
        assert parse_app_details("1", []) is None


class TestLookups:
    @pytest.mark.asyncio
    async def test_details_are_cached(self, service, http):
        http.get_json.return_value = app_details(620)

        first = await service.get_steam_metadata("620")
        second = await service.get_steam_metadata(620)

        assert first == second
        http.get_json.assert_awaited_once()

    @pytest.mark.asyncio
    async def test_failures_are_not_cached(self, service, http):
        http.get_json.side_effect = [TransientNetworkError("down"), app_details(620)]

        assert await service.get_steam_metadata("620") is None
        assert await service.get_steam_metadata("620") is not None

    @pytest.mark.asyncio
    async def test_store_search(self, service, http):
        http.get_json.return_value = {"items": [{"id": 1091500, "name": "Cyberpunk 2077"}]}
        assert await service.find_steam_app_id("Cyberpunk 2077") == "1091500"
        assert http.get_json.await_args.args[0] == STEAM_STORESEARCH_URL


class TestEnrich:
    @pytest.mark.asyncio
    async def test_steam_game(self, service, http, add_game):
        game = await add_game(platform=Platform.STEAM, native_id="620", title="Portal 2",
                              account_id="steam_1", metadata={"custom": "kept"})
        http.get_json.return_value = app_details(620)

        enriched = await service.enrich_game(game.id)

        assert enriched.metadata["description"] == "A puzzle game"
        assert enriched.metadata["custom"] == "kept"
        assert http.get_json.await_args.args[0] == STEAM_APPDETAILS_URL

    @pytest.mark.asyncio
    async def test_other_platform_is_matched_by_title(self, service, http, add_game):
        game = await add_game(platform=Platform.EPIC, native_id="cp", title="Cyberpunk 2077")
        http.get_json.side_effect = [
            {"items": [{"id": 1091500}]},
            app_details(1091500),
        ]

        enriched = await service.enrich_game(game.id)

        assert enriched.box_art_url == STEAM_LIBRARY_CAPSULE_URL.format(app_id="1091500")
        assert enriched.background_url == "https://bg.jpg"
        assert enriched.metadata["screenshots"] == ["https://shots/1.jpg"]

    @pytest.mark.asyncio
    async def test_already_enriched_is_skipped(self, service, http, add_game):
        game = await add_game(metadata={"description": "x", "screenshots": ["y"]})
        assert (await service.enrich_game(game.id)).id == game.id
        http.get_json.assert_not_awaited()

    @pytest.mark.asyncio
    async def test_missing_game(self, service):
        assert await service.enrich_game("steam_missing") is None

    @pytest.mark.asyncio
    async def test_enrich_missing_counts_updates(self, service, http, add_game):
        await add_game(platform=Platform.STEAM, native_id="620", title="Portal 2", account_id="steam_1")
        await add_game(platform=Platform.EPIC, native_id="zz", title="Unknown Thing")
        http.get_json.side_effect = [app_details(620), {"items": []}]

        assert await service.enrich_missing(delay=0) == 1
