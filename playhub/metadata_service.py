"""
Store metadata enrichment.

Descriptions, developers, genres and screenshots come from the Steam store
``appdetails`` endpoint. Non-Steam games are matched to a Steam app through
``storesearch`` by title first. Lookups are cached for the life of the service.
"""

import asyncio
from typing import Any, Dict, List, Optional

import msgspec

from .constants import STEAM_APPDETAILS_URL, STEAM_LIBRARY_CAPSULE_URL, STEAM_STORESEARCH_URL
from .database import DatabaseManager
from .exceptions import ProviderError
from .logger import setup_logger
from .models import Game, Platform
from .providers.http import HttpClient

logger = setup_logger()


def parse_app_details(app_id: str, data: Any) -> Optional[Dict[str, Any]]:
    entry = data.get(str(app_id)) if isinstance(data, dict) else None
    if not isinstance(entry, dict) or not entry.get("success") or not isinstance(entry.get("data"), dict):
        return None
    details = entry["data"]
    release = details.get("release_date") if isinstance(details.get("release_date"), dict) else {}
    movies = []
    for movie in details.get("movies") or []:
        mp4 = movie.get("mp4") if isinstance(movie, dict) else None
        if isinstance(mp4, dict) and (mp4.get("480") or mp4.get("max")):
            movies.append(mp4.get("480") or mp4.get("max"))
    return {
        "type": details.get("type"),
        "description": details.get("short_description") or "",
        "about": details.get("about_the_game") or "",
        "developer": ", ".join(details.get("developers") or []),
        "publisher": ", ".join(details.get("publishers") or []),
        "release_date": release.get("date", ""),
        "genres": [g.get("description") for g in details.get("genres") or [] if isinstance(g, dict)],
        "screenshots": [s.get("path_thumbnail") for s in details.get("screenshots") or [] if isinstance(s, dict)],
        "movies": movies,
        "background": details.get("background"),
        "cover": STEAM_LIBRARY_CAPSULE_URL.format(app_id=app_id),
    }


class MetadataService:
    def __init__(self, db: DatabaseManager, http: HttpClient):
        self.db = db
        self.http = http
        self._details_cache: Dict[str, Optional[Dict[str, Any]]] = {}
        self._search_cache: Dict[str, Optional[str]] = {}

    async def get_steam_metadata(self, app_id: str) -> Optional[Dict[str, Any]]:
        app_id = str(app_id)
        if app_id in self._details_cache:
            return self._details_cache[app_id]
        try:
            data = await self.http.get_json(STEAM_APPDETAILS_URL, params={"appids": app_id})
        except (ProviderError, msgspec.DecodeError) as e:
            logger.error(f"Failed to fetch Steam metadata for AppID {app_id}: {e}")
            return None
        details = parse_app_details(app_id, data)
        self._details_cache[app_id] = details
        return details

    async def find_steam_app_id(self, title: str) -> Optional[str]:
        if title in self._search_cache:
            return self._search_cache[title]
        try:
            data = await self.http.get_json(
                STEAM_STORESEARCH_URL,
                params={"term": title, "l": "english", "cc": "US"},
            )
        except (ProviderError, msgspec.DecodeError) as e:
            logger.error(f"Steam store search failed for {title!r}: {e}")
            return None
        items = data.get("items") if isinstance(data, dict) else None
        app_id = str(items[0]["id"]) if items and isinstance(items[0], dict) and items[0].get("id") else None
        self._search_cache[title] = app_id
        return app_id

    @staticmethod
    def needs_enrichment(game: Game) -> bool:
        return not game.metadata.get("description") or not game.metadata.get("screenshots")

    async def enrich_game(self, game_id: str, force: bool = False) -> Optional[Game]:
        """
        Fill in store metadata for one game if it is missing.

        Returns:
            The game as stored afterwards, or None if it does not exist
        """
        game = await self.db.get_game(game_id)
        if game is None:
            return None
        if not force and not self.needs_enrichment(game):
            return game

        if game.platform is Platform.STEAM:
            details = await self.get_steam_metadata(game.platform_game_id)
            if details:
                await self.db.update_game(game.id, metadata={**game.metadata, **details})
        else:
            app_id = await self.find_steam_app_id(game.title)
            details = await self.get_steam_metadata(app_id) if app_id else None
            if details:
                changes: Dict[str, Any] = {"metadata": {**game.metadata, **details}}
                if not game.background_url and details.get("background"):
                    changes["background_url"] = details["background"]
                # Steam capsules are preferred over low-res or broken store covers
                changes["box_art_url"] = details["cover"]
                await self.db.update_game(game.id, **changes)

        return await self.db.get_game(game.id)

    async def enrich_missing(self, delay: float = 0.5) -> int:
        """Enrich every game lacking metadata, one at a time. Returns how many were updated."""
        games: List[Game] = [game for game in await self.db.get_games() if self.needs_enrichment(game)]
        updated = 0
        for game in games:
            enriched = await self.enrich_game(game.id)
            if enriched is not None and not self.needs_enrichment(enriched):
                updated += 1
            await asyncio.sleep(delay)
        logger.info(f"Metadata enrichment updated {updated}/{len(games)} games")
        return updated
