"""
Library service: read projections over the games table plus the fields only
the user writes (favorite, rating, notes, tags) and manually added games.
"""

import asyncio
import os
import uuid
from typing import List, Optional

import msgspec
from rapidfuzz import fuzz, process

from .constants import LOCAL_ACCOUNT_ID
from .database import DatabaseManager
from .exceptions import GameNotFoundError
from .logger import setup_logger
from .merge import normalize_title
from .models import (
    Account,
    Game,
    GameNote,
    GameRef,
    InventoryItem,
    LibraryStats,
    Platform,
    SyncHistory,
    Tag,
    now_iso,
)

logger = setup_logger()


class SearchResult(msgspec.Struct):
    game: Game
    score: float
    match_type: str  # "exact", "prefix", "contains", "fuzzy"


class LibraryService:
    def __init__(self, db: DatabaseManager):
        self.db = db

    async def _require_game(self, game_id: str) -> Game:
        game = await self.db.get_game(game_id)
        if game is None:
            raise GameNotFoundError(game_id)
        return game

    # ----- reads -----

    async def get_games(self, platform: Optional[Platform] = None, installed_only: bool = False) -> List[Game]:
        return await self.db.get_games(platform=platform, installed_only=installed_only)

    async def get_favorites(self) -> List[Game]:
        return [game for game in await self.db.get_games() if game.is_favorite]

    async def get_game(self, game_id: str) -> Optional[Game]:
        return await self.db.get_game(game_id)

    async def get_stats(self) -> LibraryStats:
        return await self.db.get_library_stats()

    async def get_sync_history(self, limit: int = 10) -> List[SyncHistory]:
        return await self.db.get_sync_history(limit=limit)

    async def get_inventory(self, account_id: Optional[str] = None) -> List[InventoryItem]:
        return await self.db.get_inventory(account_id)

    async def search(
        self,
        query: str,
        platform: Optional[Platform] = None,
        limit: int = 50,
        fuzzy_threshold: int = 60,
    ) -> List[SearchResult]:
        """
        Search titles. Direct matches on the normalized title rank first,
        rapidfuzz fills the remaining slots for typo tolerance.
        """
        needle = normalize_title(query or "")
        if not needle:
            return []

        games = await self.db.get_games(platform=platform)
        results: List[SearchResult] = []
        for game in games:
            title = game.normalized_title or normalize_title(game.title)
            if title == needle:
                results.append(SearchResult(game=game, score=100.0, match_type="exact"))
            elif title.startswith(needle):
                results.append(SearchResult(game=game, score=90.0, match_type="prefix"))
            elif needle in title:
                results.append(SearchResult(game=game, score=75.0, match_type="contains"))

        if len(results) < limit:
            seen = {r.game.id for r in results}
            remaining = [game for game in games if game.id not in seen]
            choices = {game.id: game.title for game in remaining}
            matches = await asyncio.to_thread(
                process.extract,
                query,
                choices,
                scorer=fuzz.WRatio,
                limit=limit - len(results),
                score_cutoff=fuzzy_threshold,
            )
            by_id = {game.id: game for game in remaining}
            for _, score, game_id in matches:
                # Fuzzy scores are scaled below direct matches
                results.append(SearchResult(game=by_id[game_id], score=score * 0.5, match_type="fuzzy"))

        results.sort(key=lambda r: (-r.score, r.game.title.lower()))
        return results[:limit]

    # ----- user-authored fields -----

    async def toggle_favorite(self, game_id: str) -> bool:
        """Flip the favorite flag; returns the new value."""
        game = await self._require_game(game_id)
        await self.db.update_game(game_id, is_favorite=not game.is_favorite)
        return not game.is_favorite

    async def set_rating(self, game_id: str, rating: Optional[int]) -> bool:
        if rating is not None and not 0 <= rating <= 10:
            raise ValueError(f"Rating must be between 0 and 10, got {rating}")
        await self._require_game(game_id)
        return await self.db.update_game(game_id, user_rating=rating)

    async def get_notes(self, game_id: str) -> List[GameNote]:
        return await self.db.get_notes(game_id)

    async def add_note(self, game_id: str, content: str) -> Optional[int]:
        await self._require_game(game_id)
        return await self.db.add_note(game_id, content)

    async def update_note(self, note_id: int, content: str) -> bool:
        return await self.db.update_note(note_id, content)

    async def delete_note(self, note_id: int) -> bool:
        return await self.db.delete_note(note_id)

    async def get_tags(self, game_id: Optional[str] = None) -> List[Tag]:
        if game_id is None:
            return await self.db.get_tags()
        return await self.db.get_game_tags(game_id)

    async def set_tags(self, game_id: str, names: List[str]) -> List[Tag]:
        await self._require_game(game_id)
        return await self.db.set_game_tags(game_id, names)

    # ----- custom games -----

    async def add_custom_game(self, title: str, executable_path: str, image_url: Optional[str] = None) -> Game:
        title = (title or "").strip()
        if not title:
            raise ValueError("A custom game needs a title")
        if not executable_path:
            raise ValueError("A custom game needs an executable")

        await self.db.upsert_account(Account(
            id=LOCAL_ACCOUNT_ID,
            platform=Platform.PLAYHUB,
            username="Local Library",
        ))

        ref = GameRef(Platform.PLAYHUB, str(uuid.uuid4()))
        now = now_iso()
        game = await self.db.insert_game(Game(
            id=ref.game_id,
            platform=Platform.PLAYHUB,
            platform_game_id=ref.native_id,
            account_id=LOCAL_ACCOUNT_ID,
            title=title,
            normalized_title=normalize_title(title),
            executable_path=executable_path,
            install_path=os.path.dirname(executable_path) or None,
            is_installed=True,
            box_art_url=image_url or None,
            created_at=now,
            updated_at=now,
        ))
        if game is None:
            raise RuntimeError(f"Could not save custom game {title!r}")
        logger.info(f"Added custom game {title} ({game.id})")
        return game

    async def remove_custom_game(self, game_id: str) -> bool:
        game = await self._require_game(game_id)
        if game.platform is not Platform.PLAYHUB:
            raise ValueError(f"{game_id} is not a custom game")
        return await self.db.delete_game(game_id)
