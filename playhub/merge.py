"""
Reconciliation rules for provider records against local rows.

Pure functions: the database layer calls them inside its write transaction so
that identity resolution and the resulting writes are atomic.
"""

import re
from typing import Any, Dict, Optional

import msgspec

from .models import Game, GameRef, Platform, RemoteFriend, RemoteGame, parse_iso

_NON_ALNUM = re.compile(r"[^a-z0-9]")


class MergeOutcome(msgspec.Struct):
    inserted: list[str] = []
    updated: list[str] = []
    unchanged: int = 0
    rehomed: list[str] = []

    @property
    def total(self) -> int:
        return len(self.inserted) + len(self.updated) + self.unchanged


def normalize_title(title: str) -> str:
    """Lowercase and strip everything but a-z0-9, used for dedup and search."""
    return _NON_ALNUM.sub("", str(title or "").lower())


def friend_id(platform: Platform, external_id: str) -> str:
    return f"{platform.value}_{external_id}"


def later_timestamp(current: Optional[str], incoming: Optional[str]) -> Optional[str]:
    if not incoming:
        return current
    if not current:
        return incoming
    current_dt, incoming_dt = parse_iso(current), parse_iso(incoming)
    if current_dt is None:
        return incoming
    if incoming_dt is None:
        return current
    return incoming if incoming_dt > current_dt else current


def new_game(account_id: str, platform: Platform, record: RemoteGame, now: str) -> Game:
    ref = GameRef(platform, record.platform_game_id)
    return Game(
        id=ref.game_id,
        platform=platform,
        platform_game_id=record.platform_game_id,
        account_id=account_id,
        title=record.title,
        normalized_title=normalize_title(record.title),
        playtime_seconds=max(record.playtime_seconds or 0, 0),
        last_played=record.last_played,
        box_art_url=record.cover_url,
        background_url=record.background_url,
        metadata=dict(record.metadata or {}),
        created_at=now,
        updated_at=now,
    )


def game_changes(existing: Game, record: RemoteGame, account_id: str) -> Dict[str, Any]:
    """
    Column changes needed to bring ``existing`` up to date with ``record``.

    Only platform-sourced display and play fields are touched. Favorite flag,
    rating, notes, tags, install location and HLTB estimates belong to the user
    or to local scans and are never overwritten here. Missing remote values
    never blank out known local ones, and playtime never decreases.
    """
    changes: Dict[str, Any] = {}

    if existing.account_id != account_id:
        changes["account_id"] = account_id

    if record.title and record.title != existing.title:
        changes["title"] = record.title
        changes["normalized_title"] = normalize_title(record.title)

    if record.playtime_seconds is not None and record.playtime_seconds > existing.playtime_seconds:
        changes["playtime_seconds"] = record.playtime_seconds

    last_played = later_timestamp(existing.last_played, record.last_played)
    if last_played != existing.last_played:
        changes["last_played"] = last_played

    if record.cover_url and record.cover_url != existing.box_art_url:
        changes["box_art_url"] = record.cover_url

    if record.background_url and record.background_url != existing.background_url:
        changes["background_url"] = record.background_url

    if record.metadata:
        merged = {**existing.metadata, **record.metadata}
        if merged != existing.metadata:
            changes["metadata"] = merged

    return changes


def friend_row(account_id: str, platform: Platform, record: RemoteFriend) -> Dict[str, Any]:
    return {
        "id": friend_id(platform, record.external_id),
        "platform": platform.value,
        "external_id": record.external_id,
        "account_id": account_id,
        "username": record.username or "Unknown",
        "avatar_url": record.avatar_url,
        "status": record.status or "offline",
        "game_activity": record.game_activity,
    }
