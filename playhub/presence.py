"""
Presence Arbiter

Keeps one presence/intent record per user. Automatic writers (the session
tracker) and the user both write here; an explicit manual choice is never
overwritten by an automatic write.
"""

from typing import Any, Callable, Dict, Optional

import msgspec
from msgspec import UNSET

from .database import DatabaseManager
from .events import EventHub, EventKind
from .logger import setup_logger
from .models import (
    IntentMetadata,
    IntentState,
    PresenceSource,
    PresenceState,
    PresenceStatus,
    PresenceUpdate,
    VisibilityScope,
    decode_json,
    now_iso,
)

logger = setup_logger()

# Metadata fields forced by an intent, recomputed on every write
INTENT_RULES: Dict[IntentState, Dict[str, Any]] = {
    IntentState.STORY_MODE: {"joinable": False},
    IntentState.OPEN_FOR_COOP: {"joinable": True},
    IntentState.TESTING_MODS: {"instability_warning": True},
}


def apply_intent_rules(status: PresenceStatus) -> PresenceStatus:
    forced = INTENT_RULES.get(status.intent_state)
    if forced:
        status.intent_metadata = msgspec.structs.replace(status.intent_metadata, **forced)
    return status


def _decode_metadata(raw: Optional[str]) -> IntentMetadata:
    if not raw:
        return IntentMetadata()
    try:
        return decode_json(raw, type=IntentMetadata)
    except (msgspec.DecodeError, msgspec.ValidationError) as e:
        logger.warning(f"Discarding unreadable intent metadata: {e}")
        return IntentMetadata()


def status_from_row(row: Dict[str, Any]) -> PresenceStatus:
    """Build a status from a stored row, coercing out-of-range enum values."""
    return PresenceStatus(
        user_id=row["user_id"],
        presence_state=PresenceState.coerce(row.get("presence_state")),
        intent_state=IntentState.coerce(row.get("intent_state")),
        intent_metadata=_decode_metadata(row.get("intent_metadata")),
        visibility_scope=VisibilityScope.coerce(row.get("visibility_scope")),
        expires_at=row.get("expires_at") or None,
        updated_at=row.get("updated_at"),
        source=PresenceSource.MANUAL if row.get("source") == PresenceSource.MANUAL else PresenceSource.AUTO,
    )


class PresenceArbiter:
    def __init__(self, db: DatabaseManager, events: EventHub, user_id_provider: Callable[[], str]):
        self.db = db
        self.events = events
        self._user_id_provider = user_id_provider

    @property
    def user_id(self) -> str:
        return self._user_id_provider()

    async def get(self, user_id: Optional[str] = None) -> PresenceStatus:
        """Current record; a default one is created on first read."""
        user_id = user_id or self.user_id
        row = await self.db.get_presence_row(user_id)
        if row is not None:
            return status_from_row(row)

        status = PresenceStatus(user_id=user_id, updated_at=now_iso())
        # INSERT OR IGNORE: a concurrent first write wins over the default
        await self.db.save_presence(status, replace=False)
        row = await self.db.get_presence_row(user_id)
        return status_from_row(row) if row is not None else status

    async def set(self, update: PresenceUpdate, user_id: Optional[str] = None) -> PresenceStatus:
        """
        Apply a write.

        Returns:
            The stored record after the write, or the unchanged record when an
            automatic write hits a manual one
        """
        user_id = user_id or self.user_id
        source = PresenceSource(update.source)
        row = await self.db.get_presence_row(user_id)
        existing = status_from_row(row) if row is not None else None

        if existing is not None and existing.source is PresenceSource.MANUAL and source is PresenceSource.AUTO:
            logger.debug(f"Ignoring automatic presence write for {user_id}: manual status set")
            return existing

        base = existing or PresenceStatus(user_id=user_id)
        metadata = base.intent_metadata
        if update.intent_metadata is not UNSET:
            metadata = metadata.merged(update.intent_metadata)

        status = PresenceStatus(
            user_id=user_id,
            presence_state=base.presence_state if update.presence_state is UNSET else PresenceState.coerce(update.presence_state),
            intent_state=base.intent_state if update.intent_state is UNSET else IntentState.coerce(update.intent_state),
            intent_metadata=metadata,
            visibility_scope=base.visibility_scope if update.visibility_scope is UNSET else VisibilityScope.coerce(update.visibility_scope),
            expires_at=base.expires_at if update.expires_at is UNSET else update.expires_at,
            updated_at=now_iso(),
            source=source,
        )
        apply_intent_rules(status)

        if not await self.db.save_presence(status):
            logger.warning(f"Presence for {user_id} could not be saved")
            return existing or status

        logger.debug(f"Presence for {user_id}: {status.intent_state} ({status.source})")
        await self.events.emit(EventKind.PRESENCE_CHANGED, status)
        return status

    # ----- session linkage -----

    async def on_session_start(self, game_id: str) -> PresenceStatus:
        return await self.set(PresenceUpdate(
            source=PresenceSource.AUTO,
            intent_state=IntentState.OPEN_FOR_COOP,
            intent_metadata=IntentMetadata(current_game_id=game_id),
        ))

    async def on_session_end(self, game_id: str) -> PresenceStatus:
        """Back to idle, but only if this game is still the one shown."""
        current = await self.get()
        if current.intent_metadata.get("current_game_id") != game_id:
            return current
        return await self.set(PresenceUpdate(
            source=PresenceSource.AUTO,
            intent_state=IntentState.IDLE,
            intent_metadata=IntentMetadata(current_game_id=None),
        ))
