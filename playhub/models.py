"""
msgspec-based data models for PlayHub.

This module provides:
- The canonical entity model persisted by the store (accounts, games, sessions,
  friends, presence, sync history, inventory)
- Normalized records returned by provider clients before they are merged
- Closed enums with coercion for values read back from storage
- Convenience functions for JSON encoding/decoding

All timestamps are ISO-8601 strings in UTC.
"""

from datetime import datetime, timezone
from enum import StrEnum
from typing import Any, Dict, List, Optional

import msgspec
from msgspec import UNSET, UnsetType


# =============================================================================
# Global Encoders/Decoders
# =============================================================================

json_encoder = msgspec.json.Encoder()
json_decoder = msgspec.json.Decoder()


def encode_json(obj) -> bytes:
    """Encode object to JSON bytes using msgspec."""
    return json_encoder.encode(obj)


def decode_json(data, type=None):
    """
    Decode JSON bytes (or str) to object using msgspec.

    Args:
        data: JSON as bytes or str
        type: Optional msgspec.Struct type for validation
    """
    if type:
        return msgspec.json.decode(data, type=type)
    return json_decoder.decode(data)


def now_iso() -> str:
    return datetime.now(timezone.utc).isoformat()


def parse_iso(value: Optional[str]) -> Optional[datetime]:
    if not value:
        return None
    try:
        parsed = datetime.fromisoformat(value)
    except ValueError:
        return None
    if parsed.tzinfo is None:
        parsed = parsed.replace(tzinfo=timezone.utc)
    return parsed


def from_unix(seconds) -> Optional[str]:
    """Convert a unix timestamp from a provider into ISO-8601, ignoring zero/garbage."""
    try:
        value = int(seconds)
    except (TypeError, ValueError, OverflowError):
        return None
    if value <= 0:
        return None
    try:
        return datetime.fromtimestamp(value, tz=timezone.utc).isoformat()
    except (OverflowError, OSError, ValueError):
        return None


# =============================================================================
# Enums
# =============================================================================

class _ClosedEnum(StrEnum):
    """StrEnum that maps unknown stored values onto a default member"""

    @classmethod
    def default(cls):
        raise NotImplementedError

    @classmethod
    def coerce(cls, value):
        try:
            return cls(value)
        except ValueError:
            return cls.default()


class Platform(StrEnum):
    STEAM = "steam"
    EPIC = "epic"
    GOG = "gog"
    PLAYHUB = "playhub"


class AccountStatus(StrEnum):
    CONNECTED = "connected"
    DISCONNECTED = "disconnected"


class PresenceState(_ClosedEnum):
    OFFLINE = "offline"
    ONLINE = "online"
    AWAY = "away"
    DO_NOT_DISTURB = "do_not_disturb"

    @classmethod
    def default(cls):
        return cls.ONLINE


class IntentState(_ClosedEnum):
    OPEN_FOR_COOP = "open_for_coop"
    LOOKING_FOR_PARTY = "looking_for_party"
    STORY_MODE = "story_mode"
    COMPETITIVE = "competitive"
    TESTING_MODS = "testing_mods"
    IDLE = "idle"
    CUSTOM = "custom"

    @classmethod
    def default(cls):
        return cls.IDLE


class VisibilityScope(_ClosedEnum):
    PUBLIC = "public"
    FRIENDS = "friends"
    FAVORITES = "favorites"
    HIDDEN = "hidden"

    @classmethod
    def default(cls):
        return cls.FRIENDS


class PresenceSource(StrEnum):
    MANUAL = "manual"
    AUTO = "auto"


class SyncStatus(StrEnum):
    IN_PROGRESS = "in_progress"
    SUCCESS = "success"
    FAILED = "failed"


class SyncType(StrEnum):
    FULL = "full"
    FRIENDS = "friends"


class SessionState(StrEnum):
    LAUNCHING = "launching"
    WATCHING = "watching"
    CLOSED = "closed"


# =============================================================================
# Identity
# =============================================================================

class GameRef(msgspec.Struct, frozen=True):
    """
    Tagged game identity: which platform owns the game and its id there.

    The store keys games by an opaque string id; this struct is the typed form
    that behavior is dispatched on. Manually added games live on the PLAYHUB
    platform and use the ``custom_`` prefix.
    """
    platform: Platform
    native_id: str

    @property
    def game_id(self) -> str:
        if self.platform is Platform.PLAYHUB:
            return f"custom_{self.native_id}"
        return f"{self.platform.value}_{self.native_id}"

    @classmethod
    def parse(cls, game_id: str) -> "GameRef":
        """Parse an external opaque id (e.g. from a launch request)."""
        prefix, sep, native = game_id.partition("_")
        if not sep or not native:
            raise ValueError(f"Malformed game id: {game_id!r}")
        if prefix == "custom":
            return cls(Platform.PLAYHUB, native)
        return cls(Platform(prefix), native)


# =============================================================================
# Stored entities
# =============================================================================

class Account(msgspec.Struct):
    id: str
    platform: Platform
    username: str
    status: AccountStatus = AccountStatus.CONNECTED
    auth_data: Optional[str] = None
    avatar_url: Optional[str] = None
    last_synced: Optional[str] = None
    created_at: Optional[str] = None

    @property
    def is_connected(self) -> bool:
        return self.status is AccountStatus.CONNECTED

    @property
    def external_id(self) -> str:
        return self.id.partition("_")[2] or self.id


class Game(msgspec.Struct):
    id: str
    platform: Platform
    platform_game_id: str
    account_id: str
    title: str
    normalized_title: str = ""
    install_path: Optional[str] = None
    executable_path: Optional[str] = None
    is_installed: bool = False
    playtime_seconds: int = 0
    last_played: Optional[str] = None
    box_art_url: Optional[str] = None
    background_url: Optional[str] = None
    metadata: Dict[str, Any] = {}
    hltb_main: Optional[float] = None
    hltb_extra: Optional[float] = None
    hltb_completionist: Optional[float] = None
    user_rating: Optional[int] = None
    is_favorite: bool = False
    created_at: Optional[str] = None
    updated_at: Optional[str] = None

    @property
    def ref(self) -> GameRef:
        return GameRef(self.platform, self.platform_game_id)


class PlaySession(msgspec.Struct):
    id: int
    game_id: str
    start_time: str
    end_time: Optional[str] = None
    duration_seconds: Optional[int] = None

    @property
    def is_open(self) -> bool:
        return self.end_time is None


class Friend(msgspec.Struct):
    id: str
    platform: Platform
    external_id: str
    username: str
    avatar_url: Optional[str] = None
    status: str = "offline"
    game_activity: Optional[str] = None
    account_id: Optional[str] = None
    updated_at: Optional[str] = None


class IntentMetadata(msgspec.Struct, omit_defaults=True):
    """
    Structured intent metadata. UNSET means "not supplied"; merges only
    overwrite fields that are supplied, and None is a real value (cleared).
    """
    current_game_id: str | None | UnsetType = UNSET
    joinable: bool | None | UnsetType = UNSET
    instability_warning: bool | None | UnsetType = UNSET
    custom_label: str | None | UnsetType = UNSET
    estimated_session_length: int | None | UnsetType = UNSET
    voice_chat_allowed: bool | None | UnsetType = UNSET

    def merged(self, incoming: "IntentMetadata") -> "IntentMetadata":
        changes = {
            name: value
            for name in incoming.__struct_fields__
            if (value := getattr(incoming, name)) is not UNSET
        }
        return msgspec.structs.replace(self, **changes)

    def get(self, name: str, default=None):
        value = getattr(self, name)
        return default if value is UNSET else value


class PresenceStatus(msgspec.Struct):
    user_id: str
    presence_state: PresenceState = PresenceState.ONLINE
    intent_state: IntentState = IntentState.IDLE
    intent_metadata: IntentMetadata = msgspec.field(default_factory=IntentMetadata)
    visibility_scope: VisibilityScope = VisibilityScope.FRIENDS
    expires_at: Optional[str] = None
    updated_at: Optional[str] = None
    source: PresenceSource = PresenceSource.AUTO


class PresenceUpdate(msgspec.Struct, kw_only=True):
    """A write to the presence arbiter. Unsupplied fields keep their stored value."""
    source: PresenceSource
    presence_state: PresenceState | UnsetType = UNSET
    intent_state: IntentState | UnsetType = UNSET
    intent_metadata: IntentMetadata | UnsetType = UNSET
    visibility_scope: VisibilityScope | UnsetType = UNSET
    expires_at: str | None | UnsetType = UNSET


class SyncHistory(msgspec.Struct):
    id: int
    platform: Platform
    sync_type: SyncType
    status: SyncStatus
    items_synced: int = 0
    error_message: Optional[str] = None
    started_at: Optional[str] = None
    completed_at: Optional[str] = None
    account_id: Optional[str] = None


class InventoryItem(msgspec.Struct):
    id: str
    account_id: str
    platform: Platform
    asset_id: str
    app_id: int
    context_id: str
    name: str
    class_id: Optional[str] = None
    instance_id: Optional[str] = None
    market_hash_name: Optional[str] = None
    icon_url: Optional[str] = None
    item_type: Optional[str] = None
    rarity: Optional[str] = None
    item_class: Optional[str] = None
    tradable: bool = False
    marketable: bool = False
    amount: int = 1


class Tag(msgspec.Struct):
    id: int
    name: str
    color: Optional[str] = None


class GameNote(msgspec.Struct):
    id: int
    game_id: str
    content: str
    created_at: Optional[str] = None
    updated_at: Optional[str] = None


class Message(msgspec.Struct):
    id: int
    friend_id: str
    direction: str  # "incoming" | "outgoing"
    body: str
    is_quick: bool = False
    sent_at: Optional[str] = None
    read_at: Optional[str] = None


# =============================================================================
# Provider records (normalized, before merge)
# =============================================================================

class RemoteProfile(msgspec.Struct):
    user_id: str
    display_name: str
    avatar_url: Optional[str] = None


class RemoteGame(msgspec.Struct):
    platform_game_id: str
    title: str
    playtime_seconds: Optional[int] = None
    cover_url: Optional[str] = None
    background_url: Optional[str] = None
    last_played: Optional[str] = None
    metadata: Optional[Dict[str, Any]] = None


class RemoteFriend(msgspec.Struct):
    external_id: str
    username: str
    avatar_url: Optional[str] = None
    status: str = "offline"
    game_activity: Optional[str] = None


class RemoteInventoryItem(msgspec.Struct):
    asset_id: str
    app_id: int
    context_id: str
    name: str
    class_id: Optional[str] = None
    instance_id: Optional[str] = None
    market_hash_name: Optional[str] = None
    icon_url: Optional[str] = None
    item_type: Optional[str] = None
    rarity: Optional[str] = None
    item_class: Optional[str] = None
    tradable: bool = False
    marketable: bool = False
    amount: int = 1


class Credentials(msgspec.Struct, omit_defaults=True):
    """Decrypted contents of an account's auth blob"""
    access_token: Optional[str] = None
    refresh_token: Optional[str] = None
    expires_at: Optional[str] = None
    cookies: Dict[str, str] = {}
    api_key: Optional[str] = None
    user_id: Optional[str] = None


class InstalledGame(msgspec.Struct):
    platform_game_id: str
    title: str
    install_path: str
    executable_path: Optional[str] = None


# =============================================================================
# Results and events
# =============================================================================

class AuthResult(msgspec.Struct):
    success: bool
    account_id: Optional[str] = None
    username: Optional[str] = None
    error: Optional[str] = None


class SyncProgress(msgspec.Struct):
    message: str
    percent: int
    platform: Optional[Platform] = None
    account_id: Optional[str] = None


class SyncResult(msgspec.Struct):
    success: bool
    items_synced: int = 0
    error: Optional[str] = None
    history_id: Optional[int] = None


class LaunchResult(msgspec.Struct):
    success: bool
    session_id: Optional[int] = None
    error: Optional[str] = None


class Notification(msgspec.Struct):
    kind: str  # "friend" | "game" | "sync"
    title: str
    body: str
    data: Dict[str, Any] = {}


class LibraryStats(msgspec.Struct):
    total_games: int
    installed_games: int
    total_playtime_seconds: int
    by_platform: Dict[str, int] = {}
    recently_played: List[str] = []
