from .version import __version__
from .config import ConfigManager
from .database import DatabaseManager
from .events import EventHub, EventKind
from .logger import setup_logger
from .models import (
    GameRef,
    IntentMetadata,
    IntentState,
    Platform,
    PresenceSource,
    PresenceUpdate,
    SyncType,
)
from .services import PlayHubServices, run_with_services

__all__ = [
    "__version__",
    "ConfigManager",
    "DatabaseManager",
    "EventHub",
    "EventKind",
    "setup_logger",
    "GameRef",
    "IntentMetadata",
    "IntentState",
    "Platform",
    "PresenceSource",
    "PresenceUpdate",
    "SyncType",
    "PlayHubServices",
    "run_with_services",
]
