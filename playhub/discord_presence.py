"""
Discord Rich Presence broadcaster
Shows the game being played and the user's intent in Discord

Uses pypresence for Discord RPC integration. Broadcasting is cosmetic: every
failure is logged and swallowed, and nothing here can fail a session or sync.
"""

import asyncio
from typing import Any, Dict, Optional

from pypresence import DiscordError, DiscordNotFound, Presence

from playhub.config import ConfigManager
from playhub.constants import DEFAULT_PRESENCE_LABEL, DISCORD_LARGE_IMAGE, INTENT_LABELS
from playhub.logger import setup_logger
from playhub.models import IntentState, parse_iso

logger = setup_logger()


def state_label(intent_state: Optional[str], custom_label: Optional[str] = None) -> str:
    """Human readable label for an intent; a custom intent shows its own label."""
    if intent_state == IntentState.CUSTOM and custom_label:
        return custom_label
    return INTENT_LABELS.get(intent_state or "", DEFAULT_PRESENCE_LABEL)


class PresenceBroadcaster:
    """
    Manages the Discord Rich Presence connection.
    One instance is owned by the service container.
    """

    def __init__(self, config: ConfigManager, presence_factory=Presence):
        self.config = config
        self._presence_factory = presence_factory
        self._rpc: Optional[Presence] = None
        self._connected = False
        self._lock = asyncio.Lock()

    @property
    def is_enabled(self) -> bool:
        return self.config.get_discord_presence_enabled()

    @property
    def is_connected(self) -> bool:
        return self._connected

    async def _connect(self) -> bool:
        """Connect to Discord RPC if enabled and configured. Caller holds the lock."""
        if self._connected:
            return True

        client_id = self.config.get_discord_client_id()
        if not client_id:
            logger.debug("Discord client id not configured - presence disabled")
            return False

        try:
            self._rpc = self._presence_factory(client_id)
            await asyncio.to_thread(self._rpc.connect)
            self._connected = True
            logger.info("Connected to Discord RPC")
            return True
        except DiscordNotFound:
            logger.debug("Discord not running - presence disabled")
        except DiscordError as e:
            logger.warning(f"Discord RPC error: {e}")
        except Exception as e:
            logger.error(f"Failed to connect to Discord: {e}")
        self._rpc = None
        self._connected = False
        return False

    async def set_game_activity(
        self,
        game_id: str,
        title: str,
        start_time: Optional[str],
        intent_state: Optional[str] = None,
        custom_label: Optional[str] = None,
    ) -> bool:
        """Show "Playing {title}" with the intent label. Returns False if nothing was sent."""
        if not self.is_enabled:
            return False

        activity: Dict[str, Any] = {
            "details": f"Playing {title}",
            "state": state_label(intent_state, custom_label),
            "large_image": DISCORD_LARGE_IMAGE,
            "large_text": "PlayHub",
        }
        started = parse_iso(start_time)
        if started:
            activity["start"] = int(started.timestamp())

        async with self._lock:
            if not await self._connect():
                return False
            try:
                await asyncio.to_thread(self._rpc.update, **activity)
                logger.debug(f"Discord presence updated for {game_id}: {activity['state']}")
                return True
            except Exception as e:
                logger.warning(f"Failed to update Discord presence: {e}")
                self._connected = False
                return False

    async def clear(self):
        async with self._lock:
            if not self._rpc or not self._connected:
                return
            try:
                await asyncio.to_thread(self._rpc.clear)
                logger.debug("Discord presence cleared")
            except Exception as e:
                logger.warning(f"Failed to clear Discord presence: {e}")
                self._connected = False

    async def set_enabled(self, enabled: bool):
        """Persist the switch; turning it off clears and drops the connection."""
        self.config.set_discord_presence_enabled(enabled)
        if not enabled:
            await self.clear()
            await self.disconnect()
        logger.info(f"Discord presence {'enabled' if enabled else 'disabled'}")

    async def disconnect(self):
        async with self._lock:
            if self._rpc and self._connected:
                try:
                    await asyncio.to_thread(self._rpc.close)
                except Exception as e:
                    logger.debug(f"Error disconnecting from Discord: {e}")
                finally:
                    logger.info("Disconnected from Discord RPC")
            self._connected = False
            self._rpc = None
