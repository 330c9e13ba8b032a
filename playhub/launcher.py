"""
Platform-native launch handoff.

Steam, Epic and GOG Galaxy games are started through the client's URI scheme;
games with a known executable are spawned directly. The handoff is
fire-and-forget: nothing here reports when the game exits.
"""

import asyncio
import os
import subprocess
import sys
import webbrowser
from pathlib import Path
from typing import Callable, Optional

import msgspec

from .logger import setup_logger
from .models import Game, Platform

logger = setup_logger()

LAUNCH_URIS = {
    Platform.STEAM: "steam://rungameid/{id}",
    Platform.EPIC: "com.epicgames.launcher://apps/{id}?action=launch&silent=true",
    Platform.GOG: "goggalaxy://launchGame/{id}",
}


class LaunchPlan(msgspec.Struct):
    """How a game will be started and where its process can be looked for."""
    uri: Optional[str] = None
    executable: Optional[str] = None
    watch_path: Optional[str] = None


def resolve_portable_path(original: str) -> str:
    """
    Re-root a stored executable path onto the drive the portable build runs from.

    Portable installs move between drives; a path recorded as F:\\Games\\x.exe
    becomes E:\\Games\\x.exe when the app now runs from E:.
    """
    portable_dir = os.environ.get("PORTABLE_EXECUTABLE_DIR")
    if not portable_dir:
        return original
    current_root = Path(portable_dir).anchor
    original_root = Path(original).anchor
    if current_root and original_root and current_root != original_root:
        candidate = current_root + original[len(original_root):]
        if os.path.exists(candidate):
            logger.info(f"[Portable] Healed path from {original} to {candidate}")
            return candidate
    return original


def plan_launch(game: Game) -> Optional[LaunchPlan]:
    """
    Decide how to start ``game``. An existing executable wins over the client
    URI for non-Steam games; Steam always goes through the client.

    Returns None when there is no way to start the game.
    """
    executable = None
    if game.executable_path and game.platform is not Platform.STEAM:
        executable = game.executable_path
        if not os.path.exists(executable):
            executable = resolve_portable_path(executable)
        if not os.path.exists(executable):
            executable = None

    if executable:
        return LaunchPlan(executable=executable, watch_path=str(Path(executable).parent))

    template = LAUNCH_URIS.get(game.platform)
    if template:
        return LaunchPlan(uri=template.format(id=game.platform_game_id), watch_path=game.install_path)
    return None


def _spawn(executable: str):
    kwargs = {"cwd": str(Path(executable).parent)}
    if sys.platform == 'win32':
        kwargs["creationflags"] = subprocess.DETACHED_PROCESS | subprocess.CREATE_NEW_PROCESS_GROUP
    else:
        kwargs["start_new_session"] = True
    subprocess.Popen([executable], stdin=subprocess.DEVNULL, stdout=subprocess.DEVNULL,
                     stderr=subprocess.DEVNULL, **kwargs)


class GameLauncher:
    """Performs a LaunchPlan. URI and spawn functions are injectable."""

    def __init__(
        self,
        open_uri: Callable[[str], bool] = webbrowser.open,
        spawn: Callable[[str], None] = _spawn,
    ):
        self._open_uri = open_uri
        self._spawn = spawn

    async def launch(self, plan: LaunchPlan) -> bool:
        try:
            if plan.executable:
                logger.info(f"Launching executable {plan.executable}")
                await asyncio.to_thread(self._spawn, plan.executable)
                return True
            if plan.uri:
                logger.info(f"Launching via {plan.uri}")
                opened = await asyncio.to_thread(self._open_uri, plan.uri)
                return opened is not False
        except OSError as e:
            logger.error(f"Launch failed: {e}")
        return False
