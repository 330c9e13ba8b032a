"""
Local client scanning

Finds games installed through the Steam and GOG Galaxy clients on this
machine and imports the Steam client's own playtime records. Results are
written through the store so the library reflects what is actually on disk.
"""

import asyncio
import os
import sys
from pathlib import Path
from typing import List, Optional

from playhub.config import ConfigManager
from playhub.constants import (
    GOG_REGISTRY_KEY,
    LOCAL_STEAM_ACCOUNT_ID,
    STEAM_LIBRARY_CAPSULE_URL,
    STEAM_LIBRARY_HERO_URL,
)
from playhub.database import DatabaseManager
from playhub.logger import setup_logger
from playhub.merge import MergeOutcome
from playhub.models import Account, InstalledGame, Platform
from playhub.vdf_parser import VDFParser

logger = setup_logger()

IS_WINDOWS = sys.platform == 'win32'

LINUX_STEAM_PATHS = [
    Path.home() / ".steam" / "steam",
    Path.home() / ".local" / "share" / "Steam",
    Path.home() / ".var" / "app" / "com.valvesoftware.Steam" / "data" / "Steam",
]
MACOS_STEAM_PATH = Path.home() / "Library" / "Application Support" / "Steam"


def _windows_steam_path() -> Optional[Path]:
    import winreg

    try:
        key = winreg.OpenKey(winreg.HKEY_LOCAL_MACHINE, r"SOFTWARE\WOW6432Node\Valve\Steam")
        try:
            value, _ = winreg.QueryValueEx(key, "InstallPath")
        finally:
            winreg.CloseKey(key)
        return Path(value)
    except OSError as e:
        logger.debug(f"Steam install path not in registry: {e}")

    program_files = os.environ.get("ProgramFiles(x86)") or os.environ.get("ProgramFiles") or r"C:\Program Files (x86)"
    return Path(program_files) / "Steam"


def detect_steam_paths(config: Optional[ConfigManager] = None) -> List[Path]:
    """Steam roots that exist on this machine, configured path first."""
    candidates: List[Path] = []
    if config is not None and config.get_steam_install_path():
        candidates.append(Path(config.get_steam_install_path()))

    if IS_WINDOWS:
        windows_path = _windows_steam_path()
        if windows_path:
            candidates.append(windows_path)
    elif sys.platform == 'darwin':
        candidates.append(MACOS_STEAM_PATH)
    else:
        candidates.extend(LINUX_STEAM_PATHS)

    paths: List[Path] = []
    for candidate in candidates:
        if candidate.is_dir() and candidate.resolve() not in [p.resolve() for p in paths]:
            paths.append(candidate)
    return paths


def find_executables(install_path: Optional[str]) -> List[str]:
    """
    Names of the .exe files directly inside an install folder.

    Returns an empty list when the folder is missing or unreadable.
    """
    if not install_path:
        return []
    try:
        return sorted(
            entry.name for entry in os.scandir(install_path)
            if entry.is_file() and entry.name.lower().endswith('.exe')
        )
    except OSError as e:
        logger.debug(f"Cannot list executables in {install_path}: {e}")
        return []


def read_gog_registry() -> List[InstalledGame]:
    """Installed GOG games from HKLM\\...\\GOG.com\\Games (Windows only)."""
    if not IS_WINDOWS:
        return []

    import winreg

    found: List[InstalledGame] = []
    try:
        root = winreg.OpenKey(winreg.HKEY_LOCAL_MACHINE, GOG_REGISTRY_KEY, 0, winreg.KEY_READ)
    except OSError as e:
        logger.info(f"[GOG Scanner] Registry key not present: {e}")
        return found

    try:
        index = 0
        while True:
            try:
                game_id = winreg.EnumKey(root, index)
            except OSError:
                break
            index += 1
            if not game_id.isdigit():
                continue

            try:
                with winreg.OpenKey(root, game_id) as key:
                    values = {}
                    for name in ("path", "exe", "gameName"):
                        try:
                            values[name] = winreg.QueryValueEx(key, name)[0]
                        except OSError:
                            values[name] = None
            except OSError as e:
                logger.debug(f"[GOG Scanner] Cannot read registry entry {game_id}: {e}")
                continue

            if not values["path"]:
                continue
            exe = values["exe"]
            if exe and not os.path.isabs(exe):
                exe = os.path.join(values["path"], exe)
            found.append(InstalledGame(
                platform_game_id=game_id,
                title=values["gameName"] or f"GOG Game {game_id}",
                install_path=values["path"],
                executable_path=exe or None,
            ))
    finally:
        winreg.CloseKey(root)

    return found


class LocalScanner:
    """Reconciles the store with the game clients installed on this machine."""

    def __init__(self, db: DatabaseManager, config: ConfigManager):
        self.db = db
        self.config = config

    async def _steam_owner(self) -> str:
        """The real Steam account to own scanned games, or the local placeholder."""
        accounts = [
            account for account in await self.db.get_accounts(Platform.STEAM, connected_only=True)
            if account.id != LOCAL_STEAM_ACCOUNT_ID
        ]
        if accounts:
            accounts.sort(key=lambda account: account.last_synced or "", reverse=True)
            logger.info(f"Associating scanned games with Steam account {accounts[0].username} ({accounts[0].id})")
            return accounts[0].id

        await self.db.upsert_account(Account(
            id=LOCAL_STEAM_ACCOUNT_ID,
            platform=Platform.STEAM,
            username="Local Steam User",
        ))
        return LOCAL_STEAM_ACCOUNT_ID

    async def scan_steam(self) -> MergeOutcome:
        steam_paths = await asyncio.to_thread(detect_steam_paths, self.config)
        if not steam_paths:
            logger.info("Steam client not found, skipping installed scan")
            return MergeOutcome()

        found: List[InstalledGame] = []
        seen = set()
        for steam_path in steam_paths:
            for game in await VDFParser.enumerate_steam_games(steam_path):
                if game['app_id'] in seen:
                    continue
                seen.add(game['app_id'])
                found.append(InstalledGame(
                    platform_game_id=game['app_id'],
                    title=game['name'],
                    install_path=str(game['path']),
                ))

        owner = await self._steam_owner()
        outcome = await self.db.apply_installed_scan(Platform.STEAM, owner, found)

        for game_id in outcome.inserted:
            app_id = game_id.partition("_")[2]
            await self.db.update_game(
                game_id,
                box_art_url=STEAM_LIBRARY_CAPSULE_URL.format(app_id=app_id),
                background_url=STEAM_LIBRARY_HERO_URL.format(app_id=app_id),
            )

        logger.info(
            f"Found {len(found)} installed Steam games "
            f"({len(outcome.inserted)} new, {len(outcome.rehomed)} re-homed)"
        )
        return outcome

    async def scan_gog(self) -> MergeOutcome:
        if not IS_WINDOWS:
            return MergeOutcome()

        account = await self.db.get_latest_account(Platform.GOG)
        if account is None:
            logger.debug("[GOG Scanner] No GOG account connected, skipping")
            return MergeOutcome()

        found = await asyncio.to_thread(read_gog_registry)
        outcome = await self.db.apply_installed_scan(Platform.GOG, account.id, found)
        logger.info(f"[GOG Scanner] Found {len(found)} installed games via registry")
        return outcome

    async def scan_all(self) -> int:
        """Run every platform scan; returns how many games changed."""
        total = 0
        for scan in (self.scan_steam, self.scan_gog):
            try:
                total += (await scan()).total
            except Exception as e:
                logger.error(f"Installed game scan failed: {e}", exc_info=True)
        return total

    async def sync_steam_playtime(self) -> int:
        """
        Import playtime from every Steam user's localconfig.vdf.

        Only raises stored values; returns the number of games updated.
        """
        steam_paths = await asyncio.to_thread(detect_steam_paths, self.config)
        config_files: List[Path] = []
        for steam_path in steam_paths:
            userdata = steam_path / "userdata"
            if not userdata.is_dir():
                continue
            config_files.extend(
                await asyncio.to_thread(lambda: [
                    p for p in (userdata / user / "config" / "localconfig.vdf" for user in os.listdir(userdata))
                    if p.is_file()
                ])
            )

        if not config_files:
            logger.debug("No Steam localconfig.vdf found")
            return 0

        updated = 0
        for config_file in config_files:
            entries = await VDFParser.parse_local_playtime(config_file)
            count = await self.db.apply_local_playtime(Platform.STEAM, entries)
            logger.info(f"Updated playtime for {count} games from {config_file}")
            updated += count
        return updated
