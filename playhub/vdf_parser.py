"""
Async VDF Parser for Steam client files

Parses Steam's VDF (Valve Data Format) files used in:
- libraryfolders.vdf: Steam library locations
- appmanifest_*.acf: Installed game metadata
- userdata/<id>/config/localconfig.vdf: Per-user playtime and last played

Uses pre-compiled regex for key-value extraction and aiofiles for async I/O.
"""

import asyncio
import re
from pathlib import Path
from typing import Any, Dict, List, Optional, Tuple

import aiofiles

from playhub.logger import setup_logger
from playhub.models import from_unix

logger = setup_logger()


def get_ci(data: Dict[str, Any], key: str) -> Any:
    """Case-insensitive lookup; Steam is inconsistent about key casing."""
    if key in data:
        return data[key]
    lowered = key.lower()
    for candidate, value in data.items():
        if candidate.lower() == lowered:
            return value
    return None


class VDFParser:
    """
    Lightweight async VDF parser for Steam client files.

    VDF format is a simple key-value structure with nested blocks:
    "key"    "value"
    "block"
    {
        "nested_key"    "nested_value"
    }
    """

    _KV_PATTERN = re.compile(r'"([^"]+)"\s+"((?:[^"\\]|\\.)*)"')
    _BLOCK_START = re.compile(r'"([^"]+)"\s*(\{)?\s*$')

    @classmethod
    async def parse_file(cls, file_path: Path, encoding: str = 'utf-8') -> Dict[str, Any]:
        """
        Parse a VDF file and return its contents as a nested dictionary.

        Unreadable files yield an empty dict.
        """
        try:
            async with aiofiles.open(file_path, 'r', encoding=encoding, errors='ignore') as f:
                content = await f.read()
        except OSError as e:
            logger.error(f"Error reading VDF file {file_path}: {e}")
            return {}

        return cls.parse_content(content)

    @classmethod
    def parse_content(cls, content: str) -> Dict[str, Any]:
        """Stack-based parse of VDF text into nested dicts."""
        result: Dict[str, Any] = {}
        stack = [result]
        current_key = None

        for line in content.splitlines():
            line = line.strip()

            if not line or line.startswith('//'):
                continue

            kv_match = cls._KV_PATTERN.match(line)
            if kv_match:
                key, value = kv_match.groups()
                stack[-1][key] = value.replace('\\\\', '\\')
                continue

            block_match = cls._BLOCK_START.match(line)
            if block_match:
                current_key = block_match.group(1)
                if block_match.group(2):
                    new_block: Dict[str, Any] = {}
                    stack[-1][current_key] = new_block
                    stack.append(new_block)
                    current_key = None
                continue

            if line == '{' and current_key:
                new_block = {}
                stack[-1][current_key] = new_block
                stack.append(new_block)
                current_key = None
                continue

            if line == '}':
                if len(stack) > 1:
                    stack.pop()
                continue

        return result

    @classmethod
    async def parse_library_folders(cls, vdf_path: Path) -> List[Path]:
        """
        Parse libraryfolders.vdf to extract all Steam library roots.

        Returns:
            List of steamapps directories that exist
        """
        libraries = []
        data = await cls.parse_file(vdf_path)
        library_data = get_ci(data, 'libraryfolders') or data

        for key, value in library_data.items():
            if isinstance(value, dict) and 'path' in value:
                lib_path = Path(value['path']) / 'steamapps'
            elif key == 'path' and isinstance(value, str):
                # Older single-library format
                lib_path = Path(value) / 'steamapps'
            else:
                continue
            if lib_path.exists():
                libraries.append(lib_path)
                logger.debug(f"Found Steam library: {lib_path}")

        logger.info(f"Found {len(libraries)} Steam library folders")
        return libraries

    @classmethod
    async def parse_appmanifest(cls, acf_path: Path) -> Optional[Dict[str, str]]:
        """
        Parse appmanifest_*.acf.

        Returns:
            Dict with appid, name, installdir, or None if the manifest is unusable
        """
        data = await cls.parse_file(acf_path)
        app_state = get_ci(data, 'AppState') or data

        appid = app_state.get('appid')
        name = app_state.get('name')
        if not appid or not str(appid).isdigit() or not name:
            logger.debug(f"Skipping incomplete appmanifest {acf_path}")
            return None

        return {
            'appid': appid,
            'name': name,
            'installdir': app_state.get('installdir', ''),
        }

    @classmethod
    async def parse_local_playtime(cls, config_path: Path) -> Dict[str, Tuple[int, Optional[str]]]:
        """
        Read per-app playtime from a user's localconfig.vdf.

        Path: UserLocalConfigStore > Software > Valve > Steam > apps, with
        PlayTimeMinutes and LastPlayed (unix seconds) per app id.

        Returns:
            app id -> (playtime seconds, last played ISO or None), only apps with playtime
        """
        data = await cls.parse_file(config_path)
        node: Any = get_ci(data, 'UserLocalConfigStore')
        for key in ('Software', 'Valve', 'Steam', 'apps'):
            if not isinstance(node, dict):
                return {}
            node = get_ci(node, key)
        if not isinstance(node, dict):
            return {}

        entries: Dict[str, Tuple[int, Optional[str]]] = {}
        for app_id, app_data in node.items():
            if not isinstance(app_data, dict) or not app_id.isdigit():
                continue
            try:
                minutes = int(get_ci(app_data, 'PlayTimeMinutes') or 0)
            except ValueError:
                continue
            if minutes <= 0:
                continue
            entries[app_id] = (minutes * 60, from_unix(get_ci(app_data, 'LastPlayed')))
        return entries

    @classmethod
    async def enumerate_steam_games(cls, steam_path: Path) -> List[Dict[str, Any]]:
        """
        Enumerate installed Steam games using appmanifest files.

        Args:
            steam_path: Steam installation path (e.g., C:\\Program Files (x86)\\Steam)

        Returns:
            List of game dicts with: app_id, name, path
        """
        games: List[Dict[str, Any]] = []

        library_folders_vdf = steam_path / 'steamapps' / 'libraryfolders.vdf'
        if library_folders_vdf.exists():
            steamapps_dirs = await cls.parse_library_folders(library_folders_vdf)
        else:
            steamapps_dirs = []
        default_steamapps = steam_path / 'steamapps'
        if default_steamapps.exists() and default_steamapps not in steamapps_dirs:
            steamapps_dirs.append(default_steamapps)

        if not steamapps_dirs:
            logger.warning(f"No Steam library folders found under {steam_path}")
            return games

        async def process_library(steamapps_dir: Path) -> List[Dict[str, Any]]:
            manifest_files = await asyncio.to_thread(lambda: list(steamapps_dir.glob('appmanifest_*.acf')))
            if not manifest_files:
                return []

            # Limit concurrent file reads
            semaphore = asyncio.Semaphore(20)

            async def parse_with_limit(manifest_path: Path):
                async with semaphore:
                    return await cls.parse_appmanifest(manifest_path)

            results = await asyncio.gather(
                *[parse_with_limit(m) for m in manifest_files],
                return_exceptions=True
            )

            library_games = []
            common_dir = steamapps_dir / 'common'
            for result in results:
                if isinstance(result, BaseException):
                    logger.debug(f"Manifest parse failed in {steamapps_dir}: {result}")
                    continue
                if result:
                    library_games.append({
                        'app_id': str(result['appid']),
                        'name': result['name'],
                        'path': common_dir / result['installdir'] if result['installdir'] else common_dir,
                    })
            return library_games

        library_results = await asyncio.gather(
            *[process_library(lib) for lib in steamapps_dirs],
            return_exceptions=True
        )

        seen = set()
        for result in library_results:
            if not isinstance(result, list):
                continue
            for game in result:
                if game['app_id'] not in seen:
                    seen.add(game['app_id'])
                    games.append(game)

        logger.info(f"Enumerated {len(games)} installed Steam games via appmanifest files")
        return games
