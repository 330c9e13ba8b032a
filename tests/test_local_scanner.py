"""
Tests for installed-game scanning and the local Steam playtime import.
Steam discovery is pointed at a fake Steam folder under tmp_path.
"""

import textwrap

import pytest

from playhub.constants import LOCAL_STEAM_ACCOUNT_ID, STEAM_LIBRARY_CAPSULE_URL
from playhub.local_scanner import LocalScanner, detect_steam_paths, find_executables
from playhub.models import Account, Platform, RemoteGame


def write_manifest(steamapps, app_id, name):
    steamapps.mkdir(parents=True, exist_ok=True)
    (steamapps / f"appmanifest_{app_id}.acf").write_text(textwrap.dedent(f'''
        "AppState"
        {{
            "appid"        "{app_id}"
            "name"         "{name}"
            "installdir"   "{name}"
        }}
    '''), encoding="utf-8")


@pytest.fixture
def steam_root(tmp_path, monkeypatch):
    root = tmp_path / "Steam"
    (root / "steamapps").mkdir(parents=True)
    monkeypatch.setattr("playhub.local_scanner.detect_steam_paths", lambda config: [root])
    return root


@pytest.fixture
def scanner(db, config):
    return LocalScanner(db, config)


class TestFindExecutables:
    def test_lists_exe_files_only(self, tmp_path):
        (tmp_path / "Game.EXE").write_bytes(b"")
        (tmp_path / "launcher.exe").write_bytes(b"")
        (tmp_path / "readme.txt").write_text("hi")
        (tmp_path / "sub.exe").mkdir()
        assert find_executables(str(tmp_path)) == ["Game.EXE", "launcher.exe"]

    def test_missing_folder(self, tmp_path):
        assert find_executables(str(tmp_path / "missing")) == []
        assert find_executables(None) == []


class TestDetectSteamPaths:
    def test_configured_path_comes_first(self, config, tmp_path):
        custom = tmp_path / "MySteam"
        custom.mkdir()
        config.set_value("Steam", "install_path", str(custom))
        assert detect_steam_paths(config)[0] == custom

    def test_missing_configured_path_is_skipped(self, config, tmp_path):
        config.set_value("Steam", "install_path", str(tmp_path / "missing"))
        assert tmp_path / "missing" not in detect_steam_paths(config)


class TestSteamScan:
    @pytest.mark.asyncio
    async def test_games_go_to_placeholder_without_account(self, scanner, steam_root, db):
        write_manifest(steam_root / "steamapps", "440", "Team Fortress 2")

        outcome = await scanner.scan_steam()

        assert outcome.inserted == ["steam_440"]
        game = await db.get_game("steam_440")
        assert game.account_id == LOCAL_STEAM_ACCOUNT_ID
        assert game.is_installed
        assert game.install_path.endswith("Team Fortress 2")
        assert game.box_art_url == STEAM_LIBRARY_CAPSULE_URL.format(app_id="440")
        assert (await db.get_account(LOCAL_STEAM_ACCOUNT_ID)).username == "Local Steam User"

    @pytest.mark.asyncio
    async def test_games_go_to_connected_account(self, scanner, steam_root, db):
        await db.upsert_account(Account(id="steam_1", platform=Platform.STEAM, username="Player"))
        write_manifest(steam_root / "steamapps", "440", "Team Fortress 2")

        await scanner.scan_steam()

        assert (await db.get_game("steam_440")).account_id == "steam_1"
        assert await db.get_account(LOCAL_STEAM_ACCOUNT_ID) is None

    @pytest.mark.asyncio
    async def test_rescan_marks_removed_games(self, scanner, steam_root, db):
        write_manifest(steam_root / "steamapps", "440", "Team Fortress 2")
        write_manifest(steam_root / "steamapps", "570", "Dota 2")
        await scanner.scan_steam()

        (steam_root / "steamapps" / "appmanifest_570.acf").unlink()
        outcome = await scanner.scan_steam()

        assert outcome.unchanged == 1
        assert not (await db.get_game("steam_570")).is_installed
        assert (await db.get_game("steam_440")).is_installed

    @pytest.mark.asyncio
    async def test_scan_keeps_synced_art(self, scanner, steam_root, db):
        await db.upsert_account(Account(id="steam_1", platform=Platform.STEAM, username="Player"))
        await db.merge_games("steam_1", Platform.STEAM, [
            RemoteGame(platform_game_id="440", title="Team Fortress 2", cover_url="https://synced/art.jpg"),
        ])
        write_manifest(steam_root / "steamapps", "440", "Team Fortress 2")

        await scanner.scan_steam()

        assert (await db.get_game("steam_440")).box_art_url == "https://synced/art.jpg"

    @pytest.mark.asyncio
    async def test_no_steam_client(self, scanner, db, monkeypatch):
        monkeypatch.setattr("playhub.local_scanner.detect_steam_paths", lambda config: [])
        outcome = await scanner.scan_steam()
        assert outcome.total == 0
        assert await db.count_games() == 0

    @pytest.mark.asyncio
    async def test_scan_all_counts_changes(self, scanner, steam_root):
        write_manifest(steam_root / "steamapps", "440", "Team Fortress 2")
        assert await scanner.scan_all() == 1


class TestLocalPlaytime:
    @pytest.mark.asyncio
    async def test_imports_from_every_user(self, scanner, steam_root, db):
        await db.merge_games("steam_1", Platform.STEAM, [
            RemoteGame(platform_game_id="440", title="Team Fortress 2", playtime_seconds=60),
        ])
        config_dir = steam_root / "userdata" / "12345" / "config"
        config_dir.mkdir(parents=True)
        (config_dir / "localconfig.vdf").write_text(textwrap.dedent('''
            "UserLocalConfigStore"
            {
                "Software"
                {
                    "Valve"
                    {
                        "Steam"
                        {
                            "apps"
                            {
                                "440"
                                {
                                    "PlayTimeMinutes"    "120"
                                }
                            }
                        }
                    }
                }
            }
        '''), encoding="utf-8")
        (steam_root / "userdata" / "999").mkdir()

        assert await scanner.sync_steam_playtime() == 1
        assert (await db.get_game("steam_440")).playtime_seconds == 7200

    @pytest.mark.asyncio
    async def test_nothing_to_import(self, scanner, steam_root):
        assert await scanner.sync_steam_playtime() == 0
