"""
Database Manager for PlayHub
SQLite-based persistent storage for accounts, games, sessions, friends,
presence, sync history and user-authored library data

- Reads go through a small aiosqlite connection pool
- Writes run in a worker thread on a short-lived sqlite3 connection, one
  transaction per call, so multi-row merges are atomic
- Schema migrations are additive and idempotent (attempt, ignore if present)
"""

import sqlite3
import asyncio
from contextlib import asynccontextmanager, contextmanager
from pathlib import Path
from typing import Any, Dict, Iterable, List, Optional, Tuple

import aiosqlite
import msgspec

from .logger import setup_logger
from .merge import MergeOutcome, friend_row, game_changes, new_game, normalize_title
from .models import (
    Account,
    AccountStatus,
    Friend,
    Game,
    GameNote,
    GameRef,
    InstalledGame,
    InventoryItem,
    LibraryStats,
    Platform,
    PlaySession,
    PresenceStatus,
    RemoteFriend,
    RemoteGame,
    RemoteInventoryItem,
    SyncHistory,
    SyncStatus,
    SyncType,
    Tag,
    decode_json,
    encode_json,
    now_iso,
)

logger = setup_logger()


TABLES = [
    """
    CREATE TABLE IF NOT EXISTS accounts (
        id TEXT PRIMARY KEY,
        platform TEXT NOT NULL,
        username TEXT NOT NULL,
        auth_data TEXT,
        status TEXT NOT NULL DEFAULT 'connected',
        avatar_url TEXT,
        last_synced TEXT,
        created_at TEXT NOT NULL
    )
    """,
    """
    CREATE TABLE IF NOT EXISTS games (
        id TEXT PRIMARY KEY,
        platform TEXT NOT NULL,
        platform_game_id TEXT NOT NULL,
        account_id TEXT NOT NULL,
        title TEXT NOT NULL,
        normalized_title TEXT NOT NULL DEFAULT '',
        install_path TEXT,
        executable_path TEXT,
        is_installed INTEGER NOT NULL DEFAULT 0,
        playtime_seconds INTEGER NOT NULL DEFAULT 0,
        last_played TEXT,
        box_art_url TEXT,
        background_url TEXT,
        metadata TEXT,
        is_favorite INTEGER NOT NULL DEFAULT 0,
        created_at TEXT NOT NULL,
        updated_at TEXT NOT NULL
    )
    """,
    """
    CREATE TABLE IF NOT EXISTS play_sessions (
        id INTEGER PRIMARY KEY AUTOINCREMENT,
        game_id TEXT NOT NULL,
        start_time TEXT NOT NULL,
        end_time TEXT,
        duration_seconds INTEGER,
        FOREIGN KEY (game_id) REFERENCES games(id) ON DELETE CASCADE
    )
    """,
    """
    CREATE TABLE IF NOT EXISTS friends (
        id TEXT PRIMARY KEY,
        platform TEXT NOT NULL,
        external_id TEXT NOT NULL,
        account_id TEXT,
        username TEXT NOT NULL,
        avatar_url TEXT,
        status TEXT NOT NULL DEFAULT 'offline',
        game_activity TEXT,
        updated_at TEXT
    )
    """,
    """
    CREATE TABLE IF NOT EXISTS sync_history (
        id INTEGER PRIMARY KEY AUTOINCREMENT,
        platform TEXT NOT NULL,
        account_id TEXT,
        sync_type TEXT NOT NULL,
        status TEXT NOT NULL,
        items_synced INTEGER NOT NULL DEFAULT 0,
        error_message TEXT,
        started_at TEXT NOT NULL,
        completed_at TEXT
    )
    """,
    """
    CREATE TABLE IF NOT EXISTS presence_status (
        user_id TEXT PRIMARY KEY,
        presence_state TEXT NOT NULL,
        intent_state TEXT NOT NULL,
        intent_metadata TEXT,
        visibility_scope TEXT NOT NULL,
        expires_at TEXT,
        updated_at TEXT NOT NULL,
        source TEXT NOT NULL
    )
    """,
    """
    CREATE TABLE IF NOT EXISTS inventory_items (
        id TEXT PRIMARY KEY,
        account_id TEXT NOT NULL,
        platform TEXT NOT NULL,
        asset_id TEXT NOT NULL,
        app_id INTEGER NOT NULL,
        context_id TEXT NOT NULL,
        name TEXT NOT NULL,
        class_id TEXT,
        instance_id TEXT,
        market_hash_name TEXT,
        icon_url TEXT,
        item_type TEXT,
        rarity TEXT,
        item_class TEXT,
        tradable INTEGER NOT NULL DEFAULT 0,
        marketable INTEGER NOT NULL DEFAULT 0,
        amount INTEGER NOT NULL DEFAULT 1,
        updated_at TEXT
    )
    """,
    """
    CREATE TABLE IF NOT EXISTS tags (
        id INTEGER PRIMARY KEY AUTOINCREMENT,
        name TEXT NOT NULL UNIQUE COLLATE NOCASE,
        color TEXT
    )
    """,
    """
    CREATE TABLE IF NOT EXISTS game_tags (
        game_id TEXT NOT NULL,
        tag_id INTEGER NOT NULL,
        PRIMARY KEY (game_id, tag_id),
        FOREIGN KEY (game_id) REFERENCES games(id) ON DELETE CASCADE,
        FOREIGN KEY (tag_id) REFERENCES tags(id) ON DELETE CASCADE
    )
    """,
    """
    CREATE TABLE IF NOT EXISTS game_notes (
        id INTEGER PRIMARY KEY AUTOINCREMENT,
        game_id TEXT NOT NULL,
        content TEXT NOT NULL,
        created_at TEXT NOT NULL,
        updated_at TEXT NOT NULL,
        FOREIGN KEY (game_id) REFERENCES games(id) ON DELETE CASCADE
    )
    """,
    """
    CREATE TABLE IF NOT EXISTS messages (
        id INTEGER PRIMARY KEY AUTOINCREMENT,
        friend_id TEXT NOT NULL,
        direction TEXT NOT NULL,
        body TEXT NOT NULL,
        is_quick INTEGER NOT NULL DEFAULT 0,
        sent_at TEXT NOT NULL,
        read_at TEXT
    )
    """,
]

INDEXES = [
    "CREATE UNIQUE INDEX IF NOT EXISTS idx_games_account_platform_id ON games(account_id, platform_game_id)",
    "CREATE INDEX IF NOT EXISTS idx_games_platform ON games(platform)",
    "CREATE INDEX IF NOT EXISTS idx_games_normalized_title ON games(normalized_title)",
    "CREATE INDEX IF NOT EXISTS idx_sessions_game ON play_sessions(game_id, end_time)",
    "CREATE INDEX IF NOT EXISTS idx_friends_platform ON friends(platform)",
    "CREATE INDEX IF NOT EXISTS idx_sync_history_started ON sync_history(started_at)",
    "CREATE INDEX IF NOT EXISTS idx_inventory_account ON inventory_items(account_id)",
    "CREATE INDEX IF NOT EXISTS idx_messages_friend ON messages(friend_id, sent_at)",
]

# Columns added after the first release. New columns must be nullable or defaulted.
MIGRATIONS = [
    ("games", "hltb_main REAL"),
    ("games", "hltb_extra REAL"),
    ("games", "hltb_completionist REAL"),
    ("games", "user_rating INTEGER"),
]

# Columns callers may set through update_game()
UPDATABLE_GAME_COLUMNS = {
    "title",
    "install_path",
    "executable_path",
    "is_installed",
    "last_played",
    "box_art_url",
    "background_url",
    "metadata",
    "is_favorite",
    "user_rating",
    "hltb_main",
    "hltb_extra",
    "hltb_completionist",
}


def _row_to_account(row) -> Account:
    return Account(
        id=row["id"],
        platform=Platform(row["platform"]),
        username=row["username"],
        status=AccountStatus(row["status"]),
        auth_data=row["auth_data"],
        avatar_url=row["avatar_url"],
        last_synced=row["last_synced"],
        created_at=row["created_at"],
    )


def _decode_metadata(raw) -> Dict[str, Any]:
    if not raw:
        return {}
    try:
        value = decode_json(raw)
    except msgspec.DecodeError:
        logger.debug("Ignoring malformed game metadata")
        return {}
    return value if isinstance(value, dict) else {}


def _row_to_game(row) -> Game:
    return Game(
        id=row["id"],
        platform=Platform(row["platform"]),
        platform_game_id=row["platform_game_id"],
        account_id=row["account_id"],
        title=row["title"],
        normalized_title=row["normalized_title"],
        install_path=row["install_path"],
        executable_path=row["executable_path"],
        is_installed=bool(row["is_installed"]),
        playtime_seconds=row["playtime_seconds"] or 0,
        last_played=row["last_played"],
        box_art_url=row["box_art_url"],
        background_url=row["background_url"],
        metadata=_decode_metadata(row["metadata"]),
        hltb_main=row["hltb_main"],
        hltb_extra=row["hltb_extra"],
        hltb_completionist=row["hltb_completionist"],
        user_rating=row["user_rating"],
        is_favorite=bool(row["is_favorite"]),
        created_at=row["created_at"],
        updated_at=row["updated_at"],
    )


def _row_to_session(row) -> PlaySession:
    return PlaySession(
        id=row["id"],
        game_id=row["game_id"],
        start_time=row["start_time"],
        end_time=row["end_time"],
        duration_seconds=row["duration_seconds"],
    )


def _row_to_friend(row) -> Friend:
    return Friend(
        id=row["id"],
        platform=Platform(row["platform"]),
        external_id=row["external_id"],
        username=row["username"],
        avatar_url=row["avatar_url"],
        status=row["status"],
        game_activity=row["game_activity"],
        account_id=row["account_id"],
        updated_at=row["updated_at"],
    )


def _row_to_history(row) -> SyncHistory:
    return SyncHistory(
        id=row["id"],
        platform=Platform(row["platform"]),
        sync_type=SyncType(row["sync_type"]),
        status=SyncStatus(row["status"]),
        items_synced=row["items_synced"],
        error_message=row["error_message"],
        started_at=row["started_at"],
        completed_at=row["completed_at"],
        account_id=row["account_id"],
    )


def _row_to_inventory(row) -> InventoryItem:
    return InventoryItem(
        id=row["id"],
        account_id=row["account_id"],
        platform=Platform(row["platform"]),
        asset_id=row["asset_id"],
        app_id=row["app_id"],
        context_id=row["context_id"],
        name=row["name"],
        class_id=row["class_id"],
        instance_id=row["instance_id"],
        market_hash_name=row["market_hash_name"],
        icon_url=row["icon_url"],
        item_type=row["item_type"],
        rarity=row["rarity"],
        item_class=row["item_class"],
        tradable=bool(row["tradable"]),
        marketable=bool(row["marketable"]),
        amount=row["amount"],
    )


def _game_params(game: Game) -> Tuple:
    return (
        game.id, game.platform.value, game.platform_game_id, game.account_id,
        game.title, game.normalized_title or normalize_title(game.title),
        game.install_path, game.executable_path, int(game.is_installed),
        game.playtime_seconds, game.last_played, game.box_art_url, game.background_url,
        encode_json(game.metadata).decode("utf-8"), int(game.is_favorite),
        game.user_rating, game.created_at or now_iso(), game.updated_at or now_iso(),
    )


_INSERT_GAME = """
    INSERT INTO games (
        id, platform, platform_game_id, account_id, title, normalized_title,
        install_path, executable_path, is_installed, playtime_seconds, last_played,
        box_art_url, background_url, metadata, is_favorite, user_rating,
        created_at, updated_at
    ) VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?)
"""


class DatabaseManager:
    """
    Store for all PlayHub data. One instance per process, created at startup
    and passed to the services that need it.
    """

    def __init__(self, db_path: Path, pool_size: int = 4):
        self.db_path = Path(db_path)
        self.db_path.parent.mkdir(parents=True, exist_ok=True)
        self.initialized = False

        self._async_pool: List[aiosqlite.Connection] = []
        self._pool_size = pool_size
        self._pool_lock = asyncio.Lock()
        self._pool_semaphore: Optional[asyncio.Semaphore] = None

        logger.info(f"Database path: {self.db_path}")

    async def initialize(self):
        """Initialize database schema and connection pool"""
        if self.initialized:
            return

        await asyncio.to_thread(self._create_schema)

        self._pool_semaphore = asyncio.Semaphore(self._pool_size)
        try:
            for _ in range(self._pool_size):
                self._async_pool.append(await self._open_async())
            logger.info(f"Connection pool initialized ({len(self._async_pool)} connections)")
        except Exception as e:
            logger.error(f"Failed to initialize async pool: {e}")
            raise

        self.initialized = True
        logger.info("Database initialized successfully")

    async def _open_async(self) -> aiosqlite.Connection:
        conn = await aiosqlite.connect(str(self.db_path))
        conn.row_factory = aiosqlite.Row
        return conn

    @asynccontextmanager
    async def get_async_connection(self):
        """
        Get an async read connection from the pool.

        Usage:
            async with db.get_async_connection() as conn:
                await conn.execute(...)
        """
        await self._pool_semaphore.acquire()
        conn = None

        try:
            async with self._pool_lock:
                if self._async_pool:
                    conn = self._async_pool.pop()
                else:
                    conn = await self._open_async()

            yield conn

        finally:
            if conn is not None:
                async with self._pool_lock:
                    self._async_pool.append(conn)
            self._pool_semaphore.release()

    async def close(self):
        """Close all pooled connections"""
        async with self._pool_lock:
            for conn in self._async_pool:
                try:
                    await conn.close()
                except Exception as e:
                    logger.debug(f"Error closing pooled connection: {e}")
            self._async_pool.clear()
        self.initialized = False
        logger.info("Database connections closed")

    def _connect(self) -> sqlite3.Connection:
        conn = sqlite3.connect(str(self.db_path), timeout=10)
        conn.row_factory = sqlite3.Row
        conn.execute("PRAGMA foreign_keys = ON")
        return conn

    @contextmanager
    def _transaction(self):
        """One write transaction on a fresh connection (runs in thread)"""
        conn = self._connect()
        try:
            yield conn
            conn.commit()
        except Exception:
            conn.rollback()
            raise
        finally:
            conn.close()

    def _create_schema(self):
        """Create database schema and apply migrations (runs in thread)"""
        conn = self._connect()
        try:
            conn.execute("PRAGMA journal_mode = WAL")
            for statement in TABLES:
                conn.execute(statement)
            self._apply_migrations(conn)
            for statement in INDEXES:
                conn.execute(statement)
            conn.commit()
            logger.info("Database schema created successfully")
        except Exception as e:
            logger.error(f"Error creating database schema: {e}", exc_info=True)
            conn.rollback()
            raise
        finally:
            conn.close()

    @staticmethod
    def _apply_migrations(conn: sqlite3.Connection):
        for table, column in MIGRATIONS:
            try:
                conn.execute(f"ALTER TABLE {table} ADD COLUMN {column}")
                logger.info(f"Migration applied: {table}.{column.split()[0]}")
            except sqlite3.OperationalError:
                # Column already exists
                pass

    async def _fetch_all(self, query: str, params: Iterable = ()) -> List[Any]:
        async with self.get_async_connection() as conn:
            async with conn.execute(query, tuple(params)) as cursor:
                return list(await cursor.fetchall())

    async def _fetch_one(self, query: str, params: Iterable = ()):
        async with self.get_async_connection() as conn:
            async with conn.execute(query, tuple(params)) as cursor:
                return await cursor.fetchone()

    # ===== Account Operations =====

    async def upsert_account(self, account: Account) -> Optional[Account]:
        """Insert or update an account. A None auth blob keeps the stored one."""
        return await asyncio.to_thread(self._upsert_account, account)

    def _upsert_account(self, account: Account) -> Optional[Account]:
        try:
            with self._transaction() as conn:
                conn.execute("""
                    INSERT INTO accounts (id, platform, username, auth_data, status, avatar_url, last_synced, created_at)
                    VALUES (?, ?, ?, ?, ?, ?, ?, ?)
                    ON CONFLICT(id) DO UPDATE SET
                        username = excluded.username,
                        auth_data = COALESCE(excluded.auth_data, accounts.auth_data),
                        status = excluded.status,
                        avatar_url = COALESCE(excluded.avatar_url, accounts.avatar_url)
                """, (
                    account.id, account.platform.value, account.username, account.auth_data,
                    account.status.value, account.avatar_url, account.last_synced,
                    account.created_at or now_iso(),
                ))
                row = conn.execute("SELECT * FROM accounts WHERE id = ?", (account.id,)).fetchone()
            return _row_to_account(row) if row else None
        except Exception as e:
            logger.error(f"Error upserting account {account.id}: {e}", exc_info=True)
            return None

    async def get_account(self, account_id: str) -> Optional[Account]:
        try:
            row = await self._fetch_one("SELECT * FROM accounts WHERE id = ?", (account_id,))
            return _row_to_account(row) if row else None
        except Exception as e:
            logger.error(f"Error getting account {account_id}: {e}", exc_info=True)
            return None

    async def get_accounts(
        self,
        platform: Optional[Platform] = None,
        connected_only: bool = False,
    ) -> List[Account]:
        query = "SELECT * FROM accounts WHERE 1 = 1"
        params: List[Any] = []
        if platform is not None:
            query += " AND platform = ?"
            params.append(platform.value)
        if connected_only:
            query += " AND status = ?"
            params.append(AccountStatus.CONNECTED.value)
        query += " ORDER BY created_at"
        try:
            return [_row_to_account(row) for row in await self._fetch_all(query, params)]
        except Exception as e:
            logger.error(f"Error getting accounts: {e}", exc_info=True)
            return []

    async def get_latest_account(self, platform: Platform) -> Optional[Account]:
        """Most recently synced connected account for a platform"""
        try:
            row = await self._fetch_one("""
                SELECT * FROM accounts
                WHERE platform = ? AND status = ?
                ORDER BY last_synced IS NULL, last_synced DESC, created_at DESC
                LIMIT 1
            """, (platform.value, AccountStatus.CONNECTED.value))
            return _row_to_account(row) if row else None
        except Exception as e:
            logger.error(f"Error getting latest {platform} account: {e}", exc_info=True)
            return None

    async def update_account_auth(self, account_id: str, auth_data: Optional[str]) -> bool:
        return await self._execute(
            "UPDATE accounts SET auth_data = ? WHERE id = ?",
            (auth_data, account_id),
            f"updating auth for {account_id}",
        )

    async def mark_account_synced(self, account_id: str) -> bool:
        return await self._execute(
            "UPDATE accounts SET last_synced = ? WHERE id = ?",
            (now_iso(), account_id),
            f"marking {account_id} synced",
        )

    async def disconnect_account(self, account_id: str) -> bool:
        """Soft-disable: status disconnected, credentials cleared, rows kept"""
        return await self._execute(
            "UPDATE accounts SET status = ?, auth_data = NULL WHERE id = ?",
            (AccountStatus.DISCONNECTED.value, account_id),
            f"disconnecting {account_id}",
        )

    async def delete_account_and_games(self, account_id: str) -> int:
        """
        Delete an account together with its games and inventory.

        Returns:
            Number of games deleted
        """
        return await asyncio.to_thread(self._delete_account_and_games, account_id)

    def _delete_account_and_games(self, account_id: str) -> int:
        with self._transaction() as conn:
            cursor = conn.execute("DELETE FROM games WHERE account_id = ?", (account_id,))
            deleted = cursor.rowcount
            conn.execute("DELETE FROM inventory_items WHERE account_id = ?", (account_id,))
            conn.execute("DELETE FROM accounts WHERE id = ?", (account_id,))
        logger.info(f"Deleted account {account_id} and {deleted} games")
        return deleted

    async def _execute(self, query: str, params: Tuple, action: str) -> bool:
        """Run a single-statement write; True if any row changed"""
        def run() -> bool:
            with self._transaction() as conn:
                return conn.execute(query, params).rowcount > 0

        try:
            return await asyncio.to_thread(run)
        except Exception as e:
            logger.error(f"Error {action}: {e}", exc_info=True)
            return False

    # ===== Game Operations =====

    async def merge_games(
        self,
        account_id: str,
        platform: Platform,
        records: List[RemoteGame],
    ) -> MergeOutcome:
        """
        Reconcile fetched library records into the games table in one transaction.

        Identity is (account, platform game id), falling back to the canonical id
        so a row owned by another account (e.g. a local-scan placeholder) is
        re-homed instead of duplicated.

        Raises on database errors so the caller can record the failure.
        """
        if not records:
            return MergeOutcome()
        return await asyncio.to_thread(self._merge_games, account_id, platform, records)

    def _merge_games(self, account_id: str, platform: Platform, records: List[RemoteGame]) -> MergeOutcome:
        outcome = MergeOutcome()
        now = now_iso()
        seen = set()

        with self._transaction() as conn:
            for record in records:
                if record.platform_game_id in seen:
                    continue
                seen.add(record.platform_game_id)

                row = conn.execute(
                    "SELECT * FROM games WHERE account_id = ? AND platform_game_id = ?",
                    (account_id, record.platform_game_id),
                ).fetchone()
                if row is None:
                    row = conn.execute(
                        "SELECT * FROM games WHERE id = ?",
                        (GameRef(platform, record.platform_game_id).game_id,),
                    ).fetchone()

                if row is None:
                    game = new_game(account_id, platform, record, now)
                    conn.execute(_INSERT_GAME, _game_params(game))
                    outcome.inserted.append(game.id)
                    continue

                existing = _row_to_game(row)
                changes = game_changes(existing, record, account_id)
                if not changes:
                    outcome.unchanged += 1
                    continue
                if "account_id" in changes:
                    outcome.rehomed.append(existing.id)
                self._apply_game_changes(conn, existing.id, changes, now)
                outcome.updated.append(existing.id)

        logger.info(
            f"Merged {len(records)} {platform} games for {account_id}: "
            f"{len(outcome.inserted)} new, {len(outcome.updated)} updated, {outcome.unchanged} unchanged"
        )
        return outcome

    @staticmethod
    def _apply_game_changes(conn: sqlite3.Connection, game_id: str, changes: Dict[str, Any], now: str):
        values = dict(changes)
        if "metadata" in values:
            values["metadata"] = encode_json(values["metadata"]).decode("utf-8")
        for flag in ("is_installed", "is_favorite"):
            if flag in values:
                values[flag] = int(bool(values[flag]))
        assignments = ", ".join(f"{column} = ?" for column in values)
        conn.execute(
            f"UPDATE games SET {assignments}, updated_at = ? WHERE id = ?",
            (*values.values(), now, game_id),
        )

    async def insert_game(self, game: Game) -> Optional[Game]:
        try:
            await asyncio.to_thread(self._insert_game, game)
        except Exception as e:
            logger.error(f"Error inserting game {game.id}: {e}", exc_info=True)
            return None
        return await self.get_game(game.id)

    def _insert_game(self, game: Game):
        with self._transaction() as conn:
            conn.execute(_INSERT_GAME, _game_params(game))

    async def get_game(self, game_id: str) -> Optional[Game]:
        try:
            row = await self._fetch_one("SELECT * FROM games WHERE id = ?", (game_id,))
            return _row_to_game(row) if row else None
        except Exception as e:
            logger.error(f"Error getting game {game_id}: {e}", exc_info=True)
            return None

    async def get_games(
        self,
        platform: Optional[Platform] = None,
        account_id: Optional[str] = None,
        installed_only: bool = False,
    ) -> List[Game]:
        query = "SELECT * FROM games WHERE 1 = 1"
        params: List[Any] = []
        if platform is not None:
            query += " AND platform = ?"
            params.append(platform.value)
        if account_id is not None:
            query += " AND account_id = ?"
            params.append(account_id)
        if installed_only:
            query += " AND is_installed = 1"
        query += " ORDER BY title COLLATE NOCASE"
        try:
            return [_row_to_game(row) for row in await self._fetch_all(query, params)]
        except Exception as e:
            logger.error(f"Error getting games: {e}", exc_info=True)
            return []

    async def count_games(self, account_id: Optional[str] = None) -> int:
        query, params = "SELECT COUNT(*) FROM games", ()
        if account_id is not None:
            query, params = "SELECT COUNT(*) FROM games WHERE account_id = ?", (account_id,)
        row = await self._fetch_one(query, params)
        return row[0] if row else 0

    async def update_game(self, game_id: str, **changes) -> bool:
        """Update whitelisted user/display columns of one game"""
        unknown = set(changes) - UPDATABLE_GAME_COLUMNS
        if unknown:
            raise ValueError(f"Cannot update game columns: {', '.join(sorted(unknown))}")
        if not changes:
            return False

        def run() -> bool:
            with self._transaction() as conn:
                if conn.execute("SELECT 1 FROM games WHERE id = ?", (game_id,)).fetchone() is None:
                    return False
                self._apply_game_changes(conn, game_id, changes, now_iso())
                return True

        try:
            return await asyncio.to_thread(run)
        except Exception as e:
            logger.error(f"Error updating game {game_id}: {e}", exc_info=True)
            return False

    async def add_playtime(self, game_id: str, seconds: int, last_played: str) -> bool:
        """Add a closed session's duration to cumulative playtime"""
        return await self._execute(
            """
            UPDATE games
            SET playtime_seconds = playtime_seconds + ?, last_played = ?, updated_at = ?
            WHERE id = ?
            """,
            (max(int(seconds), 0), last_played, now_iso(), game_id),
            f"adding playtime to {game_id}",
        )

    async def set_last_played(self, game_id: str, last_played: str) -> bool:
        return await self._execute(
            "UPDATE games SET last_played = ?, updated_at = ? WHERE id = ?",
            (last_played, now_iso(), game_id),
            f"setting last played for {game_id}",
        )

    async def apply_local_playtime(
        self,
        platform: Platform,
        entries: Dict[str, Tuple[int, Optional[str]]],
    ) -> int:
        """
        Raise playtime/last-played of existing games from a local client's records.

        Args:
            entries: platform game id -> (playtime seconds, last played ISO or None)

        Returns:
            Number of games updated
        """
        if not entries:
            return 0
        return await asyncio.to_thread(self._apply_local_playtime, platform, entries)

    def _apply_local_playtime(self, platform: Platform, entries) -> int:
        updated = 0
        now = now_iso()
        with self._transaction() as conn:
            for platform_game_id, (seconds, last_played) in entries.items():
                cursor = conn.execute("""
                    UPDATE games
                    SET playtime_seconds = MAX(playtime_seconds, ?),
                        last_played = CASE
                            WHEN ? IS NOT NULL AND (last_played IS NULL OR last_played < ?) THEN ?
                            ELSE last_played
                        END,
                        updated_at = ?
                    WHERE id = ? AND (playtime_seconds < ? OR (? IS NOT NULL AND (last_played IS NULL OR last_played < ?)))
                """, (
                    seconds, last_played, last_played, last_played, now,
                    GameRef(platform, platform_game_id).game_id,
                    seconds, last_played, last_played,
                ))
                updated += cursor.rowcount
        return updated

    async def apply_installed_scan(
        self,
        platform: Platform,
        account_id: str,
        found: List[InstalledGame],
    ) -> MergeOutcome:
        """
        Record the result of scanning the disk for installed games.

        Found games are created or re-homed to ``account_id`` and marked installed;
        games of the platform that were installed but not found are marked
        uninstalled. Runs as one transaction.
        """
        return await asyncio.to_thread(self._apply_installed_scan, platform, account_id, found)

    def _apply_installed_scan(self, platform: Platform, account_id: str, found: List[InstalledGame]) -> MergeOutcome:
        outcome = MergeOutcome()
        now = now_iso()
        found_ids = []

        with self._transaction() as conn:
            for item in found:
                game_id = GameRef(platform, item.platform_game_id).game_id
                found_ids.append(game_id)
                row = conn.execute("SELECT * FROM games WHERE id = ?", (game_id,)).fetchone()
                if row is None:
                    game = Game(
                        id=game_id,
                        platform=platform,
                        platform_game_id=item.platform_game_id,
                        account_id=account_id,
                        title=item.title,
                        normalized_title=normalize_title(item.title),
                        install_path=item.install_path,
                        executable_path=item.executable_path,
                        is_installed=True,
                        created_at=now,
                        updated_at=now,
                    )
                    conn.execute(_INSERT_GAME, _game_params(game))
                    outcome.inserted.append(game_id)
                    continue

                existing = _row_to_game(row)
                changes: Dict[str, Any] = {}
                if existing.account_id != account_id:
                    changes["account_id"] = account_id
                    outcome.rehomed.append(game_id)
                if existing.install_path != item.install_path:
                    changes["install_path"] = item.install_path
                if item.executable_path and existing.executable_path != item.executable_path:
                    changes["executable_path"] = item.executable_path
                if not existing.is_installed:
                    changes["is_installed"] = True
                if changes:
                    self._apply_game_changes(conn, game_id, changes, now)
                    outcome.updated.append(game_id)
                else:
                    outcome.unchanged += 1

            placeholders = ",".join("?" * len(found_ids))
            query = "UPDATE games SET is_installed = 0, updated_at = ? WHERE platform = ? AND is_installed = 1"
            if found_ids:
                query += f" AND id NOT IN ({placeholders})"
            cursor = conn.execute(query, (now, platform.value, *found_ids))
            if cursor.rowcount:
                logger.info(f"Marked {cursor.rowcount} {platform} games as uninstalled")

        return outcome

    async def rehome_games(self, from_account_id: str, to_account_id: str) -> int:
        def run() -> int:
            with self._transaction() as conn:
                return conn.execute(
                    "UPDATE games SET account_id = ?, updated_at = ? WHERE account_id = ?",
                    (to_account_id, now_iso(), from_account_id),
                ).rowcount

        try:
            moved = await asyncio.to_thread(run)
        except Exception as e:
            logger.error(f"Error re-homing games from {from_account_id}: {e}", exc_info=True)
            return 0
        if moved:
            logger.info(f"Re-homed {moved} games from {from_account_id} to {to_account_id}")
        return moved

    async def delete_game(self, game_id: str) -> bool:
        return await self._execute("DELETE FROM games WHERE id = ?", (game_id,), f"deleting game {game_id}")

    async def get_library_stats(self) -> LibraryStats:
        try:
            row = await self._fetch_one("""
                SELECT COUNT(*), COALESCE(SUM(is_installed), 0), COALESCE(SUM(playtime_seconds), 0)
                FROM games
            """)
            by_platform = {
                r[0]: r[1]
                for r in await self._fetch_all("SELECT platform, COUNT(*) FROM games GROUP BY platform")
            }
            recent = await self._fetch_all("""
                SELECT id FROM games WHERE last_played IS NOT NULL
                ORDER BY last_played DESC LIMIT 5
            """)
            return LibraryStats(
                total_games=row[0],
                installed_games=row[1],
                total_playtime_seconds=row[2],
                by_platform=by_platform,
                recently_played=[r[0] for r in recent],
            )
        except Exception as e:
            logger.error(f"Error computing library stats: {e}", exc_info=True)
            return LibraryStats(total_games=0, installed_games=0, total_playtime_seconds=0)

    # ===== Play Session Operations =====

    async def open_session(self, game_id: str, start_time: str) -> Optional[int]:
        def run() -> int:
            with self._transaction() as conn:
                return conn.execute(
                    "INSERT INTO play_sessions (game_id, start_time) VALUES (?, ?)",
                    (game_id, start_time),
                ).lastrowid

        try:
            return await asyncio.to_thread(run)
        except Exception as e:
            logger.error(f"Error opening session for {game_id}: {e}", exc_info=True)
            return None

    async def close_session(self, session_id: int, end_time: str, duration_seconds: int) -> bool:
        """Close an open session. Returns False if it was already closed."""
        return await self._execute(
            """
            UPDATE play_sessions SET end_time = ?, duration_seconds = ?
            WHERE id = ? AND end_time IS NULL
            """,
            (end_time, duration_seconds, session_id),
            f"closing session {session_id}",
        )

    async def get_session(self, session_id: int) -> Optional[PlaySession]:
        try:
            row = await self._fetch_one("SELECT * FROM play_sessions WHERE id = ?", (session_id,))
            return _row_to_session(row) if row else None
        except Exception as e:
            logger.error(f"Error getting session {session_id}: {e}", exc_info=True)
            return None

    async def get_sessions_for_game(self, game_id: str, limit: int = 50) -> List[PlaySession]:
        try:
            rows = await self._fetch_all("""
                SELECT * FROM play_sessions WHERE game_id = ?
                ORDER BY start_time DESC, id DESC LIMIT ?
            """, (game_id, limit))
            return [_row_to_session(row) for row in rows]
        except Exception as e:
            logger.error(f"Error getting sessions for {game_id}: {e}", exc_info=True)
            return []

    async def get_open_session(self, game_id: str) -> Optional[PlaySession]:
        try:
            row = await self._fetch_one("""
                SELECT * FROM play_sessions WHERE game_id = ? AND end_time IS NULL
                ORDER BY start_time DESC, id DESC LIMIT 1
            """, (game_id,))
            return _row_to_session(row) if row else None
        except Exception as e:
            logger.error(f"Error getting open session for {game_id}: {e}", exc_info=True)
            return None

    async def close_orphaned_sessions(self) -> int:
        """
        Close sessions left open by a previous run. They are closed at their start
        time with zero duration so no playtime is invented.
        """
        def run() -> int:
            with self._transaction() as conn:
                return conn.execute("""
                    UPDATE play_sessions SET end_time = start_time, duration_seconds = 0
                    WHERE end_time IS NULL
                """).rowcount

        try:
            closed = await asyncio.to_thread(run)
        except Exception as e:
            logger.error(f"Error closing orphaned sessions: {e}", exc_info=True)
            return 0
        if closed:
            logger.info(f"Closed {closed} orphaned play sessions")
        return closed

    # ===== Friend Operations =====

    async def upsert_friends(
        self,
        account_id: str,
        platform: Platform,
        records: List[RemoteFriend],
    ) -> List[str]:
        """
        Batch upsert friends in one transaction. Friends are never deleted here.

        Returns:
            Ids of friends that did not exist before
        """
        if not records:
            return []
        return await asyncio.to_thread(self._upsert_friends, account_id, platform, records)

    def _upsert_friends(self, account_id: str, platform: Platform, records: List[RemoteFriend]) -> List[str]:
        rows = [friend_row(account_id, platform, record) for record in records if record.external_id]
        if not rows:
            return []
        ids = [row["id"] for row in rows]
        now = now_iso()

        with self._transaction() as conn:
            placeholders = ",".join("?" * len(ids))
            known = {
                r[0] for r in conn.execute(f"SELECT id FROM friends WHERE id IN ({placeholders})", ids)
            }
            conn.executemany("""
                INSERT INTO friends (id, platform, external_id, account_id, username, avatar_url, status, game_activity, updated_at)
                VALUES (:id, :platform, :external_id, :account_id, :username, :avatar_url, :status, :game_activity, :updated_at)
                ON CONFLICT(id) DO UPDATE SET
                    username = excluded.username,
                    avatar_url = COALESCE(excluded.avatar_url, friends.avatar_url),
                    status = excluded.status,
                    game_activity = excluded.game_activity,
                    account_id = excluded.account_id,
                    updated_at = excluded.updated_at
            """, [{**row, "updated_at": now} for row in rows])

        return [friend for friend in dict.fromkeys(ids) if friend not in known]

    async def get_friends(self, platform: Optional[Platform] = None) -> List[Friend]:
        query, params = "SELECT * FROM friends", ()
        if platform is not None:
            query, params = "SELECT * FROM friends WHERE platform = ?", (platform.value,)
        query += " ORDER BY username COLLATE NOCASE"
        try:
            return [_row_to_friend(row) for row in await self._fetch_all(query, params)]
        except Exception as e:
            logger.error(f"Error getting friends: {e}", exc_info=True)
            return []

    async def get_friend(self, friend_id: str) -> Optional[Friend]:
        try:
            row = await self._fetch_one("SELECT * FROM friends WHERE id = ?", (friend_id,))
            return _row_to_friend(row) if row else None
        except Exception as e:
            logger.error(f"Error getting friend {friend_id}: {e}", exc_info=True)
            return None

    async def insert_friend(self, friend: Friend) -> bool:
        return await self._execute(
            """
            INSERT INTO friends (id, platform, external_id, account_id, username, avatar_url, status, game_activity, updated_at)
            VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?)
            """,
            (
                friend.id, friend.platform.value, friend.external_id, friend.account_id,
                friend.username, friend.avatar_url, friend.status, friend.game_activity, now_iso(),
            ),
            f"inserting friend {friend.id}",
        )

    async def delete_friend(self, friend_id: str) -> bool:
        return await self._execute("DELETE FROM friends WHERE id = ?", (friend_id,), f"deleting friend {friend_id}")

    # ===== Sync History Operations =====

    async def start_sync_history(self, platform: Platform, account_id: str, sync_type: SyncType) -> int:
        """Append an in_progress audit row. Raises if it cannot be written."""
        def run() -> int:
            with self._transaction() as conn:
                return conn.execute("""
                    INSERT INTO sync_history (platform, account_id, sync_type, status, items_synced, started_at)
                    VALUES (?, ?, ?, ?, 0, ?)
                """, (platform.value, account_id, sync_type.value, SyncStatus.IN_PROGRESS.value, now_iso())).lastrowid

        return await asyncio.to_thread(run)

    async def finish_sync_history(
        self,
        history_id: int,
        status: SyncStatus,
        items_synced: int = 0,
        error_message: Optional[str] = None,
    ) -> bool:
        """Move an in_progress row to its final state. Completed rows are never touched."""
        return await self._execute(
            """
            UPDATE sync_history
            SET status = ?, items_synced = ?, error_message = ?, completed_at = ?
            WHERE id = ? AND status = ?
            """,
            (status.value, items_synced, error_message, now_iso(), history_id, SyncStatus.IN_PROGRESS.value),
            f"finishing sync history {history_id}",
        )

    async def get_sync_history(self, limit: int = 10, platform: Optional[Platform] = None) -> List[SyncHistory]:
        query, params = "SELECT * FROM sync_history", []
        if platform is not None:
            query += " WHERE platform = ?"
            params.append(platform.value)
        query += " ORDER BY started_at DESC, id DESC LIMIT ?"
        params.append(limit)
        try:
            return [_row_to_history(row) for row in await self._fetch_all(query, params)]
        except Exception as e:
            logger.error(f"Error getting sync history: {e}", exc_info=True)
            return []

    async def get_sync_entry(self, history_id: int) -> Optional[SyncHistory]:
        try:
            row = await self._fetch_one("SELECT * FROM sync_history WHERE id = ?", (history_id,))
            return _row_to_history(row) if row else None
        except Exception as e:
            logger.error(f"Error getting sync history {history_id}: {e}", exc_info=True)
            return None

    async def fail_interrupted_syncs(self) -> int:
        """Mark runs still in_progress from a previous process as failed"""
        def run() -> int:
            with self._transaction() as conn:
                return conn.execute("""
                    UPDATE sync_history SET status = ?, error_message = ?, completed_at = ?
                    WHERE status = ?
                """, (
                    SyncStatus.FAILED.value, "Interrupted by application exit", now_iso(),
                    SyncStatus.IN_PROGRESS.value,
                )).rowcount

        try:
            return await asyncio.to_thread(run)
        except Exception as e:
            logger.error(f"Error failing interrupted syncs: {e}", exc_info=True)
            return 0

    # ===== Presence Operations =====

    async def get_presence_row(self, user_id: str) -> Optional[Dict[str, Any]]:
        """Raw presence row; enum coercion is the caller's job"""
        try:
            row = await self._fetch_one("SELECT * FROM presence_status WHERE user_id = ?", (user_id,))
            return dict(row) if row else None
        except Exception as e:
            logger.error(f"Error reading presence for {user_id}: {e}", exc_info=True)
            return None

    async def save_presence(self, status: PresenceStatus, replace: bool = True) -> bool:
        """Write the presence row. With replace=False an existing row wins."""
        verb = "INSERT OR REPLACE" if replace else "INSERT OR IGNORE"
        return await self._execute(
            f"""
            {verb} INTO presence_status
                (user_id, presence_state, intent_state, intent_metadata, visibility_scope, expires_at, updated_at, source)
            VALUES (?, ?, ?, ?, ?, ?, ?, ?)
            """,
            (
                status.user_id, status.presence_state.value, status.intent_state.value,
                encode_json(status.intent_metadata).decode("utf-8"), status.visibility_scope.value,
                status.expires_at, status.updated_at or now_iso(), status.source.value,
            ),
            f"saving presence for {status.user_id}",
        )

    # ===== Inventory Operations =====

    async def upsert_inventory(
        self,
        account_id: str,
        platform: Platform,
        items: List[RemoteInventoryItem],
    ) -> int:
        if not items:
            return 0

        def run() -> int:
            now = now_iso()
            rows = [
                (
                    f"{account_id}_{item.app_id}_{item.context_id}_{item.asset_id}",
                    account_id, platform.value, item.asset_id, item.app_id, item.context_id,
                    item.name, item.class_id, item.instance_id, item.market_hash_name,
                    item.icon_url, item.item_type, item.rarity, item.item_class,
                    int(item.tradable), int(item.marketable), item.amount, now,
                )
                for item in items
            ]
            with self._transaction() as conn:
                conn.executemany("""
                    INSERT OR REPLACE INTO inventory_items (
                        id, account_id, platform, asset_id, app_id, context_id, name, class_id,
                        instance_id, market_hash_name, icon_url, item_type, rarity, item_class,
                        tradable, marketable, amount, updated_at
                    ) VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?)
                """, rows)
            return len(rows)

        return await asyncio.to_thread(run)

    async def get_inventory(self, account_id: Optional[str] = None) -> List[InventoryItem]:
        query, params = "SELECT * FROM inventory_items", ()
        if account_id is not None:
            query, params = "SELECT * FROM inventory_items WHERE account_id = ?", (account_id,)
        query += " ORDER BY name COLLATE NOCASE"
        try:
            return [_row_to_inventory(row) for row in await self._fetch_all(query, params)]
        except Exception as e:
            logger.error(f"Error getting inventory: {e}", exc_info=True)
            return []

    # ===== Tag Operations =====

    async def get_tags(self) -> List[Tag]:
        try:
            rows = await self._fetch_all("SELECT * FROM tags ORDER BY name COLLATE NOCASE")
            return [Tag(id=row["id"], name=row["name"], color=row["color"]) for row in rows]
        except Exception as e:
            logger.error(f"Error getting tags: {e}", exc_info=True)
            return []

    async def get_game_tags(self, game_id: str) -> List[Tag]:
        try:
            rows = await self._fetch_all("""
                SELECT t.* FROM tags t
                JOIN game_tags gt ON gt.tag_id = t.id
                WHERE gt.game_id = ?
                ORDER BY t.name COLLATE NOCASE
            """, (game_id,))
            return [Tag(id=row["id"], name=row["name"], color=row["color"]) for row in rows]
        except Exception as e:
            logger.error(f"Error getting tags for {game_id}: {e}", exc_info=True)
            return []

    async def set_game_tags(self, game_id: str, names: List[str]) -> List[Tag]:
        """Replace all tags of a game atomically, creating unknown tags"""
        def run():
            cleaned = list(dict.fromkeys(name.strip() for name in names if name and name.strip()))
            with self._transaction() as conn:
                conn.execute("DELETE FROM game_tags WHERE game_id = ?", (game_id,))
                for name in cleaned:
                    conn.execute("INSERT OR IGNORE INTO tags (name) VALUES (?)", (name,))
                    tag_id = conn.execute("SELECT id FROM tags WHERE name = ?", (name,)).fetchone()[0]
                    conn.execute("INSERT OR IGNORE INTO game_tags (game_id, tag_id) VALUES (?, ?)", (game_id, tag_id))

        await asyncio.to_thread(run)
        return await self.get_game_tags(game_id)

    # ===== Note Operations =====

    async def get_notes(self, game_id: str) -> List[GameNote]:
        try:
            rows = await self._fetch_all(
                "SELECT * FROM game_notes WHERE game_id = ? ORDER BY updated_at DESC, id DESC",
                (game_id,),
            )
            return [
                GameNote(
                    id=row["id"], game_id=row["game_id"], content=row["content"],
                    created_at=row["created_at"], updated_at=row["updated_at"],
                )
                for row in rows
            ]
        except Exception as e:
            logger.error(f"Error getting notes for {game_id}: {e}", exc_info=True)
            return []

    async def add_note(self, game_id: str, content: str) -> Optional[int]:
        def run() -> int:
            now = now_iso()
            with self._transaction() as conn:
                return conn.execute(
                    "INSERT INTO game_notes (game_id, content, created_at, updated_at) VALUES (?, ?, ?, ?)",
                    (game_id, content, now, now),
                ).lastrowid

        try:
            return await asyncio.to_thread(run)
        except Exception as e:
            logger.error(f"Error adding note to {game_id}: {e}", exc_info=True)
            return None

    async def update_note(self, note_id: int, content: str) -> bool:
        return await self._execute(
            "UPDATE game_notes SET content = ?, updated_at = ? WHERE id = ?",
            (content, now_iso(), note_id),
            f"updating note {note_id}",
        )

    async def delete_note(self, note_id: int) -> bool:
        return await self._execute("DELETE FROM game_notes WHERE id = ?", (note_id,), f"deleting note {note_id}")

    # ===== Message Operations =====

    async def insert_message(self, friend_id: str, direction: str, body: str, is_quick: bool = False) -> Optional[int]:
        def run() -> int:
            with self._transaction() as conn:
                return conn.execute(
                    "INSERT INTO messages (friend_id, direction, body, is_quick, sent_at) VALUES (?, ?, ?, ?, ?)",
                    (friend_id, direction, body, int(is_quick), now_iso()),
                ).lastrowid

        try:
            return await asyncio.to_thread(run)
        except Exception as e:
            logger.error(f"Error storing message for {friend_id}: {e}", exc_info=True)
            return None

    async def get_message_rows(self, friend_id: str, limit: int = 100) -> List[Dict[str, Any]]:
        """Raw message rows (bodies still encrypted), oldest first"""
        try:
            rows = await self._fetch_all("""
                SELECT * FROM (
                    SELECT * FROM messages WHERE friend_id = ? ORDER BY sent_at DESC, id DESC LIMIT ?
                ) ORDER BY sent_at, id
            """, (friend_id, limit))
            return [dict(row) for row in rows]
        except Exception as e:
            logger.error(f"Error getting messages for {friend_id}: {e}", exc_info=True)
            return []

    async def mark_messages_read(self, friend_id: str) -> bool:
        return await self._execute(
            "UPDATE messages SET read_at = ? WHERE friend_id = ? AND direction = 'incoming' AND read_at IS NULL",
            (now_iso(), friend_id),
            f"marking messages read for {friend_id}",
        )
