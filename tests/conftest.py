from __future__ import annotations

import asyncio
from collections import defaultdict
from pathlib import Path
import sys
from typing import Any, Dict, List, Optional
from unittest.mock import Mock

import pytest
import pytest_asyncio

ROOT = Path(__file__).resolve().parents[1]
sys.path.insert(0, str(ROOT))

from playhub.config import ConfigManager
from playhub.database import DatabaseManager
from playhub.events import EventHub, EventKind
from playhub.exceptions import AuthExpiredError
from playhub.models import (
    Account,
    Credentials,
    Game,
    GameRef,
    Platform,
    RemoteFriend,
    RemoteGame,
    RemoteInventoryItem,
    RemoteProfile,
    now_iso,
)
from playhub.providers.base import AuthSession, CredentialVault, ProviderClient
from playhub.secure_store import SecureStore
from playhub.task_registry import TaskRegistry


@pytest_asyncio.fixture
async def db(tmp_path):
    manager = DatabaseManager(tmp_path / "playhub.db", pool_size=2)
    await manager.initialize()
    yield manager
    await manager.close()


@pytest.fixture
def config(tmp_path):
    return ConfigManager(tmp_path / "config.ini")


@pytest.fixture
def events():
    return EventHub()


@pytest.fixture
def recorded(events):
    """Every event emitted on the hub, grouped by kind."""
    seen: Dict[EventKind, List[Any]] = defaultdict(list)
    for kind in EventKind:
        events.subscribe(kind, lambda payload, kind=kind: seen[kind].append(payload))
    return seen


@pytest_asyncio.fixture
async def tasks():
    registry = TaskRegistry()
    yield registry
    await registry.cancel_all_tasks(timeout=1.0)


@pytest.fixture
def secure_store(tmp_path):
    return SecureStore.for_data_dir(tmp_path)


@pytest.fixture
def vault(secure_store, db):
    return CredentialVault(secure_store, db)


class FakeProvider(ProviderClient):
    """
    In-memory provider. ``failures`` maps a stage name (profile, friends,
    library, inventory) to an exception, or to a list of exceptions raised
    one per call until exhausted.
    """

    supports_inventory = True

    def __init__(
        self,
        vault: CredentialVault,
        platform: Platform = Platform.STEAM,
        profile: Optional[RemoteProfile] = None,
        friends: Optional[List[RemoteFriend]] = None,
        games: Optional[List[RemoteGame]] = None,
        inventory: Optional[List[RemoteInventoryItem]] = None,
    ):
        super().__init__(http=Mock(), config=Mock(), vault=vault)
        self.platform = platform
        self.profile = profile or RemoteProfile(user_id="123", display_name="Player One")
        self.friends = friends or []
        self.games = games or []
        self.inventory = inventory or []
        self.failures: Dict[str, Any] = {}
        self.refresh_profile: Optional[RemoteProfile] = None
        self.calls: List[str] = []
        self.delay = 0.0
        self.active = 0
        self.max_active = 0

    async def _step(self, stage: str):
        self.calls.append(stage)
        self.active += 1
        self.max_active = max(self.max_active, self.active)
        try:
            if self.delay:
                await asyncio.sleep(self.delay)
        finally:
            self.active -= 1
        failure = self.failures.get(stage)
        if isinstance(failure, list):
            if failure:
                raise failure.pop(0)
        elif failure is not None:
            raise failure

    async def authenticate(self) -> AuthSession:
        return AuthSession(
            profile=self.profile,
            credentials=Credentials(access_token="token", user_id=self.profile.user_id),
        )

    async def silent_refresh(self, account, credentials) -> AuthSession:
        self.calls.append("refresh")
        if self.refresh_profile is None:
            raise AuthExpiredError("cannot refresh")
        return AuthSession(
            profile=self.refresh_profile,
            credentials=Credentials(access_token="fresh", user_id=self.refresh_profile.user_id),
        )

    async def fetch_profile(self, account, credentials):
        await self._step("profile")
        return self.profile

    async def fetch_friends(self, account, credentials):
        await self._step("friends")
        return list(self.friends)

    async def fetch_library(self, account, credentials):
        await self._step("library")
        return list(self.games)

    async def fetch_inventory(self, account, credentials):
        await self._step("inventory")
        return list(self.inventory)


@pytest.fixture
def make_provider(vault):
    def factory(**kwargs) -> FakeProvider:
        return FakeProvider(vault, **kwargs)
    return factory


@pytest.fixture
def add_account(db, vault):
    async def factory(
        account_id: str = "steam_123",
        platform: Platform = Platform.STEAM,
        username: str = "Player One",
        credentials: Optional[Credentials] = None,
    ) -> Account:
        return await db.upsert_account(Account(
            id=account_id,
            platform=platform,
            username=username,
            auth_data=vault.seal(credentials or Credentials(access_token="token")),
        ))
    return factory


@pytest.fixture
def add_game(db):
    async def factory(
        platform: Platform = Platform.EPIC,
        native_id: str = "1",
        title: str = "Test Game",
        account_id: str = "epic_1",
        **fields,
    ) -> Game:
        now = now_iso()
        return await db.insert_game(Game(
            id=GameRef(platform, native_id).game_id,
            platform=platform,
            platform_game_id=native_id,
            account_id=account_id,
            title=title,
            created_at=now,
            updated_at=now,
            **fields,
        ))
    return factory
