"""
Base class for platform provider clients.

Each provider (Steam, Epic, GOG) implements this interface to authenticate a
user and fetch normalized profile, friends, library and inventory records.
Network failures surface as ProviderError subclasses; malformed individual
records are skipped inside the fetchers and never fail a whole fetch.
"""

from abc import ABC, abstractmethod
from typing import Awaitable, Callable, List, Optional, TypeVar

import msgspec

from ..config import ConfigManager
from ..database import DatabaseManager
from ..exceptions import AuthExpiredError, IdentityMismatchError
from ..logger import setup_logger
from ..models import (
    Account,
    Credentials,
    Platform,
    RemoteFriend,
    RemoteGame,
    RemoteInventoryItem,
    RemoteProfile,
    decode_json,
    encode_json,
)
from ..secure_store import SecureStore
from .auth_window import AuthWindow
from .http import HttpClient

logger = setup_logger()

T = TypeVar("T")


class AuthSession(msgspec.Struct):
    """Outcome of a successful login or refresh"""
    profile: RemoteProfile
    credentials: Credentials


class CredentialVault:
    """Seals credentials into account auth blobs and opens them again."""

    def __init__(self, secure_store: SecureStore, db: DatabaseManager):
        self.secure_store = secure_store
        self.db = db

    def seal(self, credentials: Credentials) -> str:
        return self.secure_store.encrypt(encode_json(credentials).decode("utf-8"))

    def open(self, blob: Optional[str]) -> Credentials:
        """Unusable or missing blobs yield empty credentials, never an error."""
        plaintext = self.secure_store.decrypt(blob)
        if plaintext is None:
            return Credentials()
        try:
            return decode_json(plaintext, type=Credentials)
        except msgspec.ValidationError as e:
            logger.warning(f"Stored credentials have an unexpected shape: {e}")
            return Credentials()
        except msgspec.DecodeError:
            logger.warning("Stored credentials are not valid JSON")
            return Credentials()

    async def save(self, account_id: str, credentials: Credentials) -> bool:
        return await self.db.update_account_auth(account_id, self.seal(credentials))


class ProviderClient(ABC):
    platform: Platform
    supports_inventory = False

    def __init__(
        self,
        http: HttpClient,
        config: ConfigManager,
        vault: CredentialVault,
        auth_window: Optional[AuthWindow] = None,
    ):
        self.http = http
        self.config = config
        self.vault = vault
        self.auth_window = auth_window

    @property
    def tag(self) -> str:
        return f"[{self.platform.value.upper()}]"

    def account_id_for(self, user_id: str) -> str:
        return f"{self.platform.value}_{user_id}"

    # ----- auth -----

    @abstractmethod
    async def authenticate(self) -> AuthSession:
        """
        Run the interactive login flow.

        Raises:
            AuthFlowError: with the failure reason
        """

    async def silent_refresh(self, account: Account, credentials: Credentials) -> AuthSession:
        """Non-interactive re-authentication. Platforms without one fail closed."""
        raise AuthExpiredError(f"{self.platform} sessions cannot be refreshed silently")

    def merge_credentials(self, previous: Credentials, fresh: Credentials) -> Credentials:
        """Combine credentials from a new login with the ones already stored."""
        return fresh

    async def with_auth(
        self,
        account: Account,
        operation: Callable[[Credentials], Awaitable[T]],
    ) -> T:
        """
        Run ``operation`` with the account's credentials; on an auth failure try
        one silent refresh, persist the new credentials and run it again.

        Raises:
            IdentityMismatchError: the refresh logged in as someone else
            AuthExpiredError: refresh was impossible or the retry was rejected
        """
        credentials = self.vault.open(account.auth_data)
        try:
            return await operation(credentials)
        except AuthExpiredError:
            logger.info(f"{self.tag} Credentials rejected for {account.id}, attempting silent refresh")

        session = await self.silent_refresh(account, credentials)
        refreshed_id = self.account_id_for(session.profile.user_id)
        if refreshed_id != account.id:
            logger.warning(f"{self.tag} Silent refresh returned {refreshed_id}, expected {account.id}")
            raise IdentityMismatchError(account.id, refreshed_id)

        fresh = self.merge_credentials(credentials, session.credentials)
        await self.vault.save(account.id, fresh)
        account.auth_data = self.vault.seal(fresh)
        logger.info(f"{self.tag} Silent refresh succeeded for {account.id}")
        return await operation(fresh)

    # ----- fetchers -----

    @abstractmethod
    async def fetch_profile(self, account: Account, credentials: Credentials) -> RemoteProfile:
        ...

    @abstractmethod
    async def fetch_friends(self, account: Account, credentials: Credentials) -> List[RemoteFriend]:
        ...

    @abstractmethod
    async def fetch_library(self, account: Account, credentials: Credentials) -> List[RemoteGame]:
        ...

    async def fetch_inventory(self, account: Account, credentials: Credentials) -> List[RemoteInventoryItem]:
        return []

    # ----- disconnect -----

    async def disconnect(self, db: DatabaseManager, account: Account) -> None:
        """Soft-disable the account; owned games and friends stay in the library."""
        await db.disconnect_account(account.id)
        logger.info(f"{self.tag} Disconnected {account.id}")
