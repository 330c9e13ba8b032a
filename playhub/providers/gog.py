"""
GOG provider client

GOG Galaxy's public client id issues an implicit-grant token: the access
token comes back in the fragment of the embed.gog.com redirect. There is no
refresh token, so a silent refresh replays the same flow without showing the
login window and relies on the browser session still being valid.
"""

import re
from datetime import datetime, timedelta, timezone
from typing import Any, Dict, List, Optional
from urllib.parse import parse_qs, urlencode, urlsplit

import msgspec

from ..constants import (
    AUTH_SILENT_TIMEOUT,
    GOG_AUTH_URL,
    GOG_CLIENT_ID,
    GOG_COVER_SUFFIX,
    GOG_EMBED_URL,
    GOG_REDIRECT_URI,
)
from ..database import DatabaseManager
from ..exceptions import AuthExpiredError, AuthFailure, AuthFlowError, ProviderError
from ..logger import setup_logger
from ..models import (
    Account,
    Credentials,
    Platform,
    RemoteFriend,
    RemoteGame,
    RemoteProfile,
    parse_iso,
)
from .base import AuthSession, ProviderClient

logger = setup_logger()

_IMAGE_EXTENSION = re.compile(r"\.(jpg|jpeg|png|webp)$", re.I)
_REDIRECT_PREFIX = GOG_REDIRECT_URI.split("?", 1)[0]


def normalize_cover_url(url: Optional[str]) -> Optional[str]:
    """Protocol-less and http image urls become https; bare image ids get the vertical cover suffix."""
    if not url:
        return None
    if url.startswith("//"):
        url = "https:" + url
    elif url.startswith("http://"):
        url = "https://" + url[len("http://"):]
    if not _IMAGE_EXTENSION.search(url):
        url += GOG_COVER_SUFFIX
    return url


def parse_stats(data: Any) -> Dict[str, Dict[str, Any]]:
    """Map product id to {"playtime_seconds", "last_played"} from /user/data/games."""
    stats: Dict[str, Dict[str, Any]] = {}
    owned = data.get("owned") if isinstance(data, dict) else None
    for entry in owned if isinstance(owned, list) else []:
        if not isinstance(entry, dict) or entry.get("id") is None:
            continue
        game_stats = entry.get("stats") if isinstance(entry.get("stats"), dict) else {}
        minutes = game_stats.get("playtime") or 0
        last_session = parse_iso(game_stats.get("lastSession")) if isinstance(game_stats.get("lastSession"), str) else None
        try:
            playtime = int(minutes) * 60
        except (TypeError, ValueError):
            playtime = 0
        stats[str(entry["id"])] = {
            "playtime_seconds": playtime,
            "last_played": last_session.isoformat() if last_session else None,
        }
    return stats


def games_from_products(products: List[Any], stats: Dict[str, Dict[str, Any]]) -> List[RemoteGame]:
    games = []
    for product in products:
        if not isinstance(product, dict):
            continue
        title = product.get("title")
        if not isinstance(title, str) or not title.strip():
            logger.warning(f"[GOG] Skipping product with missing title: {product.get('id')}")
            continue
        product_id = str(product.get("id", ""))
        if not product_id.isdigit():
            logger.warning(f"[GOG] Skipping product with invalid id: {product_id!r}")
            continue

        game_stats = stats.get(product_id)
        games.append(RemoteGame(
            platform_game_id=product_id,
            title=title.strip(),
            playtime_seconds=game_stats["playtime_seconds"] if game_stats else None,
            last_played=game_stats["last_played"] if game_stats else None,
            cover_url=normalize_cover_url(product.get("image")),
        ))
    return games


class GogClient(ProviderClient):
    platform = Platform.GOG

    def login_url(self) -> str:
        params = {
            "client_id": GOG_CLIENT_ID,
            "redirect_uri": GOG_REDIRECT_URI,
            "response_type": "token",
            "layout": "default",
            "brand": "gog",
        }
        return f"{GOG_AUTH_URL}?{urlencode(params)}"

    @staticmethod
    def _bearer(credentials: Credentials) -> Dict[str, str]:
        if not credentials.access_token:
            raise AuthExpiredError("No GOG access token stored")
        return {"Authorization": f"Bearer {credentials.access_token}"}

    async def _user_data(self, credentials: Credentials) -> RemoteProfile:
        data = await self.http.get_json(f"{GOG_EMBED_URL}/userData.json", headers=self._bearer(credentials))
        if not isinstance(data, dict) or not data.get("userId"):
            raise AuthFlowError(AuthFailure.PROFILE_FETCH_FAILED, "Invalid GOG user data")
        avatar = data.get("avatar")
        return RemoteProfile(
            user_id=str(data["userId"]),
            display_name=data.get("username") or "GOG User",
            avatar_url=f"{avatar}_avm.jpg" if isinstance(avatar, str) and avatar else None,
        )

    async def _run_flow(self, interactive: bool) -> AuthSession:
        if self.auth_window is None:
            raise AuthFlowError(AuthFailure.NOT_CONFIGURED, "No login window available")

        redirect = await self.auth_window.open(
            self.login_url(),
            _REDIRECT_PREFIX,
            interactive=interactive,
            timeout=None if interactive else AUTH_SILENT_TIMEOUT,
        )
        if redirect is None:
            if interactive:
                raise AuthFlowError(AuthFailure.USER_CLOSED_WINDOW)
            raise AuthFlowError(AuthFailure.TIMEOUT, "GOG silent refresh timed out")

        parts = urlsplit(redirect.url)
        error = parse_qs(parts.query).get("error")
        if error:
            raise AuthFlowError(AuthFailure.EXCHANGE_FAILED, f"GOG login failed: {error[0]}")

        fragment = {key: values[0] for key, values in parse_qs(parts.fragment).items()}
        access_token = fragment.get("access_token")
        if not access_token:
            raise AuthFlowError(AuthFailure.EXCHANGE_FAILED, "GOG redirect carried no access token")

        expires_at = None
        if (fragment.get("expires_in") or "").isdigit():
            expires_at = (datetime.now(timezone.utc) + timedelta(seconds=int(fragment["expires_in"]))).isoformat()
        credentials = Credentials(access_token=access_token, expires_at=expires_at)

        try:
            profile = await self._user_data(credentials)
        except (ProviderError, msgspec.DecodeError) as e:
            raise AuthFlowError(AuthFailure.PROFILE_FETCH_FAILED, f"GOG profile fetch failed: {e}")

        credentials.user_id = profile.user_id
        logger.info(f"[GOG] Got access token for {profile.user_id} (interactive: {interactive})")
        return AuthSession(profile=profile, credentials=credentials)

    # ----- auth -----

    async def authenticate(self) -> AuthSession:
        return await self._run_flow(interactive=True)

    async def silent_refresh(self, account: Account, credentials: Credentials) -> AuthSession:
        try:
            return await self._run_flow(interactive=False)
        except AuthFlowError as e:
            logger.warning(f"[GOG] Silent refresh failed for {account.id}: {e}")
            raise AuthExpiredError(f"GOG silent refresh failed: {e}")

    # ----- fetchers -----

    async def fetch_profile(self, account: Account, credentials: Credentials) -> RemoteProfile:
        return await self._user_data(credentials)

    async def fetch_friends(self, account: Account, credentials: Credentials) -> List[RemoteFriend]:
        # GOG exposes no friends list to the Galaxy client id
        return []

    async def fetch_library(self, account: Account, credentials: Credentials) -> List[RemoteGame]:
        headers = self._bearer(credentials)
        products: List[Any] = []
        page = 1
        total_pages = 1
        while page <= total_pages:
            data = await self.http.get_json(
                f"{GOG_EMBED_URL}/account/getFilteredProducts",
                params={"mediaType": "1", "page": str(page)},
                headers=headers,
            )
            if not isinstance(data, dict):
                break
            products.extend(data.get("products") or [])
            if not data.get("totalPages"):
                break
            total_pages = int(data["totalPages"])
            page += 1

        try:
            stats = parse_stats(await self.http.get_json(f"{GOG_EMBED_URL}/user/data/games", headers=headers))
        except AuthExpiredError:
            raise
        except (ProviderError, msgspec.DecodeError) as e:
            logger.warning(f"[GOG] Stats fetch failed, continuing without playtime: {e}")
            stats = {}

        games = games_from_products(products, stats)
        logger.info(f"[GOG] Fetched {len(games)} products ({len(products)} listed)")
        return games

    # ----- disconnect -----

    async def disconnect(self, db: DatabaseManager, account: Account) -> None:
        """Unlike other platforms, GOG removes the account together with its games."""
        removed = await db.delete_account_and_games(account.id)
        logger.info(f"[GOG] Disconnected {account.id}, removed {removed} games")
