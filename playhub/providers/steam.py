"""
Steam provider client

Steam has no OAuth for third parties: identity comes from OpenID 2.0, and
profile, friends, library and inventory are read from the public community
pages (XML/HTML/JSON) using the session cookies captured during login. When
the user saved a Web API key the owned-games endpoint is preferred.
"""

import asyncio
import html
import math
import re
from typing import Any, Dict, List, Optional
from urllib.parse import parse_qs, urlencode, urlsplit

import msgspec

from ..constants import (
    STEAM_COMMUNITY_URL,
    STEAM_ECONOMY_IMAGE_URL,
    STEAM_HEADER_URL,
    STEAM_INVENTORY_MAX_PAGES,
    STEAM_INVENTORY_PAGE_DELAY,
    STEAM_INVENTORY_PAGE_SIZE,
    STEAM_LOGO_URL,
    STEAM_OPENID_URL,
    STEAM_OWNED_GAMES_URL,
)
from ..exceptions import AuthFailure, AuthFlowError, ProviderError
from ..logger import setup_logger
from ..models import (
    Account,
    Credentials,
    Platform,
    RemoteFriend,
    RemoteGame,
    RemoteInventoryItem,
    RemoteProfile,
    from_unix,
)
from .base import AuthSession, ProviderClient

logger = setup_logger()

OPENID_NS = "http://specs.openid.net/auth/2.0"
OPENID_RETURN_TO = "https://playhub.app/auth/callback"
OPENID_REALM = "https://playhub.app"

_FRIEND_BLOCK = re.compile(
    r'<div[^>]+class="friend_block_holder[^"]*"[^>]+data-steamid="(\d+)"[^>]*>(.*?)</div>\s*</div>',
    re.S,
)
_IMG_SRC = re.compile(r'<img[^>]+src="([^"]+)"')
_FRIEND_NAME = re.compile(r'<div[^>]+class="friend_block_content"[^>]*>(.*?)<br', re.S)
_FRIEND_STATUS = re.compile(r'<span[^>]+class="friend_small_text"[^>]*>(.*?)</span>', re.S)
_TAGS = re.compile(r"<[^>]+>")
_RG_GAMES = re.compile(r"var\s+rgGames\s*=\s*(\[.*?\]|\{.*?\});", re.S)


def _strip_tags(text: str) -> str:
    return html.unescape(_TAGS.sub("", text)).strip()


def extract_xml_tag(xml: str, tag: str) -> Optional[str]:
    """Text of the first <tag>, with CDATA unwrapped."""
    match = re.search(rf"<{tag}>(.*?)</{tag}>", xml, re.S)
    if not match:
        return None
    value = match.group(1).strip()
    if value.startswith("<![CDATA[") and value.endswith("]]>"):
        value = value[9:-3]
    return html.unescape(value).strip() or None


def hours_to_seconds(value) -> Optional[int]:
    """Community pages report hours with either decimal point or comma."""
    if value is None or value == "":
        return None
    try:
        hours = float(str(value).strip().replace(",", "."))
    except ValueError:
        return None
    if not math.isfinite(hours) or hours < 0:
        return None
    return int(round(hours * 3600))


def box_art_url(app_id: str, logo: Optional[str]) -> str:
    if logo:
        if logo.startswith("http"):
            return logo
        return STEAM_LOGO_URL.format(app_id=app_id, logo=logo)
    return STEAM_HEADER_URL.format(app_id=app_id)


def map_friend_status(status_text: str) -> str:
    text = (status_text or "").strip().lower()
    if "in-game" in text or text.startswith("playing"):
        return "in-game"
    if text.startswith("online"):
        return "online"
    if text.startswith("away") or text.startswith("snooze"):
        return "away"
    if text.startswith("busy"):
        return "busy"
    return "offline"


def parse_profile_xml(steam_id: str, xml: str) -> RemoteProfile:
    return RemoteProfile(
        user_id=steam_id,
        display_name=extract_xml_tag(xml, "steamID") or f"Steam User {steam_id[-4:]}",
        avatar_url=extract_xml_tag(xml, "avatarFull"),
    )


def parse_friends_html(page: str) -> List[RemoteFriend]:
    friends = []
    for steam_id, content in _FRIEND_BLOCK.findall(page):
        avatar = _IMG_SRC.search(content)
        name = _FRIEND_NAME.search(content)
        status = _FRIEND_STATUS.search(content)
        status_text = _strip_tags(status.group(1)) if status else "Offline"
        friends.append(RemoteFriend(
            external_id=steam_id,
            username=(_strip_tags(name.group(1)) if name else "") or "Unknown",
            avatar_url=avatar.group(1) if avatar else None,
            status=map_friend_status(status_text),
            game_activity=status_text or None,
        ))
    return friends


def _game_record(app_id, name, playtime_seconds, logo, last_played) -> Optional[RemoteGame]:
    app_id = str(app_id or "").strip()
    name = str(name or "").strip()
    if not app_id.isdigit() or not name:
        return None
    return RemoteGame(
        platform_game_id=app_id,
        title=html.unescape(name),
        playtime_seconds=playtime_seconds,
        cover_url=box_art_url(app_id, logo),
        background_url=STEAM_HEADER_URL.format(app_id=app_id),
        last_played=last_played,
    )


def parse_owned_games(data: Dict[str, Any]) -> List[RemoteGame]:
    games = []
    for entry in (data.get("response") or {}).get("games") or []:
        if not isinstance(entry, dict):
            continue
        minutes = entry.get("playtime_forever")
        record = _game_record(
            entry.get("appid"),
            entry.get("name"),
            int(minutes) * 60 if isinstance(minutes, (int, float)) else None,
            entry.get("img_logo_url"),
            from_unix(entry.get("rtime_last_played")),
        )
        if record:
            games.append(record)
    return games


def parse_games_xml(xml: str) -> List[RemoteGame]:
    games = []
    for segment in xml.split("<game>")[1:]:
        last_played = extract_xml_tag(segment, "lastPlayed")
        record = _game_record(
            extract_xml_tag(segment, "appID"),
            extract_xml_tag(segment, "name"),
            hours_to_seconds(extract_xml_tag(segment, "hoursOnRecord")),
            extract_xml_tag(segment, "logo"),
            from_unix(last_played) if last_played and last_played.isdigit() else None,
        )
        if record:
            games.append(record)
    return games


def parse_rg_games(page: str) -> List[RemoteGame]:
    match = _RG_GAMES.search(page)
    if not match:
        return []
    try:
        data = msgspec.json.decode(match.group(1))
    except msgspec.DecodeError:
        logger.warning("[STEAM] rgGames block is not valid JSON")
        return []

    entries = data if isinstance(data, list) else list(data.values()) if isinstance(data, dict) else []
    games = []
    for entry in entries:
        if not isinstance(entry, dict):
            continue
        record = _game_record(
            entry.get("appid"),
            entry.get("name"),
            hours_to_seconds(entry.get("hours_forever")),
            entry.get("logo"),
            from_unix(entry.get("last_played")),
        )
        if record:
            games.append(record)
    return games


def parse_inventory_page(data: Dict[str, Any], app_id: int = 753, context_id: str = "6") -> List[RemoteInventoryItem]:
    descriptions = {
        (d.get("classid"), d.get("instanceid")): d
        for d in data.get("descriptions") or []
        if isinstance(d, dict)
    }
    items = []
    for asset in data.get("assets") or []:
        if not isinstance(asset, dict) or not asset.get("assetid"):
            continue
        desc = descriptions.get((asset.get("classid"), asset.get("instanceid")), {})
        tags = {t.get("category"): t.get("localized_tag_name") or t.get("name") for t in desc.get("tags") or [] if isinstance(t, dict)}
        marketable = bool(desc.get("marketable"))
        name = desc.get("market_name") or desc.get("name") or "Unknown Item"
        try:
            amount = int(asset.get("amount", 1))
        except (TypeError, ValueError):
            amount = 1
        items.append(RemoteInventoryItem(
            asset_id=str(asset["assetid"]),
            app_id=app_id,
            context_id=context_id,
            name=name + (" (Marketable)" if marketable else ""),
            class_id=asset.get("classid"),
            instance_id=asset.get("instanceid"),
            market_hash_name=desc.get("market_hash_name"),
            icon_url=STEAM_ECONOMY_IMAGE_URL.format(icon=desc["icon_url"]) if desc.get("icon_url") else None,
            item_type=desc.get("type"),
            rarity=tags.get("rarity") or "Common",
            item_class=tags.get("item_class") or "Item",
            tradable=bool(desc.get("tradable")),
            marketable=marketable,
            amount=amount,
        ))
    return items


class SteamClient(ProviderClient):
    platform = Platform.STEAM
    supports_inventory = True

    def _headers(self, credentials: Credentials) -> Dict[str, str]:
        if not credentials.cookies:
            return {}
        return {"Cookie": "; ".join(f"{name}={value}" for name, value in credentials.cookies.items())}

    def _steam_id(self, account: Account, credentials: Credentials) -> str:
        return credentials.user_id or account.external_id

    # ----- auth -----

    def login_url(self) -> str:
        params = {
            "openid.ns": OPENID_NS,
            "openid.mode": "checkid_setup",
            "openid.return_to": OPENID_RETURN_TO,
            "openid.realm": OPENID_REALM,
            "openid.identity": f"{OPENID_NS}/identifier_select",
            "openid.claimed_id": f"{OPENID_NS}/identifier_select",
        }
        return f"{STEAM_OPENID_URL}?{urlencode(params)}"

    async def authenticate(self) -> AuthSession:
        if self.auth_window is None:
            raise AuthFlowError(AuthFailure.NOT_CONFIGURED, "No login window available")

        redirect = await self.auth_window.open(self.login_url(), OPENID_RETURN_TO)
        if redirect is None:
            raise AuthFlowError(AuthFailure.USER_CLOSED_WINDOW)

        query = {key: values[0] for key, values in parse_qs(urlsplit(redirect.url).query).items()}
        assertion = {key: value for key, value in query.items() if key.startswith("openid.")}
        if not assertion.get("openid.claimed_id"):
            raise AuthFlowError(AuthFailure.EXCHANGE_FAILED, "Redirect carried no OpenID assertion")

        assertion["openid.mode"] = "check_authentication"
        try:
            response = await self.http.post(STEAM_OPENID_URL, data=assertion)
        except ProviderError as e:
            raise AuthFlowError(AuthFailure.EXCHANGE_FAILED, f"OpenID verification failed: {e}")
        if "is_valid:true" not in response.text():
            raise AuthFlowError(AuthFailure.EXCHANGE_FAILED, "Steam rejected the OpenID assertion")

        steam_id = assertion["openid.claimed_id"].rstrip("/").rsplit("/", 1)[-1]
        if not steam_id.isdigit():
            raise AuthFlowError(AuthFailure.EXCHANGE_FAILED, f"Unexpected claimed id {steam_id!r}")

        credentials = Credentials(cookies=dict(redirect.cookies), user_id=steam_id)
        try:
            profile = await self._fetch_profile(steam_id, credentials)
        except ProviderError as e:
            logger.warning(f"[STEAM] Profile lookup after login failed: {e}")
            profile = RemoteProfile(user_id=steam_id, display_name=f"Steam User {steam_id[-4:]}")

        logger.info(f"[STEAM] Authenticated {steam_id}")
        return AuthSession(profile=profile, credentials=credentials)

    def merge_credentials(self, previous: Credentials, fresh: Credentials) -> Credentials:
        if previous.api_key and not fresh.api_key:
            fresh.api_key = previous.api_key
        return fresh

    # ----- fetchers -----

    async def _fetch_profile(self, steam_id: str, credentials: Credentials) -> RemoteProfile:
        xml = await self.http.get_text(
            f"{STEAM_COMMUNITY_URL}/profiles/{steam_id}/",
            params={"xml": "1"},
            headers=self._headers(credentials),
        )
        return parse_profile_xml(steam_id, xml)

    async def fetch_profile(self, account: Account, credentials: Credentials) -> RemoteProfile:
        return await self._fetch_profile(self._steam_id(account, credentials), credentials)

    async def fetch_friends(self, account: Account, credentials: Credentials) -> List[RemoteFriend]:
        steam_id = self._steam_id(account, credentials)
        page = await self.http.get_text(
            f"{STEAM_COMMUNITY_URL}/profiles/{steam_id}/friends/",
            headers=self._headers(credentials),
        )
        friends = parse_friends_html(page)
        logger.info(f"[STEAM] Parsed {len(friends)} friends")
        return friends

    async def fetch_library(self, account: Account, credentials: Credentials) -> List[RemoteGame]:
        steam_id = self._steam_id(account, credentials)
        headers = self._headers(credentials)

        if credentials.api_key:
            try:
                data = await self.http.get_json(STEAM_OWNED_GAMES_URL, params={
                    "key": credentials.api_key,
                    "steamid": steam_id,
                    "include_appinfo": "1",
                    "include_played_free_games": "1",
                    "format": "json",
                })
                games = parse_owned_games(data if isinstance(data, dict) else {})
                if games:
                    logger.info(f"[STEAM] Web API returned {len(games)} games")
                    return games
            except (ProviderError, msgspec.DecodeError) as e:
                logger.warning(f"[STEAM] Web API fetch failed, falling back to community pages: {e}")

        games_url = f"{STEAM_COMMUNITY_URL}/profiles/{steam_id}/games/"
        try:
            xml = await self.http.get_text(games_url, params={"tab": "all", "xml": "1"}, headers=headers)
            games = parse_games_xml(xml)
            if games:
                logger.info(f"[STEAM] Games XML returned {len(games)} games")
                return games
        except ProviderError as e:
            logger.warning(f"[STEAM] Games XML fetch failed: {e}")

        page = await self.http.get_text(games_url, params={"tab": "all"}, headers=headers)
        games = parse_rg_games(page)
        logger.info(f"[STEAM] Games page returned {len(games)} games")
        return games

    async def fetch_inventory(self, account: Account, credentials: Credentials) -> List[RemoteInventoryItem]:
        """
        Steam community inventory (app 753, context 6). Pages already fetched
        are kept if a later page fails.
        """
        steam_id = self._steam_id(account, credentials)
        url = f"{STEAM_COMMUNITY_URL}/inventory/{steam_id}/753/6"
        items: List[RemoteInventoryItem] = []
        start_asset_id = None

        for page in range(STEAM_INVENTORY_MAX_PAGES):
            params = {"l": "english", "count": str(STEAM_INVENTORY_PAGE_SIZE)}
            if start_asset_id:
                params["start_assetid"] = start_asset_id
            try:
                data = await self.http.get_json(url, params=params, headers=self._headers(credentials))
            except (ProviderError, msgspec.DecodeError) as e:
                logger.warning(f"[STEAM] Inventory page {page + 1} failed, keeping {len(items)} items: {e}")
                break

            if not isinstance(data, dict) or not data.get("success"):
                break
            items.extend(parse_inventory_page(data))

            if data.get("more_items") and data.get("last_assetid"):
                start_asset_id = str(data["last_assetid"])
                await asyncio.sleep(STEAM_INVENTORY_PAGE_DELAY)
            else:
                break

        return items

    async def save_api_key(self, account: Account, api_key: str) -> bool:
        credentials = self.vault.open(account.auth_data)
        credentials.api_key = api_key.strip() or None
        return await self.vault.save(account.id, credentials)
