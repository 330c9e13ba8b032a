"""
Epic Games provider client (Epic Account Services OAuth)

Authorization-code login with a random state, token exchange using HTTP Basic
client authentication, and refresh through the refresh_token grant. Presence
is not available without EOS Connect, so every friend is reported offline.
"""

import base64
import uuid
from datetime import datetime, timedelta, timezone
from typing import Any, Dict, List, Optional
from urllib.parse import parse_qs, urlencode, urlsplit

import msgspec

from ..constants import (
    EPIC_API_URL,
    EPIC_AUTHORIZE_URL,
    EPIC_PROFILE_CHUNK,
    EPIC_TOKEN_URL,
    EPIC_USERINFO_URL,
)
from ..exceptions import (
    AuthExpiredError,
    AuthFailure,
    AuthFlowError,
    ClientRequestError,
    ConfigurationError,
    ProviderError,
)
from ..logger import setup_logger
from ..models import (
    Account,
    Credentials,
    Platform,
    RemoteFriend,
    RemoteGame,
    RemoteProfile,
)
from .base import AuthSession, ProviderClient

logger = setup_logger()


class EpicToken(msgspec.Struct):
    access_token: str = ""
    refresh_token: Optional[str] = None
    expires_in: Optional[int] = None
    expires_at: Optional[str] = None


def profile_from_userinfo(data: Dict[str, Any]) -> Optional[RemoteProfile]:
    user_id = data.get("sub") or data.get("account_id") or data.get("id")
    if not user_id:
        return None
    display_name = (
        data.get("displayName") or data.get("preferred_username") or data.get("name") or "Epic User"
    )
    return RemoteProfile(user_id=str(user_id), display_name=display_name)


def games_from_entitlements(entitlements: List[Any]) -> List[RemoteGame]:
    games = []
    for entitlement in entitlements:
        if not isinstance(entitlement, dict) or not entitlement.get("itemId"):
            continue
        item_id = str(entitlement["itemId"])
        name = entitlement.get("entitlementName")
        title = name.strip() if isinstance(name, str) and name.strip() else f"Unknown Epic Game ({item_id})"
        metadata = {"namespace": entitlement["namespace"]} if entitlement.get("namespace") else None
        games.append(RemoteGame(platform_game_id=item_id, title=title, metadata=metadata))
    return games


class EpicClient(ProviderClient):
    platform = Platform.EPIC

    def _credentials(self) -> Dict[str, str]:
        try:
            return self.config.get_provider_credentials(Platform.EPIC)
        except ConfigurationError as e:
            raise AuthFlowError(AuthFailure.NOT_CONFIGURED, str(e))

    @staticmethod
    def _basic_auth(client_id: str, client_secret: str) -> str:
        token = base64.b64encode(f"{client_id}:{client_secret}".encode("utf-8")).decode("ascii")
        return f"Basic {token}"

    @staticmethod
    def _bearer(credentials: Credentials) -> Dict[str, str]:
        if not credentials.access_token:
            raise AuthExpiredError("No Epic access token stored")
        return {"Authorization": f"Bearer {credentials.access_token}"}

    async def _request_token(self, settings: Dict[str, str], form: Dict[str, str]) -> Credentials:
        if settings.get("deployment_id"):
            form["deployment_id"] = settings["deployment_id"]
        form["scope"] = "basic_profile"
        response = await self.http.post(
            EPIC_TOKEN_URL,
            data=form,
            headers={"Authorization": self._basic_auth(settings["client_id"], settings["client_secret"])},
        )
        token = response.json(EpicToken)
        if not token.access_token:
            raise AuthFlowError(AuthFailure.EXCHANGE_FAILED, "Epic access token missing")

        expires_at = token.expires_at
        if not expires_at and token.expires_in:
            expires_at = (datetime.now(timezone.utc) + timedelta(seconds=token.expires_in)).isoformat()
        return Credentials(
            access_token=token.access_token,
            refresh_token=token.refresh_token,
            expires_at=expires_at,
        )

    async def _userinfo(self, credentials: Credentials) -> RemoteProfile:
        data = await self.http.get_json(EPIC_USERINFO_URL, headers=self._bearer(credentials))
        profile = profile_from_userinfo(data if isinstance(data, dict) else {})
        if profile is None:
            raise AuthFlowError(AuthFailure.PROFILE_FETCH_FAILED, "Epic user id not found")
        return profile

    # ----- auth -----

    async def authenticate(self) -> AuthSession:
        settings = self._credentials()
        if self.auth_window is None:
            raise AuthFlowError(AuthFailure.NOT_CONFIGURED, "No login window available")

        state = str(uuid.uuid4())
        params = {
            "client_id": settings["client_id"],
            "response_type": "code",
            "redirect_uri": settings["redirect_uri"],
            "scope": "basic_profile",
            "state": state,
        }
        redirect = await self.auth_window.open(f"{EPIC_AUTHORIZE_URL}?{urlencode(params)}", settings["redirect_uri"])
        if redirect is None:
            raise AuthFlowError(AuthFailure.USER_CLOSED_WINDOW)

        query = {key: values[0] for key, values in parse_qs(urlsplit(redirect.url).query).items()}
        if query.get("state") != state:
            raise AuthFlowError(AuthFailure.STATE_MISMATCH, "State mismatch during Epic login")
        if not query.get("code"):
            raise AuthFlowError(AuthFailure.EXCHANGE_FAILED, "Missing authorization code from Epic")

        try:
            credentials = await self._request_token(settings, {
                "grant_type": "authorization_code",
                "code": query["code"],
                "redirect_uri": settings["redirect_uri"],
            })
        except (ProviderError, msgspec.DecodeError) as e:
            raise AuthFlowError(AuthFailure.EXCHANGE_FAILED, f"Epic token exchange failed: {e}")

        try:
            profile = await self._userinfo(credentials)
        except (ProviderError, msgspec.DecodeError) as e:
            raise AuthFlowError(AuthFailure.PROFILE_FETCH_FAILED, f"Epic profile fetch failed: {e}")

        credentials.user_id = profile.user_id
        logger.info(f"[EPIC] Authenticated {profile.user_id} ({profile.display_name})")
        return AuthSession(profile=profile, credentials=credentials)

    async def silent_refresh(self, account: Account, credentials: Credentials) -> AuthSession:
        if not credentials.refresh_token:
            raise AuthExpiredError("No Epic refresh token stored")
        settings = self._credentials()
        try:
            fresh = await self._request_token(settings, {
                "grant_type": "refresh_token",
                "refresh_token": credentials.refresh_token,
            })
        except ClientRequestError as e:
            raise AuthExpiredError(f"Epic refresh rejected: {e}")
        if not fresh.refresh_token:
            fresh.refresh_token = credentials.refresh_token
        profile = await self._userinfo(fresh)
        fresh.user_id = profile.user_id
        return AuthSession(profile=profile, credentials=fresh)

    # ----- fetchers -----

    async def fetch_profile(self, account: Account, credentials: Credentials) -> RemoteProfile:
        return await self._userinfo(credentials)

    async def fetch_friends(self, account: Account, credentials: Credentials) -> List[RemoteFriend]:
        epic_id = credentials.user_id or account.external_id
        headers = self._bearer(credentials)
        data = await self.http.get_json(f"{EPIC_API_URL}/epic/friends/v1/{epic_id}/friends", headers=headers)
        friend_ids = [
            str(entry["accountId"])
            for entry in (data if isinstance(data, list) else [])
            if isinstance(entry, dict) and entry.get("status") == "ACCEPTED" and entry.get("accountId")
        ]
        if not friend_ids:
            return []

        names: Dict[str, str] = {}
        for start in range(0, len(friend_ids), EPIC_PROFILE_CHUNK):
            chunk = friend_ids[start:start + EPIC_PROFILE_CHUNK]
            try:
                profiles = await self.http.get_json(
                    f"{EPIC_API_URL}/epic/id/v2/sdk/accounts",
                    params=[("accountId", friend) for friend in chunk],
                    headers=headers,
                )
            except ProviderError as e:
                logger.warning(f"[EPIC] Profile lookup failed for {len(chunk)} friends: {e}")
                continue
            for profile in profiles if isinstance(profiles, list) else []:
                if isinstance(profile, dict) and profile.get("accountId"):
                    names[str(profile["accountId"])] = profile.get("displayName") or ""

        return [
            RemoteFriend(external_id=friend, username=names.get(friend) or "Epic User", status="offline")
            for friend in friend_ids
        ]

    async def fetch_library(self, account: Account, credentials: Credentials) -> List[RemoteGame]:
        epic_id = credentials.user_id or account.external_id
        data = await self.http.get_json(
            f"{EPIC_API_URL}/epic/id/v2/sdk/accounts/{epic_id}/entitlements",
            headers=self._bearer(credentials),
        )
        games = games_from_entitlements(data if isinstance(data, list) else [])
        logger.info(f"[EPIC] Fetched {len(games)} entitlements")
        return games
