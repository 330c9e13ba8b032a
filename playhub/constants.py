APP_NAME = "PlayHub"

# Session tracking
PROCESS_CHECK_INTERVAL = 10.0  # seconds between process-list polls
SESSION_FALLBACK_TIMEOUT = 60.0  # close unidentifiable sessions after this long

# Sync cadence
AUTO_SYNC_INTERVAL_MINUTES = 60
LOCAL_PLAYTIME_SYNC_INTERVAL = 5 * 60  # seconds

# Network
REQUEST_TIMEOUT = 10.0
AUTH_SILENT_TIMEOUT = 20.0
MAX_RETRIES = 2
RETRY_BASE_DELAY = 1.0

# Placeholder owners for games found on disk before (or without) a remote login
LOCAL_STEAM_ACCOUNT_ID = "local_steam_user"
LOCAL_ACCOUNT_ID = "local"

# Human readable labels for the external rich presence channel
INTENT_LABELS = {
    "open_for_coop": "Open for co-op",
    "looking_for_party": "Looking for party",
    "story_mode": "Story mode",
    "competitive": "Competitive",
    "testing_mods": "Testing mods",
    "idle": "Idle",
}
DEFAULT_PRESENCE_LABEL = "Using PlayHub"

DISCORD_LARGE_IMAGE = "playhub"

# Steam endpoints
STEAM_OPENID_URL = "https://steamcommunity.com/openid/login"
STEAM_COMMUNITY_URL = "https://steamcommunity.com"
STEAM_OWNED_GAMES_URL = "https://api.steampowered.com/IPlayerService/GetOwnedGames/v0001/"
STEAM_LOGO_URL = "https://media.steampowered.com/steamcommunity/public/images/apps/{app_id}/{logo}.jpg"
STEAM_HEADER_URL = "https://shared.akamai.steamstatic.com/store_item_assets/steam/apps/{app_id}/header.jpg"
STEAM_LIBRARY_CAPSULE_URL = "https://shared.akamai.steamstatic.com/store_item_assets/steam/apps/{app_id}/library_600x900.jpg"
STEAM_LIBRARY_HERO_URL = "https://shared.akamai.steamstatic.com/store_item_assets/steam/apps/{app_id}/library_hero.jpg"
STEAM_ECONOMY_IMAGE_URL = "https://community.cloudflare.steamstatic.com/economy/image/{icon}"
STEAM_APPDETAILS_URL = "https://store.steampowered.com/api/appdetails"
STEAM_STORESEARCH_URL = "https://store.steampowered.com/api/storesearch/"
STEAM_INVENTORY_PAGE_SIZE = 500
STEAM_INVENTORY_MAX_PAGES = 10
STEAM_INVENTORY_PAGE_DELAY = 0.5

# Epic endpoints
EPIC_AUTHORIZE_URL = "https://www.epicgames.com/id/authorize"
EPIC_API_URL = "https://api.epicgames.dev"
EPIC_TOKEN_URL = f"{EPIC_API_URL}/epic/oauth/v2/token"
EPIC_USERINFO_URL = f"{EPIC_API_URL}/epic/oauth/v2/userInfo"
EPIC_PROFILE_CHUNK = 50

# GOG endpoints
GOG_CLIENT_ID = "46899977096215655"
GOG_REDIRECT_URI = "https://embed.gog.com/on_login_success?origin=client"
GOG_AUTH_URL = "https://login.gog.com/auth"
GOG_EMBED_URL = "https://embed.gog.com"
GOG_COVER_SUFFIX = "_ggvgm_2x.jpg"
GOG_REGISTRY_KEY = r"SOFTWARE\WOW6432Node\GOG.com\Games"
