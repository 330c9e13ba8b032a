from .auth_window import AuthRedirect, AuthWindow, ConsoleAuthWindow
from .base import AuthSession, CredentialVault, ProviderClient
from .epic import EpicClient
from .gog import GogClient
from .http import HttpClient, HttpResponse
from .steam import SteamClient

__all__ = [
    "AuthRedirect",
    "AuthWindow",
    "ConsoleAuthWindow",
    "AuthSession",
    "CredentialVault",
    "ProviderClient",
    "EpicClient",
    "GogClient",
    "HttpClient",
    "HttpResponse",
    "SteamClient",
]
