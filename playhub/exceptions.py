"""
Error taxonomy for PlayHub.

Provider clients raise these; the sync orchestrator catches them per stage and
records them in the sync history. Auth flows report failures as AuthFlowError
carrying an AuthFailure reason so callers can show a precise message.
"""

from enum import StrEnum
from typing import Optional


class AuthFailure(StrEnum):
    NOT_CONFIGURED = "not_configured"
    STATE_MISMATCH = "state_mismatch"
    EXCHANGE_FAILED = "exchange_failed"
    PROFILE_FETCH_FAILED = "profile_fetch_failed"
    USER_CLOSED_WINDOW = "user_closed_window"
    TIMEOUT = "timeout"


class PlayHubError(Exception):
    """Base class for all PlayHub errors"""


class ConfigurationError(PlayHubError):
    """Provider credentials or settings are missing"""


class ProviderError(PlayHubError):
    """A remote platform request failed"""

    def __init__(self, message: str, status: Optional[int] = None):
        super().__init__(message)
        self.status = status


class TransientNetworkError(ProviderError):
    """Timeout, connection reset or 5xx. Safe to retry."""


class ClientRequestError(ProviderError):
    """4xx response other than an auth failure. Never retried."""


class AuthExpiredError(ProviderError):
    """401/403 from the platform; the refresh path should run."""


class AuthFlowError(PlayHubError):
    def __init__(self, reason: AuthFailure, message: str = ""):
        super().__init__(message or reason.value)
        self.reason = reason


class IdentityMismatchError(PlayHubError):
    """Silent refresh resolved to a different platform user"""

    def __init__(self, expected: str, actual: str):
        super().__init__(f"Refreshed identity {actual} does not match account {expected}")
        self.expected = expected
        self.actual = actual


class CredentialError(PlayHubError):
    """Stored credential blob is missing or cannot be decrypted"""


class GameNotFoundError(PlayHubError):
    pass
