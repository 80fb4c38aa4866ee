"""Static bearer token check for the HTTP API."""

from __future__ import annotations

import secrets
from typing import Optional

from gym_sniper.utils.config import Settings, get_settings


class AuthenticationError(Exception):
    """Base authentication failure."""


class InvalidApiTokenError(AuthenticationError):
    """Raised when the provided token does not match."""


class AuthService:
    """Validates bearer tokens against GYM_SNIPER_API_TOKEN."""

    def __init__(self, settings: Optional[Settings] = None) -> None:
        self._settings = settings or get_settings()

    @property
    def auth_enabled(self) -> bool:
        return bool(self._settings.api_token)

    def validate_bearer_token(self, bearer_token: str) -> None:
        expected = self._settings.api_token
        if not expected:
            return
        if not secrets.compare_digest(bearer_token, expected):
            raise InvalidApiTokenError("Invalid bearer token")
