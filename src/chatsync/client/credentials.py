"""Access token storage backed by the OS keyring.

This module provides:
- TokenStore: reads, saves and deletes the access token for a server
"""

from __future__ import annotations

import contextlib
import logging

import keyring
from keyring.errors import KeyringError, PasswordDeleteError

KEYRING_SERVICE = "chatsync"

logger = logging.getLogger(__name__)


class CredentialsError(Exception):
    """Exception raised when the token cannot be stored."""


class TokenStore:
    """Access token for one server, stored in the OS keyring.

    The token is cached in memory after the first successful read; the
    sync engine only ever calls access_token().
    """

    def __init__(self, server_url: str, service: str = KEYRING_SERVICE) -> None:
        self._account = server_url.rstrip("/")
        self._service = service
        self._cached: str | None = None

    @property
    def account(self) -> str:
        """Keyring account name (the server URL)."""
        return self._account

    def access_token(self) -> str | None:
        """Get the stored access token, or None if signed out."""
        if self._cached is None:
            try:
                self._cached = keyring.get_password(self._service, self._account)
            except KeyringError as e:
                logger.warning("Could not read token from keyring: %s", e)
                return None
        return self._cached

    def is_authenticated(self) -> bool:
        """Check if a token is available."""
        return bool(self.access_token())

    def save(self, token: str) -> None:
        """Store a new access token.

        Raises:
            CredentialsError: If the keyring rejected the token.
        """
        try:
            keyring.set_password(self._service, self._account, token)
        except KeyringError as e:
            raise CredentialsError(f"Could not store token: {e}") from e
        self._cached = token

    def delete(self) -> None:
        """Forget the access token (no-op if none is stored)."""
        self._cached = None
        with contextlib.suppress(PasswordDeleteError):
            keyring.delete_password(self._service, self._account)
