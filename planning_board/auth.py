"""Bearer-token identity resolution for REST requests and realtime sessions."""

from __future__ import annotations

import secrets
import threading
from typing import Dict, Mapping, Optional

from .domain import Identity, User
from .errors import AuthenticationError
from .repository import RecordNotFoundError


def bearer_token(header: Optional[str]) -> Optional[str]:
    """Extract the credential from an ``Authorization: Bearer ...`` header."""

    if not header:
        return None
    scheme, _, value = header.partition(" ")
    if scheme.lower() != "bearer" or not value.strip():
        return None
    return value.strip()


class TokenIdentityProvider:
    """Maps opaque bearer tokens to active users."""

    def __init__(self, users, static_tokens: Optional[Mapping[str, str]] = None) -> None:
        self._users = users
        self._tokens: Dict[str, str] = {}
        self._mutex = threading.Lock()
        for token, username in (static_tokens or {}).items():
            user = self.find_by_username(username)
            if user is not None:
                self._tokens[token] = user.id

    def find_by_username(self, username: str) -> Optional[User]:
        for user in self._users:
            if user.username == username:
                return user
        return None

    def issue_token(self, user_id: str) -> str:
        self._users.get(user_id)
        token = secrets.token_urlsafe(32)
        with self._mutex:
            self._tokens[token] = user_id
        return token

    def revoke(self, token: str) -> None:
        with self._mutex:
            self._tokens.pop(token, None)

    def resolve(self, credential: Optional[str]) -> Identity:
        if not credential:
            raise AuthenticationError("Authentication token required")
        with self._mutex:
            user_id = self._tokens.get(credential)
        if user_id is None:
            raise AuthenticationError("Authentication failed")
        try:
            user = self._users.get(user_id)
        except RecordNotFoundError as exc:
            raise AuthenticationError("Invalid user or account inactive") from exc
        if not user.is_active:
            raise AuthenticationError("Invalid user or account inactive")
        return user.identity()


__all__ = ["TokenIdentityProvider", "bearer_token"]
