"""Resolution of external user identifiers to stored users."""

from __future__ import annotations

from typing import Protocol

from botrelay.models import User


class _UserRepository(Protocol):
    def find_or_create_by_external_user_id(self, external_user_id: str) -> User: ...


class UserService:
    """Looks up users by their external identifier, creating them on first use."""

    def __init__(self, users: _UserRepository) -> None:
        self._users = users

    def resolve_user(self, external_user_id: str) -> User:
        return self._users.find_or_create_by_external_user_id(external_user_id)