from __future__ import annotations

import threading
from dataclasses import replace
from datetime import datetime
from typing import Dict, List, Optional

from sessionguard.storage.errors import ConstraintViolation
from sessionguard.storage.models import Guest, User, UserAuthProvider, utcnow


class MemoryStore:
    """In-memory identity store used for tests and local development."""

    def __init__(self) -> None:
        self.users: Dict[str, User] = {}
        self.providers: List[UserAuthProvider] = []
        self.guests: Dict[str, Guest] = {}
        # RLock so composite operations can reuse the single-record helpers
        self._data_lock = threading.RLock()

    # users
    def create_user(self, email: str, nickname: str, *, role: str = "USER") -> User:
        with self._data_lock:
            if any(existing.email == email for existing in self.users.values()):
                raise ConstraintViolation("email already exists", {"field": "email"})
            user = User.new(email, nickname, role=role)
            self.users[user.id] = user
            return replace(user)

    def get_user(self, user_id: str) -> Optional[User]:
        with self._data_lock:
            user = self.users.get(user_id)
            return replace(user) if user else None

    def get_user_by_email(self, email: str) -> Optional[User]:
        with self._data_lock:
            user = next((u for u in self.users.values() if u.email == email), None)
            return replace(user) if user else None

    def get_user_by_provider(
        self, provider: str, provider_user_id: str
    ) -> Optional[User]:
        with self._data_lock:
            for mapping in self.providers:
                if (
                    mapping.provider == provider
                    and mapping.provider_user_id == provider_user_id
                ):
                    return self.get_user(mapping.user_id)
            return None

    def link_user_auth_provider(
        self,
        user_id: str,
        provider: str,
        provider_user_id: str,
        email: Optional[str] = None,
    ) -> None:
        with self._data_lock:
            # Mirror postgres ON CONFLICT DO NOTHING
            for existing in self.providers:
                if (
                    existing.provider == provider
                    and existing.provider_user_id == provider_user_id
                ):
                    return
            max_id = max((p.id for p in self.providers), default=0)
            self.providers.append(
                UserAuthProvider(
                    id=max_id + 1,
                    user_id=user_id,
                    provider=provider,
                    provider_user_id=provider_user_id,
                    email=email,
                )
            )

    def link_oauth_identity(
        self,
        provider: str,
        provider_user_id: str,
        email: str,
        nickname: str,
        *,
        login_at: Optional[datetime] = None,
    ) -> User:
        """Find-or-create the local user for an external identity, link it and record the login.

        Runs under the data lock so the user row, the provider link and the
        last-login stamp are written as one unit.
        """
        with self._data_lock:
            user = self.get_user_by_provider(provider, provider_user_id)
            if user is None:
                user = self.get_user_by_email(email)
                if user is None:
                    user = self.create_user(email, nickname)
                self.link_user_auth_provider(user.id, provider, provider_user_id, email)
            stored = self.users[user.id]
            stored.last_login_at = login_at or utcnow()
            return replace(stored)

    # guests
    def get_guest_by_ip_hash(self, ip_hash: str) -> Optional[Guest]:
        with self._data_lock:
            guest = self.guests.get(ip_hash)
            return replace(guest) if guest else None

    def create_guest(self, guest: Guest) -> Guest:
        with self._data_lock:
            if guest.ip_hash in self.guests:
                raise ConstraintViolation("guest already exists", {"field": "ip_hash"})
            self.guests[guest.ip_hash] = replace(guest)
            return replace(guest)

    def touch_guest_last_seen(self, guest_id: str, at: Optional[datetime] = None) -> None:
        seen_at = at or utcnow()
        with self._data_lock:
            for guest in self.guests.values():
                if guest.id == guest_id:
                    guest.last_seen_at = seen_at
                    return
