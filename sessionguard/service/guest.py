from __future__ import annotations

import hashlib
from datetime import datetime
from typing import Callable, Optional

from sessionguard.logging import get_logger
from sessionguard.storage.errors import ConstraintViolation
from sessionguard.storage.models import Guest, utcnow

logger = get_logger(__name__)


def hash_ip(ip: str, salt: Optional[str]) -> str:
    return hashlib.sha256(f"{salt or ''}|{ip}".encode("utf-8")).hexdigest()


class GuestIdentityResolver:
    """Map a client address to a stable guest identity without keeping the address.

    Creation races are settled by the store's uniqueness constraint on the
    hash: the loser re-reads the winner's record.
    """

    def __init__(
        self,
        store,
        salt: Optional[str] = None,
        *,
        clock: Callable[[], datetime] = utcnow,
    ) -> None:
        self.store = store
        self.salt = salt
        self._clock = clock

    def hash_ip(self, ip: str) -> str:
        return hash_ip(ip, self.salt)

    def resolve_or_create(self, ip: str) -> Guest:
        ip_hash = self.hash_ip(ip)
        now = self._clock()
        guest = self.store.get_guest_by_ip_hash(ip_hash)
        if guest is None:
            try:
                guest = self.store.create_guest(Guest.new(ip_hash, seen_at=now))
                logger.info("guest_identity_created", guest_id=guest.id)
            except ConstraintViolation:
                guest = self.store.get_guest_by_ip_hash(ip_hash)
                if guest is None:
                    raise
        self.store.touch_guest_last_seen(guest.id, now)
        guest.last_seen_at = now
        return guest
