from __future__ import annotations

from dataclasses import dataclass
from typing import Optional, Protocol, runtime_checkable

from sessionguard.logging import get_logger
from sessionguard.service.errors import InvalidTokenError
from sessionguard.service.tokens import TokenCodec, TokenType
from sessionguard.storage.models import GUEST_ROLE

logger = get_logger(__name__)

BEARER_PREFIX = "bearer "


@runtime_checkable
class Principal(Protocol):
    """The acting party of a request, passed explicitly to whatever needs it."""

    actor_id: str
    role: str
    is_authenticated: bool


@dataclass(frozen=True)
class UserPrincipal:
    actor_id: str
    role: str
    is_authenticated: bool = True


@dataclass(frozen=True)
class GuestPrincipal:
    actor_id: str
    role: str = GUEST_ROLE
    is_authenticated: bool = False


def extract_bearer(authorization: Optional[str]) -> Optional[str]:
    """Return the credential from an ``Authorization: Bearer`` header, if any."""
    if not authorization:
        return None
    value = authorization.strip()
    if value[: len(BEARER_PREFIX)].lower() != BEARER_PREFIX:
        return None
    token = value[len(BEARER_PREFIX):].strip()
    return token or None


class BearerAuthenticator:
    def __init__(self, codec: TokenCodec) -> None:
        self.codec = codec

    def authenticate(self, authorization: Optional[str]) -> Optional[UserPrincipal]:
        token = extract_bearer(authorization)
        if token is None:
            return None
        try:
            claims = self.codec.verify(token, TokenType.ACCESS)
        except InvalidTokenError as exc:
            logger.info("access_token_rejected", reason=exc.reason)
            return None
        return UserPrincipal(actor_id=claims.subject, role=claims.role)
