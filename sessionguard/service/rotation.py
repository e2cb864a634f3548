from __future__ import annotations

import hashlib
import uuid
from typing import Callable, Protocol

from redis.exceptions import RedisError

from sessionguard.logging import get_logger
from sessionguard.service.errors import (
    AuthenticationError,
    InvalidTokenError,
    UpstreamDependencyError,
)
from sessionguard.service.tokens import TokenClaims, TokenCodec, TokenPair, TokenType

logger = get_logger(__name__)

INVALID_REFRESH_MESSAGE = "Invalid or missing refresh token."
FAMILY_REVOKED_MESSAGE = "Refresh token family is revoked. Please sign in again."
REUSE_DETECTED_MESSAGE = "Refresh token reuse detected. Please sign in again."

LEGACY_PREFIX = "legacy:"


class MarkerCache(Protocol):
    async def exists(self, key: str) -> bool: ...

    async def create_if_absent(self, key: str, value: str, ttl_seconds: float) -> bool: ...

    async def set(self, key: str, value: str, ttl_seconds: float) -> None: ...


def used_marker_key(token_id: str) -> str:
    return f"auth:refresh:used:{token_id}"


def revoked_family_key(family_id: str) -> str:
    return f"auth:refresh:family:revoked:{family_id}"


def new_identifier() -> str:
    return str(uuid.uuid4())


class RefreshRotationEngine:
    """Single-use refresh rotation with family revocation on replay.

    Each refresh token id may be consumed once. The used-marker is written
    with an atomic set-if-absent, so among concurrent presentations of the
    same token exactly one wins; every loser (or later replay) revokes the
    whole family, which then rejects all of its tokens until the marker
    expires after one refresh lifetime.
    """

    def __init__(
        self,
        codec: TokenCodec,
        cache: MarkerCache,
        *,
        id_factory: Callable[[], str] = new_identifier,
    ) -> None:
        self.codec = codec
        self.cache = cache
        self._new_id = id_factory

    def issue_pair(self, subject: str, role: str, family_id: str) -> TokenPair:
        """Mint an access token plus a refresh token in ``family_id`` with a fresh jti."""
        return TokenPair(
            access=self.codec.issue_access(subject, role),
            refresh=self.codec.issue_refresh(subject, role, family_id, self._new_id()),
        )

    def start_family(self, subject: str, role: str) -> TokenPair:
        return self.issue_pair(subject, role, self._new_id())

    @staticmethod
    def _lineage(claims: TokenClaims, raw_token: str) -> tuple[str, str]:
        # Tokens minted before rotation support carry neither claim
        family_id = claims.family_id or f"{LEGACY_PREFIX}{claims.subject}"
        token_id = claims.token_id or (
            LEGACY_PREFIX + hashlib.sha256(raw_token.encode()).hexdigest()
        )
        return family_id, token_id

    async def rotate(self, raw_token: str | None) -> TokenPair:
        try:
            claims = self.codec.verify(raw_token, TokenType.REFRESH)
        except InvalidTokenError as exc:
            logger.info("refresh_token_rejected", reason=exc.reason)
            raise AuthenticationError(INVALID_REFRESH_MESSAGE, detail={"reason": exc.reason})

        family_id, token_id = self._lineage(claims, raw_token or "")
        ttl = max(1, claims.remaining_seconds(self.codec.now()))
        family_ttl = int(self.codec.refresh_ttl.total_seconds())

        try:
            if await self.cache.exists(revoked_family_key(family_id)):
                logger.warning(
                    "refresh_family_revoked_presented",
                    subject=claims.subject,
                    family_id=family_id,
                )
                raise AuthenticationError(FAMILY_REVOKED_MESSAGE)

            first_use = await self.cache.create_if_absent(used_marker_key(token_id), "1", ttl)
            if not first_use:
                await self.cache.set(revoked_family_key(family_id), "1", family_ttl)
                logger.warning(
                    "refresh_token_reuse_detected",
                    subject=claims.subject,
                    family_id=family_id,
                    token_id=token_id,
                )
                raise AuthenticationError(REUSE_DETECTED_MESSAGE)
        except (RedisError, OSError) as exc:
            # Fail closed: without the shared markers a replay cannot be ruled out
            logger.error(
                "refresh_rotation_cache_unavailable",
                family_id=family_id,
                error_type=type(exc).__name__,
                error=str(exc),
            )
            raise UpstreamDependencyError("Session store unavailable.") from exc

        pair = self.issue_pair(claims.subject, claims.role, family_id)
        logger.info(
            "refresh_token_rotated",
            subject=claims.subject,
            family_id=family_id,
            previous_token_id=token_id,
            token_id=pair.refresh.token_id,
        )
        return pair
