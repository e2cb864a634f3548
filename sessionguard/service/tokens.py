from __future__ import annotations

import base64
import binascii
import hashlib
import hmac
import json
from dataclasses import dataclass
from datetime import datetime, timedelta, timezone
from enum import Enum
from typing import Any, Callable, Optional

from sessionguard.service.errors import InvalidConfigurationError, InvalidTokenError

MIN_KEY_BYTES = 32

Clock = Callable[[], datetime]


def system_clock() -> datetime:
    return datetime.now(timezone.utc)


class TokenType(str, Enum):
    ACCESS = "ACCESS"
    REFRESH = "REFRESH"


@dataclass(frozen=True)
class TokenClaims:
    subject: str
    role: str
    token_type: TokenType
    issued_at: int
    expires_at: int
    family_id: Optional[str] = None
    token_id: Optional[str] = None

    def remaining_seconds(self, now: datetime) -> int:
        return int(self.expires_at - now.timestamp())


@dataclass(frozen=True)
class IssuedToken:
    token: str
    token_type: TokenType
    expires_at: datetime
    expires_in: int
    family_id: Optional[str] = None
    token_id: Optional[str] = None


@dataclass(frozen=True)
class TokenPair:
    access: IssuedToken
    refresh: IssuedToken


def decode_signing_key(secret: Optional[str]) -> bytes:
    """Decode the Base64 signing key, refusing anything unusable for HS256."""
    if not secret:
        raise InvalidConfigurationError("JWT_SECRET is not configured")
    try:
        key = base64.b64decode(secret, validate=True)
    except (binascii.Error, ValueError) as exc:
        raise InvalidConfigurationError("JWT_SECRET must be valid Base64") from exc
    if len(key) < MIN_KEY_BYTES:
        raise InvalidConfigurationError(
            f"JWT_SECRET must decode to at least {MIN_KEY_BYTES} bytes for HS256"
        )
    return key


def _encode_segment(data: bytes) -> str:
    return base64.urlsafe_b64encode(data).decode("utf-8").rstrip("=")


def _decode_segment(segment: str) -> bytes:
    padding = "=" * ((4 - len(segment) % 4) % 4)
    return base64.urlsafe_b64decode(segment + padding)


class TokenCodec:
    """Issues and verifies HS256 access/refresh credentials.

    The signing key is decoded once at construction; a missing, malformed or
    short key raises ``InvalidConfigurationError`` so the process never starts
    with unusable key material. Time comes from the injected ``clock`` so
    tests can freeze it.
    """

    def __init__(
        self,
        secret: Optional[str],
        *,
        issuer: str,
        audience: str,
        access_ttl_seconds: int,
        refresh_ttl_seconds: int,
        clock_skew_seconds: int = 0,
        clock: Clock = system_clock,
    ) -> None:
        self._key = decode_signing_key(secret)
        self.issuer = issuer
        self.audience = audience
        self.access_ttl = timedelta(seconds=access_ttl_seconds)
        self.refresh_ttl = timedelta(seconds=refresh_ttl_seconds)
        self.clock_skew = timedelta(seconds=clock_skew_seconds)
        self._clock = clock

    def now(self) -> datetime:
        return self._clock()

    def issue_access(self, subject: str, role: str) -> IssuedToken:
        return self._issue(subject, role, TokenType.ACCESS, self.access_ttl)

    def issue_refresh(
        self, subject: str, role: str, family_id: str, token_id: str
    ) -> IssuedToken:
        return self._issue(
            subject,
            role,
            TokenType.REFRESH,
            self.refresh_ttl,
            family_id=family_id,
            token_id=token_id,
        )

    def _issue(
        self,
        subject: str,
        role: str,
        token_type: TokenType,
        ttl: timedelta,
        *,
        family_id: Optional[str] = None,
        token_id: Optional[str] = None,
    ) -> IssuedToken:
        issued_at = self.now()
        expires_at = issued_at + ttl
        payload: dict[str, Any] = {
            "sub": subject,
            "role": role,
            "typ": token_type.value,
            "iss": self.issuer,
            "aud": [self.audience],
            "iat": int(issued_at.timestamp()),
            "exp": int(expires_at.timestamp()),
        }
        if family_id is not None:
            payload["fam"] = family_id
        if token_id is not None:
            payload["jti"] = token_id
        return IssuedToken(
            token=self._encode(payload),
            token_type=token_type,
            expires_at=expires_at,
            expires_in=int(ttl.total_seconds()),
            family_id=family_id,
            token_id=token_id,
        )

    def _sign(self, signing_input: str) -> str:
        digest = hmac.new(self._key, signing_input.encode(), hashlib.sha256).digest()
        return _encode_segment(digest)

    def _encode(self, payload: dict[str, Any]) -> str:
        header = {"alg": "HS256", "typ": "JWT"}
        header_enc = _encode_segment(json.dumps(header, separators=(",", ":")).encode())
        payload_enc = _encode_segment(json.dumps(payload, separators=(",", ":")).encode())
        signing_input = f"{header_enc}.{payload_enc}"
        return f"{signing_input}.{self._sign(signing_input)}"

    def verify(self, token: Optional[str], expected_type: TokenType) -> TokenClaims:
        """Verify signature, issuer, audience, expiry and type of ``token``.

        Raises:
            InvalidTokenError: with a short machine-readable reason.
        """
        if not token:
            raise InvalidTokenError("missing")
        try:
            header_b64, payload_b64, sig_b64 = token.split(".")
        except ValueError:
            raise InvalidTokenError("malformed")

        # Reject anything but HS256 to avoid algorithm confusion
        try:
            header = json.loads(_decode_segment(header_b64))
        except (ValueError, binascii.Error):
            raise InvalidTokenError("malformed")
        if not isinstance(header, dict) or header.get("alg") != "HS256":
            raise InvalidTokenError("algorithm")

        expected_sig = self._sign(f"{header_b64}.{payload_b64}")
        if not hmac.compare_digest(expected_sig.encode(), sig_b64.encode("utf-8", "replace")):
            raise InvalidTokenError("signature")
        try:
            payload = json.loads(_decode_segment(payload_b64))
        except (ValueError, binascii.Error):
            raise InvalidTokenError("malformed")
        if not isinstance(payload, dict):
            raise InvalidTokenError("malformed")

        if payload.get("iss") != self.issuer:
            raise InvalidTokenError("issuer")
        aud = payload.get("aud")
        if isinstance(aud, str):
            valid_aud = aud == self.audience
        elif isinstance(aud, list):
            valid_aud = self.audience in aud
        else:
            valid_aud = False
        if not valid_aud:
            raise InvalidTokenError("audience")

        try:
            exp = int(payload["exp"])
            iat = int(payload.get("iat") or 0)
        except (KeyError, TypeError, ValueError):
            raise InvalidTokenError("expiry")
        if exp <= (self.now() - self.clock_skew).timestamp():
            raise InvalidTokenError("expired")

        if payload.get("typ") != expected_type.value:
            raise InvalidTokenError("type")
        subject = payload.get("sub")
        if not isinstance(subject, str) or not subject:
            raise InvalidTokenError("subject")

        return TokenClaims(
            subject=subject,
            role=str(payload.get("role") or ""),
            token_type=expected_type,
            issued_at=iat,
            expires_at=exp,
            family_id=payload.get("fam") or None,
            token_id=payload.get("jti") or None,
        )
