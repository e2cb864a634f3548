from __future__ import annotations

from dataclasses import dataclass
from typing import Any, Optional
from urllib.parse import urlencode

import httpx

from sessionguard.logging import get_logger
from sessionguard.service.errors import (
    BadRequestError,
    ServerError,
    UpstreamDependencyError,
)
from sessionguard.service.rotation import RefreshRotationEngine
from sessionguard.service.tokens import TokenPair
from sessionguard.storage.models import NICKNAME_MAX_LENGTH, User

logger = get_logger(__name__)

GOOGLE_PROVIDER = "google"
SUPPORTED_PROVIDERS = frozenset({GOOGLE_PROVIDER})
GOOGLE_SCOPE = "openid email profile"

TOKEN_EXCHANGE_FAILED = "OAuth token exchange failed."
USER_INFO_FAILED = "OAuth user info fetch failed."


def ensure_supported(provider: str) -> str:
    normalized = (provider or "").strip().lower()
    if normalized not in SUPPORTED_PROVIDERS:
        logger.warning("oauth_unsupported_provider", provider=provider)
        raise BadRequestError("Unsupported OAuth provider.", detail={"provider": provider})
    return normalized


@dataclass(frozen=True)
class GoogleUserInfo:
    sub: str
    email: str
    name: Optional[str] = None


@dataclass(frozen=True)
class LoginResult:
    user: User
    tokens: TokenPair


def derive_nickname(name: Optional[str], email: str) -> str:
    """Display name if present, else the email local part; capped for storage."""
    nickname = (name or "").strip()
    if not nickname:
        nickname = email.split("@", 1)[0]
    return nickname[:NICKNAME_MAX_LENGTH]


class GoogleOAuthClient:
    """Authorization-code flow against Google.

    Both provider calls are single attempts with a bounded timeout; any failure
    surfaces as ``UpstreamDependencyError`` and the user restarts the login.
    """

    def __init__(
        self,
        *,
        client_id: Optional[str],
        client_secret: Optional[str],
        redirect_uri: Optional[str],
        auth_uri: str,
        token_uri: str,
        userinfo_uri: str,
        timeout: float = 10.0,
        transport: Optional[httpx.AsyncBaseTransport] = None,
    ) -> None:
        self.client_id = client_id
        self.client_secret = client_secret
        self.redirect_uri = redirect_uri
        self.auth_uri = auth_uri
        self.token_uri = token_uri
        self.userinfo_uri = userinfo_uri
        self.timeout = timeout
        # Tests inject httpx.MockTransport here
        self.transport = transport

    @classmethod
    def from_settings(cls, settings, *, transport=None) -> "GoogleOAuthClient":
        return cls(
            client_id=settings.oauth_google_client_id,
            client_secret=settings.oauth_google_client_secret,
            redirect_uri=settings.oauth_google_redirect_uri,
            auth_uri=settings.oauth_google_auth_uri,
            token_uri=settings.oauth_google_token_uri,
            userinfo_uri=settings.oauth_google_userinfo_uri,
            timeout=settings.oauth_http_timeout_seconds,
            transport=transport,
        )

    @property
    def configured(self) -> bool:
        return bool(self.client_id and self.client_secret and self.redirect_uri)

    def _client(self) -> httpx.AsyncClient:
        return httpx.AsyncClient(
            timeout=self.timeout, follow_redirects=False, transport=self.transport
        )

    def build_authorize_url(self, state: str) -> str:
        params = {
            "response_type": "code",
            "client_id": self.client_id or "",
            "redirect_uri": self.redirect_uri or "",
            "scope": GOOGLE_SCOPE,
            "access_type": "offline",
            "prompt": "consent",
            "state": state,
        }
        return f"{self.auth_uri}?{urlencode(params)}"

    async def exchange_code(self, code: str) -> str:
        form = {
            "code": code,
            "client_id": self.client_id or "",
            "client_secret": self.client_secret or "",
            "redirect_uri": self.redirect_uri or "",
            "grant_type": "authorization_code",
        }
        try:
            async with self._client() as client:
                response = await client.post(
                    self.token_uri, data=form, headers={"Accept": "application/json"}
                )
                response.raise_for_status()
                body: Any = response.json()
        except httpx.HTTPStatusError as exc:
            logger.error(
                "oauth_token_exchange_http_error",
                provider=GOOGLE_PROVIDER,
                status_code=exc.response.status_code,
            )
            raise UpstreamDependencyError(TOKEN_EXCHANGE_FAILED) from exc
        except (httpx.HTTPError, ValueError) as exc:
            logger.error(
                "oauth_token_exchange_error",
                provider=GOOGLE_PROVIDER,
                error_type=type(exc).__name__,
                error=str(exc),
            )
            raise UpstreamDependencyError(TOKEN_EXCHANGE_FAILED) from exc

        access_token = body.get("access_token") if isinstance(body, dict) else None
        if not isinstance(access_token, str) or not access_token:
            logger.error("oauth_no_access_token", provider=GOOGLE_PROVIDER)
            raise UpstreamDependencyError(TOKEN_EXCHANGE_FAILED)
        return access_token

    async def fetch_user_info(self, access_token: str) -> GoogleUserInfo:
        try:
            async with self._client() as client:
                response = await client.get(
                    self.userinfo_uri,
                    headers={
                        "Authorization": f"Bearer {access_token}",
                        "Accept": "application/json",
                    },
                )
                response.raise_for_status()
                body: Any = response.json()
        except httpx.HTTPStatusError as exc:
            logger.error(
                "oauth_userinfo_http_error",
                provider=GOOGLE_PROVIDER,
                status_code=exc.response.status_code,
            )
            raise UpstreamDependencyError(USER_INFO_FAILED) from exc
        except (httpx.HTTPError, ValueError) as exc:
            logger.error(
                "oauth_userinfo_error",
                provider=GOOGLE_PROVIDER,
                error_type=type(exc).__name__,
                error=str(exc),
            )
            raise UpstreamDependencyError(USER_INFO_FAILED) from exc

        if not isinstance(body, dict):
            logger.error("oauth_userinfo_invalid_format", provider=GOOGLE_PROVIDER)
            raise UpstreamDependencyError(USER_INFO_FAILED)
        sub = body.get("sub")
        email = body.get("email")
        if not sub or not email:
            logger.error(
                "oauth_userinfo_missing_identity",
                provider=GOOGLE_PROVIDER,
                has_sub=bool(sub),
                has_email=bool(email),
            )
            raise UpstreamDependencyError(USER_INFO_FAILED)
        name = body.get("name")
        return GoogleUserInfo(
            sub=str(sub), email=str(email), name=name if isinstance(name, str) else None
        )


class OAuthLoginService:
    """Turns an authorization code into a local user and a fresh token family."""

    def __init__(
        self,
        store,
        client: GoogleOAuthClient,
        rotation: RefreshRotationEngine,
        *,
        provider: str = GOOGLE_PROVIDER,
    ) -> None:
        self.store = store
        self.client = client
        self.rotation = rotation
        self.provider = provider

    def authorize_url(self, state: str) -> str:
        if not self.client.configured:
            logger.warning("oauth_not_configured", provider=self.provider)
            raise ServerError(f"OAuth provider {self.provider} is not configured.")
        return self.client.build_authorize_url(state)

    def resolve_user(self, info: GoogleUserInfo) -> User:
        """Find, link or create the local user and stamp the login in one store write."""
        return self.store.link_oauth_identity(
            self.provider,
            info.sub,
            info.email,
            derive_nickname(info.name, info.email),
        )

    async def login(self, code: str) -> LoginResult:
        if not code or not code.strip():
            raise BadRequestError("Missing authorization code.")
        access_token = await self.client.exchange_code(code)
        info = await self.client.fetch_user_info(access_token)

        user = self.resolve_user(info)
        tokens = self.rotation.start_family(user.id, user.role)
        logger.info(
            "oauth_login_succeeded",
            provider=self.provider,
            user_id=user.id,
            family_id=tokens.refresh.family_id,
        )
        return LoginResult(user=user, tokens=tokens)
