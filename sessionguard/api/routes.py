from __future__ import annotations

from typing import Callable, Optional, Union

from fastapi import APIRouter, Cookie, Depends, Header, Path, Query, Request, Response

from sessionguard.api.error_handling import service_error_response
from sessionguard.api.schemas import (
    ActorResponse,
    Envelope,
    OAuthAuthorizeResponse,
    TokenResponse,
    UserPrincipalResponse,
)
from sessionguard.config import Settings
from sessionguard.logging import get_logger
from sessionguard.service.auth import GuestPrincipal, Principal, UserPrincipal
from sessionguard.service.errors import AuthenticationError, ServiceError
from sessionguard.service.oauth import ensure_supported
from sessionguard.service.rate_limit import (
    RateLimitDecision,
    RateLimitPolicy,
    build_scope_key,
)
from sessionguard.service.runtime import get_runtime
from sessionguard.service.tokens import TokenPair

logger = get_logger(__name__)

router = APIRouter(prefix="/api/v1")

REFRESH_COOKIE = "refresh_token"
REFRESH_COOKIE_PATH = "/api/v1/auth"
STATE_COOKIE = "oauth_state"
STATE_COOKIE_PATH = "/api/v1/auth/oauth"
STATE_COOKIE_MAX_AGE = 300

AUTH_REQUIRED_MESSAGE = "Authentication required."
INVALID_STATE_MESSAGE = "Invalid OAuth state."

PolicySource = Union[RateLimitPolicy, Callable[[Settings], RateLimitPolicy]]


class RateLimitInfo:
    """Rate limit state for adding response headers."""

    __slots__ = ("limit", "remaining", "reset_seconds")

    def __init__(self, limit: int, remaining: int, reset_seconds: int):
        self.limit = limit
        self.remaining = remaining
        self.reset_seconds = reset_seconds

    @classmethod
    def from_decision(cls, decision: RateLimitDecision) -> "RateLimitInfo":
        return cls(decision.limit, decision.remaining, decision.reset_seconds)

    def apply_headers(self, response: Response) -> None:
        """Apply rate limit headers per IETF draft-polli-ratelimit-headers."""
        response.headers["X-RateLimit-Limit"] = str(self.limit)
        response.headers["X-RateLimit-Remaining"] = str(max(0, self.remaining))
        response.headers["X-RateLimit-Reset"] = str(self.reset_seconds)


def default_policy(settings: Settings) -> RateLimitPolicy:
    return RateLimitPolicy(
        settings.rate_limit_default_requests, settings.rate_limit_default_window_seconds
    )


def refresh_policy(settings: Settings) -> RateLimitPolicy:
    return RateLimitPolicy(
        settings.refresh_rate_limit_requests, settings.rate_limit_default_window_seconds
    )


def oauth_policy(settings: Settings) -> RateLimitPolicy:
    return RateLimitPolicy(
        settings.oauth_rate_limit_requests, settings.rate_limit_default_window_seconds
    )


def get_client_ip(request: Request) -> Optional[str]:
    runtime = get_runtime()
    peer = request.client.host if request.client else None
    return runtime.ip_resolver.resolve(peer, request.headers.get("x-forwarded-for"))


async def get_optional_principal(
    authorization: Optional[str] = Header(None),
) -> Optional[UserPrincipal]:
    return get_runtime().authenticator.authenticate(authorization)


async def require_user(
    principal: Optional[UserPrincipal] = Depends(get_optional_principal),
) -> UserPrincipal:
    if principal is None:
        raise AuthenticationError(AUTH_REQUIRED_MESSAGE)
    return principal


async def guest_or_user_principal(
    authorization: Optional[str] = Header(None),
    principal: Optional[UserPrincipal] = Depends(get_optional_principal),
    client_ip: Optional[str] = Depends(get_client_ip),
) -> Principal:
    """User principal for a valid bearer; a guest only when no credential was sent."""
    if principal is not None:
        return principal
    if authorization:
        raise AuthenticationError(AUTH_REQUIRED_MESSAGE)
    if not client_ip:
        raise AuthenticationError(AUTH_REQUIRED_MESSAGE, detail={"reason": "no_client_ip"})
    guest = get_runtime().guests.resolve_or_create(client_ip)
    return GuestPrincipal(actor_id=guest.id)


def rate_limited(policy: PolicySource):
    """Route dependency enforcing ``policy`` per method, path and actor."""

    async def enforce(
        request: Request,
        response: Response,
        principal: Optional[UserPrincipal] = Depends(get_optional_principal),
        client_ip: Optional[str] = Depends(get_client_ip),
    ) -> RateLimitDecision:
        runtime = get_runtime()
        resolved = policy(runtime.settings) if callable(policy) else policy
        key = build_scope_key(request.method, request.url.path, principal, client_ip)
        decision = await runtime.rate_limiter.acquire(key, resolved)
        RateLimitInfo.from_decision(decision).apply_headers(response)
        return decision

    return enforce


def _token_response(tokens: TokenPair) -> TokenResponse:
    return TokenResponse(
        access_token=tokens.access.token,
        expires_in=tokens.access.expires_in,
    )


def _apply_refresh_cookie(response: Response, tokens: TokenPair, settings: Settings) -> None:
    response.set_cookie(
        REFRESH_COOKIE,
        tokens.refresh.token,
        httponly=True,
        secure=settings.cookie_secure,
        samesite="strict",
        max_age=settings.refresh_token_ttl_seconds,
        path=REFRESH_COOKIE_PATH,
    )


def _clear_state_cookie(response: Response, settings: Settings) -> None:
    response.delete_cookie(
        STATE_COOKIE,
        path=STATE_COOKIE_PATH,
        secure=settings.cookie_secure,
        httponly=True,
        samesite="lax",
    )


@router.get(
    "/auth/oauth/{provider}/authorize",
    response_model=Envelope,
    tags=["auth"],
    dependencies=[Depends(rate_limited(oauth_policy))],
)
async def oauth_authorize(
    response: Response,
    provider: str = Path(..., description="OAuth provider (google)"),
):
    """Start the OAuth flow.

    Issues a fresh anti-CSRF state in the ``oauth_state`` cookie and returns
    the provider URL the client should redirect to.
    """
    runtime = get_runtime()
    provider = ensure_supported(provider)
    state = runtime.state_guard.generate()
    authorize_url = runtime.oauth.authorize_url(state)
    response.set_cookie(
        STATE_COOKIE,
        state,
        httponly=True,
        secure=runtime.settings.cookie_secure,
        samesite="lax",
        max_age=STATE_COOKIE_MAX_AGE,
        path=STATE_COOKIE_PATH,
    )
    return Envelope(
        status="ok",
        data=OAuthAuthorizeResponse(provider=provider, authorize_url=authorize_url),
    )


@router.get(
    "/auth/oauth/{provider}/callback",
    response_model=Envelope,
    tags=["auth"],
    dependencies=[Depends(rate_limited(oauth_policy))],
)
async def oauth_callback(
    response: Response,
    provider: str = Path(..., description="OAuth provider (google)"),
    code: Optional[str] = Query(None, max_length=2048),
    state: Optional[str] = Query(None, max_length=512),
    oauth_state: Optional[str] = Cookie(None),
):
    """Complete the OAuth flow and start a new refresh family.

    The state cookie is single-use: it is cleared on every callback, including
    the failing ones.
    """
    runtime = get_runtime()
    try:
        provider = ensure_supported(provider)
        if not runtime.state_guard.is_valid(oauth_state, state):
            logger.warning("oauth_state_invalid", provider=provider, has_cookie=bool(oauth_state))
            raise AuthenticationError(INVALID_STATE_MESSAGE)
        result = await runtime.oauth.login(code or "")
    except ServiceError as exc:
        error_response = service_error_response(exc)
        _clear_state_cookie(error_response, runtime.settings)
        return error_response

    _clear_state_cookie(response, runtime.settings)
    _apply_refresh_cookie(response, result.tokens, runtime.settings)
    return Envelope(status="ok", data=_token_response(result.tokens))


@router.post(
    "/auth/refresh",
    response_model=Envelope,
    tags=["auth"],
    dependencies=[Depends(rate_limited(refresh_policy))],
)
async def refresh_tokens(
    response: Response,
    refresh_token: Optional[str] = Cookie(None),
):
    """Exchange the refresh cookie for a new access token and refresh cookie."""
    runtime = get_runtime()
    tokens = await runtime.rotation.rotate(refresh_token)
    _apply_refresh_cookie(response, tokens, runtime.settings)
    return Envelope(status="ok", data=_token_response(tokens))


@router.get(
    "/auth/me",
    response_model=Envelope,
    tags=["auth"],
    dependencies=[Depends(rate_limited(default_policy))],
)
async def current_user(principal: UserPrincipal = Depends(require_user)):
    return Envelope(
        status="ok",
        data=UserPrincipalResponse(user_id=principal.actor_id, role=principal.role),
    )


@router.get(
    "/guest/me",
    response_model=Envelope,
    tags=["guest"],
    dependencies=[Depends(rate_limited(default_policy))],
)
async def current_actor(principal: Principal = Depends(guest_or_user_principal)):
    return Envelope(
        status="ok",
        data=ActorResponse(
            actor_id=principal.actor_id,
            role=principal.role,
            authenticated=principal.is_authenticated,
        ),
    )


@router.get("/status", response_model=Envelope, tags=["system"])
async def system_status():
    return Envelope(status="ok", data={})
