"""Explicit request pipeline: authenticate, resolve session, authorize, handle.

Each stage is a plain ``async (request, call_next)`` callable, and ``chain``
folds them around the final handler. Handlers receive the authenticated
principal on the request object rather than from ambient state.
"""

from __future__ import annotations

import functools
from dataclasses import dataclass, field
from typing import Any, Awaitable, Callable, Collection, Mapping, Optional

from authkernel.logging import get_logger, set_correlation_id
from authkernel.service.auth import AuthContext
from authkernel.service.errors import (
    AuthenticationError,
    ForbiddenError,
    InvalidTokenError,
    UnavailableError,
)
from authkernel.service.sessions import SessionManager
from authkernel.service.tokens import TokenIssuer, TokenType
from authkernel.storage.errors import StoreUnavailable
from authkernel.storage.models import AuthProvider, SessionMetadata

logger = get_logger(__name__)


@dataclass
class AuthRequest:
    headers: Mapping[str, str] = field(default_factory=dict)
    ip_address: Optional[str] = None
    claims: Optional[dict] = None
    principal: Optional[AuthContext] = None

    def header(self, name: str) -> Optional[str]:
        lowered = name.lower()
        for key, value in self.headers.items():
            if key.lower() == lowered:
                return value
        return None

    @property
    def metadata(self) -> SessionMetadata:
        return SessionMetadata(ip_address=self.ip_address, user_agent=self.header("user-agent"))


Handler = Callable[[AuthRequest], Awaitable[Any]]
Middleware = Callable[[AuthRequest, Handler], Awaitable[Any]]


def extract_bearer(header: Optional[str]) -> Optional[str]:
    if not header:
        return None
    lower = header.lower()
    if not lower.startswith("bearer "):
        return None
    token = header.split(" ", 1)[1].strip()
    return token or None


def authenticate_bearer(tokens: TokenIssuer) -> Middleware:
    async def middleware(request: AuthRequest, call_next: Handler) -> Any:
        set_correlation_id(request.header("x-request-id"))
        token = extract_bearer(request.header("authorization"))
        if token is None:
            raise AuthenticationError("Missing bearer token")
        request.claims = tokens.verify(token, TokenType.ACCESS)
        return await call_next(request)

    return middleware


def resolve_session(sessions: SessionManager) -> Middleware:
    async def middleware(request: AuthRequest, call_next: Handler) -> Any:
        claims = request.claims
        if not claims:
            raise AuthenticationError("Request is not authenticated")
        try:
            sessions.assert_active(claims["sid"], claims["sub"])
        except StoreUnavailable as exc:
            raise UnavailableError("Authentication service temporarily unavailable") from exc
        try:
            provider = AuthProvider(claims.get("provider"))
        except ValueError:
            raise InvalidTokenError("Invalid token provider")
        request.principal = AuthContext(
            user_id=claims["sub"],
            session_id=claims["sid"],
            email=claims.get("email"),
            provider=provider,
        )
        return await call_next(request)

    return middleware


def authorize(*, providers: Optional[Collection[AuthProvider]] = None) -> Middleware:
    """Admit only principals whose account uses one of ``providers``."""

    async def middleware(request: AuthRequest, call_next: Handler) -> Any:
        principal = request.principal
        if principal is None:
            raise AuthenticationError("Request is not authenticated")
        if providers is not None and principal.provider not in providers:
            logger.info(
                "authorization_denied",
                user_id=principal.user_id,
                provider=principal.provider.value,
            )
            raise ForbiddenError("This operation is not available for your account type")
        return await call_next(request)

    return middleware


def chain(*middlewares: Middleware, handler: Handler) -> Handler:
    def wrap(stage: Middleware, next_handler: Handler) -> Handler:
        async def run(request: AuthRequest) -> Any:
            return await stage(request, next_handler)

        return run

    return functools.reduce(lambda acc, stage: wrap(stage, acc), reversed(middlewares), handler)


def protected(
    tokens: TokenIssuer,
    sessions: SessionManager,
    handler: Handler,
    *,
    providers: Optional[Collection[AuthProvider]] = None,
) -> Handler:
    return chain(
        authenticate_bearer(tokens),
        resolve_session(sessions),
        authorize(providers=providers),
        handler=handler,
    )
