"""Resolve the caller of a push or tool-call request to a tenant-scoped principal."""

from __future__ import annotations

from dataclasses import dataclass
from typing import Optional, Protocol

import structlog
from fastapi import Request
from sqlalchemy.exc import SQLAlchemyError
from sqlmodel import select

from .db import get_session
from .models import AccessToken, Space, User, as_utc, utcnow

logger = structlog.get_logger(__name__)


@dataclass(slots=True, frozen=True)
class Principal:
    """The authenticated caller. ``tenant_id`` bounds every data read."""

    user_id: str
    tenant_id: str
    email: Optional[str] = None
    name: Optional[str] = None
    role: str = "USER"

    @property
    def is_admin(self) -> bool:
        return self.role.upper() == "ADMIN"


class Authenticator(Protocol):
    async def authenticate(self, request: Request) -> Optional[Principal]: ...


def extract_bearer_token(request: Request, *, allow_query: bool = False) -> Optional[str]:
    """Return the token from ``Authorization: Bearer``, or ``?access_token=`` when allowed."""
    header = request.headers.get("authorization", "")
    scheme, _, token = header.partition(" ")
    if scheme.lower() == "bearer" and token.strip():
        return token.strip()
    if allow_query:
        token = request.query_params.get("access_token", "").strip()
        if token:
            return token
    return None


class AccessTokenAuthenticator:
    """Look the bearer token up in ``access_tokens`` and map its user to their personal space.

    Any database error is logged and reported as a rejection; the caller
    never sees a half-authenticated request.
    """

    def __init__(self, *, allow_query_token_paths: tuple[str, ...] = ()) -> None:
        self._query_paths = allow_query_token_paths

    async def authenticate(self, request: Request) -> Optional[Principal]:
        token = extract_bearer_token(request, allow_query=request.url.path in self._query_paths)
        if token is None:
            logger.info("auth.rejected", reason="missing_token", path=request.url.path)
            return None
        try:
            return await self.resolve_token(token)
        except SQLAlchemyError as exc:
            logger.warning("auth.error", error=str(exc), path=request.url.path)
            return None

    async def resolve_token(self, token: str) -> Optional[Principal]:
        async with get_session() as session:
            record = (
                await session.execute(select(AccessToken).where(AccessToken.access_token == token))
            ).scalars().first()
            if record is None:
                logger.info("auth.rejected", reason="unknown_token")
                return None
            expires_at = record.access_token_expires_at
            if expires_at is not None and as_utc(expires_at) < utcnow():
                logger.info("auth.rejected", reason="expired_token", user_id=record.user_id)
                return None
            user = await session.get(User, record.user_id)
            if user is None:
                logger.info("auth.rejected", reason="unknown_user", user_id=record.user_id)
                return None
            space = (
                await session.execute(
                    select(Space).where(Space.owner_id == user.id, Space.type == "PERSONAL")
                )
            ).scalars().first()
            if space is None:
                logger.info("auth.rejected", reason="no_personal_space", user_id=user.id)
                return None
            return Principal(
                user_id=user.id,
                tenant_id=space.id,
                email=user.email,
                name=user.name,
                role=user.role,
            )
