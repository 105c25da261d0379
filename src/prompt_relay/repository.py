"""Tenant-scoped data access for prompts and the accounts that own them.

Every read takes the caller's space id and filters on it; nothing here looks a
prompt up by id alone. Writes commit first and then publish a best-effort
notification to the owning space through an optional ``EventPublisher``.
"""

from __future__ import annotations

import secrets
import uuid
from collections.abc import Awaitable, Callable
from datetime import timedelta
from functools import wraps
from typing import Any, Iterable, Optional, TypeVar

import structlog
from sqlalchemy.exc import SQLAlchemyError
from sqlmodel import select

from .db import get_session, retry_on_db_lock
from .errors import DataAccessFailure
from .models import AccessToken, Prompt, Space, User, utcnow
from .registry import EventPublisher

logger = structlog.get_logger(__name__)

T = TypeVar("T")


def _new_id() -> str:
    return uuid.uuid4().hex


def _data_access(func: Callable[..., Awaitable[T]]) -> Callable[..., Awaitable[T]]:
    """Surface SQLAlchemy errors as ``DataAccessFailure`` (after any lock retries)."""

    @wraps(func)
    async def wrapper(*args: Any, **kwargs: Any) -> T:
        try:
            return await func(*args, **kwargs)
        except SQLAlchemyError as exc:
            raise DataAccessFailure(f"{func.__name__} failed: {exc}") from exc

    return wrapper


class PromptRepository:
    def __init__(self, publisher: Optional[EventPublisher] = None) -> None:
        self._publisher = publisher

    @_data_access
    async def list_prompts(self, space_id: str) -> list[Prompt]:
        async with get_session() as session:
            result = await session.execute(
                select(Prompt).where(Prompt.space_id == space_id).order_by(Prompt.created_at)
            )
            return list(result.scalars().all())

    @_data_access
    async def get_prompt_content(self, space_id: str, prompt_id: str) -> Optional[dict[str, Any]]:
        """Return ``{"content": ...}`` for a prompt in ``space_id``, or None.

        A prompt that exists in another space is indistinguishable from one
        that does not exist.
        """
        async with get_session() as session:
            result = await session.execute(
                select(Prompt.content)
                .where(Prompt.space_id == space_id, Prompt.id == prompt_id)
                .limit(1)
            )
            row = result.first()
            if row is None:
                return None
            return {"content": row[0]}

    @_data_access
    async def list_prompt_briefs(self, space_id: str) -> list[dict[str, Any]]:
        """Id/title/description/tags for every prompt in the space, without content."""
        async with get_session() as session:
            result = await session.execute(
                select(Prompt.id, Prompt.title, Prompt.description, Prompt.tags)
                .where(Prompt.space_id == space_id)
                .order_by(Prompt.created_at)
            )
            return [
                {"id": row.id, "title": row.title, "description": row.description, "tags": list(row.tags or [])}
                for row in result.all()
            ]

    @_data_access
    @retry_on_db_lock()
    async def create_prompt(
        self,
        *,
        space_id: str,
        created_by: str,
        title: str,
        content: str,
        description: str = "",
        tags: Iterable[str] = (),
    ) -> Prompt:
        prompt = Prompt(
            id=_new_id(),
            space_id=space_id,
            created_by=created_by,
            title=title,
            content=content,
            description=description,
            tags=[t for t in (tag.strip() for tag in tags) if t],
        )
        async with get_session() as session:
            session.add(prompt)
            await session.commit()
        self._publish(space_id, "prompt_created", _prompt_summary(prompt))
        return prompt

    @_data_access
    @retry_on_db_lock()
    async def update_prompt(self, space_id: str, prompt_id: str, **changes: Any) -> Optional[Prompt]:
        allowed = {"title", "content", "description", "tags", "is_public"}
        unknown = set(changes) - allowed
        if unknown:
            raise ValueError(f"Unsupported prompt fields: {sorted(unknown)}")
        async with get_session() as session:
            result = await session.execute(
                select(Prompt).where(Prompt.space_id == space_id, Prompt.id == prompt_id)
            )
            prompt = result.scalars().first()
            if prompt is None:
                return None
            for key, value in changes.items():
                setattr(prompt, key, list(value) if key == "tags" else value)
            prompt.updated_at = utcnow()
            session.add(prompt)
            await session.commit()
        self._publish(space_id, "prompt_updated", _prompt_summary(prompt))
        return prompt

    @_data_access
    @retry_on_db_lock()
    async def delete_prompt(self, space_id: str, prompt_id: str) -> bool:
        async with get_session() as session:
            result = await session.execute(
                select(Prompt).where(Prompt.space_id == space_id, Prompt.id == prompt_id)
            )
            prompt = result.scalars().first()
            if prompt is None:
                return False
            await session.delete(prompt)
            await session.commit()
        self._publish(space_id, "prompt_deleted", {"id": prompt_id})
        return True

    def _publish(self, space_id: str, event_type: str, data: dict[str, Any]) -> None:
        if self._publisher is None:
            return
        self._publisher.broadcast_to_tenant(space_id, {"type": event_type, "data": data})


def _prompt_summary(prompt: Prompt) -> dict[str, Any]:
    return {
        "id": prompt.id,
        "title": prompt.title,
        "description": prompt.description,
        "tags": list(prompt.tags or []),
    }


class AccountRepository:
    """Users, their personal spaces and access tokens (CLI and test seeding)."""

    @_data_access
    @retry_on_db_lock()
    async def create_user(self, email: str, *, name: Optional[str] = None, role: str = "USER") -> tuple[User, Space]:
        user = User(id=_new_id(), email=email.strip().lower(), name=name, role=role.upper())
        space = Space(id=_new_id(), name=f"{name or email}'s space", type="PERSONAL", owner_id=user.id)
        async with get_session() as session:
            session.add(user)
            await session.flush()
            session.add(space)
            await session.commit()
        logger.info("account.user_created", user_id=user.id, space_id=space.id)
        return user, space

    @_data_access
    async def get_user(self, user_id: str) -> Optional[User]:
        async with get_session() as session:
            return await session.get(User, user_id)

    @_data_access
    async def get_personal_space(self, user_id: str) -> Optional[Space]:
        async with get_session() as session:
            result = await session.execute(
                select(Space).where(Space.owner_id == user_id, Space.type == "PERSONAL")
            )
            return result.scalars().first()

    @_data_access
    @retry_on_db_lock()
    async def issue_access_token(
        self,
        user_id: str,
        *,
        ttl: Optional[timedelta] = None,
        scope: Optional[str] = None,
    ) -> AccessToken:
        token = AccessToken(
            id=_new_id(),
            user_id=user_id,
            access_token=secrets.token_urlsafe(32),
            access_token_expires_at=(utcnow() + ttl) if ttl is not None else None,
            scope=scope,
        )
        async with get_session() as session:
            session.add(token)
            await session.commit()
        return token
