"""SQLModel data models for the tables the relay reads: users, spaces, prompts and access tokens."""

from __future__ import annotations

from datetime import datetime, timezone
from typing import Optional

from sqlalchemy import Column, DateTime, Index, UniqueConstraint
from sqlalchemy.types import JSON
from sqlmodel import Field, SQLModel


def utcnow() -> datetime:
    """Current time as an aware UTC datetime."""
    return datetime.now(timezone.utc)


def as_utc(value: datetime) -> datetime:
    """Attach UTC to a value read back from SQLite, which drops the offset on storage."""
    if value.tzinfo is None:
        return value.replace(tzinfo=timezone.utc)
    return value.astimezone(timezone.utc)


class User(SQLModel, table=True):
    __tablename__ = "users"

    id: str = Field(primary_key=True, max_length=64)
    email: str = Field(index=True, unique=True, max_length=255)
    name: Optional[str] = Field(default=None, max_length=255)
    role: str = Field(default="USER", max_length=16)  # USER | ADMIN
    created_at: datetime = Field(default_factory=utcnow, sa_type=DateTime(timezone=True))


class Space(SQLModel, table=True):
    """Authorization boundary for prompts: a user's personal space or a shared team space."""

    __tablename__ = "spaces"
    __table_args__ = (Index("idx_spaces_owner_type", "owner_id", "type"),)

    id: str = Field(primary_key=True, max_length=64)
    name: str = Field(max_length=255)
    type: str = Field(default="PERSONAL", max_length=16)  # PERSONAL | TEAM
    owner_id: Optional[str] = Field(default=None, foreign_key="users.id")
    created_at: datetime = Field(default_factory=utcnow, sa_type=DateTime(timezone=True))


class Prompt(SQLModel, table=True):
    __tablename__ = "prompts"
    __table_args__ = (Index("idx_prompts_space_id", "space_id", "id"),)

    id: str = Field(primary_key=True, max_length=64)
    space_id: str = Field(foreign_key="spaces.id", index=True)
    created_by: str = Field(foreign_key="users.id", index=True)
    title: str = Field(default="", max_length=512)
    content: str = Field(default="")
    description: str = Field(default="", max_length=2048)
    tags: list[str] = Field(
        default_factory=list,
        sa_column=Column(JSON, nullable=False, server_default="[]"),
    )
    is_public: bool = Field(default=False)
    use_count: int = Field(default=0)
    created_at: datetime = Field(default_factory=utcnow, sa_type=DateTime(timezone=True))
    updated_at: datetime = Field(default_factory=utcnow, sa_type=DateTime(timezone=True))


class AccessToken(SQLModel, table=True):
    """Long-lived bearer token handed to external tool clients."""

    __tablename__ = "access_tokens"
    __table_args__ = (UniqueConstraint("access_token", name="uq_access_token"),)

    id: str = Field(primary_key=True, max_length=64)
    user_id: str = Field(foreign_key="users.id", index=True)
    access_token: str = Field(index=True, max_length=128)
    access_token_expires_at: Optional[datetime] = Field(default=None, sa_type=DateTime(timezone=True))
    scope: Optional[str] = Field(default=None, max_length=255)
    created_at: datetime = Field(default_factory=utcnow, sa_type=DateTime(timezone=True))
