"""Application configuration loaded via python-decouple with typed helpers."""

from __future__ import annotations

from dataclasses import dataclass
from functools import lru_cache
from pathlib import Path
from typing import Final, Protocol, cast

from decouple import (
    Config as DecoupleConfig,
    RepositoryEmpty,
    RepositoryEnv,
)

_DOTENV_PATH: Final[Path] = Path(".env")


def _build_decouple_config() -> DecoupleConfig:
    # Missing .env (CI/tests) falls back to os.environ only.
    try:
        return DecoupleConfig(RepositoryEnv(str(_DOTENV_PATH)))
    except FileNotFoundError:
        return DecoupleConfig(RepositoryEmpty())


_decouple_config: Final[DecoupleConfig] = _build_decouple_config()


@dataclass(slots=True, frozen=True)
class HttpSettings:
    """HTTP transport related settings."""

    host: str
    port: int
    sse_path: str
    mcp_path: str
    request_log_enabled: bool


@dataclass(slots=True, frozen=True)
class DatabaseSettings:
    """Database connectivity settings."""

    url: str
    echo: bool


@dataclass(slots=True, frozen=True)
class CorsSettings:
    """CORS configuration for the HTTP app."""

    enabled: bool
    origins: list[str]
    allow_methods: list[str]
    allow_headers: list[str]


@dataclass(slots=True, frozen=True)
class SseSettings:
    """Push-stream tuning.

    ``max_pending_frames`` bounds how many frames may wait for a client that has
    stopped reading; past that the connection is treated as gone. ``0`` disables
    the bound.
    """

    heartbeat_interval_seconds: float
    max_pending_frames: int


@dataclass(slots=True, frozen=True)
class McpSettings:
    """Static metadata returned by the ``initialize`` handshake."""

    protocol_version: str
    server_name: str
    server_version: str


@dataclass(slots=True, frozen=True)
class Settings:
    """Top-level application settings."""

    environment: str
    http: HttpSettings
    database: DatabaseSettings
    cors: CorsSettings
    sse: SseSettings
    mcp: McpSettings
    # Logging
    log_level: str
    log_json_enabled: bool
    log_rich_enabled: bool
    rpc_log_enabled: bool


def _bool(value: str, *, default: bool) -> bool:
    normalized = value.strip().lower()
    if normalized in {"1", "true", "t", "yes", "y"}:
        return True
    if normalized in {"0", "false", "f", "no", "n"}:
        return False
    return default


def _int(value: str, *, default: int) -> int:
    try:
        return int(value)
    except (TypeError, ValueError):
        return default


def _float(value: str, *, default: float) -> float:
    try:
        return float(value)
    except (TypeError, ValueError):
        return default


def _path(value: str, *, default: str) -> str:
    text = (value or "").strip()
    if not text:
        return default
    if not text.startswith("/"):
        text = "/" + text
    return text.rstrip("/") or default


@lru_cache(maxsize=1)
def get_settings() -> Settings:
    """Return cached application settings."""
    environment = _decouple_config("APP_ENVIRONMENT", default="development")

    def _csv(name: str, default: str) -> list[str]:
        raw = _decouple_config(name, default=default)
        return [part.strip() for part in raw.split(",") if part.strip()]

    http_settings = HttpSettings(
        host=_decouple_config("HTTP_HOST", default="127.0.0.1"),
        port=_int(_decouple_config("HTTP_PORT", default="8765"), default=8765),
        sse_path=_path(_decouple_config("HTTP_SSE_PATH", default="/api/sse"), default="/api/sse"),
        mcp_path=_path(_decouple_config("HTTP_MCP_PATH", default="/api/mcp"), default="/api/mcp"),
        request_log_enabled=_bool(_decouple_config("HTTP_REQUEST_LOG_ENABLED", default="false"), default=False),
    )

    database_settings = DatabaseSettings(
        url=_decouple_config("DATABASE_URL", default="sqlite+aiosqlite:///./prompt_relay.sqlite3"),
        echo=_bool(_decouple_config("DATABASE_ECHO", default="false"), default=False),
    )

    # The tool-call endpoint is meant to be reachable from any origin.
    cors_settings = CorsSettings(
        enabled=_bool(_decouple_config("HTTP_CORS_ENABLED", default="true"), default=True),
        origins=_csv("HTTP_CORS_ORIGINS", default="*"),
        allow_methods=_csv("HTTP_CORS_ALLOW_METHODS", default="GET,POST,OPTIONS"),
        allow_headers=_csv("HTTP_CORS_ALLOW_HEADERS", default="Content-Type,Authorization,Cache-Control"),
    )

    sse_settings = SseSettings(
        heartbeat_interval_seconds=_float(
            _decouple_config("SSE_HEARTBEAT_INTERVAL_SECONDS", default="30"), default=30.0
        ),
        max_pending_frames=max(0, _int(_decouple_config("SSE_MAX_PENDING_FRAMES", default="256"), default=256)),
    )

    mcp_settings = McpSettings(
        protocol_version=_decouple_config("MCP_PROTOCOL_VERSION", default="2025-03-26"),
        server_name=_decouple_config("MCP_SERVER_NAME", default="Prompt Manager MCP Server"),
        server_version=_decouple_config("MCP_SERVER_VERSION", default="1.0.0"),
    )

    return Settings(
        environment=environment,
        http=http_settings,
        database=database_settings,
        cors=cors_settings,
        sse=sse_settings,
        mcp=mcp_settings,
        log_level=_decouple_config("LOG_LEVEL", default="INFO"),
        log_json_enabled=_bool(_decouple_config("LOG_JSON_ENABLED", default="false"), default=False),
        log_rich_enabled=_bool(_decouple_config("LOG_RICH_ENABLED", default="true"), default=True),
        rpc_log_enabled=_bool(_decouple_config("RPC_LOG_ENABLED", default="false"), default=False),
    )


class _CacheClearable(Protocol):
    def cache_clear(self) -> None: ...


def clear_settings_cache() -> None:
    """Clear the lru_cache for get_settings in a type-checker-friendly way."""
    cache_clear = getattr(cast(_CacheClearable, get_settings), "cache_clear", None)
    if callable(cache_clear):
        cache_clear()
