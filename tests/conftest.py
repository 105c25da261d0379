import asyncio
import contextlib
from dataclasses import dataclass
from pathlib import Path
from typing import Any, Optional
from urllib.parse import urlencode

import pytest
import pytest_asyncio

from prompt_relay.config import clear_settings_cache
from prompt_relay.db import ensure_schema, reset_database_state
from prompt_relay.repository import AccountRepository, PromptRepository


@pytest.fixture
def isolated_env(tmp_path, monkeypatch):
    """Provide isolated database settings for tests and reset caches."""
    db_path: Path = tmp_path / "test.sqlite3"
    monkeypatch.setenv("DATABASE_URL", f"sqlite+aiosqlite:///{db_path}")
    monkeypatch.setenv("HTTP_HOST", "127.0.0.1")
    monkeypatch.setenv("HTTP_PORT", "8765")
    monkeypatch.setenv("APP_ENVIRONMENT", "test")
    monkeypatch.setenv("LOG_RICH_ENABLED", "false")
    clear_settings_cache()
    reset_database_state()
    try:
        yield
    finally:
        clear_settings_cache()
        reset_database_state()
        if db_path.exists():
            db_path.unlink()


@pytest.fixture(autouse=True)
def _global_resource_cleanup():
    """Dispose engine/pool state between tests, whether or not they opted into ``isolated_env``."""
    yield
    with contextlib.suppress(Exception):
        reset_database_state()
    with contextlib.suppress(Exception):
        clear_settings_cache()


@dataclass
class Account:
    user_id: str
    space_id: str
    token: str


@dataclass
class Seed:
    alice: Account
    bob: Account
    admin: Account
    alice_prompt_id: str
    bob_prompt_id: str


@pytest_asyncio.fixture
async def seeded(isolated_env) -> Seed:
    """Two ordinary users with one prompt each, plus an admin with an empty space."""
    await ensure_schema()
    accounts = AccountRepository()
    prompts = PromptRepository()

    async def _account(email: str, role: str = "USER") -> Account:
        user, space = await accounts.create_user(email, name=email.split("@")[0], role=role)
        token = await accounts.issue_access_token(user.id)
        return Account(user_id=user.id, space_id=space.id, token=token.access_token)

    alice = await _account("alice@example.com")
    bob = await _account("bob@example.com")
    admin = await _account("root@example.com", role="ADMIN")
    alice_prompt = await prompts.create_prompt(
        space_id=alice.space_id,
        created_by=alice.user_id,
        title="Summarize",
        content="Summarize the following text.",
        description="Short summaries",
        tags=["writing", "summary"],
    )
    bob_prompt = await prompts.create_prompt(
        space_id=bob.space_id,
        created_by=bob.user_id,
        title="Translate",
        content="Translate into French.",
        tags=["i18n"],
    )
    return Seed(alice=alice, bob=bob, admin=admin, alice_prompt_id=alice_prompt.id, bob_prompt_id=bob_prompt.id)


class SseSession:
    """Drive a long-lived GET against an ASGI app and read its body chunk by chunk.

    httpx's ASGI transport buffers the whole response, which never completes
    for a push stream; this talks ASGI directly and delivers
    ``http.disconnect`` on ``close()``. With ``refuse_start`` the client is gone
    before the response headers can be written.
    """

    def __init__(
        self,
        app: Any,
        path: str,
        *,
        token: Optional[str] = None,
        query: Optional[dict[str, str]] = None,
        refuse_start: bool = False,
    ):
        self.app = app
        self.path = path
        self.token = token
        self.query = query or {}
        self.refuse_start = refuse_start
        self.status: Optional[int] = None
        self.headers: dict[str, str] = {}
        self.complete = False
        self._chunks: asyncio.Queue[str] = asyncio.Queue()
        self._disconnect = asyncio.Event()
        self._task: Optional[asyncio.Task[None]] = None

    async def _receive(self) -> dict[str, Any]:
        await self._disconnect.wait()
        return {"type": "http.disconnect"}

    async def _send(self, message: dict[str, Any]) -> None:
        if message["type"] == "http.response.start":
            if self.refuse_start:
                raise OSError("client disconnected before response start")
            self.status = message["status"]
            self.headers = {k.decode().lower(): v.decode() for k, v in message.get("headers", [])}
        elif message["type"] == "http.response.body":
            body = message.get("body", b"")
            if body:
                self._chunks.put_nowait(body.decode())
            if not message.get("more_body", False):
                self.complete = True

    async def open(self) -> "SseSession":
        headers = [(b"host", b"testserver"), (b"accept", b"text/event-stream")]
        if self.token:
            headers.append((b"authorization", f"Bearer {self.token}".encode()))
        scope = {
            "type": "http",
            "asgi": {"version": "3.0"},
            "http_version": "1.1",
            "method": "GET",
            "scheme": "http",
            "path": self.path,
            "raw_path": self.path.encode(),
            "root_path": "",
            "query_string": urlencode(self.query).encode(),
            "headers": headers,
            "client": ("127.0.0.1", 50000),
            "server": ("testserver", 80),
        }
        self._task = asyncio.create_task(self.app(scope, self._receive, self._send))
        for _ in range(500):
            if self.status is not None or self._task.done():
                break
            await asyncio.sleep(0.01)
        return self

    async def next_frame(self, timeout: float = 2.0) -> str:
        return await asyncio.wait_for(self._chunks.get(), timeout)

    def drain(self) -> list[str]:
        chunks: list[str] = []
        while not self._chunks.empty():
            chunks.append(self._chunks.get_nowait())
        return chunks

    async def close(self) -> None:
        self._disconnect.set()
        if self._task is not None:
            await asyncio.wait_for(self._task, 5.0)


@pytest_asyncio.fixture
async def sse_session():
    """Factory for ``SseSession``; sessions left open are disconnected at teardown."""
    sessions: list[SseSession] = []

    async def _open(app: Any, path: str, **kwargs: Any) -> SseSession:
        session = SseSession(app, path, **kwargs)
        sessions.append(session)
        return await session.open()

    yield _open

    for session in sessions:
        if session._task is not None and not session._task.done():
            with contextlib.suppress(Exception):
                await session.close()
