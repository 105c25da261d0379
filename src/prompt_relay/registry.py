"""In-memory registry of open push streams with tenant/user fan-out.

One ``ConnectionRegistry`` exists per process. It is created by the HTTP app
and handed by reference to anything that needs to publish (write paths call
``broadcast_to_tenant`` / ``broadcast_to_user``). Every operation is
synchronous: the map is never observed half-updated by another task because
nothing awaits while touching it.

Liveness is detected lazily. A connection is pruned when a write to its sink
fails, whether that write is a broadcast or its own periodic heartbeat.
"""

from __future__ import annotations

import asyncio
import itertools
import time
from collections import Counter
from collections.abc import AsyncIterator, Callable
from dataclasses import dataclass, field
from typing import Any, Optional, Protocol

import structlog

from .config import Settings
from .errors import TransportClosedError
from .framing import format_event, heartbeat_event

logger = structlog.get_logger(__name__)

DEFAULT_HEARTBEAT_INTERVAL_SECONDS = 30.0

_connection_seq = itertools.count(1)


class EventSink(Protocol):
    """Write side of one client stream.

    ``send`` must not suspend; it raises when the client can no longer receive.
    """

    def send(self, chunk: str) -> None: ...

    def close(self) -> None: ...


class EventPublisher(Protocol):
    """What write paths need from the registry."""

    def broadcast_to_tenant(self, tenant_id: str, event: dict[str, Any]) -> None: ...

    def broadcast_to_user(self, user_id: str, event: dict[str, Any]) -> None: ...


class QueueSink:
    """Sink backed by an ``asyncio.Queue`` that the HTTP response drains.

    ``max_pending`` bounds the backlog of a client that stopped reading; ``0``
    means unbounded.
    """

    def __init__(self, max_pending: int = 0) -> None:
        self._queue: asyncio.Queue[Optional[str]] = asyncio.Queue()
        self._max_pending = max_pending
        self._closed = False

    @property
    def closed(self) -> bool:
        return self._closed

    @property
    def pending(self) -> int:
        return self._queue.qsize()

    def send(self, chunk: str) -> None:
        if self._closed:
            raise TransportClosedError("stream is closed")
        if self._max_pending and self._queue.qsize() >= self._max_pending:
            raise TransportClosedError(f"client is not draining ({self._max_pending} frames pending)")
        self._queue.put_nowait(chunk)

    def close(self) -> None:
        if self._closed:
            return
        self._closed = True
        # Wakes the drain loop; the sentinel is never counted against max_pending.
        self._queue.put_nowait(None)

    async def __aiter__(self) -> AsyncIterator[str]:
        while True:
            chunk = await self._queue.get()
            if chunk is None:
                return
            yield chunk


def new_connection_id(user_id: str) -> str:
    """Connection id from the owner, a millisecond timestamp and a process-wide sequence."""
    return f"{user_id}_{int(time.time() * 1000)}_{next(_connection_seq)}"


@dataclass(slots=True, frozen=True)
class Connection:
    id: str
    sink: EventSink
    user_id: str
    tenant_id: str
    opened_at: float = field(default_factory=time.time)


@dataclass(slots=True, frozen=True)
class ConnectionStats:
    """Point-in-time view of the registry; fields may come from slightly different instants."""

    total_connections: int
    user_connections: dict[str, int]
    tenant_connections: dict[str, int]

    def to_dict(self) -> dict[str, Any]:
        return {
            "totalConnections": self.total_connections,
            "userConnections": dict(self.user_connections),
            "tenantConnections": dict(self.tenant_connections),
        }


class ConnectionRegistry:
    """Tracks open push streams and delivers events to matching subsets."""

    def __init__(self, *, heartbeat_interval: float = DEFAULT_HEARTBEAT_INTERVAL_SECONDS) -> None:
        self._heartbeat_interval = heartbeat_interval
        self._connections: dict[str, Connection] = {}
        self._heartbeats: dict[str, asyncio.Task[None]] = {}

    @classmethod
    def create(cls, settings: Settings) -> ConnectionRegistry:
        return cls(heartbeat_interval=settings.sse.heartbeat_interval_seconds)

    @property
    def heartbeat_interval(self) -> float:
        return self._heartbeat_interval

    def __len__(self) -> int:
        return len(self._connections)

    def __contains__(self, connection_id: object) -> bool:
        return connection_id in self._connections

    def register(self, connection: Connection) -> None:
        """Insert ``connection`` and start its heartbeat. Callers guarantee a unique id."""
        self._connections[connection.id] = connection
        if self._heartbeat_interval > 0:
            task = asyncio.get_running_loop().create_task(
                self._heartbeat(connection),
                name=f"sse-heartbeat:{connection.id}",
            )
            self._heartbeats[connection.id] = task
        logger.info(
            "sse.connected",
            connection_id=connection.id,
            user_id=connection.user_id,
            tenant_id=connection.tenant_id,
            total=len(self._connections),
        )

    def unregister(self, connection_id: str) -> None:
        """Remove a connection, cancel its heartbeat and close its sink.

        Safe to call any number of times; the heartbeat failure path and the
        client-abort path may both get here.
        """
        connection = self._connections.pop(connection_id, None)
        task = self._heartbeats.pop(connection_id, None)
        if task is not None and task is not _current_task():
            task.cancel()
        if connection is None:
            return
        connection.sink.close()
        logger.info("sse.disconnected", connection_id=connection_id, total=len(self._connections))

    def broadcast_to_tenant(self, tenant_id: str, event: dict[str, Any]) -> None:
        self._broadcast(lambda c: c.tenant_id == tenant_id, event)

    def broadcast_to_user(self, user_id: str, event: dict[str, Any]) -> None:
        self._broadcast(lambda c: c.user_id == user_id, event)

    def send_to(self, connection_id: str, event: dict[str, Any]) -> bool:
        """Deliver ``event`` to a single connection; False when absent or pruned."""
        connection = self._connections.get(connection_id)
        if connection is None:
            return False
        return self._deliver(connection, format_event(event))

    def stats(self) -> ConnectionStats:
        connections = list(self._connections.values())
        return ConnectionStats(
            total_connections=len(connections),
            user_connections=dict(Counter(c.user_id for c in connections)),
            tenant_connections=dict(Counter(c.tenant_id for c in connections)),
        )

    async def shutdown(self) -> None:
        """Unregister every connection and wait for heartbeat tasks to finish."""
        tasks = list(self._heartbeats.values())
        for connection_id in list(self._connections):
            self.unregister(connection_id)
        if tasks:
            await asyncio.gather(*tasks, return_exceptions=True)

    def _broadcast(self, predicate: Callable[[Connection], bool], event: dict[str, Any]) -> None:
        frame = format_event(event)
        # Snapshot: failed deliveries unregister while we iterate.
        for connection in list(self._connections.values()):
            if predicate(connection):
                self._deliver(connection, frame)

    def _deliver(self, connection: Connection, frame: str) -> bool:
        try:
            connection.sink.send(frame)
        except Exception as exc:
            logger.debug("sse.delivery_failed", connection_id=connection.id, error=str(exc))
            self.unregister(connection.id)
            return False
        return True

    async def _heartbeat(self, connection: Connection) -> None:
        while connection.id in self._connections:
            await asyncio.sleep(self._heartbeat_interval)
            if connection.id not in self._connections:
                return
            if not self._deliver(connection, format_event(heartbeat_event())):
                return


def _current_task() -> Optional[asyncio.Task[Any]]:
    try:
        return asyncio.current_task()
    except RuntimeError:
        return None
