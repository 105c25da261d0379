"""Server-Sent-Events text framing.

Every event is ``[event: <type>\\n]data: <json>\\n\\n``. Plain data events carry
no ``event:`` line; the two terminal markers of a tool-call stream use their
own event types so a reader can tell "more may follow" from "done".
"""

from __future__ import annotations

import json
import time
from typing import Any, Optional

DONE_EVENT = "done"
ERROR_EVENT = "error"

TERMINAL_DONE_FRAME = f"event: {DONE_EVENT}\ndata: {{}}\n\n"


def _dumps(payload: Any) -> str:
    return json.dumps(payload, separators=(",", ":"), ensure_ascii=False, default=str)


def format_event(payload: Any, *, event: Optional[str] = None) -> str:
    """Serialize ``payload`` as one SSE frame."""
    body = f"data: {_dumps(payload)}\n\n"
    if event:
        return f"event: {event}\n{body}"
    return body


def format_error_terminal(payload: Any) -> str:
    return format_event(payload, event=ERROR_EVENT)


def heartbeat_event() -> dict[str, Any]:
    return {"type": "heartbeat", "timestamp": int(time.time() * 1000)}


def connected_event(connection_id: str) -> dict[str, Any]:
    return {
        "type": "connected",
        "data": {"connectionId": connection_id, "message": "SSE connection established"},
    }
