"""JSON-RPC 2.0 message parsing and response envelopes for the tool-call endpoint."""

from __future__ import annotations

import json
from dataclasses import dataclass, field
from typing import Any, Optional, Union

from .errors import INVALID_REQUEST, PARSE_ERROR, ProtocolError

JSONRPC_VERSION = "2.0"

RequestId = Union[str, int, float, None]


@dataclass(slots=True, frozen=True)
class RpcRequest:
    method: str
    id: RequestId = None
    params: dict[str, Any] = field(default_factory=dict)

    @property
    def is_notification(self) -> bool:
        return self.id is None


def parse_message(raw: Union[bytes, str]) -> RpcRequest:
    """Decode and validate one inbound message.

    Raises ``ProtocolError`` with ``PARSE_ERROR`` for undecodable bodies and
    ``INVALID_REQUEST`` for JSON that is not a request object.
    """
    try:
        payload = json.loads(raw)
    except (UnicodeDecodeError, ValueError) as exc:
        raise ProtocolError(PARSE_ERROR, "Parse error", data={"detail": str(exc)}) from exc
    return validate_message(payload)


def validate_message(payload: Any) -> RpcRequest:
    if not isinstance(payload, dict):
        raise ProtocolError(INVALID_REQUEST, "Invalid Request", data={"detail": "message must be an object"})
    request_id = payload.get("id")
    # bool is an int subclass; JSON true/false is not a valid id.
    if request_id is not None and (isinstance(request_id, bool) or not isinstance(request_id, (str, int, float))):
        raise ProtocolError(INVALID_REQUEST, "Invalid Request", data={"detail": "id must be a string or number"})

    def _invalid(detail: str) -> ProtocolError:
        return ProtocolError(INVALID_REQUEST, "Invalid Request", data={"detail": detail}, request_id=request_id)

    version = payload.get("jsonrpc", JSONRPC_VERSION)
    if version != JSONRPC_VERSION:
        raise _invalid(f"unsupported jsonrpc version {version!r}")
    method = payload.get("method")
    if not isinstance(method, str) or not method:
        raise _invalid("method must be a non-empty string")
    params = payload.get("params")
    if params is None:
        params = {}
    if not isinstance(params, dict):
        raise _invalid("params must be an object")
    return RpcRequest(method=method, id=request_id, params=params)


def result_envelope(request_id: RequestId, result: Any) -> dict[str, Any]:
    return {"jsonrpc": JSONRPC_VERSION, "id": request_id, "result": result}


def error_envelope(
    request_id: RequestId,
    code: int,
    message: str,
    data: Optional[dict[str, Any]] = None,
) -> dict[str, Any]:
    error: dict[str, Any] = {"code": code, "message": message}
    if data is not None:
        error["data"] = data
    return {"jsonrpc": JSONRPC_VERSION, "id": request_id, "error": error}


def text_content(payload: Any) -> dict[str, Any]:
    """Tool result carrying ``payload`` as one JSON text block."""
    return {
        "content": [{"type": "text", "text": json.dumps(payload, ensure_ascii=False, default=str)}],
        "isPartial": False,
    }
