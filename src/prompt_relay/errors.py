"""Error taxonomy shared by the push registry and the tool-call dispatcher."""

from __future__ import annotations

from typing import Any, Optional

# JSON-RPC 2.0 reserved codes. Clients match on the literal numbers.
PARSE_ERROR = -32700
INVALID_REQUEST = -32600
METHOD_NOT_FOUND = -32601
INVALID_PARAMS = -32602
INTERNAL_ERROR = -32603


class RelayError(Exception):
    """Base class for errors raised by this package."""


class AuthenticationFailure(RelayError):
    """The request carried no usable credentials."""


class ProtocolError(RelayError):
    """A malformed or unroutable protocol message.

    Surfaced to the client as a single in-stream error envelope carrying
    ``code``; the stream is still closed with the normal completion marker.
    """

    def __init__(
        self,
        code: int,
        message: str,
        *,
        data: Optional[dict[str, Any]] = None,
        request_id: Any = None,
    ):
        super().__init__(message)
        self.code = code
        self.message = message
        self.data = data
        # Known only when the id itself was valid; echoed on the error envelope.
        self.request_id = request_id

    @classmethod
    def method_not_found(cls, method: str, **data: Any) -> ProtocolError:
        return cls(METHOD_NOT_FOUND, "Method not found", data={"method": method, **data})

    @classmethod
    def invalid_params(cls, message: str, **data: Any) -> ProtocolError:
        return cls(INVALID_PARAMS, message, data=data or None)


class DataAccessFailure(RelayError):
    """The data collaborator failed (lookup error, database unavailable)."""


class TransportClosedError(RelayError):
    """Writing to a client sink failed because the client is gone or not draining."""
