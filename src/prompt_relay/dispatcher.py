"""Tool-call dispatcher: one inbound message in, a framed SSE response stream out.

Each request moves through routing, execution and draining exactly once:

- the message is parsed and its method looked up (unknown methods produce a
  single ``-32601`` error envelope);
- the handler, an async iterator of envelopes, runs against data scoped to the
  caller's tenant;
- every envelope becomes a ``data:`` frame, and the stream ends with exactly
  one terminal marker: ``event: done`` normally, ``event: error`` if the
  handler raised something other than a ``ProtocolError``.

Authentication happens before the dispatcher is reached; it only ever sees
an authenticated ``Principal``.
"""

from __future__ import annotations

from collections.abc import AsyncIterator, Awaitable, Callable
from dataclasses import dataclass
from typing import Any, Optional, Union

import structlog

from . import rich_logger
from .auth import Principal
from .config import McpSettings
from .errors import INTERNAL_ERROR, METHOD_NOT_FOUND, ProtocolError, RelayError
from .framing import TERMINAL_DONE_FRAME, format_error_terminal, format_event
from .protocol import RpcRequest, error_envelope, parse_message, result_envelope, text_content, validate_message
from .repository import PromptRepository

logger = structlog.get_logger(__name__)

MethodHandler = Callable[[RpcRequest, Principal], AsyncIterator[dict[str, Any]]]
ToolHandler = Callable[[dict[str, Any], Principal], Awaitable[Any]]


@dataclass(slots=True, frozen=True)
class ToolSpec:
    name: str
    description: str
    input_schema: dict[str, Any]
    handler: ToolHandler

    def describe(self) -> dict[str, Any]:
        return {"name": self.name, "description": self.description, "inputSchema": self.input_schema}


class ProtocolDispatcher:
    def __init__(
        self,
        repository: PromptRepository,
        mcp: McpSettings,
        *,
        rpc_log_enabled: bool = False,
    ) -> None:
        self._repository = repository
        self._mcp = mcp
        self._rpc_log_enabled = rpc_log_enabled
        self._methods: dict[str, MethodHandler] = {
            "initialize": self._initialize,
            "notifications/initialized": self._initialized,
            "tools/list": self._tools_list,
            "tools/call": self._tools_call,
            "listPrompts": self._list_prompts,
        }
        self._tools: dict[str, ToolSpec] = {
            spec.name: spec
            for spec in (
                ToolSpec(
                    name="getPromptById",
                    description="Get the content of one of your prompts by its id.",
                    input_schema={
                        "type": "object",
                        "properties": {"id": {"type": "string", "description": "Prompt id"}},
                        "required": ["id"],
                    },
                    handler=self._get_prompt_by_id,
                ),
                ToolSpec(
                    name="listPrompt",
                    description="List the id, title, description and tags of all your prompts.",
                    input_schema={"type": "object", "properties": {}, "required": []},
                    handler=self._list_prompt_briefs,
                ),
            )
        }

    @property
    def methods(self) -> tuple[str, ...]:
        return tuple(self._methods)

    @property
    def tools(self) -> tuple[str, ...]:
        return tuple(self._tools)

    async def stream(
        self,
        message: Union[bytes, str, dict[str, Any]],
        principal: Principal,
    ) -> AsyncIterator[str]:
        """Yield the SSE frames answering ``message``, ending with one terminal marker."""
        ctx = rich_logger.RpcCallContext(method="?", params={}, user_id=principal.user_id, tenant_id=principal.tenant_id)
        request: Optional[RpcRequest] = None
        try:
            request = validate_message(message) if isinstance(message, dict) else parse_message(message)
            ctx.method, ctx.params, ctx.request_id = request.method, request.params, request.id
            handler = self._methods.get(request.method)
            if handler is None:
                raise ProtocolError.method_not_found(request.method)
            async for envelope in handler(request, principal):
                ctx.frames += 1
                yield format_event(envelope)
        except ProtocolError as exc:
            request_id = request.id if request is not None else exc.request_id
            if exc.code == METHOD_NOT_FOUND:
                logger.info("mcp.method_not_found", method=ctx.method, data=exc.data)
            ctx.frames += 1
            ctx.finish("protocol_error", error=exc.message)
            yield format_event(error_envelope(request_id, exc.code, exc.message, exc.data))
        except Exception as exc:
            logger.exception("mcp.handler_failed", method=ctx.method, user_id=principal.user_id)
            detail = str(exc) if isinstance(exc, RelayError) else type(exc).__name__
            ctx.finish("failed", error=detail)
            self._log_call(ctx)
            yield format_error_terminal(
                error_envelope(request.id if request else None, INTERNAL_ERROR, "Internal error", {"detail": detail})
            )
            return
        if ctx.end_time is None:
            ctx.finish("ok")
        self._log_call(ctx)
        yield TERMINAL_DONE_FRAME

    def _log_call(self, ctx: rich_logger.RpcCallContext) -> None:
        logger.info(
            "mcp.request",
            method=ctx.method,
            request_id=ctx.request_id,
            user_id=ctx.user_id,
            tenant_id=ctx.tenant_id,
            outcome=ctx.outcome,
            frames=ctx.frames,
            duration_ms=round(ctx.duration_ms, 2),
        )
        if self._rpc_log_enabled:
            rich_logger.log_rpc_call(ctx)

    # -- method handlers -------------------------------------------------

    async def _initialize(self, request: RpcRequest, principal: Principal) -> AsyncIterator[dict[str, Any]]:
        yield result_envelope(
            request.id,
            {
                "protocolVersion": self._mcp.protocol_version,
                "capabilities": {"tools": {}},
                "serverInfo": {"name": self._mcp.server_name, "version": self._mcp.server_version},
            },
        )

    async def _initialized(self, request: RpcRequest, principal: Principal) -> AsyncIterator[dict[str, Any]]:
        yield result_envelope(request.id, {"success": True})

    async def _tools_list(self, request: RpcRequest, principal: Principal) -> AsyncIterator[dict[str, Any]]:
        yield result_envelope(request.id, {"tools": [spec.describe() for spec in self._tools.values()]})

    async def _list_prompts(self, request: RpcRequest, principal: Principal) -> AsyncIterator[dict[str, Any]]:
        prompts = await self._repository.list_prompts(principal.tenant_id)
        yield result_envelope(
            request.id,
            {
                "prompts": [
                    {"id": p.id, "name": p.title, "content": p.content, "tags": list(p.tags or [])}
                    for p in prompts
                ]
            },
        )

    async def _tools_call(self, request: RpcRequest, principal: Principal) -> AsyncIterator[dict[str, Any]]:
        name = request.params.get("name")
        tool = self._tools.get(name) if isinstance(name, str) else None
        if tool is None:
            raise ProtocolError.method_not_found(request.method, tool=name)
        # Some clients put the tool input directly in params.
        arguments = request.params.get("arguments")
        if arguments is None:
            arguments = request.params
        if not isinstance(arguments, dict):
            raise ProtocolError.invalid_params("arguments must be an object", tool=tool.name)
        yield result_envelope(request.id, await tool.handler(arguments, principal))

    # -- tools -------------------------------------------------------------

    async def _get_prompt_by_id(self, arguments: dict[str, Any], principal: Principal) -> dict[str, Any]:
        prompt_id = arguments.get("id")
        if isinstance(prompt_id, int) and not isinstance(prompt_id, bool):
            prompt_id = str(prompt_id)
        if not isinstance(prompt_id, str) or not prompt_id.strip():
            raise ProtocolError.invalid_params("Missing required argument: id", tool="getPromptById", field="id")
        # Scoped to the caller's space: another tenant's id reads as absent.
        row = await self._repository.get_prompt_content(principal.tenant_id, prompt_id.strip())
        return text_content(row)

    async def _list_prompt_briefs(self, arguments: dict[str, Any], principal: Principal) -> dict[str, Any]:
        return text_content(await self._repository.list_prompt_briefs(principal.tenant_id))
