"""Tool-call dispatcher: routing, tenant scoping and terminal markers."""

import json
from types import SimpleNamespace
from typing import Any, Optional

import pytest

from prompt_relay.auth import Principal
from prompt_relay.config import McpSettings
from prompt_relay.dispatcher import ProtocolDispatcher
from prompt_relay.errors import DataAccessFailure

MCP = McpSettings(protocol_version="2025-03-26", server_name="Prompt Manager MCP Server", server_version="1.0.0")

ALICE = Principal(user_id="u1", tenant_id="S1")
BOB = Principal(user_id="u2", tenant_id="S2")


class FakeRepository:
    """In-memory stand-in keyed by space id."""

    def __init__(self, prompts: Optional[dict[str, list[dict[str, Any]]]] = None):
        self.prompts = prompts or {}
        self.calls: list[tuple[str, str]] = []

    async def list_prompts(self, space_id: str):
        self.calls.append(("list_prompts", space_id))
        return [SimpleNamespace(**p) for p in self.prompts.get(space_id, [])]

    async def get_prompt_content(self, space_id: str, prompt_id: str):
        self.calls.append(("get_prompt_content", space_id))
        for p in self.prompts.get(space_id, []):
            if p["id"] == prompt_id:
                return {"content": p["content"]}
        return None

    async def list_prompt_briefs(self, space_id: str):
        self.calls.append(("list_prompt_briefs", space_id))
        return [
            {"id": p["id"], "title": p["title"], "description": p["description"], "tags": p["tags"]}
            for p in self.prompts.get(space_id, [])
        ]


class ExplodingRepository(FakeRepository):
    def __init__(self, exc: Exception):
        super().__init__()
        self.exc = exc

    async def get_prompt_content(self, space_id: str, prompt_id: str):
        raise self.exc

    async def list_prompts(self, space_id: str):
        raise self.exc


def _repo() -> FakeRepository:
    return FakeRepository(
        {
            "S1": [
                {"id": "p1", "title": "Summarize", "content": "Summarize it.", "description": "d1", "tags": ["a"]},
                {"id": "p2", "title": "Rewrite", "content": "Rewrite it.", "description": "", "tags": []},
            ],
            "S2": [{"id": "p9", "title": "Secret", "content": "Bob only.", "description": "", "tags": ["b"]}],
        }
    )


async def _call(dispatcher: ProtocolDispatcher, message: Any, principal: Principal = ALICE) -> list[str]:
    if isinstance(message, dict):
        message = json.dumps(message)
    return [frame async for frame in dispatcher.stream(message, principal)]


def _data(frame: str) -> dict:
    line = [ln for ln in frame.split("\n") if ln.startswith("data: ")][0]
    return json.loads(line[len("data: "):])


def _tool_text(frame: str) -> Any:
    result = _data(frame)["result"]
    assert result["isPartial"] is False
    return json.loads(result["content"][0]["text"])


def _rpc(method: str, params: Optional[dict] = None, request_id: Any = 1) -> dict:
    message: dict[str, Any] = {"jsonrpc": "2.0", "method": method, "id": request_id}
    if params is not None:
        message["params"] = params
    return message


# ============================================================================
# Handshake and discovery
# ============================================================================


class TestHandshake:
    @pytest.mark.asyncio
    async def test_initialize_yields_one_result_then_done(self):
        """``initialize`` yields the server info then the done marker."""
        frames = await _call(ProtocolDispatcher(_repo(), MCP), _rpc("initialize"))

        assert len(frames) == 2
        assert frames[1] == "event: done\ndata: {}\n\n"
        envelope = _data(frames[0])
        assert envelope["id"] == 1
        assert envelope["result"]["protocolVersion"] == "2025-03-26"
        assert envelope["result"]["serverInfo"] == {"name": "Prompt Manager MCP Server", "version": "1.0.0"}
        assert envelope["result"]["capabilities"] == {"tools": {}}

    @pytest.mark.asyncio
    async def test_initialized_notification_acknowledged(self):
        """The initialized notification gets a success result with a null id."""
        frames = await _call(ProtocolDispatcher(_repo(), MCP), _rpc("notifications/initialized", request_id=None))

        envelope = _data(frames[0])
        assert envelope["result"] == {"success": True}
        assert envelope["id"] is None
        assert frames[-1].startswith("event: done")

    @pytest.mark.asyncio
    async def test_tools_list_describes_both_tools(self):
        """``tools/list`` advertises both tools with their input schemas."""
        frames = await _call(ProtocolDispatcher(_repo(), MCP), _rpc("tools/list"))

        tools = {t["name"]: t for t in _data(frames[0])["result"]["tools"]}
        assert set(tools) == {"getPromptById", "listPrompt"}
        assert tools["getPromptById"]["inputSchema"]["required"] == ["id"]
        assert tools["getPromptById"]["inputSchema"]["properties"]["id"]["type"] == "string"

    @pytest.mark.asyncio
    async def test_string_request_id_is_echoed(self):
        """String ids come back unchanged."""
        frames = await _call(ProtocolDispatcher(_repo(), MCP), _rpc("tools/list", request_id="req-42"))
        assert _data(frames[0])["id"] == "req-42"

    @pytest.mark.asyncio
    async def test_fractional_request_id_is_echoed(self):
        """A non-integer numeric id is a valid id and comes back unchanged."""
        frames = await _call(ProtocolDispatcher(_repo(), MCP), _rpc("initialize", request_id=1.5))

        envelope = _data(frames[0])
        assert envelope["id"] == 1.5
        assert "error" not in envelope
        assert frames[-1] == "event: done\ndata: {}\n\n"


# ============================================================================
# Tools
# ============================================================================


class TestTools:
    @pytest.mark.asyncio
    async def test_get_prompt_by_id_returns_content(self):
        """``getPromptById`` returns the prompt content as JSON text."""
        frames = await _call(
            ProtocolDispatcher(_repo(), MCP),
            _rpc("tools/call", {"name": "getPromptById", "arguments": {"id": "p1"}}),
        )
        assert _tool_text(frames[0]) == {"content": "Summarize it."}
        assert frames[-1] == "event: done\ndata: {}\n\n"

    @pytest.mark.asyncio
    async def test_get_prompt_by_id_unknown_is_null_result(self):
        """An unknown id is a null result, not an error."""
        frames = await _call(
            ProtocolDispatcher(_repo(), MCP),
            _rpc("tools/call", {"name": "getPromptById", "arguments": {"id": "nope"}}),
        )
        assert len(frames) == 2
        assert "error" not in _data(frames[0])
        assert _data(frames[0])["result"]["content"][0]["text"] == "null"

    @pytest.mark.asyncio
    async def test_get_prompt_by_id_other_tenant_is_null(self):
        """Lookups are scoped to the caller's tenant."""
        repo = _repo()
        frames = await _call(
            ProtocolDispatcher(repo, MCP),
            _rpc("tools/call", {"name": "getPromptById", "arguments": {"id": "p9"}}),
            principal=ALICE,
        )
        assert _tool_text(frames[0]) is None
        assert repo.calls == [("get_prompt_content", "S1")]

    @pytest.mark.asyncio
    async def test_arguments_may_sit_directly_in_params(self):
        """Tool arguments are also accepted at the top level of params."""
        frames = await _call(
            ProtocolDispatcher(_repo(), MCP),
            _rpc("tools/call", {"name": "getPromptById", "id": "p2"}),
        )
        assert _tool_text(frames[0]) == {"content": "Rewrite it."}

    @pytest.mark.asyncio
    async def test_missing_id_is_invalid_params(self):
        """``getPromptById`` without an id is an invalid-params error."""
        frames = await _call(
            ProtocolDispatcher(_repo(), MCP),
            _rpc("tools/call", {"name": "getPromptById", "arguments": {}}),
        )
        assert len(frames) == 2
        assert _data(frames[0])["error"]["code"] == -32602
        assert frames[1] == "event: done\ndata: {}\n\n"

    @pytest.mark.asyncio
    async def test_list_prompt_returns_briefs_for_own_space(self):
        """``listPrompt`` returns briefs for the caller's space only."""
        frames = await _call(
            ProtocolDispatcher(_repo(), MCP),
            _rpc("tools/call", {"name": "listPrompt", "arguments": {}}),
            principal=BOB,
        )
        assert _tool_text(frames[0]) == [{"id": "p9", "title": "Secret", "description": "", "tags": ["b"]}]

    @pytest.mark.asyncio
    async def test_list_prompt_empty_space(self):
        """An empty space lists as an empty array."""
        frames = await _call(
            ProtocolDispatcher(_repo(), MCP),
            _rpc("tools/call", {"name": "listPrompt"}),
            principal=Principal(user_id="u3", tenant_id="S3"),
        )
        assert _tool_text(frames[0]) == []
        assert frames[-1] == "event: done\ndata: {}\n\n"

    @pytest.mark.asyncio
    async def test_unknown_tool_is_method_not_found(self):
        """An unknown tool name is reported as method not found."""
        frames = await _call(
            ProtocolDispatcher(_repo(), MCP),
            _rpc("tools/call", {"name": "deleteEverything", "arguments": {}}),
        )
        error = _data(frames[0])["error"]
        assert error["code"] == -32601
        assert error["data"]["tool"] == "deleteEverything"

    @pytest.mark.asyncio
    async def test_list_prompts_method(self):
        """``listPrompts`` returns full prompts keyed by name."""
        frames = await _call(ProtocolDispatcher(_repo(), MCP), _rpc("listPrompts"))
        prompts = _data(frames[0])["result"]["prompts"]
        assert [p["id"] for p in prompts] == ["p1", "p2"]
        assert prompts[0] == {"id": "p1", "name": "Summarize", "content": "Summarize it.", "tags": ["a"]}


# ============================================================================
# Errors and terminal markers
# ============================================================================


class TestErrors:
    @pytest.mark.asyncio
    async def test_unknown_method_error_then_done(self):
        """Unknown methods get an error envelope followed by done."""
        frames = await _call(ProtocolDispatcher(_repo(), MCP), _rpc("doesNotExist", request_id=5))

        assert len(frames) == 2
        envelope = _data(frames[0])
        assert envelope["id"] == 5
        assert envelope["error"]["code"] == -32601
        assert envelope["error"]["data"]["method"] == "doesNotExist"
        assert frames[1] == "event: done\ndata: {}\n\n"

    @pytest.mark.asyncio
    async def test_parse_error_has_null_id(self):
        """Undecodable bodies are parse errors with a null id."""
        frames = await _call(ProtocolDispatcher(_repo(), MCP), b"{broken")

        envelope = _data(frames[0])
        assert envelope["id"] is None
        assert envelope["error"]["code"] == -32700
        assert frames[-1] == "event: done\ndata: {}\n\n"

    @pytest.mark.asyncio
    async def test_invalid_request_echoes_valid_id(self):
        """Invalid requests still echo a well-formed id."""
        frames = await _call(ProtocolDispatcher(_repo(), MCP), {"id": 11, "method": ""})
        envelope = _data(frames[0])
        assert envelope["id"] == 11
        assert envelope["error"]["code"] == -32600

    @pytest.mark.asyncio
    async def test_handler_exception_ends_with_error_marker_only(self):
        """Unexpected failures end with the error marker and no done."""
        dispatcher = ProtocolDispatcher(ExplodingRepository(RuntimeError("disk on fire")), MCP)
        frames = await _call(dispatcher, _rpc("tools/call", {"name": "getPromptById", "arguments": {"id": "p1"}}))

        assert len(frames) == 1
        assert frames[0].startswith("event: error\n")
        assert not any(f.startswith("event: done") for f in frames)
        envelope = _data(frames[0])
        assert envelope["id"] == 1
        assert envelope["error"]["code"] == -32603
        # Unexpected exception text stays server side.
        assert envelope["error"]["data"]["detail"] == "RuntimeError"

    @pytest.mark.asyncio
    async def test_data_access_failure_reports_message(self):
        """Storage failures surface their message in the error marker."""
        dispatcher = ProtocolDispatcher(ExplodingRepository(DataAccessFailure("list_prompts failed")), MCP)
        frames = await _call(dispatcher, _rpc("listPrompts"))

        assert len(frames) == 1
        assert frames[0].startswith("event: error\n")
        assert _data(frames[0])["error"]["data"]["detail"] == "list_prompts failed"

    @pytest.mark.asyncio
    async def test_every_stream_has_exactly_one_terminal_marker(self):
        """Every outcome ends with exactly one terminal marker, last."""
        dispatcher = ProtocolDispatcher(_repo(), MCP)
        failing = ProtocolDispatcher(ExplodingRepository(RuntimeError("x")), MCP)
        cases = [
            (dispatcher, _rpc("initialize")),
            (dispatcher, _rpc("tools/call", {"name": "listPrompt"})),
            (dispatcher, _rpc("doesNotExist")),
            (dispatcher, b"[]"),
            (failing, _rpc("listPrompts")),
        ]
        for target, message in cases:
            frames = await _call(target, message)
            terminals = [f for f in frames if f.startswith("event: ")]
            assert len(terminals) == 1
            assert frames[-1] is terminals[0]


# ============================================================================
# Call logging
# ============================================================================


class TestCallLogging:
    @pytest.mark.asyncio
    async def test_rpc_panels_receive_finished_context(self, monkeypatch):
        """Call panels get the method, outcome and id once the call ends."""
        from prompt_relay import rich_logger

        seen: list[rich_logger.RpcCallContext] = []
        monkeypatch.setattr(rich_logger, "log_rpc_call", seen.append)
        dispatcher = ProtocolDispatcher(_repo(), MCP, rpc_log_enabled=True)

        await _call(dispatcher, _rpc("tools/list", request_id=3))
        await _call(dispatcher, _rpc("doesNotExist"))

        assert [(c.method, c.outcome, c.request_id) for c in seen] == [
            ("tools/list", "ok", 3),
            ("doesNotExist", "protocol_error", 1),
        ]
        assert all(c.end_time is not None for c in seen)

    def test_panel_renders(self):
        """A failed call renders as a panel without raising."""
        from rich.console import Console

        from prompt_relay import rich_logger

        ctx = rich_logger.RpcCallContext(method="tools/call", params={"name": "listPrompt"}, request_id=1, user_id="u1")
        ctx.finish("failed", error="RuntimeError")
        console = Console(record=True, width=120)
        console.print(rich_logger.build_rpc_call_panel(ctx))

        text = console.export_text()
        assert "tools/call" in text
        assert "FAILED" in text
