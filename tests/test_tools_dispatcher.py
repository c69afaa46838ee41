from __future__ import annotations

import asyncio
import time
from pathlib import Path
from typing import Any

from cowork_runtime.core.errors import UserError
from cowork_runtime.core.turn_context import CancelToken
from cowork_runtime.tools.dispatcher import ToolDispatcher, validate_arguments
from cowork_runtime.tools.protocol import ToolCall, ToolResult, ToolSpec
from cowork_runtime.tools.registry import ToolExecutionContext, ToolRegistry

_SCHEMA = {
    "type": "object",
    "properties": {"text": {"type": "string"}, "count": {"type": "integer"}, "mode": {"enum": ["a", "b"]}},
    "required": ["text"],
    "additionalProperties": False,
}


def _mk_dispatcher(tmp_path: Path, handler: Any, *, name: str = "t") -> ToolDispatcher:
    registry = ToolRegistry(ctx=ToolExecutionContext(workspace_root=tmp_path))
    registry.register(ToolSpec(name=name, description="test tool", parameters=_SCHEMA), handler)
    return ToolDispatcher(registry=registry)


def _ok(call: ToolCall, ctx: ToolExecutionContext) -> ToolResult:
    return ToolResult.ok_payload(stdout=str(call.args["text"]))


def test_validate_arguments_reports_schema_problems() -> None:
    assert validate_arguments(_SCHEMA, {"text": "x", "count": 2, "mode": "a"}) == []
    problems = validate_arguments(_SCHEMA, {"count": True, "extra": 1, "mode": "z"})
    assert "missing required argument: text" in problems
    assert "unexpected argument: extra" in problems
    assert any("count" in p for p in problems)
    assert any("mode" in p for p in problems)
    assert validate_arguments(_SCHEMA, ["not", "an", "object"]) == ["arguments must be a JSON object"]


def test_unknown_tool_and_bad_arguments_are_invalid_arguments(tmp_path: Path) -> None:
    disp = _mk_dispatcher(tmp_path, _ok)

    async def _main() -> None:
        unknown = await disp.execute(ToolCall(call_id="1", name="missing", args={}))
        assert unknown.error_kind == "invalid_arguments"
        assert "unknown tool" in unknown.content

        bad = await disp.execute(ToolCall(call_id="2", name="t", args={"count": 1}))
        assert bad.error_kind == "invalid_arguments"
        assert "missing required argument: text" in bad.content

        good = await disp.execute(ToolCall(call_id="3", name="t", args={"text": "hi"}))
        assert good.ok is True
        assert good.details is not None and good.details["stdout"] == "hi"

    asyncio.run(_main())


def test_handler_exceptions_become_failures(tmp_path: Path) -> None:
    def _boom(call: ToolCall, ctx: ToolExecutionContext) -> ToolResult:
        raise RuntimeError("disk on fire")

    def _user(call: ToolCall, ctx: ToolExecutionContext) -> ToolResult:
        raise UserError("bad input")

    def _wrong(call: ToolCall, ctx: ToolExecutionContext) -> Any:
        return "not a result"

    async def _main() -> None:
        res = await _mk_dispatcher(tmp_path, _boom).execute(ToolCall(call_id="1", name="t", args={"text": "x"}))
        assert res.error_kind == "execution_failed"
        assert "RuntimeError: disk on fire" in res.content

        res = await _mk_dispatcher(tmp_path, _user).execute(ToolCall(call_id="2", name="t", args={"text": "x"}))
        assert res.error_kind == "invalid_arguments"
        assert res.content == "bad input"

        res = await _mk_dispatcher(tmp_path, _wrong).execute(ToolCall(call_id="3", name="t", args={"text": "x"}))
        assert res.error_kind == "execution_failed"

    asyncio.run(_main())


def test_async_handlers_are_awaited(tmp_path: Path) -> None:
    async def _async_ok(call: ToolCall, ctx: ToolExecutionContext) -> ToolResult:
        await asyncio.sleep(0)
        return ToolResult.ok_payload(stdout="async")

    async def _main() -> None:
        res = await _mk_dispatcher(tmp_path, _async_ok).execute(ToolCall(call_id="1", name="t", args={"text": "x"}))
        assert res.ok is True
        assert res.details is not None and res.details["stdout"] == "async"

    asyncio.run(_main())


def test_cancelled_token_short_circuits(tmp_path: Path) -> None:
    called = []

    def _track(call: ToolCall, ctx: ToolExecutionContext) -> ToolResult:
        called.append(call.call_id)
        return ToolResult.ok_payload()

    async def _main() -> None:
        token = CancelToken()
        token.bind_loop(asyncio.get_running_loop())
        token.cancel()
        res = await _mk_dispatcher(tmp_path, _track).execute(ToolCall(call_id="1", name="t", args={"text": "x"}), cancel_token=token)
        assert res.error_kind == "cancelled"

    asyncio.run(_main())
    assert called == []


def test_cancel_during_blocking_handler_returns_promptly(tmp_path: Path) -> None:
    seen_cancel = []

    def _slow(call: ToolCall, ctx: ToolExecutionContext) -> ToolResult:
        deadline = time.monotonic() + 5.0
        while time.monotonic() < deadline:
            if ctx.is_cancelled():
                seen_cancel.append(True)
                break
            time.sleep(0.01)
        return ToolResult.ok_payload(stdout="finished")

    async def _main() -> None:
        token = CancelToken()
        token.bind_loop(asyncio.get_running_loop())
        disp = _mk_dispatcher(tmp_path, _slow)
        asyncio.get_running_loop().call_later(0.05, token.cancel)
        started = time.monotonic()
        res = await disp.execute(ToolCall(call_id="1", name="t", args={"text": "x"}), cancel_token=token)
        assert res.error_kind == "cancelled"
        assert time.monotonic() - started < 1.0
        await asyncio.sleep(0.1)

    asyncio.run(_main())
    assert seen_cancel == [True]


def test_registry_rejects_duplicates(tmp_path: Path) -> None:
    registry = ToolRegistry(ctx=ToolExecutionContext(workspace_root=tmp_path))
    spec = ToolSpec(name="t", description="d")
    registry.register(spec, _ok)
    try:
        registry.register(spec, _ok)
    except UserError as e:
        assert e.code == "DUPLICATE_TOOL"
    else:  # pragma: no cover
        raise AssertionError("expected UserError")
    registry.register(spec, _ok, override=True)
    assert [s.name for s in registry.list_specs()] == ["t"]
    assert registry.find_spec("zzz") is None
