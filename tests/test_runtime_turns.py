from __future__ import annotations

import asyncio
import threading
import time
from pathlib import Path
from typing import Any, Dict, List, Optional, Sequence, Tuple

import pytest

from cowork_runtime.config.loader import load_config_dicts
from cowork_runtime.core.contracts import ABORTED, CONFIRM_REQUEST, DONE, ERROR, HISTORY_UPDATE, STREAM_TOKEN, RuntimeEvent
from cowork_runtime.core.errors import BusyError, ProviderError, UserError
from cowork_runtime.core.runtime import AgentRuntime
from cowork_runtime.core.turn_context import TurnState
from cowork_runtime.llm.fake import FakeChatBackend, FakeChatCall
from cowork_runtime.llm.protocol import ChatStreamEvent
from cowork_runtime.safety.permissions import PermissionRecord
from cowork_runtime.tools.external import ExternalTool
from cowork_runtime.tools.protocol import ToolCall, ToolResult, ToolSpec
from cowork_runtime.tools.registry import ToolExecutionContext


def _mk_runtime(
    tmp_path: Path,
    calls: Sequence[FakeChatCall],
    overlay: Optional[Dict[str, Any]] = None,
    **kwargs: Any,
) -> Tuple[AgentRuntime, FakeChatBackend]:
    backend = FakeChatBackend(calls)
    cfg = load_config_dicts([{"workspace": {"root": str(tmp_path)}, "skills": {"roots": []}}, overlay or {}])
    return AgentRuntime(backend=backend, config=cfg, **kwargs), backend


async def _wait_for(events: List[RuntimeEvent], type_: str, *, count: int = 1, timeout: float = 2.0) -> RuntimeEvent:
    deadline = time.monotonic() + timeout
    while True:
        matched = [e for e in events if e.type == type_]
        if len(matched) >= count:
            return matched[count - 1]
        if time.monotonic() > deadline:
            raise AssertionError(f"event {type_} not observed; got {[e.type for e in events]}")
        await asyncio.sleep(0.01)


def test_plain_text_turn_commits_history_and_streams_tokens(tmp_path: Path) -> None:
    calls = [FakeChatCall(events=[ChatStreamEvent.text_delta("hel"), ChatStreamEvent.text_delta("lo")])]

    async def _main() -> None:
        rt, backend = _mk_runtime(tmp_path, calls)
        events: List[RuntimeEvent] = []
        rt.attach_observer(events.append)

        outcome = await rt.send_message("hi")
        assert outcome.status == "completed"
        assert outcome.final_text == "hello"
        await rt.drain()
        assert [(m.role, m.text) for m in rt.history] == [("user", "hi"), ("assistant", "hello")]

        types = [e.type for e in events]
        assert types[0] == HISTORY_UPDATE
        assert [e.payload["text"] for e in events if e.type == STREAM_TOKEN] == ["hel", "lo"]
        assert types[-2:] == [HISTORY_UPDATE, DONE]
        assert len(events[-2].payload["history"]) == 2
        assert {e.turn_id for e in events} == {outcome.turn_id}
        assert rt.state is TurnState.IDLE
        assert backend.requests[0].messages[-1].text == "hi"

    asyncio.run(_main())


def test_list_dir_confirmation_without_remember_asks_again_next_turn(tmp_path: Path) -> None:
    target = tmp_path / "x"
    target.mkdir()
    (target / "a.txt").write_text("hi", encoding="utf-8")
    calls = [
        FakeChatCall(events=[ChatStreamEvent.tool("tu_1", "list_dir", {"path": str(target)})]),
        FakeChatCall(events=[ChatStreamEvent.text_delta("listed")]),
        FakeChatCall(events=[ChatStreamEvent.tool("tu_2", "list_dir", {"path": str(target)})]),
        FakeChatCall(events=[ChatStreamEvent.text_delta("listed again")]),
    ]

    async def _main() -> None:
        rt, _backend = _mk_runtime(tmp_path, calls)
        events: List[RuntimeEvent] = []
        rt.attach_observer(events.append)

        task = rt.submit_message("list it")
        req = await _wait_for(events, CONFIRM_REQUEST)
        conf = req.payload["confirmation"]
        assert conf["tool"] == "list_dir"
        assert conf["path"] == target.resolve().as_posix()
        assert rt.state is TurnState.TOOL_PENDING
        assert [p.id for p in rt.pending_confirmations()] == [conf["id"]]

        assert rt.confirm_response(conf["id"], approved=True) is True
        outcome = await task
        assert outcome.status == "completed"
        assert outcome.final_text == "listed"

        history = rt.history
        assert [m.role for m in history] == ["user", "assistant", "user", "assistant"]
        result = history[2].tool_results()[0]
        assert result.tool_use_id == "tu_1"
        assert result.is_error is False
        assert "a.txt" in result.content
        assert rt.list_permissions() == []

        await rt.drain()
        events.clear()
        task2 = rt.submit_message("list it again")
        req2 = await _wait_for(events, CONFIRM_REQUEST)
        assert rt.confirm_response(req2.payload["confirmation"]["id"], approved=True) is True
        outcome2 = await task2
        assert outcome2.status == "completed"
        assert len(rt.history) == 8

    asyncio.run(_main())


def test_remembered_approval_skips_confirmation_in_later_turns(tmp_path: Path) -> None:
    target = tmp_path / "x"
    target.mkdir()
    calls = [
        FakeChatCall(events=[ChatStreamEvent.tool("tu_1", "list_dir", {"path": str(target)})]),
        FakeChatCall(events=[ChatStreamEvent.text_delta("ok")]),
        FakeChatCall(events=[ChatStreamEvent.tool("tu_2", "list_dir", {"path": str(target)})]),
        FakeChatCall(events=[ChatStreamEvent.text_delta("ok again")]),
    ]

    async def _main() -> None:
        rt, _backend = _mk_runtime(tmp_path, calls)
        events: List[RuntimeEvent] = []
        rt.attach_observer(events.append)

        task = rt.submit_message("list")
        req = await _wait_for(events, CONFIRM_REQUEST)
        assert rt.confirm_response(req.payload["confirmation"]["id"], approved=True, remember=True) is True
        assert (await task).status == "completed"
        assert rt.list_permissions() == [PermissionRecord(tool="list_dir", path=target.resolve().as_posix())]

        await rt.drain()
        events.clear()
        outcome = await rt.send_message("list again")
        assert outcome.status == "completed"
        await rt.drain()
        assert CONFIRM_REQUEST not in [e.type for e in events]
        assert rt.history[-2].tool_results()[0].is_error is False

    asyncio.run(_main())


def test_denied_confirmation_becomes_tool_result_for_the_model(tmp_path: Path) -> None:
    calls = [
        FakeChatCall(events=[ChatStreamEvent.tool("tu_1", "write_file", {"path": "out.txt", "content": "x"})]),
        FakeChatCall(events=[ChatStreamEvent.text_delta("understood")]),
    ]

    async def _main() -> None:
        rt, backend = _mk_runtime(tmp_path, calls)
        events: List[RuntimeEvent] = []
        rt.attach_observer(events.append)

        task = rt.submit_message("write a file")
        req = await _wait_for(events, CONFIRM_REQUEST)
        assert rt.confirm_response(req.payload["confirmation"]["id"], approved=False) is True
        outcome = await task

        assert outcome.status == "completed"
        assert not (tmp_path / "out.txt").exists()
        denied = rt.history[2].tool_results()[0]
        assert denied.content == "user denied"
        assert denied.is_error is True
        assert denied.error_kind == "permission_denied"
        assert backend.requests[1].messages[-1].tool_results()[0].content == "user denied"

    asyncio.run(_main())


def test_busy_then_abort_then_new_turn(tmp_path: Path) -> None:
    calls = [
        FakeChatCall(events=[ChatStreamEvent.text_delta("slow")], delay_sec=0.5),
        FakeChatCall(events=[ChatStreamEvent.text_delta("fresh")]),
    ]

    async def _main() -> None:
        rt, _backend = _mk_runtime(tmp_path, calls)
        events: List[RuntimeEvent] = []
        rt.attach_observer(events.append)

        task = rt.submit_message("first")
        await asyncio.sleep(0.05)
        assert rt.is_busy is True
        with pytest.raises(BusyError):
            rt.submit_message("second")

        assert rt.abort() is True
        assert rt.is_busy is False
        assert rt.abort() is False
        outcome = await task
        assert outcome.status == "aborted"
        assert rt.history == ()

        outcome2 = await rt.send_message("third")
        assert outcome2.status == "completed"
        assert [m.text for m in rt.history] == ["third", "fresh"]

    asyncio.run(_main())


def test_abort_during_streaming_rolls_back_and_silences_the_turn(tmp_path: Path) -> None:
    calls = [
        FakeChatCall(events=[ChatStreamEvent.text_delta("a"), ChatStreamEvent.text_delta("b"), ChatStreamEvent.text_delta("c")], delay_sec=0.1),
    ]

    async def _main() -> None:
        rt, _backend = _mk_runtime(tmp_path, calls)
        rt.load_history([{"role": "user", "content": "earlier"}, {"role": "assistant", "content": "reply"}])
        events: List[RuntimeEvent] = []
        rt.attach_observer(events.append)

        task = rt.submit_message("go")
        await _wait_for(events, STREAM_TOKEN)
        assert rt.abort() is True
        outcome = await task
        await asyncio.sleep(0.3)
        await rt.drain()

        assert outcome.status == "aborted"
        assert [m.text for m in rt.history] == ["earlier", "reply"]
        turn_events = [e for e in events if e.turn_id == outcome.turn_id]
        assert [e.type for e in turn_events[-2:]] == [HISTORY_UPDATE, ABORTED]
        assert len(turn_events[-2].payload["history"]) == 2
        assert DONE not in [e.type for e in turn_events]

    asyncio.run(_main())


def test_abort_while_waiting_for_confirmation_invalidates_the_request(tmp_path: Path) -> None:
    calls = [FakeChatCall(events=[ChatStreamEvent.tool("tu_1", "run_command", {"command": "echo hi"})])]

    async def _main() -> None:
        rt, _backend = _mk_runtime(tmp_path, calls)
        events: List[RuntimeEvent] = []
        rt.attach_observer(events.append)

        task = rt.submit_message("run")
        req = await _wait_for(events, CONFIRM_REQUEST)
        assert rt.abort() is True
        assert (await task).status == "aborted"

        assert rt.confirm_response(req.payload["confirmation"]["id"], approved=True) is False
        assert rt.pending_confirmations() == []
        assert rt.history == ()
        await rt.drain()
        assert events[-1].type == ABORTED

    asyncio.run(_main())


def test_unknown_confirmation_id_is_a_noop(tmp_path: Path) -> None:
    rt, _backend = _mk_runtime(tmp_path, [])
    assert rt.confirm_response("confirm_missing", approved=True, remember=True) is False
    assert rt.list_permissions() == []


def test_provider_error_fails_the_turn_and_rolls_back(tmp_path: Path) -> None:
    calls = [
        FakeChatCall(
            events=[ChatStreamEvent.text_delta("partial")],
            error=ProviderError("upstream closed the stream", kind="stream_interrupted"),
        ),
        FakeChatCall(events=[ChatStreamEvent.text_delta("recovered")]),
    ]

    async def _main() -> None:
        rt, _backend = _mk_runtime(tmp_path, calls)
        events: List[RuntimeEvent] = []
        rt.attach_observer(events.append)

        outcome = await rt.send_message("hi")
        assert outcome.status == "failed"
        assert outcome.error == "upstream closed the stream"
        await rt.drain()
        assert rt.history == ()
        assert rt.is_busy is False
        assert [e.type for e in events[-2:]] == [HISTORY_UPDATE, ERROR]
        assert events[-2].payload["history"] == []
        assert events[-1].payload["message"] == "upstream closed the stream"

        outcome2 = await rt.send_message("retry")
        assert outcome2.status == "completed"
        assert [m.text for m in rt.history] == ["retry", "recovered"]

    asyncio.run(_main())


def test_non_provider_stream_failure_is_reported_as_error(tmp_path: Path) -> None:
    calls = [FakeChatCall(events=[], error=ConnectionResetError("reset by peer"))]

    async def _main() -> None:
        rt, _backend = _mk_runtime(tmp_path, calls)
        outcome = await rt.send_message("hi")
        assert outcome.status == "failed"
        assert "reset by peer" in (outcome.error or "")
        assert rt.history == ()

    asyncio.run(_main())


def test_tool_round_limit_ends_turn_with_error(tmp_path: Path) -> None:
    (tmp_path / "a.txt").write_text("A", encoding="utf-8")
    calls = [
        FakeChatCall(events=[ChatStreamEvent.tool("tu_1", "read_file", {"path": "a.txt"})]),
        FakeChatCall(events=[ChatStreamEvent.tool("tu_2", "read_file", {"path": "a.txt"})]),
    ]

    async def _main() -> None:
        rt, _backend = _mk_runtime(tmp_path, calls, {"run": {"max_tool_rounds": 1}})
        events: List[RuntimeEvent] = []
        rt.attach_observer(events.append)

        outcome = await rt.send_message("loop")
        assert outcome.status == "failed"
        assert "tool round limit" in (outcome.error or "")
        await rt.drain()
        assert rt.history == ()
        assert events[-1].type == ERROR

    asyncio.run(_main())


def test_tool_batch_results_keep_model_order(tmp_path: Path) -> None:
    (tmp_path / "a.txt").write_text("AAA", encoding="utf-8")
    (tmp_path / "b.txt").write_text("BBB", encoding="utf-8")
    calls = [
        FakeChatCall(
            events=[
                ChatStreamEvent.text_delta("reading"),
                ChatStreamEvent.tool("tu_a", "read_file", {"path": "a.txt"}),
                ChatStreamEvent.tool("tu_b", "read_file", {"path": "b.txt"}),
                ChatStreamEvent.tool("tu_c", "read_file", {"path": "missing.txt"}),
            ]
        ),
        FakeChatCall(events=[ChatStreamEvent.text_delta("done")]),
    ]

    async def _main() -> None:
        rt, backend = _mk_runtime(tmp_path, calls)
        outcome = await rt.send_message("read both")
        assert outcome.status == "completed"

        assistant = rt.history[1]
        assert assistant.text == "reading"
        assert [b.id for b in assistant.tool_uses()] == ["tu_a", "tu_b", "tu_c"]
        results = rt.history[2].tool_results()
        assert [r.tool_use_id for r in results] == ["tu_a", "tu_b", "tu_c"]
        assert "AAA" in results[0].content
        assert "BBB" in results[1].content
        assert results[2].is_error is True
        assert results[2].error_kind == "execution_failed"
        assert [s.name for s in backend.requests[0].tools][:2] == ["read_file", "write_file"]

    asyncio.run(_main())


def test_unknown_tool_from_model_is_reported_as_invalid_arguments(tmp_path: Path) -> None:
    calls = [
        FakeChatCall(events=[ChatStreamEvent.tool("tu_1", "no_such_tool", {})]),
        FakeChatCall(events=[ChatStreamEvent.text_delta("sorry")]),
    ]

    async def _main() -> None:
        rt, _backend = _mk_runtime(tmp_path, calls, {"safety": {"mode": "allow"}})
        outcome = await rt.send_message("hi")
        assert outcome.status == "completed"
        res = rt.history[2].tool_results()[0]
        assert res.error_kind == "invalid_arguments"
        assert "unknown tool" in res.content

    asyncio.run(_main())


def test_empty_model_response_appends_nothing(tmp_path: Path) -> None:
    calls = [FakeChatCall(events=[])]

    async def _main() -> None:
        rt, _backend = _mk_runtime(tmp_path, calls)
        outcome = await rt.send_message("hi")
        assert outcome.status == "completed"
        assert outcome.final_text == ""
        assert [m.role for m in rt.history] == ["user"]

    asyncio.run(_main())


def test_history_cannot_change_while_busy(tmp_path: Path) -> None:
    calls = [FakeChatCall(events=[ChatStreamEvent.text_delta("slow")], delay_sec=0.3)]

    async def _main() -> None:
        rt, _backend = _mk_runtime(tmp_path, calls)
        task = rt.submit_message("first")
        with pytest.raises(BusyError):
            rt.clear_history()
        with pytest.raises(BusyError):
            rt.load_history([])
        assert (await task).status == "completed"

        rt.clear_history()
        assert rt.history == ()

    asyncio.run(_main())


def test_load_history_rejects_unpaired_tool_use(tmp_path: Path) -> None:
    rt, _backend = _mk_runtime(tmp_path, [])
    bad = [
        {"role": "user", "content": "hi"},
        {"role": "assistant", "content": [{"type": "tool_use", "id": "tu_1", "name": "read_file", "input": {}}]},
    ]
    with pytest.raises(UserError) as ei:
        rt.load_history(bad)
    assert ei.value.code == "INVALID_HISTORY"
    assert rt.history == ()


def test_invalid_image_is_rejected_before_the_turn_starts(tmp_path: Path) -> None:
    async def _main() -> None:
        rt, _backend = _mk_runtime(tmp_path, [])
        with pytest.raises(UserError):
            rt.submit_message("look", images=["not-a-data-url"])
        assert rt.is_busy is False

    asyncio.run(_main())


def test_images_are_attached_to_the_user_message(tmp_path: Path) -> None:
    calls = [FakeChatCall(events=[ChatStreamEvent.text_delta("a picture")])]

    async def _main() -> None:
        rt, backend = _mk_runtime(tmp_path, calls)
        outcome = await rt.send_message("look", images=["data:image/png;base64,aGVsbG8="])
        assert outcome.status == "completed"
        user = backend.requests[0].messages[0]
        assert [b.type for b in user.content] == ["text", "image"]
        assert user.content[1].raw_bytes() == b"hello"

    asyncio.run(_main())


class _MemorySessionStore:
    def __init__(self) -> None:
        self.saved: List[List[Dict[str, Any]]] = []

    def save_history(self, messages: List[Dict[str, Any]]) -> None:
        self.saved.append(messages)


def test_session_store_receives_committed_history_only(tmp_path: Path) -> None:
    calls = [
        FakeChatCall(events=[ChatStreamEvent.text_delta("one")]),
        FakeChatCall(events=[], error=ProviderError("down")),
    ]
    store = _MemorySessionStore()

    async def _main() -> None:
        rt, _backend = _mk_runtime(tmp_path, calls, session_store=store)
        assert (await rt.send_message("a")).status == "completed"
        assert (await rt.send_message("b")).status == "failed"

    asyncio.run(_main())
    assert len(store.saved) == 1
    assert [m["role"] for m in store.saved[0]] == ["user", "assistant"]


def test_failing_observer_does_not_break_the_turn(tmp_path: Path) -> None:
    calls = [FakeChatCall(events=[ChatStreamEvent.text_delta("fine")])]

    def _boom(_event: RuntimeEvent) -> None:
        raise RuntimeError("observer bug")

    async def _main() -> None:
        rt, _backend = _mk_runtime(tmp_path, calls)
        seen: List[str] = []
        rt.attach_observer(_boom)
        rt.attach_observer(lambda e: seen.append(e.type))
        outcome = await rt.send_message("hi")
        assert outcome.status == "completed"
        await rt.drain()
        assert seen[-1] == DONE

    asyncio.run(_main())


class _EchoServers:
    def __init__(self) -> None:
        self.calls: List[Tuple[str, str, Dict[str, Any]]] = []

    def list_tools(self) -> List[ExternalTool]:
        return [
            ExternalTool(
                server="srv",
                name="echo",
                description="Echo text back.",
                input_schema={"type": "object", "properties": {"text": {"type": "string"}}, "required": ["text"]},
            )
        ]

    async def call_tool(self, server: str, tool: str, arguments: Dict[str, Any]) -> Any:
        self.calls.append((server, tool, arguments))
        return {"echo": arguments["text"]}


def test_external_tools_are_registered_and_gated(tmp_path: Path) -> None:
    servers = _EchoServers()
    calls = [
        FakeChatCall(events=[ChatStreamEvent.tool("tu_1", "srv__echo", {"text": "ping"})]),
        FakeChatCall(events=[ChatStreamEvent.text_delta("pong")]),
    ]

    async def _main() -> None:
        rt, _backend = _mk_runtime(tmp_path, calls, {"safety": {"tool_allowlist": ["srv__echo"]}}, tool_servers=servers)
        assert "srv__echo" in rt.registry
        outcome = await rt.send_message("echo")
        assert outcome.status == "completed"
        res = rt.history[2].tool_results()[0]
        assert res.is_error is False
        assert "ping" in res.content

    asyncio.run(_main())
    assert servers.calls == [("srv", "echo", {"text": "ping"})]


def test_authorize_folder_extends_tool_access(tmp_path: Path) -> None:
    workspace = tmp_path / "ws"
    workspace.mkdir()
    outside = tmp_path / "outside"
    outside.mkdir()
    (outside / "note.txt").write_text("secret", encoding="utf-8")
    calls = [
        FakeChatCall(events=[ChatStreamEvent.tool("tu_1", "read_file", {"path": str(outside / "note.txt")})]),
        FakeChatCall(events=[ChatStreamEvent.text_delta("no")]),
        FakeChatCall(events=[ChatStreamEvent.tool("tu_2", "read_file", {"path": str(outside / "note.txt")})]),
        FakeChatCall(events=[ChatStreamEvent.text_delta("yes")]),
    ]

    async def _main() -> None:
        rt, _backend = _mk_runtime(workspace, calls)
        await rt.send_message("read")
        assert rt.history[2].tool_results()[0].error_kind == "permission_denied"

        assert rt.authorize_folder(outside) == outside.resolve()
        await rt.send_message("read again")
        res = rt.history[-2].tool_results()[0]
        assert res.is_error is False
        assert "secret" in res.content

    asyncio.run(_main())


def test_observers_see_the_same_token_stream_and_a_slow_one_delays_only_itself(tmp_path: Path) -> None:
    tokens = ["t1", "t2", "t3", "t4", "t5"]
    calls = [FakeChatCall(events=[ChatStreamEvent.text_delta(t) for t in tokens])]

    async def _main() -> None:
        rt, _backend = _mk_runtime(tmp_path, calls)
        release = threading.Event()
        slow: List[str] = []
        fast: List[str] = []
        async_seen: List[str] = []

        def _slow(e: RuntimeEvent) -> None:
            if e.type == STREAM_TOKEN:
                release.wait(timeout=5.0)
                slow.append(e.payload["text"])

        def _fast(e: RuntimeEvent) -> None:
            if e.type == STREAM_TOKEN:
                fast.append(e.payload["text"])

        async def _async_obs(e: RuntimeEvent) -> None:
            await asyncio.sleep(0)
            if e.type == STREAM_TOKEN:
                async_seen.append(e.payload["text"])

        rt.attach_observer(_slow)
        rt.attach_observer(_fast)
        rt.attach_observer(_async_obs)

        try:
            outcome = await asyncio.wait_for(rt.send_message("go"), timeout=2.0)
            assert outcome.status == "completed"
            deadline = time.monotonic() + 2.0
            while fast != tokens or async_seen != tokens:
                assert time.monotonic() < deadline, (fast, async_seen)
                await asyncio.sleep(0.01)
            assert slow == []
        finally:
            release.set()

        await asyncio.wait_for(rt.drain(), timeout=5.0)
        assert slow == tokens

    asyncio.run(_main())


def test_remember_in_a_batch_does_not_change_the_sibling_decision(tmp_path: Path) -> None:
    target = tmp_path / "x"
    target.mkdir()
    calls = [
        FakeChatCall(
            events=[
                ChatStreamEvent.tool("tu_1", "list_dir", {"path": str(target)}),
                ChatStreamEvent.tool("tu_2", "list_dir", {"path": str(target)}),
            ]
        ),
        FakeChatCall(events=[ChatStreamEvent.text_delta("done")]),
    ]

    async def _main() -> None:
        rt, _backend = _mk_runtime(tmp_path, calls)
        events: List[RuntimeEvent] = []
        rt.attach_observer(events.append)

        task = rt.submit_message("list twice")
        await _wait_for(events, CONFIRM_REQUEST, count=2)
        requests = {e.payload["confirmation"]["call_id"]: e.payload["confirmation"]["id"] for e in events if e.type == CONFIRM_REQUEST}

        assert rt.confirm_response(requests["tu_1"], approved=True, remember=True) is True
        await asyncio.sleep(0.05)
        assert [p.id for p in rt.pending_confirmations()] == [requests["tu_2"]]
        assert task.done() is False

        assert rt.confirm_response(requests["tu_2"], approved=False) is True
        assert (await task).status == "completed"

        results = rt.history[2].tool_results()
        assert [r.tool_use_id for r in results] == ["tu_1", "tu_2"]
        assert results[0].is_error is False
        assert (results[1].is_error, results[1].content) == (True, "user denied")
        assert rt.list_permissions() == [PermissionRecord(tool="list_dir", path=target.resolve().as_posix())]

    asyncio.run(_main())


def test_abort_while_a_tool_runs_returns_promptly_and_signals_the_tool(tmp_path: Path) -> None:
    started = threading.Event()
    stopped = threading.Event()

    def _spin(call: ToolCall, ctx: ToolExecutionContext) -> ToolResult:
        started.set()
        deadline = time.monotonic() + 5.0
        while time.monotonic() < deadline:
            if ctx.is_cancelled():
                stopped.set()
                return ToolResult.failure("cancelled", "stopped")
            time.sleep(0.01)
        return ToolResult.ok_payload(stdout="finished")

    spin = ToolSpec(name="spin", description="Spin until cancelled.")
    calls = [FakeChatCall(events=[ChatStreamEvent.tool("tu_1", "spin", {})])]

    async def _main() -> None:
        rt, _backend = _mk_runtime(tmp_path, calls, {"safety": {"tool_allowlist": ["spin"]}}, extra_tools=[(spin, _spin)])
        rt.load_history([{"role": "user", "content": "earlier"}, {"role": "assistant", "content": "reply"}])
        task = rt.submit_message("spin")
        await asyncio.to_thread(started.wait, 2.0)
        assert started.is_set()

        t0 = time.monotonic()
        assert rt.abort() is True
        outcome = await asyncio.wait_for(task, timeout=1.0)
        assert time.monotonic() - t0 < 1.0
        assert outcome.status == "aborted"
        assert rt.is_busy is False
        assert [m.text for m in rt.history] == ["earlier", "reply"]

        await asyncio.to_thread(stopped.wait, 2.0)
        assert stopped.is_set()

    asyncio.run(_main())


def test_set_working_dir_moves_tools_and_gate_to_the_new_folder(tmp_path: Path) -> None:
    first = tmp_path / "first"
    first.mkdir()
    (first / "a.txt").write_text("AAA", encoding="utf-8")
    second = tmp_path / "second"
    second.mkdir()
    (second / "b.txt").write_text("BBB", encoding="utf-8")
    calls = [
        FakeChatCall(
            events=[
                ChatStreamEvent.tool("tu_1", "read_file", {"path": "b.txt"}),
                ChatStreamEvent.tool("tu_2", "read_file", {"path": str(first / "a.txt")}),
            ]
        ),
        FakeChatCall(events=[ChatStreamEvent.text_delta("read")]),
        FakeChatCall(events=[ChatStreamEvent.tool("tu_3", "list_dir", {"path": "."})]),
        FakeChatCall(events=[ChatStreamEvent.text_delta("listed")]),
    ]

    async def _main() -> None:
        rt, _backend = _mk_runtime(first, calls)
        assert rt.set_working_dir(second) == second.resolve()
        assert rt.workspace_root == second.resolve()
        assert rt.authorized_folders() == [first.resolve()]

        assert (await rt.send_message("read")).status == "completed"
        results = rt.history[2].tool_results()
        assert "BBB" in results[0].content
        assert "AAA" in results[1].content

        events: List[RuntimeEvent] = []
        rt.attach_observer(events.append)
        task = rt.submit_message("list")
        req = await _wait_for(events, CONFIRM_REQUEST)
        assert req.payload["confirmation"]["path"] == second.resolve().as_posix()
        with pytest.raises(BusyError):
            rt.set_working_dir(first)
        assert rt.confirm_response(req.payload["confirmation"]["id"], approved=True) is True
        assert (await task).status == "completed"

        with pytest.raises(UserError):
            rt.set_working_dir(tmp_path / "missing")
        assert rt.workspace_root == second.resolve()

    asyncio.run(_main())
