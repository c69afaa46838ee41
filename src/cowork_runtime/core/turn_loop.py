"""
TurnLoop：一个 turn 的状态机（Streaming → ToolPending* → Completing）。

约定：
- 所有追加只发生在 `TurnContext.working`（工作历史副本）上；提交（commit）由运行时在 Completing 后完成。
- 每次调用模型前校验工具配对不变量。
- 取消：任意 await 点抛出 `asyncio.CancelledError`；模型流被关闭，不追加任何内容。
- 模型客户端失败统一抛出 `ProviderError`；超过工具轮次上限抛出 `FrameworkError(code="MAX_TOOL_ROUNDS")`。
"""

from __future__ import annotations

import asyncio
import logging
from typing import Any, Callable, Dict, List, Optional

from cowork_runtime.core.contracts import HISTORY_UPDATE, STREAM_TOKEN
from cowork_runtime.core.errors import FrameworkError, ProviderError
from cowork_runtime.core.loop_controller import LoopController
from cowork_runtime.core.messages import Message, ensure_tool_results_paired, history_snapshot
from cowork_runtime.core.tool_orchestration import ToolBatchDeps, run_tool_batch
from cowork_runtime.core.turn_context import TurnContext, TurnState
from cowork_runtime.llm.protocol import ChatBackend, ChatRequest
from cowork_runtime.safety.confirmations import ConfirmationHub
from cowork_runtime.safety.gate import PermissionGate
from cowork_runtime.tools.dispatcher import ToolDispatcher

logger = logging.getLogger(__name__)

Emit = Callable[[TurnContext, str, Dict[str, Any]], None]


class TurnLoop:
    """
    turn 状态机。

    参数：
    - backend：模型客户端
    - dispatcher：工具执行器（其 registry 提供工具声明）
    - gate / confirmations：权限闸门与确认中枢
    - emit：事件出口（由运行时提供；turn 取消后的事件会被丢弃）
    - model / system_prompt：模型名与系统提示
    - max_tool_rounds：单 turn 工具往返上限（None 不限制）
    """

    def __init__(
        self,
        *,
        backend: ChatBackend,
        dispatcher: ToolDispatcher,
        gate: PermissionGate,
        confirmations: ConfirmationHub,
        emit: Emit,
        model: str,
        system_prompt: Optional[str] = None,
        max_tool_rounds: Optional[int] = None,
    ) -> None:
        self._backend = backend
        self._dispatcher = dispatcher
        self._gate = gate
        self._confirmations = confirmations
        self._emit = emit
        self._model = model
        self._system_prompt = system_prompt
        self._max_tool_rounds = max_tool_rounds

    async def run(self, ctx: TurnContext) -> List[Message]:
        """
        驱动一个 turn 直到 Completing。

        返回：
        - 完整的工作历史（含本 turn 追加的所有消息），由调用方提交

        异常：
        - asyncio.CancelledError：turn 被中止
        - ProviderError：模型客户端失败
        - FrameworkError：超过工具轮次上限 / 工具配对不变量被破坏
        """

        controller = LoopController(max_tool_rounds=self._max_tool_rounds, cancel_checker=ctx.token.is_cancelled)
        deps = ToolBatchDeps(
            gate=self._gate,
            confirmations=self._confirmations,
            dispatcher=self._dispatcher,
            emit=self._emit,
        )

        while True:
            if controller.is_cancelled():
                raise asyncio.CancelledError()
            assistant = await self._stream(ctx)
            if controller.is_cancelled():
                raise asyncio.CancelledError()

            tool_uses = list(ctx.tool_uses)
            if assistant is None or not tool_uses:
                ctx.state = TurnState.COMPLETING
                if assistant is not None:
                    ctx.working.append(assistant)
                return ctx.working

            if not controller.try_enter_tool_round():
                raise FrameworkError(
                    code="MAX_TOOL_ROUNDS",
                    message=f"tool round limit exceeded ({self._max_tool_rounds})",
                    details={"max_tool_rounds": self._max_tool_rounds},
                )
            ctx.rounds = controller.rounds

            ctx.working.append(assistant)
            self._emit(ctx, HISTORY_UPDATE, {"history": history_snapshot(ctx.working)})

            ctx.state = TurnState.TOOL_PENDING
            blocks = await run_tool_batch(tool_uses, ctx=ctx, deps=deps)
            if controller.is_cancelled():
                raise asyncio.CancelledError()

            ctx.working.append(Message(role="user", content=tuple(blocks)))
            self._emit(ctx, HISTORY_UPDATE, {"history": history_snapshot(ctx.working)})
            logger.debug("turn %s finished tool round %d", ctx.turn_id, controller.rounds)

    async def _stream(self, ctx: TurnContext) -> Optional[Message]:
        """
        Streaming 阶段：调用模型并累积文本与 tool_use。

        返回：
        - 本轮 assistant 消息（无任何输出时为 None）
        """

        ctx.state = TurnState.STREAMING
        ctx.reset_accumulator()
        ensure_tool_results_paired(ctx.working)

        request = ChatRequest(
            model=self._model,
            messages=list(ctx.working),
            tools=self._dispatcher.registry.list_specs(),
            system=self._system_prompt,
            turn_id=ctx.turn_id,
        )

        stream = self._backend.stream_chat(request)
        try:
            async for ev in stream:
                if ctx.is_cancelled:
                    raise asyncio.CancelledError()
                if ev.type == "text_delta" and ev.text:
                    ctx.text_parts.append(ev.text)
                    self._emit(ctx, STREAM_TOKEN, {"text": ev.text})
                elif ev.type == "tool_use" and ev.tool_use is not None:
                    ctx.tool_uses.append(ev.tool_use)
                elif ev.type == "completed":
                    break
        except (asyncio.CancelledError, ProviderError):
            raise
        except Exception as e:
            raise ProviderError(f"{type(e).__name__}: {e}", kind="unknown", cause=repr(e)) from e
        finally:
            await _close_stream(stream)

        return ctx.build_assistant_message()


async def _close_stream(stream: Any) -> None:
    aclose = getattr(stream, "aclose", None)
    if aclose is None:
        return
    try:
        await aclose()
    except Exception:
        logger.debug("model stream close failed", exc_info=True)
