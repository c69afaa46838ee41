"""
ToolPending 阶段：一批 tool_use 的闸门决策、确认等待与并发执行（internal）。

顺序约束：
- 整批调用先全部过闸门，决策在任何确认被回答之前快照；因此同批中某个调用的 remember
  不会改变其它调用的决策（只影响之后的 turn）。
- 需要确认的调用按模型顺序发布 `confirm-request`，之后整批并发执行；
  等待确认只阻塞该调用本身。
- 结果按 tool_use 的原始顺序返回，与完成先后无关。
"""

from __future__ import annotations

import asyncio
import logging
from dataclasses import dataclass
from typing import Any, Callable, Dict, List, Sequence

from cowork_runtime.core.contracts import CONFIRM_REQUEST
from cowork_runtime.core.messages import ToolResultBlock, ToolUseBlock
from cowork_runtime.core.turn_context import TurnContext
from cowork_runtime.safety.confirmations import ConfirmationDecision, ConfirmationHub
from cowork_runtime.safety.gate import USER_DENIED, GateDecision, PermissionGate, build_denied_result
from cowork_runtime.tools.dispatcher import ToolDispatcher
from cowork_runtime.tools.protocol import ToolCall, ToolResult

logger = logging.getLogger(__name__)

Emit = Callable[[TurnContext, str, Dict[str, Any]], None]


@dataclass
class ToolBatchDeps:
    """
    一次 ToolPending 需要的协作者。

    字段：
    - gate：权限闸门
    - confirmations：待确认请求中枢
    - dispatcher：工具执行器
    - emit：turn 级事件出口（turn 已取消时会被丢弃）
    """

    gate: PermissionGate
    confirmations: ConfirmationHub
    dispatcher: ToolDispatcher
    emit: Emit


def _evaluate(deps: ToolBatchDeps, call: ToolCall, *, turn_id: str) -> GateDecision:
    try:
        return deps.gate.evaluate(call, turn_id=turn_id)
    except Exception as e:
        # 闸门自身失败时 fail-closed
        logger.exception("permission check failed for %s", call.name)
        return GateDecision(action="deny", reason=f"permission check failed: {e}")


async def run_tool_batch(
    tool_uses: Sequence[ToolUseBlock],
    *,
    ctx: TurnContext,
    deps: ToolBatchDeps,
) -> List[ToolResultBlock]:
    """
    执行一批 tool_use，返回按原顺序排列的 tool_result blocks。

    异常：
    - asyncio.CancelledError：turn 被中止（在途工具与确认等待均被取消）
    """

    calls = [ToolCall.from_block(b) for b in tool_uses]
    decisions = [_evaluate(deps, c, turn_id=ctx.turn_id) for c in calls]

    waits: Dict[str, "asyncio.Future[ConfirmationDecision]"] = {}
    for call, decision in zip(calls, decisions):
        if decision.action != "ask" or decision.pending is None:
            continue
        waits[call.call_id] = deps.confirmations.register(decision.pending)
        ctx.pending_confirmations.add(decision.pending.id)
        deps.emit(ctx, CONFIRM_REQUEST, {"confirmation": decision.pending.to_dict()})

    async def _one(call: ToolCall, decision: GateDecision) -> ToolResult:
        if decision.action == "deny":
            logger.info("tool %s denied by gate: %s", call.name, decision.reason)
            return build_denied_result(decision.reason)
        pending = decision.pending
        if decision.action == "ask" and pending is not None:
            try:
                answer = await waits[call.call_id]
            finally:
                ctx.pending_confirmations.discard(pending.id)
                deps.confirmations.discard(pending.id)
            if not answer.approved:
                logger.info("tool %s denied by user (%s)", call.name, pending.id)
                return build_denied_result(USER_DENIED)
        return await deps.dispatcher.execute(call, cancel_token=ctx.token)

    tasks = [ctx.track(asyncio.ensure_future(_one(c, d))) for c, d in zip(calls, decisions)]
    try:
        results = await asyncio.gather(*tasks)
    except asyncio.CancelledError:
        for t in tasks:
            t.cancel()
        raise
    return [r.to_block(c.call_id) for c, r in zip(calls, results)]
