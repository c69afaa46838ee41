"""
ToolDispatcher：工具执行器（turn loop 使用）。

职责：
- 按名称路由到 handler；未知工具 / 参数不满足 schema → `invalid_arguments`
- 同步 handler 放入工作线程执行，async handler 直接 await
- handler 抛出异常 → `execution_failed`
- 取消令牌在执行前或执行中被置位 → 立即返回 `cancelled`（不等待 handler 退出）

约束：
- 执行器从不重试；失败以 ToolResult 数据返回，不向 turn loop 抛异常。
- 取消后仍在运行的同步 handler 通过 `ctx.cancel_checker` 感知并自行退出。
"""

from __future__ import annotations

import asyncio
import inspect
import logging
from dataclasses import replace
from typing import Any, Dict, List, Mapping, Optional

from cowork_runtime.core.errors import UserError
from cowork_runtime.core.turn_context import CancelToken
from cowork_runtime.tools.protocol import CANCELLED, EXECUTION_FAILED, INVALID_ARGUMENTS, ToolCall, ToolResult
from cowork_runtime.tools.registry import ToolRegistry

logger = logging.getLogger(__name__)

_JSON_TYPES: Dict[str, Any] = {
    "string": str,
    "integer": int,
    "number": (int, float),
    "boolean": bool,
    "array": list,
    "object": dict,
}


def _type_matches(expected: Any, value: Any) -> bool:
    names = expected if isinstance(expected, list) else [expected]
    for name in names:
        if name == "null" and value is None:
            return True
        py = _JSON_TYPES.get(str(name))
        if py is None:
            return True
        if isinstance(value, bool) and name in ("integer", "number"):
            continue
        if isinstance(value, py):
            return True
    return False


def validate_arguments(schema: Mapping[str, Any], args: Any) -> List[str]:
    """
    按 JSON Schema 的常用子集校验工具参数。

    覆盖范围：
    - 顶层必须为 object
    - `required` 缺失
    - `additionalProperties: false` 时的未知字段
    - 属性级 `type` 与 `enum`

    返回：
    - 问题描述列表（为空表示通过）；更细的业务校验由各 handler 的 pydantic 参数模型完成
    """

    if not isinstance(args, dict):
        return ["arguments must be a JSON object"]

    problems: List[str] = []
    props = schema.get("properties") or {}
    for key in schema.get("required") or []:
        if key not in args:
            problems.append(f"missing required argument: {key}")
    if schema.get("additionalProperties") is False:
        for key in args:
            if key not in props:
                problems.append(f"unexpected argument: {key}")
    for key, value in args.items():
        prop = props.get(key)
        if not isinstance(prop, Mapping):
            continue
        if "type" in prop and not _type_matches(prop["type"], value):
            problems.append(f"argument {key} must be of type {prop['type']}")
        if "enum" in prop and value not in prop["enum"]:
            problems.append(f"argument {key} must be one of {prop['enum']}")
    return problems


def _consume_outcome(task: "asyncio.Future[Any]") -> None:
    # 被放弃的 handler 结果：读取一次异常，避免 "exception was never retrieved" 噪音
    if not task.cancelled():
        task.exception()


class ToolDispatcher:
    """
    工具执行器。

    参数：
    - registry：工具注册表（同时提供共享的 ToolExecutionContext）
    """

    def __init__(self, *, registry: ToolRegistry) -> None:
        self._registry = registry

    @property
    def registry(self) -> ToolRegistry:
        return self._registry

    async def execute(self, call: ToolCall, *, cancel_token: Optional[CancelToken] = None) -> ToolResult:
        """
        执行一次工具调用。

        参数：
        - call：工具调用
        - cancel_token：turn 的取消令牌（可选）

        返回：
        - ToolResult：成功或四类失败之一（invalid_arguments / execution_failed / cancelled / permission_denied）
        """

        if cancel_token is not None and cancel_token.is_cancelled():
            return ToolResult.failure(CANCELLED, "cancelled")

        spec = self._registry.find_spec(call.name)
        handler = self._registry.get_handler(call.name)
        if spec is None or handler is None:
            return ToolResult.failure(INVALID_ARGUMENTS, f"unknown tool: {call.name}")

        problems = validate_arguments(spec.parameters, call.args)
        if problems:
            return ToolResult.failure(INVALID_ARGUMENTS, "; ".join(problems))

        checker = cancel_token.is_cancelled if cancel_token is not None else None
        ctx = replace(self._registry.ctx, cancel_checker=checker)

        if inspect.iscoroutinefunction(handler):
            work = handler(call, ctx)
        else:
            work = asyncio.to_thread(handler, call, ctx)
        task = asyncio.ensure_future(work)
        logger.debug("tool dispatched: %s (%s)", call.name, call.call_id)

        waiter: Optional[asyncio.Future[Any]] = None
        try:
            if cancel_token is None:
                await asyncio.wait({task})
            else:
                waiter = asyncio.ensure_future(cancel_token.wait())
                await asyncio.wait({task, waiter}, return_when=asyncio.FIRST_COMPLETED)
        except asyncio.CancelledError:
            task.cancel()
            raise
        finally:
            if waiter is not None and not waiter.done():
                waiter.cancel()

        if cancel_token is not None and cancel_token.is_cancelled():
            if not task.done():
                task.cancel()
            task.add_done_callback(_consume_outcome)
            return ToolResult.failure(CANCELLED, "cancelled")

        try:
            result = task.result()
        except asyncio.CancelledError:
            return ToolResult.failure(CANCELLED, "cancelled")
        except UserError as e:
            return ToolResult.failure(INVALID_ARGUMENTS, e.message)
        except Exception as e:
            logger.debug("tool %s raised: %r", call.name, e)
            return ToolResult.failure(EXECUTION_FAILED, f"{type(e).__name__}: {e}")

        if not isinstance(result, ToolResult):
            return ToolResult.failure(EXECUTION_FAILED, f"tool {call.name} returned {type(result).__name__}, expected ToolResult")
        return result
