"""
外部工具服务器（external tool servers）适配。

说明：
- `ToolServerManager` 是协作方接口：负责连接外部工具服务器（如 MCP）、列出工具、转发调用。
- 运行时初始化时调用 `register_external_tools`，以 `<server>__<tool>` 命名注册；初始化后工具集合固定。
- 外部工具一律视为有副作用（需经权限闸门）。
"""

from __future__ import annotations

import json
import logging
from dataclasses import dataclass, field
from typing import Any, Awaitable, Callable, Dict, List, Protocol, runtime_checkable

from cowork_runtime.tools.protocol import ToolCall, ToolResult, ToolSpec
from cowork_runtime.tools.registry import ToolExecutionContext, ToolRegistry

logger = logging.getLogger(__name__)

NAME_SEPARATOR = "__"


@dataclass(frozen=True)
class ExternalTool:
    """外部服务器声明的一个工具。"""

    server: str
    name: str
    description: str = ""
    input_schema: Dict[str, Any] = field(default_factory=lambda: {"type": "object", "properties": {}})


@runtime_checkable
class ToolServerManager(Protocol):
    """外部工具服务器管理器（协作方接口）。"""

    def list_tools(self) -> List[ExternalTool]:
        """返回所有已连接服务器的工具声明。"""

        ...

    async def call_tool(self, server: str, tool: str, arguments: Dict[str, Any]) -> Any:
        """
        调用外部工具。

        返回：
        - str：作为文本输出
        - 其它 JSON-able 对象：序列化为 JSON 文本

        异常：
        - 任意异常会被执行器转换为 execution_failed
        """

        ...


def qualified_name(server: str, tool: str) -> str:
    return f"{server}{NAME_SEPARATOR}{tool}"


def _make_handler(manager: ToolServerManager, tool: ExternalTool) -> Callable[[ToolCall, ToolExecutionContext], Awaitable[ToolResult]]:
    async def _handler(call: ToolCall, ctx: ToolExecutionContext) -> ToolResult:
        out = await manager.call_tool(tool.server, tool.name, dict(call.args))
        if isinstance(out, ToolResult):
            return out
        text = out if isinstance(out, str) else json.dumps(out, ensure_ascii=False)
        return ToolResult.ok_payload(stdout=text, data={"server": tool.server, "tool": tool.name})

    return _handler


def register_external_tools(registry: ToolRegistry, manager: ToolServerManager) -> List[str]:
    """
    把外部工具注册进 registry。

    返回：
    - 成功注册的工具名列表（与内置工具重名者被跳过并记录 WARNING）
    """

    registered: List[str] = []
    for tool in manager.list_tools():
        name = qualified_name(tool.server, tool.name)
        if name in registry:
            logger.warning("external tool %s conflicts with an existing tool; skipped", name)
            continue
        spec = ToolSpec(
            name=name,
            description=tool.description or f"{tool.name} (from {tool.server})",
            parameters=dict(tool.input_schema or {"type": "object", "properties": {}}),
            requires_approval=True,
        )
        registry.register(spec, _make_handler(manager, tool))
        registered.append(name)
    logger.info("registered %d external tools", len(registered))
    return registered
