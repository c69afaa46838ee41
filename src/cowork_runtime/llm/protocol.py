"""
模型客户端协议：ChatRequest / ChatStreamEvent / ChatBackend。

说明：
- 具体 provider 的 wire 协议（HTTP/SSE 等）由调用方实现 `ChatBackend` 并注入运行时。
- backend 以异步迭代器流式产出事件；失败时抛出 `ProviderError`（或任意异常，运行时统一按 provider 失败处理）。
- 取消：运行时会取消消费任务并 `aclose()` 迭代器，backend 应在 finally 中释放连接。
"""

from __future__ import annotations

from dataclasses import dataclass, field
from typing import Any, AsyncIterator, Dict, List, Literal, Optional, Protocol

from cowork_runtime.core.messages import Message, ToolUseBlock
from cowork_runtime.tools.protocol import ToolSpec

StreamEventType = Literal["text_delta", "tool_use", "completed"]


@dataclass(frozen=True)
class ChatRequest:
    """
    一次模型调用的参数包。

    字段：
    - model：模型名
    - messages：完整工作历史（已满足工具配对不变量）
    - tools：可用工具声明
    - system：系统提示（可选）
    - turn_id：所属 turn（用于下游日志关联）
    - extra：provider 特有扩展字段
    """

    model: str
    messages: List[Message]
    tools: List[ToolSpec] = field(default_factory=list)
    system: Optional[str] = None
    turn_id: Optional[str] = None
    extra: Dict[str, Any] = field(default_factory=dict)


@dataclass(frozen=True)
class ChatStreamEvent:
    """
    流式事件。

    type：
    - `text_delta`：assistant 文本增量（text）
    - `tool_use`：一个完整的工具调用（tool_use）；多个按模型顺序依次产出
    - `completed`：本次响应结束（finish_reason 可选）
    """

    type: StreamEventType
    text: Optional[str] = None
    tool_use: Optional[ToolUseBlock] = None
    finish_reason: Optional[str] = None

    @classmethod
    def text_delta(cls, text: str) -> "ChatStreamEvent":
        return cls(type="text_delta", text=text)

    @classmethod
    def tool(cls, id: str, name: str, input: Optional[Dict[str, Any]] = None) -> "ChatStreamEvent":
        return cls(type="tool_use", tool_use=ToolUseBlock(id=id, name=name, input=dict(input or {})))

    @classmethod
    def completed(cls, finish_reason: str = "stop") -> "ChatStreamEvent":
        return cls(type="completed", finish_reason=finish_reason)


class ChatBackend(Protocol):
    """模型客户端抽象（流式）。"""

    def stream_chat(self, request: ChatRequest) -> AsyncIterator[ChatStreamEvent]:
        """
        唯一入口：以 ChatRequest 参数包发起一次流式调用。

        约束：
        - 返回异步迭代器（通常实现为 async generator）；
        - 事件序列以 `completed` 结束；缺失时运行时在迭代器耗尽时视为结束。
        """

        ...
