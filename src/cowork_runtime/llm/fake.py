"""
Fake 模型 backend（离线回归夹具）。

用途：
- 在不依赖真实模型/外网的情况下，回归 turn loop 的编排逻辑（tool_use → 确认 → 执行 → 回注 → 继续）。
"""

from __future__ import annotations

import asyncio
from dataclasses import dataclass, field
from typing import AsyncIterator, List, Optional, Sequence

from cowork_runtime.llm.protocol import ChatRequest, ChatStreamEvent


@dataclass(frozen=True)
class FakeChatCall:
    """
    一次模型调用的预设输出。

    字段：
    - events：按顺序产出的事件
    - error：产出完 events 后抛出的异常（模拟流中断/provider 失败）
    - delay_sec：每个事件之间的等待（模拟流式延迟，便于测试中途取消）
    """

    events: List[ChatStreamEvent] = field(default_factory=list)
    error: Optional[BaseException] = None
    delay_sec: float = 0.0


class FakeChatBackend:
    """
    用脚本化事件序列模拟模型流式输出。

    说明：
    - 每次 `stream_chat(...)` 消耗一个 `FakeChatCall`；耗尽后抛 `ValueError`
    - 未包含 `completed` 时在末尾自动补齐
    - `requests` 记录每次收到的 ChatRequest（测试断言用）
    """

    def __init__(self, calls: Sequence[FakeChatCall]) -> None:
        self._calls = list(calls)
        self._idx = 0
        self.requests: List[ChatRequest] = []

    @property
    def remaining(self) -> int:
        return len(self._calls) - self._idx

    async def stream_chat(self, request: ChatRequest) -> AsyncIterator[ChatStreamEvent]:
        """按预设序列产出事件。"""

        if self._idx >= len(self._calls):
            raise ValueError("FakeChatBackend calls exhausted")
        call = self._calls[self._idx]
        self._idx += 1
        self.requests.append(request)

        completed_seen = False
        for ev in call.events:
            if call.delay_sec > 0:
                await asyncio.sleep(call.delay_sec)
            if ev.type == "completed":
                completed_seen = True
            yield ev
        if call.error is not None:
            raise call.error
        if not completed_seen:
            yield ChatStreamEvent.completed("fake_eof")
