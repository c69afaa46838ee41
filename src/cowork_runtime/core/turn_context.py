"""
TurnContext：单个 turn 的临时状态（只由 turn loop 持有，turn 结束即丢弃）。

包含：
- CancelToken：turn 级取消令牌（标志位 + 可 await）
- TurnState：turn 状态机（Idle → Streaming → ToolPending* → Completing → Idle；Aborted 为吸收态）
- 工作历史副本、流式累积器、在途任务集合、待确认 id 集合
"""

from __future__ import annotations

import asyncio
import enum
import threading
from dataclasses import dataclass, field
from typing import List, Optional, Set

from cowork_runtime.core.messages import Message, TextBlock, ToolUseBlock


class TurnState(str, enum.Enum):
    """turn 状态机。"""

    IDLE = "idle"
    STREAMING = "streaming"
    TOOL_PENDING = "tool_pending"
    COMPLETING = "completing"
    ABORTED = "aborted"


class CancelToken:
    """
    turn 级取消令牌。

    说明：
    - `cancel()` 可在任意线程调用（工具线程、UI 线程）；事件循环侧通过 `call_soon_threadsafe` 唤醒等待者。
    - `is_cancelled` 可直接作为阻塞型工具的 `cancel_checker`。
    """

    def __init__(self) -> None:
        self._flag = threading.Event()
        self._loop: Optional[asyncio.AbstractEventLoop] = None
        self._event: Optional[asyncio.Event] = None

    def bind_loop(self, loop: asyncio.AbstractEventLoop) -> asyncio.Event:
        """绑定事件循环（必须在 loop 线程内调用）。返回该 loop 上的唤醒事件。"""

        event = asyncio.Event()
        if self._flag.is_set():
            event.set()
        self._loop, self._event = loop, event
        return event

    def cancel(self) -> None:
        """置位取消标志（幂等）。"""

        if self._flag.is_set():
            return
        self._flag.set()
        loop, ev = self._loop, self._event
        if loop is None or ev is None:
            return
        try:
            running = asyncio.get_running_loop()
        except RuntimeError:
            running = None
        if running is loop:
            ev.set()
            return
        try:
            loop.call_soon_threadsafe(ev.set)
        except RuntimeError:
            # loop 已关闭：标志位已置位即可
            pass

    def is_cancelled(self) -> bool:
        return self._flag.is_set()

    async def wait(self) -> None:
        """等待取消发生。"""

        event = self._event
        if event is None:
            event = self.bind_loop(asyncio.get_running_loop())
        await event.wait()


@dataclass
class TurnContext:
    """
    单个 turn 的临时状态。

    字段：
    - turn_id：turn 标识（事件关联）
    - working：工作历史副本（turn 期间的追加只发生在这里；Completing 时才提交）
    - token：取消令牌
    - state：当前状态
    - text_parts / tool_uses：当前 assistant 消息的流式累积器
    - tasks：在途任务（模型流任务、工具任务）；取消时统一 cancel
    - pending_confirmations：本 turn 发出、尚未回答的确认 id
    - rounds：已进入 ToolPending 的次数
    """

    turn_id: str
    working: List[Message]
    token: CancelToken = field(default_factory=CancelToken)
    state: TurnState = TurnState.IDLE
    text_parts: List[str] = field(default_factory=list)
    tool_uses: List[ToolUseBlock] = field(default_factory=list)
    tasks: Set["asyncio.Future[object]"] = field(default_factory=set)
    pending_confirmations: Set[str] = field(default_factory=set)
    rounds: int = 0

    @property
    def is_cancelled(self) -> bool:
        return self.token.is_cancelled()

    def track(self, task: "asyncio.Future[object]") -> "asyncio.Future[object]":
        """登记在途任务；完成后自动移除。"""

        self.tasks.add(task)
        task.add_done_callback(self.tasks.discard)
        return task

    def reset_accumulator(self) -> None:
        self.text_parts = []
        self.tool_uses = []

    def build_assistant_message(self) -> Optional[Message]:
        """
        把累积器内容组装为 assistant 消息。

        返回：
        - Message：文本在前，tool_use 按模型顺序在后
        - None：既无文本也无 tool_use
        """

        blocks: List[object] = []
        text = "".join(self.text_parts)
        if text:
            blocks.append(TextBlock(text=text))
        blocks.extend(self.tool_uses)
        if not blocks:
            return None
        return Message(role="assistant", content=tuple(blocks))

    def cancel(self) -> None:
        """
        取消本 turn（幂等）：置位令牌、取消所有在途任务。
        """

        self.token.cancel()
        self.state = TurnState.ABORTED
        for task in list(self.tasks):
            if not task.done():
                task.cancel()
