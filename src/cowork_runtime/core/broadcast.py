"""
BroadcastHub：把运行时事件按顺序扇出给多个观察者。

投递语义：
- 每个观察者拥有独立的 FIFO backlog 与投递任务；看到的事件顺序与发布顺序一致。
- `publish` 只负责入队，不等待任何观察者；慢观察者只拖慢自己。
- 同步观察者（普通 callable）在工作线程中调用（`asyncio.to_thread`），不会阻塞事件循环；
  异步观察者（async callable）在各自的投递任务中 await。
- 没有运行中的事件循环时（同步调用方），同步观察者在调用方线程内按序投递；异步观察者留在 backlog，
  下一次在事件循环内 publish/drain 时投递。
- 任何观察者抛出的异常都被记录并吞掉，不影响其它观察者，也不影响 turn。
- 中途 attach 不回放历史事件；下一次 `history-update` 即可完成同步。
"""

from __future__ import annotations

import asyncio
import inspect
import logging
from collections import deque
from typing import Any, Awaitable, Callable, Deque, List, Optional, Union

from cowork_runtime.core.contracts import RuntimeEvent

logger = logging.getLogger(__name__)

Observer = Callable[[RuntimeEvent], Union[None, Awaitable[None]]]


def _is_async_observer(observer: Any) -> bool:
    if inspect.iscoroutinefunction(observer):
        return True
    call = getattr(observer, "__call__", None)
    return inspect.iscoroutinefunction(call)


class _Delivery:
    """单个观察者的投递队列与任务。"""

    def __init__(self, observer: Observer) -> None:
        self.observer = observer
        self.is_async = _is_async_observer(observer)
        self.backlog: Deque[RuntimeEvent] = deque()
        self._loop: Optional[asyncio.AbstractEventLoop] = None
        self._wakeup: Optional[asyncio.Event] = None
        self._idle: Optional[asyncio.Event] = None
        self._task: Optional["asyncio.Task[None]"] = None
        self._closed = False

    def push(self, event: RuntimeEvent) -> None:
        if self._closed:
            return
        try:
            asyncio.get_running_loop()
        except RuntimeError:
            self._push_outside_loop(event)
            return
        self._accept(event)

    def _push_outside_loop(self, event: RuntimeEvent) -> None:
        owner = self._loop
        if owner is not None and owner.is_running() and self._task is not None and not self._task.done():
            # 投递任务属于另一个线程里的事件循环：转发过去入队，保持 FIFO
            owner.call_soon_threadsafe(self._accept, event)
            return
        self.backlog.append(event)
        if not self.is_async:
            while self.backlog:
                self._call_inline(self.backlog.popleft())

    def _call_inline(self, event: RuntimeEvent) -> None:
        try:
            self.observer(event)
        except Exception:
            logger.exception("observer %r failed on %s", self.observer, event.type)

    def _accept(self, event: RuntimeEvent) -> None:
        if self._closed:
            return
        self.backlog.append(event)
        self._ensure_running()

    def _ensure_running(self) -> asyncio.Event:
        loop = asyncio.get_running_loop()
        wakeup, idle = self._wakeup, self._idle
        if wakeup is None or idle is None or self._task is None or self._task.done() or self._loop is not loop:
            wakeup, idle = asyncio.Event(), asyncio.Event()
            self._loop, self._wakeup, self._idle = loop, wakeup, idle
            self._task = loop.create_task(self._pump(wakeup, idle))
        if self.backlog:
            idle.clear()
            wakeup.set()
        return idle

    async def _pump(self, wakeup: asyncio.Event, idle: asyncio.Event) -> None:
        while True:
            while self.backlog:
                event = self.backlog.popleft()
                try:
                    if self.is_async:
                        await self.observer(event)  # type: ignore[misc]
                    else:
                        await asyncio.to_thread(self.observer, event)
                except asyncio.CancelledError:
                    raise
                except Exception:
                    logger.exception("observer %r failed on %s", self.observer, event.type)
            wakeup.clear()
            idle.set()
            await wakeup.wait()

    async def drain(self) -> None:
        if not self.backlog and (self._idle is None or self._idle.is_set()):
            return
        idle = self._ensure_running()
        await idle.wait()

    def close(self) -> None:
        self._closed = True
        self.backlog.clear()
        if self._task is not None and not self._task.done():
            self._task.cancel()


class BroadcastHub:
    """事件广播中枢。"""

    def __init__(self) -> None:
        self._deliveries: List[_Delivery] = []

    @property
    def observer_count(self) -> int:
        return len(self._deliveries)

    def attach(self, observer: Observer) -> Observer:
        """
        注册观察者（同一对象重复注册为 no-op）。

        返回：
        - observer 本身（作为 detach 的句柄）
        """

        if any(d.observer is observer for d in self._deliveries):
            return observer
        self._deliveries.append(_Delivery(observer))
        return observer

    def detach(self, observer: Observer) -> bool:
        """注销观察者；未知句柄为 no-op（返回 False）。未投递的事件被丢弃。"""

        for i, d in enumerate(self._deliveries):
            if d.observer is observer:
                del self._deliveries[i]
                d.close()
                return True
        return False

    def publish(self, event: RuntimeEvent) -> None:
        """把事件放入每个观察者的 backlog；不等待投递完成。"""

        for delivery in list(self._deliveries):
            delivery.push(event)

    async def drain(self) -> None:
        """等待所有观察者的 backlog 投递完毕。"""

        for delivery in list(self._deliveries):
            await delivery.drain()

    async def aclose(self) -> None:
        """投递完剩余事件后注销全部观察者。"""

        await self.drain()
        for delivery in self._deliveries:
            delivery.close()
        self._deliveries.clear()
