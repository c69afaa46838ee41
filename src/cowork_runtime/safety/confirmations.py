"""
ConfirmationHub：挂起中的确认请求与人类回答的汇合点。

说明：
- turn loop 为每个 ask 决策注册一个 Future，等待期间只阻塞该调用本身。
- `resolve` 可从任意线程调用；结果经 `call_soon_threadsafe` 回到 Future 所在的事件循环。
- 每个请求只能回答一次；turn 中止时其请求被整体取消，之后的回答视为未知 id。
"""

from __future__ import annotations

import asyncio
import logging
import threading
import time
from dataclasses import dataclass
from typing import Dict, Iterable, List, Optional

from cowork_runtime.safety.gate import PendingConfirmation

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class ConfirmationDecision:
    """人类对一次确认请求的回答。"""

    approved: bool
    remember: bool = False


@dataclass(frozen=True)
class _Waiting:
    """
    一个等待中的确认（PendingConfirmation 与 asyncio Future 绑定）。

    说明：
    - turn loop 发布 `confirm-request` 后 await future；
    - `confirm_response` 通过 `ConfirmationHub.resolve` 写入决定（可从任意线程调用）。
    """

    pending: PendingConfirmation
    created_at_monotonic: float
    loop: asyncio.AbstractEventLoop
    future: "asyncio.Future[ConfirmationDecision]"


class ConfirmationHub:
    """
    待确认请求中枢（进程内）。

    约束：
    - 每个 id 只能被回答一次；未知/已回答的 id 返回 None（no-op）。
    - turn 被中止时由 `cancel` 取消其全部等待，未回答的请求随之失效。
    """

    def __init__(self) -> None:
        self._lock = threading.Lock()
        self._waiting: Dict[str, _Waiting] = {}

    def register(self, pending: PendingConfirmation) -> "asyncio.Future[ConfirmationDecision]":
        """登记一个待确认请求，返回其 future（必须在事件循环内调用）。"""

        loop = asyncio.get_running_loop()
        fut: asyncio.Future[ConfirmationDecision] = loop.create_future()
        with self._lock:
            self._waiting[pending.id] = _Waiting(
                pending=pending,
                created_at_monotonic=time.monotonic(),
                loop=loop,
                future=fut,
            )
        return fut

    def get(self, confirmation_id: str) -> Optional[PendingConfirmation]:
        with self._lock:
            w = self._waiting.get(confirmation_id)
        return w.pending if w is not None else None

    def list_pending(self, *, turn_id: Optional[str] = None) -> List[PendingConfirmation]:
        """列出等待中的请求（按创建顺序；可按 turn 过滤）。"""

        with self._lock:
            items = sorted(self._waiting.values(), key=lambda w: w.created_at_monotonic)
        return [w.pending for w in items if turn_id is None or w.pending.turn_id == turn_id]

    def resolve(self, confirmation_id: str, *, approved: bool, remember: bool = False) -> Optional[PendingConfirmation]:
        """
        写入决定（可从任意线程调用）。

        返回：
        - PendingConfirmation：找到并已安排 resolve
        - None：未知 id（不存在/已回答/已随 turn 取消）
        """

        with self._lock:
            w = self._waiting.pop(str(confirmation_id), None)
        if w is None:
            logger.warning("confirmation %s is unknown or already answered", confirmation_id)
            return None

        decision = ConfirmationDecision(approved=bool(approved), remember=bool(remember))

        def _set() -> None:
            if not w.future.done():
                w.future.set_result(decision)

        try:
            w.loop.call_soon_threadsafe(_set)
        except RuntimeError:
            logger.warning("confirmation %s arrived after its event loop closed", confirmation_id)
            return None
        return w.pending

    def cancel(self, ids: Iterable[str]) -> int:
        """取消指定 id 的等待（turn 中止时调用）；返回取消数量。"""

        dropped: List[_Waiting] = []
        with self._lock:
            for cid in list(ids):
                w = self._waiting.pop(cid, None)
                if w is not None:
                    dropped.append(w)
        for w in dropped:
            try:
                w.loop.call_soon_threadsafe(w.future.cancel)
            except RuntimeError:
                pass
        return len(dropped)

    def discard(self, confirmation_id: str) -> None:
        with self._lock:
            self._waiting.pop(confirmation_id, None)
