"""
LoopController：turn loop 的轮次计数与取消检查（internal）。

说明：
- 一“轮”指一次 ToolPending（模型给出一批 tool_use → 执行 → 回注）。
- `max_tool_rounds=None` 表示不限制；超过上限时由 turn loop 以 error 结束本 turn（历史回滚）。
"""

from __future__ import annotations

from dataclasses import dataclass
from typing import Callable, Optional


@dataclass
class LoopController:
    """
    LoopController（internal）。

    字段：
    - max_tool_rounds：单 turn 内允许的最大 ToolPending 次数（None 表示不限制）
    - cancel_checker：取消检测回调（返回 True 表示应尽快停止；异常时 fail-open）
    """

    max_tool_rounds: Optional[int]
    cancel_checker: Optional[Callable[[], bool]] = None

    def __post_init__(self) -> None:
        self._rounds = 0

    @property
    def rounds(self) -> int:
        return self._rounds

    def is_cancelled(self) -> bool:
        """
        检查是否需要取消本 turn。

        约束：
        - 异常时 fail-open：返回 False。
        """

        if self.cancel_checker is None:
            return False
        try:
            return bool(self.cancel_checker())
        except Exception:
            return False

    def try_enter_tool_round(self) -> bool:
        """
        尝试进入下一轮 ToolPending。

        返回：
        - True：预算充足，轮次已 +1
        - False：已达上限，未计数
        """

        if self.max_tool_rounds is not None and self._rounds >= int(self.max_tool_rounds):
            return False
        self._rounds += 1
        return True
