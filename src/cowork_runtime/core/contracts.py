"""
核心契约：RuntimeEvent（观察者可见的事件流条目）。

事件类型（稳定、可回归）：
- `stream-token`：assistant 文本增量（payload.text）
- `history-update`：完整历史快照（payload.history）
- `confirm-request`：需要人类确认的工具调用（payload.confirmation）
- `done`：turn 正常完成
- `error`：turn 失败（payload.message）
- `aborted`：turn 被取消
"""

from __future__ import annotations

from typing import Any, Dict, Literal, Optional

from pydantic import BaseModel, ConfigDict, Field

from cowork_runtime.core.utils import now_rfc3339

EventType = Literal["stream-token", "history-update", "confirm-request", "done", "error", "aborted"]

STREAM_TOKEN: EventType = "stream-token"
HISTORY_UPDATE: EventType = "history-update"
CONFIRM_REQUEST: EventType = "confirm-request"
DONE: EventType = "done"
ERROR: EventType = "error"
ABORTED: EventType = "aborted"


class RuntimeEvent(BaseModel):
    """
    RuntimeEvent：统一事件流条目。

    字段：
    - type：事件类型（见模块说明）
    - timestamp：RFC3339 时间字符串
    - turn_id：所属 turn；`load_history` 等非 turn 事件为 None
    - payload：JSON object，承载事件专用字段
    """

    model_config = ConfigDict(extra="forbid", frozen=True)

    type: EventType
    timestamp: str = Field(default_factory=now_rfc3339)
    turn_id: Optional[str] = None
    payload: Dict[str, Any] = Field(default_factory=dict)

    def to_json(self) -> str:
        """序列化为 JSON 字符串。"""

        return self.model_dump_json(exclude_none=True)

    @classmethod
    def from_json(cls, raw_json: str) -> "RuntimeEvent":
        """从 JSON 字符串反序列化。"""

        return cls.model_validate_json(raw_json)
