"""
运行时错误分类（异常类型）。

说明：
- 工具失败、用户拒绝都以数据形式（`ToolResult` / `tool_result` block）回注模型，不走异常。
- 异常只用于：调用方误用（Busy/参数错误）、模型客户端失败、内部不变量被破坏。
- 核心层不做任何重试；是否重试由调用方决定。
"""

from __future__ import annotations

from dataclasses import dataclass
from typing import Any, Dict, Optional


class RuntimeSdkError(Exception):
    """运行时错误基类（不建议直接抛出）。"""


@dataclass(frozen=True)
class FrameworkIssue:
    """结构化问题对象（可放入日志或事件 payload）。"""

    code: str
    message: str
    details: Dict[str, Any]


class FrameworkError(RuntimeSdkError):
    """框架层结构化错误（英文 `code/message/details`）。"""

    def __init__(self, *, code: str, message: str, details: Dict[str, Any] | None = None) -> None:
        """创建框架错误。

        参数：
        - `code`：稳定错误码（英文大写下划线）
        - `message`：英文错误消息
        - `details`：结构化上下文信息
        """

        super().__init__(message)
        self.code = code
        self.message = message
        self.details: Dict[str, Any] = details or {}

    def __str__(self) -> str:
        return f"{self.code}: {self.message}"

    def to_issue(self) -> FrameworkIssue:
        """把异常转换为可序列化问题对象。"""

        return FrameworkIssue(code=self.code, message=self.message, details=dict(self.details))


class UserError(FrameworkError):
    """用户输入/配置导致的错误。"""

    def __init__(self, message: str, *, code: str = "USER_ERROR", details: Dict[str, Any] | None = None) -> None:
        super().__init__(code=code, message=message, details=details or {})


class BusyError(FrameworkError):
    """
    会话忙：已有 turn 在进行中。

    触发点：
    - `send_message` / `submit_message` 在 turn 活跃时被调用
    - `load_history` / `clear_history` 在 turn 活跃时被调用
    """

    def __init__(self, message: str = "a turn is already in progress", *, details: Dict[str, Any] | None = None) -> None:
        super().__init__(code="BUSY", message=message, details=details or {})


class ToolError(RuntimeSdkError):
    """工具执行失败（供 handler 内部抛出；执行器会将其转换为 `execution_failed`）。"""


class LlmError(RuntimeSdkError):
    """模型客户端通信/协议错误基类。"""


class ProviderError(LlmError):
    """
    模型提供方失败（网络、鉴权、限流、流中断等）。

    字段：
    - kind：错误分类（例如 `network` / `auth` / `rate_limited` / `stream_interrupted` / `unknown`）
    - retryable：是否建议调用方重试（核心层自身从不重试）
    """

    def __init__(self, message: str, *, kind: str = "unknown", retryable: bool = False, cause: Optional[str] = None) -> None:
        super().__init__(message)
        self.message = message
        self.kind = kind
        self.retryable = retryable
        self.cause = cause
