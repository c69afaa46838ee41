"""
Cowork Agent Runtime（Python）。

说明：
- 本包提供“单会话 agent 运行时”：turn loop、权限闸门、工具执行器、事件广播。
- UI/持久化/模型 wire 协议均通过窄接口注入（见 `llm.protocol`、`safety.permissions`、`core.runtime.SessionStore`）。
- 入口：`AgentRuntime`（见 `cowork_runtime.core.runtime`）。
"""

from __future__ import annotations

from cowork_runtime.core.errors import BusyError, FrameworkError, ProviderError, RuntimeSdkError, UserError
from cowork_runtime.core.runtime import AgentRuntime, TurnOutcome

__all__ = [
    "AgentRuntime",
    "BusyError",
    "FrameworkError",
    "ProviderError",
    "RuntimeSdkError",
    "TurnOutcome",
    "UserError",
    "__version__",
]

__version__ = "0.3.0"
