"""
Tool 协议（ToolSpec / ToolCall / ToolResult）。

本模块定义：
- ToolSpec：注册表条目（JSON schema 参数 + 是否需要审批）
- ToolCall：执行输入（由 assistant 消息中的 tool_use block 转换而来）
- ToolResultPayload：结构化执行输出（序列化后作为 tool_result 的 content）
- ToolResult：执行输出 envelope（ok/content/error_kind/message/details/images）

失败分类（error_kind）：
- `invalid_arguments`：未知工具、参数不满足 schema
- `execution_failed`：handler 抛出异常或业务失败
- `cancelled`：turn 被取消
- `permission_denied`：用户拒绝、闸门拒绝或越界访问
"""

from __future__ import annotations

import json
from typing import Any, Dict, List, Optional

from pydantic import BaseModel, ConfigDict, Field

from cowork_runtime.core.messages import ImageBlock, ToolResultBlock, ToolUseBlock

INVALID_ARGUMENTS = "invalid_arguments"
EXECUTION_FAILED = "execution_failed"
CANCELLED = "cancelled"
PERMISSION_DENIED = "permission_denied"

TOOL_FAILURE_KINDS = (INVALID_ARGUMENTS, EXECUTION_FAILED, CANCELLED, PERMISSION_DENIED)


class ToolSpec(BaseModel):
    """
    Tool 注册信息。

    字段：
    - name：工具名（全局唯一，稳定）
    - description：工具说明（提供给模型）
    - parameters：JSON Schema（必须为 object schema）
    - requires_approval：是否有副作用；False 表示声明为无副作用，权限闸门直接放行
    """

    model_config = ConfigDict(extra="forbid")

    name: str
    description: str
    parameters: Dict[str, Any] = Field(default_factory=lambda: {"type": "object", "properties": {}})
    requires_approval: bool = True

    @property
    def side_effect_free(self) -> bool:
        return not self.requires_approval

    def to_model_tool(self) -> Dict[str, Any]:
        """映射为模型客户端使用的工具声明（name/description/input_schema）。"""

        return {"name": self.name, "description": self.description, "input_schema": self.parameters}


class ToolCall(BaseModel):
    """
    Tool 调用（内部表示）。

    字段：
    - call_id：对应 tool_use.id（用于结果回注配对）
    - name：工具名
    - args：参数 dict
    """

    model_config = ConfigDict(extra="forbid")

    call_id: str
    name: str
    args: Dict[str, Any] = Field(default_factory=dict)

    @classmethod
    def from_block(cls, block: ToolUseBlock) -> "ToolCall":
        return cls(call_id=block.id, name=block.name, args=dict(block.input or {}))


class ToolResultPayload(BaseModel):
    """
    Tool 执行结果 payload（统一输出封装）。

    说明：
    - 以 JSON 字符串写入 tool_result.content（稳定、可被模型解析）
    - 同时作为 `ToolResult.details` 保留结构化形态（便于日志与测试断言）
    """

    model_config = ConfigDict(extra="forbid")

    ok: bool
    stdout: str = ""
    stderr: str = ""
    exit_code: Optional[int] = None
    duration_ms: int = Field(default=0, ge=0)
    truncated: bool = False
    data: Optional[Dict[str, Any]] = None
    error_kind: Optional[str] = None


class ToolResult(BaseModel):
    """
    Tool 执行结果（统一 envelope）。

    字段：
    - ok：是否成功
    - content：回注给模型的内容（JSON 字符串或纯文本）
    - error_kind：失败分类（见模块说明）
    - message：一句话说明（日志/调用方）
    - details：结构化结果
    - images：图片附件（随 tool_result 一起回注）
    """

    model_config = ConfigDict(extra="forbid")

    ok: bool
    content: str
    error_kind: Optional[str] = None
    message: Optional[str] = None
    details: Optional[Dict[str, Any]] = None
    images: List[ImageBlock] = Field(default_factory=list)

    @classmethod
    def from_payload(
        cls,
        payload: ToolResultPayload,
        *,
        message: Optional[str] = None,
        images: Optional[List[ImageBlock]] = None,
    ) -> "ToolResult":
        """从 ToolResultPayload 构造（payload 序列化为 JSON 写入 content）。"""

        obj = payload.model_dump(exclude_none=True)
        return cls(
            ok=payload.ok,
            content=json.dumps(obj, ensure_ascii=False),
            error_kind=payload.error_kind,
            message=message,
            details=obj,
            images=list(images or []),
        )

    @classmethod
    def ok_payload(
        cls,
        *,
        stdout: str = "",
        data: Optional[Dict[str, Any]] = None,
        duration_ms: int = 0,
        truncated: bool = False,
        images: Optional[List[ImageBlock]] = None,
    ) -> "ToolResult":
        """便捷构造：成功结果。"""

        return cls.from_payload(
            ToolResultPayload(ok=True, stdout=stdout, exit_code=0, duration_ms=duration_ms, truncated=truncated, data=data),
            images=images,
        )

    @classmethod
    def error_payload(
        cls,
        *,
        error_kind: str,
        stderr: str,
        data: Optional[Dict[str, Any]] = None,
        duration_ms: int = 0,
    ) -> "ToolResult":
        """便捷构造：失败结果（错误信息放入 stderr）。"""

        return cls.from_payload(
            ToolResultPayload(ok=False, stderr=stderr, duration_ms=duration_ms, data=data, error_kind=error_kind),
            message=stderr,
        )

    @classmethod
    def failure(cls, kind: str, message: str) -> "ToolResult":
        """
        便捷构造：纯文本失败结果（执行器/闸门生成的合成结果使用）。

        说明：
        - content 即 message 原文，例如用户拒绝时为 `user denied`。
        """

        return cls(ok=False, content=message, error_kind=kind, message=message)

    def to_block(self, tool_use_id: str) -> ToolResultBlock:
        """转换为回注历史用的 tool_result block。"""

        return ToolResultBlock(
            tool_use_id=tool_use_id,
            content=self.content,
            is_error=not self.ok,
            error_kind=self.error_kind,
            images=tuple(self.images),
        )
