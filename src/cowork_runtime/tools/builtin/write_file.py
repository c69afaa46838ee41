"""
内置工具：write_file（有副作用，需经权限闸门）。
"""

from __future__ import annotations

import time

from pydantic import BaseModel, ConfigDict

from cowork_runtime.tools.protocol import (
    EXECUTION_FAILED,
    INVALID_ARGUMENTS,
    PERMISSION_DENIED,
    ToolCall,
    ToolResult,
    ToolSpec,
)
from cowork_runtime.tools.registry import ToolExecutionContext


class _WriteFileArgs(BaseModel):
    """write_file 输入参数。"""

    model_config = ConfigDict(extra="forbid")

    path: str
    content: str
    append: bool = False


WRITE_FILE_SPEC = ToolSpec(
    name="write_file",
    description="Write text content to a file, creating parent directories as needed.",
    parameters={
        "type": "object",
        "properties": {
            "path": {"type": "string", "description": "Target file path."},
            "content": {"type": "string", "description": "Text to write (UTF-8)."},
            "append": {"type": "boolean", "description": "Append instead of overwrite (default false)."},
        },
        "required": ["path", "content"],
        "additionalProperties": False,
    },
    requires_approval=True,
)


def write_file(call: ToolCall, ctx: ToolExecutionContext) -> ToolResult:
    """
    执行 write_file。

    参数：
    - call：工具调用（args.path / args.content / args.append）
    - ctx：执行上下文（路径边界）

    返回：
    - ok=true：data.bytes 为写入字节数
    - ok=false：invalid_arguments / permission_denied / execution_failed
    """

    start = time.monotonic()
    try:
        args = _WriteFileArgs.model_validate(call.args)
    except Exception as e:
        return ToolResult.error_payload(error_kind=INVALID_ARGUMENTS, stderr=str(e))

    try:
        p = ctx.resolve_path(args.path)
    except Exception as e:
        return ToolResult.error_payload(error_kind=PERMISSION_DENIED, stderr=str(e))

    data = args.content.encode("utf-8")
    try:
        p.parent.mkdir(parents=True, exist_ok=True)
        with p.open("ab" if args.append else "wb") as f:
            f.write(data)
    except OSError as e:
        duration_ms = int((time.monotonic() - start) * 1000)
        return ToolResult.error_payload(error_kind=EXECUTION_FAILED, stderr=str(e), duration_ms=duration_ms)

    duration_ms = int((time.monotonic() - start) * 1000)
    return ToolResult.ok_payload(
        stdout=f"wrote {len(data)} bytes to {p}",
        data={"path": str(p), "bytes": len(data), "append": args.append},
        duration_ms=duration_ms,
    )
