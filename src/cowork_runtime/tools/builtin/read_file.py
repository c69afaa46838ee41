"""
内置工具：read_file（无副作用，闸门直接放行）。

说明：
- 超过 max_bytes 时保留头部 + 尾部，中间以截断标记替代。
"""

from __future__ import annotations

import os
import time
from pathlib import Path
from typing import Optional, Tuple

from pydantic import BaseModel, ConfigDict, Field

from cowork_runtime.tools.protocol import (
    EXECUTION_FAILED,
    INVALID_ARGUMENTS,
    PERMISSION_DENIED,
    ToolCall,
    ToolResult,
    ToolSpec,
)
from cowork_runtime.tools.registry import ToolExecutionContext

_MARKER = b"\n...<truncated>\n"


class _ReadFileArgs(BaseModel):
    model_config = ConfigDict(extra="forbid")

    path: str = Field(min_length=1)
    max_bytes: Optional[int] = Field(default=None, ge=1)


READ_FILE_SPEC = ToolSpec(
    name="read_file",
    description="Read a text file and return its content (large files are truncated in the middle).",
    parameters={
        "type": "object",
        "properties": {
            "path": {"type": "string", "description": "File path, relative to the workspace or absolute."},
            "max_bytes": {"type": "integer", "minimum": 1, "description": "Maximum bytes to read (optional)."},
        },
        "required": ["path"],
        "additionalProperties": False,
    },
    requires_approval=False,
)


def _read_head_tail(path: Path, *, max_bytes: int) -> Tuple[str, bool]:
    """
    读取文件；超出 max_bytes 时做 head+tail 截断。

    返回：
    - text：UTF-8 解码文本（非法字节替换）
    - truncated：是否截断
    """

    if path.stat().st_size <= max_bytes:
        return path.read_bytes().decode("utf-8", errors="replace"), False

    head_len = max_bytes // 2
    tail_len = max_bytes - head_len
    with path.open("rb") as f:
        head = f.read(head_len)
        f.seek(-tail_len, os.SEEK_END)
        tail = f.read(tail_len)
    return (head + _MARKER + tail).decode("utf-8", errors="replace"), True


def read_file(call: ToolCall, ctx: ToolExecutionContext) -> ToolResult:
    """
    执行 read_file。

    返回：
    - ok=true：stdout 为文件文本（可能截断）
    - ok=false：invalid_arguments / permission_denied / execution_failed
    """

    start = time.monotonic()
    try:
        args = _ReadFileArgs.model_validate(call.args)
    except Exception as e:
        return ToolResult.error_payload(error_kind=INVALID_ARGUMENTS, stderr=str(e))

    try:
        p = ctx.resolve_path(args.path)
    except Exception as e:
        return ToolResult.error_payload(error_kind=PERMISSION_DENIED, stderr=str(e))

    if not p.is_file():
        return ToolResult.error_payload(error_kind=EXECUTION_FAILED, stderr=f"file not found: {args.path}", data={"path": args.path})

    max_bytes = args.max_bytes if args.max_bytes is not None else ctx.max_file_bytes
    try:
        text, truncated = _read_head_tail(p, max_bytes=max_bytes)
    except OSError as e:
        return ToolResult.error_payload(error_kind=EXECUTION_FAILED, stderr=str(e))

    duration_ms = int((time.monotonic() - start) * 1000)
    return ToolResult.ok_payload(stdout=text, data={"path": str(p)}, duration_ms=duration_ms, truncated=truncated)
