"""
内置工具：list_dir。

说明：
- 目录列举可以越出当前工作区（授权目录），因此声明为需要审批：首次调用会触发确认。
- 不跟随 symlink 递归；忽略以 '.' 开头的条目。
"""

from __future__ import annotations

import time
from dataclasses import dataclass
from pathlib import Path
from typing import Dict, List, Tuple

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


class _ListDirArgs(BaseModel):
    """list_dir 输入参数。"""

    model_config = ConfigDict(extra="forbid")

    path: str = "."
    depth: int = Field(default=1, ge=1, le=8)
    limit: int = Field(default=200, ge=1)


LIST_DIR_SPEC = ToolSpec(
    name="list_dir",
    description="List directory entries (optionally recursive up to a depth).",
    parameters={
        "type": "object",
        "properties": {
            "path": {"type": "string", "description": "Directory to list (default: workspace root)."},
            "depth": {"type": "integer", "minimum": 1, "maximum": 8, "description": "Recursion depth (default 1)."},
            "limit": {"type": "integer", "minimum": 1, "description": "Maximum number of entries (default 200)."},
        },
        "additionalProperties": False,
    },
    requires_approval=True,
)


@dataclass(frozen=True)
class _Entry:
    rel_path: str
    type: str  # file|dir|symlink|other

    def to_dict(self) -> Dict[str, str]:
        return {"rel_path": self.rel_path, "type": self.type}

    def render(self) -> str:
        suffix = {"dir": "/", "symlink": "@", "other": "?"}.get(self.type, "")
        return f"{self.rel_path}{suffix}"


def _kind(p: Path) -> str:
    if p.is_symlink():
        return "symlink"
    if p.is_dir():
        return "dir"
    if p.is_file():
        return "file"
    return "other"


def _collect(root: Path, *, depth: int) -> List[_Entry]:
    """BFS 收集条目（按相对路径排序）。"""

    out: List[_Entry] = []
    queue: List[Tuple[Path, int]] = [(root, 1)]
    while queue:
        current, level = queue.pop(0)
        try:
            children = sorted(current.iterdir())
        except OSError:
            continue
        for child in children:
            if child.name.startswith("."):
                continue
            typ = _kind(child)
            out.append(_Entry(rel_path=child.relative_to(root).as_posix(), type=typ))
            if typ == "dir" and level < depth:
                queue.append((child, level + 1))
    out.sort(key=lambda e: e.rel_path)
    return out


def list_dir(call: ToolCall, ctx: ToolExecutionContext) -> ToolResult:
    """
    执行 list_dir。

    返回：
    - ok=true：stdout 为多行文本（目录以 `/` 结尾），data.entries 为结构化条目
    - ok=false：invalid_arguments / permission_denied / execution_failed
    """

    start = time.monotonic()
    try:
        args = _ListDirArgs.model_validate(call.args)
    except Exception as e:
        return ToolResult.error_payload(error_kind=INVALID_ARGUMENTS, stderr=str(e))

    try:
        root = ctx.resolve_path(args.path)
    except Exception as e:
        return ToolResult.error_payload(error_kind=PERMISSION_DENIED, stderr=str(e))

    if not root.is_dir():
        return ToolResult.error_payload(error_kind=EXECUTION_FAILED, stderr=f"not a directory: {args.path}", data={"path": args.path})

    entries = _collect(root, depth=args.depth)
    shown = entries[: args.limit]
    truncated = len(entries) > len(shown)
    lines = [f"Absolute path: {root}"] + [e.render() for e in shown]
    if truncated:
        lines.append(f"More than {args.limit} entries found")

    duration_ms = int((time.monotonic() - start) * 1000)
    return ToolResult.ok_payload(
        stdout="\n".join(lines) + "\n",
        data={"path": str(root), "total": len(entries), "entries": [e.to_dict() for e in shown]},
        duration_ms=duration_ms,
        truncated=truncated,
    )
