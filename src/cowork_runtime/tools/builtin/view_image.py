"""
内置工具：view_image（无副作用）。

读取本地图片，作为图片附件随 tool_result 回注模型。
"""

from __future__ import annotations

import mimetypes
import time
from pathlib import Path

from pydantic import BaseModel, ConfigDict, Field

from cowork_runtime.core.messages import ImageBlock
from cowork_runtime.tools.protocol import (
    EXECUTION_FAILED,
    INVALID_ARGUMENTS,
    PERMISSION_DENIED,
    ToolCall,
    ToolResult,
    ToolSpec,
)
from cowork_runtime.tools.registry import ToolExecutionContext

_MAX_IMAGE_BYTES = 5 * 1024 * 1024
_SUPPORTED = {"image/png", "image/jpeg", "image/gif", "image/webp"}


class _ViewImageArgs(BaseModel):
    model_config = ConfigDict(extra="forbid")

    path: str = Field(min_length=1)


VIEW_IMAGE_SPEC = ToolSpec(
    name="view_image",
    description="Load a local image (png/jpeg/gif/webp) so the model can look at it.",
    parameters={
        "type": "object",
        "properties": {"path": {"type": "string", "description": "Image file path."}},
        "required": ["path"],
        "additionalProperties": False,
    },
    requires_approval=False,
)


def _guess_media_type(path: Path) -> str:
    guessed, _ = mimetypes.guess_type(path.name)
    return guessed or "application/octet-stream"


def view_image(call: ToolCall, ctx: ToolExecutionContext) -> ToolResult:
    """
    执行 view_image。

    返回：
    - ok=true：images 含一张图片附件；data 记录 media_type/bytes
    - ok=false：invalid_arguments / permission_denied / execution_failed
    """

    start = time.monotonic()
    try:
        args = _ViewImageArgs.model_validate(call.args)
    except Exception as e:
        return ToolResult.error_payload(error_kind=INVALID_ARGUMENTS, stderr=str(e))

    try:
        path = ctx.resolve_path(args.path)
    except Exception as e:
        return ToolResult.error_payload(error_kind=PERMISSION_DENIED, stderr=str(e))

    if not path.is_file():
        return ToolResult.error_payload(error_kind=EXECUTION_FAILED, stderr="image not found", data={"path": args.path})

    media_type = _guess_media_type(path)
    if media_type not in _SUPPORTED:
        return ToolResult.error_payload(
            error_kind=INVALID_ARGUMENTS,
            stderr=f"unsupported image type: {media_type}",
            data={"path": str(path)},
        )

    try:
        raw = path.read_bytes()
    except OSError as e:
        return ToolResult.error_payload(error_kind=EXECUTION_FAILED, stderr=str(e), data={"path": str(path)})
    if len(raw) > _MAX_IMAGE_BYTES:
        return ToolResult.error_payload(
            error_kind=EXECUTION_FAILED,
            stderr="image exceeds max bytes",
            data={"path": str(path), "bytes": len(raw), "max_bytes": _MAX_IMAGE_BYTES},
        )

    duration_ms = int((time.monotonic() - start) * 1000)
    return ToolResult.ok_payload(
        stdout=f"loaded image {path.name}",
        data={"path": str(path), "media_type": media_type, "bytes": len(raw)},
        duration_ms=duration_ms,
        images=[ImageBlock.from_bytes(raw, media_type=media_type)],
    )
