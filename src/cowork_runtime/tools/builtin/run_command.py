"""
内置工具：run_command（有副作用，需经权限闸门）。

说明：
- 以 `/bin/sh -c <command>` 执行；cwd 默认为 workspace_root。
- 取消：执行器轮询 `ctx.cancel_checker`，turn 被中止时终止整个进程组。
"""

from __future__ import annotations

from typing import Dict, Optional

from pydantic import BaseModel, ConfigDict, Field

from cowork_runtime.tools.protocol import (
    CANCELLED,
    EXECUTION_FAILED,
    INVALID_ARGUMENTS,
    PERMISSION_DENIED,
    ToolCall,
    ToolResult,
    ToolResultPayload,
    ToolSpec,
)
from cowork_runtime.tools.registry import ToolExecutionContext


class _RunCommandArgs(BaseModel):
    """run_command 输入参数。"""

    model_config = ConfigDict(extra="forbid")

    command: str = Field(min_length=1)
    cwd: Optional[str] = None
    timeout_ms: Optional[int] = Field(default=None, ge=1)
    env: Optional[Dict[str, str]] = None


RUN_COMMAND_SPEC = ToolSpec(
    name="run_command",
    description="Run a shell command and return stdout, stderr and the exit code.",
    parameters={
        "type": "object",
        "properties": {
            "command": {"type": "string", "description": "Command line, executed with /bin/sh -c."},
            "cwd": {"type": "string", "description": "Working directory (default: workspace root)."},
            "timeout_ms": {"type": "integer", "minimum": 1, "description": "Timeout in milliseconds (optional)."},
            "env": {"type": "object", "description": "Extra environment variables (optional)."},
        },
        "required": ["command"],
        "additionalProperties": False,
    },
    requires_approval=True,
)


def run_command(call: ToolCall, ctx: ToolExecutionContext) -> ToolResult:
    """
    执行 run_command。

    返回：
    - ok=true：exit_code==0
    - ok=false：非零退出/超时 → execution_failed；被中止 → cancelled
    """

    try:
        args = _RunCommandArgs.model_validate(call.args)
    except Exception as e:
        return ToolResult.error_payload(error_kind=INVALID_ARGUMENTS, stderr=str(e))

    if ctx.executor is None:
        return ToolResult.error_payload(error_kind=EXECUTION_FAILED, stderr="command executor is not configured")

    try:
        cwd = ctx.resolve_path(args.cwd or ".")
    except Exception as e:
        return ToolResult.error_payload(error_kind=PERMISSION_DENIED, stderr=str(e))

    res = ctx.executor.run_shell(
        args.command,
        cwd=cwd,
        env=ctx.merged_env(args.env),
        timeout_ms=args.timeout_ms or ctx.command_timeout_ms,
        cancel_checker=ctx.cancel_checker,
    )

    error_kind: Optional[str] = None
    if not res.ok:
        error_kind = CANCELLED if res.error_kind == "cancelled" else EXECUTION_FAILED
    payload = ToolResultPayload(
        ok=res.ok,
        stdout=res.stdout,
        stderr=res.stderr,
        exit_code=res.exit_code,
        duration_ms=res.duration_ms,
        truncated=res.truncated,
        data={"cwd": str(cwd), "timeout": res.timeout, "reason": res.error_kind},
        error_kind=error_kind,
    )
    return ToolResult.from_payload(payload)
