"""
内置工具：web_fetch（有副作用，需经权限闸门）。

说明：
- 仅当 `workspace.network_access=true` 时可用；否则直接返回 permission_denied（fail-closed）。
- 只允许 http/https；响应体按 `fetch_max_bytes` 截断；流式读取期间检查取消。
"""

from __future__ import annotations

import time
from typing import Optional
from urllib.parse import urlparse

import httpx
from pydantic import BaseModel, ConfigDict, Field

from cowork_runtime.tools.protocol import (
    CANCELLED,
    EXECUTION_FAILED,
    INVALID_ARGUMENTS,
    PERMISSION_DENIED,
    ToolCall,
    ToolResult,
    ToolSpec,
)
from cowork_runtime.tools.registry import ToolExecutionContext


class _WebFetchArgs(BaseModel):
    """web_fetch 输入参数。"""

    model_config = ConfigDict(extra="forbid")

    url: str = Field(min_length=1)
    max_bytes: Optional[int] = Field(default=None, ge=1)


WEB_FETCH_SPEC = ToolSpec(
    name="web_fetch",
    description="Fetch a URL over HTTP(S) and return the response body as text.",
    parameters={
        "type": "object",
        "properties": {
            "url": {"type": "string", "description": "http:// or https:// URL."},
            "max_bytes": {"type": "integer", "minimum": 1, "description": "Maximum body bytes (optional)."},
        },
        "required": ["url"],
        "additionalProperties": False,
    },
    requires_approval=True,
)


def web_fetch(call: ToolCall, ctx: ToolExecutionContext) -> ToolResult:
    """
    执行 web_fetch。

    返回：
    - ok=true：stdout 为响应文本（可能截断），data 含 status_code/content_type
    - ok=false：permission_denied（未开启联网）/ invalid_arguments / execution_failed / cancelled
    """

    start = time.monotonic()
    try:
        args = _WebFetchArgs.model_validate(call.args)
    except Exception as e:
        return ToolResult.error_payload(error_kind=INVALID_ARGUMENTS, stderr=str(e))

    if not ctx.network_access:
        return ToolResult.error_payload(error_kind=PERMISSION_DENIED, stderr="network access is disabled")

    parsed = urlparse(args.url)
    if parsed.scheme not in ("http", "https") or not parsed.netloc:
        return ToolResult.error_payload(error_kind=INVALID_ARGUMENTS, stderr=f"unsupported url: {args.url}")

    limit = args.max_bytes or ctx.fetch_max_bytes
    body = bytearray()
    truncated = False
    try:
        with httpx.Client(timeout=httpx.Timeout(ctx.fetch_timeout_sec), transport=ctx.http_transport, follow_redirects=True) as client:
            with client.stream("GET", args.url) as resp:
                for chunk in resp.iter_bytes():
                    if ctx.is_cancelled():
                        return ToolResult.error_payload(error_kind=CANCELLED, stderr="cancelled")
                    body.extend(chunk)
                    if len(body) >= limit:
                        truncated = len(body) > limit
                        del body[limit:]
                        break
                status = resp.status_code
                content_type = resp.headers.get("content-type", "")
                encoding = resp.encoding or "utf-8"
    except httpx.HTTPError as e:
        return ToolResult.error_payload(error_kind=EXECUTION_FAILED, stderr=f"{type(e).__name__}: {e}", data={"url": args.url})

    duration_ms = int((time.monotonic() - start) * 1000)
    text = bytes(body).decode(encoding, errors="replace")
    data = {"url": args.url, "status_code": status, "content_type": content_type, "bytes": len(body)}
    if status >= 400:
        return ToolResult.error_payload(error_kind=EXECUTION_FAILED, stderr=f"HTTP {status}\n{text}", data=data, duration_ms=duration_ms)
    return ToolResult.ok_payload(stdout=text, data=data, duration_ms=duration_ms, truncated=truncated)
