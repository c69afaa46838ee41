"""共享工具函数。"""
from __future__ import annotations

import uuid
from datetime import datetime, timezone


def now_rfc3339() -> str:
    """返回当前 UTC 时间的 RFC3339 字符串（以 Z 结尾）。"""
    return datetime.now(timezone.utc).isoformat().replace("+00:00", "Z")


def new_id(prefix: str) -> str:
    """生成带前缀的短 id（例如 `turn_3f2a...`）。"""
    return f"{prefix}_{uuid.uuid4().hex[:16]}"
