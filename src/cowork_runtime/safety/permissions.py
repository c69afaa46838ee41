"""
权限记录（PermissionRecord）与其存储接口。

说明：
- PermissionRecord = (tool, path)；path 为 None 表示通配（对该工具的任意路径生效）。
- 存储是外部协作方（配置存储）；运行时只通过 `PermissionGate` 读写，不直接持有全局状态。
- 持久化格式不在本包职责内；`InMemoryPermissionStore` 供测试与嵌入使用。
"""

from __future__ import annotations

import threading
from typing import Any, List, Optional, Protocol, runtime_checkable

from pydantic import BaseModel, ConfigDict, field_validator

WILDCARD = "*"


class PermissionRecord(BaseModel):
    """
    一条“记住的授权”。

    字段：
    - tool：工具名
    - path：规范化后的绝对路径；None 表示通配（输入 `"*"` 或空串同样视为通配）
    """

    model_config = ConfigDict(extra="forbid", frozen=True)

    tool: str
    path: Optional[str] = None

    @field_validator("path", mode="before")
    @classmethod
    def _wildcard_to_none(cls, value: Any) -> Any:
        if value is None:
            return None
        s = str(value).strip()
        if not s or s == WILDCARD:
            return None
        return s

    @property
    def is_wildcard(self) -> bool:
        return self.path is None


@runtime_checkable
class PermissionStore(Protocol):
    """权限记录存储（协作方接口）。"""

    def get_permissions(self) -> List[PermissionRecord]:
        """返回全部权限记录（快照）。"""

        ...

    def add_permission(self, tool: str, path: Optional[str] = None) -> None:
        """新增一条记录（已存在时幂等）。"""

        ...

    def remove_permission(self, tool: str, path: Optional[str] = None) -> bool:
        """删除一条记录；返回是否确有删除。"""

        ...

    def clear_permissions(self) -> None:
        """清空全部记录。"""

        ...


class InMemoryPermissionStore:
    """
    进程内权限存储（线程安全）。

    约束：
    - 进程重启即丢失；需要持久化时由调用方实现 `PermissionStore` 并注入。
    """

    def __init__(self, records: Optional[List[PermissionRecord]] = None) -> None:
        self._lock = threading.Lock()
        self._records: List[PermissionRecord] = []
        for r in records or []:
            if r not in self._records:
                self._records.append(r)

    def get_permissions(self) -> List[PermissionRecord]:
        with self._lock:
            return list(self._records)

    def add_permission(self, tool: str, path: Optional[str] = None) -> None:
        rec = PermissionRecord(tool=tool, path=path)
        with self._lock:
            if rec not in self._records:
                self._records.append(rec)

    def remove_permission(self, tool: str, path: Optional[str] = None) -> bool:
        rec = PermissionRecord(tool=tool, path=path)
        with self._lock:
            if rec in self._records:
                self._records.remove(rec)
                return True
        return False

    def clear_permissions(self) -> None:
        with self._lock:
            self._records.clear()
