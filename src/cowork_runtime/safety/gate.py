"""
PermissionGate：决定一次工具调用是放行、拒绝还是请求人类确认。

决策顺序（先命中者生效）：
1. 工具声明为无副作用（`ToolSpec.requires_approval=False`）→ allow
2. 工具在 `safety.tool_denylist` → deny
3. 配置了 `workspace.authorized_folders` 且目标路径不在工作区与授权目录下 → deny
4. 已记住的授权：先精确匹配 (tool, 规范化路径)，再匹配 (tool, 通配) → allow
5. 工具在 `safety.tool_allowlist` 或 `safety.mode=allow` → allow；`safety.mode=deny` → deny
6. 其余 → ask（生成 PendingConfirmation）

说明：
- 闸门是权限存储唯一的读写入口；“记住”只在人类明确批准且 remember=true 时写入。
- 拒绝从不落盘（没有“记住拒绝”）。
"""

from __future__ import annotations

import json
import logging
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any, Callable, Dict, List, Literal, Optional

from cowork_runtime.config.loader import RuntimeSafetyConfig
from cowork_runtime.core.utils import new_id
from cowork_runtime.safety.permissions import PermissionRecord, PermissionStore
from cowork_runtime.tools.protocol import PERMISSION_DENIED, ToolCall, ToolResult, ToolSpec

logger = logging.getLogger(__name__)

GateAction = Literal["allow", "deny", "ask"]

PATH_ARG_KEYS = ("path", "dir_path", "cwd")
USER_DENIED = "user denied"


@dataclass(frozen=True)
class PendingConfirmation:
    """
    一次待人类确认的工具调用。

    字段：
    - id：关联 id（confirm_response 用它定位）
    - tool：工具名
    - description：展示给人类的一句话说明
    - args：原始参数
    - path：规范化后的目标路径（无路径参数时为 None）
    - turn_id / call_id：所属 turn 与 tool_use id
    """

    id: str
    tool: str
    description: str
    args: Dict[str, Any]
    path: Optional[str] = None
    turn_id: Optional[str] = None
    call_id: Optional[str] = None

    def to_dict(self) -> Dict[str, Any]:
        return {
            "id": self.id,
            "tool": self.tool,
            "description": self.description,
            "args": dict(self.args),
            "path": self.path,
            "turn_id": self.turn_id,
            "call_id": self.call_id,
        }


@dataclass
class GateDecision:
    """闸门决策输出。"""

    action: GateAction
    reason: str
    path: Optional[str] = None
    pending: Optional[PendingConfirmation] = None


def normalize_path(path: str, *, root: Path) -> str:
    """把相对路径基于 root 解析为绝对 POSIX 路径字符串（解析 `..` 与 symlink）。"""

    p = Path(str(path)).expanduser()
    if not p.is_absolute():
        p = Path(root) / p
    return p.resolve().as_posix()


def extract_target_path(args: Dict[str, Any]) -> Optional[str]:
    """取调用的目标路径参数（依次检查 path / dir_path / cwd）。"""

    for key in PATH_ARG_KEYS:
        value = args.get(key)
        if isinstance(value, str) and value.strip():
            return value
    return None


def describe_call(call: ToolCall, path: Optional[str]) -> str:
    """生成给人类看的一句话说明。"""

    command = call.args.get("command")
    if isinstance(command, str) and command:
        where = f" (in {path})" if path else ""
        return f"{call.name}: {command}{where}"
    if path:
        return f"{call.name}: {path}"
    url = call.args.get("url")
    if isinstance(url, str) and url:
        return f"{call.name}: {url}"
    return f"{call.name}: {json.dumps(call.args, ensure_ascii=False, sort_keys=True)}"


class PermissionGate:
    """
    权限闸门。

    参数：
    - get_spec：按工具名取 ToolSpec（未知工具返回 None，按“有副作用”处理）
    - store：权限记录存储（外部协作方）
    - safety：safety 配置（mode / allowlist / denylist）
    - workspace_root：相对路径的解析基准
    - authorized_folders：授权目录（与工具执行上下文共享同一个 list，授权变更即时生效）
    """

    def __init__(
        self,
        *,
        get_spec: Callable[[str], Optional[ToolSpec]],
        store: PermissionStore,
        safety: Optional[RuntimeSafetyConfig] = None,
        workspace_root: Path,
        authorized_folders: Optional[List[Path]] = None,
    ) -> None:
        self._get_spec = get_spec
        self._store = store
        self._safety = safety or RuntimeSafetyConfig()
        self._root = Path(workspace_root).resolve()
        self._authorized: List[Path] = authorized_folders if authorized_folders is not None else []

    @property
    def store(self) -> PermissionStore:
        return self._store

    @property
    def workspace_root(self) -> Path:
        return self._root

    def set_workspace_root(self, root: Path) -> None:
        """切换相对路径的解析基准（运行时切换工作目录时调用）。"""

        self._root = Path(root).resolve()

    def normalize(self, path: Optional[str]) -> Optional[str]:
        if path is None:
            return None
        return normalize_path(path, root=self._root)

    def _outside_authorized(self, path: str) -> bool:
        if not self._authorized:
            return False
        target = Path(path)
        roots = [self._root] + [Path(p).resolve() for p in self._authorized]
        return not any(target == r or target.is_relative_to(r) for r in roots)

    def _match_record(self, tool: str, path: Optional[str]) -> Optional[PermissionRecord]:
        records = [r for r in self._store.get_permissions() if r.tool == tool]
        if path is not None:
            for r in records:
                if r.path is not None and self.normalize(r.path) == path:
                    return r
        for r in records:
            if r.is_wildcard:
                return r
        return None

    def evaluate(self, call: ToolCall, *, turn_id: Optional[str] = None) -> GateDecision:
        """
        对单次工具调用做决策。

        返回：
        - GateDecision：action 为 allow / deny / ask；ask 时 `pending` 为新生成的 PendingConfirmation
        """

        spec = self._get_spec(call.name)
        if spec is not None and spec.side_effect_free:
            return GateDecision(action="allow", reason="side-effect-free tool")

        raw_path = extract_target_path(call.args)
        path = self.normalize(raw_path)

        if call.name in self._safety.tool_denylist:
            return GateDecision(action="deny", reason=f"tool {call.name} is denied by policy", path=path)

        if path is not None and self._outside_authorized(path):
            return GateDecision(action="deny", reason=f"path is outside the authorized folders: {path}", path=path)

        record = self._match_record(call.name, path)
        if record is not None:
            return GateDecision(action="allow", reason="remembered permission", path=path)

        if call.name in self._safety.tool_allowlist or self._safety.mode == "allow":
            return GateDecision(action="allow", reason="allowed by policy", path=path)
        if self._safety.mode == "deny":
            return GateDecision(action="deny", reason="denied by policy (safety.mode=deny)", path=path)

        pending = PendingConfirmation(
            id=new_id("confirm"),
            tool=call.name,
            description=describe_call(call, path),
            args=dict(call.args),
            path=path,
            turn_id=turn_id,
            call_id=call.call_id,
        )
        return GateDecision(action="ask", reason="confirmation required", path=path, pending=pending)

    def remember(self, tool: str, path: Optional[str] = None) -> PermissionRecord:
        """
        写入一条授权记录（仅在人类批准且 remember=true 时调用）。

        参数：
        - tool：工具名
        - path：目标路径；None 表示通配
        """

        normalized = self.normalize(path)
        self._store.add_permission(tool, normalized)
        logger.info("permission remembered: %s for %s", tool, normalized or "*")
        return PermissionRecord(tool=tool, path=normalized)

    def list_permissions(self) -> List[PermissionRecord]:
        return self._store.get_permissions()

    def revoke(self, tool: str, path: Optional[str] = None) -> bool:
        """撤销一条授权；返回是否确有删除。"""

        removed = self._store.remove_permission(tool, path)
        if not removed and path is not None:
            removed = self._store.remove_permission(tool, self.normalize(path))
        return removed

    def clear(self) -> None:
        self._store.clear_permissions()


def build_denied_result(reason: str = USER_DENIED) -> ToolResult:
    """把拒绝表示为工具失败结果（permission_denied），回注模型而不是抛异常。"""

    return ToolResult.failure(PERMISSION_DENIED, reason)
