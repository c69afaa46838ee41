"""
ToolRegistry：工具注册表 + ToolExecutionContext（工具执行上下文）。

本模块提供：
- 注册：`register/get_spec/list_specs/get_handler`
- 路径边界：`ToolExecutionContext.resolve_path`（workspace_root + authorized_folders）

说明：
- 派发执行（参数校验、并发、取消）由 `cowork_runtime.tools.dispatcher.ToolDispatcher` 负责。
- 工具集合在运行时初始化时固定；热重载不在本模块职责内。
"""

from __future__ import annotations

from dataclasses import dataclass, field
from pathlib import Path
from typing import TYPE_CHECKING, Any, Awaitable, Callable, Dict, List, Optional, Union

from cowork_runtime.core.errors import UserError
from cowork_runtime.tools.protocol import ToolCall, ToolResult, ToolSpec

if TYPE_CHECKING:  # pragma: no cover
    from cowork_runtime.core.executor import Executor
    from cowork_runtime.skills.loader import SkillsLoader


ToolHandler = Callable[[ToolCall, "ToolExecutionContext"], Union[ToolResult, Awaitable[ToolResult]]]


@dataclass
class ToolExecutionContext:
    """
    Tool 执行上下文（由运行时构造，派发层为每次调用注入 cancel_checker）。

    字段：
    - workspace_root：相对路径解析基准目录
    - authorized_folders：额外允许访问的目录（绝对路径）
    - executor：可选；run_command 需要
    - skills：可选；list_skills/read_skill 需要
    - network_access：是否允许联网工具（web_fetch）
    - env：run_command 追加的环境变量
    - cancel_checker：取消检测回调（阻塞型工具应周期性检查）
    - command_timeout_ms：run_command 未指定 timeout_ms 时的默认值
    - max_file_bytes：read_file 默认最大读取字节数
    - fetch_timeout_sec / fetch_max_bytes：web_fetch 的超时与响应体上限
    - http_transport：可选；web_fetch 使用的 httpx transport（测试注入 MockTransport）
    """

    workspace_root: Path
    authorized_folders: List[Path] = field(default_factory=list)
    executor: Optional["Executor"] = None
    skills: Optional["SkillsLoader"] = None
    network_access: bool = False
    env: Optional[Dict[str, str]] = None
    cancel_checker: Optional[Callable[[], bool]] = None
    command_timeout_ms: int = 60_000
    max_file_bytes: int = 256 * 1024
    fetch_timeout_sec: float = 20.0
    fetch_max_bytes: int = 512 * 1024
    http_transport: Optional[Any] = None

    def allowed_roots(self) -> List[Path]:
        """返回允许访问的根目录列表（workspace_root 在前）。"""

        roots = [Path(self.workspace_root).resolve()]
        for folder in self.authorized_folders:
            p = Path(folder).resolve()
            if p not in roots:
                roots.append(p)
        return roots

    def resolve_path(self, path: str) -> Path:
        """
        将用户提供的 path 解析为绝对路径，并限制在允许的根目录下。

        参数：
        - path：相对（基于 workspace_root）或绝对路径

        返回：
        - 解析后的绝对路径（已 resolve）

        异常：
        - `UserError`：路径逃逸 workspace_root 与所有 authorized_folders
        """

        roots = self.allowed_roots()
        p = Path(path).expanduser()
        if not p.is_absolute():
            p = roots[0] / p
        p = p.resolve()
        if not any(p == r or p.is_relative_to(r) for r in roots):
            raise UserError(f"path is outside the workspace and authorized folders: {p}", code="PATH_NOT_ALLOWED")
        return p

    def is_cancelled(self) -> bool:
        if self.cancel_checker is None:
            return False
        try:
            return bool(self.cancel_checker())
        except Exception:
            return False

    def merged_env(self, extra: Optional[Dict[str, str]]) -> Optional[Dict[str, str]]:
        """合并 ctx.env 与调用方 env（后者覆盖前者）；两者都为空返回 None。"""

        base = dict(self.env or {})
        if extra:
            base.update({str(k): str(v) for k, v in extra.items()})
        return base if base else None


class ToolRegistry:
    """工具注册表（按注册顺序保存 spec 与 handler）。"""

    def __init__(self, *, ctx: ToolExecutionContext) -> None:
        self._ctx = ctx
        self._specs: Dict[str, ToolSpec] = {}
        self._handlers: Dict[str, ToolHandler] = {}

    @property
    def ctx(self) -> ToolExecutionContext:
        return self._ctx

    def register(self, spec: ToolSpec, handler: ToolHandler, *, override: bool = False) -> None:
        """
        注册工具。

        参数：
        - spec：工具规格
        - handler：工具执行函数（同步或 async）
        - override：是否允许覆盖同名工具；默认 False（重复注册抛 UserError）
        """

        name = spec.name
        if name in self._specs and not override:
            raise UserError(f"duplicate tool registration: {name}", code="DUPLICATE_TOOL")
        self._specs[name] = spec
        self._handlers[name] = handler

    def get_spec(self, name: str) -> ToolSpec:
        """获取工具规格；不存在则抛 `UserError`。"""

        try:
            return self._specs[name]
        except KeyError as e:
            raise UserError(f"unknown tool: {name}", code="UNKNOWN_TOOL") from e

    def find_spec(self, name: str) -> Optional[ToolSpec]:
        return self._specs.get(name)

    def get_handler(self, name: str) -> Optional[ToolHandler]:
        return self._handlers.get(name)

    def list_specs(self) -> List[ToolSpec]:
        """按注册顺序返回所有工具规格。"""

        return list(self._specs.values())

    def __contains__(self, name: object) -> bool:
        return name in self._specs
