"""
配置加载器（YAML）。

设计目标：
- 内置默认配置 `cowork_runtime/assets/default.yaml`，调用方 overlay 按顺序深度合并（后者覆盖前者）。
- 使用 pydantic 做 schema 校验；默认拒绝未知字段（避免拼写错误被静默吞掉）。
"""

from __future__ import annotations

from copy import deepcopy
from pathlib import Path
from typing import Any, Dict, Iterable, List, Literal, Mapping, MutableMapping, Optional

import yaml
from pydantic import BaseModel, ConfigDict, Field

from cowork_runtime.config.defaults import load_default_config_dict


def _deep_merge(base: MutableMapping[str, Any], overlay: Mapping[str, Any]) -> MutableMapping[str, Any]:
    """
    深度合并两个 dict（overlay 覆盖 base）。

    合并规则：
    - dict + dict：递归合并
    - 其它类型（含 list）：overlay 整体覆盖
    """

    for key, overlay_value in overlay.items():
        if key in base and isinstance(base[key], dict) and isinstance(overlay_value, Mapping):
            _deep_merge(base[key], overlay_value)  # type: ignore[arg-type]
            continue
        base[key] = deepcopy(overlay_value)
    return base


class RuntimeModelConfig(BaseModel):
    """模型选择（传给模型客户端的 ChatRequest.model）。"""

    model_config = ConfigDict(extra="forbid")

    name: str = "default"
    system_prompt: Optional[str] = None


class RuntimeRunConfig(BaseModel):
    """
    turn 运行参数。

    说明：
    - `max_tool_rounds`：单 turn 内 ToolPending 的最大次数；None 表示不限制。
      超过上限时本 turn 以 error 结束，历史回滚到 turn 开始前。
    """

    model_config = ConfigDict(extra="forbid")

    max_tool_rounds: Optional[int] = Field(default=50, ge=1)


class RuntimeSafetyConfig(BaseModel):
    """
    权限闸门配置。

    字段：
    - mode：无记录命中时的默认行为（ask：请求人类确认；allow：直接放行；deny：直接拒绝）
    - tool_allowlist：无需确认的工具名
    - tool_denylist：一律拒绝的工具名（优先于已记住的授权）
    """

    model_config = ConfigDict(extra="forbid")

    mode: Literal["ask", "allow", "deny"] = "ask"
    tool_allowlist: List[str] = Field(default_factory=list)
    tool_denylist: List[str] = Field(default_factory=list)


class RuntimeWorkspaceConfig(BaseModel):
    """
    工作区配置。

    字段：
    - root：工作目录（相对路径的解析基准）；None 表示进程当前目录
    - authorized_folders：额外授权访问的目录；非空时，目标路径不在 root 与这些目录下的调用会被闸门拒绝
    - network_access：是否允许联网工具
    """

    model_config = ConfigDict(extra="forbid")

    root: Optional[str] = None
    authorized_folders: List[str] = Field(default_factory=list)
    network_access: bool = False


class RuntimeToolsConfig(BaseModel):
    """内置工具的限额参数。"""

    model_config = ConfigDict(extra="forbid")

    max_file_bytes: int = Field(default=256 * 1024, ge=1)
    command_timeout_ms: int = Field(default=60_000, ge=1)
    fetch_timeout_sec: float = Field(default=20.0, gt=0)
    fetch_max_bytes: int = Field(default=512 * 1024, ge=1)


class RuntimeSkillsConfig(BaseModel):
    """Skills 根目录列表（`~` 会被展开）。"""

    model_config = ConfigDict(extra="forbid")

    roots: List[str] = Field(default_factory=list)


class RuntimeConfig(BaseModel):
    """运行时配置根对象。"""

    model_config = ConfigDict(extra="forbid")

    config_version: int = Field(default=1, ge=1)
    model: RuntimeModelConfig = Field(default_factory=RuntimeModelConfig)
    run: RuntimeRunConfig = Field(default_factory=RuntimeRunConfig)
    safety: RuntimeSafetyConfig = Field(default_factory=RuntimeSafetyConfig)
    workspace: RuntimeWorkspaceConfig = Field(default_factory=RuntimeWorkspaceConfig)
    tools: RuntimeToolsConfig = Field(default_factory=RuntimeToolsConfig)
    skills: RuntimeSkillsConfig = Field(default_factory=RuntimeSkillsConfig)

    def workspace_root(self) -> Path:
        """返回解析后的工作目录（未配置时为当前目录）。"""

        return Path(self.workspace.root or ".").expanduser().resolve()


def _load_yaml_file(path: Path) -> Dict[str, Any]:
    """读取 YAML 文件为 dict；空文件返回空 dict。"""

    if not path.exists():
        raise FileNotFoundError(f"config file not found: {path}")
    data = yaml.safe_load(path.read_text(encoding="utf-8"))
    if data is None:
        return {}
    if not isinstance(data, dict):
        raise ValueError(f"config root must be a mapping: {path}")
    return data


def load_config_dicts(config_dicts: Iterable[Mapping[str, Any]], *, include_defaults: bool = True) -> RuntimeConfig:
    """
    合并多个 dict 配置并校验。

    参数：
    - config_dicts：按顺序深度合并（后者覆盖前者）
    - include_defaults：是否以内置 default.yaml 作为最底层
    """

    merged: Dict[str, Any] = load_default_config_dict() if include_defaults else {}
    for overlay in config_dicts:
        if overlay:
            _deep_merge(merged, overlay)
    return RuntimeConfig.model_validate(merged)


def load_config(paths: Iterable[Path], *, include_defaults: bool = True) -> RuntimeConfig:
    """加载多个 YAML 文件（按顺序 overlay）并返回校验后的 `RuntimeConfig`。"""

    return load_config_dicts([_load_yaml_file(Path(p)) for p in paths], include_defaults=include_defaults)
