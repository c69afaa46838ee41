"""
内置默认配置加载器。

说明：
- 默认配置随 package 分发（`cowork_runtime/assets/default.yaml`），通过 `importlib.resources` 读取，
  不依赖仓库相对路径。
"""

from __future__ import annotations

from importlib.resources import files
from typing import Any, Dict

import yaml


def load_default_config_dict() -> Dict[str, Any]:
    """
    读取内置默认配置（YAML）并返回 dict。

    返回：
    - dict：作为 overlay 合并的最底层

    异常：
    - RuntimeError：内容不是 mapping(dict)
    """

    text = files("cowork_runtime.assets").joinpath("default.yaml").read_text(encoding="utf-8")
    obj = yaml.safe_load(text) or {}
    if not isinstance(obj, dict):
        raise RuntimeError("embedded default config root must be a mapping(dict)")
    return obj
