"""配置：内置默认值 + YAML overlay + pydantic 校验。"""

from __future__ import annotations

from cowork_runtime.config.loader import RuntimeConfig, load_config, load_config_dicts

__all__ = ["RuntimeConfig", "load_config", "load_config_dicts"]
