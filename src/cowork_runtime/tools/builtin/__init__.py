"""
内置工具（builtin tools）。

无副作用（闸门直接放行）：
- read_file / view_image / list_skills / read_skill

有副作用（需经权限闸门）：
- list_dir / write_file / run_command / web_fetch
"""

from __future__ import annotations

from cowork_runtime.tools.builtin.list_dir import LIST_DIR_SPEC, list_dir
from cowork_runtime.tools.builtin.read_file import READ_FILE_SPEC, read_file
from cowork_runtime.tools.builtin.run_command import RUN_COMMAND_SPEC, run_command
from cowork_runtime.tools.builtin.skills import LIST_SKILLS_SPEC, READ_SKILL_SPEC, list_skills, read_skill
from cowork_runtime.tools.builtin.view_image import VIEW_IMAGE_SPEC, view_image
from cowork_runtime.tools.builtin.web_fetch import WEB_FETCH_SPEC, web_fetch
from cowork_runtime.tools.builtin.write_file import WRITE_FILE_SPEC, write_file
from cowork_runtime.tools.registry import ToolRegistry

__all__ = ["register_builtin_tools"]

_BUILTIN_TOOL_ENTRIES = [
    (READ_FILE_SPEC, read_file),
    (WRITE_FILE_SPEC, write_file),
    (LIST_DIR_SPEC, list_dir),
    (RUN_COMMAND_SPEC, run_command),
    (VIEW_IMAGE_SPEC, view_image),
    (LIST_SKILLS_SPEC, list_skills),
    (READ_SKILL_SPEC, read_skill),
    (WEB_FETCH_SPEC, web_fetch),
]


def register_builtin_tools(registry: ToolRegistry) -> None:
    """把全部内置工具注册到 registry（重复注册抛 UserError）。"""

    for spec, handler in _BUILTIN_TOOL_ENTRIES:
        registry.register(spec, handler)
