"""
内置工具：list_skills / read_skill（无副作用；通过 skill loader 查询）。
"""

from __future__ import annotations

from pydantic import BaseModel, ConfigDict, Field

from cowork_runtime.core.errors import UserError
from cowork_runtime.tools.protocol import EXECUTION_FAILED, INVALID_ARGUMENTS, ToolCall, ToolResult, ToolSpec
from cowork_runtime.tools.registry import ToolExecutionContext


class _ReadSkillArgs(BaseModel):
    model_config = ConfigDict(extra="forbid")

    name: str = Field(min_length=1)


LIST_SKILLS_SPEC = ToolSpec(
    name="list_skills",
    description="List the available skills (name and one-line description).",
    parameters={"type": "object", "properties": {}, "additionalProperties": False},
    requires_approval=False,
)

READ_SKILL_SPEC = ToolSpec(
    name="read_skill",
    description="Read the full instructions of a skill by name.",
    parameters={
        "type": "object",
        "properties": {"name": {"type": "string", "description": "Skill name as returned by list_skills."}},
        "required": ["name"],
        "additionalProperties": False,
    },
    requires_approval=False,
)


def list_skills(call: ToolCall, ctx: ToolExecutionContext) -> ToolResult:
    """返回所有 skills；未配置 loader 时返回空列表。"""

    skills = ctx.skills.list_skills() if ctx.skills is not None else []
    lines = [f"- {s.name}: {s.description}" for s in skills] or ["(no skills installed)"]
    return ToolResult.ok_payload(stdout="\n".join(lines), data={"skills": [s.to_dict() for s in skills]})


def read_skill(call: ToolCall, ctx: ToolExecutionContext) -> ToolResult:
    """读取 skill 正文；名称未知时 execution_failed。"""

    try:
        args = _ReadSkillArgs.model_validate(call.args)
    except Exception as e:
        return ToolResult.error_payload(error_kind=INVALID_ARGUMENTS, stderr=str(e))

    if ctx.skills is None:
        return ToolResult.error_payload(error_kind=EXECUTION_FAILED, stderr="skills are not configured")
    try:
        body = ctx.skills.read_body(args.name)
    except UserError as e:
        return ToolResult.error_payload(error_kind=EXECUTION_FAILED, stderr=e.message, data={"name": args.name})
    return ToolResult.ok_payload(stdout=body, data={"name": args.name})
