"""
Skill loader：扫描 skills 根目录，解析 SKILL.md 的 YAML frontmatter。

目录约定（两种布局均支持）：
- `<root>/<skill>/SKILL.md`
- `<root>/<skill>.md`（单文件 skill；无 frontmatter 时以文件名为 name、首个非空行为 description）

frontmatter 必填字段：`name`、`description`；其余字段进入 `metadata`。
"""

from __future__ import annotations

import logging
import threading
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any, Dict, Iterable, List, Optional, Tuple

import yaml

from cowork_runtime.core.errors import UserError

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class SkillLoadError(Exception):
    """Skill 加载错误（扫描时记录并跳过）。"""

    message: str
    path: Path

    def __str__(self) -> str:  # pragma: no cover
        return f"{self.message} ({self.path})"


@dataclass(frozen=True)
class Skill:
    """
    Skill 条目。

    字段：
    - name：唯一名称（不含空白）
    - description：一句话说明（空白已折叠）
    - path：来源文件
    - metadata：frontmatter 中除 name/description 外的字段
    """

    name: str
    description: str
    path: Path
    metadata: Dict[str, Any] = field(default_factory=dict)

    def to_dict(self) -> Dict[str, Any]:
        return {"name": self.name, "description": self.description, "path": str(self.path)}


def _collapse_whitespace(s: str) -> str:
    return " ".join(str(s).split())


def _split_frontmatter(text: str) -> Tuple[Dict[str, Any], str]:
    """
    拆分 frontmatter 与正文。

    约定：
    - frontmatter 以首行 `---` 开始、下一个 `---` 结束
    - 不满足或 YAML 非法时视为无 frontmatter
    """

    lines = text.splitlines(keepends=True)
    if not lines or lines[0].strip() != "---":
        return {}, text
    for i in range(1, len(lines)):
        if lines[i].strip() == "---":
            try:
                obj = yaml.safe_load("".join(lines[1:i])) or {}
            except yaml.YAMLError:
                return {}, text
            if not isinstance(obj, dict):
                return {}, text
            return obj, "".join(lines[i + 1 :])
    return {}, text


def _first_line(body: str) -> str:
    for line in body.splitlines():
        s = line.strip().lstrip("#").strip()
        if s:
            return s
    return ""


def load_skill_file(path: Path) -> Tuple[Skill, str]:
    """
    加载单个 skill 文件。

    返回：
    - (Skill, body)：body 为去掉 frontmatter 后的正文

    异常：
    - SkillLoadError：文件不可读或 name/description 非法
    """

    p = Path(path).resolve()
    try:
        raw = p.read_text(encoding="utf-8")
    except OSError as e:
        raise SkillLoadError(f"cannot read skill file: {e}", p) from None

    fm, body = _split_frontmatter(raw)
    default_name = p.parent.name if p.name == "SKILL.md" else p.stem
    name = fm.get("name", default_name)
    desc = fm.get("description", _first_line(body))
    if not isinstance(name, str) or not name.strip() or any(c.isspace() for c in name.strip()):
        raise SkillLoadError("skill name is missing or contains whitespace", p)
    if not isinstance(desc, str) or not desc.strip():
        raise SkillLoadError("skill description is missing", p)

    metadata = {k: v for k, v in fm.items() if k not in ("name", "description")}
    return Skill(name=name.strip(), description=_collapse_whitespace(desc), path=p, metadata=metadata), body


class SkillsLoader:
    """
    Skills 加载器（skill-content loader collaborator）。

    参数：
    - roots：skills 根目录列表（不存在的目录被忽略）

    说明：
    - 扫描结果缓存；`refresh()` 重新扫描。
    - 同名 skill：先扫描到的生效，后者记录 WARNING 并忽略。
    """

    def __init__(self, roots: Iterable[Path]) -> None:
        self._roots = [Path(r).expanduser() for r in roots]
        self._lock = threading.Lock()
        self._skills: Optional[Dict[str, Skill]] = None
        self.errors: List[SkillLoadError] = []

    def _candidates(self) -> List[Path]:
        out: List[Path] = []
        for root in self._roots:
            if not root.is_dir():
                continue
            for child in sorted(root.iterdir()):
                if child.name.startswith("."):
                    continue
                if child.is_dir() and (child / "SKILL.md").is_file():
                    out.append(child / "SKILL.md")
                elif child.is_file() and child.suffix.lower() == ".md":
                    out.append(child)
        return out

    def refresh(self) -> List[Skill]:
        """重新扫描所有根目录并返回 skills（按名称排序）。"""

        skills: Dict[str, Skill] = {}
        errors: List[SkillLoadError] = []
        for path in self._candidates():
            try:
                skill, _body = load_skill_file(path)
            except SkillLoadError as e:
                logger.warning("skipping skill %s: %s", e.path, e.message)
                errors.append(e)
                continue
            if skill.name in skills:
                logger.warning("duplicate skill name %r at %s (kept %s)", skill.name, path, skills[skill.name].path)
                continue
            skills[skill.name] = skill
        with self._lock:
            self._skills = skills
            self.errors = errors
        return sorted(skills.values(), key=lambda s: s.name)

    def list_skills(self) -> List[Skill]:
        with self._lock:
            cached = self._skills
        if cached is None:
            return self.refresh()
        return sorted(cached.values(), key=lambda s: s.name)

    def get(self, name: str) -> Optional[Skill]:
        for skill in self.list_skills():
            if skill.name == name:
                return skill
        return None

    def read_body(self, name: str) -> str:
        """
        读取 skill 正文（不含 frontmatter）。

        异常：
        - UserError(code="SKILL_NOT_FOUND")
        """

        skill = self.get(name)
        if skill is None:
            raise UserError(f"unknown skill: {name}", code="SKILL_NOT_FOUND")
        try:
            _skill, body = load_skill_file(skill.path)
        except SkillLoadError as e:
            raise UserError(e.message, code="SKILL_NOT_FOUND", details={"path": str(e.path)}) from None
        return body
