"""Skills：按名称查找的说明文档（SKILL.md + YAML frontmatter）。"""
