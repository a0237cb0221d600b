"""Skill documents: static Markdown guides to the external CLIs relay drives.

Bundled documents live in ``relay/skills/docs``. A repository can add or
override documents in ``.relay/skills/<name>.md`` (or
``.relay/skills/<name>/SKILL.md``); project documents win over bundled ones
with the same name. The directory can be moved with ``[project] skills_dir``
in ``relay.toml``.
"""

from __future__ import annotations

import difflib
import logging
import re
from dataclasses import dataclass, field
from importlib import resources
from pathlib import Path
from typing import Any

import yaml

from relay.errors import SkillNotFoundError

logger = logging.getLogger(__name__)

FRONT_MATTER_RE = re.compile(r"^---\s*\n(.*?)\n---\s*\n?(.*)$", re.DOTALL)
SKILL_FILENAME = "SKILL.md"
DEFAULT_SKILLS_DIR = ".relay/skills"


@dataclass(slots=True)
class Skill:
    name: str
    description: str
    body: str
    source: str = "bundled"
    path: str = ""
    tool: str = ""
    tags: list[str] = field(default_factory=list)
    metadata: dict[str, Any] = field(default_factory=dict)
    front_matter_error: str | None = None

    def summary(self) -> dict[str, Any]:
        return {
            "name": self.name,
            "description": self.description,
            "tool": self.tool,
            "tags": list(self.tags),
            "source": self.source,
        }


def parse_skill(content: str, *, stem: str, source: str, path: str) -> Skill:
    match = FRONT_MATTER_RE.match(content)
    if not match:
        return Skill(
            name=stem,
            description="",
            body=content.strip(),
            source=source,
            path=path,
            front_matter_error="missing front matter",
        )

    error: str | None = None
    try:
        metadata = yaml.safe_load(match.group(1)) or {}
    except yaml.YAMLError as exc:
        metadata = {}
        error = f"invalid YAML front matter: {exc}"
    if not isinstance(metadata, dict):
        metadata = {}
        error = "front matter is not a mapping"

    tags_raw = metadata.get("tags", [])
    if isinstance(tags_raw, str):
        tags = [tag.strip() for tag in tags_raw.split(",") if tag.strip()]
    else:
        tags = [str(tag) for tag in tags_raw or []]

    return Skill(
        name=str(metadata.get("name") or stem),
        description=str(metadata.get("description") or ""),
        body=match.group(2).strip(),
        source=source,
        path=path,
        tool=str(metadata.get("tool") or ""),
        tags=tags,
        metadata=metadata,
        front_matter_error=error,
    )


class SkillLibrary:
    def __init__(
        self, project_root: Path | None = None, skills_dir: str = DEFAULT_SKILLS_DIR
    ) -> None:
        self.project_root = project_root
        self.skills_dir = skills_dir
        self._skills: dict[str, Skill] | None = None

    @property
    def project_skills_path(self) -> Path | None:
        if self.project_root is None:
            return None
        return self.project_root / self.skills_dir

    def _bundled(self) -> dict[str, Skill]:
        skills: dict[str, Skill] = {}
        docs = resources.files("relay.skills").joinpath("docs")
        for entry in sorted(docs.iterdir(), key=lambda item: item.name):
            if not entry.name.endswith(".md"):
                continue
            stem = entry.name[: -len(".md")]
            skills[stem] = parse_skill(
                entry.read_text(encoding="utf-8"),
                stem=stem,
                source="bundled",
                path=f"relay/skills/docs/{entry.name}",
            )
        return skills

    def _project(self) -> dict[str, Skill]:
        skills: dict[str, Skill] = {}
        base = self.project_skills_path
        if base is None or not base.is_dir():
            return skills
        for entry in sorted(base.iterdir()):
            if entry.is_file() and entry.suffix == ".md":
                stem, path = entry.stem, entry
            elif entry.is_dir() and (entry / SKILL_FILENAME).is_file():
                stem, path = entry.name, entry / SKILL_FILENAME
            else:
                continue
            skills[stem] = parse_skill(
                path.read_text(encoding="utf-8"),
                stem=stem,
                source="project",
                path=str(path),
            )
        return skills

    def load(self, reload: bool = False) -> dict[str, Skill]:
        if self._skills is not None and not reload:
            return self._skills
        skills = self._bundled()
        for stem, skill in self._project().items():
            if stem in skills:
                logger.info("project skill '%s' overrides bundled document", stem)
            skills[stem] = skill
        self._skills = skills
        logger.debug("loaded %s skill documents", len(skills))
        return skills

    def list(self) -> list[Skill]:
        return [self.load()[name] for name in sorted(self.load())]

    def get(self, name: str) -> Skill:
        skills = self.load()
        key = name.strip().lower()
        if key in skills:
            return skills[key]
        for skill in skills.values():
            if skill.name == key:
                return skill
        suggestions = difflib.get_close_matches(key, list(skills), n=3, cutoff=0.5)
        raise SkillNotFoundError(name, suggestions)


__all__ = ["Skill", "SkillLibrary", "parse_skill"]
