from __future__ import annotations

import re
from dataclasses import dataclass

from relay.skills import Skill

FENCE_RE = re.compile(r"^\s*(?P<marker>`{3,}|~{3,})")
GH_PR_RE = re.compile(r"\bgh\s+pr\s+(?P<sub>[a-z-]+)\b(?P<rest>.*)$")
FULL_PR_URL_RE = re.compile(r"https://github\.com/[\w.-]+/[\w.-]+/pull/\d+")
# Subcommands that address an existing pull request.
PR_TARGET_SUBCOMMANDS = {
    "view",
    "diff",
    "checks",
    "checkout",
    "comment",
    "review",
    "merge",
    "close",
    "reopen",
    "edit",
    "ready",
}


@dataclass(slots=True)
class LintIssue:
    skill: str
    line: int
    rule: str
    message: str

    def render(self) -> str:
        location = f"{self.skill}:{self.line}" if self.line else self.skill
        return f"{location}: [{self.rule}] {self.message}"


def _code_lines(body: str) -> tuple[list[tuple[int, str]], int | None]:
    """Return (line number, text) pairs inside fenced blocks and an unclosed fence start."""
    lines: list[tuple[int, str]] = []
    open_fence: int | None = None
    opened_with = ""
    for number, line in enumerate(body.splitlines(), start=1):
        match = FENCE_RE.match(line)
        if match and open_fence is None:
            open_fence, opened_with = number, match.group("marker")
            continue
        # Only a run of the opening character, at least as long, closes the block.
        if match and match.group("marker").startswith(opened_with):
            open_fence = None
            continue
        if open_fence is not None:
            lines.append((number, line))
    return lines, open_fence


def lint_skill(skill: Skill, *, stem: str | None = None) -> list[LintIssue]:
    issues: list[LintIssue] = []
    key = stem or skill.name

    if skill.front_matter_error:
        issues.append(LintIssue(key, 0, "front-matter", skill.front_matter_error))
    else:
        if not skill.metadata.get("name"):
            issues.append(LintIssue(key, 0, "front-matter", "missing 'name'"))
        if not skill.metadata.get("description"):
            issues.append(LintIssue(key, 0, "front-matter", "missing 'description'"))
    if stem is not None and skill.metadata.get("name") and skill.name != stem:
        issues.append(
            LintIssue(key, 0, "name-mismatch", f"name '{skill.name}' does not match file '{stem}'")
        )

    code_lines, open_fence = _code_lines(skill.body)
    if open_fence is not None:
        issues.append(LintIssue(key, open_fence, "unclosed-fence", "code block is never closed"))

    for number, line in code_lines:
        match = GH_PR_RE.search(line)
        if not match or match.group("sub") not in PR_TARGET_SUBCOMMANDS:
            continue
        if not FULL_PR_URL_RE.search(match.group("rest")):
            issues.append(
                LintIssue(
                    key,
                    number,
                    "pr-url",
                    f"`gh pr {match.group('sub')}` should reference the pull request by full URL",
                )
            )
    return issues


def lint_library(skills: dict[str, Skill]) -> list[LintIssue]:
    issues: list[LintIssue] = []
    for stem in sorted(skills):
        issues.extend(lint_skill(skills[stem], stem=stem))
    return issues
