"""Plan documents.

A plan is a Markdown file with a title, a goal, optional context and an
ordered list of tasks. Each task names the files it may touch, its acceptance
criteria and the earlier tasks it depends on::

    # Plan: Add export command

    ## Goal
    Users can export reports as CSV.

    ## Tasks

    ### T1: Add CSV writer
    Write rows with the stdlib csv module.

    Files:
    - src/app/export.py

    Acceptance:
    - header row matches the report columns

    ### T2: Wire the command
    Depends on: T1
"""

from __future__ import annotations

import re
from dataclasses import dataclass, field
from pathlib import Path

from relay.errors import PlanError

TITLE_RE = re.compile(r"^#\s+(?:plan\s*:\s*)?(?P<title>.+?)\s*$", re.IGNORECASE)
SECTION_RE = re.compile(r"^##\s+(?P<name>.+?)\s*$")
TASK_RE = re.compile(
    r"^###\s+(?:task\s+)?(?:(?P<id>[A-Za-z]*-?\d+[\w.-]*)\s*[:.)]\s+)?(?P<title>.+?)\s*$",
    re.IGNORECASE,
)
LABEL_RE = re.compile(
    r"^\**(?P<label>files|acceptance(?:\s+criteria)?|depends\s+on)\s*:\**\s*(?P<rest>.*)$",
    re.IGNORECASE,
)
BULLET_RE = re.compile(r"^(?:[-*+]|\d+[.)])\s+(?P<item>.+)$")
NO_DEPENDENCIES = {"", "none", "-", "n/a"}


@dataclass(slots=True)
class PlanTask:
    id: str
    title: str
    description: str = ""
    files: list[str] = field(default_factory=list)
    acceptance: list[str] = field(default_factory=list)
    depends_on: list[str] = field(default_factory=list)


@dataclass(slots=True)
class Plan:
    goal: str
    title: str = ""
    tasks: list[PlanTask] = field(default_factory=list)
    context: str = ""

    @property
    def task_ids(self) -> list[str]:
        return [task.id for task in self.tasks]

    def get(self, task_id: str) -> PlanTask | None:
        for task in self.tasks:
            if task.id == task_id:
                return task
        return None

    @property
    def display_title(self) -> str:
        if self.title:
            return self.title
        first_line = self.goal.strip().splitlines()[0] if self.goal.strip() else "Untitled plan"
        return first_line[:80]


def normalize_task_id(raw: str) -> str:
    value = raw.strip().strip("`*").rstrip(".:")
    if value.isdigit():
        return f"T{int(value)}"
    return value


def _split_inline(rest: str) -> list[str]:
    return [item.strip().strip("`") for item in rest.split(",") if item.strip()]


def _parse_dependencies(rest: str) -> list[str]:
    if rest.strip().lower() in NO_DEPENDENCIES:
        return []
    return [normalize_task_id(item) for item in _split_inline(rest)]


class _TaskBuilder:
    def __init__(self, task_id: str, title: str) -> None:
        self.task = PlanTask(id=task_id, title=title)
        self.description: list[str] = []
        self.list_target: list[str] | None = None

    def feed(self, line: str) -> None:
        stripped = line.strip()
        label_match = LABEL_RE.match(stripped)
        if label_match:
            label = label_match.group("label").lower()
            rest = label_match.group("rest")
            if label.startswith("depends"):
                self.task.depends_on.extend(_parse_dependencies(rest))
                self.list_target = self.task.depends_on
                return
            target = self.task.files if label == "files" else self.task.acceptance
            target.extend(_split_inline(rest) if label == "files" else [rest] if rest else [])
            self.list_target = target
            return

        bullet = BULLET_RE.match(stripped)
        if bullet and self.list_target is not None:
            item = bullet.group("item").strip()
            if self.list_target is self.task.depends_on:
                self.list_target.extend(_parse_dependencies(item))
            elif self.list_target is self.task.files:
                self.list_target.append(item.strip("`"))
            else:
                self.list_target.append(item)
            return

        if not stripped:
            self.description.append("")
            return
        self.list_target = None
        self.description.append(line.rstrip())

    def build(self) -> PlanTask:
        self.task.description = "\n".join(self.description).strip()
        return self.task


def parse_plan(text: str) -> Plan:
    title = ""
    section: str | None = None
    goal_lines: list[str] = []
    context_lines: list[str] = []
    tasks: list[PlanTask] = []
    builder: _TaskBuilder | None = None
    in_fence = False

    def _finish_task() -> None:
        nonlocal builder
        if builder is not None:
            tasks.append(builder.build())
            builder = None

    for line in text.splitlines():
        stripped = line.strip()
        if stripped.startswith("```"):
            in_fence = not in_fence

        if not in_fence and not title and section is None and stripped.startswith("# "):
            match = TITLE_RE.match(stripped)
            if match:
                title = match.group("title")
            continue

        section_match = SECTION_RE.match(stripped) if not in_fence else None
        if section_match:
            _finish_task()
            name = section_match.group("name").strip().rstrip(":").lower()
            if name in {"goal", "objective"}:
                section = "goal"
            elif name in {"context", "background", "notes"}:
                section = "context"
            elif name in {"tasks", "steps"}:
                section = "tasks"
            else:
                section = "context"
                if context_lines and context_lines[-1].strip():
                    context_lines.append("")
                context_lines.append(f"{section_match.group('name').strip()}:")
            continue

        if section != "tasks" and not in_fence:
            # A task heading with an explicit id opens the task list on its own.
            loose_match = TASK_RE.match(stripped)
            if loose_match and loose_match.group("id"):
                section = "tasks"

        if section == "tasks":
            task_match = TASK_RE.match(stripped) if not in_fence else None
            if task_match:
                _finish_task()
                raw_id = task_match.group("id")
                task_id = normalize_task_id(raw_id) if raw_id else f"T{len(tasks) + 1}"
                builder = _TaskBuilder(task_id, task_match.group("title").strip())
                continue
            if builder is not None:
                builder.feed(line)
            continue

        if section == "goal":
            goal_lines.append(line.rstrip())
        elif section == "context":
            context_lines.append(line.rstrip())

    _finish_task()
    return Plan(
        goal="\n".join(goal_lines).strip(),
        title=title,
        tasks=tasks,
        context="\n".join(context_lines).strip(),
    )


def render_plan(plan: Plan) -> str:
    lines = [f"# Plan: {plan.display_title}", "", "## Goal", plan.goal.strip(), ""]
    if plan.context.strip():
        lines.extend(["## Context", plan.context.strip(), ""])
    lines.extend(["## Tasks", ""])
    for task in plan.tasks:
        lines.append(f"### {task.id}: {task.title}")
        if task.description.strip():
            lines.append(task.description.strip())
            lines.append("")
        if task.files:
            lines.append("Files:")
            lines.extend(f"- {path}" for path in task.files)
            lines.append("")
        if task.acceptance:
            lines.append("Acceptance:")
            lines.extend(f"- {criterion}" for criterion in task.acceptance)
            lines.append("")
        if task.depends_on:
            lines.append(f"Depends on: {', '.join(task.depends_on)}")
            lines.append("")
        if lines[-1] != "":
            lines.append("")
    return "\n".join(lines).rstrip() + "\n"


def _find_cycle(plan: Plan) -> list[str] | None:
    graph = {task.id: list(task.depends_on) for task in plan.tasks}
    visiting: list[str] = []
    done: set[str] = set()

    def _visit(node: str) -> list[str] | None:
        if node in done:
            return None
        if node in visiting:
            return [*visiting[visiting.index(node) :], node]
        visiting.append(node)
        for dep in graph.get(node, []):
            cycle = _visit(dep)
            if cycle:
                return cycle
        visiting.pop()
        done.add(node)
        return None

    for task_id in graph:
        cycle = _visit(task_id)
        if cycle:
            return cycle
    return None


def validate_plan(plan: Plan) -> None:
    if not plan.goal.strip():
        raise PlanError("Plan has no goal.")
    if not plan.tasks:
        raise PlanError("Plan has no tasks.")

    positions: dict[str, int] = {}
    for index, task in enumerate(plan.tasks):
        if task.id in positions:
            raise PlanError(f"Duplicate task id: {task.id}")
        if not task.title.strip():
            raise PlanError(f"Task {task.id} has no title.")
        positions[task.id] = index

    for task in plan.tasks:
        for dep in task.depends_on:
            if dep == task.id:
                raise PlanError(f"Task {task.id} depends on itself.")
            if dep not in positions:
                raise PlanError(f"Task {task.id} depends on unknown task {dep}.")

    cycle = _find_cycle(plan)
    if cycle:
        raise PlanError(f"Dependency cycle: {' -> '.join(cycle)}")

    for task in plan.tasks:
        for dep in task.depends_on:
            if positions[dep] > positions[task.id]:
                raise PlanError(
                    f"Task {task.id} depends on {dep}, which comes later in the plan. "
                    "Reorder the tasks so dependencies come first."
                )


def load_plan(path: Path) -> Plan:
    if not path.exists():
        raise PlanError(f"Plan file not found: {path}")
    plan = parse_plan(path.read_text(encoding="utf-8"))
    validate_plan(plan)
    return plan


def plan_template(goal: str) -> Plan:
    return Plan(
        goal=goal.strip(),
        title=goal.strip().splitlines()[0][:80] if goal.strip() else "",
        tasks=[
            PlanTask(
                id="T1",
                title="Describe the first change",
                description="What to change and why.",
                files=["path/to/file.py"],
                acceptance=["The behaviour that proves the task is done"],
            ),
            PlanTask(
                id="T2",
                title="Describe the follow-up change",
                description="Builds on T1.",
                files=["tests/test_file.py"],
                acceptance=["Tests cover the new behaviour"],
                depends_on=["T1"],
            ),
        ],
    )
