from __future__ import annotations

import logging
from collections.abc import Callable
from dataclasses import dataclass, field
from typing import Any

from relay.errors import StateError, TrackerError
from relay.plan import Plan, PlanTask, render_plan
from relay.state import StateStore, utcnow_iso
from relay.tracker.base import TaskTracker

logger = logging.getLogger(__name__)


@dataclass(slots=True)
class EpicRecord:
    epic_id: str
    plan_title: str
    goal: str
    task_map: dict[str, str] = field(default_factory=dict)
    tracker: str = ""
    created_at: str = field(default_factory=utcnow_iso)
    plan_path: str | None = None
    plan_text: str = ""
    links: list[tuple[str, str]] = field(default_factory=list)
    complete: bool = True

    def issue_for(self, task_id: str) -> str:
        return self.task_map[task_id]

    def to_dict(self) -> dict[str, Any]:
        return {
            "epic_id": self.epic_id,
            "plan_title": self.plan_title,
            "goal": self.goal,
            # Stored as pairs so plan order survives any JSON tooling.
            "task_map": [[task_id, issue_id] for task_id, issue_id in self.task_map.items()],
            "tracker": self.tracker,
            "created_at": self.created_at,
            "plan_path": self.plan_path,
            "plan_text": self.plan_text,
            "links": [[task_id, dep] for task_id, dep in self.links],
            "complete": self.complete,
        }

    @classmethod
    def from_dict(cls, payload: dict[str, Any]) -> EpicRecord:
        raw_map = payload.get("task_map", [])
        if isinstance(raw_map, dict):
            task_map = {str(key): str(value) for key, value in raw_map.items()}
        else:
            task_map = {str(pair[0]): str(pair[1]) for pair in raw_map}
        return cls(
            epic_id=str(payload["epic_id"]),
            plan_title=str(payload.get("plan_title", "")),
            goal=str(payload.get("goal", "")),
            task_map=task_map,
            tracker=str(payload.get("tracker", "")),
            created_at=str(payload.get("created_at") or utcnow_iso()),
            plan_path=payload.get("plan_path"),
            plan_text=str(payload.get("plan_text", "")),
            links=[(str(pair[0]), str(pair[1])) for pair in payload.get("links", [])],
            complete=bool(payload.get("complete", True)),
        )


def describe_task(task: PlanTask) -> str:
    parts: list[str] = []
    if task.description:
        parts.append(task.description)
    if task.files:
        parts.append("Files:\n" + "\n".join(f"- {path}" for path in task.files))
    if task.acceptance:
        parts.append("Acceptance:\n" + "\n".join(f"- {item}" for item in task.acceptance))
    return "\n\n".join(parts)


def describe_epic(plan: Plan) -> str:
    if plan.context:
        return f"{plan.goal}\n\n{plan.context}"
    return plan.goal


Checkpoint = Callable[[EpicRecord], None]


def convert_plan(
    plan: Plan,
    tracker: TaskTracker,
    *,
    priority: int = 2,
    plan_path: str | None = None,
    record: EpicRecord | None = None,
    checkpoint: Checkpoint | None = None,
) -> EpicRecord:
    """Create an epic with one child issue per plan task, in plan order.

    Passing the ``record`` of an interrupted conversion continues it: issues
    and dependency edges already recorded are not created again. ``checkpoint``
    is called after every tracker write so an interruption loses nothing.
    """

    def _checkpoint() -> None:
        if checkpoint is not None:
            checkpoint(record)

    if record is None:
        epic = tracker.create_issue(
            plan.display_title,
            description=describe_epic(plan),
            issue_type="epic",
            priority=priority,
        )
        record = EpicRecord(
            epic_id=epic.id,
            plan_title=plan.display_title,
            goal=plan.goal,
            tracker=tracker.name,
            plan_path=plan_path,
            plan_text=render_plan(plan),
            complete=False,
        )
        _checkpoint()
    for task in plan.tasks:
        if task.id in record.task_map:
            continue
        issue = tracker.create_issue(
            f"{task.id}: {task.title}",
            description=describe_task(task),
            issue_type="task",
            parent=record.epic_id,
            priority=priority,
        )
        record.task_map[task.id] = issue.id
        _checkpoint()
    for task in plan.tasks:
        for dep in task.depends_on:
            if (task.id, dep) in record.links:
                continue
            tracker.add_dependency(record.task_map[task.id], record.task_map[dep])
            record.links.append((task.id, dep))
            _checkpoint()
    record.complete = True
    _checkpoint()
    logger.info("converted plan '%s' into epic %s", plan.display_title, record.epic_id)
    return record


def save_epic(state: StateStore, record: EpicRecord) -> None:
    state.put_epic(record.epic_id, record.to_dict())


def load_epic(state: StateStore, epic_id: str) -> EpicRecord:
    payload = state.get_epics().get(epic_id)
    if not isinstance(payload, dict):
        raise StateError(f"Unknown epic: {epic_id}")
    return EpicRecord.from_dict(payload)


def find_epic_for_plan(state: StateStore, plan_path: str) -> EpicRecord | None:
    matches = [
        EpicRecord.from_dict(payload)
        for payload in state.get_epics().values()
        if isinstance(payload, dict) and payload.get("plan_path") == plan_path
    ]
    if not matches:
        return None
    return max(matches, key=lambda record: record.created_at)


def convert_and_record(
    plan: Plan,
    tracker: TaskTracker,
    state: StateStore,
    *,
    priority: int = 2,
    plan_path: str | None = None,
    force: bool = False,
    sync: bool = True,
) -> tuple[EpicRecord, bool]:
    """Convert ``plan`` unless an epic for the same plan file is already recorded.

    An interrupted conversion of the same plan file is resumed rather than
    started over. Returns the record and whether new tracker issues were created.
    """
    existing: EpicRecord | None = None
    if plan_path and not force:
        existing = find_epic_for_plan(state, plan_path)
        if existing is not None and existing.complete:
            logger.info("reusing epic %s for %s", existing.epic_id, plan_path)
            return existing, False
        if existing is not None:
            logger.info(
                "resuming partial conversion of %s into epic %s", plan_path, existing.epic_id
            )
    record = convert_plan(
        plan,
        tracker,
        priority=priority,
        plan_path=plan_path,
        record=existing,
        checkpoint=lambda current: save_epic(state, current),
    )
    if sync:
        try:
            tracker.sync()
        except TrackerError as exc:
            logger.warning("tracker sync failed: %s", exc)
    return record, True
