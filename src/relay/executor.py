from __future__ import annotations

import asyncio
import logging
import re
import shlex
import shutil
import subprocess
from dataclasses import asdict, dataclass, field
from datetime import UTC, datetime
from pathlib import Path
from typing import Any
from uuid import uuid4

from relay.backends.base import BackendExecutionError, EscalationExhaustedError
from relay.backends.escalation import EscalatingBackend
from relay.config import RelayConfig
from relay.converter import EpicRecord
from relay.errors import PlanError, StateError, TrackerError
from relay.plan import Plan, PlanTask, parse_plan
from relay.state import StateStore, utcnow_iso
from relay.tracker.base import IssueStatus, TaskTracker

logger = logging.getLogger(__name__)

SHELL_REQUIRED_PATTERN = re.compile(r"(?:\|\||&&|[|;<>`]|[$]\()")

EXECUTOR_PROMPT = """
You are implementing one task of a larger plan inside an existing repository.
Earlier tasks are already done and verified; build on them, do not redo them.
Only modify the files the task lists unless a listed acceptance criterion
cannot be met otherwise. Finish with a short summary of what you changed.
""".strip()


@dataclass(slots=True)
class TaskOutcome:
    task_id: str
    issue_id: str
    ok: bool
    tier: str | None = None
    content: str = ""
    error: str = ""
    escalations: int = 0


@dataclass(slots=True)
class RunSummary:
    run_id: str
    epic_id: str
    started_at: str
    ended_at: str
    total_tasks: int
    completed_tasks: int
    failed_task: str | None = None
    tiers_used: dict[str, str] = field(default_factory=dict)
    status: str = "complete"
    error: str = ""

    @property
    def ok(self) -> bool:
        return self.status == "complete"


def run_command(command: str, cwd: Path) -> dict[str, Any]:
    command_text = command.strip()
    if not command_text:
        return {
            "command": command,
            "exit_code": 1,
            "stdout_tail": "",
            "stderr_tail": "Command is empty.",
        }

    used_shell = bool(SHELL_REQUIRED_PATTERN.search(command_text))
    command_payload: str | list[str] = command_text
    if not used_shell:
        try:
            command_payload = shlex.split(command_text)
        except ValueError:
            used_shell = True
            command_payload = command_text

    try:
        proc = subprocess.run(
            command_payload,
            cwd=cwd,
            shell=used_shell,
            text=True,
            capture_output=True,
        )
    except FileNotFoundError as exc:
        return {"command": command, "exit_code": 127, "stdout_tail": "", "stderr_tail": str(exc)}
    return {
        "command": command,
        "exit_code": proc.returncode,
        "stdout_tail": proc.stdout.strip()[-1000:],
        "stderr_tail": proc.stderr.strip()[-1000:],
    }


def preflight_checks(config: RelayConfig) -> list[dict[str, Any]]:
    """Report which configured binaries are on PATH."""
    checks: list[dict[str, Any]] = []
    tier_results: list[dict[str, Any]] = []
    for tier in config.tiers:
        binary = tier.resolved_binary()
        tier_results.append(
            {
                "type": "tier",
                "name": tier.name,
                "binary": binary,
                "model": tier.model,
                "ok": shutil.which(binary) is not None,
            }
        )

    any_available = any(item["ok"] for item in tier_results)
    for item in tier_results:
        if item["ok"]:
            item["severity"] = "info"
            item["message"] = f"tier '{item['name']}' ({item['binary']}) is available."
        else:
            item["severity"] = "warning" if any_available else "error"
            item["message"] = f"tier '{item['name']}': {item['binary']} not found in PATH."
        checks.append(item)

    if config.tracker.kind == "beads":
        available = shutil.which(config.tracker.binary) is not None
        checks.append(
            {
                "type": "tracker",
                "name": config.tracker.kind,
                "binary": config.tracker.binary,
                "ok": available,
                "severity": "info" if available else "error",
                "message": (
                    f"tracker binary {config.tracker.binary} is available."
                    if available
                    else f"tracker binary {config.tracker.binary} not found in PATH."
                ),
            }
        )
    return checks


class Executor:
    """Runs the tasks of an epic through the escalation ladder."""

    def __init__(
        self,
        tracker: TaskTracker,
        backend: EscalatingBackend,
        state: StateStore,
        config: RelayConfig,
        repo_root: Path,
    ) -> None:
        self.tracker = tracker
        self.backend = backend
        self.state = state
        self.config = config
        self.repo_root = repo_root.resolve()

    @staticmethod
    def plan_for(epic: EpicRecord) -> Plan:
        plan = parse_plan(epic.plan_text)
        missing = [task_id for task_id in epic.task_map if plan.get(task_id) is None]
        if missing:
            raise PlanError(
                f"Epic {epic.epic_id} references tasks missing from its plan: {', '.join(missing)}"
            )
        return plan

    def task_statuses(self, epic: EpicRecord) -> dict[str, IssueStatus]:
        return {
            task_id: self.tracker.get_issue(issue_id).status
            for task_id, issue_id in epic.task_map.items()
        }

    def status(self, epic: EpicRecord) -> list[dict[str, Any]]:
        statuses = self.task_statuses(epic)
        return [
            {"task_id": task_id, "issue_id": issue_id, "status": statuses[task_id].value}
            for task_id, issue_id in epic.task_map.items()
        ]

    def build_prompt(
        self,
        plan: Plan,
        task: PlanTask,
        completed: list[tuple[PlanTask, str]],
    ) -> str:
        lines = [f"Goal: {plan.goal}", "", f"Task {task.id}: {task.title}"]
        if task.description:
            lines.extend(["", task.description])
        if task.files:
            lines.extend(["", "Files you may modify:"])
            lines.extend(f"- {path}" for path in task.files)
        if task.acceptance:
            lines.extend(["", "Acceptance criteria:"])
            lines.extend(f"- {item}" for item in task.acceptance)
        if completed:
            lines.extend(["", "Already completed:"])
            lines.extend(f"- {done.id}: {done.title} ({note})" for done, note in completed)
        return "\n".join(lines)

    async def _verify(self, tier: str, content: str) -> None:
        command = self.config.executor.verify_command
        if not command.strip():
            return
        result = await asyncio.to_thread(run_command, command, self.repo_root)
        if result["exit_code"] != 0:
            tail = result["stderr_tail"] or result["stdout_tail"]
            # Verification failures do not improve with the same tier.
            raise BackendExecutionError(
                f"verification `{command}` failed after tier {tier} "
                f"(exit {result['exit_code']}): {tail[-400:]}",
                backend=tier,
                exit_code=int(result["exit_code"]),
                retriable=False,
            )

    def _write_artifact(self, run_id: str, task: PlanTask, outcome: TaskOutcome) -> Path:
        run_dir = self.state.runs_dir / run_id
        run_dir.mkdir(parents=True, exist_ok=True)
        path = run_dir / f"{task.id}.md"
        header = [
            f"# {task.id}: {task.title}",
            "",
            f"- issue: {outcome.issue_id}",
            f"- tier: {outcome.tier or '-'}",
            f"- status: {'done' if outcome.ok else 'failed'}",
            "",
        ]
        body = outcome.content if outcome.ok else outcome.error
        path.write_text("\n".join(header) + body.strip() + "\n", encoding="utf-8")
        return path

    async def _execute_task(
        self,
        plan: Plan,
        task: PlanTask,
        issue_id: str,
        completed: list[tuple[PlanTask, str]],
    ) -> TaskOutcome:
        self.tracker.update_status(issue_id, IssueStatus.IN_PROGRESS)
        logger.info("task %s (%s) started", task.id, issue_id)
        try:
            result = await self.backend.run_unit(
                EXECUTOR_PROMPT,
                self.build_prompt(plan, task, completed),
                {"_working_directory": str(self.repo_root)},
                validate=self._verify,
                label=task.id,
            )
        except EscalationExhaustedError as exc:
            logger.error("task %s failed on every tier", task.id)
            return TaskOutcome(
                task_id=task.id,
                issue_id=issue_id,
                ok=False,
                error=str(exc),
                escalations=len(exc.attempts),
            )
        return TaskOutcome(
            task_id=task.id,
            issue_id=issue_id,
            ok=True,
            tier=result.tier,
            content=result.content,
            escalations=len(result.attempts),
        )

    async def _execute_batch(
        self,
        plan: Plan,
        batch: list[PlanTask],
        epic: EpicRecord,
        completed: list[tuple[PlanTask, str]],
    ) -> list[TaskOutcome]:
        if len(batch) == 1:
            task = batch[0]
            return [await self._execute_task(plan, task, epic.issue_for(task.id), completed)]

        semaphore = asyncio.Semaphore(max(1, int(self.config.executor.max_parallel_tasks)))
        snapshot = list(completed)

        async def _guarded(task: PlanTask) -> TaskOutcome:
            async with semaphore:
                return await self._execute_task(plan, task, epic.issue_for(task.id), snapshot)

        return list(await asyncio.gather(*(_guarded(task) for task in batch)))

    def _ready(
        self,
        plan: Plan,
        epic: EpicRecord,
        statuses: dict[str, IssueStatus],
        attempted: set[str],
    ) -> list[PlanTask]:
        ready: list[PlanTask] = []
        for task_id in epic.task_map:
            if task_id in attempted or statuses[task_id] == IssueStatus.CLOSED:
                continue
            task = plan.get(task_id)
            if task is None:
                continue
            if all(statuses.get(dep) == IssueStatus.CLOSED for dep in task.depends_on):
                ready.append(task)
        return ready

    async def run(self, epic: EpicRecord, *, run_id: str | None = None) -> RunSummary:
        if not epic.complete:
            raise StateError(
                f"Epic {epic.epic_id} was only partly converted; "
                "convert its plan again to finish it before running."
            )
        plan = self.plan_for(epic)
        run_id = run_id or f"run-{datetime.now(UTC).strftime('%Y%m%d%H%M%S')}-{uuid4().hex[:8]}"
        started_at = utcnow_iso()
        statuses = self.task_statuses(epic)
        parallel = max(1, int(self.config.executor.max_parallel_tasks))

        self.state.upsert_run(
            run_id,
            {
                "run_id": run_id,
                "epic_id": epic.epic_id,
                "status": "in_progress",
                "started_at": started_at,
                "tiers": self.backend.tier_names,
                "max_parallel_tasks": parallel,
            },
        )

        completed: list[tuple[PlanTask, str]] = []
        for task_id, status in statuses.items():
            task = plan.get(task_id)
            if status == IssueStatus.CLOSED and task is not None:
                completed.append((task, "done in an earlier run"))
        skipped = len(completed)
        if skipped:
            logger.info("resuming epic %s: %s task(s) already closed", epic.epic_id, skipped)

        summary = RunSummary(
            run_id=run_id,
            epic_id=epic.epic_id,
            started_at=started_at,
            ended_at=started_at,
            total_tasks=len(epic.task_map),
            completed_tasks=skipped,
        )
        attempted: set[str] = set()
        failures: list[TaskOutcome] = []

        try:
            while True:
                ready = self._ready(plan, epic, statuses, attempted)
                if not ready:
                    break
                batch = ready[:parallel]
                attempted.update(task.id for task in batch)
                outcomes = await self._execute_batch(plan, batch, epic, completed)

                for task, outcome in zip(batch, outcomes, strict=True):
                    self._write_artifact(run_id, task, outcome)
                    if outcome.ok:
                        self.tracker.close_issue(
                            outcome.issue_id, f"Completed by relay tier {outcome.tier}"
                        )
                        statuses[task.id] = IssueStatus.CLOSED
                        completed.append((task, f"tier {outcome.tier}"))
                        summary.completed_tasks += 1
                        summary.tiers_used[task.id] = str(outcome.tier)
                    else:
                        self.tracker.update_status(outcome.issue_id, IssueStatus.BLOCKED)
                        statuses[task.id] = IssueStatus.BLOCKED
                        failures.append(outcome)
                self.state.upsert_run(
                    run_id,
                    {
                        "completed_tasks": summary.completed_tasks,
                        "tiers_used": dict(summary.tiers_used),
                        "heartbeat_at": utcnow_iso(),
                    },
                )
                if failures and self.config.executor.stop_on_failure:
                    break
        except TrackerError:
            self.state.upsert_run(run_id, {"status": "failed", "ended_at": utcnow_iso()})
            raise

        summary.ended_at = utcnow_iso()
        if failures:
            summary.status = "failed"
            summary.failed_task = failures[0].task_id
            summary.error = failures[0].error
        elif summary.completed_tasks < summary.total_tasks:
            summary.status = "failed"
            summary.error = "Some tasks never became ready."
        self.state.upsert_run(run_id, asdict(summary))
        return summary
