import asyncio
import shutil
import sys
from collections.abc import AsyncIterator
from pathlib import Path
from typing import Any

import pytest

from relay.backends import EscalatingBackend, RetryPolicy
from relay.backends.base import AgentBackend, BackendExecutionError
from relay.config import RelayConfig, TierConfig
from relay.converter import EpicRecord, convert_and_record
from relay.errors import StateError
from relay.executor import Executor, preflight_checks, run_command
from relay.plan import Plan, PlanTask
from relay.state import StateStore
from relay.tracker import IssueStatus, LocalTracker


class ScriptedBackend(AgentBackend):
    def __init__(self, fail_on: set[str] | None = None, reply: str = "done") -> None:
        self.fail_on = fail_on or set()
        self.reply = reply
        self.prompts: list[str] = []
        self.active = 0
        self.peak = 0

    async def execute(
        self,
        system_prompt: str,
        user_prompt: str,
        context: dict[str, Any],
        tools: list[str] | None = None,
    ) -> AsyncIterator[str]:
        _ = system_prompt, tools
        assert context["_working_directory"]
        self.prompts.append(user_prompt)
        self.active += 1
        self.peak = max(self.peak, self.active)
        try:
            await asyncio.sleep(0.01)
        finally:
            self.active -= 1
        if any(f"Task {task_id}:" in user_prompt for task_id in self.fail_on):
            raise BackendExecutionError("exit 1", backend="scripted", exit_code=1)
        yield self.reply


def _linear_plan() -> Plan:
    return Plan(
        goal="Ship the export feature.",
        title="Export",
        tasks=[
            PlanTask(
                id="T1",
                title="Add writer",
                files=["src/export.py"],
                acceptance=["writes a header row"],
            ),
            PlanTask(id="T2", title="Add command", depends_on=["T1"]),
            PlanTask(id="T3", title="Document", depends_on=["T2"]),
        ],
    )


def _setup(
    tmp_path: Path,
    plan: Plan,
    tiers: list[tuple[str, AgentBackend]],
    config: RelayConfig | None = None,
) -> tuple[Executor, LocalTracker, StateStore, EpicRecord]:
    state = StateStore(tmp_path)
    tracker = LocalTracker(state)
    epic, _ = convert_and_record(plan, tracker, state, plan_path="plan.md")
    backend = EscalatingBackend(
        tiers,
        retry_policy=RetryPolicy(max_retries=0, backoff_seconds=0.0, timeout_seconds=5.0),
        event_hook=state.record_event,
    )
    executor = Executor(tracker, backend, state, config or RelayConfig.default(), tmp_path)
    return executor, tracker, state, epic


def _statuses(tracker: LocalTracker, epic: EpicRecord) -> dict[str, IssueStatus]:
    return {
        task_id: tracker.get_issue(issue_id).status for task_id, issue_id in epic.task_map.items()
    }


def test_sequential_run_closes_every_task(tmp_path: Path) -> None:
    fast = ScriptedBackend(reply="implemented")
    executor, tracker, state, epic = _setup(tmp_path, _linear_plan(), [("fast", fast)])

    summary = asyncio.run(executor.run(epic))

    assert summary.ok
    assert summary.completed_tasks == summary.total_tasks == 3
    assert summary.tiers_used == {"T1": "fast", "T2": "fast", "T3": "fast"}
    assert set(_statuses(tracker, epic).values()) == {IssueStatus.CLOSED}
    assert fast.peak == 1

    assert "Goal: Ship the export feature." in fast.prompts[0]
    assert "- src/export.py" in fast.prompts[0]
    assert "- writes a header row" in fast.prompts[0]
    assert "Already completed:" not in fast.prompts[0]
    assert "- T1: Add writer (tier fast)" in fast.prompts[1]

    artifact = state.runs_dir / summary.run_id / "T2.md"
    assert artifact.exists()
    assert "implemented" in artifact.read_text(encoding="utf-8")

    run = state.get_runs()[summary.run_id]
    assert run["status"] == "complete"
    assert run["epic_id"] == epic.epic_id
    assert run["tiers"] == ["fast"]


def test_failing_tier_escalates_for_that_task_only(tmp_path: Path) -> None:
    fast = ScriptedBackend(fail_on={"T2"})
    strong = ScriptedBackend()
    executor, tracker, state, epic = _setup(
        tmp_path, _linear_plan(), [("fast", fast), ("strong", strong)]
    )

    summary = asyncio.run(executor.run(epic))

    assert summary.ok
    assert summary.tiers_used == {"T1": "fast", "T2": "strong", "T3": "fast"}
    assert len(strong.prompts) == 1
    events = state.get_events()
    assert events["escalation_count"] == 1
    closed = tracker.get_issue(epic.issue_for("T2"))
    assert closed.status == IssueStatus.CLOSED


def test_failed_all_tiers_blocks_task_and_stops(tmp_path: Path) -> None:
    fast = ScriptedBackend(fail_on={"T2"})
    strong = ScriptedBackend(fail_on={"T2"})
    executor, tracker, state, epic = _setup(
        tmp_path, _linear_plan(), [("fast", fast), ("strong", strong)]
    )

    summary = asyncio.run(executor.run(epic))

    assert not summary.ok
    assert summary.status == "failed"
    assert summary.failed_task == "T2"
    assert summary.completed_tasks == 1
    assert "All escalation tiers failed for T2" in summary.error
    assert _statuses(tracker, epic) == {
        "T1": IssueStatus.CLOSED,
        "T2": IssueStatus.BLOCKED,
        "T3": IssueStatus.OPEN,
    }
    assert not any("Task T3:" in prompt for prompt in fast.prompts)
    artifact = (state.runs_dir / summary.run_id / "T2.md").read_text(encoding="utf-8")
    assert "- status: failed" in artifact
    assert state.get_runs()[summary.run_id]["failed_task"] == "T2"


def test_rerun_resumes_after_closed_tasks(tmp_path: Path) -> None:
    broken = ScriptedBackend(fail_on={"T2"})
    executor, tracker, state, epic = _setup(tmp_path, _linear_plan(), [("fast", broken)])
    asyncio.run(executor.run(epic))

    fixed = ScriptedBackend()
    resumed = Executor(
        tracker,
        EscalatingBackend([("fast", fixed)], retry_policy=RetryPolicy(backoff_seconds=0.0)),
        state,
        RelayConfig.default(),
        tmp_path,
    )
    summary = asyncio.run(resumed.run(epic))

    assert summary.ok
    assert summary.completed_tasks == 3
    assert list(summary.tiers_used) == ["T2", "T3"]
    assert len(fixed.prompts) == 2
    assert "- T1: Add writer (done in an earlier run)" in fixed.prompts[0]
    assert len(state.get_runs()) == 2


def test_continue_past_failure_when_configured(tmp_path: Path) -> None:
    plan = Plan(
        goal="g",
        tasks=[
            PlanTask(id="T1", title="breaks"),
            PlanTask(id="T2", title="independent"),
            PlanTask(id="T3", title="needs T1", depends_on=["T1"]),
        ],
    )
    config = RelayConfig.default()
    config.executor.stop_on_failure = False
    executor, tracker, _, epic = _setup(
        tmp_path, plan, [("fast", ScriptedBackend(fail_on={"T1"}))], config
    )

    summary = asyncio.run(executor.run(epic))

    assert summary.status == "failed"
    assert summary.failed_task == "T1"
    assert summary.tiers_used == {"T2": "fast"}
    assert _statuses(tracker, epic)["T3"] == IssueStatus.OPEN


def test_parallel_fan_out_dispatches_independent_tasks(tmp_path: Path) -> None:
    plan = Plan(
        goal="g",
        tasks=[
            PlanTask(id="T1", title="left"),
            PlanTask(id="T2", title="right"),
            PlanTask(id="T3", title="join", depends_on=["T1", "T2"]),
        ],
    )
    config = RelayConfig.default()
    config.executor.max_parallel_tasks = 2
    fast = ScriptedBackend()
    executor, tracker, _, epic = _setup(tmp_path, plan, [("fast", fast)], config)

    summary = asyncio.run(executor.run(epic))

    assert summary.ok
    assert fast.peak == 2
    assert list(summary.tiers_used) == ["T1", "T2", "T3"]
    assert "Task T3:" in fast.prompts[-1]
    assert set(_statuses(tracker, epic).values()) == {IssueStatus.CLOSED}


def test_verify_failure_escalates_without_retrying_tier(
    tmp_path: Path, monkeypatch: pytest.MonkeyPatch
) -> None:
    results = iter([1, 0, 0])
    commands: list[str] = []

    def fake_run_command(command: str, cwd: Path) -> dict[str, Any]:
        commands.append(command)
        return {
            "command": command,
            "exit_code": next(results),
            "stdout_tail": "",
            "stderr_tail": "1 failed",
        }

    monkeypatch.setattr("relay.executor.run_command", fake_run_command)
    plan = Plan(goal="g", tasks=[PlanTask(id="T1", title="one"), PlanTask(id="T2", title="two")])
    config = RelayConfig.default()
    config.executor.verify_command = "pytest -q"
    fast = ScriptedBackend()
    strong = ScriptedBackend()
    state = StateStore(tmp_path)
    tracker = LocalTracker(state)
    epic, _ = convert_and_record(plan, tracker, state)
    backend = EscalatingBackend(
        [("fast", fast), ("strong", strong)],
        retry_policy=RetryPolicy(max_retries=2, backoff_seconds=0.0, timeout_seconds=5.0),
    )

    summary = asyncio.run(Executor(tracker, backend, state, config, tmp_path).run(epic))

    assert summary.ok
    assert summary.tiers_used == {"T1": "strong", "T2": "fast"}
    assert len(fast.prompts) == 2
    assert commands == ["pytest -q"] * 3


def test_status_reports_tracker_state(tmp_path: Path) -> None:
    executor, _, _, epic = _setup(tmp_path, _linear_plan(), [("fast", ScriptedBackend())])

    rows = executor.status(epic)

    assert [row["task_id"] for row in rows] == ["T1", "T2", "T3"]
    assert {row["status"] for row in rows} == {"open"}


def test_partly_converted_epic_is_refused(tmp_path: Path) -> None:
    executor, _, _, epic = _setup(tmp_path, _linear_plan(), [("fast", ScriptedBackend())])
    epic.complete = False

    with pytest.raises(StateError, match="only partly converted"):
        asyncio.run(executor.run(epic))


def test_run_command_captures_exit_code(tmp_path: Path) -> None:
    ok = run_command(f'"{sys.executable}" -c "print(42)"', tmp_path)
    assert ok["exit_code"] == 0
    assert ok["stdout_tail"] == "42"

    missing = run_command("definitely-not-a-binary-xyz", tmp_path)
    assert missing["exit_code"] == 127

    assert run_command("   ", tmp_path)["exit_code"] == 1


def test_preflight_warns_when_some_tiers_missing(monkeypatch: pytest.MonkeyPatch) -> None:
    config = RelayConfig.default()
    config.tiers = [
        TierConfig(name="fast", kind="claude"),
        TierConfig(name="backup", kind="codex"),
    ]
    config.tracker.kind = "local"
    monkeypatch.setattr(
        shutil, "which", lambda binary: "/bin/claude" if binary == "claude" else None
    )

    checks = preflight_checks(config)

    assert [(check["name"], check["severity"]) for check in checks] == [
        ("fast", "info"),
        ("backup", "warning"),
    ]


def test_preflight_errors_when_nothing_available(monkeypatch: pytest.MonkeyPatch) -> None:
    monkeypatch.setattr(shutil, "which", lambda binary: None)

    checks = preflight_checks(RelayConfig.default())

    assert all(check["severity"] == "error" for check in checks)
    assert checks[-1]["type"] == "tracker"
