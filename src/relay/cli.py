from __future__ import annotations

import asyncio
import json
from dataclasses import dataclass
from pathlib import Path
from typing import Any

import click

from relay.backends import (
    AgentBackend,
    ClaudeCodeBackend,
    CodexBackend,
    CommandBackend,
    EscalatingBackend,
    RetryPolicy,
)
from relay.config import TRACKER_KINDS, RelayConfig, TierConfig, load_config, save_config
from relay.converter import EpicRecord, convert_and_record, load_epic
from relay.errors import RelayError
from relay.executor import Executor, preflight_checks
from relay.logs import configure_logging
from relay.plan import load_plan, plan_template, render_plan
from relay.planner import PlannerAgent
from relay.skills import SkillLibrary
from relay.skills.lint import lint_library, lint_skill
from relay.state import StateStore
from relay.tracker import BeadsTracker, LocalTracker, TaskTracker

CONFIG_OPTION_HELP = "Path to relay.toml (relative paths resolve against the current directory)."


@dataclass(slots=True)
class Runtime:
    repo_root: Path
    config_path: Path
    config: RelayConfig
    state: StateStore
    tracker: TaskTracker
    backend: EscalatingBackend


def _resolve_config_path(repo_root: Path, config_value: str) -> Path:
    config_path = Path(config_value)
    if not config_path.is_absolute():
        config_path = repo_root / config_path
    return config_path.resolve()


def _load_config_or_fail(config_path: Path) -> RelayConfig:
    try:
        return load_config(config_path)
    except (ValueError, TypeError) as exc:
        raise click.ClickException(f"Invalid config {config_path}: {exc}") from exc


def _build_single_backend(tier: TierConfig, repo_root: Path) -> AgentBackend:
    model = tier.model or None
    if tier.kind == "codex":
        return CodexBackend(tier.resolved_binary(), model=model, working_directory=repo_root)
    if tier.kind == "command":
        return CommandBackend(
            tier.resolved_binary(),
            model=model,
            model_flag=tier.model_flag,
            quiet_flag=tier.quiet_flag,
            cwd_flag=tier.cwd_flag,
            working_directory=repo_root,
        )
    return ClaudeCodeBackend(tier.resolved_binary(), model=model, working_directory=repo_root)


def _record_backend_event(state: StateStore, event: dict[str, Any]) -> None:
    state.record_event(event)


def _build_backend(config: RelayConfig, repo_root: Path, state: StateStore) -> EscalatingBackend:
    policy = RetryPolicy(
        max_retries=max(0, int(config.retry.max_retries)),
        backoff_seconds=max(0.0, float(config.retry.backoff_seconds)),
        timeout_seconds=max(5.0, float(config.retry.timeout_seconds)),
    )
    return EscalatingBackend(
        [(tier.name, _build_single_backend(tier, repo_root)) for tier in config.tiers],
        retry_policy=policy,
        event_hook=lambda event: _record_backend_event(state, event),
    )


def _build_tracker(config: RelayConfig, repo_root: Path, state: StateStore) -> TaskTracker:
    if config.tracker.kind == "local":
        return LocalTracker(state)
    return BeadsTracker(config.tracker.binary, working_directory=repo_root)


def _setup_logging(config: RelayConfig, repo_root: Path) -> None:
    verbose = bool(click.get_current_context().find_root().meta.get("relay.verbose"))
    level = "DEBUG" if verbose else config.logging.level
    log_file = None
    if config.logging.file:
        log_file = Path(config.logging.file)
        if not log_file.is_absolute():
            log_file = repo_root / log_file
    configure_logging(level, log_file)


def _load_runtime(repo_root: Path, config_path: Path) -> Runtime:
    config = _load_config_or_fail(config_path)
    _setup_logging(config, repo_root)
    state = StateStore(repo_root)
    return Runtime(
        repo_root=repo_root,
        config_path=config_path,
        config=config,
        state=state,
        tracker=_build_tracker(config, repo_root, state),
        backend=_build_backend(config, repo_root, state),
    )


def _runtime_from(config_value: str) -> Runtime:
    repo_root = Path.cwd().resolve()
    return _load_runtime(repo_root, _resolve_config_path(repo_root, config_value))


def _plan_key(repo_root: Path, plan_path: Path) -> str:
    resolved = plan_path.resolve()
    try:
        return str(resolved.relative_to(repo_root))
    except ValueError:
        return str(resolved)


def _write_or_echo(text: str, output: str | None) -> None:
    if output:
        Path(output).write_text(text, encoding="utf-8")
        click.echo(f"Wrote {output}")
    else:
        click.echo(text, nl=False)


def config_option(func):
    return click.option(
        "--config",
        "config_value",
        default="relay.toml",
        show_default=True,
        envvar="RELAY_CONFIG",
        help=CONFIG_OPTION_HELP,
    )(func)


@click.group()
@click.option("-v", "--verbose", is_flag=True, default=False, help="Log at DEBUG level.")
@click.pass_context
def cli(ctx: click.Context, verbose: bool) -> None:
    """Plan, track and execute agent work through escalating model tiers."""
    ctx.meta["relay.verbose"] = verbose


@cli.command("init")
@click.option("--tracker", "tracker_kind", type=click.Choice(TRACKER_KINDS), default=None)
@config_option
def init_command(tracker_kind: str | None, config_value: str) -> None:
    """Write relay.toml and create the .relay directory."""
    repo_root = Path.cwd().resolve()
    config_path = _resolve_config_path(repo_root, config_value)
    config = _load_config_or_fail(config_path)
    if tracker_kind:
        config.tracker.kind = tracker_kind  # type: ignore[assignment]
    save_config(config_path, config)
    StateStore(repo_root)

    click.echo(f"Initialized relay in {repo_root}")
    click.echo(f"Config: {config_path}")
    click.echo(f"Tracker: {config.tracker.kind}")
    click.echo("Tiers: " + " -> ".join(tier.name for tier in config.tiers))


@cli.group("plan")
def plan_group() -> None:
    """Create and validate plan documents."""


@plan_group.command("new")
@click.argument("goal")
@click.option("-o", "--output", default=None, help="Write the plan here instead of stdout.")
def plan_new_command(goal: str, output: str | None) -> None:
    """Print a plan skeleton for GOAL."""
    _write_or_echo(render_plan(plan_template(goal)), output)


@plan_group.command("draft")
@click.argument("goal")
@click.option("-o", "--output", default=None, help="Write the plan here instead of stdout.")
@config_option
def plan_draft_command(goal: str, output: str | None, config_value: str) -> None:
    """Ask the configured tiers to draft a plan for GOAL."""
    runtime = _runtime_from(config_value)
    planner = PlannerAgent(runtime.backend)
    try:
        text = asyncio.run(planner.draft_text(goal, {"project": runtime.config.project.name}))
    except RelayError as exc:
        raise click.ClickException(str(exc)) from exc
    _write_or_echo(text, output)


@plan_group.command("check")
@click.argument("plan_file", type=click.Path(dir_okay=False))
def plan_check_command(plan_file: str) -> None:
    """Validate PLAN_FILE and list its tasks in execution order."""
    try:
        plan = load_plan(Path(plan_file))
    except RelayError as exc:
        raise click.ClickException(str(exc)) from exc
    click.echo(f"Plan: {plan.display_title}")
    click.echo(f"Tasks: {len(plan.tasks)}")
    for task in plan.tasks:
        deps = f" (after {', '.join(task.depends_on)})" if task.depends_on else ""
        click.echo(f"  {task.id}: {task.title}{deps}")


def _convert(runtime: Runtime, plan_file: Path, force: bool) -> tuple[EpicRecord, bool]:
    plan = load_plan(plan_file)
    return convert_and_record(
        plan,
        runtime.tracker,
        runtime.state,
        priority=runtime.config.tracker.priority,
        plan_path=_plan_key(runtime.repo_root, plan_file),
        force=force,
        sync=runtime.config.tracker.sync,
    )


@cli.command("epic")
@click.argument("plan_file", type=click.Path(dir_okay=False))
@click.option("--force", is_flag=True, default=False, help="Create new issues even if recorded.")
@config_option
def epic_command(plan_file: str, force: bool, config_value: str) -> None:
    """Convert PLAN_FILE into a tracker epic with one subtask per task."""
    runtime = _runtime_from(config_value)
    try:
        record, created = _convert(runtime, Path(plan_file), force)
    except RelayError as exc:
        raise click.ClickException(str(exc)) from exc
    verb = "Created" if created else "Reusing"
    click.echo(f"{verb} epic {record.epic_id}: {record.plan_title}")
    for task_id, issue_id in record.task_map.items():
        click.echo(f"  {task_id} -> {issue_id}")


@cli.command("run")
@click.argument("target")
@click.option("--force", is_flag=True, default=False, help="Re-create the epic for a plan file.")
@config_option
def run_command(target: str, force: bool, config_value: str) -> None:
    """Execute TARGET (a plan file or a recorded epic id) task by task."""
    runtime = _runtime_from(config_value)
    try:
        target_path = Path(target)
        if target_path.is_file():
            epic, _ = _convert(runtime, target_path, force)
        else:
            epic = load_epic(runtime.state, target)
        executor = Executor(
            runtime.tracker,
            runtime.backend,
            runtime.state,
            runtime.config,
            runtime.repo_root,
        )
        summary = asyncio.run(executor.run(epic))
    except RelayError as exc:
        raise click.ClickException(str(exc)) from exc

    click.echo(f"Epic: {summary.epic_id}")
    click.echo(f"Run ID: {summary.run_id}")
    click.echo(f"Tasks: {summary.completed_tasks}/{summary.total_tasks}")
    for task_id, tier in summary.tiers_used.items():
        click.echo(f"  {task_id}: {tier}")
    if not summary.ok:
        detail = f"Task {summary.failed_task} failed on every tier." if summary.failed_task else ""
        raise click.ClickException(f"{detail} {summary.error}".strip())


@cli.command("status")
@click.argument("epic_id", required=False)
@config_option
def status_command(epic_id: str | None, config_value: str) -> None:
    """Show recorded epics and runs as JSON."""
    runtime = _runtime_from(config_value)
    if epic_id is None:
        payload = {
            "epics": {
                key: {"plan_title": value.get("plan_title"), "plan_path": value.get("plan_path")}
                for key, value in runtime.state.get_epics().items()
            },
            "runs": runtime.state.get_runs(),
            "events": {
                key: value
                for key, value in runtime.state.get_events().items()
                if key != "backend_events"
            },
        }
        click.echo(json.dumps(payload, ensure_ascii=False, indent=2))
        return

    try:
        epic = load_epic(runtime.state, epic_id)
        executor = Executor(
            runtime.tracker,
            runtime.backend,
            runtime.state,
            runtime.config,
            runtime.repo_root,
        )
        tasks = executor.status(epic)
    except RelayError as exc:
        raise click.ClickException(str(exc)) from exc
    runs = [run for run in runtime.state.get_runs().values() if run.get("epic_id") == epic_id]
    payload = {
        "epic": {key: value for key, value in epic.to_dict().items() if key != "plan_text"},
        "tasks": tasks,
        "runs": runs,
    }
    click.echo(json.dumps(payload, ensure_ascii=False, indent=2))


@cli.command("tiers")
@config_option
def tiers_command(config_value: str) -> None:
    """List escalation tiers in order and check their binaries."""
    repo_root = Path.cwd().resolve()
    config = _load_config_or_fail(_resolve_config_path(repo_root, config_value))
    checks = preflight_checks(config)
    for index, tier in enumerate(config.tiers, start=1):
        model = f" model={tier.model}" if tier.model else ""
        click.echo(f"{index}. {tier.name} [{tier.kind}] {tier.resolved_binary()}{model}")
    for check in checks:
        click.echo(f"{check['severity']:<7} {check['message']}")
    if any(check["severity"] == "error" for check in checks):
        raise click.ClickException("Preflight failed.")


@cli.group("skills")
def skills_group() -> None:
    """Browse the bundled skill documents."""


def _library(config_value: str) -> SkillLibrary:
    repo_root = Path.cwd().resolve()
    config = _load_config_or_fail(_resolve_config_path(repo_root, config_value))
    return SkillLibrary(repo_root, config.project.skills_dir)


@skills_group.command("list")
@click.option("--json", "as_json", is_flag=True, default=False)
@config_option
def skills_list_command(as_json: bool, config_value: str) -> None:
    skills = _library(config_value).list()
    if as_json:
        click.echo(json.dumps([skill.summary() for skill in skills], indent=2))
        return
    width = max((len(skill.name) for skill in skills), default=0)
    for skill in skills:
        click.echo(f"{skill.name:<{width}}  {skill.description}")


@skills_group.command("show")
@click.argument("name")
@config_option
def skills_show_command(name: str, config_value: str) -> None:
    try:
        skill = _library(config_value).get(name)
    except RelayError as exc:
        raise click.ClickException(str(exc)) from exc
    click.echo(skill.body)


@skills_group.command("lint")
@click.argument("name", required=False)
@config_option
def skills_lint_command(name: str | None, config_value: str) -> None:
    """Check skill documents for consistency problems."""
    library = _library(config_value)
    if name:
        try:
            skill = library.get(name)
        except RelayError as exc:
            raise click.ClickException(str(exc)) from exc
        stem = Path(skill.path).stem if skill.path.endswith(".md") else skill.name
        if stem == "SKILL":
            stem = Path(skill.path).parent.name
        issues = lint_skill(skill, stem=stem)
    else:
        issues = lint_library(library.load())
    for issue in issues:
        click.echo(issue.render())
    if issues:
        raise click.ClickException(f"{len(issues)} problem(s) found.")
    click.echo("All skill documents passed.")


__all__ = ["cli"]
