from __future__ import annotations

import logging
import re
from typing import Any

from relay.backends.base import AgentBackend, BackendExecutionError
from relay.backends.escalation import EscalatingBackend
from relay.errors import PlanError
from relay.plan import Plan, PlanTask, parse_plan, render_plan, validate_plan

logger = logging.getLogger(__name__)

MAX_PLAN_STEPS = 24
STEP_RE = re.compile(r"^(?:[-*]|\d+[.)])\s+(.+)$")
TASK_HEADING_PREFIX = "### "

PLANNER_PROMPT = """
You are a planning assistant. Turn the goal into an implementation plan that
another agent will execute one task at a time, each task building on verified
prior work.

Reply with Markdown only, in exactly this shape:

# Plan: <short title>

## Goal
<one paragraph restating the goal>

## Tasks

### T1: <imperative task title>
<what to change and why>

Files:
- <path the task may touch>

Acceptance:
- <observable criterion>

Depends on: <earlier task ids, comma separated, or omit the line>

Keep tasks small, ordered so that dependencies always come first, and never
reference a later task.
""".strip()


def _extract_steps(content: str) -> list[str]:
    steps: list[str] = []
    for raw_line in content.splitlines():
        match = STEP_RE.match(raw_line.strip())
        if match:
            steps.append(match.group(1).strip())
    return steps[:MAX_PLAN_STEPS]


class PlannerAgent:
    """Drafts a plan document for a goal through a backend."""

    role = "planner"

    def __init__(self, backend: AgentBackend) -> None:
        self.backend = backend
        self.system_prompt = PLANNER_PROMPT

    async def _ask(self, instruction: str, context: dict[str, Any]) -> str:
        chunks: list[str] = []
        async for chunk in self.backend.execute(
            system_prompt=self.system_prompt,
            user_prompt=instruction,
            context=context,
        ):
            chunks.append(chunk)
        return "".join(chunks).strip()

    def plan_from_reply(self, goal: str, reply: str) -> Plan:
        plan = parse_plan(reply)
        if not plan.goal:
            plan.goal = goal.strip()
        if not plan.tasks:
            if any(line.lstrip().startswith(TASK_HEADING_PREFIX) for line in reply.splitlines()):
                raise PlanError(
                    "Planner reply has task headings but no parsable task list; "
                    "expected \"### T1: <title>\" under \"## Tasks\"."
                )
            steps = _extract_steps(reply)
            if not steps:
                raise PlanError("Planner reply contained no tasks.")
            logger.info("planner reply had no task headings; using %s listed steps", len(steps))
            for index, step in enumerate(steps, start=1):
                plan.tasks.append(
                    PlanTask(
                        id=f"T{index}",
                        title=step,
                        depends_on=[f"T{index - 1}"] if index > 1 else [],
                    )
                )
        if len(plan.tasks) > MAX_PLAN_STEPS:
            plan.tasks = plan.tasks[:MAX_PLAN_STEPS]
            kept = set(plan.task_ids)
            for task in plan.tasks:
                task.depends_on = [dep for dep in task.depends_on if dep in kept]
        validate_plan(plan)
        return plan

    async def draft(self, goal: str, context: dict[str, Any] | None = None) -> Plan:
        if not goal.strip():
            raise PlanError("Goal is empty.")
        instruction = f"Goal: {goal.strip()}"
        if isinstance(self.backend, EscalatingBackend):
            return await self._draft_escalating(goal, instruction, context or {})
        reply = await self._ask(instruction, context or {})
        return self.plan_from_reply(goal, reply)

    async def _draft_escalating(
        self, goal: str, instruction: str, context: dict[str, Any]
    ) -> Plan:
        # An unusable reply fails the attempt so the next tier drafts instead.
        plans: dict[str, Plan] = {}

        async def _validate(tier: str, content: str) -> None:
            try:
                plans[tier] = self.plan_from_reply(goal, content)
            except PlanError as exc:
                raise BackendExecutionError(
                    f"Unusable plan from tier {tier}: {exc}", backend=tier, retriable=False
                ) from exc

        result = await self.backend.run_unit(
            self.system_prompt, instruction, context, validate=_validate, label="plan"
        )
        return plans[result.tier]

    async def draft_text(self, goal: str, context: dict[str, Any] | None = None) -> str:
        return render_plan(await self.draft(goal, context))
