from __future__ import annotations

import asyncio
import logging
from collections.abc import AsyncIterator, Awaitable, Callable, Sequence
from dataclasses import dataclass, field
from typing import Any

from relay.backends.base import (
    AgentBackend,
    BackendExecutionError,
    BackendTimeoutError,
    EscalationExhaustedError,
)

logger = logging.getLogger(__name__)

BackendEventHook = Callable[[dict[str, Any]], None]
OutputValidator = Callable[[str, str], Awaitable[None]]


@dataclass(slots=True)
class RetryPolicy:
    max_retries: int = 0
    backoff_seconds: float = 0.5
    timeout_seconds: float = 900.0


@dataclass(slots=True)
class TierResult:
    tier: str
    content: str
    attempts: list[str] = field(default_factory=list)

    @property
    def escalated(self) -> bool:
        return bool(self.attempts)


class EscalatingBackend(AgentBackend):
    """Tries the same unit of work on each tier in order until one succeeds."""

    name = "escalation"

    def __init__(
        self,
        tiers: Sequence[tuple[str, AgentBackend]],
        retry_policy: RetryPolicy | None = None,
        event_hook: BackendEventHook | None = None,
    ) -> None:
        seen: set[str] = set()
        self.tiers: list[tuple[str, AgentBackend]] = []
        for tier_name, backend in tiers:
            if tier_name in seen:
                continue
            seen.add(tier_name)
            self.tiers.append((tier_name, backend))
        if not self.tiers:
            raise ValueError("EscalatingBackend needs at least one tier.")
        self.retry_policy = retry_policy or RetryPolicy()
        self.event_hook = event_hook
        self.last_tier: str | None = None

    @property
    def tier_names(self) -> list[str]:
        return [tier_name for tier_name, _ in self.tiers]

    def _emit(self, event: dict[str, Any]) -> None:
        if self.event_hook:
            self.event_hook(event)

    async def _collect(
        self,
        backend: AgentBackend,
        *,
        system_prompt: str,
        user_prompt: str,
        context: dict[str, Any],
        tools: list[str] | None,
    ) -> str:
        async def _consume() -> str:
            chunks: list[str] = []
            async for chunk in backend.execute(system_prompt, user_prompt, context, tools):
                chunks.append(chunk)
            return "".join(chunks).strip()

        try:
            return await asyncio.wait_for(_consume(), timeout=self.retry_policy.timeout_seconds)
        except TimeoutError as exc:
            raise BackendTimeoutError(
                f"Backend request timed out after {self.retry_policy.timeout_seconds:.1f}s",
                retriable=True,
            ) from exc

    async def run_unit(
        self,
        system_prompt: str,
        user_prompt: str,
        context: dict[str, Any],
        tools: list[str] | None = None,
        *,
        validate: OutputValidator | None = None,
        label: str = "execute",
    ) -> TierResult:
        """Run one unit of work, escalating through the tiers.

        ``validate`` receives the tier name and its output; raising
        :class:`BackendExecutionError` from it counts as a failed attempt.
        """
        errors: list[str] = []
        for index, (tier_name, backend) in enumerate(self.tiers):
            if index > 0:
                logger.warning("%s: escalating to tier %s", label, tier_name)
                self._emit(
                    {
                        "event": "backend_escalated",
                        "tier": tier_name,
                        "from_tier": self.tiers[index - 1][0],
                        "call": label,
                    }
                )
            for attempt in range(self.retry_policy.max_retries + 1):
                if attempt > 0:
                    delay = self.retry_policy.backoff_seconds * (2 ** (attempt - 1))
                    self._emit(
                        {
                            "event": "backend_retry",
                            "tier": tier_name,
                            "attempt": attempt,
                            "delay_seconds": delay,
                            "call": label,
                        }
                    )
                    await asyncio.sleep(delay)
                try:
                    content = await self._collect(
                        backend,
                        system_prompt=system_prompt,
                        user_prompt=user_prompt,
                        context=context,
                        tools=tools,
                    )
                    if validate is not None:
                        await validate(tier_name, content)
                except BackendExecutionError as exc:
                    errors.append(f"{tier_name}[{attempt}]: {exc}")
                    logger.info("%s: tier %s attempt %s failed: %s", label, tier_name, attempt, exc)
                    self._emit(
                        {
                            "event": "backend_attempt_failed",
                            "tier": tier_name,
                            "attempt": attempt,
                            "call": label,
                            "error": str(exc),
                            "retriable": exc.retriable,
                        }
                    )
                    if not exc.retriable:
                        break
                    continue

                self.last_tier = tier_name
                if index > 0:
                    self._emit(
                        {
                            "event": "backend_escalation_success",
                            "tier": tier_name,
                            "attempt": attempt,
                            "call": label,
                        }
                    )
                return TierResult(tier=tier_name, content=content, attempts=errors)

        summary = "; ".join(errors[-6:])
        raise EscalationExhaustedError(
            f"All escalation tiers failed for {label}. {summary}",
            attempts=errors,
        )

    async def execute(
        self,
        system_prompt: str,
        user_prompt: str,
        context: dict[str, Any],
        tools: list[str] | None = None,
    ) -> AsyncIterator[str]:
        result = await self.run_unit(system_prompt, user_prompt, context, tools)
        yield result.content
