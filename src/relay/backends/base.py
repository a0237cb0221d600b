from __future__ import annotations

import json
from abc import ABC, abstractmethod
from collections.abc import AsyncIterator
from typing import Any

from relay.errors import RelayError


class BackendExecutionError(RelayError):
    """Raised when a backend process execution fails."""

    def __init__(
        self,
        message: str,
        *,
        backend: str | None = None,
        exit_code: int | None = None,
        retriable: bool = True,
    ) -> None:
        super().__init__(message)
        self.backend = backend
        self.exit_code = exit_code
        self.retriable = retriable


class BackendTimeoutError(BackendExecutionError):
    """Raised when backend execution exceeds configured timeout."""


class BackendProcessError(BackendExecutionError):
    """Raised when backend process lifecycle fails."""


class EscalationExhaustedError(BackendExecutionError):
    """Raised when every escalation tier failed the same unit of work."""

    def __init__(self, message: str, *, attempts: list[str]) -> None:
        super().__init__(message, retriable=False)
        self.attempts = list(attempts)


def render_user_prompt(
    user_prompt: str,
    context: dict[str, Any],
    tools: list[str] | None,
) -> str:
    parts = [user_prompt]
    visible = {key: value for key, value in context.items() if not key.startswith("_")}
    if visible:
        parts.append("Context JSON:")
        parts.append(json.dumps(visible, ensure_ascii=False, indent=2))
    if tools:
        parts.append("Allowed tools:")
        parts.append(json.dumps(tools, ensure_ascii=False))
    return "\n\n".join(parts)


class AgentBackend(ABC):
    name: str = "backend"

    @abstractmethod
    async def execute(
        self,
        system_prompt: str,
        user_prompt: str,
        context: dict[str, Any],
        tools: list[str] | None = None,
    ) -> AsyncIterator[str]:
        """Execute an agent and stream textual chunks."""

    async def execute_with_tools(
        self,
        system_prompt: str,
        user_prompt: str,
        allowed_tools: list[str],
    ) -> dict[str, Any]:
        """Execute an agent and return a structured payload."""
        chunks: list[str] = []
        async for chunk in self.execute(
            system_prompt=system_prompt,
            user_prompt=user_prompt,
            context={"tool_mode": True},
            tools=allowed_tools,
        ):
            chunks.append(chunk)
        return {
            "backend": self.name,
            "content": "".join(chunks).strip(),
            "allowed_tools": allowed_tools,
        }
