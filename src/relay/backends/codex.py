from __future__ import annotations

import json
from collections.abc import AsyncIterator
from pathlib import Path
from typing import Any

from relay.backends.base import AgentBackend, render_user_prompt
from relay.backends.process import EventHook, stream_process


class CodexBackend(AgentBackend):
    name = "codex"

    def __init__(
        self,
        binary: str = "codex",
        *,
        model: str | None = None,
        working_directory: Path | None = None,
        event_hook: EventHook | None = None,
    ) -> None:
        self.binary = binary
        self.model = model
        self.working_directory = working_directory
        self.event_hook = event_hook

    def build_command(
        self,
        system_prompt: str,
        user_prompt: str,
        context: dict[str, Any],
        tools: list[str] | None = None,
    ) -> list[str]:
        command = [
            self.binary,
            "exec",
            "--json",
            "-c",
            f"instructions={json.dumps(system_prompt, ensure_ascii=False)}",
        ]
        requested_model = context.get("model")
        if isinstance(requested_model, str) and requested_model.strip():
            command.extend(["-m", requested_model.strip()])
        elif self.model:
            command.extend(["-m", self.model])
        command.append(render_user_prompt(user_prompt, context, tools))
        return command

    async def execute(
        self,
        system_prompt: str,
        user_prompt: str,
        context: dict[str, Any],
        tools: list[str] | None = None,
    ) -> AsyncIterator[str]:
        command = self.build_command(system_prompt, user_prompt, context, tools)
        cwd_override = context.get("_working_directory")
        if isinstance(cwd_override, str) and cwd_override.strip():
            cwd = cwd_override
        else:
            cwd = str(self.working_directory) if self.working_directory else None
        async for chunk in stream_process(
            command,
            backend=self.name,
            cwd=cwd,
            event_hook=self.event_hook,
        ):
            yield chunk
