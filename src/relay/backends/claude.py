from __future__ import annotations

import os
import tempfile
from collections.abc import AsyncIterator
from pathlib import Path
from typing import Any

from relay.backends.base import AgentBackend, render_user_prompt
from relay.backends.process import EventHook, stream_process


class ClaudeCodeBackend(AgentBackend):
    name = "claude"

    def __init__(
        self,
        binary: str = "claude",
        *,
        model: str | None = None,
        working_directory: Path | None = None,
        event_hook: EventHook | None = None,
    ) -> None:
        self.binary = binary
        self.model = model
        self.working_directory = working_directory
        self.event_hook = event_hook

    def build_command(self, user_prompt: str, model: str | None = None) -> list[str]:
        command = [self.binary, "-p", user_prompt, "--output-format", "stream-json", "--verbose"]
        selected = model or self.model
        if selected:
            command.extend(["--model", selected])
        return command

    async def execute(
        self,
        system_prompt: str,
        user_prompt: str,
        context: dict[str, Any],
        tools: list[str] | None = None,
    ) -> AsyncIterator[str]:
        prompt = render_user_prompt(user_prompt, context, tools)
        cwd_override = context.get("_working_directory")
        if isinstance(cwd_override, str) and cwd_override.strip():
            cwd = cwd_override
        else:
            cwd = str(self.working_directory) if self.working_directory else None
        requested_model = context.get("model")
        model = requested_model if isinstance(requested_model, str) else None

        with tempfile.NamedTemporaryFile(mode="w", suffix=".md", encoding="utf-8") as temp_file:
            temp_file.write(system_prompt)
            temp_file.flush()

            env = os.environ.copy()
            env["CLAUDE_MD"] = temp_file.name

            async for chunk in stream_process(
                self.build_command(prompt, model),
                backend=self.name,
                cwd=cwd,
                env=env,
                event_hook=self.event_hook,
            ):
                yield chunk
