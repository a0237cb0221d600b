from __future__ import annotations

from collections.abc import AsyncIterator
from pathlib import Path
from typing import Any

from relay.backends.base import AgentBackend, render_user_prompt
from relay.backends.process import EventHook, stream_process


class CommandBackend(AgentBackend):
    """Generic model-delegation CLI taking model, quiet and working-directory flags.

    The command line is ``<binary> <model_flag> MODEL <quiet_flag> <cwd_flag> DIR PROMPT``;
    any flag set to an empty string is left out. The system prompt is sent
    ahead of the task prompt since such tools take a single positional prompt.
    """

    name = "command"

    def __init__(
        self,
        binary: str = "delegate",
        *,
        model: str | None = None,
        model_flag: str = "-m",
        quiet_flag: str = "-q",
        cwd_flag: str = "-C",
        working_directory: Path | None = None,
        event_hook: EventHook | None = None,
    ) -> None:
        self.binary = binary
        self.model = model
        self.model_flag = model_flag
        self.quiet_flag = quiet_flag
        self.cwd_flag = cwd_flag
        self.working_directory = working_directory
        self.event_hook = event_hook

    def build_command(
        self,
        prompt: str,
        *,
        model: str | None = None,
        cwd: str | None = None,
    ) -> list[str]:
        command = [self.binary]
        selected = model or self.model
        if selected and self.model_flag:
            command.extend([self.model_flag, selected])
        if self.quiet_flag:
            command.append(self.quiet_flag)
        if cwd and self.cwd_flag:
            command.extend([self.cwd_flag, cwd])
        command.append(prompt)
        return command

    async def execute(
        self,
        system_prompt: str,
        user_prompt: str,
        context: dict[str, Any],
        tools: list[str] | None = None,
    ) -> AsyncIterator[str]:
        cwd_override = context.get("_working_directory")
        if isinstance(cwd_override, str) and cwd_override.strip():
            cwd = cwd_override
        else:
            cwd = str(self.working_directory) if self.working_directory else None
        requested_model = context.get("model")
        prompt = render_user_prompt(user_prompt, context, tools)
        if system_prompt.strip():
            prompt = f"{system_prompt.strip()}\n\n{prompt}"
        command = self.build_command(
            prompt,
            model=requested_model if isinstance(requested_model, str) else None,
            cwd=cwd,
        )
        async for chunk in stream_process(
            command,
            backend=self.name,
            cwd=cwd,
            parse_json=False,
            event_hook=self.event_hook,
        ):
            yield chunk
