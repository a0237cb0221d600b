from __future__ import annotations

import asyncio
import json
import logging
from collections.abc import AsyncIterator, Callable
from typing import Any

from relay.backends.base import BackendExecutionError, BackendProcessError

logger = logging.getLogger(__name__)

EventHook = Callable[[dict[str, Any]], None]


def extract_content(event: dict[str, Any]) -> str:
    content = event.get("content")
    if isinstance(content, str):
        return content
    if isinstance(content, list):
        parts: list[str] = []
        for item in content:
            if isinstance(item, dict):
                text = item.get("text")
                if isinstance(text, str):
                    parts.append(text)
        return "".join(parts)

    delta = event.get("delta")
    if isinstance(delta, str):
        return delta

    message = event.get("message")
    if isinstance(message, str):
        return message
    if isinstance(message, dict):
        return extract_content(message)

    return ""


def appears_partial_json(raw: str) -> bool:
    return raw.count("{") > raw.count("}") or raw.count("[") > raw.count("]")


async def stream_process(
    command: list[str],
    *,
    backend: str,
    cwd: str | None = None,
    env: dict[str, str] | None = None,
    parse_json: bool = True,
    event_hook: EventHook | None = None,
) -> AsyncIterator[str]:
    """Run ``command`` and yield its output.

    With ``parse_json`` each stdout line is treated as a JSON event and only the
    text content is yielded; lines that are not JSON are passed through. A
    non-zero exit raises :class:`BackendExecutionError` after the output has
    been consumed.
    """

    def _emit(payload: dict[str, Any]) -> None:
        if event_hook is not None:
            event_hook(payload)

    logger.debug("%s: starting %s (cwd=%s)", backend, command[0], cwd)
    _emit({"event": f"{backend}_cli_start", "command": command[:4]})
    try:
        process = await asyncio.create_subprocess_exec(
            *command,
            cwd=cwd,
            env=env,
            stdout=asyncio.subprocess.PIPE,
            stderr=asyncio.subprocess.PIPE,
        )
    except OSError as exc:
        raise BackendProcessError(
            f"{backend} binary could not be started: {command[0]} ({exc})",
            backend=backend,
            retriable=False,
        ) from exc

    if process.stdout is None:
        raise BackendProcessError(
            f"{backend} backend did not expose stdout.", backend=backend, retriable=False
        )

    stderr_task = asyncio.ensure_future(process.stderr.read()) if process.stderr else None
    finished = False
    try:
        parse_buffer = ""
        async for raw_line in process.stdout:
            line = raw_line.decode("utf-8", errors="replace").rstrip("\n")
            if not parse_json:
                yield line + "\n"
                continue
            line = line.strip()
            if not line:
                continue
            candidate = f"{parse_buffer}{line}" if parse_buffer else line
            try:
                event = json.loads(candidate)
                parse_buffer = ""
            except json.JSONDecodeError:
                if appears_partial_json(candidate):
                    parse_buffer = candidate
                    continue
                parse_buffer = ""
                _emit({"event": f"{backend}_json_parse_fallback", "line": line[:200]})
                yield line + "\n"
                continue

            content = extract_content(event) if isinstance(event, dict) else ""
            if content:
                yield content

        if parse_buffer:
            yield parse_buffer

        return_code = await process.wait()
        finished = True
        stderr_output = ""
        if stderr_task is not None:
            stderr_output = (await stderr_task).decode("utf-8", errors="replace").strip()
        _emit({"event": f"{backend}_cli_exit", "exit_code": return_code})
        if return_code != 0:
            logger.info("%s exited with %s: %s", backend, return_code, stderr_output[:400])
            raise BackendExecutionError(
                f"{backend} backend failed with exit code {return_code}: {stderr_output}",
                backend=backend,
                exit_code=return_code,
                retriable=True,
            )
    finally:
        if not finished:
            try:
                process.kill()
            except ProcessLookupError:
                pass
            # Reap the child so it does not linger as a zombie.
            await process.wait()
            if stderr_task is not None and not stderr_task.done():
                stderr_task.cancel()
