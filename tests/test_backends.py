import asyncio
from collections.abc import AsyncIterator
from pathlib import Path
from typing import Any

import pytest

from relay.backends import EscalatingBackend, RetryPolicy
from relay.backends.base import (
    AgentBackend,
    BackendExecutionError,
    EscalationExhaustedError,
)
from relay.backends.claude import ClaudeCodeBackend
from relay.backends.codex import CodexBackend
from relay.backends.command import CommandBackend
from relay.backends.process import stream_process


class AlwaysFailBackend(AgentBackend):
    def __init__(self, *, retriable: bool = True) -> None:
        self.retriable = retriable
        self.calls = 0

    async def execute(
        self,
        system_prompt: str,
        user_prompt: str,
        context: dict[str, Any],
        tools: list[str] | None = None,
    ) -> AsyncIterator[str]:
        _ = system_prompt, user_prompt, context, tools
        self.calls += 1
        raise BackendExecutionError("boom", backend="fake", exit_code=1, retriable=self.retriable)
        yield ""  # pragma: no cover


class SuccessBackend(AgentBackend):
    def __init__(self, reply: str = "ok") -> None:
        self.reply = reply
        self.prompts: list[str] = []

    async def execute(
        self,
        system_prompt: str,
        user_prompt: str,
        context: dict[str, Any],
        tools: list[str] | None = None,
    ) -> AsyncIterator[str]:
        _ = system_prompt, context, tools
        self.prompts.append(user_prompt)
        yield self.reply


class SlowBackend(AgentBackend):
    async def execute(
        self,
        system_prompt: str,
        user_prompt: str,
        context: dict[str, Any],
        tools: list[str] | None = None,
    ) -> AsyncIterator[str]:
        _ = system_prompt, user_prompt, context, tools
        await asyncio.sleep(5)
        yield "late"


def _fast_policy(max_retries: int = 0, timeout_seconds: float = 5.0) -> RetryPolicy:
    return RetryPolicy(
        max_retries=max_retries, backoff_seconds=0.0, timeout_seconds=timeout_seconds
    )


def test_codex_build_command_shape() -> None:
    backend = CodexBackend(binary="codex", working_directory=Path("."))
    command = backend.build_command(
        system_prompt="system",
        user_prompt="implement feature",
        context={"goal": "x", "model": "gpt-5-codex", "_working_directory": "/tmp"},
        tools=["read", "write"],
    )

    assert command[0:3] == ["codex", "exec", "--json"]
    assert command[command.index("-m") + 1] == "gpt-5-codex"
    assert any(part.startswith("instructions=") for part in command)
    assert "implement feature" in command[-1]
    assert "Context JSON:" in command[-1]
    assert "Allowed tools:" in command[-1]
    assert "_working_directory" not in command[-1]


def test_claude_build_command_shape() -> None:
    backend = ClaudeCodeBackend(binary="claude", model="haiku", working_directory=Path("."))
    command = backend.build_command("implement feature")

    assert command[0:3] == ["claude", "-p", "implement feature"]
    assert command[command.index("--output-format") + 1] == "stream-json"
    assert command[-2:] == ["--model", "haiku"]
    assert backend.build_command("x", "opus")[-1] == "opus"


def test_command_backend_build_command_flags() -> None:
    backend = CommandBackend("llm", model="small")

    assert backend.build_command("do it", cwd="/repo") == [
        "llm",
        "-m",
        "small",
        "-q",
        "-C",
        "/repo",
        "do it",
    ]

    custom = CommandBackend("llm", model_flag="--model", quiet_flag="", cwd_flag="--cwd")
    assert custom.build_command("do it", model="big", cwd="/repo") == [
        "llm",
        "--model",
        "big",
        "--cwd",
        "/repo",
        "do it",
    ]


def test_escalation_moves_to_next_tier_after_retries() -> None:
    events: list[dict[str, Any]] = []
    first = AlwaysFailBackend()
    backend = EscalatingBackend(
        [("fast", first), ("strong", SuccessBackend("strong result"))],
        retry_policy=_fast_policy(max_retries=1),
        event_hook=events.append,
    )

    result = asyncio.run(backend.run_unit("system", "user", {}, label="T1"))

    assert result.tier == "strong"
    assert result.content == "strong result"
    assert result.escalated is True
    assert len(result.attempts) == 2
    assert first.calls == 2
    assert backend.last_tier == "strong"
    event_names = [event["event"] for event in events]
    assert event_names.count("backend_attempt_failed") == 2
    assert "backend_retry" in event_names
    assert "backend_escalated" in event_names
    assert event_names[-1] == "backend_escalation_success"
    assert all(event["call"] == "T1" for event in events)


def test_first_tier_success_does_not_escalate() -> None:
    events: list[dict[str, Any]] = []
    second = SuccessBackend("unused")
    backend = EscalatingBackend(
        [("fast", SuccessBackend()), ("strong", second)],
        retry_policy=_fast_policy(),
        event_hook=events.append,
    )

    result = asyncio.run(backend.run_unit("system", "user", {}))

    assert result.tier == "fast"
    assert result.escalated is False
    assert second.prompts == []
    assert events == []


def test_non_retriable_error_skips_remaining_retries() -> None:
    first = AlwaysFailBackend(retriable=False)
    backend = EscalatingBackend(
        [("fast", first), ("strong", SuccessBackend())],
        retry_policy=_fast_policy(max_retries=3),
    )

    result = asyncio.run(backend.run_unit("system", "user", {}))

    assert result.tier == "strong"
    assert first.calls == 1


def test_all_tiers_failing_raises_exhausted() -> None:
    backend = EscalatingBackend(
        [("fast", AlwaysFailBackend()), ("strong", AlwaysFailBackend())],
        retry_policy=_fast_policy(),
    )

    with pytest.raises(EscalationExhaustedError) as excinfo:
        asyncio.run(backend.run_unit("system", "user", {}, label="T3"))

    assert "T3" in str(excinfo.value)
    assert excinfo.value.retriable is False
    assert [attempt.split("[")[0] for attempt in excinfo.value.attempts] == ["fast", "strong"]


def test_retry_backoff_doubles_per_attempt(monkeypatch: pytest.MonkeyPatch) -> None:
    delays: list[float] = []

    async def _fake_sleep(delay: float) -> None:
        delays.append(delay)

    monkeypatch.setattr("relay.backends.escalation.asyncio.sleep", _fake_sleep)
    events: list[dict[str, Any]] = []
    failing = AlwaysFailBackend()
    backend = EscalatingBackend(
        [("fast", failing)],
        retry_policy=RetryPolicy(max_retries=3, backoff_seconds=0.5, timeout_seconds=5.0),
        event_hook=events.append,
    )

    with pytest.raises(EscalationExhaustedError):
        asyncio.run(backend.run_unit("system", "user", {}, label="T1"))

    assert failing.calls == 4
    assert delays == [0.5, 1.0, 2.0]
    retries = [event for event in events if event["event"] == "backend_retry"]
    assert [event["delay_seconds"] for event in retries] == [0.5, 1.0, 2.0]
    assert [event["attempt"] for event in retries] == [1, 2, 3]


def test_validator_failure_escalates() -> None:
    seen: list[tuple[str, str]] = []

    async def _validate(tier: str, content: str) -> None:
        seen.append((tier, content))
        if tier == "fast":
            raise BackendExecutionError("tests failed", backend=tier, retriable=False)

    backend = EscalatingBackend(
        [("fast", SuccessBackend("draft")), ("strong", SuccessBackend("fixed"))],
        retry_policy=_fast_policy(max_retries=2),
    )

    result = asyncio.run(backend.run_unit("system", "user", {}, validate=_validate))

    assert result.tier == "strong"
    assert seen == [("fast", "draft"), ("strong", "fixed")]


def test_timeout_counts_as_failed_attempt() -> None:
    backend = EscalatingBackend(
        [("slow", SlowBackend()), ("fast", SuccessBackend())],
        retry_policy=_fast_policy(timeout_seconds=0.05),
    )

    result = asyncio.run(backend.run_unit("system", "user", {}))

    assert result.tier == "fast"
    assert "timed out" in result.attempts[0]


def test_duplicate_tier_names_collapse() -> None:
    backend = EscalatingBackend(
        [("fast", SuccessBackend()), ("fast", SuccessBackend()), ("strong", SuccessBackend())]
    )

    assert backend.tier_names == ["fast", "strong"]


def test_escalation_requires_a_tier() -> None:
    with pytest.raises(ValueError):
        EscalatingBackend([])


def test_escalating_backend_execute_with_tools() -> None:
    backend = EscalatingBackend(
        [("fast", AlwaysFailBackend()), ("strong", SuccessBackend())],
        retry_policy=_fast_policy(),
    )

    payload = asyncio.run(
        backend.execute_with_tools(
            system_prompt="system",
            user_prompt="user",
            allowed_tools=["read_file"],
        )
    )

    assert payload["content"] == "ok"
    assert payload["backend"] == "escalation"


class FakeStdout:
    def __init__(self, lines: list[bytes]) -> None:
        self._lines = lines
        self._index = 0

    def __aiter__(self) -> "FakeStdout":
        return self

    async def __anext__(self) -> bytes:
        if self._index >= len(self._lines):
            raise StopAsyncIteration
        line = self._lines[self._index]
        self._index += 1
        return line


class FakeStderr:
    def __init__(self, payload: bytes = b"") -> None:
        self.payload = payload

    async def read(self) -> bytes:
        return self.payload


class FakeProcess:
    def __init__(self, lines: list[bytes], returncode: int = 0, stderr: bytes = b"") -> None:
        self.stdout = FakeStdout(lines)
        self.stderr = FakeStderr(stderr)
        self.returncode = returncode
        self.killed = False
        self.waits = 0

    async def wait(self) -> int:
        self.waits += 1
        return self.returncode

    def kill(self) -> None:
        self.killed = True


def _patch_process(monkeypatch: pytest.MonkeyPatch, process: FakeProcess) -> dict[str, Any]:
    captured: dict[str, Any] = {}

    async def fake_create_subprocess_exec(*args: Any, **kwargs: Any) -> FakeProcess:
        captured["args"] = list(args)
        captured["kwargs"] = kwargs
        return process

    monkeypatch.setattr(asyncio, "create_subprocess_exec", fake_create_subprocess_exec)
    return captured


async def _collect(backend: AgentBackend, context: dict[str, Any] | None = None) -> str:
    chunks: list[str] = []
    async for chunk in backend.execute("system", "user", context=context or {}):
        chunks.append(chunk)
    return "".join(chunks)


def test_codex_backend_emits_stream_telemetry(monkeypatch: pytest.MonkeyPatch) -> None:
    events: list[dict[str, Any]] = []
    _patch_process(
        monkeypatch,
        FakeProcess(
            [
                b'{"type":"response.output_text.delta","content":"hel',
                b'lo"}\n',
                b"noise-before-json\n",
                b'{"type":"response.completed"}\n',
            ]
        ),
    )

    output = asyncio.run(_collect(CodexBackend(event_hook=events.append)))

    assert output == "hellonoise-before-json\n"
    event_names = [event.get("event") for event in events]
    assert event_names[0] == "codex_cli_start"
    assert "codex_json_parse_fallback" in event_names
    assert event_names[-1] == "codex_cli_exit"


def test_claude_backend_uses_context_working_directory(monkeypatch: pytest.MonkeyPatch) -> None:
    captured = _patch_process(
        monkeypatch,
        FakeProcess([b'{"type":"assistant","message":{"content":[{"text":"done"}]}}\n']),
    )

    output = asyncio.run(
        _collect(ClaudeCodeBackend(), {"_working_directory": "/work", "model": "opus"})
    )

    assert output == "done"
    assert captured["kwargs"]["cwd"] == "/work"
    assert captured["args"][-2:] == ["--model", "opus"]
    assert "CLAUDE_MD" in captured["kwargs"]["env"]


def test_command_backend_streams_plain_text(monkeypatch: pytest.MonkeyPatch) -> None:
    captured = _patch_process(monkeypatch, FakeProcess([b"line one\n", b"line two\n"]))

    output = asyncio.run(_collect(CommandBackend("llm", model="small")))

    assert output == "line one\nline two\n"
    assert captured["args"][:4] == ["llm", "-m", "small", "-q"]
    assert captured["args"][-1].startswith("system\n\nuser")


def test_nonzero_exit_is_retriable_backend_error(monkeypatch: pytest.MonkeyPatch) -> None:
    _patch_process(monkeypatch, FakeProcess([], returncode=2, stderr=b"rate limited"))

    with pytest.raises(BackendExecutionError, match="rate limited") as excinfo:
        asyncio.run(_collect(CommandBackend("llm")))

    assert excinfo.value.exit_code == 2
    assert excinfo.value.retriable is True


def test_missing_binary_is_not_retriable(monkeypatch: pytest.MonkeyPatch) -> None:
    async def fake_create_subprocess_exec(*args: Any, **kwargs: Any) -> FakeProcess:
        raise FileNotFoundError(args[0])

    monkeypatch.setattr(asyncio, "create_subprocess_exec", fake_create_subprocess_exec)

    with pytest.raises(BackendExecutionError, match="could not be started") as excinfo:
        asyncio.run(_collect(CodexBackend(binary="codex-missing")))

    assert excinfo.value.retriable is False


def test_abandoned_stream_kills_and_reaps_process(monkeypatch: pytest.MonkeyPatch) -> None:
    process = FakeProcess([b"one\n", b"two\n"])
    _patch_process(monkeypatch, process)

    async def _first_chunk() -> str:
        stream = stream_process(["llm", "go"], backend="command", parse_json=False)
        first = await stream.__anext__()
        await stream.aclose()
        return first

    assert asyncio.run(_first_chunk()) == "one\n"
    assert process.killed is True
    assert process.waits == 1


def test_finished_stream_is_not_killed(monkeypatch: pytest.MonkeyPatch) -> None:
    process = FakeProcess([b"one\n"])
    _patch_process(monkeypatch, process)

    async def _drain() -> list[str]:
        stream = stream_process(["llm"], backend="command", parse_json=False)
        return [chunk async for chunk in stream]

    assert asyncio.run(_drain()) == ["one\n"]
    assert process.killed is False
    assert process.waits == 1
