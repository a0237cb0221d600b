from relay.backends.base import (
    AgentBackend,
    BackendExecutionError,
    BackendProcessError,
    BackendTimeoutError,
    EscalationExhaustedError,
)
from relay.backends.claude import ClaudeCodeBackend
from relay.backends.codex import CodexBackend
from relay.backends.command import CommandBackend
from relay.backends.escalation import EscalatingBackend, RetryPolicy, TierResult

__all__ = [
    "AgentBackend",
    "BackendExecutionError",
    "BackendProcessError",
    "BackendTimeoutError",
    "ClaudeCodeBackend",
    "CodexBackend",
    "CommandBackend",
    "EscalatingBackend",
    "EscalationExhaustedError",
    "RetryPolicy",
    "TierResult",
]
