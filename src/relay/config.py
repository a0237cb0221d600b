from __future__ import annotations

import json
import tomllib
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any, Literal

TierKind = Literal["claude", "codex", "command"]
TrackerKind = Literal["beads", "local"]

TIER_KINDS = ("claude", "codex", "command")
TRACKER_KINDS = ("beads", "local")


@dataclass(slots=True)
class ProjectConfig:
    name: str = "my-project"
    skills_dir: str = ".relay/skills"


@dataclass(slots=True)
class TrackerConfig:
    kind: TrackerKind = "beads"
    binary: str = "bd"
    priority: int = 2
    sync: bool = True


@dataclass(slots=True)
class TierConfig:
    name: str
    kind: TierKind = "claude"
    binary: str = ""
    model: str = ""
    model_flag: str = "-m"
    quiet_flag: str = "-q"
    cwd_flag: str = "-C"

    def resolved_binary(self) -> str:
        if self.binary:
            return self.binary
        if self.kind == "command":
            return "delegate"
        return self.kind


@dataclass(slots=True)
class RetryConfig:
    max_retries: int = 0
    backoff_seconds: float = 0.5
    timeout_seconds: float = 900.0


@dataclass(slots=True)
class ExecutorConfig:
    max_parallel_tasks: int = 1
    verify_command: str = ""
    stop_on_failure: bool = True


@dataclass(slots=True)
class LoggingConfig:
    level: str = "WARNING"
    file: str = ""


def _default_tiers() -> list[TierConfig]:
    return [
        TierConfig(name="claude-fast", kind="claude", model="haiku"),
        TierConfig(name="claude-strong", kind="claude", model="opus"),
        TierConfig(name="codex", kind="codex"),
    ]


@dataclass(slots=True)
class RelayConfig:
    project: ProjectConfig = field(default_factory=ProjectConfig)
    tracker: TrackerConfig = field(default_factory=TrackerConfig)
    tiers: list[TierConfig] = field(default_factory=_default_tiers)
    retry: RetryConfig = field(default_factory=RetryConfig)
    executor: ExecutorConfig = field(default_factory=ExecutorConfig)
    logging: LoggingConfig = field(default_factory=LoggingConfig)

    @classmethod
    def default(cls) -> RelayConfig:
        return cls()

    @classmethod
    def from_dict(cls, data: dict) -> RelayConfig:
        raw_tiers = data.get("tiers")
        if raw_tiers is None:
            tiers = _default_tiers()
        else:
            tiers = [TierConfig(**item) for item in raw_tiers]
        config = cls(
            project=ProjectConfig(**data.get("project", {})),
            tracker=TrackerConfig(**data.get("tracker", {})),
            tiers=tiers,
            retry=RetryConfig(**data.get("retry", {})),
            executor=ExecutorConfig(**data.get("executor", {})),
            logging=LoggingConfig(**data.get("logging", {})),
        )
        config.validate()
        return config

    def validate(self) -> None:
        if self.tracker.kind not in TRACKER_KINDS:
            raise ValueError(f"Unsupported tracker kind: {self.tracker.kind}")
        if not self.tiers:
            raise ValueError("At least one escalation tier must be configured.")
        for tier in self.tiers:
            if tier.kind not in TIER_KINDS:
                raise ValueError(f"Unsupported tier kind for '{tier.name}': {tier.kind}")

    def to_dict(self) -> dict[str, Any]:
        return {
            "project": {"name": self.project.name, "skills_dir": self.project.skills_dir},
            "tracker": {
                "kind": self.tracker.kind,
                "binary": self.tracker.binary,
                "priority": self.tracker.priority,
                "sync": self.tracker.sync,
            },
            "retry": {
                "max_retries": self.retry.max_retries,
                "backoff_seconds": self.retry.backoff_seconds,
                "timeout_seconds": self.retry.timeout_seconds,
            },
            "executor": {
                "max_parallel_tasks": self.executor.max_parallel_tasks,
                "verify_command": self.executor.verify_command,
                "stop_on_failure": self.executor.stop_on_failure,
            },
            "logging": {
                "level": self.logging.level,
                "file": self.logging.file,
            },
            "tiers": [
                {
                    "name": tier.name,
                    "kind": tier.kind,
                    "binary": tier.binary,
                    "model": tier.model,
                    "model_flag": tier.model_flag,
                    "quiet_flag": tier.quiet_flag,
                    "cwd_flag": tier.cwd_flag,
                }
                for tier in self.tiers
            ],
        }


def _toml_value(value: object) -> str:
    if isinstance(value, bool):
        return "true" if value else "false"
    if isinstance(value, int):
        return str(value)
    if isinstance(value, float):
        rendered = f"{value:.3f}".rstrip("0")
        return rendered + "0" if rendered.endswith(".") else rendered
    if isinstance(value, list):
        return "[" + ", ".join(_toml_value(item) for item in value) + "]"
    return json.dumps(str(value), ensure_ascii=False)


def dumps_toml(config: RelayConfig) -> str:
    data = config.to_dict()
    lines: list[str] = []
    for section in ["project", "tracker", "retry", "executor", "logging"]:
        lines.append(f"[{section}]")
        for key, value in data[section].items():
            lines.append(f"{key} = {_toml_value(value)}")
        lines.append("")
    # Tier order is the escalation order.
    for tier in data["tiers"]:
        lines.append("[[tiers]]")
        for key, value in tier.items():
            lines.append(f"{key} = {_toml_value(value)}")
        lines.append("")
    return "\n".join(lines).strip() + "\n"


def load_config(path: Path) -> RelayConfig:
    if not path.exists():
        return RelayConfig.default()
    return RelayConfig.from_dict(tomllib.loads(path.read_text(encoding="utf-8")))


def save_config(path: Path, config: RelayConfig) -> None:
    path.write_text(dumps_toml(config), encoding="utf-8")
