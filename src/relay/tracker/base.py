from __future__ import annotations

from abc import ABC, abstractmethod
from dataclasses import dataclass, field
from enum import StrEnum
from typing import Any


class IssueStatus(StrEnum):
    OPEN = "open"
    IN_PROGRESS = "in_progress"
    BLOCKED = "blocked"
    CLOSED = "closed"

    @classmethod
    def parse(cls, value: object) -> IssueStatus:
        normalized = str(value or "").strip().lower().replace("-", "_")
        try:
            return cls(normalized)
        except ValueError:
            return cls.OPEN


@dataclass(slots=True)
class TrackerIssue:
    id: str
    title: str
    status: IssueStatus = IssueStatus.OPEN
    issue_type: str = "task"
    parent: str | None = None
    depends_on: list[str] = field(default_factory=list)
    description: str = ""

    @property
    def is_closed(self) -> bool:
        return self.status == IssueStatus.CLOSED

    def to_dict(self) -> dict[str, Any]:
        return {
            "id": self.id,
            "title": self.title,
            "status": self.status.value,
            "issue_type": self.issue_type,
            "parent": self.parent,
            "depends_on": list(self.depends_on),
            "description": self.description,
        }

    @classmethod
    def from_dict(cls, payload: dict[str, Any]) -> TrackerIssue:
        depends_on: list[str] = []
        raw_deps = payload.get("depends_on") or payload.get("dependencies") or []
        if isinstance(raw_deps, list):
            for item in raw_deps:
                if isinstance(item, dict):
                    dep_id = item.get("depends_on_id") or item.get("id")
                    if dep_id:
                        depends_on.append(str(dep_id))
                elif item:
                    depends_on.append(str(item))
        return cls(
            id=str(payload["id"]),
            title=str(payload.get("title", "")),
            status=IssueStatus.parse(payload.get("status")),
            issue_type=str(payload.get("issue_type") or payload.get("type") or "task"),
            parent=payload.get("parent"),
            depends_on=depends_on,
            description=str(payload.get("description") or ""),
        )


class TaskTracker(ABC):
    name: str = "tracker"

    @abstractmethod
    def create_issue(
        self,
        title: str,
        *,
        description: str = "",
        issue_type: str = "task",
        parent: str | None = None,
        priority: int = 2,
    ) -> TrackerIssue:
        """Create an issue and return it with its tracker-assigned id."""

    @abstractmethod
    def add_dependency(self, issue_id: str, depends_on_id: str) -> None:
        """Record that ``issue_id`` is blocked until ``depends_on_id`` closes."""

    @abstractmethod
    def update_status(self, issue_id: str, status: IssueStatus) -> None: ...

    @abstractmethod
    def close_issue(self, issue_id: str, reason: str = "") -> None: ...

    @abstractmethod
    def get_issue(self, issue_id: str) -> TrackerIssue: ...

    def sync(self) -> None:
        """Push local tracker changes to the shared store, where supported."""
