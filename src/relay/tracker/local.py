from __future__ import annotations

from typing import Any

from relay.errors import TrackerError
from relay.state import StateStore, utcnow_iso
from relay.tracker.base import IssueStatus, TaskTracker, TrackerIssue


class LocalTracker(TaskTracker):
    """Tracker kept in the relay state store, for repositories without ``bd``."""

    name = "local"
    ID_PREFIX = "rl"

    def __init__(self, state: StateStore) -> None:
        self.state = state

    def _issues(self) -> dict[str, Any]:
        payload = self.state.get_json("issues", default={})
        return payload if isinstance(payload, dict) else {}

    def _mutate(self, issue_id: str, **updates: Any) -> None:
        def _updater(payload: Any) -> dict[str, Any]:
            issues = payload if isinstance(payload, dict) else {}
            items = issues.get("items", {})
            if issue_id not in items:
                raise TrackerError(f"Unknown issue: {issue_id}")
            items[issue_id].update(updates)
            items[issue_id]["updated_at"] = utcnow_iso()
            return issues

        self.state.update_json("issues", _updater, default={})

    def create_issue(
        self,
        title: str,
        *,
        description: str = "",
        issue_type: str = "task",
        parent: str | None = None,
        priority: int = 2,
    ) -> TrackerIssue:
        created: dict[str, Any] = {}

        def _updater(payload: Any) -> dict[str, Any]:
            issues = payload if isinstance(payload, dict) else {}
            items = issues.setdefault("items", {})
            counter = int(issues.get("counter", 0)) + 1
            issues["counter"] = counter
            if parent and parent not in items:
                raise TrackerError(f"Unknown parent issue: {parent}")
            issue_id = f"{self.ID_PREFIX}-{counter}"
            if parent:
                children = sum(1 for item in items.values() if item.get("parent") == parent)
                issue_id = f"{parent}.{children + 1}"
            record = TrackerIssue(
                id=issue_id,
                title=title,
                issue_type=issue_type,
                parent=parent,
                description=description,
            ).to_dict()
            record["priority"] = priority
            record["created_at"] = utcnow_iso()
            items[issue_id] = record
            created.clear()
            created.update(record)
            return issues

        self.state.update_json("issues", _updater, default={})
        return TrackerIssue.from_dict(created)

    def add_dependency(self, issue_id: str, depends_on_id: str) -> None:
        items = self._issues().get("items", {})
        if depends_on_id not in items:
            raise TrackerError(f"Unknown issue: {depends_on_id}")
        current = items.get(issue_id, {}).get("depends_on", [])
        if depends_on_id in current:
            return
        self._mutate(issue_id, depends_on=[*current, depends_on_id])

    def update_status(self, issue_id: str, status: IssueStatus) -> None:
        self._mutate(issue_id, status=IssueStatus(status).value)

    def close_issue(self, issue_id: str, reason: str = "") -> None:
        self._mutate(issue_id, status=IssueStatus.CLOSED.value, close_reason=reason)

    def get_issue(self, issue_id: str) -> TrackerIssue:
        items = self._issues().get("items", {})
        record = items.get(issue_id)
        if not isinstance(record, dict):
            raise TrackerError(f"Unknown issue: {issue_id}")
        return TrackerIssue.from_dict(record)

    def list_issues(self, parent: str | None = None) -> list[TrackerIssue]:
        items = self._issues().get("items", {})
        issues = [TrackerIssue.from_dict(record) for record in items.values()]
        if parent is not None:
            issues = [issue for issue in issues if issue.parent == parent]
        return issues
