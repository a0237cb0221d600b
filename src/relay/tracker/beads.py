from __future__ import annotations

import json
import logging
import subprocess
from pathlib import Path
from typing import Any

from relay.errors import TrackerError
from relay.tracker.base import IssueStatus, TaskTracker, TrackerIssue

logger = logging.getLogger(__name__)


class BeadsTracker(TaskTracker):
    """Adapter over the ``bd`` issue tracker CLI."""

    name = "beads"

    def __init__(self, binary: str = "bd", working_directory: Path | None = None) -> None:
        self.binary = binary
        self.working_directory = working_directory

    def _run(self, args: list[str]) -> subprocess.CompletedProcess[str]:
        command = [self.binary, *args]
        logger.debug("tracker: %s", " ".join(command[:4]))
        try:
            proc = subprocess.run(
                command,
                cwd=self.working_directory,
                text=True,
                capture_output=True,
            )
        except FileNotFoundError as exc:
            raise TrackerError(f"Tracker binary not found: {self.binary}") from exc
        if proc.returncode != 0:
            detail = proc.stderr.strip() or proc.stdout.strip()
            raise TrackerError(
                f"`{self.binary} {args[0]}` failed with exit code {proc.returncode}: {detail}",
                exit_code=proc.returncode,
            )
        return proc

    def _run_json(self, args: list[str]) -> dict[str, Any]:
        proc = self._run([*args, "--json"])
        try:
            payload = json.loads(proc.stdout)
        except json.JSONDecodeError as exc:
            raise TrackerError(
                f"`{self.binary} {args[0]}` returned invalid JSON: {proc.stdout[:200]}"
            ) from exc
        # `bd show` prints a list even for a single id.
        if isinstance(payload, list):
            payload = payload[0] if payload else {}
        if not isinstance(payload, dict) or "id" not in payload:
            raise TrackerError(f"`{self.binary} {args[0]}` returned no issue id.")
        return payload

    def create_issue(
        self,
        title: str,
        *,
        description: str = "",
        issue_type: str = "task",
        parent: str | None = None,
        priority: int = 2,
    ) -> TrackerIssue:
        args = ["create", title, "-t", issue_type, "-p", str(priority)]
        if description:
            args.extend(["-d", description])
        if parent:
            args.extend(["--parent", parent])
        payload = self._run_json(args)
        issue = TrackerIssue.from_dict(payload)
        if parent and not issue.parent:
            issue.parent = parent
        if not issue.title:
            issue.title = title
        logger.info("tracker: created %s %s", issue_type, issue.id)
        return issue

    def add_dependency(self, issue_id: str, depends_on_id: str) -> None:
        self._run(["dep", "add", issue_id, depends_on_id])

    def update_status(self, issue_id: str, status: IssueStatus) -> None:
        self._run(["update", issue_id, "--status", IssueStatus(status).value])

    def close_issue(self, issue_id: str, reason: str = "") -> None:
        args = ["close", issue_id]
        if reason:
            args.extend(["--reason", reason])
        self._run(args)

    def get_issue(self, issue_id: str) -> TrackerIssue:
        return TrackerIssue.from_dict(self._run_json(["show", issue_id]))

    def sync(self) -> None:
        self._run(["sync"])
