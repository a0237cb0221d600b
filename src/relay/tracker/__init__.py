from relay.tracker.base import IssueStatus, TaskTracker, TrackerIssue
from relay.tracker.beads import BeadsTracker
from relay.tracker.local import LocalTracker

__all__ = ["BeadsTracker", "IssueStatus", "LocalTracker", "TaskTracker", "TrackerIssue"]
