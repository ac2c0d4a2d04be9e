"""Per-directory repository snapshots and the diff between two of them."""

from __future__ import annotations

import logging
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any, Literal

from honcho_sync.cache.files import JsonDocument

logger = logging.getLogger(__name__)

ChangeType = Literal["initial", "branch_switch", "new_commits", "files_changed"]

MAX_LISTED_FILES = 5


@dataclass
class GitSnapshot:
    """Repository state observed by one invocation."""

    branch: str
    commit: str
    commit_message: str = ""
    is_dirty: bool = False
    dirty_files: list[str] = field(default_factory=list)
    timestamp: str = ""

    def to_dict(self) -> dict[str, Any]:
        return {
            "branch": self.branch,
            "commit": self.commit,
            "commitMessage": self.commit_message,
            "isDirty": self.is_dirty,
            "dirtyFiles": list(self.dirty_files),
            "timestamp": self.timestamp,
        }

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> GitSnapshot:
        return cls(
            branch=str(data.get("branch", "")),
            commit=str(data.get("commit", "")),
            commit_message=str(data.get("commitMessage", "")),
            is_dirty=bool(data.get("isDirty", False)),
            dirty_files=[str(f) for f in data.get("dirtyFiles") or []],
            timestamp=str(data.get("timestamp", "")),
        )


@dataclass
class GitChange:
    """One detected change between two snapshots."""

    type: ChangeType
    description: str
    from_ref: str | None = None
    to_ref: str | None = None
    message: str | None = None
    files: list[str] = field(default_factory=list)

    def to_dict(self) -> dict[str, Any]:
        data: dict[str, Any] = {"type": self.type, "description": self.description}
        if self.from_ref is not None:
            data["from"] = self.from_ref
        if self.to_ref is not None:
            data["to"] = self.to_ref
        if self.message is not None:
            data["message"] = self.message
        if self.files:
            data["files"] = list(self.files)
        return data


def diff_git_state(previous: GitSnapshot | None, current: GitSnapshot) -> list[GitChange]:
    """Changes from previous to current, in branch/commit/files order.

    Without a previous snapshot the result is exactly one ``initial`` change.
    Dirty state is only reported on the clean -> dirty edge.
    """
    if previous is None:
        return [
            GitChange(
                type="initial",
                description=f"Session started on branch '{current.branch}' at {current.commit}",
                to_ref=current.commit,
            )
        ]

    changes: list[GitChange] = []
    if previous.branch != current.branch:
        changes.append(
            GitChange(
                type="branch_switch",
                description=f"Branch switched from '{previous.branch}' to '{current.branch}'",
                from_ref=previous.branch,
                to_ref=current.branch,
            )
        )
    if previous.commit != current.commit:
        changes.append(
            GitChange(
                type="new_commits",
                description=f"New commit: {current.commit} - {current.commit_message}",
                from_ref=previous.commit,
                to_ref=current.commit,
                message=current.commit_message,
            )
        )
    if not previous.is_dirty and current.is_dirty:
        listed = ", ".join(current.dirty_files[:MAX_LISTED_FILES])
        more = "..." if len(current.dirty_files) > MAX_LISTED_FILES else ""
        changes.append(
            GitChange(
                type="files_changed",
                description=f"Uncommitted changes detected: {listed}{more}",
                files=list(current.dirty_files),
            )
        )
    return changes


class GitStateCache:
    """Last observed snapshot per working directory (``git-state.json``).

    Callers diff first and persist after, so the diff always compares against
    the state the previous invocation saw.
    """

    def __init__(self, path: Path) -> None:
        self.document = JsonDocument(path)

    def get(self, cwd: str) -> GitSnapshot | None:
        entry = self.document.load().get(cwd)
        if not isinstance(entry, dict):
            return None
        return GitSnapshot.from_dict(entry)

    def set(self, cwd: str, snapshot: GitSnapshot) -> None:
        def apply(data: dict) -> None:
            data[cwd] = snapshot.to_dict()

        self.document.update(apply)

    def observe(self, cwd: str, current: GitSnapshot) -> list[GitChange]:
        """Diff current against the stored snapshot, then store current."""
        changes = diff_git_state(self.get(cwd), current)
        self.set(cwd, current)
        if changes:
            logger.info("Git changes in %s: %s", cwd, ", ".join(c.type for c in changes))
        return changes

    def clear(self) -> None:
        self.document.clear()
