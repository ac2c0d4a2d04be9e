"""Repository snapshot capture through the ``git`` binary.

Only produces the ``GitSnapshot`` shape the caches diff against. Any failure
(not a repository, git missing, timeout) yields ``None``.
"""

from __future__ import annotations

import logging
import subprocess
from datetime import datetime, timezone

from honcho_sync.cache.git_state import GitSnapshot

logger = logging.getLogger(__name__)

GIT_TIMEOUT = 5  # seconds


def _git(cwd: str, *args: str) -> str | None:
    try:
        result = subprocess.run(
            ["git", *args],
            cwd=cwd,
            check=False,
            capture_output=True,
            text=True,
            timeout=GIT_TIMEOUT,
        )
    except (OSError, subprocess.SubprocessError) as e:
        logger.debug("git %s failed in %s: %s", args[0], cwd, e)
        return None
    if result.returncode != 0:
        return None
    return result.stdout.rstrip("\n")


def capture_git_state(cwd: str) -> GitSnapshot | None:
    """Current branch, HEAD and dirty files for cwd."""
    branch = _git(cwd, "rev-parse", "--abbrev-ref", "HEAD")
    commit = _git(cwd, "rev-parse", "--short", "HEAD")
    if not branch or not commit:
        return None
    status = _git(cwd, "status", "--porcelain") or ""
    dirty_files = [line[3:] for line in status.splitlines() if len(line) > 3]
    return GitSnapshot(
        branch=branch,
        commit=commit,
        commit_message=_git(cwd, "log", "-1", "--pretty=%s") or "",
        is_dirty=bool(dirty_files),
        dirty_files=dirty_files,
        timestamp=datetime.now(timezone.utc).isoformat(),
    )


def recent_commits(cwd: str, count: int = 5) -> list[str]:
    output = _git(cwd, "log", f"-{count}", "--oneline")
    return output.splitlines() if output else []
