"""Bounded log of the assistant's recent work (``claude-context.md``).

Markdown with YAML frontmatter. The body ends with a ``## Recent Activity``
section holding one ``- [timestamp] description`` line per entry; only the
newest ``max_entries`` lines are kept.
"""

from __future__ import annotations

import logging
from datetime import datetime, timezone
from pathlib import Path

import frontmatter

from honcho_sync.cache.files import atomic_write_text

logger = logging.getLogger(__name__)

ACTIVITY_HEADER = "## Recent Activity"
DEFAULT_MAX_ENTRIES = 50
ACTION_MARKERS = ("Created", "Updated", "Fixed")

_DEFAULT_BODY = (
    "# Claude Work Context\n\n"
    "Auto-generated log of recent work.\n\n"
    f"{ACTIVITY_HEADER}\n"
)


class WorkLog:
    def __init__(self, path: Path, max_entries: int = DEFAULT_MAX_ENTRIES) -> None:
        self.path = Path(path)
        self.max_entries = max_entries

    def _load(self) -> frontmatter.Post:
        if not self.path.exists():
            return frontmatter.Post(_DEFAULT_BODY)
        try:
            return frontmatter.loads(self.path.read_text(encoding="utf-8"))
        except Exception as e:
            logger.warning("Work log %s is unreadable, starting over: %s", self.path, e)
            return frontmatter.Post(_DEFAULT_BODY)

    def _save(self, post: frontmatter.Post) -> None:
        atomic_write_text(self.path, frontmatter.dumps(post) + "\n")

    @staticmethod
    def _split(content: str) -> tuple[str, list[str]]:
        """Split a body into (text up to the activity header, activity lines)."""
        head, sep, tail = content.partition(ACTIVITY_HEADER)
        if not sep:
            return content.rstrip() + f"\n\n{ACTIVITY_HEADER}", []
        activities = [line for line in tail.splitlines() if line.strip()]
        return head + ACTIVITY_HEADER, activities

    def read(self) -> str:
        """Body text without frontmatter, or "" when no log exists yet."""
        if not self.path.exists():
            return ""
        return self._load().content

    def entries(self) -> list[str]:
        return self._split(self._load().content)[1]

    def append(self, description: str) -> None:
        post = self._load()
        head, activities = self._split(post.content)
        timestamp = datetime.now(timezone.utc).isoformat()
        keep = max(self.max_entries - 1, 0)
        activities = activities[-keep:] if keep else []
        activities.append(f"- [{timestamp}] {description.strip()}")
        post.content = head + "\n" + "\n".join(activities)
        post["updated"] = timestamp
        self._save(post)

    def write_summary(
        self,
        session_name: str,
        work_items: list[str],
        assistant_messages: list[str],
    ) -> None:
        """Rewrite the header for a finished session, keeping the activity lines."""
        post = self._load()
        _, activities = self._split(post.content)

        actions = []
        for message in assistant_messages[-10:]:
            if any(marker in message for marker in ACTION_MARKERS):
                first = message.replace("!", ".").replace("?", ".").split("\n")[0].split(".")[0]
                if len(first) < 200:
                    actions.append(first)

        timestamp = datetime.now(timezone.utc).isoformat()
        body = "# Claude Work Context\n\n## What Claude Was Working On\n\n"
        if work_items:
            body += "\n".join(f"- {item}" for item in work_items) + "\n\n"
        if actions:
            body += "## Recent Actions\n\n" + "\n".join(f"- {a}" for a in actions[-10:]) + "\n\n"
        kept = activities[-self.max_entries :] if self.max_entries > 0 else []
        body += ACTIVITY_HEADER + "\n" + "\n".join(kept)

        post.content = body
        post["updated"] = timestamp
        post["session"] = session_name
        self._save(post)
        logger.info("Wrote work summary for session %s", session_name)
