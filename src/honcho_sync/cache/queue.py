"""Durable outbound message queue (``message-queue.jsonl``).

Every outbound message is appended here before any network call. An entry
stays until the upload that carried it is confirmed, so a process killed
between enqueue and upload loses nothing: the next flush picks it up.
"""

from __future__ import annotations

import json
import logging
from collections.abc import Iterable
from dataclasses import dataclass
from datetime import datetime, timezone
from pathlib import Path
from typing import Any

logger = logging.getLogger(__name__)


@dataclass
class QueuedMessage:
    """One line of the queue log."""

    content: str
    peer_id: str
    cwd: str
    timestamp: str
    uploaded: bool = False
    instance_id: str | None = None

    def to_dict(self) -> dict[str, Any]:
        entry: dict[str, Any] = {
            "content": self.content,
            "peerId": self.peer_id,
            "cwd": self.cwd,
            "timestamp": self.timestamp,
            "uploaded": self.uploaded,
        }
        if self.instance_id:
            entry["instanceId"] = self.instance_id
        return entry

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> QueuedMessage:
        if not isinstance(data.get("content"), str) or not isinstance(data.get("cwd"), str):
            raise ValueError("queue entry needs string content and cwd")
        return cls(
            content=data["content"],
            peer_id=str(data.get("peerId", "")),
            cwd=data["cwd"],
            timestamp=str(data.get("timestamp", "")),
            uploaded=bool(data.get("uploaded", False)),
            instance_id=data.get("instanceId") or None,
        )


class MessageQueue:
    """Append-only JSONL log of messages not yet confirmed delivered."""

    def __init__(self, path: Path) -> None:
        self.path = Path(path)

    def enqueue(
        self,
        content: str,
        peer_id: str,
        cwd: str,
        instance_id: str | None = None,
    ) -> QueuedMessage:
        """Append a message. Returns once the line is written to the file."""
        message = QueuedMessage(
            content=content,
            peer_id=peer_id,
            cwd=cwd,
            timestamp=datetime.now(timezone.utc).isoformat(),
            uploaded=False,
            instance_id=instance_id,
        )
        self.path.parent.mkdir(parents=True, exist_ok=True)
        with self.path.open("a", encoding="utf-8") as f:
            f.write(json.dumps(message.to_dict(), ensure_ascii=False) + "\n")
            f.flush()
        logger.debug("Queued message for %s (%d chars)", cwd, len(content))
        return message

    def _read_lines(self) -> list[str]:
        if not self.path.exists():
            return []
        try:
            text = self.path.read_text(encoding="utf-8")
        except (OSError, UnicodeDecodeError) as e:
            logger.warning("Failed to read message queue %s: %s", self.path, e)
            return []
        return [line for line in text.splitlines() if line.strip()]

    @staticmethod
    def _parse(line: str) -> QueuedMessage | None:
        try:
            data = json.loads(line)
            if not isinstance(data, dict):
                return None
            return QueuedMessage.from_dict(data)
        except (json.JSONDecodeError, ValueError):
            return None

    def list_pending(self, cwd: str | None = None) -> list[QueuedMessage]:
        """Entries not marked uploaded, oldest first. Malformed lines are skipped."""
        pending = []
        for line in self._read_lines():
            message = self._parse(line)
            if message is None:
                logger.debug("Skipping malformed queue line: %.80s", line)
                continue
            if message.uploaded:
                continue
            if cwd is not None and message.cwd != cwd:
                continue
            pending.append(message)
        return pending

    def mark_uploaded(
        self,
        cwd: str | None = None,
        *,
        messages: Iterable[QueuedMessage] | None = None,
    ) -> int:
        """Remove confirmed entries and return how many were removed.

        With no arguments the whole log is cleared. With ``cwd`` only that
        directory's entries go; with ``messages`` only those exact entries go
        (further restricted to ``cwd`` when both are given). Remaining lines
        are rewritten verbatim and in their original order. Malformed lines
        are dropped on rewrite.
        """
        if cwd is None and messages is None:
            removed = len(self._read_lines())
            self.clear()
            return removed

        acknowledged = None
        if messages is not None:
            acknowledged = [m.to_dict() for m in messages]

        remaining: list[str] = []
        removed = 0
        for line in self._read_lines():
            message = self._parse(line)
            if message is None:
                continue
            if cwd is not None and message.cwd != cwd:
                remaining.append(line)
                continue
            if acknowledged is not None:
                entry = message.to_dict()
                if entry not in acknowledged:
                    remaining.append(line)
                    continue
                acknowledged.remove(entry)
            removed += 1

        self._rewrite(remaining)
        logger.debug("Removed %d uploaded queue entries (cwd=%s)", removed, cwd)
        return removed

    def _rewrite(self, lines: list[str]) -> None:
        """Rewrite the log in place.

        The file keeps its inode, so an enqueue holding an append handle opened
        before the rewrite still lands in the live log.
        """
        if not self.path.exists():
            return
        with self.path.open("r+", encoding="utf-8") as f:
            f.write("".join(f"{line}\n" for line in lines))
            f.truncate()
            f.flush()

    def clear(self) -> None:
        self._rewrite([])
