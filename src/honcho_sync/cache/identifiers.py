"""Remote identifier cache. Lets routine invocations skip resolution calls.

On-disk shape (``cache.json``)::

    {
      "workspace": {"name": "claude_code", "id": "ws_..."},
      "peers": {"alice": "peer_...", "claude": "peer_..."},
      "sessions": {"/home/alice/repo": {"name": "alice-repo", "id": "...", "updatedAt": "..."}},
      "instanceId": "..."
    }

A cached id is only trusted while the name stored next to it matches the name
currently in effect.
"""

from __future__ import annotations

import logging
from datetime import datetime, timezone
from pathlib import Path
from typing import Literal

from honcho_sync.cache.files import JsonDocument

logger = logging.getLogger(__name__)

IdKind = Literal["workspace", "peer", "session"]


class IdentifierCache:
    """Workspace, peer and per-directory session ids."""

    def __init__(self, path: Path) -> None:
        self.document = JsonDocument(path)

    # ── Generic accessors ─────────────────────────────────────

    def get(self, kind: IdKind, name: str, cwd: str | None = None) -> str | None:
        if kind == "workspace":
            return self.get_workspace_id(name)
        if kind == "peer":
            return self.get_peer_id(name)
        if kind == "session":
            if cwd is None:
                raise ValueError("session ids are cached per directory; cwd is required")
            return self.get_session_id(cwd, name)
        raise ValueError(f"Unknown identifier kind: {kind}")

    def set(self, kind: IdKind, name: str, id: str, cwd: str | None = None) -> None:
        if kind == "workspace":
            self.set_workspace_id(name, id)
        elif kind == "peer":
            self.set_peer_id(name, id)
        elif kind == "session":
            if cwd is None:
                raise ValueError("session ids are cached per directory; cwd is required")
            self.set_session_id(cwd, name, id)
        else:
            raise ValueError(f"Unknown identifier kind: {kind}")

    # ── Workspace ─────────────────────────────────────────────

    def get_workspace_id(self, name: str) -> str | None:
        entry = self.document.load().get("workspace")
        if isinstance(entry, dict) and entry.get("name") == name:
            return entry.get("id") or None
        return None

    def set_workspace_id(self, name: str, id: str) -> None:
        """Store the workspace id. A different workspace name drops peer and session ids."""

        def apply(data: dict) -> None:
            previous = data.get("workspace")
            if not isinstance(previous, dict) or previous.get("name") != name:
                dropped = [key for key in ("peers", "sessions") if data.pop(key, None)]
                if dropped:
                    logger.info("Workspace is now %s, dropped cached %s", name, " and ".join(dropped))
            data["workspace"] = {"name": name, "id": id}

        self.document.update(apply)

    # ── Peers ─────────────────────────────────────────────────

    def get_peer_id(self, name: str) -> str | None:
        peers = self.document.load().get("peers")
        if isinstance(peers, dict):
            return peers.get(name) or None
        return None

    def set_peer_id(self, name: str, id: str) -> None:
        def apply(data: dict) -> None:
            peers = data.get("peers")
            if not isinstance(peers, dict):
                peers = data["peers"] = {}
            peers[name] = id

        self.document.update(apply)

    # ── Sessions (per directory) ──────────────────────────────

    def get_session_id(self, cwd: str, name: str) -> str | None:
        """Cached session id for cwd, or None when the resolved name has moved on."""
        sessions = self.document.load().get("sessions")
        if not isinstance(sessions, dict):
            return None
        entry = sessions.get(cwd)
        if not isinstance(entry, dict):
            return None
        if entry.get("name") != name:
            logger.debug(
                "Session name for %s changed (%s -> %s), re-resolving",
                cwd,
                entry.get("name"),
                name,
            )
            return None
        return entry.get("id") or None

    def set_session_id(self, cwd: str, name: str, id: str) -> None:
        def apply(data: dict) -> None:
            sessions = data.get("sessions")
            if not isinstance(sessions, dict):
                sessions = data["sessions"] = {}
            sessions[cwd] = {
                "name": name,
                "id": id,
                "updatedAt": datetime.now(timezone.utc).isoformat(),
            }

        self.document.update(apply)

    # ── Instance id ───────────────────────────────────────────

    @property
    def instance_id(self) -> str | None:
        return self.document.load().get("instanceId") or None

    def set_instance_id(self, instance_id: str) -> None:
        def apply(data: dict) -> None:
            data["instanceId"] = instance_id

        self.document.update(apply)

    # ── Invalidation ──────────────────────────────────────────

    def invalidate_workspace(self) -> None:
        """Drop every remote id. Peer and session ids are scoped to the workspace."""

        def apply(data: dict) -> None:
            for key in ("workspace", "peers", "sessions"):
                data.pop(key, None)

        self.document.update(apply)
        logger.info("Identifier cache cleared (workspace)")

    def invalidate_peers(self) -> None:
        def apply(data: dict) -> None:
            data.pop("peers", None)

        self.document.update(apply)
        logger.info("Identifier cache cleared (peers)")

    def clear(self) -> None:
        self.document.clear()
