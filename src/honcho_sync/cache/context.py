"""Fetched context cache with a TTL and a message-count refresh counter."""

from __future__ import annotations

import logging
import re
import time
from collections.abc import Callable
from pathlib import Path
from typing import Any, Literal

from honcho_sync.cache.files import JsonDocument

logger = logging.getLogger(__name__)

ContextKind = Literal["user", "ai"]

DEFAULT_TTL_SECONDS = 300
DEFAULT_MESSAGE_THRESHOLD = 30

_KIND_KEYS: dict[str, str] = {"user": "userContext", "ai": "aiContext"}


class ContextPayload:
    """Opaque remote context blob with forgiving accessors.

    The remote shape is not fixed; every accessor returns an empty value when
    the field it looks for is absent or has an unexpected type.
    """

    def __init__(self, data: Any) -> None:
        self.data = data

    def _field(self, name: str) -> Any:
        if isinstance(self.data, dict):
            return self.data.get(name)
        return getattr(self.data, name, None)

    @property
    def representation(self) -> str:
        rep = self._field("representation")
        return rep if isinstance(rep, str) else ""

    @property
    def peer_card(self) -> list[str]:
        card = self._field("peerCard")
        if card is None:
            card = self._field("peer_card")
        if not isinstance(card, list):
            return []
        return [str(item) for item in card if item]

    def conclusions(self) -> list[str]:
        """Non-empty, non-heading lines of the representation."""
        return [
            line
            for line in self.representation.splitlines()
            if line.strip() and not line.startswith("#")
        ]

    def summary(self, limit: int = 5) -> str:
        cleaned = []
        for line in self.conclusions()[:limit]:
            line = re.sub(r"^\[.*?\]\s*", "", line)
            cleaned.append(re.sub(r"^- ", "", line))
        return "; ".join(cleaned)

    def is_empty(self) -> bool:
        return not self.representation.strip() and not self.peer_card

    def to_json(self) -> Any:
        return self.data

    def __eq__(self, other: object) -> bool:
        return isinstance(other, ContextPayload) and other.data == self.data

    def __repr__(self) -> str:
        return f"ContextPayload({self.data!r})"


class ContextCache:
    """User and AI-peer context payloads plus the refresh counter.

    ``fetchedAt`` is stored in epoch milliseconds. An entry is fresh while
    ``now - fetchedAt < ttl_seconds * 1000``.
    """

    def __init__(
        self,
        path: Path,
        ttl_seconds: int = DEFAULT_TTL_SECONDS,
        message_threshold: int = DEFAULT_MESSAGE_THRESHOLD,
        clock: Callable[[], float] = time.time,
    ) -> None:
        self.document = JsonDocument(path)
        self.ttl_seconds = ttl_seconds
        self.message_threshold = message_threshold
        self._clock = clock

    def _now_ms(self) -> int:
        return int(self._clock() * 1000)

    def _is_fresh(self, entry: Any) -> bool:
        if not isinstance(entry, dict):
            return False
        fetched_at = entry.get("fetchedAt")
        if not isinstance(fetched_at, (int, float)):
            return False
        return self._now_ms() - fetched_at < self.ttl_seconds * 1000

    # ── Payloads ──────────────────────────────────────────────

    def get(self, kind: ContextKind = "user") -> ContextPayload | None:
        """Cached payload for kind while it is fresh, else None."""
        entry = self.document.load().get(_KIND_KEYS[kind])
        if self._is_fresh(entry):
            return ContextPayload(entry.get("data"))
        return None

    def set(self, kind: ContextKind, payload: ContextPayload | Any) -> None:
        data = payload.to_json() if isinstance(payload, ContextPayload) else payload
        fetched_at = self._now_ms()

        def apply(cache: dict) -> None:
            cache[_KIND_KEYS[kind]] = {"data": data, "fetchedAt": fetched_at}

        self.document.update(apply)
        logger.debug("Cached %s context", kind)

    def is_stale(self, kind: ContextKind = "user") -> bool:
        return not self._is_fresh(self.document.load().get(_KIND_KEYS[kind]))

    def clear(self, kind: ContextKind | None = None) -> None:
        kinds = [kind] if kind else list(_KIND_KEYS)

        def apply(cache: dict) -> None:
            for k in kinds:
                cache.pop(_KIND_KEYS[k], None)

        self.document.update(apply)

    # ── Message counter ───────────────────────────────────────

    @property
    def message_count(self) -> int:
        return _as_int(self.document.load().get("messageCount"))

    def increment_message_count(self) -> int:
        def apply(cache: dict) -> int:
            cache["messageCount"] = _as_int(cache.get("messageCount")) + 1
            return cache["messageCount"]

        return self.document.update(apply)

    def should_force_refresh(self) -> bool:
        cache = self.document.load()
        sent = _as_int(cache.get("messageCount")) - _as_int(cache.get("lastRefreshMessageCount"))
        return sent >= self.message_threshold

    def mark_refreshed(self) -> None:
        def apply(cache: dict) -> None:
            cache["lastRefreshMessageCount"] = _as_int(cache.get("messageCount"))

        self.document.update(apply)

    def reset_message_count(self) -> None:
        def apply(cache: dict) -> None:
            cache["messageCount"] = 0
            cache["lastRefreshMessageCount"] = 0

        self.document.update(apply)


def _as_int(value: Any) -> int:
    if isinstance(value, bool):
        return 0
    if isinstance(value, (int, float)):
        return int(value)
    return 0
