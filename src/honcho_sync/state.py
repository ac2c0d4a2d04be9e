"""Per-invocation bundle of the local stores rooted at one state directory."""

from __future__ import annotations

import logging
import time
from collections.abc import Callable, Mapping
from dataclasses import dataclass
from pathlib import Path

from honcho_sync.cache import (
    ContextCache,
    GitSnapshot,
    GitStateCache,
    IdentifierCache,
    MessageQueue,
    WorkLog,
)
from honcho_sync.config import DEFAULT_HOST, ConfigStore, ResolvedConfig, default_state_dir
from honcho_sync.git import capture_git_state

logger = logging.getLogger(__name__)

CONFIG_FILE = "config.json"
ID_CACHE_FILE = "cache.json"
CONTEXT_CACHE_FILE = "context-cache.json"
MESSAGE_QUEUE_FILE = "message-queue.jsonl"
GIT_STATE_FILE = "git-state.json"
WORK_LOG_FILE = "claude-context.md"
ACTIVITY_LOG_FILE = "activity.log"


@dataclass
class LocalState:
    root: Path
    config: ConfigStore
    identifiers: IdentifierCache
    context: ContextCache
    queue: MessageQueue
    git_state: GitStateCache
    work_log: WorkLog

    @classmethod
    def open(
        cls,
        root: Path | None = None,
        *,
        host: str = DEFAULT_HOST,
        environ: Mapping[str, str] | None = None,
        clock: Callable[[], float] = time.time,
        git_capture: Callable[[str], GitSnapshot | None] = capture_git_state,
    ) -> LocalState:
        root = Path(root) if root is not None else default_state_dir(environ)
        root.mkdir(parents=True, exist_ok=True)
        identifiers = IdentifierCache(root / ID_CACHE_FILE)
        context = ContextCache(root / CONTEXT_CACHE_FILE, clock=clock)
        config = ConfigStore(
            root / CONFIG_FILE,
            host=host,
            environ=environ,
            identifiers=identifiers,
            context=context,
            git_capture=git_capture,
        )
        return cls(
            root=root,
            config=config,
            identifiers=identifiers,
            context=context,
            queue=MessageQueue(root / MESSAGE_QUEUE_FILE),
            git_state=GitStateCache(root / GIT_STATE_FILE),
            work_log=WorkLog(root / WORK_LOG_FILE),
        )

    @property
    def activity_log(self) -> Path:
        return self.root / ACTIVITY_LOG_FILE

    def apply_policy(self, config: ResolvedConfig) -> None:
        """Push the config's tunables into the caches."""
        self.context.ttl_seconds = config.context_refresh.ttl_seconds
        self.context.message_threshold = config.context_refresh.message_threshold
        self.work_log.max_entries = config.local_context.max_entries

    def clear_caches(self) -> None:
        """Reset identifier, context, queue and git-state files. The work log is kept."""
        self.identifiers.clear()
        self.context.document.clear()
        self.queue.clear()
        self.git_state.clear()
        logger.info("Cleared local caches in %s", self.root)
