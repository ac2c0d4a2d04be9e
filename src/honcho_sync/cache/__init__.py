"""Local state files shared by every hook invocation.

Layout:
    ~/.honcho/
    ├── config.json                 # ConfigStore (shared across hosts)
    ├── cache.json                  # IdentifierCache: workspace/peer/session ids
    ├── context-cache.json          # ContextCache: fetched payloads + message counter
    ├── message-queue.jsonl         # MessageQueue: outbound messages not yet confirmed
    ├── git-state.json              # GitStateCache: last snapshot per directory
    ├── claude-context.md           # WorkLog: bounded recent-activity log
    └── activity.log                # logging output

Each invocation is a separate process, so every read goes to disk and every
write is a full read-merge-write of one file.
"""

from honcho_sync.cache.context import ContextCache, ContextPayload
from honcho_sync.cache.files import JsonDocument
from honcho_sync.cache.git_state import GitChange, GitSnapshot, GitStateCache, diff_git_state
from honcho_sync.cache.identifiers import IdentifierCache
from honcho_sync.cache.queue import MessageQueue, QueuedMessage
from honcho_sync.cache.work_log import WorkLog

__all__ = [
    "ContextCache",
    "ContextPayload",
    "GitChange",
    "GitSnapshot",
    "GitStateCache",
    "IdentifierCache",
    "JsonDocument",
    "MessageQueue",
    "QueuedMessage",
    "WorkLog",
    "diff_git_state",
]
