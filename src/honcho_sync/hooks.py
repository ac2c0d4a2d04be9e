"""Lifecycle hook handlers: one per host event, one event per process.

Every handler follows the same order:
1. Load config; unconfigured or disabled means a silent no-op
2. Resolve the session name for the working directory
3. Diff repository state against the previous invocation (session start)
4. Decide whether cached context is good enough
5. Append outbound messages to the local queue before any network call
6. Network work; on success update the caches and acknowledge queue entries

Remote failures are logged and swallowed: queued messages stay queued and
cached ids/context stay valid until their own invalidation rules fire.
"""

from __future__ import annotations

import json
import logging
import re
from dataclasses import dataclass, field
from datetime import datetime, timezone
from pathlib import Path
from typing import Any

from honcho_sync.cache import ContextPayload, GitChange, GitSnapshot
from honcho_sync.cache.context import ContextKind
from honcho_sync.config import ResolvedConfig, truncate_to_tokens
from honcho_sync.git import recent_commits
from honcho_sync.service import KnowledgeService, OutboundMessage, ServiceFactory
from honcho_sync.state import LocalState

logger = logging.getLogger(__name__)

MAX_CHUNK_CHARS = 25_000
LOCAL_CONTEXT_PREVIEW = 2000
TOPIC_SCAN_CHARS = 2000

TRIVIAL_PROMPT_PATTERNS = [
    re.compile(
        r"^(yes|no|ok|sure|thanks|y|n|yep|nope|yeah|nah|continue|go ahead|do it|proceed)$",
        re.IGNORECASE,
    ),
    re.compile(r"^/"),  # slash commands
]

SIGNIFICANT_TOOLS = {"Write", "Edit", "Bash", "Task", "NotebookEdit"}
TRIVIAL_COMMANDS = (
    "ls", "pwd", "echo", "cat", "head", "tail", "which", "type",
    "git status", "git log", "git diff",
)

_TECH_TERMS = re.compile(
    r"\b(react|vue|svelte|angular|express|fastapi|django|flask|postgres|redis|docker|"
    r"kubernetes|node|deno|typescript|python|rust|go|graphql|rest|api|auth|oauth|jwt|webhook)\b",
    re.IGNORECASE,
)
_FILE_PATHS = re.compile(r"[\w\-/.]+\.(?:ts|tsx|js|jsx|py|rs|go|md|json|yaml|yml|toml|sql)\b", re.IGNORECASE)
_COMMON_WORDS = {
    "that", "this", "with", "from", "have", "were", "been", "being", "does", "will",
    "would", "could", "should", "need", "want", "like", "just", "also", "more", "some",
    "what", "when", "where", "which", "there", "their", "into", "over", "such", "only",
    "same", "than", "very", "your", "make", "take", "look", "think", "know", "please",
}


# ── Event I/O ────────────────────────────────────────────────


@dataclass
class HookEvent:
    """The fields of a host event record this package reads."""

    cwd: str
    instance_id: str | None = None
    prompt: str = ""
    reason: str = ""
    tool_name: str = ""
    tool_input: dict[str, Any] = field(default_factory=dict)
    transcript_path: str | None = None
    raw: dict[str, Any] = field(default_factory=dict)

    @classmethod
    def from_dict(cls, data: dict[str, Any], default_cwd: str) -> HookEvent:
        roots = data.get("workspace_roots")
        cwd = (roots[0] if isinstance(roots, list) and roots else None) or data.get("cwd") or default_cwd
        tool_input = data.get("tool_input")
        return cls(
            cwd=str(cwd),
            instance_id=data.get("session_id") or None,
            prompt=str(data.get("prompt") or ""),
            reason=str(data.get("reason") or data.get("trigger") or data.get("source") or ""),
            tool_name=str(data.get("tool_name") or ""),
            tool_input=tool_input if isinstance(tool_input, dict) else {},
            transcript_path=data.get("transcript_path") or None,
            raw=data,
        )

    @classmethod
    def from_json(cls, text: str, default_cwd: str) -> HookEvent:
        data = json.loads(text) if text.strip() else {}
        if not isinstance(data, dict):
            raise ValueError("hook input must be a JSON object")
        return cls.from_dict(data, default_cwd)


# Events whose output may carry additionalContext for the model.
_CONTEXT_EVENTS = {"SessionStart", "UserPromptSubmit", "PostToolUse"}


@dataclass
class HookResult:
    event_name: str
    context: str | None = None
    system_message: str | None = None

    def to_output(self) -> dict[str, Any] | None:
        """JSON object for the host's stdout, or None when there is nothing to say."""
        output: dict[str, Any] = {}
        if self.context and self.event_name in _CONTEXT_EVENTS:
            output["hookSpecificOutput"] = {
                "hookEventName": self.event_name,
                "additionalContext": self.context,
            }
        elif self.context:
            output["systemMessage"] = self.context
        if self.system_message:
            output["systemMessage"] = self.system_message
        return output or None


@dataclass
class RemoteIds:
    session_id: str
    peer_ids: dict[str, str]

    def peer(self, name: str) -> str:
        return self.peer_ids.get(name, name)


# ── Helpers ──────────────────────────────────────────────────


def is_trivial_prompt(prompt: str) -> bool:
    return any(p.search(prompt.strip()) for p in TRIVIAL_PROMPT_PATTERNS)


def extract_topics(prompt: str) -> list[str]:
    """Search terms for a prompt: file paths, quoted text, tech terms, else keywords."""
    topics: list[str] = []
    topics.extend(_FILE_PATHS.findall(prompt)[:5])
    topics.extend(re.findall(r'"([^"]+)"', prompt)[:3])
    terms = dict.fromkeys(t.lower() for t in _TECH_TERMS.findall(prompt))
    topics.extend(list(terms)[:5])
    if topics:
        return list(dict.fromkeys(topics))
    words = re.findall(r"\b[a-z]{4,}\b", prompt.lower())
    return list(dict.fromkeys(w for w in words if w not in _COMMON_WORDS))[:10]


def chunk_content(text: str, max_chars: int = MAX_CHUNK_CHARS) -> list[str]:
    if len(text) <= max_chars:
        return [text]
    return [text[i : i + max_chars] for i in range(0, len(text), max_chars)]


def format_context_parts(payload: ContextPayload | None) -> list[str]:
    if payload is None:
        return []
    parts = []
    summary = payload.summary()
    if summary:
        parts.append(f"Relevant conclusions: {summary}")
    if payload.peer_card:
        parts.append(f"Profile: {'; '.join(payload.peer_card)}")
    return parts


def summarize_tool_use(tool_name: str, tool_input: dict[str, Any]) -> str | None:
    """One-line description of a significant tool call, None for noise."""
    if tool_name not in SIGNIFICANT_TOOLS:
        return None
    if tool_name == "Bash":
        command = str(tool_input.get("command", "")).strip()
        if not command or any(command == c or command.startswith(c + " ") for c in TRIVIAL_COMMANDS):
            return None
        return f"Ran: {command[:100]}"
    if tool_name == "Write":
        return f"Wrote {tool_input.get('file_path', 'a file')}"
    if tool_name == "Edit":
        return f"Edited {tool_input.get('file_path', 'a file')}"
    if tool_name == "NotebookEdit":
        return f"Edited notebook {tool_input.get('notebook_path', '')}".rstrip()
    return f"Delegated task: {tool_input.get('description', '')}".rstrip(": ")


def read_transcript(path: str | None) -> list[tuple[str, str]]:
    """(role, text) pairs from a JSONL transcript. Unreadable lines are skipped."""
    if not path:
        return []
    try:
        lines = Path(path).read_text(encoding="utf-8").splitlines()
    except (OSError, UnicodeDecodeError) as e:
        logger.warning("Failed to read transcript %s: %s", path, e)
        return []

    turns = []
    for line in lines:
        try:
            entry = json.loads(line)
        except json.JSONDecodeError:
            continue
        if not isinstance(entry, dict):
            continue
        message = entry.get("message") if isinstance(entry.get("message"), dict) else entry
        role = message.get("role") or entry.get("type")
        content = message.get("content")
        if isinstance(content, list):
            content = "\n".join(
                block.get("text", "")
                for block in content
                if isinstance(block, dict) and block.get("type") == "text"
            )
        if role in ("user", "assistant") and isinstance(content, str) and content.strip():
            turns.append((role, content.strip()))
    return turns


def _first_sentence(text: str) -> str:
    return re.split(r"[.!?\n]", text, maxsplit=1)[0].strip()


# ── Runner ───────────────────────────────────────────────────


class HookRunner:
    """Runs hook handlers against one invocation's local state."""

    def __init__(self, state: LocalState, service_factory: ServiceFactory | None = None) -> None:
        self.state = state
        self.service_factory = service_factory

    # ── Shared steps ──────────────────────────────────────────

    def _load_config(self) -> ResolvedConfig | None:
        config = self.state.config.load()
        if config is None:
            logger.debug("Not configured, skipping")
            return None
        if not config.enabled:
            logger.debug("Disabled, skipping")
            return None
        self.state.apply_policy(config)
        return config

    def _service(self, config: ResolvedConfig) -> KnowledgeService | None:
        if self.service_factory is None:
            return None
        try:
            return self.service_factory(config)
        except Exception as e:
            logger.warning("Could not create knowledge service client: %s", e)
            return None

    def _instance_id(self, event: HookEvent) -> str | None:
        return event.instance_id or self.state.identifiers.instance_id

    async def _connect(
        self,
        service: KnowledgeService,
        config: ResolvedConfig,
        cwd: str,
        session_name: str,
    ) -> RemoteIds:
        """Remote ids for workspace, both peers and the session, cache first."""
        ids = self.state.identifiers
        if not ids.get_workspace_id(config.workspace):
            ids.set_workspace_id(config.workspace, await service.resolve_workspace(config.workspace))

        peer_ids = {}
        for name in (config.peer_name, config.ai_peer):
            peer_id = ids.get_peer_id(name)
            if not peer_id:
                peer_id = await service.resolve_peer(name)
                ids.set_peer_id(name, peer_id)
            peer_ids[name] = peer_id

        session_id = ids.get_session_id(cwd, session_name)
        if not session_id:
            session_id = await service.resolve_session(session_name)
            ids.set_session_id(cwd, session_name, session_id)
        return RemoteIds(session_id=session_id, peer_ids=peer_ids)

    async def _connect_or_none(
        self, config: ResolvedConfig, cwd: str, session_name: str
    ) -> tuple[KnowledgeService, RemoteIds] | None:
        service = self._service(config)
        if service is None:
            return None
        try:
            return service, await self._connect(service, config, cwd, session_name)
        except Exception as e:
            logger.warning("Remote resolution failed for %s (session %s): %s", cwd, session_name, e)
            return None

    async def _upload_pending(
        self,
        service: KnowledgeService,
        config: ResolvedConfig,
        remote: RemoteIds,
        cwd: str,
        session_name: str,
    ) -> int:
        """Send every pending entry for cwd and acknowledge exactly those entries."""
        pending = self.state.queue.list_pending(cwd)
        if not pending:
            return 0
        upload = config.message_upload
        messages = []
        for queued in pending:
            limit = upload.max_user_tokens if queued.peer_id == config.peer_name else upload.max_assistant_tokens
            content = truncate_to_tokens(queued.content, limit) if limit else queued.content
            metadata = {"session_affinity": session_name, "queued_at": queued.timestamp}
            if queued.instance_id:
                metadata["instance_id"] = queued.instance_id
            for chunk in chunk_content(content):
                messages.append(OutboundMessage(chunk, remote.peer(queued.peer_id), dict(metadata)))

        await service.send_messages(remote.session_id, messages)
        self.state.queue.mark_uploaded(cwd, messages=pending)
        logger.info("Uploaded %d queued messages for %s", len(pending), cwd)
        return len(pending)

    async def _try_upload(
        self,
        service: KnowledgeService,
        config: ResolvedConfig,
        remote: RemoteIds,
        cwd: str,
        session_name: str,
    ) -> int:
        try:
            return await self._upload_pending(service, config, remote, cwd, session_name)
        except Exception as e:
            logger.warning("Upload failed for %s, messages stay queued: %s", cwd, e)
            return 0

    async def _refresh_context(
        self,
        service: KnowledgeService,
        config: ResolvedConfig,
        remote: RemoteIds,
        kind: ContextKind,
        search_query: str | None = None,
    ) -> ContextPayload | None:
        peer_name = config.peer_name if kind == "user" else config.ai_peer
        try:
            data = await service.fetch_context(
                remote.peer(peer_name),
                session_id=remote.session_id,
                search_query=search_query,
                max_conclusions=25 if kind == "user" else 15,
            )
        except Exception as e:
            logger.warning("Context fetch (%s) failed: %s", kind, e)
            return None
        payload = ContextPayload(data)
        self.state.context.set(kind, payload)
        return payload

    # ── Handlers ──────────────────────────────────────────────

    async def session_start(self, event: HookEvent) -> HookResult:
        result = HookResult("SessionStart")
        config = self._load_config()
        if config is None:
            return result
        state = self.state
        cwd = event.cwd

        if event.instance_id:
            state.identifiers.set_instance_id(event.instance_id)
        state.context.reset_message_count()

        snapshot = state.config.git_capture(cwd)
        changes = state.git_state.observe(cwd, snapshot) if snapshot else []

        session_name = state.config.resolve_session_name(
            cwd, config, git_state=snapshot, instance_id=event.instance_id
        )
        if config.session_strategy == "per-directory" and cwd not in config.sessions:
            state.config.set_session_for_path(cwd, session_name)
        logger.info("Session start in %s (session %s)", cwd, session_name)

        if config.save_messages:
            for change in changes:
                if change.type != "initial":
                    state.queue.enqueue(
                        f"[Git External] {change.description}",
                        config.peer_name,
                        cwd,
                        self._instance_id(event),
                    )

        connected = await self._connect_or_none(config, cwd, session_name)
        if connected:
            service, remote = connected
            await self._try_upload(service, config, remote, cwd, session_name)
            refreshed = [
                await self._refresh_context(service, config, remote, "user"),
                await self._refresh_context(service, config, remote, "ai"),
            ]
            if all(p is not None for p in refreshed):
                state.context.mark_refreshed()

        result.context = self._session_context(config, cwd, session_name, snapshot, changes)
        return result

    def _session_context(
        self,
        config: ResolvedConfig,
        cwd: str,
        session_name: str,
        snapshot: GitSnapshot | None,
        changes: list[GitChange],
    ) -> str:
        header = [
            "## Memory System Active",
            f"- User: {config.peer_name}",
            f"- AI: {config.ai_peer}",
            f"- Workspace: {config.workspace}",
            f"- Session: {session_name}",
            f"- Directory: {cwd}",
        ]
        if snapshot:
            header.append(f"- Git Branch: {snapshot.branch}")
            header.append(f"- Git HEAD: {snapshot.commit}")
            if snapshot.is_dirty:
                header.append(f"- Working Tree: {len(snapshot.dirty_files)} uncommitted changes")
        sections = ["\n".join(header)]

        commits = recent_commits(cwd, 3) if snapshot else []
        if commits:
            sections.append("## Recent Commits\n" + "\n".join(f"- {c}" for c in commits))
        if changes:
            sections.append(
                "## Git Activity Since Last Session\n" + "\n".join(f"- {c.description}" for c in changes)
            )
        local = self.state.work_log.read()
        if local.strip():
            sections.append(f"## Recent Local Activity\n{local[:LOCAL_CONTEXT_PREVIEW]}")

        for title, kind in ((f"About {config.peer_name}", "user"), (f"About {config.ai_peer}", "ai")):
            payload = self.state.context.get(kind)
            if payload and payload.representation.strip():
                sections.append(f"## {title}\n{payload.representation.strip()}")
            if payload and payload.peer_card:
                sections.append(f"## {title}: Profile\n" + "\n".join(f"- {c}" for c in payload.peer_card))
        return "\n\n".join(sections)

    async def user_prompt(self, event: HookEvent) -> HookResult:
        result = HookResult("UserPromptSubmit")
        config = self._load_config()
        if config is None or not event.prompt.strip():
            return result
        state = self.state
        cwd = event.cwd
        logger.info("Prompt received in %s (%d chars)", cwd, len(event.prompt))

        if config.save_messages:
            state.queue.enqueue(event.prompt, config.peer_name, cwd, self._instance_id(event))
        state.context.increment_message_count()

        session_name = state.config.resolve_session_name(cwd, config, instance_id=event.instance_id)
        connected = await self._connect_or_none(config, cwd, session_name)
        if connected and config.save_messages:
            await self._try_upload(connected[0], config, connected[1], cwd, session_name)

        if is_trivial_prompt(event.prompt):
            logger.debug("Skipping context (trivial prompt)")
            return result

        force = state.context.should_force_refresh()
        payload = None if force else state.context.get("user")
        if payload is not None:
            logger.debug("Context cache hit (user)")
        elif connected:
            service, remote = connected
            query = " ".join(extract_topics(event.prompt[:TOPIC_SCAN_CHARS])) or event.prompt[:200]
            payload = await self._refresh_context(service, config, remote, "user", search_query=query)
            if payload is not None and force:
                state.context.mark_refreshed()

        parts = format_context_parts(payload)
        if parts:
            result.context = f"[Memory for {config.peer_name}]: {' | '.join(parts)}"
        return result

    async def post_tool_use(self, event: HookEvent) -> HookResult:
        result = HookResult("PostToolUse")
        config = self._load_config()
        if config is None:
            return result
        summary = summarize_tool_use(event.tool_name, event.tool_input)
        if not summary:
            return result

        self.state.work_log.append(summary)
        if config.save_messages:
            self.state.queue.enqueue(f"[Tool] {summary}", config.ai_peer, event.cwd, self._instance_id(event))
            session_name = self.state.config.resolve_session_name(
                event.cwd, config, instance_id=event.instance_id
            )
            connected = await self._connect_or_none(config, event.cwd, session_name)
            if connected:
                await self._try_upload(connected[0], config, connected[1], event.cwd, session_name)
        return result

    async def pre_compact(self, event: HookEvent) -> HookResult:
        """Flush and re-fetch both contexts so they survive the compaction."""
        result = HookResult("PreCompact")
        config = self._load_config()
        if config is None:
            return result
        session_name = self.state.config.resolve_session_name(event.cwd, config, instance_id=event.instance_id)

        connected = await self._connect_or_none(config, event.cwd, session_name)
        if connected:
            service, remote = connected
            await self._try_upload(service, config, remote, event.cwd, session_name)
            user = await self._refresh_context(service, config, remote, "user")
            ai = await self._refresh_context(service, config, remote, "ai")
            if user is not None and ai is not None:
                self.state.context.mark_refreshed()

        sections = [f"## Memory Anchor (before compaction, trigger: {event.reason or 'auto'})"]
        for name, kind in ((config.peer_name, "user"), (config.ai_peer, "ai")):
            parts = format_context_parts(self.state.context.get(kind))
            if parts:
                sections.append(f"- {name}: {' | '.join(parts)}")
        if len(sections) > 1:
            result.context = "\n".join(sections)
        return result

    async def stop(self, event: HookEvent) -> HookResult:
        result = HookResult("Stop")
        config = self._load_config()
        if config is None:
            return result
        if config.save_messages:
            assistant = [text for role, text in read_transcript(event.transcript_path) if role == "assistant"]
            if assistant:
                self.state.queue.enqueue(assistant[-1], config.ai_peer, event.cwd, self._instance_id(event))
        await self.flush(event.cwd, config=config)
        return result

    async def session_end(self, event: HookEvent) -> HookResult:
        result = HookResult("SessionEnd")
        config = self._load_config()
        if config is None:
            return result
        cwd = event.cwd
        session_name = self.state.config.resolve_session_name(cwd, config, instance_id=event.instance_id)

        turns = read_transcript(event.transcript_path)
        assistant = [text for role, text in turns if role == "assistant"][-30:]
        work_items = [s for s in (_first_sentence(t) for t in assistant[-5:]) if 0 < len(s) < 200]
        self.state.work_log.write_summary(session_name, work_items, assistant)

        if config.save_messages:
            ended = datetime.now(timezone.utc).isoformat()
            self.state.queue.enqueue(
                f"[Session ended] Reason: {event.reason or 'unknown'}, Messages: {len(turns)}, Time: {ended}",
                config.ai_peer,
                cwd,
                self._instance_id(event),
            )
        await self.flush(cwd, config=config)
        return result

    async def flush(self, cwd: str | None = None, *, config: ResolvedConfig | None = None) -> int:
        """Recovery pass: upload pending entries grouped by directory.

        Returns how many entries were acknowledged. Directories whose upload
        fails keep their entries for the next pass.
        """
        config = config or self._load_config()
        if config is None:
            return 0
        pending = self.state.queue.list_pending(cwd)
        directories = list(dict.fromkeys(m.cwd for m in pending))
        uploaded = 0
        for directory in directories:
            session_name = self.state.config.resolve_session_name(directory, config)
            connected = await self._connect_or_none(config, directory, session_name)
            if connected is None:
                continue
            uploaded += await self._try_upload(connected[0], config, connected[1], directory, session_name)
        return uploaded


HANDLERS = {
    "session-start": HookRunner.session_start,
    "user-prompt": HookRunner.user_prompt,
    "post-tool-use": HookRunner.post_tool_use,
    "pre-compact": HookRunner.pre_compact,
    "stop": HookRunner.stop,
    "session-end": HookRunner.session_end,
}
