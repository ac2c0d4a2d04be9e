"""Configuration loading from ~/.honcho/config.json and environment variables.

One file is shared by every host (Claude Code, Cursor, Obsidian). Shared
fields live at the top level; host-specific identity (workspace, AI peer,
linked hosts) lives under ``hosts.<host>``. Each invocation resolves exactly
one view for its host.

Priority per field: environment (global fields) > host block > legacy flat
fields > host default.
"""

from __future__ import annotations

import logging
import os
import re
from collections.abc import Callable, Iterable, Mapping
from dataclasses import dataclass, field, replace
from pathlib import Path
from typing import TYPE_CHECKING, Any

from honcho_sync.cache.files import JsonDocument
from honcho_sync.cache.git_state import GitSnapshot
from honcho_sync.git import capture_git_state

if TYPE_CHECKING:
    from honcho_sync.cache.context import ContextCache
    from honcho_sync.cache.identifiers import IdentifierCache

logger = logging.getLogger(__name__)

_DEFAULT_STATE_DIR = Path.home() / ".honcho"
_CONFIG_FILENAME = "config.json"

DEFAULT_HOST = "claude_code"
HOSTS = ("claude_code", "cursor", "obsidian")
DEFAULT_WORKSPACE = {"claude_code": "claude_code", "cursor": "cursor", "obsidian": "obsidian"}
DEFAULT_AI_PEER = {"claude_code": "claude", "cursor": "cursor", "obsidian": "honcho"}

SESSION_STRATEGIES = ("per-directory", "git-branch", "chat-instance")

BASE_URLS = {
    "production": "https://api.honcho.dev/v3",
    "local": "http://localhost:8000/v3",
}

DANGEROUS_FIELDS = {"workspace", "endpoint.environment", "endpoint.baseUrl"}

SESSION_AFFECTING_FIELDS = {
    "workspace",
    "aiPeer",
    "peerName",
    "sessionStrategy",
    "sessionPeerPrefix",
    "endpoint.environment",
    "endpoint.baseUrl",
    "globalOverride",
}

# Environment variables that can shadow a persisted field.
ENV_SHADOW_MAP = {
    "peerName": "HONCHO_PEER_NAME",
    "workspace": "HONCHO_WORKSPACE",
    "aiPeer": "HONCHO_AI_PEER",
    "enabled": "HONCHO_ENABLED",
    "logging": "HONCHO_LOGGING",
    "saveMessages": "HONCHO_SAVE_MESSAGES",
    "endpoint.baseUrl": "HONCHO_ENDPOINT",
    "endpoint.environment": "HONCHO_ENDPOINT",
}

HOST_FIELDS = ("workspace", "aiPeer", "linkedHosts")

RESTART_WARNING = (
    "Close and restart all active sessions. Open sessions still use the previous "
    "config and will write to the wrong remote session."
)


class ConfigError(ValueError):
    """Raised by explicit configuration operations that cannot proceed."""


def default_state_dir(environ: Mapping[str, str] | None = None) -> Path:
    env = os.environ if environ is None else environ
    return Path(env.get("HONCHO_HOME") or _DEFAULT_STATE_DIR)


def detect_host(event: Mapping[str, Any] | None = None, environ: Mapping[str, str] | None = None) -> str:
    """Host for this invocation: HONCHO_HOST, else inferred from the event input."""
    env = os.environ if environ is None else environ
    env_host = env.get("HONCHO_HOST")
    if env_host in HOSTS:
        return env_host
    if event and event.get("cursor_version"):
        return "cursor"
    return DEFAULT_HOST


def sanitize_session_part(value: str) -> str:
    return re.sub(r"[^a-z0-9-_]", "-", value.lower())


def _as_bool(value: Any) -> bool:
    if isinstance(value, str):
        return value.strip().lower() in ("1", "true", "yes", "on")
    return bool(value)


def _optional_int(value: Any) -> int | None:
    if value is None or value == "":
        return None
    return int(value)


def _file_int(raw: dict, key: str, default: int | None) -> int | None:
    """Integer tunable read from the file. Unusable values fall back to the default."""
    value = raw.get(key)
    if value is None or value == "":
        return default
    try:
        return int(value)
    except (TypeError, ValueError):
        logger.warning("Ignoring invalid config value %s=%r, using %r", key, value, default)
        return default


def _dict(value: Any) -> dict:
    return value if isinstance(value, dict) else {}


# ── Config records ───────────────────────────────────────────


@dataclass
class MessageUploadConfig:
    """Upload truncation limits."""

    max_user_tokens: int | None = None
    max_assistant_tokens: int | None = None
    summarize_assistant: bool = False

    def to_dict(self) -> dict[str, Any]:
        data: dict[str, Any] = {"summarizeAssistant": self.summarize_assistant}
        if self.max_user_tokens is not None:
            data["maxUserTokens"] = self.max_user_tokens
        if self.max_assistant_tokens is not None:
            data["maxAssistantTokens"] = self.max_assistant_tokens
        return data

    @classmethod
    def from_dict(cls, raw: Any) -> MessageUploadConfig:
        raw = _dict(raw)
        return cls(
            max_user_tokens=_file_int(raw, "maxUserTokens", None),
            max_assistant_tokens=_file_int(raw, "maxAssistantTokens", None),
            summarize_assistant=bool(raw.get("summarizeAssistant", False)),
        )


@dataclass
class ContextRefreshConfig:
    """Context cache policy."""

    message_threshold: int = 30
    ttl_seconds: int = 300
    skip_dialectic: bool = False

    def to_dict(self) -> dict[str, Any]:
        return {
            "messageThreshold": self.message_threshold,
            "ttlSeconds": self.ttl_seconds,
            "skipDialectic": self.skip_dialectic,
        }

    @classmethod
    def from_dict(cls, raw: Any) -> ContextRefreshConfig:
        raw = _dict(raw)
        return cls(
            message_threshold=_file_int(raw, "messageThreshold", 30),
            ttl_seconds=_file_int(raw, "ttlSeconds", 300),
            skip_dialectic=bool(raw.get("skipDialectic", False)),
        )


@dataclass
class LocalContextConfig:
    max_entries: int = 50

    def to_dict(self) -> dict[str, Any]:
        return {"maxEntries": self.max_entries}

    @classmethod
    def from_dict(cls, raw: Any) -> LocalContextConfig:
        return cls(max_entries=_file_int(_dict(raw), "maxEntries", 50))


@dataclass
class EndpointConfig:
    """SaaS vs local instance. A custom base_url takes precedence."""

    environment: str | None = None
    base_url: str | None = None

    def to_dict(self) -> dict[str, Any]:
        data: dict[str, Any] = {}
        if self.environment:
            data["environment"] = self.environment
        if self.base_url:
            data["baseUrl"] = self.base_url
        return data

    @classmethod
    def from_dict(cls, raw: Any) -> EndpointConfig:
        raw = _dict(raw)
        return cls(environment=raw.get("environment") or None, base_url=raw.get("baseUrl") or None)

    @classmethod
    def from_env(cls, value: str) -> EndpointConfig | None:
        if value == "local":
            return cls(environment="local")
        if value.startswith("http"):
            return cls(base_url=value)
        return None


@dataclass
class ResolvedConfig:
    """The runtime view of the config file for one host."""

    api_key: str
    peer_name: str
    workspace: str
    ai_peer: str
    host: str = DEFAULT_HOST
    linked_hosts: list[str] = field(default_factory=list)
    session_strategy: str = "per-directory"
    session_peer_prefix: bool = True
    sessions: dict[str, str] = field(default_factory=dict)
    save_messages: bool = True
    message_upload: MessageUploadConfig = field(default_factory=MessageUploadConfig)
    context_refresh: ContextRefreshConfig = field(default_factory=ContextRefreshConfig)
    endpoint: EndpointConfig = field(default_factory=EndpointConfig)
    local_context: LocalContextConfig = field(default_factory=LocalContextConfig)
    enabled: bool = True
    logging_enabled: bool = True

    @property
    def base_url(self) -> str:
        """API base URL. Priority: base_url > environment > production."""
        if self.endpoint.base_url:
            url = self.endpoint.base_url
            return url if url.endswith("/v3") else f"{url.rstrip('/')}/v3"
        if self.endpoint.environment == "local":
            return BASE_URLS["local"]
        return BASE_URLS["production"]

    def endpoint_info(self) -> dict[str, str]:
        if self.endpoint.base_url:
            return {"type": "custom", "url": self.endpoint.base_url}
        if self.endpoint.environment == "local":
            return {"type": "local", "url": BASE_URLS["local"]}
        return {"type": "production", "url": BASE_URLS["production"]}

    def shared_fields(self) -> dict[str, Any]:
        """Top-level file fields owned by no single host."""
        return {
            "apiKey": self.api_key,
            "peerName": self.peer_name,
            "sessionStrategy": self.session_strategy,
            "sessionPeerPrefix": self.session_peer_prefix,
            "sessions": dict(self.sessions),
            "saveMessages": self.save_messages,
            "messageUpload": self.message_upload.to_dict(),
            "contextRefresh": self.context_refresh.to_dict(),
            "endpoint": self.endpoint.to_dict(),
            "localContext": self.local_context.to_dict(),
            "enabled": self.enabled,
            "logging": self.logging_enabled,
        }

    def host_fields(self) -> dict[str, Any]:
        return {
            "workspace": self.workspace,
            "aiPeer": self.ai_peer,
            "linkedHosts": list(self.linked_hosts),
        }


@dataclass
class CacheInvalidation:
    cleared: list[str]
    reason: str


@dataclass
class FieldUpdate:
    """Outcome of ``ConfigStore.set_field``."""

    field: str
    success: bool
    previous: Any = None
    value: Any = None
    requires_confirm: bool = False
    description: str | None = None
    cache_invalidation: CacheInvalidation | None = None
    restart_warning: str | None = None
    warnings: list[str] = field(default_factory=list)


# ── Store ────────────────────────────────────────────────────


class ConfigStore:
    """Read, resolve and persist the shared configuration file.

    ``host``, ``environ`` and the caches are per-invocation context passed in
    explicitly, so several simulated invocations can share one process.
    """

    def __init__(
        self,
        path: Path,
        host: str = DEFAULT_HOST,
        environ: Mapping[str, str] | None = None,
        identifiers: IdentifierCache | None = None,
        context: ContextCache | None = None,
        git_capture: Callable[[str], GitSnapshot | None] = capture_git_state,
    ) -> None:
        self.document = JsonDocument(path)
        self.host = host
        self.environ = os.environ if environ is None else environ
        self.identifiers = identifiers
        self.context = context
        self.git_capture = git_capture

    @property
    def path(self) -> Path:
        return self.document.path

    def exists(self) -> bool:
        return self.document.exists()

    def read_raw(self) -> dict[str, Any]:
        return self.document.load()

    # ── Loading ───────────────────────────────────────────────

    def load(self, host: str | None = None) -> ResolvedConfig | None:
        """Resolved view for host, or None when no API key is available."""
        host = host or self.host
        raw = self.document.load()
        if raw:
            return self._resolve(raw, host)
        return self._resolve_from_env(host)

    def _resolve(self, raw: dict[str, Any], host: str) -> ResolvedConfig | None:
        env = self.environ
        api_key = env.get("HONCHO_API_KEY") or raw.get("apiKey")
        if not api_key:
            return None

        hosts = _dict(raw.get("hosts"))
        host_block = hosts.get(host)
        default_workspace = DEFAULT_WORKSPACE.get(host, host)
        default_ai_peer = DEFAULT_AI_PEER.get(host, "honcho")

        if raw.get("globalOverride") is True:
            workspace = raw.get("workspace") or default_workspace
            ai_peer = raw.get("aiPeer") or _dict(host_block).get("aiPeer") or default_ai_peer
        elif isinstance(host_block, dict):
            workspace = host_block.get("workspace") or default_workspace
            ai_peer = host_block.get("aiPeer") or default_ai_peer
        else:
            # Legacy flat fields, written before hosts blocks existed.
            legacy_peer = raw.get("cursorPeer") if host == "cursor" else raw.get("claudePeer")
            workspace = env.get("HONCHO_WORKSPACE") or raw.get("workspace") or default_workspace
            ai_peer = env.get("HONCHO_AI_PEER") or legacy_peer or default_ai_peer

        strategy = raw.get("sessionStrategy") or "per-directory"
        if strategy not in SESSION_STRATEGIES:
            logger.warning("Unknown session strategy %r, using per-directory", strategy)
            strategy = "per-directory"

        config = ResolvedConfig(
            api_key=api_key,
            peer_name=str(raw.get("peerName") or env.get("USER") or "user"),
            workspace=str(workspace),
            ai_peer=str(ai_peer),
            host=host,
            linked_hosts=[str(h) for h in _dict(host_block).get("linkedHosts") or []],
            session_strategy=strategy,
            session_peer_prefix=raw.get("sessionPeerPrefix") is not False,
            sessions={str(k): str(v) for k, v in _dict(raw.get("sessions")).items()},
            save_messages=raw.get("saveMessages") is not False,
            message_upload=MessageUploadConfig.from_dict(raw.get("messageUpload")),
            context_refresh=ContextRefreshConfig.from_dict(raw.get("contextRefresh")),
            endpoint=EndpointConfig.from_dict(raw.get("endpoint")),
            local_context=LocalContextConfig.from_dict(raw.get("localContext")),
            enabled=raw.get("enabled") is not False,
            logging_enabled=raw.get("logging") is not False,
        )
        return self._apply_env_overrides(config)

    def _resolve_from_env(self, host: str) -> ResolvedConfig | None:
        env = self.environ
        api_key = env.get("HONCHO_API_KEY")
        if not api_key:
            return None
        host_peer = env.get("HONCHO_CURSOR_PEER") if host == "cursor" else env.get("HONCHO_CLAUDE_PEER")
        config = ResolvedConfig(
            api_key=api_key,
            peer_name=env.get("USER") or "user",
            workspace=env.get("HONCHO_WORKSPACE") or DEFAULT_WORKSPACE.get(host, host),
            ai_peer=env.get("HONCHO_AI_PEER") or host_peer or DEFAULT_AI_PEER.get(host, "honcho"),
            host=host,
        )
        return self._apply_env_overrides(config)

    def _apply_env_overrides(self, config: ResolvedConfig) -> ResolvedConfig:
        """Overlay global-field environment variables. Never host-specific ones."""
        env = self.environ
        if env.get("HONCHO_API_KEY"):
            config.api_key = env["HONCHO_API_KEY"]
        if env.get("HONCHO_PEER_NAME"):
            config.peer_name = env["HONCHO_PEER_NAME"]
        if env.get("HONCHO_ENABLED") == "false":
            config.enabled = False
        if env.get("HONCHO_LOGGING") == "false":
            config.logging_enabled = False
        if env.get("HONCHO_SAVE_MESSAGES") == "false":
            config.save_messages = False
        if env.get("HONCHO_ENDPOINT"):
            endpoint = EndpointConfig.from_env(env["HONCHO_ENDPOINT"])
            if endpoint:
                config.endpoint = endpoint
            else:
                logger.warning("Ignoring unrecognised HONCHO_ENDPOINT=%r", env["HONCHO_ENDPOINT"])
        return config

    # ── Saving ────────────────────────────────────────────────

    def save(self, config: ResolvedConfig, fields: Iterable[str] | None = None) -> None:
        """Read-merge-write config into the file.

        Shared fields are written at the top level; host fields under
        ``hosts.<config.host>``, and also flat while ``globalOverride`` is set. With ``fields`` only those file keys are
        touched, so concurrent writers of other keys keep their values.
        """
        shared = config.shared_fields()
        host_values = config.host_fields()
        selected = set(shared) | set(HOST_FIELDS) if fields is None else set(fields)
        unknown = selected - set(shared) - set(HOST_FIELDS)
        if unknown:
            raise ConfigError(f"Unknown config fields: {', '.join(sorted(unknown))}")

        def apply(existing: dict[str, Any]) -> None:
            for key, value in shared.items():
                if key in selected:
                    existing[key] = value

            host_keys = [key for key in HOST_FIELDS if key in selected]
            if host_keys:
                hosts = existing.get("hosts")
                if not isinstance(hosts, dict):
                    hosts = existing["hosts"] = {}
                if not isinstance(hosts.get(config.host), dict):
                    # A new block carries the host's whole identity.
                    host_keys = list(HOST_FIELDS)
                block = dict(_dict(hosts.get(config.host)))
                for key in host_keys:
                    block[key] = host_values[key]
                if not block.get("linkedHosts"):
                    block.pop("linkedHosts", None)
                hosts[config.host] = block

            # Under a global override the flat fields are the ones load() reads.
            if existing.get("globalOverride") is True:
                if "workspace" in selected:
                    existing["workspace"] = config.workspace
                if "aiPeer" in selected and existing.get("aiPeer"):
                    existing["aiPeer"] = config.ai_peer

            # globalOverride is only ever written by an explicit set_field.
            if fields is None and existing.get("hosts") and not existing.get("globalOverride"):
                for key in ("cursorPeer", "claudePeer", "aiPeer"):
                    existing.pop(key, None)
                host_workspaces = {b.get("workspace") for b in existing["hosts"].values() if isinstance(b, dict)}
                if existing.get("workspace") in host_workspaces:
                    existing.pop("workspace")

        self.document.update(apply)
        logger.debug("Saved config for host %s (%s)", config.host, "all" if fields is None else sorted(selected))

    # ── Sessions ──────────────────────────────────────────────

    def resolve_session_name(
        self,
        cwd: str,
        config: ResolvedConfig | None = None,
        *,
        git_state: GitSnapshot | None = None,
        instance_id: str | None = None,
    ) -> str:
        """Remote session name for cwd under the configured strategy.

        Manual overrides only apply to ``per-directory``; ``git-branch`` and
        ``chat-instance`` names are always derived.
        """
        config = config or self.load()
        strategy = config.session_strategy if config else "per-directory"

        if strategy == "per-directory" and config and config.sessions.get(cwd):
            return config.sessions[cwd]

        use_prefix = config.session_peer_prefix if config else True
        peer_part = sanitize_session_part(config.peer_name) if config and config.peer_name else "user"
        repo_part = sanitize_session_part(Path(cwd).name)
        base = f"{peer_part}-{repo_part}" if use_prefix else repo_part

        if strategy == "git-branch":
            snapshot = git_state or self.git_capture(cwd)
            if snapshot:
                return f"{base}-{sanitize_session_part(snapshot.branch)}"
            return base
        if strategy == "chat-instance":
            instance_id = instance_id or (self.identifiers.instance_id if self.identifiers else None)
            if instance_id:
                return f"chat-{instance_id}"
            return base
        return base

    def set_session_for_path(self, cwd: str, name: str) -> bool:
        config = self.load()
        if not config:
            return False
        config.sessions[cwd] = name
        self.save(config, fields=["sessions"])
        return True

    def remove_session_for_path(self, cwd: str) -> bool:
        config = self.load()
        if not config or cwd not in config.sessions:
            return False
        del config.sessions[cwd]
        self.save(config, fields=["sessions"])
        return True

    # ── Hosts ─────────────────────────────────────────────────

    def known_hosts(self) -> list[str]:
        return list(_dict(self.document.load().get("hosts")))

    def linked_workspaces(self, config: ResolvedConfig | None = None) -> list[str]:
        """Workspaces of linked hosts, excluding our own."""
        config = config or self.load()
        if not config or not config.linked_hosts:
            return []
        hosts = _dict(self.document.load().get("hosts"))
        workspaces = []
        for host_key in config.linked_hosts:
            workspace = _dict(hosts.get(host_key)).get("workspace") or host_key
            if workspace != config.workspace:
                workspaces.append(workspace)
        return workspaces

    def diagnostics(self) -> list[str]:
        """Human-readable warnings about env shadowing and legacy layout."""
        raw = self.document.load()
        has_host_block = isinstance(_dict(raw.get("hosts")).get(self.host), dict)
        warnings = []
        for name, env_var in ENV_SHADOW_MAP.items():
            env_value = self.environ.get(env_var)
            if not env_value:
                continue
            if has_host_block and name in ("workspace", "aiPeer"):
                warnings.append(
                    f'env var {env_var}="{env_value}" is set but ignored (hosts block takes precedence).'
                )
            else:
                warnings.append(f'{name} is shadowed by env var {env_var}="{env_value}"')
        if raw and "hosts" not in raw:
            warnings.append("Config uses legacy flat fields; saving will migrate them to a hosts block.")
        if raw.get("hosts") and raw.get("workspace") and "globalOverride" not in raw:
            warnings.append(
                "Config has a flat 'workspace' alongside hosts blocks but no 'globalOverride'. "
                "The flat field is unused."
            )
        return warnings

    # ── Field updates ─────────────────────────────────────────

    def set_field(self, name: str, value: Any, *, confirm: bool = False) -> FieldUpdate:
        """Change one config field with read-merge-write.

        Dangerous fields return a non-mutating warning unless ``confirm`` is
        set. Identity fields clear the affected caches.
        """
        if name in DANGEROUS_FIELDS and not confirm:
            descriptions = {
                "workspace": "Switches to a different workspace.",
                "endpoint.environment": "Switches the backend.",
                "endpoint.baseUrl": "Switches the backend URL.",
            }
            return FieldUpdate(
                field=name,
                success=False,
                value=value,
                requires_confirm=True,
                description=f"{descriptions[name]} Pass confirm=True to proceed.",
            )

        config = self.load()
        if not config:
            raise ConfigError("No config loaded. Set HONCHO_API_KEY first.")

        if name == "globalOverride":
            return self._set_global_override(config, _as_bool(value))

        warnings = []
        shadow_env = ENV_SHADOW_MAP.get(name)
        if shadow_env and self.environ.get(shadow_env):
            warnings.append(
                f'{name} is shadowed by env var {shadow_env}="{self.environ[shadow_env]}". '
                "File will be updated but the env var takes precedence at runtime."
            )

        previous, written, invalidation = self._apply_field(config, name, value)
        self.save(config, fields=written)
        logger.info("Config field %s changed", name)

        return FieldUpdate(
            field=name,
            success=True,
            previous=previous,
            value=value,
            cache_invalidation=invalidation,
            restart_warning=RESTART_WARNING if name in SESSION_AFFECTING_FIELDS else None,
            warnings=warnings,
        )

    def _apply_field(
        self, config: ResolvedConfig, name: str, value: Any
    ) -> tuple[Any, list[str], CacheInvalidation | None]:
        """Mutate config in place. Returns (previous value, file keys to write, invalidation)."""
        if name == "peerName":
            previous = config.peer_name
            config.peer_name = str(value)
            # Stored session names embed the peer name.
            config.sessions = {}
            invalidation = self._invalidate(
                ["peer IDs", "user context", "session overrides"],
                "Peer name changed",
                peers=True,
                contexts=["user"],
            )
            return previous, ["peerName", "sessions"], invalidation

        if name == "aiPeer":
            previous = config.ai_peer
            config.ai_peer = str(value)
            invalidation = self._invalidate(
                ["peer IDs", "AI context"], "AI peer changed", peers=True, contexts=["ai"]
            )
            return previous, ["aiPeer"], invalidation

        if name == "workspace":
            previous = config.workspace
            config.workspace = str(value)
            return previous, ["workspace"], self._invalidate_all("Workspace changed")

        if name == "endpoint.environment":
            previous = config.endpoint.environment
            environment = "production" if str(value) == "platform" else str(value)
            if environment not in BASE_URLS:
                raise ConfigError(f"Unknown endpoint environment: {value}")
            config.endpoint = EndpointConfig(environment=environment)
            return previous, ["endpoint"], self._invalidate_all("Endpoint changed")

        if name == "endpoint.baseUrl":
            previous = config.endpoint.base_url
            config.endpoint = EndpointConfig(base_url=str(value))
            return previous, ["endpoint"], self._invalidate_all("Endpoint URL changed")

        if name == "sessionStrategy":
            if value not in SESSION_STRATEGIES:
                raise ConfigError(f"Unknown session strategy: {value}")
            previous = config.session_strategy
            config.session_strategy = value
            # Stored session names were derived under the old strategy.
            config.sessions = {}
            return previous, ["sessionStrategy", "sessions"], None

        if name == "sessionPeerPrefix":
            previous = config.session_peer_prefix
            config.session_peer_prefix = _as_bool(value)
            config.sessions = {}
            return previous, ["sessionPeerPrefix", "sessions"], None

        if name == "linkedHosts":
            previous = list(config.linked_hosts)
            config.linked_hosts = [str(h) for h in value] if isinstance(value, (list, tuple)) else []
            return previous, ["linkedHosts"], None

        if name in ("sessions.set", "sessions.remove"):
            path = _dict(value).get("path")
            if not path:
                raise ConfigError(f"{name} needs a value with a 'path' key")
            previous = config.sessions.get(path)
            if name == "sessions.set":
                config.sessions[path] = str(_dict(value).get("name", ""))
            else:
                config.sessions.pop(path, None)
            return previous, ["sessions"], None

        if name in _FLAG_FIELDS:
            attr, key = _FLAG_FIELDS[name]
            previous = getattr(config, attr)
            setattr(config, attr, _as_bool(value))
            return previous, [key], None

        if name in _SECTION_FIELDS:
            section, attr, convert = _SECTION_FIELDS[name]
            record = getattr(config, section)
            previous = getattr(record, attr)
            setattr(config, section, replace(record, **{attr: convert(value)}))
            return previous, [name.split(".")[0]], None

        raise ConfigError(f"Unknown field: {name}")

    def _set_global_override(self, config: ResolvedConfig, enabled: bool) -> FieldUpdate:
        def apply(raw: dict[str, Any]) -> bool:
            previous = raw.get("globalOverride") is True
            raw["globalOverride"] = enabled
            if enabled and not raw.get("workspace"):
                raw["workspace"] = config.workspace
            return previous

        previous = self.document.update(apply)
        return FieldUpdate(
            field="globalOverride",
            success=True,
            previous=previous,
            value=enabled,
            description=(
                "Global override enabled: flat workspace field now applies to ALL hosts."
                if enabled
                else "Global override disabled: each host uses its own hosts block."
            ),
            restart_warning=RESTART_WARNING,
        )

    def _invalidate(
        self,
        cleared: list[str],
        reason: str,
        *,
        workspace: bool = False,
        peers: bool = False,
        contexts: Iterable[str] = (),
    ) -> CacheInvalidation:
        if self.identifiers is not None:
            if workspace:
                self.identifiers.invalidate_workspace()
            elif peers:
                self.identifiers.invalidate_peers()
        if self.context is not None:
            for kind in contexts:
                self.context.clear(kind)
        logger.info("Cache invalidated: %s (%s)", ", ".join(cleared), reason)
        return CacheInvalidation(cleared=cleared, reason=reason)

    def _invalidate_all(self, reason: str) -> CacheInvalidation:
        return self._invalidate(["all IDs", "all context"], reason, workspace=True, contexts=["user", "ai"])


_FLAG_FIELDS = {
    "enabled": ("enabled", "enabled"),
    "logging": ("logging_enabled", "logging"),
    "saveMessages": ("save_messages", "saveMessages"),
}

_SECTION_FIELDS: dict[str, tuple[str, str, Callable[[Any], Any]]] = {
    "messageUpload.maxUserTokens": ("message_upload", "max_user_tokens", _optional_int),
    "messageUpload.maxAssistantTokens": ("message_upload", "max_assistant_tokens", _optional_int),
    "messageUpload.summarizeAssistant": ("message_upload", "summarize_assistant", _as_bool),
    "contextRefresh.messageThreshold": ("context_refresh", "message_threshold", int),
    "contextRefresh.ttlSeconds": ("context_refresh", "ttl_seconds", int),
    "contextRefresh.skipDialectic": ("context_refresh", "skip_dialectic", _as_bool),
    "localContext.maxEntries": ("local_context", "max_entries", int),
}


# ── Token helpers ────────────────────────────────────────────


def estimate_tokens(text: str) -> int:
    """Rough token estimate (4 chars per token)."""
    return -(-len(text) // 4)


def truncate_to_tokens(text: str, max_tokens: int) -> str:
    max_chars = max_tokens * 4
    if len(text) <= max_chars:
        return text
    return text[: max(max_chars - 3, 0)] + "..."
