"""Tests for configuration loading, saving, session naming and field updates."""

import json

import pytest
from pathlib import Path

from honcho_sync.cache import ContextCache, GitSnapshot, IdentifierCache
from honcho_sync.config import (
    BASE_URLS,
    ConfigError,
    ConfigStore,
    ResolvedConfig,
    ContextRefreshConfig,
    detect_host,
    estimate_tokens,
    truncate_to_tokens,
)


def make_store(tmp_path: Path, raw=None, *, host="claude_code", environ=None, git_capture=None):
    path = tmp_path / "config.json"
    if raw is not None:
        path.write_text(json.dumps(raw))
    return ConfigStore(
        path,
        host=host,
        environ=environ or {},
        identifiers=IdentifierCache(tmp_path / "cache.json"),
        context=ContextCache(tmp_path / "context-cache.json"),
        git_capture=git_capture or (lambda cwd: None),
    )


TWO_HOSTS = {
    "apiKey": "hch-key",
    "peerName": "alice",
    "hosts": {
        "claude_code": {"workspace": "ws-claude", "aiPeer": "claude"},
        "cursor": {"workspace": "ws-cursor", "aiPeer": "cursor", "linkedHosts": ["claude_code"]},
    },
}


class TestLoad:
    def test_unconfigured(self, tmp_path: Path):
        assert make_store(tmp_path).load() is None
        assert make_store(tmp_path, {"peerName": "alice"}).load() is None

    def test_env_only_defaults(self, tmp_path: Path):
        store = make_store(tmp_path, environ={"HONCHO_API_KEY": "k", "USER": "alice"})
        config = store.load()
        assert config.api_key == "k"
        assert config.peer_name == "alice"
        assert config.workspace == "claude_code"
        assert config.ai_peer == "claude"
        assert config.session_strategy == "per-directory"
        assert config.base_url == BASE_URLS["production"]

    def test_env_only_host_peer(self, tmp_path: Path):
        store = make_store(
            tmp_path, host="cursor", environ={"HONCHO_API_KEY": "k", "HONCHO_CURSOR_PEER": "composer"}
        )
        config = store.load()
        assert config.workspace == "cursor"
        assert config.ai_peer == "composer"
        assert config.peer_name == "user"

    def test_corrupt_file_falls_back_to_env(self, tmp_path: Path):
        (tmp_path / "config.json").write_text("{not json")
        store = make_store(tmp_path, environ={"HONCHO_API_KEY": "k"})
        assert store.load().workspace == "claude_code"

    def test_host_blocks(self, tmp_path: Path):
        claude = make_store(tmp_path, TWO_HOSTS).load()
        cursor = make_store(tmp_path, host="cursor").load()
        assert (claude.workspace, claude.ai_peer) == ("ws-claude", "claude")
        assert (cursor.workspace, cursor.ai_peer) == ("ws-cursor", "cursor")
        assert cursor.linked_hosts == ["claude_code"]
        assert claude.peer_name == cursor.peer_name == "alice"

    def test_host_default_when_block_missing_field(self, tmp_path: Path):
        raw = {"apiKey": "k", "hosts": {"obsidian": {}}}
        config = make_store(tmp_path, raw, host="obsidian").load()
        assert config.workspace == "obsidian"
        assert config.ai_peer == "honcho"

    def test_legacy_flat_fields(self, tmp_path: Path):
        raw = {"apiKey": "k", "workspace": "legacy-ws", "claudePeer": "clyde", "cursorPeer": "cur"}
        assert make_store(tmp_path, raw).load().ai_peer == "clyde"
        config = make_store(tmp_path, host="cursor").load()
        assert config.workspace == "legacy-ws"
        assert config.ai_peer == "cur"

    def test_legacy_env_override(self, tmp_path: Path):
        raw = {"apiKey": "k", "workspace": "legacy-ws"}
        store = make_store(tmp_path, raw, environ={"HONCHO_WORKSPACE": "from-env"})
        assert store.load().workspace == "from-env"

    def test_host_block_ignores_workspace_env(self, tmp_path: Path):
        store = make_store(tmp_path, TWO_HOSTS, environ={"HONCHO_WORKSPACE": "from-env"})
        assert store.load().workspace == "ws-claude"

    def test_global_override(self, tmp_path: Path):
        raw = dict(TWO_HOSTS, globalOverride=True, workspace="shared")
        assert make_store(tmp_path, raw, host="cursor").load().workspace == "shared"
        assert make_store(tmp_path).load().workspace == "shared"

    def test_global_env_overrides(self, tmp_path: Path):
        environ = {
            "HONCHO_API_KEY": "env-key",
            "HONCHO_PEER_NAME": "bob",
            "HONCHO_ENABLED": "false",
            "HONCHO_SAVE_MESSAGES": "false",
            "HONCHO_ENDPOINT": "local",
        }
        config = make_store(tmp_path, TWO_HOSTS, environ=environ).load()
        assert config.api_key == "env-key"
        assert config.peer_name == "bob"
        assert config.enabled is False
        assert config.save_messages is False
        assert config.base_url == BASE_URLS["local"]

    def test_custom_base_url(self, tmp_path: Path):
        raw = dict(TWO_HOSTS, endpoint={"baseUrl": "https://honcho.internal/"})
        config = make_store(tmp_path, raw).load()
        assert config.base_url == "https://honcho.internal/v3"
        assert config.endpoint_info()["type"] == "custom"

    def test_unknown_strategy_falls_back(self, tmp_path: Path):
        raw = dict(TWO_HOSTS, sessionStrategy="per-moon")
        assert make_store(tmp_path, raw).load().session_strategy == "per-directory"

    def test_invalid_tunables_fall_back_to_defaults(self, tmp_path: Path):
        raw = dict(
            TWO_HOSTS,
            contextRefresh={"ttlSeconds": None, "messageThreshold": "often"},
            localContext={"maxEntries": "50x"},
            messageUpload={"maxUserTokens": [1], "maxAssistantTokens": "200"},
        )
        config = make_store(tmp_path, raw).load()
        assert config.context_refresh.ttl_seconds == 300
        assert config.context_refresh.message_threshold == 30
        assert config.local_context.max_entries == 50
        assert config.message_upload.max_user_tokens is None
        assert config.message_upload.max_assistant_tokens == 200

    def test_non_string_peer_name(self, tmp_path: Path):
        store = make_store(tmp_path, dict(TWO_HOSTS, peerName=5))
        assert store.load().peer_name == "5"
        assert store.resolve_session_name("/work/repo") == "5-repo"


class TestSave:
    def test_round_trip(self, tmp_path: Path):
        store = make_store(tmp_path)
        config = ResolvedConfig(
            api_key="k",
            peer_name="alice",
            workspace="ws",
            ai_peer="claude",
            sessions={"/work/repo": "custom-name"},
            context_refresh=ContextRefreshConfig(message_threshold=10, ttl_seconds=60),
        )
        store.save(config)
        assert store.load() == config

    def test_round_trip_under_global_override(self, tmp_path: Path):
        store = make_store(tmp_path, {"apiKey": "k", "globalOverride": True, "workspace": "flat"})
        config = store.load()
        config.workspace = "new-ws"
        store.save(config)
        assert store.load() == config

    def test_workspace_field_under_global_override(self, tmp_path: Path):
        store = make_store(tmp_path, {"apiKey": "k", "globalOverride": True, "workspace": "flat"})
        assert store.set_field("workspace", "new-ws", confirm=True).success
        assert store.load().workspace == "new-ws"
        assert make_store(tmp_path, host="cursor").load().workspace == "new-ws"

    def test_two_hosts_save_from_empty_file(self, tmp_path: Path):
        cursor = ResolvedConfig(api_key="k", peer_name="alice", workspace="ws-cursor", ai_peer="cursor", host="cursor")
        claude = ResolvedConfig(api_key="k", peer_name="alice", workspace="ws-claude", ai_peer="claude")
        make_store(tmp_path, {}, host="cursor").save(cursor)
        make_store(tmp_path).save(claude)

        raw = json.loads((tmp_path / "config.json").read_text())
        assert raw["hosts"] == {
            "cursor": {"workspace": "ws-cursor", "aiPeer": "cursor"},
            "claude_code": {"workspace": "ws-claude", "aiPeer": "claude"},
        }
        assert make_store(tmp_path, host="cursor").load() == cursor
        assert make_store(tmp_path).load() == claude

    def test_host_save_keeps_other_blocks(self, tmp_path: Path):
        make_store(tmp_path, TWO_HOSTS)
        cursor_store = make_store(tmp_path, host="cursor")
        config = cursor_store.load()
        config.ai_peer = "composer"
        cursor_store.save(config)

        raw = json.loads((tmp_path / "config.json").read_text())
        assert raw["hosts"]["claude_code"] == {"workspace": "ws-claude", "aiPeer": "claude"}
        assert raw["hosts"]["cursor"]["aiPeer"] == "composer"
        assert make_store(tmp_path).load().ai_peer == "claude"

    def test_partial_save_leaves_other_keys(self, tmp_path: Path):
        store = make_store(tmp_path, dict(TWO_HOSTS, customKey=1))
        config = store.load()
        config.sessions["/a"] = "x"
        store.save(config, fields=["sessions"])
        raw = json.loads((tmp_path / "config.json").read_text())
        assert raw["sessions"] == {"/a": "x"}
        assert raw["customKey"] == 1
        assert "saveMessages" not in raw

    def test_full_save_migrates_legacy_fields(self, tmp_path: Path):
        store = make_store(tmp_path, {"apiKey": "k", "workspace": "legacy-ws", "claudePeer": "clyde"})
        store.save(store.load())
        raw = json.loads((tmp_path / "config.json").read_text())
        assert "claudePeer" not in raw
        assert "workspace" not in raw
        assert raw["hosts"]["claude_code"] == {"workspace": "legacy-ws", "aiPeer": "clyde"}

    def test_unknown_field(self, tmp_path: Path):
        store = make_store(tmp_path, TWO_HOSTS)
        with pytest.raises(ConfigError):
            store.save(store.load(), fields=["colour"])


class TestSessionNames:
    def test_per_directory(self, tmp_path: Path):
        store = make_store(tmp_path, TWO_HOSTS)
        assert store.resolve_session_name("/home/alice/My Repo") == "alice-my-repo"

    def test_manual_override(self, tmp_path: Path):
        store = make_store(tmp_path, dict(TWO_HOSTS, sessions={"/work/repo": "pinned"}))
        assert store.resolve_session_name("/work/repo") == "pinned"
        assert store.resolve_session_name("/work/other") == "alice-other"

    def test_without_peer_prefix(self, tmp_path: Path):
        store = make_store(tmp_path, dict(TWO_HOSTS, sessionPeerPrefix=False))
        assert store.resolve_session_name("/work/repo") == "repo"

    def test_git_branch(self, tmp_path: Path):
        raw = dict(TWO_HOSTS, sessionStrategy="git-branch", sessions={"/work/repo": "ignored"})
        store = make_store(tmp_path, raw, git_capture=lambda cwd: GitSnapshot(branch="main", commit="abc1234"))
        assert store.resolve_session_name("/work/repo") == "alice-repo-main"
        snapshot = GitSnapshot(branch="dev", commit="abc1234")
        assert store.resolve_session_name("/work/repo", git_state=snapshot) == "alice-repo-dev"

    def test_git_branch_outside_repo(self, tmp_path: Path):
        store = make_store(tmp_path, dict(TWO_HOSTS, sessionStrategy="git-branch"))
        assert store.resolve_session_name("/work/repo") == "alice-repo"

    def test_chat_instance(self, tmp_path: Path):
        store = make_store(tmp_path, dict(TWO_HOSTS, sessionStrategy="chat-instance"))
        assert store.resolve_session_name("/work/repo", instance_id="abc") == "chat-abc"
        assert store.resolve_session_name("/work/repo") == "alice-repo"
        store.identifiers.set_instance_id("run-7")
        assert store.resolve_session_name("/work/repo") == "chat-run-7"

    def test_set_and_remove_session(self, tmp_path: Path):
        store = make_store(tmp_path, TWO_HOSTS)
        assert store.set_session_for_path("/work/repo", "pinned")
        assert store.resolve_session_name("/work/repo") == "pinned"
        assert store.remove_session_for_path("/work/repo")
        assert not store.remove_session_for_path("/work/repo")


class TestSetField:
    def test_dangerous_needs_confirm(self, tmp_path: Path):
        store = make_store(tmp_path, TWO_HOSTS)
        before = (tmp_path / "config.json").read_text()
        result = store.set_field("workspace", "other")
        assert result.requires_confirm
        assert not result.success
        assert (tmp_path / "config.json").read_text() == before

    def test_workspace_change_clears_caches(self, tmp_path: Path):
        store = make_store(tmp_path, TWO_HOSTS)
        store.identifiers.set_workspace_id("ws-claude", "ws_1")
        store.identifiers.set_peer_id("alice", "peer_1")
        store.context.set("ai", {"representation": "x"})

        result = store.set_field("workspace", "other", confirm=True)
        assert result.success
        assert result.previous == "ws-claude"
        assert result.restart_warning
        assert store.load().workspace == "other"
        assert store.identifiers.get_peer_id("alice") is None
        assert store.context.get("ai") is None

    def test_peer_name_clears_sessions(self, tmp_path: Path):
        store = make_store(tmp_path, dict(TWO_HOSTS, sessions={"/work/repo": "alice-repo"}))
        store.identifiers.set_peer_id("alice", "peer_1")
        store.context.set("user", {"representation": "x"})
        store.context.set("ai", {"representation": "y"})

        result = store.set_field("peerName", "bob")
        config = store.load()
        assert config.peer_name == "bob"
        assert config.sessions == {}
        assert "peer IDs" in result.cache_invalidation.cleared
        assert store.identifiers.get_peer_id("alice") is None
        assert store.context.get("user") is None
        assert store.context.get("ai") is not None

    def test_ai_peer_on_legacy_file_keeps_workspace(self, tmp_path: Path):
        store = make_store(tmp_path, {"apiKey": "k", "workspace": "legacy-ws"})
        store.set_field("aiPeer", "bot")
        config = store.load()
        assert config.ai_peer == "bot"
        assert config.workspace == "legacy-ws"

    def test_section_field(self, tmp_path: Path):
        store = make_store(tmp_path, TWO_HOSTS)
        store.set_field("contextRefresh.ttlSeconds", "60")
        config = store.load()
        assert config.context_refresh.ttl_seconds == 60
        assert config.context_refresh.message_threshold == 30

    def test_flag_field_shadowed_by_env(self, tmp_path: Path):
        store = make_store(tmp_path, TWO_HOSTS, environ={"HONCHO_SAVE_MESSAGES": "false"})
        result = store.set_field("saveMessages", True)
        assert result.success
        assert result.warnings

    def test_session_strategy_validated(self, tmp_path: Path):
        store = make_store(tmp_path, TWO_HOSTS)
        with pytest.raises(ConfigError):
            store.set_field("sessionStrategy", "per-moon")
        store.set_field("sessionStrategy", "git-branch")
        assert store.load().session_strategy == "git-branch"

    def test_global_override_populates_workspace(self, tmp_path: Path):
        store = make_store(tmp_path, TWO_HOSTS)
        result = store.set_field("globalOverride", True)
        raw = json.loads((tmp_path / "config.json").read_text())
        assert result.previous is False
        assert raw["globalOverride"] is True
        assert raw["workspace"] == "ws-claude"

    def test_unknown_field(self, tmp_path: Path):
        with pytest.raises(ConfigError):
            make_store(tmp_path, TWO_HOSTS).set_field("colour", "blue")

    def test_unconfigured(self, tmp_path: Path):
        with pytest.raises(ConfigError):
            make_store(tmp_path).set_field("peerName", "bob")


class TestHostsAndDiagnostics:
    def test_detect_host(self):
        assert detect_host({}, {}) == "claude_code"
        assert detect_host({"cursor_version": "1.7"}, {}) == "cursor"
        assert detect_host({"cursor_version": "1.7"}, {"HONCHO_HOST": "obsidian"}) == "obsidian"

    def test_known_hosts_and_linked_workspaces(self, tmp_path: Path):
        store = make_store(tmp_path, TWO_HOSTS, host="cursor")
        assert store.known_hosts() == ["claude_code", "cursor"]
        assert store.linked_workspaces() == ["ws-claude"]

    def test_diagnostics(self, tmp_path: Path):
        store = make_store(tmp_path, TWO_HOSTS, environ={"HONCHO_AI_PEER": "x", "HONCHO_PEER_NAME": "bob"})
        warnings = store.diagnostics()
        assert any("ignored" in w and "HONCHO_AI_PEER" in w for w in warnings)
        assert any("shadowed" in w and "HONCHO_PEER_NAME" in w for w in warnings)

    def test_diagnostics_legacy(self, tmp_path: Path):
        store = make_store(tmp_path, {"apiKey": "k", "workspace": "w"})
        assert any("legacy" in w for w in store.diagnostics())


class TestTokens:
    def test_estimate(self):
        assert estimate_tokens("") == 0
        assert estimate_tokens("abcde") == 2

    def test_truncate(self):
        assert truncate_to_tokens("short", 10) == "short"
        assert truncate_to_tokens("a" * 10, 2) == "aaaaa..."
