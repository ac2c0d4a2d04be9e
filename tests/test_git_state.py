"""Tests for repository snapshots and change detection."""

from pathlib import Path

from honcho_sync.cache import GitSnapshot, GitStateCache, diff_git_state
from honcho_sync.git import capture_git_state


def snap(branch="main", commit="abc1234", message="init", dirty=()):
    return GitSnapshot(
        branch=branch,
        commit=commit,
        commit_message=message,
        is_dirty=bool(dirty),
        dirty_files=list(dirty),
        timestamp="2024-01-01T00:00:00Z",
    )


class TestDiff:
    def test_initial(self):
        changes = diff_git_state(None, snap())
        assert [c.type for c in changes] == ["initial"]
        assert "main" in changes[0].description

    def test_identical_snapshots(self):
        assert diff_git_state(snap(), snap()) == []

    def test_branch_commit_and_files_in_order(self):
        previous = snap(branch="main", commit="abc1234")
        current = snap(branch="feature", commit="def5678", message="add feature", dirty=["a.py"])
        changes = diff_git_state(previous, current)

        assert [c.type for c in changes] == ["branch_switch", "new_commits", "files_changed"]
        assert changes[0].from_ref == "main"
        assert changes[0].to_ref == "feature"
        assert changes[1].message == "add feature"
        assert changes[2].files == ["a.py"]

    def test_dirty_to_dirty_is_silent(self):
        assert diff_git_state(snap(dirty=["a.py"]), snap(dirty=["a.py", "b.py"])) == []

    def test_file_listing_is_capped(self):
        files = [f"f{i}.py" for i in range(7)]
        [change] = diff_git_state(snap(), snap(dirty=files))
        assert change.description.endswith("f4.py...")
        assert len(change.files) == 7

    def test_to_dict(self):
        [change] = diff_git_state(snap(branch="main"), snap(branch="dev"))
        assert change.to_dict() == {
            "type": "branch_switch",
            "description": "Branch switched from 'main' to 'dev'",
            "from": "main",
            "to": "dev",
        }


class TestGitStateCache:
    def test_observe_persists_after_diff(self, tmp_path: Path):
        cache = GitStateCache(tmp_path / "git-state.json")
        assert [c.type for c in cache.observe("/a", snap())] == ["initial"]
        assert cache.observe("/a", snap()) == []
        assert [c.type for c in cache.observe("/a", snap(commit="fff0000"))] == ["new_commits"]
        assert cache.get("/a").commit == "fff0000"
        assert cache.get("/b") is None

    def test_round_trip(self, tmp_path: Path):
        cache = GitStateCache(tmp_path / "git-state.json")
        current = snap(dirty=["a.py"])
        cache.set("/a", current)
        assert GitStateCache(tmp_path / "git-state.json").get("/a") == current


class TestCapture:
    def test_not_a_repository(self, tmp_path: Path):
        assert capture_git_state(str(tmp_path)) is None
