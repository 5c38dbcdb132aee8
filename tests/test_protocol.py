"""Tests for the session status query protocol."""

import pytest

from storyloop.workspace import protocol
from storyloop.workspace.session import ExecutionStatus

from conftest import git, commit_file


@pytest.fixture
def session_id(manager, git_repo):
    return manager.open(git(git_repo, "rev-parse", "main"), "Add a feature", "US-001")


class TestQueries:
    """Test camelCase query payloads."""

    def test_status(self, manager, session_id):
        (manager.get(session_id).worktree / "f.txt").write_text("1\n2\n")
        assert protocol.get_status(manager, session_id) == {
            "executionStatus": "running",
            "filesChanged": 1,
            "added": 2,
            "removed": 0,
        }

    def test_transcript(self, manager, session_id):
        assert protocol.get_transcript(manager, session_id) == {
            "instructions": "Add a feature",
            "summary": None,
        }

    def test_diff(self, manager, session_id):
        (manager.get(session_id).worktree / "f.txt").write_text("1\n")
        [entry] = protocol.get_diff(manager, session_id)
        assert entry["path"] == "f.txt"
        assert (entry["added"], entry["removed"]) == (1, 0)
        assert "+1" in entry["unifiedDiff"]


class TestCloseSession:
    """Test close_session outcomes."""

    def test_merge(self, manager, git_repo, session_id):
        (manager.get(session_id).worktree / "f.txt").write_text("1\n")
        manager.finish(session_id, ExecutionStatus.COMPLETED)

        outcome = protocol.close_session(manager, session_id, "merge")

        assert outcome["success"] is True
        assert outcome["mergeCommit"] == git(git_repo, "rev-parse", "main")

    def test_conflict_reported_not_raised(self, manager, git_repo):
        commit_file(git_repo, "f.txt", "base\n")
        session_id = manager.open(git(git_repo, "rev-parse", "main"), "x", "US-001")
        (manager.get(session_id).worktree / "f.txt").write_text("session\n")
        manager.finish(session_id, ExecutionStatus.COMPLETED)
        commit_file(git_repo, "f.txt", "main\n")

        outcome = protocol.close_session(manager, session_id, "merge")

        assert outcome["success"] is False
        assert outcome["conflicts"] == ["f.txt"]
        assert outcome["mergeCommit"] is None

    def test_invalid_strategy(self, manager, session_id):
        with pytest.raises(ValueError):
            protocol.close_session(manager, session_id, "rebase")
