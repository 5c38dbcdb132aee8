"""Tests for storyloop.lib.config module."""

from pathlib import Path

from storyloop.lib.config import (
    load_project_config,
    load_project_profile,
    resolve_project_dir,
    ProjectProfile,
)
from storyloop.lib.constants import ENV_PROJECT_DIR


class TestLoadProjectConfig:
    """Test project.env loading."""

    def test_resolves_relative_paths_against_project_dir(self, tmp_path):
        (tmp_path / "project.env").write_text(
            'PROJECT_NAME="demo"\nREPO_PATH="../repo"\nTARGET_BRANCH="develop"\n'
        )

        config = load_project_config(tmp_path)

        assert config.name == "demo"
        assert config.repo_path == (tmp_path / "../repo").resolve()
        assert config.target_branch == "develop"
        assert config.plan_path == tmp_path / "plan.json"
        assert config.state_dir == tmp_path / ".storyloop"
        assert config.sessions_dir == tmp_path / ".storyloop" / "sessions"
        assert config.worktrees_dir == tmp_path / ".storyloop" / "worktrees"

    def test_defaults_name_and_target(self, tmp_path):
        (tmp_path / "project.env").write_text('REPO_PATH="/srv/repo"\nPLAN_PATH="/srv/plan.json"\n')

        config = load_project_config(tmp_path)

        assert config.name == tmp_path.name
        assert config.target_branch == "main"
        assert config.plan_path == Path("/srv/plan.json")


class TestLoadProjectProfile:
    """Test project_profile.env loading."""

    def test_missing_file_gives_defaults(self, tmp_path):
        assert load_project_profile(tmp_path) == ProjectProfile.default()

    def test_reads_values(self, tmp_path):
        (tmp_path / "project_profile.env").write_text(
            'AGENT_TIMEOUT="120"\n'
            'POLL_INTERVAL_SECONDS="0.5"\n'
            'MAX_SESSIONS="2"\n'
            'QUALITY_GATE_TARGETS="lint test"\n'
            'DISABLE_WORKTREE_CLEANUP="true"\n'
            'NOTIFICATIONS="false"\n'
        )

        profile = load_project_profile(tmp_path)

        assert profile.agent_timeout == 120
        assert profile.poll_interval == 0.5
        assert profile.max_sessions == 2
        assert profile.quality_gate_targets == ("lint", "test")
        assert profile.disable_worktree_cleanup is True
        assert profile.notifications is False
        assert profile.session_ttl == ProjectProfile.default().session_ttl

    def test_invalid_int_falls_back_with_warning(self, tmp_path, caplog):
        (tmp_path / "project_profile.env").write_text('MAX_SESSIONS="lots"\n')

        profile = load_project_profile(tmp_path)

        assert profile.max_sessions == ProjectProfile.default().max_sessions
        assert "Invalid MAX_SESSIONS 'lots'" in caplog.text


class TestResolveProjectDir:
    """Test project directory resolution order."""

    def test_explicit_wins(self, tmp_path, monkeypatch):
        monkeypatch.setenv(ENV_PROJECT_DIR, "/elsewhere")
        assert resolve_project_dir(str(tmp_path)) == tmp_path.resolve()

    def test_env_var_used_without_flag(self, tmp_path, monkeypatch):
        monkeypatch.setenv(ENV_PROJECT_DIR, str(tmp_path))
        assert resolve_project_dir(None) == tmp_path.resolve()

    def test_falls_back_to_cwd(self, tmp_path, monkeypatch):
        monkeypatch.delenv(ENV_PROJECT_DIR, raising=False)
        monkeypatch.chdir(tmp_path)
        assert resolve_project_dir(None) == Path.cwd()
