"""Shared fixtures: throwaway git repositories and project layouts."""

import subprocess
from pathlib import Path

import pytest

from storyloop.lib.config import ProjectConfig, ProjectProfile
from storyloop.workspace.manager import WorkspaceSessionManager


def git(repo: Path, *args: str) -> str:
    """Run git in repo and return stripped stdout, failing the test on error."""
    result = subprocess.run(
        ["git", "-C", str(repo), *args],
        capture_output=True, text=True, check=True,
    )
    return result.stdout.strip()


def commit_file(repo: Path, name: str, content: str, message: str = None) -> str:
    """Write a file, commit it on the current branch, and return the new HEAD."""
    path = repo / name
    path.parent.mkdir(parents=True, exist_ok=True)
    path.write_text(content)
    git(repo, "add", name)
    git(repo, "commit", "-q", "-m", message or f"Update {name}")
    return git(repo, "rev-parse", "HEAD")


@pytest.fixture
def git_repo(tmp_path):
    """A repository with main checked out and one commit."""
    repo = tmp_path / "repo"
    repo.mkdir()
    git(repo, "init", "-q")
    git(repo, "symbolic-ref", "HEAD", "refs/heads/main")
    git(repo, "config", "user.email", "test@example.com")
    git(repo, "config", "user.name", "Test User")
    git(repo, "config", "commit.gpgsign", "false")
    commit_file(repo, "README.md", "hello\n", "Initial commit")
    return repo


@pytest.fixture
def project(tmp_path, git_repo):
    """Project layout with state kept outside the repository."""
    project_dir = tmp_path / "project"
    project_dir.mkdir()
    return ProjectConfig(
        name="demo",
        project_dir=project_dir,
        repo_path=git_repo,
        target_branch="main",
        plan_path=project_dir / "plan.json",
        state_dir=tmp_path / "state",
    )


@pytest.fixture
def profile():
    return ProjectProfile(poll_interval=0.01, min_free_mb=0)


@pytest.fixture
def manager(project, profile):
    return WorkspaceSessionManager(project, profile)
