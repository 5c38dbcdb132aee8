"""Git worktree operations."""

from pathlib import Path

from storyloop.git.runner import run_git, GitResult


def add_worktree(repo: Path, path: Path, branch: str, start: str) -> GitResult:
    """Create a new branch at start and check it out in a new worktree."""
    return run_git(["worktree", "add", "-b", branch, str(path), start], repo, timeout=120)


def add_detached_worktree(repo: Path, path: Path, start: str) -> GitResult:
    """Check out start in a new detached worktree."""
    return run_git(["worktree", "add", "--detach", str(path), start], repo, timeout=120)


def remove_worktree(repo: Path, path: Path) -> GitResult:
    """Remove a worktree, forcing past local modifications."""
    return run_git(["worktree", "remove", "--force", str(path)], repo, timeout=60)


def prune_worktrees(repo: Path) -> GitResult:
    """Drop administrative entries for worktrees whose directories are gone."""
    return run_git(["worktree", "prune"], repo)
