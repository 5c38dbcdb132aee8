"""Git status operations."""

from pathlib import Path

from storyloop.git.runner import run_git


def has_staged_changes(worktree: Path) -> bool:
    """Check if the index differs from HEAD."""
    result = run_git(["diff", "--cached", "--quiet"], worktree)
    # exit 0 = no changes, exit 1 = has changes
    return result.returncode != 0
