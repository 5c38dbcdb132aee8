"""Git commit operations."""

from pathlib import Path

from storyloop.git.runner import run_git, GitResult

FALLBACK_USER_NAME = "storyloop"
FALLBACK_USER_EMAIL = "storyloop@localhost"


def stage_all(worktree: Path) -> GitResult:
    """Stage all changes (new, modified, deleted)."""
    return run_git(["add", "-A"], worktree)


def _identity_args(worktree: Path) -> list[str]:
    # Snapshot commits must not fail on hosts with no configured identity
    result = run_git(["config", "user.email"], worktree)
    if result.success and result.stdout.strip():
        return []
    return ["-c", f"user.name={FALLBACK_USER_NAME}", "-c", f"user.email={FALLBACK_USER_EMAIL}"]


def commit(worktree: Path, message: str, allow_empty: bool = False) -> GitResult:
    """Create a commit with the given message."""
    args = _identity_args(worktree) + ["commit", "--no-verify", "-m", message]
    if allow_empty:
        args.append("--allow-empty")
    return run_git(args, worktree)


def merge_no_commit(worktree: Path, ref: str) -> GitResult:
    """Start a --no-ff merge of ref without committing it."""
    return run_git(
        _identity_args(worktree) + ["merge", "--no-ff", "--no-commit", ref],
        worktree,
        timeout=120,
    )


def abort_merge(worktree: Path) -> GitResult:
    """Abort an in-progress merge."""
    return run_git(["merge", "--abort"], worktree)


def read_tree_update(worktree: Path, old_sha: str, new_sha: str) -> GitResult:
    """Fast-forward a checked-out index and worktree from old_sha to new_sha.

    Refuses (non-zero exit) when local modifications would be overwritten.
    """
    return run_git(["read-tree", "-m", "-u", old_sha, new_sha], worktree, timeout=120)
