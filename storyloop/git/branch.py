"""Git branch and ref operations."""

from pathlib import Path

from storyloop.git.runner import run_git, GitResult


def branch_exists(repo: Path, branch: str) -> bool:
    """Check if a branch exists."""
    result = run_git(["show-ref", "--verify", "--quiet", f"refs/heads/{branch}"], repo)
    return result.success


def get_commit_sha(worktree: Path, ref: str = "HEAD") -> str | None:
    """Get the SHA of a ref, or None if it does not resolve to a commit."""
    result = run_git(["rev-parse", "--verify", "--quiet", f"{ref}^{{commit}}"], worktree)
    if result.success:
        return result.stdout.strip()
    return None


def is_ancestor(worktree: Path, ancestor: str, descendant: str) -> bool:
    """Check if ancestor is an ancestor of descendant."""
    result = run_git(["merge-base", "--is-ancestor", ancestor, descendant], worktree)
    return result.success


def delete_branch(repo: Path, branch: str) -> GitResult:
    """Force-delete a local branch."""
    return run_git(["branch", "-D", branch], repo)


def update_ref(repo: Path, ref: str, new_sha: str, old_sha: str) -> GitResult:
    """Move ref to new_sha only if it still points at old_sha."""
    return run_git(["update-ref", ref, new_sha, old_sha], repo)


def get_checked_out_worktree(repo: Path, branch: str) -> Path | None:
    """Return the worktree path that has branch checked out, if any."""
    result = run_git(["worktree", "list", "--porcelain"], repo)
    if not result.success:
        return None

    current_path = None
    for line in result.stdout.splitlines():
        if line.startswith("worktree "):
            current_path = Path(line[len("worktree "):])
        elif line == f"branch refs/heads/{branch}" and current_path is not None:
            return current_path
    return None


def find_merge_of(repo: Path, head: str, target: str) -> str | None:
    """Find the merge commit on target whose second parent is head."""
    result = run_git(["rev-list", "--merges", "--parents", f"{head}..{target}"], repo)
    if not result.success:
        return None
    for line in result.stdout.splitlines():
        shas = line.split()
        if len(shas) >= 3 and shas[2] == head:
            return shas[0]
    return None
