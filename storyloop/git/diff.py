"""Git diff operations.

Live diffs of a worktree are computed against a scratch index (GIT_INDEX_FILE)
so untracked files are included without touching the worktree's own index.
"""

import tempfile
from contextlib import contextmanager
from dataclasses import dataclass
from pathlib import Path

from storyloop.git.runner import run_git


@dataclass
class FileStat:
    """Per-file line counts. Binary files count as zero lines."""
    path: str
    added: int
    removed: int


@contextmanager
def _scratch_index(worktree: Path):
    """Yield an env dict pointing git at a throwaway index seeded from HEAD."""
    with tempfile.TemporaryDirectory(prefix="storyloop-index-") as tmp:
        env = {"GIT_INDEX_FILE": str(Path(tmp) / "index")}
        seeded = run_git(["read-tree", "HEAD"], worktree, env=env)
        if not seeded.success:
            raise RuntimeError(f"git read-tree failed in {worktree}: {seeded.stderr.strip()}")
        added = run_git(["add", "-A"], worktree, timeout=120, env=env)
        if not added.success:
            raise RuntimeError(f"git add failed in {worktree}: {added.stderr.strip()}")
        yield env


def _parse_numstat(output: str) -> list[FileStat]:
    # -z format: "added\tremoved\tpath\0"
    stats = []
    for entry in output.split("\0"):
        if not entry.strip():
            continue
        parts = entry.split("\t", 2)
        if len(parts) != 3:
            continue
        added, removed, path = parts
        stats.append(FileStat(
            path=path.strip("\n"),
            added=int(added) if added.isdigit() else 0,
            removed=int(removed) if removed.isdigit() else 0,
        ))
    return stats


def _split_patch(output: str) -> list[str]:
    """Split a multi-file patch into one chunk per file, in output order."""
    chunks: list[str] = []
    current: list[str] = []
    for line in output.splitlines(keepends=True):
        if line.startswith("diff --git ") and current:
            chunks.append("".join(current))
            current = []
        current.append(line)
    if current:
        chunks.append("".join(current))
    return chunks


def get_worktree_numstat(worktree: Path, base: str) -> list[FileStat]:
    """Per-file stats of the live worktree (tracked + untracked) vs base."""
    with _scratch_index(worktree) as env:
        result = run_git(["diff", "--cached", "--numstat", "-z", "--no-renames", base], worktree, env=env)
    if not result.success:
        raise RuntimeError(f"git diff failed in {worktree}: {result.stderr.strip()}")
    return _parse_numstat(result.stdout)


def get_worktree_patches(worktree: Path, base: str) -> list[tuple[FileStat, str]]:
    """Per-file stats paired with unified diffs of the live worktree vs base."""
    with _scratch_index(worktree) as env:
        stat = run_git(["diff", "--cached", "--numstat", "-z", "--no-renames", base], worktree, env=env)
        patch = run_git(["diff", "--cached", "--no-renames", "--no-color", base], worktree, timeout=120, env=env)
    if not stat.success or not patch.success:
        raise RuntimeError(f"git diff failed in {worktree}: {(stat.stderr or patch.stderr).strip()}")
    stats = _parse_numstat(stat.stdout)
    chunks = _split_patch(patch.stdout)
    # Both commands enumerate the same file pairs in the same order
    return [(s, chunks[i] if i < len(chunks) else "") for i, s in enumerate(stats)]


def get_ref_numstat(repo: Path, base: str, ref: str) -> list[FileStat]:
    """Per-file stats between two commits."""
    result = run_git(["diff", "--numstat", "-z", "--no-renames", base, ref], repo)
    if not result.success:
        return []
    return _parse_numstat(result.stdout)


def get_ref_patches(repo: Path, base: str, ref: str) -> list[tuple[FileStat, str]]:
    """Per-file stats paired with unified diffs between two commits."""
    stat = run_git(["diff", "--numstat", "-z", "--no-renames", base, ref], repo)
    patch = run_git(["diff", "--no-renames", "--no-color", base, ref], repo, timeout=120)
    if not stat.success or not patch.success:
        return []
    stats = _parse_numstat(stat.stdout)
    chunks = _split_patch(patch.stdout)
    return [(s, chunks[i] if i < len(chunks) else "") for i, s in enumerate(stats)]


def get_conflicted_files(worktree: Path) -> list[str]:
    """Get list of files with unresolved conflicts."""
    result = run_git(["diff", "--name-only", "--diff-filter=U"], worktree)
    return sorted({f.strip() for f in result.stdout.splitlines() if f.strip()})
