"""Git operations for storyloop.

Return type conventions:
- Functions returning GitResult: Caller must check .success before using output.
  Examples: stage_all(), commit(), add_worktree(), update_ref()
- Functions returning bool: True on success/condition met, False otherwise.
  Examples: has_staged_changes(), branch_exists(), is_ancestor()
- Functions returning parsed values (str, list): Return None/empty on failure.
  Examples: get_commit_sha() -> None, get_conflicted_files() -> []
- Live worktree diffs raise RuntimeError when git cannot read the worktree.
"""

from storyloop.git.runner import GitResult, run_git
from storyloop.git.status import has_staged_changes
from storyloop.git.diff import (
    FileStat,
    get_worktree_numstat,
    get_worktree_patches,
    get_ref_numstat,
    get_ref_patches,
    get_conflicted_files,
)
from storyloop.git.branch import (
    branch_exists,
    get_commit_sha,
    is_ancestor,
    delete_branch,
    update_ref,
    get_checked_out_worktree,
    find_merge_of,
)
from storyloop.git.commit import (
    stage_all,
    commit,
    merge_no_commit,
    abort_merge,
    read_tree_update,
)
from storyloop.git.worktree import (
    add_worktree,
    add_detached_worktree,
    remove_worktree,
    prune_worktrees,
)

__all__ = [
    # runner
    "GitResult",
    "run_git",
    # status
    "has_staged_changes",
    # diff
    "FileStat",
    "get_worktree_numstat",
    "get_worktree_patches",
    "get_ref_numstat",
    "get_ref_patches",
    "get_conflicted_files",
    # branch
    "branch_exists",
    "get_commit_sha",
    "is_ancestor",
    "delete_branch",
    "update_ref",
    "get_checked_out_worktree",
    "find_merge_of",
    # commit
    "stage_all",
    "commit",
    "merge_no_commit",
    "abort_merge",
    "read_tree_update",
    # worktree
    "add_worktree",
    "add_detached_worktree",
    "remove_worktree",
    "prune_worktrees",
]
