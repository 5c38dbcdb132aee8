"""
storyloop reclaim - Discard orphaned and expired sessions.
"""

from storyloop.lib.config import ProjectConfig, ProjectProfile
from storyloop.workspace.manager import WorkspaceSessionManager


def cmd_reclaim(args, project: ProjectConfig, profile: ProjectProfile) -> int:
    manager = WorkspaceSessionManager(project, profile)
    report = manager.reclaim()

    if report.disabled:
        print("Worktree cleanup is disabled (DISABLE_WORKTREE_CLEANUP)")
        return 0

    for session_id, reason in report.discarded:
        print(f"discarded {session_id} ({reason})")
    for session_id, reason in report.skipped:
        print(f"skipped   {session_id} ({reason})")
    for session_id in report.torn_down:
        print(f"cleaned   {session_id} (resolved, worktree or branch left behind)")
    for name in report.removed_dirs:
        print(f"removed   worktrees/{name} (no session record)")

    if not (report.discarded or report.skipped or report.torn_down or report.removed_dirs):
        print("Nothing to reclaim")
    return 0
