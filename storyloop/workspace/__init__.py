"""
Workspace sessions: isolated git worktrees, one per execution attempt.
"""

from storyloop.workspace.session import (
    ExecutionStatus,
    FileDiff,
    Resolution,
    ResolveResult,
    SessionStatus,
    Strategy,
    Transcript,
    WorkspaceSession,
)
from storyloop.workspace.manager import ReclaimReport, WorkspaceSessionManager

__all__ = [
    "ExecutionStatus",
    "FileDiff",
    "Resolution",
    "ResolveResult",
    "SessionStatus",
    "Strategy",
    "Transcript",
    "WorkspaceSession",
    "ReclaimReport",
    "WorkspaceSessionManager",
]
