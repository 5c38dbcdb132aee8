"""
Session status query protocol.

Wire-format (camelCase, JSON-ready) views over the session manager, used by
the agent to introspect its own attempt and by ``storyloop session ... --json``.
"""

from storyloop.lib.errors import ConflictError
from storyloop.workspace.manager import WorkspaceSessionManager
from storyloop.workspace.session import Strategy


def get_status(manager: WorkspaceSessionManager, session_id: str) -> dict:
    status = manager.status(session_id)
    return {
        "executionStatus": status.execution_status.value,
        "filesChanged": status.files_changed,
        "added": status.added,
        "removed": status.removed,
    }


def get_transcript(manager: WorkspaceSessionManager, session_id: str) -> dict:
    transcript = manager.transcript(session_id)
    return {
        "instructions": transcript.instructions,
        "summary": transcript.summary,
    }


def get_diff(manager: WorkspaceSessionManager, session_id: str) -> list[dict]:
    return [
        {
            "path": d.path,
            "added": d.added,
            "removed": d.removed,
            "unifiedDiff": d.unified_diff,
        }
        for d in manager.diff(session_id)
    ]


def close_session(manager: WorkspaceSessionManager, session_id: str, strategy: str) -> dict:
    """Resolve a session and report the outcome.

    A merge conflict is reported as an unsuccessful outcome listing the
    conflicting paths. Other errors propagate.

    Raises:
        ValueError: strategy is neither "merge" nor "discard"
    """
    parsed = Strategy.parse(strategy)
    try:
        result = manager.resolve(session_id, parsed)
    except ConflictError as e:
        return {
            "sessionId": session_id,
            "success": False,
            "message": str(e),
            "mergeCommit": None,
            "conflicts": e.paths,
        }
    return {
        "sessionId": result.session_id,
        "success": result.success,
        "message": result.message,
        "mergeCommit": result.merge_commit,
    }
