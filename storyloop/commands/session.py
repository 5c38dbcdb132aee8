"""
storyloop session - Query and resolve workspace sessions.

Every query has a --json form that prints the session status query protocol
document (camelCase) instead of the human-readable view.
"""

import json

from storyloop.lib.config import ProjectConfig, ProjectProfile
from storyloop.lib.constants import EXIT_CONFLICT
from storyloop.workspace import protocol
from storyloop.workspace.manager import WorkspaceSessionManager


def _print_json(data) -> None:
    print(json.dumps(data, indent=2))


def cmd_session_list(args, project: ProjectConfig, profile: ProjectProfile) -> int:
    manager = WorkspaceSessionManager(project, profile)
    sessions = [s for s in manager.list_sessions() if args.all or not s.is_resolved]

    if args.json:
        _print_json([
            {
                "sessionId": s.id,
                "storyId": s.story_id,
                "executionStatus": s.execution_status.value,
                "resolution": s.resolution.value,
                "branch": s.branch,
                "keep": s.keep,
                "createdAt": s.created_at,
            }
            for s in sessions
        ])
        return 0

    if not sessions:
        print("No sessions")
        return 0

    for s in sessions:
        keep = " keep" if s.keep else ""
        print(f"{s.id}  {s.story_id:<12} {s.execution_status.value:<10} {s.resolution.value:<11} {s.branch}{keep}")
    return 0


def cmd_session_status(args, project: ProjectConfig, profile: ProjectProfile) -> int:
    manager = WorkspaceSessionManager(project, profile)
    data = protocol.get_status(manager, args.id)
    if args.json:
        _print_json(data)
        return 0

    session = manager.get(args.id)
    print(f"Session:    {session.id} ({session.story_id})")
    print(f"Status:     {data['executionStatus']}")
    print(f"Resolution: {session.resolution.value}")
    print(f"Branch:     {session.branch} -> {session.target}")
    print(f"Changes:    {data['filesChanged']} file(s), +{data['added']} -{data['removed']}")
    return 0


def cmd_session_transcript(args, project: ProjectConfig, profile: ProjectProfile) -> int:
    manager = WorkspaceSessionManager(project, profile)
    data = protocol.get_transcript(manager, args.id)
    if args.json:
        _print_json(data)
        return 0

    print("=== INSTRUCTIONS ===")
    print(data["instructions"])
    print()
    print("=== SUMMARY ===")
    print(data["summary"] or "(no summary yet)")
    return 0


def cmd_session_diff(args, project: ProjectConfig, profile: ProjectProfile) -> int:
    manager = WorkspaceSessionManager(project, profile)
    files = protocol.get_diff(manager, args.id)
    if args.json:
        _print_json(files)
        return 0

    if not files:
        print("No changes")
        return 0

    for f in files:
        if args.stat:
            print(f"{f['path']}  +{f['added']} -{f['removed']}")
        else:
            print(f["unifiedDiff"], end="" if f["unifiedDiff"].endswith("\n") else "\n")
    return 0


def cmd_session_close(args, project: ProjectConfig, profile: ProjectProfile) -> int:
    manager = WorkspaceSessionManager(project, profile)
    outcome = protocol.close_session(manager, args.id, args.strategy)
    if args.json:
        _print_json(outcome)
    else:
        print(outcome["message"])
        for path in outcome.get("conflicts", []):
            print(f"  conflict: {path}")
        if outcome["mergeCommit"]:
            print(f"  merge commit: {outcome['mergeCommit']}")
    return 0 if outcome["success"] else EXIT_CONFLICT


def cmd_session_kill(args, project: ProjectConfig, profile: ProjectProfile) -> int:
    manager = WorkspaceSessionManager(project, profile)
    manager.request_kill(args.id)
    print(f"Kill requested for {args.id}; the running loop stops it within {profile.poll_interval}s")
    return 0


def cmd_session_keep(args, project: ProjectConfig, profile: ProjectProfile) -> int:
    manager = WorkspaceSessionManager(project, profile)
    manager.set_keep(args.id, not args.off)
    print(f"{args.id}: reclamation {'allowed' if args.off else 'disabled'}")
    return 0
