#!/usr/bin/env python3
"""storyloop CLI entrypoint."""

import argparse
import logging
import sys

from storyloop.lib.config import load_project_config, load_project_profile, resolve_project_dir
from storyloop.lib.constants import (
    EXIT_CONFLICT,
    EXIT_ERROR,
    EXIT_INVALID_STATE,
    EXIT_NOT_FOUND,
    EXIT_RESOURCE_EXHAUSTED,
)
from storyloop.lib.errors import (
    AlreadyResolvedError,
    ConflictError,
    InvariantError,
    NotFoundError,
    ResourceExhaustedError,
    StoryloopError,
)
from storyloop.lib.validate import ValidationError
from storyloop.runner.locking import LockTimeout
from storyloop.commands import context as cmd_context_module
from storyloop.commands import plan as cmd_plan_module
from storyloop.commands import reclaim as cmd_reclaim_module
from storyloop.commands import run as cmd_run_module
from storyloop.commands import session as cmd_session_module


def get_project(args):
    """Load project config and profile from --project-dir, STORYLOOP_PROJECT_DIR, or cwd."""
    project_dir = resolve_project_dir(args.project_dir)
    if not (project_dir / "project.env").exists():
        raise NotFoundError("project.env", str(project_dir))
    return load_project_config(project_dir), load_project_profile(project_dir)


def exit_code_for(error: Exception) -> int:
    if isinstance(error, NotFoundError):
        return EXIT_NOT_FOUND
    if isinstance(error, ConflictError):
        return EXIT_CONFLICT
    if isinstance(error, ResourceExhaustedError):
        return EXIT_RESOURCE_EXHAUSTED
    if isinstance(error, (InvariantError, AlreadyResolvedError)):
        return EXIT_INVALID_STATE
    return EXIT_ERROR


def with_project(handler):
    """Adapt a cmd_x(args, project, profile) handler to argparse's func(args)."""
    def run(args):
        project, profile = get_project(args)
        return handler(args, project, profile)
    return run


def cmd_context(args):
    try:
        project, _ = get_project(args)
    except NotFoundError:
        project = None
    return cmd_context_module.cmd_context(args, project)


def main(argv=None):
    parser = argparse.ArgumentParser(prog='storyloop', description='Unattended story-by-story agent runner')
    parser.add_argument('--project-dir', '-C', help='Project directory (contains project.env)')
    parser.add_argument('--verbose', '-v', action='store_true', help='Debug logging')
    subparsers = parser.add_subparsers(dest='command', required=True)

    # storyloop run
    p_run = subparsers.add_parser('run', help='Run the plan until it pauses or halts')
    p_run.add_argument('--once', action='store_true', help='Run a single iteration')
    p_run.add_argument('--max-iterations', type=int, help='Stop after N iterations')
    p_run.set_defaults(func=with_project(cmd_run_module.cmd_run))

    # storyloop plan
    p_plan = subparsers.add_parser('plan', help='Inspect the plan document')
    plan_sub = p_plan.add_subparsers(dest='plan_command', required=True)

    p_plan_show = plan_sub.add_parser('show', help='Show stories and their flags')
    p_plan_show.add_argument('--json', action='store_true', help='Print the plan document')
    p_plan_show.set_defaults(func=with_project(cmd_plan_module.cmd_plan_show))

    p_plan_release = plan_sub.add_parser('release', help='Abandon the in-progress story without passing it')
    p_plan_release.add_argument('story_id', help='Story ID')
    p_plan_release.set_defaults(func=with_project(cmd_plan_module.cmd_plan_release))

    # storyloop session
    p_session = subparsers.add_parser('session', help='Inspect and resolve workspace sessions')
    session_sub = p_session.add_subparsers(dest='session_command', required=True)

    p_list = session_sub.add_parser('list', help='List sessions')
    p_list.add_argument('--all', '-a', action='store_true', help='Include resolved sessions')
    p_list.add_argument('--json', action='store_true', help='JSON output')
    p_list.set_defaults(func=with_project(cmd_session_module.cmd_session_list))

    p_status = session_sub.add_parser('status', help='Execution status and diff stats')
    p_status.add_argument('id', help='Session ID')
    p_status.add_argument('--json', action='store_true', help='JSON output')
    p_status.set_defaults(func=with_project(cmd_session_module.cmd_session_status))

    p_transcript = session_sub.add_parser('transcript', help='Instructions and latest summary')
    p_transcript.add_argument('id', help='Session ID')
    p_transcript.add_argument('--json', action='store_true', help='JSON output')
    p_transcript.set_defaults(func=with_project(cmd_session_module.cmd_session_transcript))

    p_diff = session_sub.add_parser('diff', help='Per-file diff against the base revision')
    p_diff.add_argument('id', help='Session ID')
    p_diff.add_argument('--stat', action='store_true', help='Show only per-file line counts')
    p_diff.add_argument('--json', action='store_true', help='JSON output')
    p_diff.set_defaults(func=with_project(cmd_session_module.cmd_session_diff))

    p_close = session_sub.add_parser('close', help='Merge or discard a session')
    p_close.add_argument('id', help='Session ID')
    p_close.add_argument('--strategy', '-s', choices=['merge', 'discard'], required=True)
    p_close.add_argument('--json', action='store_true', help='JSON output')
    p_close.set_defaults(func=with_project(cmd_session_module.cmd_session_close))

    p_kill = session_sub.add_parser('kill', help='Stop a running session')
    p_kill.add_argument('id', help='Session ID')
    p_kill.set_defaults(func=with_project(cmd_session_module.cmd_session_kill))

    p_keep = session_sub.add_parser('keep', help='Protect a session from reclamation')
    p_keep.add_argument('id', help='Session ID')
    p_keep.add_argument('--off', action='store_true', help='Allow reclamation again')
    p_keep.set_defaults(func=with_project(cmd_session_module.cmd_session_keep))

    # storyloop reclaim
    p_reclaim = subparsers.add_parser('reclaim', help='Discard orphaned and expired sessions')
    p_reclaim.set_defaults(func=with_project(cmd_reclaim_module.cmd_reclaim))

    # storyloop context
    p_context = subparsers.add_parser('context', help='Show the current plan/story/session ids')
    p_context.add_argument('--json', action='store_true', help='JSON output')
    p_context.set_defaults(func=cmd_context)

    args = parser.parse_args(argv)

    logging.basicConfig(
        level=logging.DEBUG if args.verbose else logging.INFO,
        format="%(asctime)s %(levelname)s %(name)s: %(message)s",
    )

    try:
        return args.func(args)
    except StoryloopError as e:
        print(f"ERROR: {e}")
        if isinstance(e, ConflictError):
            for path in e.paths:
                print(f"  conflict: {path}")
        return exit_code_for(e)
    except (ValidationError, LockTimeout) as e:
        print(f"ERROR: {e}")
        return EXIT_ERROR


if __name__ == '__main__':
    sys.exit(main())
