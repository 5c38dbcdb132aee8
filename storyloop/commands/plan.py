"""
storyloop plan - Show the plan document; release an abandoned story.
"""

import json

from storyloop.lib.config import ProjectConfig, ProjectProfile
from storyloop.plan.store import PlanStore


def _marker(story) -> str:
    if story.passes:
        return "[x]"
    if story.in_progress:
        return "[>]"
    return "[ ]"


def cmd_plan_show(args, project: ProjectConfig, profile: ProjectProfile) -> int:
    store = PlanStore(project.plan_path)
    plan = store.load()

    if args.json:
        print(json.dumps(plan.to_dict(), indent=2))
        return 0

    summary = store.summary()
    print(f"Plan: {project.plan_path}")
    print(f"Started: {'yes' if summary['started'] else 'no'}  "
          f"Passed: {summary['passed']}/{summary['total']}")
    print()
    for story in plan.stories:
        flags = " (checkpoint)" if story.checkpoint else ""
        print(f"  {_marker(story)} {story.id}  {story.title}{flags}")
    return 0


def cmd_plan_release(args, project: ProjectConfig, profile: ProjectProfile) -> int:
    store = PlanStore(project.plan_path)
    store.release_story(args.story_id)
    print(f"Released {args.story_id}; it will be picked up fresh on the next run")
    return 0
