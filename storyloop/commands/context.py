"""
storyloop context - Print the plan/story/session the caller belongs to.
"""

import json
from typing import Optional

from storyloop.lib.config import ProjectConfig
from storyloop.lib.context import get_context


def cmd_context(args, project: Optional[ProjectConfig]) -> int:
    context = get_context(project.state_dir if project else None)
    if args.json:
        print(json.dumps(context, indent=2))
        return 0

    print(f"plan:    {context['planId'] or '-'}")
    print(f"story:   {context['storyId'] or '-'}")
    print(f"session: {context['sessionId'] or '-'}")
    return 0
