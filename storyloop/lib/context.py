"""
Context query: lets a running agent find out which plan, story, and session
it belongs to without being told.

The controller exports STORYLOOP_* variables to the agent process and also
records the current coordinates in ``<state_dir>/context.json`` for callers
outside the agent's environment.
"""

import json
import logging
import os
from pathlib import Path
from typing import Optional

from storyloop.lib.constants import ENV_PLAN_ID, ENV_SESSION_ID, ENV_STORY_ID
from storyloop.lib.envparse import atomic_write_text

logger = logging.getLogger(__name__)

__all__ = ["get_context", "write_context", "CONTEXT_FILE"]

CONTEXT_FILE = "context.json"


def write_context(state_dir: Path, plan_id: str, story_id: Optional[str], session_id: Optional[str]) -> None:
    """Record the loop's current coordinates."""
    data = {"planId": plan_id, "storyId": story_id, "sessionId": session_id}
    atomic_write_text(state_dir / CONTEXT_FILE, json.dumps(data, indent=2))


def get_context(state_dir: Optional[Path] = None, environ: Optional[dict] = None) -> dict:
    """Return {planId, storyId, sessionId}.

    Environment variables win; values they leave unset are filled from
    context.json when a state directory is given. Unknown values are None.
    """
    environ = os.environ if environ is None else environ
    context = {
        "planId": environ.get(ENV_PLAN_ID) or None,
        "storyId": environ.get(ENV_STORY_ID) or None,
        "sessionId": environ.get(ENV_SESSION_ID) or None,
    }
    if all(context.values()) or state_dir is None:
        return context

    path = Path(state_dir) / CONTEXT_FILE
    if not path.exists():
        return context

    try:
        recorded = json.loads(path.read_text())
    except (json.JSONDecodeError, OSError) as e:
        logger.warning(f"Could not read {path}: {e}")
        return context

    for key in context:
        if context[key] is None:
            context[key] = recorded.get(key)
    return context
