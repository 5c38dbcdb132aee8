"""
Durable plan document with atomic read-modify-write.

Every mutation happens under an exclusive flock on ``<plan>.lock``. The new
document is checked against the plan invariants and the JSON schema, then
written via temp file + fsync + os.replace before the call returns.
"""

import json
import logging
from pathlib import Path
from typing import Callable, Optional

from storyloop.lib.envparse import atomic_write_text
from storyloop.lib.errors import InvariantError, NotFoundError
from storyloop.lib.validate import validate, validate_before_write
from storyloop.plan.models import Plan, Story
from storyloop.runner.locking import plan_lock

logger = logging.getLogger(__name__)


class PlanStore:
    """Owns the plan document. Callers mutate it only through these methods."""

    def __init__(self, path: Path, lock_timeout: float = 30):
        self.path = Path(path)
        self.lock_timeout = lock_timeout

    def _read(self) -> Plan:
        if not self.path.exists():
            raise NotFoundError("plan", str(self.path))
        try:
            data = json.loads(self.path.read_text())
        except json.JSONDecodeError as e:
            raise InvariantError(f"Plan document {self.path} is not valid JSON: {e}") from None
        validate(data, "plan")
        return Plan.from_dict(data)

    def _write(self, plan: Plan) -> None:
        plan.check_invariants()
        data = plan.to_dict()
        validate_before_write(data, "plan", self.path)
        atomic_write_text(self.path, json.dumps(data, indent=2) + "\n")

    def load(self) -> Plan:
        """Read the current plan. Raises NotFoundError when the document is missing."""
        return self._read()

    def atomic_update(self, fn: Callable[[Plan], Plan]) -> Plan:
        """Apply fn to the current plan and persist the result under the plan lock."""
        with plan_lock(self.path, self.lock_timeout):
            plan = fn(self._read())
            self._write(plan)
            return plan

    def mark_started(self) -> Plan:
        with plan_lock(self.path, self.lock_timeout):
            plan = self._read()
            if not plan.started:
                plan.started = True
                self._write(plan)
                logger.info(f"[PLAN] Marked started: {self.path}")
            return plan

    def claim(self) -> tuple[Optional[Story], bool]:
        """Claim the next story.

        Returns (story, resumed). resumed is True when the story was already
        in progress, i.e. an interrupted attempt is being picked back up. In
        that case nothing is written.
        """
        with plan_lock(self.path, self.lock_timeout):
            plan = self._read()

            current = plan.in_progress_story()
            if current is not None:
                logger.info(f"[PLAN] Resuming in-progress story {current.id}")
                return current, True

            story = plan.next_pending_story()
            if story is None:
                return None, False

            story.in_progress = True
            self._write(plan)
            logger.info(f"[PLAN] Claimed story {story.id}")
            return story, False

    def claim_next_story(self) -> Optional[Story]:
        """Return the in-progress story, else claim the first story not yet passing."""
        story, _ = self.claim()
        return story

    def complete_story(self, story_id: str, passes: bool) -> Story:
        """Set passes and clear inProgress on an in-progress story."""
        with plan_lock(self.path, self.lock_timeout):
            plan = self._read()
            story = plan.get_story(story_id)
            if story is None:
                raise NotFoundError("story", story_id)
            if not story.in_progress:
                raise InvariantError(f"Story '{story_id}' is not in progress")

            story.passes = passes
            story.in_progress = False
            self._write(plan)
            logger.info(f"[PLAN] Completed story {story_id} (passes={passes})")
            return story

    def release_story(self, story_id: str) -> Story:
        """Clear inProgress without marking the story as passing."""
        with plan_lock(self.path, self.lock_timeout):
            plan = self._read()
            story = plan.get_story(story_id)
            if story is None:
                raise NotFoundError("story", story_id)
            if not story.in_progress:
                raise InvariantError(f"Story '{story_id}' is not in progress")

            story.in_progress = False
            self._write(plan)
            logger.info(f"[PLAN] Released story {story_id}")
            return story

    def summary(self) -> dict:
        """Counts used by status displays."""
        plan = self._read()
        current = plan.in_progress_story()
        return {
            "started": plan.started,
            "total": len(plan.stories),
            "passed": sum(1 for s in plan.stories if s.passes),
            "in_progress": current.id if current else None,
            "remaining": sum(1 for s in plan.stories if not s.passes),
        }

    @classmethod
    def create(cls, path: Path, stories: list[dict], iteration_prompt: str = "") -> "PlanStore":
        """Author a new plan document. Refuses to overwrite an existing one."""
        path = Path(path)
        if path.exists():
            raise InvariantError(f"Plan document already exists: {path}")

        plan = Plan(
            stories=[Story.from_dict(s) for s in stories],
            iteration_prompt=iteration_prompt,
        )
        store = cls(path)
        with plan_lock(path, store.lock_timeout):
            store._write(plan)
        logger.info(f"[PLAN] Created {path} with {len(plan.stories)} stories")
        return store
