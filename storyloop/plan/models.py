"""
Data models for the plan document.

A plan is an ordered list of stories plus run-level flags. Fields this
module does not know about are carried in ``extra`` and written back
unchanged.
"""

from dataclasses import dataclass, field
from typing import Optional

from storyloop.lib.errors import InvariantError

STORY_KEYS = ("id", "title", "passes", "inProgress", "checkpoint")
PLAN_KEYS = ("started", "iterationPrompt", "stories")


@dataclass
class Story:
    """One independently completable unit of work."""
    id: str                                    # US-001
    title: str
    passes: bool = False
    in_progress: bool = False
    checkpoint: bool = False                   # Pause for review after completion
    extra: dict = field(default_factory=dict)

    @classmethod
    def from_dict(cls, data: dict) -> "Story":
        return cls(
            id=data["id"],
            title=data.get("title", ""),
            passes=bool(data.get("passes", False)),
            in_progress=bool(data.get("inProgress", False)),
            checkpoint=bool(data.get("checkpoint", False)),
            extra={k: v for k, v in data.items() if k not in STORY_KEYS},
        )

    def to_dict(self) -> dict:
        data = {
            "id": self.id,
            "title": self.title,
            "passes": self.passes,
            "inProgress": self.in_progress,
            "checkpoint": self.checkpoint,
        }
        data.update(self.extra)
        return data


@dataclass
class Plan:
    """Ordered stories; list order is execution order."""
    stories: list[Story] = field(default_factory=list)
    started: bool = False
    iteration_prompt: str = ""
    extra: dict = field(default_factory=dict)

    @classmethod
    def from_dict(cls, data: dict) -> "Plan":
        return cls(
            stories=[Story.from_dict(s) for s in data.get("stories", [])],
            started=bool(data.get("started", False)),
            iteration_prompt=data.get("iterationPrompt", ""),
            extra={k: v for k, v in data.items() if k not in PLAN_KEYS},
        )

    def to_dict(self) -> dict:
        data = {
            "started": self.started,
            "iterationPrompt": self.iteration_prompt,
            "stories": [s.to_dict() for s in self.stories],
        }
        data.update(self.extra)
        return data

    def get_story(self, story_id: str) -> Optional[Story]:
        for story in self.stories:
            if story.id == story_id:
                return story
        return None

    def in_progress_story(self) -> Optional[Story]:
        for story in self.stories:
            if story.in_progress:
                return story
        return None

    def next_pending_story(self) -> Optional[Story]:
        for story in self.stories:
            if not story.passes:
                return story
        return None

    def check_invariants(self) -> None:
        """Raise InvariantError if the flags describe an impossible state."""
        seen = set()
        for story in self.stories:
            if story.id in seen:
                raise InvariantError(f"Duplicate story id '{story.id}'")
            seen.add(story.id)
            if story.passes and story.in_progress:
                raise InvariantError(f"Story '{story.id}' is both passing and in progress")

        active = [s.id for s in self.stories if s.in_progress]
        if len(active) > 1:
            raise InvariantError(f"More than one story in progress: {', '.join(active)}")
