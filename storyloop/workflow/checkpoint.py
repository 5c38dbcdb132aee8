"""Checkpoint gate: decides whether the loop pauses after a successful story."""

from storyloop.plan.models import Story


def should_pause(story: Story) -> bool:
    """Pause for review after this story?"""
    return story.checkpoint


class CheckpointGate:
    """Policy consulted after each successful story.

    Subclass and override should_pause for richer gating; the controller only
    ever calls this method.
    """

    def should_pause(self, story: Story) -> bool:
        return should_pause(story)
