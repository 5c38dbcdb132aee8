"""
Plan module for storyloop.

The plan document is the durable record of which story is active, which
have passed, and where the loop should pause for review.
"""

from storyloop.plan.models import Plan, Story
from storyloop.plan.store import PlanStore

__all__ = [
    "Plan",
    "Story",
    "PlanStore",
]
