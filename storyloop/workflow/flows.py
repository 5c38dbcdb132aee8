"""Prefect wrappers for the iteration loop.

The controller and its collaborators stay plain Python; this module wraps
the loop in a @flow and the quality gate in a @task so runs show up with
structured logging (and in the Prefect UI when a server is connected).
Nothing here retries: a failing gate halts the loop.
"""

import logging
from pathlib import Path

from prefect import flow, get_run_logger, task
from prefect.cache_policies import NO_CACHE

from storyloop.workflow.controller import IterationController, IterationOutcome

logger = logging.getLogger(__name__)


@task(
    name="quality_gate",
    description="Run make targets in the session worktree",
    cache_policy=NO_CACHE,
)
def task_quality_gate(gate, worktree: Path, log_dir: Path | None = None):
    """Quality gate as a Prefect task."""
    return gate.run(worktree, log_dir)


class PrefectGate:
    """Routes the controller's gate calls through task_quality_gate."""

    def __init__(self, gate):
        self.gate = gate

    def run(self, worktree: Path, log_dir: Path | None = None):
        return task_quality_gate(self.gate, worktree, log_dir)


@flow(name="storyloop_run_plan", validate_parameters=False)
def run_plan_flow(controller: IterationController, max_iterations: int | None = None) -> IterationOutcome:
    """Run the iteration loop until it pauses or halts."""
    prefect_logger = get_run_logger()
    prefect_logger.info(f"Running plan {controller.plan_id} ({controller.store.path})")

    if not isinstance(controller.gate, PrefectGate):
        controller.gate = PrefectGate(controller.gate)

    outcome = controller.run_loop(max_iterations=max_iterations)

    prefect_logger.info(
        f"Loop ended: {outcome.signal.value}"
        + (f" at {outcome.story_id}" if outcome.story_id else "")
        + (f" ({outcome.reason})" if outcome.reason else "")
    )
    return outcome
