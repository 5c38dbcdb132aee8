"""
storyloop run - Drive the plan story by story until it pauses or halts.
"""

import logging

from storyloop.agents.command import CommandAgent
from storyloop.lib.agents_config import load_agents_config, validate_stage_binaries
from storyloop.lib.config import ProjectConfig, ProjectProfile
from storyloop.lib.constants import EXIT_ERROR, EXIT_PAUSED, EXIT_SUCCESS
from storyloop.notifications import notify_complete, notify_failed, notify_paused
from storyloop.plan.store import PlanStore
from storyloop.workflow.controller import IterationController, LoopSignal
from storyloop.workflow.flows import run_plan_flow
from storyloop.workflow.gates import MakeQualityGate
from storyloop.workspace.manager import WorkspaceSessionManager

logger = logging.getLogger(__name__)

EXIT_FOR_SIGNAL = {
    LoopSignal.HALTED_SUCCESS: EXIT_SUCCESS,
    LoopSignal.CONTINUING: EXIT_SUCCESS,
    LoopSignal.PAUSED: EXIT_PAUSED,
    LoopSignal.HALTED_FAILURE: EXIT_ERROR,
}


def build_controller(project: ProjectConfig, profile: ProjectProfile) -> IterationController:
    """Wire the controller with the configured agent and make-based gate."""
    agents_config = load_agents_config(project.project_dir)
    return IterationController(
        project=project,
        profile=profile,
        store=PlanStore(project.plan_path),
        manager=WorkspaceSessionManager(project, profile),
        agent=CommandAgent(agents_config),
        gate=MakeQualityGate(profile),
    )


def cmd_run(args, project: ProjectConfig, profile: ProjectProfile) -> int:
    """Run the loop and map its terminal signal to an exit code."""
    agents_config = load_agents_config(project.project_dir)
    check = validate_stage_binaries(agents_config, ["implement", "implement_resume"])
    if not check.ok:
        print(f"ERROR: {check.error_message}")
        return EXIT_ERROR

    controller = build_controller(project, profile)
    max_iterations = 1 if args.once else args.max_iterations

    outcome = run_plan_flow(controller, max_iterations=max_iterations)

    where = f" [{outcome.story_id}]" if outcome.story_id else ""
    print(f"{outcome.signal.value}{where}: {outcome.reason or ''}".rstrip(": "))
    if outcome.session_id and outcome.signal is LoopSignal.HALTED_FAILURE:
        print(f"  Inspect: storyloop session status {outcome.session_id}")

    if profile.notifications:
        if outcome.signal is LoopSignal.PAUSED:
            notify_paused(controller.plan_id, outcome.story_id)
        elif outcome.signal is LoopSignal.HALTED_FAILURE:
            notify_failed(controller.plan_id, outcome.story_id, outcome.reason or "unknown")
        elif outcome.signal is LoopSignal.HALTED_SUCCESS:
            notify_complete(controller.plan_id)

    return EXIT_FOR_SIGNAL[outcome.signal]
