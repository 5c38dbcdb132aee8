"""Iteration controller: the top-level loop.

One iteration selects a story, opens a workspace session for it, drives one
agent attempt, evaluates the outcome, and updates the plan:

    idle -> selecting_story -> awaiting_agent -> evaluating_outcome
         -> {continuing, paused, halted}

continuing loops back to selecting_story; selecting_story goes straight to
halted when every story passes. The plan document is the only durable state,
so the machine itself lives in memory and restarts at idle.

Execution failures (failed/killed sessions, failing gates, merge conflicts)
are outcomes: they halt the loop with a failure signal and leave the story
in progress for the next run to resume. Nothing is retried automatically.
"""

import logging
import signal
import threading
import time
from dataclasses import dataclass
from enum import Enum
from typing import Optional

from transitions import Machine

from storyloop import git
from storyloop.agents.command import AgentRequest
from storyloop.lib.config import ProjectConfig, ProjectProfile
from storyloop.lib.constants import (
    ENV_PLAN_ID,
    ENV_PROJECT_DIR,
    ENV_SESSION_DIR,
    ENV_SESSION_ID,
    ENV_STORY_ID,
)
from storyloop.lib.context import write_context
from storyloop.lib.errors import ConflictError, InvariantError, NotFoundError, StoryloopError
from storyloop.lib.prompts import build_iteration_instructions
from storyloop.lib.validate import ValidationError
from storyloop.plan.models import Story
from storyloop.plan.store import PlanStore
from storyloop.runner.context import RunContext
from storyloop.runner.locking import LockTimeout
from storyloop.workflow.checkpoint import CheckpointGate
from storyloop.workspace.manager import WorkspaceSessionManager, pid_alive
from storyloop.workspace.session import ExecutionStatus, Resolution, Strategy, WorkspaceSession

logger = logging.getLogger(__name__)


class LoopSignal(Enum):
    CONTINUING = "continuing"
    PAUSED = "paused"
    HALTED_SUCCESS = "halted_success"
    HALTED_FAILURE = "halted_failure"

    @property
    def is_terminal(self) -> bool:
        return self is not LoopSignal.CONTINUING


@dataclass
class IterationOutcome:
    signal: LoopSignal
    story_id: Optional[str] = None
    session_id: Optional[str] = None
    reason: Optional[str] = None
    execution_status: Optional[ExecutionStatus] = None
    merge_commit: Optional[str] = None


STATES = [
    "idle",
    "selecting_story",
    "awaiting_agent",
    "evaluating_outcome",
    "continuing",
    "paused",
    "halted",
]

TRANSITIONS = [
    {"trigger": "select", "source": ["idle", "continuing"], "dest": "selecting_story"},
    {"trigger": "dispatch", "source": "selecting_story", "dest": "awaiting_agent"},
    {"trigger": "plan_complete", "source": "selecting_story", "dest": "halted"},
    {"trigger": "evaluate", "source": "awaiting_agent", "dest": "evaluating_outcome"},
    {"trigger": "proceed", "source": "evaluating_outcome", "dest": "continuing"},
    {"trigger": "pause", "source": "evaluating_outcome", "dest": "paused"},
    {"trigger": "halt", "source": "evaluating_outcome", "dest": "halted"},
    # Errors raised mid-iteration
    {"trigger": "abort", "source": ["selecting_story", "awaiting_agent", "evaluating_outcome"], "dest": "halted"},
    # A new invocation after a terminal signal
    {"trigger": "reset", "source": ["paused", "halted"], "dest": "idle"},
]


class IterationController:
    """Drives stories through workspace sessions, one at a time.

    Collaborators:
        agent: start(AgentRequest, log_file) -> handle with poll(), kill(), summary()
        gate: run(worktree, log_dir) -> result with .passed and .reason
    """

    def __init__(
        self,
        project: ProjectConfig,
        profile: ProjectProfile,
        store: PlanStore,
        manager: WorkspaceSessionManager,
        agent,
        gate,
        checkpoint: CheckpointGate | None = None,
        plan_id: str | None = None,
    ):
        self.project = project
        self.profile = profile
        self.store = store
        self.manager = manager
        self.agent = agent
        self.gate = gate
        self.checkpoint = checkpoint or CheckpointGate()
        self.plan_id = plan_id or project.name
        self._ctx: RunContext | None = None
        self._interrupted = False

        self.machine = Machine(
            model=self,
            states=STATES,
            transitions=TRANSITIONS,
            initial="idle",
            auto_transitions=False,
            send_event=True,
            after_state_change="on_state_change",
        )

    def on_state_change(self, event) -> None:
        logger.info(f"[LOOP] {event.transition.source} -> {event.transition.dest} ({event.event.name})")
        if self._ctx is not None:
            self._ctx.record_state(event.transition.dest)

    # ------------------------------------------------------------------
    # Entry points
    # ------------------------------------------------------------------

    def run_once(self) -> IterationOutcome:
        """Run one iteration and return its signal."""
        self._ctx = None
        if self.state in ("paused", "halted"):
            self.reset()
        elif self.state not in ("idle", "continuing"):
            # Left mid-iteration by an unexpected exception
            self.machine.set_state("idle")

        self._ctx = RunContext.create(self.project, self.profile, self.plan_id)
        self._ctx.log(f"Starting iteration for plan {self.plan_id}")
        self.select()

        try:
            outcome = self._iterate()
        except (StoryloopError, ValidationError, LockTimeout) as e:
            self._ctx.log(f"ERROR: {e}")
            self.abort()
            self._write_result(IterationOutcome(
                LoopSignal.HALTED_FAILURE,
                story_id=self._ctx.story_id,
                session_id=self._ctx.session_id,
                reason=str(e),
            ))
            raise

        self._write_result(outcome)
        return outcome

    def run_loop(self, max_iterations: int | None = None) -> IterationOutcome:
        """Iterate until paused or halted (or max_iterations runs)."""
        count = 0
        while True:
            outcome = self.run_once()
            count += 1
            if outcome.signal.is_terminal:
                return outcome
            if max_iterations is not None and count >= max_iterations:
                logger.info(f"[LOOP] Stopping after {count} iteration(s)")
                return outcome

    # ------------------------------------------------------------------
    # One iteration
    # ------------------------------------------------------------------

    def _iterate(self) -> IterationOutcome:
        plan = self.store.mark_started()
        story, resumed = self.store.claim()

        if story is None:
            self._update_context(None, None)
            self.plan_complete()
            return IterationOutcome(LoopSignal.HALTED_SUCCESS, reason="All stories pass")

        self._ctx.story_id = story.id
        self._ctx.log(f"Story {story.id}: {story.title}" + (" (resumed)" if resumed else ""))

        if resumed:
            landed = self._landed_session(story.id)
            if landed is not None:
                # Crashed after the merge but before the plan was updated
                self._ctx.session_id = landed.id
                self.dispatch()
                self.evaluate()
                self.store.complete_story(story.id, True)
                return self._after_success(story, landed.id, ExecutionStatus.COMPLETED, landed.merge_commit)

        session_id, is_resume = self._open_session(story, resumed, plan.iteration_prompt)
        self._ctx.session_id = session_id
        self._update_context(story.id, session_id)

        self.dispatch()
        status, reason = self._await_agent(session_id, is_resume)

        self.evaluate()
        if status is not ExecutionStatus.COMPLETED:
            self.halt()
            return IterationOutcome(
                LoopSignal.HALTED_FAILURE, story.id, session_id,
                reason=reason, execution_status=status,
            )

        session = self.manager.get(session_id)
        gate_result = self.gate.run(session.worktree, self._ctx.run_dir)
        self._ctx.log(f"Quality gate: {gate_result.reason}")
        if not gate_result.passed:
            self.halt()
            return IterationOutcome(
                LoopSignal.HALTED_FAILURE, story.id, session_id,
                reason=f"Quality gate failed: {gate_result.reason}", execution_status=status,
            )

        try:
            resolved = self.manager.resolve(session_id, Strategy.MERGE)
        except ConflictError as e:
            self._ctx.log(f"Merge conflict: {', '.join(e.paths)}")
            self.halt()
            return IterationOutcome(
                LoopSignal.HALTED_FAILURE, story.id, session_id,
                reason=str(e), execution_status=status,
            )

        self.store.complete_story(story.id, True)
        return self._after_success(story, session_id, status, resolved.merge_commit)

    def _after_success(self, story: Story, session_id: str, status: ExecutionStatus,
                       merge_commit: str | None) -> IterationOutcome:
        if self.checkpoint.should_pause(story):
            self.pause()
            signal_ = LoopSignal.PAUSED
            reason = f"Checkpoint after {story.id}"
        else:
            self.proceed()
            signal_ = LoopSignal.CONTINUING
            reason = f"{story.id} complete"
        self._update_context(None, None)
        return IterationOutcome(
            signal_, story.id, session_id,
            reason=reason, execution_status=status, merge_commit=merge_commit,
        )

    def _landed_session(self, story_id: str) -> Optional[WorkspaceSession]:
        """The story's latest session if its work already reached the target."""
        latest = self.manager.find_latest_for_story(story_id, unresolved_only=False)
        if latest is None:
            return None
        if latest.resolution is Resolution.MERGED:
            return latest
        if not latest.is_resolved and self.manager.recover_merge(latest.id) is not None:
            return self.manager.get(latest.id)
        return None

    def _open_session(self, story: Story, resumed: bool, plan_prompt: str) -> tuple[str, bool]:
        """Open the session for this attempt. Returns (session_id, is_resume)."""
        target = self.project.target_branch
        base = git.get_commit_sha(self.project.repo_path, f"refs/heads/{target}")
        if base is None:
            raise NotFoundError("branch", target)

        prior = self.manager.find_latest_for_story(story.id) if resumed else None
        if prior is None:
            instructions = build_iteration_instructions(plan_prompt, story.id, story.title)
            return self.manager.open(base, instructions, story.id, target=target), False

        if prior.execution_status is ExecutionStatus.RUNNING:
            if prior.owner_pid is not None and pid_alive(prior.owner_pid):
                raise InvariantError(
                    f"Session {prior.id} for {story.id} is still driven by pid {prior.owner_pid}"
                )
            self.manager.finish(prior.id, ExecutionStatus.KILLED)

        self._discard_stale_sessions(story.id, keep=prior.id)
        self.manager.adopt(prior.id)
        revision = self.manager.snapshot(prior.id)
        transcript = self.manager.transcript(prior.id)
        instructions = build_iteration_instructions(
            plan_prompt, story.id, story.title,
            previous_session=prior.id,
            previous_instructions=transcript.instructions,
            previous_summary=transcript.summary,
        )

        session_id = self.manager.open(
            revision, instructions, story.id, target=target, previous_session=prior.id,
        )
        self.manager.resolve(prior.id, Strategy.DISCARD)
        logger.info(f"[LOOP] Resumed {story.id} from session {prior.id} in {session_id}")
        return session_id, True

    def _discard_stale_sessions(self, story_id: str, keep: str) -> None:
        """Discard unresolved sessions of a story left over from interrupted resumes."""
        for stale in self.manager.list_sessions():
            if stale.story_id != story_id or stale.is_resolved or stale.id == keep:
                continue
            if stale.execution_status is ExecutionStatus.RUNNING:
                self.manager.finish(stale.id, ExecutionStatus.KILLED)
            self.manager.resolve(stale.id, Strategy.DISCARD)
            logger.info(f"[LOOP] Discarded stale session {stale.id} of {story_id}")

    # ------------------------------------------------------------------
    # Waiting on the agent
    # ------------------------------------------------------------------

    def _on_signal(self, signum, frame) -> None:
        logger.warning(f"[LOOP] Received signal {signum}, killing agent")
        self._interrupted = True

    def _install_signal_handlers(self):
        if threading.current_thread() is not threading.main_thread():
            return None
        return (
            signal.signal(signal.SIGINT, self._on_signal),
            signal.signal(signal.SIGTERM, self._on_signal),
        )

    def _await_agent(self, session_id: str, resume: bool) -> tuple[ExecutionStatus, str]:
        """Start the agent and poll until it exits, is killed, or times out."""
        session = self.manager.get(session_id)
        transcript = self.manager.transcript(session_id)
        request = AgentRequest(
            prompt=transcript.instructions,
            worktree=session.worktree,
            session_dir=session.session_dir,
            env={
                ENV_PROJECT_DIR: str(self.project.project_dir),
                ENV_PLAN_ID: self.plan_id,
                ENV_STORY_ID: session.story_id,
                ENV_SESSION_ID: session_id,
                ENV_SESSION_DIR: str(session.session_dir),
            },
            resume=resume,
        )

        self._interrupted = False
        originals = self._install_signal_handlers()
        handle = self.agent.start(request, self._ctx.run_dir / "agent.log")
        deadline = time.monotonic() + self.profile.agent_timeout
        try:
            while True:
                exit_code = handle.poll()
                if exit_code is not None:
                    if exit_code == 0:
                        status, reason = ExecutionStatus.COMPLETED, "Agent exited 0"
                    else:
                        status, reason = ExecutionStatus.FAILED, f"Agent exited {exit_code}"
                    break
                if self._interrupted or self.manager.kill_requested(session_id):
                    handle.kill()
                    status, reason = ExecutionStatus.KILLED, "Killed by operator"
                    break
                if time.monotonic() >= deadline:
                    handle.kill()
                    status = ExecutionStatus.FAILED
                    reason = f"Agent timed out after {self.profile.agent_timeout}s"
                    break
                self.manager.touch(session_id)
                time.sleep(self.profile.poll_interval)
        finally:
            if originals is not None:
                signal.signal(signal.SIGINT, originals[0])
                signal.signal(signal.SIGTERM, originals[1])

        summary = handle.summary()
        if summary:
            self.manager.record_summary(session_id, summary)
        self.manager.finish(session_id, status)
        self._ctx.log(f"Session {session_id}: {status.value} ({reason})")
        return status, reason

    # ------------------------------------------------------------------
    # Bookkeeping
    # ------------------------------------------------------------------

    def _update_context(self, story_id: str | None, session_id: str | None) -> None:
        write_context(self.project.state_dir, self.plan_id, story_id, session_id)

    def _write_result(self, outcome: IterationOutcome) -> None:
        self._ctx.story_id = outcome.story_id or self._ctx.story_id
        self._ctx.session_id = outcome.session_id or self._ctx.session_id
        self._ctx.write_result(
            outcome.signal.value,
            reason=outcome.reason,
            execution_status=outcome.execution_status.value if outcome.execution_status else None,
            merge_commit=outcome.merge_commit,
        )
        logger.info(f"[LOOP] {outcome.signal.value}: {outcome.reason}")
