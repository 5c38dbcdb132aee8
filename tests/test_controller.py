"""Tests for the iteration controller, driven by a scripted fake agent."""

import json
import os
import subprocess
from unittest.mock import patch

import pytest

from storyloop.lib.config import ProjectProfile
from storyloop.lib.context import get_context
from storyloop.lib.errors import InvariantError
from storyloop.plan.store import PlanStore
from storyloop.workflow.checkpoint import CheckpointGate
from storyloop.workflow.controller import IterationController, LoopSignal
from storyloop.workflow.gates import GateResult
from storyloop.workspace.manager import WorkspaceSessionManager
from storyloop.workspace.session import ExecutionStatus, Resolution, Strategy, update_meta

from conftest import git, commit_file


class FakeHandle:
    """Stands in for a running agent process."""

    def __init__(self, exit_code, summary_text=""):
        self.exit_code = exit_code
        self.summary_text = summary_text
        self.killed = False

    def poll(self):
        if self.killed:
            return -15
        return self.exit_code

    def kill(self):
        self.killed = True

    def summary(self):
        return self.summary_text


class FakeAgent:
    """Plays one scripted action per start() call."""

    def __init__(self, *actions):
        self.actions = list(actions)
        self.requests = []
        self.handles = []

    def start(self, request, log_file):
        self.requests.append(request)
        handle = self.actions.pop(0)(request)
        self.handles.append(handle)
        return handle


class FakeGate:
    def __init__(self, *results):
        self.results = list(results)
        self.worktrees = []

    def run(self, worktree, log_dir=None):
        self.worktrees.append(worktree)
        passed = self.results.pop(0) if self.results else True
        return GateResult(passed=passed, failed_target=None if passed else "test", exit_code=0 if passed else 2)


def writes(files, exit_code=0, summary=""):
    """Agent action: write files into the worktree, then exit."""
    def action(request):
        for name, content in files.items():
            (request.worktree / name).write_text(content)
        return FakeHandle(exit_code, summary)
    return action


def hangs(request):
    return FakeHandle(None)


def dead_pid():
    proc = subprocess.Popen(["true"])
    proc.wait()
    return proc.pid


def plan_data(project):
    return json.loads(project.plan_path.read_text())


def story_flags(project, story_id):
    for story in plan_data(project)["stories"]:
        if story["id"] == story_id:
            return story["passes"], story["inProgress"]
    raise KeyError(story_id)


@pytest.fixture
def make_controller(project, profile, manager):
    def build(stories, agent, gate=None, profile_=None):
        PlanStore.create(project.plan_path, stories, iteration_prompt="Build the thing.")
        p = profile_ or profile
        return IterationController(
            project=project,
            profile=p,
            store=PlanStore(project.plan_path),
            manager=manager if profile_ is None else WorkspaceSessionManager(project, p),
            agent=agent,
            gate=gate or FakeGate(),
            checkpoint=CheckpointGate(),
        )
    return build


TWO_STORIES = [{"id": "A", "title": "First"}, {"id": "B", "title": "Second"}]


class TestHappyPath:
    """Stories complete in order and land on the target."""

    def test_two_stories_then_halted_success(self, make_controller, manager, project, git_repo):
        seen_in_progress = []

        def check_plan(request):
            seen_in_progress.append(story_flags(project, "A"))
            return writes({"a.txt": "a\n"})(request)

        agent = FakeAgent(check_plan, writes({"b.txt": "b\n"}))
        controller = make_controller(TWO_STORIES, agent)

        first = controller.run_once()
        assert first.signal is LoopSignal.CONTINUING
        assert first.story_id == "A"
        assert first.execution_status is ExecutionStatus.COMPLETED
        assert first.merge_commit == git(git_repo, "rev-parse", "main")
        assert seen_in_progress == [(False, True)]
        assert story_flags(project, "A") == (True, False)
        assert (git_repo / "a.txt").read_text() == "a\n"
        assert manager.get(first.session_id).resolution is Resolution.MERGED

        second = controller.run_once()
        assert (second.signal, second.story_id) == (LoopSignal.CONTINUING, "B")
        assert (git_repo / "b.txt").exists()

        last = controller.run_once()
        assert last.signal is LoopSignal.HALTED_SUCCESS
        assert last.story_id is None
        assert plan_data(project)["started"] is True

    def test_minimal_plan_document_end_to_end(self, make_controller, manager, project, git_repo):
        seen_in_progress = []

        def check_plan(request):
            seen_in_progress.append(story_flags(project, "US-001"))
            return writes({"a.txt": "a\n"})(request)

        controller = make_controller([], FakeAgent(check_plan))
        project.plan_path.write_text(json.dumps({
            "started": False,
            "stories": [{"id": "US-001", "passes": False, "inProgress": False, "checkpoint": False}],
        }))

        outcome = controller.run_once()

        assert outcome.signal is LoopSignal.CONTINUING
        assert seen_in_progress == [(False, True)]
        assert plan_data(project)["started"] is True
        assert story_flags(project, "US-001") == (True, False)
        assert manager.get(outcome.session_id).resolution is Resolution.MERGED
        assert (git_repo / "a.txt").read_text() == "a\n"

        assert controller.run_once().signal is LoopSignal.HALTED_SUCCESS

    def test_run_loop_until_done(self, make_controller, project):
        agent = FakeAgent(writes({"a.txt": "a\n"}), writes({"b.txt": "b\n"}))
        controller = make_controller(TWO_STORIES, agent)

        outcome = controller.run_loop()

        assert outcome.signal is LoopSignal.HALTED_SUCCESS
        assert [s["passes"] for s in plan_data(project)["stories"]] == [True, True]

    def test_run_loop_respects_max_iterations(self, make_controller, project):
        agent = FakeAgent(writes({"a.txt": "a\n"}), writes({"b.txt": "b\n"}))
        controller = make_controller(TWO_STORIES, agent)

        outcome = controller.run_loop(max_iterations=1)

        assert outcome.signal is LoopSignal.CONTINUING
        assert story_flags(project, "B") == (False, False)

    def test_skips_passing_stories(self, make_controller):
        agent = FakeAgent(writes({"b.txt": "b\n"}))
        controller = make_controller(
            [{"id": "A", "title": "a", "passes": True}, {"id": "B", "title": "b"}],
            agent,
        )
        assert controller.run_once().story_id == "B"

    def test_agent_request_carries_context(self, make_controller, project):
        agent = FakeAgent(writes({"a.txt": "a\n"}))
        controller = make_controller(TWO_STORIES, agent)

        outcome = controller.run_once()

        request = agent.requests[0]
        assert request.resume is False
        assert request.env["STORYLOOP_PROJECT_DIR"] == str(project.project_dir)
        assert request.env["STORYLOOP_PLAN_ID"] == "demo"
        assert request.env["STORYLOOP_STORY_ID"] == "A"
        assert request.env["STORYLOOP_SESSION_ID"] == outcome.session_id
        assert request.prompt.startswith("Build the thing.")
        assert "**A**: First" in request.prompt
        # Context is cleared between stories
        assert get_context(project.state_dir, environ={}) == {
            "planId": "demo", "storyId": None, "sessionId": None,
        }

    def test_writes_result_document(self, make_controller, project):
        controller = make_controller(TWO_STORIES, FakeAgent(writes({"a.txt": "a\n"})))

        outcome = controller.run_once()

        [result_path] = list(project.runs_dir.glob("*/result.json"))
        result = json.loads(result_path.read_text())
        assert result["signal"] == "continuing"
        assert result["story"] == "A"
        assert result["session"] == outcome.session_id
        assert result["merge_commit"] == outcome.merge_commit
        assert result["states"] == ["selecting_story", "awaiting_agent", "evaluating_outcome", "continuing"]

    def test_empty_plan_halts_successfully(self, make_controller):
        agent = FakeAgent()
        controller = make_controller([], agent)
        assert controller.run_once().signal is LoopSignal.HALTED_SUCCESS
        assert agent.requests == []


class TestCheckpoint:
    """Checkpoint stories pause the loop after they land."""

    def test_pause_then_continue(self, make_controller, project, git_repo):
        stories = [{"id": "A", "title": "a", "checkpoint": True}, {"id": "B", "title": "b"}]
        agent = FakeAgent(writes({"a.txt": "a\n"}), writes({"b.txt": "b\n"}))
        controller = make_controller(stories, agent)

        paused = controller.run_loop()
        assert paused.signal is LoopSignal.PAUSED
        assert paused.story_id == "A"
        assert story_flags(project, "A") == (True, False)
        assert (git_repo / "a.txt").exists()

        resumed = controller.run_once()
        assert (resumed.signal, resumed.story_id) == (LoopSignal.CONTINUING, "B")


class TestFailures:
    """Failed attempts halt the loop and leave the story in progress."""

    def test_agent_failure(self, make_controller, project, manager, git_repo):
        before = git(git_repo, "rev-parse", "main")
        controller = make_controller(TWO_STORIES, FakeAgent(writes({"a.txt": "a\n"}, exit_code=3)))

        outcome = controller.run_once()

        assert outcome.signal is LoopSignal.HALTED_FAILURE
        assert outcome.execution_status is ExecutionStatus.FAILED
        assert outcome.reason == "Agent exited 3"
        assert story_flags(project, "A") == (False, True)
        session = manager.get(outcome.session_id)
        assert session.execution_status is ExecutionStatus.FAILED
        assert session.resolution is Resolution.UNRESOLVED
        assert git(git_repo, "rev-parse", "main") == before

    def test_operator_kill(self, make_controller, manager, project):
        def kill_self(request):
            manager.request_kill(request.env["STORYLOOP_SESSION_ID"])
            return FakeHandle(None)

        agent = FakeAgent(kill_self)
        controller = make_controller(TWO_STORIES, agent)

        outcome = controller.run_once()

        assert outcome.signal is LoopSignal.HALTED_FAILURE
        assert outcome.execution_status is ExecutionStatus.KILLED
        assert agent.handles[0].killed
        assert manager.get(outcome.session_id).execution_status is ExecutionStatus.KILLED
        assert story_flags(project, "A") == (False, True)

    def test_agent_timeout(self, make_controller):
        profile = ProjectProfile(poll_interval=0.01, min_free_mb=0, agent_timeout=0)
        agent = FakeAgent(hangs)
        controller = make_controller(TWO_STORIES, agent, profile_=profile)

        outcome = controller.run_once()

        assert outcome.execution_status is ExecutionStatus.FAILED
        assert "timed out" in outcome.reason
        assert agent.handles[0].killed

    def test_gate_failure(self, make_controller, manager, project, git_repo):
        before = git(git_repo, "rev-parse", "main")
        gate = FakeGate(False)
        controller = make_controller(TWO_STORIES, FakeAgent(writes({"a.txt": "a\n"})), gate=gate)

        outcome = controller.run_once()

        assert outcome.signal is LoopSignal.HALTED_FAILURE
        assert outcome.reason.startswith("Quality gate failed")
        assert gate.worktrees == [manager.get(outcome.session_id).worktree]
        assert manager.get(outcome.session_id).resolution is Resolution.UNRESOLVED
        assert git(git_repo, "rev-parse", "main") == before
        assert story_flags(project, "A") == (False, True)

    def test_merge_conflict(self, make_controller, manager, project, git_repo):
        commit_file(git_repo, "shared.txt", "base\n")

        def race_target(request):
            (request.worktree / "shared.txt").write_text("agent\n")
            commit_file(git_repo, "shared.txt", "someone else\n")
            return FakeHandle(0)

        controller = make_controller(TWO_STORIES, FakeAgent(race_target))

        outcome = controller.run_once()
        target_head = git(git_repo, "rev-parse", "main")

        assert outcome.signal is LoopSignal.HALTED_FAILURE
        assert "shared.txt" in outcome.reason
        assert (git_repo / "shared.txt").read_text() == "someone else\n"
        assert git(git_repo, "log", "-1", "--format=%s", target_head) == "Update shared.txt"
        assert manager.get(outcome.session_id).resolution is Resolution.UNRESOLVED
        assert story_flags(project, "A") == (False, True)


class TestResume:
    """An in-progress story picks up where its last attempt stopped."""

    def test_resume_after_failure_carries_transcript_and_changes(self, make_controller, manager, project, git_repo):
        def second_attempt(request):
            assert (request.worktree / "partial.txt").read_text() == "half\n"
            return writes({"done.txt": "done\n"})(request)

        agent = FakeAgent(
            writes({"partial.txt": "half\n"}, exit_code=1, summary="Wrote half of it"),
            second_attempt,
        )
        controller = make_controller(TWO_STORIES, agent)

        failed = controller.run_once()
        assert failed.signal is LoopSignal.HALTED_FAILURE

        outcome = controller.run_once()

        assert (outcome.signal, outcome.story_id) == (LoopSignal.CONTINUING, "A")
        request = agent.requests[1]
        assert request.resume is True
        assert "## Resumed Attempt" in request.prompt
        assert "Wrote half of it" in request.prompt
        assert failed.session_id in request.prompt

        new_session = manager.get(outcome.session_id)
        assert new_session.previous_session == failed.session_id
        assert manager.get(failed.session_id).resolution is Resolution.DISCARDED
        assert (git_repo / "partial.txt").exists()
        assert (git_repo / "done.txt").exists()
        assert story_flags(project, "A") == (True, False)

    def _crashed_attempt(self, project, manager, git_repo, owner_pid):
        store = PlanStore(project.plan_path)
        story, _ = store.claim()
        session_id = manager.open(git(git_repo, "rev-parse", "main"), "Old instructions", story.id)
        session = manager.get(session_id)
        (session.worktree / "partial.txt").write_text("half\n")
        update_meta(session.session_dir, {"OWNER_PID": owner_pid})
        return session_id

    def test_running_session_with_dead_owner_is_killed_and_resumed(self, make_controller, manager, project, git_repo):
        agent = FakeAgent(writes({"done.txt": "done\n"}))
        controller = make_controller(TWO_STORIES, agent)
        crashed = self._crashed_attempt(project, manager, git_repo, dead_pid())

        outcome = controller.run_once()

        assert outcome.signal is LoopSignal.CONTINUING
        old = manager.get(crashed)
        assert old.execution_status is ExecutionStatus.KILLED
        assert old.resolution is Resolution.DISCARDED
        assert "Old instructions" in agent.requests[0].prompt
        assert (git_repo / "partial.txt").exists()

    def test_running_session_with_live_owner_is_refused(self, make_controller, manager, project, git_repo):
        agent = FakeAgent()
        controller = make_controller(TWO_STORIES, agent)
        crashed = self._crashed_attempt(project, manager, git_repo, os.getpid())

        with pytest.raises(InvariantError, match="still driven"):
            controller.run_once()

        assert agent.requests == []
        assert manager.get(crashed).execution_status is ExecutionStatus.RUNNING
        [result_path] = list(project.runs_dir.glob("*/result.json"))
        assert json.loads(result_path.read_text())["signal"] == "halted_failure"
        assert controller.state == "halted"

    def test_crash_after_merge_completes_story(self, make_controller, manager, project, git_repo):
        agent = FakeAgent()
        controller = make_controller(TWO_STORIES, agent)
        store = PlanStore(project.plan_path)
        store.claim()
        session_id = manager.open(git(git_repo, "rev-parse", "main"), "x", "A")
        (manager.get(session_id).worktree / "a.txt").write_text("a\n")
        manager.finish(session_id, ExecutionStatus.COMPLETED)
        merged = manager.resolve(session_id, Strategy.MERGE)

        outcome = controller.run_once()

        assert outcome.signal is LoopSignal.CONTINUING
        assert outcome.session_id == session_id
        assert outcome.merge_commit == merged.merge_commit
        assert agent.requests == []
        assert story_flags(project, "A") == (True, False)

    def _completed_attempt(self, project, manager, git_repo):
        PlanStore(project.plan_path).claim()
        session_id = manager.open(git(git_repo, "rev-parse", "main"), "x", "A")
        (manager.get(session_id).worktree / "a.txt").write_text("a\n")
        manager.finish(session_id, ExecutionStatus.COMPLETED)
        return session_id

    def test_crash_before_merge_is_recorded(self, make_controller, manager, project, git_repo):
        agent = FakeAgent()
        controller = make_controller(TWO_STORIES, agent)
        session_id = self._completed_attempt(project, manager, git_repo)

        with patch("storyloop.workspace.manager.update_meta", side_effect=SystemExit(1)):
            with pytest.raises(SystemExit):
                manager.resolve(session_id, Strategy.MERGE)
        landed = git(git_repo, "rev-parse", "main")
        assert (git_repo / "a.txt").exists()
        assert manager.get(session_id).resolution is Resolution.UNRESOLVED

        outcome = controller.run_once()

        assert outcome.signal is LoopSignal.CONTINUING
        assert outcome.session_id == session_id
        assert outcome.merge_commit == landed
        assert agent.requests == []
        session = manager.get(session_id)
        assert session.resolution is Resolution.MERGED
        assert session.merge_commit == landed
        assert not session.worktree.exists()
        assert story_flags(project, "A") == (True, False)

    def test_crash_between_merge_commit_and_resolution(self, make_controller, manager, project, git_repo):
        agent = FakeAgent()
        controller = make_controller(TWO_STORIES, agent)
        session_id = self._completed_attempt(project, manager, git_repo)

        with patch("storyloop.workspace.manager.resolution_fsm", side_effect=SystemExit(1)):
            with pytest.raises(SystemExit):
                manager.resolve(session_id, Strategy.MERGE)
        recorded = manager.get(session_id).merge_commit
        assert recorded == git(git_repo, "rev-parse", "main")

        outcome = controller.run_once()

        assert (outcome.signal, outcome.merge_commit) == (LoopSignal.CONTINUING, recorded)
        assert agent.requests == []
        assert manager.get(session_id).resolution is Resolution.MERGED

    def test_stale_sessions_from_interrupted_resume_are_discarded(self, make_controller, manager, project, git_repo):
        agent = FakeAgent(writes({"done.txt": "done\n"}))
        controller = make_controller(TWO_STORIES, agent)
        PlanStore(project.plan_path).claim()
        base = git(git_repo, "rev-parse", "main")
        older = manager.open(base, "x", "A")
        manager.finish(older, ExecutionStatus.FAILED)
        newer = manager.open(base, "x", "A", previous_session=older)
        (manager.get(newer).worktree / "partial.txt").write_text("half\n")
        manager.finish(newer, ExecutionStatus.FAILED)

        outcome = controller.run_once()

        assert outcome.signal is LoopSignal.CONTINUING
        assert manager.get(outcome.session_id).previous_session == newer
        assert manager.get(older).resolution is Resolution.DISCARDED
        assert manager.get(newer).resolution is Resolution.DISCARDED
        live = [s.id for s in manager.list_sessions() if not s.is_resolved]
        assert live == []
        assert (git_repo / "partial.txt").exists()
