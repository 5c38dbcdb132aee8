"""Tests for the command-line agent runner."""

import time

from storyloop.agents.command import AgentRequest, CommandAgent
from storyloop.lib.agents_config import AgentsConfig


def wait(handle, timeout=10):
    deadline = time.time() + timeout
    while handle.poll() is None and time.time() < deadline:
        time.sleep(0.02)
    return handle.poll()


def make_request(tmp_path, prompt="Do the story", resume=False):
    worktree = tmp_path / "wt"
    session_dir = tmp_path / "session"
    worktree.mkdir()
    session_dir.mkdir()
    return AgentRequest(
        prompt=prompt,
        worktree=worktree,
        session_dir=session_dir,
        env={"STORYLOOP_SESSION_ID": "0123456789ab"},
        resume=resume,
    )


class TestCommandAgent:
    """Test CommandAgent.start and AgentProcess."""

    def test_prompt_via_stdin_and_env(self, tmp_path):
        config = AgentsConfig(stages={
            "implement": "sh -c 'cat > prompt.txt; echo $STORYLOOP_SESSION_ID'",
            "implement_resume": "sh -c 'exit 9'",
        })
        request = make_request(tmp_path)
        handle = CommandAgent(config).start(request, tmp_path / "agent.log")

        assert wait(handle) == 0
        assert (request.worktree / "prompt.txt").read_text() == "Do the story"
        assert "0123456789ab" in (tmp_path / "agent.log").read_text()

    def test_resume_uses_resume_stage(self, tmp_path):
        config = AgentsConfig(stages={
            "implement": "sh -c 'exit 0'",
            "implement_resume": "sh -c 'exit 9'",
        })
        handle = CommandAgent(config).start(make_request(tmp_path, resume=True), tmp_path / "agent.log")
        assert wait(handle) == 9

    def test_summary_prefers_summary_file(self, tmp_path):
        config = AgentsConfig(stages={
            "implement": "sh -c 'echo noise; echo \"Did it\" > \"$STORYLOOP_SESSION_DIR/summary.md\"'",
            "implement_resume": "sh -c true",
        })
        request = make_request(tmp_path)
        request.env["STORYLOOP_SESSION_DIR"] = str(request.session_dir)
        handle = CommandAgent(config).start(request, tmp_path / "agent.log")
        wait(handle)
        assert handle.summary() == "Did it"

    def test_summary_falls_back_to_log_tail(self, tmp_path):
        config = AgentsConfig(stages={
            "implement": "sh -c 'echo first; echo last'",
            "implement_resume": "sh -c true",
        })
        handle = CommandAgent(config).start(make_request(tmp_path), tmp_path / "agent.log")
        wait(handle)
        assert handle.summary() == "first\nlast"

    def test_kill_stops_process_group(self, tmp_path):
        config = AgentsConfig(stages={
            "implement": "sh -c 'sleep 30'",
            "implement_resume": "sh -c true",
        })
        handle = CommandAgent(config).start(make_request(tmp_path), tmp_path / "agent.log")
        assert handle.poll() is None

        handle.kill()

        assert handle.poll() is not None
