"""
Command-line agent integration for storyloop.

Runs the configured agent CLI (agents.yaml) inside a session worktree as a
child process the controller can poll and kill.
"""

import logging
import os
import signal
import subprocess
from dataclasses import dataclass
from pathlib import Path
from typing import Optional

from storyloop.lib.agents_config import AgentsConfig, get_stage_command

logger = logging.getLogger(__name__)

SUMMARY_FILE = "summary.md"
SUMMARY_TAIL_LINES = 40
KILL_GRACE_SECONDS = 10


@dataclass
class AgentRequest:
    """Everything the agent needs for one attempt."""
    prompt: str
    worktree: Path
    session_dir: Path
    env: dict
    resume: bool = False


class AgentProcess:
    """A running agent. poll() is non-blocking; kill() stops the whole process group."""

    def __init__(self, proc: subprocess.Popen, log_file: Path, session_dir: Path):
        self.proc = proc
        self.log_file = log_file
        self.session_dir = session_dir

    @property
    def pid(self) -> int:
        return self.proc.pid

    def poll(self) -> Optional[int]:
        return self.proc.poll()

    def kill(self) -> None:
        if self.proc.poll() is not None:
            return
        try:
            os.killpg(self.proc.pid, signal.SIGTERM)
        except ProcessLookupError:
            return
        try:
            self.proc.wait(timeout=KILL_GRACE_SECONDS)
        except subprocess.TimeoutExpired:
            logger.warning(f"Agent pid {self.proc.pid} ignored SIGTERM, sending SIGKILL")
            try:
                os.killpg(self.proc.pid, signal.SIGKILL)
            except ProcessLookupError:
                pass
            self.proc.wait()

    def summary(self) -> str:
        """The agent's own summary file, else the tail of its output."""
        summary_path = self.session_dir / SUMMARY_FILE
        if summary_path.exists():
            text = summary_path.read_text().strip()
            if text:
                return text

        if not self.log_file.exists():
            return ""
        lines = self.log_file.read_text(errors="replace").splitlines()
        return "\n".join(lines[-SUMMARY_TAIL_LINES:]).strip()


class CommandAgent:
    """Starts the implement / implement_resume stage command from agents.yaml."""

    def __init__(self, config: AgentsConfig):
        self.config = config

    def start(self, request: AgentRequest, log_file: Path) -> AgentProcess:
        stage = "implement_resume" if request.resume else "implement"
        stage_cmd = get_stage_command(
            self.config,
            stage,
            {"prompt": request.prompt, "worktree": str(request.worktree)},
        )

        env = os.environ.copy()
        env.update(request.env)

        log_file.parent.mkdir(parents=True, exist_ok=True)
        log_handle = open(log_file, "w")
        logger.info(f"[AGENT] Starting {stage}: {stage_cmd.cmd[0]} in {request.worktree}")
        try:
            proc = subprocess.Popen(
                stage_cmd.cmd,
                cwd=str(request.worktree),
                env=env,
                stdin=subprocess.PIPE if stage_cmd.prompt_via_stdin else subprocess.DEVNULL,
                stdout=log_handle,
                stderr=subprocess.STDOUT,
                text=True,
                start_new_session=True,
            )
        finally:
            log_handle.close()

        if stage_cmd.prompt_via_stdin:
            try:
                proc.stdin.write(request.prompt)
            except BrokenPipeError:
                logger.warning("[AGENT] Agent closed stdin before reading the prompt")
            finally:
                try:
                    proc.stdin.close()
                except BrokenPipeError:
                    pass

        return AgentProcess(proc, log_file, request.session_dir)
