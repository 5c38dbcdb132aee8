"""
Run context and directory management for storyloop.
"""

import json
from dataclasses import dataclass, field
from datetime import datetime
from pathlib import Path
from typing import Optional

from storyloop.lib.config import ProjectConfig, ProjectProfile
from storyloop.lib.envparse import atomic_write_text
from storyloop.lib.validate import validate_before_write


@dataclass
class RunContext:
    """Context for a single iteration of the loop."""
    run_id: str
    run_dir: Path
    project: ProjectConfig
    profile: ProjectProfile
    plan_id: str
    story_id: Optional[str] = None
    session_id: Optional[str] = None
    start_time: datetime = field(default_factory=datetime.now)
    states: list = field(default_factory=list)

    @classmethod
    def create(cls, project: ProjectConfig, profile: ProjectProfile, plan_id: str) -> 'RunContext':
        """Create a new run context with fresh run directory."""
        timestamp = datetime.now().strftime("%Y%m%d-%H%M%S-%f")
        run_id = f"{timestamp}_{plan_id}"

        run_dir = project.runs_dir / run_id
        run_dir.mkdir(parents=True, exist_ok=True)

        return cls(
            run_id=run_id,
            run_dir=run_dir,
            project=project,
            profile=profile,
            plan_id=plan_id,
        )

    def log(self, message: str):
        """Append to run log."""
        timestamp = datetime.now().isoformat()
        log_path = self.run_dir / "run.log"
        with open(log_path, "a") as f:
            f.write(f"[{timestamp}] {message}\n")

    def record_state(self, state: str):
        """Record a controller state entered during this run."""
        self.states.append(state)
        self.log(f"state -> {state}")

    def write_result(self, signal: str, reason: str = None,
                     execution_status: str = None, merge_commit: str = None) -> dict:
        """Write result.json and return the written document."""
        end_time = datetime.now()
        duration = (end_time - self.start_time).total_seconds()

        result = {
            "version": 1,
            "plan": self.plan_id,
            "story": self.story_id,
            "session": self.session_id,
            "signal": signal,
            "reason": reason,
            "execution_status": execution_status,
            "merge_commit": merge_commit,
            "timestamps": {
                "started": self.start_time.isoformat(),
                "ended": end_time.isoformat(),
                "duration_seconds": duration,
            },
            "states": self.states,
        }

        result_path = self.run_dir / "result.json"
        validate_before_write(result, "result", result_path)
        atomic_write_text(result_path, json.dumps(result, indent=2))
        return result
