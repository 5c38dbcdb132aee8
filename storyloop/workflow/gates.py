"""
Quality gate: runs the project's make targets in a session worktree and
reduces them to pass/fail.
"""

import logging
import subprocess
import time
from dataclasses import dataclass, field
from pathlib import Path
from typing import Optional

from storyloop.lib.config import ProjectProfile

logger = logging.getLogger(__name__)


@dataclass
class GateResult:
    passed: bool
    skipped: bool = False
    failed_target: Optional[str] = None
    exit_code: int = 0
    duration_seconds: float = 0.0
    targets_run: list[str] = field(default_factory=list)

    @property
    def reason(self) -> str:
        if self.skipped:
            return "No Makefile found, gate skipped"
        if self.passed:
            return f"Passed: {', '.join(self.targets_run) or '(no targets)'}"
        if self.exit_code == -1:
            return f"make {self.failed_target} timed out"
        return f"make {self.failed_target} failed (exit {self.exit_code})"


class MakeQualityGate:
    """Runs QUALITY_GATE_TARGETS from MAKEFILE_PATH, stopping at the first failure."""

    def __init__(self, profile: ProjectProfile):
        self.profile = profile

    def run(self, worktree: Path, log_dir: Path | None = None) -> GateResult:
        makefile = worktree / self.profile.makefile_path
        if not makefile.exists():
            logger.info(f"[GATE] No Makefile at {makefile}, skipping quality gate")
            return GateResult(passed=True, skipped=True)

        start = time.time()
        result = GateResult(passed=True)
        for target in self.profile.quality_gate_targets:
            cmd = ["make", "-C", str(worktree), "-f", str(makefile), target]
            logger.info(f"[GATE] Running: {' '.join(cmd)}")
            try:
                proc = subprocess.run(
                    cmd,
                    capture_output=True,
                    text=True,
                    timeout=self.profile.gate_timeout,
                )
                exit_code, stdout, stderr = proc.returncode, proc.stdout, proc.stderr
            except subprocess.TimeoutExpired as e:
                exit_code = -1
                stdout = e.stdout if isinstance(e.stdout, str) else ""
                stderr = f"Timed out after {self.profile.gate_timeout}s"

            if log_dir is not None:
                log_dir.mkdir(parents=True, exist_ok=True)
                (log_dir / f"gate-{target}.log").write_text(
                    f"=== STDOUT ===\n{stdout}\n\n=== STDERR ===\n{stderr}\n"
                )

            result.targets_run.append(target)
            if exit_code != 0:
                result.passed = False
                result.failed_target = target
                result.exit_code = exit_code
                logger.warning(f"[GATE] {result.reason}")
                break

        result.duration_seconds = time.time() - start
        return result
