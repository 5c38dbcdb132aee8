"""
Configuration loaders for storyloop.

Loads project and profile configuration from .env files in the project
directory.
"""

import logging
import os
from dataclasses import dataclass
from pathlib import Path

from . import envparse
from .constants import ENV_PROJECT_DIR

logger = logging.getLogger(__name__)


@dataclass
class ProjectConfig:
    """Project-level configuration from project.env"""
    name: str
    project_dir: Path
    repo_path: Path
    target_branch: str
    plan_path: Path
    state_dir: Path

    @property
    def sessions_dir(self) -> Path:
        return self.state_dir / "sessions"

    @property
    def worktrees_dir(self) -> Path:
        return self.state_dir / "worktrees"

    @property
    def runs_dir(self) -> Path:
        return self.state_dir / "runs"


@dataclass
class ProjectProfile:
    """Runtime tuning from project_profile.env"""
    agent_timeout: int = 3600
    poll_interval: float = 2.0
    session_ttl: int = 86400
    max_sessions: int = 8
    min_free_mb: int = 100
    gate_timeout: int = 600
    makefile_path: str = "Makefile"
    quality_gate_targets: tuple = ("test",)
    disable_worktree_cleanup: bool = False
    notifications: bool = True

    @classmethod
    def default(cls) -> "ProjectProfile":
        return cls()


def _flag(value: str) -> bool:
    return value.strip().lower() in ("1", "true", "yes")


def _int(env: dict, key: str, default: int) -> int:
    raw = env.get(key)
    if raw is None or raw == "":
        return default
    try:
        return int(raw)
    except ValueError:
        logger.warning(f"Invalid {key} '{raw}', using {default}")
        return default


def resolve_project_dir(explicit: str | None = None) -> Path:
    """Find the project directory: explicit flag, env var, then cwd."""
    if explicit:
        return Path(explicit).resolve()
    from_env = os.environ.get(ENV_PROJECT_DIR)
    if from_env:
        return Path(from_env).resolve()
    return Path.cwd()


def load_project_config(project_dir: Path) -> ProjectConfig:
    """Load project.env and return ProjectConfig."""
    env = envparse.load_env(str(project_dir / "project.env"))

    repo_path = Path(env["REPO_PATH"])
    if not repo_path.is_absolute():
        repo_path = (project_dir / repo_path).resolve()

    plan_path = Path(env.get("PLAN_PATH", "plan.json"))
    if not plan_path.is_absolute():
        plan_path = project_dir / plan_path

    state_dir = Path(env.get("STATE_DIR", ".storyloop"))
    if not state_dir.is_absolute():
        state_dir = project_dir / state_dir

    return ProjectConfig(
        name=env.get("PROJECT_NAME", project_dir.name),
        project_dir=project_dir,
        repo_path=repo_path,
        target_branch=env.get("TARGET_BRANCH", "main"),
        plan_path=plan_path,
        state_dir=state_dir,
    )


def load_project_profile(project_dir: Path) -> ProjectProfile:
    """Load project_profile.env and return ProjectProfile.

    A missing file yields the defaults.
    """
    profile_path = project_dir / "project_profile.env"
    if not profile_path.exists():
        return ProjectProfile.default()

    env = envparse.load_env(str(profile_path))
    defaults = ProjectProfile.default()

    poll_raw = env.get("POLL_INTERVAL_SECONDS")
    try:
        poll_interval = float(poll_raw) if poll_raw else defaults.poll_interval
    except ValueError:
        logger.warning(f"Invalid POLL_INTERVAL_SECONDS '{poll_raw}', using {defaults.poll_interval}")
        poll_interval = defaults.poll_interval

    targets = env.get("QUALITY_GATE_TARGETS")
    gate_targets = tuple(targets.split()) if targets is not None else defaults.quality_gate_targets

    return ProjectProfile(
        agent_timeout=_int(env, "AGENT_TIMEOUT", defaults.agent_timeout),
        poll_interval=poll_interval,
        session_ttl=_int(env, "SESSION_TTL_SECONDS", defaults.session_ttl),
        max_sessions=_int(env, "MAX_SESSIONS", defaults.max_sessions),
        min_free_mb=_int(env, "MIN_FREE_MB", defaults.min_free_mb),
        gate_timeout=_int(env, "GATE_TIMEOUT", defaults.gate_timeout),
        makefile_path=env.get("MAKEFILE_PATH", defaults.makefile_path),
        quality_gate_targets=gate_targets,
        disable_worktree_cleanup=_flag(env.get("DISABLE_WORKTREE_CLEANUP", "false")),
        notifications=_flag(env.get("NOTIFICATIONS", "true")),
    )
