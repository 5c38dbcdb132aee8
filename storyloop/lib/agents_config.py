"""
Agent command configuration.

The coding agent is an external CLI. ``agents.yaml`` in the project directory
maps each stage to a command template; stages it leaves out keep the
defaults below.

    stages:
      implement: claude --dangerously-skip-permissions -p {prompt}
      implement_resume: claude --dangerously-skip-permissions -p {prompt}

Template variables:
- {prompt}: the iteration instructions. Substituted as a single argument
  when present; otherwise the instructions are written to the agent's stdin.
- {worktree}: the session worktree the agent must work in.

Stages:
- implement: first attempt at a story.
- implement_resume: a later attempt at an interrupted story. Its prompt
  carries the earlier transcript and its worktree already holds the earlier
  attempt's changes.
"""

import logging
import re
import shlex
import shutil
from dataclasses import dataclass, field
from pathlib import Path
from typing import Optional

import yaml

logger = logging.getLogger(__name__)

AGENTS_FILE = "agents.yaml"
AGENT_STAGES = ("implement", "implement_resume")

DEFAULT_STAGE_COMMANDS = {
    "implement": "codex exec --dangerously-bypass-approvals-and-sandbox -C {worktree} {prompt}",
    "implement_resume": "codex exec --dangerously-bypass-approvals-and-sandbox -C {worktree} {prompt}",
}

# Every stage runs inside a session worktree
REQUIRED_VARIABLES = ("worktree",)

_PROMPT_TOKEN = "__STORYLOOP_PROMPT__"
_VARIABLE_PATTERN = re.compile(r"\{(\w+)\}")


@dataclass
class AgentsConfig:
    """Stage name -> command template."""
    stages: dict[str, str] = field(default_factory=lambda: dict(DEFAULT_STAGE_COMMANDS))


def load_agents_config(project_dir: Optional[Path]) -> AgentsConfig:
    """Read agents.yaml from project_dir, falling back to the defaults.

    An unreadable file is logged and ignored rather than stopping the loop
    before it starts.
    """
    if project_dir is None:
        return AgentsConfig()

    path = project_dir / AGENTS_FILE
    if not path.exists():
        return AgentsConfig()

    try:
        data = yaml.safe_load(path.read_text()) or {}
        overrides = data.get("stages") or {}
        stages = dict(DEFAULT_STAGE_COMMANDS)
        stages.update({str(k): str(v) for k, v in overrides.items()})
    except (yaml.YAMLError, AttributeError, TypeError) as e:
        logger.warning(f"Ignoring {path}: {e}")
        return AgentsConfig()
    return AgentsConfig(stages=stages)


@dataclass
class StageCommand:
    """argv for one stage, plus how the prompt reaches the agent."""
    cmd: list[str]
    prompt_via_stdin: bool

    def get_stdin_input(self, prompt: str) -> str | None:
        return prompt if self.prompt_via_stdin else None


def _template(config: AgentsConfig, stage: str) -> str:
    try:
        return config.stages[stage]
    except KeyError:
        raise ValueError(f"Unknown stage: {stage}") from None


def get_stage_command(
    config: AgentsConfig,
    stage: str,
    context: dict[str, str] | None = None,
) -> StageCommand:
    """Expand a stage template into an argv list.

    Non-prompt values are shell-quoted before splitting. The prompt is swapped
    in after splitting so quotes and newlines in it survive untouched.

    Raises:
        ValueError: unknown stage, or a required variable is missing

    Example:
        >>> config = AgentsConfig(stages={"implement": "agent -C {worktree} {prompt}"})
        >>> get_stage_command(config, "implement", {"worktree": "/tmp/ws", "prompt": "do it"}).cmd
        ['agent', '-C', '/tmp/ws', 'do it']
    """
    template = _template(config, stage)
    context = dict(context or {})

    missing = [name for name in REQUIRED_VARIABLES if name not in context]
    if missing:
        raise ValueError(f"Stage '{stage}' is missing required variables: {missing}")

    prompt = context.pop("prompt", None)
    prompt_via_stdin = "{prompt}" not in template
    if prompt is not None:
        template = template.replace("{prompt}", _PROMPT_TOKEN)

    for name, value in context.items():
        template = template.replace(f"{{{name}}}", shlex.quote(str(value)))

    leftover = _VARIABLE_PATTERN.findall(template)
    if leftover:
        logger.error(f"Stage '{stage}' template still has unsubstituted variables {leftover}: {template}")

    argv = shlex.split(template)
    if prompt is not None:
        argv = [prompt if arg == _PROMPT_TOKEN else arg for arg in argv]
    return StageCommand(cmd=argv, prompt_via_stdin=prompt_via_stdin)


def get_stage_binary(config: AgentsConfig, stage: str) -> str:
    """First word of a stage's command template."""
    words = shlex.split(_template(config, stage))
    return words[0] if words else ""


def check_binary_available(binary: str) -> bool:
    return shutil.which(binary) is not None


@dataclass
class BinaryCheckResult:
    ok: bool
    missing_binary: str | None = None
    stages_affected: list[str] = field(default_factory=list)
    error_message: str | None = None


def validate_stage_binaries(config: AgentsConfig, stages=AGENT_STAGES) -> BinaryCheckResult:
    """Fail fast when an agent binary is not installed, before any story is claimed."""
    by_binary: dict[str, list[str]] = {}
    for stage in stages:
        if stage in config.stages:
            by_binary.setdefault(get_stage_binary(config, stage), []).append(stage)

    for binary, affected in by_binary.items():
        if check_binary_available(binary):
            continue
        lines = [
            f"Agent command '{binary}' was not found on PATH (needed by: {', '.join(affected)}).",
            f"Install it, or set another command in {AGENTS_FILE} in the project directory:",
            "",
            "    stages:",
        ]
        lines += [f"      {stage}: claude --dangerously-skip-permissions -p {{prompt}}" for stage in affected]
        return BinaryCheckResult(
            ok=False,
            missing_binary=binary,
            stages_affected=affected,
            error_message="\n".join(lines),
        )

    return BinaryCheckResult(ok=True)
