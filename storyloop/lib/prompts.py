"""
Prompt loader for storyloop.

Loads prompt templates from the package's prompts/ directory and interpolates
variables. Templates use Python str.format() syntax: {variable_name}

HTML comments (<!-- ... -->) are stripped before rendering - use them for
documentation that shouldn't be sent to the agent.
"""

import logging
import re
from functools import lru_cache
from pathlib import Path

logger = logging.getLogger(__name__)

__all__ = [
    "PromptError",
    "load_prompt",
    "render_prompt",
    "build_section",
    "build_iteration_instructions",
    "strip_resume_section",
    "clear_cache",
    "PROMPTS_DIR",
]

_HTML_COMMENT_PATTERN = re.compile(r'<!--.*?-->\s*', re.DOTALL)

# First line of the resume.md section
RESUME_HEADING = "## Resumed Attempt"

PROMPTS_DIR = Path(__file__).resolve().parent.parent / "prompts"


class PromptError(Exception):
    """Raised when prompt loading or rendering fails."""
    pass


@lru_cache(maxsize=32)
def load_prompt(name: str) -> str:
    """
    Load a prompt template by name (cached).

    Raises:
        PromptError: If prompt file doesn't exist
    """
    prompt_path = PROMPTS_DIR / f"{name}.md"

    if not prompt_path.exists():
        raise PromptError(
            f"Prompt template '{name}' not found. "
            f"Expected file: {prompt_path}"
        )

    logger.debug(f"Loading prompt template: {name}")
    content = _HTML_COMMENT_PATTERN.sub('', prompt_path.read_text())
    return content.lstrip()


def render_prompt(name: str, **kwargs) -> str:
    """
    Load and render a prompt template with variables.

    Raises:
        PromptError: If template not found or required variable missing
    """
    template = load_prompt(name)

    try:
        return template.format(**kwargs)
    except KeyError as e:
        raise PromptError(
            f"Missing required variable {e} in prompt '{name}'. "
            f"Provided: {list(kwargs.keys())}"
        ) from e


def build_section(
    content: str | None,
    header: str,
    empty_msg: str | None = None
) -> str:
    """
    Build a markdown section if content exists.

    Returns:
        Formatted section string. Empty string if content is None AND empty_msg is None.
    """
    if content:
        return f"{header}\n\n{content}\n"
    elif empty_msg is not None:
        return f"{header}\n\n{empty_msg}\n"
    else:
        return ""


def strip_resume_section(instructions: str) -> str:
    """Return instructions without any resume section appended to them.

    Resumed instructions embed the previous attempt's instructions, so
    cutting at the first resume heading leaves the original iteration text.
    """
    original, _, _ = instructions.partition(f"\n{RESUME_HEADING}\n")
    return original.rstrip() + "\n"


def build_iteration_instructions(
    plan_prompt: str,
    story_id: str,
    story_title: str,
    previous_session: str | None = None,
    previous_instructions: str | None = None,
    previous_summary: str | None = None,
) -> str:
    """Render the instructions handed to the agent for one attempt.

    When previous_session is given the prior attempt's original instructions
    and its latest summary are carried along so the agent continues the
    interrupted attempt. Earlier resume sections are dropped so the text does
    not grow with every resume.
    """
    resume_section = ""
    if previous_session:
        resume_section = render_prompt(
            "resume",
            previous_session=previous_session,
            previous_instructions=(
                strip_resume_section(previous_instructions).strip()
                if previous_instructions else "(none recorded)"
            ),
            previous_summary=previous_summary or "(no summary was recorded before the interruption)",
        )

    return render_prompt(
        "iteration",
        plan_prompt=plan_prompt or "Implement the current story of this plan.",
        story_id=story_id,
        story_title=story_title or "(untitled)",
        resume_section=resume_section,
    )


def clear_cache():
    """Clear the prompt cache (useful for testing or hot-reload)."""
    load_prompt.cache_clear()
