"""
Desktop notifications for storyloop.

Sent through notify-send when it is on PATH, so any freedesktop
notification daemon (mako, dunst, GNOME, KDE) shows them. Loop outcomes
never depend on a notification being delivered.
"""

import logging
import shutil
import subprocess

logger = logging.getLogger(__name__)

APP_NAME = "storyloop"
URGENCIES = ("low", "normal", "critical")
MAX_BODY_LENGTH = 200


def _truncate(text: str) -> str:
    if len(text) > MAX_BODY_LENGTH:
        return text[:MAX_BODY_LENGTH] + "..."
    return text


def notify(title: str, body: str, urgency: str = "normal") -> bool:
    """Show a desktop notification. Returns True if notify-send accepted it."""
    if urgency not in URGENCIES:
        logger.warning(f"Unknown urgency '{urgency}', using 'normal'")
        urgency = "normal"

    binary = shutil.which("notify-send")
    if binary is None:
        logger.debug("notify-send not on PATH, not notifying")
        return False

    cmd = [binary, "--urgency", urgency, "--app-name", APP_NAME, title, _truncate(body)]
    try:
        proc = subprocess.run(cmd, capture_output=True, text=True, timeout=5)
    except (subprocess.TimeoutExpired, OSError) as e:
        logger.warning(f"notify-send did not run: {e}")
        return False

    if proc.returncode != 0:
        logger.warning(f"notify-send exited {proc.returncode}: {proc.stderr.strip()}")
        return False
    return True


def notify_paused(plan_id: str, story_id: str) -> bool:
    """The loop stopped at a checkpoint."""
    return notify(f"{APP_NAME}: {plan_id}", f"Checkpoint after {story_id}, ready for review")


def notify_failed(plan_id: str, story_id: str | None, reason: str) -> bool:
    """The loop halted on a failure."""
    where = f"{story_id}: " if story_id else ""
    return notify(f"{APP_NAME}: {plan_id}", f"Halted at {where}{reason}", "critical")


def notify_complete(plan_id: str) -> bool:
    return notify(f"{APP_NAME}: {plan_id}", "All stories complete", "low")
