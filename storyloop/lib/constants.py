"""Shared constants for storyloop."""

import re

# Session IDs are short hex tokens
SESSION_ID_PATTERN = re.compile(r'^[0-9a-f]{12}$')

BRANCH_PREFIX = "storyloop"

# Exit codes
EXIT_SUCCESS = 0
EXIT_ERROR = 1
EXIT_NOT_FOUND = 2
EXIT_PAUSED = 3
EXIT_INVALID_STATE = 4
EXIT_CONFLICT = 5
EXIT_RESOURCE_EXHAUSTED = 6

# Env vars exported to the agent process
ENV_PLAN_ID = "STORYLOOP_PLAN_ID"
ENV_STORY_ID = "STORYLOOP_STORY_ID"
ENV_SESSION_ID = "STORYLOOP_SESSION_ID"
ENV_SESSION_DIR = "STORYLOOP_SESSION_DIR"
ENV_PROJECT_DIR = "STORYLOOP_PROJECT_DIR"
