"""
Workspace session records.

Each session lives in ``<state_dir>/sessions/<id>/``:
  meta.env         KEY="value" metadata (schema-validated on every write)
  transcript.json  initial instructions + latest agent summary
  kill_requested   marker file written by an operator kill
"""

import json
from dataclasses import dataclass, field
from datetime import datetime, timezone
from enum import Enum
from pathlib import Path
from typing import Optional

from storyloop.git.diff import FileStat
from storyloop.lib import envparse
from storyloop.lib.validate import validate, validate_before_write
from storyloop.runner.locking import meta_lock

META_FILE = "meta.env"
TRANSCRIPT_FILE = "transcript.json"
KILL_MARKER = "kill_requested"


class ExecutionStatus(Enum):
    RUNNING = "running"
    COMPLETED = "completed"
    FAILED = "failed"
    KILLED = "killed"

    @property
    def is_terminal(self) -> bool:
        return self is not ExecutionStatus.RUNNING


class Resolution(Enum):
    UNRESOLVED = "unresolved"
    MERGED = "merged"
    DISCARDED = "discarded"


class Strategy(Enum):
    MERGE = "merge"
    DISCARD = "discard"

    @classmethod
    def parse(cls, value) -> "Strategy":
        """Accept a Strategy or its string value; anything else is a ValueError."""
        if isinstance(value, cls):
            return value
        for strategy in cls:
            if strategy.value == value:
                return strategy
        raise ValueError(f"Invalid strategy '{value}' (expected 'merge' or 'discard')")


def now_iso() -> str:
    return datetime.now(timezone.utc).isoformat()


def parse_iso(value: str) -> datetime:
    parsed = datetime.fromisoformat(value)
    if parsed.tzinfo is None:
        parsed = parsed.replace(tzinfo=timezone.utc)
    return parsed


@dataclass
class WorkspaceSession:
    """One isolated sandbox: a worktree on its own branch, bound to a base revision."""
    id: str
    story_id: str
    base_revision: str
    branch: str
    worktree: Path
    target: str
    repo_path: Path
    session_dir: Path
    execution_status: ExecutionStatus = ExecutionStatus.RUNNING
    resolution: Resolution = Resolution.UNRESOLVED
    owner_pid: Optional[int] = None
    created_at: str = field(default_factory=now_iso)
    last_activity: str = field(default_factory=now_iso)
    keep: bool = False
    previous_session: Optional[str] = None
    merge_commit: Optional[str] = None
    resolved_at: Optional[str] = None
    files_changed: Optional[int] = None
    lines_added: Optional[int] = None
    lines_removed: Optional[int] = None

    @property
    def meta_path(self) -> Path:
        return self.session_dir / META_FILE

    @property
    def transcript_path(self) -> Path:
        return self.session_dir / TRANSCRIPT_FILE

    @property
    def is_resolved(self) -> bool:
        return self.resolution is not Resolution.UNRESOLVED

    def to_meta(self) -> dict:
        def opt(value):
            return None if value is None else str(value)

        return {
            "ID": self.id,
            "STORY_ID": self.story_id,
            "BASE_REVISION": self.base_revision,
            "BRANCH": self.branch,
            "WORKTREE": str(self.worktree),
            "TARGET": self.target,
            "REPO_PATH": str(self.repo_path),
            "EXECUTION_STATUS": self.execution_status.value,
            "RESOLUTION": self.resolution.value,
            "OWNER_PID": opt(self.owner_pid),
            "CREATED_AT": self.created_at,
            "LAST_ACTIVITY": self.last_activity,
            "KEEP": "true" if self.keep else "false",
            "PREVIOUS_SESSION": self.previous_session,
            "MERGE_COMMIT": self.merge_commit,
            "RESOLVED_AT": self.resolved_at,
            "FILES_CHANGED": opt(self.files_changed),
            "LINES_ADDED": opt(self.lines_added),
            "LINES_REMOVED": opt(self.lines_removed),
        }

    @classmethod
    def from_meta(cls, session_dir: Path, meta: dict) -> "WorkspaceSession":
        def opt_int(key):
            value = meta.get(key)
            return int(value) if value else None

        return cls(
            id=meta["ID"],
            story_id=meta["STORY_ID"],
            base_revision=meta["BASE_REVISION"],
            branch=meta["BRANCH"],
            worktree=Path(meta["WORKTREE"]),
            target=meta["TARGET"],
            repo_path=Path(meta["REPO_PATH"]),
            session_dir=session_dir,
            execution_status=ExecutionStatus(meta["EXECUTION_STATUS"]),
            resolution=Resolution(meta["RESOLUTION"]),
            owner_pid=opt_int("OWNER_PID"),
            created_at=meta["CREATED_AT"],
            last_activity=meta["LAST_ACTIVITY"],
            keep=meta.get("KEEP", "false") == "true",
            previous_session=meta.get("PREVIOUS_SESSION"),
            merge_commit=meta.get("MERGE_COMMIT"),
            resolved_at=meta.get("RESOLVED_AT"),
            files_changed=opt_int("FILES_CHANGED"),
            lines_added=opt_int("LINES_ADDED"),
            lines_removed=opt_int("LINES_REMOVED"),
        )


@dataclass
class Transcript:
    instructions: str
    summary: Optional[str] = None


@dataclass
class SessionStatus:
    execution_status: ExecutionStatus
    files_changed: int
    added: int
    removed: int
    diff_stats: list[FileStat] = field(default_factory=list)


@dataclass
class FileDiff:
    path: str
    added: int
    removed: int
    unified_diff: str


@dataclass
class ResolveResult:
    session_id: str
    strategy: Strategy
    success: bool
    message: str
    merge_commit: Optional[str] = None


def load_session(session_dir: Path) -> WorkspaceSession:
    """Load a session record from its directory. Raises FileNotFoundError if absent."""
    meta = envparse.load_env(str(session_dir / META_FILE))
    validate(meta, "meta")
    return WorkspaceSession.from_meta(session_dir, meta)


def save_session(session: WorkspaceSession) -> None:
    """Write the full session record atomically."""
    meta = {k: v for k, v in session.to_meta().items() if v is not None}
    validate_before_write(meta, "meta", session.meta_path)
    envparse.write_env(session.meta_path, meta)


def update_meta(session_dir: Path, updates: dict) -> dict:
    """Apply key updates to meta.env, validating the merged result first.

    Serialized per session, so concurrent writers (the driving loop, operator
    commands, reclamation) never lose each other's keys.
    """
    meta_path = session_dir / META_FILE
    with meta_lock(session_dir):
        return envparse.update_env(
            meta_path, updates,
            check=lambda merged: validate_before_write(merged, "meta", meta_path),
        )


def load_transcript(session_dir: Path) -> Transcript:
    path = session_dir / TRANSCRIPT_FILE
    data = json.loads(path.read_text())
    validate(data, "transcript")
    return Transcript(instructions=data["instructions"], summary=data.get("summary"))


def save_transcript(session_dir: Path, transcript: Transcript) -> None:
    path = session_dir / TRANSCRIPT_FILE
    data = {
        "instructions": transcript.instructions,
        "summary": transcript.summary,
        "updated_at": now_iso(),
    }
    validate_before_write(data, "transcript", path)
    envparse.atomic_write_text(path, json.dumps(data, indent=2))
