"""
Workspace session manager.

Creates, monitors, and resolves workspace sessions. A session is a git
worktree on its own branch under ``<state_dir>/worktrees/<id>``, recorded in
``<state_dir>/sessions/<id>/``. Callers hold only the session id; every
mutation goes through this manager.

Merges are all-or-nothing: the merge is built in a throwaway detached
worktree at the target head, and the target ref only moves (compare-and-swap)
once a merge commit exists. A conflicting merge leaves the target untouched.
"""

import errno
import logging
import os
import re
import shutil
import uuid
from dataclasses import dataclass, field
from datetime import datetime, timezone
from pathlib import Path
from typing import Optional

from storyloop import git
from storyloop.lib.config import ProjectConfig, ProjectProfile
from storyloop.lib.constants import BRANCH_PREFIX, SESSION_ID_PATTERN
from storyloop.lib.errors import (
    AlreadyResolvedError,
    ConflictError,
    InvariantError,
    NotFoundError,
    ResourceExhaustedError,
    StoryloopError,
)
from storyloop.lib.validate import ValidationError
from storyloop.runner.locking import session_lock, target_lock, try_session_lock
from storyloop.workspace.fsm import execution_fsm, resolution_fsm
from storyloop.workspace.session import (
    KILL_MARKER,
    META_FILE,
    ExecutionStatus,
    FileDiff,
    Resolution,
    ResolveResult,
    SessionStatus,
    Strategy,
    Transcript,
    WorkspaceSession,
    load_session,
    load_transcript,
    now_iso,
    parse_iso,
    save_session,
    save_transcript,
    update_meta,
)

logger = logging.getLogger(__name__)

RESOURCE_ERRNOS = {errno.ENOSPC, errno.EDQUOT, errno.EMFILE, errno.ENFILE}
RESOURCE_MESSAGES = ("No space left", "Disk quota exceeded", "Too many open files")


@dataclass
class ReclaimReport:
    """What a reclamation pass did."""
    discarded: list[tuple[str, str]] = field(default_factory=list)   # (session_id, reason)
    skipped: list[tuple[str, str]] = field(default_factory=list)     # (session_id, reason)
    removed_dirs: list[str] = field(default_factory=list)
    torn_down: list[str] = field(default_factory=list)         # resolved sessions with leftovers
    disabled: bool = False


def _slug(value: str) -> str:
    slug = re.sub(r"[^a-z0-9]+", "-", value.lower()).strip("-")
    return slug or "story"


def pid_alive(pid: int) -> bool:
    try:
        os.kill(pid, 0)
    except ProcessLookupError:
        return False
    except PermissionError:
        return True
    return True


def _is_resource_error(exc: OSError) -> bool:
    return exc.errno in RESOURCE_ERRNOS


def _is_resource_message(stderr: str) -> bool:
    return any(msg in stderr for msg in RESOURCE_MESSAGES)


class WorkspaceSessionManager:
    """Owns every workspace session of one project."""

    def __init__(self, project: ProjectConfig, profile: ProjectProfile | None = None):
        self.project = project
        self.profile = profile or ProjectProfile.default()
        self.repo_path = project.repo_path
        self.state_dir = project.state_dir

    # ------------------------------------------------------------------
    # Lookup
    # ------------------------------------------------------------------

    def _session_dir(self, session_id: str) -> Path:
        return self.project.sessions_dir / session_id

    def get(self, session_id: str) -> WorkspaceSession:
        """Load a session record. Raises NotFoundError for unknown ids."""
        if not SESSION_ID_PATTERN.match(session_id or ""):
            raise NotFoundError("session", str(session_id))
        session_dir = self._session_dir(session_id)
        if not (session_dir / META_FILE).exists():
            raise NotFoundError("session", session_id)
        return load_session(session_dir)

    def list_sessions(self) -> list[WorkspaceSession]:
        """All recorded sessions, oldest first."""
        sessions_dir = self.project.sessions_dir
        if not sessions_dir.exists():
            return []

        sessions = []
        for d in sorted(sessions_dir.iterdir()):
            if not (d / META_FILE).exists():
                continue
            try:
                sessions.append(load_session(d))
            except (ValueError, KeyError, ValidationError) as e:
                logger.warning(f"[SESSION] Skipping unreadable session record {d.name}: {e}")
        return sorted(sessions, key=lambda s: s.created_at)

    def find_latest_for_story(self, story_id: str, unresolved_only: bool = True) -> Optional[WorkspaceSession]:
        """Most recently created session for a story."""
        candidates = [
            s for s in self.list_sessions()
            if s.story_id == story_id and (not unresolved_only or not s.is_resolved)
        ]
        return candidates[-1] if candidates else None

    # ------------------------------------------------------------------
    # Creation
    # ------------------------------------------------------------------

    def _check_capacity(self) -> None:
        live = [s for s in self.list_sessions() if not s.is_resolved]
        if len(live) >= self.profile.max_sessions:
            raise ResourceExhaustedError(
                f"{len(live)} live sessions already exist (MAX_SESSIONS={self.profile.max_sessions})"
            )

        self.state_dir.mkdir(parents=True, exist_ok=True)
        free_mb = shutil.disk_usage(self.state_dir).free // (1024 * 1024)
        if free_mb < self.profile.min_free_mb:
            raise ResourceExhaustedError(
                f"Only {free_mb}MB free under {self.state_dir} (MIN_FREE_MB={self.profile.min_free_mb})"
            )

    def open(
        self,
        base_revision: str,
        instructions: str,
        story_id: str,
        target: str | None = None,
        previous_session: str | None = None,
    ) -> str:
        """Allocate a worktree on a new branch at base_revision and return the session id.

        Raises:
            NotFoundError: base_revision does not resolve to a commit
            ResourceExhaustedError: session limit, low disk, or the host refused
                to create the worktree
        """
        base_sha = git.get_commit_sha(self.repo_path, base_revision)
        if base_sha is None:
            raise NotFoundError("revision", base_revision)

        self._check_capacity()

        session_id = uuid.uuid4().hex[:12]
        branch = f"{BRANCH_PREFIX}/{_slug(story_id)}-{session_id[:8]}"
        worktree = self.project.worktrees_dir / session_id
        session_dir = self._session_dir(session_id)
        target = target or self.project.target_branch

        try:
            session_dir.mkdir(parents=True)
            worktree.parent.mkdir(parents=True, exist_ok=True)
        except OSError as e:
            shutil.rmtree(session_dir, ignore_errors=True)
            if _is_resource_error(e):
                raise ResourceExhaustedError(f"Cannot create session directory: {e}") from e
            raise

        result = git.add_worktree(self.repo_path, worktree, branch, base_sha)
        if not result.success:
            self._rollback_open(session_dir, worktree, branch)
            if _is_resource_message(result.stderr):
                raise ResourceExhaustedError(f"Cannot create worktree: {result.stderr.strip()}")
            raise StoryloopError(f"Failed to create worktree: {result.stderr.strip()}")

        session = WorkspaceSession(
            id=session_id,
            story_id=story_id,
            base_revision=base_sha,
            branch=branch,
            worktree=worktree,
            target=target,
            repo_path=self.repo_path,
            session_dir=session_dir,
            owner_pid=os.getpid(),
            previous_session=previous_session,
        )
        try:
            save_session(session)
            save_transcript(session_dir, Transcript(instructions=instructions))
        except OSError as e:
            self._rollback_open(session_dir, worktree, branch)
            if _is_resource_error(e):
                raise ResourceExhaustedError(f"Cannot record session: {e}") from e
            raise
        except Exception:
            self._rollback_open(session_dir, worktree, branch)
            raise

        logger.info(f"[SESSION] Opened {session_id} for {story_id} at {base_sha[:8]} ({branch})")
        return session_id

    def _rollback_open(self, session_dir: Path, worktree: Path, branch: str) -> None:
        logger.warning(f"[SESSION] Rolling back partial session {session_dir.name}")
        self._remove_worktree(worktree)
        if git.branch_exists(self.repo_path, branch):
            git.delete_branch(self.repo_path, branch)
        shutil.rmtree(session_dir, ignore_errors=True)

    # ------------------------------------------------------------------
    # Queries
    # ------------------------------------------------------------------

    def status(self, session_id: str) -> SessionStatus:
        """Execution status plus diff stats, read from the live worktree when it exists."""
        session = self.get(session_id)

        if session.is_resolved and session.files_changed is not None:
            return SessionStatus(
                execution_status=session.execution_status,
                files_changed=session.files_changed,
                added=session.lines_added or 0,
                removed=session.lines_removed or 0,
            )

        stats = self._current_stats(session)
        return SessionStatus(
            execution_status=session.execution_status,
            files_changed=len(stats),
            added=sum(s.added for s in stats),
            removed=sum(s.removed for s in stats),
            diff_stats=stats,
        )

    def _current_stats(self, session: WorkspaceSession) -> list[git.FileStat]:
        if session.worktree.exists():
            return git.get_worktree_numstat(session.worktree, session.base_revision)
        if git.branch_exists(self.repo_path, session.branch):
            return git.get_ref_numstat(self.repo_path, session.base_revision, session.branch)
        return []

    def transcript(self, session_id: str) -> Transcript:
        session = self.get(session_id)
        return load_transcript(session.session_dir)

    def diff(self, session_id: str) -> list[FileDiff]:
        """Per-file unified diffs of the session's changes against its base revision."""
        session = self.get(session_id)
        if session.worktree.exists():
            pairs = git.get_worktree_patches(session.worktree, session.base_revision)
        elif git.branch_exists(self.repo_path, session.branch):
            pairs = git.get_ref_patches(self.repo_path, session.base_revision, session.branch)
        elif session.merge_commit:
            # Merged and torn down: the second parent is the session head
            pairs = git.get_ref_patches(self.repo_path, session.base_revision, f"{session.merge_commit}^2")
        else:
            pairs = []
        return [
            FileDiff(path=stat.path, added=stat.added, removed=stat.removed, unified_diff=patch)
            for stat, patch in pairs
        ]

    # ------------------------------------------------------------------
    # Execution lifecycle
    # ------------------------------------------------------------------

    def record_summary(self, session_id: str, summary: str) -> None:
        session = self.get(session_id)
        transcript = load_transcript(session.session_dir)
        transcript.summary = summary
        save_transcript(session.session_dir, transcript)
        self.touch(session_id)

    def finish(self, session_id: str, status: ExecutionStatus | str) -> None:
        """Drive running -> completed|failed|killed. Raises InvariantError otherwise."""
        status = ExecutionStatus(status)
        session = self.get(session_id)
        execution_fsm(session.session_dir).transition_to(status.value)

    def request_kill(self, session_id: str) -> None:
        """Ask the owner of a running session to stop it."""
        session = self.get(session_id)
        if session.execution_status is not ExecutionStatus.RUNNING:
            raise InvariantError(
                f"Session {session_id} is {session.execution_status.value}, not running"
            )
        (session.session_dir / KILL_MARKER).write_text(now_iso() + "\n")
        logger.info(f"[SESSION] Kill requested for {session_id}")

    def kill_requested(self, session_id: str) -> bool:
        return (self._session_dir(session_id) / KILL_MARKER).exists()

    def touch(self, session_id: str) -> None:
        """Record activity so the session is not reclaimed as expired."""
        update_meta(self._session_dir(session_id), {"LAST_ACTIVITY": now_iso()})

    def adopt(self, session_id: str) -> WorkspaceSession:
        """Claim ownership of a session for the current process."""
        self.get(session_id)
        update_meta(self._session_dir(session_id), {"OWNER_PID": os.getpid(), "LAST_ACTIVITY": now_iso()})
        logger.info(f"[SESSION] Adopted {session_id} (pid {os.getpid()})")
        return self.get(session_id)

    def set_keep(self, session_id: str, keep: bool) -> None:
        """Opt a session in or out of reclamation."""
        self.get(session_id)
        update_meta(self._session_dir(session_id), {"KEEP": "true" if keep else "false"})

    def snapshot(self, session_id: str) -> str:
        """Commit any working changes on the session branch and return the head revision."""
        session = self.get(session_id)
        if not session.worktree.exists():
            sha = git.get_commit_sha(self.repo_path, f"refs/heads/{session.branch}")
            if sha is None:
                raise InvariantError(f"Session {session_id} has no worktree or branch left")
            return sha

        staged = git.stage_all(session.worktree)
        if not staged.success:
            raise StoryloopError(f"git add failed in {session.worktree}: {staged.stderr.strip()}")
        if git.has_staged_changes(session.worktree):
            result = git.commit(session.worktree, f"storyloop: snapshot of session {session_id} ({session.story_id})")
            if not result.success:
                raise StoryloopError(f"Snapshot commit failed: {result.stderr.strip()}")

        sha = git.get_commit_sha(session.worktree)
        logger.debug(f"[SESSION] Snapshot {session_id} at {sha}")
        return sha

    # ------------------------------------------------------------------
    # Resolution
    # ------------------------------------------------------------------

    def resolve(self, session_id: str, strategy: Strategy | str, target: str | None = None) -> ResolveResult:
        """Merge the session onto its target, or discard it.

        Raises:
            ValueError: strategy is neither merge nor discard
            AlreadyResolvedError: the session was already merged, or merge after discard
            InvariantError: merge of a session that is still running
            ConflictError: merge does not apply cleanly (target untouched)
        """
        strategy = Strategy.parse(strategy)
        self.get(session_id)

        with session_lock(self.state_dir, session_id):
            session = self.get(session_id)

            if session.resolution is Resolution.MERGED:
                raise AlreadyResolvedError(session_id, session.resolution.value)

            if strategy is Strategy.DISCARD:
                if session.resolution is Resolution.DISCARDED:
                    return ResolveResult(session_id, strategy, True, "Session already discarded")
                self._discard_locked(session)
                return ResolveResult(session_id, strategy, True, f"Discarded session {session_id}")

            if session.resolution is Resolution.DISCARDED:
                raise AlreadyResolvedError(session_id, session.resolution.value)
            if session.execution_status is ExecutionStatus.RUNNING:
                raise InvariantError(f"Session {session_id} is still running")

            return self._merge_locked(session, target or session.target)

    def _record_final_stats(self, session: WorkspaceSession) -> dict:
        try:
            stats = self._current_stats(session)
        except RuntimeError as e:
            logger.warning(f"[SESSION] Could not compute stats for {session.id}: {e}")
            stats = []
        return {
            "FILES_CHANGED": len(stats),
            "LINES_ADDED": sum(s.added for s in stats),
            "LINES_REMOVED": sum(s.removed for s in stats),
        }

    def _discard_locked(self, session: WorkspaceSession) -> None:
        updates = self._record_final_stats(session)
        updates["RESOLVED_AT"] = now_iso()
        update_meta(session.session_dir, updates)
        resolution_fsm(session.session_dir).transition_to(Resolution.DISCARDED.value)
        (session.session_dir / KILL_MARKER).unlink(missing_ok=True)
        logger.info(f"[SESSION] Discarded {session.id}")
        try:
            self._teardown(session)
        except StoryloopError as e:
            logger.warning(f"[SESSION] Teardown of discarded session {session.id} incomplete: {e}")

    def _merge_locked(self, session: WorkspaceSession, target: str) -> ResolveResult:
        head = self.snapshot(session.id)
        updates = self._record_final_stats(session)

        with target_lock(self.state_dir, target):
            merge_commit = self._integrate(session, head, target)

        self._record_merge(session, target, merge_commit, updates)
        return ResolveResult(
            session.id, Strategy.MERGE, True,
            f"Merged session {session.id} into {target}",
            merge_commit=merge_commit,
        )

    def _record_merge(self, session: WorkspaceSession, target: str, merge_commit: str, updates: dict) -> None:
        """Persist a merge that has reached the target, then tear the session down.

        The record is written before teardown so a crash in between leaves a
        merged session with a leftover worktree, which reclaim removes.
        """
        updates.update({"MERGE_COMMIT": merge_commit, "RESOLVED_AT": now_iso(), "TARGET": target})
        update_meta(session.session_dir, updates)
        resolution_fsm(session.session_dir).transition_to(Resolution.MERGED.value)
        logger.info(f"[SESSION] Merged {session.id} into {target} at {merge_commit[:8]}")
        try:
            self._teardown(session)
        except StoryloopError as e:
            logger.warning(f"[SESSION] Teardown of merged session {session.id} incomplete: {e}")

    def recover_merge(self, session_id: str) -> Optional[ResolveResult]:
        """Finish recording a merge that landed on the target before a crash.

        Applies to a completed, unresolved session whose work is already
        contained in its target: either MERGE_COMMIT was recorded, or the
        session branch holds commits beyond its base that the target now
        contains. Returns None when the session has not landed.
        """
        with session_lock(self.state_dir, session_id):
            session = self.get(session_id)
            if session.is_resolved or session.execution_status is not ExecutionStatus.COMPLETED:
                return None

            target_head = git.get_commit_sha(self.repo_path, f"refs/heads/{session.target}")
            if target_head is None:
                return None

            merge_commit = session.merge_commit
            if merge_commit is None:
                head = git.get_commit_sha(self.repo_path, f"refs/heads/{session.branch}")
                if head is None or head == session.base_revision:
                    return None
                if not git.is_ancestor(self.repo_path, head, target_head):
                    return None
                merge_commit = git.find_merge_of(self.repo_path, head, target_head) or target_head
            elif not git.is_ancestor(self.repo_path, merge_commit, target_head):
                return None

            logger.warning(f"[SESSION] {session_id} already landed on {session.target}, recording the merge")
            self._record_merge(session, session.target, merge_commit, self._record_final_stats(session))
            return ResolveResult(
                session.id, Strategy.MERGE, True,
                f"Recorded earlier merge of session {session.id} into {session.target}",
                merge_commit=merge_commit,
            )

    def _integrate(self, session: WorkspaceSession, head: str, target: str) -> str:
        """Build the merge commit off to the side, then move the target ref.

        Must be called with the target lock held.
        """
        ref = f"refs/heads/{target}"
        old = git.get_commit_sha(self.repo_path, ref)
        if old is None:
            raise NotFoundError("branch", target)

        if git.is_ancestor(self.repo_path, head, old):
            logger.info(f"[SESSION] {session.id}: nothing to merge, {target} already contains {head[:8]}")
            return old

        scratch = self.state_dir / "merges" / f"{session.id}-{uuid.uuid4().hex[:6]}"
        scratch.parent.mkdir(parents=True, exist_ok=True)
        added = git.add_detached_worktree(self.repo_path, scratch, old)
        if not added.success:
            raise StoryloopError(f"Cannot create merge worktree: {added.stderr.strip()}")

        try:
            merged = git.merge_no_commit(scratch, head)
            if not merged.success:
                paths = git.get_conflicted_files(scratch)
                git.abort_merge(scratch)
                if paths:
                    logger.warning(f"[SESSION] {session.id}: merge into {target} conflicts on {len(paths)} path(s)")
                    raise ConflictError(session.id, target, paths)
                raise StoryloopError(f"git merge failed: {(merged.stderr or merged.stdout).strip()}")

            committed = git.commit(scratch, f"Merge workspace branch '{session.branch}' via close")
            if not committed.success:
                git.abort_merge(scratch)
                raise StoryloopError(f"Merge commit failed: {(committed.stderr or committed.stdout).strip()}")
            new = git.get_commit_sha(scratch)
        finally:
            self._remove_worktree(scratch)

        checked_out = git.get_checked_out_worktree(self.repo_path, target)

        moved = git.update_ref(self.repo_path, ref, new, old)
        if not moved.success:
            raise StoryloopError(f"{target} moved during merge, refusing to overwrite: {moved.stderr.strip()}")

        if checked_out is not None:
            synced = git.read_tree_update(checked_out, old, new)
            if not synced.success:
                git.update_ref(self.repo_path, ref, old, new)
                raise StoryloopError(
                    f"Cannot update checked-out {target} at {checked_out}: {synced.stderr.strip()}"
                )

        return new

    def _remove_worktree(self, path: Path) -> None:
        if path.exists():
            result = git.remove_worktree(self.repo_path, path)
            if not result.success:
                logger.debug(f"git worktree remove failed for {path}: {result.stderr.strip()}")
            shutil.rmtree(path, ignore_errors=True)
        git.prune_worktrees(self.repo_path)

    def _teardown(self, session: WorkspaceSession) -> None:
        self._remove_worktree(session.worktree)
        if git.branch_exists(self.repo_path, session.branch):
            result = git.delete_branch(self.repo_path, session.branch)
            if not result.success:
                raise StoryloopError(f"Failed to delete branch {session.branch}: {result.stderr.strip()}")

    # ------------------------------------------------------------------
    # Housekeeping
    # ------------------------------------------------------------------

    def _reclaim_reason(self, session: WorkspaceSession, now: datetime) -> Optional[str]:
        if session.owner_pid is not None and not pid_alive(session.owner_pid):
            return "orphan"
        idle = (now - parse_iso(session.last_activity)).total_seconds()
        if idle > self.profile.session_ttl:
            return "expired"
        return None

    def reclaim(self, now: datetime | None = None) -> ReclaimReport:
        """Discard orphaned and expired sessions and stray worktree directories.

        Sessions marked keep, and sessions whose lock is held (mid-merge),
        are skipped.
        """
        report = ReclaimReport()
        if self.profile.disable_worktree_cleanup or os.environ.get("DISABLE_WORKTREE_CLEANUP"):
            logger.info("[SESSION] Worktree cleanup disabled, skipping reclamation")
            report.disabled = True
            return report

        now = now or datetime.now(timezone.utc)

        for session in self.list_sessions():
            if session.is_resolved:
                if self._finish_teardown(session):
                    report.torn_down.append(session.id)
                continue
            if session.keep:
                report.skipped.append((session.id, "keep"))
                continue
            if self._reclaim_reason(session, now) is None:
                continue

            with try_session_lock(self.state_dir, session.id) as acquired:
                if not acquired:
                    report.skipped.append((session.id, "locked"))
                    continue

                # Re-check under the lock
                session = self.get(session.id)
                reason = self._reclaim_reason(session, now)
                if session.is_resolved or session.keep or reason is None:
                    continue

                if session.execution_status is ExecutionStatus.RUNNING:
                    execution_fsm(session.session_dir).transition_to(ExecutionStatus.KILLED.value)
                self._discard_locked(session)
                report.discarded.append((session.id, reason))
                logger.info(f"[SESSION] Reclaimed {session.id} ({reason})")

        report.removed_dirs = self._remove_stray_worktrees()
        git.prune_worktrees(self.repo_path)
        return report

    def _finish_teardown(self, session: WorkspaceSession) -> bool:
        """Remove the worktree and branch a resolved session left behind."""
        if not session.worktree.exists() and not git.branch_exists(self.repo_path, session.branch):
            return False
        with try_session_lock(self.state_dir, session.id) as acquired:
            if not acquired:
                return False
            try:
                self._teardown(session)
            except StoryloopError as e:
                logger.warning(f"[SESSION] Could not tear down {session.id}: {e}")
                return False
        logger.info(f"[SESSION] Finished teardown of {session.resolution.value} session {session.id}")
        return True

    def _remove_stray_worktrees(self) -> list[str]:
        """Remove worktree directories that have no session record."""
        worktrees_dir = self.project.worktrees_dir
        if not worktrees_dir.exists():
            return []

        removed = []
        for d in sorted(worktrees_dir.iterdir()):
            if not d.is_dir():
                continue
            if (self._session_dir(d.name) / META_FILE).exists():
                continue
            self._remove_worktree(d)
            removed.append(d.name)
            logger.info(f"[SESSION] Removed stray worktree directory {d}")
        return removed
