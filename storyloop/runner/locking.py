"""
Lock management for storyloop.

Uses flock for the plan document lock, per-target merge locks, and
per-session locks shared by resolve and reclamation. meta.env updates
take a separate short-lived lock per session.
"""

import atexit
import fcntl
import os
import signal
import sys
import threading
import time
from contextlib import contextmanager
from pathlib import Path


class LockTimeout(Exception):
    """Lock acquisition timed out."""
    pass


LOCK_POLL_INTERVAL = 0.1


def _lock_name(ref: str) -> str:
    """Flatten a branch name like feature/x into a single path component."""
    return ref.replace("/", "__")


def _install_exit_handlers():
    """Turn SIGTERM/SIGINT into SystemExit so finally blocks release the lock.

    Returns the previous handlers, or None off the main thread where signal
    handlers cannot be installed.
    """
    if threading.current_thread() is not threading.main_thread():
        return None
    original_sigterm = signal.signal(signal.SIGTERM, lambda *_: sys.exit(1))
    original_sigint = signal.signal(signal.SIGINT, lambda *_: sys.exit(1))
    return original_sigterm, original_sigint


def _restore_handlers(originals):
    if originals is None:
        return
    signal.signal(signal.SIGTERM, originals[0])
    signal.signal(signal.SIGINT, originals[1])


@contextmanager
def _acquire_lock(lock_file: Path, timeout: float, lock_name: str, exit_handlers: bool = True):
    """
    Internal helper to acquire a file lock.

    Args:
        lock_file: Path to the lock file
        timeout: Seconds to wait for lock
        lock_name: Human-readable name for error messages
        exit_handlers: Turn SIGTERM/SIGINT into SystemExit while held
    """
    lock_file.parent.mkdir(parents=True, exist_ok=True)

    fd = open(lock_file, 'a')
    start = time.time()

    while True:
        try:
            fcntl.flock(fd, fcntl.LOCK_EX | fcntl.LOCK_NB)
            break
        except BlockingIOError:
            if time.time() - start > timeout:
                fd.close()
                raise LockTimeout(f"Could not acquire {lock_name} within {timeout}s")
            time.sleep(LOCK_POLL_INTERVAL)

    def cleanup():
        try:
            fcntl.flock(fd, fcntl.LOCK_UN)
            fd.close()
        except (OSError, ValueError):
            pass

    atexit.register(cleanup)
    originals = _install_exit_handlers() if exit_handlers else None

    try:
        fd.truncate(0)
        fd.write(f"{os.getpid()}\n")
        fd.flush()
        yield
    finally:
        atexit.unregister(cleanup)
        _restore_handlers(originals)
        cleanup()


@contextmanager
def plan_lock(plan_path: Path, timeout: float = 30):
    """
    Acquire the exclusive plan document lock, yield, release on exit.

    The lock file sits beside the document (plan.json -> plan.json.lock).
    """
    lock_file = plan_path.with_name(plan_path.name + ".lock")
    with _acquire_lock(lock_file, timeout, f"plan lock for {plan_path.name}"):
        yield


@contextmanager
def target_lock(state_dir: Path, target: str, timeout: float = 600):
    """
    Acquire per-target lock, yield, release on exit.

    Serializes merges onto the same target branch.
    """
    lock_file = state_dir / "locks" / "targets" / f"{_lock_name(target)}.lock"
    with _acquire_lock(lock_file, timeout, f"merge lock for {target}"):
        yield


@contextmanager
def session_lock(state_dir: Path, session_id: str, timeout: float = 60):
    """
    Acquire per-session lock, yield, release on exit.

    Held by resolve for its whole duration.
    """
    lock_file = state_dir / "locks" / "sessions" / f"{session_id}.lock"
    with _acquire_lock(lock_file, timeout, f"lock for session {session_id}"):
        yield


@contextmanager
def try_session_lock(state_dir: Path, session_id: str):
    """
    Attempt the per-session lock without waiting.

    Yields True with the lock held, or False if another process holds it.
    """
    lock_file = state_dir / "locks" / "sessions" / f"{session_id}.lock"
    lock_file.parent.mkdir(parents=True, exist_ok=True)

    fd = open(lock_file, 'a')
    try:
        try:
            fcntl.flock(fd, fcntl.LOCK_EX | fcntl.LOCK_NB)
        except BlockingIOError:
            yield False
            return
        try:
            yield True
        finally:
            fcntl.flock(fd, fcntl.LOCK_UN)
    finally:
        fd.close()


@contextmanager
def meta_lock(session_dir: Path, timeout: float = 30):
    """
    Acquire the lock guarding read-modify-write of a session's meta.env.

    Separate from session_lock, which resolve holds while it updates meta.env.
    Held only for the duration of one update, so it leaves signal handlers
    alone.
    """
    lock_file = session_dir / "meta.lock"
    with _acquire_lock(lock_file, timeout, f"meta lock for session {session_dir.name}", exit_handlers=False):
        yield
