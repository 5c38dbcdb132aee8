"""Tests for storyloop.runner.locking module."""

import pytest

from storyloop.runner import locking
from storyloop.runner.locking import (
    LockTimeout,
    plan_lock,
    target_lock,
    session_lock,
    try_session_lock,
    meta_lock,
)


class TestPlanLock:
    """Test the plan document lock."""

    def test_lock_file_sits_beside_plan(self, tmp_path):
        plan = tmp_path / "plan.json"
        with plan_lock(plan):
            assert (tmp_path / "plan.json.lock").exists()

    def test_second_holder_times_out(self, tmp_path, monkeypatch):
        monkeypatch.setattr(locking, "LOCK_POLL_INTERVAL", 0.01)
        plan = tmp_path / "plan.json"
        with plan_lock(plan):
            with pytest.raises(LockTimeout, match="plan lock"):
                with plan_lock(plan, timeout=0.05):
                    pass

    def test_released_after_exit(self, tmp_path):
        plan = tmp_path / "plan.json"
        with plan_lock(plan):
            pass
        with plan_lock(plan, timeout=0):
            pass


class TestTargetLock:
    """Test per-target merge locks."""

    def test_slash_in_branch_is_flattened(self, tmp_path):
        with target_lock(tmp_path, "feature/x"):
            assert (tmp_path / "locks" / "targets" / "feature__x.lock").exists()

    def test_distinct_targets_do_not_block(self, tmp_path):
        with target_lock(tmp_path, "main"):
            with target_lock(tmp_path, "develop", timeout=0):
                pass


class TestSessionLock:
    """Test per-session locks."""

    def test_try_lock_reports_holder(self, tmp_path):
        with session_lock(tmp_path, "abc123"):
            with try_session_lock(tmp_path, "abc123") as acquired:
                assert acquired is False
        with try_session_lock(tmp_path, "abc123") as acquired:
            assert acquired is True

    def test_try_lock_acquires_when_free(self, tmp_path, monkeypatch):
        monkeypatch.setattr(locking, "LOCK_POLL_INTERVAL", 0.01)
        with try_session_lock(tmp_path, "abc123") as acquired:
            assert acquired is True
            with pytest.raises(LockTimeout):
                with session_lock(tmp_path, "abc123", timeout=0.05):
                    pass


class TestMetaLock:
    """Test the meta.env update lock."""

    def test_independent_of_session_lock(self, tmp_path):
        session_dir = tmp_path / "sessions" / "abc123"
        with session_lock(tmp_path, "abc123", timeout=0.05):
            with meta_lock(session_dir, timeout=0.05):
                assert (session_dir / "meta.lock").exists()

    def test_second_holder_times_out(self, tmp_path, monkeypatch):
        monkeypatch.setattr(locking, "LOCK_POLL_INTERVAL", 0.01)
        with meta_lock(tmp_path):
            with pytest.raises(LockTimeout):
                with meta_lock(tmp_path, timeout=0.05):
                    pass
