"""Tests for advisory lock keys and the two-layer lock manager."""

from datetime import timedelta

import pytest

from metahub_service.database import utcnow
from metahub_service.errors import BranchCreationInProgressError, BranchDeletionInProgressError
from metahub_service.locks import AdvisoryLockManager, lock_key


class TestLockKey:
    """Tests for lock_key()."""

    def test_deterministic(self):
        assert lock_key("abc:branch-create") == lock_key("abc:branch-create")

    def test_non_negative(self):
        for value in ["", "a", "metahub:branch-create", "x" * 500]:
            assert lock_key(value) >= 0

    def test_fits_32_bits(self):
        assert lock_key("z" * 1000) <= 2**31

    def test_dashes_ignored(self):
        """UUIDs with and without dashes map to the same key."""
        dashed = "3f2b9c0e-1d4a-4b7e-9a8c-6d5e4f3a2b1c:branch-create"
        compact = "3f2b9c0e1d4a4b7e9a8c6d5e4f3a2b1c:branchcreate"
        assert lock_key(dashed) == lock_key(compact)

    def test_known_value(self):
        """Classic 31-multiplier string hash."""
        assert lock_key("a") == 97
        assert lock_key("ab") == 97 * 31 + 98

    def test_different_scopes_differ(self):
        assert lock_key("m1:branch-create") != lock_key("m1:initial-branch")


class TestAdvisoryLockManager:
    """Tests for try_acquire/release across manager instances."""

    def test_acquire_and_release(self, metadata_db):
        locks = AdvisoryLockManager(metadata_db)
        key = lock_key("hub:branch-create")

        assert locks.try_acquire(key) is True
        assert locks.is_locked(key) is True

        locks.release(key)
        assert locks.is_locked(key) is False

    def test_second_acquire_fails_fast(self, metadata_db):
        locks = AdvisoryLockManager(metadata_db)
        key = lock_key("hub:branch-create")

        assert locks.try_acquire(key) is True
        assert locks.try_acquire(key) is False
        locks.release(key)
        assert locks.try_acquire(key) is True
        locks.release(key)

    def test_store_row_blocks_other_manager(self, metadata_db):
        """A second manager (another process) sees the lock row."""
        first = AdvisoryLockManager(metadata_db)
        second = AdvisoryLockManager(metadata_db)
        key = lock_key("hub:branch-create")

        assert first.try_acquire(key, owner="worker-1") is True
        assert second.try_acquire(key, owner="worker-2") is False

        first.release(key)
        assert second.try_acquire(key, owner="worker-2") is True
        second.release(key)

    def test_independent_keys(self, metadata_db):
        locks = AdvisoryLockManager(metadata_db)
        a = lock_key("hub-a:branch-create")
        b = lock_key("hub-b:branch-create")

        assert locks.try_acquire(a) is True
        assert locks.try_acquire(b) is True
        locks.release(a)
        locks.release(b)

    def test_stale_lock_reclaimed(self, metadata_db, monkeypatch):
        """Rows older than lock_stale_after_seconds are taken over."""
        from metahub_service.config import settings

        monkeypatch.setattr(settings, "lock_stale_after_seconds", 60)
        key = lock_key("hub:branch-create")
        metadata_db.execute_write(
            "INSERT INTO advisory_locks (lock_key, owner, acquired_at) VALUES (?, ?, ?)",
            [key, "dead-worker", utcnow() - timedelta(seconds=600)],
        )

        locks = AdvisoryLockManager(metadata_db)
        assert locks.try_acquire(key, owner="new-worker") is True

        row = metadata_db.execute_one(
            "SELECT owner FROM advisory_locks WHERE lock_key = ?", [key]
        )
        assert row[0] == "new-worker"
        locks.release(key)

    def test_fresh_foreign_lock_not_reclaimed(self, metadata_db):
        key = lock_key("hub:branch-create")
        metadata_db.execute_write(
            "INSERT INTO advisory_locks (lock_key, owner, acquired_at) VALUES (?, ?, ?)",
            [key, "live-worker", utcnow()],
        )

        locks = AdvisoryLockManager(metadata_db)
        assert locks.try_acquire(key) is False
        assert locks._locks == {}

    def test_release_unheld_is_harmless(self, metadata_db):
        locks = AdvisoryLockManager(metadata_db)
        locks.release(lock_key("never-taken"))

    def test_hold_raises_error_when_busy(self, metadata_db):
        locks = AdvisoryLockManager(metadata_db)
        key = lock_key("hub:branch-create")

        with locks.hold(key, BranchCreationInProgressError):
            with pytest.raises(BranchCreationInProgressError):
                with locks.hold(key, BranchCreationInProgressError):
                    pass

        assert locks.is_locked(key) is False

    def test_hold_releases_on_exception(self, metadata_db):
        locks = AdvisoryLockManager(metadata_db)
        key = lock_key("hub:branch-create")

        with pytest.raises(RuntimeError):
            with locks.hold(key, BranchCreationInProgressError):
                raise RuntimeError("boom")

        assert locks.is_locked(key) is False

    def test_released_keys_are_forgotten(self, metadata_db):
        locks = AdvisoryLockManager(metadata_db)

        for n in range(20):
            with locks.hold(lock_key(f"hub:branch-{n}:branch-delete"), BranchDeletionInProgressError):
                pass
        busy = lock_key("hub:branch-create")
        locks.try_acquire(busy)

        assert list(locks._locks) == [busy]
        locks.release(busy)
        assert locks._locks == {}
