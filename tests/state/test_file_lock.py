"""Tests for the file lock manager."""

import logging
import threading

import pytest

from converge.state.lock import FileLockManager
from converge.utils.errors import AlreadyLocked, InvalidToken, LockError
from converge.utils.logging import LogContext

IDENTITY = "lab-default"


class TestFileLockManager:
    """Test lock acquire, release and force release."""

    def test_acquire_and_release(self, lock_manager):
        """Test a lock can be taken and given back."""
        lock = lock_manager.acquire(IDENTITY, "tester@localhost", "plan")

        current = lock_manager.get(IDENTITY)
        assert current.lock_id == lock.lock_id
        assert current.holder == "tester@localhost"
        assert current.operation == "plan"

        lock_manager.release(lock)
        assert lock_manager.get(IDENTITY) is None

    def test_second_acquire_fails(self, lock_manager):
        """Test a held lock reports its holder."""
        held = lock_manager.acquire(IDENTITY, "first@host")

        with pytest.raises(AlreadyLocked) as exc_info:
            lock_manager.acquire(IDENTITY, "second@host")

        assert exc_info.value.lock_id == held.lock_id
        assert exc_info.value.holder == "first@host"
        assert held.lock_id in exc_info.value.to_user_message()

    def test_identities_lock_independently(self, lock_manager):
        """Test locks on different identities do not interfere."""
        lock_manager.acquire("lab-default", "tester@localhost")

        assert lock_manager.acquire("lab-prod", "tester@localhost").identity == "lab-prod"

    def test_release_with_wrong_token(self, lock_manager):
        """Test only the holder's token releases the lock."""
        held = lock_manager.acquire(IDENTITY, "first@host")
        lock_manager.release(held)
        other = lock_manager.acquire(IDENTITY, "second@host")

        with pytest.raises(InvalidToken):
            lock_manager.release(held)

        assert lock_manager.get(IDENTITY).lock_id == other.lock_id

    def test_release_when_unlocked_is_noop(self, lock_manager):
        """Test releasing twice does not fail."""
        held = lock_manager.acquire(IDENTITY, "tester@localhost")
        lock_manager.release(held)

        lock_manager.release(held)

    def test_verify(self, lock_manager):
        """Test verify accepts only the current lock."""
        held = lock_manager.acquire(IDENTITY, "tester@localhost")
        lock_manager.verify(held)

        lock_manager.release(held)
        with pytest.raises(InvalidToken):
            lock_manager.verify(held)

    def test_force_release(self, lock_manager):
        """Test force release removes any lock and returns it."""
        held = lock_manager.acquire(IDENTITY, "crashed@host")

        removed = lock_manager.force_release(IDENTITY)

        assert removed.lock_id == held.lock_id
        assert lock_manager.get(IDENTITY) is None
        assert lock_manager.force_release(IDENTITY) is None

    def test_force_release_audit_inside_run_context(self, lock_manager, caplog):
        """Test the audit record is written while another identity context is active."""
        held = lock_manager.acquire(IDENTITY, "crashed@host")

        with caplog.at_level(logging.WARNING, logger="converge.state.lock"):
            with LogContext(logging.getLogger("converge"), identity="lab-other"):
                lock_manager.force_release(IDENTITY)

        record = next(r for r in caplog.records if getattr(r, "audit", False))
        assert record.identity == IDENTITY
        assert record.lock_id == held.lock_id
        assert record.holder == "crashed@host"

    def test_unreadable_record(self, lock_manager, tmp_path):
        """Test a corrupt lock record blocks until force-released."""
        (tmp_path / "locks").mkdir(parents=True, exist_ok=True)
        (tmp_path / "locks" / f"{IDENTITY}.lock.json").write_text("garbage")

        with pytest.raises(LockError):
            lock_manager.acquire(IDENTITY, "tester@localhost")

        assert lock_manager.force_release(IDENTITY) is None
        assert lock_manager.acquire(IDENTITY, "tester@localhost").identity == IDENTITY

    def test_concurrent_acquire_has_one_winner(self, tmp_path):
        """Test racing threads with separate managers see exactly one winner."""
        managers = [FileLockManager(str(tmp_path / "shared")) for _ in range(8)]
        barrier = threading.Barrier(len(managers))
        winners = []
        losers = []

        def contend(manager, n):
            barrier.wait()
            try:
                winners.append(manager.acquire(IDENTITY, f"worker-{n}"))
            except AlreadyLocked:
                losers.append(n)

        threads = [threading.Thread(target=contend, args=(m, n)) for n, m in enumerate(managers)]
        for thread in threads:
            thread.start()
        for thread in threads:
            thread.join()

        assert len(winners) == 1
        assert len(losers) == len(managers) - 1
        assert managers[0].get(IDENTITY).lock_id == winners[0].lock_id
