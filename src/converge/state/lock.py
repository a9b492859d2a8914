"""Lock managers guarding exclusive write access to a state identity.

Locks never expire. A holder that crashes leaves its lock in place until an
operator removes it with ``force_release`` (``converge force-unlock``).
"""

import fcntl
import json
import os
from abc import ABC, abstractmethod
from contextlib import contextmanager
from pathlib import Path
from typing import Iterator, Optional

from .models import LockInfo
from converge.utils.errors import AlreadyLocked, InvalidToken, LockError
from converge.utils.logging import LogContext, get_logger

logger = get_logger(__name__)


class LockManager(ABC):
    """Mutual exclusion keyed by state identity."""

    @abstractmethod
    def acquire(self, identity: str, holder: str, operation: str = "apply") -> LockInfo:
        """Acquire the lock for an identity.

        Args:
            identity: State identity
            holder: Who is taking the lock
            operation: Operation the lock is taken for

        Returns:
            Lock token to pass to release/verify and to the state store

        Raises:
            AlreadyLocked: If a lock is already held
        """

    @abstractmethod
    def get(self, identity: str) -> Optional[LockInfo]:
        """Get the lock currently held for an identity, if any."""

    @abstractmethod
    def release(self, token: LockInfo) -> None:
        """Release a lock.

        Releasing a lock that is no longer held is a no-op.

        Raises:
            InvalidToken: If a different lock is held for the identity
        """

    @abstractmethod
    def force_release(self, identity: str) -> Optional[LockInfo]:
        """Remove whatever lock is held for an identity, bypassing the token check.

        Returns:
            The removed lock, or None if nothing was locked
        """

    def verify(self, token: LockInfo) -> None:
        """Check that a token is the lock currently held for its identity.

        Raises:
            InvalidToken: If the token is not the current lock
        """
        current = self.get(token.identity)
        if current is None or current.lock_id != token.lock_id:
            raise InvalidToken(token.identity, token.lock_id)

    def _audit_force_release(self, lock: Optional[LockInfo], identity: str) -> None:
        # identity as an extra would collide with an enclosing LogContext
        with LogContext(logger, identity=identity):
            if lock is None:
                logger.warning(
                    f"Force-unlock requested for '{identity}' but no lock was held",
                    extra={'audit': True},
                )
                return
            logger.warning(
                f"Force-released lock {lock.lock_id} on '{identity}' held by {lock.holder} "
                f"for {lock.age_seconds():.0f}s ({lock.operation})",
                extra={
                    'audit': True,
                    'lock_id': lock.lock_id,
                    'holder': lock.holder,
                },
            )


class FileLockManager(LockManager):
    """Lock records stored as one JSON file per identity.

    Every mutation runs under an ``flock`` on a per-identity guard file, so
    competing threads and processes see exactly one winner.
    """

    def __init__(self, root: str):
        """
        Initialize FileLockManager.

        Args:
            root: Directory holding lock records
        """
        self.root = Path(root)

    def _lock_path(self, identity: str) -> Path:
        return self.root / f"{identity}.lock.json"

    @contextmanager
    def _guard(self, identity: str) -> Iterator[None]:
        self.root.mkdir(parents=True, exist_ok=True)
        fd = os.open(str(self.root / f".{identity}.lock.guard"), os.O_CREAT | os.O_RDWR)
        try:
            fcntl.flock(fd, fcntl.LOCK_EX)
            yield
        finally:
            fcntl.flock(fd, fcntl.LOCK_UN)
            os.close(fd)

    def _read(self, identity: str) -> Optional[LockInfo]:
        path = self._lock_path(identity)
        if not path.exists():
            return None
        try:
            with open(path, "r") as f:
                return LockInfo.from_dict(json.load(f))
        except (json.JSONDecodeError, ValueError) as e:
            raise LockError(
                f"Lock record for '{identity}' is unreadable: {e}",
                suggestions=["Remove it with: converge force-unlock --force <lock-id>"],
            )

    def acquire(self, identity: str, holder: str, operation: str = "apply") -> LockInfo:
        with self._guard(identity):
            current = self._read(identity)
            if current is not None:
                raise AlreadyLocked(identity, current.holder, current.created, current.lock_id)

            lock = LockInfo(identity=identity, holder=holder, operation=operation)
            temp_path = self._lock_path(identity).with_suffix(".tmp")
            with open(temp_path, "w") as f:
                json.dump(lock.to_dict(), f, indent=2)
            temp_path.replace(self._lock_path(identity))

        logger.debug(f"Acquired lock {lock.lock_id} on '{identity}' for {holder}")
        return lock

    def get(self, identity: str) -> Optional[LockInfo]:
        with self._guard(identity):
            return self._read(identity)

    def release(self, token: LockInfo) -> None:
        with self._guard(token.identity):
            current = self._read(token.identity)
            if current is None:
                return
            if current.lock_id != token.lock_id:
                raise InvalidToken(token.identity, token.lock_id)
            self._lock_path(token.identity).unlink()

        logger.debug(f"Released lock {token.lock_id} on '{token.identity}'")

    def force_release(self, identity: str) -> Optional[LockInfo]:
        with self._guard(identity):
            try:
                current = self._read(identity)
            except LockError:
                current = None
            path = self._lock_path(identity)
            if path.exists():
                path.unlink()

        self._audit_force_release(current, identity)
        return current
