"""Versioned state stores.

Every save writes a complete new version; earlier versions stay readable
for audit and rollback. Writes require a valid lock token for the identity.
"""

import json
import os
import re
import uuid
from abc import ABC, abstractmethod
from pathlib import Path
from typing import List, Optional

from .lock import LockManager
from .models import LockInfo, StateSnapshot
from converge.utils.errors import (
    InvalidToken,
    StateError,
    StateNotFoundError,
    StoreUnavailable,
    VersionConflict,
)
from converge.utils.logging import get_logger
from converge.utils.retry import RetryStrategy, with_retry

logger = get_logger(__name__)

VERSION_PATTERN = re.compile(r"^(\d{8})\.json$")


def version_id_for(serial: int) -> str:
    """Version identifier for a snapshot serial."""
    return f"{serial:08d}"


class StateStore(ABC):
    """Durable, versioned record of applied state per identity."""

    def __init__(self, lock_manager: LockManager, retry_strategy: Optional[RetryStrategy] = None):
        """
        Initialize StateStore.

        Args:
            lock_manager: Lock manager that arbitrates write access
            retry_strategy: Backoff for transient backend failures
        """
        self.lock_manager = lock_manager
        self.retry_strategy = retry_strategy or RetryStrategy()

    @abstractmethod
    def list_versions(self, identity: str) -> List[str]:
        """List stored version ids for an identity, oldest first."""

    @abstractmethod
    def load_version(self, identity: str, version_id: str) -> StateSnapshot:
        """Load a specific version.

        Raises:
            StateNotFoundError: If the version does not exist
        """

    @abstractmethod
    def _write_version(self, identity: str, version_id: str, snapshot: StateSnapshot) -> None:
        """Write a new version atomically.

        Raises:
            VersionConflict: If the version already exists
        """

    def load(self, identity: str) -> StateSnapshot:
        """Load the latest snapshot.

        Raises:
            StateNotFoundError: If nothing has been saved for the identity
        """
        versions = self.list_versions(identity)
        if not versions:
            raise StateNotFoundError(identity)
        return self.load_version(identity, versions[-1])

    def load_or_empty(self, identity: str) -> StateSnapshot:
        """Load the latest snapshot, or an empty one for a new identity."""
        try:
            return self.load(identity)
        except StateNotFoundError:
            logger.info(f"No existing state for '{identity}', starting empty")
            return StateSnapshot.empty(identity)

    def exists(self, identity: str) -> bool:
        """Check if any version has been saved for an identity."""
        return bool(self.list_versions(identity))

    def save(self, identity: str, snapshot: StateSnapshot, token: LockInfo) -> str:
        """Save a snapshot as the next version.

        Args:
            identity: State identity
            snapshot: Snapshot whose serial follows the latest stored serial
            token: Lock token currently held for the identity

        Returns:
            Version id of the stored snapshot

        Raises:
            InvalidToken: If the token is not the current lock for the identity
            VersionConflict: If another writer saved since the snapshot was loaded
        """
        if token.identity != identity:
            raise InvalidToken(identity, token.lock_id)
        if snapshot.identity != identity:
            raise StateError(
                f"Snapshot for '{snapshot.identity}' cannot be saved as '{identity}'"
            )
        self.lock_manager.verify(token)

        versions = self.list_versions(identity)
        current_serial = int(versions[-1]) if versions else 0
        if snapshot.serial != current_serial + 1:
            raise VersionConflict(identity, expected=snapshot.serial - 1, actual=current_serial)

        if versions:
            current = self.load_version(identity, versions[-1])
            if current.lineage != snapshot.lineage:
                raise StateError(
                    f"Snapshot lineage {snapshot.lineage} does not match stored "
                    f"lineage {current.lineage} for '{identity}'",
                    suggestions=['The snapshot belongs to a different state history'],
                )

        version_id = version_id_for(snapshot.serial)
        self._write_version(identity, version_id, snapshot)

        logger.info(
            f"Saved state '{identity}' version {version_id} "
            f"({len(snapshot.resources)} resources)"
        )
        return version_id


class LocalStateStore(StateStore):
    """State versions stored as JSON files on the local filesystem.

    Layout: ``<root>/<identity>/versions/<serial>.json``. A version file is
    written to a temporary name and hard-linked into place, so readers never
    observe a partial file and two writers can never both claim a serial.
    """

    def __init__(
        self,
        root: str,
        lock_manager: LockManager,
        retry_strategy: Optional[RetryStrategy] = None
    ):
        super().__init__(lock_manager, retry_strategy)
        self.root = Path(root)

    def _versions_dir(self, identity: str) -> Path:
        return self.root / identity / "versions"

    @with_retry()
    def list_versions(self, identity: str) -> List[str]:
        versions_dir = self._versions_dir(identity)
        if not versions_dir.is_dir():
            return []
        try:
            names = os.listdir(versions_dir)
        except OSError as e:
            raise StoreUnavailable(f"Cannot list state versions: {e}", cause=e)

        version_ids = []
        for name in names:
            match = VERSION_PATTERN.match(name)
            if match:
                version_ids.append(match.group(1))
        return sorted(version_ids)

    @with_retry()
    def load_version(self, identity: str, version_id: str) -> StateSnapshot:
        path = self._versions_dir(identity) / f"{version_id}.json"
        try:
            with open(path, "r") as f:
                data = json.load(f)
        except FileNotFoundError:
            raise StateNotFoundError(identity)
        except json.JSONDecodeError as e:
            raise StateError(f"Failed to parse state file {path}: {e}")
        except OSError as e:
            raise StoreUnavailable(f"Cannot read state file {path}: {e}", cause=e)

        return StateSnapshot.from_dict(data)

    @with_retry()
    def _write_version(self, identity: str, version_id: str, snapshot: StateSnapshot) -> None:
        versions_dir = self._versions_dir(identity)
        target = versions_dir / f"{version_id}.json"
        temp_path = versions_dir / f".{version_id}.{uuid.uuid4().hex}.tmp"

        try:
            versions_dir.mkdir(parents=True, exist_ok=True)
            with open(temp_path, "w") as f:
                json.dump(snapshot.to_dict(), f, indent=2)
                f.flush()
                os.fsync(f.fileno())
            os.link(temp_path, target)
        except FileExistsError:
            raise VersionConflict(identity, expected=snapshot.serial - 1, actual=snapshot.serial)
        except OSError as e:
            raise StoreUnavailable(f"Cannot write state file {target}: {e}", cause=e)
        finally:
            if temp_path.exists():
                temp_path.unlink()
