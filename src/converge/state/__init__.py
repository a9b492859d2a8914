"""State storage and locking."""

from .aws_backend import DynamoDBLockManager, S3StateStore
from .backend import create_backend
from .lock import FileLockManager, LockManager
from .models import LockInfo, ResourceState, StateSnapshot
from .store import LocalStateStore, StateStore

__all__ = [
    "ResourceState",
    "StateSnapshot",
    "LockInfo",
    "StateStore",
    "LocalStateStore",
    "S3StateStore",
    "LockManager",
    "FileLockManager",
    "DynamoDBLockManager",
    "create_backend",
]
