"""Construct the configured state store and lock manager."""

from typing import Tuple

import boto3
from botocore.config import Config as BotoConfig

from .aws_backend import DynamoDBLockManager, S3StateStore
from .lock import FileLockManager, LockManager
from .store import LocalStateStore, StateStore
from converge.config.parser import Config
from converge.utils.logging import get_logger

logger = get_logger(__name__)

# Retries are handled by RetryStrategy; keep botocore's own attempts low
BOTO_CONFIG = BotoConfig(
    retries={'mode': 'standard', 'max_attempts': 2},
    connect_timeout=10,
    read_timeout=30,
)


def create_backend(config: Config) -> Tuple[StateStore, LockManager]:
    """Create the state store and lock manager described by the configuration.

    Args:
        config: Loaded project configuration

    Returns:
        Tuple of (state store, lock manager)
    """
    backend = config.backend

    if backend.type == "s3":
        kwargs = {}
        if backend.profile:
            kwargs['profile_name'] = backend.profile
        if backend.region:
            kwargs['region_name'] = backend.region
        session = boto3.Session(**kwargs)

        lock_manager = DynamoDBLockManager(
            session.client('dynamodb', config=BOTO_CONFIG),
            backend.lock_table,
        )
        store = S3StateStore(
            session.client('s3', config=BOTO_CONFIG),
            backend.bucket,
            lock_manager,
            prefix=backend.prefix,
        )
        logger.debug(
            f"Using s3 backend s3://{backend.bucket}/{backend.prefix} "
            f"with lock table {backend.lock_table}"
        )
        return store, lock_manager

    state_dir = config.resolve_path(backend.path)
    lock_manager = FileLockManager(str(state_dir / "locks"))
    store = LocalStateStore(str(state_dir), lock_manager)
    logger.debug(f"Using local backend at {state_dir}")
    return store, lock_manager
