"""Remote state on S3 with locks in a DynamoDB table."""

import json
from typing import List, Optional

from botocore.exceptions import BotoCoreError, ClientError

from .lock import LockManager
from .models import LockInfo, StateSnapshot
from .store import VERSION_PATTERN, StateStore
from converge.utils.errors import (
    AlreadyLocked,
    ErrorContext,
    InvalidToken,
    LockError,
    StateError,
    StateNotFoundError,
    VersionConflict,
    error_handler,
)
from converge.utils.logging import get_logger
from converge.utils.retry import RetryStrategy, with_retry

logger = get_logger(__name__)

# S3 answers a failed conditional write with one of these codes
PRECONDITION_CODES = {'PreconditionFailed', 'ConditionalRequestConflict'}


def _error_code(error: ClientError) -> str:
    return error.response.get('Error', {}).get('Code', '')


class S3StateStore(StateStore):
    """State versions stored as S3 objects.

    Layout: ``s3://<bucket>/<prefix>/<identity>/versions/<serial>.json``.
    Each version is written with ``If-None-Match: *`` so a serial can be
    claimed by exactly one writer.
    """

    def __init__(
        self,
        s3_client,
        bucket: str,
        lock_manager: LockManager,
        prefix: str = "converge",
        retry_strategy: Optional[RetryStrategy] = None
    ):
        """
        Initialize S3StateStore.

        Args:
            s3_client: Boto3 S3 client
            bucket: State bucket name
            lock_manager: Lock manager that arbitrates write access
            prefix: Key prefix inside the bucket
            retry_strategy: Backoff for transient failures
        """
        super().__init__(lock_manager, retry_strategy)
        self.s3 = s3_client
        self.bucket = bucket
        self.prefix = prefix.strip("/")

    def _versions_prefix(self, identity: str) -> str:
        return f"{self.prefix}/{identity}/versions/"

    def _context(self, identity: str, operation: str) -> ErrorContext:
        return ErrorContext(identity=identity, operation=operation)

    @with_retry()
    def list_versions(self, identity: str) -> List[str]:
        prefix = self._versions_prefix(identity)
        version_ids = []
        try:
            paginator = self.s3.get_paginator('list_objects_v2')
            for page in paginator.paginate(Bucket=self.bucket, Prefix=prefix):
                for obj in page.get('Contents', []):
                    match = VERSION_PATTERN.match(obj['Key'][len(prefix):])
                    if match:
                        version_ids.append(match.group(1))
        except (ClientError, BotoCoreError) as e:
            raise error_handler.handle_exception(e, self._context(identity, 'list_versions'))
        return sorted(version_ids)

    @with_retry()
    def load_version(self, identity: str, version_id: str) -> StateSnapshot:
        key = f"{self._versions_prefix(identity)}{version_id}.json"
        try:
            response = self.s3.get_object(Bucket=self.bucket, Key=key)
            body = response['Body'].read()
        except ClientError as e:
            if _error_code(e) in ('NoSuchKey', '404'):
                raise StateNotFoundError(identity)
            raise error_handler.handle_exception(e, self._context(identity, 'load'))
        except BotoCoreError as e:
            raise error_handler.handle_exception(e, self._context(identity, 'load'))

        try:
            return StateSnapshot.from_dict(json.loads(body))
        except json.JSONDecodeError as e:
            raise StateError(f"Failed to parse state object s3://{self.bucket}/{key}: {e}")

    @with_retry()
    def _write_version(self, identity: str, version_id: str, snapshot: StateSnapshot) -> None:
        key = f"{self._versions_prefix(identity)}{version_id}.json"
        try:
            self.s3.put_object(
                Bucket=self.bucket,
                Key=key,
                Body=json.dumps(snapshot.to_dict(), indent=2).encode('utf-8'),
                ContentType='application/json',
                ServerSideEncryption='AES256',
                IfNoneMatch='*',
            )
        except ClientError as e:
            if _error_code(e) in PRECONDITION_CODES:
                raise VersionConflict(
                    identity, expected=snapshot.serial - 1, actual=snapshot.serial
                )
            raise error_handler.handle_exception(e, self._context(identity, 'save'))
        except BotoCoreError as e:
            raise error_handler.handle_exception(e, self._context(identity, 'save'))


class DynamoDBLockManager(LockManager):
    """Locks stored in a DynamoDB table keyed by ``LockID``.

    Acquire is a conditional put on ``attribute_not_exists(LockID)``; the
    release is conditional on the holder's lock id.
    """

    def __init__(self, dynamodb_client, table: str, retry_strategy: Optional[RetryStrategy] = None):
        """
        Initialize DynamoDBLockManager.

        Args:
            dynamodb_client: Boto3 DynamoDB client
            table: Lock table name (hash key ``LockID`` of type S)
            retry_strategy: Backoff for transient failures
        """
        self.dynamodb = dynamodb_client
        self.table = table
        self.retry_strategy = retry_strategy or RetryStrategy()

    def _key(self, identity: str) -> dict:
        return {'LockID': {'S': identity}}

    def acquire(self, identity: str, holder: str, operation: str = "apply") -> LockInfo:
        lock = LockInfo(identity=identity, holder=holder, operation=operation)
        for _ in range(2):
            if self._put_lock(lock):
                break
            current = self.get(identity)
            if current is None:
                # Released between the put and the read
                continue
            if current.lock_id == lock.lock_id:
                break
            raise AlreadyLocked(identity, current.holder, current.created, current.lock_id)
        else:
            raise LockError(f"Could not acquire lock on '{identity}': lock changed concurrently")

        logger.debug(f"Acquired lock {lock.lock_id} on '{identity}' for {holder}")
        return lock

    @with_retry()
    def _put_lock(self, lock: LockInfo) -> bool:
        """Conditionally write the lock item; False if a lock already exists.

        A retried put whose first attempt landed finds its own item, which the
        caller recognises by lock id.
        """
        try:
            self.dynamodb.put_item(
                TableName=self.table,
                Item={
                    **self._key(lock.identity),
                    'LockToken': {'S': lock.lock_id},
                    'Info': {'S': json.dumps(lock.to_dict())},
                },
                ConditionExpression='attribute_not_exists(LockID)',
            )
        except ClientError as e:
            if _error_code(e) == 'ConditionalCheckFailedException':
                return False
            raise error_handler.handle_exception(
                e, ErrorContext(identity=lock.identity, operation='lock')
            )
        except BotoCoreError as e:
            raise error_handler.handle_exception(
                e, ErrorContext(identity=lock.identity, operation='lock')
            )
        return True

    @with_retry()
    def get(self, identity: str) -> Optional[LockInfo]:
        try:
            response = self.dynamodb.get_item(
                TableName=self.table,
                Key=self._key(identity),
                ConsistentRead=True,
            )
        except (ClientError, BotoCoreError) as e:
            raise error_handler.handle_exception(e, ErrorContext(identity=identity, operation='read_lock'))

        item = response.get('Item')
        if not item:
            return None
        return LockInfo.from_dict(json.loads(item['Info']['S']))

    @with_retry()
    def release(self, token: LockInfo) -> None:
        try:
            self.dynamodb.delete_item(
                TableName=self.table,
                Key=self._key(token.identity),
                ConditionExpression='LockToken = :token',
                ExpressionAttributeValues={':token': {'S': token.lock_id}},
            )
        except ClientError as e:
            if _error_code(e) == 'ConditionalCheckFailedException':
                if self.get(token.identity) is None:
                    return
                raise InvalidToken(token.identity, token.lock_id)
            raise error_handler.handle_exception(
                e, ErrorContext(identity=token.identity, operation='unlock')
            )
        except BotoCoreError as e:
            raise error_handler.handle_exception(
                e, ErrorContext(identity=token.identity, operation='unlock')
            )

        logger.debug(f"Released lock {token.lock_id} on '{token.identity}'")

    @with_retry()
    def force_release(self, identity: str) -> Optional[LockInfo]:
        current = self.get(identity)
        try:
            self.dynamodb.delete_item(TableName=self.table, Key=self._key(identity))
        except (ClientError, BotoCoreError) as e:
            raise error_handler.handle_exception(e, ErrorContext(identity=identity, operation='force_unlock'))

        self._audit_force_release(current, identity)
        return current
