"""Lock backend on a DynamoDB table keyed by ``LockID``."""

from typing import Any, Dict, Optional

from botocore.exceptions import ClientError

from kubeconverge.utils.errors import ErrorContext, LockError, classify_exception
from kubeconverge.utils.logging import get_logger
from .backends import LockBackend
from .models import Lock

logger = get_logger(__name__)


def _is_condition_failure(error: ClientError) -> bool:
    return error.response.get('Error', {}).get('Code') == 'ConditionalCheckFailedException'


class DynamoDBLockBackend(LockBackend):
    """Conditional writes against the lock table created by ``backend init``.

    Item layout::

        LockID (S, hash key)  lock key
        holder (S)            operator identity
        lock_id (S)           fencing token of this acquisition
        operation (S)
        acquired_at (N)       epoch seconds
        lease_seconds (N)
        expires_at (N)        epoch seconds
    """

    def __init__(self, dynamodb_client: Any, table_name: str):
        """Initialize DynamoDB lock backend.

        Args:
            dynamodb_client: boto3 DynamoDB client
            table_name: Lock table name
        """
        self.dynamodb = dynamodb_client
        self.table_name = table_name

    def _fail(self, action: str, key: str, operation: str, error: ClientError) -> LockError:
        return LockError(
            f"Failed to {action} lock '{key}' in table {self.table_name}: {error}",
            context=ErrorContext(
                resource_id=key, aws_service='dynamodb', aws_operation=operation
            ),
            cause=classify_exception(error)
        )

    @staticmethod
    def _to_item(lock: Lock) -> Dict[str, Dict[str, str]]:
        return {
            'LockID': {'S': lock.key},
            'holder': {'S': lock.holder},
            'lock_id': {'S': lock.lock_id},
            'operation': {'S': lock.operation},
            'acquired_at': {'N': repr(lock.acquired_at)},
            'lease_seconds': {'N': repr(lock.lease_seconds)},
            'expires_at': {'N': repr(lock.expires_at)},
        }

    @staticmethod
    def _from_item(item: Dict[str, Dict[str, str]]) -> Lock:
        return Lock(
            key=item['LockID']['S'],
            holder=item.get('holder', {}).get('S', 'unknown'),
            lock_id=item.get('lock_id', {}).get('S', ''),
            operation=item.get('operation', {}).get('S', 'apply'),
            acquired_at=float(item.get('acquired_at', {}).get('N', '0')),
            lease_seconds=float(item.get('lease_seconds', {}).get('N', '0')),
            # Items without an expiry (e.g. written by other tools) never expire on their own
            expires_at=float(item.get('expires_at', {}).get('N', 'inf')),
        )

    def try_acquire(self, lock: Lock, now: float) -> bool:
        try:
            self.dynamodb.put_item(
                TableName=self.table_name,
                Item=self._to_item(lock),
                ConditionExpression='attribute_not_exists(LockID) OR expires_at <= :now',
                ExpressionAttributeValues={':now': {'N': repr(now)}},
            )
        except ClientError as e:
            if _is_condition_failure(e):
                return False
            raise self._fail('acquire', lock.key, 'PutItem', e)
        return True

    def try_renew(self, lock: Lock, new_expires_at: float, now: float) -> bool:
        try:
            self.dynamodb.update_item(
                TableName=self.table_name,
                Key={'LockID': {'S': lock.key}},
                UpdateExpression='SET expires_at = :expires',
                ConditionExpression='lock_id = :lock_id AND expires_at > :now',
                ExpressionAttributeValues={
                    ':expires': {'N': repr(new_expires_at)},
                    ':lock_id': {'S': lock.lock_id},
                    ':now': {'N': repr(now)},
                },
            )
        except ClientError as e:
            if _is_condition_failure(e):
                return False
            raise self._fail('renew', lock.key, 'UpdateItem', e)
        return True

    def release(self, lock: Lock) -> bool:
        try:
            self.dynamodb.delete_item(
                TableName=self.table_name,
                Key={'LockID': {'S': lock.key}},
                ConditionExpression='lock_id = :lock_id',
                ExpressionAttributeValues={':lock_id': {'S': lock.lock_id}},
            )
        except ClientError as e:
            if _is_condition_failure(e):
                return False
            raise self._fail('release', lock.key, 'DeleteItem', e)
        return True

    def current(self, key: str) -> Optional[Lock]:
        try:
            response = self.dynamodb.get_item(
                TableName=self.table_name,
                Key={'LockID': {'S': key}},
                ConsistentRead=True,
            )
        except ClientError as e:
            raise self._fail('read', key, 'GetItem', e)
        item = response.get('Item')
        return self._from_item(item) if item else None

    def force_release(self, key: str) -> Optional[Lock]:
        try:
            response = self.dynamodb.delete_item(
                TableName=self.table_name,
                Key={'LockID': {'S': key}},
                ReturnValues='ALL_OLD',
            )
        except ClientError as e:
            raise self._fail('force-release', key, 'DeleteItem', e)
        item = response.get('Attributes')
        return self._from_item(item) if item else None
