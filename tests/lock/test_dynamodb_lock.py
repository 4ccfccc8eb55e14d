"""Tests for the DynamoDB lock backend."""

from unittest.mock import MagicMock

import pytest
from botocore.exceptions import ClientError

from kubeconverge.lock.dynamodb import DynamoDBLockBackend
from kubeconverge.lock.models import Lock
from kubeconverge.utils.errors import LockError

TABLE = 'terraform-lock-demo'


def condition_failed(operation):
    return ClientError(
        {'Error': {'Code': 'ConditionalCheckFailedException', 'Message': 'The conditional request failed'}},
        operation
    )


@pytest.fixture
def dynamodb():
    return MagicMock()


@pytest.fixture
def backend(dynamodb):
    return DynamoDBLockBackend(dynamodb, TABLE)


@pytest.fixture
def lock():
    return Lock.new('terraform-state-demo/terraform.tfstate', 'alice@host:1', 60.0, now=1000.0)


class TestDynamoDBLockBackend:
    """Test conditional writes on the LockID table."""

    def test_acquire_puts_conditional_item(self, backend, dynamodb, lock):
        """Test acquisition is a put conditioned on absence or expiry."""
        assert backend.try_acquire(lock, now=1000.0) is True

        kwargs = dynamodb.put_item.call_args.kwargs
        assert kwargs['TableName'] == TABLE
        assert kwargs['Item']['LockID'] == {'S': lock.key}
        assert kwargs['Item']['lock_id'] == {'S': lock.lock_id}
        assert kwargs['Item']['expires_at'] == {'N': repr(1060.0)}
        assert kwargs['ConditionExpression'] == 'attribute_not_exists(LockID) OR expires_at <= :now'
        assert kwargs['ExpressionAttributeValues'] == {':now': {'N': repr(1000.0)}}

    def test_acquire_busy(self, backend, dynamodb, lock):
        """Test a failed condition means someone else holds the lock."""
        dynamodb.put_item.side_effect = condition_failed('PutItem')

        assert backend.try_acquire(lock, now=1000.0) is False

    def test_acquire_error(self, backend, dynamodb, lock):
        """Test other errors become lock errors."""
        dynamodb.put_item.side_effect = ClientError(
            {'Error': {'Code': 'ResourceNotFoundException', 'Message': 'no table'}}, 'PutItem'
        )

        with pytest.raises(LockError, match=TABLE):
            backend.try_acquire(lock, now=1000.0)

    def test_renew_checks_fencing_token(self, backend, dynamodb, lock):
        """Test renewal is conditioned on our lock_id and an unexpired lease."""
        assert backend.try_renew(lock, new_expires_at=1090.0, now=1030.0) is True

        kwargs = dynamodb.update_item.call_args.kwargs
        assert kwargs['ConditionExpression'] == 'lock_id = :lock_id AND expires_at > :now'
        assert kwargs['ExpressionAttributeValues'][':lock_id'] == {'S': lock.lock_id}
        assert kwargs['ExpressionAttributeValues'][':expires'] == {'N': repr(1090.0)}

    def test_renew_lost(self, backend, dynamodb, lock):
        """Test a failed renewal condition reports loss."""
        dynamodb.update_item.side_effect = condition_failed('UpdateItem')

        assert backend.try_renew(lock, new_expires_at=1090.0, now=1030.0) is False

    def test_release_checks_fencing_token(self, backend, dynamodb, lock):
        """Test release only deletes our own lock."""
        assert backend.release(lock) is True
        assert dynamodb.delete_item.call_args.kwargs['ConditionExpression'] == 'lock_id = :lock_id'

        dynamodb.delete_item.side_effect = condition_failed('DeleteItem')
        assert backend.release(lock) is False

    def test_current(self, backend, dynamodb, lock):
        """Test reading the stored lock with a consistent read."""
        dynamodb.get_item.return_value = {'Item': DynamoDBLockBackend._to_item(lock)}

        current = backend.current(lock.key)

        assert current == lock
        assert dynamodb.get_item.call_args.kwargs['ConsistentRead'] is True

    def test_current_absent(self, backend, dynamodb):
        """Test a missing item means the lock is free."""
        dynamodb.get_item.return_value = {}

        assert backend.current('missing') is None

    def test_foreign_item_never_expires(self, backend, dynamodb):
        """Test items written without an expiry are treated as held."""
        dynamodb.get_item.return_value = {'Item': {'LockID': {'S': 'k'}, 'Info': {'S': '{}'}}}

        current = backend.current('k')

        assert current.holder == 'unknown'
        assert not current.is_expired(10 ** 12)

    def test_force_release(self, backend, dynamodb, lock):
        """Test unconditional delete returns the removed lock."""
        dynamodb.delete_item.return_value = {'Attributes': DynamoDBLockBackend._to_item(lock)}

        removed = backend.force_release(lock.key)

        assert removed.lock_id == lock.lock_id
        kwargs = dynamodb.delete_item.call_args.kwargs
        assert 'ConditionExpression' not in kwargs
        assert kwargs['ReturnValues'] == 'ALL_OLD'
