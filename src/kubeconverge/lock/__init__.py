"""Distributed locking with leases."""

from .models import Lock, default_holder
from .backends import FileLockBackend, InMemoryLockBackend, LockBackend
from .dynamodb import DynamoDBLockBackend
from .manager import LeaseKeeper, LockManager

__all__ = [
    "Lock",
    "default_holder",
    "LockBackend",
    "InMemoryLockBackend",
    "FileLockBackend",
    "DynamoDBLockBackend",
    "LockManager",
    "LeaseKeeper",
]
