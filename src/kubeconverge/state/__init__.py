"""State management: the state document and the stores that version it."""

from .models import ResourceState, ResourceStatus, StateDocument, StateVersion
from .store import InMemoryStateStore, LocalStateStore, StateStore
from .s3_store import S3StateStore

__all__ = [
    "ResourceState",
    "ResourceStatus",
    "StateDocument",
    "StateVersion",
    "StateStore",
    "InMemoryStateStore",
    "LocalStateStore",
    "S3StateStore",
]
