"""Lock lease data model."""

import getpass
import os
import socket
import uuid
from dataclasses import dataclass, field, replace
from datetime import datetime, timezone
from typing import Any, Dict


def default_holder() -> str:
    """Identity of this operator process (user@host:pid)."""
    try:
        user = getpass.getuser()
    except (KeyError, OSError):
        user = "unknown"
    return f"{user}@{socket.gethostname()}:{os.getpid()}"


@dataclass(frozen=True)
class Lock:
    """A time-bounded exclusive claim on a key.

    ``lock_id`` is unique per acquisition and acts as a fencing token:
    renew and release only succeed while the stored lock carries it.
    """

    key: str
    holder: str
    acquired_at: float
    lease_seconds: float
    expires_at: float
    lock_id: str = field(default_factory=lambda: str(uuid.uuid4()))
    operation: str = "apply"

    @classmethod
    def new(cls, key: str, holder: str, lease_seconds: float, now: float, operation: str = "apply") -> "Lock":
        return cls(
            key=key,
            holder=holder,
            acquired_at=now,
            lease_seconds=lease_seconds,
            expires_at=now + lease_seconds,
            operation=operation,
        )

    def is_expired(self, now: float) -> bool:
        return now >= self.expires_at

    def remaining(self, now: float) -> float:
        return max(0.0, self.expires_at - now)

    def extended(self, now: float) -> "Lock":
        """Copy with the lease restarted at ``now``."""
        return replace(self, expires_at=now + self.lease_seconds)

    def to_dict(self) -> Dict[str, Any]:
        return {
            'key': self.key,
            'holder': self.holder,
            'lock_id': self.lock_id,
            'operation': self.operation,
            'acquired_at': self.acquired_at,
            'lease_seconds': self.lease_seconds,
            'expires_at': self.expires_at,
        }

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "Lock":
        return cls(
            key=data['key'],
            holder=data['holder'],
            lock_id=data['lock_id'],
            operation=data.get('operation', 'apply'),
            acquired_at=float(data['acquired_at']),
            lease_seconds=float(data['lease_seconds']),
            expires_at=float(data['expires_at']),
        )

    def describe(self) -> str:
        acquired = datetime.fromtimestamp(self.acquired_at, tz=timezone.utc).isoformat()
        return f"{self.holder} ({self.operation}, id {self.lock_id}, acquired {acquired})"
