"""State document data models."""

import hashlib
import json
import uuid
from datetime import datetime, timezone
from enum import Enum
from typing import Any, Dict, List, Optional

from pydantic import BaseModel, Field


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


def canonical_json(obj: Any) -> str:
    """Stable JSON encoding used for hashing."""
    return json.dumps(obj, sort_keys=True, separators=(",", ":"), default=str)


class ResourceStatus(str, Enum):
    """Lifecycle status of a tracked resource."""
    ABSENT = "absent"
    APPLIED = "applied"
    TAINTED = "tainted"


class ResourceState(BaseModel):
    """Last-known-applied state of one resource."""

    address: str = Field(..., description="Unique address (kind.name)")
    kind: str = Field(..., description="Resource kind")
    name: str = Field(..., description="Logical name")
    attributes: Dict[str, Any] = Field(
        default_factory=dict, description="Last-applied declared attributes, references unresolved"
    )
    resolved_attributes: Dict[str, Any] = Field(
        default_factory=dict, description="Attributes as sent to the provider"
    )
    provider_id: Optional[str] = Field(None, description="Provider-assigned identifier")
    outputs: Dict[str, Any] = Field(default_factory=dict, description="Values exposed to consumers")
    dependencies: List[str] = Field(
        default_factory=list, description="Addresses this resource depended on when applied"
    )
    status: ResourceStatus = ResourceStatus.APPLIED
    error: Optional[str] = Field(None, description="Last failure when tainted")
    deposed: List[str] = Field(
        default_factory=list, description="Provider ids of replaced objects still awaiting deletion"
    )
    created_at: datetime = Field(default_factory=_utcnow)
    updated_at: datetime = Field(default_factory=_utcnow)

    @property
    def is_tainted(self) -> bool:
        return self.status == ResourceStatus.TAINTED


class StateDocument(BaseModel):
    """Full mapping of tracked resources plus versioning metadata.

    Documents are treated as values: every mutating helper returns a new
    document and leaves the receiver untouched. Only a state store turns a
    new document into the current one.
    """

    version: int = 1
    lineage: str = Field(default_factory=lambda: str(uuid.uuid4()))
    serial: int = 0
    resources: Dict[str, ResourceState] = Field(default_factory=dict)
    content_hash: str = ""
    updated_at: datetime = Field(default_factory=_utcnow)

    def compute_hash(self) -> str:
        """Hash of lineage, serial and resources (timestamps excluded)."""
        resources = {
            address: state.model_dump(mode="json", exclude={"created_at", "updated_at"})
            for address, state in sorted(self.resources.items())
        }
        payload = canonical_json({
            "version": self.version,
            "lineage": self.lineage,
            "serial": self.serial,
            "resources": resources,
        })
        return hashlib.sha256(payload.encode("utf-8")).hexdigest()

    def sealed(self) -> "StateDocument":
        """Return a copy with content_hash filled in."""
        doc = self.model_copy(deep=True)
        doc.content_hash = doc.compute_hash()
        return doc

    def verify(self) -> bool:
        """Check the stored hash matches the content."""
        return self.content_hash == self.compute_hash()

    def get(self, address: str) -> Optional[ResourceState]:
        return self.resources.get(address)

    def has(self, address: str) -> bool:
        return address in self.resources

    def addresses(self) -> List[str]:
        return sorted(self.resources)

    def next_serial(self) -> "StateDocument":
        """Copy of this document at serial + 1."""
        doc = self.model_copy(deep=True)
        doc.serial = self.serial + 1
        doc.updated_at = _utcnow()
        doc.content_hash = ""
        return doc

    def with_resource(self, state: ResourceState) -> "StateDocument":
        """Next-serial copy with one resource added or replaced."""
        doc = self.next_serial()
        existing = self.resources.get(state.address)
        state = state.model_copy(deep=True)
        if existing is not None:
            state.created_at = existing.created_at
        state.updated_at = doc.updated_at
        doc.resources[state.address] = state
        return doc

    def without_resource(self, address: str) -> "StateDocument":
        """Next-serial copy with one resource removed."""
        doc = self.next_serial()
        doc.resources.pop(address, None)
        return doc

    def outputs_of(self, address: str) -> Optional[Dict[str, Any]]:
        """Outputs of an applied resource, None if absent or tainted."""
        state = self.resources.get(address)
        if state is None or state.status != ResourceStatus.APPLIED:
            return None
        return state.outputs

    def to_json(self) -> str:
        return json.dumps(self.model_dump(mode="json"), indent=2, sort_keys=True) + "\n"

    @classmethod
    def from_json(cls, payload: str) -> "StateDocument":
        return cls.model_validate_json(payload)


class StateVersion(BaseModel):
    """Audit entry for one stored version of the state document."""

    version_id: str
    serial: int
    content_hash: str
    written_at: datetime
    is_latest: bool = False
