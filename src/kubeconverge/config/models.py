"""Pydantic models for the declared configuration schema."""

from typing import Any, Dict, List, Literal, Optional, Set, Union
from pydantic import BaseModel, ConfigDict, Field, field_validator, model_validator

from .references import RESERVED_KINDS, find_references

KIND_PATTERN = r"^[a-z][a-z0-9_]*$"
NAME_PATTERN = r"^[A-Za-z0-9_\-]+(\[\d+\])?$"


def make_address(kind: str, name: str) -> str:
    """Build the unique address of a resource."""
    return f"{kind}.{name}"


class ResourceSpec(BaseModel):
    """A single declared resource after variable and count expansion."""

    model_config = ConfigDict(frozen=True)

    kind: str = Field(..., pattern=KIND_PATTERN, description="Resource kind (e.g., eks_cluster)")
    name: str = Field(..., pattern=NAME_PATTERN, description="Logical name, unique within its kind")
    attributes: Dict[str, Any] = Field(default_factory=dict, description="Declared attribute values")
    depends_on: List[str] = Field(
        default_factory=list, description="Explicit ordering constraints (addresses)"
    )

    @field_validator("kind")
    @classmethod
    def validate_kind(cls, v: str) -> str:
        if v in RESERVED_KINDS:
            raise ValueError(f"'{v}' is reserved and cannot be used as a resource kind")
        return v

    @property
    def address(self) -> str:
        return make_address(self.kind, self.name)

    def referenced_addresses(self) -> Set[str]:
        """Addresses whose outputs this resource's attributes read."""
        return {ref.address for ref in find_references(self.attributes)}

    def dependency_addresses(self) -> Set[str]:
        """Inferred plus explicit dependencies."""
        return self.referenced_addresses() | set(self.depends_on)


class ResourceDeclaration(BaseModel):
    """A resource block as written in the configuration file."""

    model_config = ConfigDict(extra="forbid")

    kind: str = Field(..., pattern=KIND_PATTERN)
    name: str = Field(..., pattern=r"^[A-Za-z0-9_\-]+$")
    attributes: Dict[str, Any] = Field(default_factory=dict)
    depends_on: List[str] = Field(default_factory=list)
    count: Optional[Union[int, str]] = Field(
        None, description="Number of instances, literal or ${var.x}"
    )
    when: Optional[Union[bool, str]] = Field(
        None, description="Condition gating the resource, literal or ${var.x}"
    )


class BackendConfig(BaseModel):
    """Where state and locks live."""

    model_config = ConfigDict(extra="forbid")

    type: Literal["local", "s3"] = "local"
    path: str = Field(".kubeconverge/state/terraform.tfstate.json", description="Local state file")
    bucket: Optional[str] = None
    key: str = "terraform.tfstate"
    region: str = "us-east-1"
    lock_table: Optional[str] = None
    profile: Optional[str] = None

    @model_validator(mode="after")
    def validate_backend(self):
        if self.type == "s3":
            if not self.bucket:
                raise ValueError("bucket is required for the s3 backend")
            if not self.lock_table:
                raise ValueError("lock_table is required for the s3 backend")
        return self

    @property
    def lock_key(self) -> str:
        """Key of the lock guarding this state document."""
        if self.type == "s3":
            return f"{self.bucket}/{self.key}"
        return self.path


class EngineSettings(BaseModel):
    """Tunables for locking, retries and apply parallelism."""

    model_config = ConfigDict(extra="forbid")

    max_workers: int = Field(10, ge=1, le=64)
    lease_seconds: float = Field(60.0, gt=0)
    renew_fraction: float = Field(1 / 3, gt=0, lt=1)
    lock_retries: int = Field(5, ge=0)
    lock_retry_base_delay: float = Field(1.0, ge=0)
    max_retries: int = Field(3, ge=0)
    retry_base_delay: float = Field(1.0, ge=0)
    retry_max_delay: float = Field(30.0, ge=0)
    fail_fast: bool = False


class ProjectConfig(BaseModel):
    """Top-level document of a configuration file."""

    model_config = ConfigDict(extra="forbid")

    project: str = Field(..., min_length=1, max_length=64, pattern=r"^[a-z0-9-]+$")
    backend: BackendConfig = Field(default_factory=BackendConfig)
    settings: EngineSettings = Field(default_factory=EngineSettings)
    variables: Dict[str, Any] = Field(default_factory=dict)
    resources: List[ResourceDeclaration] = Field(default_factory=list)
