"""State snapshot and lock data models."""

import uuid
from datetime import datetime
from typing import Any, Dict, List, Optional
from pydantic import BaseModel, ConfigDict, Field


class ResourceState(BaseModel):
    """Last-applied record of a single resource."""

    model_config = ConfigDict(frozen=True)

    id: str = Field(..., description="Resource identity (type.name)")
    type: str = Field(..., description="Resource type")
    provider_id: str = Field(..., description="Identifier assigned by the provider")
    attributes: Dict[str, Any] = Field(
        default_factory=dict, description="Resolved input attributes as last applied"
    )
    outputs: Dict[str, Any] = Field(
        default_factory=dict, description="Provider-computed attributes (ARNs, endpoints, ...)"
    )
    dependencies: List[str] = Field(
        default_factory=list, description="Resource identities this resource depends on"
    )
    updated_at: datetime = Field(default_factory=datetime.utcnow)

    def lookup(self, field: str) -> Any:
        """Look up a referenceable value.

        ``id`` is the provider identifier. Other fields are searched in the
        computed outputs first, then in the applied inputs. Dotted fields walk
        into nested maps.

        Raises:
            KeyError: If the field does not exist
        """
        if field == "id":
            return self.provider_id

        head, _, rest = field.partition(".")
        for source in (self.outputs, self.attributes):
            if head in source:
                value = source[head]
                for part in rest.split(".") if rest else []:
                    if not isinstance(value, dict) or part not in value:
                        raise KeyError(field)
                    value = value[part]
                return value
        raise KeyError(field)


class StateSnapshot(BaseModel):
    """Versioned record of every resource applied for one state identity.

    Snapshots are never modified in place; ``successor`` produces the next
    version with ``serial`` incremented and the same ``lineage``.
    """

    model_config = ConfigDict(frozen=True)

    version: int = Field(1, description="Snapshot format version")
    identity: str = Field(..., description="State identity (project-workspace)")
    lineage: str = Field(
        default_factory=lambda: str(uuid.uuid4()),
        description="Identifies one state history; fixed for the life of the state"
    )
    serial: int = Field(0, ge=0, description="Incremented by one on every save")
    timestamp: datetime = Field(default_factory=datetime.utcnow)
    resources: Dict[str, ResourceState] = Field(default_factory=dict)

    @classmethod
    def empty(cls, identity: str) -> "StateSnapshot":
        """Snapshot for an identity nothing has been applied to."""
        return cls(identity=identity)

    def get(self, resource_id: str) -> Optional[ResourceState]:
        """Get a resource record by identity."""
        return self.resources.get(resource_id)

    def resource_ids(self) -> List[str]:
        """Get recorded resource identities."""
        return list(self.resources.keys())

    def successor(self, resources: Dict[str, ResourceState]) -> "StateSnapshot":
        """Create the next version of this snapshot."""
        return StateSnapshot(
            version=self.version,
            identity=self.identity,
            lineage=self.lineage,
            serial=self.serial + 1,
            timestamp=datetime.utcnow(),
            resources=dict(resources),
        )

    def with_resources(self, resources: Dict[str, ResourceState]) -> "StateSnapshot":
        """Copy with different resources but the same version (in-memory views only)."""
        return self.model_copy(update={"resources": dict(resources)})

    def to_dict(self) -> Dict[str, Any]:
        """Convert to dictionary for JSON serialization."""
        return self.model_dump(mode="json")

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "StateSnapshot":
        """Create StateSnapshot from dictionary."""
        return cls.model_validate(data)


class LockInfo(BaseModel):
    """Lock record for a state identity; also serves as the holder's token."""

    model_config = ConfigDict(frozen=True)

    lock_id: str = Field(default_factory=lambda: str(uuid.uuid4()))
    identity: str
    holder: str = Field(..., description="Who holds the lock (user@host)")
    operation: str = Field("apply", description="Operation that took the lock")
    created: datetime = Field(default_factory=datetime.utcnow)

    def age_seconds(self) -> float:
        """Seconds since the lock was taken."""
        return (datetime.utcnow() - self.created).total_seconds()

    def to_dict(self) -> Dict[str, Any]:
        """Convert to dictionary for JSON serialization."""
        return self.model_dump(mode="json")

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "LockInfo":
        """Create LockInfo from dictionary."""
        return cls.model_validate(data)
