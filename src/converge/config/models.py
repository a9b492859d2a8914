"""Pydantic models for project configuration and resource declarations."""

import datetime
from typing import Any, Dict, List, Literal, Optional, Tuple, Union
from pydantic import BaseModel, ConfigDict, Field, TypeAdapter, field_validator, model_validator


class Reference(BaseModel):
    """Typed reference to another resource's identifier or computed output."""

    model_config = ConfigDict(frozen=True)

    resource_id: str = Field(..., description="Identity of the referenced resource (type.name)")
    field: str = Field("id", description="Output field, dotted for nested values")

    def __str__(self) -> str:
        if self.field == "id":
            return f"${{{self.resource_id}}}"
        return f"${{{self.resource_id}.{self.field}}}"


class Template(BaseModel):
    """String value with one or more embedded references."""

    model_config = ConfigDict(frozen=True)

    parts: Tuple[Union[Reference, str], ...] = Field(
        ..., description="Literal strings and references, in order"
    )

    def references(self) -> List[Reference]:
        """Get the references embedded in this template."""
        return [part for part in self.parts if isinstance(part, Reference)]

    def __str__(self) -> str:
        return "".join(str(part) for part in self.parts)


_json_values = TypeAdapter(Any)


def normalize_attribute(value: Any) -> Any:
    """Convert a declared attribute value to the JSON types state records.

    YAML timestamps become the same ISO strings a saved snapshot holds, so
    an unchanged declaration compares equal to its recorded state.

    Raises:
        ValueError: If the value is not a string, number, boolean, null, list
            or map
    """
    if value is None or isinstance(value, (str, bool, int, float, BaseModel)):
        return value
    if isinstance(value, (datetime.date, datetime.time)):
        return _json_values.dump_python(value, mode="json")
    if isinstance(value, dict):
        return {str(k): normalize_attribute(v) for k, v in value.items()}
    if isinstance(value, (list, tuple)):
        return [normalize_attribute(v) for v in value]
    raise ValueError(f"unsupported attribute value of type {type(value).__name__}: {value!r}")


class Lifecycle(BaseModel):
    """Per-resource lifecycle rules."""

    model_config = ConfigDict(frozen=True)

    immutable: Tuple[str, ...] = Field(
        default_factory=tuple, description="Attributes whose change forces replacement"
    )
    globally_unique: bool = Field(
        False, description="Replacement has external side effects (e.g. reserved names)"
    )


class ResourceSpec(BaseModel):
    """A single declared resource."""

    model_config = ConfigDict(frozen=True)

    type: str = Field(..., min_length=1, pattern="^[A-Za-z][A-Za-z0-9_]*$")
    name: str = Field(..., min_length=1, pattern="^[A-Za-z0-9_-]+$")
    attributes: Dict[str, Any] = Field(default_factory=dict)
    depends_on: Tuple[str, ...] = Field(default_factory=tuple)
    count: int = Field(1, ge=0, le=1, description="0 skips the resource, 1 creates it")
    lifecycle: Lifecycle = Field(default_factory=Lifecycle)
    source: Optional[str] = Field(None, description="Declaration file the spec came from")

    @property
    def id(self) -> str:
        """Resource identity (type.name)."""
        return f"{self.type}.{self.name}"

    @property
    def enabled(self) -> bool:
        """Whether the resource is created at all."""
        return self.count == 1

    @field_validator("attributes")
    @classmethod
    def validate_attributes(cls, v: Dict[str, Any]) -> Dict[str, Any]:
        """Normalize attribute values to JSON types."""
        return normalize_attribute(v)

    @field_validator("depends_on")
    @classmethod
    def validate_depends_on(cls, v: Tuple[str, ...]) -> Tuple[str, ...]:
        """Validate explicit dependencies are resource identities."""
        for dep in v:
            if dep.count(".") != 1:
                raise ValueError(f"depends_on entry must be 'type.name': {dep}")
        return v


class BackendConfig(BaseModel):
    """Where state snapshots and locks are persisted."""

    type: Literal["local", "s3"] = "local"
    path: str = Field(".converge/state", description="State directory for the local backend")
    bucket: Optional[str] = Field(None, description="S3 bucket for the s3 backend")
    prefix: str = Field("converge", description="S3 key prefix")
    lock_table: Optional[str] = Field(None, description="DynamoDB lock table for the s3 backend")
    region: Optional[str] = None
    profile: Optional[str] = None

    @model_validator(mode="after")
    def validate_backend(self):
        """Validate the s3 backend has its bucket and lock table."""
        if self.type == "s3":
            if not self.bucket:
                raise ValueError("bucket is required for the s3 backend")
            if not self.lock_table:
                raise ValueError("lock_table is required for the s3 backend")
        return self


class ProviderConfig(BaseModel):
    """Provider the executor talks to."""

    type: Literal["local"] = "local"
    path: str = Field(".converge/provider", description="Object directory for the local provider")


class ProjectConfig(BaseModel):
    """Project configuration."""

    name: str = Field(..., min_length=1, max_length=64, pattern="^[a-z0-9-]+$")
    declarations: str = Field("resources", min_length=1)
    parallelism: int = Field(10, ge=1, le=64)
    action_timeout: float = Field(600, gt=0, le=86400)

    @field_validator("name")
    @classmethod
    def validate_name(cls, v: str) -> str:
        """Validate project name starts with a letter."""
        if not v[0].isalpha():
            raise ValueError("Project name must start with a letter")
        return v


class DeclarationFile(BaseModel):
    """Schema of a single declaration document."""

    resources: List[ResourceSpec] = Field(default_factory=list)
