"""Configuration and declaration loading."""

from .models import (
    BackendConfig,
    DeclarationFile,
    Lifecycle,
    ProjectConfig,
    ProviderConfig,
    Reference,
    ResourceSpec,
    Template,
)
from .parser import Config, ConfigValidationError, load_declarations

__all__ = [
    "Config",
    "ConfigValidationError",
    "load_declarations",
    "BackendConfig",
    "DeclarationFile",
    "Lifecycle",
    "ProjectConfig",
    "ProviderConfig",
    "Reference",
    "ResourceSpec",
    "Template",
]
