"""YAML configuration and declaration loader."""

from pathlib import Path
from typing import Dict, List, Optional

import yaml
from pydantic import ValidationError

from .models import BackendConfig, DeclarationFile, ProjectConfig, ProviderConfig, ResourceSpec


class ConfigValidationError(Exception):
    """Exception raised when configuration validation fails."""

    def __init__(self, message: str, errors: Optional[List[Dict]] = None):
        self.message = message
        self.errors = errors or []
        super().__init__(self.message)

    def __str__(self) -> str:
        """Format validation errors for display."""
        if not self.errors:
            return self.message

        error_lines = [self.message, ""]
        for error in self.errors:
            location = " -> ".join(str(loc) for loc in error.get("loc", []))
            msg = error.get("msg", "Unknown error")
            error_lines.append(f"  - {location}: {msg}")

        return "\n".join(error_lines)


def _collect(errors: List[Dict], prefix: List, exc: ValidationError) -> None:
    for error in exc.errors():
        errors.append({"loc": prefix + list(error["loc"]), "msg": error["msg"]})


class Config:
    """Configuration manager for converge projects."""

    def __init__(self, config_path: str):
        """Initialize configuration manager.

        Args:
            config_path: Path to converge.yaml configuration file
        """
        self.config_path = Path(config_path)
        self.data: Dict = {}
        self.project: Optional[ProjectConfig] = None
        self.backend: BackendConfig = BackendConfig()
        self.provider: ProviderConfig = ProviderConfig()

    @property
    def base_dir(self) -> Path:
        """Directory relative paths in the configuration resolve against."""
        return self.config_path.resolve().parent

    def load(self) -> "Config":
        """Load and validate configuration from YAML file.

        Returns:
            Self for method chaining

        Raises:
            ConfigValidationError: If configuration is invalid
            FileNotFoundError: If configuration file doesn't exist
        """
        if not self.config_path.exists():
            raise FileNotFoundError(f"Configuration file not found: {self.config_path}")

        try:
            with open(self.config_path, "r") as f:
                self.data = yaml.safe_load(f) or {}
        except yaml.YAMLError as e:
            raise ConfigValidationError(f"Failed to parse YAML: {e}")

        if not isinstance(self.data, dict):
            raise ConfigValidationError("Configuration must be a mapping")

        validation_errors = self.validate()
        if validation_errors:
            raise ConfigValidationError(
                f"Configuration validation failed with {len(validation_errors)} error(s)",
                validation_errors,
            )

        self.project = ProjectConfig(**self.data["project"])
        self.backend = BackendConfig(**(self.data.get("backend") or {}))
        self.provider = ProviderConfig(**(self.data.get("provider") or {}))

        return self

    def validate(self) -> List[Dict]:
        """Validate configuration against schema.

        Returns:
            List of validation errors (empty if valid)
        """
        errors = []

        if "project" not in self.data:
            errors.append({"loc": ["project"], "msg": "Required field 'project' is missing"})
        elif not isinstance(self.data["project"], dict):
            errors.append({"loc": ["project"], "msg": "Project must be a mapping"})
        else:
            try:
                ProjectConfig(**self.data["project"])
            except ValidationError as e:
                _collect(errors, ["project"], e)

        for section, model in (("backend", BackendConfig), ("provider", ProviderConfig)):
            section_data = self.data.get(section)
            if section_data is None:
                continue
            if not isinstance(section_data, dict):
                errors.append({"loc": [section], "msg": f"{section} must be a mapping"})
                continue
            try:
                model(**section_data)
            except ValidationError as e:
                _collect(errors, [section], e)

        return errors

    def resolve_path(self, path: str) -> Path:
        """Resolve a configured path against the configuration file directory."""
        candidate = Path(path)
        if candidate.is_absolute():
            return candidate
        return self.base_dir / candidate

    @property
    def declarations_dir(self) -> Path:
        """Directory holding the resource declaration documents."""
        if self.project is None:
            raise ConfigValidationError("Configuration not loaded. Call load() first.")
        return self.resolve_path(self.project.declarations)

    def identity(self, workspace: str = "default") -> str:
        """State identity for a target scope.

        The same declarations may be reconciled once per workspace
        (account, region, environment); each gets its own state and lock.
        """
        if self.project is None:
            raise ConfigValidationError("Configuration not loaded. Call load() first.")
        return f"{self.project.name}-{workspace}"

    def load_declarations(self) -> List[ResourceSpec]:
        """Load every declaration document, in file name order.

        Returns:
            Resource specs in declaration order

        Raises:
            ConfigValidationError: If a document is invalid or an identity is declared twice
        """
        return load_declarations(self.declarations_dir)


def load_declarations(directory: Path) -> List[ResourceSpec]:
    """Load resource specs from every *.yaml/*.yml file in a directory.

    Args:
        directory: Declarations directory

    Returns:
        Resource specs in declaration order (file name, then position)
    """
    directory = Path(directory)
    if not directory.is_dir():
        raise ConfigValidationError(f"Declarations directory not found: {directory}")

    files = sorted(
        p for p in directory.iterdir()
        if p.is_file() and p.suffix in (".yaml", ".yml")
    )

    specs: List[ResourceSpec] = []
    seen: Dict[str, str] = {}
    errors: List[Dict] = []

    for path in files:
        try:
            with open(path, "r") as f:
                data = yaml.safe_load(f) or {}
        except yaml.YAMLError as e:
            errors.append({"loc": [path.name], "msg": f"Failed to parse YAML: {e}"})
            continue

        if not isinstance(data, dict):
            errors.append({"loc": [path.name], "msg": "Declaration document must be a mapping"})
            continue

        try:
            document = DeclarationFile(**data)
        except ValidationError as e:
            _collect(errors, [path.name], e)
            continue

        for spec in document.resources:
            if spec.id in seen:
                errors.append({
                    "loc": [path.name, spec.id],
                    "msg": f"Resource already declared in {seen[spec.id]}",
                })
                continue
            seen[spec.id] = path.name
            specs.append(spec.model_copy(update={"source": path.name}))

    if errors:
        raise ConfigValidationError(
            f"Declaration validation failed with {len(errors)} error(s)", errors
        )

    return specs
