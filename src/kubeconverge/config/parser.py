"""YAML configuration parser and resource expansion."""

from pathlib import Path
from typing import Any, Dict, List, Optional

import yaml
from pydantic import ValidationError

from kubeconverge.utils.errors import ConfigurationError
from kubeconverge.utils.logging import get_logger
from .models import (
    BackendConfig,
    EngineSettings,
    ProjectConfig,
    ResourceDeclaration,
    ResourceSpec,
)
from .references import substitute_variables

logger = get_logger(__name__)


class ConfigValidationError(ConfigurationError):
    """Exception raised when configuration validation fails."""

    def __init__(self, message: str, errors: Optional[List[Dict]] = None):
        self.errors = errors or []
        super().__init__(message)

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


class Config:
    """Loads a configuration file and expands it into resource specs."""

    def __init__(self, config_path: Optional[str] = None):
        """Initialize configuration manager.

        Args:
            config_path: Path to the YAML configuration file
        """
        self.config_path = Path(config_path) if config_path else None
        self.data: Dict = {}
        self.project: Optional[ProjectConfig] = None

    def load(self) -> "Config":
        """Load and validate configuration from YAML file.

        Returns:
            Self for method chaining

        Raises:
            ConfigValidationError: If configuration is invalid
            FileNotFoundError: If configuration file doesn't exist
        """
        if self.config_path is None or not self.config_path.exists():
            raise FileNotFoundError(f"Configuration file not found: {self.config_path}")

        try:
            with open(self.config_path, "r") as f:
                data = yaml.safe_load(f) or {}
        except yaml.YAMLError as e:
            raise ConfigValidationError(f"Failed to parse YAML: {e}")

        return self.load_dict(data)

    def load_dict(self, data: Dict[str, Any]) -> "Config":
        """Validate an already-parsed configuration mapping."""
        if not isinstance(data, dict):
            raise ConfigValidationError("Configuration root must be a mapping")

        self.data = data
        try:
            self.project = ProjectConfig(**data)
        except ValidationError as e:
            raise ConfigValidationError(
                f"Configuration validation failed with {e.error_count()} error(s)",
                [{"loc": list(err["loc"]), "msg": err["msg"]} for err in e.errors()],
            )

        # Expand once up front so errors surface at load time
        self.resource_specs()
        return self

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "Config":
        return cls().load_dict(data)

    @property
    def backend(self) -> BackendConfig:
        return self._require_project().backend

    @property
    def settings(self) -> EngineSettings:
        return self._require_project().settings

    def resource_specs(self) -> List[ResourceSpec]:
        """Expand declarations into concrete resource specs.

        Applies ``when`` conditions, ``count`` expansion and variable
        substitution. Cross-resource references are left in place.

        Raises:
            ConfigValidationError: If expansion fails
        """
        project = self._require_project()
        specs: List[ResourceSpec] = []
        errors: List[Dict] = []

        for index, declaration in enumerate(project.resources):
            try:
                specs.extend(self._expand(declaration, project.variables))
            except (KeyError, ValueError, ValidationError) as e:
                errors.append({
                    "loc": ["resources", index, f"{declaration.kind}.{declaration.name}"],
                    "msg": str(e),
                })

        if errors:
            raise ConfigValidationError(
                f"Resource expansion failed with {len(errors)} error(s)", errors
            )

        return specs

    def _expand(self, declaration: ResourceDeclaration, variables: Dict[str, Any]) -> List[ResourceSpec]:
        if declaration.when is not None:
            enabled = substitute_variables(declaration.when, variables)
            if not _as_bool(enabled):
                logger.debug(f"Skipping {declaration.kind}.{declaration.name}: condition is false")
                return []

        if declaration.count is None:
            return [self._make_spec(declaration, declaration.name, variables, None)]

        count = substitute_variables(declaration.count, variables)
        try:
            count = int(count)
        except (TypeError, ValueError):
            raise ValueError(f"count must be an integer, got {count!r}")
        if count < 0:
            raise ValueError(f"count must not be negative, got {count}")

        return [
            self._make_spec(declaration, f"{declaration.name}[{i}]", variables, i)
            for i in range(count)
        ]

    @staticmethod
    def _make_spec(
        declaration: ResourceDeclaration,
        name: str,
        variables: Dict[str, Any],
        count_index: Optional[int]
    ) -> ResourceSpec:
        return ResourceSpec(
            kind=declaration.kind,
            name=name,
            attributes=substitute_variables(declaration.attributes, variables, count_index),
            depends_on=substitute_variables(declaration.depends_on, variables, count_index),
        )

    def _require_project(self) -> ProjectConfig:
        if self.project is None:
            raise ConfigurationError("Configuration not loaded. Call load() first.")
        return self.project


def _as_bool(value: Any) -> bool:
    if isinstance(value, str):
        return value.strip().lower() in ("1", "true", "yes", "on")
    return bool(value)
