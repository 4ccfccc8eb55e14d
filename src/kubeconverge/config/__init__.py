"""Declared configuration: schema, loading and expansion."""

from .models import (
    BackendConfig,
    EngineSettings,
    ProjectConfig,
    ResourceDeclaration,
    ResourceSpec,
    make_address,
)
from .parser import Config, ConfigValidationError
from .references import Reference, UnresolvedReference, find_references, resolve_references

__all__ = [
    "BackendConfig",
    "EngineSettings",
    "ProjectConfig",
    "ResourceDeclaration",
    "ResourceSpec",
    "make_address",
    "Config",
    "ConfigValidationError",
    "Reference",
    "UnresolvedReference",
    "find_references",
    "resolve_references",
]
