"""Shared kernel primitives (errors)."""

from .exceptions import (
    DomainException,
    ValidationError,
    EntityNotFoundError,
    ExternalServiceError,
    MalformedOutputError,
    PlanningExhausted,
    DecompositionError,
    SceneGenerationError,
)

__all__ = [
    "DomainException",
    "ValidationError",
    "EntityNotFoundError",
    "ExternalServiceError",
    "MalformedOutputError",
    "PlanningExhausted",
    "DecompositionError",
    "SceneGenerationError",
]
