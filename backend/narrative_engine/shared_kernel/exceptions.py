"""Shared kernel exception hierarchy."""
from typing import Optional, Dict, Any


class DomainException(Exception):
    """Base exception for all domain errors."""

    def __init__(self, message: str, code: str, details: Optional[Dict[str, Any]] = None) -> None:
        super().__init__(message)
        self.code = code
        self.details = details or {}


class ValidationError(DomainException):
    """Raised when domain validation fails."""


class EntityNotFoundError(DomainException):
    """Raised when a domain entity is not found."""


class ExternalServiceError(DomainException):
    """Raised when an external service fails."""


class MalformedOutputError(DomainException):
    """Raised when model output cannot be parsed or misses required fields."""


class PlanningExhausted(DomainException):
    """Raised when a chapter has no outline entry even after expansion."""


class DecompositionError(DomainException):
    """Raised when a chapter could not be split into scenes."""


class SceneGenerationError(DomainException):
    """Raised when a scene fails and the chapter has to be abandoned."""
