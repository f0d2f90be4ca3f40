"""World bounded context."""

from .domain.entities import DriftReport, EntityChange, EntityKind, WorldEntity

__all__ = [
    "DriftReport",
    "EntityChange",
    "EntityKind",
    "WorldEntity",
]
