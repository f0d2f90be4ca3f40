"""Planning bounded context."""

from .domain.entities import ChapterOutlineEntry, NarrativeStage, Plan

__all__ = [
    "ChapterOutlineEntry",
    "NarrativeStage",
    "Plan",
]
