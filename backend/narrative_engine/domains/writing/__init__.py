"""Writing bounded context."""

from .domain.entities import Chapter, ChapterStatus, GenerationSettings, Novel, ProgressStatus

__all__ = [
    "Chapter",
    "ChapterStatus",
    "GenerationSettings",
    "Novel",
    "ProgressStatus",
]
