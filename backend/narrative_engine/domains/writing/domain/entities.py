"""Writing domain entities."""
from __future__ import annotations

from dataclasses import dataclass, field
from datetime import datetime, timezone
from enum import Enum
from typing import Any, Dict, Optional, Tuple
from uuid import UUID, uuid4
import re

from narrative_engine.core.config import settings
from narrative_engine.domains.planning.domain.entities import Plan


CHAPTER_SEPARATOR = "|||CHAPTER_SEPARATOR|||"

_CJK_CHAR = re.compile(r"[㐀-䶿一-鿿豈-﫿]")
_LATIN_WORD = re.compile(r"[A-Za-z0-9]+(?:['’-][A-Za-z0-9]+)*")


class ChapterStatus(Enum):
    DRAFT = "draft"


class ProgressStatus(Enum):
    """Plan adherence reported by the decomposer."""

    ON_TRACK = "正常进度"
    MINOR_DEVIATION = "轻度偏离"
    SEVERE_DEVIATION = "严重偏离"

    @classmethod
    def parse(cls, value: Any) -> "ProgressStatus":
        text = str(value or "").strip()
        for status in cls:
            if status.value in text or text.lower() == status.name.lower():
                return status
        return cls.ON_TRACK


def count_words(text: str) -> int:
    """Count CJK characters individually and latin words as whole tokens."""
    if not text:
        return 0
    cjk = len(_CJK_CHAR.findall(text))
    latin = len(_LATIN_WORD.findall(_CJK_CHAR.sub(" ", text)))
    return cjk + latin


def compose_chapter_content(title: str, body: str) -> str:
    return f"{title}\n{CHAPTER_SEPARATOR}\n{body}"


def parse_chapter_content(content: str) -> Tuple[str, str]:
    """Split stored chapter content into ``(title, body)``."""
    if CHAPTER_SEPARATOR not in content:
        return "", content.strip()
    title, body = content.split(CHAPTER_SEPARATOR, 1)
    return title.strip(), body.strip()


@dataclass(frozen=True)
class GenerationSettings:
    """Per-novel generation knobs."""

    scenes_per_chapter: int = field(default_factory=lambda: settings.DEFAULT_SCENES_PER_CHAPTER)
    temperature: float = field(default_factory=lambda: settings.DEFAULT_TEMPERATURE)
    max_tokens: int = field(default_factory=lambda: settings.DEFAULT_MAX_TOKENS)
    chapter_word_target: int = field(default_factory=lambda: settings.CHAPTER_WORD_TARGET)

    @classmethod
    def from_dict(cls, data: Optional[Dict[str, Any]]) -> "GenerationSettings":
        data = data or {}
        defaults = cls()
        scenes = int(data.get("scenes_per_chapter") or defaults.scenes_per_chapter)
        return cls(
            scenes_per_chapter=max(scenes, 1),
            temperature=float(data.get("temperature", defaults.temperature)),
            max_tokens=int(data.get("max_tokens") or defaults.max_tokens),
            chapter_word_target=int(data.get("chapter_word_target") or defaults.chapter_word_target),
        )

    def to_dict(self) -> Dict[str, Any]:
        return {
            "scenes_per_chapter": self.scenes_per_chapter,
            "temperature": self.temperature,
            "max_tokens": self.max_tokens,
            "chapter_word_target": self.chapter_word_target,
        }


@dataclass
class Novel:
    id: UUID
    name: str
    premise: str
    style: str
    plan: Plan
    word_count: int = 0
    generation: GenerationSettings = field(default_factory=GenerationSettings)


@dataclass
class Chapter:
    """A generated chapter. Created once, never edited afterwards."""

    id: UUID
    novel_id: UUID
    number: int
    title: str
    content: str
    status: ChapterStatus
    word_count: int
    created_at: datetime

    @classmethod
    def create(cls, novel_id: UUID, number: int, title: str, body: str) -> "Chapter":
        return cls(
            id=uuid4(),
            novel_id=novel_id,
            number=number,
            title=title,
            content=compose_chapter_content(title, body),
            status=ChapterStatus.DRAFT,
            word_count=count_words(body),
            created_at=datetime.now(timezone.utc),
        )

    @property
    def body(self) -> str:
        return parse_chapter_content(self.content)[1]

    def to_dict(self) -> Dict[str, Any]:
        return {
            "id": str(self.id),
            "novel_id": str(self.novel_id),
            "number": self.number,
            "title": self.title,
            "content": self.content,
            "status": self.status.value,
            "word_count": self.word_count,
            "created_at": self.created_at.isoformat(),
        }
