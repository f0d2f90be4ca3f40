"""Novel model"""
from __future__ import annotations

from datetime import datetime
from typing import Any, List, Optional, TYPE_CHECKING
from uuid import UUID
import uuid

from sqlalchemy import JSON, DateTime, Integer, String, Text, Uuid
from sqlalchemy.ext.mutable import MutableDict
from sqlalchemy.orm import Mapped, mapped_column, relationship

from narrative_engine.db.base import Base

if TYPE_CHECKING:
    from narrative_engine.models.chapter import ChapterModel


def utc_now():
    """Return current UTC time - compatible with SQLAlchemy default"""
    # Timezone-naive UTC for TIMESTAMP WITHOUT TIME ZONE columns
    return datetime.utcnow()


class NovelModel(Base):
    """Novel model"""
    __tablename__ = "novels"

    id: Mapped[UUID] = mapped_column(Uuid, primary_key=True, default=uuid.uuid4)
    name: Mapped[str] = mapped_column(String(255), nullable=False)
    premise: Mapped[Optional[str]] = mapped_column(Text, nullable=True)
    style: Mapped[Optional[str]] = mapped_column(Text, nullable=True)

    # Macro blueprint + detailed outline, stored as one text blob
    outline: Mapped[str] = mapped_column(Text, default="", nullable=False)
    word_count: Mapped[int] = mapped_column(Integer, default=0, nullable=False)

    # scenes_per_chapter, temperature, max_tokens, chapter_word_target
    generation_settings: Mapped[dict[str, Any]] = mapped_column(
        MutableDict.as_mutable(JSON),
        default=dict,
    )

    # Timestamps
    created_at: Mapped[datetime] = mapped_column(DateTime, default=utc_now, nullable=False)
    updated_at: Mapped[Optional[datetime]] = mapped_column(DateTime, default=utc_now, onupdate=utc_now)

    # Relationships
    chapters: Mapped[List["ChapterModel"]] = relationship(
        "ChapterModel",
        back_populates="novel",
        cascade="all, delete-orphan",
    )

    def __repr__(self):
        return f"<Novel {self.name}>"
