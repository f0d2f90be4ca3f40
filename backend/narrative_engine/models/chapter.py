"""Chapter model"""
from __future__ import annotations

from datetime import datetime
from typing import TYPE_CHECKING
from uuid import UUID
import uuid

from sqlalchemy import DateTime, ForeignKey, Integer, String, Text, UniqueConstraint, Uuid
from sqlalchemy.orm import Mapped, mapped_column, relationship

from narrative_engine.db.base import Base
from narrative_engine.models.novel import utc_now

if TYPE_CHECKING:
    from narrative_engine.models.novel import NovelModel


class ChapterModel(Base):
    """Chapter model"""
    __tablename__ = "chapters"
    __table_args__ = (UniqueConstraint("novel_id", "number", name="uq_chapters_novel_number"),)

    id: Mapped[UUID] = mapped_column(Uuid, primary_key=True, default=uuid.uuid4)
    novel_id: Mapped[UUID] = mapped_column(
        Uuid,
        ForeignKey("novels.id", ondelete="CASCADE"),
        nullable=False,
        index=True,
    )
    number: Mapped[int] = mapped_column(Integer, nullable=False)
    title: Mapped[str] = mapped_column(String(255), default="", nullable=False)
    content: Mapped[str] = mapped_column(Text, default="", nullable=False)
    status: Mapped[str] = mapped_column(String(32), default="draft", nullable=False)
    word_count: Mapped[int] = mapped_column(Integer, default=0, nullable=False)
    created_at: Mapped[datetime] = mapped_column(DateTime, default=utc_now, nullable=False)

    novel: Mapped["NovelModel"] = relationship("NovelModel", back_populates="chapters")

    def __repr__(self):
        return f"<Chapter {self.number} {self.title}>"
