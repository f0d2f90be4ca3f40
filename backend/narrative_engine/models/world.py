"""World entity models (characters, scenes, plot clues)"""
from __future__ import annotations

from datetime import datetime
from typing import Dict, Optional, Type
from uuid import UUID
import uuid

from sqlalchemy import DateTime, ForeignKey, String, Text, UniqueConstraint, Uuid
from sqlalchemy.orm import Mapped, declared_attr, mapped_column

from narrative_engine.db.base import Base
from narrative_engine.domains.world.domain.entities import EntityKind
from narrative_engine.models.novel import utc_now


class WorldEntityMixin:
    """Columns shared by every world entity table; names are unique per novel."""

    id: Mapped[UUID] = mapped_column(Uuid, primary_key=True, default=uuid.uuid4)
    name: Mapped[str] = mapped_column(String(255), nullable=False)
    content: Mapped[str] = mapped_column(Text, default="", nullable=False)
    created_at: Mapped[datetime] = mapped_column(DateTime, default=utc_now, nullable=False)
    updated_at: Mapped[Optional[datetime]] = mapped_column(DateTime, default=utc_now, onupdate=utc_now)

    @declared_attr
    def novel_id(cls) -> Mapped[UUID]:
        return mapped_column(
            Uuid,
            ForeignKey("novels.id", ondelete="CASCADE"),
            nullable=False,
            index=True,
        )

    @declared_attr.directive
    def __table_args__(cls):
        return (UniqueConstraint("novel_id", "name", name=f"uq_{cls.__tablename__}_novel_name"),)

    def __repr__(self):
        return f"<{type(self).__name__} {self.name}>"


class CharacterModel(WorldEntityMixin, Base):
    __tablename__ = "characters"


class SceneModel(WorldEntityMixin, Base):
    __tablename__ = "scenes"


class PlotClueModel(WorldEntityMixin, Base):
    __tablename__ = "plot_clues"


WORLD_MODELS: Dict[EntityKind, Type[WorldEntityMixin]] = {
    EntityKind.CHARACTER: CharacterModel,
    EntityKind.SCENE: SceneModel,
    EntityKind.PLOT_CLUE: PlotClueModel,
}
