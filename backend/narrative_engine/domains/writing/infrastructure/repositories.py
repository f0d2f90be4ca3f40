"""Writing repositories backed by SQLAlchemy."""
from __future__ import annotations

from datetime import timezone
from typing import Dict, List, Optional
from uuid import UUID
import logging

from sqlalchemy import func, select, update
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from narrative_engine.domains.planning.domain.entities import Plan
from narrative_engine.domains.world.domain.entities import EntityKind, WorldEntity
from narrative_engine.domains.writing.domain.entities import (
    Chapter,
    ChapterStatus,
    GenerationSettings,
    Novel,
)
from narrative_engine.models import ChapterModel, NovelModel, WORLD_MODELS
from narrative_engine.services.outline_codec import OutlineCodec
from narrative_engine.shared_kernel.exceptions import EntityNotFoundError


logger = logging.getLogger(__name__)


class NovelRepository:
    """Store for novels, chapters and world entities.

    Every call opens its own session so the repository can be shared between
    the streaming request and detached background work.
    """

    def __init__(self, session_factory: async_sessionmaker[AsyncSession]) -> None:
        self.session_factory = session_factory

    @staticmethod
    def _to_novel(row: NovelModel) -> Novel:
        return Novel(
            id=row.id,
            name=row.name,
            premise=row.premise or "",
            style=row.style or "",
            plan=OutlineCodec.parse_plan(row.outline),
            word_count=row.word_count or 0,
            generation=GenerationSettings.from_dict(row.generation_settings),
        )

    @staticmethod
    def _to_chapter(row: ChapterModel) -> Chapter:
        created_at = row.created_at
        if created_at.tzinfo is None:
            created_at = created_at.replace(tzinfo=timezone.utc)
        return Chapter(
            id=row.id,
            novel_id=row.novel_id,
            number=row.number,
            title=row.title,
            content=row.content,
            status=ChapterStatus(row.status),
            word_count=row.word_count,
            created_at=created_at,
        )

    async def create_novel(
        self,
        name: str,
        premise: str = "",
        style: str = "",
        outline: str = "",
        generation: Optional[GenerationSettings] = None,
    ) -> Novel:
        async with self.session_factory() as session:
            async with session.begin():
                row = NovelModel(
                    name=name,
                    premise=premise,
                    style=style,
                    outline=outline,
                    word_count=0,
                    generation_settings=(generation or GenerationSettings()).to_dict(),
                )
                session.add(row)
            return self._to_novel(row)

    async def get_novel(self, novel_id: UUID) -> Novel:
        async with self.session_factory() as session:
            row = await session.get(NovelModel, novel_id)
            if row is None:
                raise EntityNotFoundError(
                    f"Novel {novel_id} not found",
                    code="NOVEL_NOT_FOUND",
                    details={"novel_id": str(novel_id)},
                )
            return self._to_novel(row)

    async def save_plan(self, novel_id: UUID, plan: Plan) -> None:
        outline = OutlineCodec.render_plan(plan)
        async with self.session_factory() as session:
            async with session.begin():
                result = await session.execute(
                    update(NovelModel).where(NovelModel.id == novel_id).values(outline=outline)
                )
                if result.rowcount == 0:
                    raise EntityNotFoundError(
                        f"Novel {novel_id} not found",
                        code="NOVEL_NOT_FOUND",
                        details={"novel_id": str(novel_id)},
                    )

    async def get_chapter(self, novel_id: UUID, number: int) -> Optional[Chapter]:
        async with self.session_factory() as session:
            result = await session.execute(
                select(ChapterModel).where(
                    ChapterModel.novel_id == novel_id,
                    ChapterModel.number == number,
                )
            )
            row = result.scalar_one_or_none()
            return self._to_chapter(row) if row else None

    async def list_chapters(self, novel_id: UUID, start: int, end: int) -> List[Chapter]:
        async with self.session_factory() as session:
            result = await session.execute(
                select(ChapterModel)
                .where(
                    ChapterModel.novel_id == novel_id,
                    ChapterModel.number >= start,
                    ChapterModel.number <= end,
                )
                .order_by(ChapterModel.number)
            )
            return [self._to_chapter(row) for row in result.scalars().all()]

    async def last_chapter_number(self, novel_id: UUID) -> int:
        async with self.session_factory() as session:
            result = await session.execute(
                select(func.max(ChapterModel.number)).where(ChapterModel.novel_id == novel_id)
            )
            return result.scalar() or 0

    async def create_chapter(self, chapter: Chapter) -> Chapter:
        """Insert the chapter and bump the novel word count in one transaction."""
        async with self.session_factory() as session:
            async with session.begin():
                session.add(
                    ChapterModel(
                        id=chapter.id,
                        novel_id=chapter.novel_id,
                        number=chapter.number,
                        title=chapter.title,
                        content=chapter.content,
                        status=chapter.status.value,
                        word_count=chapter.word_count,
                        created_at=chapter.created_at.astimezone(timezone.utc).replace(tzinfo=None),
                    )
                )
                await session.execute(
                    update(NovelModel)
                    .where(NovelModel.id == chapter.novel_id)
                    .values(word_count=NovelModel.word_count + chapter.word_count)
                )
        logger.info(
            "Chapter %s persisted for novel %s (%s words)",
            chapter.number,
            chapter.novel_id,
            chapter.word_count,
        )
        return chapter

    async def apply_world_changes(
        self,
        novel_id: UUID,
        changes: Dict[EntityKind, Dict[str, str]],
    ) -> Dict[EntityKind, List[WorldEntity]]:
        """Insert or update world entities by name in a single transaction."""
        written: Dict[EntityKind, List[WorldEntity]] = {}
        async with self.session_factory() as session:
            async with session.begin():
                for kind, items in changes.items():
                    if not items:
                        continue
                    model = WORLD_MODELS[kind]
                    result = await session.execute(
                        select(model).where(
                            model.novel_id == novel_id,
                            model.name.in_(list(items)),
                        )
                    )
                    existing = {row.name: row for row in result.scalars().all()}
                    rows = []
                    for name, content in items.items():
                        row = existing.get(name)
                        if row is None:
                            row = model(novel_id=novel_id, name=name, content=content)
                            session.add(row)
                        else:
                            row.content = content
                        rows.append(row)
                    await session.flush()
                    written[kind] = [
                        WorldEntity(
                            id=row.id,
                            novel_id=novel_id,
                            kind=kind,
                            name=row.name,
                            content=row.content,
                        )
                        for row in rows
                    ]
        return written
