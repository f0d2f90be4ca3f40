import uuid

import pytest
from sqlalchemy.exc import IntegrityError
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker, create_async_engine
from sqlalchemy.pool import StaticPool

from narrative_engine.db.base import Base
from narrative_engine.domains.planning.domain.entities import ChapterOutlineEntry
from narrative_engine.domains.world.domain.entities import EntityKind
from narrative_engine.domains.writing.domain.entities import Chapter, GenerationSettings
from narrative_engine.domains.writing.infrastructure.repositories import NovelRepository
from narrative_engine.shared_kernel.exceptions import EntityNotFoundError


PLAN_TEXT = (
    "**第一幕: 开端 (第1-10章)**\n核心概述: 故事开始。"
    "\n\n---\n**逐章细纲**\n---\n\n"
    "第1章: 一\n\n第2章: 二"
)


async def make_repository():
    engine = create_async_engine(
        "sqlite+aiosqlite:///:memory:",
        connect_args={"check_same_thread": False},
        poolclass=StaticPool,
    )
    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.create_all)
    session_factory = async_sessionmaker(engine, expire_on_commit=False, class_=AsyncSession)
    return NovelRepository(session_factory), engine


@pytest.mark.asyncio
async def test_create_and_get_novel_parses_plan():
    repository, engine = await make_repository()
    try:
        created = await repository.create_novel(
            "测试小说",
            premise="少年修仙",
            outline=PLAN_TEXT,
            generation=GenerationSettings(scenes_per_chapter=4),
        )

        novel = await repository.get_novel(created.id)

        assert novel.name == "测试小说"
        assert novel.generation.scenes_per_chapter == 4
        assert list(novel.plan.entries) == [1, 2]
        assert novel.plan.stages[0].end_chapter == 10
    finally:
        await engine.dispose()


@pytest.mark.asyncio
async def test_get_novel_raises_when_missing():
    repository, engine = await make_repository()
    try:
        with pytest.raises(EntityNotFoundError) as exc_info:
            await repository.get_novel(uuid.uuid4())
        assert exc_info.value.code == "NOVEL_NOT_FOUND"
    finally:
        await engine.dispose()


@pytest.mark.asyncio
async def test_save_plan_renders_entries():
    repository, engine = await make_repository()
    try:
        novel = await repository.create_novel("测试小说", outline=PLAN_TEXT)
        plan = novel.plan.with_entries([ChapterOutlineEntry(number=3, title="", summary="三", text="三")])

        await repository.save_plan(novel.id, plan)
        reloaded = await repository.get_novel(novel.id)

        assert list(reloaded.plan.entries) == [1, 2, 3]
        assert reloaded.plan.macro == novel.plan.macro
    finally:
        await engine.dispose()


@pytest.mark.asyncio
async def test_save_plan_for_unknown_novel_raises():
    repository, engine = await make_repository()
    try:
        novel = await repository.create_novel("测试小说", outline=PLAN_TEXT)
        with pytest.raises(EntityNotFoundError):
            await repository.save_plan(uuid.uuid4(), novel.plan)
    finally:
        await engine.dispose()


@pytest.mark.asyncio
async def test_create_chapter_increments_word_count():
    repository, engine = await make_repository()
    try:
        novel = await repository.create_novel("测试小说", outline=PLAN_TEXT)
        first = Chapter.create(novel.id, 1, "开端", "雨夜来客")
        second = Chapter.create(novel.id, 2, "追兵", "黑衣人 arrived")

        await repository.create_chapter(first)
        await repository.create_chapter(second)

        reloaded = await repository.get_novel(novel.id)
        assert reloaded.word_count == first.word_count + second.word_count == 4 + 4
        assert await repository.last_chapter_number(novel.id) == 2

        stored = await repository.get_chapter(novel.id, 2)
        assert stored.title == "追兵"
        assert stored.body == "黑衣人 arrived"
        assert [chapter.number for chapter in await repository.list_chapters(novel.id, 1, 5)] == [1, 2]
        assert await repository.get_chapter(novel.id, 3) is None
    finally:
        await engine.dispose()


@pytest.mark.asyncio
async def test_duplicate_chapter_rolls_back_word_count():
    repository, engine = await make_repository()
    try:
        novel = await repository.create_novel("测试小说", outline=PLAN_TEXT)
        await repository.create_chapter(Chapter.create(novel.id, 1, "开端", "一二三"))

        with pytest.raises(IntegrityError):
            await repository.create_chapter(Chapter.create(novel.id, 1, "重复", "四五六七"))

        reloaded = await repository.get_novel(novel.id)
        assert reloaded.word_count == 3
    finally:
        await engine.dispose()


@pytest.mark.asyncio
async def test_apply_world_changes_inserts_then_updates_by_name():
    repository, engine = await make_repository()
    try:
        novel = await repository.create_novel("测试小说", outline=PLAN_TEXT)

        first = await repository.apply_world_changes(
            novel.id,
            {EntityKind.CHARACTER: {"林风": "少年剑客"}, EntityKind.PLOT_CLUE: {"古戒": "会发光"}},
        )
        second = await repository.apply_world_changes(
            novel.id,
            {EntityKind.CHARACTER: {"林风": "觉醒后的剑客", "苏雨": "师姐"}},
        )

        original_id = first[EntityKind.CHARACTER][0].id
        updated = {entity.name: entity for entity in second[EntityKind.CHARACTER]}
        assert updated["林风"].id == original_id
        assert updated["林风"].content == "觉醒后的剑客"
        assert updated["苏雨"].kind is EntityKind.CHARACTER
        assert first[EntityKind.PLOT_CLUE][0].document == "古戒: 会发光"
    finally:
        await engine.dispose()
