import asyncio
import uuid

import pytest

from narrative_engine.domains.planning.domain.entities import ChapterOutlineEntry, Plan
from narrative_engine.domains.writing.domain.entities import Chapter, GenerationSettings, Novel
from narrative_engine.services.chapter_decomposer import ChapterDecomposition
from narrative_engine.services.generation_pipeline import ChapterGenerationPipeline
from narrative_engine.services.progress_tracker import GenerationTaskRegistry, GenerationTaskState
from narrative_engine.services.scene_generator import SceneDelta
from narrative_engine.shared_kernel.exceptions import PlanningExhausted, SceneGenerationError


def _entry(number, text=None):
    text = text or f"剧情{number}"
    return ChapterOutlineEntry(number=number, title="", summary=text, text=text)


class FakeRepository:
    def __init__(self, novel, chapters=()):
        self.novel = novel
        self.chapters = {chapter.number: chapter for chapter in chapters}
        self.created = []

    async def get_novel(self, novel_id):
        return self.novel

    async def last_chapter_number(self, novel_id):
        return max(self.chapters) if self.chapters else 0

    async def get_chapter(self, novel_id, number):
        return self.chapters.get(number)

    async def create_chapter(self, chapter):
        self.chapters[chapter.number] = chapter
        self.created.append(chapter)
        return chapter

    async def list_chapters(self, novel_id, start, end):
        return [self.chapters[number] for number in sorted(self.chapters) if start <= number <= end]


class FakeOutlineManager:
    def __init__(self, exc=None):
        self.exc = exc
        self.planned = []
        self.revisions = []

    async def ensure_chapter_planned(self, novel, number):
        self.planned.append(number)
        if self.exc:
            raise self.exc
        return novel.plan.get(number) or _entry(number)

    async def expand_if_running_low(self, novel, number):
        return False

    async def apply_revision(self, novel_id, after_chapter, revised, window_end=None):
        self.revisions.append((after_chapter, revised, window_end))


class FakeDecomposer:
    def __init__(self):
        self.requests = []

    async def decompose(self, request):
        self.requests.append(request)
        return ChapterDecomposition(title=f"标题{request.chapter_number}", scenes=["场景一", "场景二"])


class FakeSceneGenerator:
    def __init__(self, failures=0):
        self.failures = failures
        self.calls = 0
        self.closed = 0

    async def stream(self, novel, number, decomposition, draft, previous_tail="", instruction=None):
        self.calls += 1
        try:
            for index, scene in enumerate(decomposition.scenes):
                text = f"{scene}正文"
                yield SceneDelta(scene_index=index, text=text)
                if self.failures:
                    self.failures -= 1
                    raise SceneGenerationError("scene broke", code="SCENE_FAILED")
                draft.scene_texts.append(text)
        finally:
            self.closed += 1


class FakeWorldTracker:
    def __init__(self, delay=0):
        self.delay = delay
        self.evolved = []

    async def evolve(self, novel_id, chapter_text, chapter_number=None):
        if self.delay:
            await asyncio.sleep(self.delay)
        self.evolved.append((chapter_number, chapter_text))


class FakeReconciliation:
    def __init__(self, revise=True):
        self.revise = revise
        self.calls = []

    async def run(self, macro, written_text, future_entries):
        self.calls.append((macro, written_text, future_entries))
        if not self.revise:
            return future_entries
        return [_entry(entry.number, f"修订{entry.number}") for entry in future_entries]


def _novel(numbers=range(1, 9)):
    return Novel(
        id=uuid.uuid4(),
        name="测试小说",
        premise="",
        style="",
        plan=Plan(macro="宏观", entries={n: _entry(n) for n in numbers}),
        generation=GenerationSettings(scenes_per_chapter=2),
    )


def _pipeline(novel, chapters=(), **overrides):
    parts = {
        "outline_manager": FakeOutlineManager(),
        "decomposer": FakeDecomposer(),
        "scene_generator": FakeSceneGenerator(),
        "world_tracker": FakeWorldTracker(),
        "reconciliation": FakeReconciliation(),
        "progress": GenerationTaskRegistry(),
    }
    parts.update(overrides)
    repository = FakeRepository(novel, chapters)
    return ChapterGenerationPipeline(repository, llm_client=object(), **parts), repository


async def _events(stream):
    return [event async for event in stream]


@pytest.mark.asyncio
async def test_stream_chapter_ends_with_chapter_end_and_persists():
    novel = _novel()
    previous = Chapter.create(novel.id, 1, "开端", "上一章" * 10)
    pipeline, repository = _pipeline(novel, chapters=[previous])

    events = await _events(pipeline.stream_chapter(novel.id))
    await pipeline.wait_for_background()

    types = [event.type for event in events]
    assert types[-1] == "chapter_end"
    assert types.count("content") == 2
    assert "".join(event.chunk for event in events if event.type == "content") == "场景一正文场景二正文"
    assert events[-1].chapter["number"] == 2
    assert repository.created[0].body == "场景一正文\n\n场景二正文"
    assert repository.created[0].title == "标题2"
    request = pipeline.decomposer.requests[0]
    assert request.previous_tail.endswith("上一章")
    assert request.previous_entry.number == 1
    assert request.next_entry.number == 3
    assert pipeline.world_tracker.evolved == [(2, "场景一正文\n\n场景二正文")]
    assert pipeline.progress.get(novel.id).state is GenerationTaskState.DONE


@pytest.mark.asyncio
async def test_scene_failure_persists_nothing():
    novel = _novel()
    pipeline, repository = _pipeline(novel, scene_generator=FakeSceneGenerator(failures=1))

    events = await _events(pipeline.stream_chapter(novel.id, chapter_number=1))
    await pipeline.wait_for_background()

    assert events[-1].type == "error"
    assert "chapter_end" not in [event.type for event in events]
    assert repository.created == []
    assert pipeline.world_tracker.evolved == []
    task = pipeline.progress.get(novel.id)
    assert task.state is GenerationTaskState.FAILED
    assert "scene broke" in task.message


@pytest.mark.asyncio
async def test_existing_chapter_is_rejected():
    novel = _novel()
    pipeline, repository = _pipeline(novel, chapters=[Chapter.create(novel.id, 1, "开端", "正文")])

    events = await _events(pipeline.stream_chapters(novel.id, 1, start_chapter=1))

    assert [event.type for event in events] == ["error"]
    assert "already exists" in events[0].message
    assert pipeline.scene_generator.calls == 0


@pytest.mark.asyncio
async def test_stream_chapters_retries_failed_chapter():
    novel = _novel()
    pipeline, repository = _pipeline(novel, scene_generator=FakeSceneGenerator(failures=1))

    events = await _events(pipeline.stream_chapters(novel.id, 2))
    await pipeline.wait_for_background()

    ends = [event for event in events if event.type == "chapter_end"]
    assert [event.chapter["number"] for event in ends] == [1, 2]
    assert any("重试" in event.message for event in events if event.type == "status")
    assert pipeline.scene_generator.calls == 3
    assert [chapter.number for chapter in repository.created] == [1, 2]
    assert pipeline.progress.get(novel.id).state is GenerationTaskState.DONE


@pytest.mark.asyncio
async def test_stream_chapters_gives_up_after_max_attempts(monkeypatch):
    from narrative_engine.core.config import settings

    monkeypatch.setattr(settings, "CHAPTER_MAX_ATTEMPTS", 2)
    novel = _novel()
    pipeline, repository = _pipeline(novel, scene_generator=FakeSceneGenerator(failures=5))

    events = await _events(pipeline.stream_chapters(novel.id, 3))

    assert events[-1].type == "error"
    assert events[-1].message.startswith("第1章生成失败")
    assert pipeline.scene_generator.calls == 2
    assert repository.created == []


@pytest.mark.asyncio
async def test_planning_exhausted_is_not_retried():
    novel = _novel()
    outline = FakeOutlineManager(exc=PlanningExhausted("no outline for chapter 9", code="PLANNING_EXHAUSTED"))
    pipeline, _ = _pipeline(novel, outline_manager=outline)

    events = await _events(pipeline.stream_chapters(novel.id, 2, start_chapter=9))

    assert outline.planned == [9]
    assert events[-1].type == "error"
    assert "第9章生成失败" in events[-1].message


@pytest.mark.asyncio
async def test_batch_closing_chapter_triggers_reconciliation():
    novel = _novel(range(1, 9))
    written = [Chapter.create(novel.id, n, f"第{n}章", f"正文{n}") for n in range(1, 5)]
    pipeline, _ = _pipeline(novel, chapters=written)

    events = await _events(pipeline.stream_chapter(novel.id))
    await pipeline.wait_for_background()

    assert events[-1].chapter["number"] == 5
    macro, text, future = pipeline.reconciliation.calls[0]
    assert macro == "宏观"
    assert "第1章 第1章\n正文1" in text
    assert "第5章 标题5" in text
    assert [entry.number for entry in future] == [6, 7, 8]
    after, revised, window_end = pipeline.outline_manager.revisions[0]
    assert after == 5
    assert window_end == 8
    assert revised[0].text == "修订6"


@pytest.mark.asyncio
async def test_unchanged_reconciliation_skips_plan_write():
    novel = _novel(range(1, 9))
    written = [Chapter.create(novel.id, n, "t", "正文") for n in range(1, 6)]
    pipeline, _ = _pipeline(novel, chapters=written, reconciliation=FakeReconciliation(revise=False))

    assert await pipeline.reconcile(novel.id, 5) is False
    assert pipeline.outline_manager.revisions == []


@pytest.mark.asyncio
async def test_chapters_outside_batch_skip_reconciliation():
    novel = _novel()
    pipeline, _ = _pipeline(novel)

    await _events(pipeline.stream_chapter(novel.id))
    await pipeline.wait_for_background()

    assert pipeline.world_tracker.evolved
    assert pipeline.reconciliation.calls == []


@pytest.mark.asyncio
async def test_closing_the_stream_cancels_generation():
    novel = _novel()
    pipeline, repository = _pipeline(novel)

    stream = pipeline.stream_chapter(novel.id)
    async for event in stream:
        if event.type == "content":
            break
    await stream.aclose()

    assert repository.created == []
    assert pipeline.scene_generator.closed == 1
    task = pipeline.progress.get(novel.id)
    assert task.state is GenerationTaskState.FAILED
    assert task.message == "已取消"


@pytest.mark.asyncio
async def test_wait_for_background_cancels_slow_enrichment():
    novel = _novel()
    pipeline, _ = _pipeline(novel, world_tracker=FakeWorldTracker(delay=10))

    await _events(pipeline.stream_chapter(novel.id))
    tasks = set(pipeline._background)
    await pipeline.wait_for_background(timeout=0.01)
    await asyncio.gather(*tasks, return_exceptions=True)

    assert len(tasks) == 1
    assert all(task.cancelled() for task in tasks)
