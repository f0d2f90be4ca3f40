import uuid

import pytest

from narrative_engine.domains.planning.domain.entities import ChapterOutlineEntry, NarrativeStage, Plan
from narrative_engine.domains.writing.domain.entities import Novel
from narrative_engine.services.outline_manager import (
    OutlineManager,
    current_stage,
    find_gaps,
    stage_guidance,
)
from narrative_engine.shared_kernel.exceptions import PlanningExhausted


class DummyLLM:
    def __init__(self, responses=None, exc=None):
        self.responses = list(responses or [])
        self.exc = exc
        self.calls = []

    async def chat(self, messages, **kwargs):
        self.calls.append(messages[0]["content"])
        if self.exc:
            raise self.exc
        return self.responses.pop(0)


class DummyRepository:
    def __init__(self, novel=None):
        self.novel = novel
        self.saved = []

    async def save_plan(self, novel_id, plan):
        self.saved.append(plan)
        if self.novel is not None:
            self.novel.plan = plan

    async def get_novel(self, novel_id):
        return self.novel


ACT_ONE = NarrativeStage(name="第一幕: Act I", start_chapter=1, end_chapter=10, core_summary="主角觉醒")
ACT_TWO = NarrativeStage(name="第二幕: Act II", start_chapter=11, end_chapter=20, core_summary="宗门试炼")


def _entry(number, text=None):
    text = text or f"第{number}章的剧情"
    return ChapterOutlineEntry(number=number, title="", summary=text, text=text)


def _novel(numbers, stages=(ACT_ONE, ACT_TWO)):
    plan = Plan(macro="宏观规划", stages=list(stages), entries={n: _entry(n) for n in numbers})
    return Novel(id=uuid.uuid4(), name="测试小说", premise="", style="", plan=plan)


def _outline(numbers):
    return "\n\n".join(f"第{n}章: 新剧情{n}\n- 事件{n}" for n in numbers)


@pytest.mark.asyncio
async def test_missing_chapter_triggers_single_expansion():
    novel = _novel(range(1, 6))
    llm = DummyLLM(responses=[_outline(range(6, 13))])
    repository = DummyRepository(novel)
    manager = OutlineManager(repository, llm_client=llm)

    entry = await manager.ensure_chapter_planned(novel, 6)

    assert entry.number == 6
    assert entry.text.startswith("新剧情6")
    assert len(llm.calls) == 1
    assert "第6章到第12章" in llm.calls[0]
    assert all(number in novel.plan.entries for number in range(6, 11))
    assert repository.saved[-1] is novel.plan


@pytest.mark.asyncio
async def test_existing_entry_needs_no_model_call():
    novel = _novel(range(1, 6))
    llm = DummyLLM()
    manager = OutlineManager(DummyRepository(novel), llm_client=llm)

    entry = await manager.ensure_chapter_planned(novel, 3)

    assert entry.number == 3
    assert llm.calls == []


@pytest.mark.asyncio
async def test_planning_exhausted_after_one_failed_expansion():
    novel = _novel(range(1, 6))
    llm = DummyLLM(responses=["抱歉，我无法完成。"])
    repository = DummyRepository(novel)
    manager = OutlineManager(repository, llm_client=llm)

    with pytest.raises(PlanningExhausted) as exc_info:
        await manager.ensure_chapter_planned(novel, 6)

    assert exc_info.value.code == "PLANNING_EXHAUSTED"
    assert len(llm.calls) == 1
    assert repository.saved == []


@pytest.mark.asyncio
async def test_expansion_ignores_entries_outside_window_and_existing_ones():
    novel = _novel([1, 2, 5])
    llm = DummyLLM(responses=[_outline([2, 3, 4, 5, 9])])
    manager = OutlineManager(DummyRepository(novel), llm_client=llm)

    entry = await manager.ensure_chapter_planned(novel, 3)

    assert entry.text.startswith("新剧情3")
    assert "第3章到第4章" in llm.calls[0]
    assert novel.plan.entries[2].text == "第2章的剧情"
    assert novel.plan.entries[5].text == "第5章的剧情"
    assert 9 not in novel.plan.entries


@pytest.mark.asyncio
async def test_expand_if_running_low_is_best_effort():
    novel = _novel(range(1, 6))
    manager = OutlineManager(DummyRepository(novel), llm_client=DummyLLM(exc=RuntimeError("down")))

    assert await manager.expand_if_running_low(novel, 4) is False
    assert novel.plan.last_chapter_number == 5


@pytest.mark.asyncio
async def test_expand_if_running_low_appends_next_chunk():
    novel = _novel(range(1, 6))
    llm = DummyLLM(responses=[_outline(range(6, 13))])
    manager = OutlineManager(DummyRepository(novel), llm_client=llm)

    assert await manager.expand_if_running_low(novel, 1) is False
    assert await manager.expand_if_running_low(novel, 4) is True
    assert novel.plan.last_chapter_number == 12
    assert len(llm.calls) == 1


@pytest.mark.asyncio
async def test_apply_revision_keeps_entries_added_beyond_window():
    stored = _novel(range(1, 13))
    repository = DummyRepository(novel=stored)
    manager = OutlineManager(repository, llm_client=DummyLLM())

    plan = await manager.apply_revision(
        stored.id,
        5,
        [_entry(6, "修订6"), _entry(7, "修订7")],
        window_end=8,
    )

    assert plan.entries[6].text == "修订6"
    assert plan.entries[5].text == "第5章的剧情"
    assert 8 not in plan.entries
    assert list(plan.entries)[-4:] == [9, 10, 11, 12]
    assert repository.saved == [plan]


@pytest.mark.asyncio
async def test_expand_merges_into_latest_stored_plan():
    stored = _novel(range(1, 9))
    loaded = Novel(id=stored.id, name=stored.name, premise="", style="", plan=stored.plan)
    repository = DummyRepository(novel=stored)
    manager = OutlineManager(repository, llm_client=DummyLLM(responses=["第9章: 新增"]))

    await manager.apply_revision(stored.id, 6, [_entry(7, "修订后7"), _entry(8, "修订后8")])
    added = await manager.expand(loaded, 9, 1)

    assert added == 1
    final = repository.saved[-1]
    assert final.entries[7].text == "修订后7"
    assert final.entries[8].text == "修订后8"
    assert final.entries[9].text == "新增"
    assert loaded.plan is final


def test_stage_guidance_at_stage_start_and_end():
    stages = [ACT_ONE, ACT_TWO]

    opening = stage_guidance(stages, 1)
    closing = stage_guidance(stages, 10)

    assert "第一幕: Act I" in opening
    assert "阶段进度: 0% (1/10章)" in opening
    assert "确立本阶段" in opening
    assert "不要提前引入下一阶段「第二幕: Act II」" in opening
    assert "阶段进度: 90% (10/10章)" in closing
    assert "埋下伏笔" in closing


def test_stage_guidance_for_last_stage_has_no_restriction():
    guidance = stage_guidance([ACT_ONE, ACT_TWO], 15)

    assert "第二幕: Act II" in guidance
    assert "限制" not in guidance


def test_current_stage_tolerates_gaps_and_overflow():
    stages = [ACT_ONE, ACT_TWO]

    assert current_stage(stages, 25) is ACT_TWO
    assert current_stage(stages, 0) is ACT_ONE
    assert current_stage([], 3) is None
    assert stage_guidance([], 3) == ""


def test_find_gaps_lists_missing_numbers():
    plan = Plan(entries={n: _entry(n) for n in (1, 2, 4, 6)})

    assert find_gaps(plan) == [3, 5]
