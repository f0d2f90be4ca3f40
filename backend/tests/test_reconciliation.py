import json

import pytest

from narrative_engine.core.config import settings
from narrative_engine.domains.planning.domain.entities import ChapterOutlineEntry
from narrative_engine.services.reconciliation import (
    ELISION_MARKER,
    ReconciliationCycle,
    split_for_budget,
)


class DummyLLM:
    def __init__(self, responses):
        self.responses = list(responses)
        self.prompts = []

    async def chat(self, messages, **kwargs):
        self.prompts.append(messages[0]["content"])
        response = self.responses.pop(0)
        if isinstance(response, Exception):
            raise response
        return response


def _entry(number, text=None):
    text = text or f"剧情{number}"
    return ChapterOutlineEntry(number=number, title="", summary=text, text=text)


def _drift(**lists):
    return json.dumps(lists, ensure_ascii=False)


TWIST = _drift(plotTwists=[{"description": "师父叛变", "impactOnFuture": "主角出走"}])


@pytest.mark.asyncio
async def test_empty_report_returns_same_outline_without_editor_call():
    llm = DummyLLM([_drift()])
    future = [_entry(6), _entry(7)]

    result = await ReconciliationCycle(llm_client=llm).run("宏观", "五章正文", future)

    assert result is future
    assert len(llm.prompts) == 1


@pytest.mark.asyncio
async def test_analysis_failure_keeps_outline():
    llm = DummyLLM(["坏的", "还是坏的"])
    future = [_entry(6)]

    result = await ReconciliationCycle(llm_client=llm).run("宏观", "五章正文", future)

    assert result is future
    assert len(llm.prompts) == 1 + settings.RECONCILIATION_RETRIES


@pytest.mark.asyncio
async def test_editor_failure_keeps_outline():
    llm = DummyLLM([TWIST, RuntimeError("editor down")])
    future = [_entry(6)]

    result = await ReconciliationCycle(llm_client=llm).run("宏观", "五章正文", future)

    assert result is future


@pytest.mark.asyncio
async def test_editor_without_usable_entries_keeps_outline():
    llm = DummyLLM([TWIST, "我觉得不需要修改。"])
    future = [_entry(6)]

    result = await ReconciliationCycle(llm_client=llm).run("宏观", "五章正文", future)

    assert result is future


@pytest.mark.asyncio
async def test_revision_replaces_head_entries_only():
    llm = DummyLLM(
        [
            _drift(newCharacters=[{"name": "苏雨", "description": "师姐"}]),
            "```\n第6章: 苏雨登场\n\n第9章: 多出来的章节\n```",
        ]
    )
    future = [_entry(6), _entry(7)]

    result = await ReconciliationCycle(llm_client=llm).run("宏观叙事", "五章正文", future)

    assert [entry.number for entry in result] == [6, 7]
    assert result[0].text == "苏雨登场"
    assert result[1] == future[1]
    editor_prompt = llm.prompts[1]
    assert "宏观叙事" in editor_prompt
    assert "苏雨" in editor_prompt
    assert "第6章: 剧情6\n\n第7章: 剧情7" in editor_prompt
    assert "最小化修改" in editor_prompt
    assert ELISION_MARKER not in editor_prompt


@pytest.mark.asyncio
async def test_outline_over_budget_elides_tail(monkeypatch):
    monkeypatch.setattr(settings, "RECONCILIATION_OUTLINE_MAX_CHARS", 25)
    llm = DummyLLM([TWIST, "第6章: 新6\n\n第7章: 新7\n\n第8章: 不该改"])
    future = [_entry(6), _entry(7), _entry(8), _entry(9)]

    result = await ReconciliationCycle(llm_client=llm).run("宏观", "五章正文", future)

    assert [entry.text for entry in result] == ["新6", "新7", "剧情8", "剧情9"]
    assert result[2:] == future[2:]
    editor_prompt = llm.prompts[1]
    assert ELISION_MARKER in editor_prompt
    assert "第8章" not in editor_prompt


@pytest.mark.asyncio
async def test_nothing_to_reconcile_skips_model():
    llm = DummyLLM([])
    cycle = ReconciliationCycle(llm_client=llm)
    future = [_entry(6)]

    assert await cycle.run("宏观", "五章正文", []) == []
    assert await cycle.run("宏观", "  ", future) is future
    assert llm.prompts == []


def test_split_for_budget_keeps_at_least_one_entry():
    entries = [_entry(6, "很长" * 50), _entry(7)]

    head, tail = split_for_budget(entries, 10)

    assert head == [entries[0]]
    assert tail == [entries[1]]
    assert split_for_budget(entries, 10_000) == (entries, [])
