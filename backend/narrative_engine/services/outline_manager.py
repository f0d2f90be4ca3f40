"""Outline manager: chapter lookup, expansion and stage guidance."""
from __future__ import annotations

from typing import Any, List, Optional, Sequence, Tuple
import logging
import math
import time

from narrative_engine.core.config import settings
from narrative_engine.domains.planning.domain.entities import (
    ChapterOutlineEntry,
    NarrativeStage,
    Plan,
)
from narrative_engine.domains.writing.domain.entities import Novel
from narrative_engine.infrastructure.observability import (
    CHAPTER_GENERATION_DURATION,
    OUTLINE_EXPANSION_TOTAL,
)
from narrative_engine.services.llm_client import DeepSeekClient
from narrative_engine.services.llm_output import strip_code_fences
from narrative_engine.services.outline_codec import OutlineCodec
from narrative_engine.shared_kernel.exceptions import PlanningExhausted


logger = logging.getLogger(__name__)


def current_stage(stages: Sequence[NarrativeStage], chapter_number: int) -> Optional[NarrativeStage]:
    """Stage containing the chapter; past the end the last stage, before the start the first."""
    if not stages:
        return None
    for stage in stages:
        if stage.contains(chapter_number):
            return stage
    ordered = sorted(stages, key=lambda item: item.start_chapter)
    if chapter_number > max(stage.end_chapter for stage in ordered):
        return max(ordered, key=lambda item: item.end_chapter)
    return ordered[0]


def _next_stage(stages: Sequence[NarrativeStage], stage: NarrativeStage) -> Optional[NarrativeStage]:
    later = [item for item in stages if item.start_chapter > stage.end_chapter]
    if not later:
        return None
    return min(later, key=lambda item: item.start_chapter)


def stage_guidance(stages: Sequence[NarrativeStage], chapter_number: int) -> str:
    """Pacing guidance for a chapter relative to its macro stage."""
    stage = current_stage(stages, chapter_number)
    if stage is None:
        return ""
    position = min(max(chapter_number - stage.start_chapter, 0), stage.length - 1)
    progress = math.floor(position / stage.length * 100)
    lines = [
        f"当前叙事阶段: {stage.name} (第{stage.start_chapter}-{stage.end_chapter}章)",
        f"阶段进度: {progress}% ({position + 1}/{stage.length}章)",
    ]
    if stage.core_summary:
        lines.append(f"本阶段核心概述: {stage.core_summary}")
    upcoming = _next_stage(stages, stage)
    if upcoming is not None:
        lines.append(
            f"限制: 不要提前引入下一阶段「{upcoming.name}」的内容"
            + (f"（{upcoming.core_summary}）" if upcoming.core_summary else "")
            + "。"
        )
        if progress > 80:
            lines.append("本阶段即将结束，可以为下一阶段埋下伏笔，但不要正式展开。")
    if progress < 20:
        lines.append("本阶段刚刚开始，请先确立本阶段的基本情境、人物处境和核心冲突。")
    return "\n".join(lines)


def find_gaps(plan: Plan) -> List[int]:
    """Chapter numbers missing between 1 and the last planned chapter."""
    return [number for number in range(1, plan.last_chapter_number) if number not in plan.entries]


class OutlineManager:
    """Owns the plan of a novel: lookups, expansion and revisions."""

    def __init__(self, repository: Any, llm_client: Optional[DeepSeekClient] = None) -> None:
        self.repository = repository
        self.llm_client = llm_client or DeepSeekClient()

    async def ensure_chapter_planned(self, novel: Novel, chapter_number: int) -> ChapterOutlineEntry:
        """Return the outline entry for ``chapter_number``, expanding the outline once if needed."""
        entry = novel.plan.get(chapter_number)
        if entry is not None:
            return entry

        start, count = self._expansion_window(novel.plan, chapter_number)
        logger.info(
            "Chapter %s of novel %s has no outline entry; expanding %s entries from %s",
            chapter_number,
            novel.id,
            count,
            start,
        )
        await self.expand(novel, start, count)
        entry = novel.plan.get(chapter_number)
        if entry is None:
            raise PlanningExhausted(
                f"No outline entry for chapter {chapter_number} after expansion",
                code="PLANNING_EXHAUSTED",
                details={"novel_id": str(novel.id), "chapter_number": chapter_number},
            )
        return entry

    async def expand_if_running_low(self, novel: Novel, chapter_number: int) -> bool:
        """Best-effort look-ahead expansion when few entries remain after the chapter."""
        if novel.plan.remaining_after(chapter_number) >= settings.OUTLINE_EXPAND_THRESHOLD:
            return False
        start = max(novel.plan.last_chapter_number, chapter_number) + 1
        try:
            added = await self.expand(novel, start, settings.OUTLINE_EXPAND_CHUNK_SIZE)
        except Exception:
            logger.warning("Look-ahead outline expansion failed for novel %s", novel.id, exc_info=True)
            return False
        return added > 0

    def _expansion_window(self, plan: Plan, chapter_number: int) -> Tuple[int, int]:
        last = plan.last_chapter_number
        if chapter_number < last:
            gap_start = chapter_number
            while gap_start - 1 >= 1 and (gap_start - 1) not in plan.entries:
                gap_start -= 1
            gap_end = chapter_number
            while gap_end + 1 < last and (gap_end + 1) not in plan.entries:
                gap_end += 1
            return gap_start, gap_end - gap_start + 1
        return last + 1, max(settings.OUTLINE_EXPAND_CHUNK_SIZE, chapter_number - last)

    async def expand(self, novel: Novel, start: int, count: int) -> int:
        """Ask the model for ``count`` entries from ``start`` and merge them into the plan."""
        end = start + count - 1
        prompt = self._build_expansion_prompt(novel, start, end)
        began = time.perf_counter()
        try:
            response = await self.llm_client.chat(
                messages=[{"role": "user", "content": prompt}],
                temperature=novel.generation.temperature,
                max_tokens=settings.OUTLINE_EXPAND_MAX_TOKENS,
            )
        except Exception:
            OUTLINE_EXPANSION_TOTAL.labels("error").inc()
            raise
        finally:
            CHAPTER_GENERATION_DURATION.labels("expand_outline").observe(time.perf_counter() - began)

        # Merge into the stored plan, not the one ``novel`` was loaded with.
        stored = await self.repository.get_novel(novel.id)
        plan = stored.plan
        parsed = OutlineCodec.parse_entries(strip_code_fences(response))
        new_entries = [
            entry
            for number, entry in parsed.items()
            if start <= number <= end and number not in plan.entries
        ]
        if not new_entries:
            OUTLINE_EXPANSION_TOTAL.labels("empty").inc()
            logger.warning(
                "Outline expansion for chapters %s-%s of novel %s returned no usable entries",
                start,
                end,
                novel.id,
            )
            novel.plan = plan
            return 0

        novel.plan = plan.with_entries(new_entries)
        await self.repository.save_plan(novel.id, novel.plan)
        OUTLINE_EXPANSION_TOTAL.labels("ok").inc()
        logger.info(
            "Outline of novel %s expanded with %s entries (%s-%s)",
            novel.id,
            len(new_entries),
            new_entries[0].number,
            new_entries[-1].number,
        )
        return len(new_entries)

    def _build_expansion_prompt(self, novel: Novel, start: int, end: int) -> str:
        recent = novel.plan.recent_entries(settings.OUTLINE_RECENT_ENTRIES)
        recent_block = OutlineCodec.render_entries(recent) or "无"
        guidance = stage_guidance(novel.plan.stages, start) or "无"
        return (
            "你是一位经验丰富的网络小说策划。请根据宏观叙事规划和已有章节大纲，"
            f"续写第{start}章到第{end}章的逐章细纲。\n\n"
            f"【小说名称】{novel.name}\n"
            f"【故事前提】{novel.premise or '无'}\n\n"
            f"【宏观叙事规划】\n{novel.plan.macro or '无'}\n\n"
            f"【当前阶段指引】\n{guidance}\n\n"
            f"【最近的章节大纲】\n{recent_block}\n\n"
            "【输出要求】\n"
            f"- 只输出第{start}章到第{end}章，每章以“第X章: ”开头，后接章节标题和剧情概要。\n"
            "- 可以用“- ”列出本章的关键事件。\n"
            "- 情节必须与已有大纲自然衔接，遵守阶段指引，不要跳跃到后续阶段。\n"
            "- 不要输出任何解释性文字。"
        )

    async def apply_revision(
        self,
        novel_id: Any,
        after_chapter: int,
        revised: List[ChapterOutlineEntry],
        window_end: Optional[int] = None,
    ) -> Plan:
        """Replace the future outline of the latest stored plan with ``revised``.

        Entries beyond ``window_end`` (appended after the revision was
        prepared) are kept.
        """
        novel = await self.repository.get_novel(novel_id)
        plan = novel.plan.with_future(after_chapter, revised, keep_beyond=window_end)
        await self.repository.save_plan(novel_id, plan)
        logger.info(
            "Future outline of novel %s revised after chapter %s (%s entries)",
            novel_id,
            after_chapter,
            len(revised),
        )
        return plan
