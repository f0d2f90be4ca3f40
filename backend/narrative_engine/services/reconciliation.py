"""Reconciliation cycle: analyse drift in written chapters, then minimally revise the future outline."""
from __future__ import annotations

from dataclasses import asdict
from typing import Any, Dict, List, Optional, Tuple, TypedDict
import json
import logging
import time

from langgraph.graph import END, StateGraph

from narrative_engine.core.config import settings
from narrative_engine.domains.planning.domain.entities import ChapterOutlineEntry
from narrative_engine.domains.world.domain.entities import DriftReport
from narrative_engine.infrastructure.observability import (
    CHAPTER_GENERATION_DURATION,
    LLM_RETRY_TOTAL,
    RECONCILIATION_TOTAL,
)
from narrative_engine.infrastructure.resilience import async_retry
from narrative_engine.services.drift_analyst import DriftAnalyst
from narrative_engine.services.llm_client import DeepSeekClient
from narrative_engine.services.llm_output import strip_code_fences
from narrative_engine.services.outline_codec import OutlineCodec


logger = logging.getLogger(__name__)

ELISION_MARKER = "……（后续章节规划从略，保持不变）"


class ReconciliationState(TypedDict, total=False):
    macro: str
    written_text: str
    future_entries: List[ChapterOutlineEntry]
    report: Optional[DriftReport]
    revised_entries: Optional[List[ChapterOutlineEntry]]
    error: Optional[str]


def split_for_budget(
    entries: List[ChapterOutlineEntry],
    max_chars: int,
) -> Tuple[List[ChapterOutlineEntry], List[ChapterOutlineEntry]]:
    """Split entries into a head that fits ``max_chars`` when rendered and an untouched tail.

    The head always holds at least one entry.
    """
    head: List[ChapterOutlineEntry] = []
    used = 0
    for index, entry in enumerate(entries):
        size = len(entry.render()) + 2
        if head and used + size > max_chars:
            return head, entries[index:]
        head.append(entry)
        used += size
    return head, []


def report_to_json(report: DriftReport) -> str:
    payload = {
        "newElements": [
            {"kind": change.kind.value, "name": change.name, "description": change.description}
            for change in report.new_entities
        ],
        "updatedElements": [
            {"kind": change.kind.value, "name": change.name, "updatedDescription": change.description}
            for change in report.updated_entities
        ],
        "plotTwists": [asdict(twist) for twist in report.plot_twists],
        "relationshipChanges": [
            {
                "charactersInvolved": list(change.characters),
                "changeDescription": change.change_description,
            }
            for change in report.relationship_changes
        ],
    }
    return json.dumps(payload, ensure_ascii=False, indent=2)


class ReconciliationCycle:
    """ANALYZE -> (empty report: DONE) -> REVISE -> DONE.

    Best-effort: any failure yields the original future outline.
    """

    def __init__(
        self,
        llm_client: Optional[DeepSeekClient] = None,
        analyst: Optional[DriftAnalyst] = None,
    ) -> None:
        self.llm_client = llm_client or DeepSeekClient()
        self.analyst = analyst or DriftAnalyst(self.llm_client)
        self.graph = self._build_graph()

    def _build_graph(self):
        graph = StateGraph(ReconciliationState)
        graph.add_node("analyze", self.analyze)
        graph.add_node("revise", self.revise)

        graph.set_entry_point("analyze")
        graph.add_conditional_edges(
            "analyze",
            self._needs_revision,
            {
                "revise": "revise",
                "done": END,
            },
        )
        graph.add_edge("revise", END)
        return graph.compile()

    async def run(
        self,
        macro: str,
        written_text: str,
        future_entries: List[ChapterOutlineEntry],
    ) -> List[ChapterOutlineEntry]:
        """Return the revised future outline, or ``future_entries`` itself when nothing changed."""
        if not future_entries or not written_text.strip():
            RECONCILIATION_TOTAL.labels("skipped").inc()
            return future_entries

        start = time.perf_counter()
        try:
            result = await self.graph.ainvoke(
                {
                    "macro": macro,
                    "written_text": written_text,
                    "future_entries": future_entries,
                }
            )
        except Exception:
            RECONCILIATION_TOTAL.labels("failed").inc()
            logger.error("Reconciliation cycle crashed; keeping the future outline", exc_info=True)
            return future_entries
        finally:
            CHAPTER_GENERATION_DURATION.labels("reconciliation").observe(time.perf_counter() - start)

        revised = result.get("revised_entries")
        if result.get("error"):
            RECONCILIATION_TOTAL.labels("failed").inc()
            return future_entries
        if revised is None:
            RECONCILIATION_TOTAL.labels("skipped").inc()
            return future_entries
        RECONCILIATION_TOTAL.labels("revised").inc()
        return revised

    def _needs_revision(self, state: ReconciliationState) -> str:
        report = state.get("report")
        if state.get("error") or report is None or report.is_empty():
            return "done"
        return "revise"

    async def analyze(self, state: ReconciliationState) -> Dict[str, Any]:
        try:
            report = await async_retry(
                self.analyst.analyze,
                state["written_text"],
                retries=settings.RECONCILIATION_RETRIES,
                backoff=settings.WORLD_EVOLUTION_BACKOFF,
                on_retry=self._on_retry,
            )
        except Exception as exc:
            logger.warning("Drift analysis failed; outline left unchanged: %s", exc)
            return {"report": None, "error": str(exc)}
        if report.is_empty():
            logger.info("Drift report is empty; outline revision skipped")
        return {"report": report}

    async def revise(self, state: ReconciliationState) -> Dict[str, Any]:
        future_entries = state["future_entries"]
        head, tail = split_for_budget(future_entries, settings.RECONCILIATION_OUTLINE_MAX_CHARS)
        prompt = self._build_editor_prompt(state["macro"], state["report"], head, elided=bool(tail))
        try:
            response = await self.llm_client.chat(
                messages=[{"role": "user", "content": prompt}],
                temperature=settings.RECONCILIATION_TEMPERATURE,
                max_tokens=settings.RECONCILIATION_MAX_TOKENS,
            )
        except Exception as exc:
            logger.warning("Outline editor failed; outline left unchanged: %s", exc)
            return {"error": str(exc)}

        head_numbers = {entry.number for entry in head}
        parsed = OutlineCodec.parse_entries(strip_code_fences(response))
        revised_head = {number: entry for number, entry in parsed.items() if number in head_numbers}
        if not revised_head:
            logger.warning("Outline editor returned no usable entries; outline left unchanged")
            return {"error": "empty revision"}

        merged = [revised_head.get(entry.number, entry) for entry in head]
        logger.info(
            "Outline editor revised %s of %s head entries (%s entries elided)",
            sum(1 for entry in head if entry.number in revised_head),
            len(head),
            len(tail),
        )
        return {"revised_entries": merged + list(tail)}

    def _build_editor_prompt(
        self,
        macro: str,
        report: DriftReport,
        head: List[ChapterOutlineEntry],
        elided: bool,
    ) -> str:
        future_block = OutlineCodec.render_entries(head)
        if elided:
            future_block += f"\n\n{ELISION_MARKER}"
        return (
            "你是一位经验丰富的首席编辑，负责维护一部长篇小说的逻辑一致性和长期吸引力。"
            "请根据刚刚发生的最新剧情进展，对未来的章节大纲做精细、必要的微调。\n\n"
            "【宏观叙事规划（不可修改）】\n"
            f"{macro or '无'}\n\n"
            "【最新剧情变化摘要（漂移报告）】\n"
            f"{report_to_json(report)}\n\n"
            "【原定的未来章节规划】\n"
            f"---\n{future_block}\n---\n\n"
            "【修改原则】\n"
            "1. 最小化修改: 只在绝对必要时修改，不做无关的大规模重写。\n"
            "2. 无缝整合: 把报告中的新角色、新线索、新情节自然融入未来规划。\n"
            "3. 解决冲突: 新进展与未来规划有逻辑冲突时，巧妙地化解。\n"
            "4. 主线稳定: 保持宏观叙事规划中的核心主线和重大里程碑不变。\n\n"
            "【输出要求】\n"
            "- 只输出修订后的未来章节规划，章节编号与原规划一一对应，每章以“第X章: ”开头。\n"
            "- 保持与原规划完全相同的格式，不要添加任何解释性文字。"
        )

    @staticmethod
    def _on_retry(attempt: int, exc: BaseException) -> None:
        LLM_RETRY_TOTAL.labels("reconciliation").inc()
        logger.warning("Drift analysis for reconciliation failed (attempt %s): %s", attempt, exc)
