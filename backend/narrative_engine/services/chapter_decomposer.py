"""Chapter decomposer: one outline entry in, ordered scene briefs out."""
from __future__ import annotations

from dataclasses import dataclass, field
from typing import Any, Dict, List, Optional
import logging
import time

from narrative_engine.core.config import settings
from narrative_engine.domains.planning.domain.entities import ChapterOutlineEntry
from narrative_engine.domains.writing.domain.entities import Novel, ProgressStatus
from narrative_engine.infrastructure.observability import CHAPTER_GENERATION_DURATION, LLM_RETRY_TOTAL
from narrative_engine.infrastructure.resilience import async_retry
from narrative_engine.services.llm_client import DeepSeekClient
from narrative_engine.services.llm_output import extract_json_object
from narrative_engine.shared_kernel.exceptions import DecompositionError, MalformedOutputError


logger = logging.getLogger(__name__)

_SCENE_KEYS = ("scene", "description", "scene_description", "summary")


@dataclass(frozen=True)
class ChapterDecomposition:
    title: str
    scenes: List[str]
    big_outline_events: List[str] = field(default_factory=list)
    progress_status: ProgressStatus = ProgressStatus.ON_TRACK


@dataclass
class DecompositionRequest:
    novel: Novel
    chapter_number: int
    entry: ChapterOutlineEntry
    previous_entry: Optional[ChapterOutlineEntry] = None
    next_entry: Optional[ChapterOutlineEntry] = None
    previous_tail: str = ""
    stage_guidance: str = ""
    context: str = ""
    instruction: Optional[str] = None


def build_context_aware_outline(
    entry: ChapterOutlineEntry,
    previous_entry: Optional[ChapterOutlineEntry] = None,
    next_entry: Optional[ChapterOutlineEntry] = None,
) -> str:
    blocks = []
    if previous_entry is not None:
        blocks.append(f"**上一章大纲:**\n{previous_entry.render()}")
    blocks.append(f"**当前章节大纲:**\n{entry.render()}")
    if next_entry is not None:
        blocks.append(f"**下一章大纲:**\n{next_entry.render()}")
    return "\n\n".join(blocks)


def _scene_text(item: Any) -> str:
    if isinstance(item, str):
        return item.strip()
    if isinstance(item, dict):
        for key in _SCENE_KEYS:
            value = item.get(key)
            if isinstance(value, str) and value.strip():
                return value.strip()
    return ""


def _normalize_str_list(value: Any) -> List[str]:
    if isinstance(value, list):
        return [str(item).strip() for item in value if str(item).strip()]
    if isinstance(value, str):
        return [item.strip() for item in value.split("\n") if item.strip()]
    return []


class ChapterDecomposer:
    """Turn a chapter outline entry into a title and a clamped list of scenes."""

    def __init__(self, llm_client: Optional[DeepSeekClient] = None) -> None:
        self.llm_client = llm_client or DeepSeekClient()

    async def decompose(self, request: DecompositionRequest) -> ChapterDecomposition:
        limit = max(request.novel.generation.scenes_per_chapter, 1)
        prompt = self._build_prompt(request, limit)
        start = time.perf_counter()
        try:
            return await async_retry(
                self._decompose_once,
                prompt,
                request.novel.generation.temperature,
                limit,
                retries=max(settings.DECOMPOSE_MAX_ATTEMPTS - 1, 0),
                backoff=settings.DECOMPOSE_RETRY_DELAY,
                linear=True,
                exceptions=(MalformedOutputError,),
                on_retry=lambda attempt, exc: self._on_retry(request.chapter_number, attempt, exc),
            )
        except MalformedOutputError as exc:
            raise DecompositionError(
                f"Chapter {request.chapter_number} could not be decomposed: {exc}",
                code="DECOMPOSITION_FAILED",
                details={"chapter_number": request.chapter_number},
            ) from exc
        finally:
            elapsed = time.perf_counter() - start
            CHAPTER_GENERATION_DURATION.labels("decompose").observe(elapsed)
            logger.info("[PERF] decompose chapter %s took %.2fs", request.chapter_number, elapsed)

    def _on_retry(self, chapter_number: int, attempt: int, exc: BaseException) -> None:
        LLM_RETRY_TOTAL.labels("decompose").inc()
        logger.warning("Decomposition of chapter %s failed (attempt %s): %s", chapter_number, attempt, exc)

    async def _decompose_once(self, prompt: str, temperature: float, limit: int) -> ChapterDecomposition:
        response = await self.llm_client.chat(
            messages=[{"role": "user", "content": prompt}],
            temperature=temperature,
            max_tokens=settings.DECOMPOSE_MAX_TOKENS,
            response_format={"type": "json_object"},
        )
        payload = extract_json_object(response)
        if payload is None:
            raise MalformedOutputError("Decomposition response is not a JSON object", code="MALFORMED_JSON")
        return self.parse_payload(payload, limit)

    @staticmethod
    def parse_payload(payload: Dict[str, Any], limit: int) -> ChapterDecomposition:
        title = str(payload.get("title") or "").strip()
        raw_scenes = payload.get("scenes")
        scenes: List[str] = []
        if isinstance(raw_scenes, list):
            scenes = [text for text in (_scene_text(item) for item in raw_scenes) if text]
        if not title:
            raise MalformedOutputError("Decomposition has no title", code="MISSING_TITLE")
        if not scenes:
            raise MalformedOutputError("Decomposition has no usable scenes", code="MISSING_SCENES")
        if len(scenes) > limit:
            logger.info("Decomposer returned %s scenes; keeping the first %s", len(scenes), limit)
        return ChapterDecomposition(
            title=title,
            scenes=scenes[:max(limit, 1)],
            big_outline_events=_normalize_str_list(payload.get("bigOutlineEvents")),
            progress_status=ProgressStatus.parse(payload.get("progressStatus")),
        )

    def _build_prompt(self, request: DecompositionRequest, limit: int) -> str:
        novel = request.novel
        outline_block = build_context_aware_outline(
            request.entry,
            request.previous_entry,
            request.next_entry,
        )
        prompt = (
            "你是一位小说章节结构设计师。请把当前章节的大纲拆解为按顺序排列的场景，"
            "并评估已写内容与计划的贴合程度。\n\n"
            f"【小说名称】{novel.name}\n"
            f"【故事前提】{novel.premise or '无'}\n"
            f"【写作风格】{novel.style or '无'}\n\n"
            f"【章节大纲（含前后章）】\n{outline_block}\n\n"
            f"【叙事阶段指引】\n{request.stage_guidance or '无'}\n\n"
            f"【上一章结尾】\n{request.previous_tail or '（这是第一章）'}\n\n"
            f"【相关设定】\n{request.context or '无'}\n\n"
        )
        if request.instruction:
            prompt += f"【用户要求】\n{request.instruction}\n\n"
        prompt += (
            f"请为第{request.chapter_number}章输出严格的JSON对象，不要包含其他文字:\n"
            "{\n"
            '  "title": "章节标题",\n'
            '  "bigOutlineEvents": ["本章推进的主线事件"],\n'
            '  "progressStatus": "正常进度|轻度偏离|严重偏离",\n'
            f'  "scenes": ["场景1的简要描述", "..."]  // 最多{limit}个场景\n'
            "}\n"
            "场景必须紧接上一章结尾，只覆盖当前章节大纲的内容，不要提前写下一章的情节。"
        )
        return prompt
