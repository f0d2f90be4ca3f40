"""Scene generator: streams prose for each scene brief of a chapter."""
from __future__ import annotations

from contextlib import aclosing
from dataclasses import dataclass, field
from typing import AsyncIterator, List, Optional, Tuple
import logging
import math
import time

from narrative_engine.core.config import settings
from narrative_engine.domains.writing.domain.entities import (
    Novel,
    ProgressStatus,
    compose_chapter_content,
)
from narrative_engine.infrastructure.observability import CHAPTER_GENERATION_DURATION
from narrative_engine.services.chapter_decomposer import ChapterDecomposition
from narrative_engine.services.llm_client import DeepSeekClient
from narrative_engine.services.retrieval_service import RetrievalContextProvider
from narrative_engine.shared_kernel.exceptions import SceneGenerationError


logger = logging.getLogger(__name__)

SCENE_JOINER = "\n\n"


@dataclass(frozen=True)
class SceneDelta:
    scene_index: int
    text: str


@dataclass
class ChapterDraft:
    """Scene texts accumulated while a chapter streams."""

    title: str
    scene_texts: List[str] = field(default_factory=list)

    @property
    def body(self) -> str:
        return SCENE_JOINER.join(text.strip() for text in self.scene_texts if text.strip())

    @property
    def content(self) -> str:
        return compose_chapter_content(self.title, self.body)


def scene_word_bounds(chapter_target: int, scene_count: int, tolerance: float) -> Tuple[int, int, int]:
    """Return ``(target, minimum, maximum)`` words for one scene."""
    per_scene = chapter_target / max(scene_count, 1)
    return (
        int(round(per_scene)),
        int(per_scene * (1 - tolerance)),
        int(per_scene * (1 + tolerance)),
    )


def pacing_guidance(status: ProgressStatus, big_outline_events: List[str]) -> str:
    if status is ProgressStatus.SEVERE_DEVIATION:
        events = "；".join(big_outline_events) or "本章大纲的主线事件"
        return (
            "注意: 当前剧情已严重偏离大纲。请在本场景中加快节奏，"
            f"主动把情节拉回到以下主线事件上: {events}。"
        )
    if status is ProgressStatus.MINOR_DEVIATION:
        return "注意: 当前剧情略有偏离大纲，请在保持自然的前提下逐步向本章大纲靠拢。"
    return ""


class SceneGenerator:
    """Generate a chapter scene by scene, carrying finished scenes forward."""

    def __init__(
        self,
        llm_client: Optional[DeepSeekClient] = None,
        retriever: Optional[RetrievalContextProvider] = None,
    ) -> None:
        self.llm_client = llm_client or DeepSeekClient()
        self.retriever = retriever

    async def stream(
        self,
        novel: Novel,
        chapter_number: int,
        decomposition: ChapterDecomposition,
        draft: ChapterDraft,
        previous_tail: str = "",
        instruction: Optional[str] = None,
    ) -> AsyncIterator[SceneDelta]:
        """Yield text deltas scene by scene, appending finished scenes to ``draft``.

        Any failure aborts the chapter with ``SceneGenerationError``; closing
        the iterator stops token consumption immediately.
        """
        scenes = decomposition.scenes[:max(novel.generation.scenes_per_chapter, 1)]
        target, minimum, maximum = scene_word_bounds(
            novel.generation.chapter_word_target,
            len(scenes),
            settings.CHAPTER_WORD_TOLERANCE,
        )
        token_budget = math.ceil(maximum * settings.WRITE_TOKENS_PER_WORD)
        max_tokens = max(256, min(novel.generation.max_tokens, token_budget))
        pacing = pacing_guidance(decomposition.progress_status, decomposition.big_outline_events)

        for index, brief in enumerate(scenes):
            start = time.perf_counter()
            buffer: List[str] = []
            try:
                scene_context = await self._scene_context(novel, decomposition.title, brief)
                prompt = self._build_scene_prompt(
                    novel=novel,
                    chapter_number=chapter_number,
                    decomposition=decomposition,
                    scenes=scenes,
                    index=index,
                    completed=draft.body,
                    previous_tail=previous_tail,
                    scene_context=scene_context,
                    pacing=pacing,
                    word_bounds=(target, minimum, maximum),
                    instruction=instruction,
                )
                stream = self.llm_client.chat_stream(
                    messages=[{"role": "user", "content": prompt}],
                    temperature=novel.generation.temperature,
                    max_tokens=max_tokens,
                )
                async with aclosing(stream):
                    async for chunk in stream:
                        buffer.append(chunk)
                        yield SceneDelta(scene_index=index, text=chunk)
            except Exception as exc:
                raise SceneGenerationError(
                    f"Scene {index + 1}/{len(scenes)} of chapter {chapter_number} failed: {exc}",
                    code="SCENE_FAILED",
                    details={"chapter_number": chapter_number, "scene_index": index},
                ) from exc
            finally:
                CHAPTER_GENERATION_DURATION.labels("scene").observe(time.perf_counter() - start)

            text = "".join(buffer).strip()
            if not text:
                raise SceneGenerationError(
                    f"Scene {index + 1}/{len(scenes)} of chapter {chapter_number} came back empty",
                    code="SCENE_EMPTY",
                    details={"chapter_number": chapter_number, "scene_index": index},
                )
            draft.scene_texts.append(text)
            logger.info(
                "Scene %s/%s of chapter %s written (%s chars)",
                index + 1,
                len(scenes),
                chapter_number,
                len(text),
            )

    async def _scene_context(self, novel: Novel, chapter_title: str, brief: str) -> str:
        if self.retriever is None:
            return ""
        query = RetrievalContextProvider.scene_query(novel.name, chapter_title, brief)
        return await self.retriever.retrieve(novel.id, query, top_k=settings.RAG_SCENE_TOP_K)

    def _build_scene_prompt(
        self,
        novel: Novel,
        chapter_number: int,
        decomposition: ChapterDecomposition,
        scenes: List[str],
        index: int,
        completed: str,
        previous_tail: str,
        scene_context: str,
        pacing: str,
        word_bounds: Tuple[int, int, int],
        instruction: Optional[str],
    ) -> str:
        target, minimum, maximum = word_bounds
        outline = "\n".join(f"{idx}. {brief}" for idx, brief in enumerate(scenes, start=1))
        prompt = (
            f"你正在创作小说《{novel.name}》第{chapter_number}章「{decomposition.title}」。\n"
            f"【写作风格】{novel.style or '自然流畅，贴合题材'}\n\n"
            f"【本章场景列表】\n{outline}\n\n"
        )
        if previous_tail:
            prompt += f"【上一章结尾】\n{previous_tail}\n\n"
        if completed:
            prompt += f"【本章已完成的内容】\n{completed}\n\n"
        if scene_context:
            prompt += f"【本场景相关设定】\n{scene_context}\n\n"
        if pacing:
            prompt += f"{pacing}\n\n"
        if instruction:
            prompt += f"【用户要求】{instruction}\n\n"
        prompt += (
            f"现在请写第{index + 1}/{len(scenes)}个场景: {scenes[index]}\n"
            f"篇幅约{target}字（不少于{minimum}字，不超过{maximum}字）。\n"
            "紧接已完成的内容继续写，不要重复前文，不要写章节标题，不要提前写后续场景。"
            "只输出正文。"
        )
        return prompt
