"""Chapter generation pipeline: plan, decompose, stream scenes, persist, enrich."""
from __future__ import annotations

from contextlib import aclosing
from typing import Any, AsyncIterator, Awaitable, Callable, Optional, Set
from uuid import UUID
import asyncio
import logging
import time

from narrative_engine.core.config import settings
from narrative_engine.domains.writing.domain.entities import Chapter, Novel
from narrative_engine.domains.writing.domain.events import (
    ChapterEndEvent,
    ContentEvent,
    ErrorEvent,
    GenerationEvent,
    StatusEvent,
)
from narrative_engine.infrastructure.observability import (
    CHAPTER_GENERATION_DURATION,
    CHAPTER_GENERATION_TOTAL,
    LLM_RETRY_TOTAL,
)
from narrative_engine.infrastructure.resilience import backoff_delay
from narrative_engine.services.chapter_decomposer import ChapterDecomposer, DecompositionRequest
from narrative_engine.services.llm_client import DeepSeekClient
from narrative_engine.services.outline_manager import OutlineManager, stage_guidance
from narrative_engine.services.progress_tracker import GenerationTaskRegistry, generation_tasks
from narrative_engine.services.reconciliation import ReconciliationCycle
from narrative_engine.services.retrieval_service import RetrievalContextProvider
from narrative_engine.services.scene_generator import ChapterDraft, SceneGenerator
from narrative_engine.services.world_evolution import WorldEvolutionTracker
from narrative_engine.shared_kernel.exceptions import (
    EntityNotFoundError,
    PlanningExhausted,
    ValidationError,
)


logger = logging.getLogger(__name__)

ProgressReporter = Callable[..., Any]

# Failures that another attempt cannot fix.
NON_RETRYABLE_ERRORS = (PlanningExhausted, EntityNotFoundError, ValidationError)


class ChapterGenerationPipeline:
    """Generates chapters one at a time for a novel and streams typed events."""

    def __init__(
        self,
        repository: Any,
        llm_client: Optional[DeepSeekClient] = None,
        outline_manager: Optional[OutlineManager] = None,
        retriever: Optional[RetrievalContextProvider] = None,
        decomposer: Optional[ChapterDecomposer] = None,
        scene_generator: Optional[SceneGenerator] = None,
        world_tracker: Optional[WorldEvolutionTracker] = None,
        reconciliation: Optional[ReconciliationCycle] = None,
        progress: Optional[GenerationTaskRegistry] = None,
    ) -> None:
        self.repository = repository
        self.llm_client = llm_client or DeepSeekClient()
        self.outline_manager = outline_manager or OutlineManager(repository, self.llm_client)
        self.retriever = retriever
        self.decomposer = decomposer or ChapterDecomposer(self.llm_client)
        self.scene_generator = scene_generator or SceneGenerator(self.llm_client, retriever)
        self.world_tracker = world_tracker or WorldEvolutionTracker(repository, llm_client=self.llm_client)
        self.reconciliation = reconciliation or ReconciliationCycle(self.llm_client)
        self.progress = progress or generation_tasks
        self._background: Set[asyncio.Task] = set()

    async def stream_chapter(
        self,
        novel_id: UUID,
        chapter_number: Optional[int] = None,
        instruction: Optional[str] = None,
    ) -> AsyncIterator[GenerationEvent]:
        """Generate one chapter in a single attempt.

        The stream always ends with a ``chapter_end`` or an ``error`` event.
        """
        self.progress.start(novel_id, 1)
        report = self.progress.reporter(novel_id)
        try:
            async with aclosing(self._run_chapter(novel_id, chapter_number, instruction, report)) as events:
                async for event in events:
                    yield event
        except Exception as exc:
            CHAPTER_GENERATION_TOTAL.labels("failed").inc()
            logger.error("Chapter generation failed for novel %s: %s", novel_id, exc, exc_info=True)
            self.progress.fail(novel_id, str(exc))
            yield ErrorEvent(message=str(exc))
            return
        except (GeneratorExit, asyncio.CancelledError):
            self._cancelled(novel_id)
            raise
        self.progress.finish(novel_id)

    async def stream_chapters(
        self,
        novel_id: UUID,
        count: int,
        instruction: Optional[str] = None,
        start_chapter: Optional[int] = None,
    ) -> AsyncIterator[GenerationEvent]:
        """Generate ``count`` consecutive chapters, retrying each with linear backoff.

        Stops at the first chapter that fails terminally.
        """
        if count < 1:
            yield ErrorEvent(message="count must be at least 1")
            return

        self.progress.start(novel_id, count)
        report = self.progress.reporter(novel_id)
        try:
            first = start_chapter or (await self.repository.last_chapter_number(novel_id)) + 1
        except Exception as exc:
            self.progress.fail(novel_id, str(exc))
            yield ErrorEvent(message=str(exc))
            return

        try:
            for offset in range(count):
                number = first + offset
                attempt = 0
                while True:
                    attempt += 1
                    try:
                        async with aclosing(self._run_chapter(novel_id, number, instruction, report)) as events:
                            async for event in events:
                                yield event
                        break
                    except Exception as exc:
                        retryable = not isinstance(exc, NON_RETRYABLE_ERRORS)
                        if not retryable or attempt >= settings.CHAPTER_MAX_ATTEMPTS:
                            CHAPTER_GENERATION_TOTAL.labels("failed").inc()
                            logger.error(
                                "Chapter %s of novel %s failed after %s attempt(s): %s",
                                number,
                                novel_id,
                                attempt,
                                exc,
                                exc_info=True,
                            )
                            self.progress.fail(novel_id, str(exc))
                            yield ErrorEvent(message=f"第{number}章生成失败: {exc}")
                            return
                        delay = backoff_delay(attempt, settings.CHAPTER_RETRY_DELAY, linear=True)
                        CHAPTER_GENERATION_TOTAL.labels("retried").inc()
                        LLM_RETRY_TOTAL.labels("chapter").inc()
                        logger.warning(
                            "Chapter %s of novel %s failed (attempt %s/%s), retrying in %.1fs: %s",
                            number,
                            novel_id,
                            attempt,
                            settings.CHAPTER_MAX_ATTEMPTS,
                            delay,
                            exc,
                        )
                        yield StatusEvent(
                            message=(
                                f"第{number}章生成失败，{delay:g}秒后重试"
                                f"（第{attempt + 1}/{settings.CHAPTER_MAX_ATTEMPTS}次）"
                            )
                        )
                        await asyncio.sleep(delay)
        except (GeneratorExit, asyncio.CancelledError):
            self._cancelled(novel_id)
            raise
        self.progress.finish(novel_id)

    def _cancelled(self, novel_id: UUID) -> None:
        CHAPTER_GENERATION_TOTAL.labels("cancelled").inc()
        logger.info("Chapter generation for novel %s cancelled by the client", novel_id)
        self.progress.fail(novel_id, "已取消")

    async def _run_chapter(
        self,
        novel_id: UUID,
        chapter_number: Optional[int],
        instruction: Optional[str],
        report: ProgressReporter,
    ) -> AsyncIterator[GenerationEvent]:
        started = time.perf_counter()
        novel = await self.repository.get_novel(novel_id)
        number = chapter_number or (await self.repository.last_chapter_number(novel_id)) + 1
        if await self.repository.get_chapter(novel_id, number) is not None:
            raise ValidationError(
                f"Chapter {number} already exists",
                code="CHAPTER_EXISTS",
                details={"novel_id": str(novel_id), "chapter_number": number},
            )

        report("检查章节大纲", progress=5, current_chapter=number)
        yield StatusEvent(message=f"正在准备第{number}章的大纲")
        entry = await self.outline_manager.ensure_chapter_planned(novel, number)
        await self.outline_manager.expand_if_running_low(novel, number)

        previous_tail = await self._previous_tail(novel_id, number)
        guidance = stage_guidance(novel.plan.stages, number)

        report("检索相关设定", progress=15)
        yield StatusEvent(message="正在检索相关设定")
        context = await self._retrieve(novel, entry.render(), instruction)

        report("拆解章节场景", progress=25)
        yield StatusEvent(message="正在拆解章节场景")
        decomposition = await self.decomposer.decompose(
            DecompositionRequest(
                novel=novel,
                chapter_number=number,
                entry=entry,
                previous_entry=novel.plan.get(number - 1),
                next_entry=novel.plan.get(number + 1),
                previous_tail=previous_tail,
                stage_guidance=guidance,
                context=context,
                instruction=instruction,
            )
        )
        scene_count = min(len(decomposition.scenes), max(novel.generation.scenes_per_chapter, 1))
        yield StatusEvent(message=f"第{number}章「{decomposition.title}」共{scene_count}个场景")

        draft = ChapterDraft(title=decomposition.title)
        current_scene = -1
        stream = self.scene_generator.stream(
            novel,
            number,
            decomposition,
            draft,
            previous_tail=previous_tail,
            instruction=instruction,
        )
        async with aclosing(stream) as deltas:
            async for delta in deltas:
                if delta.scene_index != current_scene:
                    current_scene = delta.scene_index
                    report(
                        f"写作场景 {current_scene + 1}/{scene_count}",
                        progress=30 + int(60 * current_scene / scene_count),
                    )
                    yield StatusEvent(message=f"正在写作场景 {current_scene + 1}/{scene_count}")
                yield ContentEvent(chunk=delta.text, scene_index=delta.scene_index)

        report("保存章节", progress=95)
        chapter = Chapter.create(novel.id, number, draft.title, draft.body)
        await self.repository.create_chapter(chapter)
        elapsed = time.perf_counter() - started
        CHAPTER_GENERATION_TOTAL.labels("ok").inc()
        CHAPTER_GENERATION_DURATION.labels("chapter").observe(elapsed)
        self._log_word_count(novel, chapter)
        logger.info("[PERF] chapter %s of novel %s took %.2fs", number, novel_id, elapsed)

        self._spawn_enrichment(novel, chapter)
        yield ChapterEndEvent(chapter=chapter.to_dict())

    async def _previous_tail(self, novel_id: UUID, chapter_number: int) -> str:
        if chapter_number <= 1:
            return ""
        previous = await self.repository.get_chapter(novel_id, chapter_number - 1)
        if previous is None:
            return ""
        return previous.body[-settings.PREVIOUS_CHAPTER_TAIL_CHARS:]

    async def _retrieve(self, novel: Novel, outline: str, instruction: Optional[str]) -> str:
        if self.retriever is None:
            return ""
        query = RetrievalContextProvider.chapter_query(novel.name, outline, instruction)
        return await self.retriever.retrieve(novel.id, query)

    @staticmethod
    def _log_word_count(novel: Novel, chapter: Chapter) -> None:
        target = novel.generation.chapter_word_target
        low = target * (1 - settings.CHAPTER_WORD_TOLERANCE)
        high = target * (1 + settings.CHAPTER_WORD_TOLERANCE)
        if not low <= chapter.word_count <= high:
            logger.warning(
                "Chapter %s of novel %s has %s words (target %s)",
                chapter.number,
                novel.id,
                chapter.word_count,
                target,
            )

    def _spawn_enrichment(self, novel: Novel, chapter: Chapter) -> asyncio.Task:
        task = asyncio.create_task(
            self._supervised(self.enrich(novel.id, chapter), f"enrichment of chapter {chapter.number}"),
            name=f"enrich-{novel.id}-{chapter.number}",
        )
        self._background.add(task)
        task.add_done_callback(self._background.discard)
        return task

    @staticmethod
    async def _supervised(work: Awaitable[Any], label: str) -> None:
        try:
            await work
        except Exception:
            logger.error("Background %s failed", label, exc_info=True)

    async def enrich(self, novel_id: UUID, chapter: Chapter) -> None:
        """World evolution, then reconciliation when the chapter closes a batch."""
        await self.world_tracker.evolve(novel_id, chapter.body, chapter_number=chapter.number)
        batch = settings.RECONCILIATION_BATCH_SIZE
        if batch > 0 and chapter.number % batch == 0:
            await self.reconcile(novel_id, chapter.number)

    async def reconcile(self, novel_id: UUID, chapter_number: int) -> bool:
        """Run the reconciliation cycle over the batch ending at ``chapter_number``."""
        batch = max(settings.RECONCILIATION_BATCH_SIZE, 1)
        chapters = await self.repository.list_chapters(
            novel_id,
            max(chapter_number - batch + 1, 1),
            chapter_number,
        )
        if not chapters:
            return False
        novel = await self.repository.get_novel(novel_id)
        future = novel.plan.future_entries(chapter_number)
        if not future:
            logger.info("No future outline to reconcile for novel %s", novel_id)
            return False

        written = "\n\n".join(f"第{item.number}章 {item.title}\n{item.body}" for item in chapters)
        revised = await self.reconciliation.run(novel.plan.macro, written, future)
        if revised is future:
            return False
        await self.outline_manager.apply_revision(
            novel_id,
            chapter_number,
            revised,
            window_end=future[-1].number,
        )
        return True

    async def wait_for_background(self, timeout: Optional[float] = None) -> None:
        """Wait for pending enrichment tasks; cancel whatever is left after ``timeout``."""
        if not self._background:
            return
        _, pending = await asyncio.wait(set(self._background), timeout=timeout)
        for task in pending:
            task.cancel()
        if pending:
            logger.warning("Cancelled %s unfinished background task(s)", len(pending))
