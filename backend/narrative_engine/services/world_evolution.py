"""World evolution: keep the world store and its retrieval index in step with the prose."""
from __future__ import annotations

from typing import Any, Dict, List, Optional
from uuid import UUID
import logging
import time

from narrative_engine.core.config import settings
from narrative_engine.domains.world.domain.entities import DriftReport, EntityKind, WorldEntity
from narrative_engine.infrastructure.observability import (
    CHAPTER_GENERATION_DURATION,
    LLM_RETRY_TOTAL,
    WORLD_EVOLUTION_TOTAL,
)
from narrative_engine.infrastructure.resilience import async_retry
from narrative_engine.services.drift_analyst import DriftAnalyst
from narrative_engine.services.llm_client import DeepSeekClient
from narrative_engine.services.retrieval_service import VectorIndex


logger = logging.getLogger(__name__)


class WorldEvolutionTracker:
    """Extract drift from a finished chapter and write it to the store, then the index.

    Never raises: failures are logged and the step is skipped.
    """

    def __init__(
        self,
        repository: Any,
        vector_index: Optional[VectorIndex] = None,
        llm_client: Optional[DeepSeekClient] = None,
        analyst: Optional[DriftAnalyst] = None,
    ) -> None:
        self.repository = repository
        self.vector_index = vector_index
        self.analyst = analyst or DriftAnalyst(llm_client)

    async def evolve(
        self,
        novel_id: UUID,
        chapter_text: str,
        chapter_number: Optional[int] = None,
    ) -> Optional[DriftReport]:
        start = time.perf_counter()
        try:
            report = await async_retry(
                self.analyst.analyze,
                chapter_text,
                retries=max(settings.WORLD_EVOLUTION_RETRIES - 1, 0),
                backoff=settings.WORLD_EVOLUTION_BACKOFF,
                on_retry=self._on_retry,
            )
        except Exception:
            WORLD_EVOLUTION_TOTAL.labels("failed").inc()
            logger.error(
                "World evolution skipped for chapter %s of novel %s",
                chapter_number,
                novel_id,
                exc_info=True,
            )
            return None
        finally:
            CHAPTER_GENERATION_DURATION.labels("world_evolution").observe(time.perf_counter() - start)

        if not report.has_entity_changes():
            WORLD_EVOLUTION_TOTAL.labels("empty").inc()
            logger.info("No new or updated world elements in chapter %s of novel %s", chapter_number, novel_id)
            return report

        skipped = report.undescribed_names()
        if skipped:
            logger.warning(
                "World elements without description skipped for chapter %s of novel %s: %s",
                chapter_number,
                novel_id,
                skipped,
            )
        changes = report.merged_entities()
        try:
            written = await self.repository.apply_world_changes(novel_id, changes)
        except Exception:
            WORLD_EVOLUTION_TOTAL.labels("failed").inc()
            logger.error("Storing world changes failed for novel %s", novel_id, exc_info=True)
            return report

        await self._index(novel_id, written)
        WORLD_EVOLUTION_TOTAL.labels("ok").inc()
        logger.info(
            "World evolved from chapter %s of novel %s: %s",
            chapter_number,
            novel_id,
            {kind.value: len(items) for kind, items in written.items()},
        )
        return report

    async def _index(self, novel_id: UUID, written: Dict[EntityKind, List[WorldEntity]]) -> None:
        if self.vector_index is None:
            return
        for kind, entities in written.items():
            try:
                await self.vector_index.upsert(novel_id, kind, entities)
            except Exception:
                logger.warning(
                    "Index upsert of %s %s for novel %s failed; store and index may diverge",
                    len(entities),
                    kind.value,
                    novel_id,
                    exc_info=True,
                )

    @staticmethod
    def _on_retry(attempt: int, exc: BaseException) -> None:
        LLM_RETRY_TOTAL.labels("world_evolution").inc()
        logger.warning("World drift extraction failed (attempt %s): %s", attempt, exc)
