"""Chapter generation endpoints."""
from typing import AsyncIterator
from uuid import UUID
import logging

from fastapi import APIRouter, HTTPException, Request, status
from fastapi.responses import StreamingResponse

from narrative_engine.domains.writing.domain.events import GenerationEvent
from narrative_engine.schemas.generation import GenerateChaptersRequest, GenerationTaskResponse
from narrative_engine.services.generation_pipeline import ChapterGenerationPipeline
from narrative_engine.shared_kernel.exceptions import EntityNotFoundError

logger = logging.getLogger(__name__)

router = APIRouter()


def _get_pipeline(request: Request) -> ChapterGenerationPipeline:
    pipeline = getattr(request.app.state, "pipeline", None)
    if pipeline is None:
        raise HTTPException(
            status_code=status.HTTP_503_SERVICE_UNAVAILABLE,
            detail="Generation pipeline is not ready",
        )
    return pipeline


async def _verify_novel(pipeline: ChapterGenerationPipeline, novel_id: UUID) -> None:
    try:
        await pipeline.repository.get_novel(novel_id)
    except EntityNotFoundError:
        raise HTTPException(
            status_code=status.HTTP_404_NOT_FOUND,
            detail="Novel not found",
        )


async def _sse(events: AsyncIterator[GenerationEvent]) -> AsyncIterator[str]:
    async for event in events:
        yield event.to_sse()


@router.post("/{novel_id}/chapters/generate")
async def generate_chapters(
    novel_id: UUID,
    payload: GenerateChaptersRequest,
    request: Request,
):
    """Stream chapter generation as server-sent events, one ``data:`` frame per event."""
    pipeline = _get_pipeline(request)
    await _verify_novel(pipeline, novel_id)
    logger.info(
        "Generating %s chapter(s) for novel %s starting at %s",
        payload.count,
        novel_id,
        payload.chapter_number or "next",
    )
    events = pipeline.stream_chapters(
        novel_id,
        payload.count,
        instruction=payload.instruction,
        start_chapter=payload.chapter_number,
    )
    return StreamingResponse(
        _sse(events),
        media_type="text/event-stream",
        headers={"Cache-Control": "no-cache", "X-Accel-Buffering": "no"},
    )


@router.get("/{novel_id}/generation-task", response_model=GenerationTaskResponse)
async def get_generation_task(novel_id: UUID, request: Request):
    """Latest generation progress snapshot for the novel."""
    pipeline = _get_pipeline(request)
    return GenerationTaskResponse(**pipeline.progress.get(novel_id).to_dict())
