"""Retrieval of world facts for prompt injection, backed by ChromaDB."""
from __future__ import annotations

from typing import Any, Dict, List, Optional
from uuid import UUID
import asyncio
import logging

import chromadb
from chromadb.config import Settings as ChromaSettings

from narrative_engine.core.config import settings
from narrative_engine.domains.world.domain.entities import EntityKind, WorldEntity
from narrative_engine.infrastructure.resilience import async_retry
from narrative_engine.services.llm_client import DeepSeekClient
from narrative_engine.shared_kernel.exceptions import ExternalServiceError


logger = logging.getLogger(__name__)

EMPTY_SECTION = "无"


def _init_chroma():
    chroma_settings = ChromaSettings(anonymized_telemetry=settings.CHROMA_ANONYMIZED_TELEMETRY)
    if settings.CHROMA_HOST and settings.CHROMA_PORT:
        return chromadb.HttpClient(
            host=settings.CHROMA_HOST,
            port=settings.CHROMA_PORT,
            settings=chroma_settings,
        )
    return chromadb.PersistentClient(
        path=settings.CHROMA_PERSIST_DIR,
        settings=chroma_settings,
    )


class VectorIndex:
    """Per-novel, per-kind ChromaDB collections with embeddings from the LLM service."""

    def __init__(
        self,
        chroma_client: Optional[Any] = None,
        llm_client: Optional[DeepSeekClient] = None,
    ) -> None:
        self.chroma_client = chroma_client if chroma_client is not None else _init_chroma()
        self.llm_client = llm_client or DeepSeekClient()

    @staticmethod
    def collection_name(novel_id: UUID, kind: EntityKind) -> str:
        return f"{settings.CHROMA_COLLECTION_PREFIX}_{novel_id}_{kind.collection_suffix}"

    async def _collection(self, novel_id: UUID, kind: EntityKind) -> Any:
        return await async_retry(
            self.chroma_client.get_or_create_collection,
            name=self.collection_name(novel_id, kind),
            metadata={"hnsw:space": "cosine"},
            retries=settings.CHROMA_CREATE_RETRIES,
            backoff=1.0,
        )

    async def upsert(self, novel_id: UUID, kind: EntityKind, entities: List[WorldEntity]) -> int:
        if not entities:
            return 0
        documents = [entity.document for entity in entities]
        embeddings = await self.llm_client.embed(documents)
        try:
            collection = await self._collection(novel_id, kind)
            await asyncio.to_thread(
                collection.upsert,
                ids=[str(entity.id) for entity in entities],
                embeddings=embeddings,
                documents=documents,
                metadatas=[
                    {"name": entity.name, "content": entity.content, "kind": kind.value}
                    for entity in entities
                ],
            )
        except Exception as exc:
            raise ExternalServiceError(
                f"Vector index upsert failed for {self.collection_name(novel_id, kind)}",
                code="VECTOR_INDEX_UNAVAILABLE",
                details={"novel_id": str(novel_id), "kind": kind.value, "count": len(entities)},
            ) from exc
        return len(entities)

    async def query(self, novel_id: UUID, kind: EntityKind, text: str, top_k: int) -> List[str]:
        if not text.strip() or top_k <= 0:
            return []
        collection = await self._collection(novel_id, kind)
        count = await asyncio.to_thread(collection.count)
        if not count:
            return []
        embedding = (await self.llm_client.embed([text]))[0]
        results = await asyncio.to_thread(
            collection.query,
            query_embeddings=[embedding],
            n_results=min(top_k, count),
        )
        documents = results.get("documents") or [[]]
        return [doc for doc in documents[0] if doc]


class RetrievalContextProvider:
    """Format the nearest world facts for a free-text query."""

    def __init__(self, index: Optional[VectorIndex] = None) -> None:
        self.index = index or VectorIndex()

    async def retrieve(self, novel_id: UUID, query: str, top_k: Optional[int] = None) -> str:
        """Query characters, scenes and clues concurrently and render one block."""
        limit = top_k or settings.RAG_TOP_K
        kinds = list(EntityKind)
        results = await asyncio.gather(
            *(self._query_kind(novel_id, kind, query, limit) for kind in kinds)
        )
        return self.format_sections(dict(zip(kinds, results)))

    async def _query_kind(self, novel_id: UUID, kind: EntityKind, query: str, top_k: int) -> List[str]:
        try:
            return await self.index.query(novel_id, kind, query, top_k)
        except Exception:
            logger.warning("Retrieval failed for %s of novel %s", kind.value, novel_id, exc_info=True)
            return []

    @staticmethod
    def format_sections(results: Dict[EntityKind, List[str]]) -> str:
        blocks = []
        for kind in EntityKind:
            documents = results.get(kind) or []
            body = "\n".join(f"- {doc}" for doc in documents) if documents else EMPTY_SECTION
            blocks.append(f"【{kind.heading}】\n{body}")
        return "\n\n".join(blocks)

    @staticmethod
    def chapter_query(novel_name: str, chapter_outline: str, instruction: Optional[str] = None) -> str:
        return " ".join(part for part in (novel_name, chapter_outline, instruction or "") if part).strip()

    @staticmethod
    def scene_query(novel_name: str, chapter_title: str, scene_brief: str) -> str:
        return " ".join(part for part in (novel_name, chapter_title, scene_brief) if part).strip()
