"""Persistence for processed recipes.

SQLAlchemy work is synchronous and runs in a worker thread so the async
pipeline only suspends on it.
"""

import asyncio
import logging
from datetime import datetime
from typing import Any, Dict, List, Optional, Sequence, Set

import numpy as np
from pydantic import BaseModel
from sqlalchemy import select
from sqlalchemy.orm import sessionmaker

from meez_recipes.app.db.models import CacheSourceType, ProcessedRecipeCache
from meez_recipes.app.schemas.parse import CandidateMatch
from meez_recipes.app.schemas.recipe import StructuredRecipe
from meez_recipes.app.services.semantic_match import EmbeddingClient, build_embedding_input, cosine_similarities

logger = logging.getLogger(__name__)


class CacheRecord(BaseModel):
    id: int
    cache_key: str
    source_type: CacheSourceType
    recipe: StructuredRecipe
    has_embedding: bool = False
    parent_recipe_id: Optional[int] = None
    created_at: Optional[datetime] = None


def _to_record(row: ProcessedRecipeCache) -> CacheRecord:
    data: Dict[str, Any] = dict(row.recipe_data or {})
    data["id"] = row.id
    return CacheRecord(
        id=row.id,
        cache_key=row.cache_key,
        source_type=row.source_type,
        recipe=StructuredRecipe.model_validate(data),
        has_embedding=row.embedding is not None,
        parent_recipe_id=row.parent_recipe_id,
        created_at=row.created_at,
    )


class CacheStore:
    def __init__(self, session_factory: sessionmaker):
        self.session_factory = session_factory
        self._background: Set[asyncio.Task] = set()

    # sync helpers -----------------------------------------------------

    def _get_by_key(self, cache_key: str) -> Optional[CacheRecord]:
        with self.session_factory() as db:
            row = db.execute(
                select(ProcessedRecipeCache)
                .where(ProcessedRecipeCache.cache_key == cache_key)
                .order_by(ProcessedRecipeCache.created_at.desc(), ProcessedRecipeCache.id.desc())
                .limit(1)
            ).scalar_one_or_none()
            return _to_record(row) if row else None

    def _get_by_id(self, record_id: int) -> Optional[CacheRecord]:
        with self.session_factory() as db:
            row = db.get(ProcessedRecipeCache, record_id)
            return _to_record(row) if row else None

    def _insert(
        self,
        cache_key: str,
        raw_input: str,
        source_type: CacheSourceType,
        recipe: StructuredRecipe,
        parent_id: Optional[int],
    ) -> CacheRecord:
        document = recipe.to_document()
        document.pop("id", None)
        with self.session_factory() as db:
            row = ProcessedRecipeCache(
                url=raw_input,
                cache_key=cache_key,
                source_type=source_type,
                recipe_data=document,
                parent_recipe_id=parent_id,
            )
            db.add(row)
            db.flush()
            # Store-assigned id goes back into the payload so clients can reference it
            row.recipe_data = {**document, "id": row.id}
            db.commit()
            db.refresh(row)
            return _to_record(row)

    def _update_embedding(self, record_id: int, vector: Sequence[float]) -> bool:
        with self.session_factory() as db:
            row = db.get(ProcessedRecipeCache, record_id)
            if row is None:
                return False
            row.embedding = [float(v) for v in vector]
            db.commit()
            return True

    def _search_by_embedding(self, vector: Sequence[float], threshold: float, limit: int) -> List[CandidateMatch]:
        query = np.asarray(vector, dtype=float)
        with self.session_factory() as db:
            rows = db.execute(
                select(
                    ProcessedRecipeCache.id,
                    ProcessedRecipeCache.cache_key,
                    ProcessedRecipeCache.recipe_data,
                    ProcessedRecipeCache.embedding,
                ).where(ProcessedRecipeCache.embedding.isnot(None))
            ).all()
        candidates = [row for row in rows if row.embedding and len(row.embedding) == len(query)]
        if not candidates or not query.any():
            return []

        matrix = np.asarray([row.embedding for row in candidates], dtype=float)
        scores = cosine_similarities(matrix, query)
        order = np.argsort(-scores)
        matches: List[CandidateMatch] = []
        for idx in order:
            score = float(scores[idx])
            if score < threshold or len(matches) >= limit:
                break
            row = candidates[idx]
            recipe = StructuredRecipe.model_validate({**(row.recipe_data or {}), "id": row.id})
            matches.append(CandidateMatch(recipe=recipe, similarity=round(score, 4), cache_key=row.cache_key))
        return matches

    def _missing_embeddings(self, limit: int) -> List[CacheRecord]:
        with self.session_factory() as db:
            rows = (
                db.execute(
                    select(ProcessedRecipeCache)
                    .where(ProcessedRecipeCache.embedding.is_(None))
                    .order_by(ProcessedRecipeCache.id)
                    .limit(limit)
                )
                .scalars()
                .all()
            )
            return [_to_record(row) for row in rows]

    # async API --------------------------------------------------------

    async def get_by_key(self, cache_key: str) -> Optional[CacheRecord]:
        return await asyncio.to_thread(self._get_by_key, cache_key)

    async def get_by_id(self, record_id: int) -> Optional[CacheRecord]:
        return await asyncio.to_thread(self._get_by_id, record_id)

    async def insert(
        self,
        cache_key: str,
        raw_input: str,
        source_type: CacheSourceType,
        recipe: StructuredRecipe,
        parent_id: Optional[int] = None,
    ) -> CacheRecord:
        record = await asyncio.to_thread(self._insert, cache_key, raw_input, source_type, recipe, parent_id)
        logger.info("Cached recipe %s under key %s", record.id, cache_key)
        return record

    async def update_embedding(self, record_id: int, vector: Sequence[float]) -> bool:
        return await asyncio.to_thread(self._update_embedding, record_id, vector)

    async def search_by_embedding(self, vector: Sequence[float], threshold: float, limit: int = 5) -> List[CandidateMatch]:
        return await asyncio.to_thread(self._search_by_embedding, vector, threshold, limit)

    async def missing_embeddings(self, limit: int = 100) -> List[CacheRecord]:
        return await asyncio.to_thread(self._missing_embeddings, limit)

    async def backfill_embedding(self, record: CacheRecord, embedder: EmbeddingClient) -> bool:
        """Embed a cached recipe and store the vector. Failures are logged, never raised."""
        text = build_embedding_input(record.recipe)
        try:
            vector = await embedder.embed(text)
            stored = await self.update_embedding(record.id, vector)
        except Exception:
            logger.exception("Embedding backfill failed for recipe %s", record.id)
            return False
        if stored:
            logger.info("Stored embedding for recipe %s", record.id)
        return stored

    def schedule_embedding_backfill(self, record: CacheRecord, embedder: EmbeddingClient) -> asyncio.Task:
        task = asyncio.create_task(self.backfill_embedding(record, embedder))
        self._background.add(task)
        task.add_done_callback(self._background.discard)
        return task

    async def drain(self) -> None:
        """Wait for outstanding background work (shutdown, tests)."""
        while self._background:
            await asyncio.gather(*list(self._background), return_exceptions=True)
