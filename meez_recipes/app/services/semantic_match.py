"""Embedding lookups for short dish-name queries."""

import logging
from abc import ABC, abstractmethod
from typing import List, Optional, Protocol, Sequence

import httpx
import numpy as np

from meez_recipes.app.schemas.parse import CandidateMatch
from meez_recipes.app.schemas.recipe import StructuredRecipe

logger = logging.getLogger(__name__)


class EmbeddingClient(ABC):
    @abstractmethod
    async def embed(self, text: str) -> List[float]:  # pragma: no cover - interface
        """Return the embedding vector for ``text``."""


class OpenAIEmbeddingClient(EmbeddingClient):
    def __init__(
        self,
        api_key: Optional[str],
        model: str = "text-embedding-3-small",
        base_url: str = "https://api.openai.com/v1",
        timeout_seconds: float = 20.0,
    ):
        self.api_key = api_key
        self.model = model
        self.base_url = base_url.rstrip("/")
        self.timeout = httpx.Timeout(timeout_seconds, connect=10.0)

    async def embed(self, text: str) -> List[float]:
        if not text:
            raise ValueError("Input text cannot be empty.")
        if not self.api_key:
            raise ValueError("OPENAI_API_KEY must be set for embeddings")
        async with httpx.AsyncClient(timeout=self.timeout) as client:
            resp = await client.post(
                f"{self.base_url}/embeddings",
                json={"model": self.model, "input": text},
                headers={"Authorization": f"Bearer {self.api_key}"},
            )
        resp.raise_for_status()
        data = resp.json()
        return list(data["data"][0]["embedding"])


class EmbeddingSearch(Protocol):
    async def search_by_embedding(
        self, vector: Sequence[float], threshold: float, limit: int
    ) -> List[CandidateMatch]: ...


def build_embedding_input(recipe: StructuredRecipe) -> str:
    ingredients = ", ".join(ing.name for ing in recipe.all_ingredients())
    sections = [
        ("Title", recipe.title),
        ("Description", recipe.short_description or recipe.description),
        ("Ingredients", ingredients),
        ("Instructions", " ".join(recipe.instructions)),
    ]
    # Empty sections are omitted so a bare record embeds as an empty string
    return "\n".join(f"{label}: {value.strip()}" for label, value in sections if value and value.strip())


def cosine_similarities(matrix: np.ndarray, query: np.ndarray) -> np.ndarray:
    """Cosine similarity of every row of ``matrix`` against ``query``."""
    row_norms = np.linalg.norm(matrix, axis=1)
    query_norm = np.linalg.norm(query)
    denom = row_norms * query_norm
    denom[denom == 0] = np.inf
    return (matrix @ query) / denom


class SemanticMatchIndex:
    def __init__(
        self,
        embedder: EmbeddingClient,
        store: EmbeddingSearch,
        threshold: float = 0.5,
        relaxed_threshold: float = 0.35,
        match_count: int = 5,
    ):
        self.embedder = embedder
        self.store = store
        self.threshold = threshold
        self.relaxed_threshold = relaxed_threshold
        self.match_count = match_count

    async def find_matches(self, query: str, request_id: Optional[str] = None) -> List[CandidateMatch]:
        """Nearest stored recipes above the threshold, retrying once with the relaxed one."""
        vector = await self.embedder.embed(query)
        matches = await self.store.search_by_embedding(vector, self.threshold, self.match_count)
        if not matches and self.relaxed_threshold < self.threshold:
            logger.info(
                "[%s] No matches at %.2f for %r, retrying at %.2f",
                request_id,
                self.threshold,
                query,
                self.relaxed_threshold,
            )
            matches = await self.store.search_by_embedding(vector, self.relaxed_threshold, self.match_count)
        logger.info("[%s] Semantic match for %r found %s candidates", request_id, query, len(matches))
        return matches
