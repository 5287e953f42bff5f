import logging

from fastapi import Request
from sqlalchemy.orm import sessionmaker

from meez_recipes.app.core.config import Settings
from meez_recipes.app.services.acquisition import HttpCaptionScraper, HttpContentFetcher
from meez_recipes.app.services.cache_store import CacheStore
from meez_recipes.app.services.generation import FallbackGenerator, GeminiProvider, OpenAIProvider
from meez_recipes.app.services.recipe_pipeline import RecipePipeline
from meez_recipes.app.services.semantic_match import OpenAIEmbeddingClient, SemanticMatchIndex

logger = logging.getLogger(__name__)


def build_pipeline(settings: Settings, session_factory: sessionmaker) -> RecipePipeline:
    """Construct every collaborator once; the app keeps the result for its lifetime."""
    cache_store = CacheStore(session_factory)
    generator = FallbackGenerator(
        primary=GeminiProvider(
            api_key=settings.gemini_api_key,
            model=settings.gemini_model,
            base_url=settings.gemini_base_url,
            max_prompt_chars=settings.gemini_max_prompt_chars,
            timeout_seconds=settings.generation_timeout_seconds,
        ),
        secondary=OpenAIProvider(
            api_key=settings.openai_api_key,
            model=settings.openai_model,
            vision_model=settings.openai_vision_model,
            base_url=settings.openai_base_url,
            timeout_seconds=settings.generation_timeout_seconds,
        ),
        timeout_seconds=settings.generation_timeout_seconds,
    )
    embedder = None
    semantic_index = None
    if settings.openai_api_key:
        embedder = OpenAIEmbeddingClient(
            api_key=settings.openai_api_key,
            model=settings.embedding_model,
            base_url=settings.openai_base_url,
            timeout_seconds=settings.embedding_timeout_seconds,
        )
        semantic_index = SemanticMatchIndex(
            embedder,
            cache_store,
            threshold=settings.semantic_match_threshold,
            relaxed_threshold=settings.semantic_match_relaxed_threshold,
            match_count=settings.semantic_match_count,
        )
    else:
        logger.info("OPENAI_API_KEY not set; semantic matching and embedding writes are off")
    return RecipePipeline(
        settings=settings,
        generator=generator,
        cache_store=cache_store,
        content_fetcher=HttpContentFetcher(settings.content_extract_url, settings.fetch_timeout_seconds),
        caption_scraper=HttpCaptionScraper(settings.caption_scraper_url, settings.fetch_timeout_seconds),
        semantic_index=semantic_index,
        embedder=embedder,
    )


def get_pipeline(request: Request) -> RecipePipeline:
    return request.app.state.pipeline


def get_cache_store(request: Request) -> CacheStore:
    return request.app.state.pipeline.cache_store
