#!/usr/bin/env python
"""
Backfill embeddings for cached recipes that do not have one yet.

Run after enabling semantic matching on an existing cache.
"""
import asyncio
import logging
from pathlib import Path

from dotenv import load_dotenv

from meez_recipes.app.core.config import get_settings
from meez_recipes.app.db.session import build_engine, build_session_factory
from meez_recipes.app.services.cache_store import CacheStore
from meez_recipes.app.services.semantic_match import OpenAIEmbeddingClient, build_embedding_input

logging.basicConfig(level=logging.INFO)
logger = logging.getLogger("backfill_embeddings")

MIN_INPUT_CHARS = 20
THROTTLE_SECONDS = 0.2


async def run_backfill(limit: int = 100) -> int:
    settings = get_settings()
    store = CacheStore(build_session_factory(build_engine(settings.database_url)))
    embedder = OpenAIEmbeddingClient(
        api_key=settings.openai_api_key,
        model=settings.embedding_model,
        base_url=settings.openai_base_url,
        timeout_seconds=settings.embedding_timeout_seconds,
    )
    records = await store.missing_embeddings(limit)
    if not records:
        logger.info("No recipes to backfill")
        return 0

    done = 0
    for record in records:
        if len(build_embedding_input(record.recipe)) < MIN_INPUT_CHARS:
            logger.info("Skipping recipe %s: too little content", record.id)
            continue
        if await store.backfill_embedding(record, embedder):
            done += 1
        await asyncio.sleep(THROTTLE_SECONDS)
    logger.info("Backfill complete: %s of %s recipes embedded", done, len(records))
    return done


def main():
    repo_root = Path(__file__).resolve().parents[1]
    env_path = repo_root / ".env"
    if env_path.exists():
        load_dotenv(env_path)
    asyncio.run(run_backfill())


if __name__ == "__main__":
    main()
