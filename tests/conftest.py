from typing import Optional

import pytest
from fastapi.testclient import TestClient
from sqlalchemy import create_engine

from fakes import FakeFetcher, FakeProvider, FakeScraper
from meez_recipes.app.api.deps import get_cache_store, get_pipeline
from meez_recipes.app.core.config import Settings
from meez_recipes.app.db import models  # noqa: F401
from meez_recipes.app.db.base import Base
from meez_recipes.app.db.session import build_session_factory
from meez_recipes.app.main import create_app
from meez_recipes.app.services.acquisition import CaptionScraper, ContentFetcher
from meez_recipes.app.services.cache_store import CacheStore
from meez_recipes.app.services.generation import FallbackGenerator, GenerationProvider
from meez_recipes.app.services.recipe_pipeline import RecipePipeline
from meez_recipes.app.services.semantic_match import EmbeddingClient, SemanticMatchIndex


@pytest.fixture
def settings():
    return Settings(_env_file=None).model_copy(
        update={
            "gemini_api_key": "test-gemini",
            "openai_api_key": "test-openai",
            "enable_fuzzy_match": True,
            "enable_embedding": False,
            "pipeline_single_flight": True,
        }
    )


@pytest.fixture
def engine(tmp_path):
    engine = create_engine(
        f"sqlite+pysqlite:///{tmp_path / 'cache.db'}",
        connect_args={"check_same_thread": False},
        future=True,
    )
    Base.metadata.create_all(bind=engine)
    yield engine
    engine.dispose()


@pytest.fixture
def cache_store(engine):
    return CacheStore(build_session_factory(engine))


@pytest.fixture
def make_pipeline(settings, cache_store):
    def _make(
        primary: Optional[GenerationProvider] = None,
        secondary: Optional[GenerationProvider] = None,
        fetcher: Optional[ContentFetcher] = None,
        scraper: Optional[CaptionScraper] = None,
        embedder: Optional[EmbeddingClient] = None,
        **setting_overrides,
    ) -> RecipePipeline:
        pipeline_settings = settings.model_copy(update=setting_overrides)
        semantic_index = None
        if embedder is not None:
            semantic_index = SemanticMatchIndex(
                embedder,
                cache_store,
                threshold=pipeline_settings.semantic_match_threshold,
                relaxed_threshold=pipeline_settings.semantic_match_relaxed_threshold,
            )
        return RecipePipeline(
            settings=pipeline_settings,
            generator=FallbackGenerator(
                primary or FakeProvider("gemini"),
                secondary or FakeProvider("openai"),
                timeout_seconds=5,
            ),
            cache_store=cache_store,
            content_fetcher=fetcher or FakeFetcher(),
            caption_scraper=scraper or FakeScraper(),
            semantic_index=semantic_index,
            embedder=embedder,
        )

    return _make


@pytest.fixture
def app(settings, make_pipeline, cache_store):
    app = create_app(settings)
    pipeline = make_pipeline()
    app.dependency_overrides[get_pipeline] = lambda: pipeline
    app.dependency_overrides[get_cache_store] = lambda: cache_store
    app.state.test_pipeline = pipeline
    return app


@pytest.fixture
def client(app):
    return TestClient(app)
