import logging
from functools import lru_cache

from pydantic import Field
from pydantic_settings import BaseSettings, SettingsConfigDict


class Settings(BaseSettings):
    database_url: str = Field("sqlite:///./meez_recipes.db", alias="DATABASE_URL")
    log_level: str = Field("INFO", alias="LOG_LEVEL")

    # Primary generation provider
    gemini_api_key: str | None = Field(None, alias="GEMINI_API_KEY")
    gemini_base_url: str = Field(
        "https://generativelanguage.googleapis.com/v1beta", alias="GEMINI_BASE_URL"
    )
    gemini_model: str = Field("gemini-2.0-flash", alias="GEMINI_MODEL")
    gemini_max_prompt_chars: int = Field(250_000, alias="GEMINI_MAX_PROMPT_CHARS")

    # Fallback generation provider
    openai_api_key: str | None = Field(None, alias="OPENAI_API_KEY")
    openai_base_url: str = Field("https://api.openai.com/v1", alias="OPENAI_BASE_URL")
    openai_model: str = Field("gpt-4-turbo", alias="OPENAI_MODEL")
    openai_vision_model: str = Field("gpt-4o", alias="OPENAI_VISION_MODEL")
    embedding_model: str = Field("text-embedding-3-small", alias="EMBEDDING_MODEL")

    # Collaborating services
    content_extract_url: str | None = Field(None, alias="CONTENT_EXTRACT_URL")
    caption_scraper_url: str | None = Field(None, alias="CAPTION_SCRAPER_URL")

    # Per-stage timeouts (seconds)
    fetch_timeout_seconds: float = Field(45.0, alias="FETCH_TIMEOUT_SECONDS")
    generation_timeout_seconds: float = Field(90.0, alias="GENERATION_TIMEOUT_SECONDS")
    embedding_timeout_seconds: float = Field(20.0, alias="EMBEDDING_TIMEOUT_SECONDS")

    # Prompt limits
    prompt_max_input_chars: int = Field(100_000, alias="PROMPT_MAX_INPUT_CHARS")

    # Semantic match: lookups read the vectors that ENABLE_EMBEDDING writes, so both default on.
    # Neither runs without OPENAI_API_KEY.
    enable_fuzzy_match: bool = Field(True, alias="ENABLE_FUZZY_MATCH")
    enable_embedding: bool = Field(True, alias="ENABLE_EMBEDDING")
    semantic_match_threshold: float = Field(0.5, alias="SEMANTIC_MATCH_THRESHOLD")
    semantic_match_relaxed_threshold: float = Field(0.35, alias="SEMANTIC_MATCH_RELAXED_THRESHOLD")
    semantic_match_count: int = Field(5, alias="SEMANTIC_MATCH_COUNT")
    dish_name_max_words: int = Field(6, alias="DISH_NAME_MAX_WORDS")

    pipeline_single_flight: bool = Field(True, alias="PIPELINE_SINGLE_FLIGHT")

    model_config = SettingsConfigDict(env_file=".env", case_sensitive=False, extra="ignore")


logger = logging.getLogger(__name__)


@lru_cache
def get_settings() -> Settings:
    try:
        settings = Settings()
    except PermissionError:
        logger.warning("Unable to read .env; continuing with environment variables only")
        settings = Settings(_env_file=None)
    return settings
