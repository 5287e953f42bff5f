"""Request, intermediate and outcome models for the parse pipeline."""

import enum
from typing import Dict, List, Optional

from pydantic import BaseModel, ConfigDict, Field

from meez_recipes.app.core.errors import ParseErrorCode
from meez_recipes.app.schemas.recipe import StructuredRecipe


class InputType(str, enum.Enum):
    URL = "url"
    RAW_TEXT = "raw_text"
    VIDEO = "video"
    INVALID = "invalid"


class RawInput(BaseModel):
    kind: InputType
    payload: str
    force_refresh: bool = False
    is_dish_name: bool = False
    # Base64 photo of a recipe; only accompanies free text
    image_data: Optional[str] = None
    image_mime_type: str = "image/jpeg"


class ExtractedContent(BaseModel):
    """Clean content returned by the content-extract collaborator."""

    model_config = ConfigDict(populate_by_name=True, extra="ignore")

    title: Optional[str] = None
    ingredients_text: Optional[str] = Field(None, alias="ingredientsText")
    instructions_text: Optional[str] = Field(None, alias="instructionsText")
    prep_time: Optional[str] = Field(None, alias="prepTime")
    cook_time: Optional[str] = Field(None, alias="cookTime")
    total_time: Optional[str] = Field(None, alias="totalTime")
    recipe_yield_text: Optional[str] = Field(None, alias="recipeYieldText")
    tips_text: Optional[str] = Field(None, alias="tipsText")
    description: Optional[str] = None
    image: Optional[str] = None
    thumbnail_url: Optional[str] = Field(None, alias="thumbnailUrl")
    source_url: Optional[str] = Field(None, alias="sourceUrl")
    is_fallback_extraction: bool = Field(False, alias="isFallbackExtraction")
    fallback_type: Optional[str] = Field(None, alias="fallbackType")


class FetchedContent(BaseModel):
    content: ExtractedContent
    fetch_method_used: Optional[str] = None
    timings: Dict[str, float] = Field(default_factory=dict)


class CaptionError(BaseModel):
    code: str
    message: Optional[str] = None
    severity: str = "fatal"  # auth | retryable | fatal


class CaptionResult(BaseModel):
    caption: Optional[str] = None
    source: Optional[str] = None
    platform: Optional[str] = None
    error: Optional[CaptionError] = None


class PromptMetadata(BaseModel):
    request_id: Optional[str] = None
    route: str = "text"


class PromptPayload(BaseModel):
    system: str
    text: str
    is_json: bool = True
    temperature: float = 0.2
    image_data: Optional[str] = None
    image_mime_type: str = "image/jpeg"
    metadata: PromptMetadata = Field(default_factory=PromptMetadata)


class TokenUsage(BaseModel):
    input_tokens: int = 0
    output_tokens: int = 0


class GenerationResult(BaseModel):
    output: Optional[str] = None
    usage: TokenUsage = Field(default_factory=TokenUsage)
    provider: Optional[str] = None
    cost_usd: float = 0.0
    error: Optional[str] = None


class ValidationOutcome(BaseModel):
    accepted: bool
    fatal_reasons: List[str] = Field(default_factory=list)
    informational_reasons: List[str] = Field(default_factory=list)


class ParseError(BaseModel):
    code: ParseErrorCode
    message: str


class UsageSummary(BaseModel):
    input_tokens: int = Field(0, serialization_alias="inputTokens")
    output_tokens: int = Field(0, serialization_alias="outputTokens")
    cost_usd: float = Field(0.0, serialization_alias="costUsd")
    provider: Optional[str] = None


class CandidateMatch(BaseModel):
    recipe: StructuredRecipe
    similarity: float
    cache_key: Optional[str] = Field(None, serialization_alias="cacheKey")


class ParseOutcome(BaseModel):
    """Terminal result of one pipeline run.

    Exactly one of ``recipe`` and ``error`` is set, except for the
    disambiguation outcome where both are empty and ``candidate_matches``
    holds the choices.
    """

    recipe: Optional[StructuredRecipe] = None
    error: Optional[ParseError] = None
    from_cache: bool = Field(False, serialization_alias="fromCache")
    input_type: InputType = Field(serialization_alias="inputType")
    cache_key: Optional[str] = Field(None, serialization_alias="cacheKey")
    timings: Dict[str, float] = Field(default_factory=dict)
    usage: UsageSummary = Field(default_factory=UsageSummary)
    fetch_method_used: Optional[str] = Field(None, serialization_alias="fetchMethodUsed")
    candidate_matches: Optional[List[CandidateMatch]] = Field(None, serialization_alias="candidateMatches")
    source: Optional[str] = None
    validation: Optional[ValidationOutcome] = None


class ParseRequest(BaseModel):
    model_config = ConfigDict(populate_by_name=True)

    input: str = Field(min_length=1)
    force_refresh: bool = Field(False, alias="forceRefresh")
    is_dish_name_search: Optional[bool] = Field(None, alias="isDishNameSearch")
    image: Optional[str] = Field(None, alias="imageBase64")
