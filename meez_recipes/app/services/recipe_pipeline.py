"""Parse pipeline: key -> cache -> semantic match -> acquire -> generate -> normalize -> validate -> cache."""

import asyncio
import logging
import time
import uuid
from contextlib import contextmanager
from dataclasses import dataclass, field
from typing import Dict, Iterator, List, Optional

from meez_recipes.app.core.config import Settings
from meez_recipes.app.core.errors import ConfigurationError, FetchError, ParseErrorCode, PipelineError
from meez_recipes.app.db.models import CacheSourceType
from meez_recipes.app.schemas.parse import (
    CandidateMatch,
    ExtractedContent,
    InputType,
    ParseError,
    ParseOutcome,
    PromptPayload,
    RawInput,
    UsageSummary,
    ValidationOutcome,
)
from meez_recipes.app.schemas.recipe import StructuredRecipe
from meez_recipes.app.services import prompts
from meez_recipes.app.services.acquisition import (
    CaptionScraper,
    ContentFetcher,
    extract_url_from_text,
    prepare_image,
    prepare_raw_text,
    score_caption_quality,
)
from meez_recipes.app.services.cache_keys import derive_cache_key, detect_input_type, is_dish_name_query
from meez_recipes.app.services.cache_store import CacheStore
from meez_recipes.app.services.generation import FallbackGenerator
from meez_recipes.app.services.normalizer import is_empty_recipe, normalize_response, normalize_servings
from meez_recipes.app.services.semantic_match import EmbeddingClient, SemanticMatchIndex
from meez_recipes.app.services.validation import validate_recipe
from meez_recipes.app.services.validation.gate import THIN_RESULT_REASON

logger = logging.getLogger(__name__)

FETCH_METHOD_FUZZY = "fuzzy_match"
FETCH_METHOD_CAPTION = "video_caption"
FETCH_METHOD_VIDEO_LINK = "video_scraper_url_extraction"
FETCH_METHOD_TEXT = "raw_text"
FETCH_METHOD_IMAGE = "image_upload"

_SOURCE_TYPES = {
    InputType.URL: CacheSourceType.URL,
    InputType.RAW_TEXT: CacheSourceType.RAW_TEXT,
    InputType.VIDEO: CacheSourceType.VIDEO,
}


@dataclass
class _RunContext:
    request_id: str
    raw: RawInput
    cache_key: str
    input_type: InputType
    timings: Dict[str, float] = field(default_factory=dict)
    usage: UsageSummary = field(default_factory=UsageSummary)
    fetch_method_used: Optional[str] = None
    source: Optional[str] = None
    started: float = field(default_factory=time.perf_counter)

    @contextmanager
    def stage(self, name: str) -> Iterator[None]:
        start = time.perf_counter()
        try:
            yield
        finally:
            self.timings[name] = round((time.perf_counter() - start) * 1000, 1)

    def outcome(self, **kwargs) -> ParseOutcome:
        self.timings["total"] = round((time.perf_counter() - self.started) * 1000, 1)
        return ParseOutcome(
            input_type=self.input_type,
            cache_key=kwargs.pop("cache_key", self.cache_key),
            timings=dict(self.timings),
            usage=self.usage,
            fetch_method_used=kwargs.pop("fetch_method_used", self.fetch_method_used),
            source=self.source,
            **kwargs,
        )

    def fail(self, code: ParseErrorCode, message: Optional[str] = None, **kwargs) -> ParseOutcome:
        err = PipelineError(code, message)
        logger.warning("[%s] Parse failed with %s: %s", self.request_id, code.value, err.message)
        return self.outcome(error=ParseError(code=code, message=err.message), **kwargs)


class RecipePipeline:
    """Turns a URL, free text (optionally with a recipe photo) or video link into a validated, cached recipe.

    Collaborators are injected once at process start. The only in-process
    shared state is the single-flight map and the cache store's background
    task set.
    """

    def __init__(
        self,
        settings: Settings,
        generator: FallbackGenerator,
        cache_store: CacheStore,
        content_fetcher: ContentFetcher,
        caption_scraper: CaptionScraper,
        semantic_index: Optional[SemanticMatchIndex] = None,
        embedder: Optional[EmbeddingClient] = None,
    ):
        self.settings = settings
        self.generator = generator
        self.cache_store = cache_store
        self.content_fetcher = content_fetcher
        self.caption_scraper = caption_scraper
        self.semantic_index = semantic_index
        self.embedder = embedder
        self._inflight: Dict[str, asyncio.Future] = {}

    async def parse(
        self,
        raw_input: str,
        force_refresh: bool = False,
        is_dish_name_search: Optional[bool] = None,
        request_id: Optional[str] = None,
        image: Optional[str] = None,
    ) -> ParseOutcome:
        request_id = request_id or uuid.uuid4().hex[:12]
        text = (raw_input or "").strip()
        input_type = detect_input_type(text)
        if input_type is InputType.INVALID:
            ctx = _RunContext(request_id, RawInput(kind=InputType.RAW_TEXT, payload=text), None, InputType.INVALID)
            return ctx.fail(
                ParseErrorCode.INVALID_INPUT,
                "Please enter a recipe link, a recipe, or the name of a dish.",
            )

        image_data, image_mime_type = None, "image/jpeg"
        if image:
            if input_type is not InputType.RAW_TEXT:
                ctx = _RunContext(request_id, RawInput(kind=input_type, payload=text), None, input_type)
                return ctx.fail(ParseErrorCode.INVALID_INPUT, "An image can only be attached to a text description.")
            try:
                image_data, image_mime_type = prepare_image(image)
            except ValueError as exc:
                ctx = _RunContext(request_id, RawInput(kind=input_type, payload=text), None, input_type)
                return ctx.fail(ParseErrorCode.INVALID_INPUT, str(exc))
            # The text is a note about the photo, never a dish-name search
            is_dish_name_search = False

        if is_dish_name_search is None:
            is_dish_name_search = input_type is InputType.RAW_TEXT and is_dish_name_query(
                text, self.settings.dish_name_max_words
            )
        raw = RawInput(
            kind=input_type,
            payload=text,
            force_refresh=force_refresh,
            is_dish_name=is_dish_name_search,
            image_data=image_data,
            image_mime_type=image_mime_type,
        )

        started = time.perf_counter()
        cache_key = derive_cache_key(raw)
        ctx = _RunContext(request_id, raw, cache_key, input_type, started=started)
        ctx.timings["key"] = round((time.perf_counter() - started) * 1000, 1)
        logger.info("[%s] Parse request type=%s key=%s force=%s", request_id, input_type.value, cache_key, force_refresh)

        if not self.settings.pipeline_single_flight or force_refresh:
            return await asyncio.shield(self._guarded_run(ctx))

        # Dish-name searches may end in disambiguation, so they never share a run with plain text
        flight_key = f"{cache_key}:dish" if raw.is_dish_name else cache_key
        existing = self._inflight.get(flight_key)
        if existing is not None:
            logger.info("[%s] Joining in-flight parse for key %s", request_id, cache_key)
            shared = await asyncio.shield(existing)
            return shared.model_copy(deep=True)

        task = asyncio.ensure_future(self._guarded_run(ctx))
        self._inflight[flight_key] = task

        def _release(done: asyncio.Future) -> None:
            if self._inflight.get(flight_key) is done:
                del self._inflight[flight_key]

        task.add_done_callback(_release)
        # Shielded so an abandoned caller does not cancel work a later request can reuse
        return await asyncio.shield(task)

    async def _guarded_run(self, ctx: _RunContext) -> ParseOutcome:
        try:
            return await self._run(ctx)
        except Exception:
            logger.exception("[%s] Unexpected pipeline failure", ctx.request_id)
            return ctx.fail(ParseErrorCode.GENERATION_FAILED)

    async def _run(self, ctx: _RunContext) -> ParseOutcome:
        if not ctx.raw.force_refresh:
            cached = await self._check_cache(ctx, ctx.cache_key)
            if cached is not None:
                return cached

            if self._semantic_enabled(ctx):
                semantic = await self._semantic_lookup(ctx)
                if semantic is not None:
                    return semantic

        if ctx.input_type is InputType.URL:
            return await self._run_url(ctx, ctx.raw.payload)
        if ctx.input_type is InputType.VIDEO:
            return await self._run_video(ctx)
        return await self._run_text(ctx)

    # cache + semantic ---------------------------------------------------

    async def _check_cache(self, ctx: _RunContext, cache_key: str) -> Optional[ParseOutcome]:
        with ctx.stage("db_check"):
            try:
                record = await self.cache_store.get_by_key(cache_key)
            except Exception:
                logger.exception("[%s] Cache read failed; treating as miss", ctx.request_id)
                return None
        if record is None:
            logger.info("[%s] Cache miss for %s", ctx.request_id, cache_key)
            return None
        logger.info("[%s] Cache hit for %s (record %s)", ctx.request_id, cache_key, record.id)
        return ctx.outcome(recipe=record.recipe, from_cache=True, cache_key=cache_key)

    def _semantic_enabled(self, ctx: _RunContext) -> bool:
        return (
            ctx.input_type is InputType.RAW_TEXT
            and ctx.raw.is_dish_name
            and self.settings.enable_fuzzy_match
            and self.semantic_index is not None
        )

    async def _semantic_lookup(self, ctx: _RunContext) -> Optional[ParseOutcome]:
        with ctx.stage("semantic"):
            try:
                matches: List[CandidateMatch] = await asyncio.wait_for(
                    self.semantic_index.find_matches(ctx.raw.payload, ctx.request_id),
                    timeout=self.settings.embedding_timeout_seconds,
                )
            except Exception as exc:
                logger.warning("[%s] Semantic match failed, continuing to generation: %s", ctx.request_id, exc)
                return None
        if not matches:
            return None
        if len(matches) == 1:
            match = matches[0]
            return ctx.outcome(
                recipe=match.recipe,
                from_cache=True,
                cache_key=match.recipe.source_url or match.cache_key or ctx.cache_key,
                fetch_method_used=FETCH_METHOD_FUZZY,
            )
        return ctx.outcome(candidate_matches=matches, fetch_method_used=FETCH_METHOD_FUZZY)

    # acquisition ----------------------------------------------------------

    async def _run_text(self, ctx: _RunContext) -> ParseOutcome:
        if ctx.raw.image_data:
            ctx.fetch_method_used = FETCH_METHOD_IMAGE
            with ctx.stage("prompt"):
                prompt = prompts.build_image_prompt(
                    ctx.raw.image_data,
                    ctx.raw.image_mime_type,
                    note=ctx.raw.payload,
                    request_id=ctx.request_id,
                    max_chars=self.settings.prompt_max_input_chars,
                )
            return await self._generate_and_store(ctx, prompt, ctx.cache_key)

        with ctx.stage("prepare"):
            try:
                prepared = prepare_raw_text(ctx.raw.payload, dish_name=ctx.raw.is_dish_name)
            except ValueError as exc:
                return ctx.fail(ParseErrorCode.INVALID_INPUT, str(exc))
        ctx.fetch_method_used = FETCH_METHOD_TEXT
        with ctx.stage("prompt"):
            prompt = prompts.build_text_prompt(prepared, ctx.request_id, self.settings.prompt_max_input_chars)
        return await self._generate_and_store(ctx, prompt, ctx.cache_key)

    async def _run_url(self, ctx: _RunContext, url: str, cache_key: Optional[str] = None) -> ParseOutcome:
        cache_key = cache_key or ctx.cache_key
        with ctx.stage("fetch"):
            try:
                fetched = await asyncio.wait_for(
                    self.content_fetcher.fetch(url, ctx.request_id),
                    timeout=self.settings.fetch_timeout_seconds,
                )
            except asyncio.TimeoutError:
                return ctx.fail(ParseErrorCode.FETCH_FAILED, cache_key=cache_key)
            except (FetchError, ConfigurationError) as exc:
                logger.warning("[%s] Content fetch failed for %s: %s", ctx.request_id, url, exc)
                return ctx.fail(ParseErrorCode.FETCH_FAILED, cache_key=cache_key)

        ctx.fetch_method_used = ctx.fetch_method_used or fetched.fetch_method_used
        content = fetched.content
        if not (content.ingredients_text or content.instructions_text or content.title):
            return ctx.fail(
                ParseErrorCode.GENERATION_EMPTY,
                "This page doesn't appear to contain a recipe.",
                cache_key=cache_key,
            )
        with ctx.stage("prompt"):
            prompt = prompts.build_url_prompt(content, ctx.request_id, self.settings.prompt_max_input_chars)
        return await self._generate_and_store(ctx, prompt, cache_key, content=content, source_input=url)

    async def _run_video(self, ctx: _RunContext) -> ParseOutcome:
        with ctx.stage("fetch"):
            try:
                caption = await asyncio.wait_for(
                    self.caption_scraper.scrape_caption(ctx.raw.payload, ctx.request_id),
                    timeout=self.settings.fetch_timeout_seconds,
                )
            except (asyncio.TimeoutError, ConfigurationError) as exc:
                logger.warning("[%s] Caption scrape failed: %s", ctx.request_id, exc)
                return ctx.fail(ParseErrorCode.FETCH_FAILED)

        if caption.error and not caption.caption:
            logger.warning(
                "[%s] Caption scraper error %s (severity=%s)",
                ctx.request_id,
                caption.error.code,
                caption.error.severity,
            )
            return ctx.fail(ParseErrorCode.FETCH_FAILED)

        quality = score_caption_quality(caption.caption)
        logger.info("[%s] Caption quality %s (platform=%s)", ctx.request_id, quality, caption.platform)
        if quality in ("high", "medium"):
            ctx.source = "caption"
            ctx.fetch_method_used = FETCH_METHOD_CAPTION
            with ctx.stage("prompt"):
                prompt = prompts.build_video_prompt(
                    caption.caption, caption.platform, ctx.request_id, self.settings.prompt_max_input_chars
                )
            return await self._generate_and_store(ctx, prompt, ctx.cache_key)

        linked_url = extract_url_from_text(caption.caption)
        if not linked_url:
            return ctx.fail(
                ParseErrorCode.INVALID_INPUT,
                "This video's caption doesn't include a recipe or a recipe link.",
            )

        # Link-in-bio style post: the linked page is the recipe
        logger.info("[%s] Delegating video to linked page %s", ctx.request_id, linked_url)
        ctx.source = "link"
        ctx.fetch_method_used = FETCH_METHOD_VIDEO_LINK
        link_key = derive_cache_key(RawInput(kind=InputType.URL, payload=linked_url))
        if not ctx.raw.force_refresh:
            cached = await self._check_cache(ctx, link_key)
            if cached is not None:
                return cached
        return await self._run_url(ctx, linked_url, cache_key=link_key)

    # generation -> storage ------------------------------------------------

    async def _generate_and_store(
        self,
        ctx: _RunContext,
        prompt: PromptPayload,
        cache_key: str,
        content: Optional[ExtractedContent] = None,
        source_input: Optional[str] = None,
    ) -> ParseOutcome:
        with ctx.stage("generation"):
            result = await self.generator.generate(prompt)
        ctx.usage = UsageSummary(
            input_tokens=result.usage.input_tokens,
            output_tokens=result.usage.output_tokens,
            cost_usd=result.cost_usd,
            provider=result.provider,
        )
        if result.error or not result.output:
            logger.error("[%s] Generation failed: %s", ctx.request_id, result.error)
            return ctx.fail(ParseErrorCode.GENERATION_FAILED, cache_key=cache_key)

        with ctx.stage("normalize"):
            normalized = normalize_response(result.output)
        if not normalized.ok:
            return ctx.fail(
                ParseErrorCode.GENERATION_FAILED,
                "The recipe service returned an unreadable response. Please try again.",
                cache_key=cache_key,
            )
        recipe = normalized.recipe
        is_fallback = bool(content and content.is_fallback_extraction)
        if is_empty_recipe(recipe):
            message = "This page doesn't appear to contain a recipe." if is_fallback else None
            return ctx.fail(ParseErrorCode.GENERATION_EMPTY, message, cache_key=cache_key)

        if content is not None:
            _apply_page_metadata(recipe, content)

        with ctx.stage("validate"):
            validation = validate_recipe(recipe, is_fallback_extraction=is_fallback, request_id=ctx.request_id)
        if not validation.accepted:
            return self._rejected(ctx, validation, cache_key)

        recipe.recipe_yield = normalize_servings(recipe.recipe_yield)
        return await self._store(ctx, recipe, cache_key, source_input or ctx.raw.payload)

    def _rejected(self, ctx: _RunContext, validation: ValidationOutcome, cache_key: str) -> ParseOutcome:
        if THIN_RESULT_REASON in validation.fatal_reasons:
            return ctx.fail(ParseErrorCode.GENERATION_EMPTY, THIN_RESULT_REASON, cache_key=cache_key, validation=validation)
        return ctx.fail(
            ParseErrorCode.FINAL_VALIDATION_FAILED,
            "Recipe validation failed: " + "; ".join(validation.fatal_reasons),
            cache_key=cache_key,
            validation=validation,
        )

    async def _store(self, ctx: _RunContext, recipe: StructuredRecipe, cache_key: str, raw_input: str) -> ParseOutcome:
        with ctx.stage("db_insert"):
            try:
                record = await self.cache_store.insert(
                    cache_key=cache_key,
                    raw_input=raw_input,
                    source_type=CacheSourceType.URL if ctx.source == "link" else _SOURCE_TYPES[ctx.input_type],
                    recipe=recipe,
                )
            except Exception:
                # The caller still gets the recipe; it just has no stable id
                logger.exception("[%s] Failed to cache recipe under %s", ctx.request_id, cache_key)
                return ctx.outcome(recipe=recipe, cache_key=cache_key)

        if self.settings.enable_embedding and self.embedder is not None:
            self.cache_store.schedule_embedding_backfill(record, self.embedder)
        return ctx.outcome(recipe=record.recipe, cache_key=cache_key)


def _apply_page_metadata(recipe: StructuredRecipe, content: ExtractedContent) -> None:
    recipe.description = recipe.description or content.description
    recipe.image = recipe.image or content.image
    recipe.thumbnail_url = recipe.thumbnail_url or content.thumbnail_url
    recipe.source_url = content.source_url or recipe.source_url
