import asyncio
import json

import pytest

from fakes import FakeEmbedder, FakeFetcher, FakeProvider, FakeScraper, recipe_json, recipe_payload
from meez_recipes.app.core.errors import FetchError, ParseErrorCode, ProviderError
from meez_recipes.app.db.models import CacheSourceType
from meez_recipes.app.schemas.parse import CaptionError, CaptionResult, ExtractedContent, InputType, TokenUsage
from meez_recipes.app.schemas.recipe import StructuredRecipe
from meez_recipes.app.services.cache_keys import text_cache_key

RECIPE_CAPTION = (
    "Creamy garlic chicken recipe! Ingredients: 2 cups milk, 1 tbsp butter, 2 tbsp flour, 1 lb chicken, "
    "salt and pepper, 3 cloves garlic. Preheat the oven. Season the chicken and sear it in a pan with oil. "
    "Melt the butter, whisk in the flour, then pour in the milk and stir until thick. "
    "Add the garlic, simmer for 5 minutes, then bake everything for 20 minutes and serve."
)


@pytest.mark.asyncio
async def test_url_parse_then_cache_hit(make_pipeline):
    primary = FakeProvider("gemini")
    fetcher = FakeFetcher()
    pipeline = make_pipeline(primary=primary, fetcher=fetcher)

    first = await pipeline.parse("https://example.com/pasta")
    assert first.error is None
    assert first.from_cache is False
    assert first.input_type == InputType.URL
    assert first.cache_key == "https://example.com/pasta"
    assert first.recipe.id is not None
    assert first.recipe.image == "https://example.com/pasta.jpg"
    assert first.recipe.source_url == "https://example.com/pasta"
    assert first.usage.provider == "gemini"
    assert first.usage.input_tokens == 100
    assert first.fetch_method_used == "extract_service"
    for stage in ("key", "db_check", "fetch", "prompt", "generation", "normalize", "validate", "db_insert", "total"):
        assert stage in first.timings

    second = await pipeline.parse("https://www.example.com/pasta/?utm_source=newsletter")
    assert second.from_cache is True
    assert second.cache_key == first.cache_key
    assert second.recipe == first.recipe
    assert len(primary.calls) == 1
    assert fetcher.calls == ["https://example.com/pasta"]


@pytest.mark.asyncio
async def test_force_refresh_bypasses_cache_but_keeps_key(make_pipeline):
    primary = FakeProvider("gemini")
    pipeline = make_pipeline(primary=primary)
    first = await pipeline.parse("https://example.com/pasta")
    refreshed = await pipeline.parse("https://example.com/pasta", force_refresh=True)
    assert refreshed.from_cache is False
    assert refreshed.cache_key == first.cache_key
    assert refreshed.recipe.id != first.recipe.id
    assert len(primary.calls) == 2


@pytest.mark.asyncio
async def test_fallback_outcome_reflects_only_secondary(make_pipeline):
    primary = FakeProvider("gemini", [ProviderError("gemini", "overloaded", temporary=True)])
    secondary = FakeProvider("openai", [recipe_json(title="Secondary Pasta")], usage=TokenUsage(input_tokens=7, output_tokens=9))
    pipeline = make_pipeline(primary=primary, secondary=secondary)

    outcome = await pipeline.parse("https://example.com/pasta")
    assert outcome.recipe.title == "Secondary Pasta"
    assert outcome.usage.provider == "openai"
    assert (outcome.usage.input_tokens, outcome.usage.output_tokens) == (7, 9)


@pytest.mark.asyncio
async def test_invalid_input(make_pipeline):
    outcome = await make_pipeline().parse("!!")
    assert outcome.recipe is None
    assert outcome.error.code == ParseErrorCode.INVALID_INPUT
    assert outcome.input_type == InputType.INVALID


@pytest.mark.asyncio
async def test_implausible_text_is_invalid(make_pipeline):
    primary = FakeProvider("gemini")
    outcome = await make_pipeline(primary=primary).parse("hello there", is_dish_name_search=False)
    assert outcome.error.code == ParseErrorCode.INVALID_INPUT
    assert primary.calls == []


@pytest.mark.asyncio
async def test_fetch_failure_maps_to_fetch_failed(make_pipeline, cache_store):
    pipeline = make_pipeline(fetcher=FakeFetcher(error=FetchError("upstream 503", retryable=True)))
    outcome = await pipeline.parse("https://example.com/pasta")
    assert outcome.error.code == ParseErrorCode.FETCH_FAILED
    assert await cache_store.get_by_key("https://example.com/pasta") is None


@pytest.mark.asyncio
async def test_both_providers_failing(make_pipeline):
    pipeline = make_pipeline(
        primary=FakeProvider("gemini", [ProviderError("gemini", "down")]),
        secondary=FakeProvider("openai", [ProviderError("openai", "down")]),
    )
    outcome = await pipeline.parse("https://example.com/pasta")
    assert outcome.error.code == ParseErrorCode.GENERATION_FAILED
    assert outcome.recipe is None


@pytest.mark.asyncio
async def test_unparseable_output_is_generation_failed(make_pipeline):
    pipeline = make_pipeline(primary=FakeProvider("gemini", ["Sorry, I can't help with that."]))
    outcome = await pipeline.parse("https://example.com/pasta")
    assert outcome.error.code == ParseErrorCode.GENERATION_FAILED


@pytest.mark.asyncio
async def test_empty_recipe_is_generation_empty(make_pipeline):
    empty = json.dumps({"title": None, "ingredientGroups": [], "instructions": []})
    outcome = await make_pipeline(primary=FakeProvider("gemini", [empty])).parse("https://example.com/pasta")
    assert outcome.error.code == ParseErrorCode.GENERATION_EMPTY


@pytest.mark.asyncio
async def test_thin_fallback_page_is_generation_empty(make_pipeline):
    content = ExtractedContent(title="About us", instructions_text="We love food.", is_fallback_extraction=True)
    thin = recipe_json(
        ingredientGroups=[{"name": "Main", "ingredients": [{"name": "love"}]}],
        instructions=["Share food with friends and family."],
    )
    pipeline = make_pipeline(primary=FakeProvider("gemini", [thin]), fetcher=FakeFetcher(content=content))
    outcome = await pipeline.parse("https://example.com/about")
    assert outcome.error.code == ParseErrorCode.GENERATION_EMPTY
    assert outcome.error.message == "This page doesn't appear to contain a recipe."


@pytest.mark.asyncio
async def test_validation_rejection_is_not_cached(make_pipeline, cache_store):
    pipeline = make_pipeline(primary=FakeProvider("gemini", [recipe_json(recipeYield="80 servings")]))
    outcome = await pipeline.parse("https://example.com/party-pasta")
    assert outcome.error.code == ParseErrorCode.FINAL_VALIDATION_FAILED
    assert outcome.validation.accepted is False
    assert await cache_store.get_by_key("https://example.com/party-pasta") is None


@pytest.mark.asyncio
async def test_validation_rejection_does_not_retry_other_provider(make_pipeline):
    secondary = FakeProvider("openai")
    pipeline = make_pipeline(primary=FakeProvider("gemini", [recipe_json(ingredientGroups=[])]), secondary=secondary)
    outcome = await pipeline.parse("https://example.com/pasta")
    assert outcome.error.code == ParseErrorCode.FINAL_VALIDATION_FAILED
    assert secondary.calls == []


@pytest.mark.asyncio
async def test_raw_text_uses_text_hash_key(make_pipeline):
    text = "2 cups flour\n1 egg\n1 cup milk\nWhisk together and fry as pancakes."
    outcome = await make_pipeline().parse("  " + text + "\n")
    assert outcome.input_type == InputType.RAW_TEXT
    assert outcome.cache_key == text_cache_key(text)
    assert outcome.fetch_method_used == "raw_text"
    again = await make_pipeline().parse(text)
    assert again.from_cache is True


@pytest.mark.asyncio
async def test_dish_name_with_multiple_matches_returns_candidates(make_pipeline, cache_store):
    soup = await cache_store.insert("k1", "chicken soup", CacheSourceType.RAW_TEXT, StructuredRecipe.model_validate(recipe_payload(title="Chicken Soup")))
    curry = await cache_store.insert("k2", "chicken curry", CacheSourceType.RAW_TEXT, StructuredRecipe.model_validate(recipe_payload(title="Chicken Curry")))
    await cache_store.update_embedding(soup.id, [0.9, 0.1, 0.0])
    await cache_store.update_embedding(curry.id, [0.8, 0.3, 0.0])

    primary = FakeProvider("gemini")
    pipeline = make_pipeline(primary=primary, embedder=FakeEmbedder(default=[1.0, 0.0, 0.0]))
    outcome = await pipeline.parse("chicken")

    assert outcome.recipe is None
    assert outcome.error is None
    assert len(outcome.candidate_matches) == 2
    assert {m.recipe.title for m in outcome.candidate_matches} == {"Chicken Soup", "Chicken Curry"}
    assert primary.calls == []


@pytest.mark.asyncio
async def test_dish_name_single_match_is_returned_as_cache_hit(make_pipeline, cache_store):
    soup = await cache_store.insert("k1", "chicken soup", CacheSourceType.RAW_TEXT, StructuredRecipe.model_validate(recipe_payload(title="Chicken Soup")))
    await cache_store.update_embedding(soup.id, [1.0, 0.0, 0.0])

    pipeline = make_pipeline(embedder=FakeEmbedder(default=[1.0, 0.0, 0.0]))
    outcome = await pipeline.parse("chicken")
    assert outcome.from_cache is True
    assert outcome.recipe.title == "Chicken Soup"
    assert outcome.recipe.id == soup.id
    assert outcome.cache_key == "k1"
    assert outcome.fetch_method_used == "fuzzy_match"


@pytest.mark.asyncio
async def test_semantic_failure_falls_through_to_generation(make_pipeline):
    primary = FakeProvider("gemini", [recipe_json(title="Chicken Stir Fry")])
    pipeline = make_pipeline(primary=primary, embedder=FakeEmbedder(error=RuntimeError("embedding down")))
    outcome = await pipeline.parse("chicken")
    assert outcome.recipe.title == "Chicken Stir Fry"
    assert len(primary.calls) == 1


@pytest.mark.asyncio
async def test_semantic_match_skipped_when_forced(make_pipeline):
    embedder = FakeEmbedder()
    await make_pipeline(embedder=embedder).parse("chicken", force_refresh=True)
    assert embedder.calls == []


@pytest.mark.asyncio
async def test_cache_read_error_is_treated_as_miss(make_pipeline, monkeypatch):
    pipeline = make_pipeline()

    async def broken_get(cache_key):
        raise RuntimeError("database unavailable")

    monkeypatch.setattr(pipeline.cache_store, "get_by_key", broken_get)
    outcome = await pipeline.parse("https://example.com/pasta")
    assert outcome.error is None
    assert outcome.recipe.title == "Garlic Butter Pasta"


@pytest.mark.asyncio
async def test_cache_write_error_still_returns_recipe(make_pipeline, monkeypatch):
    pipeline = make_pipeline()

    async def broken_insert(**kwargs):
        raise RuntimeError("disk full")

    monkeypatch.setattr(pipeline.cache_store, "insert", broken_insert)
    outcome = await pipeline.parse("https://example.com/pasta")
    assert outcome.error is None
    assert outcome.recipe.id is None


@pytest.mark.asyncio
async def test_concurrent_identical_requests_share_one_generation(make_pipeline, cache_store):
    class SlowProvider(FakeProvider):
        async def generate(self, prompt):
            await asyncio.sleep(0.05)
            return await super().generate(prompt)

    primary = SlowProvider("gemini")
    pipeline = make_pipeline(primary=primary)
    first, second = await asyncio.gather(
        pipeline.parse("https://example.com/pasta"),
        pipeline.parse("https://example.com/pasta?utm_campaign=x"),
    )
    assert len(primary.calls) == 1
    assert first.recipe == second.recipe
    assert first.recipe is not second.recipe


@pytest.mark.asyncio
async def test_single_flight_can_be_disabled(make_pipeline):
    class SlowProvider(FakeProvider):
        async def generate(self, prompt):
            await asyncio.sleep(0.05)
            return await super().generate(prompt)

    primary = SlowProvider("gemini")
    pipeline = make_pipeline(primary=primary, pipeline_single_flight=False)
    await asyncio.gather(pipeline.parse("https://example.com/pasta"), pipeline.parse("https://example.com/pasta"))
    assert len(primary.calls) == 2


@pytest.mark.asyncio
async def test_embedding_backfill_runs_after_write(make_pipeline, cache_store):
    embedder = FakeEmbedder(default=[0.0, 1.0, 0.0])
    pipeline = make_pipeline(embedder=embedder, enable_embedding=True)
    outcome = await pipeline.parse("https://example.com/pasta")
    await cache_store.drain()
    record = await cache_store.get_by_id(outcome.recipe.id)
    assert record.has_embedding


@pytest.mark.asyncio
async def test_video_with_recipe_caption(make_pipeline):
    scraper = FakeScraper(CaptionResult(caption=RECIPE_CAPTION, source="caption", platform="tiktok"))
    primary = FakeProvider("gemini")
    pipeline = make_pipeline(primary=primary, scraper=scraper)
    outcome = await pipeline.parse("https://www.tiktok.com/@chef/video/123")
    assert outcome.input_type == InputType.VIDEO
    assert outcome.source == "caption"
    assert outcome.cache_key == "https://tiktok.com/@chef/video/123"
    assert "VIDEO CAPTION" in primary.calls[0].text
    assert outcome.recipe is not None


@pytest.mark.asyncio
async def test_video_link_in_bio_delegates_to_url(make_pipeline):
    caption = "Recipe for these noodles is on my site https://example.com/noodles #dinner"
    scraper = FakeScraper(CaptionResult(caption=caption, source="caption", platform="instagram"))
    fetcher = FakeFetcher()
    pipeline = make_pipeline(scraper=scraper, fetcher=fetcher)
    outcome = await pipeline.parse("https://www.instagram.com/reel/abc/")
    assert outcome.source == "link"
    assert outcome.fetch_method_used == "video_scraper_url_extraction"
    assert outcome.cache_key == "https://example.com/noodles"
    assert fetcher.calls == ["https://example.com/noodles"]


@pytest.mark.asyncio
async def test_video_without_recipe_or_link_is_invalid(make_pipeline):
    scraper = FakeScraper(CaptionResult(caption="Dinner vibes tonight", platform="tiktok"))
    outcome = await make_pipeline(scraper=scraper).parse("https://www.tiktok.com/@chef/video/9")
    assert outcome.error.code == ParseErrorCode.INVALID_INPUT


@pytest.mark.asyncio
async def test_video_scraper_error_is_fetch_failed(make_pipeline):
    scraper = FakeScraper(CaptionResult(error=CaptionError(code="LOGIN_REQUIRED", severity="auth")))
    outcome = await make_pipeline(scraper=scraper).parse("https://www.instagram.com/reel/abc/")
    assert outcome.error.code == ParseErrorCode.FETCH_FAILED


@pytest.mark.asyncio
async def test_dish_name_and_plain_text_runs_do_not_share_a_flight(make_pipeline, cache_store):
    soup = await cache_store.insert("k1", "chicken soup", CacheSourceType.RAW_TEXT, StructuredRecipe.model_validate(recipe_payload(title="Chicken Soup")))
    curry = await cache_store.insert("k2", "chicken curry", CacheSourceType.RAW_TEXT, StructuredRecipe.model_validate(recipe_payload(title="Chicken Curry")))
    await cache_store.update_embedding(soup.id, [0.9, 0.1, 0.0])
    await cache_store.update_embedding(curry.id, [0.8, 0.3, 0.0])

    primary = FakeProvider("gemini", [recipe_json(title="Chicken Stir Fry")])
    pipeline = make_pipeline(primary=primary, embedder=FakeEmbedder(default=[1.0, 0.0, 0.0]))
    search, plain = await asyncio.gather(
        pipeline.parse("chicken", is_dish_name_search=True),
        pipeline.parse("chicken", is_dish_name_search=False),
    )

    assert len(search.candidate_matches) == 2
    assert search.recipe is None
    assert not plain.candidate_matches
    assert plain.recipe.title == "Chicken Stir Fry"
    assert len(primary.calls) == 1


@pytest.mark.asyncio
async def test_text_ending_in_a_period_is_not_a_url(make_pipeline):
    fetcher = FakeFetcher()
    outcome = await make_pipeline(fetcher=fetcher).parse("Shakshuka.")
    assert outcome.input_type == InputType.RAW_TEXT
    assert outcome.cache_key == text_cache_key("Shakshuka.")
    assert fetcher.calls == []


IMAGE_B64 = "ZmFrZS1qcGVnLWJ5dGVz"


@pytest.mark.asyncio
async def test_photo_of_a_recipe_card_is_sent_to_the_model(make_pipeline):
    primary = FakeProvider("gemini")
    embedder = FakeEmbedder()
    pipeline = make_pipeline(primary=primary, embedder=embedder)

    outcome = await pipeline.parse("grandma's recipe card", image="data:image/png;base64," + IMAGE_B64)
    assert outcome.error is None
    assert outcome.fetch_method_used == "image_upload"
    assert outcome.input_type == InputType.RAW_TEXT
    assert outcome.cache_key != text_cache_key("grandma's recipe card")
    assert primary.calls[0].image_data == IMAGE_B64
    assert primary.calls[0].image_mime_type == "image/png"
    assert primary.calls[0].metadata.route == "image"
    assert embedder.calls == []

    again = await pipeline.parse("grandma's recipe card", image="data:image/png;base64," + IMAGE_B64)
    assert again.from_cache is True
    assert len(primary.calls) == 1

    text_only = await pipeline.parse("grandma's recipe card", is_dish_name_search=False)
    assert text_only.cache_key != outcome.cache_key


@pytest.mark.asyncio
@pytest.mark.parametrize(
    "raw_input, image",
    [
        ("https://example.com/pasta", IMAGE_B64),
        ("grandma's recipe card", "not base64!!"),
        ("grandma's recipe card", "data:application/pdf;base64," + IMAGE_B64),
    ],
)
async def test_bad_image_attachments_are_invalid_input(make_pipeline, raw_input, image):
    primary = FakeProvider("gemini")
    fetcher = FakeFetcher()
    outcome = await make_pipeline(primary=primary, fetcher=fetcher).parse(raw_input, image=image)
    assert outcome.error.code == ParseErrorCode.INVALID_INPUT
    assert primary.calls == []
    assert fetcher.calls == []
