import logging
from typing import Optional

from meez_recipes.app.schemas.parse import ExtractedContent, PromptMetadata, PromptPayload

logger = logging.getLogger(__name__)

TRUNCATION_MARKER = "\n\n[CONTENT TRUNCATED]"
DEFAULT_MAX_INPUT_CHARS = 100_000

RECIPE_SCHEMA = """{
  "title": "string | null",
  "shortDescription": "string | null",
  "ingredientGroups": [
    {
      "name": "string",
      "ingredients": [
        {
          "name": "string",
          "amount": "string | number | null",
          "unit": "string | null",
          "preparation": "string | null",
          "suggested_substitutions": [
            {"name": "string", "amount": "string | number | null", "unit": "string | null", "description": "string | null"}
          ] | null
        }
      ]
    }
  ] | null,
  "instructions": ["string, one step per entry, no numbering"] | null,
  "substitutions_text": "string | null",
  "recipeYield": "string | null",
  "prepTime": "string | null",
  "cookTime": "string | null",
  "totalTime": "string | null",
  "nutrition": {"calories": "string | null", "protein": "string | null"} | null,
  "tips": ["string"] | null
}"""

COMMON_SYSTEM_PROMPT = f"""You are a recipe extraction engine. Read the provided content and return exactly one JSON object describing the recipe.

Return JSON with this shape:
{RECIPE_SCHEMA}

Rules:
1. Extract every ingredient, including ingredients that only appear inside instruction steps, into ingredientGroups.
2. Group ingredients when the source has distinct sections (e.g. "For the Sauce", "Garnish") using short descriptive group names. With no sections, use a single group named "Main". Put serving-only items in a group named "Serving". When a step says "all ingredients" or "all sauce ingredients", list the relevant ingredients in that step.
3. Output only the JSON object, no prose and no markdown.
4. If a value is not present in the content, use null. Do not invent values.
5. prepTime, cookTime and totalTime are human-readable strings such as "15 minutes" or "1 hour 30 minutes". Never use ISO 8601 durations like "PT15M". Keep ranges as written.
6. recipeYield is a short human-readable string such as "4 servings" or "12 cookies".
7. For every ingredient suggest 1-2 realistic substitutions as complete objects, or null when none make sense. Never emit a substitution whose fields are all null.
8. Convert fractional amounts to decimals ("1/2" -> "0.5", "1 1/2" -> "1.5").
9. Put preparation details ("finely chopped", "melted") in preparation; name holds only the core ingredient.
10. Remove brand names, promotional text, social media handles and hashtags from every field.
11. If the content has no title, write a concise descriptive one.
12. shortDescription is a vivid description under 10 words, or null when there is not enough context.
13. If no yield is stated, estimate one from context (4 chicken thighs -> "4 servings").
14. Each instruction is 1-2 sentences. Split longer steps into separate focused steps.
15. Put cooking tips, equipment advice and technique notes in tips. Never include promotional text there.
"""


def enforce_input_ceiling(
    text: str,
    max_chars: int = DEFAULT_MAX_INPUT_CHARS,
    request_id: Optional[str] = None,
) -> str:
    """Truncate ``text`` to ``max_chars`` and append the truncation marker.

    Truncation is never silent: it is logged with both lengths.
    """
    if text is None:
        return ""
    if len(text) <= max_chars:
        return text
    kept = text[:max_chars]
    # Prefer cutting at a line boundary so the model never sees half a step
    cut = kept.rfind("\n")
    if cut > max_chars // 2:
        kept = kept[:cut]
    logger.warning(
        "[%s] Prompt input truncated from %s to %s characters",
        request_id,
        len(text),
        len(kept),
    )
    return kept + TRUNCATION_MARKER


def _payload(text: str, route: str, request_id: Optional[str], max_chars: int, **extra) -> PromptPayload:
    return PromptPayload(
        system=COMMON_SYSTEM_PROMPT,
        text=enforce_input_ceiling(text, max_chars, request_id),
        metadata=PromptMetadata(request_id=request_id, route=route),
        **extra,
    )


def build_text_prompt(
    text: str,
    request_id: Optional[str] = None,
    max_chars: int = DEFAULT_MAX_INPUT_CHARS,
) -> PromptPayload:
    return _payload(text.strip(), "text", request_id, max_chars)


def build_url_prompt(
    content: ExtractedContent,
    request_id: Optional[str] = None,
    max_chars: int = DEFAULT_MAX_INPUT_CHARS,
) -> PromptPayload:
    lines = [
        f"Title: {content.title or 'N/A'}",
        f"Prep Time: {content.prep_time or 'N/A'}",
        f"Cook Time: {content.cook_time or 'N/A'}",
        f"Total Time: {content.total_time or 'N/A'}",
        f"Yield: {content.recipe_yield_text or 'N/A'}",
        "Ingredients:",
        content.ingredients_text or "",
        "",
        "Instructions:",
        content.instructions_text or "",
    ]
    if content.tips_text:
        lines.extend(["", "Tips and Notes:", content.tips_text])
    return _payload("\n".join(lines).strip(), "url", request_id, max_chars)


def build_video_prompt(
    caption: str,
    platform: Optional[str],
    request_id: Optional[str] = None,
    max_chars: int = DEFAULT_MAX_INPUT_CHARS,
) -> PromptPayload:
    text = (
        f"The following text is the caption of a {platform or 'social'} video. "
        "Parse it into the recipe JSON format following every rule above.\n\n"
        "Ingredients are often only mentioned inside the steps (\"add carrots and zucchini\"); "
        "extract them as ingredient objects. Ignore social media filler such as "
        "\"Follow for more!\" or \"Link in bio!\".\n\n"
        "---\nVIDEO CAPTION:\n---\n"
        f"{caption.strip()}"
    )
    return _payload(text, "video", request_id, max_chars)


def build_image_prompt(
    image_data: str,
    mime_type: str = "image/jpeg",
    note: Optional[str] = None,
    request_id: Optional[str] = None,
    max_chars: int = DEFAULT_MAX_INPUT_CHARS,
) -> PromptPayload:
    """Prompt for a photographed recipe (cookbook page, recipe card, screenshot)."""
    text = (
        "The attached image shows a recipe, for example a cookbook page, a handwritten card "
        "or a screenshot. Transcribe it into the recipe JSON format following every rule above. "
        "Use only what is visible in the image."
    )
    if note and note.strip():
        text += f"\n\n---\nNOTE FROM THE USER:\n---\n{note.strip()}"
    return _payload(text, "image", request_id, max_chars, image_data=image_data, image_mime_type=mime_type)
