import logging

from meez_recipes.app.schemas.parse import ExtractedContent
from meez_recipes.app.services import prompts


def test_text_prompt_uses_shared_system_prompt():
    payload = prompts.build_text_prompt("  2 eggs, scrambled  ", request_id="req1")
    assert payload.system == prompts.COMMON_SYSTEM_PROMPT
    assert payload.text == "2 eggs, scrambled"
    assert payload.is_json is True
    assert payload.temperature == 0.2
    assert payload.metadata.route == "text"
    assert "ingredientGroups" in payload.system


def test_url_prompt_fills_missing_fields_with_na():
    content = ExtractedContent(
        title="Soup",
        ingredients_text="1 cup broth",
        instructions_text="Heat the broth.",
        tips_text="Use homemade stock.",
    )
    payload = prompts.build_url_prompt(content)
    assert payload.text.startswith("Title: Soup")
    assert "Prep Time: N/A" in payload.text
    assert "Ingredients:\n1 cup broth" in payload.text
    assert "Tips and Notes:\nUse homemade stock." in payload.text


def test_url_prompt_omits_tips_section_when_absent():
    payload = prompts.build_url_prompt(ExtractedContent(title="Soup", ingredients_text="broth"))
    assert "Tips and Notes" not in payload.text


def test_video_prompt_wraps_caption_with_platform():
    payload = prompts.build_video_prompt("Crispy tofu bowl recipe", "tiktok")
    assert "tiktok video" in payload.text
    assert payload.text.endswith("Crispy tofu bowl recipe")
    assert payload.metadata.route == "video"


def test_input_ceiling_truncates_with_marker_and_logs(caplog):
    text = "\n".join(f"line {i} " + "x" * 40 for i in range(100))
    with caplog.at_level(logging.WARNING, logger="meez_recipes.app.services.prompts"):
        result = prompts.enforce_input_ceiling(text, max_chars=500, request_id="req42")
    assert result.endswith(prompts.TRUNCATION_MARKER)
    assert len(result) <= 500 + len(prompts.TRUNCATION_MARKER)
    assert "truncated" in caplog.text
    assert "req42" in caplog.text


def test_input_under_ceiling_is_unchanged():
    assert prompts.enforce_input_ceiling("short", max_chars=500) == "short"


def test_prompt_builders_apply_ceiling():
    payload = prompts.build_text_prompt("word " * 1000, max_chars=100)
    assert payload.text.endswith(prompts.TRUNCATION_MARKER)




def test_image_prompt_attaches_image_and_note():
    payload = prompts.build_image_prompt("ZmFrZQ==", "image/png", note="  grandma's card  ", request_id="req7")
    assert payload.image_data == "ZmFrZQ=="
    assert payload.image_mime_type == "image/png"
    assert payload.metadata.route == "image"
    assert payload.system == prompts.COMMON_SYSTEM_PROMPT
    assert payload.text.endswith("NOTE FROM THE USER:\n---\ngrandma's card")


def test_text_prompts_carry_no_image():
    assert prompts.build_text_prompt("2 eggs").image_data is None
