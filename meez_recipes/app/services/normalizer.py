"""Turn raw model output into a StructuredRecipe without ever raising."""

import json
import logging
import re
from dataclasses import dataclass
from typing import Any, List, Optional

from pydantic import ValidationError

from meez_recipes.app.schemas.recipe import StructuredRecipe

logger = logging.getLogger(__name__)

DEFAULT_GROUP_NAME = "Main"


@dataclass
class NormalizeResult:
    recipe: Optional[StructuredRecipe] = None
    error: Optional[str] = None
    raw_text: Optional[str] = None

    @property
    def ok(self) -> bool:
        return self.recipe is not None


def _strip_invalid_control_chars(s: str) -> str:
    """Remove ASCII control chars that break json.loads (except \\n, \\r, \\t)."""
    return re.sub(r"[\x00-\x08\x0B\x0C\x0E-\x1F]", "", s)


def _strip_code_fence(text: str) -> str:
    txt = text.strip()
    if txt.startswith("```"):
        txt = re.sub(r"^```[a-zA-Z0-9_-]*\s*", "", txt, count=1)
        txt = re.sub(r"\s*```$", "", txt, count=1).strip()
    return txt


def _load_json(raw: str) -> Any:
    cleaned = _strip_code_fence(_strip_invalid_control_chars(raw))
    try:
        return json.loads(cleaned)
    except json.JSONDecodeError:
        pass
    # Prose around the payload: take the outermost object, then array
    for open_ch, close_ch in (("{", "}"), ("[", "]")):
        start = cleaned.find(open_ch)
        end = cleaned.rfind(close_ch)
        if start != -1 and end > start:
            try:
                return json.loads(cleaned[start : end + 1])
            except json.JSONDecodeError:
                continue
    raise ValueError("Model response was not valid JSON")


_FRACTION_RE = re.compile(r"^\s*(?:(\d+)\s+)?(\d+)\s*/\s*(\d+)\s*$")
_NUMBER_RE = re.compile(r"^\s*\d+(?:\.\d+)?\s*$")


def _coerce_amount(value: Any) -> Any:
    if value is None or isinstance(value, bool):
        return None
    if isinstance(value, (int, float)):
        return float(value)
    text = str(value).strip()
    if not text:
        return None
    if _NUMBER_RE.match(text):
        return float(text)
    m = _FRACTION_RE.match(text)
    if m and int(m.group(3)) != 0:
        whole = int(m.group(1) or 0)
        return round(whole + int(m.group(2)) / int(m.group(3)), 3)
    return text


def _as_text(value: Any) -> Optional[str]:
    if value is None:
        return None
    if isinstance(value, str):
        return value.strip() or None
    if isinstance(value, (int, float)):
        return str(value)
    return None


def _coerce_substitutions(value: Any) -> List[dict]:
    if not isinstance(value, list):
        return []
    subs = []
    for item in value:
        if isinstance(item, str) and item.strip():
            subs.append({"name": item.strip()})
        elif isinstance(item, dict) and _as_text(item.get("name")):
            subs.append(
                {
                    "name": _as_text(item.get("name")),
                    "amount": _coerce_amount(item.get("amount")),
                    "unit": _as_text(item.get("unit")),
                    "description": _as_text(item.get("description")),
                }
            )
    return subs


def _coerce_ingredient(item: Any) -> Optional[dict]:
    if isinstance(item, str):
        return {"name": item.strip()} if item.strip() else None
    if not isinstance(item, dict):
        return None
    name = _as_text(item.get("name") or item.get("ingredient") or item.get("text"))
    if not name:
        return None
    return {
        "name": name,
        "amount": _coerce_amount(item.get("amount", item.get("quantity"))),
        "unit": _as_text(item.get("unit")),
        "preparation": _as_text(item.get("preparation") or item.get("notes")),
        "suggested_substitutions": _coerce_substitutions(item.get("suggested_substitutions")),
    }


def _coerce_groups(data: dict) -> List[dict]:
    groups_in = data.get("ingredientGroups", data.get("ingredient_groups"))
    if not groups_in and data.get("ingredients"):
        groups_in = [{"name": DEFAULT_GROUP_NAME, "ingredients": data["ingredients"]}]
    if not isinstance(groups_in, list):
        return []
    groups = []
    for group in groups_in:
        if not isinstance(group, dict):
            continue
        ingredients = [ing for ing in map(_coerce_ingredient, group.get("ingredients") or []) if ing]
        groups.append({"name": _as_text(group.get("name")) or DEFAULT_GROUP_NAME, "ingredients": ingredients})
    return groups


_STEP_NUMBER_RE = re.compile(r"^\s*(?:step\s*)?\d+[.):]\s*", re.I)


def _coerce_lines(value: Any) -> List[str]:
    if value is None:
        return []
    if isinstance(value, str):
        value = value.split("\n")
    if not isinstance(value, list):
        return []
    lines = []
    for item in value:
        if isinstance(item, dict):
            item = item.get("text") or item.get("step")
        text = _as_text(item)
        if text:
            lines.append(text)
    return lines


def _coerce_recipe_dict(data: Any) -> dict:
    if isinstance(data, list):
        if not data:
            raise ValueError("Model returned an empty array")
        logger.info("Model returned an array of %s recipes; using the first", len(data))
        data = data[0]
    if isinstance(data, dict) and isinstance(data.get("recipe"), dict):
        data = data["recipe"]
    if not isinstance(data, dict):
        raise ValueError("Model response is not a JSON object")
    if data.get("error") and not (data.get("title") or data.get("ingredientGroups")):
        raise ValueError(f"Model returned error: {data.get('error')}")

    nutrition = data.get("nutrition")
    if isinstance(nutrition, dict):
        nutrition = {"calories": _coerce_amount(nutrition.get("calories")), "protein": _as_text(nutrition.get("protein"))}
    else:
        nutrition = None

    # Identifiers are assigned by the cache store, never by the model
    return {
        "title": _as_text(data.get("title") or data.get("name")),
        "description": _as_text(data.get("description")),
        "shortDescription": _as_text(data.get("shortDescription", data.get("short_description"))),
        "ingredientGroups": _coerce_groups(data),
        "instructions": [_STEP_NUMBER_RE.sub("", step) for step in _coerce_lines(data.get("instructions") or data.get("steps"))],
        "substitutions_text": _as_text(data.get("substitutions_text")),
        "recipeYield": _as_text(data.get("recipeYield", data.get("recipe_yield"))),
        "prepTime": _as_text(data.get("prepTime", data.get("prep_time"))),
        "cookTime": _as_text(data.get("cookTime", data.get("cook_time"))),
        "totalTime": _as_text(data.get("totalTime", data.get("total_time"))),
        "nutrition": nutrition,
        "tips": _coerce_lines(data.get("tips")),
    }


def normalize_response(raw: Optional[str]) -> NormalizeResult:
    """Parse and coerce model output. Failures come back in ``error``."""
    if raw is None or not str(raw).strip():
        return NormalizeResult(error="Model returned no content", raw_text=raw)
    try:
        data = _load_json(str(raw))
        recipe = StructuredRecipe.model_validate(_coerce_recipe_dict(data))
    except (ValueError, TypeError, ValidationError) as exc:
        logger.warning("Could not normalize model output: %s (preview=%r)", exc, str(raw)[:200])
        return NormalizeResult(error=str(exc), raw_text=raw)
    return NormalizeResult(recipe=recipe, raw_text=raw)


def is_empty_recipe(recipe: StructuredRecipe) -> bool:
    return not recipe.title and not recipe.all_ingredients() and not recipe.instructions


def normalize_servings(serving_raw: Optional[str]) -> Optional[str]:
    """Collapse yields like "4, 4 servings" or "4-6 servings" to one value."""
    if not serving_raw:
        return None
    unique: List[str] = []
    for part in (p.strip() for p in serving_raw.split(",")):
        if part not in unique:
            unique.append(part)
    for part in unique:
        if re.fullmatch(r"\d+(\.\d+)?", part):
            return part
    for part in unique:
        m = re.search(r"(\d+(?:\.\d+)?)[\s–-]+(\d+(?:\.\d+)?)", part)
        if m:
            return m.group(1)
    return unique[0]
