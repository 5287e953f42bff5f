import logging
import re
from typing import Callable, List, NamedTuple, Optional, Union

from meez_recipes.app.schemas.parse import ValidationOutcome
from meez_recipes.app.schemas.recipe import StructuredRecipe
from meez_recipes.app.services.validation import rules
from meez_recipes.app.services.validation.rules import Severity

logger = logging.getLogger(__name__)

OPTIONAL_FIELDS = ("recipe_yield", "prep_time", "cook_time", "total_time")
THIN_RESULT_REASON = "This page doesn't appear to contain a recipe."


class Finding(NamedTuple):
    """A reason whose severity comes from the pattern rule that produced it."""

    reason: str
    severity: Severity


class HeuristicCheck(NamedTuple):
    name: str
    check: Callable[[StructuredRecipe], Optional[Union[str, Finding]]]
    # Applies to plain string reasons; a Finding carries its own severity
    severity: Severity


def _names(recipe: StructuredRecipe) -> List[str]:
    return [ing.name.strip().lower() for ing in recipe.all_ingredients() if ing.name and ing.name.strip()]


def _full_match_placeholder(value: Optional[str]) -> Optional[rules.PatternRule]:
    if not value:
        return None
    text = value.strip()
    for rule in rules.PLACEHOLDER_RULES:
        if rule.pattern.fullmatch(text):
            return rule
    return None


def check_name_uniqueness(recipe: StructuredRecipe) -> Optional[str]:
    names = _names(recipe)
    if len(names) < rules.MIN_INGREDIENTS_FOR_UNIQUENESS:
        return None
    ratio = len(set(names)) / len(names)
    if ratio < rules.MIN_NAME_UNIQUENESS:
        return f"Repetitive ingredient names (uniqueness {ratio:.2f})"
    return None


def check_unrealistic_ingredients(recipe: StructuredRecipe) -> Optional[Union[str, Finding]]:
    names = _names(recipe)
    for name in names:
        for rule in rules.NON_FOOD_RULES:
            if rule.pattern.search(name):
                return Finding(f"Non-food ingredient: {name}", rule.severity)
    joined = " | ".join(names)
    for first, second in rules.UNREALISTIC_PAIRS:
        if first in joined and second in joined:
            return f"Unrealistic ingredient combination: {first} + {second}"
    return None


def _is_generic_instruction(step: str, ingredient_names: List[str]) -> bool:
    words = re.findall(r"[a-zA-Z']+", step.lower())
    if not words or len(words) >= rules.GENERIC_INSTRUCTION_MAX_WORDS:
        return False
    if words[0] not in rules.GENERIC_VERBS:
        return False
    lowered = step.lower()
    return not any(name in lowered for name in ingredient_names)


def check_generic_instructions(recipe: StructuredRecipe) -> Optional[str]:
    steps = recipe.instructions
    if len(steps) < rules.MIN_INSTRUCTIONS_FOR_GENERIC:
        return None
    names = _names(recipe)
    generic = sum(1 for step in steps if _is_generic_instruction(step, names))
    if generic / len(steps) > rules.GENERIC_INSTRUCTION_RATIO:
        return f"Instructions are generic ({generic}/{len(steps)} steps)"
    return None


def check_placeholders(recipe: StructuredRecipe) -> Optional[Finding]:
    fields = [("title", recipe.title)]
    fields += [("ingredient", ing.name) for ing in recipe.all_ingredients()]
    fields += [("instruction", step) for step in recipe.instructions]
    for label, value in fields:
        hit = _full_match_placeholder(value)
        if hit:
            return Finding(f"Placeholder {label} ({hit.name}): {value!r}", hit.severity)
    return None


def stated_servings(recipe_yield: Optional[str]) -> Optional[int]:
    """Largest serving count stated in a yield like "Makes 4-6 servings"; None for "12 cookies"."""
    if not recipe_yield:
        return None
    m = (
        rules.SERVINGS_COUNT_RE.search(recipe_yield)
        or rules.SERVES_PREFIX_RE.search(recipe_yield)
        or rules.BARE_SERVINGS_RE.match(recipe_yield)
    )
    if not m:
        return None
    return max(int(g) for g in m.groups() if g)


def check_yield(recipe: StructuredRecipe) -> Optional[str]:
    servings = stated_servings(recipe.recipe_yield)
    if servings is not None and servings > rules.MAX_SERVINGS:
        return f"Implausible yield: {recipe.recipe_yield}"
    return None


def check_generic_nouns(recipe: StructuredRecipe) -> Optional[str]:
    names = _names(recipe)
    if not names:
        return None
    generic = sum(1 for name in names if name in rules.GENERIC_INGREDIENT_NAMES)
    if generic / len(names) > rules.GENERIC_NOUN_RATIO:
        return f"Many generic ingredient names ({generic}/{len(names)})"
    return None


def check_vague_phrasing(recipe: StructuredRecipe) -> Optional[Finding]:
    for step in recipe.instructions:
        for rule in rules.VAGUE_PHRASE_RULES:
            if rule.pattern.search(step):
                return Finding(f"Vague instruction phrasing ({rule.name}): {step!r}", rule.severity)
    return None


def check_description_length(recipe: StructuredRecipe) -> Optional[str]:
    for value in (recipe.description, recipe.short_description):
        if value and len(value) > rules.MAX_DESCRIPTION_CHARS:
            return f"Description is {len(value)} characters"
    return None


def check_title_hype(recipe: StructuredRecipe) -> Optional[str]:
    hits = rules.HYPE_ADJECTIVE_RE.findall(recipe.title or "")
    if len(hits) > rules.MAX_HYPE_ADJECTIVES:
        return f"Title has {len(hits)} promotional adjectives"
    return None


def check_tip_count(recipe: StructuredRecipe) -> Optional[str]:
    if len(recipe.tips) > rules.MAX_TIPS:
        return f"{len(recipe.tips)} tips"
    return None


def check_round_calories(recipe: StructuredRecipe) -> Optional[str]:
    calories = recipe.nutrition.calories if recipe.nutrition else None
    if calories is None:
        return None
    m = re.search(r"\d+(?:\.\d+)?", str(calories))
    if not m:
        return None
    value = float(m.group(0))
    if value >= 100 and value % 100 == 0:
        return f"Suspiciously round calories: {calories}"
    return None


HEURISTICS: tuple[HeuristicCheck, ...] = (
    HeuristicCheck("name_uniqueness", check_name_uniqueness, Severity.FATAL),
    HeuristicCheck("unrealistic_ingredients", check_unrealistic_ingredients, Severity.FATAL),
    HeuristicCheck("generic_instructions", check_generic_instructions, Severity.FATAL),
    HeuristicCheck("placeholders", check_placeholders, Severity.FATAL),
    HeuristicCheck("yield_sanity", check_yield, Severity.FATAL),
    HeuristicCheck("generic_nouns", check_generic_nouns, Severity.INFO),
    HeuristicCheck("vague_phrasing", check_vague_phrasing, Severity.INFO),
    HeuristicCheck("description_length", check_description_length, Severity.INFO),
    HeuristicCheck("title_hype", check_title_hype, Severity.INFO),
    HeuristicCheck("tip_count", check_tip_count, Severity.INFO),
    HeuristicCheck("round_calories", check_round_calories, Severity.INFO),
)


def _structural_reasons(recipe: StructuredRecipe) -> List[str]:
    reasons = []
    if not recipe.ingredient_groups:
        reasons.append("Missing or empty ingredient groups")
    elif not recipe.all_ingredients():
        reasons.append("No ingredients found in ingredient groups")
    if not [step for step in recipe.instructions if step.strip()]:
        reasons.append("Missing or too few instructions")
    if not (recipe.title or "").strip():
        reasons.append("Missing title")
    return reasons


def validate_recipe(
    recipe: Optional[StructuredRecipe],
    is_fallback_extraction: bool = False,
    request_id: Optional[str] = None,
) -> ValidationOutcome:
    """Classify a candidate recipe. Pure: no I/O beyond logging."""
    if recipe is None:
        return ValidationOutcome(accepted=False, fatal_reasons=["Recipe object is null"])

    fatal = _structural_reasons(recipe)
    info: List[str] = []

    if is_fallback_extraction and (
        len(recipe.all_ingredients()) < rules.MIN_THIN_ITEMS or len(recipe.instructions) < rules.MIN_THIN_ITEMS
    ):
        fatal.append(THIN_RESULT_REASON)

    for heuristic in HEURISTICS:
        result = heuristic.check(recipe)
        if not result:
            continue
        reason, severity = result if isinstance(result, Finding) else (result, heuristic.severity)
        (fatal if severity is Severity.FATAL else info).append(reason)

    missing = [name for name in OPTIONAL_FIELDS if not getattr(recipe, name)]
    if missing:
        logger.info("[%s] Optional recipe fields missing: %s", request_id, ", ".join(missing))
    for reason in info:
        logger.info("[%s] Validation note: %s", request_id, reason)
    if fatal:
        logger.warning("[%s] Recipe rejected (%s): %s", request_id, recipe.title, "; ".join(fatal))

    return ValidationOutcome(accepted=not fatal, fatal_reasons=fatal, informational_reasons=info)
