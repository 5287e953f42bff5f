"""Validation gate for generated recipes."""

from meez_recipes.app.services.validation.gate import HEURISTICS, stated_servings, validate_recipe
from meez_recipes.app.services.validation.rules import Severity

__all__ = [
    "HEURISTICS",
    "Severity",
    "stated_servings",
    "validate_recipe",
]
