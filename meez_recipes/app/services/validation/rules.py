"""Data tables for the hallucination heuristics.

Each pattern rule is ``(name, pattern, severity)``. The gate decides which
recipe field a table applies to and reports a match at the rule's severity.
"""

import enum
import re
from typing import NamedTuple, Pattern, Tuple


class Severity(str, enum.Enum):
    FATAL = "fatal"
    INFO = "info"


class PatternRule(NamedTuple):
    name: str
    pattern: Pattern[str]
    severity: Severity


def _rule(name: str, regex: str, severity: Severity) -> PatternRule:
    return PatternRule(name, re.compile(regex, re.IGNORECASE), severity)


# Matched against a whole field value, never a substring
PLACEHOLDER_RULES: Tuple[PatternRule, ...] = (
    _rule("lorem_ipsum", r"lorem ipsum.*", Severity.FATAL),
    _rule("placeholder_word", r"\[?(placeholder|tbd|todo|n/?a|xxx+|\.\.\.|insert [a-z ]+ here)\]?", Severity.FATAL),
    _rule("numbered_ingredient", r"ingredient\s*#?\d+", Severity.FATAL),
    _rule("numbered_step", r"(step|instruction)\s*#?\d+\.?", Severity.FATAL),
    _rule("template_title", r"(recipe (name|title)|untitled( recipe)?|your recipe|example recipe)", Severity.FATAL),
    _rule("bracketed_template", r"\{\{?\s*\w+\s*\}?\}|<\s*\w+\s*>", Severity.FATAL),
)

# Any match anywhere in the ingredient name
NON_FOOD_RULES: Tuple[PatternRule, ...] = (
    _rule("non_food_item", r"\b(glue|bleach|detergent|soap|plastic|gasoline|paint|cement|sand|gravel|toothpaste)\b", Severity.FATAL),
)

# Ingredient pairs that do not plausibly appear in one recipe
UNREALISTIC_PAIRS: Tuple[Tuple[str, str], ...] = (
    ("ketchup", "ice cream"),
    ("mayonnaise", "ice cream"),
    ("fish sauce", "chocolate chips"),
    ("sardines", "frosting"),
    ("mustard", "whipped cream"),
    ("anchovies", "sprinkles"),
    ("soy sauce", "cake frosting"),
)

GENERIC_VERBS = frozenset(
    {"cook", "mix", "combine", "prepare", "add", "stir", "make", "serve", "heat", "place", "put", "use", "finish", "enjoy", "do"}
)

GENERIC_INGREDIENT_NAMES = frozenset(
    {
        "ingredients",
        "other ingredients",
        "spices",
        "seasoning",
        "seasonings",
        "vegetables",
        "veggies",
        "sauce",
        "meat",
        "protein",
        "stuff",
        "toppings",
        "filling",
        "liquid",
        "food",
    }
)

VAGUE_PHRASE_RULES: Tuple[PatternRule, ...] = (
    _rule("until_done", r"\buntil (done|ready|cooked enough|it looks right)\b", Severity.INFO),
    _rule("for_a_while", r"\b(for a while|for some time|a bit longer)\b", Severity.INFO),
    _rule("as_needed", r"\b(as needed|as appropriate|appropriately|however you like)\b", Severity.INFO),
    _rule("the_rest", r"\b(the rest|everything else|remaining stuff)\b", Severity.INFO),
)

HYPE_ADJECTIVE_RE = re.compile(
    r"\b(best|ultimate|amazing|perfect|incredible|delicious|epic|insane|awesome|heavenly|"
    r"mind-blowing|life-changing|unbelievable|irresistible|world's)\b",
    re.IGNORECASE,
)

_RANGE = r"(\d+)(?:\s*(?:-|–|to)\s*(\d+))?"
# Searched anywhere in the yield: "Makes 80 servings", "Yield: 80 servings (1 cup each)"
SERVINGS_COUNT_RE = re.compile(_RANGE + r"\s*(?:servings?|people|persons?|portions?)\b", re.IGNORECASE)
SERVES_PREFIX_RE = re.compile(r"\b(?:serves|feeds|servings?)\s*:?\s*" + _RANGE, re.IGNORECASE)
# A yield that is only a number or range counts as servings
BARE_SERVINGS_RE = re.compile(r"^\s*(?:yields?\s*:?\s*)?" + _RANGE + r"\s*$", re.IGNORECASE)

# Thresholds
MIN_NAME_UNIQUENESS = 0.7
MIN_INGREDIENTS_FOR_UNIQUENESS = 4
GENERIC_INSTRUCTION_RATIO = 0.9
GENERIC_INSTRUCTION_MAX_WORDS = 7
MIN_INSTRUCTIONS_FOR_GENERIC = 2
MAX_SERVINGS = 50
GENERIC_NOUN_RATIO = 0.3
MAX_DESCRIPTION_CHARS = 300
MAX_HYPE_ADJECTIVES = 2
MAX_TIPS = 5
MIN_THIN_ITEMS = 2
