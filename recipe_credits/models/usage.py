from dataclasses import dataclass

RECIPES_GENERATED = "recipes.generated"
RECIPES_COOKED = "recipes.cooked"

USAGE_KEYS = frozenset({RECIPES_GENERATED, RECIPES_COOKED})


@dataclass(frozen=True)
class UsageCounters:
    recipes_generated: int = 0
    recipes_cooked: int = 0
