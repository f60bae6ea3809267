"""
Parse free-text ingredient lines like "200g chickpeas" into structured ingredients.
"""
import re
from typing import Optional
from mealwise.db.schema import IngredientBase

# number + optional unit + name: "400g rice", "2 cups flour", "1.5l milk", "2 onions"
_INGREDIENT_PATTERN = re.compile(r'^([\d./]+)\s*([a-zA-Z]+)?\s+(.+)$')


def _parse_quantity(quantity_str: str) -> Optional[float]:
    try:
        if '/' in quantity_str:
            numerator, denominator = quantity_str.split('/', 1)
            return float(numerator) / float(denominator)
        return float(quantity_str)
    except (ValueError, ZeroDivisionError):
        return None


def parse_ingredient(ingredient_str: str) -> IngredientBase:
    """
    Parse ingredient string like '400g Arroz arborio' or '2 cups flour' into components.

    Args:
        ingredient_str: Ingredient string with quantity, unit, and name

    Returns:
        IngredientBase object
    """
    ingredient_str = ingredient_str.strip()
    match = _INGREDIENT_PATTERN.match(ingredient_str)

    if not match:
        # No quantity/unit found, entire string is the ingredient name
        return IngredientBase(name=ingredient_str)

    quantity_str, unit, name = match.groups()
    # "of" in "2 cups of rice" is filler, not part of the name
    name = re.sub(r'^of\s+', '', name.strip(), flags=re.IGNORECASE)
    return IngredientBase(
        name=name,
        quantity=_parse_quantity(quantity_str),
        unit=unit.strip() if unit else None
    )
