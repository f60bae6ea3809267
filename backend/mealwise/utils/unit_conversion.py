"""
Unit conversion utilities for meal ingredients.
Simple hard-coded mappings for common units and pieces.
"""
from typing import Optional


# Approximate weights for common "piece" items (in grams)
PIECE_WEIGHTS = {
    "egg": 50,
    "onion": 150,
    "tomato": 123,
    "potato": 170,
    "sweet potato": 130,
    "carrot": 61,
    "apple": 182,
    "banana": 118,
    "garlic clove": 3,
    "clove": 3,
    "lemon": 58,
    "lime": 67,
    "orange": 131,
    "bell pepper": 119,
    "avocado": 150,
    "zucchini": 196,
    "chicken breast": 174,
    "tortilla": 45,
    "slice": 30,
}

# Grams per unit; volumes assume water-like density
UNIT_GRAMS = {
    "g": 1.0,
    "kg": 1000.0,
    "ml": 1.0,
    "l": 1000.0,
    "cup": 240.0,
    "tbsp": 15.0,
    "tsp": 5.0,
    "oz": 28.35,
    "lb": 453.6,
}

UNIT_ALIASES = {
    "gram": "g", "grams": "g",
    "kilogram": "kg", "kilograms": "kg",
    "milliliter": "ml", "milliliters": "ml", "cc": "ml",
    "liter": "l", "liters": "l", "litre": "l", "litres": "l",
    "cups": "cup",
    "tablespoon": "tbsp", "tablespoons": "tbsp",
    "teaspoon": "tsp", "teaspoons": "tsp",
    "ounce": "oz", "ounces": "oz",
    "lbs": "lb", "pound": "lb", "pounds": "lb",
    "pieces": "piece", "whole": "piece", "item": "piece", "items": "piece",
    "unit": "piece", "units": "piece",
}

DEFAULT_PIECE_GRAMS = 100


def normalize_unit(unit: Optional[str]) -> str:
    """Normalize unit name to a standard form."""
    if not unit:
        return ""
    unit_lower = unit.lower().strip()
    return UNIT_ALIASES.get(unit_lower, unit_lower)


def piece_weight(ingredient_name: str) -> float:
    """Weight of one piece of an ingredient, longest matching name first."""
    ingredient_lower = ingredient_name.lower().strip()
    for key in sorted(PIECE_WEIGHTS, key=len, reverse=True):
        if key in ingredient_lower:
            return PIECE_WEIGHTS[key]
    return DEFAULT_PIECE_GRAMS


def convert_to_grams(ingredient_name: str, quantity: Optional[float], unit: Optional[str]) -> Optional[float]:
    """
    Convert ingredient quantity to grams.

    A missing unit means a count of pieces ("2 eggs").

    Args:
        ingredient_name: Name of the ingredient
        quantity: Amount
        unit: Unit of measurement

    Returns:
        Weight in grams, or None if conversion not possible
    """
    if quantity is None or not ingredient_name:
        return None

    unit_norm = normalize_unit(unit)

    if unit_norm in UNIT_GRAMS:
        return quantity * UNIT_GRAMS[unit_norm]

    if unit_norm in ("", "piece"):
        return quantity * piece_weight(ingredient_name)

    # Unknown unit
    return None
