"""
Nutrition lookup from CSV data with fuzzy matching.
Estimates macronutrients for ingredients, ingredient lines and complete recipes.
"""
import pandas as pd
from typing import Iterable, Optional, Dict
from rapidfuzz import fuzz, process

from mealwise.core.config import get_settings
from mealwise.core.logging import get_logger
from mealwise.utils.recipe_parser import parse_ingredient
from mealwise.utils.unit_conversion import convert_to_grams
from mealwise.db.schema import RecipeBase, NutritionBase

logger = get_logger("utils.nutrition_lookup")

MACRO_COLUMNS = ['kcal', 'protein', 'carbs', 'fat']


class NutritionLookup:
    """Handles nutrition data loading and ingredient matching."""

    def __init__(self, data_path: Optional[str] = None):
        self.data_path = data_path
        self._df: Optional[pd.DataFrame] = None

    @property
    def df(self) -> pd.DataFrame:
        """Lazy-load nutrition DataFrame."""
        if self._df is None:
            path = self.data_path or get_settings().nutrition_data_path
            df = pd.read_csv(path)

            # CSV format: name, kcal, protein, carbs, fat (per 100 g)
            name_col = 'name' if 'name' in df.columns else df.columns[0]
            df['name_norm'] = df[name_col].astype(str).str.lower().str.strip()

            for col in MACRO_COLUMNS:
                if col in df.columns:
                    df[col] = pd.to_numeric(df[col], errors='coerce').fillna(0)
                else:
                    df[col] = 0.0

            logger.debug(f"Loaded {len(df)} nutrition rows from {path}")
            self._df = df

        return self._df

    def find_best_match(self, ingredient_name: str, threshold: int = 70) -> Optional[pd.Series]:
        """
        Find the best matching ingredient in the database using fuzzy matching.

        Args:
            ingredient_name: Name to search for
            threshold: Minimum similarity score (0-100)

        Returns:
            Pandas Series with nutrition data, or None if no good match
        """
        ingredient_norm = ingredient_name.lower().strip()
        if not ingredient_norm:
            return None

        exact_match = self.df[self.df['name_norm'] == ingredient_norm]
        if not exact_match.empty:
            return exact_match.iloc[0]

        result = process.extractOne(
            ingredient_norm,
            self.df['name_norm'].tolist(),
            scorer=fuzz.WRatio,
            score_cutoff=threshold
        )

        if result:
            _, _, idx = result
            return self.df.iloc[idx]

        return None

    def estimate_macros(self, ingredient_name: str, grams: float) -> Optional[Dict[str, float]]:
        """
        Estimate macronutrients for a given amount of an ingredient.

        Args:
            ingredient_name: Name of the ingredient
            grams: Amount in grams

        Returns:
            Dict with kcal, protein, carbs, fat or None if no match found
        """
        match = self.find_best_match(ingredient_name)

        if match is None:
            return None

        factor = grams / 100.0
        return {col: round(float(match.get(col, 0)) * factor, 1) for col in MACRO_COLUMNS}

    def estimate_ingredient_lines(self, lines: Iterable[str]) -> NutritionBase:
        """
        Estimate nutrition for free-text ingredient lines ("200g chickpeas").

        Lines that cannot be parsed, converted or matched contribute nothing.
        """
        totals = dict.fromkeys(MACRO_COLUMNS, 0.0)

        for line in lines:
            ingredient = parse_ingredient(line)
            grams = convert_to_grams(ingredient.name, ingredient.quantity, ingredient.unit)
            if grams is None and ingredient.unit:
                # "1 large onion": the unit is really a descriptor of a piece
                grams = convert_to_grams(f"{ingredient.unit} {ingredient.name}", ingredient.quantity, None)
            if grams is None:
                continue

            macros = self.estimate_macros(ingredient.name, grams)
            if macros:
                for col in MACRO_COLUMNS:
                    totals[col] += macros[col]

        return NutritionBase(**{col: round(value, 1) for col, value in totals.items()})


# Global instance
_nutrition_lookup: Optional[NutritionLookup] = None


def get_nutrition_lookup() -> NutritionLookup:
    """Get or create global NutritionLookup instance."""
    global _nutrition_lookup
    if _nutrition_lookup is None:
        _nutrition_lookup = NutritionLookup()
    return _nutrition_lookup


def estimate_recipe_nutrition(
    recipe: RecipeBase,
    lookup: Optional[NutritionLookup] = None
) -> tuple[NutritionBase, NutritionBase]:
    """
    Estimate total and per-serving nutrition for a recipe.

    Args:
        recipe: Recipe with ingredients list
        lookup: Lookup to use, defaults to the global one

    Returns:
        Tuple of (total_nutrition, per_serving_nutrition)
    """
    lookup = lookup or get_nutrition_lookup()
    totals = dict.fromkeys(MACRO_COLUMNS, 0.0)

    for ingredient in recipe.ingredients:
        grams = convert_to_grams(ingredient.name, ingredient.quantity, ingredient.unit)
        if grams is None:
            continue

        macros = lookup.estimate_macros(ingredient.name, grams)
        if macros:
            for col in MACRO_COLUMNS:
                totals[col] += macros[col]

    servings = recipe.servings if recipe.servings and recipe.servings > 0 else 1

    total = NutritionBase(**{col: round(value, 1) for col, value in totals.items()})
    per_serving = NutritionBase(**{col: round(value / servings, 1) for col, value in totals.items()})
    return total, per_serving
