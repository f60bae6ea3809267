"""
Application-wide constants.
Centralizes hardcoded values shared by the tools and the orchestrator.
"""
from typing import Dict, List


class MealConstants:
    """Constants related to meal planning and meal organization."""

    DAYS_OF_WEEK: List[str] = [
        "Monday",
        "Tuesday",
        "Wednesday",
        "Thursday",
        "Friday",
        "Saturday",
        "Sunday"
    ]

    MEAL_TYPES: List[str] = ["breakfast", "lunch", "dinner", "snack"]

    # Defaults for meal plan generation
    DEFAULT_DURATION: int = 7
    DEFAULT_MEALS_PER_DAY: int = 3
    MIN_DURATION: int = 1
    MAX_DURATION: int = 7
    MIN_MEALS_PER_DAY: int = 1
    MAX_MEALS_PER_DAY: int = 5

    NUMBER_WORDS: Dict[str, int] = {
        "one": 1,
        "two": 2,
        "three": 3,
        "four": 4,
        "five": 5,
        "six": 6,
        "seven": 7,
    }

    @classmethod
    def day_number(cls, day_name: str) -> int:
        """Weekday name to 1-based plan day (Monday is day 1)."""
        return [d.lower() for d in cls.DAYS_OF_WEEK].index(day_name.lower()) + 1

    @classmethod
    def is_valid_meal(cls, meal: str) -> bool:
        """Check if meal type is valid."""
        return meal.lower() in cls.MEAL_TYPES


class LimitsConstants:
    """Limits and thresholds used throughout the orchestrator."""

    # A tool is attempted at most this many times per turn (initial + one retry)
    MAX_TOOL_ATTEMPTS: int = 2

    # Response composition
    MAX_SUGGESTIONS: int = 3

    # History shown to the model
    HISTORY_CHARS_PER_TURN: int = 300

    # Swap: replacement meal should stay this close in calories
    SWAP_CALORIE_TOLERANCE: int = 50


__all__ = [
    'MealConstants',
    'LimitsConstants'
]
