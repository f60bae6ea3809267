"""
Pydantic schemas for tool payloads and API request/response models.
These define the structure of data flowing through the tools and the API.
"""
from typing import Optional, List
from datetime import datetime
from pydantic import BaseModel, Field, ConfigDict, field_validator
from pydantic.alias_generators import to_camel


# ============================================================================
# RECIPES AND NUTRITION
# ============================================================================

class IngredientBase(BaseModel):
    """Base ingredient model."""
    name: str
    quantity: Optional[float] = None
    unit: Optional[str] = None


class RecipeStepBase(BaseModel):
    """Recipe step model."""
    step_number: int
    instruction: str


class RecipeBase(BaseModel):
    """Base recipe model."""
    name: str
    description: Optional[str] = None
    servings: Optional[int] = 4  # Default to 4 servings if not specified
    total_time_minutes: Optional[int] = None
    ingredients: List[IngredientBase]
    steps: List[RecipeStepBase]


class NutritionBase(BaseModel):
    """Nutrition information."""
    kcal: float
    protein: float
    carbs: float
    fat: float


class MealRecipe(BaseModel):
    """Recipe generated for a single meal, with estimated nutrition."""
    recipe: RecipeBase
    total: NutritionBase
    per_serving: NutritionBase


# ============================================================================
# MEAL PLANS
# ============================================================================

class Meal(BaseModel):
    """One meal inside a meal plan day."""
    type: str = "meal"  # breakfast, lunch, dinner, snack
    name: str
    description: str = ""
    ingredients: List[str] = []
    instructions: str = ""
    calories: float = 0
    protein: float = 0
    carbs: float = 0
    fat: float = 0


class MealPlanDay(BaseModel):
    """Single day of a meal plan."""
    day: int
    meals: List[Meal]


class MealPlanDraft(BaseModel):
    """Meal plan as produced by the model, before it is stored."""
    title: str
    days: List[MealPlanDay]


class MealPlan(MealPlanDraft):
    """Stored meal plan."""
    id: str
    user_id: Optional[str] = None
    duration: int
    meals_per_day: int
    created_at: Optional[datetime] = None

    model_config = ConfigDict(from_attributes=True)


class SwapDraft(BaseModel):
    """Replacement meal proposed by the model."""
    meal: Meal


class SwappedMeal(BaseModel):
    """Result of swapping one meal in a stored plan."""
    meal_plan_id: str
    day: int
    previous_meal: Meal
    new_meal: Meal


# ============================================================================
# GROCERY LISTS
# ============================================================================

class LocationData(BaseModel):
    """Where the user shops; only used for grocery lists."""
    city: Optional[str] = None
    country: Optional[str] = None
    currency_code: Optional[str] = None
    currency_symbol: Optional[str] = None

    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True)


DEFAULT_LOCATION = LocationData(
    city="San Francisco",
    country="USA",
    currency_code="USD",
    currency_symbol="$",
)


class GroceryItemDraft(BaseModel):
    """Grocery item as produced by the model."""
    item: str
    quantity: str = ""
    category: str = "other"
    estimated_price: Optional[str] = None
    suggested_location: Optional[str] = None


class GroceryListDraft(BaseModel):
    """Grocery list as produced by the model."""
    items: List[GroceryItemDraft]
    local_stores: List[str] = []


class GroceryItem(GroceryItemDraft):
    """Stored grocery item."""
    id: str


class LocationInfo(BaseModel):
    """Currency and store hints attached to a grocery list."""
    currency_symbol: str = "$"
    local_stores: List[str] = []


class GroceryList(BaseModel):
    """Stored grocery list."""
    id: str
    meal_plan_id: str
    items: List[GroceryItem]
    location_info: LocationInfo
    created_at: Optional[datetime] = None


# ============================================================================
# NUTRITION ANALYSIS
# ============================================================================

class DayNutrition(NutritionBase):
    """Nutrition totals for one day of a plan."""
    day: int


class NutritionReport(BaseModel):
    """Nutrition analysis of a stored meal plan."""
    meal_plan_id: str
    total: NutritionBase
    daily_average: NutritionBase
    days: List[DayNutrition]
    estimated_meals: int = 0  # meals whose macros came from the ingredient lookup
    insights: List[str] = []


# ============================================================================
# PANTRY
# ============================================================================

PANTRY_CATEGORIES = ("produce", "dairy", "protein", "grains", "spices", "other")


class PantryItem(BaseModel):
    """Food item detected in a pantry photo."""
    name: str
    category: str = "other"
    quantity: Optional[str] = None
    expiry_estimate: Optional[str] = None

    @field_validator("category", mode="before")
    @classmethod
    def _known_category(cls, value):
        value = str(value or "other").lower().strip()
        return value if value in PANTRY_CATEGORIES else "other"


class PantryAnalysis(BaseModel):
    """Everything detected in a pantry photo."""
    items: List[PantryItem]
    summary: str = ""


# ============================================================================
# API
# ============================================================================

class ContextSummary(BaseModel):
    """Public view of a session's carried-over context."""
    session_id: str
    user_id: Optional[str] = None
    meal_plan_id: Optional[str] = None
    grocery_list_id: Optional[str] = None
    tools_with_results: List[str] = Field(default_factory=list)
    version: int = 0
