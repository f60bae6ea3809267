"""
The six tools the orchestrator can dispatch, and the default registry wiring them up.

Generation tools make one schema-constrained LLM call each; tools that write
(meal plans, grocery lists, swaps) go through the CRUD layer in the DB thread pool.
"""

from __future__ import annotations

from typing import Any, Callable, Dict, List, Optional

from pydantic import BaseModel, Field
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.orm import Session

from mealwise.core.constants import LimitsConstants, MealConstants
from mealwise.core.exceptions import (
    MalformedOutputError,
    MissingContextError,
    ToolExecutionError,
    ToolValidationError,
)
from mealwise.core.llm_client import LLMClient, get_llm_client
from mealwise.core.logging import get_logger
from mealwise.core.vlm_client import VLMClient, get_vlm_client
from mealwise.db import crud_grocery_lists, crud_meal_plans
from mealwise.db.crud_grocery_lists import GroceryListCreate
from mealwise.db.crud_meal_plans import MealPlanCreate
from mealwise.db.schema import (
    DEFAULT_LOCATION,
    DayNutrition,
    GroceryListDraft,
    LocationData,
    LocationInfo,
    Meal,
    MealPlan,
    MealPlanDraft,
    MealRecipe,
    NutritionBase,
    NutritionReport,
    RecipeBase,
    SwapDraft,
    SwappedMeal,
)
from mealwise.db.session import SessionLocal, run_sync
from mealwise.services.orchestration.registry import ToolDescriptor, ToolRegistry, ToolResult
from mealwise.services.orchestration.types import SessionContext, ToolName
from mealwise.utils.nutrition_lookup import NutritionLookup, estimate_recipe_nutrition, get_nutrition_lookup

logger = get_logger("services.orchestration.tools")


# ============================================================================
# INPUT SCHEMAS
# ============================================================================

class GenerateMealPlanArgs(BaseModel):
    duration: int = Field(MealConstants.DEFAULT_DURATION, ge=MealConstants.MIN_DURATION, le=MealConstants.MAX_DURATION)
    meals_per_day: int = Field(
        MealConstants.DEFAULT_MEALS_PER_DAY,
        ge=MealConstants.MIN_MEALS_PER_DAY,
        le=MealConstants.MAX_MEALS_PER_DAY,
    )
    dietary: Optional[str] = None
    preferences: Dict[str, Any] = Field(default_factory=dict)
    user_id: Optional[str] = None


class GenerateGroceryListArgs(BaseModel):
    meal_plan_id: str = Field(min_length=1)
    location: Optional[LocationData] = None
    user_id: Optional[str] = None


class AnalyzeNutritionArgs(BaseModel):
    meal_plan_id: str = Field(min_length=1)


class SwapMealArgs(BaseModel):
    meal_plan_id: str = Field(min_length=1)
    day: int = Field(ge=1, le=MealConstants.MAX_DURATION)
    meal: str = Field(min_length=1, description="Meal type (breakfast, lunch, dinner, snack) or dish name")
    preferences: Dict[str, Any] = Field(default_factory=dict)


class AnalyzePantryImageArgs(BaseModel):
    image_url: str = Field(pattern=r"^https?://\S+$")


class GenerateMealRecipeArgs(BaseModel):
    meal_name: str = Field(min_length=1)
    preferences: Dict[str, Any] = Field(default_factory=dict)


def describe_preferences(preferences: Optional[Dict[str, Any]]) -> str:
    """Flatten a preference dict into prompt text."""
    if not preferences:
        return "none"
    parts = []
    for key, value in preferences.items():
        if value in (None, "", [], {}):
            continue
        if isinstance(value, (list, tuple)):
            value = ", ".join(str(v) for v in value)
        parts.append(f"{key}: {value}")
    return "; ".join(parts) or "none"


# ============================================================================
# TOOLS
# ============================================================================

class MealTools:
    """Tool handlers sharing the model clients, the DB session factory and the nutrition lookup."""

    def __init__(
        self,
        llm: Optional[LLMClient] = None,
        vlm: Optional[VLMClient] = None,
        session_factory: Callable[[], Session] = SessionLocal,
        nutrition: Optional[NutritionLookup] = None,
    ):
        self.llm = llm or get_llm_client()
        self.vlm = vlm or get_vlm_client()
        self.session_factory = session_factory
        self.nutrition = nutrition or get_nutrition_lookup()

    async def _run_db(self, tool: ToolName, func: Callable[[Session], Any]) -> Any:
        """Run ``func`` with a fresh session in the DB thread pool."""
        def work():
            with self.session_factory() as db:
                return func(db)

        try:
            return await run_sync(work)
        except SQLAlchemyError as e:
            logger.error(f"[{tool.value}] Database error: {e}")
            raise ToolExecutionError(tool.value, f"database error: {e}") from e

    async def _load_plan(self, tool: ToolName, meal_plan_id: str) -> MealPlan:
        def load(db: Session) -> Optional[MealPlan]:
            stored = crud_meal_plans.meal_plan.get(db, meal_plan_id)
            return crud_meal_plans.to_schema(stored) if stored else None

        plan = await self._run_db(tool, load)
        if plan is None:
            logger.warning(f"[{tool.value}] Meal plan {meal_plan_id} not found")
            raise MissingContextError(tool.value, "meal_plan_id")
        return plan

    # ------------------------------------------------------------------
    # generateMealPlan
    # ------------------------------------------------------------------

    async def generate_meal_plan(self, params: GenerateMealPlanArgs, context: SessionContext) -> ToolResult:
        dietary = params.dietary or params.preferences.get("dietary") or "none"
        draft = await self.llm.generate_structured(
            "meal_plan_generation",
            MealPlanDraft,
            duration=params.duration,
            meals_per_day=params.meals_per_day,
            dietary=dietary,
            preferences=describe_preferences(params.preferences),
        )

        days = [day for day in draft.days if day.meals][:params.duration]
        if not days:
            raise MalformedOutputError("meal plan contained no meals")
        for number, day in enumerate(days, start=1):
            day.day = number

        create = MealPlanCreate(
            title=draft.title.strip() or f"{params.duration}-Day Meal Plan",
            duration=len(days),
            meals_per_day=params.meals_per_day,
            user_id=params.user_id or context.user_id,
        )

        def save(db: Session) -> MealPlan:
            stored = crud_meal_plans.meal_plan.create_with_days(db, create, days)
            return crud_meal_plans.to_schema(stored)

        plan = await self._run_db(ToolName.GENERATE_MEAL_PLAN, save)
        logger.info(f"[generateMealPlan] Saved plan {plan.id} ({plan.duration} days)")
        return ToolResult(
            payload=plan.model_dump(mode="json"),
            context_patch={"meal_plan_id": plan.id},
        )

    # ------------------------------------------------------------------
    # generateGroceryList
    # ------------------------------------------------------------------

    async def generate_grocery_list(self, params: GenerateGroceryListArgs, context: SessionContext) -> ToolResult:
        plan = await self._load_plan(ToolName.GENERATE_GROCERY_LIST, params.meal_plan_id)

        location = DEFAULT_LOCATION.model_copy(
            update=params.location.model_dump(exclude_none=True) if params.location else {}
        )
        ingredient_lines = [
            f"- Day {day.day} {meal.type}, {meal.name}: {', '.join(meal.ingredients) or 'no ingredients listed'}"
            for day in plan.days
            for meal in day.meals
        ]

        draft = await self.llm.generate_structured(
            "grocery_list_generation",
            GroceryListDraft,
            title=plan.title,
            ingredients="\n".join(ingredient_lines),
            city=location.city,
            country=location.country,
            currency_symbol=location.currency_symbol,
        )
        if not draft.items:
            raise MalformedOutputError("grocery list contained no items")

        create = GroceryListCreate(meal_plan_id=plan.id, user_id=params.user_id or context.user_id)
        location_info = LocationInfo(currency_symbol=location.currency_symbol, local_stores=draft.local_stores)

        def save(db: Session):
            stored = crud_grocery_lists.grocery_list.create_with_items(db, create, draft.items, location_info)
            return crud_grocery_lists.to_schema(stored)

        grocery_list = await self._run_db(ToolName.GENERATE_GROCERY_LIST, save)
        logger.info(f"[generateGroceryList] Saved list {grocery_list.id} with {len(grocery_list.items)} items")
        return ToolResult(
            payload=grocery_list.model_dump(mode="json"),
            context_patch={"grocery_list_id": grocery_list.id},
        )

    # ------------------------------------------------------------------
    # analyzeNutrition
    # ------------------------------------------------------------------

    async def analyze_nutrition(self, params: AnalyzeNutritionArgs, context: SessionContext) -> ToolResult:
        plan = await self._load_plan(ToolName.ANALYZE_NUTRITION, params.meal_plan_id)
        report = await run_sync(self._nutrition_report, plan)
        logger.info(
            f"[analyzeNutrition] Plan {plan.id}: {report.daily_average.kcal} kcal/day, "
            f"{report.estimated_meals} meals estimated from ingredients"
        )
        return ToolResult(payload=report.model_dump(mode="json"))

    def _meal_macros(self, meal: Meal) -> tuple[NutritionBase, bool]:
        """Macros stated on the meal, or an ingredient-based estimate when missing."""
        if meal.calories > 0:
            return NutritionBase(kcal=meal.calories, protein=meal.protein, carbs=meal.carbs, fat=meal.fat), False
        return self.nutrition.estimate_ingredient_lines(meal.ingredients), True

    def _nutrition_report(self, plan: MealPlan) -> NutritionReport:
        days: List[DayNutrition] = []
        estimated = 0

        for day in plan.days:
            totals = dict(kcal=0.0, protein=0.0, carbs=0.0, fat=0.0)
            for meal in day.meals:
                macros, was_estimated = self._meal_macros(meal)
                estimated += int(was_estimated)
                for key in totals:
                    totals[key] += getattr(macros, key)
            days.append(DayNutrition(day=day.day, **{k: round(v, 1) for k, v in totals.items()}))

        total = NutritionBase(**{
            key: round(sum(getattr(d, key) for d in days), 1)
            for key in ("kcal", "protein", "carbs", "fat")
        })
        count = max(len(days), 1)
        average = NutritionBase(**{
            key: round(getattr(total, key) / count, 1)
            for key in ("kcal", "protein", "carbs", "fat")
        })

        return NutritionReport(
            meal_plan_id=plan.id,
            total=total,
            daily_average=average,
            days=days,
            estimated_meals=estimated,
            insights=nutrition_insights(average, len(days)),
        )

    # ------------------------------------------------------------------
    # swapMeal
    # ------------------------------------------------------------------

    async def swap_meal(self, params: SwapMealArgs, context: SessionContext) -> ToolResult:
        plan = await self._load_plan(ToolName.SWAP_MEAL, params.meal_plan_id)

        plan_day = next((d for d in plan.days if d.day == params.day), None)
        if plan_day is None:
            raise ToolValidationError(
                ToolName.SWAP_MEAL.value,
                f"day {params.day} is not in the plan",
                [{"loc": ("day",), "msg": f"must be between 1 and {len(plan.days)}"}],
            )

        index = find_meal_index(plan_day.meals, params.meal)
        if index is None:
            available = ", ".join(f"{m.type} ({m.name})" for m in plan_day.meals)
            raise ToolValidationError(
                ToolName.SWAP_MEAL.value,
                f"no meal matching '{params.meal}' on day {params.day}",
                [{"loc": ("meal",), "msg": f"must be one of: {available}"}],
            )

        current = plan_day.meals[index]
        others = [m.name for i, m in enumerate(plan_day.meals) if i != index]
        draft = await self.llm.generate_structured(
            "meal_swap",
            SwapDraft,
            day=params.day,
            meal_type=current.type,
            current_meal=current.name,
            calories=int(current.calories),
            other_meals=", ".join(others) or "none",
            preferences=describe_preferences(params.preferences),
        )

        new_meal = draft.meal.model_copy(update={"type": current.type})
        if new_meal.name.strip().lower() == current.name.strip().lower():
            raise MalformedOutputError("swap returned the same meal")
        if current.calories and new_meal.calories and \
                abs(new_meal.calories - current.calories) > LimitsConstants.SWAP_CALORIE_TOLERANCE:
            logger.warning(
                f"[swapMeal] Replacement {new_meal.name} is {new_meal.calories} kcal vs {current.calories} kcal"
            )

        def save(db: Session):
            return crud_meal_plans.meal_plan.replace_meal(db, plan.id, params.day, index, new_meal)

        stored = await self._run_db(ToolName.SWAP_MEAL, save)
        if stored is None:
            raise MissingContextError(ToolName.SWAP_MEAL.value, "meal_plan_id")

        swapped = SwappedMeal(meal_plan_id=plan.id, day=params.day, previous_meal=current, new_meal=new_meal)
        logger.info(f"[swapMeal] Plan {plan.id} day {params.day}: {current.name} -> {new_meal.name}")
        return ToolResult(payload=swapped.model_dump(mode="json"))

    # ------------------------------------------------------------------
    # analyzePantryImage
    # ------------------------------------------------------------------

    async def analyze_pantry_image(self, params: AnalyzePantryImageArgs, context: SessionContext) -> ToolResult:
        image_bytes = await self.vlm.fetch_image(params.image_url)
        analysis = await self.vlm.analyze_pantry_image(image_bytes)
        return ToolResult(payload=analysis.model_dump(mode="json"))

    # ------------------------------------------------------------------
    # generateMealRecipe
    # ------------------------------------------------------------------

    async def generate_meal_recipe(self, params: GenerateMealRecipeArgs, context: SessionContext) -> ToolResult:
        recipe = await self.llm.generate_structured(
            "meal_recipe",
            RecipeBase,
            meal_name=params.meal_name,
            preferences=describe_preferences(params.preferences),
        )
        if not recipe.ingredients or not recipe.steps:
            raise MalformedOutputError("recipe is missing ingredients or steps")

        total, per_serving = await run_sync(estimate_recipe_nutrition, recipe, self.nutrition)
        result = MealRecipe(recipe=recipe, total=total, per_serving=per_serving)
        return ToolResult(payload=result.model_dump(mode="json"))


# ============================================================================
# HELPERS
# ============================================================================

def find_meal_index(meals: List[Meal], wanted: str) -> Optional[int]:
    """Match a meal by type first, then by dish name."""
    wanted_norm = wanted.strip().lower()
    for i, meal in enumerate(meals):
        if meal.type.lower() == wanted_norm:
            return i
    for i, meal in enumerate(meals):
        name = meal.name.lower()
        if wanted_norm in name or name in wanted_norm:
            return i
    return None


def nutrition_insights(average: NutritionBase, day_count: int) -> List[str]:
    """Short observations about a plan's daily averages."""
    insights = [f"Averages {average.kcal:.0f} kcal per day across {day_count} day(s)."]
    if average.kcal <= 0:
        return insights

    if average.kcal < 1200:
        insights.append("Daily calories are quite low; consider adding a snack or larger portions.")
    elif average.kcal > 2800:
        insights.append("Daily calories are high; portion sizes may be worth reviewing.")

    protein_pct = average.protein * 4 / average.kcal * 100
    fat_pct = average.fat * 9 / average.kcal * 100
    if protein_pct < 15:
        insights.append(
            f"Protein provides {protein_pct:.0f}% of calories; legumes, eggs, tofu or lean meat would raise it."
        )
    elif protein_pct >= 25:
        insights.append(f"Protein-rich plan ({protein_pct:.0f}% of calories).")
    if fat_pct > 35:
        insights.append(f"Fat provides {fat_pct:.0f}% of calories, above the usual 20-35% range.")
    return insights


def build_default_registry(
    llm: Optional[LLMClient] = None,
    vlm: Optional[VLMClient] = None,
    session_factory: Callable[[], Session] = SessionLocal,
    nutrition: Optional[NutritionLookup] = None,
) -> ToolRegistry:
    """Register every tool. The set is fixed for the life of the process."""
    tools = MealTools(llm=llm, vlm=vlm, session_factory=session_factory, nutrition=nutrition)
    registry = ToolRegistry()

    registry.register(ToolDescriptor(
        name=ToolName.GENERATE_MEAL_PLAN,
        input_model=GenerateMealPlanArgs,
        handler=tools.generate_meal_plan,
        mutates_context=True,
        mutates_state=True,
        structured_key="mealPlan",
        description="Generate and save a meal plan",
    ))
    registry.register(ToolDescriptor(
        name=ToolName.GENERATE_GROCERY_LIST,
        input_model=GenerateGroceryListArgs,
        handler=tools.generate_grocery_list,
        mutates_context=True,
        mutates_state=True,
        structured_key="groceryList",
        context_args={"meal_plan_id": "meal_plan_id"},
        description="Generate and save a grocery list for a meal plan",
    ))
    registry.register(ToolDescriptor(
        name=ToolName.ANALYZE_NUTRITION,
        input_model=AnalyzeNutritionArgs,
        handler=tools.analyze_nutrition,
        structured_key="nutrition",
        context_args={"meal_plan_id": "meal_plan_id"},
        description="Analyze the nutrition of a meal plan",
    ))
    registry.register(ToolDescriptor(
        name=ToolName.SWAP_MEAL,
        input_model=SwapMealArgs,
        handler=tools.swap_meal,
        mutates_state=True,
        structured_key="swappedMeal",
        context_args={"meal_plan_id": "meal_plan_id"},
        description="Replace one meal of a meal plan",
    ))
    registry.register(ToolDescriptor(
        name=ToolName.ANALYZE_PANTRY_IMAGE,
        input_model=AnalyzePantryImageArgs,
        handler=tools.analyze_pantry_image,
        structured_key="pantryAnalysis",
        description="Identify food items in a pantry photo",
    ))
    registry.register(ToolDescriptor(
        name=ToolName.GENERATE_MEAL_RECIPE,
        input_model=GenerateMealRecipeArgs,
        handler=tools.generate_meal_recipe,
        structured_key="mealRecipe",
        description="Write a full recipe for a meal",
    ))

    registry.assert_complete()
    return registry
