"""
Turns a classification and the dispatcher's results into the reply the UI shows.
"""

from __future__ import annotations

from typing import Any, Callable, Dict, List, Optional

from mealwise.core.constants import LimitsConstants
from mealwise.core.logging import get_logger
from mealwise.services.orchestration.registry import ToolRegistry
from mealwise.services.orchestration.types import (
    ClassificationResult,
    Confidence,
    DispatchResult,
    FailureKind,
    Intent,
    OrchestrationDebug,
    OrchestrationResult,
    ToolName,
)

logger = get_logger("services.orchestration.composer")

NO_MEAL_PLAN_RESPONSE = "I don't have a meal plan yet. Want me to create one?"
GROCERY_OFFER = "Would you like me to create a grocery list for this meal plan?"
UNKNOWN_RESPONSE = (
    "I'm not sure what you'd like me to do. I can create meal plans, build grocery lists, "
    "analyze the nutrition of a plan, swap meals, write recipes and look at pantry photos."
)
DEFAULT_CONVERSATIONAL_RESPONSE = "I'm here to help with meal planning. What would you like to cook?"

TOOL_LABELS: Dict[str, str] = {
    ToolName.GENERATE_MEAL_PLAN.value: "the meal plan",
    ToolName.GENERATE_GROCERY_LIST.value: "the grocery list",
    ToolName.ANALYZE_NUTRITION.value: "the nutrition analysis",
    ToolName.SWAP_MEAL.value: "the meal swap",
    ToolName.ANALYZE_PANTRY_IMAGE.value: "the pantry analysis",
    ToolName.GENERATE_MEAL_RECIPE.value: "the recipe",
}

# Follow-up prompts, most useful first
FOLLOW_UPS: Dict[Intent, List[str]] = {
    Intent.MEAL_PLAN_REQUIRED: [
        "Create a grocery list for this plan",
        "Analyze the nutrition of this plan",
        "Swap a meal I don't like",
    ],
    Intent.GROCERY_LIST_REQUIRED: [
        "Analyze the nutrition of this plan",
        "Swap a meal I don't like",
        "Start a new meal plan",
    ],
    Intent.NUTRITION_ANALYSIS_REQUIRED: [
        "Swap a meal for something lighter",
        "Create a grocery list for this plan",
        "Give me the recipe for one of the meals",
    ],
    Intent.MEAL_SWAP_REQUIRED: [
        "Create a grocery list for this plan",
        "Analyze the nutrition of this plan",
        "Swap another meal",
    ],
    Intent.PANTRY_ANALYSIS_REQUIRED: [
        "Plan meals using what I have",
        "Suggest a recipe with these ingredients",
    ],
    Intent.RECIPE_REQUIRED: [
        "Plan a week of meals like this",
        "Give me another recipe",
    ],
    Intent.CONVERSATIONAL: [
        "Plan a 7 day meal plan",
        "Give me a recipe for dinner tonight",
    ],
    Intent.UNKNOWN: [
        "Plan a 7 day meal plan",
        "Create a grocery list",
        "Analyze my pantry from a photo",
    ],
}

# Suggestions that are pointless once the matching tool already ran this turn
_COVERED_BY = {
    "Create a grocery list for this plan": ToolName.GENERATE_GROCERY_LIST.value,
    "Analyze the nutrition of this plan": ToolName.ANALYZE_NUTRITION.value,
}


# ============================================================================
# TOOL SUMMARIES
# ============================================================================

def _fmt_kcal(value: Any) -> str:
    try:
        return f"{float(value):.0f}"
    except (TypeError, ValueError):
        return "?"


def summarize_meal_plan(plan: Dict[str, Any]) -> str:
    days = plan.get("days") or []
    lines = [
        f"Here's your **{plan.get('title', 'meal plan')}**: {len(days)} day(s), "
        f"{plan.get('meals_per_day', '?')} meals per day."
    ]
    for day in days:
        meals = ", ".join(f"{m.get('type', 'meal').title()}: {m.get('name', '?')}" for m in day.get("meals", []))
        lines.append(f"- Day {day.get('day')}: {meals}")
    return "\n".join(lines)


def summarize_grocery_list(grocery: Dict[str, Any]) -> str:
    items = grocery.get("items") or []
    categories: Dict[str, int] = {}
    for item in items:
        category = item.get("category") or "other"
        categories[category] = categories.get(category, 0) + 1
    breakdown = ", ".join(f"{count} {name}" for name, count in sorted(categories.items()))
    text = f"I've put together a grocery list with **{len(items)} items**"
    text += f" ({breakdown})." if breakdown else "."
    stores = (grocery.get("location_info") or {}).get("local_stores") or []
    if stores:
        text += f" Good places to shop: {', '.join(stores[:3])}."
    return text


def summarize_nutrition(report: Dict[str, Any]) -> str:
    average = report.get("daily_average") or {}
    text = (
        f"Nutrition per day on average: **{_fmt_kcal(average.get('kcal'))} kcal**, "
        f"{average.get('protein', 0)} g protein, {average.get('carbs', 0)} g carbs, {average.get('fat', 0)} g fat."
    )
    insights = report.get("insights") or []
    # The first insight repeats the average
    extra = insights[1:]
    if extra:
        text += "\n" + "\n".join(f"- {insight}" for insight in extra)
    return text


def summarize_swap(swap: Dict[str, Any]) -> str:
    previous = swap.get("previous_meal") or {}
    new = swap.get("new_meal") or {}
    return (
        f"Done! On day {swap.get('day')} your {new.get('type', 'meal')} is now **{new.get('name', '?')}** "
        f"instead of {previous.get('name', 'the previous meal')} ({_fmt_kcal(new.get('calories'))} kcal)."
    )


def summarize_pantry(analysis: Dict[str, Any]) -> str:
    items = analysis.get("items") or []
    if not items:
        return "I couldn't spot any food items in that photo."
    names = ", ".join(item.get("name", "?") for item in items[:10])
    more = f" and {len(items) - 10} more" if len(items) > 10 else ""
    text = f"I can see **{len(items)} items** in your pantry: {names}{more}."
    if analysis.get("summary"):
        text += f" {analysis['summary']}"
    return text


def summarize_recipe(result: Dict[str, Any]) -> str:
    recipe = result.get("recipe") or {}
    per_serving = result.get("per_serving") or {}
    ingredients = recipe.get("ingredients") or []
    steps = recipe.get("steps") or []
    text = (
        f"Here's how to make **{recipe.get('name', 'this dish')}** "
        f"({len(ingredients)} ingredients, {len(steps)} steps, "
        f"about {_fmt_kcal(per_serving.get('kcal'))} kcal per serving)."
    )
    if recipe.get("total_time_minutes"):
        text += f" Ready in about {recipe['total_time_minutes']} minutes."
    return text


SUMMARIZERS: Dict[str, Callable[[Dict[str, Any]], str]] = {
    ToolName.GENERATE_MEAL_PLAN.value: summarize_meal_plan,
    ToolName.GENERATE_GROCERY_LIST.value: summarize_grocery_list,
    ToolName.ANALYZE_NUTRITION.value: summarize_nutrition,
    ToolName.SWAP_MEAL.value: summarize_swap,
    ToolName.ANALYZE_PANTRY_IMAGE.value: summarize_pantry,
    ToolName.GENERATE_MEAL_RECIPE.value: summarize_recipe,
}

if set(SUMMARIZERS) != {name.value for name in ToolName}:
    raise RuntimeError("Every tool needs a summarizer")


# ============================================================================
# COMPOSER
# ============================================================================

class ResponseComposer:
    """Builds the OrchestrationResult for a turn."""

    def __init__(self, registry: ToolRegistry):
        self.registry = registry

    def compose(
        self,
        classification: ClassificationResult,
        dispatch: DispatchResult,
        model_text: Optional[str] = None,
    ) -> OrchestrationResult:
        confidence = self.confidence(classification, dispatch)
        result = OrchestrationResult(
            response=self.text(classification, dispatch, model_text),
            structured_data=self.structured_data(dispatch),
            suggestions=self.suggestions(classification, dispatch),
            tool_results=dict(dispatch.results) or None,
            confidence=confidence,
            debug=OrchestrationDebug(
                intent=classification.intent,
                retried=dispatch.retried,
                tools_attempted=list(dispatch.attempted),
                intent_source=classification.source,
                failed_tools=list(dispatch.failures),
                cancelled=dispatch.cancelled,
                invocations=list(dispatch.records),
            ),
        )
        logger.info(
            f"[Composer] {classification.intent.value} -> confidence={confidence.value}, "
            f"tools={list(dispatch.results)}"
        )
        return result

    @staticmethod
    def confidence(classification: ClassificationResult, dispatch: DispatchResult) -> Confidence:
        if classification.intent == Intent.UNKNOWN:
            return Confidence.LOW

        if not dispatch.required:
            return Confidence.HIGH if classification.deterministic else Confidence.MEDIUM

        if any(name not in dispatch.results for name in dispatch.required):
            return Confidence.LOW
        if not classification.deterministic:
            return Confidence.MEDIUM
        if dispatch.failures or dispatch.cancelled or dispatch.unsaved_context:
            # Only non-critical tools can be left at this point
            return Confidence.MEDIUM
        return Confidence.HIGH

    def structured_data(self, dispatch: DispatchResult) -> Optional[Dict[str, Any]]:
        data = {
            self.registry.get(name).structured_key: payload
            for name, payload in dispatch.results.items()
        }
        return data or None

    def text(
        self,
        classification: ClassificationResult,
        dispatch: DispatchResult,
        model_text: Optional[str],
    ) -> str:
        intent = classification.intent
        if intent == Intent.UNKNOWN:
            return UNKNOWN_RESPONSE
        if not dispatch.required:
            return (model_text or "").strip() or DEFAULT_CONVERSATIONAL_RESPONSE

        sections = [SUMMARIZERS[name](payload) for name, payload in dispatch.results.items()]

        for name, failure in dispatch.failures.items():
            if failure.kind == FailureKind.MISSING_CONTEXT:
                if failure.field == "meal_plan_id":
                    note = NO_MEAL_PLAN_RESPONSE
                else:
                    note = f"I need a {(failure.field or 'value').replace('_', ' ')} before I can do {TOOL_LABELS[name]}."
            elif dispatch.results:
                note = f"I couldn't finish {TOOL_LABELS[name]} this time, but you can ask me to try again."
            else:
                note = f"Sorry, I couldn't complete {TOOL_LABELS[name]} right now. Please try again."
            if note not in sections:
                sections.append(note)

        if dispatch.cancelled:
            sections.append("I stopped before finishing everything you asked for.")

        plan_made = ToolName.GENERATE_MEAL_PLAN.value in dispatch.results
        if plan_made and ToolName.GENERATE_GROCERY_LIST.value not in dispatch.results:
            sections.append(GROCERY_OFFER)

        return "\n\n".join(sections)

    @staticmethod
    def suggestions(classification: ClassificationResult, dispatch: DispatchResult) -> Optional[List[str]]:
        if any(f.kind == FailureKind.MISSING_CONTEXT and f.field == "meal_plan_id"
               for f in dispatch.failures.values()):
            candidates = ["Create a 7 day meal plan", "Plan a 3 day vegetarian meal plan"]
        elif dispatch.required and not dispatch.results:
            candidates = []
        else:
            candidates = [
                s for s in FOLLOW_UPS.get(classification.intent, [])
                if _COVERED_BY.get(s) not in dispatch.results
            ]
        return candidates[:LimitsConstants.MAX_SUGGESTIONS] or None
