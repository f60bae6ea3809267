"""
Tests for tool dispatch: argument resolution, the retry bound, timeouts and cancellation.
"""
import asyncio

import pytest

from mealwise.core.exceptions import MalformedOutputError, ModelUnavailableError, ToolExecutionError
from mealwise.services.orchestration.dispatcher import (
    INTENT_TOOLS,
    ToolDispatcher,
    ToolRun,
    ToolState,
    build_args,
    plan_tools,
)
from mealwise.services.orchestration.registry import ToolDescriptor, ToolRegistry, ToolResult
from mealwise.services.orchestration.tools import SwapMealArgs
from mealwise.services.orchestration.types import (
    ClassificationResult,
    FailureKind,
    Intent,
    IntentSource,
    OrchestrationInput,
    Slots,
    ToolName,
    ToolOutcome,
)


def classification(intent, **slots):
    return ClassificationResult(intent=intent, source=IntentSource.DETERMINISTIC, slots=Slots(**slots))


def inputs(message="test", **kwargs):
    return OrchestrationInput(message=message, **kwargs)


@pytest.fixture
def dispatcher(registry, classifier, store):
    return ToolDispatcher(registry, classifier, store, timeout=5)


# ============================================================================
# Planning and arguments
# ============================================================================

def test_every_intent_is_mapped():
    assert set(INTENT_TOOLS) == set(Intent)
    assert INTENT_TOOLS[Intent.CONVERSATIONAL] == ()


def test_follow_up_tools_are_non_critical():
    planned = plan_tools(classification(Intent.MEAL_PLAN_REQUIRED, include_grocery_list=True, include_nutrition=True))
    assert [(p.name, p.critical) for p in planned] == [
        (ToolName.GENERATE_MEAL_PLAN, True),
        (ToolName.GENERATE_GROCERY_LIST, False),
        (ToolName.ANALYZE_NUTRITION, False),
    ]


async def test_build_args_fills_from_context(registry, store):
    context = await store.update("s1", {"meal_plan_id": "plan-1", "user_id": "user-1"})
    args = build_args(
        registry.get(ToolName.SWAP_MEAL),
        Slots(day=2, meal="dinner", duration=3, dietary="vegan"),
        inputs(user_preferences={"dietary": "vegan"}),
        context,
    )
    # Only what swapMeal accepts
    assert args == {"meal_plan_id": "plan-1", "day": 2, "meal": "dinner", "preferences": {"dietary": "vegan"}}


def test_tool_run_rejects_illegal_transitions(registry):
    run = ToolRun(descriptor=registry.get(ToolName.SWAP_MEAL))
    with pytest.raises(RuntimeError):
        run.advance(ToolState.SUCCEEDED)
    run.advance(ToolState.VALIDATING)
    run.advance(ToolState.SUCCEEDED)
    with pytest.raises(RuntimeError):
        run.advance(ToolState.RETRY_ONCE)


# ============================================================================
# Dispatch
# ============================================================================

async def test_conversational_dispatches_nothing(dispatcher, store):
    context = await store.get("s1")
    result = await dispatcher.dispatch(classification(Intent.CONVERSATIONAL), inputs(), context)
    assert result.results == {}
    assert result.attempted == []
    assert result.required == []


async def test_meal_plan_then_grocery_list_share_context(dispatcher, store):
    """The grocery list uses the meal plan id produced earlier in the same turn."""
    context = await store.get("s1")
    result = await dispatcher.dispatch(
        classification(Intent.MEAL_PLAN_REQUIRED, duration=3, include_grocery_list=True),
        inputs(),
        context,
    )
    plan = result.results["generateMealPlan"]
    grocery = result.results["generateGroceryList"]

    assert result.attempted == ["generateMealPlan", "generateGroceryList"]
    assert grocery["meal_plan_id"] == plan["id"]

    stored = await store.get("s1")
    assert stored.meal_plan_id == plan["id"]
    assert stored.grocery_list_id == grocery["id"]
    assert set(stored.last_tool_results) == {"generateMealPlan", "generateGroceryList"}
    assert result.context.version == stored.version


async def test_missing_meal_plan_is_not_invoked(dispatcher, store, fake_llm):
    context = await store.get("s1")
    result = await dispatcher.dispatch(classification(Intent.GROCERY_LIST_REQUIRED), inputs(), context)

    failure = result.failures["generateGroceryList"]
    assert failure.kind == FailureKind.MISSING_CONTEXT
    assert failure.field == "meal_plan_id"
    assert result.attempted == []
    assert result.records == []
    assert fake_llm.count("grocery_list_generation") == 0


async def test_validation_error_retries_once_with_reextracted_args(dispatcher, store, fake_llm):
    plan = (await dispatcher.dispatch(
        classification(Intent.MEAL_PLAN_REQUIRED, duration=3), inputs(), await store.get("s1")
    )).results["generateMealPlan"]

    hints = []

    def extract(**variables):
        hints.append(variables["error_hint"])
        # meal_plan_id from the model must not replace the one in context
        return {"day": 2, "meal": "dinner", "meal_plan_id": "hallucinated"}

    fake_llm.script("argument_extraction", extract)
    result = await dispatcher.dispatch(
        classification(Intent.MEAL_SWAP_REQUIRED, meal="dinner"), inputs("swap dinner"), await store.get("s1")
    )

    assert result.retried is True
    assert result.results["swapMeal"]["meal_plan_id"] == plan["id"]
    assert [r.outcome for r in result.records] == [ToolOutcome.RETRIED, ToolOutcome.SUCCESS]
    assert [r.attempt for r in result.records] == [1, 2]
    assert len(hints) == 1 and "day" in hints[0]


async def test_validation_error_is_attempted_at_most_twice(store, classifier, fake_llm):
    calls = []

    async def never_valid(params, context):
        calls.append(params)
        return ToolResult(payload={})

    registry = ToolRegistry()
    registry.register(ToolDescriptor(
        name=ToolName.SWAP_MEAL,
        input_model=SwapMealArgs,
        handler=never_valid,
        mutates_state=True,
        structured_key="swappedMeal",
        context_args={"meal_plan_id": "meal_plan_id"},
    ))
    fake_llm.script("argument_extraction", {"day": 99})
    dispatcher = ToolDispatcher(registry, classifier, store, timeout=5, max_retries=5)

    context = await store.update("s1", {"meal_plan_id": "plan-1"})
    result = await dispatcher.dispatch(classification(Intent.MEAL_SWAP_REQUIRED, day=42), inputs(), context)

    assert calls == []
    assert len(result.records) == 2
    assert fake_llm.count("argument_extraction") == 1
    assert result.failures["swapMeal"].kind == FailureKind.VALIDATION


async def test_failed_reextraction_fails_tool(dispatcher, store, fake_llm):
    fake_llm.script("argument_extraction", ModelUnavailableError("down"))
    context = await store.update("s1", {"meal_plan_id": "plan-1"})
    result = await dispatcher.dispatch(classification(Intent.MEAL_SWAP_REQUIRED), inputs(), context)
    assert result.failures["swapMeal"].kind == FailureKind.MODEL_UNAVAILABLE


async def test_malformed_output_retries_once(dispatcher, store, fake_llm):
    fake_llm.script("meal_recipe", MalformedOutputError("bad json"), MalformedOutputError("bad json again"))
    result = await dispatcher.dispatch(
        classification(Intent.RECIPE_REQUIRED, meal_name="dal"), inputs(), await store.get("s1")
    )
    assert fake_llm.count("meal_recipe") == 2
    assert result.retried is True
    assert result.failures["generateMealRecipe"].kind == FailureKind.MALFORMED_OUTPUT


async def test_malformed_then_valid_succeeds(dispatcher, store, fake_llm):
    from conftest import RECIPE_DRAFT

    fake_llm.script("meal_recipe", MalformedOutputError("bad json"), RECIPE_DRAFT)
    result = await dispatcher.dispatch(
        classification(Intent.RECIPE_REQUIRED, meal_name="chickpea curry"), inputs(), await store.get("s1")
    )
    assert "generateMealRecipe" in result.results
    assert result.retried is True


async def test_execution_error_is_not_retried(dispatcher, store, fake_vlm):
    async def broken(image_url):
        fake_vlm.fetched.append(image_url)
        raise ToolExecutionError("analyzePantryImage", "could not fetch image")

    fake_vlm.fetch_image = broken
    result = await dispatcher.dispatch(
        classification(Intent.PANTRY_ANALYSIS_REQUIRED, image_url="https://example.com/p.jpg"),
        inputs(),
        await store.get("s1"),
    )
    assert len(fake_vlm.fetched) == 1
    assert result.retried is False
    assert result.failures["analyzePantryImage"].kind == FailureKind.EXECUTION
    assert result.attempted == ["analyzePantryImage"]


async def test_read_only_tool_timeout_retries(registry, classifier, store, fake_vlm):
    attempts = []

    async def slow(image_url):
        attempts.append(image_url)
        await asyncio.sleep(1)

    fake_vlm.fetch_image = slow
    dispatcher = ToolDispatcher(registry, classifier, store, timeout=0.05)
    result = await dispatcher.dispatch(
        classification(Intent.PANTRY_ANALYSIS_REQUIRED, image_url="https://example.com/p.jpg"),
        inputs(),
        await store.get("s1"),
    )
    assert len(attempts) == 2
    assert result.failures["analyzePantryImage"].kind == FailureKind.TIMEOUT


async def test_mutating_tool_timeout_is_not_retried_and_settles_late(classifier, store):
    release = asyncio.Event()
    calls = []

    async def slow_save(params, context):
        calls.append(params)
        await release.wait()
        return ToolResult(payload={"id": "plan-late"}, context_patch={"meal_plan_id": "plan-late"})

    from mealwise.services.orchestration.tools import GenerateMealPlanArgs

    registry = ToolRegistry()
    registry.register(ToolDescriptor(
        name=ToolName.GENERATE_MEAL_PLAN,
        input_model=GenerateMealPlanArgs,
        handler=slow_save,
        mutates_context=True,
        mutates_state=True,
        structured_key="mealPlan",
    ))
    dispatcher = ToolDispatcher(registry, classifier, store, timeout=0.05)

    result = await dispatcher.dispatch(classification(Intent.MEAL_PLAN_REQUIRED), inputs(), await store.get("s1"))
    assert len(calls) == 1
    assert result.failures["generateMealPlan"].kind == FailureKind.TIMEOUT
    assert (await store.get("s1")).meal_plan_id is None

    # The write was never cut off; once it finishes its id lands in the context
    release.set()
    await dispatcher.drain()
    assert (await store.get("s1")).meal_plan_id == "plan-late"


async def test_cancel_before_first_tool(dispatcher, store, fake_llm):
    cancel = asyncio.Event()
    cancel.set()
    result = await dispatcher.dispatch(
        classification(Intent.MEAL_PLAN_REQUIRED, include_grocery_list=True),
        inputs(),
        await store.get("s1"),
        cancel_event=cancel,
    )
    assert result.cancelled is True
    assert result.attempted == []
    assert fake_llm.count("meal_plan_generation") == 0


async def test_cancel_between_tools(dispatcher, store, fake_llm):
    """The tool in flight finishes; the next one never starts."""
    cancel = asyncio.Event()
    from conftest import make_meal_plan_draft

    def plan_and_cancel(**variables):
        cancel.set()
        return make_meal_plan_draft(3)

    fake_llm.script("meal_plan_generation", plan_and_cancel)
    result = await dispatcher.dispatch(
        classification(Intent.MEAL_PLAN_REQUIRED, include_grocery_list=True),
        inputs(),
        await store.get("s1"),
        cancel_event=cancel,
    )
    assert result.cancelled is True
    assert result.attempted == ["generateMealPlan"]
    assert "generateMealPlan" in result.results
    assert fake_llm.count("grocery_list_generation") == 0


async def test_follow_up_skipped_when_plan_fails(dispatcher, store, fake_llm):
    fake_llm.script("meal_plan_generation", ModelUnavailableError("down"))
    context = await store.update("s1", {"meal_plan_id": "old-plan"})
    result = await dispatcher.dispatch(
        classification(Intent.MEAL_PLAN_REQUIRED, include_grocery_list=True), inputs(), context
    )
    assert result.attempted == ["generateMealPlan"]
    assert fake_llm.count("grocery_list_generation") == 0


async def test_new_plan_clears_previous_grocery_list(dispatcher, store):
    context = await store.update("s1", {"meal_plan_id": "old-plan", "grocery_list_id": "old-list"})
    result = await dispatcher.dispatch(
        classification(Intent.MEAL_PLAN_REQUIRED, new_plan=True), inputs(), context
    )
    stored = await store.get("s1")
    assert stored.meal_plan_id == result.results["generateMealPlan"]["id"]
    assert stored.grocery_list_id is None


async def test_plain_new_plan_keeps_grocery_list_id(dispatcher, store):
    context = await store.update("s1", {"meal_plan_id": "old-plan", "grocery_list_id": "old-list"})
    await dispatcher.dispatch(classification(Intent.MEAL_PLAN_REQUIRED), inputs(), context)
    assert (await store.get("s1")).grocery_list_id == "old-list"


async def test_context_write_failure_keeps_tool_results(dispatcher, store, monkeypatch):
    """A saved plan is still returned, and used by the follow-up, when the context cannot be stored."""
    context = await store.get("s1")

    async def broken(session_id, patch):
        raise RuntimeError("context store offline")

    monkeypatch.setattr(store, "update", broken)
    result = await dispatcher.dispatch(
        classification(Intent.MEAL_PLAN_REQUIRED, duration=3, include_grocery_list=True),
        inputs(),
        context,
    )

    plan = result.results["generateMealPlan"]
    assert result.results["generateGroceryList"]["meal_plan_id"] == plan["id"]
    assert result.failures == {}
    assert result.unsaved_context == ["generateMealPlan", "generateGroceryList"]
    assert result.context.meal_plan_id == plan["id"]
