"""
Tests for tool descriptors and the registry.
"""
import pytest
from pydantic import BaseModel

from mealwise.core.exceptions import ToolNotFoundError, ToolValidationError
from mealwise.services.orchestration.registry import ToolDescriptor, ToolRegistry, ToolResult
from mealwise.services.orchestration.types import SessionContext, ToolName


class EchoArgs(BaseModel):
    value: int


def make_descriptor(name=ToolName.ANALYZE_NUTRITION, calls=None):
    async def handler(params, context):
        if calls is not None:
            calls.append(params.value)
        return ToolResult(payload={"value": params.value})

    return ToolDescriptor(name=name, input_model=EchoArgs, handler=handler, structured_key="echo")


def test_default_registry_has_every_tool(registry):
    """All six tools are registered at startup."""
    assert sorted(registry.names()) == sorted(name.value for name in ToolName)
    assert len(registry) == 6
    registry.assert_complete()


def test_get_unknown_tool_raises():
    registry = ToolRegistry()
    with pytest.raises(ToolNotFoundError):
        registry.get("bakeCake")
    with pytest.raises(ToolNotFoundError):
        registry.get(ToolName.SWAP_MEAL)


def test_register_twice_is_rejected():
    registry = ToolRegistry()
    registry.register(make_descriptor())
    with pytest.raises(ValueError):
        registry.register(make_descriptor())


def test_assert_complete_lists_missing_tools():
    registry = ToolRegistry()
    registry.register(make_descriptor())
    with pytest.raises(RuntimeError, match="generateMealPlan"):
        registry.assert_complete()


def test_contains_accepts_names_and_enum():
    registry = ToolRegistry()
    registry.register(make_descriptor())
    assert "analyzeNutrition" in registry
    assert ToolName.ANALYZE_NUTRITION in registry
    assert "swapMeal" not in registry
    assert "nonsense" not in registry


async def test_invoke_validates_before_running():
    """Invalid arguments never reach the handler."""
    calls = []
    descriptor = make_descriptor(calls=calls)
    context = SessionContext(session_id="s1")

    with pytest.raises(ToolValidationError) as exc_info:
        await descriptor.invoke({"value": "not a number"}, context)
    assert calls == []
    assert "value" in exc_info.value.hint

    result = await descriptor.invoke({"value": "3"}, context)
    assert calls == [3]
    assert result.payload == {"value": 3}


def test_input_schema_is_json_schema(registry):
    schema = registry.get(ToolName.SWAP_MEAL).input_schema
    assert schema["type"] == "object"
    assert {"meal_plan_id", "day", "meal"} <= set(schema["properties"])


def test_descriptor_flags(registry):
    assert registry.get(ToolName.GENERATE_MEAL_PLAN).mutates_context
    assert registry.get(ToolName.GENERATE_MEAL_PLAN).mutates_state
    assert registry.get(ToolName.SWAP_MEAL).mutates_state
    assert not registry.get(ToolName.SWAP_MEAL).mutates_context
    assert not registry.get(ToolName.ANALYZE_NUTRITION).mutates_state
    assert registry.get(ToolName.GENERATE_GROCERY_LIST).context_args == {"meal_plan_id": "meal_plan_id"}
