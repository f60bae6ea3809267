"""
Test prompt loading and rendering.
"""
import pytest

from mealwise.utils.prompt_loader import PromptLoader, get_prompt_loader

LLM_PROMPT_KEYS = [
    "intent_classification",
    "argument_extraction",
    "meal_plan_generation",
    "grocery_list_generation",
    "meal_swap",
    "meal_recipe",
    "kitchen_assistant",
]


@pytest.mark.parametrize("prompt_key", LLM_PROMPT_KEYS)
def test_llm_prompts_have_system_and_user_template(prompt_key):
    """Every LLM prompt can be loaded and has both parts."""
    prompt = get_prompt_loader().get_llm_prompt(prompt_key)
    assert prompt.get("system")
    assert prompt.get("user_template")


def test_vlm_prompt_template():
    template = get_prompt_loader().get_prompt_template("pantry_analysis", type="vlm")
    text = template.format()
    assert "Respond ONLY with JSON" in text
    # Doubled braces come out as literal JSON
    assert '{"items": [{"name": "...", ' in text


def test_render_llm_prompt():
    system, user = get_prompt_loader().render_llm_prompt(
        "meal_swap",
        day=2,
        meal_type="dinner",
        current_meal="Tofu Stir Fry",
        calories=520,
        other_meals="Oats, Salad",
        preferences="none",
    )
    assert "within 50 kcal" in system
    assert user.startswith('Day 2, dinner: replace "Tofu Stir Fry" (about 520 kcal).')
    assert '"type": "dinner"' in user


def test_render_ignores_unused_variables():
    _, user = get_prompt_loader().render_llm_prompt(
        "meal_recipe", meal_name="shakshuka", preferences="none", unused="ignored"
    )
    assert "Write the full recipe for: shakshuka" in user


def test_render_missing_variable_raises():
    with pytest.raises(KeyError):
        get_prompt_loader().render_llm_prompt("meal_recipe", preferences="none")


def test_render_unknown_prompt_raises():
    with pytest.raises(KeyError):
        get_prompt_loader().render_llm_prompt("bake_cake")


def test_format_prompt():
    formatted = get_prompt_loader().format_prompt(
        "Hello {name}, you have {count} items.",
        name="Chef",
        count=5
    )
    assert formatted == "Hello Chef, you have 5 items."


def test_missing_prompt_file(tmp_path):
    loader = PromptLoader(prompts_dir=tmp_path)
    assert loader.get_llm_prompt("intent_classification") == {}
