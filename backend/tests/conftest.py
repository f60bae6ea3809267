"""
Shared fixtures: scripted model clients and an in-memory database.
"""
from typing import Any, Callable, Dict, List, Optional

import pytest
from pydantic import BaseModel
from sqlalchemy import create_engine
from sqlalchemy.orm import sessionmaker
from sqlalchemy.pool import StaticPool

from mealwise.core.exceptions import MalformedOutputError
from mealwise.db.models import Base
from mealwise.db.schema import PantryAnalysis
from mealwise.services.orchestration.context_store import InMemoryContextStore
from mealwise.services.orchestration.intent import IntentClassifier
from mealwise.services.orchestration.orchestrator import OrchestratedChatFlow
from mealwise.services.orchestration.reply import ConversationalResponder
from mealwise.services.orchestration.tools import build_default_registry
from mealwise.utils.nutrition_lookup import NutritionLookup
from mealwise.utils.prompt_loader import get_prompt_loader


# ============================================================================
# SAMPLE MODEL OUTPUT
# ============================================================================

def make_meal_plan_draft(days: int = 3) -> Dict[str, Any]:
    return {
        "title": f"Vegetarian {days}-Day Plan",
        "days": [
            {
                "day": day,
                "meals": [
                    {
                        "type": "breakfast",
                        "name": f"Overnight Oats {day}",
                        "ingredients": ["50g oats", "200ml milk", "1 banana"],
                        "calories": 380, "protein": 14, "carbs": 62, "fat": 8,
                    },
                    {
                        "type": "lunch",
                        "name": f"Chickpea Salad {day}",
                        "ingredients": ["150g chickpeas", "1 tomato", "1 tbsp olive oil"],
                        "calories": 450, "protein": 16, "carbs": 48, "fat": 20,
                    },
                    {
                        "type": "dinner",
                        "name": f"Tofu Stir Fry {day}",
                        "ingredients": ["200g tofu", "100g broccoli", "150g rice"],
                        "calories": 520, "protein": 26, "carbs": 60, "fat": 14,
                    },
                ],
            }
            for day in range(1, days + 1)
        ],
    }


GROCERY_DRAFT = {
    "items": [
        {"item": "Oats", "quantity": "150g", "category": "grains", "estimated_price": "$2"},
        {"item": "Chickpeas", "quantity": "450g", "category": "protein"},
        {"item": "Tofu", "quantity": "600g", "category": "protein"},
        {"item": "Broccoli", "quantity": "300g", "category": "produce"},
    ],
    "local_stores": ["Pingo Doce", "Continente"],
}

SWAP_DRAFT = {
    "meal": {
        "type": "dinner",
        "name": "Lentil Curry",
        "ingredients": ["150g lentils", "100ml coconut milk"],
        "calories": 510, "protein": 24, "carbs": 58, "fat": 16,
    }
}

RECIPE_DRAFT = {
    "name": "Chickpea Curry",
    "servings": 2,
    "total_time_minutes": 30,
    "ingredients": [
        {"name": "chickpeas", "quantity": 400, "unit": "g"},
        {"name": "coconut milk", "quantity": 200, "unit": "ml"},
        {"name": "onion", "quantity": 1, "unit": None},
    ],
    "steps": [
        {"step_number": 1, "instruction": "Fry the onion."},
        {"step_number": 2, "instruction": "Add chickpeas and coconut milk and simmer."},
    ],
}


# ============================================================================
# FAKE CLIENTS
# ============================================================================

class FakeLLM:
    """
    Stand-in for LLMClient with scripted answers per prompt key.

    A script entry is a dict (validated against the requested model), an
    exception (raised), or a callable returning either. A list of entries is
    consumed one call at a time; its last entry repeats.
    """

    def __init__(self, scripts: Optional[Dict[str, Any]] = None, chat_reply: str = "Happy to help!"):
        self.scripts: Dict[str, Any] = {
            "intent_classification": {"intent": "CONVERSATIONAL", "slots": {}},
            "meal_plan_generation": make_meal_plan_draft(3),
            "grocery_list_generation": GROCERY_DRAFT,
            "meal_swap": SWAP_DRAFT,
            "meal_recipe": RECIPE_DRAFT,
        }
        self.scripts.update(scripts or {})
        self.chat_reply = chat_reply
        self.calls: List[str] = []
        self.chat_calls: List[Dict[str, Any]] = []
        self.prompt_loader = get_prompt_loader()

    def script(self, prompt_key: str, *entries: Any) -> None:
        self.scripts[prompt_key] = list(entries) if len(entries) > 1 else entries[0]

    def count(self, prompt_key: str) -> int:
        return self.calls.count(prompt_key)

    def _next(self, prompt_key: str) -> Any:
        if prompt_key not in self.scripts:
            raise MalformedOutputError(f"no scripted output for {prompt_key}")
        entry = self.scripts[prompt_key]
        if isinstance(entry, list):
            entry = entry.pop(0) if len(entry) > 1 else entry[0]
        return entry

    async def generate_structured(self, prompt_key: str, response_model, temperature: float = 0.3, **variables):
        # Rendering catches prompt variables that are missing or misspelled
        self.prompt_loader.render_llm_prompt(prompt_key, **variables)
        self.calls.append(prompt_key)
        entry = self._next(prompt_key)
        if callable(entry) and not isinstance(entry, type):
            entry = entry(**variables)
        if isinstance(entry, BaseException):
            raise entry
        if isinstance(entry, BaseModel):
            return entry
        return response_model.model_validate(entry)

    async def chat(self, messages, temperature: float = 0.7, system: Optional[str] = None) -> str:
        self.chat_calls.append({"messages": messages, "system": system})
        if isinstance(self.chat_reply, BaseException):
            raise self.chat_reply
        return self.chat_reply


class FakeVLM:
    def __init__(self, analysis: Optional[Dict[str, Any]] = None):
        self.analysis = analysis or {
            "items": [
                {"name": "eggs", "category": "protein", "quantity": "6"},
                {"name": "spinach", "category": "produce", "quantity": "1 bag"},
                {"name": "cheddar", "category": "cheese"},
            ],
            "summary": "Enough for a spinach omelette.",
        }
        self.fetched: List[str] = []

    async def fetch_image(self, image_url: str) -> bytes:
        self.fetched.append(image_url)
        return b"\x89PNG fake"

    async def analyze_pantry_image(self, image_bytes: bytes) -> PantryAnalysis:
        return PantryAnalysis.model_validate(self.analysis)


# ============================================================================
# FIXTURES
# ============================================================================

@pytest.fixture
def session_factory():
    engine = create_engine(
        "sqlite://",
        connect_args={"check_same_thread": False},
        poolclass=StaticPool,
    )
    Base.metadata.create_all(bind=engine)
    yield sessionmaker(autocommit=False, autoflush=False, bind=engine)
    engine.dispose()


@pytest.fixture
def fake_llm() -> FakeLLM:
    return FakeLLM()


@pytest.fixture
def fake_vlm() -> FakeVLM:
    return FakeVLM()


@pytest.fixture
def nutrition() -> NutritionLookup:
    return NutritionLookup()


@pytest.fixture
def registry(fake_llm, fake_vlm, session_factory, nutrition):
    return build_default_registry(fake_llm, fake_vlm, session_factory, nutrition)


@pytest.fixture
def store() -> InMemoryContextStore:
    return InMemoryContextStore()


@pytest.fixture
def classifier(fake_llm) -> IntentClassifier:
    return IntentClassifier(fake_llm, timeout=5)


@pytest.fixture
def flow(registry, classifier, store, fake_llm) -> OrchestratedChatFlow:
    return OrchestratedChatFlow(
        registry,
        classifier,
        store,
        ConversationalResponder(fake_llm, timeout=5),
        tool_timeout=5,
    )


@pytest.fixture
def make_flow(registry, classifier, store, fake_llm) -> Callable[..., OrchestratedChatFlow]:
    """Flow factory for tests that need a different timeout or retry count."""
    def build(tool_timeout: float = 5, max_tool_retries: int = 1) -> OrchestratedChatFlow:
        return OrchestratedChatFlow(
            registry,
            classifier,
            store,
            ConversationalResponder(fake_llm, timeout=5),
            tool_timeout=tool_timeout,
            max_tool_retries=max_tool_retries,
        )
    return build
