"""Typed values passed between the orchestration stages."""

from __future__ import annotations

from datetime import datetime
from enum import Enum
from typing import Any, Dict, List, Mapping, Optional

from pydantic import BaseModel, ConfigDict, Field
from pydantic.alias_generators import to_camel

from mealwise.core.exceptions import ClassificationAmbiguous
from mealwise.db.models import utcnow
from mealwise.db.schema import LocationData

CAMEL_CONFIG = ConfigDict(alias_generator=to_camel, populate_by_name=True)


class Intent(str, Enum):
    MEAL_PLAN_REQUIRED = "MEAL_PLAN_REQUIRED"
    GROCERY_LIST_REQUIRED = "GROCERY_LIST_REQUIRED"
    NUTRITION_ANALYSIS_REQUIRED = "NUTRITION_ANALYSIS_REQUIRED"
    MEAL_SWAP_REQUIRED = "MEAL_SWAP_REQUIRED"
    PANTRY_ANALYSIS_REQUIRED = "PANTRY_ANALYSIS_REQUIRED"
    RECIPE_REQUIRED = "RECIPE_REQUIRED"
    CONVERSATIONAL = "CONVERSATIONAL"
    UNKNOWN = "UNKNOWN"

    @classmethod
    def parse(cls, value: Any) -> "Intent":
        """
        Parse a model-produced intent label.

        Raises:
            ClassificationAmbiguous: If the value is missing or not a known intent.
        """
        if isinstance(value, cls):
            return value
        if not isinstance(value, str) or not value.strip():
            raise ClassificationAmbiguous(value)
        normalized = value.strip().upper().replace("-", "_").replace(" ", "_")
        try:
            return cls(normalized)
        except ValueError as e:
            raise ClassificationAmbiguous(value) from e


class IntentSource(str, Enum):
    DETERMINISTIC = "deterministic"
    MODEL = "model"
    FALLBACK = "fallback"


class Confidence(str, Enum):
    HIGH = "high"
    MEDIUM = "medium"
    LOW = "low"


class ToolName(str, Enum):
    """Closed set of tools registered at startup."""
    GENERATE_MEAL_PLAN = "generateMealPlan"
    GENERATE_GROCERY_LIST = "generateGroceryList"
    ANALYZE_NUTRITION = "analyzeNutrition"
    SWAP_MEAL = "swapMeal"
    ANALYZE_PANTRY_IMAGE = "analyzePantryImage"
    GENERATE_MEAL_RECIPE = "generateMealRecipe"


class ToolOutcome(str, Enum):
    SUCCESS = "success"
    RETRIED = "retried"
    FAILED = "failed"


class FailureKind(str, Enum):
    VALIDATION = "validation"
    MISSING_CONTEXT = "missing_context"
    MALFORMED_OUTPUT = "malformed_output"
    TIMEOUT = "timeout"
    EXECUTION = "execution"
    MODEL_UNAVAILABLE = "model_unavailable"


# ============================================================================
# CONVERSATION AND CONTEXT
# ============================================================================

class ConversationTurn(BaseModel):
    role: str = Field(pattern="^(user|assistant)$")
    content: str

    model_config = ConfigDict(frozen=True)


# Fields of SessionContext a patch may set; everything else is managed by the store
CONTEXT_PATCH_FIELDS = ("user_id", "meal_plan_id", "grocery_list_id")


class SessionContext(BaseModel):
    """Per-session carry-over state. Treated as a value: stores hand out copies."""
    session_id: str
    user_id: Optional[str] = None
    meal_plan_id: Optional[str] = None
    grocery_list_id: Optional[str] = None
    last_tool_results: Dict[str, Any] = Field(default_factory=dict)
    version: int = 0
    updated_at: Optional[datetime] = None

    def merged(self, patch: Mapping[str, Any]) -> "SessionContext":
        """
        Return a new context with ``patch`` applied.

        Keys absent from the patch are untouched, a key set to None clears the
        field, and ``last_tool_results`` is merged per tool name.
        """
        unknown = set(patch) - set(CONTEXT_PATCH_FIELDS) - {"last_tool_results"}
        if unknown:
            raise ValueError(f"Cannot patch context fields: {sorted(unknown)}")

        data = self.model_dump()
        for key in CONTEXT_PATCH_FIELDS:
            if key in patch:
                data[key] = patch[key]
        if patch.get("last_tool_results"):
            data["last_tool_results"] = {**self.last_tool_results, **patch["last_tool_results"]}
        data["version"] = self.version + 1
        data["updated_at"] = utcnow()
        return SessionContext(**data)

    def summary(self) -> str:
        """One-line description for prompts."""
        parts = []
        if self.meal_plan_id:
            parts.append("the user has a current meal plan")
        if self.grocery_list_id:
            parts.append("a grocery list exists for it")
        return "; ".join(parts) if parts else "no meal plan yet"


# ============================================================================
# CLASSIFICATION
# ============================================================================

class Slots(BaseModel):
    """Values extracted from the message alongside the intent."""
    duration: Optional[int] = None
    meals_per_day: Optional[int] = None
    dietary: Optional[str] = None
    day: Optional[int] = None
    meal: Optional[str] = None
    meal_name: Optional[str] = None
    image_url: Optional[str] = None
    new_plan: bool = False
    include_grocery_list: bool = False
    include_nutrition: bool = False


class ClassificationResult(BaseModel):
    intent: Intent
    source: IntentSource
    slots: Slots = Field(default_factory=Slots)
    raw_intent: Optional[str] = None

    @property
    def deterministic(self) -> bool:
        return self.source == IntentSource.DETERMINISTIC


# ============================================================================
# DISPATCH
# ============================================================================

class ToolInvocationRecord(BaseModel):
    tool_name: str
    args: Dict[str, Any] = Field(default_factory=dict)
    attempt: int
    outcome: ToolOutcome
    result: Optional[Any] = None
    error: Optional[str] = None

    model_config = CAMEL_CONFIG


class ToolFailure(BaseModel):
    kind: FailureKind
    message: str
    field: Optional[str] = None


class DispatchResult(BaseModel):
    results: Dict[str, Any] = Field(default_factory=dict)
    retried: bool = False
    attempted: List[str] = Field(default_factory=list)
    required: List[str] = Field(default_factory=list)
    failures: Dict[str, ToolFailure] = Field(default_factory=dict)
    records: List[ToolInvocationRecord] = Field(default_factory=list)
    cancelled: bool = False
    # Tools that succeeded but whose context patch could not be stored
    unsaved_context: List[str] = Field(default_factory=list)
    context: Optional[SessionContext] = None

    @property
    def missing_context(self) -> Dict[str, ToolFailure]:
        return {
            name: failure for name, failure in self.failures.items()
            if failure.kind == FailureKind.MISSING_CONTEXT
        }


# ============================================================================
# FACADE INPUT / OUTPUT
# ============================================================================

class OrchestrationInput(BaseModel):
    message: str
    user_id: Optional[str] = None
    session_id: Optional[str] = None
    conversation_history: List[ConversationTurn] = Field(default_factory=list)
    user_preferences: Optional[Dict[str, Any]] = None
    location_data: Optional[LocationData] = None
    image_url: Optional[str] = None

    model_config = CAMEL_CONFIG


class OrchestrationDebug(BaseModel):
    intent: Intent
    retried: bool = False
    tools_attempted: List[str] = Field(default_factory=list)
    intent_source: IntentSource = IntentSource.FALLBACK
    failed_tools: List[str] = Field(default_factory=list)
    cancelled: bool = False
    invocations: List[ToolInvocationRecord] = Field(default_factory=list)

    model_config = CAMEL_CONFIG


class OrchestrationResult(BaseModel):
    response: str
    structured_data: Optional[Dict[str, Any]] = None
    suggestions: Optional[List[str]] = None
    tool_results: Optional[Dict[str, Any]] = None
    confidence: Confidence
    debug: OrchestrationDebug

    model_config = CAMEL_CONFIG
