"""
Intent classification for the orchestrated chat flow.

Unambiguous commands are matched with regular expressions first; everything
else goes to a single schema-constrained LLM call. When both could answer,
the deterministic match wins.
"""

from __future__ import annotations

import asyncio
import json
import re
from typing import Any, Dict, Optional, Sequence

from pydantic import BaseModel, Field, RootModel

from mealwise.core.constants import LimitsConstants, MealConstants
from mealwise.core.exceptions import (
    ClassificationAmbiguous,
    MalformedOutputError,
    ModelUnavailableError,
)
from mealwise.core.llm_client import LLMClient
from mealwise.core.logging import get_logger
from mealwise.services.orchestration.types import (
    ClassificationResult,
    ConversationTurn,
    Intent,
    IntentSource,
    SessionContext,
    Slots,
)
from mealwise.utils.ui_data import strip_ui_data

logger = get_logger("services.orchestration.intent")

_NUMBER = r"(\d+|one|two|three|four|five|six|seven)"

# ============================================================================
# PATTERNS
# ============================================================================

GROCERY_PATTERNS = [
    re.compile(r"\b(grocery|shopping|ingredients?)\s+list\b", re.I),
    re.compile(r"\bwhat\b.*\b(do|should)\s+i\b.*\b(buy|need to buy|shop for)\b", re.I),
]

MEAL_PLAN_PATTERNS = [
    re.compile(r"^\s*(please\s+)?(create|generate|make|plan|build|design|give me|get me|i want|i need)\b.*\bmeal\s*plan", re.I),
    re.compile(r"\bmeal\s*plan\b.*\bfor\s+(the\s+|a\s+|next\s+)?(" + _NUMBER[1:-1] + r"|week)", re.I),
    re.compile(r"\b" + _NUMBER + r"[- ]?days?\b.*\b(meal|menu|plan)", re.I),
    re.compile(r"\bplan\s+(out\s+)?(my\s+|our\s+)?(meals|menu|week)\b", re.I),
    re.compile(r"\b(start over|from scratch|new meal\s*plan|another meal\s*plan|fresh meal\s*plan)\b", re.I),
]

# Creating a plan, as opposed to referring to an existing one ("for that meal plan")
MEAL_PLAN_CREATE_PATTERN = re.compile(
    r"\b(create|generate|make|build|design|plan)\b.*\b(meal\s*plan|" + _NUMBER + r"[- ]?days?|week)\b", re.I
)
EXISTING_PLAN_REFERENCE = re.compile(r"\b(this|that|the|my|current|existing)\s+(meal\s*)?plan\b", re.I)
# "my meals", "our week": the plan without naming it
PLAN_SCOPE_REFERENCE = re.compile(r"\b(my|our|these)\s+(meals|menu)\b|\b(my|our)\s+week\b", re.I)

SWAP_PATTERNS = [
    re.compile(r"\b(swap|replace|switch out|substitute)\b", re.I),
    re.compile(r"\b(change|switch)\b.*\b(breakfast|lunch|dinner|snack|meal)\b", re.I),
    re.compile(r"\b(something else|something different)\s+(for|instead of)\b", re.I),
]

NUTRITION_PATTERNS = [
    re.compile(r"\b(analy[sz]e|check|show|break\s*down)\b.*\b(nutrition|nutrients|macros|calories)\b", re.I),
    re.compile(r"\b(nutrition(al)?|macros?|calories|kcal|protein|carbs|nutrients)\b.*\b(plan|this|meals|week)\b", re.I),
    re.compile(r"\bhow\s+(healthy|many calories)\b.*\b(plan|this|meals)\b", re.I),
]

RECIPE_PATTERN = re.compile(
    r"(?:full\s+)?recipe\s+for\s+(?:the\s+|a\s+|an\s+|my\s+)?(?P<a>.+?)[?.!]*$"
    r"|how\s+(?:do|can|should|would)\s+i\s+(?:make|cook|prepare)\s+(?:the\s+|a\s+|an\s+)?(?P<b>.+?)[?.!]*$",
    re.I,
)

PANTRY_PATTERN = re.compile(r"\b(pantry|fridge|refrigerator|cupboard)\b.*\b(photo|picture|image|pic)\b"
                            r"|\b(photo|picture|image|pic)\b.*\b(pantry|fridge|refrigerator|cupboard)\b", re.I)

IMAGE_URL_PATTERN = re.compile(r"https?://\S+?\.(?:jpe?g|png|webp|gif|heic)(?:\?\S*)?", re.I)

GREETING_PATTERN = re.compile(
    r"^\s*(hi|hello|hey|hiya|good (morning|afternoon|evening)|thanks|thank you|thx|cheers)\b[\s!.,]*\w*[\s!.]*$",
    re.I,
)

AFFIRMATIVE_PATTERN = re.compile(
    r"^\s*(yes|yeah|yep|yup|ok|okay|sure|go ahead|do it|please do|sounds good|let'?s do it)[\s!.,]*(please)?[\s!.]*$",
    re.I,
)

# What an assistant offer mentions -> the intent a bare "yes" accepts
OFFER_PATTERNS = [
    (re.compile(r"\b(grocery|shopping)\s+list\b", re.I), Intent.GROCERY_LIST_REQUIRED),
    (re.compile(r"\b(nutrition|macros)\b", re.I), Intent.NUTRITION_ANALYSIS_REQUIRED),
    (re.compile(r"\bswap\b", re.I), Intent.MEAL_SWAP_REQUIRED),
    (re.compile(r"\b(meal\s*plan|create one|plan for you)\b", re.I), Intent.MEAL_PLAN_REQUIRED),
]

DIETARY_KEYWORDS = [
    "vegetarian", "vegan", "pescatarian", "keto", "paleo", "gluten-free", "dairy-free",
    "low-carb", "high-protein", "mediterranean", "halal", "kosher",
]

NEW_PLAN_PATTERN = re.compile(r"\b(start over|from scratch|new meal\s*plan|another meal\s*plan|fresh meal\s*plan|new plan)\b", re.I)


# ============================================================================
# SLOT EXTRACTION
# ============================================================================

def _to_int(value: str) -> int:
    return MealConstants.NUMBER_WORDS.get(value.lower(), None) or int(value)


def extract_slots(message: str, image_url: Optional[str] = None) -> Slots:
    """Pull the values a tool can use straight out of the message text."""
    text = message.strip()
    slots = Slots()

    match = re.search(r"\b" + _NUMBER + r"[- ]?days?\b", text, re.I)
    if match:
        slots.duration = _to_int(match.group(1))
    elif re.search(r"\b(a|one|this|next|the|whole|for the)\s+week\b|\bweekly\b", text, re.I):
        slots.duration = 7

    match = re.search(r"\b(\d+|one|two|three|four|five)\s+meals?\b", text, re.I)
    if match:
        slots.meals_per_day = _to_int(match.group(1))

    lowered = re.sub(r"\b(gluten|dairy|carb|protein)\s+(free)\b", r"\1-\2", text.lower())
    lowered = re.sub(r"\b(low|high)\s+(carb|protein)\b", r"\1-\2", lowered)
    for keyword in DIETARY_KEYWORDS:
        if re.search(r"\b" + re.escape(keyword) + r"\b", lowered):
            slots.dietary = keyword
            break

    match = re.search(r"\bday\s*(\d+)\b", text, re.I)
    if match:
        slots.day = int(match.group(1))
    else:
        for name in MealConstants.DAYS_OF_WEEK:
            if re.search(r"\b" + name + r"\b", text, re.I):
                slots.day = MealConstants.day_number(name)
                break

    match = re.search(r"\b(breakfast|lunch|dinner|snack)\b", text, re.I)
    if match:
        slots.meal = match.group(1).lower()
    else:
        match = re.search(
            r"\b(?:swap|replace|switch out|substitute)\s+(?:the\s+|my\s+)?(.+?)(?:\s+(?:on|for|with|in|from)\b|[?.!]|$)",
            text, re.I,
        )
        if match:
            slots.meal = match.group(1).strip()

    match = RECIPE_PATTERN.search(text)
    if match:
        slots.meal_name = (match.group("a") or match.group("b") or "").strip() or None

    url_match = IMAGE_URL_PATTERN.search(text)
    slots.image_url = image_url or (url_match.group(0) if url_match else None)

    slots.new_plan = bool(NEW_PLAN_PATTERN.search(text))
    return slots


def _any(patterns: Sequence[re.Pattern], text: str) -> bool:
    return any(p.search(text) for p in patterns)


def format_history(history: Sequence[ConversationTurn], window: int) -> str:
    """Render the last ``window`` turns for a prompt."""
    turns = list(history)[-window:] if window else []
    if not turns:
        return "(No previous conversation)"
    lines = []
    for turn in turns:
        role = "User" if turn.role == "user" else "Assistant"
        content = strip_ui_data(turn.content)[:LimitsConstants.HISTORY_CHARS_PER_TURN]
        lines.append(f"{role}: {content}")
    return "\n".join(lines)


# ============================================================================
# MODEL OUTPUT SCHEMAS
# ============================================================================

class ModelSlots(BaseModel):
    duration: Optional[Any] = None
    meals_per_day: Optional[Any] = None
    dietary: Optional[str] = None
    day: Optional[Any] = None
    meal: Optional[str] = None
    meal_name: Optional[str] = None


class ModelClassification(BaseModel):
    intent: Optional[str] = None
    slots: ModelSlots = Field(default_factory=ModelSlots)


class ExtractedArguments(RootModel[Dict[str, Any]]):
    pass


def _coerce_int(value: Any) -> Optional[int]:
    if value is None or isinstance(value, bool):
        return None
    if isinstance(value, (int, float)):
        return int(value)
    match = re.search(r"\d+", str(value))
    if match:
        return int(match.group())
    return MealConstants.NUMBER_WORDS.get(str(value).strip().lower())


# ============================================================================
# CLASSIFIER
# ============================================================================

class IntentClassifier:
    """Maps a message, the recent history and the session context to one intent."""

    def __init__(self, llm: LLMClient, timeout: float = 60.0, history_window: int = 5):
        self.llm = llm
        self.timeout = timeout
        self.history_window = history_window

    async def classify(
        self,
        message: str,
        history: Sequence[ConversationTurn],
        context: SessionContext,
        image_url: Optional[str] = None,
    ) -> ClassificationResult:
        """
        Classify a message.

        Raises:
            ModelUnavailableError: If the model is needed and cannot be reached.
        """
        slots = extract_slots(message, image_url)

        deterministic = self.match_deterministic(message, history, context, slots)
        if deterministic is not None:
            logger.info(f"[Intent] Deterministic match: {deterministic.value}")
            return ClassificationResult(intent=deterministic, source=IntentSource.DETERMINISTIC, slots=slots)

        return await self._classify_with_model(message, history, context, slots)

    def match_deterministic(
        self,
        message: str,
        history: Sequence[ConversationTurn],
        context: SessionContext,
        slots: Slots,
    ) -> Optional[Intent]:
        """Rules for unambiguous commands, most specific first. May set follow-up flags on ``slots``."""
        text = message.strip()
        if not text and not slots.image_url:
            return None

        if slots.image_url and (not text or PANTRY_PATTERN.search(text) or IMAGE_URL_PATTERN.fullmatch(text)
                                or re.search(r"\b(what|which|ingredients?|cook|make|have)\b", text, re.I)):
            return Intent.PANTRY_ANALYSIS_REQUIRED

        if AFFIRMATIVE_PATTERN.match(text):
            return self._accepted_offer(history)

        if _any(GROCERY_PATTERNS, text):
            if MEAL_PLAN_CREATE_PATTERN.search(text) and not EXISTING_PLAN_REFERENCE.search(text):
                slots.include_grocery_list = True
                if re.search(r"\b(nutrition|macros)\b", text, re.I):
                    slots.include_nutrition = True
                return Intent.MEAL_PLAN_REQUIRED
            return Intent.GROCERY_LIST_REQUIRED

        # A swap names a slot of the plan: a day or a meal type
        if _any(SWAP_PATTERNS, text) and (
            slots.day or (slots.meal and MealConstants.is_valid_meal(slots.meal))
        ):
            return Intent.MEAL_SWAP_REQUIRED

        if _any(MEAL_PLAN_PATTERNS, text):
            if re.search(r"\b(with|and|plus|including)\b.*\b(nutrition|macros)\b", text, re.I):
                slots.include_nutrition = True
            return Intent.MEAL_PLAN_REQUIRED

        if _any(NUTRITION_PATTERNS, text) and (
            EXISTING_PLAN_REFERENCE.search(text) or PLAN_SCOPE_REFERENCE.search(text)
        ):
            return Intent.NUTRITION_ANALYSIS_REQUIRED

        if slots.meal_name:
            return Intent.RECIPE_REQUIRED

        if GREETING_PATTERN.match(text):
            return Intent.CONVERSATIONAL

        return None

    def _accepted_offer(self, history: Sequence[ConversationTurn]) -> Optional[Intent]:
        """A bare "yes" accepts whatever the assistant offered last."""
        last_assistant = next((t for t in reversed(list(history)) if t.role == "assistant"), None)
        if last_assistant is None:
            return None
        offer = strip_ui_data(last_assistant.content)
        # Only the closing offer matters, not the whole summary
        tail = offer[-200:]
        for pattern, intent in OFFER_PATTERNS:
            if pattern.search(tail):
                return intent
        return None

    async def _classify_with_model(
        self,
        message: str,
        history: Sequence[ConversationTurn],
        context: SessionContext,
        slots: Slots,
    ) -> ClassificationResult:
        try:
            output = await asyncio.wait_for(
                self.llm.generate_structured(
                    "intent_classification",
                    ModelClassification,
                    temperature=0.0,
                    history=format_history(history, self.history_window),
                    context_summary=context.summary(),
                    user_message=message,
                ),
                timeout=self.timeout,
            )
        except asyncio.TimeoutError as e:
            logger.error(f"[Intent] Classification timed out after {self.timeout}s")
            raise ModelUnavailableError("intent classification timed out") from e
        except MalformedOutputError as e:
            logger.warning(f"[Intent] Unparseable classification, using UNKNOWN: {e}")
            return ClassificationResult(intent=Intent.UNKNOWN, source=IntentSource.FALLBACK, slots=slots)

        try:
            intent = Intent.parse(output.intent)
        except ClassificationAmbiguous as e:
            logger.warning(f"[Intent] {e}; clamping to UNKNOWN")
            return ClassificationResult(
                intent=Intent.UNKNOWN, source=IntentSource.FALLBACK, slots=slots, raw_intent=str(output.intent)
            )

        merged = self._merge_model_slots(slots, output.slots)
        logger.info(f"[Intent] Model classification: {intent.value}")
        return ClassificationResult(intent=intent, source=IntentSource.MODEL, slots=merged, raw_intent=output.intent)

    @staticmethod
    def _merge_model_slots(slots: Slots, model_slots: ModelSlots) -> Slots:
        """Regex-extracted slots win; the model fills the gaps."""
        updates: Dict[str, Any] = {}
        for name in ("duration", "meals_per_day", "day"):
            if getattr(slots, name) is None:
                value = _coerce_int(getattr(model_slots, name))
                if value is not None:
                    updates[name] = value
        for name in ("dietary", "meal", "meal_name"):
            value = getattr(model_slots, name)
            if getattr(slots, name) is None and isinstance(value, str) and value.strip():
                updates[name] = value.strip()
        return slots.model_copy(update=updates)

    async def extract_arguments(
        self,
        tool_name: str,
        input_schema: Dict[str, Any],
        message: str,
        history: Sequence[ConversationTurn],
        context: SessionContext,
        error_hint: str,
    ) -> Dict[str, Any]:
        """
        Ask the model for a tool's arguments, telling it why the last ones were rejected.

        Raises:
            MalformedOutputError: If the answer is not a JSON object
            ModelUnavailableError: If the model cannot be reached in time
        """
        try:
            extracted = await asyncio.wait_for(
                self.llm.generate_structured(
                    "argument_extraction",
                    ExtractedArguments,
                    temperature=0.0,
                    tool_name=tool_name,
                    schema=json.dumps(input_schema),
                    history=format_history(history, self.history_window),
                    context_summary=context.summary(),
                    user_message=message,
                    error_hint=error_hint,
                ),
                timeout=self.timeout,
            )
        except asyncio.TimeoutError as e:
            raise ModelUnavailableError("argument extraction timed out") from e
        logger.debug(f"[Intent] Re-extracted arguments for {tool_name}: {sorted(extracted.root)}")
        return extracted.root
