"""
Tool dispatch for a classified turn.

Each intent maps to an ordered list of tools. Tools run one after another so a
later tool sees the context produced by an earlier one (the grocery list needs
the meal plan id that was just saved). Every tool goes through a small state
machine that allows at most one retry.
"""

from __future__ import annotations

import asyncio
from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Dict, List, Optional, Sequence, Set, Tuple

from mealwise.core.constants import LimitsConstants
from mealwise.core.exceptions import (
    MalformedOutputError,
    MissingContextError,
    ModelUnavailableError,
    ToolExecutionError,
    ToolValidationError,
)
from mealwise.core.logging import get_logger
from mealwise.services.orchestration.context_store import ContextStore
from mealwise.services.orchestration.intent import IntentClassifier
from mealwise.services.orchestration.registry import ToolDescriptor, ToolRegistry, ToolResult
from mealwise.services.orchestration.types import (
    ClassificationResult,
    ConversationTurn,
    DispatchResult,
    FailureKind,
    Intent,
    OrchestrationInput,
    SessionContext,
    Slots,
    ToolFailure,
    ToolInvocationRecord,
    ToolName,
    ToolOutcome,
)

logger = get_logger("services.orchestration.dispatcher")


# ============================================================================
# INTENT -> TOOLS
# ============================================================================

INTENT_TOOLS: Dict[Intent, Tuple[ToolName, ...]] = {
    Intent.MEAL_PLAN_REQUIRED: (ToolName.GENERATE_MEAL_PLAN,),
    Intent.GROCERY_LIST_REQUIRED: (ToolName.GENERATE_GROCERY_LIST,),
    Intent.NUTRITION_ANALYSIS_REQUIRED: (ToolName.ANALYZE_NUTRITION,),
    Intent.MEAL_SWAP_REQUIRED: (ToolName.SWAP_MEAL,),
    Intent.PANTRY_ANALYSIS_REQUIRED: (ToolName.ANALYZE_PANTRY_IMAGE,),
    Intent.RECIPE_REQUIRED: (ToolName.GENERATE_MEAL_RECIPE,),
    Intent.CONVERSATIONAL: (),
    Intent.UNKNOWN: (),
}

_unmapped = set(Intent) - set(INTENT_TOOLS)
if _unmapped:
    raise RuntimeError(f"Intents without a tool mapping: {sorted(i.value for i in _unmapped)}")

# Slot values a tool may take as arguments, by argument name
SLOT_ARGS = ("duration", "meals_per_day", "dietary", "day", "meal", "meal_name", "image_url")

# Arguments that come from the caller rather than the message
CALLER_ARGS = ("preferences", "location", "user_id")


@dataclass
class PlannedTool:
    name: ToolName
    critical: bool = True


def plan_tools(classification: ClassificationResult) -> List[PlannedTool]:
    """Ordered tools for a classification. Follow-up tools are non-critical."""
    planned = [PlannedTool(name) for name in INTENT_TOOLS[classification.intent]]
    if classification.intent == Intent.MEAL_PLAN_REQUIRED:
        if classification.slots.include_grocery_list:
            planned.append(PlannedTool(ToolName.GENERATE_GROCERY_LIST, critical=False))
        if classification.slots.include_nutrition:
            planned.append(PlannedTool(ToolName.ANALYZE_NUTRITION, critical=False))
    return planned


# ============================================================================
# ARGUMENTS
# ============================================================================

def caller_args(inputs: OrchestrationInput, context: SessionContext) -> Dict[str, Any]:
    """Arguments supplied by the caller: preferences verbatim, location, user id."""
    args: Dict[str, Any] = {"preferences": dict(inputs.user_preferences or {})}
    if inputs.location_data is not None:
        args["location"] = inputs.location_data.model_dump(exclude_none=True)
    user_id = context.user_id or inputs.user_id
    if user_id:
        args["user_id"] = user_id
    return args


def fill_from_context(
    descriptor: ToolDescriptor,
    args: Dict[str, Any],
    context: SessionContext,
) -> Dict[str, Any]:
    """
    Fill the descriptor's context-backed arguments.

    Raises:
        MissingContextError: If a value is in neither the arguments nor the context
    """
    filled = dict(args)
    for arg_name, context_field in descriptor.context_args.items():
        if filled.get(arg_name) is not None:
            continue
        value = getattr(context, context_field, None)
        if value is None:
            raise MissingContextError(descriptor.name.value, context_field)
        filled[arg_name] = value
    return filled


def build_args(
    descriptor: ToolDescriptor,
    slots: Slots,
    inputs: OrchestrationInput,
    context: SessionContext,
) -> Dict[str, Any]:
    """Slots and caller inputs, restricted to what the tool accepts, then context fill."""
    fields = descriptor.input_model.model_fields
    candidates: Dict[str, Any] = {name: getattr(slots, name) for name in SLOT_ARGS}
    if candidates["meal_name"] is None and descriptor.name == ToolName.GENERATE_MEAL_RECIPE:
        candidates["meal_name"] = slots.meal
    candidates.update(caller_args(inputs, context))

    args = {name: value for name, value in candidates.items() if name in fields and value is not None}
    return fill_from_context(descriptor, args, context)


# ============================================================================
# PER-TOOL STATE MACHINE
# ============================================================================

class ToolState(str, Enum):
    PENDING = "pending"
    VALIDATING = "validating"
    RETRY_ONCE = "retry_once"
    SUCCEEDED = "succeeded"
    FAILED = "failed"


_TRANSITIONS: Dict[ToolState, Set[ToolState]] = {
    ToolState.PENDING: {ToolState.VALIDATING, ToolState.FAILED},
    ToolState.VALIDATING: {ToolState.SUCCEEDED, ToolState.RETRY_ONCE, ToolState.FAILED},
    ToolState.RETRY_ONCE: {ToolState.VALIDATING, ToolState.FAILED},
    ToolState.SUCCEEDED: set(),
    ToolState.FAILED: set(),
}


@dataclass
class ToolRun:
    """One tool's progress through a turn."""
    descriptor: ToolDescriptor
    critical: bool = True
    state: ToolState = ToolState.PENDING
    attempts: int = 0
    retried: bool = False
    args: Dict[str, Any] = field(default_factory=dict)
    result: Optional[ToolResult] = None
    failure: Optional[ToolFailure] = None
    context_saved: bool = True

    @property
    def name(self) -> str:
        return self.descriptor.name.value

    def advance(self, state: ToolState) -> None:
        if state not in _TRANSITIONS[self.state]:
            raise RuntimeError(f"{self.name}: illegal transition {self.state.value} -> {state.value}")
        if state == ToolState.RETRY_ONCE:
            self.retried = True
        elif state == ToolState.VALIDATING:
            self.attempts += 1
        self.state = state

    def fail(self, kind: FailureKind, message: str, field_name: Optional[str] = None) -> None:
        self.failure = ToolFailure(kind=kind, message=message, field=field_name)
        self.advance(ToolState.FAILED)


# ============================================================================
# DISPATCHER
# ============================================================================

class ToolDispatcher:
    """Runs the tools for a classified turn against the session's context."""

    def __init__(
        self,
        registry: ToolRegistry,
        classifier: IntentClassifier,
        store: ContextStore,
        timeout: float = 60.0,
        max_retries: int = 1,
    ):
        self.registry = registry
        self.classifier = classifier
        self.store = store
        self.timeout = timeout
        self.max_attempts = min(1 + max(max_retries, 0), LimitsConstants.MAX_TOOL_ATTEMPTS)
        # Mutating tools that outlived their timeout; kept referenced until they settle
        self._background: Set[asyncio.Task] = set()

    async def dispatch(
        self,
        classification: ClassificationResult,
        inputs: OrchestrationInput,
        context: SessionContext,
        *,
        history: Sequence[ConversationTurn] = (),
        cancel_event: Optional[asyncio.Event] = None,
        store: Optional[ContextStore] = None,
    ) -> DispatchResult:
        """
        Run every tool planned for ``classification``, in order.

        A failed tool never aborts the turn. Follow-up tools are skipped when a
        required tool before them failed.
        Context updates go to ``store`` when given, otherwise to the dispatcher's own.
        """
        planned = plan_tools(classification)
        store = store or self.store
        outcome = DispatchResult(required=[p.name.value for p in planned if p.critical], context=context)
        if not planned:
            return outcome

        required_failed = False
        for item in planned:
            if cancel_event is not None and cancel_event.is_set():
                logger.info(f"[Dispatcher] Cancelled before {item.name.value}")
                outcome.cancelled = True
                break
            if required_failed and not item.critical:
                logger.info(f"[Dispatcher] Skipping follow-up {item.name.value}; a required tool failed")
                continue

            run = ToolRun(descriptor=self.registry.get(item.name), critical=item.critical)
            context = await self._run_tool(run, classification, inputs, context, history, outcome.records, store)

            if run.attempts:
                outcome.attempted.append(run.name)
            outcome.retried = outcome.retried or run.retried
            if run.state == ToolState.SUCCEEDED:
                outcome.results[run.name] = run.result.payload
                if not run.context_saved:
                    outcome.unsaved_context.append(run.name)
            else:
                outcome.failures[run.name] = run.failure
                required_failed = required_failed or run.critical

        outcome.context = context
        logger.info(
            f"[Dispatcher] {classification.intent.value}: attempted={outcome.attempted} "
            f"failed={list(outcome.failures)} retried={outcome.retried}"
        )
        return outcome

    async def _run_tool(
        self,
        run: ToolRun,
        classification: ClassificationResult,
        inputs: OrchestrationInput,
        context: SessionContext,
        history: Sequence[ConversationTurn],
        records: List[ToolInvocationRecord],
        store: ContextStore,
    ) -> SessionContext:
        """Drive one tool to SUCCEEDED or FAILED. Returns the (possibly updated) context."""
        descriptor = run.descriptor

        try:
            run.args = build_args(descriptor, classification.slots, inputs, context)
        except MissingContextError as e:
            logger.info(f"[Dispatcher] {run.name} not invoked: {e}")
            run.fail(FailureKind.MISSING_CONTEXT, str(e), e.field)
            return context

        extra_patch = self._extra_patch(descriptor, classification.slots)
        run.advance(ToolState.VALIDATING)

        while run.state == ToolState.VALIDATING:
            try:
                run.result = await self._invoke(descriptor, run.args, context, extra_patch, store)
            except ToolValidationError as e:
                logger.warning(f"[Dispatcher] {run.name} attempt {run.attempts} invalid arguments: {e.hint}")
                if not self._may_retry(run, retryable=True):
                    self._record(records, run, ToolOutcome.FAILED, error=str(e))
                    run.fail(FailureKind.VALIDATION, str(e))
                    break
                self._record(records, run, ToolOutcome.RETRIED, error=str(e))
                run.advance(ToolState.RETRY_ONCE)
                try:
                    run.args = await self._reextract(run, inputs, context, history, e.hint)
                except (MalformedOutputError, ModelUnavailableError) as extract_error:
                    logger.warning(f"[Dispatcher] {run.name} argument re-extraction failed: {extract_error}")
                    kind = (FailureKind.MODEL_UNAVAILABLE if isinstance(extract_error, ModelUnavailableError)
                            else FailureKind.MALFORMED_OUTPUT)
                    run.fail(kind, str(extract_error))
                    break
                except MissingContextError as missing:
                    run.fail(FailureKind.MISSING_CONTEXT, str(missing), missing.field)
                    break
                run.advance(ToolState.VALIDATING)
                continue
            except MissingContextError as e:
                logger.info(f"[Dispatcher] {run.name} is missing context: {e}")
                self._record(records, run, ToolOutcome.FAILED, error=str(e))
                run.fail(FailureKind.MISSING_CONTEXT, str(e), e.field)
                # Nothing was produced, so it does not count as attempted
                run.attempts = 0
                break
            except MalformedOutputError as e:
                logger.warning(f"[Dispatcher] {run.name} attempt {run.attempts} malformed output: {e}")
                if self._may_retry(run, retryable=True):
                    self._record(records, run, ToolOutcome.RETRIED, error=str(e))
                    run.advance(ToolState.RETRY_ONCE)
                    run.advance(ToolState.VALIDATING)
                    continue
                self._record(records, run, ToolOutcome.FAILED, error=str(e))
                run.fail(FailureKind.MALFORMED_OUTPUT, str(e))
                break
            except asyncio.TimeoutError:
                message = f"{run.name} timed out after {self.timeout}s"
                logger.warning(f"[Dispatcher] {message} (attempt {run.attempts})")
                if self._may_retry(run, retryable=not descriptor.mutates_state):
                    self._record(records, run, ToolOutcome.RETRIED, error=message)
                    run.advance(ToolState.RETRY_ONCE)
                    run.advance(ToolState.VALIDATING)
                    continue
                self._record(records, run, ToolOutcome.FAILED, error=message)
                run.fail(FailureKind.TIMEOUT, message)
                break
            except ModelUnavailableError as e:
                logger.error(f"[Dispatcher] {run.name} model unavailable: {e}")
                self._record(records, run, ToolOutcome.FAILED, error=str(e))
                run.fail(FailureKind.MODEL_UNAVAILABLE, str(e))
                break
            except ToolExecutionError as e:
                logger.error(f"[Dispatcher] {run.name} execution failed: {e}")
                self._record(records, run, ToolOutcome.FAILED, error=str(e))
                run.fail(FailureKind.EXECUTION, str(e))
                break
            except Exception as e:
                logger.exception(f"[Dispatcher] {run.name} raised unexpectedly: {e}")
                self._record(records, run, ToolOutcome.FAILED, error=str(e))
                run.fail(FailureKind.EXECUTION, str(e))
                break

            self._record(records, run, ToolOutcome.SUCCESS, result=run.result.payload)
            run.advance(ToolState.SUCCEEDED)
            patch = self._patch_for(descriptor, run.result, extra_patch)
            try:
                context = await store.update(context.session_id, patch)
            except Exception as e:
                # The tool finished; only carrying its ids to later turns failed
                logger.error(f"[Dispatcher] Could not save context after {run.name}: {e}", exc_info=True)
                run.context_saved = False
                context = context.merged(patch)
            logger.info(f"[Dispatcher] {run.name} succeeded on attempt {run.attempts}; context v{context.version}")

        return context

    def _may_retry(self, run: ToolRun, retryable: bool) -> bool:
        return retryable and not run.retried and run.attempts < self.max_attempts

    async def _invoke(
        self,
        descriptor: ToolDescriptor,
        args: Dict[str, Any],
        context: SessionContext,
        extra_patch: Dict[str, Any],
        store: ContextStore,
    ) -> ToolResult:
        """Run one attempt under the tool timeout."""
        if not descriptor.mutates_state:
            return await asyncio.wait_for(descriptor.invoke(args, context), timeout=self.timeout)

        # A write in progress is never cut off; if it outlives the timeout it
        # finishes in the background and its context patch still lands.
        task = asyncio.ensure_future(descriptor.invoke(args, context))
        try:
            return await asyncio.wait_for(asyncio.shield(task), timeout=self.timeout)
        except asyncio.TimeoutError:
            self._settle_in_background(task, descriptor, context.session_id, extra_patch, store)
            raise

    def _settle_in_background(
        self,
        task: asyncio.Future,
        descriptor: ToolDescriptor,
        session_id: str,
        extra_patch: Dict[str, Any],
        store: ContextStore,
    ) -> None:
        async def settle():
            try:
                result = await task
            except Exception as e:
                logger.warning(f"[Dispatcher] {descriptor.name.value} failed after timing out: {e}")
                return
            await store.update(session_id, self._patch_for(descriptor, result, extra_patch))
            logger.info(f"[Dispatcher] {descriptor.name.value} completed late; context updated")

        background = asyncio.ensure_future(settle())
        self._background.add(background)
        background.add_done_callback(self._background.discard)

    async def _reextract(
        self,
        run: ToolRun,
        inputs: OrchestrationInput,
        context: SessionContext,
        history: Sequence[ConversationTurn],
        hint: str,
    ) -> Dict[str, Any]:
        """New arguments from the model. Caller inputs and context values are kept."""
        descriptor = run.descriptor
        extracted = await self.classifier.extract_arguments(
            run.name,
            descriptor.input_schema,
            inputs.message,
            history,
            context,
            error_hint=hint,
        )
        fields = descriptor.input_model.model_fields
        args = {k: v for k, v in caller_args(inputs, context).items() if k in fields}
        args.update({k: v for k, v in extracted.items() if k in fields and k not in CALLER_ARGS and v is not None})
        # Ids the context provides are not the model's to change
        for arg_name in descriptor.context_args:
            args.pop(arg_name, None)
        return fill_from_context(descriptor, args, context)

    @staticmethod
    def _extra_patch(descriptor: ToolDescriptor, slots: Slots) -> Dict[str, Any]:
        """An explicit fresh start drops the grocery list of the previous plan."""
        if descriptor.name == ToolName.GENERATE_MEAL_PLAN and slots.new_plan:
            return {"grocery_list_id": None}
        return {}

    @staticmethod
    def _patch_for(descriptor: ToolDescriptor, result: ToolResult, extra_patch: Dict[str, Any]) -> Dict[str, Any]:
        patch: Dict[str, Any] = {"last_tool_results": {descriptor.name.value: result.payload}}
        if descriptor.mutates_context:
            patch.update(extra_patch)
            patch.update(result.context_patch)
        return patch

    @staticmethod
    def _record(
        records: List[ToolInvocationRecord],
        run: ToolRun,
        outcome: ToolOutcome,
        result: Any = None,
        error: Optional[str] = None,
    ) -> None:
        records.append(ToolInvocationRecord(
            tool_name=run.name,
            args=dict(run.args),
            attempt=run.attempts,
            outcome=outcome,
            result=result,
            error=error,
        ))

    async def drain(self) -> None:
        """Wait for writes that outlived their timeout."""
        if self._background:
            await asyncio.gather(*list(self._background), return_exceptions=True)
