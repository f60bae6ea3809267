"""
Orchestrated chat flow.

The single entry point for a chat turn: load the session context, classify
the message, dispatch tools, compose the reply. ``process_message`` never
raises for ordinary exceptions; callers always get an OrchestrationResult.
"""

from __future__ import annotations

import asyncio
import uuid
from typing import Any, Dict, Optional, Tuple, Union

from mealwise.core.config import Settings, get_settings
from mealwise.core.exceptions import MalformedOutputError, ModelUnavailableError
from mealwise.core.llm_client import LLMClient, get_llm_client
from mealwise.core.logging import get_logger
from mealwise.core.vlm_client import VLMClient, get_vlm_client
from mealwise.db.session import SessionLocal
from mealwise.services.orchestration.composer import ResponseComposer
from mealwise.services.orchestration.context_store import (
    ContextStore,
    DatabaseContextStore,
    InMemoryContextStore,
    recover_context_from_history,
)
from mealwise.services.orchestration.dispatcher import ToolDispatcher
from mealwise.services.orchestration.intent import IntentClassifier
from mealwise.services.orchestration.registry import ToolRegistry
from mealwise.services.orchestration.reply import ConversationalResponder
from mealwise.services.orchestration.tools import build_default_registry
from mealwise.services.orchestration.types import (
    ClassificationResult,
    Confidence,
    Intent,
    IntentSource,
    OrchestrationDebug,
    OrchestrationInput,
    OrchestrationResult,
    SessionContext,
)

logger = get_logger("services.orchestration.orchestrator")

FALLBACK_RESPONSE = "I encountered an error processing your request. Please try again."


class OrchestratedChatFlow:
    """Wires classifier, dispatcher, composer and context store together."""

    def __init__(
        self,
        registry: ToolRegistry,
        classifier: IntentClassifier,
        store: ContextStore,
        responder: ConversationalResponder,
        tool_timeout: float = 60.0,
        max_tool_retries: int = 1,
    ):
        self.registry = registry
        self.classifier = classifier
        self.store = store
        self.responder = responder
        self.dispatcher = ToolDispatcher(
            registry, classifier, store, timeout=tool_timeout, max_retries=max_tool_retries
        )
        self.composer = ResponseComposer(registry)

    async def process_message(
        self,
        request: Union[OrchestrationInput, Dict[str, Any]],
        cancel_event: Optional[asyncio.Event] = None,
    ) -> OrchestrationResult:
        """
        Handle one chat turn.

        Args:
            request: Message, ids, history, preferences, location and optional image url
            cancel_event: Set it to stop before the next tool starts

        Returns:
            OrchestrationResult; on any failure the fixed low-confidence fallback
        """
        classification: Optional[ClassificationResult] = None
        try:
            inputs = (request if isinstance(request, OrchestrationInput)
                      else OrchestrationInput.model_validate(request))
            store, context = await self._load_context(inputs)

            history = inputs.conversation_history
            classification = await self.classifier.classify(
                inputs.message, history, context, image_url=inputs.image_url
            )

            dispatch = await self.dispatcher.dispatch(
                classification,
                inputs,
                context,
                history=history,
                cancel_event=cancel_event,
                store=store,
            )

            model_text = None
            if classification.intent == Intent.CONVERSATIONAL:
                model_text = await self._conversational_reply(inputs, dispatch.context or context)

            return self.composer.compose(classification, dispatch, model_text)

        except Exception as e:
            logger.error(f"[Orchestrator] Turn failed: {type(e).__name__}: {e}", exc_info=True)
            return self._fallback(classification)

    async def _load_context(self, inputs: OrchestrationInput) -> Tuple[ContextStore, SessionContext]:
        """The session's context, with the user id and recoverable ids filled in."""
        if inputs.session_id:
            store, session_id = self.store, inputs.session_id
        else:
            # No session: nothing from this turn may leak into another one
            store, session_id = InMemoryContextStore(), f"anonymous-{uuid.uuid4().hex}"

        context = await store.get(session_id)
        patch: Dict[str, Any] = {}
        if inputs.user_id and not context.user_id:
            patch["user_id"] = inputs.user_id
        if context.meal_plan_id is None:
            patch.update(recover_context_from_history(inputs.conversation_history))
        if patch:
            context = await store.update(session_id, patch)
        return store, context

    async def _conversational_reply(self, inputs: OrchestrationInput, context: SessionContext) -> Optional[str]:
        try:
            return await self.responder.respond(
                inputs.message,
                inputs.conversation_history,
                context,
                preferences=inputs.user_preferences,
            )
        except (ModelUnavailableError, MalformedOutputError) as e:
            # The intent is already known; fall back to the composer's default text
            logger.warning(f"[Orchestrator] Conversational reply unavailable: {e}")
            return None

    @staticmethod
    def _fallback(classification: Optional[ClassificationResult]) -> OrchestrationResult:
        return OrchestrationResult(
            response=FALLBACK_RESPONSE,
            confidence=Confidence.LOW,
            debug=OrchestrationDebug(
                intent=classification.intent if classification else Intent.UNKNOWN,
                intent_source=classification.source if classification else IntentSource.FALLBACK,
            ),
        )


def build_orchestrated_chat_flow(
    settings: Optional[Settings] = None,
    llm: Optional[LLMClient] = None,
    vlm: Optional[VLMClient] = None,
    store: Optional[ContextStore] = None,
    session_factory=SessionLocal,
) -> OrchestratedChatFlow:
    """Assemble a flow from settings. Collaborators passed in are used as-is."""
    settings = settings or get_settings()
    llm = llm or get_llm_client()
    vlm = vlm or get_vlm_client()

    if store is None:
        if settings.context_store == "database":
            store = DatabaseContextStore(session_factory, ttl_minutes=settings.context_ttl_minutes)
        elif settings.context_store == "memory":
            store = InMemoryContextStore(ttl_minutes=settings.context_ttl_minutes)
        else:
            raise ValueError(f"Unknown context store: {settings.context_store}")

    registry = build_default_registry(llm=llm, vlm=vlm, session_factory=session_factory)
    classifier = IntentClassifier(
        llm,
        timeout=settings.classifier_timeout_seconds,
        history_window=settings.history_window,
    )
    responder = ConversationalResponder(
        llm,
        history_window=settings.history_window,
        timeout=settings.classifier_timeout_seconds,
    )
    logger.info(f"[Orchestrator] Ready with {len(registry)} tools, {type(store).__name__}")
    return OrchestratedChatFlow(
        registry,
        classifier,
        store,
        responder,
        tool_timeout=settings.tool_timeout_seconds,
        max_tool_retries=settings.max_tool_retries,
    )


# Global instance
_orchestrated_chat_flow: Optional[OrchestratedChatFlow] = None


def get_orchestrated_chat_flow() -> OrchestratedChatFlow:
    """Get or create the process-wide flow."""
    global _orchestrated_chat_flow
    if _orchestrated_chat_flow is None:
        _orchestrated_chat_flow = build_orchestrated_chat_flow()
    return _orchestrated_chat_flow
