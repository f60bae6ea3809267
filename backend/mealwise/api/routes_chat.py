"""
API routes for the orchestrated chat.
"""
from fastapi import APIRouter, Depends
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.orm import Session

from mealwise.core.logging import get_logger
from mealwise.db.schema import ContextSummary
from mealwise.db.session import get_db
from mealwise.services.conversation_memory import ConversationMemory
from mealwise.services.orchestration import (
    OrchestratedChatFlow,
    OrchestrationInput,
    OrchestrationResult,
    get_orchestrated_chat_flow,
)

logger = get_logger("api.routes_chat")

router = APIRouter()

# Messages loaded from the database when the client sends no history
STORED_HISTORY_LIMIT = 20


def get_flow() -> OrchestratedChatFlow:
    """Dependency returning the process-wide chat flow; overridden in tests."""
    return get_orchestrated_chat_flow()


@router.post(
    "/chat/orchestrated",
    response_model=OrchestrationResult,
    response_model_exclude_none=True,
)
async def orchestrated_chat(
    request: OrchestrationInput,
    db: Session = Depends(get_db),
    flow: OrchestratedChatFlow = Depends(get_flow),
):
    """
    Chat endpoint for meal planning.

    Classifies the message and runs whatever tools it needs: meal plans,
    grocery lists, nutrition analysis, meal swaps, recipes and pantry photos.

    - **message**: User message (e.g., "Plan a 3 day vegetarian meal plan")
    - **sessionId**: Optional session identifier; without it nothing is remembered
    - **userId**: Optional user identifier
    - **conversationHistory**: Previous turns; loaded from the database when empty
    - **userPreferences**: Free-form preferences passed to the tools
    - **locationData**: City, country and currency used for grocery lists
    - **imageUrl**: Pantry photo to analyze

    Always answers 200; degraded turns come back with low confidence.
    """
    memory = None
    if request.session_id:
        memory = ConversationMemory(db, request.session_id, request.user_id)
        if not request.conversation_history:
            try:
                history = await memory.get_history(limit=STORED_HISTORY_LIMIT)
                request = request.model_copy(update={"conversation_history": history})
            except SQLAlchemyError as e:
                logger.error(f"[Chat] Could not load history for {request.session_id}: {e}")

    result = await flow.process_message(request)

    if memory is not None:
        intent = result.debug.intent.value
        try:
            await memory.record_user_message(request.message, intent)
            await memory.record_assistant_response(result.response, result.structured_data, intent)
        except SQLAlchemyError as e:
            logger.error(f"[Chat] Could not persist messages for {request.session_id}: {e}")

    return result


@router.get("/chat/context/{session_id}", response_model=ContextSummary)
async def get_context(session_id: str, flow: OrchestratedChatFlow = Depends(get_flow)):
    """
    Current carried-over context of a session.

    Useful for debugging or for showing which meal plan the assistant is working on.
    """
    context = await flow.store.get(session_id)
    return ContextSummary(
        session_id=context.session_id,
        user_id=context.user_id,
        meal_plan_id=context.meal_plan_id,
        grocery_list_id=context.grocery_list_id,
        tools_with_results=sorted(context.last_tool_results),
        version=context.version,
    )


@router.delete("/chat/context/{session_id}")
async def clear_context(session_id: str, flow: OrchestratedChatFlow = Depends(get_flow)):
    """Forget a session's context. The chat history is kept."""
    await flow.store.clear(session_id)
    logger.info(f"[Chat] Cleared context for {session_id}")
    return {"session_id": session_id, "cleared": True}
