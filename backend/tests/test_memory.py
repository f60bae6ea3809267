"""
Tests for persisted conversation memory.
"""
from mealwise.db import crud_chat
from mealwise.services.conversation_memory import ConversationMemory
from mealwise.services.orchestration.context_store import recover_context_from_history


async def test_history_is_chronological_and_limited(session_factory):
    with session_factory() as db:
        memory = ConversationMemory(db, "chat-1", user_id="user-1")
        for i in range(4):
            await memory.record_user_message(f"question {i}", "CONVERSATIONAL")
            await memory.record_assistant_response(f"answer {i}")

        history = await memory.get_history(limit=3)
        assert [turn.content for turn in history] == ["answer 2", "question 3", "answer 3"]
        assert [turn.role for turn in history] == ["assistant", "user", "assistant"]

        session = crud_chat.chat_session.get_by_session_id(db, "chat-1")
        assert session.user_id == "user-1"


async def test_structured_data_survives_storage(session_factory):
    with session_factory() as db:
        memory = ConversationMemory(db, "chat-2")
        await memory.record_user_message("Plan my week", "MEAL_PLAN_REQUIRED")
        await memory.record_assistant_response(
            "Here's your plan", {"mealPlan": {"id": "plan-9"}}, "MEAL_PLAN_REQUIRED"
        )

        history = await memory.get_history()
    assert recover_context_from_history(history) == {"meal_plan_id": "plan-9"}


async def test_sessions_do_not_mix(session_factory):
    with session_factory() as db:
        await ConversationMemory(db, "a").record_user_message("hello from a")
        await ConversationMemory(db, "b").record_user_message("hello from b")

        history = await ConversationMemory(db, "a").get_history()
    assert [turn.content for turn in history] == ["hello from a"]
