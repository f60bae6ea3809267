"""
Tests for the session context value and both context stores.
"""
import asyncio
from datetime import timedelta

import pytest

from mealwise.db import crud_context
from mealwise.db.models import utcnow
from mealwise.services.orchestration.context_store import (
    DatabaseContextStore,
    InMemoryContextStore,
    recover_context_from_history,
)
from mealwise.services.orchestration.orchestrator import OrchestratedChatFlow
from mealwise.services.orchestration.reply import ConversationalResponder
from mealwise.services.orchestration.types import ConversationTurn, SessionContext
from mealwise.utils.ui_data import embed_ui_data


# ============================================================================
# SessionContext
# ============================================================================

def test_merge_sets_only_patched_fields():
    context = SessionContext(session_id="s1", user_id="u1", meal_plan_id="plan-1")
    merged = context.merged({"grocery_list_id": "list-1"})

    assert merged.meal_plan_id == "plan-1"
    assert merged.grocery_list_id == "list-1"
    assert merged.user_id == "u1"
    assert merged.version == context.version + 1
    # The original value is untouched
    assert context.grocery_list_id is None


def test_merge_explicit_none_clears():
    context = SessionContext(session_id="s1", meal_plan_id="plan-1", grocery_list_id="list-1")
    merged = context.merged({"meal_plan_id": "plan-2", "grocery_list_id": None})
    assert merged.meal_plan_id == "plan-2"
    assert merged.grocery_list_id is None


def test_merge_tool_results_per_tool():
    context = SessionContext(session_id="s1", last_tool_results={"generateMealPlan": {"id": "a"}})
    merged = context.merged({"last_tool_results": {"analyzeNutrition": {"kcal": 1}}})
    assert set(merged.last_tool_results) == {"generateMealPlan", "analyzeNutrition"}


def test_merge_rejects_unknown_fields():
    with pytest.raises(ValueError):
        SessionContext(session_id="s1").merged({"session_id": "other"})


# ============================================================================
# InMemoryContextStore
# ============================================================================

async def test_memory_store_creates_on_first_access():
    store = InMemoryContextStore()
    context = await store.get("new-session")
    assert context.session_id == "new-session"
    assert context.meal_plan_id is None
    assert len(store) == 1


async def test_memory_store_hands_out_copies():
    store = InMemoryContextStore()
    context = await store.get("s1")
    context.last_tool_results["leak"] = True
    assert "leak" not in (await store.get("s1")).last_tool_results


async def test_memory_store_sessions_are_isolated():
    store = InMemoryContextStore()
    await asyncio.gather(
        store.update("a", {"meal_plan_id": "plan-a"}),
        store.update("b", {"meal_plan_id": "plan-b"}),
    )
    assert (await store.get("a")).meal_plan_id == "plan-a"
    assert (await store.get("b")).meal_plan_id == "plan-b"


async def test_memory_store_concurrent_updates_all_land():
    store = InMemoryContextStore()
    await asyncio.gather(*[
        store.update("s1", {"last_tool_results": {f"tool{i}": i}})
        for i in range(10)
    ])
    context = await store.get("s1")
    assert len(context.last_tool_results) == 10
    assert context.version == 10


async def test_memory_store_clear():
    store = InMemoryContextStore()
    await store.update("s1", {"meal_plan_id": "plan-1"})
    await store.clear("s1")
    assert (await store.get("s1")).meal_plan_id is None


def expire(store: InMemoryContextStore, session_id: str) -> None:
    store._expires_at[session_id] = utcnow() - timedelta(seconds=1)


async def test_memory_store_expired_context_starts_over():
    store = InMemoryContextStore(ttl_minutes=30)
    await store.update("s1", {"meal_plan_id": "plan-1"})
    expire(store, "s1")

    context = await store.get("s1")
    assert context.meal_plan_id is None
    assert context.version == 0

    # An update to an expired session starts from an empty context too
    expire(store, "s1")
    context = await store.update("s1", {"grocery_list_id": "list-1"})
    assert context.version == 1
    assert context.meal_plan_id is None


async def test_memory_store_cleanup_forgets_expired_sessions():
    store = InMemoryContextStore(ttl_minutes=30)
    await store.update("old", {"meal_plan_id": "plan-1"})
    await store.update("fresh", {"meal_plan_id": "plan-2"})
    expire(store, "old")

    assert await store.cleanup_expired() == 1
    assert len(store) == 1
    assert (await store.get("fresh")).meal_plan_id == "plan-2"


async def test_session_locks_do_not_accumulate(session_factory):
    for store in (InMemoryContextStore(), DatabaseContextStore(session_factory, ttl_minutes=30)):
        for i in range(5):
            await store.update(f"s{i}", {"meal_plan_id": f"plan-{i}"})
        # Same session: the updates queue on one lock
        await asyncio.gather(*[store.update("shared", {"last_tool_results": {f"tool{i}": i}}) for i in range(5)])
        await store.get("s0")
        assert store._locks == {}
        assert (await store.get("shared")).version == 5


# ============================================================================
# DatabaseContextStore
# ============================================================================

async def test_database_store_round_trip(session_factory):
    store = DatabaseContextStore(session_factory, ttl_minutes=30)
    await store.update("s1", {
        "user_id": "u1",
        "meal_plan_id": "plan-1",
        "last_tool_results": {"generateMealPlan": {"id": "plan-1"}},
    })

    # A second store over the same database sees the same context
    other = DatabaseContextStore(session_factory, ttl_minutes=30)
    context = await other.get("s1")
    assert context.user_id == "u1"
    assert context.meal_plan_id == "plan-1"
    assert context.last_tool_results == {"generateMealPlan": {"id": "plan-1"}}
    assert context.version == 1


async def test_database_store_consecutive_updates(session_factory):
    store = DatabaseContextStore(session_factory, ttl_minutes=30)
    await store.update("s1", {"meal_plan_id": "plan-1"})
    await store.update("s1", {"grocery_list_id": "list-1", "user_id": "u1"})
    context = await store.update("s1", {"meal_plan_id": "plan-2", "grocery_list_id": None})

    assert context.version == 3
    stored = await DatabaseContextStore(session_factory, ttl_minutes=30).get("s1")
    assert stored.meal_plan_id == "plan-2"
    assert stored.grocery_list_id is None
    assert stored.user_id == "u1"
    assert stored.version == 3


async def test_database_store_carries_plan_between_turns(
    session_factory, registry, classifier, fake_llm
):
    store = DatabaseContextStore(session_factory, ttl_minutes=30)
    flow = OrchestratedChatFlow(
        registry, classifier, store, ConversationalResponder(fake_llm, timeout=5), tool_timeout=5
    )

    first = await flow.process_message({
        "message": "Plan a 3 day vegetarian meal plan", "sessionId": "db-1", "userId": "user-1",
    })
    plan_id = first.tool_results["generateMealPlan"]["id"]

    second = await flow.process_message({"message": "Give me a grocery list", "sessionId": "db-1"})
    assert second.tool_results["generateGroceryList"]["meal_plan_id"] == plan_id

    context = await store.get("db-1")
    assert context.meal_plan_id == plan_id
    assert context.grocery_list_id == second.tool_results["generateGroceryList"]["id"]
    assert context.user_id == "user-1"


async def test_database_store_expired_context_starts_over(session_factory):
    store = DatabaseContextStore(session_factory, ttl_minutes=30)
    await store.update("s1", {"meal_plan_id": "plan-1"})

    with session_factory() as db:
        row = crud_context.conversation_context.get(db, "s1")
        row.expires_at = utcnow() - timedelta(minutes=1)
        db.commit()

    context = await store.get("s1")
    assert context.meal_plan_id is None
    assert context.version == 0


async def test_database_store_cleanup_and_clear(session_factory):
    store = DatabaseContextStore(session_factory, ttl_minutes=30)
    await store.update("old", {"meal_plan_id": "plan-1"})
    await store.update("fresh", {"meal_plan_id": "plan-2"})

    with session_factory() as db:
        row = crud_context.conversation_context.get(db, "old")
        row.expires_at = utcnow() - timedelta(minutes=1)
        db.commit()

    assert await store.cleanup_expired() == 1

    await store.clear("fresh")
    with session_factory() as db:
        assert crud_context.conversation_context.get(db, "fresh") is None


# ============================================================================
# Recovery from history
# ============================================================================

def test_recover_ids_from_ui_data():
    history = [
        ConversationTurn(role="user", content="Plan my week"),
        ConversationTurn(role="assistant", content=embed_ui_data("Here's your plan", {"mealPlan": {"id": "plan-1"}})),
        ConversationTurn(role="user", content="Grocery list please"),
        ConversationTurn(role="assistant", content=embed_ui_data(
            "Here's your list", {"groceryList": {"id": "list-1", "meal_plan_id": "plan-1"}}
        )),
    ]
    assert recover_context_from_history(history) == {"meal_plan_id": "plan-1", "grocery_list_id": "list-1"}


def test_recover_drops_grocery_list_of_older_plan():
    history = [
        ConversationTurn(role="assistant", content=embed_ui_data(
            "list", {"groceryList": {"id": "list-1", "meal_plan_id": "plan-1"}}
        )),
        ConversationTurn(role="assistant", content=embed_ui_data("new plan", {"mealPlan": {"id": "plan-2"}})),
    ]
    assert recover_context_from_history(history) == {"meal_plan_id": "plan-2"}


def test_recover_ignores_plain_and_user_messages():
    history = [
        ConversationTurn(role="user", content=embed_ui_data("sneaky", {"mealPlan": {"id": "plan-x"}})),
        ConversationTurn(role="assistant", content="No data here"),
    ]
    assert recover_context_from_history(history) == {}
