"""
Per-session context stores.

``InMemoryContextStore`` keeps contexts in-process; ``DatabaseContextStore``
persists them so a restarted process (or a second worker) still knows the
user's current meal plan. Both forget a session ``ttl_minutes`` after its
last update.
"""

from __future__ import annotations

import asyncio
import json
from abc import ABC, abstractmethod
from collections import defaultdict
from contextlib import asynccontextmanager
from datetime import datetime, timedelta
from typing import Any, AsyncIterator, Callable, Dict, Iterable, Mapping, Optional

from sqlalchemy.orm import Session

from mealwise.core.config import get_settings
from mealwise.core.logging import get_logger
from mealwise.db import crud_context
from mealwise.db.crud_context import ConversationContextWrite
from mealwise.db.models import ConversationContextModel, utcnow
from mealwise.db.session import SessionLocal, run_sync
from mealwise.services.orchestration.types import ConversationTurn, SessionContext
from mealwise.utils.json_parser import safe_json_parse
from mealwise.utils.ui_data import extract_ui_data

logger = get_logger("services.orchestration.context_store")


class ContextStore(ABC):
    """Keyed by session id. Sessions never see each other's state."""

    def __init__(self, ttl_minutes: Optional[int] = None):
        self.ttl = timedelta(minutes=ttl_minutes or get_settings().context_ttl_minutes)
        # One lock per session so a read-merge-write is atomic; sessions never contend.
        # A lock only lives while someone holds or waits for it.
        self._locks: Dict[str, asyncio.Lock] = {}
        self._lock_users: Dict[str, int] = defaultdict(int)

    @asynccontextmanager
    async def _session_lock(self, session_id: str) -> AsyncIterator[None]:
        lock = self._locks.setdefault(session_id, asyncio.Lock())
        self._lock_users[session_id] += 1
        try:
            async with lock:
                yield
        finally:
            self._lock_users[session_id] -= 1
            if not self._lock_users[session_id]:
                del self._lock_users[session_id]
                del self._locks[session_id]

    @abstractmethod
    async def get(self, session_id: str) -> SessionContext:
        """Return the session's context, creating an empty one on first access."""

    @abstractmethod
    async def update(self, session_id: str, patch: Mapping[str, Any]) -> SessionContext:
        """Merge ``patch`` into the context and return the new value."""

    @abstractmethod
    async def clear(self, session_id: str) -> None:
        """Forget a session. Only callers do this; the orchestrator never does."""

    @abstractmethod
    async def cleanup_expired(self) -> int:
        """Forget expired sessions. Returns how many were removed."""


class InMemoryContextStore(ContextStore):
    def __init__(self, ttl_minutes: Optional[int] = None):
        super().__init__(ttl_minutes)
        self._contexts: Dict[str, SessionContext] = {}
        self._expires_at: Dict[str, datetime] = {}

    def _live(self, session_id: str, now: datetime) -> Optional[SessionContext]:
        context = self._contexts.get(session_id)
        if context is not None and self._expires_at[session_id] <= now:
            # Expired: start over with an empty context
            self._forget(session_id)
            return None
        return context

    def _forget(self, session_id: str) -> None:
        self._contexts.pop(session_id, None)
        self._expires_at.pop(session_id, None)

    async def get(self, session_id: str) -> SessionContext:
        now = utcnow()
        context = self._live(session_id, now)
        if context is None:
            context = SessionContext(session_id=session_id, updated_at=now)
            self._contexts[session_id] = context
            self._expires_at[session_id] = now + self.ttl
        return context.model_copy(deep=True)

    async def update(self, session_id: str, patch: Mapping[str, Any]) -> SessionContext:
        async with self._session_lock(session_id):
            now = utcnow()
            current = self._live(session_id, now) or SessionContext(session_id=session_id)
            merged = current.merged(patch)
            self._contexts[session_id] = merged
            self._expires_at[session_id] = now + self.ttl
        logger.debug(f"[Context] {session_id} -> v{merged.version} ({sorted(patch)})")
        return merged.model_copy(deep=True)

    async def clear(self, session_id: str) -> None:
        self._forget(session_id)

    async def cleanup_expired(self) -> int:
        now = utcnow()
        expired = [session_id for session_id, at in self._expires_at.items() if at <= now]
        for session_id in expired:
            self._forget(session_id)
        if expired:
            logger.info(f"[Context] Removed {len(expired)} expired contexts")
        return len(expired)

    def __len__(self) -> int:
        return len(self._contexts)


class DatabaseContextStore(ContextStore):
    """SQLAlchemy-backed store; rows expire ``ttl_minutes`` after their last update."""

    def __init__(
        self,
        session_factory: Callable[[], Session] = SessionLocal,
        ttl_minutes: Optional[int] = None,
    ):
        super().__init__(ttl_minutes)
        self.session_factory = session_factory

    def _to_context(self, row: ConversationContextModel) -> SessionContext:
        return SessionContext(
            session_id=row.session_id,
            user_id=row.user_id,
            meal_plan_id=row.meal_plan_id,
            grocery_list_id=row.grocery_list_id,
            last_tool_results=safe_json_parse(row.last_tool_results, fallback={}) or {},
            version=row.version,
            updated_at=row.updated_at,
        )

    def _write(self, db: Session, context: SessionContext, now: datetime) -> SessionContext:
        row = crud_context.conversation_context.upsert(db, ConversationContextWrite(
            session_id=context.session_id,
            user_id=context.user_id,
            meal_plan_id=context.meal_plan_id,
            grocery_list_id=context.grocery_list_id,
            last_tool_results=json.dumps(context.last_tool_results, default=str),
            version=context.version,
            expires_at=now + self.ttl,
        ))
        return self._to_context(row)

    def _get_sync(self, session_id: str) -> SessionContext:
        now = utcnow()
        with self.session_factory() as db:
            row = crud_context.conversation_context.get_active(db, session_id, now)
            if row is not None:
                return self._to_context(row)
            # Missing or expired: start over with an empty context
            return self._write(db, SessionContext(session_id=session_id), now)

    def _update_sync(self, session_id: str, patch: Mapping[str, Any]) -> SessionContext:
        now = utcnow()
        with self.session_factory() as db:
            row = crud_context.conversation_context.get_active(db, session_id, now)
            current = self._to_context(row) if row is not None else SessionContext(session_id=session_id)
            return self._write(db, current.merged(patch), now)

    def _clear_sync(self, session_id: str) -> None:
        with self.session_factory() as db:
            crud_context.conversation_context.remove(db, id=session_id)

    def _cleanup_sync(self) -> int:
        with self.session_factory() as db:
            return crud_context.conversation_context.delete_expired(db, utcnow())

    async def get(self, session_id: str) -> SessionContext:
        async with self._session_lock(session_id):
            return await run_sync(self._get_sync, session_id)

    async def update(self, session_id: str, patch: Mapping[str, Any]) -> SessionContext:
        async with self._session_lock(session_id):
            return await run_sync(self._update_sync, session_id, patch)

    async def clear(self, session_id: str) -> None:
        async with self._session_lock(session_id):
            await run_sync(self._clear_sync, session_id)

    async def cleanup_expired(self) -> int:
        """Delete expired rows. Returns how many were removed."""
        removed = await run_sync(self._cleanup_sync)
        if removed:
            logger.info(f"[Context] Removed {removed} expired contexts")
        return removed


def recover_context_from_history(history: Iterable[ConversationTurn]) -> Dict[str, Any]:
    """
    Rebuild meal plan / grocery list ids from UI data embedded in past replies.

    Scans newest first. A grocery list id is only kept when it belongs to the
    recovered meal plan.
    """
    meal_plan_id: Optional[str] = None
    grocery_list_id: Optional[str] = None
    grocery_plan_id: Optional[str] = None

    for turn in reversed(list(history)):
        if turn.role != "assistant":
            continue
        data = extract_ui_data(turn.content)
        if not data:
            continue

        grocery = data.get("groceryList") or {}
        if grocery_list_id is None and grocery.get("id"):
            grocery_list_id = grocery["id"]
            grocery_plan_id = grocery.get("meal_plan_id")

        if meal_plan_id is None:
            meal_plan_id = (
                (data.get("mealPlan") or {}).get("id")
                or grocery.get("meal_plan_id")
                or (data.get("swappedMeal") or {}).get("meal_plan_id")
                or (data.get("nutrition") or {}).get("meal_plan_id")
            )
        if meal_plan_id and grocery_list_id:
            break

    patch: Dict[str, Any] = {}
    if meal_plan_id:
        patch["meal_plan_id"] = meal_plan_id
        if grocery_list_id and grocery_plan_id == meal_plan_id:
            patch["grocery_list_id"] = grocery_list_id
    if patch:
        logger.info(f"[Context] Recovered from history: {sorted(patch)}")
    return patch
