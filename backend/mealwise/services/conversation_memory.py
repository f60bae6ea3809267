"""
Conversation memory for the orchestrated chat endpoint.
Persists the turns of a session and reads them back as history.
"""
from typing import Any, Dict, List, Optional

from sqlalchemy.orm import Session

from mealwise.db import crud_chat
from mealwise.db.session import run_sync
from mealwise.services.orchestration.types import ConversationTurn
from mealwise.utils.ui_data import embed_ui_data


class ConversationMemory:
    """
    Message history of one chat session.

    Assistant replies that produced structured data are stored with the
    UI_DATA marker so the ids in them can be recovered on a later turn.
    """

    def __init__(self, db: Session, session_id: str, user_id: Optional[str] = None):
        """
        Initialize conversation memory for a session.

        Args:
            db: Database session
            session_id: Unique session identifier
            user_id: Owner recorded when the session row is created
        """
        self.db = db
        self.session_id = session_id
        self.user_id = user_id

    async def add_message(self, role: str, content: str, intent: Optional[str] = None) -> None:
        """Add a message to the conversation history asynchronously."""
        message = crud_chat.ChatMessageCreate(session_id=self.session_id, role=role, content=content, intent=intent)
        await run_sync(self._append, message)

    def _append(self, message: crud_chat.ChatMessageCreate) -> None:
        crud_chat.chat_message.append(self.db, obj_in=message, user_id=self.user_id)

    async def get_history(self, limit: Optional[int] = None) -> List[ConversationTurn]:
        """Most recent ``limit`` messages, oldest first."""
        messages = await run_sync(
            crud_chat.chat_message.recent,
            self.db,
            self.session_id,
            limit,
        )
        return [
            ConversationTurn(role=msg.role, content=msg.content)
            for msg in messages
            if msg.role in ("user", "assistant")
        ]

    async def record_user_message(self, message: str, intent: Optional[str] = None) -> None:
        await self.add_message("user", message, intent)

    async def record_assistant_response(
        self,
        response: str,
        structured_data: Optional[Dict[str, Any]] = None,
        intent: Optional[str] = None,
    ) -> None:
        """
        Record an assistant response asynchronously.

        Args:
            response: Assistant's response text
            structured_data: Tool payloads shown with the reply, embedded for later recovery
            intent: Intent the reply answered
        """
        content = embed_ui_data(response, structured_data) if structured_data else response
        await self.add_message("assistant", content, intent)
