"""
CRUD operations for chat sessions and their persisted turns.
"""
from typing import List, Optional

from pydantic import BaseModel
from sqlalchemy.orm import Session

from mealwise.db.base_crud import CRUDBase
from mealwise.db.models import ChatMessageModel, ChatSessionModel, utcnow


class ChatSessionCreate(BaseModel):
    session_id: str
    user_id: Optional[str] = None


class ChatMessageCreate(BaseModel):
    session_id: str
    role: str
    content: str
    intent: Optional[str] = None


class CRUDChatSession(CRUDBase[ChatSessionModel, ChatSessionCreate, ChatSessionCreate]):
    def get_by_session_id(self, db: Session, session_id: str) -> Optional[ChatSessionModel]:
        return db.query(ChatSessionModel).filter(ChatSessionModel.session_id == session_id).first()

    def get_or_create(self, db: Session, session_id: str, user_id: Optional[str] = None) -> ChatSessionModel:
        """The session row, created on the first message; ``user_id`` is only recorded then."""
        session = self.get_by_session_id(db, session_id)
        if session is None:
            session = self.create(db, obj_in=ChatSessionCreate(session_id=session_id, user_id=user_id))
        return session


class CRUDChatMessage(CRUDBase[ChatMessageModel, ChatMessageCreate, ChatMessageCreate]):
    def append(self, db: Session, *, obj_in: ChatMessageCreate, user_id: Optional[str] = None) -> ChatMessageModel:
        """
        Store one turn and touch its session.

        Args:
            db: Database session
            obj_in: The turn; role is "user" or "assistant"
            user_id: Owner recorded if this turn opens the session

        Returns:
            ChatMessageModel instance
        """
        session = chat_session.get_or_create(db, obj_in.session_id, user_id)
        session.updated_at = utcnow()
        return self.create(db, obj_in=obj_in)

    def recent(self, db: Session, session_id: str, limit: Optional[int] = None) -> List[ChatMessageModel]:
        """The last ``limit`` turns of a session (all when None), oldest first."""
        query = (
            db.query(ChatMessageModel)
            .filter(ChatMessageModel.session_id == session_id)
            .order_by(ChatMessageModel.created_at.desc(), ChatMessageModel.id.desc())
        )
        if limit:
            query = query.limit(limit)
        return list(reversed(query.all()))


chat_session = CRUDChatSession(ChatSessionModel)
chat_message = CRUDChatMessage(ChatMessageModel)
