"""
CRUD operations for persisted conversation context.
"""
from typing import Optional
from datetime import datetime
from sqlalchemy.orm import Session
from pydantic import BaseModel
from mealwise.db.models import ConversationContextModel
from mealwise.db.base_crud import CRUDBase


class ConversationContextWrite(BaseModel):
    session_id: str
    user_id: Optional[str] = None
    meal_plan_id: Optional[str] = None
    grocery_list_id: Optional[str] = None
    last_tool_results: Optional[str] = None  # JSON
    version: int = 0
    expires_at: datetime


class CRUDConversationContext(CRUDBase[ConversationContextModel, ConversationContextWrite, ConversationContextWrite]):
    def get_active(self, db: Session, session_id: str, now: datetime) -> Optional[ConversationContextModel]:
        """
        Get a context row that has not expired yet.
        """
        return db.query(ConversationContextModel).filter(
            ConversationContextModel.session_id == session_id,
            ConversationContextModel.expires_at > now
        ).first()

    def upsert(self, db: Session, obj_in: ConversationContextWrite) -> ConversationContextModel:
        """
        Insert or overwrite the context row for a session.
        """
        row = self.get(db, obj_in.session_id)
        if row is None:
            return self.create(db, obj_in=obj_in)
        return self.update(db, db_obj=row, obj_in=obj_in.model_dump())

    def delete_expired(self, db: Session, now: datetime) -> int:
        """
        Remove expired context rows. Returns the number of rows deleted.
        """
        count = db.query(ConversationContextModel).filter(
            ConversationContextModel.expires_at <= now
        ).delete(synchronize_session=False)
        db.commit()
        return count


conversation_context = CRUDConversationContext(ConversationContextModel)
