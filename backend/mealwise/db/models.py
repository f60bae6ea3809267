"""
SQLAlchemy database models.
These define the database schema and relationships.
"""
from sqlalchemy import Column, Integer, String, DateTime, ForeignKey, Text
from sqlalchemy.orm import relationship, declarative_base
from datetime import datetime, timezone

Base = declarative_base()


def utcnow() -> datetime:
    """Naive UTC timestamp; every DateTime column stores naive UTC."""
    return datetime.now(timezone.utc).replace(tzinfo=None)


class MealPlanModel(Base):
    """Generated meal plan."""
    __tablename__ = "meal_plans"

    id = Column(String(36), primary_key=True, index=True)
    user_id = Column(String(255), nullable=True, index=True)
    title = Column(String(255), nullable=False)
    duration = Column(Integer, nullable=False)
    meals_per_day = Column(Integer, nullable=False)
    days = Column(Text, nullable=False)  # JSON list of MealPlanDay
    created_at = Column(DateTime, default=utcnow)
    updated_at = Column(DateTime, default=utcnow, onupdate=utcnow)

    # Relationships
    grocery_lists = relationship("GroceryListModel", back_populates="meal_plan", cascade="all, delete-orphan")


class GroceryListModel(Base):
    """Grocery list generated for a meal plan."""
    __tablename__ = "grocery_lists"

    id = Column(String(36), primary_key=True, index=True)
    meal_plan_id = Column(String(36), ForeignKey("meal_plans.id"), nullable=False)
    user_id = Column(String(255), nullable=True, index=True)
    items = Column(Text, nullable=False)  # JSON list of GroceryItem
    location_info = Column(Text, nullable=True)  # JSON LocationInfo
    created_at = Column(DateTime, default=utcnow)

    # Relationships
    meal_plan = relationship("MealPlanModel", back_populates="grocery_lists")


class ConversationContextModel(Base):
    """Carry-over state for one chat session."""
    __tablename__ = "conversation_contexts"

    session_id = Column(String(255), primary_key=True, index=True)
    user_id = Column(String(255), nullable=True)
    meal_plan_id = Column(String(36), nullable=True)
    grocery_list_id = Column(String(36), nullable=True)
    last_tool_results = Column(Text, nullable=True)  # JSON map tool name -> payload
    version = Column(Integer, nullable=False, default=0)
    updated_at = Column(DateTime, default=utcnow, onupdate=utcnow)
    expires_at = Column(DateTime, nullable=False, index=True)


class ChatSessionModel(Base):
    """Chat session the persisted messages belong to."""
    __tablename__ = "chat_sessions"

    id = Column(Integer, primary_key=True, index=True)
    session_id = Column(String(255), unique=True, nullable=False, index=True)
    user_id = Column(String(255), nullable=True)
    created_at = Column(DateTime, default=utcnow)
    updated_at = Column(DateTime, default=utcnow, onupdate=utcnow)

    # Relationships
    messages = relationship("ChatMessageModel", back_populates="session", cascade="all, delete-orphan")


class ChatMessageModel(Base):
    """Individual chat message in a session."""
    __tablename__ = "chat_messages"

    id = Column(Integer, primary_key=True, index=True)
    session_id = Column(String(255), ForeignKey("chat_sessions.session_id"), nullable=False)
    role = Column(String(20), nullable=False)  # "user" or "assistant"
    content = Column(Text, nullable=False)
    intent = Column(String(50), nullable=True)  # Detected intent
    created_at = Column(DateTime, default=utcnow)

    # Relationships
    session = relationship("ChatSessionModel", back_populates="messages")
