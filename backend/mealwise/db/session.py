"""
Database engine, session factory and helpers for running sync DB code from async code.
"""
import asyncio
from concurrent.futures import ThreadPoolExecutor
from typing import Any, Callable, Generator

from sqlalchemy import create_engine
from sqlalchemy.orm import Session, sessionmaker

from mealwise.core.config import get_settings
from mealwise.db.models import Base

settings = get_settings()

_connect_args = {"check_same_thread": False} if settings.database_url.startswith("sqlite") else {}
engine = create_engine(settings.database_url, connect_args=_connect_args)

SessionLocal = sessionmaker(autocommit=False, autoflush=False, bind=engine)

# Global executor for blocking DB operations
db_executor = ThreadPoolExecutor(max_workers=5)


def init_db() -> None:
    """Create all tables that do not exist yet."""
    Base.metadata.create_all(bind=engine)


def get_db() -> Generator[Session, None, None]:
    """FastAPI dependency yielding a session that is always closed."""
    db = SessionLocal()
    try:
        yield db
    finally:
        db.close()


async def run_sync(func: Callable[..., Any], *args: Any) -> Any:
    """Run a synchronous DB function in the DB thread pool."""
    loop = asyncio.get_running_loop()
    return await loop.run_in_executor(db_executor, func, *args)
