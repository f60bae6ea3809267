"""
FastAPI main application.
Entry point for the Mealwise API.
"""
import asyncio
from contextlib import asynccontextmanager, suppress

from fastapi import FastAPI, Request
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse

from mealwise.api import routes_chat
from mealwise.core.config import get_settings
from mealwise.core.logging import setup_logging
from mealwise.db.session import init_db
from mealwise.services.orchestration import get_orchestrated_chat_flow
from mealwise.services.orchestration.context_store import ContextStore

logger = setup_logging()


async def _cleanup_contexts(store: ContextStore, interval: float) -> None:
    """Drop expired contexts every ``interval`` seconds."""
    while True:
        await asyncio.sleep(interval)
        try:
            await store.cleanup_expired()
        except Exception as e:
            logger.error(f"Context cleanup failed: {e}", exc_info=True)


@asynccontextmanager
async def lifespan(app: FastAPI):
    """Initialize database and the chat flow on startup."""
    settings = get_settings()
    logger.info("Starting Mealwise API...")
    init_db()
    logger.info("Database initialized.")

    flow = get_orchestrated_chat_flow()
    cleanup_task = asyncio.create_task(
        _cleanup_contexts(flow.store, settings.context_cleanup_interval_seconds)
    )

    yield

    cleanup_task.cancel()
    with suppress(asyncio.CancelledError):
        await cleanup_task
    await flow.dispatcher.drain()
    logger.info("Shutting down Mealwise API...")


# Create FastAPI app
app = FastAPI(
    title="Mealwise API",
    description="AI meal-planning assistant: meal plans, grocery lists, nutrition analysis and recipes",
    version="1.0.0",
    lifespan=lifespan
)

# Configure CORS
app.add_middleware(
    CORSMiddleware,
    allow_origins=get_settings().cors_origins,
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)

# Include routers
app.include_router(routes_chat.router, prefix="/api", tags=["chat"])


@app.get("/")
async def root():
    """Health check endpoint."""
    return {
        "status": "healthy",
        "message": "Mealwise API is running",
        "version": "1.0.0"
    }


@app.get("/health")
async def health_check():
    """Detailed health check."""
    settings = get_settings()
    return {
        "status": "healthy",
        "database": settings.database_url,
        "llm_provider": settings.llm_provider,
        "context_store": settings.context_store
    }


@app.exception_handler(Exception)
async def global_exception_handler(request: Request, exc: Exception):
    logger.error(f"Global exception: {exc}", exc_info=True)
    return JSONResponse(
        status_code=500,
        content={"detail": str(exc)},
    )


if __name__ == "__main__":
    import uvicorn
    settings = get_settings()
    uvicorn.run(
        "mealwise.main:app",
        host=settings.api_host,
        port=settings.api_port,
        reload=True
    )
