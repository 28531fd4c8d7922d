"""Main entry point for the umpire review backend."""

from contextlib import asynccontextmanager

import uvicorn
from fastapi import FastAPI
from fastapi.middleware.cors import CORSMiddleware
from loguru import logger

from umpire.api.routes import router, _sessions, close_all_sessions, shutdown_capture
from umpire.core.config import settings
from umpire.core.database import init_db, close_db, DB_PATH


@asynccontextmanager
async def lifespan(app: FastAPI):
    """Application lifespan manager for startup and shutdown events."""
    # Startup
    logger.info("Umpire review backend starting up...")
    logger.info(f"Media directory: {settings.media_dir}")
    logger.info(f"Sample interval: {settings.sample_interval}s")

    await init_db()
    logger.info(f"Database initialized at {DB_PATH}")

    yield

    # Shutdown
    logger.info("Umpire review backend shutting down...")

    # Stop samplers and flush any pending result writes before the DB goes away
    await close_all_sessions()
    await shutdown_capture()

    await close_db()

    logger.info("Shutdown complete")


app = FastAPI(
    title="Umpire Review",
    description="Clip capture and playback-synchronized review API",
    version="0.1.0",
    lifespan=lifespan,
)

app.add_middleware(
    CORSMiddleware,
    allow_origins=[
        "http://localhost:5173",
        "http://localhost:3000",
        "http://127.0.0.1:5173",
        "http://127.0.0.1:3000",
    ],
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)

app.include_router(router, prefix="/api")


@app.get("/health")
async def health_check():
    """Health check endpoint."""
    from umpire.models.video import get_all_videos

    videos = await get_all_videos(limit=1000)

    return {
        "status": "healthy",
        "version": "0.1.0",
        "active_sessions": len(_sessions),
        "sampling_sessions": sum(1 for s in _sessions.values() if s.engine.state.value == "sampling"),
        "total_videos": len(videos),
    }


def main():
    """Run the FastAPI server."""
    logger.info(f"Starting umpire review server on {settings.host}:{settings.port}")
    uvicorn.run(
        "umpire.main:app",
        host=settings.host,
        port=settings.port,
        reload=settings.debug,
    )


if __name__ == "__main__":
    main()
