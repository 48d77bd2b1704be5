"""
FastAPI Application Entry Point
"""
import logging
from contextlib import asynccontextmanager
from typing import Optional

from dotenv import load_dotenv
from fastapi import FastAPI
from fastapi.middleware.cors import CORSMiddleware

from campaign_dialer.api.v1.routes import api_router
from campaign_dialer.core.config import get_settings
from campaign_dialer.core.engine import DialerEngine, build_engine_from_settings

load_dotenv()

logger = logging.getLogger(__name__)


def create_app(engine: Optional[DialerEngine] = None) -> FastAPI:
    """
    Build the operator API.

    With no engine given, one is built from settings at startup and
    stopped at shutdown. A provided engine is used as-is and left running.
    """
    settings = get_settings()

    @asynccontextmanager
    async def lifespan(app: FastAPI):
        # ========================
        # STARTUP
        # ========================
        logger.info("Starting Campaign Dialer API...")
        owned = engine is None
        app.state.engine = engine or build_engine_from_settings(settings)
        if owned:
            await app.state.engine.start()
        logger.info("Campaign Dialer API started successfully")

        yield

        # ========================
        # SHUTDOWN
        # ========================
        logger.info("Shutting down Campaign Dialer API...")
        if owned:
            try:
                await app.state.engine.stop()
            except Exception as e:
                logger.error(f"Error during shutdown: {e}")
        logger.info("Campaign Dialer API shutdown complete")

    app = FastAPI(
        title="Campaign Dialer",
        description="Outbound campaign dialing engine",
        version="1.0.0",
        lifespan=lifespan
    )

    app.add_middleware(
        CORSMiddleware,
        allow_origins=settings.cors_origins,
        allow_credentials=True,
        allow_methods=["*"],
        allow_headers=["*"],
    )

    app.include_router(api_router, prefix=settings.api_prefix)

    @app.get("/health")
    async def health_check():
        health = {"status": "healthy"}
        running = getattr(app.state, "engine", None)
        if running is not None:
            health["switch"] = running.switch.name
            health["dialer"] = running.dialer.get_stats()
            health["scheduler"] = running.scheduler.get_stats()
        return health

    return app


if __name__ == "__main__":
    import uvicorn
    uvicorn.run(create_app(), host="0.0.0.0", port=8000)
