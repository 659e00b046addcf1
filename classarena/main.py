"""
classarena/main.py
FastAPI application entry point
"""
import logging
from contextlib import asynccontextmanager

from fastapi import FastAPI
from fastapi.middleware.cors import CORSMiddleware

from classarena import __version__
from classarena.config import Settings
from classarena.database import AsyncSessionLocal, close_db, init_db
from classarena.errors import register_exception_handlers, success_response
from classarena.routes import router
from classarena.routes.tournaments import limiter
from classarena.services.tournament_orchestrator import TournamentOrchestrator

logging.basicConfig(
    level=getattr(logging, Settings.LOG_LEVEL.upper(), logging.INFO),
    format="%(asctime)s - %(name)s - %(levelname)s - %(message)s",
)
logger = logging.getLogger(__name__)


@asynccontextmanager
async def lifespan(app: FastAPI):
    logger.info("Starting tournament service...")
    await init_db()

    # Winners committed but never propagated (crash between steps) are replayed on boot
    async with AsyncSessionLocal() as session:
        summary = await TournamentOrchestrator(session).replay_pending_propagation()
        logger.info(f"✓ Startup recovery: {summary}")

    yield

    logger.info("Shutting down tournament service...")
    await close_db()


def create_app() -> FastAPI:
    app = FastAPI(
        title="ClassArena Tournaments",
        description="Bracket building, match engine and orchestration for classroom tournaments",
        version=__version__,
        lifespan=lifespan,
    )

    # Attach rate limiter to the app
    app.state.limiter = limiter

    app.add_middleware(
        CORSMiddleware,
        allow_origins=Settings.cors_origins(),
        allow_credentials=True,
        allow_methods=["*"],
        allow_headers=["*"],
    )

    register_exception_handlers(app)
    app.include_router(router, prefix="/api")

    @app.get("/health")
    async def health():
        return success_response({"status": "ok", "version": __version__})

    return app


app = create_app()
