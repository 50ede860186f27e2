"""
Agent Mafia Web API
===================

FastAPI application: REST routes under /api plus the SSE activity stream.

Usage:
    uvicorn agentmafia.web.main:app --port 8679
"""

import asyncio
import logging
import os
from contextlib import asynccontextmanager
from typing import Optional

from fastapi import FastAPI, Request
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse

from agentmafia.config import AgentMafiaConfig
from agentmafia.db import close_db, init_db
from agentmafia.errors import (
    AgentMafiaError,
    CapabilityViolation,
    InvalidStateError,
    InvalidTransition,
    NotFoundError,
    ValidationError,
)
from agentmafia.orchestrator import Orchestrator
from agentmafia.output import setup_rich_logging
from agentmafia.providers import ProviderRegistry
from agentmafia.store import ConversationStore
from agentmafia.web.api import router as api_router

logger = logging.getLogger(__name__)

if os.name == "nt":
    asyncio.set_event_loop_policy(asyncio.WindowsProactorEventLoopPolicy())


def _status_for(exc: AgentMafiaError) -> int:
    if isinstance(exc, ValidationError):
        return 400
    if isinstance(exc, NotFoundError):
        return 404
    if isinstance(exc, (InvalidTransition, InvalidStateError)):
        return 409
    return 500


async def handle_engine_error(request: Request, exc: AgentMafiaError) -> JSONResponse:
    status = _status_for(exc)
    if status == 500:
        logger.error("Unhandled engine error on %s: %s", request.url.path, exc)
    body = exc.to_dict() if isinstance(exc, CapabilityViolation) else {"error": str(exc)}
    return JSONResponse(status_code=status, content=body)


def create_app(
    config: Optional[AgentMafiaConfig] = None,
    providers: Optional[ProviderRegistry] = None,
) -> FastAPI:
    """
    Build the application.

    The database and orchestrator are set up in the lifespan so tests can
    pass their own config (temp data dir) and a scripted provider registry.
    """
    config = config or AgentMafiaConfig.load()

    @asynccontextmanager
    async def lifespan(app: FastAPI):
        setup_rich_logging()
        await init_db(config.data_dir)
        registry = providers or ProviderRegistry()
        app.state.config = config
        app.state.orchestrator = Orchestrator(ConversationStore(), config, providers=registry)
        logger.info("Agent Mafia API ready (data dir: %s)", config.data_dir)
        try:
            yield
        finally:
            await app.state.orchestrator.shutdown()
            await registry.aclose()
            await close_db()

    app = FastAPI(title="Agent Mafia API", lifespan=lifespan)

    # Allow CORS for local development (frontend usually on :5173)
    app.add_middleware(
        CORSMiddleware,
        allow_origins=["*"],
        allow_credentials=True,
        allow_methods=["*"],
        allow_headers=["*"],
    )
    app.add_exception_handler(AgentMafiaError, handle_engine_error)
    app.include_router(api_router, prefix="/api")

    @app.get("/")
    def health_check():
        return {"status": "ok", "service": "agentmafia"}

    return app


app = create_app()
