"""
Kestrel — agentic coding assistant backend.
FastAPI service that drives LLM providers through a tool-calling loop and
streams progress to a terminal client over a WebSocket.
"""

import logging

from contextlib import asynccontextmanager
from typing import Optional

from fastapi import FastAPI
from fastapi.middleware.cors import CORSMiddleware

from config import HOST, PORT, VERSION
from core import AgentCore
from orchestration.events import EventLogHandler
from routes import register_routes
from settings import get_settings

logger = logging.getLogger(__name__)


@asynccontextmanager
async def lifespan(app: FastAPI):
    settings = app.state.agent_core.settings
    logging.basicConfig(
        level=getattr(logging, settings.system.log_level.upper(), logging.INFO),
        format=settings.system.log_format,
        datefmt="%Y-%m-%d %H:%M:%S",
    )
    core: AgentCore = app.state.agent_core
    forward_level = getattr(logging, settings.system.forward_log_level.upper(), logging.WARNING)
    log_bridge = EventLogHandler(core.bus, level=forward_level)
    logging.getLogger().addHandler(log_bridge)
    try:
        await core.start()
    except Exception as e:
        logger.error("Startup error: %s", e)
    yield
    await core.shutdown()
    logging.getLogger().removeHandler(log_bridge)


def create_app(core: Optional[AgentCore] = None) -> FastAPI:
    """Build the app around `core` (a fresh AgentCore from settings.yaml by default)."""
    core = core or AgentCore()
    app = FastAPI(
        title="Kestrel",
        description="Agentic coding assistant backend",
        version=VERSION,
        docs_url="/docs",
        redoc_url="/redoc",
        openapi_url="/openapi.json",
        lifespan=lifespan,
    )
    app.state.agent_core = core
    app.add_middleware(
        CORSMiddleware,
        allow_origins=core.settings.web.cors_origins,
        allow_credentials=True,
        allow_methods=["*"],
        allow_headers=["*"],
    )
    register_routes(app)
    return app


app = create_app()


def run():
    import uvicorn
    settings = get_settings()
    logger.info("Starting %s on %s:%d", settings.system.name, HOST, PORT)
    uvicorn.run(app, host=HOST, port=PORT)


if __name__ == "__main__":
    run()
