"""
FastAPI dependencies shared across route modules.
"""

from fastapi import HTTPException, Request

from core import AgentCore


def get_core(request: Request) -> AgentCore:
    """Return the AgentCore instance from app state."""
    return request.app.state.agent_core


def require_ready(request: Request):
    """Dependency that returns 503 if the core is still starting."""
    if not get_core(request)._ready:
        raise HTTPException(status_code=503, detail="Agent core is still initializing")
