"""
Route registration — includes all API routers into the FastAPI app.
"""

from fastapi import FastAPI

from routes.health import router as health_router
from routes.rpc import router as rpc_router


def register_routes(app: FastAPI):
    """Mount all API routers onto the app."""
    app.include_router(health_router)
    app.include_router(rpc_router)
