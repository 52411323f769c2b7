"""
NutriFlow - FastAPI application.

Mounts the onboarding router and a health check. The lifespan runs the
session autosave sweep and flushes open sessions on shutdown.
"""

from fastapi import FastAPI

from nutriflow import __version__
from onboarding.api import router as onboarding_router
from onboarding.api import session_lifespan

app = FastAPI(title="NutriFlow", version=__version__, lifespan=session_lifespan)
app.include_router(onboarding_router)


@app.get("/health")
async def health_check():
    """Health check endpoint."""
    return {"status": "healthy", "version": __version__}


def create_app() -> FastAPI:
    """Create and return the FastAPI application."""
    return app
