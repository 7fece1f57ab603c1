"""
Treestream replay service.

Stands in for the generation service during local development and end-to-end
tests: streams golden scenarios over the same wire formats the sessions read.
"""

from __future__ import annotations

import logging
from contextlib import asynccontextmanager

from fastapi import FastAPI

from treestream.config import settings
from treestream.routes import generate as generate_routes

logger = logging.getLogger(__name__)


@asynccontextmanager
async def lifespan(app: FastAPI):
    """Configure logging on startup."""
    logging.basicConfig(level=settings.LOG_LEVEL.upper())
    logger.info("replay: serving %d scenarios", len(generate_routes.mock.list_scenarios()))
    yield
    logger.info("replay: shutting down")


app = FastAPI(
    title="Treestream replay",
    docs_url=None,
    redoc_url=None,
    lifespan=lifespan,
)

app.include_router(generate_routes.router)


@app.get("/health")
async def health():
    """Health check endpoint for uptime monitoring."""
    return {"status": "ok"}
