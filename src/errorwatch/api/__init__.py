"""API route aggregation.

All routers registered here get mounted in main.py.

Learn: Nothing under /api/v1 needs a dashboard session. Ingest routes
authenticate with a project API key instead (see ingest.get_project_id).
"""

from fastapi import APIRouter

from errorwatch.api.health import router as health_router
from errorwatch.api.ingest import router as ingest_router

api_router = APIRouter(prefix="/api/v1")

api_router.include_router(health_router, tags=["health"])
api_router.include_router(ingest_router, tags=["ingest"])
