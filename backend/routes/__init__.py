"""FastAPI API endpoints under /api.

Endpoint groups: health/settings, scenarios (CRUD, graph, quick validation)
and continuity (sync evaluation, single-path re-check, flat issue list,
tracked operations with polling and cancellation).
"""

from fastapi import APIRouter

from .continuity import router as continuity_router
from .scenarios import router as scenarios_router
from .settings import router as settings_router

router = APIRouter()
router.include_router(settings_router)
router.include_router(scenarios_router)
router.include_router(continuity_router)
