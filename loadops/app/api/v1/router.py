from fastapi import APIRouter

from loadops.app.api.v1.endpoints.health import router as health_router
from loadops.app.api.v1.endpoints.stages import router as stages_router
from loadops.app.api.v1.endpoints.me import router as me_router
from loadops.app.api.v1.endpoints.loadings import router as loadings_router

router = APIRouter()
router.include_router(health_router, tags=["health"])
router.include_router(stages_router, tags=["stages"])
router.include_router(me_router, tags=["me"])
router.include_router(loadings_router, tags=["loadings"])
