from fastapi import APIRouter
from utils import log

from .admin import router as admin_router
from .auctions import router as auctions_router
from .events import router as events_router
from .negotiations import router as negotiations_router

logger = log.get_logger(__name__)

router = APIRouter(prefix="/api")
router.include_router(auctions_router)
router.include_router(negotiations_router)
router.include_router(admin_router)
router.include_router(events_router)


@router.get("/health", tags=["health"])
async def route_health():
    return {"status": "ok"}
