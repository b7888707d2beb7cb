"""
API Routes
"""
from fastapi import APIRouter

from fleet_dispatch.api.routes.orders import router as orders_router
from fleet_dispatch.api.routes.vehicles import router as vehicles_router
from fleet_dispatch.api.routes.wallets import router as wallets_router
from fleet_dispatch.api.webhooks.replies import router as replies_router

router = APIRouter()

router.include_router(orders_router, prefix="/orders", tags=["orders"])
router.include_router(vehicles_router, prefix="/vehicles", tags=["vehicles"])
router.include_router(wallets_router, prefix="/wallets", tags=["wallets"])
router.include_router(replies_router, prefix="/webhooks", tags=["webhooks"])
