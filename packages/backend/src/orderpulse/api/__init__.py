"""API route aggregation.

All routers registered here get mounted in main.py.

Learn: Auth is applied per route with Depends(require_roles(...)) rather
than at the include_router level, because most routers mix roles
(customers follow an order, restaurants and drivers move it). Health is
open.
"""

from fastapi import APIRouter

from orderpulse.api.announcements import router as announcements_router
from orderpulse.api.driver import router as driver_router
from orderpulse.api.health import router as health_router
from orderpulse.api.orders import router as orders_router
from orderpulse.api.support import router as support_router
from orderpulse.api.uploads import router as uploads_router

api_router = APIRouter(prefix="/api/v1")

api_router.include_router(health_router, tags=["health"])
api_router.include_router(orders_router, tags=["orders"])
api_router.include_router(uploads_router, tags=["uploads"])
api_router.include_router(driver_router, tags=["driver"])
api_router.include_router(announcements_router, tags=["announcements"])
api_router.include_router(support_router, tags=["support"])
