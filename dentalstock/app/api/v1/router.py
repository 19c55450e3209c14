from fastapi import APIRouter

from dentalstock.app.api.v1.endpoints.health import router as health_router
from dentalstock.app.api.v1.endpoints.reservations import router as reservations_router
from dentalstock.app.api.v1.endpoints.stock_lots import router as stock_lots_router
from dentalstock.app.api.v1.endpoints.purchase_orders import router as purchase_orders_router
from dentalstock.app.api.v1.endpoints.cases import router as cases_router

router = APIRouter()
router.include_router(health_router, tags=["health"])
router.include_router(reservations_router, tags=["reservations"])
router.include_router(stock_lots_router, tags=["stock_lots"])
router.include_router(purchase_orders_router, tags=["purchase_orders"])
router.include_router(cases_router, tags=["cases"])
