from fastapi import APIRouter

from app.api.v1.endpoints import purchase_order

api_router = APIRouter()

api_router.include_router(purchase_order.router, prefix="/purchase-orders", tags=["purchase-orders"])
