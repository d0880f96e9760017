from fastapi import APIRouter

from fiberpay.features.billing.routes import router as billing_router
from fiberpay.features.channels.routes import router as channels_router
from fiberpay.features.health.routes import router as health_router
from fiberpay.features.node.routes import router as node_router

api_v1_router = APIRouter()

api_v1_router.include_router(health_router, tags=["health"])
api_v1_router.include_router(node_router, tags=["node"])
api_v1_router.include_router(channels_router, tags=["channels"])
api_v1_router.include_router(billing_router, tags=["billing"])
