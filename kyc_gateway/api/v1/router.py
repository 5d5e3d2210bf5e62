"""Aggregate all v1 API routers."""

from fastapi import APIRouter
from kyc_gateway.api.v1.health import router as health_router
from kyc_gateway.api.v1.token import router as token_router
from kyc_gateway.api.v1.submit import router as submit_router
from kyc_gateway.api.v1.callback import router as callback_router
from kyc_gateway.api.v1.status import router as status_router

v1_router = APIRouter(prefix="/api/v1")
v1_router.include_router(health_router, tags=["health"])
v1_router.include_router(token_router, tags=["token"])
v1_router.include_router(submit_router, tags=["submit"])
v1_router.include_router(callback_router, tags=["callback"])
v1_router.include_router(status_router, tags=["status"])
