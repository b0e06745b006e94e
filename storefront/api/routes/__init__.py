from fastapi import APIRouter

from storefront.api.routes import health, payments

api_router = APIRouter()

api_router.include_router(health.router, tags=["health"])
api_router.include_router(payments.router, tags=["payments"])
