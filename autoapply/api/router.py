from fastapi import APIRouter

from autoapply.api.routes import auto_apply, health, search

api_router = APIRouter()
api_router.include_router(health.router, tags=["health"])
api_router.include_router(auto_apply.router, prefix="/auto-apply", tags=["auto-apply"])
api_router.include_router(search.router, prefix="/search", tags=["search"])
