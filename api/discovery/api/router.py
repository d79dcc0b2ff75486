from fastapi import APIRouter

from discovery.api.routes import health, opportunities, search

api_router = APIRouter()
api_router.include_router(health.router, tags=["health"])
api_router.include_router(opportunities.router, prefix="/opportunities", tags=["public"])
api_router.include_router(search.router, tags=["public"])
