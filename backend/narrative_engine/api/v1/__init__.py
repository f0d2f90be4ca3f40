"""API v1 router"""
from fastapi import APIRouter

from narrative_engine.api.v1.endpoints import generation

api_router = APIRouter()

api_router.include_router(generation.router, prefix="/novels", tags=["Generation"])
