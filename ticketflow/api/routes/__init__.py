"""API Routes module"""
from fastapi import APIRouter

from .workflows import router as workflows_router
from .tickets import router as tickets_router

# Main API router
api_router = APIRouter()

api_router.include_router(workflows_router, prefix="/workflows", tags=["Workflows"])
api_router.include_router(tickets_router, prefix="/tickets", tags=["Tickets"])

__all__ = ["api_router"]
