"""
Ticket Routes Module

Ticket-facing workflow endpoints:

- transitions.py: available transitions, execute, history

Ticket CRUD lives in the ticket-management layer; this module only moves
tickets through their workflow.
"""

from fastapi import APIRouter

from .schemas import ExecuteTransitionRequest, AvailableTransitionsResponse, HistoryListResponse
from .transitions import router as transitions_router

router = APIRouter()
router.include_router(transitions_router)

__all__ = [
    "router",
    "ExecuteTransitionRequest",
    "AvailableTransitionsResponse",
    "HistoryListResponse",
]
