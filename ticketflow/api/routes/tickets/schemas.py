"""
Ticket Schemas

Request and response models for ticket transition endpoints.
"""

from typing import Any, Dict, List, Optional
from pydantic import BaseModel, Field


class ExecuteTransitionRequest(BaseModel):
    """Request to execute a transition on a ticket"""
    comment: Optional[str] = Field(None, max_length=5000)
    assignee_id: Optional[str] = None
    context: Dict[str, Any] = Field(default_factory=dict)


class AvailableTransition(BaseModel):
    """Transition offered to the current user for a ticket"""
    transition_id: str
    name: str
    display_name: Dict[str, str]
    to_status_id: str
    icon: str
    color: str
    requires_comment: bool
    requires_assignment: bool
    sort_order: int


class AvailableTransitionsResponse(BaseModel):
    """Response for the available transitions list"""
    ticket_id: str
    items: List[AvailableTransition]


class HistoryListResponse(BaseModel):
    """Paginated transition history, newest first"""
    items: List[Dict[str, Any]]
    page: int
    limit: int
    total: int
    has_more: bool
