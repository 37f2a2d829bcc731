"""
Ticket Transition Routes

Endpoints for moving tickets through their workflow:
- List transitions available to the current user
- Execute a transition
- Read the transition history
"""

from fastapi import APIRouter, Depends, HTTPException, Query

from ...deps import get_current_user_dep, get_correlation_id_dep, get_engine_dep
from ....domain.models import ExecuteOptions, User
from ....domain.errors import DomainError
from ....engine.engine import WorkflowEngine
from ....utils.logger import get_logger
from .schemas import (
    ExecuteTransitionRequest, AvailableTransition, AvailableTransitionsResponse, HistoryListResponse
)

logger = get_logger(__name__)
router = APIRouter(dependencies=[Depends(get_correlation_id_dep)])


@router.get("/{ticket_id}/transitions", response_model=AvailableTransitionsResponse)
def list_available_transitions(
    ticket_id: str,
    actor: User = Depends(get_current_user_dep),
    engine: WorkflowEngine = Depends(get_engine_dep),
):
    """
    List transitions the current user may execute on the ticket right now.

    Transitions whose guard does not currently hold are left out.
    """
    try:
        transitions = engine.list_available_transitions(ticket_id, actor)
        return AvailableTransitionsResponse(
            ticket_id=ticket_id,
            items=[
                AvailableTransition(
                    transition_id=t.transition_id,
                    name=t.name,
                    display_name=t.display_name,
                    to_status_id=t.to_status_id,
                    icon=t.icon,
                    color=t.color,
                    requires_comment=t.requires_comment,
                    requires_assignment=t.requires_assignment,
                    sort_order=t.sort_order,
                )
                for t in transitions
            ],
        )
    except DomainError as e:
        raise HTTPException(status_code=e.http_status, detail=e.to_dict())


@router.post("/{ticket_id}/transitions/{transition_id}/execute")
def execute_transition(
    ticket_id: str,
    transition_id: str,
    request: ExecuteTransitionRequest,
    actor: User = Depends(get_current_user_dep),
    engine: WorkflowEngine = Depends(get_engine_dep),
):
    """
    Execute a transition.

    Guard failures return an error and leave the ticket untouched (the failed
    attempt is still in the history). Once committed, the response is the
    history entry; action failures show up in its actions_result only.
    """
    try:
        entry = engine.execute_transition(
            ticket_id,
            transition_id,
            actor,
            ExecuteOptions(
                comment=request.comment,
                assignee_id=request.assignee_id,
                context=request.context,
            ),
        )
        logger.info(
            f"Transition {transition_id} executed on ticket {ticket_id}",
            extra={"ticket_id": ticket_id, "transition_id": transition_id, "actor_id": actor.user_id}
        )
        return entry.model_dump(mode="json")
    except DomainError as e:
        raise HTTPException(status_code=e.http_status, detail=e.to_dict())


@router.get("/{ticket_id}/history", response_model=HistoryListResponse)
async def list_history(
    ticket_id: str,
    page: int = Query(1, ge=1),
    limit: int = Query(20, ge=1, le=100),
    include_details: bool = Query(False),
    actor: User = Depends(get_current_user_dep),
    engine: WorkflowEngine = Depends(get_engine_dep),
):
    """Transition history for a ticket, newest first"""
    try:
        history = engine.list_history(ticket_id, page=page, limit=limit, include_details=include_details)
        return HistoryListResponse(
            items=[e.model_dump(mode="json") for e in history.items],
            page=history.page,
            limit=history.limit,
            total=history.total,
            has_more=history.has_more,
        )
    except DomainError as e:
        raise HTTPException(status_code=e.http_status, detail=e.to_dict())
