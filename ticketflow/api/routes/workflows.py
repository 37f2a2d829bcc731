"""Workflow API Routes - Definition management endpoints"""
from datetime import datetime
from typing import Any, Dict, List, Optional
from fastapi import APIRouter, Depends, HTTPException, status, Query, Response
from pydantic import BaseModel, Field

from ..deps import get_current_user_dep, get_correlation_id_dep, get_workflow_service_dep, require_admin_dep
from ...domain.models import User
from ...domain.enums import StatusCategory, ConditionType, ConditionOperator, ActionType
from ...domain.errors import DomainError, WorkflowVersionNotFoundError
from ...services.workflow_service import WorkflowService
from ...utils.logger import get_logger

logger = get_logger(__name__)
router = APIRouter(dependencies=[Depends(get_correlation_id_dep)])


# ============================================================================
# Request Models
# ============================================================================

class CreateWorkflowTypeRequest(BaseModel):
    """Request to create a workflow type"""
    name: str = Field(..., min_length=1, max_length=100)
    display_name: Dict[str, str]
    description: Optional[Dict[str, str]] = None
    icon: Optional[str] = None
    color: Optional[str] = None
    is_active: Optional[bool] = None
    is_default: Optional[bool] = None


class UpdateWorkflowTypeRequest(BaseModel):
    """Request to update workflow type metadata"""
    name: Optional[str] = Field(None, min_length=1, max_length=100)
    display_name: Optional[Dict[str, str]] = None
    description: Optional[Dict[str, str]] = None
    icon: Optional[str] = None
    color: Optional[str] = None
    is_active: Optional[bool] = None
    is_default: Optional[bool] = None


class StatusRequest(BaseModel):
    """Create/update payload for a status; omitted fields keep their value"""
    name: Optional[str] = Field(None, min_length=1, max_length=100)
    display_name: Optional[Dict[str, str]] = None
    description: Optional[Dict[str, str]] = None
    color: Optional[str] = None
    icon: Optional[str] = None
    category: Optional[StatusCategory] = None
    is_initial: Optional[bool] = None
    is_final: Optional[bool] = None
    sort_order: Optional[int] = None
    sla_hours: Optional[float] = None
    response_hours: Optional[float] = None
    auto_assign: Optional[bool] = None
    notify_on_enter: Optional[bool] = None
    notify_on_exit: Optional[bool] = None
    is_active: Optional[bool] = None


class ConditionRequest(BaseModel):
    """Create/update payload for a guard condition"""
    condition_type: Optional[ConditionType] = None
    field_name: Optional[str] = None
    operator: Optional[ConditionOperator] = None
    expected_value: Optional[Any] = None
    condition_group: Optional[int] = Field(None, ge=1)
    is_active: Optional[bool] = None


class ActionRequest(BaseModel):
    """Create/update payload for a post-commit action"""
    action_type: Optional[ActionType] = None
    action_config: Optional[Dict[str, Any]] = None
    execution_order: Optional[int] = Field(None, ge=0)
    is_active: Optional[bool] = None


class TransitionRequest(BaseModel):
    """Create/update payload for a transition (from_status_id null = any status)"""
    name: Optional[str] = Field(None, min_length=1, max_length=100)
    display_name: Optional[Dict[str, str]] = None
    description: Optional[Dict[str, str]] = None
    from_status_id: Optional[str] = None
    to_status_id: Optional[str] = None
    icon: Optional[str] = None
    color: Optional[str] = None
    is_automatic: Optional[bool] = None
    requires_comment: Optional[bool] = None
    requires_assignment: Optional[bool] = None
    allowed_roles: Optional[List[str]] = None
    sort_order: Optional[int] = None
    is_active: Optional[bool] = None
    conditions: Optional[List[ConditionRequest]] = None
    actions: Optional[List[ActionRequest]] = None


class ImportRequest(BaseModel):
    """Request to import an exported definition"""
    document: Dict[str, Any]
    replace_existing: bool = False


class CreateVersionRequest(BaseModel):
    """Request to snapshot the current configuration"""
    description: Optional[str] = Field(None, max_length=1000)


def _payload(request: BaseModel) -> Dict[str, Any]:
    return request.model_dump(mode="json", exclude_unset=True)


# ============================================================================
# Workflow types
# ============================================================================

@router.post("/types", status_code=status.HTTP_201_CREATED)
async def create_workflow_type(
    request: CreateWorkflowTypeRequest,
    actor: User = Depends(require_admin_dep),
    service: WorkflowService = Depends(get_workflow_service_dep),
):
    """Create a workflow type (no statuses yet)"""
    try:
        definition = service.create_workflow_type(_payload(request), actor_id=actor.user_id)
        logger.info(
            f"Created workflow type: {definition.workflow_type_id}",
            extra={"workflow_type_id": definition.workflow_type_id, "actor_id": actor.user_id}
        )
        return definition.workflow_type.model_dump(mode="json")
    except DomainError as e:
        raise HTTPException(status_code=e.http_status, detail=e.to_dict())


@router.get("/types")
async def list_workflow_types(
    active_only: bool = Query(False),
    actor: User = Depends(get_current_user_dep),
    service: WorkflowService = Depends(get_workflow_service_dep),
):
    try:
        types = service.list_workflow_types(active_only=active_only)
        return {"items": [t.model_dump(mode="json") for t in types], "total": len(types)}
    except DomainError as e:
        raise HTTPException(status_code=e.http_status, detail=e.to_dict())


@router.get("/types/{workflow_type_id}")
async def get_workflow_type(
    workflow_type_id: str,
    actor: User = Depends(get_current_user_dep),
    service: WorkflowService = Depends(get_workflow_service_dep),
):
    """Full definition: header, statuses and transitions with their conditions/actions"""
    try:
        definition = service.get_workflow_type(workflow_type_id)
        return {
            "workflow_type": definition.workflow_type.model_dump(mode="json"),
            "statuses": [s.model_dump(mode="json") for s in definition.sorted_statuses()],
            "transitions": [t.model_dump(mode="json") for t in service.list_transitions(workflow_type_id)],
            "version": definition.version,
        }
    except DomainError as e:
        raise HTTPException(status_code=e.http_status, detail=e.to_dict())


@router.put("/types/{workflow_type_id}")
async def update_workflow_type(
    workflow_type_id: str,
    request: UpdateWorkflowTypeRequest,
    actor: User = Depends(require_admin_dep),
    service: WorkflowService = Depends(get_workflow_service_dep),
):
    try:
        return service.update_workflow_type(workflow_type_id, _payload(request)).model_dump(mode="json")
    except DomainError as e:
        raise HTTPException(status_code=e.http_status, detail=e.to_dict())


@router.delete("/types/{workflow_type_id}", status_code=status.HTTP_204_NO_CONTENT)
async def delete_workflow_type(
    workflow_type_id: str,
    actor: User = Depends(require_admin_dep),
    service: WorkflowService = Depends(get_workflow_service_dep),
):
    try:
        service.delete_workflow_type(workflow_type_id)
        logger.info(
            f"Deleted workflow type: {workflow_type_id}",
            extra={"workflow_type_id": workflow_type_id, "actor_id": actor.user_id}
        )
        return Response(status_code=status.HTTP_204_NO_CONTENT)
    except DomainError as e:
        raise HTTPException(status_code=e.http_status, detail=e.to_dict())


@router.post("/types/{workflow_type_id}/validate")
async def validate_workflow_type(
    workflow_type_id: str,
    actor: User = Depends(require_admin_dep),
    service: WorkflowService = Depends(get_workflow_service_dep),
):
    try:
        return service.validate_definition(workflow_type_id).model_dump(mode="json")
    except DomainError as e:
        raise HTTPException(status_code=e.http_status, detail=e.to_dict())


@router.get("/types/{workflow_type_id}/export")
async def export_workflow_type(
    workflow_type_id: str,
    actor: User = Depends(require_admin_dep),
    service: WorkflowService = Depends(get_workflow_service_dep),
):
    try:
        return service.export_definition(workflow_type_id)
    except DomainError as e:
        raise HTTPException(status_code=e.http_status, detail=e.to_dict())


@router.post("/import", status_code=status.HTTP_201_CREATED)
async def import_workflow_type(
    request: ImportRequest,
    actor: User = Depends(require_admin_dep),
    service: WorkflowService = Depends(get_workflow_service_dep),
):
    """Import an exported definition; all ids are regenerated"""
    try:
        definition = service.import_definition(
            request.document,
            actor_id=actor.user_id,
            replace_existing=request.replace_existing,
        )
        return {
            "workflow_type_id": definition.workflow_type_id,
            "statuses": len(definition.statuses),
            "transitions": len(definition.transitions),
            "version": definition.version,
        }
    except DomainError as e:
        raise HTTPException(status_code=e.http_status, detail=e.to_dict())


@router.get("/types/{workflow_type_id}/stats")
async def get_workflow_stats(
    workflow_type_id: str,
    date_from: Optional[datetime] = Query(None),
    date_to: Optional[datetime] = Query(None),
    actor: User = Depends(require_admin_dep),
    service: WorkflowService = Depends(get_workflow_service_dep),
):
    try:
        return service.get_workflow_stats(workflow_type_id, date_from, date_to).model_dump(mode="json")
    except DomainError as e:
        raise HTTPException(status_code=e.http_status, detail=e.to_dict())


# ============================================================================
# Versions
# ============================================================================

@router.get("/types/{workflow_type_id}/versions")
async def list_workflow_versions(
    workflow_type_id: str,
    page: int = Query(1, ge=1),
    limit: int = Query(10, ge=1, le=100),
    actor: User = Depends(require_admin_dep),
    service: WorkflowService = Depends(get_workflow_service_dep),
):
    """Configuration snapshots, highest version number first"""
    try:
        versions = service.list_versions(workflow_type_id, page=page, limit=limit)
        return {
            "items": [v.model_dump(mode="json") for v in versions.items],
            "page": versions.page,
            "limit": versions.limit,
            "total": versions.total,
            "total_pages": versions.total_pages,
        }
    except DomainError as e:
        raise HTTPException(status_code=e.http_status, detail=e.to_dict())


@router.post("/types/{workflow_type_id}/versions", status_code=status.HTTP_201_CREATED)
async def create_workflow_version(
    workflow_type_id: str,
    request: CreateVersionRequest,
    actor: User = Depends(require_admin_dep),
    service: WorkflowService = Depends(get_workflow_service_dep),
):
    try:
        version = service.create_version(workflow_type_id, actor_id=actor.user_id, description=request.description)
        return version.model_dump(mode="json")
    except DomainError as e:
        raise HTTPException(status_code=e.http_status, detail=e.to_dict())


@router.post("/types/{workflow_type_id}/versions/{version_id}/activate")
async def activate_workflow_version(
    workflow_type_id: str,
    version_id: str,
    actor: User = Depends(require_admin_dep),
    service: WorkflowService = Depends(get_workflow_service_dep),
):
    """Restore a snapshot as the live configuration"""
    try:
        if service.get_version(version_id).workflow_type_id != workflow_type_id:
            raise WorkflowVersionNotFoundError(
                f"Workflow version {version_id} not found for workflow type {workflow_type_id}"
            )
        version = service.activate_version(version_id, actor_id=actor.user_id)
        logger.info(
            f"Activated workflow version: {version_id}",
            extra={"workflow_type_id": workflow_type_id, "actor_id": actor.user_id}
        )
        return version.model_dump(mode="json")
    except DomainError as e:
        raise HTTPException(status_code=e.http_status, detail=e.to_dict())


# ============================================================================
# Statuses
# ============================================================================

@router.get("/types/{workflow_type_id}/statuses")
async def list_statuses(
    workflow_type_id: str,
    actor: User = Depends(get_current_user_dep),
    service: WorkflowService = Depends(get_workflow_service_dep),
):
    try:
        return [s.model_dump(mode="json") for s in service.list_statuses(workflow_type_id)]
    except DomainError as e:
        raise HTTPException(status_code=e.http_status, detail=e.to_dict())


@router.post("/types/{workflow_type_id}/statuses", status_code=status.HTTP_201_CREATED)
async def create_status(
    workflow_type_id: str,
    request: StatusRequest,
    actor: User = Depends(require_admin_dep),
    service: WorkflowService = Depends(get_workflow_service_dep),
):
    try:
        return service.create_status(workflow_type_id, _payload(request)).model_dump(mode="json")
    except DomainError as e:
        raise HTTPException(status_code=e.http_status, detail=e.to_dict())


@router.get("/statuses/{status_id}")
async def get_status(
    status_id: str,
    actor: User = Depends(get_current_user_dep),
    service: WorkflowService = Depends(get_workflow_service_dep),
):
    try:
        return service.get_status(status_id).model_dump(mode="json")
    except DomainError as e:
        raise HTTPException(status_code=e.http_status, detail=e.to_dict())


@router.put("/statuses/{status_id}")
async def update_status(
    status_id: str,
    request: StatusRequest,
    actor: User = Depends(require_admin_dep),
    service: WorkflowService = Depends(get_workflow_service_dep),
):
    try:
        return service.update_status(status_id, _payload(request)).model_dump(mode="json")
    except DomainError as e:
        raise HTTPException(status_code=e.http_status, detail=e.to_dict())


@router.delete("/statuses/{status_id}", status_code=status.HTTP_204_NO_CONTENT)
async def delete_status(
    status_id: str,
    actor: User = Depends(require_admin_dep),
    service: WorkflowService = Depends(get_workflow_service_dep),
):
    try:
        service.delete_status(status_id)
        return Response(status_code=status.HTTP_204_NO_CONTENT)
    except DomainError as e:
        raise HTTPException(status_code=e.http_status, detail=e.to_dict())


# ============================================================================
# Transitions
# ============================================================================

@router.get("/types/{workflow_type_id}/transitions")
async def list_transitions(
    workflow_type_id: str,
    from_status_id: Optional[str] = Query(None),
    actor: User = Depends(get_current_user_dep),
    service: WorkflowService = Depends(get_workflow_service_dep),
):
    try:
        transitions = service.list_transitions(workflow_type_id, from_status_id=from_status_id)
        return [t.model_dump(mode="json") for t in transitions]
    except DomainError as e:
        raise HTTPException(status_code=e.http_status, detail=e.to_dict())


@router.post("/types/{workflow_type_id}/transitions", status_code=status.HTTP_201_CREATED)
async def create_transition(
    workflow_type_id: str,
    request: TransitionRequest,
    actor: User = Depends(require_admin_dep),
    service: WorkflowService = Depends(get_workflow_service_dep),
):
    try:
        return service.create_transition(workflow_type_id, _payload(request)).model_dump(mode="json")
    except DomainError as e:
        raise HTTPException(status_code=e.http_status, detail=e.to_dict())


@router.get("/transitions/{transition_id}")
async def get_transition(
    transition_id: str,
    actor: User = Depends(get_current_user_dep),
    service: WorkflowService = Depends(get_workflow_service_dep),
):
    try:
        return service.get_transition(transition_id).model_dump(mode="json")
    except DomainError as e:
        raise HTTPException(status_code=e.http_status, detail=e.to_dict())


@router.put("/transitions/{transition_id}")
async def update_transition(
    transition_id: str,
    request: TransitionRequest,
    actor: User = Depends(require_admin_dep),
    service: WorkflowService = Depends(get_workflow_service_dep),
):
    """Update transition fields; conditions and actions have their own endpoints"""
    try:
        updates = _payload(request)
        updates.pop("conditions", None)
        updates.pop("actions", None)
        return service.update_transition(transition_id, updates).model_dump(mode="json")
    except DomainError as e:
        raise HTTPException(status_code=e.http_status, detail=e.to_dict())


@router.delete("/transitions/{transition_id}", status_code=status.HTTP_204_NO_CONTENT)
async def delete_transition(
    transition_id: str,
    actor: User = Depends(require_admin_dep),
    service: WorkflowService = Depends(get_workflow_service_dep),
):
    try:
        service.delete_transition(transition_id)
        return Response(status_code=status.HTTP_204_NO_CONTENT)
    except DomainError as e:
        raise HTTPException(status_code=e.http_status, detail=e.to_dict())


# ============================================================================
# Conditions
# ============================================================================

@router.get("/transitions/{transition_id}/conditions")
async def list_conditions(
    transition_id: str,
    actor: User = Depends(get_current_user_dep),
    service: WorkflowService = Depends(get_workflow_service_dep),
):
    try:
        return [c.model_dump(mode="json") for c in service.list_conditions(transition_id)]
    except DomainError as e:
        raise HTTPException(status_code=e.http_status, detail=e.to_dict())


@router.post("/transitions/{transition_id}/conditions", status_code=status.HTTP_201_CREATED)
async def create_condition(
    transition_id: str,
    request: ConditionRequest,
    actor: User = Depends(require_admin_dep),
    service: WorkflowService = Depends(get_workflow_service_dep),
):
    try:
        return service.create_condition(transition_id, _payload(request)).model_dump(mode="json")
    except DomainError as e:
        raise HTTPException(status_code=e.http_status, detail=e.to_dict())


@router.put("/conditions/{condition_id}")
async def update_condition(
    condition_id: str,
    request: ConditionRequest,
    actor: User = Depends(require_admin_dep),
    service: WorkflowService = Depends(get_workflow_service_dep),
):
    try:
        return service.update_condition(condition_id, _payload(request)).model_dump(mode="json")
    except DomainError as e:
        raise HTTPException(status_code=e.http_status, detail=e.to_dict())


@router.delete("/conditions/{condition_id}", status_code=status.HTTP_204_NO_CONTENT)
async def delete_condition(
    condition_id: str,
    actor: User = Depends(require_admin_dep),
    service: WorkflowService = Depends(get_workflow_service_dep),
):
    try:
        service.delete_condition(condition_id)
        return Response(status_code=status.HTTP_204_NO_CONTENT)
    except DomainError as e:
        raise HTTPException(status_code=e.http_status, detail=e.to_dict())


# ============================================================================
# Actions
# ============================================================================

@router.get("/transitions/{transition_id}/actions")
async def list_actions(
    transition_id: str,
    actor: User = Depends(get_current_user_dep),
    service: WorkflowService = Depends(get_workflow_service_dep),
):
    try:
        return [a.model_dump(mode="json") for a in service.list_actions(transition_id)]
    except DomainError as e:
        raise HTTPException(status_code=e.http_status, detail=e.to_dict())


@router.post("/transitions/{transition_id}/actions", status_code=status.HTTP_201_CREATED)
async def create_action(
    transition_id: str,
    request: ActionRequest,
    actor: User = Depends(require_admin_dep),
    service: WorkflowService = Depends(get_workflow_service_dep),
):
    try:
        return service.create_action(transition_id, _payload(request)).model_dump(mode="json")
    except DomainError as e:
        raise HTTPException(status_code=e.http_status, detail=e.to_dict())


@router.put("/actions/{action_id}")
async def update_action(
    action_id: str,
    request: ActionRequest,
    actor: User = Depends(require_admin_dep),
    service: WorkflowService = Depends(get_workflow_service_dep),
):
    try:
        return service.update_action(action_id, _payload(request)).model_dump(mode="json")
    except DomainError as e:
        raise HTTPException(status_code=e.http_status, detail=e.to_dict())


@router.delete("/actions/{action_id}", status_code=status.HTTP_204_NO_CONTENT)
async def delete_action(
    action_id: str,
    actor: User = Depends(require_admin_dep),
    service: WorkflowService = Depends(get_workflow_service_dep),
):
    try:
        service.delete_action(action_id)
        return Response(status_code=status.HTTP_204_NO_CONTENT)
    except DomainError as e:
        raise HTTPException(status_code=e.http_status, detail=e.to_dict())
