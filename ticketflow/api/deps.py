"""API Dependencies - Common dependencies for routes"""
from typing import Optional
from fastapi import Depends, Header, HTTPException, status

from ..domain.models import User
from ..domain.enums import UserRole
from ..domain.errors import AuthenticationError, AuthorizationError
from ..engine.engine import WorkflowEngine, get_engine
from ..services.workflow_service import WorkflowService
from ..utils.logger import set_correlation_id
from ..utils.idgen import generate_correlation_id


async def get_correlation_id_dep(
    x_correlation_id: Optional[str] = Header(None, alias="X-Correlation-Id")
) -> str:
    """
    Get or generate correlation ID for request tracing

    If client provides X-Correlation-Id, use it.
    Otherwise generate a new one.
    """
    correlation_id = x_correlation_id or generate_correlation_id()
    set_correlation_id(correlation_id)
    return correlation_id


def get_engine_dep() -> WorkflowEngine:
    """Process-wide workflow engine"""
    return get_engine()


def get_workflow_service_dep(engine: WorkflowEngine = Depends(get_engine_dep)) -> WorkflowService:
    """Definition service sharing the engine's store so edits are visible at once"""
    return WorkflowService(
        repo=engine.definition_store.repo,
        store=engine.definition_store,
        ticket_repo=engine.ticket_repo,
        history_repo=engine.recorder.repo,
        version_repo=engine.version_repo,
    )


async def get_current_user_dep(
    x_user_id: Optional[str] = Header(None, alias="X-User-Id"),
    engine: WorkflowEngine = Depends(get_engine_dep),
) -> User:
    """
    Dependency to get the acting user from the X-User-Id header

    The id is resolved through the user directory; identity itself is
    established upstream.

    Raises:
        HTTPException: 401 if the header is missing or the user is unknown/inactive
    """
    try:
        if not x_user_id:
            raise AuthenticationError("X-User-Id header is missing")
        user = engine.user_repo.get_user(x_user_id)
        if user is None or not user.is_active:
            raise AuthenticationError(f"Unknown or inactive user {x_user_id}")
        return user
    except AuthenticationError as e:
        raise HTTPException(status_code=status.HTTP_401_UNAUTHORIZED, detail=e.to_dict())


async def require_admin_dep(user: User = Depends(get_current_user_dep)) -> User:
    """Workflow definitions are edited by admins only"""
    if user.role != UserRole.ADMIN.value:
        e = AuthorizationError("Admin role required", details={"role": user.role})
        raise HTTPException(status_code=e.http_status, detail=e.to_dict())
    return user
