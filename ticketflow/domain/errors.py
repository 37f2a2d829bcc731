"""Domain Errors - Centralized Exception Hierarchy"""
from typing import Any, Dict, Optional


class DomainError(Exception):
    """Base domain error - all errors extend this"""

    error_code: str = "DOMAIN_ERROR"
    http_status: int = 400

    def __init__(
        self,
        message: str,
        details: Optional[Dict[str, Any]] = None,
        error_code: Optional[str] = None
    ):
        super().__init__(message)
        self.message = message
        self.details = details or {}
        if error_code:
            self.error_code = error_code

    def to_dict(self) -> Dict[str, Any]:
        """Convert error to API response dict"""
        return {
            "error": {
                "code": self.error_code,
                "message": self.message,
                "details": self.details
            }
        }


# Authentication & Authorization Errors
class AuthenticationError(DomainError):
    """Acting user missing or unknown"""
    error_code = "AUTHENTICATION_ERROR"
    http_status = 401


class AuthorizationError(DomainError):
    """User lacks permission for action"""
    error_code = "AUTHORIZATION_ERROR"
    http_status = 403


# Validation Errors
class ValidationError(DomainError):
    """Input validation failed"""
    error_code = "VALIDATION_ERROR"
    http_status = 400


class DefinitionValidationError(ValidationError):
    """Workflow definition payload is malformed"""
    error_code = "DEFINITION_VALIDATION_ERROR"


class GuardError(ValidationError):
    """Guard phase rejected a transition - nothing was committed"""
    error_code = "GUARD_FAILED"


class TransitionInactiveError(GuardError):
    """Transition is disabled"""
    error_code = "TRANSITION_INACTIVE"


class StatusMismatchError(GuardError):
    """Ticket is not in the transition's source status"""
    error_code = "STATUS_MISMATCH"


class RoleNotAllowedError(GuardError):
    """Acting user's role is not in the transition's allowed roles"""
    error_code = "ROLE_NOT_ALLOWED"


class ConditionsNotMetError(GuardError):
    """At least one condition group evaluated to false"""
    error_code = "CONDITIONS_NOT_MET"


class CommentRequiredError(GuardError):
    """Transition requires a non-blank comment"""
    error_code = "COMMENT_REQUIRED"


class AssignmentRequiredError(GuardError):
    """Transition requires an assignee"""
    error_code = "ASSIGNMENT_REQUIRED"


class InvalidAssigneeError(GuardError):
    """Requested assignee does not exist or is inactive"""
    error_code = "INVALID_ASSIGNEE"


# Not Found Errors
class NotFoundError(DomainError):
    """Resource not found"""
    error_code = "NOT_FOUND"
    http_status = 404


class WorkflowTypeNotFoundError(NotFoundError):
    error_code = "WORKFLOW_TYPE_NOT_FOUND"


class StatusNotFoundError(NotFoundError):
    error_code = "STATUS_NOT_FOUND"


class TransitionNotFoundError(NotFoundError):
    error_code = "TRANSITION_NOT_FOUND"


class ConditionNotFoundError(NotFoundError):
    error_code = "CONDITION_NOT_FOUND"


class ActionNotFoundError(NotFoundError):
    error_code = "ACTION_NOT_FOUND"


class TicketNotFoundError(NotFoundError):
    error_code = "TICKET_NOT_FOUND"


class UserNotFoundError(NotFoundError):
    error_code = "USER_NOT_FOUND"


class WorkflowVersionNotFoundError(NotFoundError):
    error_code = "WORKFLOW_VERSION_NOT_FOUND"


# Conflict Errors
class ConflictError(DomainError):
    """Resource conflict (e.g., concurrent modification)"""
    error_code = "CONFLICT"
    http_status = 409


class ConcurrencyError(ConflictError):
    """Optimistic concurrency conflict"""
    error_code = "CONCURRENCY_CONFLICT"


class AlreadyExistsError(ConflictError):
    """Resource already exists"""
    error_code = "ALREADY_EXISTS"


class ReferentialIntegrityError(ConflictError):
    """Removal would leave dangling references"""
    error_code = "REFERENTIAL_INTEGRITY"


class DefinitionIntegrityError(ConflictError):
    """Definition graph would break a structural invariant"""
    error_code = "DEFINITION_INTEGRITY"


# Action Errors - captured per action, never raised out of Execute
class ActionError(DomainError):
    """A single action failed"""
    error_code = "ACTION_FAILED"
    http_status = 502


class ActionTimeoutError(ActionError):
    """Action exceeded its deadline"""
    error_code = "ACTION_TIMEOUT"
    http_status = 504


class ChannelError(ActionError):
    """Notification channel unavailable or rejected the message"""
    error_code = "CHANNEL_ERROR"


class WebhookError(ChannelError):
    """Webhook target returned a non-2xx response"""
    error_code = "WEBHOOK_ERROR"


class ScriptError(ActionError):
    """Sandboxed script raised or was rejected"""
    error_code = "SCRIPT_ERROR"


# Engine Errors
class EngineError(DomainError):
    """Workflow engine error"""
    error_code = "ENGINE_ERROR"
    http_status = 500


class HistoryRecordingError(EngineError):
    """History entry could not be persisted after retries"""
    error_code = "SYSTEM_ERROR"
