"""Domain Models - Pydantic schemas for workflow definitions, tickets and history"""
import json
import re
from datetime import datetime
from typing import Annotated, Any, Dict, List, Optional
from pydantic import BaseModel, Field, EmailStr, ConfigDict, AfterValidator, field_validator, model_validator

from .enums import (
    StatusCategory, ConditionType, ConditionOperator, ActionType, UserRole,
    NotificationCategory, CONDITION_OPERATORS, ARRAY_OPERATORS, UNARY_OPERATORS
)
from .action_configs import ActionConfig
from ..utils.time import ensure_utc


UtcDatetime = Annotated[datetime, AfterValidator(ensure_utc)]
LocalizedText = Dict[str, str]

NAME_PATTERN = r"^[a-zA-Z0-9_]+$"
COLOR_PATTERN = r"^#[0-9a-fA-F]{6}$"


def _require_locale(value: Optional[LocalizedText]) -> Optional[LocalizedText]:
    if value is not None and not any((text or "").strip() for text in value.values()):
        raise ValueError("display_name needs at least one non-empty locale")
    return value


# ============================================================================
# Workflow Definition
# ============================================================================

class WorkflowType(BaseModel):
    """Tenant-scoped workflow definition header"""
    model_config = ConfigDict(extra="forbid")

    workflow_type_id: str = Field(..., description="Unique workflow type ID")
    tenant_id: str = Field("default", description="Owning tenant")
    name: str = Field(..., pattern=NAME_PATTERN, max_length=100)
    display_name: LocalizedText = Field(..., description="Localized display name")
    description: Optional[LocalizedText] = None
    icon: str = "account_tree"
    color: str = Field("#1976d2", pattern=COLOR_PATTERN)
    is_active: bool = True
    is_default: bool = False
    created_by_id: Optional[str] = None
    created_at: Optional[UtcDatetime] = None
    updated_at: Optional[UtcDatetime] = None

    @field_validator("display_name")
    @classmethod
    def _check_display_name(cls, value: LocalizedText) -> LocalizedText:
        return _require_locale(value)


class Status(BaseModel):
    """A state a ticket can occupy"""
    model_config = ConfigDict(extra="forbid")

    status_id: str = Field(..., description="Unique status ID")
    workflow_type_id: str
    name: str = Field(..., pattern=NAME_PATTERN, max_length=100)
    display_name: LocalizedText
    description: Optional[LocalizedText] = None
    color: str = Field("#757575", pattern=COLOR_PATTERN)
    icon: str = "circle"
    category: StatusCategory = StatusCategory.OPEN
    is_initial: bool = False
    is_final: bool = False
    sort_order: int = 0
    sla_hours: Optional[float] = Field(None, ge=0)
    response_hours: Optional[float] = Field(None, ge=0)
    auto_assign: bool = False
    notify_on_enter: bool = False
    notify_on_exit: bool = False
    is_active: bool = True
    created_at: Optional[UtcDatetime] = None
    updated_at: Optional[UtcDatetime] = None

    @field_validator("display_name")
    @classmethod
    def _check_display_name(cls, value: LocalizedText) -> LocalizedText:
        return _require_locale(value)

    def display(self, locale: str = "en") -> str:
        """Localized name with fallback to any locale, then the technical name"""
        return self.display_name.get(locale) or next(iter(self.display_name.values()), self.name)


class Condition(BaseModel):
    """A guard predicate; same group = OR, different groups = AND"""
    model_config = ConfigDict(extra="forbid")

    condition_id: str
    transition_id: str
    condition_type: ConditionType
    field_name: Optional[str] = None
    operator: ConditionOperator = ConditionOperator.EQUALS
    expected_value: Optional[str] = Field(None, description="JSON array for in/not_in/between, text otherwise")
    condition_group: int = Field(1, ge=1)
    is_active: bool = True

    @field_validator("expected_value", mode="before")
    @classmethod
    def _encode_expected(cls, value: Any) -> Any:
        # Imports may carry real JSON values; store the string encoding
        if isinstance(value, (list, dict)):
            return json.dumps(value)
        if isinstance(value, bool):
            return "true" if value else "false"
        if isinstance(value, (int, float)):
            return str(value)
        return value

    @model_validator(mode="after")
    def _check_operator(self) -> "Condition":
        allowed = CONDITION_OPERATORS[self.condition_type]
        if self.operator not in allowed:
            raise ValueError(
                f"operator '{self.operator.value}' is not valid for {self.condition_type.value} conditions"
            )
        if self.condition_type == ConditionType.FIELD and not (self.field_name or "").strip():
            raise ValueError("field_name is required for field conditions")
        if self.condition_type == ConditionType.CUSTOM and not (self.expected_value or "").strip():
            raise ValueError("custom conditions need a script in expected_value")
        if self.operator in UNARY_OPERATORS:
            return self
        if self.expected_value is None:
            raise ValueError(f"expected_value is required for operator '{self.operator.value}'")
        if self.operator in ARRAY_OPERATORS:
            try:
                parsed = json.loads(self.expected_value)
            except ValueError:
                raise ValueError(f"expected_value for '{self.operator.value}' must be a JSON array")
            if not isinstance(parsed, list):
                raise ValueError(f"expected_value for '{self.operator.value}' must be a JSON array")
            if self.operator == ConditionOperator.BETWEEN and len(parsed) != 2:
                raise ValueError("expected_value for 'between' must be [min, max]")
        if self.condition_type in (ConditionType.TIME, ConditionType.SLA) and self.operator in (
            ConditionOperator.GREATER_THAN, ConditionOperator.LESS_THAN
        ):
            try:
                float(self.expected_value)
            except ValueError:
                raise ValueError("expected_value must be a number of minutes")
        if self.operator == ConditionOperator.REGEX:
            try:
                re.compile(self.expected_value)
            except re.error as e:
                raise ValueError(f"invalid regex: {e}")
        return self


class Action(BaseModel):
    """An ordered side effect run after a transition commits"""
    model_config = ConfigDict(extra="forbid")

    action_id: str
    transition_id: str
    action_type: ActionType
    action_config: ActionConfig
    execution_order: int = Field(0, ge=0)
    is_active: bool = True

    @model_validator(mode="before")
    @classmethod
    def _tag_config(cls, data: Any) -> Any:
        if isinstance(data, dict) and data.get("action_type"):
            config = data.get("action_config")
            if config is None or isinstance(config, dict):
                config = dict(config or {})
                config.setdefault("action_type", ActionType(data["action_type"]).value)
                data = {**data, "action_config": config}
        return data

    @model_validator(mode="after")
    def _check_tag(self) -> "Action":
        if self.action_config.action_type != self.action_type.value:
            raise ValueError("action_config does not match action_type")
        return self


class Transition(BaseModel):
    """A guarded edge between statuses (from_status_id None = any status)"""
    model_config = ConfigDict(extra="forbid")

    transition_id: str
    workflow_type_id: str
    name: str = Field(..., pattern=NAME_PATTERN, max_length=100)
    display_name: LocalizedText
    description: Optional[LocalizedText] = None
    from_status_id: Optional[str] = None
    to_status_id: str
    icon: str = "arrow_forward"
    color: str = Field("#1976d2", pattern=COLOR_PATTERN)
    is_automatic: bool = False
    requires_comment: bool = False
    requires_assignment: bool = False
    allowed_roles: List[str] = Field(default_factory=list, description="Empty = unrestricted")
    sort_order: int = 0
    is_active: bool = True
    conditions: List[Condition] = Field(default_factory=list)
    actions: List[Action] = Field(default_factory=list)
    created_at: Optional[UtcDatetime] = None
    updated_at: Optional[UtcDatetime] = None

    @field_validator("display_name")
    @classmethod
    def _check_display_name(cls, value: LocalizedText) -> LocalizedText:
        return _require_locale(value)

    @field_validator("allowed_roles")
    @classmethod
    def _dedupe_roles(cls, roles: List[str]) -> List[str]:
        seen: List[str] = []
        for role in roles:
            role = role.strip()
            if role and role not in seen:
                seen.append(role)
        return seen

    @property
    def is_wildcard(self) -> bool:
        return self.from_status_id is None

    def applies_to(self, status_id: str) -> bool:
        return self.from_status_id is None or self.from_status_id == status_id

    def allows_role(self, role: Optional[str]) -> bool:
        return not self.allowed_roles or (role is not None and role in self.allowed_roles)

    def active_conditions(self) -> List[Condition]:
        return [c for c in self.conditions if c.is_active]

    def display(self, locale: str = "en") -> str:
        return self.display_name.get(locale) or next(iter(self.display_name.values()), self.name)


class WorkflowDefinition(BaseModel):
    """
    Aggregate root: a workflow type with the statuses and transitions it owns.

    Statuses and transitions are keyed by ID; transitions own their conditions
    and actions. Stored as one document so edits are versioned together.
    """
    model_config = ConfigDict(extra="forbid")

    workflow_type: WorkflowType
    statuses: Dict[str, Status] = Field(default_factory=dict)
    transitions: Dict[str, Transition] = Field(default_factory=dict)
    version: int = Field(1, ge=1)

    @property
    def workflow_type_id(self) -> str:
        return self.workflow_type.workflow_type_id

    def initial_status(self) -> Optional[Status]:
        return next((s for s in self.statuses.values() if s.is_initial), None)

    def get_status(self, status_id: str) -> Optional[Status]:
        return self.statuses.get(status_id)

    def get_transition(self, transition_id: str) -> Optional[Transition]:
        return self.transitions.get(transition_id)

    def status_by_name(self, name: str) -> Optional[Status]:
        return next((s for s in self.statuses.values() if s.name == name), None)

    def transition_by_name(self, name: str) -> Optional[Transition]:
        return next((t for t in self.transitions.values() if t.name == name), None)

    def active_transitions_from(self, status_id: str) -> List[Transition]:
        """Active transitions leaving status_id (including wildcards), by sort_order"""
        candidates = [
            t for t in self.transitions.values()
            if t.is_active and t.applies_to(status_id)
        ]
        return sorted(candidates, key=lambda t: (t.sort_order, t.name))

    def transitions_referencing(self, status_id: str) -> List[Transition]:
        return [
            t for t in self.transitions.values()
            if t.from_status_id == status_id or t.to_status_id == status_id
        ]

    def sorted_statuses(self) -> List[Status]:
        return sorted(self.statuses.values(), key=lambda s: (s.sort_order, s.name))


# ============================================================================
# External collaborators: tickets and users
# ============================================================================

class TicketComment(BaseModel):
    """Comment embedded in the ticket document"""
    model_config = ConfigDict(extra="ignore")

    comment_id: str
    content: str
    is_internal: bool = False
    user_id: Optional[str] = None
    source: str = Field("user", description="user | transition | action")
    created_at: UtcDatetime


# Ticket attributes stored at the top level; anything else lives in custom_fields
TICKET_CORE_FIELDS = frozenset({"title", "description", "priority", "category", "tags"})

# Attributes only the engine itself may change
TICKET_PROTECTED_FIELDS = frozenset({
    "ticket_id", "tenant_id", "workflow_type_id", "status_id", "assigned_to_id",
    "created_by_id", "comments", "version", "created_at", "updated_at",
    "last_transition_at", "sla_deadline", "response_deadline", "sla_breach", "sla_warning_sent",
    "escalation_level", "escalated_at",
})


class Ticket(BaseModel):
    """Ticket as seen by the engine"""
    model_config = ConfigDict(extra="ignore")

    ticket_id: str
    tenant_id: str = "default"
    title: str
    description: Optional[str] = None
    priority: str = "medium"
    category: Optional[str] = None
    workflow_type_id: str
    status_id: str
    assigned_to_id: Optional[str] = None
    created_by_id: Optional[str] = None
    tags: List[str] = Field(default_factory=list)
    custom_fields: Dict[str, Any] = Field(default_factory=dict)
    comments: List[TicketComment] = Field(default_factory=list)
    sla_deadline: Optional[UtcDatetime] = None
    response_deadline: Optional[UtcDatetime] = None
    sla_breach: bool = False
    sla_warning_sent: bool = False
    escalation_level: int = 0
    escalated_at: Optional[UtcDatetime] = None
    last_transition_at: Optional[UtcDatetime] = None
    created_at: UtcDatetime
    updated_at: Optional[UtcDatetime] = None
    version: int = 1


class User(BaseModel):
    """Directory entry"""
    model_config = ConfigDict(extra="ignore")

    user_id: str
    email: Optional[EmailStr] = None
    display_name: str
    role: str = UserRole.USER.value
    is_active: bool = True
    telegram_id: Optional[str] = None
    last_assigned_at: Optional[UtcDatetime] = None
    last_login_at: Optional[UtcDatetime] = None
    created_at: Optional[UtcDatetime] = None

    @classmethod
    def system(cls, user_id: str = "system") -> "User":
        """Actor used for scheduler-driven transitions"""
        return cls(user_id=user_id, display_name="System", role=UserRole.SYSTEM.value)

    def public_view(self) -> Dict[str, Any]:
        """Fields exposed to templates and scripts"""
        return {
            "user_id": self.user_id,
            "email": self.email,
            "display_name": self.display_name,
            "role": self.role,
        }


class InAppNotification(BaseModel):
    """In-app notification for a user"""
    model_config = ConfigDict(extra="ignore")

    notification_id: str
    recipient_id: str
    title: str
    message: str
    category: NotificationCategory = NotificationCategory.WORKFLOW_ACTION
    ticket_id: Optional[str] = None
    actor_id: Optional[str] = None
    is_read: bool = False
    created_at: UtcDatetime


# ============================================================================
# Execution & History
# ============================================================================

class ExecuteOptions(BaseModel):
    """Caller-supplied inputs for a transition execution"""
    model_config = ConfigDict(extra="forbid")

    comment: Optional[str] = None
    assignee_id: Optional[str] = None
    context: Dict[str, Any] = Field(default_factory=dict, description="Extra template/script bindings")

    @property
    def has_comment(self) -> bool:
        return bool(self.comment and self.comment.strip())


class ConditionTrace(BaseModel):
    """One condition's evaluation result"""
    condition_id: str
    condition_group: int
    condition_type: ConditionType
    result: bool
    reason: Optional[str] = None
    error: Optional[str] = None


class GuardEvaluation(BaseModel):
    """Outcome of evaluating a transition's guard"""
    allowed: bool
    trace: List[ConditionTrace] = Field(default_factory=list)
    failed_groups: List[int] = Field(default_factory=list)


class ActionOutcome(BaseModel):
    """One action's result inside a pipeline run"""
    action_id: str
    action_type: ActionType
    execution_order: int
    success: bool
    output: Optional[Dict[str, Any]] = None
    error: Optional[str] = None
    error_code: Optional[str] = None
    duration_ms: int = 0


class StatusSnapshot(BaseModel):
    """Display fields of a status frozen at execution time"""
    status_id: str
    name: str
    display_name: LocalizedText
    color: str
    icon: str
    category: StatusCategory

    @classmethod
    def of(cls, status: Status) -> "StatusSnapshot":
        return cls(
            status_id=status.status_id,
            name=status.name,
            display_name=dict(status.display_name),
            color=status.color,
            icon=status.icon,
            category=status.category,
        )


class TransitionSnapshot(BaseModel):
    """Display fields of a transition frozen at execution time"""
    transition_id: str
    name: str
    display_name: LocalizedText

    @classmethod
    def of(cls, transition: Transition) -> "TransitionSnapshot":
        return cls(
            transition_id=transition.transition_id,
            name=transition.name,
            display_name=dict(transition.display_name),
        )


class HistoryEntry(BaseModel):
    """Immutable audit record of one transition execution attempt"""
    model_config = ConfigDict(extra="ignore", frozen=True)

    history_id: str
    ticket_id: str
    workflow_type_id: Optional[str] = None
    transition_id: str
    transition: Optional[TransitionSnapshot] = None
    from_status: Optional[StatusSnapshot] = None
    to_status: Optional[StatusSnapshot] = None
    user_id: Optional[str] = None
    user_display_name: Optional[str] = None
    success: bool
    error_code: Optional[str] = None
    error_message: Optional[str] = None
    conditions_result: Optional[List[ConditionTrace]] = None
    actions_result: Optional[List[ActionOutcome]] = None
    metadata: Optional[Dict[str, Any]] = None
    execution_duration_ms: int = 0
    created_at: UtcDatetime


class HistoryPage(BaseModel):
    """Page of history entries, newest first"""
    items: List[HistoryEntry]
    page: int
    limit: int
    total: int

    @property
    def has_more(self) -> bool:
        return self.page * self.limit < self.total


class ValidationReport(BaseModel):
    """Result of validating a workflow definition"""
    workflow_type_id: str
    is_valid: bool
    errors: List[str] = Field(default_factory=list)
    warnings: List[str] = Field(default_factory=list)
    unreachable_status_ids: List[str] = Field(default_factory=list)


class WorkflowStats(BaseModel):
    """Execution statistics for a workflow type"""
    workflow_type_id: str
    date_from: Optional[UtcDatetime] = None
    date_to: Optional[UtcDatetime] = None
    total_executions: int = 0
    successful_executions: int = 0
    failed_executions: int = 0
    success_rate: float = 0.0
    failure_rate: float = 0.0
    avg_duration_ms: float = 0.0
    min_duration_ms: int = 0
    max_duration_ms: int = 0
    by_target_status: Dict[str, int] = Field(default_factory=dict)
    failed_actions: int = 0


class WorkflowVersion(BaseModel):
    """Numbered configuration snapshot of a workflow type"""
    model_config = ConfigDict(extra="ignore")

    version_id: str
    workflow_type_id: str
    version_number: int = Field(..., ge=1)
    description: Optional[str] = Field(None, max_length=1000)
    configuration: Dict[str, Any] = Field(..., description="Export document of the definition")
    definition_version: int = Field(1, description="Aggregate version the snapshot was taken from")
    is_active: bool = False
    created_by_id: Optional[str] = None
    created_at: UtcDatetime
    activated_at: Optional[UtcDatetime] = None


class WorkflowVersionPage(BaseModel):
    """Page of versions, highest version_number first"""
    items: List[WorkflowVersion]
    page: int
    limit: int
    total: int

    @property
    def total_pages(self) -> int:
        return -(-self.total // self.limit) if self.limit else 0
