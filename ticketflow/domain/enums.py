"""Domain Enumerations - Workflow definition and execution types"""
from enum import Enum
from typing import Dict, FrozenSet


class StatusCategory(str, Enum):
    """Lifecycle bucket a status belongs to"""
    OPEN = "open"
    ACTIVE = "active"
    PENDING = "pending"
    RESOLVED = "resolved"
    CLOSED = "closed"


class ConditionType(str, Enum):
    """Kinds of guard predicates"""
    FIELD = "field"
    ROLE = "role"
    TIME = "time"
    SLA = "sla"
    ASSIGNMENT = "assignment"
    CUSTOM = "custom"


class ConditionOperator(str, Enum):
    """Comparison operators for conditions"""
    EQUALS = "equals"
    NOT_EQUALS = "not_equals"
    GREATER_THAN = "greater_than"
    LESS_THAN = "less_than"
    GREATER_OR_EQUAL = "greater_or_equal"
    LESS_OR_EQUAL = "less_or_equal"
    CONTAINS = "contains"
    NOT_CONTAINS = "not_contains"
    STARTS_WITH = "starts_with"
    ENDS_WITH = "ends_with"
    IS_EMPTY = "is_empty"
    IS_NOT_EMPTY = "is_not_empty"
    IN = "in"
    NOT_IN = "not_in"
    REGEX = "regex"
    BETWEEN = "between"  # expected value is a JSON [min, max] pair


# Operators accepted per condition type
CONDITION_OPERATORS: Dict[ConditionType, FrozenSet[ConditionOperator]] = {
    ConditionType.FIELD: frozenset(ConditionOperator),
    ConditionType.ROLE: frozenset({
        ConditionOperator.EQUALS,
        ConditionOperator.NOT_EQUALS,
        ConditionOperator.IN,
        ConditionOperator.NOT_IN,
    }),
    ConditionType.TIME: frozenset({
        ConditionOperator.GREATER_THAN,
        ConditionOperator.LESS_THAN,
    }),
    ConditionType.SLA: frozenset({
        ConditionOperator.EQUALS,
        ConditionOperator.NOT_EQUALS,
        ConditionOperator.GREATER_THAN,
        ConditionOperator.LESS_THAN,
    }),
    ConditionType.ASSIGNMENT: frozenset({
        ConditionOperator.IS_EMPTY,
        ConditionOperator.IS_NOT_EMPTY,
        ConditionOperator.EQUALS,
    }),
    ConditionType.CUSTOM: frozenset({ConditionOperator.EQUALS}),
}

# Operators whose expected value must be a JSON array
ARRAY_OPERATORS = frozenset({ConditionOperator.IN, ConditionOperator.NOT_IN, ConditionOperator.BETWEEN})

# Operators that ignore the expected value
UNARY_OPERATORS = frozenset({ConditionOperator.IS_EMPTY, ConditionOperator.IS_NOT_EMPTY})


class ActionType(str, Enum):
    """Side effects a transition can trigger"""
    ASSIGN = "assign"
    NOTIFY = "notify"
    UPDATE_FIELD = "update_field"
    CREATE_COMMENT = "create_comment"
    SEND_EMAIL = "send_email"
    SEND_TELEGRAM = "send_telegram"
    WEBHOOK = "webhook"
    ESCALATE = "escalate"
    UPDATE_SLA = "update_sla"
    SCRIPT = "script"
    LOG_EVENT = "log_event"


# Actions that call out to external systems and get their own timeout
NETWORK_ACTIONS = frozenset({ActionType.WEBHOOK, ActionType.SEND_EMAIL, ActionType.SEND_TELEGRAM})


class AssigneeRule(str, Enum):
    """How an assign action picks its target"""
    ROUND_ROBIN = "round_robin"
    LEAST_ASSIGNED = "least_assigned"
    CREATOR = "creator"
    CURRENT_USER = "current_user"
    SPECIFIC_USER = "specific_user"


class NotificationType(str, Enum):
    """Delivery channel for notify actions"""
    IN_APP = "in_app"
    EMAIL = "email"
    TELEGRAM = "telegram"


class HttpMethod(str, Enum):
    """Webhook HTTP methods"""
    GET = "GET"
    POST = "POST"
    PUT = "PUT"
    PATCH = "PATCH"
    DELETE = "DELETE"


class EventLevel(str, Enum):
    """Levels accepted by log_event actions"""
    DEBUG = "debug"
    INFO = "info"
    WARNING = "warning"
    ERROR = "error"


class UserRole(str, Enum):
    """Directory roles"""
    ADMIN = "admin"
    AGENT = "agent"
    USER = "user"
    SYSTEM = "system"  # scheduler-driven executions


class NotificationCategory(str, Enum):
    """What produced an in-app notification"""
    WORKFLOW_ACTION = "workflow_action"
    STATUS_ENTERED = "status_entered"
    STATUS_EXITED = "status_exited"
    ESCALATION = "escalation"
    SLA_BREACH = "sla_breach"
    SLA_WARNING = "sla_warning"
