"""Action Configs - Typed payload per action type (tagged by action_type)"""
from typing import Annotated, Any, Dict, List, Literal, Optional, Union
from pydantic import BaseModel, Field, ConfigDict, model_validator

from .enums import AssigneeRule, NotificationType, HttpMethod, EventLevel


class _ActionConfigBase(BaseModel):
    model_config = ConfigDict(extra="forbid")


class AssignActionConfig(_ActionConfigBase):
    """Assign the ticket to a user resolved through a rule"""
    action_type: Literal["assign"] = "assign"
    assignee_rule: AssigneeRule = Field(..., description="How the target user is resolved")
    assignee_id: Optional[str] = Field(None, description="Target user for specific_user")
    role: str = Field("agent", description="Candidate pool role for round_robin / least_assigned")

    @model_validator(mode="before")
    @classmethod
    def _infer_rule(cls, data: Any) -> Any:
        # A bare assignee_id means "assign to this user"
        if isinstance(data, dict) and not data.get("assignee_rule") and data.get("assignee_id"):
            data = {**data, "assignee_rule": AssigneeRule.SPECIFIC_USER.value}
        return data

    @model_validator(mode="after")
    def _check_specific_user(self) -> "AssignActionConfig":
        if self.assignee_rule == AssigneeRule.SPECIFIC_USER and not self.assignee_id:
            raise ValueError("assignee_id is required for assignee_rule=specific_user")
        return self


class NotifyActionConfig(_ActionConfigBase):
    """Notify resolved recipients over one channel"""
    action_type: Literal["notify"] = "notify"
    notification_type: NotificationType = NotificationType.IN_APP
    recipients: List[str] = Field(
        ..., min_length=1,
        description="Tokens (assignee, creator, current_user, admins, role:<name>) or user ids"
    )
    title: str = "Ticket {{ticket.ticket_id}} updated"
    message: str = "{{ticket.title}} is now {{context.to_status_name}}"
    timeout_ms: Optional[int] = Field(None, gt=0)


class SendEmailActionConfig(_ActionConfigBase):
    """Send an email through the mail channel"""
    action_type: Literal["send_email"] = "send_email"
    recipients: List[str] = Field(..., min_length=1, description="Email addresses, user ids or tokens")
    subject: str = Field(..., min_length=1)
    body: str = Field(..., min_length=1)
    is_html: bool = True
    timeout_ms: Optional[int] = Field(None, gt=0)


class SendTelegramActionConfig(_ActionConfigBase):
    """Send a Telegram message to users with a linked chat or explicit chats"""
    action_type: Literal["send_telegram"] = "send_telegram"
    recipients: List[str] = Field(default_factory=list, description="User ids or tokens")
    chat_ids: List[str] = Field(default_factory=list, description="Explicit chat ids / @channels")
    message: str = Field(..., min_length=1)
    parse_mode: Optional[str] = "HTML"
    timeout_ms: Optional[int] = Field(None, gt=0)

    @model_validator(mode="after")
    def _check_targets(self) -> "SendTelegramActionConfig":
        if not self.recipients and not self.chat_ids:
            raise ValueError("send_telegram needs recipients or chat_ids")
        return self


class WebhookActionConfig(_ActionConfigBase):
    """Call an external HTTP endpoint"""
    action_type: Literal["webhook"] = "webhook"
    url: str = Field(..., min_length=1)
    method: HttpMethod = HttpMethod.POST
    headers: Dict[str, str] = Field(default_factory=dict)
    body: Optional[Any] = Field(None, description="Templated JSON body; default payload when omitted")
    timeout_ms: int = Field(10000, gt=0)

    @model_validator(mode="after")
    def _check_url(self) -> "WebhookActionConfig":
        if not (self.url.startswith("http://") or self.url.startswith("https://") or self.url.startswith("{{")):
            raise ValueError("webhook url must be http(s)")
        return self


class UpdateFieldActionConfig(_ActionConfigBase):
    """Set a ticket field to a template-resolved value"""
    action_type: Literal["update_field"] = "update_field"
    field_name: str = Field(..., min_length=1)
    field_value: Any = None


class CreateCommentActionConfig(_ActionConfigBase):
    """Append a template-resolved comment"""
    action_type: Literal["create_comment"] = "create_comment"
    content: str = Field(..., min_length=1)
    is_internal: bool = False


class EscalateActionConfig(_ActionConfigBase):
    """Bump escalation bookkeeping, optionally reassign and alert admins"""
    action_type: Literal["escalate"] = "escalate"
    reason: Optional[str] = None
    escalate_to_id: Optional[str] = None
    level_increment: int = Field(1, ge=1)
    notify_admins: bool = True


class UpdateSlaActionConfig(_ActionConfigBase):
    """Recompute SLA deadlines"""
    action_type: Literal["update_sla"] = "update_sla"
    sla_hours: Optional[float] = Field(None, gt=0, description="Falls back to the target status sla_hours")
    response_hours: Optional[float] = Field(None, gt=0)
    reset_breach: bool = True


class ScriptActionConfig(_ActionConfigBase):
    """Run sandboxed code with ticket/user/context bindings"""
    action_type: Literal["script"] = "script"
    script: str = Field(..., min_length=1)
    timeout_ms: Optional[int] = Field(None, gt=0)


class LogEventActionConfig(_ActionConfigBase):
    """Write a structured entry to the event log"""
    action_type: Literal["log_event"] = "log_event"
    event: str = "workflow_action"
    message: str = "Workflow action executed"
    level: EventLevel = EventLevel.INFO
    data: Dict[str, Any] = Field(default_factory=dict)


ActionConfig = Annotated[
    Union[
        AssignActionConfig,
        NotifyActionConfig,
        SendEmailActionConfig,
        SendTelegramActionConfig,
        WebhookActionConfig,
        UpdateFieldActionConfig,
        CreateCommentActionConfig,
        EscalateActionConfig,
        UpdateSlaActionConfig,
        ScriptActionConfig,
        LogEventActionConfig,
    ],
    Field(discriminator="action_type"),
]
