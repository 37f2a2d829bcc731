"""Action handlers - one function per action type, dispatched through ACTION_HANDLERS"""
import json
from dataclasses import dataclass, field
from typing import Any, Callable, Dict, List, Optional

from .script_sandbox import ScriptSandbox
from .template_resolver import TemplateContext, build_bindings, ticket_view
from ..config.settings import settings
from ..domain.models import Action, Status, Ticket, Transition, User, TICKET_PROTECTED_FIELDS
from ..domain.enums import ActionType, NotificationType, EventLevel, NETWORK_ACTIONS
from ..domain.errors import ActionError, ChannelError, DomainError
from ..repositories.ticket_repo import TicketRepository
from ..services.assignment_service import AssignmentService
from ..services.notification_service import NotificationChannels
from ..services.sla_service import SlaService
from ..utils.logger import get_event_logger
from ..utils.time import utc_now, format_iso


@dataclass
class ActionServices:
    """Collaborators the handlers call out to"""
    ticket_repo: TicketRepository
    assignment: AssignmentService
    channels: NotificationChannels
    sla: SlaService
    sandbox: ScriptSandbox


@dataclass
class ActionRun:
    """
    State shared by the actions of one transition execution

    `ticket` is replaced whenever a handler changes the stored ticket, so later
    actions render templates against the latest values.
    """
    ticket: Ticket
    actor: Optional[User]
    transition: Transition
    from_status: Optional[Status]
    to_status: Optional[Status]
    services: ActionServices
    context: Dict[str, Any] = field(default_factory=dict)

    @property
    def template(self) -> TemplateContext:
        return TemplateContext.for_ticket(self.ticket, self.actor, self.context)

    @property
    def actor_id(self) -> Optional[str]:
        return self.actor.user_id if self.actor else None


ActionHandler = Callable[[Any, ActionRun], Dict[str, Any]]


def _timeout_s(timeout_ms: Optional[int]) -> float:
    return (timeout_ms or settings.channel_default_timeout_ms) / 1000.0


def deadline_seconds(action: Action) -> Optional[float]:
    """Hard deadline for network-bound actions, None for local ones"""
    config = action.action_config
    if action.action_type == ActionType.WEBHOOK:
        return config.timeout_ms / 1000.0
    if action.action_type in NETWORK_ACTIONS:
        return _timeout_s(config.timeout_ms)
    if action.action_type == ActionType.NOTIFY and config.notification_type != NotificationType.IN_APP:
        return _timeout_s(config.timeout_ms)
    return None


# ============================================================================
# Ticket mutations
# ============================================================================

def action_assign(config, run: ActionRun) -> Dict[str, Any]:
    user = run.services.assignment.resolve_assignee(
        config.assignee_rule,
        run.ticket,
        run.actor,
        assignee_id=config.assignee_id,
        role=config.role,
    )
    run.ticket = run.services.ticket_repo.assign_ticket(run.ticket.ticket_id, user.user_id)
    return {"assigned_to_id": user.user_id, "assignee_rule": config.assignee_rule.value}


def action_update_field(config, run: ActionRun) -> Dict[str, Any]:
    if config.field_name in TICKET_PROTECTED_FIELDS:
        raise ActionError(f"Field '{config.field_name}' cannot be changed by an action")
    value = run.template.resolve_value(config.field_value)
    run.ticket = run.services.ticket_repo.update_fields(run.ticket.ticket_id, {config.field_name: value})
    return {"field_name": config.field_name, "field_value": value}


def action_create_comment(config, run: ActionRun) -> Dict[str, Any]:
    content = run.template.resolve_template(config.content)
    comment = run.services.ticket_repo.append_comment(
        run.ticket.ticket_id,
        content,
        is_internal=config.is_internal,
        user_id=run.actor_id,
        source="action",
    )
    run.ticket = run.services.ticket_repo.get_ticket_or_raise(run.ticket.ticket_id)
    return {"comment_id": comment.comment_id, "content": content, "is_internal": config.is_internal}


def action_escalate(config, run: ActionRun) -> Dict[str, Any]:
    reason = run.template.resolve_template(config.reason) if config.reason else None
    run.ticket, output = run.services.sla.escalate(run.ticket, run.actor, config, reason=reason)
    return output


def action_update_sla(config, run: ActionRun) -> Dict[str, Any]:
    run.ticket, output = run.services.sla.update_sla(run.ticket, run.to_status, config)
    return output


# ============================================================================
# Notifications and outbound calls
# ============================================================================

def action_notify(config, run: ActionRun) -> Dict[str, Any]:
    recipients = run.services.assignment.resolve_recipients(config.recipients, run.ticket, run.actor)
    if not recipients:
        raise ActionError("No recipients resolved", details={"recipients": config.recipients})

    template = run.template
    title = template.resolve_template(config.title)
    message = template.resolve_template(config.message)
    channels = run.services.channels

    if config.notification_type == NotificationType.IN_APP:
        for user in recipients:
            channels.in_app.send(
                recipient_id=user.user_id,
                title=title,
                message=message,
                ticket_id=run.ticket.ticket_id,
                actor_id=run.actor_id,
            )
        return {"channel": "in_app", "recipients": [u.user_id for u in recipients], "title": title}

    if config.notification_type == NotificationType.EMAIL:
        addresses = [u.email for u in recipients if u.email]
        if not addresses:
            raise ChannelError("No recipient has an email address")
        channels.email.send(addresses, title, message, _timeout_s(config.timeout_ms))
        return {"channel": "email", "recipients": addresses, "title": title}

    chat_ids = [u.telegram_id for u in recipients if u.telegram_id]
    if not chat_ids:
        raise ChannelError("No recipient has a linked Telegram chat")
    text = f"<b>{title}</b>\n{message}"
    sent = _send_telegram(run, chat_ids, text, "HTML", config.timeout_ms)
    return {"channel": "telegram", "chat_ids": sent}


def action_send_email(config, run: ActionRun) -> Dict[str, Any]:
    # Entries with an @ are addresses; anything else is a recipient token or user id
    addresses = [r for r in config.recipients if "@" in r]
    tokens = [r for r in config.recipients if "@" not in r]
    if tokens:
        users = run.services.assignment.resolve_recipients(tokens, run.ticket, run.actor)
        addresses.extend(u.email for u in users if u.email)
    addresses = list(dict.fromkeys(addresses))
    if not addresses:
        raise ChannelError("No email recipients resolved", details={"recipients": config.recipients})

    template = run.template
    subject = template.resolve_template(config.subject)
    body = template.resolve_template(config.body)
    result = run.services.channels.email.send(
        addresses, subject, body, _timeout_s(config.timeout_ms), is_html=config.is_html
    )
    return {"recipients": addresses, "subject": subject, "status_code": result.get("status_code")}


def action_send_telegram(config, run: ActionRun) -> Dict[str, Any]:
    chat_ids = list(config.chat_ids)
    if config.recipients:
        users = run.services.assignment.resolve_recipients(config.recipients, run.ticket, run.actor)
        chat_ids.extend(u.telegram_id for u in users if u.telegram_id)
    chat_ids = list(dict.fromkeys(chat_ids))
    if not chat_ids:
        raise ChannelError("No Telegram chats resolved")

    text = run.template.resolve_template(config.message)
    sent = _send_telegram(run, chat_ids, text, config.parse_mode, config.timeout_ms)
    return {"chat_ids": sent, "message": text}


def _send_telegram(
    run: ActionRun,
    chat_ids: List[str],
    text: str,
    parse_mode: Optional[str],
    timeout_ms: Optional[int],
) -> List[str]:
    """Send to every chat; raises after trying all of them when any failed"""
    sent: List[str] = []
    failed: Dict[str, str] = {}
    for chat_id in chat_ids:
        try:
            run.services.channels.telegram.send_message(
                chat_id, text, _timeout_s(timeout_ms), parse_mode=parse_mode
            )
            sent.append(chat_id)
        except DomainError as e:
            failed[chat_id] = e.message
    if failed:
        raise ChannelError(
            f"Telegram delivery failed for {len(failed)} of {len(chat_ids)} chat(s)",
            details={"sent": sent, "failed": failed}
        )
    return sent


def action_webhook(config, run: ActionRun) -> Dict[str, Any]:
    template = run.template
    url = template.resolve_template(config.url)
    headers = {name: template.resolve_template(value) for name, value in config.headers.items()}
    if config.body is not None:
        body = template.resolve_value(config.body)
    else:
        body = {
            "event": "workflow_transition",
            "transition_id": run.transition.transition_id,
            "ticket": ticket_view(run.ticket),
            "user": run.actor.public_view() if run.actor else None,
            "context": run.context,
            "timestamp": format_iso(utc_now()),
        }
    result = run.services.channels.webhook.invoke(
        config.method.value, url, headers, body, config.timeout_ms / 1000.0
    )
    return {"url": url, "method": config.method.value, **result}


# ============================================================================
# Script and event log
# ============================================================================

def action_script(config, run: ActionRun) -> Dict[str, Any]:
    bindings = build_bindings(run.ticket, run.actor, run.context)
    value = run.services.sandbox.run(config.script, bindings, timeout_ms=config.timeout_ms)
    # Script results are stored in history; keep them JSON-shaped
    return {"result": json.loads(json.dumps(value, default=str))}


def action_log_event(config, run: ActionRun) -> Dict[str, Any]:
    template = run.template
    message = template.resolve_template(config.message)
    data = template.resolve_value(config.data)
    level = {
        EventLevel.DEBUG: 10,
        EventLevel.INFO: 20,
        EventLevel.WARNING: 30,
        EventLevel.ERROR: 40,
    }[config.level]
    get_event_logger().log(
        level,
        message,
        extra={
            "event": config.event,
            "event_data": data,
            "ticket_id": run.ticket.ticket_id,
            "transition_id": run.transition.transition_id,
            "user_id": run.actor_id,
        }
    )
    return {"event": config.event, "message": message, "level": config.level.value}


ACTION_HANDLERS: Dict[ActionType, ActionHandler] = {
    ActionType.ASSIGN: action_assign,
    ActionType.NOTIFY: action_notify,
    ActionType.UPDATE_FIELD: action_update_field,
    ActionType.CREATE_COMMENT: action_create_comment,
    ActionType.SEND_EMAIL: action_send_email,
    ActionType.SEND_TELEGRAM: action_send_telegram,
    ActionType.WEBHOOK: action_webhook,
    ActionType.ESCALATE: action_escalate,
    ActionType.UPDATE_SLA: action_update_sla,
    ActionType.SCRIPT: action_script,
    ActionType.LOG_EVENT: action_log_event,
}
