"""SLA Service - Deadlines, escalation bookkeeping and breach sweeps"""
from datetime import datetime
from typing import Any, Dict, List, Optional, Tuple

from ..config.settings import settings
from ..domain.models import Ticket, Status, User
from ..domain.action_configs import UpdateSlaActionConfig, EscalateActionConfig
from ..domain.enums import NotificationCategory
from ..domain.errors import DomainError
from ..repositories.ticket_repo import TicketRepository
from ..engine.definition_store import DefinitionStore
from .assignment_service import AssignmentService, RECIPIENT_ADMINS
from .notification_service import NotificationChannels
from ..utils.logger import get_logger
from ..utils.time import utc_now, add_hours, add_minutes, format_iso, minutes_until

logger = get_logger(__name__)


class SlaService:
    """
    SLA collaborator used by update_sla / escalate actions and the breach sweeper
    """

    def __init__(
        self,
        ticket_repo: Optional[TicketRepository] = None,
        assignment: Optional[AssignmentService] = None,
        channels: Optional[NotificationChannels] = None,
        definition_store: Optional[DefinitionStore] = None,
    ):
        self.ticket_repo = ticket_repo or TicketRepository()
        self.definition_store = definition_store or DefinitionStore()
        self.assignment = assignment or AssignmentService(
            ticket_repo=self.ticket_repo, definition_store=self.definition_store
        )
        self.channels = channels or NotificationChannels()

    # =========================================================================
    # update_sla
    # =========================================================================

    def update_sla(
        self,
        ticket: Ticket,
        status: Optional[Status],
        config: UpdateSlaActionConfig,
        now: Optional[datetime] = None,
    ) -> Tuple[Ticket, Dict[str, Any]]:
        """
        Recompute deadlines from the action config, falling back to the status hours

        A missing hour value clears that deadline, so entering a status without
        an SLA stops the clock.
        """
        now = now or utc_now()
        sla_hours = config.sla_hours if config.sla_hours is not None else (status.sla_hours if status else None)
        response_hours = (
            config.response_hours if config.response_hours is not None
            else (status.response_hours if status else None)
        )

        updates: Dict[str, Any] = {
            "sla_deadline": add_hours(now, sla_hours) if sla_hours else None,
            "response_deadline": add_hours(now, response_hours) if response_hours else None,
        }
        if config.reset_breach:
            updates["sla_breach"] = False
            updates["sla_warning_sent"] = False

        updated = self.ticket_repo.update_tracking(ticket.ticket_id, updates)
        output = {
            "sla_hours": sla_hours,
            "response_hours": response_hours,
            "sla_deadline": format_iso(updated.sla_deadline) if updated.sla_deadline else None,
            "response_deadline": format_iso(updated.response_deadline) if updated.response_deadline else None,
            "sla_breach": updated.sla_breach,
        }
        logger.info(
            f"Updated SLA for ticket {ticket.ticket_id}",
            extra={"ticket_id": ticket.ticket_id, "event_data": output}
        )
        return updated, output

    # =========================================================================
    # escalate
    # =========================================================================

    def escalate(
        self,
        ticket: Ticket,
        actor: Optional[User],
        config: EscalateActionConfig,
        reason: Optional[str] = None,
    ) -> Tuple[Ticket, Dict[str, Any]]:
        """Raise the escalation level, optionally reassign and alert admins"""
        now = utc_now()
        updates: Dict[str, Any] = {
            "escalation_level": ticket.escalation_level + config.level_increment,
            "escalated_at": now,
        }
        if config.escalate_to_id:
            target = self.assignment.validate_assignee(config.escalate_to_id)
            updates["assigned_to_id"] = target.user_id

        updated = self.ticket_repo.update_tracking(ticket.ticket_id, updates)

        notified: List[str] = []
        if config.notify_admins:
            admins = self.assignment.resolve_recipients([RECIPIENT_ADMINS], updated, actor)
            message = f"Ticket {updated.ticket_id} escalated to level {updated.escalation_level}"
            if reason:
                message = f"{message}: {reason}"
            for admin in admins:
                self.channels.in_app.send(
                    recipient_id=admin.user_id,
                    title="Ticket escalated",
                    message=message,
                    ticket_id=updated.ticket_id,
                    actor_id=actor.user_id if actor else None,
                    category=NotificationCategory.ESCALATION,
                )
                notified.append(admin.user_id)

        logger.info(
            f"Escalated ticket {ticket.ticket_id} to level {updated.escalation_level}",
            extra={"ticket_id": ticket.ticket_id}
        )
        return updated, {
            "escalation_level": updated.escalation_level,
            "assigned_to_id": updated.assigned_to_id,
            "reason": reason,
            "notified": notified,
        }

    # =========================================================================
    # Breach sweep
    # =========================================================================

    def check_breaches(self, now: Optional[datetime] = None, limit: int = 200) -> Dict[str, int]:
        """
        Flag tickets past their SLA deadline and warn on tickets close to it

        Breaches notify the assignee (in-app, plus Telegram when linked) and all
        admins; warnings notify the assignee only, once per deadline.
        """
        now = now or utc_now()
        closed = self.definition_store.closed_status_ids()

        breached = self.ticket_repo.list_sla_overdue(now, exclude_status_ids=closed, limit=limit)
        for ticket in breached:
            self.ticket_repo.update_tracking(ticket.ticket_id, {"sla_breach": True})
            logger.warning(
                f"SLA breached for ticket {ticket.ticket_id}",
                extra={"ticket_id": ticket.ticket_id, "event": "sla_breach"}
            )
            text = f"SLA breached for ticket {ticket.ticket_id}: {ticket.title}"
            recipients = self.assignment.resolve_recipients(["assignee", RECIPIENT_ADMINS], ticket, None)
            self._alert(ticket, recipients, "SLA Breach", text, NotificationCategory.SLA_BREACH)

        warning_until = add_minutes(now, settings.sla_warning_minutes)
        warned = self.ticket_repo.list_sla_due_soon(now, warning_until, exclude_status_ids=closed, limit=limit)
        for ticket in warned:
            self.ticket_repo.update_tracking(ticket.ticket_id, {"sla_warning_sent": True})
            remaining = int(minutes_until(ticket.sla_deadline, now))
            text = f"SLA deadline approaching for ticket {ticket.ticket_id}: {ticket.title} ({remaining} min left)"
            recipients = self.assignment.resolve_recipients(["assignee"], ticket, None)
            self._alert(ticket, recipients, "SLA Warning", text, NotificationCategory.SLA_WARNING)

        if breached or warned:
            logger.info(f"SLA check: {len(breached)} breached, {len(warned)} warned")
        return {"breached": len(breached), "warned": len(warned)}

    def _alert(
        self,
        ticket: Ticket,
        recipients: List[User],
        title: str,
        text: str,
        category: NotificationCategory,
    ) -> None:
        timeout_s = settings.channel_default_timeout_ms / 1000.0
        for user in recipients:
            self.channels.in_app.send(
                recipient_id=user.user_id,
                title=title,
                message=text,
                ticket_id=ticket.ticket_id,
                category=category,
            )
            if user.telegram_id and self.channels.telegram.configured:
                try:
                    self.channels.telegram.send_message(user.telegram_id, text, timeout_s)
                except DomainError as e:
                    logger.warning(
                        f"Telegram alert to {user.user_id} failed: {e.message}",
                        extra={"ticket_id": ticket.ticket_id, "user_id": user.user_id}
                    )
