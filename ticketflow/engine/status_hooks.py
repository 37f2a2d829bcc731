"""Status hooks - auto-assignment and enter/exit notifications"""
from typing import Any, Dict, Optional, Tuple

from ..domain.models import Status, Ticket, User
from ..domain.enums import AssigneeRule, NotificationCategory, UserRole
from ..domain.errors import DomainError
from ..repositories.ticket_repo import TicketRepository
from ..services.assignment_service import AssignmentService, RECIPIENT_ASSIGNEE, RECIPIENT_CREATOR
from ..services.notification_service import NotificationChannels
from ..utils.logger import get_logger

logger = get_logger(__name__)


class StatusHooks:
    """
    Runs the per-status behaviour flags after a transition commits

    Hooks never fail the transition; each one reports its own outcome, which
    the executor stores under HistoryEntry.metadata["status_hooks"].
    """

    def __init__(
        self,
        ticket_repo: TicketRepository,
        assignment: AssignmentService,
        channels: NotificationChannels,
    ):
        self.ticket_repo = ticket_repo
        self.assignment = assignment
        self.channels = channels

    def on_transition(
        self,
        ticket: Ticket,
        from_status: Optional[Status],
        to_status: Status,
        actor: Optional[User],
    ) -> Tuple[Ticket, Dict[str, Any]]:
        results: Dict[str, Any] = {}
        status_changed = from_status is None or from_status.status_id != to_status.status_id

        if from_status is not None and from_status.notify_on_exit and status_changed:
            results["notify_on_exit"] = self._run(
                "notify_on_exit", ticket,
                lambda: self._notify(
                    ticket, actor, NotificationCategory.STATUS_EXITED,
                    f"Ticket {ticket.ticket_id} left {from_status.display()}",
                )
            )

        if to_status.auto_assign and not ticket.assigned_to_id:
            def auto_assign() -> Dict[str, Any]:
                nonlocal ticket
                user = self.assignment.resolve_assignee(
                    AssigneeRule.ROUND_ROBIN, ticket, actor, role=UserRole.AGENT.value
                )
                ticket = self.ticket_repo.assign_ticket(ticket.ticket_id, user.user_id)
                return {"assigned_to_id": user.user_id}

            results["auto_assign"] = self._run("auto_assign", ticket, auto_assign)

        if to_status.notify_on_enter:
            results["notify_on_enter"] = self._run(
                "notify_on_enter", ticket,
                lambda: self._notify(
                    ticket, actor, NotificationCategory.STATUS_ENTERED,
                    f"Ticket {ticket.ticket_id} is now {to_status.display()}",
                )
            )

        return ticket, results

    def _run(self, hook: str, ticket: Ticket, fn) -> Dict[str, Any]:
        try:
            output = fn()
            return {"success": True, **output}
        except DomainError as e:
            logger.warning(
                f"Status hook {hook} failed: {e.message}",
                extra={"ticket_id": ticket.ticket_id, "error_code": e.error_code}
            )
            return {"success": False, "error": e.message, "error_code": e.error_code}
        except Exception as e:
            logger.error(
                f"Status hook {hook} crashed: {e}",
                exc_info=True,
                extra={"ticket_id": ticket.ticket_id}
            )
            return {"success": False, "error": f"{type(e).__name__}: {e}", "error_code": "HOOK_FAILED"}

    def _notify(
        self,
        ticket: Ticket,
        actor: Optional[User],
        category: NotificationCategory,
        message: str,
    ) -> Dict[str, Any]:
        recipients = self.assignment.resolve_recipients(
            [RECIPIENT_ASSIGNEE, RECIPIENT_CREATOR], ticket, actor
        )
        notified = []
        for user in recipients:
            if actor is not None and user.user_id == actor.user_id:
                continue
            self.channels.in_app.send(
                recipient_id=user.user_id,
                title=ticket.title,
                message=message,
                ticket_id=ticket.ticket_id,
                actor_id=actor.user_id if actor else None,
                category=category,
            )
            notified.append(user.user_id)
        return {"notified": notified}
