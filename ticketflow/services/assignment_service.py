"""Assignment Service - Assignee rules and recipient resolution"""
from typing import Dict, List, Optional

from ..domain.models import Ticket, User
from ..domain.enums import AssigneeRule, UserRole
from ..domain.errors import ActionError, InvalidAssigneeError, UserNotFoundError
from ..repositories.ticket_repo import TicketRepository
from ..repositories.user_repo import UserRepository
from ..engine.definition_store import DefinitionStore
from ..utils.logger import get_logger

logger = get_logger(__name__)

# Recipient tokens understood by notify / send_email / send_telegram
RECIPIENT_ASSIGNEE = "assignee"
RECIPIENT_CREATOR = "creator"
RECIPIENT_CURRENT_USER = "current_user"
RECIPIENT_ADMINS = "admins"
ROLE_PREFIX = "role:"


class AssignmentService:
    """Resolves assignee rules and recipient tokens against the user directory"""

    def __init__(
        self,
        user_repo: Optional[UserRepository] = None,
        ticket_repo: Optional[TicketRepository] = None,
        definition_store: Optional[DefinitionStore] = None,
    ):
        self.user_repo = user_repo or UserRepository()
        self.ticket_repo = ticket_repo or TicketRepository()
        self.definition_store = definition_store or DefinitionStore()

    # =========================================================================
    # Assignee rules
    # =========================================================================

    def resolve_assignee(
        self,
        rule: AssigneeRule,
        ticket: Ticket,
        actor: Optional[User],
        assignee_id: Optional[str] = None,
        role: str = UserRole.AGENT.value,
    ) -> User:
        """
        Pick the user an assign rule points at

        Raises:
            UserNotFoundError: creator / specific user not in the directory
            InvalidAssigneeError: resolved user is inactive or not assignable
            ActionError: no candidates for round_robin / least_assigned
        """
        if rule == AssigneeRule.ROUND_ROBIN:
            return self._round_robin(role)
        if rule == AssigneeRule.LEAST_ASSIGNED:
            return self._least_assigned(role)
        if rule == AssigneeRule.CREATOR:
            if not ticket.created_by_id:
                raise InvalidAssigneeError(f"Ticket {ticket.ticket_id} has no creator")
            return self._active_user(ticket.created_by_id)
        if rule == AssigneeRule.CURRENT_USER:
            if actor is None or actor.role == UserRole.SYSTEM.value:
                raise InvalidAssigneeError("current_user cannot be resolved for a system execution")
            return self._active_user(actor.user_id)
        if not assignee_id:
            raise InvalidAssigneeError("assignee_id is required for specific_user")
        return self._active_user(assignee_id)

    def validate_assignee(self, user_id: str) -> User:
        """Check a caller-supplied assignee before it is committed"""
        return self._active_user(user_id)

    def _active_user(self, user_id: str) -> User:
        user = self.user_repo.get_user(user_id)
        if user is None:
            raise UserNotFoundError(f"User {user_id} not found", details={"user_id": user_id})
        if not user.is_active:
            raise InvalidAssigneeError(f"User {user_id} is inactive", details={"user_id": user_id})
        return user

    def _round_robin(self, role: str) -> User:
        candidates = self.user_repo.list_active_by_role(role)
        if not candidates:
            raise ActionError(f"No active users with role '{role}' for round robin")
        chosen = candidates[0]
        self.user_repo.mark_assigned(chosen.user_id)
        logger.debug(f"Round robin picked {chosen.user_id} from {len(candidates)} candidates")
        return chosen

    def _least_assigned(self, role: str) -> User:
        candidates = self.user_repo.list_active_by_role(role)
        if not candidates:
            raise ActionError(f"No active users with role '{role}' for least assigned")
        counts = self.ticket_repo.count_open_by_assignee(
            [u.user_id for u in candidates],
            exclude_status_ids=self.definition_store.closed_status_ids(),
        )
        # Ties keep the round-robin order of list_active_by_role
        chosen = min(candidates, key=lambda u: counts.get(u.user_id, 0))
        self.user_repo.mark_assigned(chosen.user_id)
        logger.debug(f"Least assigned picked {chosen.user_id} ({counts.get(chosen.user_id, 0)} open)")
        return chosen

    # =========================================================================
    # Recipients
    # =========================================================================

    def resolve_recipients(self, tokens: List[str], ticket: Ticket, actor: Optional[User]) -> List[User]:
        """
        Expand recipient tokens to active directory users, deduplicated in order

        Tokens: assignee, creator, current_user, admins, role:<name>, or a user id.
        Tokens that resolve to nobody (e.g. assignee on an unassigned ticket) are skipped.
        """
        user_ids: List[str] = []
        expanded: Dict[str, User] = {}

        for token in tokens:
            token = token.strip()
            if not token:
                continue
            if token == RECIPIENT_ASSIGNEE:
                if ticket.assigned_to_id:
                    user_ids.append(ticket.assigned_to_id)
            elif token == RECIPIENT_CREATOR:
                if ticket.created_by_id:
                    user_ids.append(ticket.created_by_id)
            elif token == RECIPIENT_CURRENT_USER:
                if actor is not None and actor.role != UserRole.SYSTEM.value:
                    user_ids.append(actor.user_id)
            elif token == RECIPIENT_ADMINS or token.startswith(ROLE_PREFIX):
                role = UserRole.ADMIN.value if token == RECIPIENT_ADMINS else token[len(ROLE_PREFIX):]
                for user in self.user_repo.list_active_by_role(role):
                    expanded[user.user_id] = user
                    user_ids.append(user.user_id)
            else:
                user_ids.append(token)

        ordered = list(dict.fromkeys(user_ids))
        missing = [user_id for user_id in ordered if user_id not in expanded]
        fetched = {user.user_id: user for user in self.user_repo.get_users(missing)}
        fetched.update(expanded)

        recipients = []
        for user_id in ordered:
            user = fetched.get(user_id)
            if user is None:
                logger.warning(f"Recipient {user_id} not found", extra={"ticket_id": ticket.ticket_id})
                continue
            if user.is_active:
                recipients.append(user)
        return recipients
