"""Transition Executor - Guard, commit, actions, history"""
import threading
import time
from contextlib import contextmanager
from typing import Any, Dict, Iterator, List, Optional

from .action_pipeline import ActionPipeline
from .actions import ActionRun, ActionServices
from .condition_evaluator import ConditionEvaluator
from .definition_store import DefinitionStore
from .history_recorder import HistoryRecorder
from .status_hooks import StatusHooks
from ..domain.models import (
    ExecuteOptions, GuardEvaluation, HistoryEntry, Status, StatusSnapshot, Ticket,
    TicketComment, Transition, TransitionSnapshot, User, WorkflowDefinition
)
from ..domain.enums import UserRole
from ..domain.errors import (
    AssignmentRequiredError, CommentRequiredError, ConcurrencyError, ConditionsNotMetError,
    DomainError, GuardError, HistoryRecordingError, InvalidAssigneeError, NotFoundError,
    RoleNotAllowedError, StatusMismatchError, StatusNotFoundError, TransitionInactiveError,
    TransitionNotFoundError
)
from ..repositories.ticket_repo import TicketRepository
from ..repositories.user_repo import UserRepository
from ..services.assignment_service import AssignmentService
from ..utils.idgen import generate_comment_id, generate_history_id
from ..utils.logger import get_logger
from ..utils.time import utc_now

logger = get_logger(__name__)


class TicketLockRegistry:
    """
    In-process mutex per ticket

    Entries are reference counted and dropped once nobody holds or waits on
    them. Cross-process safety comes from the compare-and-set in
    TicketRepository.commit_transition.
    """

    def __init__(self):
        self._guard = threading.Lock()
        self._locks: Dict[str, List[Any]] = {}

    @contextmanager
    def hold(self, ticket_id: str) -> Iterator[None]:
        with self._guard:
            entry = self._locks.setdefault(ticket_id, [threading.Lock(), 0])
            entry[1] += 1
        lock = entry[0]
        lock.acquire()
        try:
            yield
        finally:
            lock.release()
            with self._guard:
                entry[1] -= 1
                if entry[1] == 0:
                    self._locks.pop(ticket_id, None)


class TransitionExecutor:
    """
    Executes transitions in two phases

    1. Guard phase, under the ticket lock: applicability, role, conditions,
       required comment / assignment. A failure leaves the ticket untouched,
       is recorded with success=false and raised to the caller.
    2. Commit: status, assignee and comment written as one document update.

    Status hooks and the action pipeline then run outside the lock. Their
    failures land in the history entry and are never raised.
    """

    def __init__(
        self,
        definition_store: DefinitionStore,
        ticket_repo: TicketRepository,
        user_repo: UserRepository,
        evaluator: ConditionEvaluator,
        pipeline: ActionPipeline,
        action_services: ActionServices,
        hooks: StatusHooks,
        recorder: HistoryRecorder,
        assignment: AssignmentService,
        locks: Optional[TicketLockRegistry] = None,
    ):
        self.definition_store = definition_store
        self.ticket_repo = ticket_repo
        self.user_repo = user_repo
        self.evaluator = evaluator
        self.pipeline = pipeline
        self.action_services = action_services
        self.hooks = hooks
        self.recorder = recorder
        self.assignment = assignment
        self.locks = locks or TicketLockRegistry()

    # =========================================================================
    # Available transitions
    # =========================================================================

    def list_available(
        self,
        ticket_id: str,
        user: User,
        context: Optional[Dict[str, Any]] = None,
        automatic_only: bool = False,
    ) -> List[Transition]:
        """
        Transitions the user could execute right now, by sort_order

        Filters on current status (wildcards included), allowed roles and the
        current guard result.
        """
        ticket = self.ticket_repo.get_ticket_or_raise(ticket_id)
        definition = self.definition_store.get_definition(ticket.workflow_type_id)
        from_status = definition.get_status(ticket.status_id)
        options = ExecuteOptions(context=context or {})
        role = self._current_role(user)
        available = []
        for transition in definition.active_transitions_from(ticket.status_id):
            if automatic_only and not transition.is_automatic:
                continue
            if not self._role_allowed(transition, user, role):
                continue
            to_status = definition.get_status(transition.to_status_id)
            if to_status is None:
                continue
            # Guards see the same context execute() would build
            guard_context = self._build_context(options, transition, from_status, to_status, user)
            if self.evaluator.evaluate(transition, ticket, user, guard_context).allowed:
                available.append(transition)
        return available

    # =========================================================================
    # Execute
    # =========================================================================

    def execute(
        self,
        ticket_id: str,
        transition_id: str,
        user: User,
        options: Optional[ExecuteOptions] = None,
    ) -> HistoryEntry:
        """
        Execute a transition for a ticket

        Returns:
            The recorded HistoryEntry (success=True; action results inside)

        Raises:
            TicketNotFoundError / TransitionNotFoundError: unknown ids
            GuardError subclasses: guard phase rejected the transition
            ConcurrencyError: ticket changed underneath the commit
        """
        options = options or ExecuteOptions()
        started = time.monotonic()

        with self.locks.hold(ticket_id):
            ticket = self.ticket_repo.get_ticket_or_raise(ticket_id)
            definition = self.definition_store.get_definition(ticket.workflow_type_id)
            transition = definition.get_transition(transition_id)
            if transition is None:
                raise TransitionNotFoundError(
                    f"Transition {transition_id} not found for workflow type {ticket.workflow_type_id}",
                    details={"transition_id": transition_id, "ticket_id": ticket_id}
                )
            from_status = definition.get_status(ticket.status_id)
            to_status = self._target_status(definition, transition)
            context = self._build_context(options, transition, from_status, to_status, user)

            evaluation: Optional[GuardEvaluation] = None
            try:
                self._check_applicability(ticket, transition, user)
                evaluation = self.evaluator.evaluate(transition, ticket, user, context)
                if not evaluation.allowed:
                    raise ConditionsNotMetError(
                        "Transition conditions are not met",
                        details={"failed_groups": evaluation.failed_groups}
                    )
                self._check_inputs(ticket, transition, options)
                comment = None
                if options.has_comment:
                    comment = TicketComment(
                        comment_id=generate_comment_id(),
                        content=options.comment.strip(),
                        is_internal=False,
                        user_id=user.user_id,
                        source="transition",
                        created_at=utc_now(),
                    )
                committed = self.ticket_repo.commit_transition(
                    ticket.ticket_id,
                    expected_status_id=ticket.status_id,
                    expected_version=ticket.version,
                    to_status_id=transition.to_status_id,
                    assignee_id=options.assignee_id,
                    comment=comment,
                )
            except (GuardError, ConcurrencyError) as e:
                self._record_failure(ticket, transition, from_status, to_status, user, e, evaluation, started)
                raise

        metadata: Dict[str, Any] = {"context": options.context}
        if comment is not None:
            metadata["comment_id"] = comment.comment_id
        if options.assignee_id:
            metadata["assignee_id"] = options.assignee_id

        current, hook_results = self.hooks.on_transition(committed, from_status, to_status, user)
        if hook_results:
            metadata["status_hooks"] = hook_results

        run = ActionRun(
            ticket=current,
            actor=user,
            transition=transition,
            from_status=from_status,
            to_status=to_status,
            services=self.action_services,
            context=context,
        )
        outcomes = self.pipeline.run_all(transition.actions, run)

        entry = HistoryEntry(
            history_id=generate_history_id(),
            ticket_id=ticket.ticket_id,
            workflow_type_id=ticket.workflow_type_id,
            transition_id=transition.transition_id,
            transition=TransitionSnapshot.of(transition),
            from_status=StatusSnapshot.of(from_status) if from_status else None,
            to_status=StatusSnapshot.of(to_status),
            user_id=user.user_id,
            user_display_name=user.display_name,
            success=True,
            conditions_result=evaluation.trace if evaluation else [],
            actions_result=outcomes,
            metadata=metadata,
            execution_duration_ms=int((time.monotonic() - started) * 1000),
            created_at=utc_now(),
        )
        try:
            self.recorder.record(entry)
        except HistoryRecordingError as e:
            # The commit stands; the recorder already raised the CRITICAL alarm
            logger.error(
                f"Transition committed but history was not stored: {e.message}",
                extra={"ticket_id": ticket.ticket_id, "history_id": entry.history_id}
            )

        logger.info(
            f"Executed transition {transition.name} on ticket {ticket.ticket_id}",
            extra={
                "ticket_id": ticket.ticket_id,
                "transition_id": transition.transition_id,
                "user_id": user.user_id,
                "duration_ms": entry.execution_duration_ms,
            }
        )
        return entry

    def execute_first_automatic(self, ticket: Ticket, system_user: User) -> Optional[HistoryEntry]:
        """Run the first automatic transition whose guard holds, if any"""
        candidates = self.list_available(ticket.ticket_id, system_user, automatic_only=True)
        if not candidates:
            return None
        try:
            return self.execute(ticket.ticket_id, candidates[0].transition_id, system_user)
        except (GuardError, ConcurrencyError) as e:
            # Ticket moved or its data changed since the listing; next sweep retries
            logger.info(
                f"Automatic transition skipped: {e.message}",
                extra={"ticket_id": ticket.ticket_id, "transition_id": candidates[0].transition_id}
            )
            return None

    # =========================================================================
    # Guard phase
    # =========================================================================

    def _check_applicability(self, ticket: Ticket, transition: Transition, user: User) -> None:
        """Re-validate against current state; the caller may hold a stale view"""
        if not transition.is_active:
            raise TransitionInactiveError(f"Transition {transition.name} is not active")

        if not transition.applies_to(ticket.status_id):
            raise StatusMismatchError(
                f"Transition {transition.name} is not available from the ticket's current status",
                details={"current_status_id": ticket.status_id, "from_status_id": transition.from_status_id}
            )

        role = self._current_role(user)
        if not self._role_allowed(transition, user, role):
            raise RoleNotAllowedError(
                f"Role '{role}' may not execute {transition.name}",
                details={"allowed_roles": transition.allowed_roles}
            )

    def _check_inputs(self, ticket: Ticket, transition: Transition, options: ExecuteOptions) -> None:
        if transition.requires_comment and not options.has_comment:
            raise CommentRequiredError("A comment is required for this transition")

        if transition.requires_assignment and not (ticket.assigned_to_id or options.assignee_id):
            raise AssignmentRequiredError("The ticket must be assigned for this transition")

        if options.assignee_id:
            try:
                self.assignment.validate_assignee(options.assignee_id)
            except NotFoundError as e:
                raise InvalidAssigneeError(e.message, details=e.details)

    def _current_role(self, user: User) -> str:
        """Directory role at execution time; the caller-supplied role may be stale"""
        if user.role == UserRole.SYSTEM.value:
            return user.role
        return self.user_repo.get_user_role(user.user_id) or user.role

    @staticmethod
    def _role_allowed(transition: Transition, user: User, role: str) -> bool:
        # The scheduler's system actor may run automatic transitions regardless of roles
        if role == UserRole.SYSTEM.value and transition.is_automatic:
            return True
        return transition.allows_role(role)

    # =========================================================================
    # Helpers
    # =========================================================================

    @staticmethod
    def _target_status(definition: WorkflowDefinition, transition: Transition) -> Status:
        status = definition.get_status(transition.to_status_id)
        if status is None:
            raise StatusNotFoundError(
                f"Target status {transition.to_status_id} of {transition.name} not found"
            )
        return status

    @staticmethod
    def _build_context(
        options: ExecuteOptions,
        transition: Transition,
        from_status: Optional[Status],
        to_status: Status,
        user: User,
    ) -> Dict[str, Any]:
        """Caller context plus execution facts; execution facts win on key clashes"""
        context = dict(options.context)
        context.update({
            "transition_id": transition.transition_id,
            "transition_name": transition.name,
            "transition_display_name": transition.display(),
            "from_status_id": from_status.status_id if from_status else None,
            "from_status_name": from_status.display() if from_status else None,
            "to_status_id": to_status.status_id,
            "to_status_name": to_status.display(),
            "comment": options.comment,
            "assignee_id": options.assignee_id,
            "actor_id": user.user_id,
        })
        return context

    def _record_failure(
        self,
        ticket: Ticket,
        transition: Transition,
        from_status: Optional[Status],
        to_status: Status,
        user: User,
        error: DomainError,
        evaluation: Optional[GuardEvaluation],
        started: float,
    ) -> None:
        entry = HistoryEntry(
            history_id=generate_history_id(),
            ticket_id=ticket.ticket_id,
            workflow_type_id=ticket.workflow_type_id,
            transition_id=transition.transition_id,
            transition=TransitionSnapshot.of(transition),
            from_status=StatusSnapshot.of(from_status) if from_status else None,
            to_status=StatusSnapshot.of(to_status),
            user_id=user.user_id,
            user_display_name=user.display_name,
            success=False,
            error_code=error.error_code,
            error_message=error.message,
            conditions_result=evaluation.trace if evaluation else None,
            actions_result=[],
            metadata={"phase": "commit" if isinstance(error, ConcurrencyError) else "guard", **error.details},
            execution_duration_ms=int((time.monotonic() - started) * 1000),
            created_at=utc_now(),
        )
        try:
            self.recorder.record(entry)
        except HistoryRecordingError as e:
            logger.error(
                f"Failed execution could not be recorded: {e.message}",
                extra={"ticket_id": ticket.ticket_id, "history_id": entry.history_id}
            )
        logger.info(
            f"Transition {transition.name} rejected for ticket {ticket.ticket_id}: {error.message}",
            extra={"ticket_id": ticket.ticket_id, "transition_id": transition.transition_id, "error_code": error.error_code}
        )
