"""Workflow Engine - Wires the transition engine and its collaborators"""
import threading
from typing import Any, Dict, List, Optional

from pymongo.errors import PyMongoError

from .action_pipeline import ActionPipeline
from .actions import ActionServices
from .condition_evaluator import ConditionEvaluator
from .definition_store import DefinitionStore
from .history_recorder import HistoryRecorder
from .script_sandbox import ScriptSandbox
from .status_hooks import StatusHooks
from .transition_executor import TransitionExecutor
from ..config.settings import settings
from ..domain.models import ExecuteOptions, HistoryEntry, HistoryPage, Transition, User
from ..domain.errors import DomainError
from ..repositories.history_repo import HistoryRepository
from ..repositories.ticket_repo import TicketRepository
from ..repositories.user_repo import UserRepository
from ..repositories.version_repo import WorkflowVersionRepository
from ..services.assignment_service import AssignmentService
from ..services.notification_service import NotificationChannels, InAppChannel
from ..services.sla_service import SlaService
from ..utils.logger import get_logger

logger = get_logger(__name__)


class WorkflowEngine:
    """
    The Workflow Engine - Entry point for ticket transitions

    Responsibilities:
    - List transitions available to a user for a ticket
    - Execute transitions (guard, atomic commit, actions, history)
    - Serve paginated transition history
    - Drive automatic transitions and SLA sweeps for the scheduler

    Every collaborator can be injected; defaults talk to MongoDB and the
    configured channels.
    """

    def __init__(
        self,
        definition_store: Optional[DefinitionStore] = None,
        ticket_repo: Optional[TicketRepository] = None,
        user_repo: Optional[UserRepository] = None,
        history_repo: Optional[HistoryRepository] = None,
        channels: Optional[NotificationChannels] = None,
        sandbox: Optional[ScriptSandbox] = None,
        pipeline: Optional[ActionPipeline] = None,
        version_repo: Optional[WorkflowVersionRepository] = None,
    ):
        self.definition_store = definition_store or DefinitionStore()
        # Shared with the definition API
        self.version_repo = version_repo or WorkflowVersionRepository()
        self.ticket_repo = ticket_repo or TicketRepository()
        self.user_repo = user_repo or UserRepository()
        self.channels = channels or NotificationChannels(in_app=InAppChannel())
        self.sandbox = sandbox or ScriptSandbox()

        self.assignment = AssignmentService(
            user_repo=self.user_repo,
            ticket_repo=self.ticket_repo,
            definition_store=self.definition_store,
        )
        self.sla = SlaService(
            ticket_repo=self.ticket_repo,
            assignment=self.assignment,
            channels=self.channels,
            definition_store=self.definition_store,
        )
        self.recorder = HistoryRecorder(repo=history_repo or HistoryRepository())
        self.evaluator = ConditionEvaluator(sandbox=self.sandbox)
        self.pipeline = pipeline or ActionPipeline()
        self.executor = TransitionExecutor(
            definition_store=self.definition_store,
            ticket_repo=self.ticket_repo,
            user_repo=self.user_repo,
            evaluator=self.evaluator,
            pipeline=self.pipeline,
            action_services=ActionServices(
                ticket_repo=self.ticket_repo,
                assignment=self.assignment,
                channels=self.channels,
                sla=self.sla,
                sandbox=self.sandbox,
            ),
            hooks=StatusHooks(self.ticket_repo, self.assignment, self.channels),
            recorder=self.recorder,
            assignment=self.assignment,
        )

    # =========================================================================
    # Transitions
    # =========================================================================

    def list_available_transitions(
        self,
        ticket_id: str,
        user: User,
        context: Optional[Dict[str, Any]] = None,
    ) -> List[Transition]:
        return self.executor.list_available(ticket_id, user, context=context)

    def execute_transition(
        self,
        ticket_id: str,
        transition_id: str,
        user: User,
        options: Optional[ExecuteOptions] = None,
    ) -> HistoryEntry:
        return self.executor.execute(ticket_id, transition_id, user, options)

    def list_history(
        self,
        ticket_id: str,
        page: int = 1,
        limit: int = 20,
        include_details: bool = False,
    ) -> HistoryPage:
        self.ticket_repo.get_ticket_or_raise(ticket_id)
        return self.recorder.list_history(ticket_id, page=page, limit=limit, include_details=include_details)

    # =========================================================================
    # Scheduler entry points
    # =========================================================================

    def system_user(self) -> User:
        return User.system(settings.system_user_id)

    def run_automatic_transitions(self, limit: Optional[int] = None) -> int:
        """
        Execute the first eligible automatic transition for tickets that have one

        Returns:
            Number of transitions executed
        """
        status_ids = self._statuses_with_automatic_transitions()
        if not status_ids:
            return 0

        tickets = self.ticket_repo.list_in_statuses(
            status_ids, limit=limit or settings.automatic_transition_batch_size
        )
        actor = self.system_user()
        executed = 0
        for ticket in tickets:
            try:
                if self.executor.execute_first_automatic(ticket, actor) is not None:
                    executed += 1
            except (DomainError, PyMongoError) as e:
                logger.error(
                    f"Automatic transition failed for ticket {ticket.ticket_id}: {e}",
                    extra={"ticket_id": ticket.ticket_id}
                )
        if executed:
            logger.info(f"Executed {executed} automatic transitions")
        return executed

    def _statuses_with_automatic_transitions(self) -> List[str]:
        status_ids: List[str] = []
        for definition in self.definition_store.list_definitions():
            if not definition.workflow_type.is_active:
                continue
            for transition in definition.transitions.values():
                if not (transition.is_active and transition.is_automatic):
                    continue
                if transition.from_status_id is not None:
                    status_ids.append(transition.from_status_id)
                else:
                    status_ids.extend(s.status_id for s in definition.statuses.values() if not s.is_final)
        return list(dict.fromkeys(status_ids))

    def check_sla_breaches(self) -> Dict[str, int]:
        return self.sla.check_breaches()

    def shutdown(self) -> None:
        self.pipeline.shutdown()


_engine: Optional[WorkflowEngine] = None
_engine_lock = threading.Lock()


def get_engine() -> WorkflowEngine:
    """Process-wide engine instance"""
    global _engine
    if _engine is None:
        with _engine_lock:
            if _engine is None:
                _engine = WorkflowEngine()
    return _engine


def set_engine(engine: Optional[WorkflowEngine]) -> None:
    """Replace the process-wide engine (tests, shutdown)"""
    global _engine
    with _engine_lock:
        _engine = engine
