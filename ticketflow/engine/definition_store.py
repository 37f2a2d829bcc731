"""Workflow Definition Store - Read-mostly cache of definition snapshots"""
import threading
from typing import Dict, List, Optional

from ..domain.models import WorkflowDefinition, WorkflowType, Status, Transition
from ..domain.enums import StatusCategory
from ..domain.errors import WorkflowTypeNotFoundError, StatusNotFoundError, TransitionNotFoundError
from ..repositories.definition_repo import DefinitionRepository
from ..utils.logger import get_logger

logger = get_logger(__name__)


class DefinitionStore:
    """
    Serves workflow definitions to the executor

    Each workflow type is held as one WorkflowDefinition snapshot. Snapshots are
    never mutated: admin writes persist a new aggregate and publish() swaps the
    reference under the lock. Readers grab a reference under the lock and then
    work on it lock-free, so an edit never tears a read in progress.
    """

    def __init__(self, repo: Optional[DefinitionRepository] = None):
        self._repo = repo or DefinitionRepository()
        self._lock = threading.RLock()
        self._definitions: Dict[str, WorkflowDefinition] = {}
        self._status_index: Dict[str, str] = {}
        self._transition_index: Dict[str, str] = {}

    # =========================================================================
    # Loading and publication
    # =========================================================================

    @property
    def repo(self) -> DefinitionRepository:
        return self._repo

    def load_all(self) -> int:
        """(Re)load every definition from storage"""
        definitions = self._repo.list_definitions()
        with self._lock:
            self._definitions.clear()
            self._status_index.clear()
            self._transition_index.clear()
            for definition in definitions:
                self._index(definition)
        logger.info(f"Loaded {len(definitions)} workflow definitions")
        return len(definitions)

    def publish(self, definition: WorkflowDefinition) -> None:
        """Make a freshly persisted definition visible to readers"""
        with self._lock:
            current = self._definitions.get(definition.workflow_type_id)
            if current is not None and current.version > definition.version:
                return
            self._drop_index(definition.workflow_type_id)
            self._index(definition)
        logger.debug(
            f"Published workflow definition {definition.workflow_type_id} v{definition.version}",
            extra={"workflow_type_id": definition.workflow_type_id}
        )

    def evict(self, workflow_type_id: str) -> None:
        with self._lock:
            self._drop_index(workflow_type_id)

    def _index(self, definition: WorkflowDefinition) -> None:
        workflow_type_id = definition.workflow_type_id
        self._definitions[workflow_type_id] = definition
        for status_id in definition.statuses:
            self._status_index[status_id] = workflow_type_id
        for transition_id in definition.transitions:
            self._transition_index[transition_id] = workflow_type_id

    def _drop_index(self, workflow_type_id: str) -> None:
        previous = self._definitions.pop(workflow_type_id, None)
        if previous is None:
            return
        for status_id in previous.statuses:
            self._status_index.pop(status_id, None)
        for transition_id in previous.transitions:
            self._transition_index.pop(transition_id, None)

    # =========================================================================
    # Read path
    # =========================================================================

    def find_definition(self, workflow_type_id: str) -> Optional[WorkflowDefinition]:
        with self._lock:
            definition = self._definitions.get(workflow_type_id)
        if definition is not None:
            return definition
        definition = self._repo.get_definition(workflow_type_id)
        if definition is not None:
            self.publish(definition)
        return definition

    def get_definition(self, workflow_type_id: str) -> WorkflowDefinition:
        definition = self.find_definition(workflow_type_id)
        if definition is None:
            raise WorkflowTypeNotFoundError(f"Workflow type {workflow_type_id} not found")
        return definition

    def list_definitions(self) -> List[WorkflowDefinition]:
        with self._lock:
            return sorted(self._definitions.values(), key=lambda d: d.workflow_type.name)

    def get_workflow_type(self, workflow_type_id: str) -> WorkflowType:
        return self.get_definition(workflow_type_id).workflow_type

    def definition_for_status(self, status_id: str) -> WorkflowDefinition:
        with self._lock:
            workflow_type_id = self._status_index.get(status_id)
        if workflow_type_id is not None:
            return self.get_definition(workflow_type_id)
        definition = self._repo.find_by_status_id(status_id)
        if definition is None:
            raise StatusNotFoundError(f"Status {status_id} not found")
        self.publish(definition)
        return definition

    def definition_for_transition(self, transition_id: str) -> WorkflowDefinition:
        with self._lock:
            workflow_type_id = self._transition_index.get(transition_id)
        if workflow_type_id is not None:
            return self.get_definition(workflow_type_id)
        definition = self._repo.find_by_transition_id(transition_id)
        if definition is None:
            raise TransitionNotFoundError(f"Transition {transition_id} not found")
        self.publish(definition)
        return definition

    def get_status(self, status_id: str) -> Status:
        status = self.definition_for_status(status_id).get_status(status_id)
        if status is None:
            raise StatusNotFoundError(f"Status {status_id} not found")
        return status

    def get_transition(self, transition_id: str) -> Transition:
        transition = self.definition_for_transition(transition_id).get_transition(transition_id)
        if transition is None:
            raise TransitionNotFoundError(f"Transition {transition_id} not found")
        return transition

    def get_active_transitions_for(self, status_id: str, workflow_type_id: str) -> List[Transition]:
        """Active transitions leaving a status (wildcards included), by sort_order"""
        return self.get_definition(workflow_type_id).active_transitions_from(status_id)

    def closed_status_ids(self, workflow_type_id: Optional[str] = None) -> List[str]:
        """Statuses in resolved/closed categories or marked final"""
        definitions = [self.get_definition(workflow_type_id)] if workflow_type_id else self.list_definitions()
        return [
            status.status_id
            for definition in definitions
            for status in definition.statuses.values()
            if status.is_final or status.category in (StatusCategory.RESOLVED, StatusCategory.CLOSED)
        ]
