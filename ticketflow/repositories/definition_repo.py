"""Workflow Definition Repository - One aggregate document per workflow type"""
from typing import Any, Dict, List, Optional
from pymongo.collection import Collection
from pymongo import ASCENDING
from pymongo.errors import DuplicateKeyError

from .mongo_client import get_collection, WORKFLOW_DEFINITIONS
from ..domain.models import WorkflowDefinition
from ..domain.errors import WorkflowTypeNotFoundError, ConcurrencyError, AlreadyExistsError
from ..utils.logger import get_logger
from ..utils.time import utc_now

logger = get_logger(__name__)


class DefinitionRepository:
    """Repository for workflow definition aggregates"""

    def __init__(self, collection: Optional[Collection] = None):
        self._definitions: Collection = (
            collection if collection is not None else get_collection(WORKFLOW_DEFINITIONS)
        )

    # =========================================================================
    # Serialization
    # =========================================================================

    @staticmethod
    def _to_doc(definition: WorkflowDefinition) -> Dict[str, Any]:
        doc = definition.model_dump(mode="json")
        workflow_type = definition.workflow_type
        doc["_id"] = workflow_type.workflow_type_id
        # Denormalized lookup keys (statuses/transitions are keyed maps)
        doc["workflow_type_id"] = workflow_type.workflow_type_id
        doc["tenant_id"] = workflow_type.tenant_id
        doc["name"] = workflow_type.name
        doc["status_ids"] = list(definition.statuses.keys())
        doc["transition_ids"] = list(definition.transitions.keys())
        doc["condition_ids"] = [c.condition_id for t in definition.transitions.values() for c in t.conditions]
        doc["action_ids"] = [a.action_id for t in definition.transitions.values() for a in t.actions]
        return doc

    @staticmethod
    def _from_doc(doc: Dict[str, Any]) -> WorkflowDefinition:
        return WorkflowDefinition.model_validate({
            "workflow_type": doc["workflow_type"],
            "statuses": doc.get("statuses") or {},
            "transitions": doc.get("transitions") or {},
            "version": doc.get("version", 1),
        })

    # =========================================================================
    # CRUD
    # =========================================================================

    def create_definition(self, definition: WorkflowDefinition) -> WorkflowDefinition:
        """Insert a new definition aggregate"""
        try:
            self._definitions.insert_one(self._to_doc(definition))
        except DuplicateKeyError:
            raise AlreadyExistsError(
                f"Workflow type {definition.workflow_type.name} already exists",
                details={"workflow_type_id": definition.workflow_type_id}
            )
        logger.info(
            f"Created workflow definition: {definition.workflow_type_id}",
            extra={"workflow_type_id": definition.workflow_type_id}
        )
        return definition

    def get_definition(self, workflow_type_id: str) -> Optional[WorkflowDefinition]:
        doc = self._definitions.find_one({"workflow_type_id": workflow_type_id})
        return self._from_doc(doc) if doc else None

    def get_definition_or_raise(self, workflow_type_id: str) -> WorkflowDefinition:
        definition = self.get_definition(workflow_type_id)
        if definition is None:
            raise WorkflowTypeNotFoundError(f"Workflow type {workflow_type_id} not found")
        return definition

    def find_by_name(self, tenant_id: str, name: str) -> Optional[WorkflowDefinition]:
        doc = self._definitions.find_one({"tenant_id": tenant_id, "name": name})
        return self._from_doc(doc) if doc else None

    def find_by_status_id(self, status_id: str) -> Optional[WorkflowDefinition]:
        doc = self._definitions.find_one({"status_ids": status_id})
        return self._from_doc(doc) if doc else None

    def find_by_transition_id(self, transition_id: str) -> Optional[WorkflowDefinition]:
        doc = self._definitions.find_one({"transition_ids": transition_id})
        return self._from_doc(doc) if doc else None

    def find_by_condition_id(self, condition_id: str) -> Optional[WorkflowDefinition]:
        doc = self._definitions.find_one({"condition_ids": condition_id})
        return self._from_doc(doc) if doc else None

    def find_by_action_id(self, action_id: str) -> Optional[WorkflowDefinition]:
        doc = self._definitions.find_one({"action_ids": action_id})
        return self._from_doc(doc) if doc else None

    def list_definitions(self, tenant_id: Optional[str] = None) -> List[WorkflowDefinition]:
        query: Dict[str, Any] = {}
        if tenant_id:
            query["tenant_id"] = tenant_id
        cursor = self._definitions.find(query).sort("name", ASCENDING)
        return [self._from_doc(doc) for doc in cursor]

    def save_definition(self, definition: WorkflowDefinition, expected_version: int) -> WorkflowDefinition:
        """
        Replace a definition with optimistic concurrency

        Args:
            definition: New aggregate state
            expected_version: Version the caller read; stored version becomes +1

        Returns:
            The saved definition carrying its new version
        """
        saved = definition.model_copy(update={"version": expected_version + 1}, deep=True)
        saved.workflow_type.updated_at = utc_now()
        result = self._definitions.replace_one(
            {"workflow_type_id": definition.workflow_type_id, "version": expected_version},
            self._to_doc(saved)
        )
        if result.matched_count == 0:
            if self._definitions.count_documents({"workflow_type_id": definition.workflow_type_id}) == 0:
                raise WorkflowTypeNotFoundError(f"Workflow type {definition.workflow_type_id} not found")
            raise ConcurrencyError(
                f"Workflow type {definition.workflow_type_id} was modified concurrently",
                details={"expected_version": expected_version}
            )
        logger.info(
            f"Saved workflow definition {definition.workflow_type_id} v{saved.version}",
            extra={"workflow_type_id": definition.workflow_type_id}
        )
        return saved

    def delete_definition(self, workflow_type_id: str) -> bool:
        result = self._definitions.delete_one({"workflow_type_id": workflow_type_id})
        if result.deleted_count:
            logger.info(
                f"Deleted workflow definition: {workflow_type_id}",
                extra={"workflow_type_id": workflow_type_id}
            )
        return result.deleted_count > 0
