"""Workflow Service - Workflow definition management business logic"""
from collections import Counter
from datetime import datetime
from typing import Any, Callable, Dict, List, Optional, Set, Tuple, Type, TypeVar

from pydantic import BaseModel, ValidationError as PydanticValidationError

from ..config.settings import settings
from ..domain.models import (
    Action, Condition, Status, Transition, ValidationReport, WorkflowDefinition,
    WorkflowStats, WorkflowType, WorkflowVersion, WorkflowVersionPage
)
from ..domain.errors import (
    ActionNotFoundError, AlreadyExistsError, ConcurrencyError, ConditionNotFoundError,
    DefinitionIntegrityError, DefinitionValidationError, ReferentialIntegrityError,
    StatusNotFoundError, TransitionNotFoundError, ValidationError
)
from ..repositories.definition_repo import DefinitionRepository
from ..repositories.history_repo import HistoryRepository
from ..repositories.ticket_repo import TicketRepository
from ..repositories.version_repo import WorkflowVersionRepository
from ..engine.definition_store import DefinitionStore
from ..utils.idgen import (
    generate_workflow_type_id, generate_status_id, generate_transition_id,
    generate_condition_id, generate_action_id
)
from ..utils.time import utc_now, format_iso
from ..utils.logger import get_logger

logger = get_logger(__name__)

EXPORT_FORMAT_VERSION = "1.0"
MAX_SAVE_ATTEMPTS = 3
MAX_PAGE_SIZE = 100

# Fields callers may never overwrite through an update
IMMUTABLE_FIELDS = {
    "workflow_type_id", "tenant_id", "status_id", "transition_id", "condition_id",
    "action_id", "created_at", "created_by_id", "conditions", "actions",
}

M = TypeVar("M", bound=BaseModel)


def _build(model: Type[M], data: Dict[str, Any]) -> M:
    """Validate a payload, mapping pydantic errors to the domain error"""
    try:
        return model.model_validate(data)
    except PydanticValidationError as e:
        errors = [
            {"field": ".".join(str(p) for p in err["loc"]), "message": err["msg"]}
            for err in e.errors()
        ]
        raise DefinitionValidationError(
            f"Invalid {model.__name__.lower()}: {errors[0]['message'] if errors else e}",
            details={"errors": errors}
        )


def _merge(current: BaseModel, updates: Dict[str, Any]) -> Dict[str, Any]:
    data = current.model_dump()
    data.update({k: v for k, v in updates.items() if k not in IMMUTABLE_FIELDS})
    return data


class WorkflowService:
    """Service for workflow definition operations (admin write path)"""

    def __init__(
        self,
        repo: Optional[DefinitionRepository] = None,
        store: Optional[DefinitionStore] = None,
        ticket_repo: Optional[TicketRepository] = None,
        history_repo: Optional[HistoryRepository] = None,
        version_repo: Optional[WorkflowVersionRepository] = None,
    ):
        self.repo = repo or DefinitionRepository()
        self.store = store or DefinitionStore(self.repo)
        self.ticket_repo = ticket_repo or TicketRepository()
        self.history_repo = history_repo or HistoryRepository()
        self.version_repo = version_repo or WorkflowVersionRepository()

    # =========================================================================
    # Aggregate persistence
    # =========================================================================

    def _mutate(
        self,
        workflow_type_id: str,
        change: Callable[[WorkflowDefinition], Any],
    ) -> Tuple[WorkflowDefinition, Any]:
        """
        Apply a change to a fresh copy of the aggregate and save it

        The change is re-applied on a concurrent edit; integrity is checked on
        the changed copy before anything is written.
        """
        for attempt in range(1, MAX_SAVE_ATTEMPTS + 1):
            current = self.repo.get_definition_or_raise(workflow_type_id)
            draft = current.model_copy(deep=True)
            result = change(draft)
            self._check_integrity(draft)
            try:
                saved = self.repo.save_definition(draft, expected_version=current.version)
            except ConcurrencyError:
                if attempt == MAX_SAVE_ATTEMPTS:
                    raise
                logger.info(
                    f"Definition {workflow_type_id} changed concurrently, retrying",
                    extra={"workflow_type_id": workflow_type_id}
                )
                continue
            self.store.publish(saved)
            return saved, result
        raise ConcurrencyError(f"Workflow type {workflow_type_id} could not be saved")

    def _definition_for_status(self, status_id: str) -> WorkflowDefinition:
        definition = self.repo.find_by_status_id(status_id)
        if definition is None:
            raise StatusNotFoundError(f"Status {status_id} not found")
        return definition

    def _definition_for_transition(self, transition_id: str) -> WorkflowDefinition:
        definition = self.repo.find_by_transition_id(transition_id)
        if definition is None:
            raise TransitionNotFoundError(f"Transition {transition_id} not found")
        return definition

    # =========================================================================
    # Workflow types
    # =========================================================================

    def create_workflow_type(self, data: Dict[str, Any], actor_id: Optional[str] = None) -> WorkflowDefinition:
        """Create a workflow type with no statuses yet"""
        now = utc_now()
        workflow_type = _build(WorkflowType, {
            **{k: v for k, v in data.items() if k not in IMMUTABLE_FIELDS},
            "workflow_type_id": generate_workflow_type_id(),
            "tenant_id": data.get("tenant_id") or settings.tenant_id,
            "created_by_id": actor_id,
            "created_at": now,
            "updated_at": now,
        })
        if self.repo.find_by_name(workflow_type.tenant_id, workflow_type.name):
            raise AlreadyExistsError(
                f"Workflow type '{workflow_type.name}' already exists",
                details={"name": workflow_type.name}
            )

        definition = self.repo.create_definition(WorkflowDefinition(workflow_type=workflow_type))
        self.store.publish(definition)
        self._snapshot(definition, actor_id, "Initial version", is_active=True)
        if workflow_type.is_default:
            self._clear_other_defaults(workflow_type)
        return definition

    def get_workflow_type(self, workflow_type_id: str) -> WorkflowDefinition:
        return self.repo.get_definition_or_raise(workflow_type_id)

    def list_workflow_types(self, tenant_id: Optional[str] = None, active_only: bool = False) -> List[WorkflowType]:
        types = [d.workflow_type for d in self.repo.list_definitions(tenant_id or settings.tenant_id)]
        if active_only:
            types = [t for t in types if t.is_active]
        return types

    def update_workflow_type(self, workflow_type_id: str, updates: Dict[str, Any]) -> WorkflowType:
        def change(definition: WorkflowDefinition) -> WorkflowType:
            updated = _build(WorkflowType, _merge(definition.workflow_type, updates))
            if updated.name != definition.workflow_type.name:
                other = self.repo.find_by_name(updated.tenant_id, updated.name)
                if other is not None and other.workflow_type_id != workflow_type_id:
                    raise AlreadyExistsError(f"Workflow type '{updated.name}' already exists")
            updated.updated_at = utc_now()
            definition.workflow_type = updated
            return updated

        _, workflow_type = self._mutate(workflow_type_id, change)
        if workflow_type.is_default:
            self._clear_other_defaults(workflow_type)
        return workflow_type

    def delete_workflow_type(self, workflow_type_id: str) -> None:
        """Delete a type with its statuses and transitions; rejected while tickets use it"""
        self.repo.get_definition_or_raise(workflow_type_id)
        ticket_count = self.ticket_repo.count_by_workflow_type(workflow_type_id)
        if ticket_count:
            raise ReferentialIntegrityError(
                f"Workflow type {workflow_type_id} is used by {ticket_count} ticket(s)",
                details={"ticket_count": ticket_count}
            )
        self.repo.delete_definition(workflow_type_id)
        self.store.evict(workflow_type_id)
        self.version_repo.delete_for_workflow_type(workflow_type_id)

    def _clear_other_defaults(self, workflow_type: WorkflowType) -> None:
        """One default type per tenant"""
        for other in self.repo.list_definitions(workflow_type.tenant_id):
            if other.workflow_type_id == workflow_type.workflow_type_id or not other.workflow_type.is_default:
                continue

            def change(definition: WorkflowDefinition) -> None:
                definition.workflow_type.is_default = False

            self._mutate(other.workflow_type_id, change)
            logger.info(
                f"Cleared default flag on {other.workflow_type_id}",
                extra={"workflow_type_id": other.workflow_type_id}
            )

    # =========================================================================
    # Statuses
    # =========================================================================

    def list_statuses(self, workflow_type_id: str) -> List[Status]:
        return self.repo.get_definition_or_raise(workflow_type_id).sorted_statuses()

    def get_status(self, status_id: str) -> Status:
        return self._definition_for_status(status_id).statuses[status_id]

    def create_status(self, workflow_type_id: str, data: Dict[str, Any]) -> Status:
        def change(definition: WorkflowDefinition) -> Status:
            now = utc_now()
            status = _build(Status, {
                **{k: v for k, v in data.items() if k not in IMMUTABLE_FIELDS},
                "status_id": generate_status_id(),
                "workflow_type_id": workflow_type_id,
                "created_at": now,
                "updated_at": now,
            })
            if not definition.statuses:
                # The first status of a type is its entry point
                status.is_initial = True
            elif status.is_initial:
                self._demote_initial(definition)
            definition.statuses[status.status_id] = status
            return status

        _, status = self._mutate(workflow_type_id, change)
        return status

    def update_status(self, status_id: str, updates: Dict[str, Any]) -> Status:
        definition = self._definition_for_status(status_id)

        def change(draft: WorkflowDefinition) -> Status:
            current = draft.statuses.get(status_id)
            if current is None:
                raise StatusNotFoundError(f"Status {status_id} not found")
            updated = _build(Status, _merge(current, updates))
            updated.updated_at = utc_now()
            if updated.is_initial and not current.is_initial:
                self._demote_initial(draft)
            draft.statuses[status_id] = updated
            return updated

        _, status = self._mutate(definition.workflow_type_id, change)
        return status

    def delete_status(self, status_id: str) -> None:
        """
        Delete a status

        Raises:
            ReferentialIntegrityError: a transition references it, tickets sit in
                it, or it is the initial status while other statuses exist
        """
        definition = self._definition_for_status(status_id)

        def change(draft: WorkflowDefinition) -> None:
            status = draft.statuses.get(status_id)
            if status is None:
                raise StatusNotFoundError(f"Status {status_id} not found")
            referencing = draft.transitions_referencing(status_id)
            if referencing:
                raise ReferentialIntegrityError(
                    f"Status {status.name} is referenced by {len(referencing)} transition(s)",
                    details={"transition_ids": [t.transition_id for t in referencing]}
                )
            if status.is_initial and len(draft.statuses) > 1:
                raise ReferentialIntegrityError(
                    f"Status {status.name} is the initial status; mark another status initial first"
                )
            ticket_count = self.ticket_repo.count_in_status(status_id)
            if ticket_count:
                raise ReferentialIntegrityError(
                    f"Status {status.name} is in use by {ticket_count} ticket(s)",
                    details={"ticket_count": ticket_count}
                )
            del draft.statuses[status_id]

        self._mutate(definition.workflow_type_id, change)

    @staticmethod
    def _demote_initial(definition: WorkflowDefinition) -> None:
        for status in definition.statuses.values():
            status.is_initial = False

    # =========================================================================
    # Transitions
    # =========================================================================

    def list_transitions(self, workflow_type_id: str, from_status_id: Optional[str] = None) -> List[Transition]:
        definition = self.repo.get_definition_or_raise(workflow_type_id)
        transitions = definition.transitions.values()
        if from_status_id:
            transitions = [t for t in transitions if t.applies_to(from_status_id)]
        return sorted(transitions, key=lambda t: (t.sort_order, t.name))

    def get_transition(self, transition_id: str) -> Transition:
        return self._definition_for_transition(transition_id).transitions[transition_id]

    def create_transition(self, workflow_type_id: str, data: Dict[str, Any]) -> Transition:
        """Create a transition, optionally with nested conditions and actions"""
        def change(definition: WorkflowDefinition) -> Transition:
            now = utc_now()
            transition_id = generate_transition_id()
            transition = _build(Transition, {
                **{k: v for k, v in data.items() if k not in IMMUTABLE_FIELDS},
                "transition_id": transition_id,
                "workflow_type_id": workflow_type_id,
                "conditions": [self._new_condition(transition_id, c) for c in data.get("conditions") or []],
                "actions": [self._new_action(transition_id, a) for a in data.get("actions") or []],
                "created_at": now,
                "updated_at": now,
            })
            definition.transitions[transition_id] = transition
            return transition

        _, transition = self._mutate(workflow_type_id, change)
        return transition

    def update_transition(self, transition_id: str, updates: Dict[str, Any]) -> Transition:
        definition = self._definition_for_transition(transition_id)

        def change(draft: WorkflowDefinition) -> Transition:
            current = self._transition_in(draft, transition_id)
            data = _merge(current, updates)
            data["conditions"] = [c.model_dump() for c in current.conditions]
            data["actions"] = [a.model_dump() for a in current.actions]
            updated = _build(Transition, data)
            updated.updated_at = utc_now()
            draft.transitions[transition_id] = updated
            return updated

        _, transition = self._mutate(definition.workflow_type_id, change)
        return transition

    def delete_transition(self, transition_id: str) -> None:
        """Delete a transition together with its conditions and actions"""
        definition = self._definition_for_transition(transition_id)

        def change(draft: WorkflowDefinition) -> None:
            self._transition_in(draft, transition_id)
            del draft.transitions[transition_id]

        self._mutate(definition.workflow_type_id, change)

    @staticmethod
    def _transition_in(definition: WorkflowDefinition, transition_id: str) -> Transition:
        transition = definition.transitions.get(transition_id)
        if transition is None:
            raise TransitionNotFoundError(f"Transition {transition_id} not found")
        return transition

    # =========================================================================
    # Conditions
    # =========================================================================

    @staticmethod
    def _new_condition(transition_id: str, data: Dict[str, Any]) -> Dict[str, Any]:
        return {
            **{k: v for k, v in data.items() if k not in IMMUTABLE_FIELDS},
            "condition_id": generate_condition_id(),
            "transition_id": transition_id,
        }

    def list_conditions(self, transition_id: str) -> List[Condition]:
        transition = self.get_transition(transition_id)
        return sorted(transition.conditions, key=lambda c: c.condition_group)

    def create_condition(self, transition_id: str, data: Dict[str, Any]) -> Condition:
        definition = self._definition_for_transition(transition_id)

        def change(draft: WorkflowDefinition) -> Condition:
            transition = self._transition_in(draft, transition_id)
            condition = _build(Condition, self._new_condition(transition_id, data))
            transition.conditions.append(condition)
            return condition

        _, condition = self._mutate(definition.workflow_type_id, change)
        return condition

    def update_condition(self, condition_id: str, updates: Dict[str, Any]) -> Condition:
        definition = self._definition_for_condition(condition_id)

        def change(draft: WorkflowDefinition) -> Condition:
            transition, index = self._locate_condition(draft, condition_id)
            updated = _build(Condition, _merge(transition.conditions[index], updates))
            transition.conditions[index] = updated
            return updated

        _, condition = self._mutate(definition.workflow_type_id, change)
        return condition

    def delete_condition(self, condition_id: str) -> None:
        definition = self._definition_for_condition(condition_id)

        def change(draft: WorkflowDefinition) -> None:
            transition, index = self._locate_condition(draft, condition_id)
            del transition.conditions[index]

        self._mutate(definition.workflow_type_id, change)

    def _definition_for_condition(self, condition_id: str) -> WorkflowDefinition:
        definition = self.repo.find_by_condition_id(condition_id)
        if definition is None:
            raise ConditionNotFoundError(f"Condition {condition_id} not found")
        return definition

    @staticmethod
    def _locate_condition(definition: WorkflowDefinition, condition_id: str) -> Tuple[Transition, int]:
        for transition in definition.transitions.values():
            for index, condition in enumerate(transition.conditions):
                if condition.condition_id == condition_id:
                    return transition, index
        raise ConditionNotFoundError(f"Condition {condition_id} not found")

    # =========================================================================
    # Actions
    # =========================================================================

    @staticmethod
    def _new_action(transition_id: str, data: Dict[str, Any]) -> Dict[str, Any]:
        return {
            **{k: v for k, v in data.items() if k not in IMMUTABLE_FIELDS},
            "action_id": generate_action_id(),
            "transition_id": transition_id,
        }

    def list_actions(self, transition_id: str) -> List[Action]:
        return sorted(self.get_transition(transition_id).actions, key=lambda a: a.execution_order)

    def create_action(self, transition_id: str, data: Dict[str, Any]) -> Action:
        definition = self._definition_for_transition(transition_id)

        def change(draft: WorkflowDefinition) -> Action:
            transition = self._transition_in(draft, transition_id)
            action = _build(Action, self._new_action(transition_id, data))
            transition.actions.append(action)
            return action

        _, action = self._mutate(definition.workflow_type_id, change)
        return action

    def update_action(self, action_id: str, updates: Dict[str, Any]) -> Action:
        definition = self._definition_for_action(action_id)

        def change(draft: WorkflowDefinition) -> Action:
            transition, index = self._locate_action(draft, action_id)
            current = transition.actions[index]
            data = _merge(current, updates)
            if "action_type" in updates and updates["action_type"] != current.action_type.value and "action_config" not in updates:
                raise DefinitionValidationError("Changing action_type requires a new action_config")
            if isinstance(data.get("action_config"), dict):
                # Re-tag from action_type so a changed type validates against its own config
                data["action_config"] = {k: v for k, v in data["action_config"].items() if k != "action_type"}
            updated = _build(Action, data)
            transition.actions[index] = updated
            return updated

        _, action = self._mutate(definition.workflow_type_id, change)
        return action

    def delete_action(self, action_id: str) -> None:
        definition = self._definition_for_action(action_id)

        def change(draft: WorkflowDefinition) -> None:
            transition, index = self._locate_action(draft, action_id)
            del transition.actions[index]

        self._mutate(definition.workflow_type_id, change)

    def _definition_for_action(self, action_id: str) -> WorkflowDefinition:
        definition = self.repo.find_by_action_id(action_id)
        if definition is None:
            raise ActionNotFoundError(f"Action {action_id} not found")
        return definition

    @staticmethod
    def _locate_action(definition: WorkflowDefinition, action_id: str) -> Tuple[Transition, int]:
        for transition in definition.transitions.values():
            for index, action in enumerate(transition.actions):
                if action.action_id == action_id:
                    return transition, index
        raise ActionNotFoundError(f"Action {action_id} not found")

    # =========================================================================
    # Integrity & validation
    # =========================================================================

    def _integrity_errors(self, definition: WorkflowDefinition) -> List[str]:
        """Rules every stored definition must satisfy"""
        errors: List[str] = []
        statuses = definition.statuses
        workflow_type_id = definition.workflow_type_id

        for name, count in Counter(s.name for s in statuses.values()).items():
            if count > 1:
                errors.append(f"Duplicate status name '{name}'")
        for name, count in Counter(t.name for t in definition.transitions.values()).items():
            if count > 1:
                errors.append(f"Duplicate transition name '{name}'")

        initial = [s for s in statuses.values() if s.is_initial]
        if statuses and len(initial) != 1:
            errors.append(f"Exactly one initial status is required (found {len(initial)})")

        for status in statuses.values():
            if status.workflow_type_id != workflow_type_id:
                errors.append(f"Status {status.name} belongs to another workflow type")

        for transition in definition.transitions.values():
            if transition.workflow_type_id != workflow_type_id:
                errors.append(f"Transition {transition.name} belongs to another workflow type")
            if transition.to_status_id not in statuses:
                errors.append(f"Transition {transition.name} targets unknown status {transition.to_status_id}")
            if transition.from_status_id is not None:
                source = statuses.get(transition.from_status_id)
                if source is None:
                    errors.append(
                        f"Transition {transition.name} starts from unknown status {transition.from_status_id}"
                    )
                elif source.is_final and transition.is_active:
                    errors.append(f"Final status {source.name} cannot have outgoing transition {transition.name}")
            for condition in transition.conditions:
                if condition.transition_id != transition.transition_id:
                    errors.append(f"Condition {condition.condition_id} is attached to the wrong transition")
            for action in transition.actions:
                if action.transition_id != transition.transition_id:
                    errors.append(f"Action {action.action_id} is attached to the wrong transition")

        active = [t for t in definition.transitions.values() if t.is_active]
        if initial and len(statuses) > 1 and active and all(
            t.is_wildcard and t.to_status_id == initial[0].status_id for t in active
        ):
            errors.append("Wildcard transitions only lead back to the initial status; no other status is reachable")

        return errors

    def _check_integrity(self, definition: WorkflowDefinition) -> None:
        errors = self._integrity_errors(definition)
        if errors:
            raise DefinitionIntegrityError(errors[0], details={"errors": errors})

    @staticmethod
    def _reachable_status_ids(definition: WorkflowDefinition) -> Set[str]:
        initial = definition.initial_status()
        if initial is None:
            return set()
        active = [t for t in definition.transitions.values() if t.is_active]
        # Wildcards leave any status, so their targets are reachable once anything is
        reachable = {initial.status_id} | {t.to_status_id for t in active if t.is_wildcard}
        to_visit = list(reachable)
        while to_visit:
            current = to_visit.pop()
            for transition in active:
                if transition.from_status_id == current and transition.to_status_id not in reachable:
                    reachable.add(transition.to_status_id)
                    to_visit.append(transition.to_status_id)
        return reachable

    def validate_definition(self, workflow_type_id: str) -> ValidationReport:
        """Full report: integrity errors plus reachability and dead-end warnings"""
        definition = self.repo.get_definition_or_raise(workflow_type_id)
        errors = self._integrity_errors(definition)
        warnings: List[str] = []

        if not definition.statuses:
            errors.append("Workflow type has no statuses")

        reachable = self._reachable_status_ids(definition)
        unreachable = [
            s.status_id for s in definition.sorted_statuses()
            if s.is_active and s.status_id not in reachable
        ]
        for status_id in unreachable:
            warnings.append(f"Status {definition.statuses[status_id].name} is unreachable from the initial status")

        for status in definition.sorted_statuses():
            if status.is_final or not status.is_active:
                continue
            if not definition.active_transitions_from(status.status_id):
                warnings.append(f"Status {status.name} has no outgoing transitions and is not final")

        if definition.statuses and not any(s.is_final for s in definition.statuses.values()):
            warnings.append("Workflow type has no final status")

        return ValidationReport(
            workflow_type_id=workflow_type_id,
            is_valid=not errors,
            errors=errors,
            warnings=warnings,
            unreachable_status_ids=unreachable,
        )

    # =========================================================================
    # Export / import
    # =========================================================================

    def export_definition(self, workflow_type_id: str) -> Dict[str, Any]:
        return self._export(self.repo.get_definition_or_raise(workflow_type_id))

    @staticmethod
    def _export(definition: WorkflowDefinition) -> Dict[str, Any]:
        return {
            "format_version": EXPORT_FORMAT_VERSION,
            "exported_at": format_iso(utc_now()),
            "workflow_type": definition.workflow_type.model_dump(mode="json"),
            "statuses": [s.model_dump(mode="json") for s in definition.sorted_statuses()],
            "transitions": [
                t.model_dump(mode="json")
                for t in sorted(definition.transitions.values(), key=lambda t: (t.sort_order, t.name))
            ],
        }

    def import_definition(
        self,
        document: Dict[str, Any],
        actor_id: Optional[str] = None,
        replace_existing: bool = False,
        tenant_id: Optional[str] = None,
    ) -> WorkflowDefinition:
        """
        Create (or replace) a workflow type from an export document

        All ids are regenerated. When replacing, statuses and transitions are
        matched by name so tickets and history keep pointing at the same ids.
        The whole document is validated before anything is written. The
        imported configuration is recorded as the type's active version.
        """
        header = self._check_document(document)
        tenant_id = tenant_id or settings.tenant_id
        existing = self.repo.find_by_name(tenant_id, header["name"])
        if existing is not None and not replace_existing:
            raise AlreadyExistsError(
                f"Workflow type '{header['name']}' already exists",
                details={"workflow_type_id": existing.workflow_type_id}
            )

        workflow_type_id = existing.workflow_type_id if existing else generate_workflow_type_id()
        definition = self._definition_from_document(document, workflow_type_id, tenant_id, existing, actor_id)
        self._check_integrity(definition)

        if existing is None:
            saved = self.repo.create_definition(definition)
        else:
            self._check_dropped_statuses(existing, definition.statuses)
            saved = self.repo.save_definition(definition, expected_version=existing.version)
        self.store.publish(saved)
        self._snapshot(saved, actor_id, "Imported configuration", is_active=True)

        logger.info(
            f"Imported workflow type {saved.workflow_type.name} "
            f"({len(saved.statuses)} statuses, {len(saved.transitions)} transitions)",
            extra={"workflow_type_id": workflow_type_id}
        )
        return saved

    @staticmethod
    def _check_document(document: Any) -> Dict[str, Any]:
        """Shape checks on an export document; returns its workflow_type header"""
        if not isinstance(document, dict):
            raise DefinitionValidationError("Import document must be a JSON object")
        if document.get("format_version") != EXPORT_FORMAT_VERSION:
            raise DefinitionValidationError(
                f"Unsupported format_version {document.get('format_version')!r}",
                details={"supported": [EXPORT_FORMAT_VERSION]}
            )
        header = document.get("workflow_type")
        if not isinstance(header, dict) or not header.get("name"):
            raise DefinitionValidationError("Import document needs a workflow_type with a name")
        for key in ("statuses", "transitions"):
            if not isinstance(document.get(key) or [], list):
                raise DefinitionValidationError(f"Import document {key} must be a list")
        return header

    def _definition_from_document(
        self,
        document: Dict[str, Any],
        workflow_type_id: str,
        tenant_id: str,
        existing: Optional[WorkflowDefinition],
        actor_id: Optional[str],
    ) -> WorkflowDefinition:
        """
        Build an aggregate from an export document

        Ids of statuses and transitions whose names exist in `existing` are
        reused; everything else gets a fresh id. An existing type keeps its
        name, default flag and creation stamp.
        """
        header = document["workflow_type"]
        existing_statuses = {s.name: s.status_id for s in existing.statuses.values()} if existing else {}
        existing_transitions = {t.name: t.transition_id for t in existing.transitions.values()} if existing else {}
        now = utc_now()

        workflow_type = _build(WorkflowType, {
            **{k: v for k, v in header.items() if k not in IMMUTABLE_FIELDS and k != "updated_at"},
            "workflow_type_id": workflow_type_id,
            "tenant_id": tenant_id,
            "name": existing.workflow_type.name if existing else header.get("name"),
            "is_default": existing.workflow_type.is_default if existing else False,
            "created_by_id": existing.workflow_type.created_by_id if existing else actor_id,
            "created_at": existing.workflow_type.created_at if existing else now,
            "updated_at": now,
        })

        status_map: Dict[str, str] = {}
        statuses: Dict[str, Status] = {}
        for raw in document.get("statuses") or []:
            old_id = raw.get("status_id")
            new_id = existing_statuses.get(raw.get("name")) or generate_status_id()
            if old_id:
                status_map[old_id] = new_id
            statuses[new_id] = _build(Status, {
                **{k: v for k, v in raw.items() if k not in IMMUTABLE_FIELDS},
                "status_id": new_id,
                "workflow_type_id": workflow_type_id,
                "created_at": now,
                "updated_at": now,
            })

        transitions: Dict[str, Transition] = {}
        for raw in document.get("transitions") or []:
            new_id = existing_transitions.get(raw.get("name")) or generate_transition_id()
            from_id = raw.get("from_status_id")
            to_id = raw.get("to_status_id")
            if from_id is not None and from_id not in status_map:
                raise DefinitionValidationError(f"Transition {raw.get('name')} references unknown status {from_id}")
            if to_id not in status_map:
                raise DefinitionValidationError(f"Transition {raw.get('name')} references unknown status {to_id}")
            transitions[new_id] = _build(Transition, {
                **{k: v for k, v in raw.items() if k not in IMMUTABLE_FIELDS},
                "transition_id": new_id,
                "workflow_type_id": workflow_type_id,
                "from_status_id": status_map[from_id] if from_id is not None else None,
                "to_status_id": status_map[to_id],
                "conditions": [self._new_condition(new_id, c) for c in raw.get("conditions") or []],
                "actions": [self._new_action(new_id, a) for a in raw.get("actions") or []],
                "created_at": now,
                "updated_at": now,
            })

        return WorkflowDefinition(workflow_type=workflow_type, statuses=statuses, transitions=transitions)

    def _check_dropped_statuses(self, current: WorkflowDefinition, statuses: Dict[str, Status]) -> None:
        """A replacement may not drop a status that tickets still sit in"""
        for status_id in current.statuses:
            if status_id in statuses:
                continue
            in_use = self.ticket_repo.count_in_status(status_id)
            if in_use:
                raise ReferentialIntegrityError(
                    f"Status {current.statuses[status_id].name} is missing from the new configuration "
                    f"but used by {in_use} ticket(s)",
                    details={"status_id": status_id, "ticket_count": in_use}
                )

    # =========================================================================
    # Versions
    # =========================================================================

    def _snapshot(
        self,
        definition: WorkflowDefinition,
        actor_id: Optional[str],
        description: Optional[str],
        is_active: bool = False,
    ) -> WorkflowVersion:
        return self.version_repo.create_version(
            definition.workflow_type_id,
            configuration=self._export(definition),
            definition_version=definition.version,
            created_by_id=actor_id,
            description=description,
            is_active=is_active,
        )

    def list_versions(self, workflow_type_id: str, page: int = 1, limit: int = 10) -> WorkflowVersionPage:
        """Versions of a type, newest version_number first"""
        if page < 1:
            raise ValidationError("page must be >= 1")
        if limit < 1 or limit > MAX_PAGE_SIZE:
            raise ValidationError(f"limit must be between 1 and {MAX_PAGE_SIZE}")
        self.repo.get_definition_or_raise(workflow_type_id)
        items, total = self.version_repo.list_versions(workflow_type_id, skip=(page - 1) * limit, limit=limit)
        return WorkflowVersionPage(items=items, page=page, limit=limit, total=total)

    def get_version(self, version_id: str) -> WorkflowVersion:
        return self.version_repo.get_version_or_raise(version_id)

    def create_version(
        self,
        workflow_type_id: str,
        actor_id: Optional[str] = None,
        description: Optional[str] = None,
    ) -> WorkflowVersion:
        """Snapshot the current configuration under the next version number"""
        definition = self.repo.get_definition_or_raise(workflow_type_id)
        version = self._snapshot(
            definition, actor_id, description or "Snapshot of the current configuration"
        )
        logger.info(
            f"Snapshot v{version.version_number} of workflow type {workflow_type_id}",
            extra={"workflow_type_id": workflow_type_id, "version_id": version.version_id}
        )
        return version

    def activate_version(self, version_id: str, actor_id: Optional[str] = None) -> WorkflowVersion:
        """
        Make a stored snapshot the live configuration of its type

        Statuses and transitions are matched by name so tickets keep their
        status ids. The restored aggregate passes the same integrity checks
        and optimistic save as any other edit, then the version becomes the
        type's only active one.
        """
        version = self.version_repo.get_version_or_raise(version_id)
        self._check_document(version.configuration)

        def change(draft: WorkflowDefinition) -> None:
            restored = self._definition_from_document(
                version.configuration, draft.workflow_type_id, draft.workflow_type.tenant_id, draft, actor_id
            )
            self._check_dropped_statuses(draft, restored.statuses)
            draft.workflow_type = restored.workflow_type
            draft.statuses = restored.statuses
            draft.transitions = restored.transitions

        saved, _ = self._mutate(version.workflow_type_id, change)
        activated = self.version_repo.mark_active(version)
        logger.info(
            f"Activated v{version.version_number} of workflow type {version.workflow_type_id}",
            extra={
                "workflow_type_id": version.workflow_type_id,
                "version_id": version_id,
                "definition_version": saved.version,
            }
        )
        return activated

    # =========================================================================
    # Statistics
    # =========================================================================

    def get_workflow_stats(
        self,
        workflow_type_id: str,
        date_from: Optional[datetime] = None,
        date_to: Optional[datetime] = None,
    ) -> WorkflowStats:
        self.repo.get_definition_or_raise(workflow_type_id)
        rows = self.history_repo.list_for_workflow_type(workflow_type_id, date_from, date_to)

        total = len(rows)
        successful = sum(1 for r in rows if r.get("success"))
        durations = [int(r.get("execution_duration_ms") or 0) for r in rows]
        by_target: Counter = Counter()
        failed_actions = 0
        for row in rows:
            if row.get("success") and row.get("to_status"):
                by_target[row["to_status"].get("name") or row["to_status"].get("status_id")] += 1
            failed_actions += sum(1 for a in row.get("actions_result") or [] if not a.get("success"))

        return WorkflowStats(
            workflow_type_id=workflow_type_id,
            date_from=date_from,
            date_to=date_to,
            total_executions=total,
            successful_executions=successful,
            failed_executions=total - successful,
            success_rate=round(successful / total, 4) if total else 0.0,
            failure_rate=round((total - successful) / total, 4) if total else 0.0,
            avg_duration_ms=round(sum(durations) / total, 2) if total else 0.0,
            min_duration_ms=min(durations) if durations else 0,
            max_duration_ms=max(durations) if durations else 0,
            by_target_status=dict(by_target),
            failed_actions=failed_actions,
        )
