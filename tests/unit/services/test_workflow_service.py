"""Tests for workflow definition management"""
from datetime import timedelta

import httpx
import pytest

from ticketflow.domain.errors import (
    AlreadyExistsError, CommentRequiredError, ConcurrencyError, ConditionNotFoundError,
    DefinitionIntegrityError, DefinitionValidationError, ReferentialIntegrityError, StatusNotFoundError,
    TransitionNotFoundError, ValidationError, WorkflowTypeNotFoundError, WorkflowVersionNotFoundError
)
from ticketflow.domain.models import ExecuteOptions, Ticket
from ticketflow.services.workflow_service import EXPORT_FORMAT_VERSION
from ticketflow.utils.time import utc_now


def _names(text):
    return {"en": text}


# =============================================================================
# Workflow types
# =============================================================================

def test_duplicate_type_name_is_rejected(workflow_service, support_workflow):
    with pytest.raises(AlreadyExistsError):
        workflow_service.create_workflow_type({"name": "it_support", "display_name": _names("Again")})


def test_invalid_payload_reports_fields(workflow_service):
    with pytest.raises(DefinitionValidationError) as exc_info:
        workflow_service.create_workflow_type({"name": "Has Spaces", "display_name": _names("x")})
    assert exc_info.value.details["errors"][0]["field"] == "name"


def test_only_one_default_type_per_tenant(workflow_service):
    first = workflow_service.create_workflow_type(
        {"name": "first", "display_name": _names("First"), "is_default": True}
    )
    second = workflow_service.create_workflow_type(
        {"name": "second", "display_name": _names("Second"), "is_default": True}
    )

    types = {t.name: t for t in workflow_service.list_workflow_types()}
    assert types["second"].is_default
    assert not types["first"].is_default
    assert first.workflow_type_id != second.workflow_type_id


def test_update_ignores_immutable_fields(workflow_service, support_workflow):
    updated = workflow_service.update_workflow_type(
        support_workflow.type_id, {"workflow_type_id": "wft_hijack", "is_active": False}
    )
    assert updated.workflow_type_id == support_workflow.type_id
    assert workflow_service.list_workflow_types(active_only=True) == []


def test_type_with_tickets_cannot_be_deleted(workflow_service, support_workflow, make_ticket):
    make_ticket()
    with pytest.raises(ReferentialIntegrityError):
        workflow_service.delete_workflow_type(support_workflow.type_id)


def test_delete_type_removes_everything(workflow_service, support_workflow):
    workflow_service.delete_workflow_type(support_workflow.type_id)

    with pytest.raises(WorkflowTypeNotFoundError):
        workflow_service.get_workflow_type(support_workflow.type_id)
    with pytest.raises(StatusNotFoundError):
        workflow_service.get_status(support_workflow.status_id("new"))


# =============================================================================
# Statuses
# =============================================================================

def test_first_status_is_initial_and_new_initial_demotes_old(workflow_service, support_workflow):
    assert workflow_service.get_status(support_workflow.status_id("new")).is_initial

    triage = workflow_service.create_status(
        support_workflow.type_id, {"name": "triage", "display_name": _names("Triage"), "is_initial": True}
    )

    initial = [s.name for s in workflow_service.list_statuses(support_workflow.type_id) if s.is_initial]
    assert initial == ["triage"]
    assert triage.is_initial


def test_duplicate_status_name_violates_integrity(workflow_service, support_workflow):
    with pytest.raises(DefinitionIntegrityError):
        workflow_service.create_status(support_workflow.type_id, {"name": "new", "display_name": _names("New")})


def test_final_status_cannot_gain_outgoing_transitions(workflow_service, support_workflow):
    with pytest.raises(DefinitionIntegrityError):
        workflow_service.create_transition(support_workflow.type_id, {
            "name": "reopen_closed",
            "display_name": _names("Reopen"),
            "from_status_id": support_workflow.status_id("closed"),
            "to_status_id": support_workflow.status_id("new"),
        })


def test_status_referenced_by_transition_cannot_be_deleted(workflow_service, support_workflow):
    with pytest.raises(ReferentialIntegrityError) as exc_info:
        workflow_service.delete_status(support_workflow.status_id("resolved"))
    assert support_workflow.transition_id("close") in exc_info.value.details["transition_ids"]


def test_status_with_tickets_cannot_be_deleted(workflow_service, support_workflow, ticket_repo):
    spare = workflow_service.create_status(
        support_workflow.type_id, {"name": "on_hold", "display_name": _names("On hold")}
    )
    ticket_repo.create_ticket(Ticket(
        ticket_id="tkt_hold", title="Waiting", workflow_type_id=support_workflow.type_id,
        status_id=spare.status_id, created_at=utc_now(),
    ))

    with pytest.raises(ReferentialIntegrityError):
        workflow_service.delete_status(spare.status_id)


def test_unused_status_is_deleted(workflow_service, support_workflow):
    spare = workflow_service.create_status(
        support_workflow.type_id, {"name": "on_hold", "display_name": _names("On hold")}
    )
    workflow_service.delete_status(spare.status_id)
    with pytest.raises(StatusNotFoundError):
        workflow_service.get_status(spare.status_id)


# =============================================================================
# Transitions, conditions and actions
# =============================================================================

def test_transition_to_unknown_status_is_rejected(workflow_service, support_workflow):
    with pytest.raises(DefinitionIntegrityError):
        workflow_service.create_transition(support_workflow.type_id, {
            "name": "nowhere",
            "display_name": _names("Nowhere"),
            "from_status_id": support_workflow.status_id("new"),
            "to_status_id": "sts_missing",
        })


def test_list_transitions_from_status_includes_wildcards(workflow_service, support_workflow):
    names = [t.name for t in workflow_service.list_transitions(
        support_workflow.type_id, from_status_id=support_workflow.status_id("in_progress")
    )]
    assert names == ["resolve", "cancel"]


def test_update_transition_keeps_conditions_and_actions(workflow_service, support_workflow):
    transition_id = support_workflow.transition_id("assign_and_start")
    updated = workflow_service.update_transition(transition_id, {"sort_order": 3, "conditions": []})

    assert updated.sort_order == 3
    assert len(updated.conditions) == 1
    assert [a.action_type.value for a in workflow_service.list_actions(transition_id)] == ["assign", "notify"]


def test_delete_transition_cascades(workflow_service, support_workflow):
    transition = support_workflow.transitions["assign_and_start"]
    condition_id = transition.conditions[0].condition_id

    workflow_service.delete_transition(transition.transition_id)

    with pytest.raises(TransitionNotFoundError):
        workflow_service.get_transition(transition.transition_id)
    with pytest.raises(ConditionNotFoundError):
        workflow_service.update_condition(condition_id, {"expected_value": "urgent"})


def test_condition_crud(workflow_service, support_workflow):
    transition_id = support_workflow.transition_id("resolve")
    condition = workflow_service.create_condition(transition_id, {
        "condition_type": "assignment", "operator": "is_not_empty", "condition_group": 2,
    })
    updated = workflow_service.update_condition(condition.condition_id, {"operator": "equals",
                                                                          "expected_value": "current_user"})
    assert updated.operator.value == "equals"
    assert updated.condition_id == condition.condition_id

    workflow_service.delete_condition(condition.condition_id)
    assert workflow_service.list_conditions(transition_id) == []


def test_invalid_condition_is_rejected(workflow_service, support_workflow):
    with pytest.raises(DefinitionValidationError):
        workflow_service.create_condition(support_workflow.transition_id("resolve"), {
            "condition_type": "field", "field_name": "title", "operator": "regex", "expected_value": "([",
        })


def test_action_crud_and_type_change(workflow_service, support_workflow):
    transition_id = support_workflow.transition_id("close")
    action = workflow_service.create_action(transition_id, {
        "action_type": "log_event", "action_config": {"event": "closed"}, "execution_order": 1,
    })

    with pytest.raises(DefinitionValidationError):
        workflow_service.update_action(action.action_id, {"action_type": "webhook"})

    changed = workflow_service.update_action(action.action_id, {
        "action_type": "webhook", "action_config": {"url": "https://hooks.example.com/closed"},
    })
    assert changed.action_type.value == "webhook"
    assert changed.action_config.url == "https://hooks.example.com/closed"

    reordered = workflow_service.update_action(action.action_id, {"execution_order": 4})
    assert reordered.action_config.url == "https://hooks.example.com/closed"

    workflow_service.delete_action(action.action_id)
    assert workflow_service.list_actions(transition_id) == []


def test_edits_are_visible_to_execution_immediately(workflow_service, support_workflow, engine,
                                                    make_ticket, users):
    ticket = make_ticket(status="resolved")
    workflow_service.update_transition(support_workflow.transition_id("close"), {"allowed_roles": ["admin"]})

    names = [t.name for t in engine.list_available_transitions(ticket.ticket_id, users["agent"])]
    assert "close" not in names


def test_concurrent_save_is_retried(workflow_service, support_workflow, definition_repo, monkeypatch):
    original = definition_repo.save_definition
    calls = {"count": 0}

    def flaky_save(definition, expected_version):
        calls["count"] += 1
        if calls["count"] == 1:
            raise ConcurrencyError("lost the race")
        return original(definition, expected_version)

    monkeypatch.setattr(definition_repo, "save_definition", flaky_save)
    workflow_service.update_workflow_type(support_workflow.type_id, {"description": _names("Helpdesk")})

    assert calls["count"] == 2
    assert workflow_service.get_workflow_type(support_workflow.type_id).workflow_type.description == _names("Helpdesk")


# =============================================================================
# Validation
# =============================================================================

def test_validate_reports_unreachable_and_dead_ends(workflow_service, support_workflow):
    workflow_service.create_status(support_workflow.type_id, {"name": "orphan", "display_name": _names("Orphan")})

    report = workflow_service.validate_definition(support_workflow.type_id)

    assert report.is_valid
    orphan_id = workflow_service.get_workflow_type(support_workflow.type_id).status_by_name("orphan").status_id
    assert report.unreachable_status_ids == [orphan_id]
    assert any("orphan" in w and "unreachable" in w for w in report.warnings)


def test_validate_empty_type_is_invalid(workflow_service):
    definition = workflow_service.create_workflow_type({"name": "empty", "display_name": _names("Empty")})
    report = workflow_service.validate_definition(definition.workflow_type_id)
    assert not report.is_valid
    assert report.errors == ["Workflow type has no statuses"]


def test_support_workflow_is_fully_reachable(workflow_service, support_workflow):
    report = workflow_service.validate_definition(support_workflow.type_id)
    assert report.is_valid
    assert report.unreachable_status_ids == []


# =============================================================================
# Export / import
# =============================================================================

def test_export_import_round_trip_rekeys_everything(workflow_service, support_workflow):
    document = workflow_service.export_definition(support_workflow.type_id)
    assert document["format_version"] == EXPORT_FORMAT_VERSION
    document["workflow_type"]["name"] = "it_support_copy"

    imported = workflow_service.import_definition(document, actor_id="usr_admin")

    original = workflow_service.get_workflow_type(support_workflow.type_id)
    assert imported.workflow_type_id != original.workflow_type_id
    assert not set(imported.statuses) & set(original.statuses)
    assert not set(imported.transitions) & set(original.transitions)
    assert sorted(s.name for s in imported.statuses.values()) == sorted(s.name for s in original.statuses.values())

    start = imported.transition_by_name("assign_and_start")
    assert start.from_status_id == imported.status_by_name("new").status_id
    assert start.to_status_id == imported.status_by_name("in_progress").status_id
    assert [a.transition_id for a in start.actions] == [start.transition_id] * 2
    assert start.conditions[0].condition_id != support_workflow.transitions["assign_and_start"].conditions[0].condition_id
    assert imported.transition_by_name("cancel").from_status_id is None
    assert imported.workflow_type.is_default is False


def test_import_existing_name_requires_replace(workflow_service, support_workflow):
    document = workflow_service.export_definition(support_workflow.type_id)
    with pytest.raises(AlreadyExistsError):
        workflow_service.import_definition(document)


def test_import_replace_keeps_ids_matched_by_name(workflow_service, support_workflow, make_ticket):
    make_ticket(status="in_progress")
    document = workflow_service.export_definition(support_workflow.type_id)
    document["transitions"] = [t for t in document["transitions"] if t["name"] != "close"]

    replaced = workflow_service.import_definition(document, replace_existing=True)

    assert replaced.workflow_type_id == support_workflow.type_id
    assert replaced.status_by_name("in_progress").status_id == support_workflow.status_id("in_progress")
    assert replaced.transition_by_name("resolve").transition_id == support_workflow.transition_id("resolve")
    assert replaced.transition_by_name("close") is None


def test_import_replace_cannot_drop_status_in_use(workflow_service, support_workflow, make_ticket):
    make_ticket(status="resolved")
    document = workflow_service.export_definition(support_workflow.type_id)
    document["statuses"] = [s for s in document["statuses"] if s["name"] != "resolved"]
    document["transitions"] = [
        t for t in document["transitions"]
        if support_workflow.status_id("resolved") not in (t["from_status_id"], t["to_status_id"])
    ]

    with pytest.raises(ReferentialIntegrityError):
        workflow_service.import_definition(document, replace_existing=True)


@pytest.mark.parametrize("mutate", [
    lambda doc: doc.update(format_version="0.9"),
    lambda doc: doc.pop("workflow_type"),
    lambda doc: doc["transitions"][0].update(to_status_id="sts_unknown"),
])
def test_malformed_import_is_rejected_without_writes(workflow_service, support_workflow, mutate):
    document = workflow_service.export_definition(support_workflow.type_id)
    document["workflow_type"]["name"] = "broken_copy"
    mutate(document)

    with pytest.raises(DefinitionValidationError):
        workflow_service.import_definition(document)
    assert [t.name for t in workflow_service.list_workflow_types()] == ["it_support"]


# =============================================================================
# Versions
# =============================================================================

def test_new_type_starts_with_an_active_initial_version(workflow_service):
    definition = workflow_service.create_workflow_type(
        {"name": "facilities", "display_name": _names("Facilities")}, actor_id="usr_admin"
    )

    versions = workflow_service.list_versions(definition.workflow_type_id)

    assert versions.total == 1
    initial = versions.items[0]
    assert initial.version_number == 1
    assert initial.is_active
    assert initial.created_by_id == "usr_admin"
    assert initial.configuration["statuses"] == []
    assert initial.configuration["format_version"] == EXPORT_FORMAT_VERSION


def test_create_version_snapshots_current_configuration(workflow_service, support_workflow):
    version = workflow_service.create_version(support_workflow.type_id, actor_id="usr_admin",
                                              description="Before cleanup")

    current = workflow_service.get_workflow_type(support_workflow.type_id)
    assert version.version_number == 2
    assert version.is_active is False
    assert version.description == "Before cleanup"
    assert version.definition_version == current.version
    assert sorted(s["name"] for s in version.configuration["statuses"]) == sorted(
        s.name for s in current.statuses.values()
    )
    assert workflow_service.get_version(version.version_id).version_number == 2


def test_versions_are_listed_newest_first_in_pages(workflow_service, support_workflow):
    for _ in range(3):
        workflow_service.create_version(support_workflow.type_id)

    first = workflow_service.list_versions(support_workflow.type_id, page=1, limit=3)
    second = workflow_service.list_versions(support_workflow.type_id, page=2, limit=3)

    assert [v.version_number for v in first.items] == [4, 3, 2]
    assert [v.version_number for v in second.items] == [1]
    assert first.total == 4
    assert first.total_pages == 2


def test_list_versions_rejects_bad_paging_and_unknown_type(workflow_service, support_workflow):
    with pytest.raises(ValidationError):
        workflow_service.list_versions(support_workflow.type_id, page=0)
    with pytest.raises(ValidationError):
        workflow_service.list_versions(support_workflow.type_id, limit=500)
    with pytest.raises(WorkflowTypeNotFoundError):
        workflow_service.list_versions("WFT-missing")


def test_activate_version_restores_configuration_by_name(workflow_service, support_workflow, store, make_ticket):
    snapshot = workflow_service.create_version(support_workflow.type_id, actor_id="usr_admin")
    workflow_service.update_transition(support_workflow.transition_id("resolve"), {"requires_comment": False})
    workflow_service.create_status(support_workflow.type_id, {"name": "on_hold", "display_name": _names("On hold")})
    ticket = make_ticket(status="in_progress")

    activated = workflow_service.activate_version(snapshot.version_id, actor_id="usr_admin")

    restored = workflow_service.get_workflow_type(support_workflow.type_id)
    assert activated.is_active
    assert restored.status_by_name("on_hold") is None
    assert restored.transition_by_name("resolve").requires_comment is True
    assert set(restored.statuses) == {s.status_id for s in support_workflow.statuses.values()}
    assert restored.transition_by_name("resolve").transition_id == support_workflow.transition_id("resolve")
    assert restored.status_by_name("in_progress").status_id == ticket.status_id
    assert store.get_definition(support_workflow.type_id).version == restored.version

    active = [v for v in workflow_service.list_versions(support_workflow.type_id).items if v.is_active]
    assert [v.version_id for v in active] == [snapshot.version_id]


def test_activate_version_checks_integrity_before_saving(workflow_service, support_workflow, version_repo):
    document = workflow_service.export_definition(support_workflow.type_id)
    for status in document["statuses"]:
        status["is_initial"] = True
    broken = version_repo.create_version(support_workflow.type_id, configuration=document, definition_version=1)
    before = workflow_service.get_workflow_type(support_workflow.type_id)

    with pytest.raises(DefinitionIntegrityError):
        workflow_service.activate_version(broken.version_id)

    assert workflow_service.get_workflow_type(support_workflow.type_id).version == before.version
    assert workflow_service.get_version(broken.version_id).is_active is False


def test_activate_version_cannot_drop_status_in_use(workflow_service, support_workflow, make_ticket):
    make_ticket()
    initial = workflow_service.list_versions(support_workflow.type_id).items[-1]
    assert initial.configuration["statuses"] == []

    with pytest.raises(ReferentialIntegrityError):
        workflow_service.activate_version(initial.version_id)
    assert workflow_service.get_workflow_type(support_workflow.type_id).status_by_name("new") is not None


def test_activate_unknown_version(workflow_service):
    with pytest.raises(WorkflowVersionNotFoundError):
        workflow_service.activate_version("VER-missing")


def test_import_records_an_active_version(workflow_service, support_workflow):
    document = workflow_service.export_definition(support_workflow.type_id)
    document["workflow_type"]["name"] = "it_support_copy"

    imported = workflow_service.import_definition(document, actor_id="usr_admin")

    versions = workflow_service.list_versions(imported.workflow_type_id)
    assert versions.total == 1
    assert versions.items[0].is_active
    assert versions.items[0].description == "Imported configuration"


def test_deleting_a_type_drops_its_versions(workflow_service, version_repo):
    definition = workflow_service.create_workflow_type({"name": "scratch", "display_name": _names("Scratch")})
    workflow_service.create_version(definition.workflow_type_id)

    workflow_service.delete_workflow_type(definition.workflow_type_id)

    _, total = version_repo.list_versions(definition.workflow_type_id)
    assert total == 0


# =============================================================================
# Statistics
# =============================================================================

def test_stats_count_executions_and_failed_actions(workflow_service, support_workflow, engine,
                                                   make_ticket, users, http):
    workflow_service.create_action(support_workflow.transition_id("close"), {
        "action_type": "webhook", "action_config": {"url": "https://hooks.example.com/closed"},
    })
    http.handler = lambda request: httpx.Response(500)

    closed = make_ticket(status="resolved")
    engine.execute_transition(closed.ticket_id, support_workflow.transition_id("close"), users["admin"])
    rejected = make_ticket(status="in_progress", assigned_to_id="usr_agent_1")
    with pytest.raises(CommentRequiredError):
        engine.execute_transition(
            rejected.ticket_id, support_workflow.transition_id("resolve"), users["agent"], ExecuteOptions()
        )

    stats = workflow_service.get_workflow_stats(support_workflow.type_id)

    assert stats.total_executions == 2
    assert stats.successful_executions == 1
    assert stats.failure_rate == 0.5
    assert stats.by_target_status == {"closed": 1}
    assert stats.failed_actions == 1

    future = workflow_service.get_workflow_stats(
        support_workflow.type_id, date_from=closed.created_at + timedelta(days=1)
    )
    assert future.total_executions == 0
