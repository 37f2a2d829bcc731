"""Tests for transition execution: guard phase, commit, actions and history"""
import threading

import httpx
import pytest

from ticketflow.domain.errors import (
    AssignmentRequiredError, CommentRequiredError, ConcurrencyError, ConditionsNotMetError,
    GuardError, InvalidAssigneeError, RoleNotAllowedError, StatusMismatchError,
    TransitionInactiveError, TransitionNotFoundError
)
from ticketflow.domain.models import ExecuteOptions


def _history(engine, ticket_id):
    return engine.list_history(ticket_id, include_details=True).items


# =============================================================================
# Available transitions
# =============================================================================

def test_available_transitions_respect_roles_and_guards(engine, make_ticket, support_workflow, users):
    ticket = make_ticket()

    as_agent = engine.list_available_transitions(ticket.ticket_id, users["agent"])
    as_admin = engine.list_available_transitions(ticket.ticket_id, users["admin"])

    assert [t.name for t in as_agent] == ["assign_and_start"]
    # Wildcard cancel applies from any status; sort_order puts it last
    assert [t.name for t in as_admin] == ["assign_and_start", "cancel"]


def test_available_transitions_hide_failing_guards(engine, make_ticket, users):
    low = make_ticket(priority="low")
    assert engine.list_available_transitions(low.ticket_id, users["agent"]) == []


def test_available_transitions_follow_current_status(engine, make_ticket, users):
    ticket = make_ticket(status="resolved")
    names = [t.name for t in engine.list_available_transitions(ticket.ticket_id, users["admin"])]
    assert names == ["close", "cancel"]


def test_available_transitions_evaluate_guards_with_execution_context(engine, make_ticket, support_workflow,
                                                                      users, workflow_service, ticket_repo):
    workflow_service.create_condition(support_workflow.transition_id("close"), {
        "condition_type": "field", "field_name": "transition_name",
        "operator": "equals", "expected_value": "close", "condition_group": 1,
    })
    workflow_service.create_condition(support_workflow.transition_id("close"), {
        "condition_type": "field", "field_name": "from_status_id",
        "operator": "equals", "expected_value": support_workflow.status_id("resolved"), "condition_group": 2,
    })
    ticket = make_ticket(status="resolved")

    # Caller context cannot shadow execution facts
    listed = engine.list_available_transitions(
        ticket.ticket_id, users["admin"], context={"transition_name": "something_else"}
    )
    assert [t.name for t in listed] == ["close", "cancel"]

    engine.execute_transition(ticket.ticket_id, support_workflow.transition_id("close"), users["admin"])
    assert ticket_repo.get_ticket(ticket.ticket_id).status_id == support_workflow.status_id("closed")


# =============================================================================
# Guard phase
# =============================================================================

@pytest.mark.parametrize("comment", [None, "", "   "])
def test_missing_comment_rejects_without_mutation(engine, make_ticket, support_workflow, users,
                                                   ticket_repo, comment):
    ticket = make_ticket(status="in_progress", assigned_to_id="usr_agent_1")

    with pytest.raises(CommentRequiredError):
        engine.execute_transition(
            ticket.ticket_id, support_workflow.transition_id("resolve"), users["agent"],
            ExecuteOptions(comment=comment),
        )

    stored = ticket_repo.get_ticket(ticket.ticket_id)
    assert stored.status_id == support_workflow.status_id("in_progress")
    assert stored.version == ticket.version
    assert stored.comments == []

    [entry] = _history(engine, ticket.ticket_id)
    assert entry.success is False
    assert entry.error_code == "COMMENT_REQUIRED"
    assert entry.actions_result == []
    assert entry.metadata["phase"] == "guard"


def test_failed_conditions_report_groups(engine, make_ticket, support_workflow, users):
    ticket = make_ticket(priority="low")
    with pytest.raises(ConditionsNotMetError) as exc_info:
        engine.execute_transition(
            ticket.ticket_id, support_workflow.transition_id("assign_and_start"), users["agent"],
            ExecuteOptions(assignee_id="usr_agent_1"),
        )
    assert exc_info.value.details["failed_groups"] == [1]
    [entry] = _history(engine, ticket.ticket_id)
    assert entry.conditions_result[0].result is False


def test_role_not_allowed(engine, make_ticket, support_workflow, users):
    ticket = make_ticket()
    with pytest.raises(RoleNotAllowedError):
        engine.execute_transition(ticket.ticket_id, support_workflow.transition_id("cancel"), users["agent"])


def test_role_is_read_from_directory_not_caller(engine, make_ticket, support_workflow, users):
    ticket = make_ticket()
    stale = users["agent"].model_copy(update={"role": "admin"})
    with pytest.raises(RoleNotAllowedError):
        engine.execute_transition(ticket.ticket_id, support_workflow.transition_id("cancel"), stale)


def test_transition_from_other_status_is_rejected(engine, make_ticket, support_workflow, users):
    ticket = make_ticket()
    with pytest.raises(StatusMismatchError):
        engine.execute_transition(
            ticket.ticket_id, support_workflow.transition_id("close"), users["admin"]
        )


def test_inactive_transition_is_rejected(engine, make_ticket, support_workflow, users, workflow_service):
    workflow_service.update_transition(support_workflow.transition_id("close"), {"is_active": False})
    ticket = make_ticket(status="resolved")
    with pytest.raises(TransitionInactiveError):
        engine.execute_transition(ticket.ticket_id, support_workflow.transition_id("close"), users["admin"])


def test_requires_assignment(engine, make_ticket, support_workflow, users):
    ticket = make_ticket()
    with pytest.raises(AssignmentRequiredError):
        engine.execute_transition(
            ticket.ticket_id, support_workflow.transition_id("assign_and_start"), users["agent"]
        )


def test_invalid_assignee_is_a_guard_failure(engine, make_ticket, support_workflow, users, user_repo):
    ticket = make_ticket()
    with pytest.raises(InvalidAssigneeError):
        engine.execute_transition(
            ticket.ticket_id, support_workflow.transition_id("assign_and_start"), users["agent"],
            ExecuteOptions(assignee_id="usr_nobody"),
        )
    [entry] = _history(engine, ticket.ticket_id)
    assert entry.error_code == "INVALID_ASSIGNEE"


def test_unknown_transition_is_not_recorded(engine, make_ticket, users):
    ticket = make_ticket()
    with pytest.raises(TransitionNotFoundError):
        engine.execute_transition(ticket.ticket_id, "trn_missing", users["admin"])
    assert engine.list_history(ticket.ticket_id).total == 0


# =============================================================================
# Commit and actions
# =============================================================================

def test_assign_and_start_end_to_end(engine, make_ticket, support_workflow, users, ticket_repo, inapp_repo):
    ticket = make_ticket()

    entry = engine.execute_transition(
        ticket.ticket_id,
        support_workflow.transition_id("assign_and_start"),
        users["agent"],
        ExecuteOptions(assignee_id="usr_agent_1", comment="On it"),
    )

    stored = ticket_repo.get_ticket(ticket.ticket_id)
    assert stored.status_id == support_workflow.status_id("in_progress")
    assert stored.assigned_to_id == "usr_agent_1"
    assert stored.last_transition_at is not None
    assert stored.comments[0].content == "On it"
    assert stored.comments[0].source == "transition"

    assert entry.success is True
    assert entry.from_status.name == "new"
    assert entry.to_status.name == "in_progress"
    assert entry.transition.name == "assign_and_start"
    assert [(o.action_type.value, o.success) for o in entry.actions_result] == [
        ("assign", True), ("notify", True)
    ]
    assert entry.metadata["assignee_id"] == "usr_agent_1"

    [notification] = inapp_repo.list_for_user("usr_agent_1")
    assert notification.ticket_id == ticket.ticket_id
    assert "In Progress" in notification.message

    history = _history(engine, ticket.ticket_id)
    assert [h.history_id for h in history] == [entry.history_id]


def test_action_failure_keeps_committed_status(engine, make_ticket, support_workflow, users,
                                               workflow_service, ticket_repo, http):
    workflow_service.create_action(support_workflow.transition_id("resolve"), {
        "action_type": "webhook",
        "action_config": {"url": "https://hooks.example.com/resolved"},
        "execution_order": 0,
    })
    workflow_service.create_action(support_workflow.transition_id("resolve"), {
        "action_type": "create_comment",
        "action_config": {"content": "Resolved by {{user.display_name}}", "is_internal": True},
        "execution_order": 1,
    })
    http.handler = lambda request: httpx.Response(500, text="boom")
    ticket = make_ticket(status="in_progress", assigned_to_id="usr_agent_1")

    entry = engine.execute_transition(
        ticket.ticket_id, support_workflow.transition_id("resolve"), users["agent"],
        ExecuteOptions(comment="Rebooted the printer"),
    )

    assert entry.success is True
    assert [o.success for o in entry.actions_result] == [False, True]
    assert entry.actions_result[0].error_code == "WEBHOOK_ERROR"
    stored = ticket_repo.get_ticket(ticket.ticket_id)
    assert stored.status_id == support_workflow.status_id("resolved")
    assert [c.content for c in stored.comments] == ["Rebooted the printer", "Resolved by Sam Agent"]


def test_concurrent_executions_commit_exactly_once(engine, make_ticket, support_workflow, users, ticket_repo):
    ticket = make_ticket()
    transition_id = support_workflow.transition_id("assign_and_start")
    results, errors = [], []
    barrier = threading.Barrier(2)

    def attempt(user):
        barrier.wait()
        try:
            results.append(engine.execute_transition(
                ticket.ticket_id, transition_id, user, ExecuteOptions(assignee_id=user.user_id)
            ))
        except (GuardError, ConcurrencyError) as e:
            errors.append(e)

    threads = [threading.Thread(target=attempt, args=(users[name],)) for name in ("agent", "agent2")]
    for thread in threads:
        thread.start()
    for thread in threads:
        thread.join(timeout=10)

    assert len(results) == 1
    assert len(errors) == 1
    stored = ticket_repo.get_ticket(ticket.ticket_id)
    assert stored.status_id == support_workflow.status_id("in_progress")
    # One bump for the commit, one for the assign action
    assert stored.version == ticket.version + 2
    outcomes = [h.success for h in _history(engine, ticket.ticket_id)]
    assert sorted(outcomes) == [False, True]


def test_stale_commit_raises_concurrency_error(make_ticket, support_workflow, ticket_repo):
    ticket = make_ticket()
    ticket_repo.assign_ticket(ticket.ticket_id, "usr_agent_1")

    with pytest.raises(ConcurrencyError):
        ticket_repo.commit_transition(
            ticket.ticket_id,
            expected_status_id=ticket.status_id,
            expected_version=ticket.version,
            to_status_id=support_workflow.status_id("in_progress"),
        )


def test_status_hooks_run_after_commit(engine, make_ticket, support_workflow, users,
                                       workflow_service, ticket_repo, inapp_repo):
    workflow_service.update_status(support_workflow.status_id("resolved"), {"notify_on_enter": True})
    ticket = make_ticket(status="in_progress", assigned_to_id="usr_agent_1")

    entry = engine.execute_transition(
        ticket.ticket_id, support_workflow.transition_id("resolve"), users["agent"],
        ExecuteOptions(comment="Done"),
    )

    # The actor is not notified about their own change
    assert entry.metadata["status_hooks"]["notify_on_enter"] == {"success": True, "notified": ["usr_customer"]}
    assert inapp_repo.list_for_user("usr_agent_1") == []
    assert len(inapp_repo.list_for_user("usr_customer")) == 1


def test_auto_assign_status_picks_an_agent(engine, make_ticket, support_workflow, users,
                                           workflow_service, ticket_repo):
    workflow_service.update_status(support_workflow.status_id("closed"), {"auto_assign": True})
    ticket = make_ticket()

    entry = engine.execute_transition(ticket.ticket_id, support_workflow.transition_id("cancel"), users["admin"])

    hook = entry.metadata["status_hooks"]["auto_assign"]
    assert hook["success"] is True
    assert ticket_repo.get_ticket(ticket.ticket_id).assigned_to_id == hook["assigned_to_id"]
    assert hook["assigned_to_id"] in ("usr_agent_1", "usr_agent_2")


def test_caller_context_is_available_to_actions(engine, make_ticket, support_workflow, users,
                                                workflow_service, ticket_repo):
    workflow_service.create_action(support_workflow.transition_id("close"), {
        "action_type": "update_field",
        "action_config": {"field_name": "close_reason", "field_value": "{{context.reason}}"},
    })
    ticket = make_ticket(status="resolved")

    engine.execute_transition(
        ticket.ticket_id, support_workflow.transition_id("close"), users["admin"],
        ExecuteOptions(context={"reason": "duplicate"}),
    )

    stored = ticket_repo.get_ticket(ticket.ticket_id)
    assert stored.custom_fields["close_reason"] == "duplicate"
