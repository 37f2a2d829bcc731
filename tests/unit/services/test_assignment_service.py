"""Tests for assignee rules and recipient resolution"""
import pytest

from ticketflow.domain.enums import AssigneeRule
from ticketflow.domain.errors import ActionError, InvalidAssigneeError, UserNotFoundError
from ticketflow.domain.models import User


@pytest.fixture
def assignment(engine):
    return engine.assignment


def test_round_robin_rotates_through_agents(assignment, users, make_ticket):
    ticket = make_ticket()
    picks = [assignment.resolve_assignee(AssigneeRule.ROUND_ROBIN, ticket, None).user_id for _ in range(4)]

    assert sorted(picks[:2]) == ["usr_agent_1", "usr_agent_2"]
    assert picks[2:] == picks[:2]


def test_least_assigned_ignores_closed_tickets(assignment, users, make_ticket):
    make_ticket(status="in_progress", assigned_to_id="usr_agent_1")
    make_ticket(status="closed", assigned_to_id="usr_agent_2")
    make_ticket(status="closed", assigned_to_id="usr_agent_2")

    chosen = assignment.resolve_assignee(AssigneeRule.LEAST_ASSIGNED, make_ticket(), None)

    assert chosen.user_id == "usr_agent_2"


def test_no_candidates_fails(assignment, users, make_ticket):
    with pytest.raises(ActionError):
        assignment.resolve_assignee(AssigneeRule.ROUND_ROBIN, make_ticket(), None, role="auditor")


def test_creator_and_current_user(assignment, users, make_ticket):
    ticket = make_ticket()
    assert assignment.resolve_assignee(AssigneeRule.CREATOR, ticket, None).user_id == "usr_customer"
    assert assignment.resolve_assignee(AssigneeRule.CURRENT_USER, ticket, users["agent"]).user_id == "usr_agent_1"

    with pytest.raises(InvalidAssigneeError):
        assignment.resolve_assignee(AssigneeRule.CURRENT_USER, ticket, User.system())


def test_specific_user_must_exist_and_be_active(assignment, users, user_repo, make_ticket):
    user_repo.create_user(User(user_id="usr_gone", display_name="Former", role="agent", is_active=False))
    ticket = make_ticket()

    with pytest.raises(UserNotFoundError):
        assignment.resolve_assignee(AssigneeRule.SPECIFIC_USER, ticket, None, assignee_id="usr_nobody")
    with pytest.raises(InvalidAssigneeError):
        assignment.resolve_assignee(AssigneeRule.SPECIFIC_USER, ticket, None, assignee_id="usr_gone")


def test_recipient_tokens_expand_in_order_without_duplicates(assignment, users, make_ticket):
    ticket = make_ticket(assigned_to_id="usr_agent_1")

    recipients = assignment.resolve_recipients(
        ["assignee", "creator", "current_user", "admins", "role:agent", "usr_agent_1", "usr_unknown"],
        ticket,
        users["admin"],
    )

    assert [u.user_id for u in recipients] == ["usr_agent_1", "usr_customer", "usr_admin", "usr_agent_2"]


def test_assignee_token_on_unassigned_ticket_resolves_nobody(assignment, users, make_ticket):
    assert assignment.resolve_recipients(["assignee"], make_ticket(), users["agent"]) == []
