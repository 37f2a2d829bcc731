"""Tests for the guard condition evaluator"""
import itertools
from datetime import timedelta

import pytest

from ticketflow.domain.models import Condition, Ticket, User
from ticketflow.engine.condition_evaluator import ConditionEvaluator
from ticketflow.utils.time import utc_now


def make_condition(index=0, **fields):
    data = {
        "condition_id": f"cnd_{index}",
        "transition_id": "trn_test",
        "condition_type": "field",
        "field_name": "priority",
        "operator": "equals",
        "expected_value": "high",
        "condition_group": 1,
    }
    data.update(fields)
    return Condition.model_validate(data)


def make_ticket(**fields):
    data = {
        "ticket_id": "tkt_1",
        "title": "VPN is down",
        "priority": "high",
        "workflow_type_id": "wft_1",
        "status_id": "sts_new",
        "created_at": utc_now(),
    }
    data.update(fields)
    return Ticket.model_validate(data)


AGENT = User(user_id="usr_agent", display_name="Agent", role="agent")


@pytest.fixture
def evaluator(sandbox):
    return ConditionEvaluator(sandbox=sandbox)


def test_no_conditions_allows(evaluator):
    result = evaluator.evaluate_conditions([], make_ticket(), AGENT)
    assert result.allowed
    assert result.trace == []


def test_groups_are_and_of_ors_for_every_combination(evaluator):
    """A guard holds iff every group has at least one true condition"""
    ticket = make_ticket(custom_fields={"flag": "on"})
    for size in range(0, 5):
        for layout in itertools.product([1, 2, 3], [True, False], repeat=size):
            pairs = list(zip(layout[0::2], layout[1::2]))
            conditions = [
                make_condition(
                    i, field_name="flag", expected_value="on" if truthy else "off", condition_group=group
                )
                for i, (group, truthy) in enumerate(pairs)
            ]
            groups = {}
            for group, truthy in pairs:
                groups.setdefault(group, []).append(truthy)
            expected = all(any(results) for results in groups.values())

            result = evaluator.evaluate_conditions(conditions, ticket, AGENT)

            assert result.allowed is expected, pairs
            assert result.failed_groups == sorted(g for g, r in groups.items() if not any(r))


@pytest.mark.parametrize("operator,expected_value,actual,outcome", [
    ("equals", "5", 5, True),
    ("equals", "true", True, True),
    ("not_equals", "low", "high", True),
    ("greater_than", "10", 11, True),
    ("less_or_equal", "10", 10, True),
    ("greater_than", "10", None, False),
    ("contains", "net", "network outage", True),
    ("contains", "vip", ["vip", "eu"], True),
    ("not_contains", "vip", ["eu"], True),
    ("starts_with", "NET", "network", True),
    ("ends_with", "age", "outage", True),
    ("is_empty", None, "", True),
    ("is_not_empty", None, [], False),
    ("in", '["high", "urgent"]', "urgent", True),
    ("not_in", '["high", "urgent"]', "low", True),
    ("regex", r"^INC-\d+$", "INC-42", True),
    ("between", "[1, 5]", 3, True),
    ("between", "[1, 5]", 7, False),
])
def test_field_operators(evaluator, operator, expected_value, actual, outcome):
    condition = make_condition(field_name="custom_fields.value", operator=operator, expected_value=expected_value)
    ticket = make_ticket(custom_fields={"value": actual})
    assert evaluator.evaluate_conditions([condition], ticket, AGENT).allowed is outcome


def test_field_lookup_falls_back_to_custom_fields_then_context(evaluator):
    ticket = make_ticket(custom_fields={"region": "eu"})
    by_custom = make_condition(field_name="region", expected_value="eu")
    by_context = make_condition(1, field_name="channel", expected_value="phone")

    assert evaluator.evaluate_conditions([by_custom], ticket, AGENT).allowed
    assert evaluator.evaluate_conditions([by_context], ticket, AGENT, {"channel": "phone"}).allowed


def test_unparseable_value_makes_condition_false_with_error(evaluator):
    condition = make_condition(field_name="title", operator="greater_than", expected_value="3")
    result = evaluator.evaluate_conditions([condition], make_ticket(), AGENT)

    assert not result.allowed
    assert result.trace[0].error


def test_role_condition(evaluator):
    condition = make_condition(condition_type="role", field_name=None, operator="in",
                               expected_value='["agent", "admin"]')
    customer = User(user_id="usr_c", display_name="Customer", role="user")

    assert evaluator.evaluate_conditions([condition], make_ticket(), AGENT).allowed
    assert not evaluator.evaluate_conditions([condition], make_ticket(), customer).allowed


@pytest.mark.parametrize("operator, expected_value, role, allowed", [
    ("equals", "admin", "admin", True),
    ("equals", "admin", "Admin", False),
    ("equals", "admin", " admin", False),
    ("equals", "Admin", "admin", False),
    ("not_equals", "admin", "Admin", True),
    ("not_equals", "admin", "admin", False),
    ("in", '["admin", "agent"]', "AGENT", False),
    ("not_in", '["admin", "agent"]', "Agent", True),
])
def test_role_condition_compares_exactly(evaluator, operator, expected_value, role, allowed):
    condition = make_condition(condition_type="role", field_name=None, operator=operator,
                               expected_value=expected_value)
    user = User(user_id="usr_x", display_name="X", role=role)

    assert evaluator.evaluate_conditions([condition], make_ticket(), user).allowed is allowed


def test_time_condition_uses_last_transition_with_created_at_fallback(evaluator):
    condition = make_condition(condition_type="time", field_name="last_transition",
                               operator="greater_than", expected_value="60")
    old = make_ticket(created_at=utc_now() - timedelta(hours=3))
    moved_recently = make_ticket(created_at=utc_now() - timedelta(hours=3),
                                 last_transition_at=utc_now() - timedelta(minutes=5))

    assert evaluator.evaluate_conditions([condition], old, AGENT).allowed
    assert not evaluator.evaluate_conditions([condition], moved_recently, AGENT).allowed


def test_sla_condition_breach_flag_and_minutes(evaluator):
    breached = make_condition(condition_type="sla", field_name=None, operator="equals", expected_value="true")
    soon = make_condition(1, condition_type="sla", field_name=None, operator="less_than", expected_value="30")

    overdue = make_ticket(sla_deadline=utc_now() - timedelta(minutes=1))
    due_soon = make_ticket(sla_deadline=utc_now() + timedelta(minutes=10))
    no_deadline = make_ticket()

    assert evaluator.evaluate_conditions([breached], overdue, AGENT).allowed
    assert not evaluator.evaluate_conditions([breached], due_soon, AGENT).allowed
    assert evaluator.evaluate_conditions([soon], due_soon, AGENT).allowed
    assert not evaluator.evaluate_conditions([soon], no_deadline, AGENT).allowed


def test_assignment_condition(evaluator):
    assigned = make_condition(condition_type="assignment", field_name=None, operator="is_not_empty",
                              expected_value=None)
    mine = make_condition(1, condition_type="assignment", field_name=None, operator="equals",
                          expected_value="current_user")
    ticket = make_ticket(assigned_to_id=AGENT.user_id)

    assert evaluator.evaluate_conditions([assigned], ticket, AGENT).allowed
    assert evaluator.evaluate_conditions([mine], ticket, AGENT).allowed
    assert not evaluator.evaluate_conditions([assigned], make_ticket(), AGENT).allowed


def test_custom_condition_runs_in_sandbox(evaluator):
    condition = make_condition(condition_type="custom", field_name=None, operator="equals",
                               expected_value="ticket['priority'] == 'high' and user['role'] == 'agent'")
    assert evaluator.evaluate_conditions([condition], make_ticket(), AGENT).allowed


def test_custom_condition_non_bool_or_error_is_false(evaluator):
    not_bool = make_condition(condition_type="custom", field_name=None, operator="equals",
                              expected_value="len(ticket['title'])")
    raising = make_condition(1, condition_type="custom", field_name=None, operator="equals",
                             expected_value="context['missing']")

    first = evaluator.evaluate_conditions([not_bool], make_ticket(), AGENT)
    second = evaluator.evaluate_conditions([raising], make_ticket(), AGENT)

    assert not first.allowed and first.trace[0].error
    assert not second.allowed and "KeyError" in second.trace[0].error


def test_inactive_conditions_are_ignored_via_transition(evaluator):
    from ticketflow.domain.models import Transition

    transition = Transition.model_validate({
        "transition_id": "trn_test",
        "workflow_type_id": "wft_1",
        "name": "start",
        "display_name": {"en": "Start"},
        "to_status_id": "sts_done",
        "conditions": [make_condition(expected_value="low", is_active=False).model_dump()],
    })
    assert evaluator.evaluate(transition, make_ticket(), AGENT).allowed
