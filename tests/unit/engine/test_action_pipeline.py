"""Tests for ordered, failure-isolated action execution"""
import json
import time

import httpx
import pytest

from ticketflow.domain.models import Action
from ticketflow.engine.actions import ActionRun


def _action(index, action_type, config, order=0, active=True):
    return Action.model_validate({
        "action_id": f"act_{index}",
        "transition_id": "trn_test",
        "action_type": action_type,
        "action_config": config,
        "execution_order": order,
        "is_active": active,
    })


@pytest.fixture
def run_for(engine, support_workflow, users):
    def factory(ticket, actor=None, context=None):
        transition = support_workflow.transitions["assign_and_start"]
        definition = engine.definition_store.get_definition(support_workflow.type_id)
        return ActionRun(
            ticket=ticket,
            actor=actor or users["agent"],
            transition=transition,
            from_status=definition.get_status(transition.from_status_id),
            to_status=definition.get_status(transition.to_status_id),
            services=engine.executor.action_services,
            context=context or {"to_status_name": "In Progress"},
        )
    return factory


def test_actions_run_in_ascending_execution_order(engine, make_ticket, run_for, ticket_repo):
    ticket = make_ticket()
    actions = [
        _action(1, "log_event", {"event": "done", "message": "{{ticket.custom_fields.summary}}"}, order=2),
        _action(2, "update_field", {"field_name": "summary", "field_value": "triaged by {{user.display_name}}"},
                order=0),
        _action(3, "create_comment", {"content": "Summary: {{ticket.custom_fields.summary}}"}, order=1),
    ]

    outcomes = engine.pipeline.run_all(actions, run_for(ticket))

    assert [o.action_type.value for o in outcomes] == ["update_field", "create_comment", "log_event"]
    assert all(o.success for o in outcomes)
    # Later actions see what earlier ones wrote
    assert outcomes[1].output["content"] == "Summary: triaged by Sam Agent"
    assert outcomes[2].output["message"] == "triaged by Sam Agent"
    stored = ticket_repo.get_ticket(ticket.ticket_id)
    assert stored.comments[-1].content == "Summary: triaged by Sam Agent"
    assert stored.comments[-1].source == "action"


def test_ties_keep_insertion_order_and_inactive_actions_are_skipped(engine, make_ticket, run_for):
    actions = [
        _action(1, "log_event", {"event": "first"}),
        _action(2, "log_event", {"event": "skipped"}, active=False),
        _action(3, "log_event", {"event": "second"}),
    ]
    outcomes = engine.pipeline.run_all(actions, run_for(make_ticket()))
    assert [o.action_id for o in outcomes] == ["act_1", "act_3"]


def test_failure_does_not_stop_later_actions(engine, make_ticket, run_for):
    actions = [
        _action(1, "update_field", {"field_name": "status_id", "field_value": "hacked"}, order=0),
        _action(2, "script", {"script": "1 / 0"}, order=1),
        _action(3, "log_event", {"event": "still_runs"}, order=2),
    ]
    outcomes = engine.pipeline.run_all(actions, run_for(make_ticket()))

    assert [o.success for o in outcomes] == [False, False, True]
    assert outcomes[0].error_code == "ACTION_FAILED"
    assert outcomes[1].error_code == "SCRIPT_ERROR"


def test_webhook_that_never_answers_times_out(engine, make_ticket, run_for, http):
    def slow(request):
        time.sleep(1.5)
        return httpx.Response(200)

    http.handler = slow
    actions = [
        _action(1, "webhook", {"url": "https://hooks.example.com/slow", "timeout_ms": 200}, order=0),
        _action(2, "log_event", {"event": "after_webhook"}, order=1),
    ]

    started = time.monotonic()
    outcomes = engine.pipeline.run_all(actions, run_for(make_ticket()))

    assert time.monotonic() - started < 1.2
    assert outcomes[0].success is False
    assert outcomes[0].error_code == "ACTION_TIMEOUT"
    assert outcomes[1].success is True


def test_webhook_non_2xx_is_recorded_failure(engine, make_ticket, run_for, http):
    http.handler = lambda request: httpx.Response(503, text="maintenance")
    outcome = engine.pipeline.run_one(
        _action(1, "webhook", {"url": "https://hooks.example.com/x"}), run_for(make_ticket())
    )
    assert outcome.success is False
    assert outcome.error_code == "WEBHOOK_ERROR"


def test_webhook_default_payload_and_templated_headers(engine, make_ticket, run_for, http):
    ticket = make_ticket()
    outcome = engine.pipeline.run_one(
        _action(1, "webhook", {
            "url": "https://hooks.example.com/tickets/{{ticket.ticket_id}}",
            "method": "PUT",
            "headers": {"X-Actor": "{{user.user_id}}"},
        }),
        run_for(ticket),
    )

    assert outcome.success, outcome.error
    request = http.requests[-1]
    assert request.method == "PUT"
    assert str(request.url) == f"https://hooks.example.com/tickets/{ticket.ticket_id}"
    assert request.headers["X-Actor"] == "usr_agent_1"
    payload = json.loads(request.content)
    assert payload["event"] == "workflow_transition"
    assert payload["ticket"]["ticket_id"] == ticket.ticket_id


def test_send_telegram_reports_partial_failure(engine, make_ticket, run_for, http):
    def telegram(request):
        chat_id = json.loads(request.content)["chat_id"]
        if chat_id == "bad":
            return httpx.Response(400, json={"ok": False, "description": "chat not found"})
        return httpx.Response(200, json={"ok": True, "result": {"message_id": 5}})

    http.handler = telegram
    outcome = engine.pipeline.run_one(
        _action(1, "send_telegram", {"chat_ids": ["good", "bad"], "message": "{{ticket.title}}"}),
        run_for(make_ticket()),
    )

    assert outcome.success is False
    assert outcome.error_code == "CHANNEL_ERROR"
    assert len(http.requests) == 2


def test_script_action_result_is_recorded(engine, make_ticket, run_for):
    outcome = engine.pipeline.run_one(
        _action(1, "script", {"script": "{'priority': ticket['priority'], 'actor': user['user_id']}"}),
        run_for(make_ticket()),
    )
    assert outcome.success
    assert outcome.output == {"result": {"priority": "high", "actor": "usr_agent_1"}}


def test_notify_without_resolvable_recipients_fails(engine, make_ticket, run_for):
    outcome = engine.pipeline.run_one(
        _action(1, "notify", {"recipients": ["assignee"]}),
        run_for(make_ticket()),
    )
    assert outcome.success is False
    assert outcome.error_code == "ACTION_FAILED"


def test_send_email_unconfigured_channel_fails_cleanly(engine, make_ticket, run_for):
    outcome = engine.pipeline.run_one(
        _action(1, "send_email", {"recipients": ["ops@example.com"], "subject": "s", "body": "b"}),
        run_for(make_ticket()),
    )
    assert outcome.success is False
    assert outcome.error_code == "CHANNEL_ERROR"
