"""
Pytest Configuration and Fixtures

Shared fixtures for all tests: mongomock-backed repositories, channels with
httpx.MockTransport, a fully wired engine and a demo support workflow.
"""

from types import SimpleNamespace
from typing import Callable, Dict, List

import httpx
import mongomock
import pytest

from ticketflow.domain.models import Ticket, User
from ticketflow.domain.enums import UserRole
from ticketflow.engine.action_pipeline import ActionPipeline
from ticketflow.engine.definition_store import DefinitionStore
from ticketflow.engine.engine import WorkflowEngine
from ticketflow.engine.script_sandbox import ScriptSandbox
from ticketflow.repositories.definition_repo import DefinitionRepository
from ticketflow.repositories.history_repo import HistoryRepository
from ticketflow.repositories.inapp_notification_repo import InAppNotificationRepository
from ticketflow.repositories.mongo_client import (
    WORKFLOW_DEFINITIONS, TICKETS, USERS, INAPP_NOTIFICATIONS, TRANSITION_HISTORY, WORKFLOW_VERSIONS
)
from ticketflow.repositories.ticket_repo import TicketRepository
from ticketflow.repositories.user_repo import UserRepository
from ticketflow.repositories.version_repo import WorkflowVersionRepository
from ticketflow.services.notification_service import (
    EmailChannel, InAppChannel, NotificationChannels, TelegramChannel, WebhookChannel
)
from ticketflow.services.workflow_service import WorkflowService
from ticketflow.utils.idgen import generate_ticket_id
from ticketflow.utils.time import utc_now


class HttpRecorder:
    """MockTransport handler that records requests; tests swap `handler`"""

    def __init__(self):
        self.requests: List[httpx.Request] = []
        self.handler: Callable[[httpx.Request], httpx.Response] = (
            lambda request: httpx.Response(200, json={"ok": True, "result": {"message_id": 1}})
        )

    def __call__(self, request: httpx.Request) -> httpx.Response:
        self.requests.append(request)
        return self.handler(request)


# =============================================================================
# Storage
# =============================================================================

@pytest.fixture
def db():
    return mongomock.MongoClient().ticketflow_test


@pytest.fixture
def definition_repo(db):
    return DefinitionRepository(db[WORKFLOW_DEFINITIONS])


@pytest.fixture
def ticket_repo(db):
    return TicketRepository(db[TICKETS])


@pytest.fixture
def user_repo(db):
    return UserRepository(db[USERS])


@pytest.fixture
def history_repo(db):
    return HistoryRepository(db[TRANSITION_HISTORY])


@pytest.fixture
def inapp_repo(db):
    return InAppNotificationRepository(db[INAPP_NOTIFICATIONS])


@pytest.fixture
def version_repo(db):
    return WorkflowVersionRepository(db[WORKFLOW_VERSIONS])


@pytest.fixture
def store(definition_repo):
    return DefinitionStore(definition_repo)


# =============================================================================
# Channels & engine
# =============================================================================

@pytest.fixture
def http():
    return HttpRecorder()


@pytest.fixture
def channels(http, inapp_repo):
    transport = httpx.MockTransport(http)
    return NotificationChannels(
        email=EmailChannel(transport=transport),
        telegram=TelegramChannel(bot_token="test-token", transport=transport),
        webhook=WebhookChannel(transport=transport),
        in_app=InAppChannel(repo=inapp_repo),
    )


@pytest.fixture
def sandbox():
    return ScriptSandbox(timeout_ms=3000)


@pytest.fixture
def engine(store, ticket_repo, user_repo, history_repo, version_repo, channels, sandbox):
    workflow_engine = WorkflowEngine(
        definition_store=store,
        ticket_repo=ticket_repo,
        user_repo=user_repo,
        history_repo=history_repo,
        channels=channels,
        sandbox=sandbox,
        pipeline=ActionPipeline(max_workers=4),
        version_repo=version_repo,
    )
    yield workflow_engine
    workflow_engine.shutdown()


@pytest.fixture
def workflow_service(definition_repo, store, ticket_repo, history_repo, version_repo):
    return WorkflowService(
        repo=definition_repo,
        store=store,
        ticket_repo=ticket_repo,
        history_repo=history_repo,
        version_repo=version_repo,
    )


# =============================================================================
# Directory
# =============================================================================

@pytest.fixture
def users(user_repo) -> Dict[str, User]:
    people = {
        "admin": User(user_id="usr_admin", email="admin@example.com", display_name="Alex Admin",
                      role=UserRole.ADMIN.value, telegram_id="1001"),
        "agent": User(user_id="usr_agent_1", email="agent1@example.com", display_name="Sam Agent",
                      role=UserRole.AGENT.value),
        "agent2": User(user_id="usr_agent_2", email="agent2@example.com", display_name="Kim Agent",
                       role=UserRole.AGENT.value),
        "customer": User(user_id="usr_customer", email="customer@example.com", display_name="Jo Customer"),
    }
    for person in people.values():
        user_repo.create_user(person)
    return people


# =============================================================================
# Workflow & tickets
# =============================================================================

def _names(text: str) -> Dict[str, str]:
    return {"en": text}


@pytest.fixture
def support_workflow(workflow_service) -> SimpleNamespace:
    """
    new -> in_progress -> resolved -> closed, plus a wildcard cancel

    assign_and_start needs an assignee and priority != low; resolve needs a comment.
    """
    definition = workflow_service.create_workflow_type(
        {"name": "it_support", "display_name": _names("IT Support")}, actor_id="usr_admin"
    )
    type_id = definition.workflow_type_id

    statuses = {}
    for name, extra in (
        ("new", {"sla_hours": 8}),
        ("in_progress", {"category": "active", "sla_hours": 24}),
        ("resolved", {"category": "resolved"}),
        ("closed", {"category": "closed", "is_final": True}),
    ):
        statuses[name] = workflow_service.create_status(
            type_id, {"name": name, "display_name": _names(name.replace("_", " ").title()), **extra}
        )

    transitions = {
        "assign_and_start": workflow_service.create_transition(type_id, {
            "name": "assign_and_start",
            "display_name": _names("Take and start"),
            "from_status_id": statuses["new"].status_id,
            "to_status_id": statuses["in_progress"].status_id,
            "requires_assignment": True,
            "conditions": [{
                "condition_type": "field", "field_name": "priority",
                "operator": "not_equals", "expected_value": "low", "condition_group": 1,
            }],
            "actions": [
                {"action_type": "assign", "execution_order": 0,
                 "action_config": {"assignee_rule": "current_user"}},
                {"action_type": "notify", "execution_order": 1,
                 "action_config": {"recipients": ["assignee"]}},
            ],
        }),
        "resolve": workflow_service.create_transition(type_id, {
            "name": "resolve",
            "display_name": _names("Resolve"),
            "from_status_id": statuses["in_progress"].status_id,
            "to_status_id": statuses["resolved"].status_id,
            "requires_comment": True,
        }),
        "close": workflow_service.create_transition(type_id, {
            "name": "close",
            "display_name": _names("Close"),
            "from_status_id": statuses["resolved"].status_id,
            "to_status_id": statuses["closed"].status_id,
        }),
        "cancel": workflow_service.create_transition(type_id, {
            "name": "cancel",
            "display_name": _names("Cancel"),
            "from_status_id": None,
            "to_status_id": statuses["closed"].status_id,
            "allowed_roles": ["admin"],
            "sort_order": 99,
        }),
    }
    return SimpleNamespace(
        type_id=type_id,
        statuses=statuses,
        transitions=transitions,
        status_id=lambda name: statuses[name].status_id,
        transition_id=lambda name: transitions[name].transition_id,
    )


@pytest.fixture
def make_ticket(ticket_repo, support_workflow):
    """Factory for tickets in the support workflow (status `new` by default)"""

    def factory(status: str = "new", **fields) -> Ticket:
        ticket = Ticket(
            ticket_id=generate_ticket_id(),
            title=fields.pop("title", "Printer on fire"),
            priority=fields.pop("priority", "high"),
            workflow_type_id=support_workflow.type_id,
            status_id=support_workflow.status_id(status),
            created_by_id=fields.pop("created_by_id", "usr_customer"),
            created_at=fields.pop("created_at", utc_now()),
            **fields,
        )
        return ticket_repo.create_ticket(ticket)

    return factory
