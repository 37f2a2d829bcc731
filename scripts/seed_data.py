"""
Seed Data Script - Creates a demo IT support workflow for testing
Run: python -m scripts.seed_data
"""
from ticketflow.repositories.mongo_client import create_indexes
from ticketflow.repositories.ticket_repo import TicketRepository
from ticketflow.repositories.user_repo import UserRepository
from ticketflow.domain.models import Ticket, User
from ticketflow.domain.enums import UserRole
from ticketflow.services.workflow_service import WorkflowService, EXPORT_FORMAT_VERSION
from ticketflow.utils.idgen import generate_ticket_id
from ticketflow.utils.logger import setup_logging, get_logger
from ticketflow.utils.time import utc_now

logger = get_logger(__name__)


def _status(key, name, **extra):
    return {"status_id": key, "name": key, "display_name": {"en": name}, **extra}


def _transition(name, label, from_status, to_status, **extra):
    return {
        "name": name,
        "display_name": {"en": label},
        "from_status_id": from_status,
        "to_status_id": to_status,
        **extra,
    }


SUPPORT_WORKFLOW = {
    "format_version": EXPORT_FORMAT_VERSION,
    "workflow_type": {
        "name": "it_support",
        "display_name": {"en": "IT Support", "ru": "ИТ поддержка"},
        "description": {"en": "Incident handling for the service desk"},
        "icon": "support_agent",
    },
    "statuses": [
        _status("new", "New", is_initial=True, sort_order=0, sla_hours=8, notify_on_enter=True),
        _status("in_progress", "In Progress", category="active", sort_order=1, sla_hours=24),
        _status("waiting_customer", "Waiting for Customer", category="pending", sort_order=2),
        _status("resolved", "Resolved", category="resolved", sort_order=3, notify_on_enter=True),
        _status("closed", "Closed", category="closed", is_final=True, sort_order=4),
    ],
    "transitions": [
        _transition(
            "assign_and_start", "Take and start", "new", "in_progress",
            requires_assignment=True, allowed_roles=["agent", "admin"], sort_order=0,
            conditions=[{
                "condition_type": "field", "field_name": "priority",
                "operator": "not_equals", "expected_value": "low", "condition_group": 1,
            }],
            actions=[
                {"action_type": "assign", "execution_order": 0,
                 "action_config": {"assignee_rule": "current_user"}},
                {"action_type": "notify", "execution_order": 1,
                 "action_config": {"recipients": ["assignee", "creator"]}},
                {"action_type": "update_sla", "execution_order": 2, "action_config": {}},
            ],
        ),
        _transition(
            "ask_customer", "Ask customer", "in_progress", "waiting_customer",
            requires_comment=True, sort_order=1,
            actions=[
                {"action_type": "notify", "execution_order": 0,
                 "action_config": {"recipients": ["creator"],
                                   "message": "{{user.display_name}} needs more information"}},
            ],
        ),
        _transition("resume", "Resume", "waiting_customer", "in_progress", sort_order=0),
        _transition(
            "resolve", "Resolve", "in_progress", "resolved",
            requires_comment=True, sort_order=2,
            actions=[
                {"action_type": "update_field", "execution_order": 0,
                 "action_config": {"field_name": "custom_fields.resolved_by",
                                   "field_value": "{{user.display_name}}"}},
                {"action_type": "log_event", "execution_order": 1,
                 "action_config": {"event": "ticket_resolved",
                                   "message": "Ticket {{ticket.ticket_id}} resolved"}},
            ],
        ),
        _transition("reopen", "Reopen", "resolved", "in_progress", sort_order=0),
        _transition(
            "auto_close", "Close after 3 days", "resolved", "closed",
            is_automatic=True, sort_order=1,
            conditions=[{
                "condition_type": "time", "field_name": "last_transition",
                "operator": "greater_than", "expected_value": "4320", "condition_group": 1,
            }],
        ),
        _transition(
            "cancel", "Cancel", None, "closed",
            requires_comment=True, allowed_roles=["admin"], sort_order=99, color="#d32f2f",
        ),
    ],
}

DEMO_USERS = [
    User(user_id="usr_admin", email="admin@example.com", display_name="Alex Admin", role=UserRole.ADMIN.value),
    User(user_id="usr_agent_1", email="agent1@example.com", display_name="Sam Agent", role=UserRole.AGENT.value),
    User(user_id="usr_agent_2", email="agent2@example.com", display_name="Kim Agent", role=UserRole.AGENT.value),
    User(user_id="usr_customer", email="customer@example.com", display_name="Jo Customer"),
]


def seed() -> None:
    create_indexes()

    users = UserRepository()
    for user in DEMO_USERS:
        if users.get_user(user.user_id) is None:
            users.create_user(user)

    service = WorkflowService()
    definition = service.repo.find_by_name("default", SUPPORT_WORKFLOW["workflow_type"]["name"])
    if definition is not None:
        logger.info("Demo workflow already present. Skipping seed.")
        return
    definition = service.import_definition(SUPPORT_WORKFLOW, actor_id="usr_admin")
    service.update_workflow_type(definition.workflow_type_id, {"is_default": True})

    ticket = TicketRepository().create_ticket(Ticket(
        ticket_id=generate_ticket_id(),
        title="Laptop does not boot",
        description="Black screen after the latest update",
        priority="high",
        workflow_type_id=definition.workflow_type_id,
        status_id=definition.initial_status().status_id,
        created_by_id="usr_customer",
        created_at=utc_now(),
    ))
    logger.info(
        f"Seeded workflow {definition.workflow_type_id} and ticket {ticket.ticket_id}",
        extra={"workflow_type_id": definition.workflow_type_id, "ticket_id": ticket.ticket_id}
    )


if __name__ == "__main__":
    setup_logging()
    seed()
