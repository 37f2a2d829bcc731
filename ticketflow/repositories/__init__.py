"""Repository modules - Data access layer"""
from .mongo_client import get_database, get_collection, create_indexes, health_check
from .definition_repo import DefinitionRepository
from .ticket_repo import TicketRepository
from .user_repo import UserRepository
from .history_repo import HistoryRepository
from .inapp_notification_repo import InAppNotificationRepository
from .version_repo import WorkflowVersionRepository

__all__ = [
    "get_database",
    "get_collection",
    "create_indexes",
    "health_check",
    "DefinitionRepository",
    "TicketRepository",
    "UserRepository",
    "HistoryRepository",
    "InAppNotificationRepository",
    "WorkflowVersionRepository",
]
