"""In-App Notification Repository - Data access for notification bell"""
from typing import List, Optional
from pymongo.collection import Collection
from pymongo import DESCENDING

from .mongo_client import get_collection, INAPP_NOTIFICATIONS
from ..domain.models import InAppNotification
from ..domain.enums import NotificationCategory
from ..utils.logger import get_logger
from ..utils.time import utc_now, to_storage
from ..utils.idgen import generate_notification_id

logger = get_logger(__name__)


class InAppNotificationRepository:
    """Repository for in-app notification operations"""

    def __init__(self, collection: Optional[Collection] = None):
        self._collection: Collection = (
            collection if collection is not None else get_collection(INAPP_NOTIFICATIONS)
        )

    def create_notification(
        self,
        recipient_id: str,
        title: str,
        message: str,
        category: NotificationCategory = NotificationCategory.WORKFLOW_ACTION,
        ticket_id: Optional[str] = None,
        actor_id: Optional[str] = None,
    ) -> InAppNotification:
        """Create a new in-app notification"""
        notification = InAppNotification(
            notification_id=generate_notification_id(),
            recipient_id=recipient_id,
            title=title,
            message=message,
            category=category,
            ticket_id=ticket_id,
            actor_id=actor_id,
            is_read=False,
            created_at=utc_now(),
        )
        doc = to_storage(notification.model_dump())
        doc["category"] = notification.category.value
        doc["_id"] = notification.notification_id
        self._collection.insert_one(doc)
        logger.debug(
            f"Created in-app notification for {recipient_id}",
            extra={"ticket_id": ticket_id, "user_id": recipient_id}
        )
        return notification

    def list_for_user(self, recipient_id: str, unread_only: bool = False, limit: int = 50) -> List[InAppNotification]:
        query = {"recipient_id": recipient_id}
        if unread_only:
            query["is_read"] = False
        cursor = self._collection.find(query).sort("created_at", DESCENDING).limit(limit)
        notifications = []
        for doc in cursor:
            doc.pop("_id", None)
            notifications.append(InAppNotification.model_validate(doc))
        return notifications

    def count_unread(self, recipient_id: str) -> int:
        return self._collection.count_documents({"recipient_id": recipient_id, "is_read": False})
