"""User Repository - Identity/directory collaborator"""
from typing import Any, Dict, List, Optional
from pymongo.collection import Collection
from pymongo import ASCENDING
from pymongo.errors import DuplicateKeyError

from .mongo_client import get_collection, USERS
from ..domain.models import User
from ..domain.errors import AlreadyExistsError
from ..utils.logger import get_logger
from ..utils.time import utc_now, to_storage

logger = get_logger(__name__)


class UserRepository:
    """Repository for directory users"""

    def __init__(self, collection: Optional[Collection] = None):
        self._users: Collection = collection if collection is not None else get_collection(USERS)

    @staticmethod
    def _from_doc(doc: Dict[str, Any]) -> User:
        doc.pop("_id", None)
        return User.model_validate(doc)

    def create_user(self, user: User) -> User:
        doc = to_storage(user.model_dump())
        doc["_id"] = user.user_id
        try:
            self._users.insert_one(doc)
        except DuplicateKeyError:
            raise AlreadyExistsError(f"User {user.user_id} already exists")
        logger.info(f"Created user: {user.user_id}", extra={"user_id": user.user_id})
        return user

    def get_user(self, user_id: str) -> Optional[User]:
        doc = self._users.find_one({"user_id": user_id})
        return self._from_doc(doc) if doc else None

    def get_user_role(self, user_id: str) -> Optional[str]:
        """Current directory role for a user, None when unknown"""
        doc = self._users.find_one({"user_id": user_id}, {"role": 1})
        return doc.get("role") if doc else None

    def get_users(self, user_ids: List[str]) -> List[User]:
        if not user_ids:
            return []
        cursor = self._users.find({"user_id": {"$in": list(user_ids)}})
        by_id = {doc["user_id"]: self._from_doc(doc) for doc in cursor}
        # Keep caller order
        return [by_id[user_id] for user_id in user_ids if user_id in by_id]

    def list_active_by_role(self, role: str) -> List[User]:
        """Active users with a role, least recently assigned first (never-assigned first)"""
        cursor = self._users.find({"role": role, "is_active": True}).sort(
            [("last_assigned_at", ASCENDING), ("user_id", ASCENDING)]
        )
        return [self._from_doc(doc) for doc in cursor]

    def mark_assigned(self, user_id: str) -> None:
        """Stamp last_assigned_at; drives round-robin rotation"""
        self._users.update_one({"user_id": user_id}, {"$set": to_storage({"last_assigned_at": utc_now()})})
