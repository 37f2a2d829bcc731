"""Transition History Repository - Append-only execution records"""
import time
from datetime import datetime
from typing import Any, Dict, List, Optional
from pymongo.collection import Collection
from pymongo import DESCENDING
from pymongo.errors import DuplicateKeyError

from .mongo_client import get_collection, TRANSITION_HISTORY
from ..domain.models import HistoryEntry
from ..utils.logger import get_logger
from ..utils.time import to_storage

logger = get_logger(__name__)

# Payloads dropped from list responses unless details are requested
DETAIL_FIELDS = ("conditions_result", "actions_result", "metadata")


class HistoryRepository:
    """Repository for transition history (append-only, no update or delete)"""

    def __init__(self, collection: Optional[Collection] = None):
        self._history: Collection = (
            collection if collection is not None else get_collection(TRANSITION_HISTORY)
        )

    def insert_entry(self, entry: HistoryEntry) -> HistoryEntry:
        """
        Persist a history entry

        Re-inserting the same history_id (a retried write whose first attempt
        landed) is treated as success.
        """
        doc = entry.model_dump(mode="json")
        doc["_id"] = entry.history_id
        # Native datetime for range queries and sorting; seq breaks same-instant ties
        doc["created_at"] = to_storage(entry.created_at)
        doc["seq"] = time.time_ns()
        try:
            self._history.insert_one(doc)
        except DuplicateKeyError:
            logger.warning(
                f"History entry {entry.history_id} already stored",
                extra={"history_id": entry.history_id, "ticket_id": entry.ticket_id}
            )
        return entry

    @staticmethod
    def _from_doc(doc: Dict[str, Any]) -> HistoryEntry:
        doc.pop("_id", None)
        doc.pop("seq", None)
        return HistoryEntry.model_validate(doc)

    def list_for_ticket(
        self,
        ticket_id: str,
        skip: int = 0,
        limit: int = 20,
        include_details: bool = False,
        newest_first: bool = True,
    ) -> List[HistoryEntry]:
        """History for a ticket, newest first by default"""
        projection = None if include_details else {field: 0 for field in DETAIL_FIELDS}
        direction = DESCENDING if newest_first else 1
        cursor = (
            self._history.find({"ticket_id": ticket_id}, projection)
            .sort([("created_at", direction), ("seq", direction)])
            .skip(skip)
            .limit(limit)
        )
        return [self._from_doc(doc) for doc in cursor]

    def count_for_ticket(self, ticket_id: str) -> int:
        return self._history.count_documents({"ticket_id": ticket_id})

    def list_for_workflow_type(
        self,
        workflow_type_id: str,
        date_from: Optional[datetime] = None,
        date_to: Optional[datetime] = None,
    ) -> List[Dict[str, Any]]:
        """Raw summary rows for statistics"""
        query: Dict[str, Any] = {"workflow_type_id": workflow_type_id}
        created_range: Dict[str, Any] = {}
        if date_from:
            created_range["$gte"] = to_storage(date_from)
        if date_to:
            created_range["$lte"] = to_storage(date_to)
        if created_range:
            query["created_at"] = created_range
        projection = {
            "success": 1,
            "execution_duration_ms": 1,
            "to_status": 1,
            "actions_result": 1,
        }
        return list(self._history.find(query, projection))
