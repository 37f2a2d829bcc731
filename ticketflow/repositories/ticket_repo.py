"""Ticket Repository - Ticket storage collaborator for the transition engine"""
from datetime import datetime
from typing import Any, Dict, Iterable, List, Optional
from pymongo.collection import Collection
from pymongo import ASCENDING, ReturnDocument

from .mongo_client import get_collection, TICKETS
from ..domain.models import Ticket, TicketComment, TICKET_CORE_FIELDS
from ..domain.errors import TicketNotFoundError, ConcurrencyError
from ..utils.idgen import generate_comment_id
from ..utils.logger import get_logger
from ..utils.time import utc_now, to_storage

logger = get_logger(__name__)


class TicketRepository:
    """Repository for ticket operations"""

    def __init__(self, collection: Optional[Collection] = None):
        self._tickets: Collection = collection if collection is not None else get_collection(TICKETS)

    # =========================================================================
    # Ticket CRUD
    # =========================================================================

    def create_ticket(self, ticket: Ticket) -> Ticket:
        """Create a new ticket"""
        # Python-mode dump keeps datetimes native so MongoDB can sort and compare them
        doc = to_storage(ticket.model_dump())
        doc["_id"] = ticket.ticket_id
        self._tickets.insert_one(doc)
        logger.info(f"Created ticket: {ticket.ticket_id}", extra={"ticket_id": ticket.ticket_id})
        return ticket

    def get_ticket(self, ticket_id: str) -> Optional[Ticket]:
        """Get ticket by ID"""
        doc = self._tickets.find_one({"ticket_id": ticket_id})
        if doc:
            doc.pop("_id", None)
            return Ticket.model_validate(doc)
        return None

    def get_ticket_or_raise(self, ticket_id: str) -> Ticket:
        """Get ticket by ID or raise error"""
        ticket = self.get_ticket(ticket_id)
        if not ticket:
            raise TicketNotFoundError(f"Ticket {ticket_id} not found")
        return ticket

    def _update(
        self,
        ticket_id: str,
        set_fields: Dict[str, Any],
        push: Optional[Dict[str, Any]] = None,
        extra_filter: Optional[Dict[str, Any]] = None,
    ) -> Optional[Ticket]:
        set_fields = dict(set_fields)
        set_fields["updated_at"] = utc_now()
        update: Dict[str, Any] = {"$set": to_storage(set_fields), "$inc": {"version": 1}}
        if push:
            update["$push"] = to_storage(push)
        query = {"ticket_id": ticket_id}
        query.update(extra_filter or {})
        doc = self._tickets.find_one_and_update(query, update, return_document=ReturnDocument.AFTER)
        if doc is None:
            return None
        doc.pop("_id", None)
        return Ticket.model_validate(doc)

    def _update_or_raise(self, ticket_id: str, set_fields: Dict[str, Any], push: Optional[Dict[str, Any]] = None) -> Ticket:
        ticket = self._update(ticket_id, set_fields, push)
        if ticket is None:
            raise TicketNotFoundError(f"Ticket {ticket_id} not found")
        return ticket

    # =========================================================================
    # Transition commit
    # =========================================================================

    def commit_transition(
        self,
        ticket_id: str,
        expected_status_id: str,
        expected_version: int,
        to_status_id: str,
        assignee_id: Optional[str] = None,
        comment: Optional[TicketComment] = None,
    ) -> Ticket:
        """
        Apply a transition as one single-document update

        Status change, optional assignment and optional comment land together or not
        at all. The filter is a compare-and-set on status_id and version so a
        concurrent writer that got there first makes this call fail.

        Raises:
            TicketNotFoundError: ticket does not exist
            ConcurrencyError: status or version changed since the guard phase
        """
        now = utc_now()
        set_fields: Dict[str, Any] = {"status_id": to_status_id, "last_transition_at": now}
        if assignee_id:
            set_fields["assigned_to_id"] = assignee_id
        push = {"comments": comment.model_dump()} if comment else None

        ticket = self._update(
            ticket_id,
            set_fields,
            push,
            extra_filter={"status_id": expected_status_id, "version": expected_version},
        )
        if ticket is None:
            if self._tickets.count_documents({"ticket_id": ticket_id}) == 0:
                raise TicketNotFoundError(f"Ticket {ticket_id} not found")
            raise ConcurrencyError(
                f"Ticket {ticket_id} changed while the transition was being applied",
                details={"expected_status_id": expected_status_id, "expected_version": expected_version}
            )
        logger.info(
            f"Ticket {ticket_id} moved {expected_status_id} -> {to_status_id}",
            extra={"ticket_id": ticket_id, "status_id": to_status_id}
        )
        return ticket

    # =========================================================================
    # Mutations used by actions and hooks
    # =========================================================================

    def assign_ticket(self, ticket_id: str, user_id: str) -> Ticket:
        """Assign ticket to a user"""
        ticket = self._update_or_raise(ticket_id, {"assigned_to_id": user_id})
        logger.info(f"Assigned ticket {ticket_id} to {user_id}", extra={"ticket_id": ticket_id, "user_id": user_id})
        return ticket

    def append_comment(
        self,
        ticket_id: str,
        content: str,
        is_internal: bool = False,
        user_id: Optional[str] = None,
        source: str = "user",
    ) -> TicketComment:
        """Append a comment to the ticket"""
        comment = TicketComment(
            comment_id=generate_comment_id(),
            content=content,
            is_internal=is_internal,
            user_id=user_id,
            source=source,
            created_at=utc_now(),
        )
        self._update_or_raise(ticket_id, {}, {"comments": comment.model_dump()})
        return comment

    def update_fields(self, ticket_id: str, updates: Dict[str, Any]) -> Ticket:
        """
        Set ticket fields; names outside the core attributes go to custom_fields

        Dotted names (e.g. "custom_fields.region") are written as given.
        """
        set_fields: Dict[str, Any] = {}
        for name, value in updates.items():
            if name in TICKET_CORE_FIELDS or name.startswith("custom_fields."):
                set_fields[name] = value
            else:
                set_fields[f"custom_fields.{name}"] = value
        return self._update_or_raise(ticket_id, set_fields)

    def update_tracking(self, ticket_id: str, updates: Dict[str, Any]) -> Ticket:
        """Set engine-owned bookkeeping (SLA deadlines, breach flag, escalation)"""
        return self._update_or_raise(ticket_id, updates)

    # =========================================================================
    # Queries
    # =========================================================================

    def _validate_many(self, cursor: Iterable[Dict[str, Any]]) -> List[Ticket]:
        tickets = []
        for doc in cursor:
            doc.pop("_id", None)
            tickets.append(Ticket.model_validate(doc))
        return tickets

    def list_in_statuses(self, status_ids: List[str], limit: int = 200) -> List[Ticket]:
        """Tickets currently in any of the given statuses, oldest update first"""
        if not status_ids:
            return []
        cursor = (
            self._tickets.find({"status_id": {"$in": status_ids}})
            .sort("updated_at", ASCENDING)
            .limit(limit)
        )
        return self._validate_many(cursor)

    def list_sla_overdue(
        self,
        now: datetime,
        exclude_status_ids: Optional[List[str]] = None,
        limit: int = 200,
    ) -> List[Ticket]:
        """Tickets past their SLA deadline that are not yet flagged"""
        query: Dict[str, Any] = {
            "sla_breach": False,
            "sla_deadline": {"$ne": None, "$lt": to_storage(now)},
        }
        if exclude_status_ids:
            query["status_id"] = {"$nin": exclude_status_ids}
        cursor = self._tickets.find(query).sort("sla_deadline", ASCENDING).limit(limit)
        return self._validate_many(cursor)

    def list_sla_due_soon(
        self,
        now: datetime,
        until: datetime,
        exclude_status_ids: Optional[List[str]] = None,
        limit: int = 200,
    ) -> List[Ticket]:
        """Tickets whose SLA deadline falls in [now, until) and have not been warned"""
        query: Dict[str, Any] = {
            "sla_breach": False,
            "sla_warning_sent": {"$ne": True},
            "sla_deadline": {"$ne": None, "$gte": to_storage(now), "$lt": to_storage(until)},
        }
        if exclude_status_ids:
            query["status_id"] = {"$nin": exclude_status_ids}
        cursor = self._tickets.find(query).sort("sla_deadline", ASCENDING).limit(limit)
        return self._validate_many(cursor)

    def count_open_by_assignee(
        self,
        user_ids: List[str],
        exclude_status_ids: Optional[List[str]] = None,
    ) -> Dict[str, int]:
        """Open ticket count per assignee (used by least_assigned)"""
        counts: Dict[str, int] = {}
        for user_id in user_ids:
            query: Dict[str, Any] = {"assigned_to_id": user_id}
            if exclude_status_ids:
                query["status_id"] = {"$nin": exclude_status_ids}
            counts[user_id] = self._tickets.count_documents(query)
        return counts

    def count_by_workflow_type(self, workflow_type_id: str) -> int:
        return self._tickets.count_documents({"workflow_type_id": workflow_type_id})

    def count_in_status(self, status_id: str) -> int:
        return self._tickets.count_documents({"status_id": status_id})
