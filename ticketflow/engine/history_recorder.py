"""History Recorder - Append-only transition execution records"""
import json
import time
from typing import Optional

from pymongo.errors import PyMongoError

from ..config.settings import settings
from ..domain.models import HistoryEntry, HistoryPage
from ..domain.errors import HistoryRecordingError, ValidationError
from ..repositories.history_repo import HistoryRepository
from ..utils.logger import get_logger

logger = get_logger(__name__)

MAX_PAGE_SIZE = 100


class HistoryRecorder:
    """
    Write and read transition history

    Entries are immutable once written; there is no update or delete path.
    A write that keeps failing is retried with backoff and then raised as
    HistoryRecordingError after a CRITICAL log carrying the full entry, so the
    record can be replayed from logs.
    """

    def __init__(
        self,
        repo: Optional[HistoryRepository] = None,
        attempts: Optional[int] = None,
        backoff_ms: Optional[int] = None,
    ):
        self.repo = repo or HistoryRepository()
        self.attempts = max(1, attempts or settings.history_write_attempts)
        self.backoff_ms = settings.history_retry_backoff_ms if backoff_ms is None else backoff_ms

    def record(self, entry: HistoryEntry) -> HistoryEntry:
        """Persist an entry, retrying transient storage failures"""
        last_error: Optional[Exception] = None
        for attempt in range(1, self.attempts + 1):
            try:
                self.repo.insert_entry(entry)
                logger.info(
                    f"Recorded transition history (success={entry.success})",
                    extra={
                        "history_id": entry.history_id,
                        "ticket_id": entry.ticket_id,
                        "transition_id": entry.transition_id,
                    }
                )
                return entry
            except PyMongoError as e:
                last_error = e
                logger.warning(
                    f"History write attempt {attempt}/{self.attempts} failed: {e}",
                    extra={"history_id": entry.history_id, "ticket_id": entry.ticket_id}
                )
                if attempt < self.attempts and self.backoff_ms:
                    time.sleep(self.backoff_ms * attempt / 1000.0)

        logger.critical(
            "TRANSITION HISTORY LOST - entry could not be persisted",
            extra={
                "history_id": entry.history_id,
                "ticket_id": entry.ticket_id,
                "transition_id": entry.transition_id,
                "payload": json.loads(entry.model_dump_json()),
            }
        )
        raise HistoryRecordingError(
            f"Could not persist history entry {entry.history_id}",
            details={"history_id": entry.history_id, "error": str(last_error)}
        )

    def list_history(
        self,
        ticket_id: str,
        page: int = 1,
        limit: int = 20,
        include_details: bool = False,
    ) -> HistoryPage:
        """
        Paginated history for a ticket, newest first

        Args:
            ticket_id: Ticket whose history to read
            page: 1-based page number
            limit: Page size (max 100)
            include_details: Include condition/action traces and metadata
        """
        if page < 1:
            raise ValidationError("page must be >= 1")
        if limit < 1 or limit > MAX_PAGE_SIZE:
            raise ValidationError(f"limit must be between 1 and {MAX_PAGE_SIZE}")

        items = self.repo.list_for_ticket(
            ticket_id,
            skip=(page - 1) * limit,
            limit=limit,
            include_details=include_details,
        )
        total = self.repo.count_for_ticket(ticket_id)
        return HistoryPage(items=items, page=page, limit=limit, total=total)
