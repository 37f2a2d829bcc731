"""Workflow Version Repository - Numbered configuration snapshots per workflow type"""
from typing import Any, Dict, List, Optional, Tuple
from pymongo.collection import Collection
from pymongo import DESCENDING
from pymongo.errors import DuplicateKeyError

from .mongo_client import get_collection, WORKFLOW_VERSIONS
from ..domain.models import WorkflowVersion
from ..domain.errors import ConcurrencyError, WorkflowVersionNotFoundError
from ..utils.idgen import generate_version_id
from ..utils.logger import get_logger
from ..utils.time import to_storage, utc_now

logger = get_logger(__name__)

MAX_NUMBERING_ATTEMPTS = 3


class WorkflowVersionRepository:
    """Repository for workflow version snapshots"""

    def __init__(self, collection: Optional[Collection] = None):
        self._versions: Collection = (
            collection if collection is not None else get_collection(WORKFLOW_VERSIONS)
        )

    @staticmethod
    def _from_doc(doc: Dict[str, Any]) -> WorkflowVersion:
        doc.pop("_id", None)
        return WorkflowVersion.model_validate(doc)

    def _next_number(self, workflow_type_id: str) -> int:
        latest = self._versions.find_one(
            {"workflow_type_id": workflow_type_id},
            {"version_number": 1},
            sort=[("version_number", DESCENDING)],
        )
        return latest["version_number"] + 1 if latest else 1

    def create_version(
        self,
        workflow_type_id: str,
        configuration: Dict[str, Any],
        definition_version: int,
        created_by_id: Optional[str] = None,
        description: Optional[str] = None,
        is_active: bool = False,
    ) -> WorkflowVersion:
        """
        Store a snapshot under the next version number

        Numbers are unique per workflow type; a concurrent writer taking the
        same number makes this call pick the next one.
        """
        for attempt in range(1, MAX_NUMBERING_ATTEMPTS + 1):
            now = utc_now()
            version = WorkflowVersion(
                version_id=generate_version_id(),
                workflow_type_id=workflow_type_id,
                version_number=self._next_number(workflow_type_id),
                description=description,
                configuration=configuration,
                definition_version=definition_version,
                is_active=is_active,
                created_by_id=created_by_id,
                created_at=now,
                activated_at=now if is_active else None,
            )
            doc = version.model_dump(mode="json")
            doc["_id"] = version.version_id
            doc["created_at"] = to_storage(version.created_at)
            doc["activated_at"] = to_storage(version.activated_at)
            try:
                self._versions.insert_one(doc)
            except DuplicateKeyError:
                if attempt == MAX_NUMBERING_ATTEMPTS:
                    raise ConcurrencyError(
                        f"Could not number a new version of workflow type {workflow_type_id}",
                        details={"workflow_type_id": workflow_type_id}
                    )
                continue
            if is_active:
                self._deactivate_others(workflow_type_id, version.version_id)
            logger.info(
                f"Created version {version.version_number} of workflow type {workflow_type_id}",
                extra={"workflow_type_id": workflow_type_id, "version_id": version.version_id}
            )
            return version
        raise ConcurrencyError(f"Could not number a new version of workflow type {workflow_type_id}")

    def get_version(self, version_id: str) -> Optional[WorkflowVersion]:
        doc = self._versions.find_one({"version_id": version_id})
        return self._from_doc(doc) if doc else None

    def get_version_or_raise(self, version_id: str) -> WorkflowVersion:
        version = self.get_version(version_id)
        if version is None:
            raise WorkflowVersionNotFoundError(f"Workflow version {version_id} not found")
        return version

    def get_active_version(self, workflow_type_id: str) -> Optional[WorkflowVersion]:
        doc = self._versions.find_one({"workflow_type_id": workflow_type_id, "is_active": True})
        return self._from_doc(doc) if doc else None

    def list_versions(self, workflow_type_id: str, skip: int = 0, limit: int = 10) -> Tuple[List[WorkflowVersion], int]:
        """Versions of a type, highest version_number first, with the total count"""
        query = {"workflow_type_id": workflow_type_id}
        cursor = (
            self._versions.find(query)
            .sort("version_number", DESCENDING)
            .skip(skip)
            .limit(limit)
        )
        return [self._from_doc(doc) for doc in cursor], self._versions.count_documents(query)

    def mark_active(self, version: WorkflowVersion) -> WorkflowVersion:
        """Make one version the active one of its workflow type"""
        activated_at = utc_now()
        self._versions.update_one(
            {"version_id": version.version_id},
            {"$set": {"is_active": True, "activated_at": to_storage(activated_at)}}
        )
        self._deactivate_others(version.workflow_type_id, version.version_id)
        return version.model_copy(update={"is_active": True, "activated_at": activated_at})

    def _deactivate_others(self, workflow_type_id: str, version_id: str) -> None:
        self._versions.update_many(
            {"workflow_type_id": workflow_type_id, "version_id": {"$ne": version_id}, "is_active": True},
            {"$set": {"is_active": False}}
        )

    def delete_for_workflow_type(self, workflow_type_id: str) -> int:
        result = self._versions.delete_many({"workflow_type_id": workflow_type_id})
        return result.deleted_count
