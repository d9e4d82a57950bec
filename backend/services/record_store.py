"""
Ops Workflow Hub - Record Store

Tenant-scoped persistence for claims and leave requests.

Every write after insert goes through update(record, expected_version).
With the version guard on (the default), the write only lands when the
stored version still equals expected_version; otherwise
ConcurrentUpdateError is raised and the caller's read-modify-write is void.
With the guard off, the last write wins.

Implementations:
- InMemoryRecordStore: dict-backed, used by tests and local runs
- MotorRecordStore: one MongoDB collection per record type
"""

import copy
import logging
from abc import ABC, abstractmethod
from datetime import datetime, timezone
from typing import Any, Dict, List, Optional, Sequence, Tuple

from pymongo.errors import DuplicateKeyError

from .workflow_errors import ConcurrentUpdateError, DuplicateRecordError, NotFoundError

logger = logging.getLogger(__name__)


def _tenant_filter(organisation_id: Optional[str], branch_id: Optional[str]) -> Dict[str, Any]:
    query: Dict[str, Any] = {}
    if organisation_id is not None:
        query["organisation_id"] = organisation_id
    if branch_id is not None:
        query["branch_id"] = branch_id
    return query


class RecordStore(ABC):
    """Abstract record repository for one record type."""

    def __init__(self, record_cls, version_guard: bool = True):
        self.record_cls = record_cls
        self.version_guard = version_guard

    @abstractmethod
    async def insert(self, record):
        pass

    @abstractmethod
    async def find_by_id(
        self,
        record_id: str,
        organisation_id: Optional[str] = None,
        branch_id: Optional[str] = None,
        include_deleted: bool = False
    ):
        """Record by id within the tenant scope, or None."""
        pass

    @abstractmethod
    async def find_by_owner_and_statuses(
        self,
        owner_ref: str,
        statuses: Sequence[str],
        organisation_id: Optional[str] = None,
        branch_id: Optional[str] = None
    ) -> List:
        """Non-deleted records of an owner in any of the statuses."""
        pass

    @abstractmethod
    async def update(self, record, expected_version: int):
        """
        Persist the full record state.

        Returns:
            The stored record with its version bumped

        Raises:
            ConcurrentUpdateError: the stored version moved on (guard on)
            NotFoundError: the record does not exist
        """
        pass

    @abstractmethod
    async def list_records(
        self,
        organisation_id: Optional[str] = None,
        branch_id: Optional[str] = None,
        status: Optional[str] = None,
        owner_ref: Optional[str] = None,
        skip: int = 0,
        limit: int = 50,
        include_deleted: bool = False
    ) -> Tuple[List, int]:
        """Page of records (newest first) plus the total match count."""
        pass

    @abstractmethod
    async def find_latest_claim_ref(self, prefix: str) -> Optional[str]:
        pass

    @abstractmethod
    async def find_by_share_token(self, token: str):
        pass

    async def set_deleted(self, record, deleted: bool):
        """Soft-delete flag update; status is left untouched."""
        updated = copy.deepcopy(record)
        updated.is_deleted = deleted
        updated.deleted_at = datetime.now(timezone.utc).isoformat() if deleted else None
        updated.updated_at = datetime.now(timezone.utc).isoformat()
        return await self.update(updated, record.version)


# =============================================================================
# IN-MEMORY STORE
# =============================================================================

class InMemoryRecordStore(RecordStore):
    def __init__(self, record_cls, version_guard: bool = True):
        super().__init__(record_cls, version_guard)
        self.documents: Dict[str, Dict[str, Any]] = {}

    def _load(self, doc: Dict[str, Any]):
        return self.record_cls.from_dict(copy.deepcopy(doc))

    def _matches(self, doc: Dict[str, Any], query: Dict[str, Any]) -> bool:
        return all(str(doc.get(k)) == str(v) for k, v in query.items())

    async def insert(self, record):
        claim_ref = getattr(record, "claim_ref", None)
        if claim_ref and any(d.get("claim_ref") == claim_ref for d in self.documents.values()):
            raise DuplicateRecordError("claim_ref", claim_ref)
        self.documents[record.id] = record.to_dict()
        return self._load(self.documents[record.id])

    async def find_by_id(
        self,
        record_id: str,
        organisation_id: Optional[str] = None,
        branch_id: Optional[str] = None,
        include_deleted: bool = False
    ):
        doc = self.documents.get(str(record_id))
        if doc is None or not self._matches(doc, _tenant_filter(organisation_id, branch_id)):
            return None
        if doc.get("is_deleted") and not include_deleted:
            return None
        return self._load(doc)

    async def find_by_owner_and_statuses(
        self,
        owner_ref: str,
        statuses: Sequence[str],
        organisation_id: Optional[str] = None,
        branch_id: Optional[str] = None
    ) -> List:
        tenant = _tenant_filter(organisation_id, branch_id)
        return [
            self._load(doc) for doc in self.documents.values()
            if str(doc.get("owner_ref")) == str(owner_ref)
            and doc.get("status") in statuses
            and not doc.get("is_deleted")
            and self._matches(doc, tenant)
        ]

    async def update(self, record, expected_version: int):
        current = self.documents.get(record.id)
        if current is None:
            raise NotFoundError(f"{self.record_cls.label} {record.id} not found")
        if self.version_guard and current.get("version", 0) != expected_version:
            raise ConcurrentUpdateError(record.id, expected_version)

        doc = record.to_dict()
        doc["version"] = current.get("version", 0) + 1
        self.documents[record.id] = doc
        return self._load(doc)

    async def list_records(
        self,
        organisation_id: Optional[str] = None,
        branch_id: Optional[str] = None,
        status: Optional[str] = None,
        owner_ref: Optional[str] = None,
        skip: int = 0,
        limit: int = 50,
        include_deleted: bool = False
    ) -> Tuple[List, int]:
        query = _tenant_filter(organisation_id, branch_id)
        if status is not None:
            query["status"] = status
        if owner_ref is not None:
            query["owner_ref"] = owner_ref

        docs = [
            d for d in self.documents.values()
            if self._matches(d, query) and (include_deleted or not d.get("is_deleted"))
        ]
        docs.sort(key=lambda d: d.get("created_at") or "", reverse=True)
        return [self._load(d) for d in docs[skip:skip + limit]], len(docs)

    async def find_latest_claim_ref(self, prefix: str) -> Optional[str]:
        refs = [
            d["claim_ref"] for d in self.documents.values()
            if d.get("claim_ref") and d["claim_ref"].startswith(prefix)
        ]
        return max(refs) if refs else None

    async def find_by_share_token(self, token: str):
        for doc in self.documents.values():
            if token and doc.get("share_token") == token and not doc.get("is_deleted"):
                return self._load(doc)
        return None


# =============================================================================
# MONGODB STORE
# =============================================================================

class MotorRecordStore(RecordStore):
    """
    MongoDB-backed store. Documents are keyed by 'id'; Mongo's _id is
    always projected out.
    """

    def __init__(self, collection, record_cls, version_guard: bool = True):
        super().__init__(record_cls, version_guard)
        self.collection = collection

    async def create_indexes(self) -> None:
        await self.collection.create_index("id", unique=True)
        await self.collection.create_index([("owner_ref", 1), ("status", 1)])
        await self.collection.create_index([("organisation_id", 1), ("branch_id", 1), ("created_at", -1)])
        if self.record_cls.record_type == "claim":
            await self.collection.create_index("claim_ref", unique=True, sparse=True)
            await self.collection.create_index("share_token", sparse=True)

    async def insert(self, record):
        doc = record.to_dict()
        try:
            await self.collection.insert_one(dict(doc))
        except DuplicateKeyError as e:
            key_value = (e.details or {}).get("keyValue") or {"id": record.id}
            field_name, value = next(iter(key_value.items()))
            raise DuplicateRecordError(field_name, value) from e
        return self.record_cls.from_dict(doc)

    async def find_by_id(
        self,
        record_id: str,
        organisation_id: Optional[str] = None,
        branch_id: Optional[str] = None,
        include_deleted: bool = False
    ):
        query = {"id": str(record_id), **_tenant_filter(organisation_id, branch_id)}
        if not include_deleted:
            query["is_deleted"] = {"$ne": True}
        doc = await self.collection.find_one(query, {"_id": 0})
        return self.record_cls.from_dict(doc) if doc else None

    async def find_by_owner_and_statuses(
        self,
        owner_ref: str,
        statuses: Sequence[str],
        organisation_id: Optional[str] = None,
        branch_id: Optional[str] = None
    ) -> List:
        query = {
            "owner_ref": owner_ref,
            "status": {"$in": list(statuses)},
            "is_deleted": {"$ne": True},
            **_tenant_filter(organisation_id, branch_id),
        }
        docs = await self.collection.find(query, {"_id": 0}).to_list(1000)
        return [self.record_cls.from_dict(d) for d in docs]

    async def update(self, record, expected_version: int):
        query: Dict[str, Any] = {"id": record.id}
        if self.version_guard:
            query["version"] = expected_version

        doc = record.to_dict()
        doc.pop("id", None)
        doc.pop("version", None)
        result = await self.collection.update_one(query, {"$set": doc, "$inc": {"version": 1}})

        if result.matched_count == 0:
            exists = await self.collection.find_one({"id": record.id}, {"_id": 0, "id": 1})
            if exists is None:
                raise NotFoundError(f"{self.record_cls.label} {record.id} not found")
            logger.warning(
                "Version conflict on %s %s (expected version %s)",
                self.record_cls.record_type, record.id, expected_version
            )
            raise ConcurrentUpdateError(record.id, expected_version)

        stored = await self.collection.find_one({"id": record.id}, {"_id": 0})
        return self.record_cls.from_dict(stored)

    async def list_records(
        self,
        organisation_id: Optional[str] = None,
        branch_id: Optional[str] = None,
        status: Optional[str] = None,
        owner_ref: Optional[str] = None,
        skip: int = 0,
        limit: int = 50,
        include_deleted: bool = False
    ) -> Tuple[List, int]:
        query = _tenant_filter(organisation_id, branch_id)
        if status is not None:
            query["status"] = status
        if owner_ref is not None:
            query["owner_ref"] = owner_ref
        if not include_deleted:
            query["is_deleted"] = {"$ne": True}

        total = await self.collection.count_documents(query)
        docs = await self.collection.find(query, {"_id": 0}).sort("created_at", -1).skip(skip).limit(limit).to_list(limit)
        return [self.record_cls.from_dict(d) for d in docs], total

    async def find_latest_claim_ref(self, prefix: str) -> Optional[str]:
        doc = await self.collection.find_one(
            {"claim_ref": {"$regex": f"^{prefix}"}},
            {"_id": 0, "claim_ref": 1},
            sort=[("claim_ref", -1)],
        )
        return doc.get("claim_ref") if doc else None

    async def find_by_share_token(self, token: str):
        if not token:
            return None
        doc = await self.collection.find_one({"share_token": token, "is_deleted": {"$ne": True}}, {"_id": 0})
        return self.record_cls.from_dict(doc) if doc else None
