"""
Ops Workflow Hub - Approval Workflow Gateway

Interface to the external approval subsystem that owns multi-step approval
chains. The workflow services create approval requests against it, withdraw
them on cancellation or re-open, and receive "approval action performed"
events back from it.

Components:
- ApprovalGateway: abstract interface
- InMemoryApprovalGateway: in-process registry for development and tests
- HttpApprovalGateway: REST client (httpx)
- ApprovalActionEvent: the inbound callback, tagged by entity_type
"""

import logging
import uuid
from abc import ABC, abstractmethod
from dataclasses import dataclass, field
from datetime import datetime, timezone
from enum import Enum
from typing import Any, Callable, Dict, List, Optional, Sequence

import httpx

from .workflow_errors import CollaboratorFailure

logger = logging.getLogger(__name__)


class ApprovalType(str, Enum):
    """Approval types raised by this service."""
    EXPENSE_CLAIM = "expense_claim"
    LEAVE_REQUEST = "leave_request"


class ApprovalPriority(str, Enum):
    LOW = "low"
    MEDIUM = "medium"
    HIGH = "high"
    URGENT = "urgent"
    CRITICAL = "critical"


class ApprovalFlow(str, Enum):
    SINGLE_APPROVER = "single_approver"
    SEQUENTIAL = "sequential"
    PARALLEL = "parallel"


class ApprovalAction(str, Enum):
    """Action vocabulary of the approval subsystem."""
    SUBMIT = "submit"
    APPROVE = "approve"
    REJECT = "reject"
    SIGN = "sign"
    REQUEST_INFO = "request_info"
    WITHDRAW = "withdraw"
    CANCEL = "cancel"
    ESCALATE = "escalate"
    DELEGATE = "delegate"
    RETURN_FOR_REVISION = "return_for_revision"


class ApprovalStatus(str, Enum):
    """Approval request statuses the gateway reports."""
    PENDING = "pending"
    SUBMITTED = "submitted"
    UNDER_REVIEW = "under_review"
    ADDITIONAL_INFO_REQUIRED = "additional_info_required"
    APPROVED = "approved"
    REJECTED = "rejected"
    WITHDRAWN = "withdrawn"
    CANCELLED = "cancelled"


# Approvals in these statuses are still open and get withdrawn on cancel/re-open
ACTIVE_APPROVAL_STATUSES = (
    ApprovalStatus.PENDING.value,
    ApprovalStatus.SUBMITTED.value,
    ApprovalStatus.UNDER_REVIEW.value,
    ApprovalStatus.ADDITIONAL_INFO_REQUIRED.value,
)

# Which approval type belongs to which record entity type
APPROVAL_TYPE_BY_ENTITY = {
    "claim": ApprovalType.EXPENSE_CLAIM.value,
    "leave": ApprovalType.LEAVE_REQUEST.value,
}


@dataclass
class ApprovalRequestDraft:
    """Payload for creating an approval request."""
    title: str
    description: str
    type: str
    priority: str
    entity_id: str
    entity_type: str
    deadline: str
    requester_ref: str
    flow_type: str = ApprovalFlow.SEQUENTIAL.value
    amount: Optional[float] = None
    currency: Optional[str] = None
    is_urgent: bool = False
    requires_signature: bool = False
    organisation_id: Optional[str] = None
    branch_id: Optional[str] = None
    metadata: Dict[str, Any] = field(default_factory=dict)
    tags: List[str] = field(default_factory=list)

    def to_payload(self) -> Dict[str, Any]:
        """Wire shape expected by the approval subsystem."""
        payload = {
            "title": self.title,
            "description": self.description,
            "type": self.type,
            "priority": self.priority,
            "flowType": self.flow_type,
            "entityId": self.entity_id,
            "entityType": self.entity_type,
            "deadline": self.deadline,
            "requesterRef": self.requester_ref,
            "isUrgent": self.is_urgent,
            "requiresSignature": self.requires_signature,
            "organisationRef": self.organisation_id,
            "branchUid": self.branch_id,
            "metadata": self.metadata,
            "customFields": {"tags": self.tags},
        }
        if self.amount is not None:
            payload["amount"] = self.amount
            payload["currency"] = self.currency
        return payload


def _pick(data: Dict[str, Any], *keys, default=None):
    for key in keys:
        if data.get(key) is not None:
            return data[key]
    return default


@dataclass
class ApprovalActionEvent:
    """
    "approval.action.performed" callback from the approval subsystem.

    entity_type is the discriminator: each workflow service only handles
    events tagged with its own record type.
    """
    approval_id: str
    action: str
    entity_type: Optional[str] = None
    entity_id: Optional[str] = None
    action_by: Optional[str] = None
    comments: Optional[str] = None
    reason: Optional[str] = None
    to_status: Optional[str] = None
    approval_type: Optional[str] = None

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "ApprovalActionEvent":
        """Accepts both camelCase (wire) and snake_case keys."""
        def as_str(value):
            return str(value) if value is not None else None

        return cls(
            approval_id=as_str(_pick(data, "approvalId", "approval_id")),
            action=str(_pick(data, "action", default="")).lower(),
            entity_type=as_str(_pick(data, "entityType", "entity_type")),
            entity_id=as_str(_pick(data, "entityId", "entity_id")),
            action_by=as_str(_pick(data, "actionBy", "action_by")),
            comments=_pick(data, "comments"),
            reason=_pick(data, "reason"),
            to_status=as_str(_pick(data, "toStatus", "to_status")),
            approval_type=as_str(_pick(data, "type", "approvalType", "approval_type")),
        )

    def is_for(self, entity_type: str) -> bool:
        """True when the event targets the given record type."""
        if self.entity_type:
            return self.entity_type == entity_type
        if self.approval_type:
            return self.approval_type == APPROVAL_TYPE_BY_ENTITY.get(entity_type)
        return False

    def to_dict(self) -> Dict[str, Any]:
        return {
            "approvalId": self.approval_id,
            "action": self.action,
            "entityType": self.entity_type,
            "entityId": self.entity_id,
            "actionBy": self.action_by,
            "comments": self.comments,
            "reason": self.reason,
            "toStatus": self.to_status,
            "type": self.approval_type,
        }


# =============================================================================
# GATEWAY INTERFACE
# =============================================================================

class ApprovalGateway(ABC):
    """Abstract interface to the approval subsystem."""

    @abstractmethod
    async def create_approval_request(self, draft: ApprovalRequestDraft) -> str:
        """Create an approval request and return its id."""
        pass

    @abstractmethod
    async def withdraw_approval_request(self, approval_id: str, reason: str, comments: str = None) -> None:
        """Withdraw an open approval request."""
        pass

    @abstractmethod
    async def list_active_approvals(
        self,
        entity_type: str,
        entity_id: str,
        statuses: Sequence[str] = ACTIVE_APPROVAL_STATUSES
    ) -> List[Dict[str, Any]]:
        """List approvals for an entity in the given statuses."""
        pass

    @abstractmethod
    async def get_approval(self, approval_id: str) -> Optional[Dict[str, Any]]:
        """Fetch one approval, or None if unknown."""
        pass


# =============================================================================
# IN-MEMORY GATEWAY
# =============================================================================

class InMemoryApprovalGateway(ApprovalGateway):
    """
    In-process approval registry.

    Used when no APPROVALS_API_URL is configured and by the tests.
    Operations listed in fail_on raise CollaboratorFailure.
    """

    def __init__(self, fail_on: Sequence[str] = ()):
        self.approvals: Dict[str, Dict[str, Any]] = {}
        self.calls: List[Dict[str, Any]] = []
        self.fail_on = set(fail_on)
        self._listeners: List[Callable] = []

    def _check(self, operation: str) -> None:
        if operation in self.fail_on:
            raise CollaboratorFailure(f"approval.{operation}", f"Approval service unavailable ({operation})")

    async def create_approval_request(self, draft: ApprovalRequestDraft) -> str:
        self.calls.append({"op": "create", "entity_id": draft.entity_id, "entity_type": draft.entity_type})
        self._check("create")
        approval_id = f"APR-{uuid.uuid4().hex[:10]}"
        self.approvals[approval_id] = {
            "uid": approval_id,
            "status": ApprovalStatus.PENDING.value,
            "created_at": datetime.now(timezone.utc).isoformat(),
            **draft.to_payload(),
        }
        return approval_id

    async def withdraw_approval_request(self, approval_id: str, reason: str, comments: str = None) -> None:
        self.calls.append({"op": "withdraw", "approval_id": approval_id, "reason": reason})
        self._check("withdraw")
        approval = self.approvals.get(approval_id)
        if approval is None:
            raise CollaboratorFailure("approval.withdraw", f"Approval {approval_id} not found", 404)
        approval["status"] = ApprovalStatus.WITHDRAWN.value
        approval["withdrawReason"] = reason
        approval["withdrawComments"] = comments

    async def list_active_approvals(
        self,
        entity_type: str,
        entity_id: str,
        statuses: Sequence[str] = ACTIVE_APPROVAL_STATUSES
    ) -> List[Dict[str, Any]]:
        self.calls.append({"op": "list", "entity_id": entity_id, "entity_type": entity_type})
        self._check("list")
        return [
            dict(a) for a in self.approvals.values()
            if a["entityType"] == entity_type and str(a["entityId"]) == str(entity_id)
            and a["status"] in statuses
        ]

    async def get_approval(self, approval_id: str) -> Optional[Dict[str, Any]]:
        self._check("get")
        approval = self.approvals.get(approval_id)
        return dict(approval) if approval else None

    def subscribe(self, listener: Callable) -> None:
        """Register a coroutine function called with every ApprovalActionEvent."""
        self._listeners.append(listener)

    async def perform_action(
        self,
        approval_id: str,
        action: str,
        action_by: str,
        reason: str = None,
        comments: str = None
    ) -> ApprovalActionEvent:
        """Simulate an approver acting on a request and publish the callback."""
        approval = self.approvals[approval_id]
        to_status = {
            ApprovalAction.APPROVE.value: ApprovalStatus.APPROVED.value,
            ApprovalAction.REJECT.value: ApprovalStatus.REJECTED.value,
            ApprovalAction.WITHDRAW.value: ApprovalStatus.WITHDRAWN.value,
            ApprovalAction.CANCEL.value: ApprovalStatus.CANCELLED.value,
            ApprovalAction.REQUEST_INFO.value: ApprovalStatus.ADDITIONAL_INFO_REQUIRED.value,
        }.get(action, approval["status"])
        approval["status"] = to_status

        event = ApprovalActionEvent(
            approval_id=approval_id,
            action=action,
            entity_type=approval["entityType"],
            entity_id=str(approval["entityId"]),
            action_by=action_by,
            comments=comments,
            reason=reason,
            to_status=to_status,
            approval_type=approval["type"],
        )
        for listener in self._listeners:
            await listener(event)
        return event


# =============================================================================
# HTTP GATEWAY
# =============================================================================

class HttpApprovalGateway(ApprovalGateway):
    """
    REST client for the approval subsystem.

    Endpoints:
    - POST /approvals
    - POST /approvals/{id}/withdraw
    - GET  /approvals?entityType=&entityId=&status=
    - GET  /approvals/{id}
    """

    def __init__(
        self,
        base_url: str,
        token: Optional[str] = None,
        timeout: float = 30.0,
        transport: Optional[httpx.AsyncBaseTransport] = None
    ):
        self.base_url = base_url.rstrip("/")
        self.token = token
        self.timeout = timeout
        self._transport = transport

    def _headers(self) -> Dict[str, str]:
        headers = {"Accept": "application/json", "Content-Type": "application/json"}
        if self.token:
            headers["Authorization"] = f"Bearer {self.token}"
        return headers

    async def _request(
        self,
        step: str,
        method: str,
        path: str,
        params: Optional[Dict] = None,
        json_body: Optional[Dict] = None
    ) -> httpx.Response:
        try:
            async with httpx.AsyncClient(
                base_url=self.base_url, timeout=self.timeout, transport=self._transport
            ) as client:
                resp = await client.request(method, path, headers=self._headers(), params=params, json=json_body)
        except httpx.TimeoutException:
            raise CollaboratorFailure(step, f"Approval service timed out ({method} {path})")
        except httpx.HTTPError as e:
            raise CollaboratorFailure(step, f"Approval service request failed: {e}")

        if resp.status_code >= 400:
            logger.error("Approval service error: %s %s -> %d - %s", method, path, resp.status_code, resp.text[:200])
            raise CollaboratorFailure(step, f"Approval service returned {resp.status_code}", resp.status_code)
        return resp

    async def create_approval_request(self, draft: ApprovalRequestDraft) -> str:
        resp = await self._request("approval.create", "POST", "/approvals", json_body=draft.to_payload())
        data = resp.json()
        approval_id = _pick(data, "uid", "approvalId", "id")
        if approval_id is None:
            raise CollaboratorFailure("approval.create", "Approval service response carried no approval id")
        return str(approval_id)

    async def withdraw_approval_request(self, approval_id: str, reason: str, comments: str = None) -> None:
        await self._request(
            "approval.withdraw",
            "POST",
            f"/approvals/{approval_id}/withdraw",
            json_body={"action": ApprovalAction.WITHDRAW.value, "reason": reason, "comments": comments},
        )

    async def list_active_approvals(
        self,
        entity_type: str,
        entity_id: str,
        statuses: Sequence[str] = ACTIVE_APPROVAL_STATUSES
    ) -> List[Dict[str, Any]]:
        resp = await self._request(
            "approval.list",
            "GET",
            "/approvals",
            params={"entityType": entity_type, "entityId": entity_id, "status": ",".join(statuses)},
        )
        data = resp.json()
        if isinstance(data, dict):
            return data.get("data", [])
        return data

    async def get_approval(self, approval_id: str) -> Optional[Dict[str, Any]]:
        try:
            resp = await self._request("approval.get", "GET", f"/approvals/{approval_id}")
        except CollaboratorFailure as e:
            if e.status_code == 404:
                return None
            raise
        return resp.json()
