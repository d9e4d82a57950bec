"""
Ops Workflow Hub - Workflow Records

Data model for the records that flow through the approval workflow:
expense claims and leave requests. Both share the WorkflowRecord shape
(owner, tenant scope, status, decision fields, lifecycle timestamps).

Records are plain dataclasses; to_dict()/from_dict() convert to and from
the MongoDB document shape (ISO strings for dates, strings for amounts).
"""

import uuid
from dataclasses import dataclass, field, fields
from datetime import date, datetime, timezone
from decimal import Decimal, InvalidOperation
from enum import Enum
from typing import Any, ClassVar, Dict, List, Optional, Tuple

from .workflow_engine import RecordType, WorkflowStatus, DECISION_TIMESTAMP_FIELDS


class ClaimCategory(str, Enum):
    """Expense claim categories."""
    GENERAL = "general"
    TRAVEL = "travel"
    TRANSPORT = "transport"
    ACCOMMODATION = "accommodation"
    MEALS = "meals"
    ENTERTAINMENT = "entertainment"
    HOTEL = "hotel"
    OTHER = "other"
    PROMOTION = "promotion"
    EVENT = "event"
    ANNOUNCEMENT = "announcement"
    TRANSPORTATION = "transportation"
    OTHER_EXPENSES = "other expenses"


class LeaveType(str, Enum):
    """Leave types."""
    ANNUAL = "ANNUAL"
    SICK = "SICK"
    MATERNITY = "MATERNITY"
    PATERNITY = "PATERNITY"
    FAMILY_RESPONSIBILITY = "FAMILY_RESPONSIBILITY"
    STUDY = "STUDY"
    COMPASSIONATE = "COMPASSIONATE"
    UNPAID = "UNPAID"
    OTHER = "OTHER"


class HalfDayPeriod(str, Enum):
    """Which half of the day a half-day leave covers."""
    FIRST_HALF = "first_half"
    SECOND_HALF = "second_half"


def utc_now_iso() -> str:
    return datetime.now(timezone.utc).isoformat()


def new_record_id() -> str:
    return str(uuid.uuid4())


@dataclass
class WorkflowRecord:
    """
    Fields shared by every workflow-bearing record.

    status is only changed through WorkflowEngine.transition(); version is
    bumped by the record store on every write.
    """
    owner_ref: Optional[str] = None
    organisation_id: Optional[str] = None
    branch_id: Optional[str] = None
    id: str = field(default_factory=new_record_id)
    status: str = WorkflowStatus.PENDING.value

    # Decision fields
    approver_ref: Optional[str] = None
    cancelled_by_ref: Optional[str] = None
    decision_reason: Optional[str] = None
    approved_at: Optional[str] = None
    rejected_at: Optional[str] = None
    cancelled_at: Optional[str] = None

    # Approval collaborator link (None if initialization failed)
    linked_approval_id: Optional[str] = None

    comments: Optional[str] = None
    is_deleted: bool = False
    deleted_at: Optional[str] = None
    created_at: str = field(default_factory=utc_now_iso)
    updated_at: str = field(default_factory=utc_now_iso)
    version: int = 0
    workflow_history: List[Dict[str, Any]] = field(default_factory=list)

    record_type: ClassVar[str] = ""
    label: ClassVar[str] = "Record"
    # Fields whose change while pending restarts the approval
    CRITICAL_FIELDS: ClassVar[Tuple[str, ...]] = ()
    # Fields a client may change through update()
    UPDATABLE_FIELDS: ClassVar[Tuple[str, ...]] = ("comments",)

    def decision_timestamps(self) -> Dict[str, Optional[str]]:
        return {name: getattr(self, name) for name in DECISION_TIMESTAMP_FIELDS}

    def belongs_to(self, organisation_id: Optional[str] = None, branch_id: Optional[str] = None) -> bool:
        """Equality filter on tenant scope; unset filters match everything."""
        if organisation_id is not None and str(self.organisation_id) != str(organisation_id):
            return False
        if branch_id is not None and str(self.branch_id) != str(branch_id):
            return False
        return True

    def to_dict(self) -> Dict[str, Any]:
        """Convert to the stored document shape."""
        result = {"record_type": self.record_type}
        for f in fields(self):
            value = getattr(self, f.name)
            if isinstance(value, Decimal):
                value = str(value)
            elif isinstance(value, date):
                value = value.isoformat()
            elif isinstance(value, Enum):
                value = value.value
            elif isinstance(value, list):
                value = list(value)
            result[f.name] = value
        return result

    @classmethod
    def from_dict(cls, data: Dict[str, Any]):
        """Build a record from a stored document, ignoring unknown keys."""
        known = {f.name for f in fields(cls)}
        kwargs = {k: v for k, v in data.items() if k in known}
        return cls(**kwargs)


@dataclass
class ClaimRecord(WorkflowRecord):
    """An expense reimbursement claim."""
    amount: Decimal = Decimal("0")
    category: str = ClaimCategory.GENERAL.value
    currency: str = "ZAR"
    document_url: Optional[str] = None
    claim_ref: Optional[str] = None
    share_token: Optional[str] = None
    share_token_expires_at: Optional[str] = None
    paid_at: Optional[str] = None

    record_type: ClassVar[str] = RecordType.CLAIM.value
    label: ClassVar[str] = "Claim"
    CRITICAL_FIELDS: ClassVar[Tuple[str, ...]] = ("amount", "category", "currency")
    UPDATABLE_FIELDS: ClassVar[Tuple[str, ...]] = (
        "amount", "category", "currency", "document_url", "comments",
    )

    def __post_init__(self):
        if not isinstance(self.amount, Decimal):
            self.amount = parse_amount(self.amount)


@dataclass
class LeaveRecord(WorkflowRecord):
    """A leave request covering an inclusive calendar date range."""
    leave_type: str = LeaveType.ANNUAL.value
    start_date: Optional[date] = None
    end_date: Optional[date] = None
    duration: float = 0.0
    motivation: Optional[str] = None
    is_half_day: bool = False
    half_day_period: Optional[str] = None
    attachments: List[str] = field(default_factory=list)
    tags: List[str] = field(default_factory=list)
    is_paid: bool = True
    is_public_holiday: bool = False
    delegated_to_ref: Optional[str] = None

    record_type: ClassVar[str] = RecordType.LEAVE.value
    label: ClassVar[str] = "Leave request"
    CRITICAL_FIELDS: ClassVar[Tuple[str, ...]] = ("start_date", "end_date", "leave_type", "duration")
    UPDATABLE_FIELDS: ClassVar[Tuple[str, ...]] = (
        "leave_type", "start_date", "end_date", "duration", "motivation",
        "is_half_day", "half_day_period", "attachments", "tags", "is_paid",
        "is_public_holiday", "delegated_to_ref", "comments",
    )

    def __post_init__(self):
        if isinstance(self.start_date, str):
            self.start_date = date.fromisoformat(self.start_date[:10])
        if isinstance(self.end_date, str):
            self.end_date = date.fromisoformat(self.end_date[:10])


def parse_amount(value) -> Decimal:
    """Parse a claim amount; unparseable input becomes Decimal('0')."""
    if value is None or value == "":
        return Decimal("0")
    try:
        amount = Decimal(str(value).strip())
    except (InvalidOperation, ValueError):
        return Decimal("0")
    return amount if amount.is_finite() else Decimal("0")


RECORD_CLASSES = {
    RecordType.CLAIM.value: ClaimRecord,
    RecordType.LEAVE.value: LeaveRecord,
}
