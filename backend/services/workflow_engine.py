"""
Ops Workflow Hub - Approval Status Workflow Engine

This module implements the deterministic state machine shared by claims and
leave requests. Records start PENDING and move to a terminal decision
(APPROVED, REJECTED/DECLINED, CANCELLED_*) either through a direct admin
action or through an approval-collaborator callback.

The workflow engine is pure business logic with no direct HTTP or DB calls.
transition() returns the new record state plus the list of side effects the
orchestrator must run (notifications, approval withdrawal/re-initialization).

Record Types Supported:
- CLAIM: expense claims, decline vocabulary, APPROVED -> PAID
- LEAVE: leave requests, reject vocabulary, conflict auto-rejection
"""

import copy
import logging
from dataclasses import dataclass, field
from datetime import datetime, timezone
from enum import Enum
from typing import Any, Dict, List, Optional, Tuple

from .workflow_errors import InvalidStateTransition, ValidationError

logger = logging.getLogger(__name__)


# =============================================================================
# RECORD TYPE DEFINITIONS
# =============================================================================

class RecordType(str, Enum):
    """Workflow-bearing record types. Doubles as the approval entityType tag."""
    CLAIM = "claim"
    LEAVE = "leave"


# =============================================================================
# WORKFLOW STATUS & ACTIONS
# =============================================================================

class WorkflowStatus(str, Enum):
    """
    Workflow status values. Shared across record types.
    Not all statuses apply to all record types.
    """
    PENDING = "pending"

    # Decisions
    APPROVED = "approved"
    REJECTED = "rejected"                      # LEAVE
    DECLINED = "declined"                      # CLAIM
    CANCELLED_BY_USER = "cancelled_by_user"
    CANCELLED_BY_ADMIN = "cancelled_by_admin"

    # Post-approval (CLAIM)
    PAID = "paid"

    # Post-approval (LEAVE, set by attendance processing)
    TAKEN = "taken"
    PARTIALLY_TAKEN = "partially_taken"


class WorkflowAction(str, Enum):
    """Actions that trigger workflow state transitions."""
    APPROVE = "approve"
    REJECT = "reject"
    DECLINE = "decline"
    CANCEL = "cancel"
    AUTO_REJECT = "auto_reject"     # system rejection, no actor
    REOPEN = "reopen"               # critical fields modified while pending
    MARK_PAID = "mark_paid"


class SideEffect(str, Enum):
    """Side effects requested by a transition."""
    NOTIFY_OWNER = "notify_owner"
    NOTIFY_ADMINS = "notify_admins"
    WITHDRAW_APPROVAL = "withdraw_approval"
    INITIALIZE_APPROVAL = "initialize_approval"


# Cancellation resolves to a sub-kind depending on who cancels
_CANCELLED = "__cancelled__"

# Actions that must carry a non-empty reason
REASON_REQUIRED_ACTIONS = frozenset({
    WorkflowAction.REJECT.value,
    WorkflowAction.DECLINE.value,
    WorkflowAction.CANCEL.value,
    WorkflowAction.AUTO_REJECT.value,
})


# =============================================================================
# WORKFLOW DEFINITIONS BY RECORD TYPE
# =============================================================================

# Format: {current_status: {action: next_status}}
# Statuses missing from a map are terminal for that record type.

WORKFLOW_DEFINITIONS: Dict[str, Dict[str, Dict[str, str]]] = {
    # =========================================================================
    # CLAIM: pending -> approved -> paid, or declined / cancelled
    # =========================================================================
    RecordType.CLAIM.value: {
        WorkflowStatus.PENDING.value: {
            WorkflowAction.APPROVE.value: WorkflowStatus.APPROVED.value,
            WorkflowAction.REJECT.value: WorkflowStatus.DECLINED.value,
            WorkflowAction.DECLINE.value: WorkflowStatus.DECLINED.value,
            WorkflowAction.CANCEL.value: _CANCELLED,
            WorkflowAction.REOPEN.value: WorkflowStatus.PENDING.value,
        },
        WorkflowStatus.APPROVED.value: {
            WorkflowAction.CANCEL.value: _CANCELLED,
            WorkflowAction.MARK_PAID.value: WorkflowStatus.PAID.value,
        },
    },

    # =========================================================================
    # LEAVE: pending -> approved, or rejected (incl. auto) / cancelled
    # =========================================================================
    RecordType.LEAVE.value: {
        WorkflowStatus.PENDING.value: {
            WorkflowAction.APPROVE.value: WorkflowStatus.APPROVED.value,
            WorkflowAction.REJECT.value: WorkflowStatus.REJECTED.value,
            WorkflowAction.DECLINE.value: WorkflowStatus.REJECTED.value,
            WorkflowAction.AUTO_REJECT.value: WorkflowStatus.REJECTED.value,
            WorkflowAction.CANCEL.value: _CANCELLED,
            WorkflowAction.REOPEN.value: WorkflowStatus.PENDING.value,
        },
        WorkflowStatus.APPROVED.value: {
            WorkflowAction.CANCEL.value: _CANCELLED,
        },
    },
}

# Leave statuses that block overlapping requests from the same owner
ACTIVE_LEAVE_STATUSES: Tuple[str, ...] = (
    WorkflowStatus.APPROVED.value,
    WorkflowStatus.TAKEN.value,
    WorkflowStatus.PARTIALLY_TAKEN.value,
)

DECISION_TIMESTAMP_FIELDS: Tuple[str, ...] = ("approved_at", "rejected_at", "cancelled_at")


# =============================================================================
# WORKFLOW HISTORY ENTRY
# =============================================================================

class WorkflowHistoryEntry:
    """Represents a single entry in the workflow history."""

    def __init__(
        self,
        from_status: Optional[str],
        to_status: str,
        action: str,
        actor: Optional[str] = None,
        reason: Optional[str] = None,
        source: str = "direct",
        timestamp: Optional[str] = None
    ):
        self.timestamp = timestamp or datetime.now(timezone.utc).isoformat()
        self.from_status = from_status
        self.to_status = to_status
        self.action = action
        self.actor = actor or "system"
        self.reason = reason
        self.source = source

    def to_dict(self) -> Dict:
        return {
            "timestamp": self.timestamp,
            "from_status": self.from_status,
            "to_status": self.to_status,
            "action": self.action,
            "actor": self.actor,
            "reason": self.reason,
            "source": self.source,
        }


@dataclass
class TransitionOutcome:
    """New record state plus the side effects the caller must run."""
    record: Any
    previous_status: str
    effects: List[SideEffect] = field(default_factory=list)
    history_entry: Optional[WorkflowHistoryEntry] = None

    @property
    def status_changed(self) -> bool:
        return self.previous_status != self.record.status


# =============================================================================
# MAIN WORKFLOW ENGINE
# =============================================================================

def _value(item) -> Optional[str]:
    return item.value if isinstance(item, Enum) else item


class WorkflowEngine:
    """
    Status transition engine for claims and leave requests.

    Reads record_type from the record and chooses the matching state machine.
    Records are never mutated in place: transition() works on a copy so a
    failed write leaves the caller's object untouched.
    """

    @staticmethod
    def get_workflow_definition(record_type: str) -> Dict:
        """Get the workflow definition for a record type."""
        record_type = _value(record_type)
        if record_type not in WORKFLOW_DEFINITIONS:
            raise ValueError(f"Unknown record type: {record_type}")
        return WORKFLOW_DEFINITIONS[record_type]

    @staticmethod
    def can_transition(
        record_type: str,
        current_status: Optional[str],
        action: str
    ) -> Tuple[bool, Optional[str], str]:
        """
        Check if a transition is valid for the given record type.

        Returns:
            (can_transition, next_status, reason)
        """
        workflow_def = WorkflowEngine.get_workflow_definition(record_type)
        current_key = _value(current_status)
        action_key = _value(action)

        status_transitions = workflow_def.get(current_key)
        if status_transitions is None:
            return (False, None, f"No transitions defined for status '{current_key}' in {_value(record_type)} workflow")

        next_status = status_transitions.get(action_key)
        if next_status is None:
            valid_actions = list(status_transitions.keys())
            return (False, None, f"Action '{action_key}' not valid for status '{current_key}' in {_value(record_type)} workflow. Valid: {valid_actions}")

        return (True, next_status, "Transition allowed")

    @staticmethod
    def resolve_cancel_status(record, actor: Optional[str]) -> str:
        """Owner cancelling their own record vs anyone else."""
        if actor is not None and str(actor) == str(record.owner_ref):
            return WorkflowStatus.CANCELLED_BY_USER.value
        return WorkflowStatus.CANCELLED_BY_ADMIN.value

    @staticmethod
    def transition(
        record,
        action: str,
        actor: Optional[str] = None,
        reason: Optional[str] = None,
        now: Optional[datetime] = None,
        source: str = "direct"
    ) -> TransitionOutcome:
        """
        Apply one validated transition to a record.

        Args:
            record: ClaimRecord or LeaveRecord (not modified)
            action: WorkflowAction to apply
            actor: User performing the action; None for system actions
            reason: Decision rationale (required for reject/decline/cancel)
            now: Transition time, defaults to the current UTC time
            source: "direct" or "approval_event", stored in the history entry

        Returns:
            TransitionOutcome with the updated copy and requested side effects

        Raises:
            InvalidStateTransition: action not allowed from the current status
            ValidationError: missing approver or reason
        """
        action = _value(action)
        record_type = record.record_type
        current_status = record.status

        allowed, next_status, why = WorkflowEngine.can_transition(record_type, current_status, action)
        if not allowed:
            logger.warning(
                "Invalid workflow transition: record=%s, type=%s, current=%s, action=%s, reason=%s",
                record.id, record_type, current_status, action, why
            )
            raise InvalidStateTransition(current_status, action)

        if action == WorkflowAction.APPROVE.value and not actor:
            raise ValidationError("Approver is required to approve a record", field="approver_ref")
        if action in REASON_REQUIRED_ACTIONS and not (reason and str(reason).strip()):
            raise ValidationError(f"A reason is required to {action.replace('_', ' ')} a record", field="reason")
        if action == WorkflowAction.AUTO_REJECT.value:
            actor = None

        if next_status == _CANCELLED:
            next_status = WorkflowEngine.resolve_cancel_status(record, actor)

        timestamp = (now or datetime.now(timezone.utc)).isoformat()
        updated = copy.deepcopy(record)
        effects: List[SideEffect] = []

        if action == WorkflowAction.APPROVE.value:
            WorkflowEngine._set_decision(updated, "approved_at", timestamp)
            updated.approver_ref = str(actor)
            effects = [SideEffect.NOTIFY_OWNER, SideEffect.NOTIFY_ADMINS]
        elif action in (WorkflowAction.REJECT.value, WorkflowAction.DECLINE.value):
            WorkflowEngine._set_decision(updated, "rejected_at", timestamp)
            updated.approver_ref = str(actor) if actor else None
            updated.decision_reason = reason
            effects = [SideEffect.NOTIFY_OWNER, SideEffect.NOTIFY_ADMINS]
        elif action == WorkflowAction.AUTO_REJECT.value:
            WorkflowEngine._set_decision(updated, "rejected_at", timestamp)
            updated.approver_ref = None
            updated.decision_reason = reason
            effects = [SideEffect.NOTIFY_OWNER]
        elif action == WorkflowAction.CANCEL.value:
            WorkflowEngine._set_decision(updated, "cancelled_at", timestamp)
            updated.cancelled_by_ref = str(actor) if actor else None
            updated.decision_reason = reason
            effects = [SideEffect.WITHDRAW_APPROVAL, SideEffect.NOTIFY_OWNER, SideEffect.NOTIFY_ADMINS]
        elif action == WorkflowAction.MARK_PAID.value:
            updated.paid_at = timestamp
            effects = [SideEffect.NOTIFY_OWNER]
        elif action == WorkflowAction.REOPEN.value:
            for name in DECISION_TIMESTAMP_FIELDS:
                setattr(updated, name, None)
            updated.approver_ref = None
            updated.decision_reason = None
            effects = [SideEffect.WITHDRAW_APPROVAL, SideEffect.INITIALIZE_APPROVAL]

        history_entry = WorkflowHistoryEntry(
            from_status=current_status,
            to_status=next_status,
            action=action,
            actor=actor,
            reason=reason,
            source=source,
            timestamp=timestamp,
        )
        updated.status = next_status
        updated.updated_at = timestamp
        updated.workflow_history.append(history_entry.to_dict())

        logger.info(
            "Workflow transition: record=%s, type=%s, %s -> %s (action=%s, actor=%s)",
            record.id, record_type, current_status, next_status, action, actor or "system"
        )

        return TransitionOutcome(
            record=updated,
            previous_status=current_status,
            effects=effects,
            history_entry=history_entry,
        )

    @staticmethod
    def _set_decision(record, field_name: str, timestamp: str) -> None:
        """Set one decision timestamp and clear the others."""
        for name in DECISION_TIMESTAMP_FIELDS:
            setattr(record, name, timestamp if name == field_name else None)

    @staticmethod
    def is_mutable(record) -> bool:
        """Only pending records accept field updates."""
        return record.status == WorkflowStatus.PENDING.value

    @staticmethod
    def get_terminal_statuses(record_type: str) -> List[str]:
        """Statuses with no outgoing transitions for a record type."""
        workflow_def = WorkflowEngine.get_workflow_definition(record_type)
        reachable = set()
        for transitions in workflow_def.values():
            for target in transitions.values():
                if target == _CANCELLED:
                    reachable.update({
                        WorkflowStatus.CANCELLED_BY_USER.value,
                        WorkflowStatus.CANCELLED_BY_ADMIN.value,
                    })
                else:
                    reachable.add(target)
        return sorted(s for s in reachable if s not in workflow_def)

    @staticmethod
    def get_all_statuses() -> List[str]:
        """Get all possible workflow status values."""
        return [s.value for s in WorkflowStatus]
