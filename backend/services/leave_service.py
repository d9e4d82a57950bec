"""
Ops Workflow Hub - Leave Workflow Service

Leave requests: pending -> approved, or rejected / cancelled.

A new request that overlaps the owner's approved or taken leave is
rejected on the spot by the system and never reaches the approval
subsystem. Changing dates, type or duration of a pending request
re-opens its approval.
"""

import logging
from typing import Any, Dict, Optional

from .approval_gateway import ApprovalRequestDraft, ApprovalType
from .email_service import EmailType
from .leave_calendar import (
    calculate_leave_approval_deadline,
    calculate_leave_duration,
    is_urgent_start,
    leave_approval_priority,
    parse_leave_date,
)
from .leave_conflicts import has_conflict
from .notifications import NotificationEvent, NotificationPriority
from .user_directory import UserRef
from .workflow_engine import ACTIVE_LEAVE_STATUSES, WorkflowAction, WorkflowStatus
from .workflow_errors import ValidationError
from .workflow_records import HalfDayPeriod, LeaveRecord, LeaveType
from .workflow_service import (
    BaseWorkflowService,
    NotificationPlan,
    TenantContext,
    WorkflowResult,
)

logger = logging.getLogger(__name__)

LEAVE_TYPES = {t.value for t in LeaveType}
HALF_DAY_PERIODS = {p.value for p in HalfDayPeriod}

_PUSH_BY_STATUS = {
    WorkflowStatus.APPROVED.value: NotificationEvent.LEAVE_APPROVED,
    WorkflowStatus.REJECTED.value: NotificationEvent.LEAVE_REJECTED,
    WorkflowStatus.CANCELLED_BY_USER.value: NotificationEvent.LEAVE_CANCELLED,
    WorkflowStatus.CANCELLED_BY_ADMIN.value: NotificationEvent.LEAVE_CANCELLED,
}


def validate_leave_type(value: Optional[str]) -> str:
    leave_type = (value or LeaveType.ANNUAL.value).strip().upper()
    if leave_type not in LEAVE_TYPES:
        raise ValidationError(f"Invalid leave type: {value}", field="leave_type")
    return leave_type


def validate_half_day_period(is_half_day: bool, value: Optional[str]) -> Optional[str]:
    if not is_half_day:
        return None
    if value is None:
        return HalfDayPeriod.FIRST_HALF.value
    period = str(value).strip().lower()
    if period not in HALF_DAY_PERIODS:
        raise ValidationError(f"Invalid half day period: {value}", field="half_day_period")
    return period


def validate_duration(value) -> float:
    try:
        duration = float(value)
    except (TypeError, ValueError):
        raise ValidationError(f"Invalid duration: {value}", field="duration")
    if duration < 0:
        raise ValidationError("Duration cannot be negative", field="duration")
    return duration


def _check_range(start, end) -> None:
    if end < start:
        raise ValidationError("End date cannot be before start date", field="end_date")


class LeaveWorkflowService(BaseWorkflowService):
    """Orchestrates the leave request lifecycle."""

    record_cls = LeaveRecord
    approve_requires_final_status = True

    # =========================================================================
    # CREATE
    # =========================================================================

    async def create(self, data: Dict[str, Any], ctx: Optional[TenantContext] = None) -> WorkflowResult:
        """
        Create a leave request.

        Duration is counted in business days unless the client supplies one.
        If the dates overlap the owner's active leave, the request is stored
        as REJECTED and no approval request is raised.

        Raises:
            ValidationError: missing owner, bad dates, type or duration
            NotFoundError: owner does not exist
        """
        ctx = ctx or TenantContext()
        owner_ref = data.get("owner_ref") or ctx.user_ref
        if not owner_ref:
            raise ValidationError("Owner is required", field="owner_ref")

        leave_type = validate_leave_type(data.get("leave_type"))
        start = parse_leave_date(data.get("start_date"), "start_date")
        end = parse_leave_date(data.get("end_date"), "end_date")
        _check_range(start, end)
        is_half_day = bool(data.get("is_half_day", False))
        half_day_period = validate_half_day_period(is_half_day, data.get("half_day_period"))

        if data.get("duration") is not None:
            duration = validate_duration(data["duration"])
        else:
            duration = calculate_leave_duration(start, end, is_half_day)

        await self.resolve_owner(owner_ref)

        record = LeaveRecord(
            owner_ref=str(owner_ref),
            organisation_id=ctx.organisation_id,
            branch_id=ctx.branch_id,
            status=WorkflowStatus.PENDING.value,
            leave_type=leave_type,
            start_date=start,
            end_date=end,
            duration=duration,
            motivation=data.get("motivation"),
            is_half_day=is_half_day,
            half_day_period=half_day_period,
            attachments=list(data.get("attachments") or []),
            tags=list(data.get("tags") or []),
            is_paid=bool(data.get("is_paid", True)),
            is_public_holiday=bool(data.get("is_public_holiday", False)),
            delegated_to_ref=data.get("delegated_to_ref"),
            comments=data.get("comments"),
        )
        stored = await self.store.insert(record)
        logger.info(
            "Leave request %s created: %s %s to %s (%s days) for %s",
            stored.id, leave_type, start, end, duration, owner_ref
        )

        existing = await self.store.find_by_owner_and_statuses(
            stored.owner_ref, ACTIVE_LEAVE_STATUSES, stored.organisation_id, stored.branch_id
        )
        check = has_conflict(stored, existing)
        if check.conflict:
            logger.info("Leave request %s conflicts with %s; auto-rejecting", stored.id, check.overlapping_ids)
            stored, warnings = await self.apply_transition(stored, WorkflowAction.AUTO_REJECT, None, check.rejection_reason())
            return WorkflowResult(self.config.message("auto_rejected", self.label), stored, warnings)

        stored, warnings = await self.start_approval(stored)
        self.dispatch_notifications(stored, self.created_plan(stored))
        return WorkflowResult(self.config.message("created", self.label), stored, warnings)

    # =========================================================================
    # HOOKS
    # =========================================================================

    def apply_changes(self, record: LeaveRecord, changes: Dict[str, Any]) -> None:
        range_changed = False
        if "leave_type" in changes:
            record.leave_type = validate_leave_type(changes["leave_type"])
        if "start_date" in changes:
            record.start_date = parse_leave_date(changes["start_date"], "start_date")
            range_changed = True
        if "end_date" in changes:
            record.end_date = parse_leave_date(changes["end_date"], "end_date")
            range_changed = True
        _check_range(record.start_date, record.end_date)

        if "is_half_day" in changes:
            record.is_half_day = bool(changes["is_half_day"])
            range_changed = True
        if "is_half_day" in changes or "half_day_period" in changes:
            record.half_day_period = validate_half_day_period(
                record.is_half_day, changes.get("half_day_period", record.half_day_period)
            )

        if changes.get("duration") is not None:
            record.duration = validate_duration(changes["duration"])
        elif range_changed:
            record.duration = calculate_leave_duration(record.start_date, record.end_date, record.is_half_day)

        for key in ("motivation", "attachments", "tags", "is_paid", "is_public_holiday", "delegated_to_ref", "comments"):
            if key in changes:
                setattr(record, key, changes[key])

    def reopen_reason(self) -> str:
        return "Leave details modified, restarting approval process"

    def withdrawal_reason(self, record: LeaveRecord, reason: Optional[str]) -> str:
        if record.status == WorkflowStatus.CANCELLED_BY_USER.value:
            return f"Leave request cancelled by user. Reason: {reason}"
        if record.status == WorkflowStatus.CANCELLED_BY_ADMIN.value:
            return f"Leave request cancelled by admin. Reason: {reason}"
        return reason or "Leave request withdrawn"

    def build_approval_draft(self, record: LeaveRecord, owner: Optional[UserRef]) -> ApprovalRequestDraft:
        requester = owner.display_name if owner else record.owner_ref
        leave_name = record.leave_type.replace("_", " ").lower()
        description = f"{requester} requested {record.duration:g} day(s) of {leave_name} leave"
        if record.motivation:
            description = f"{description}: {record.motivation}"

        return ApprovalRequestDraft(
            title=f"Leave Request - {record.leave_type} ({record.start_date} to {record.end_date})",
            description=description,
            type=ApprovalType.LEAVE_REQUEST.value,
            priority=leave_approval_priority(record.leave_type, record.duration).value,
            entity_id=record.id,
            entity_type=self.record_type,
            deadline=calculate_leave_approval_deadline(record.start_date).isoformat(),
            requester_ref=record.owner_ref,
            is_urgent=is_urgent_start(record.start_date),
            organisation_id=record.organisation_id,
            branch_id=record.branch_id,
            metadata={
                "leaveType": record.leave_type,
                "startDate": record.start_date.isoformat(),
                "endDate": record.end_date.isoformat(),
                "duration": record.duration,
                "isHalfDay": record.is_half_day,
                "halfDayPeriod": record.half_day_period,
                "isPaid": record.is_paid,
                "delegatedToRef": record.delegated_to_ref,
            },
            tags=["leave"] + list(record.tags),
        )

    def template_data(self, record: LeaveRecord, owner: Optional[UserRef]) -> Dict[str, Any]:
        data = super().template_data(record, owner)
        data.update({
            "leaveType": record.leave_type,
            "startDate": record.start_date.isoformat() if record.start_date else None,
            "endDate": record.end_date.isoformat() if record.end_date else None,
            "duration": record.duration,
            "motivation": record.motivation,
        })
        return data

    def created_plan(self, record: LeaveRecord) -> NotificationPlan:
        urgent = is_urgent_start(record.start_date)
        return NotificationPlan(
            owner_email=EmailType.LEAVE_APPLICATION_CONFIRMATION.value,
            admin_email=EmailType.LEAVE_NEW_APPLICATION_ADMIN.value,
            push_event=NotificationEvent.LEAVE_CREATED.value,
            title="New Leave Request",
            message=f"{record.leave_type} leave {record.start_date} to {record.end_date} awaits approval",
            priority=NotificationPriority.HIGH.value if urgent else NotificationPriority.NORMAL.value,
        )

    def transition_plan(self, record: LeaveRecord, previous_status: str) -> NotificationPlan:
        push_event = _PUSH_BY_STATUS.get(record.status, NotificationEvent.LEAVE_STATUS_CHANGED)
        return NotificationPlan(
            owner_email=EmailType.LEAVE_STATUS_UPDATE_USER.value,
            admin_email=EmailType.LEAVE_STATUS_UPDATE_ADMIN.value,
            push_event=push_event.value,
            title="Leave Request Updated",
            message=f"Leave {record.start_date} to {record.end_date} moved from {previous_status} to {record.status}",
        )

    async def on_removed(self, record: LeaveRecord) -> None:
        self.dispatch_notifications(
            record,
            NotificationPlan(owner_email=EmailType.LEAVE_DELETED_NOTIFICATION.value),
            notify_owner=True,
            notify_admins=False,
        )
