"""
Ops Workflow Hub - Leave Workflow Service Tests

Covers leave creation (duration, validation, conflict auto-rejection),
the re-open path on date changes, cancellation and soft deletion.
"""

import pytest
from datetime import date

from services.email_service import EmailType
from services.notifications import NotificationEvent
from services.workflow_errors import InvalidStateTransition, NotFoundError, ValidationError
from services.workflow_records import LeaveRecord


async def seed_approved_leave(service, start, end, owner="user-1"):
    record = LeaveRecord(
        owner_ref=owner, organisation_id="org-1", branch_id="branch-1",
        status="approved", start_date=start, end_date=end, duration=1.0,
    )
    return await service.store.insert(record)


class TestCreateLeave:

    @pytest.mark.asyncio
    async def test_happy_path(self, leave_service, ctx, approvals, port, dispatcher):
        result = await leave_service.create(
            {"leave_type": "annual", "start_date": "2024-07-15", "end_date": "2024-07-19", "motivation": "Holiday"},
            ctx,
        )
        record = result.record
        assert result.message == "Leave request created successfully"
        assert record.status == "pending"
        assert record.leave_type == "ANNUAL"
        assert record.start_date == date(2024, 7, 15)
        assert record.duration == 5.0
        assert record.linked_approval_id is not None

        approval = approvals.approvals[record.linked_approval_id]
        assert approval["type"] == "leave_request"
        assert approval["metadata"]["startDate"] == "2024-07-15"
        assert approval["title"] == "Leave Request - ANNUAL (2024-07-15 to 2024-07-19)"

        await dispatcher.drain()
        confirmations = port.emails_of_type(EmailType.LEAVE_APPLICATION_CONFIRMATION)
        assert confirmations[0]["recipients"] == ["thandi@example.com"]
        assert len(port.emails_of_type(EmailType.LEAVE_NEW_APPLICATION_ADMIN)) == 1
        assert len(port.pushes_of_event(NotificationEvent.LEAVE_CREATED)) == 1

    @pytest.mark.asyncio
    async def test_overlap_with_approved_leave_is_auto_rejected(self, leave_service, ctx, approvals, port, dispatcher):
        existing = await seed_approved_leave(leave_service, date(2024, 7, 20), date(2024, 7, 22))

        result = await leave_service.create({"start_date": "2024-07-15", "end_date": "2024-07-29"}, ctx)
        record = result.record

        assert record.status == "rejected"
        assert existing.id in record.decision_reason
        assert record.rejected_at is not None
        assert record.approver_ref is None
        assert record.linked_approval_id is None
        assert approvals.approvals == {}
        assert "automatically rejected" in result.message

        await dispatcher.drain()
        updates = port.emails_of_type(EmailType.LEAVE_STATUS_UPDATE_USER)
        assert len(updates) == 1
        assert port.emails_of_type(EmailType.LEAVE_NEW_APPLICATION_ADMIN) == []

    @pytest.mark.asyncio
    async def test_shared_boundary_day_conflicts(self, leave_service, ctx):
        await seed_approved_leave(leave_service, date(2024, 7, 20), date(2024, 7, 25))
        result = await leave_service.create({"start_date": "2024-07-15", "end_date": "2024-07-20"}, ctx)
        assert result.record.status == "rejected"

    @pytest.mark.asyncio
    async def test_adjacent_leave_does_not_conflict(self, leave_service, ctx):
        await seed_approved_leave(leave_service, date(2024, 7, 15), date(2024, 7, 20))
        result = await leave_service.create({"start_date": "2024-07-21", "end_date": "2024-07-25"}, ctx)
        assert result.record.status == "pending"

    @pytest.mark.asyncio
    async def test_other_owners_leave_does_not_conflict(self, leave_service, ctx):
        await seed_approved_leave(leave_service, date(2024, 7, 15), date(2024, 7, 20), owner="user-2")
        result = await leave_service.create({"start_date": "2024-07-15", "end_date": "2024-07-20"}, ctx)
        assert result.record.status == "pending"

    @pytest.mark.asyncio
    async def test_end_before_start(self, leave_service, ctx):
        with pytest.raises(ValidationError) as exc:
            await leave_service.create({"start_date": "2024-07-20", "end_date": "2024-07-15"}, ctx)
        assert exc.value.field == "end_date"
        assert leave_service.store.documents == {}

    @pytest.mark.asyncio
    async def test_missing_dates(self, leave_service, ctx):
        with pytest.raises(ValidationError):
            await leave_service.create({"start_date": "2024-07-20"}, ctx)

    @pytest.mark.asyncio
    async def test_invalid_leave_type(self, leave_service, ctx):
        with pytest.raises(ValidationError) as exc:
            await leave_service.create({"leave_type": "GARDENING", "start_date": "2024-07-15", "end_date": "2024-07-15"}, ctx)
        assert exc.value.field == "leave_type"

    @pytest.mark.asyncio
    async def test_half_day_defaults_to_first_half(self, leave_service, ctx):
        result = await leave_service.create(
            {"start_date": "2024-07-15", "end_date": "2024-07-15", "is_half_day": True}, ctx
        )
        assert result.record.duration == 0.5
        assert result.record.half_day_period == "first_half"

    @pytest.mark.asyncio
    async def test_weekend_half_day_duration_not_negative(self, leave_service, ctx):
        result = await leave_service.create(
            {"start_date": "2030-07-13", "end_date": "2030-07-13", "is_half_day": True}, ctx
        )
        assert result.record.duration == 0.0

    @pytest.mark.asyncio
    async def test_invalid_half_day_period(self, leave_service, ctx):

        with pytest.raises(ValidationError):
            await leave_service.create(
                {"start_date": "2024-07-15", "end_date": "2024-07-15", "is_half_day": True, "half_day_period": "evening"},
                ctx,
            )

    @pytest.mark.asyncio
    async def test_client_duration_is_kept(self, leave_service, ctx):
        result = await leave_service.create(
            {"start_date": "2024-07-15", "end_date": "2024-07-19", "duration": 3}, ctx
        )
        assert result.record.duration == 3.0

    @pytest.mark.asyncio
    async def test_unknown_owner(self, leave_service, ctx):
        with pytest.raises(NotFoundError):
            await leave_service.create(
                {"owner_ref": "ghost", "start_date": "2024-07-15", "end_date": "2024-07-15"}, ctx
            )


class TestUpdateLeave:

    @pytest.mark.asyncio
    async def test_date_change_restarts_approval(self, leave_service, ctx, approvals):
        created = (await leave_service.create({"start_date": "2024-07-15", "end_date": "2024-07-19"}, ctx)).record
        old_approval = created.linked_approval_id

        result = await leave_service.update(created.id, {"end_date": "2024-07-23"}, ctx)
        record = result.record

        assert record.status == "pending"
        assert record.end_date == date(2024, 7, 23)
        assert record.duration == 7.0
        assert record.linked_approval_id is not None
        assert record.linked_approval_id != old_approval
        assert approvals.approvals[old_approval]["status"] == "withdrawn"
        assert approvals.approvals[old_approval]["withdrawReason"] == "Leave details modified, restarting approval process"
        assert approvals.approvals[record.linked_approval_id]["status"] == "pending"

    @pytest.mark.asyncio
    async def test_failed_restart_clears_approval_link(self, leave_service, ctx, approvals):
        created = (await leave_service.create({"start_date": "2024-07-15", "end_date": "2024-07-19"}, ctx)).record
        old_approval = created.linked_approval_id
        approvals.fail_on.add("create")

        result = await leave_service.update(created.id, {"end_date": "2024-07-23"}, ctx)

        assert approvals.approvals[old_approval]["status"] == "withdrawn"
        assert result.record.linked_approval_id is None
        assert [w.step for w in result.warnings] == ["approval.initialize"]
        stored = await leave_service.get(created.id, ctx)
        assert stored.linked_approval_id is None

    @pytest.mark.asyncio
    async def test_motivation_change_keeps_approval(self, leave_service, ctx, approvals):

        created = (await leave_service.create({"start_date": "2024-07-15", "end_date": "2024-07-19"}, ctx)).record
        result = await leave_service.update(created.id, {"motivation": "Family visit"}, ctx)
        assert result.record.motivation == "Family visit"
        assert result.record.linked_approval_id == created.linked_approval_id
        assert len(approvals.approvals) == 1

    @pytest.mark.asyncio
    async def test_update_rejects_inverted_range(self, leave_service, ctx):
        created = (await leave_service.create({"start_date": "2024-07-15", "end_date": "2024-07-19"}, ctx)).record
        with pytest.raises(ValidationError):
            await leave_service.update(created.id, {"start_date": "2024-07-25"}, ctx)

    @pytest.mark.asyncio
    async def test_update_approved_leave_fails(self, leave_service, ctx):
        created = (await leave_service.create({"start_date": "2024-07-15", "end_date": "2024-07-19"}, ctx)).record
        await leave_service.approve(created.id, "admin-1", ctx)
        with pytest.raises(InvalidStateTransition):
            await leave_service.update(created.id, {"end_date": "2024-07-23"}, ctx)


class TestLeaveDecisions:

    @pytest.mark.asyncio
    async def test_approve_then_cancel_by_owner(self, leave_service, ctx, approvals, port, dispatcher):
        created = (await leave_service.create({"start_date": "2024-07-15", "end_date": "2024-07-19"}, ctx)).record
        await leave_service.approve(created.id, "admin-1", ctx)
        result = await leave_service.cancel(created.id, "Trip cancelled", "user-1", ctx)

        assert result.record.status == "cancelled_by_user"
        assert result.record.approved_at is None
        assert result.record.cancelled_at is not None

        await dispatcher.drain()
        assert len(port.pushes_of_event(NotificationEvent.LEAVE_APPROVED)) == 1
        assert len(port.pushes_of_event(NotificationEvent.LEAVE_CANCELLED)) == 1

    @pytest.mark.asyncio
    async def test_cancel_withdraws_with_user_reason(self, leave_service, ctx, approvals):
        created = (await leave_service.create({"start_date": "2024-07-15", "end_date": "2024-07-19"}, ctx)).record
        await leave_service.cancel(created.id, "Trip cancelled", "user-1", ctx)
        approval = approvals.approvals[created.linked_approval_id]
        assert approval["status"] == "withdrawn"
        assert approval["withdrawReason"] == "Leave request cancelled by user. Reason: Trip cancelled"

    @pytest.mark.asyncio
    async def test_reject_leave(self, leave_service, ctx, admin_ctx):
        created = (await leave_service.create({"start_date": "2024-07-15", "end_date": "2024-07-19"}, ctx)).record
        result = await leave_service.reject(created.id, "Team short-staffed", admin_ctx)
        assert result.record.status == "rejected"
        assert result.record.approver_ref == "admin-1"

    @pytest.mark.asyncio
    async def test_cancelled_leave_no_longer_blocks(self, leave_service, ctx):
        first = (await leave_service.create({"start_date": "2024-07-15", "end_date": "2024-07-19"}, ctx)).record
        await leave_service.approve(first.id, "admin-1", ctx)
        await leave_service.cancel(first.id, "Changed plans", "user-1", ctx)
        second = await leave_service.create({"start_date": "2024-07-15", "end_date": "2024-07-19"}, ctx)
        assert second.record.status == "pending"


class TestRemoveLeave:

    @pytest.mark.asyncio
    async def test_delete_notifies_owner_only(self, leave_service, ctx, port, dispatcher):
        created = (await leave_service.create({"start_date": "2024-07-15", "end_date": "2024-07-19"}, ctx)).record
        await dispatcher.drain()
        notices_before = len(port.notifications)

        result = await leave_service.remove(created.id, ctx)
        assert result.record.is_deleted is True
        assert result.record.status == "pending"

        await dispatcher.drain()
        deleted = port.emails_of_type(EmailType.LEAVE_DELETED_NOTIFICATION)
        assert len(deleted) == 1
        assert deleted[0]["recipients"] == ["thandi@example.com"]
        assert len(port.notifications) == notices_before

    @pytest.mark.asyncio
    async def test_deleted_leave_does_not_block(self, leave_service, ctx):
        existing = await seed_approved_leave(leave_service, date(2024, 7, 15), date(2024, 7, 19))
        await leave_service.remove(existing.id, ctx)
        result = await leave_service.create({"start_date": "2024-07-15", "end_date": "2024-07-19"}, ctx)
        assert result.record.status == "pending"
