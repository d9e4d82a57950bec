"""
Ops Workflow Hub - Claims Workflow Service Tests

Covers claim creation (validation, references, approval + rewards side
effects), direct decisions, payment, share links and the update/re-open path.
"""

import pytest
from datetime import datetime, timedelta, timezone
from decimal import Decimal
from unittest.mock import AsyncMock

from services.approval_gateway import ApprovalPriority, InMemoryApprovalGateway
from services.claims_service import (
    ClaimsWorkflowService,
    claim_approval_deadline,
    claim_approval_priority,
)
from services.email_service import EmailType
from services.notifications import NotificationEvent
from services.record_store import InMemoryRecordStore
from services.rewards_gateway import InMemoryRewardsGateway
from services.workflow_errors import InvalidStateTransition, NotFoundError, ValidationError
from services.workflow_records import ClaimRecord
from services.workflow_service import TenantContext


async def create_claim(service, ctx, **overrides):
    data = {"amount": "1000", "category": "general"}
    data.update(overrides)
    result = await service.create(data, ctx)
    return result.record


class TestCreateClaim:

    @pytest.mark.asyncio
    async def test_happy_path(self, claims_service, ctx, approvals, rewards, port, dispatcher):
        """Pending claim with a linked approval, owner notified, points awarded."""
        result = await claims_service.create({"amount": 1000, "category": "GENERAL", "status": "approved"}, ctx)
        record = result.record

        assert record.status == "pending"
        assert record.amount == Decimal("1000")
        assert record.organisation_id == "org-1"
        assert record.linked_approval_id is not None
        assert result.warnings == []
        assert result.message == "Claim created successfully"

        approval = approvals.approvals[record.linked_approval_id]
        assert approval["entityType"] == "claim"
        assert approval["entityId"] == record.id
        assert approval["type"] == "expense_claim"

        assert rewards.total_for("user-1") == 10

        await dispatcher.drain()
        owner_emails = port.emails_of_type(EmailType.CLAIM_CREATED)
        assert len(owner_emails) == 1
        assert owner_emails[0]["recipients"] == ["thandi@example.com"]
        admin_emails = port.emails_of_type(EmailType.CLAIM_CREATED_ADMIN)
        assert len(admin_emails) == 1
        assert set(admin_emails[0]["recipients"]) == {"admin@example.com", "manager@example.com"}
        assert len(port.pushes_of_event(NotificationEvent.CLAIM_CREATED)) == 1

    @pytest.mark.asyncio
    async def test_negative_amount_rejected_before_persistence(self, claims_service, ctx, approvals):
        with pytest.raises(ValidationError) as exc:
            await claims_service.create({"amount": -5, "category": "general"}, ctx)
        assert exc.value.field == "amount"
        assert claims_service.store.documents == {}
        assert approvals.calls == []

    @pytest.mark.asyncio
    @pytest.mark.parametrize("amount", [0, "0.00", None, "abc", "NaN"])
    async def test_non_positive_or_garbage_amount(self, claims_service, ctx, amount):
        with pytest.raises(ValidationError):
            await claims_service.create({"amount": amount}, ctx)

    @pytest.mark.asyncio
    async def test_invalid_category(self, claims_service, ctx):
        with pytest.raises(ValidationError) as exc:
            await claims_service.create({"amount": 10, "category": "yacht"}, ctx)
        assert exc.value.field == "category"

    @pytest.mark.asyncio
    async def test_missing_owner(self, claims_service):
        with pytest.raises(ValidationError):
            await claims_service.create({"amount": 10}, TenantContext(organisation_id="org-1"))

    @pytest.mark.asyncio
    async def test_unknown_owner(self, claims_service, ctx):
        with pytest.raises(NotFoundError):
            await claims_service.create({"amount": 10, "owner_ref": "ghost"}, ctx)

    @pytest.mark.asyncio
    async def test_default_currency_and_share_token(self, claims_service, ctx):
        record = await create_claim(claims_service, ctx)
        assert record.currency == "ZAR"
        assert len(record.share_token) == 64
        expires = datetime.fromisoformat(record.share_token_expires_at)
        assert timedelta(days=29) < expires - datetime.now(timezone.utc) <= timedelta(days=30)

    @pytest.mark.asyncio
    async def test_claim_refs_are_sequential(self, claims_service, ctx):
        first = await create_claim(claims_service, ctx)
        second = await create_claim(claims_service, ctx)
        year = datetime.now(timezone.utc).year
        assert first.claim_ref == f"CLM-{year}-000001"
        assert second.claim_ref == f"CLM-{year}-000002"

    @pytest.mark.asyncio
    async def test_taken_claim_ref_is_retried(self, claims_service, ctx):
        first = await create_claim(claims_service, ctx)
        year = datetime.now(timezone.utc).year
        # Simulates a concurrent create that read the sequence before the first insert
        claims_service.store.find_latest_claim_ref = AsyncMock(side_effect=[None, first.claim_ref])

        second = await create_claim(claims_service, ctx)

        assert second.claim_ref == f"CLM-{year}-000002"
        assert claims_service.store.find_latest_claim_ref.await_count == 2

    @pytest.mark.asyncio
    async def test_approval_failure_is_not_fatal(self, dispatcher, users, rewards, config, ctx):
        service = ClaimsWorkflowService(
            InMemoryRecordStore(ClaimRecord), InMemoryApprovalGateway(fail_on=("create",)),
            dispatcher, users, rewards, config,
        )
        result = await service.create({"amount": 250}, ctx)
        assert result.record.status == "pending"
        assert result.record.linked_approval_id is None
        assert [w.step for w in result.warnings] == ["approval.initialize"]
        stored = await service.get(result.record.id, ctx)
        assert stored.linked_approval_id is None

    @pytest.mark.asyncio
    async def test_reward_failure_is_not_fatal(self, approvals, dispatcher, users, config, ctx):
        service = ClaimsWorkflowService(
            InMemoryRecordStore(ClaimRecord), approvals, dispatcher, users,
            InMemoryRewardsGateway(fail=True), config,
        )
        result = await service.create({"amount": 250}, ctx)
        assert result.record.linked_approval_id is not None
        assert [w.step for w in result.warnings] == ["rewards.award"]


class TestDecisions:

    @pytest.mark.asyncio
    async def test_approve_notifies_once(self, claims_service, ctx, admin_ctx, port, dispatcher):
        record = await create_claim(claims_service, ctx)
        await dispatcher.drain()

        result = await claims_service.approve(record.id, "admin-1", admin_ctx)
        assert result.record.status == "approved"
        assert result.record.approver_ref == "admin-1"
        assert result.record.approved_at is not None

        await dispatcher.drain()
        approved = port.emails_of_type(EmailType.CLAIM_APPROVED)
        assert len(approved) == 1
        assert approved[0]["recipients"] == ["thandi@example.com"]
        assert len(port.emails_of_type(EmailType.CLAIM_STATUS_UPDATE)) == 1
        assert len(port.pushes_of_event(NotificationEvent.CLAIM_APPROVED)) == 1
        admin_notices = [n for n in port.notifications if n["notification"]["status"] == "approved"]
        assert len(admin_notices) == 1

    @pytest.mark.asyncio
    async def test_approve_twice(self, claims_service, ctx):
        record = await create_claim(claims_service, ctx)
        await claims_service.approve(record.id, "admin-1", ctx)
        with pytest.raises(InvalidStateTransition):
            await claims_service.approve(record.id, "admin-1", ctx)

    @pytest.mark.asyncio
    async def test_unknown_approver(self, claims_service, ctx):
        record = await create_claim(claims_service, ctx)
        with pytest.raises(NotFoundError):
            await claims_service.approve(record.id, "nobody", ctx)

    @pytest.mark.asyncio
    async def test_reject_declines_with_reason(self, claims_service, ctx, admin_ctx, port, dispatcher):
        record = await create_claim(claims_service, ctx)
        result = await claims_service.reject(record.id, "Receipt missing", admin_ctx)
        assert result.record.status == "declined"
        assert result.record.decision_reason == "Receipt missing"
        assert result.record.approver_ref == "admin-1"

        await dispatcher.drain()
        rejected = port.emails_of_type(EmailType.CLAIM_REJECTED)
        assert rejected[0]["data"]["reason"] == "Receipt missing"

    @pytest.mark.asyncio
    async def test_reject_requires_reason(self, claims_service, ctx):
        record = await create_claim(claims_service, ctx)
        with pytest.raises(ValidationError):
            await claims_service.reject(record.id, "", ctx)

    @pytest.mark.asyncio
    async def test_owner_cancel_withdraws_approval(self, claims_service, ctx, approvals):
        record = await create_claim(claims_service, ctx)
        result = await claims_service.cancel(record.id, "Submitted twice", "user-1", ctx)
        assert result.record.status == "cancelled_by_user"
        assert approvals.approvals[record.linked_approval_id]["status"] == "withdrawn"

    @pytest.mark.asyncio
    async def test_admin_cancel(self, claims_service, ctx):
        record = await create_claim(claims_service, ctx)
        result = await claims_service.cancel(record.id, "Policy", "admin-1", ctx)
        assert result.record.status == "cancelled_by_admin"
        assert result.record.cancelled_by_ref == "admin-1"

    @pytest.mark.asyncio
    async def test_withdraw_failure_does_not_block_cancel(self, dispatcher, users, rewards, config, ctx):
        approvals = InMemoryApprovalGateway(fail_on=("list", "withdraw"))
        service = ClaimsWorkflowService(InMemoryRecordStore(ClaimRecord), approvals, dispatcher, users, rewards, config)
        record = await create_claim(service, ctx)
        result = await service.cancel(record.id, "No longer needed", "user-1", ctx)
        assert result.record.status == "cancelled_by_user"
        assert {w.step for w in result.warnings} == {"approval.list", "approval.withdraw"}

    @pytest.mark.asyncio
    async def test_other_tenant_cannot_see_claim(self, claims_service, ctx):
        record = await create_claim(claims_service, ctx)
        other = TenantContext(organisation_id="org-2", branch_id="branch-9", user_ref="admin-other")
        with pytest.raises(NotFoundError):
            await claims_service.approve(record.id, "admin-other", other)
        with pytest.raises(NotFoundError):
            await claims_service.get(record.id, other)


class TestPaymentAndSharing:

    @pytest.mark.asyncio
    async def test_mark_paid(self, claims_service, ctx, port, dispatcher):
        record = await create_claim(claims_service, ctx)
        await claims_service.approve(record.id, "admin-1", ctx)
        result = await claims_service.mark_paid(record.id, "admin-1", ctx)
        assert result.record.status == "paid"
        assert result.record.paid_at is not None
        await dispatcher.drain()
        assert len(port.emails_of_type(EmailType.CLAIM_PAID)) == 1

    @pytest.mark.asyncio
    async def test_cannot_pay_pending_claim(self, claims_service, ctx):
        record = await create_claim(claims_service, ctx)
        with pytest.raises(InvalidStateTransition):
            await claims_service.mark_paid(record.id, "admin-1", ctx)

    @pytest.mark.asyncio
    async def test_share_token_lookup(self, claims_service, ctx):
        record = await create_claim(claims_service, ctx)
        found = await claims_service.find_by_share_token(record.share_token)
        assert found.id == record.id

    @pytest.mark.asyncio
    async def test_expired_share_token(self, claims_service, ctx):
        record = await create_claim(claims_service, ctx)
        doc = claims_service.store.documents[record.id]
        doc["share_token_expires_at"] = (datetime.now(timezone.utc) - timedelta(minutes=1)).isoformat()
        with pytest.raises(NotFoundError):
            await claims_service.find_by_share_token(record.share_token)

    @pytest.mark.asyncio
    async def test_regenerate_share_token(self, claims_service, ctx):
        record = await create_claim(claims_service, ctx)
        result = await claims_service.regenerate_share_token(record.id, ctx)
        assert result.record.share_token != record.share_token
        with pytest.raises(NotFoundError):
            await claims_service.find_by_share_token(record.share_token)


class TestUpdateClaim:

    @pytest.mark.asyncio
    async def test_amount_change_reopens_approval(self, claims_service, ctx, approvals):
        record = await create_claim(claims_service, ctx)
        old_approval = record.linked_approval_id

        result = await claims_service.update(record.id, {"amount": "1500"}, ctx)
        assert result.record.status == "pending"
        assert result.record.amount == Decimal("1500")
        assert result.record.linked_approval_id not in (None, old_approval)
        assert approvals.approvals[old_approval]["status"] == "withdrawn"
        assert result.record.workflow_history[-1]["action"] == "reopen"

    @pytest.mark.asyncio
    async def test_comment_change_keeps_approval(self, claims_service, ctx, approvals):
        record = await create_claim(claims_service, ctx)
        result = await claims_service.update(record.id, {"comments": "Taxi to client site", "status": "paid"}, ctx)
        assert result.record.comments == "Taxi to client site"
        assert result.record.status == "pending"
        assert result.record.linked_approval_id == record.linked_approval_id
        assert len(approvals.approvals) == 1

    @pytest.mark.asyncio
    async def test_update_after_decision_fails(self, claims_service, ctx):
        record = await create_claim(claims_service, ctx)
        await claims_service.approve(record.id, "admin-1", ctx)
        with pytest.raises(InvalidStateTransition):
            await claims_service.update(record.id, {"amount": 5}, ctx)

    @pytest.mark.asyncio
    async def test_update_rejects_non_positive_amount(self, claims_service, ctx):
        record = await create_claim(claims_service, ctx)
        with pytest.raises(ValidationError):
            await claims_service.update(record.id, {"amount": 0}, ctx)


class TestRemoveRestore:

    @pytest.mark.asyncio
    async def test_soft_delete_hides_record(self, claims_service, ctx):
        record = await create_claim(claims_service, ctx)
        result = await claims_service.remove(record.id, ctx)
        assert result.record.is_deleted is True
        assert result.record.status == "pending"
        with pytest.raises(NotFoundError):
            await claims_service.get(record.id, ctx)
        page = await claims_service.list(ctx)
        assert page["total"] == 0

    @pytest.mark.asyncio
    async def test_restore(self, claims_service, ctx):
        record = await create_claim(claims_service, ctx)
        await claims_service.remove(record.id, ctx)
        result = await claims_service.restore(record.id, ctx)
        assert result.record.is_deleted is False
        assert (await claims_service.get(record.id, ctx)).id == record.id

    @pytest.mark.asyncio
    async def test_list_pagination(self, claims_service, ctx, config):
        for amount in (10, 20, 30):
            await create_claim(claims_service, ctx, amount=amount)
        page = await claims_service.list(ctx, skip=1, limit=1)
        assert page["total"] == 3
        assert len(page["data"]) == 1
        assert (await claims_service.list(ctx, limit=10_000))["limit"] == config.max_page_size


class TestClaimRules:

    @pytest.mark.parametrize("amount,category,expected", [
        (Decimal("100001"), "general", ApprovalPriority.CRITICAL),
        (Decimal("60000"), "travel", ApprovalPriority.HIGH),
        (Decimal("999.99"), "meals", ApprovalPriority.LOW),
        (Decimal("5000"), "hotel", ApprovalPriority.MEDIUM),
        (Decimal("10"), "announcement", ApprovalPriority.HIGH),
    ])
    def test_priority(self, amount, category, expected):
        assert claim_approval_priority(amount, category) == expected

    def test_deadline_is_five_pm_seven_days_later(self):
        created = datetime(2024, 7, 1, 9, 30, tzinfo=timezone.utc)
        assert claim_approval_deadline(created) == datetime(2024, 7, 8, 17, 0, tzinfo=timezone.utc)

    @pytest.mark.asyncio
    async def test_signature_required_above_threshold(self, claims_service, ctx, approvals):
        record = await create_claim(claims_service, ctx, amount="12000")
        assert approvals.approvals[record.linked_approval_id]["requiresSignature"] is True
        assert approvals.approvals[record.linked_approval_id]["amount"] == 12000.0
