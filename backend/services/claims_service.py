"""
Ops Workflow Hub - Claims Workflow Service

Expense claims: pending -> approved -> paid, or declined / cancelled.

On creation a claim gets a CLM-YYYY-NNNNNN reference and a public share
token, an approval request is raised (best-effort), the owner is awarded
reward points (best-effort) and owner/admins are notified.
"""

import copy
import logging
import secrets
from datetime import datetime, timedelta, timezone
from decimal import Decimal
from typing import Any, Dict, Optional

from .approval_gateway import (
    ApprovalActionEvent,
    ApprovalGateway,
    ApprovalPriority,
    ApprovalRequestDraft,
    ApprovalType,
)
from .email_service import EmailType
from .notifications import NotificationDispatcher, NotificationEvent, NotificationPriority
from .record_store import RecordStore
from .rewards_gateway import PointsAward, RewardsGateway
from .side_effects import run_best_effort
from .user_directory import UserDirectory, UserRef
from .workflow_config import WorkflowConfig
from .workflow_engine import WorkflowAction, WorkflowStatus
from .workflow_errors import DuplicateRecordError, NotFoundError, ValidationError
from .workflow_records import ClaimCategory, ClaimRecord, parse_amount
from .workflow_service import (
    BaseWorkflowService,
    NotificationPlan,
    TenantContext,
    WorkflowResult,
)

logger = logging.getLogger(__name__)

CLAIM_CATEGORIES = {c.value for c in ClaimCategory}

# Attempts at a fresh claim_ref when a concurrent create took the same one
CLAIM_REF_ATTEMPTS = 5


def claim_approval_priority(amount: Decimal, category: str) -> ApprovalPriority:
    """Large claims and announcements get reviewed first."""
    if category == ClaimCategory.ANNOUNCEMENT.value:
        return ApprovalPriority.HIGH
    if amount > 100000:
        return ApprovalPriority.CRITICAL
    if amount > 50000:
        return ApprovalPriority.HIGH
    if amount < 1000:
        return ApprovalPriority.LOW
    return ApprovalPriority.MEDIUM


def claim_approval_deadline(created_at: datetime, days: int = 7) -> datetime:
    """17:00 on the Nth day after creation."""
    return (created_at + timedelta(days=days)).replace(hour=17, minute=0, second=0, microsecond=0)


def _parse_timestamp(value: Optional[str]) -> datetime:
    if not value:
        return datetime.now(timezone.utc)
    parsed = datetime.fromisoformat(value)
    return parsed if parsed.tzinfo else parsed.replace(tzinfo=timezone.utc)


def validate_category(value: Optional[str]) -> str:
    category = (value or ClaimCategory.GENERAL.value).strip().lower()
    if category not in CLAIM_CATEGORIES:
        raise ValidationError(f"Invalid claim category: {value}", field="category")
    return category


def validate_amount(value) -> Decimal:
    amount = parse_amount(value)
    if amount <= 0:
        raise ValidationError("Claim amount must be greater than zero", field="amount")
    return amount


class ClaimsWorkflowService(BaseWorkflowService):
    """Orchestrates the claim lifecycle."""

    record_cls = ClaimRecord

    def __init__(
        self,
        store: RecordStore,
        approvals: ApprovalGateway,
        dispatcher: NotificationDispatcher,
        users: UserDirectory,
        rewards: RewardsGateway,
        config: Optional[WorkflowConfig] = None
    ):
        super().__init__(store, approvals, dispatcher, users, config)
        self.rewards = rewards

    # =========================================================================
    # CREATE
    # =========================================================================

    async def create(self, data: Dict[str, Any], ctx: Optional[TenantContext] = None) -> WorkflowResult:
        """
        Create a pending claim.

        Args:
            data: owner_ref, amount, category, currency, document_url, comments.
                  Any client-supplied status is ignored.
            ctx: Tenant scope; ctx.user_ref is the owner when data has none

        Raises:
            ValidationError: missing owner, non-positive amount, bad category
            NotFoundError: owner does not exist
        """
        ctx = ctx or TenantContext()
        owner_ref = data.get("owner_ref") or ctx.user_ref
        if not owner_ref:
            raise ValidationError("Owner is required", field="owner_ref")
        amount = validate_amount(data.get("amount"))
        category = validate_category(data.get("category"))
        owner = await self.resolve_owner(owner_ref)

        now = datetime.now(timezone.utc)
        record = ClaimRecord(
            owner_ref=str(owner_ref),
            organisation_id=ctx.organisation_id,
            branch_id=ctx.branch_id,
            status=WorkflowStatus.PENDING.value,
            amount=amount,
            category=category,
            currency=(data.get("currency") or self.config.default_currency).upper(),
            document_url=data.get("document_url"),
            comments=data.get("comments"),
            claim_ref=await self.next_claim_ref(now),
            share_token=secrets.token_hex(32),
            share_token_expires_at=(now + timedelta(days=self.config.claim_share_token_days)).isoformat(),
            created_at=now.isoformat(),
            updated_at=now.isoformat(),
        )
        stored = await self._insert_with_fresh_ref(record, now)
        logger.info("Claim %s created: %s %s %s for %s", stored.id, stored.claim_ref, stored.currency, stored.amount, owner_ref)

        stored, warnings = await self.start_approval(stored)

        award = PointsAward(
            owner_ref=stored.owner_ref,
            amount=self.config.claim_reward_points,
            action="claim_created",
            source={"module": "claims", "claim_id": stored.id, "claim_ref": stored.claim_ref},
        )
        reward = await run_best_effort(
            "rewards.award",
            self.rewards.award_points(award, stored.organisation_id, stored.branch_id),
            stored.id,
        )
        if not reward.success:
            warnings.append(reward)

        self.dispatch_notifications(stored, self.created_plan(stored))
        return WorkflowResult(self.config.message("created", self.label), stored, warnings)

    async def _insert_with_fresh_ref(self, record: ClaimRecord, now: datetime) -> ClaimRecord:
        """Insert, drawing a new claim_ref when another create already took it."""
        for attempt in range(1, CLAIM_REF_ATTEMPTS + 1):
            try:
                return await self.store.insert(record)
            except DuplicateRecordError as e:
                if e.field != "claim_ref" or attempt == CLAIM_REF_ATTEMPTS:
                    raise
                logger.warning("Claim reference %s already taken (attempt %d); retrying", record.claim_ref, attempt)
                record.claim_ref = await self.next_claim_ref(now)

    async def next_claim_ref(self, now: Optional[datetime] = None) -> str:
        """Next CLM-YYYY-NNNNNN reference for the current year."""
        now = now or datetime.now(timezone.utc)
        prefix = f"CLM-{now.year}-"
        latest = await self.store.find_latest_claim_ref(prefix)
        sequence = 1
        if latest:
            try:
                sequence = int(latest[len(prefix):]) + 1
            except ValueError:
                logger.warning("Unparseable claim reference %s; restarting sequence", latest)
        return f"{prefix}{sequence:06d}"

    # =========================================================================
    # PAYMENT + SHARING
    # =========================================================================

    async def mark_paid(
        self,
        record_id: str,
        actor_ref: Optional[str] = None,
        ctx: Optional[TenantContext] = None
    ) -> WorkflowResult:
        """Approved -> paid."""
        ctx = ctx or TenantContext()
        record = await self.get(record_id, ctx)
        stored, warnings = await self.apply_transition(record, WorkflowAction.MARK_PAID, actor_ref or ctx.user_ref)
        return WorkflowResult(self.config.message("paid", self.label), stored, warnings)

    async def regenerate_share_token(self, record_id: str, ctx: Optional[TenantContext] = None) -> WorkflowResult:
        record = await self.get(record_id, ctx)
        updated = copy.deepcopy(record)
        now = datetime.now(timezone.utc)
        updated.share_token = secrets.token_hex(32)
        updated.share_token_expires_at = (now + timedelta(days=self.config.claim_share_token_days)).isoformat()
        updated.updated_at = now.isoformat()
        stored = await self.store.update(updated, record.version)
        return WorkflowResult(self.config.message("share_token", self.label), stored)

    async def find_by_share_token(self, token: str) -> ClaimRecord:
        """
        Public lookup by share token.

        Raises:
            NotFoundError: unknown or expired token
        """
        record = await self.store.find_by_share_token(token)
        if record is None:
            raise NotFoundError("Claim not found")
        if record.share_token_expires_at and _parse_timestamp(record.share_token_expires_at) < datetime.now(timezone.utc):
            raise NotFoundError("Share link has expired")
        return record

    # =========================================================================
    # HOOKS
    # =========================================================================

    def apply_changes(self, record, changes: Dict[str, Any]) -> None:
        if "amount" in changes:
            record.amount = validate_amount(changes["amount"])
        if "category" in changes:
            record.category = validate_category(changes["category"])
        if "currency" in changes and changes["currency"]:
            record.currency = str(changes["currency"]).upper()
        for key in ("document_url", "comments"):
            if key in changes:
                setattr(record, key, changes[key])

    def build_approval_draft(self, record: ClaimRecord, owner: Optional[UserRef]) -> ApprovalRequestDraft:
        priority = claim_approval_priority(record.amount, record.category)
        created = _parse_timestamp(record.created_at)
        requester = owner.display_name if owner else record.owner_ref
        return ApprovalRequestDraft(
            title=f"Expense Claim - {record.claim_ref}",
            description=f"{requester} submitted a {record.category} claim for {record.currency} {record.amount}",
            type=ApprovalType.EXPENSE_CLAIM.value,
            priority=priority.value,
            entity_id=record.id,
            entity_type=self.record_type,
            deadline=claim_approval_deadline(created, self.config.claim_approval_deadline_days).isoformat(),
            requester_ref=record.owner_ref,
            amount=float(record.amount),
            currency=record.currency,
            requires_signature=record.amount > self.config.claim_signature_threshold,
            organisation_id=record.organisation_id,
            branch_id=record.branch_id,
            metadata={
                "claimRef": record.claim_ref,
                "category": record.category,
                "documentUrl": record.document_url,
            },
            tags=["claim", record.category],
        )

    def template_data(self, record: ClaimRecord, owner: Optional[UserRef]) -> Dict[str, Any]:
        data = super().template_data(record, owner)
        data.update({
            "claimRef": record.claim_ref,
            "amount": str(record.amount),
            "currency": record.currency,
            "category": record.category,
            "shareLink": f"{self.config.app_url}/claims/share/{record.share_token}" if record.share_token else None,
        })
        return data

    def created_plan(self, record: ClaimRecord) -> NotificationPlan:
        priority = claim_approval_priority(record.amount, record.category)
        urgent = priority in (ApprovalPriority.HIGH, ApprovalPriority.CRITICAL)
        return NotificationPlan(
            owner_email=EmailType.CLAIM_CREATED.value,
            admin_email=EmailType.CLAIM_CREATED_ADMIN.value,
            push_event=NotificationEvent.CLAIM_CREATED.value,
            title="New Claim Submitted",
            message=f"Claim {record.claim_ref} for {record.currency} {record.amount} awaits approval",
            priority=NotificationPriority.HIGH.value if urgent else NotificationPriority.NORMAL.value,
        )

    def transition_plan(self, record: ClaimRecord, previous_status: str) -> NotificationPlan:
        status = record.status
        if status == WorkflowStatus.APPROVED.value:
            owner_email, push_event, title = EmailType.CLAIM_APPROVED, NotificationEvent.CLAIM_APPROVED, "Claim Approved"
        elif status == WorkflowStatus.DECLINED.value:
            owner_email, push_event, title = EmailType.CLAIM_REJECTED, NotificationEvent.CLAIM_REJECTED, "Claim Declined"
        elif status == WorkflowStatus.PAID.value:
            owner_email, push_event, title = EmailType.CLAIM_PAID, NotificationEvent.CLAIM_STATUS_CHANGED, "Claim Paid"
        elif status in (WorkflowStatus.CANCELLED_BY_USER.value, WorkflowStatus.CANCELLED_BY_ADMIN.value):
            owner_email, push_event, title = EmailType.CLAIM_CANCELLED, NotificationEvent.CLAIM_STATUS_CHANGED, "Claim Cancelled"
        else:
            owner_email, push_event, title = EmailType.CLAIM_STATUS_UPDATE, NotificationEvent.CLAIM_STATUS_CHANGED, "Claim Updated"

        return NotificationPlan(
            owner_email=owner_email.value,
            admin_email=EmailType.CLAIM_STATUS_UPDATE.value,
            push_event=push_event.value,
            title=title,
            message=f"Claim {record.claim_ref} moved from {previous_status} to {status}",
        )

    async def handle_request_info(self, record: ClaimRecord, event: ApprovalActionEvent):
        """Append the approver's question to the claim comments; status is unchanged."""
        details = event.comments or event.reason or "no details provided"
        note = self.config.message("info_requested", details=details)
        updated = copy.deepcopy(record)
        updated.comments = f"{record.comments}\n{note}" if record.comments else note
        updated.updated_at = datetime.now(timezone.utc).isoformat()
        stored = await self.store.update(updated, record.version)
        logger.info("Claim %s: information requested by %s", record.id, event.action_by or "approver")
        return stored
