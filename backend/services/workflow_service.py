"""
Ops Workflow Hub - Workflow Service Base

Orchestration shared by the claims and leave workflows:

- loads records within the caller's tenant scope
- runs WorkflowEngine transitions and persists them with the version guard
- runs the requested side effects: approval withdrawal/initialization
  (best-effort, reported as warnings) and owner/admin notifications
  (fire-and-forget through the NotificationDispatcher)
- reacts to approval-collaborator callbacks for its own record type

ClaimsWorkflowService and LeaveWorkflowService add creation rules,
notification content and approval request drafts.
"""

import copy
import logging
from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Any, Dict, List, Optional, Tuple

from .approval_gateway import (
    ApprovalAction,
    ApprovalActionEvent,
    ApprovalGateway,
    ApprovalRequestDraft,
    ApprovalStatus,
)
from .notifications import NotificationDispatcher, NotificationPriority
from .record_store import RecordStore
from .side_effects import SideEffectResult, run_best_effort
from .user_directory import UserDirectory, UserRef
from .workflow_config import WorkflowConfig
from .workflow_engine import SideEffect, WorkflowAction, WorkflowEngine
from .workflow_errors import InvalidStateTransition, NotFoundError, ValidationError

logger = logging.getLogger(__name__)


@dataclass
class TenantContext:
    """Caller scope taken from the request; None filters match everything."""
    organisation_id: Optional[str] = None
    branch_id: Optional[str] = None
    user_ref: Optional[str] = None


@dataclass
class WorkflowResult:
    """Outcome of an orchestrator operation. warnings lists failed side effects."""
    message: str
    record: Any
    warnings: List[SideEffectResult] = field(default_factory=list)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "message": self.message,
            "data": self.record.to_dict(),
            "warnings": [w.to_dict() for w in self.warnings],
        }


@dataclass
class NotificationPlan:
    """Which emails, push event and in-app notice a record change produces."""
    owner_email: Optional[str] = None
    admin_email: Optional[str] = None
    push_event: Optional[str] = None
    title: str = ""
    message: str = ""
    priority: str = NotificationPriority.NORMAL.value


# Approval-collaborator actions mapped onto engine actions
_EVENT_ACTIONS = {
    ApprovalAction.APPROVE.value: WorkflowAction.APPROVE.value,
    ApprovalAction.REJECT.value: WorkflowAction.REJECT.value,
    ApprovalAction.CANCEL.value: WorkflowAction.CANCEL.value,
    ApprovalAction.WITHDRAW.value: WorkflowAction.CANCEL.value,
}


class BaseWorkflowService:
    """Shared workflow operations. Subclasses set record_cls and the hooks."""

    record_cls = None
    # Only act on an APPROVE event once the approval chain itself is approved
    approve_requires_final_status = False

    def __init__(
        self,
        store: RecordStore,
        approvals: ApprovalGateway,
        dispatcher: NotificationDispatcher,
        users: UserDirectory,
        config: Optional[WorkflowConfig] = None
    ):
        self.store = store
        self.approvals = approvals
        self.dispatcher = dispatcher
        self.users = users
        self.config = config or WorkflowConfig()

    @property
    def record_type(self) -> str:
        return self.record_cls.record_type

    @property
    def label(self) -> str:
        return self.record_cls.label

    # =========================================================================
    # HOOKS
    # =========================================================================

    def build_approval_draft(self, record, owner: Optional[UserRef]) -> ApprovalRequestDraft:
        raise NotImplementedError

    def created_plan(self, record) -> NotificationPlan:
        raise NotImplementedError

    def transition_plan(self, record, previous_status: str) -> NotificationPlan:
        raise NotImplementedError

    def template_data(self, record, owner: Optional[UserRef]) -> Dict[str, Any]:
        return {
            "id": record.id,
            "name": owner.display_name if owner else record.owner_ref,
            "status": record.status,
            "reason": record.decision_reason,
            "dashboardLink": f"{self.config.app_url}/{self.record_type}/{record.id}",
        }

    def apply_changes(self, record, changes: Dict[str, Any]) -> None:
        """Write validated client changes onto a copy of a pending record."""
        for key, value in changes.items():
            setattr(record, key, value)

    async def handle_request_info(self, record, event: ApprovalActionEvent):
        logger.info(
            "Approval %s requested information on %s %s; status unchanged",
            event.approval_id, self.record_type, record.id
        )
        return None

    async def on_removed(self, record) -> None:
        return None

    def withdrawal_reason(self, record, reason: Optional[str]) -> str:
        return reason or f"{self.label} withdrawn"

    # =========================================================================
    # READS
    # =========================================================================

    async def get(self, record_id: str, ctx: Optional[TenantContext] = None):
        """
        Raises:
            NotFoundError: record absent, soft-deleted or outside the tenant
        """
        ctx = ctx or TenantContext()
        record = await self.store.find_by_id(record_id, ctx.organisation_id, ctx.branch_id)
        if record is None:
            raise NotFoundError(f"{self.label} not found", {"id": record_id})
        return record

    async def list(
        self,
        ctx: Optional[TenantContext] = None,
        status: Optional[str] = None,
        owner_ref: Optional[str] = None,
        skip: int = 0,
        limit: Optional[int] = None
    ) -> Dict[str, Any]:
        ctx = ctx or TenantContext()
        limit = self.config.clamp_page_size(limit)
        records, total = await self.store.list_records(
            organisation_id=ctx.organisation_id,
            branch_id=ctx.branch_id,
            status=status,
            owner_ref=owner_ref,
            skip=max(skip, 0),
            limit=limit,
        )
        return {"data": records, "total": total, "skip": max(skip, 0), "limit": limit}

    async def resolve_owner(self, owner_ref: Optional[str]) -> UserRef:
        if not owner_ref:
            raise ValidationError("Owner is required", field="owner_ref")
        return await self.resolve_user(owner_ref, "owner_ref")

    # =========================================================================
    # DECISIONS
    # =========================================================================

    async def approve(
        self,
        record_id: str,
        approver_ref: str,
        ctx: Optional[TenantContext] = None
    ) -> WorkflowResult:
        if not approver_ref:
            raise ValidationError("Approver is required", field="approver_ref")
        await self.resolve_user(approver_ref, "approver_ref")
        record = await self.get(record_id, ctx)
        stored, warnings = await self.apply_transition(record, WorkflowAction.APPROVE, approver_ref)
        return WorkflowResult(self.config.message("approved", self.label), stored, warnings)

    async def reject(
        self,
        record_id: str,
        reason: str,
        ctx: Optional[TenantContext] = None,
        actor_ref: Optional[str] = None
    ) -> WorkflowResult:
        ctx = ctx or TenantContext()
        record = await self.get(record_id, ctx)
        stored, warnings = await self.apply_transition(
            record, WorkflowAction.REJECT, actor_ref or ctx.user_ref, reason
        )
        return WorkflowResult(self.config.message("rejected", self.label), stored, warnings)

    async def cancel(
        self,
        record_id: str,
        reason: str,
        actor_ref: Optional[str],
        ctx: Optional[TenantContext] = None
    ) -> WorkflowResult:
        record = await self.get(record_id, ctx)
        stored, warnings = await self.apply_transition(record, WorkflowAction.CANCEL, actor_ref, reason)
        return WorkflowResult(self.config.message("cancelled", self.label), stored, warnings)

    async def resolve_user(self, user_ref: str, field_name: str) -> UserRef:
        user = await self.users.get_user(user_ref)
        if user is None:
            raise NotFoundError("User not found", {field_name: user_ref})
        return user

    # =========================================================================
    # UPDATE / REMOVE / RESTORE
    # =========================================================================

    async def update(
        self,
        record_id: str,
        patch: Dict[str, Any],
        ctx: Optional[TenantContext] = None
    ) -> WorkflowResult:
        """
        Update a pending record. A change to any critical field re-opens the
        approval: the outstanding request is withdrawn and a new one created.

        Raises:
            NotFoundError: record absent or outside the tenant
            InvalidStateTransition: record is no longer pending
            ValidationError: invalid field values
        """
        ctx = ctx or TenantContext()
        record = await self.get(record_id, ctx)
        if not WorkflowEngine.is_mutable(record):
            raise InvalidStateTransition(record.status, "update", f"Only pending records can be updated ({record.status})")

        changes = {k: v for k, v in (patch or {}).items() if k in self.record_cls.UPDATABLE_FIELDS}
        updated = copy.deepcopy(record)
        self.apply_changes(updated, changes)
        updated.updated_at = datetime.now(timezone.utc).isoformat()

        critical = [f for f in self.record_cls.CRITICAL_FIELDS if getattr(updated, f) != getattr(record, f)]
        if critical:
            logger.info("%s %s critical fields changed %s; re-opening approval", self.label, record.id, critical)
            stored, warnings = await self.apply_transition(
                updated, WorkflowAction.REOPEN, ctx.user_ref or record.owner_ref, self.reopen_reason()
            )
        else:
            stored = await self.store.update(updated, record.version)
            warnings = []
        return WorkflowResult(self.config.message("updated", self.label), stored, warnings)

    def reopen_reason(self) -> str:
        return f"{self.label} details modified, restarting approval process"

    async def remove(self, record_id: str, ctx: Optional[TenantContext] = None) -> WorkflowResult:
        """Soft delete. Status is untouched."""
        record = await self.get(record_id, ctx)
        stored = await self.store.set_deleted(record, True)
        logger.info("%s %s soft-deleted", self.label, record.id)
        await self.on_removed(stored)
        return WorkflowResult(self.config.message("deleted", self.label), stored)

    async def restore(self, record_id: str, ctx: Optional[TenantContext] = None) -> WorkflowResult:
        ctx = ctx or TenantContext()
        record = await self.store.find_by_id(record_id, ctx.organisation_id, ctx.branch_id, include_deleted=True)
        if record is None:
            raise NotFoundError(f"{self.label} not found", {"id": record_id})
        if record.is_deleted:
            record = await self.store.set_deleted(record, False)
            logger.info("%s %s restored", self.label, record.id)
        return WorkflowResult(self.config.message("restored", self.label), record)

    # =========================================================================
    # TRANSITIONS + SIDE EFFECTS
    # =========================================================================

    async def apply_transition(
        self,
        record,
        action,
        actor: Optional[str] = None,
        reason: Optional[str] = None,
        source: str = "direct"
    ) -> Tuple[Any, List[SideEffectResult]]:
        """
        Run one engine transition, persist it and run its side effects.

        Linked approvals are withdrawn before the new status is written.
        """
        outcome = WorkflowEngine.transition(record, action, actor=actor, reason=reason, source=source)
        warnings: List[SideEffectResult] = []

        if SideEffect.WITHDRAW_APPROVAL in outcome.effects and source != "approval_event":
            warnings.extend(await self.withdraw_approvals(outcome.record, reason))
        if SideEffect.INITIALIZE_APPROVAL in outcome.effects:
            # Stays None if the fresh approval request cannot be created
            outcome.record.linked_approval_id = None

        stored = await self.store.update(outcome.record, record.version)

        if SideEffect.INITIALIZE_APPROVAL in outcome.effects:
            stored, init_warnings = await self.start_approval(stored)
            warnings.extend(init_warnings)

        notify_owner = SideEffect.NOTIFY_OWNER in outcome.effects
        notify_admins = SideEffect.NOTIFY_ADMINS in outcome.effects
        if notify_owner or notify_admins:
            self.dispatch_notifications(
                stored,
                self.transition_plan(stored, outcome.previous_status),
                notify_owner=notify_owner,
                notify_admins=notify_admins,
            )
        return stored, warnings

    async def start_approval(self, record) -> Tuple[Any, List[SideEffectResult]]:
        """Create an approval request; on failure linked_approval_id stays None."""
        owner = await self.users.get_user(record.owner_ref)
        draft = self.build_approval_draft(record, owner)
        result = await run_best_effort(
            "approval.initialize", self.approvals.create_approval_request(draft), record.id
        )
        if not result.success:
            logger.warning("%s %s created without an approval request", self.label, record.id)
            return record, [result]

        linked = copy.deepcopy(record)
        linked.linked_approval_id = result.value
        stored = await self.store.update(linked, record.version)
        logger.info("Approval %s initialized for %s %s", result.value, self.record_type, record.id)
        return stored, []

    async def withdraw_approvals(self, record, reason: Optional[str]) -> List[SideEffectResult]:
        """Withdraw every still-active approval linked to the record."""
        warnings: List[SideEffectResult] = []
        approval_ids = []

        listed = await run_best_effort(
            "approval.list", self.approvals.list_active_approvals(self.record_type, record.id), record.id
        )
        if listed.success:
            approval_ids = [str(a.get("uid") or a.get("id")) for a in listed.value or []]
        else:
            warnings.append(listed)
            if record.linked_approval_id:
                approval_ids = [record.linked_approval_id]

        for approval_id in approval_ids:
            result = await run_best_effort(
                "approval.withdraw",
                self.approvals.withdraw_approval_request(
                    approval_id, self.withdrawal_reason(record, reason), f"{self.label} {record.id} {record.status}"
                ),
                record.id,
            )
            if not result.success:
                warnings.append(result)
        return warnings

    def dispatch_notifications(
        self,
        record,
        plan: NotificationPlan,
        notify_owner: bool = True,
        notify_admins: bool = True
    ) -> None:
        """Spawn the owner/admin fan-out without awaiting it."""
        self.dispatcher.spawn(
            "notify.fan_out",
            self._fan_out(record, plan, notify_owner, notify_admins),
        )

    async def _fan_out(self, record, plan: NotificationPlan, notify_owner: bool, notify_admins: bool) -> None:
        owner = await self.users.get_user(record.owner_ref)
        data = self.template_data(record, owner)

        if notify_owner:
            if plan.owner_email and owner and owner.email:
                self.dispatcher.email(plan.owner_email, [owner.email], data)
            if plan.push_event:
                self.dispatcher.push(plan.push_event, [record.owner_ref], data, plan.priority)

        if notify_admins:
            if plan.admin_email:
                admins = await self.users.find_admins(
                    record.organisation_id, record.branch_id, self.config.admin_roles
                )
                emails = [a.email for a in admins if a.email and a.id != record.owner_ref]
                self.dispatcher.email(plan.admin_email, emails, data)
            self.dispatcher.notification(
                {
                    "type": self.record_type,
                    "title": plan.title,
                    "message": plan.message,
                    "status": record.status,
                    "owner": record.owner_ref,
                },
                self.config.admin_roles,
                record.organisation_id,
                record.branch_id,
            )

    # =========================================================================
    # APPROVAL EVENT LISTENER
    # =========================================================================

    async def on_approval_action_performed(self, event: ApprovalActionEvent):
        """
        Apply an approval-collaborator callback to the linked record.

        Events for other record types are ignored. Never raises: failures are
        logged so the publisher's pipeline keeps running.

        Returns:
            The updated record, or None when nothing changed
        """
        try:
            if not event.is_for(self.record_type):
                logger.debug("Ignoring approval event %s for %s", event.approval_id, event.entity_type)
                return None
            if not event.entity_id:
                logger.warning("Approval event %s carries no entity id", event.approval_id)
                return None

            record = await self.store.find_by_id(event.entity_id)
            if record is None:
                logger.warning("Approval event %s: %s %s not found", event.approval_id, self.record_type, event.entity_id)
                return None

            action = (event.action or "").lower()
            if action == ApprovalAction.REQUEST_INFO.value:
                return await self.handle_request_info(record, event)

            engine_action = _EVENT_ACTIONS.get(action)
            if engine_action is None:
                logger.info("Approval event action '%s' has no effect on %s %s", action, self.record_type, record.id)
                return None

            actor = event.action_by
            reason = None
            if engine_action == WorkflowAction.APPROVE.value:
                if self.approve_requires_final_status and event.to_status and event.to_status != ApprovalStatus.APPROVED.value:
                    logger.info(
                        "Approval %s step approved (%s); %s %s stays %s",
                        event.approval_id, event.to_status, self.record_type, record.id, record.status
                    )
                    return None
            elif engine_action == WorkflowAction.REJECT.value:
                reason = event.reason or event.comments or f"{self.label} rejected in approval workflow"
            else:
                # cancellation through the approval chain counts as the owner's
                actor = record.owner_ref
                reason = event.reason or event.comments or f"{self.label} withdrawn in approval workflow"

            stored, _ = await self.apply_transition(record, engine_action, actor, reason, source="approval_event")
            return stored
        except Exception:
            logger.exception(
                "Failed to process approval event %s (%s) for %s %s",
                event.approval_id, event.action, self.record_type, event.entity_id
            )
            return None
