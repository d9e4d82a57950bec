"""
Ops Workflow Hub - Notification Port

The workflow services never talk to email/SMS/push senders directly. They
call a NotificationDispatcher, which forwards to a NotificationPort on a
background task: delivery is best-effort and never rolls back the status
change that triggered it.

Components:
- NotificationPort: abstract interface, one method per notification kind
- EmailNotificationPort: EmailService for email, MongoDB for in-app/push
- RecordingNotificationPort: keeps every call in memory (tests, dry runs)
- NotificationDispatcher: fire-and-forget wrapper with failure logging
"""

import asyncio
import logging
from collections import deque
from abc import ABC, abstractmethod
from datetime import datetime, timezone
from enum import Enum
from typing import Any, Deque, Dict, List, Optional, Sequence, Set

from .email_service import EmailService
from .side_effects import SideEffectResult, run_best_effort
from .workflow_errors import CollaboratorFailure

logger = logging.getLogger(__name__)


class NotificationEvent(str, Enum):
    """Push notification events."""
    CLAIM_CREATED = "claim_created"
    CLAIM_CREATED_ADMIN = "claim_created_admin"
    CLAIM_APPROVED = "claim_approved"
    CLAIM_REJECTED = "claim_rejected"
    CLAIM_STATUS_CHANGED = "claim_status_changed"
    LEAVE_CREATED = "leave_created"
    LEAVE_APPROVED = "leave_approved"
    LEAVE_REJECTED = "leave_rejected"
    LEAVE_CANCELLED = "leave_cancelled"
    LEAVE_STATUS_CHANGED = "leave_status_changed"


class NotificationPriority(str, Enum):
    LOW = "low"
    NORMAL = "normal"
    HIGH = "high"


class NotificationPort(ABC):
    """Abstract notification sender."""

    @abstractmethod
    async def send_email(self, email_type: str, recipients: List[str], template_data: Dict[str, Any]) -> Any:
        """Send a templated email."""
        pass

    @abstractmethod
    async def send_notification(
        self,
        notification: Dict[str, Any],
        recipient_roles: Sequence[str],
        organisation_id: Optional[str] = None,
        branch_id: Optional[str] = None
    ) -> Any:
        """Post an in-app notification to every user holding one of the roles."""
        pass

    @abstractmethod
    async def send_push(
        self,
        event: str,
        recipient_ids: List[str],
        template_data: Dict[str, Any],
        priority: str = NotificationPriority.NORMAL.value
    ) -> Any:
        """Send a templated push notification to specific users."""
        pass


# =============================================================================
# EMAIL-BACKED PORT
# =============================================================================

class EmailNotificationPort(NotificationPort):
    """
    Sends emails through EmailService and stores in-app and push
    notifications in MongoDB ('notifications', 'push_notifications').
    Without a database the notifications are kept in memory.
    """

    def __init__(self, email_service: EmailService, db=None):
        self.email_service = email_service
        self.db = db
        self.notifications: List[Dict[str, Any]] = []
        self.pushes: List[Dict[str, Any]] = []

    async def send_email(self, email_type: str, recipients: List[str], template_data: Dict[str, Any]) -> Any:
        result = await self.email_service.send_templated(email_type, recipients, template_data)
        if not result.success:
            raise CollaboratorFailure("send.email", result.error or "Email provider rejected the message")
        return result.message_id

    async def send_notification(
        self,
        notification: Dict[str, Any],
        recipient_roles: Sequence[str],
        organisation_id: Optional[str] = None,
        branch_id: Optional[str] = None
    ) -> Any:
        doc = {
            **notification,
            "recipient_roles": list(recipient_roles),
            "organisation_id": organisation_id,
            "branch_id": branch_id,
            "created_at": datetime.now(timezone.utc).isoformat(),
            "read": False,
        }
        if self.db is not None:
            await self.db.notifications.insert_one(doc)
        else:
            self.notifications.append(doc)
        return doc

    async def send_push(
        self,
        event: str,
        recipient_ids: List[str],
        template_data: Dict[str, Any],
        priority: str = NotificationPriority.NORMAL.value
    ) -> Any:
        doc = {
            "event": event,
            "recipient_ids": list(recipient_ids),
            "data": template_data,
            "priority": priority,
            "created_at": datetime.now(timezone.utc).isoformat(),
        }
        if self.db is not None:
            await self.db.push_notifications.insert_one(doc)
        else:
            self.pushes.append(doc)
        return doc


# =============================================================================
# RECORDING PORT
# =============================================================================

class RecordingNotificationPort(NotificationPort):
    """Records every call. Kinds listed in fail_on raise CollaboratorFailure."""

    def __init__(self, fail_on: Sequence[str] = ()):
        self.emails: List[Dict[str, Any]] = []
        self.notifications: List[Dict[str, Any]] = []
        self.pushes: List[Dict[str, Any]] = []
        self.fail_on = set(fail_on)

    async def send_email(self, email_type: str, recipients: List[str], template_data: Dict[str, Any]) -> Any:
        if "email" in self.fail_on:
            raise CollaboratorFailure("send.email", "Email delivery failed")
        self.emails.append({"email_type": email_type, "recipients": list(recipients), "data": template_data})

    async def send_notification(
        self,
        notification: Dict[str, Any],
        recipient_roles: Sequence[str],
        organisation_id: Optional[str] = None,
        branch_id: Optional[str] = None
    ) -> Any:
        if "notification" in self.fail_on:
            raise CollaboratorFailure("send.notification", "Notification delivery failed")
        self.notifications.append({
            "notification": notification,
            "recipient_roles": list(recipient_roles),
            "organisation_id": organisation_id,
            "branch_id": branch_id,
        })

    async def send_push(
        self,
        event: str,
        recipient_ids: List[str],
        template_data: Dict[str, Any],
        priority: str = NotificationPriority.NORMAL.value
    ) -> Any:
        if "push" in self.fail_on:
            raise CollaboratorFailure("send.push", "Push delivery failed")
        self.pushes.append({
            "event": event, "recipient_ids": list(recipient_ids), "data": template_data, "priority": priority,
        })

    def emails_of_type(self, email_type) -> List[Dict[str, Any]]:
        email_type = email_type.value if isinstance(email_type, Enum) else email_type
        return [e for e in self.emails if e["email_type"] == email_type]

    def pushes_of_event(self, event) -> List[Dict[str, Any]]:
        event = event.value if isinstance(event, Enum) else event
        return [p for p in self.pushes if p["event"] == event]


# =============================================================================
# DISPATCHER
# =============================================================================

class NotificationDispatcher:
    """
    Fire-and-forget front for a NotificationPort.

    Each send runs on its own asyncio task; callers never await delivery.
    Failed sends are logged; the most recent max_failures of them are kept
    in `failures`. drain() waits for all outstanding sends.
    """

    def __init__(self, port: NotificationPort, max_failures: int = 200):
        self.port = port
        self.failures: Deque[SideEffectResult] = deque(maxlen=max_failures)
        self._pending: Set[asyncio.Task] = set()

    def email(self, email_type, recipients: List[str], template_data: Dict[str, Any]) -> Optional[asyncio.Task]:
        recipients = [r for r in recipients if r]
        if not recipients:
            return None
        email_type = email_type.value if isinstance(email_type, Enum) else email_type
        return self.spawn("send.email", self.port.send_email(email_type, recipients, template_data))

    def notification(
        self,
        notification: Dict[str, Any],
        recipient_roles: Sequence[str],
        organisation_id: Optional[str] = None,
        branch_id: Optional[str] = None
    ) -> Optional[asyncio.Task]:
        return self.spawn(
            "send.notification",
            self.port.send_notification(notification, recipient_roles, organisation_id, branch_id),
        )

    def push(
        self,
        event,
        recipient_ids: List[str],
        template_data: Dict[str, Any],
        priority=NotificationPriority.NORMAL
    ) -> Optional[asyncio.Task]:
        recipient_ids = [r for r in recipient_ids if r]
        if not recipient_ids:
            return None
        event = event.value if isinstance(event, Enum) else event
        priority = priority.value if isinstance(priority, Enum) else priority
        return self.spawn("send.push", self.port.send_push(event, recipient_ids, template_data, priority))

    def spawn(self, step: str, coro) -> asyncio.Task:
        """Run a send coroutine on a background task."""
        task = asyncio.get_running_loop().create_task(run_best_effort(step, coro))
        self._pending.add(task)
        task.add_done_callback(self._on_done)
        return task

    def _on_done(self, task: asyncio.Task) -> None:
        self._pending.discard(task)
        if task.cancelled():
            return
        result = task.result()
        if not result.success:
            self.failures.append(result)

    @property
    def pending_count(self) -> int:
        return len(self._pending)

    async def drain(self) -> None:
        """Wait until every spawned send has finished."""
        while self._pending:
            await asyncio.gather(*list(self._pending), return_exceptions=True)
