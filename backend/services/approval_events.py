"""
Ops Workflow Hub - Approval Event Bus

In-process fan-out of "approval.action.performed" callbacks. Claims and
leave both subscribe; each listener filters on the event's entity type.
A listener failure is logged and never stops delivery to the others.
"""

import logging
from typing import Any, Awaitable, Callable, Dict, List, Union

from .approval_gateway import ApprovalActionEvent

logger = logging.getLogger(__name__)

ApprovalListener = Callable[[ApprovalActionEvent], Awaitable[Any]]


class ApprovalEventBus:
    """Publishes approval action events to registered listeners."""

    EVENT_NAME = "approval.action.performed"

    def __init__(self):
        self._listeners: List[ApprovalListener] = []

    def subscribe(self, listener: ApprovalListener) -> None:
        self._listeners.append(listener)

    @property
    def listener_count(self) -> int:
        return len(self._listeners)

    async def publish(self, event: Union[ApprovalActionEvent, Dict[str, Any]]) -> Dict[str, Any]:
        """
        Deliver an event to every listener.

        Returns:
            Delivery summary: listeners called and how many changed a record
        """
        if not isinstance(event, ApprovalActionEvent):
            event = ApprovalActionEvent.from_dict(event)

        logger.info(
            "%s: approval=%s, action=%s, entity=%s/%s",
            self.EVENT_NAME, event.approval_id, event.action, event.entity_type, event.entity_id
        )

        applied = 0
        failed = 0
        for listener in self._listeners:
            try:
                result = await listener(event)
            except Exception:
                failed += 1
                logger.exception("Approval listener %r failed for approval %s", listener, event.approval_id)
                continue
            if result is not None:
                applied += 1

        return {
            "event": self.EVENT_NAME,
            "approval_id": event.approval_id,
            "listeners": len(self._listeners),
            "applied": applied,
            "failed": failed,
        }
