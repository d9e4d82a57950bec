"""
Ops Workflow Hub - Approval Events Webhook

The approval subsystem posts "approval.action.performed" callbacks here.
The request always succeeds once the payload parses; listener failures are
reported in the summary, not as HTTP errors.
"""

from typing import Optional, Union

from fastapi import APIRouter, HTTPException
from pydantic import BaseModel, ConfigDict

from services.approval_events import ApprovalEventBus


class ApprovalEventRequest(BaseModel):
    model_config = ConfigDict(populate_by_name=True, extra="allow")

    approvalId: Union[str, int]
    action: str
    entityType: Optional[str] = None
    entityId: Optional[Union[str, int]] = None
    actionBy: Optional[Union[str, int]] = None
    comments: Optional[str] = None
    reason: Optional[str] = None
    toStatus: Optional[str] = None
    type: Optional[str] = None


def create_approval_events_router(bus: ApprovalEventBus) -> APIRouter:
    router = APIRouter(prefix="/approval-events", tags=["approvals"])

    @router.post("")
    async def receive_approval_event(body: ApprovalEventRequest):
        if not body.action:
            raise HTTPException(status_code=400, detail="action is required")
        return await bus.publish(body.model_dump())

    return router
