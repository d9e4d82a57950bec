"""
Ops Workflow Hub - Leave Router
"""

import logging
from typing import List, Optional

from fastapi import APIRouter, Depends, Query
from pydantic import BaseModel

from services.leave_service import LeaveWorkflowService
from services.workflow_errors import WorkflowError
from services.workflow_service import TenantContext

from .common import ApproveRequest, ReasonRequest, http_error, page_response, tenant_context

logger = logging.getLogger(__name__)


# ==================== MODELS ====================

class LeaveCreateRequest(BaseModel):
    owner_ref: Optional[str] = None
    leave_type: Optional[str] = None
    start_date: Optional[str] = None
    end_date: Optional[str] = None
    duration: Optional[float] = None
    motivation: Optional[str] = None
    is_half_day: bool = False
    half_day_period: Optional[str] = None
    attachments: List[str] = []
    tags: List[str] = []
    is_paid: bool = True
    is_public_holiday: bool = False
    delegated_to_ref: Optional[str] = None
    comments: Optional[str] = None


class LeaveUpdateRequest(BaseModel):
    leave_type: Optional[str] = None
    start_date: Optional[str] = None
    end_date: Optional[str] = None
    duration: Optional[float] = None
    motivation: Optional[str] = None
    is_half_day: Optional[bool] = None
    half_day_period: Optional[str] = None
    attachments: Optional[List[str]] = None
    tags: Optional[List[str]] = None
    is_paid: Optional[bool] = None
    is_public_holiday: Optional[bool] = None
    delegated_to_ref: Optional[str] = None
    comments: Optional[str] = None


def create_leave_router(service: LeaveWorkflowService) -> APIRouter:
    router = APIRouter(prefix="/leave", tags=["leave"])

    @router.post("")
    async def create_leave(body: LeaveCreateRequest, ctx: TenantContext = Depends(tenant_context)):
        try:
            result = await service.create(body.model_dump(exclude_none=True), ctx)
        except WorkflowError as e:
            raise http_error(e)
        return result.to_dict()

    @router.get("")
    async def list_leave(
        status: Optional[str] = Query(None),
        owner_ref: Optional[str] = Query(None),
        skip: int = Query(0),
        limit: Optional[int] = Query(None),
        ctx: TenantContext = Depends(tenant_context)
    ):
        page = await service.list(ctx, status=status, owner_ref=owner_ref, skip=skip, limit=limit)
        return page_response(page)

    @router.get("/{leave_id}")
    async def get_leave(leave_id: str, ctx: TenantContext = Depends(tenant_context)):
        try:
            record = await service.get(leave_id, ctx)
        except WorkflowError as e:
            raise http_error(e)
        return {"data": record.to_dict()}

    @router.patch("/{leave_id}")
    async def update_leave(leave_id: str, body: LeaveUpdateRequest, ctx: TenantContext = Depends(tenant_context)):
        try:
            result = await service.update(leave_id, body.model_dump(exclude_unset=True), ctx)
        except WorkflowError as e:
            raise http_error(e)
        return result.to_dict()

    @router.post("/{leave_id}/approve")
    async def approve_leave(leave_id: str, body: ApproveRequest, ctx: TenantContext = Depends(tenant_context)):
        try:
            result = await service.approve(leave_id, body.approver_ref or ctx.user_ref, ctx)
        except WorkflowError as e:
            raise http_error(e)
        return result.to_dict()

    @router.post("/{leave_id}/reject")
    async def reject_leave(leave_id: str, body: ReasonRequest, ctx: TenantContext = Depends(tenant_context)):
        try:
            result = await service.reject(leave_id, body.reason, ctx)
        except WorkflowError as e:
            raise http_error(e)
        return result.to_dict()

    @router.post("/{leave_id}/cancel")
    async def cancel_leave(leave_id: str, body: ReasonRequest, ctx: TenantContext = Depends(tenant_context)):
        try:
            result = await service.cancel(leave_id, body.reason, ctx.user_ref, ctx)
        except WorkflowError as e:
            raise http_error(e)
        return result.to_dict()

    @router.delete("/{leave_id}")
    async def delete_leave(leave_id: str, ctx: TenantContext = Depends(tenant_context)):
        try:
            result = await service.remove(leave_id, ctx)
        except WorkflowError as e:
            raise http_error(e)
        return result.to_dict()

    @router.post("/{leave_id}/restore")
    async def restore_leave(leave_id: str, ctx: TenantContext = Depends(tenant_context)):
        try:
            result = await service.restore(leave_id, ctx)
        except WorkflowError as e:
            raise http_error(e)
        return result.to_dict()

    return router
