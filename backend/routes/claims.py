"""
Ops Workflow Hub - Claims Router

Expense claim endpoints. Tenant scope comes from the X-Organisation-Id,
X-Branch-Id and X-User-Id headers.
"""

import logging
from decimal import Decimal
from typing import Optional

from fastapi import APIRouter, Depends, Query
from pydantic import BaseModel

from services.claims_service import ClaimsWorkflowService
from services.workflow_errors import WorkflowError
from services.workflow_service import TenantContext

from .common import ApproveRequest, ReasonRequest, http_error, page_response, tenant_context

logger = logging.getLogger(__name__)


# ==================== MODELS ====================

class ClaimCreateRequest(BaseModel):
    owner_ref: Optional[str] = None
    amount: Optional[Decimal] = None
    category: Optional[str] = None
    currency: Optional[str] = None
    document_url: Optional[str] = None
    comments: Optional[str] = None


class ClaimUpdateRequest(BaseModel):
    amount: Optional[Decimal] = None
    category: Optional[str] = None
    currency: Optional[str] = None
    document_url: Optional[str] = None
    comments: Optional[str] = None


def create_claims_router(service: ClaimsWorkflowService) -> APIRouter:
    router = APIRouter(prefix="/claims", tags=["claims"])

    @router.post("")
    async def create_claim(body: ClaimCreateRequest, ctx: TenantContext = Depends(tenant_context)):
        try:
            result = await service.create(body.model_dump(exclude_none=True), ctx)
        except WorkflowError as e:
            raise http_error(e)
        return result.to_dict()

    @router.get("")
    async def list_claims(
        status: Optional[str] = Query(None),
        owner_ref: Optional[str] = Query(None),
        skip: int = Query(0),
        limit: Optional[int] = Query(None),
        ctx: TenantContext = Depends(tenant_context)
    ):
        page = await service.list(ctx, status=status, owner_ref=owner_ref, skip=skip, limit=limit)
        return page_response(page)

    @router.get("/share/{token}")
    async def get_shared_claim(token: str):
        """Public view of a claim through its share link."""
        try:
            record = await service.find_by_share_token(token)
        except WorkflowError as e:
            raise http_error(e)
        return {"data": record.to_dict()}

    @router.get("/{claim_id}")
    async def get_claim(claim_id: str, ctx: TenantContext = Depends(tenant_context)):
        try:
            record = await service.get(claim_id, ctx)
        except WorkflowError as e:
            raise http_error(e)
        return {"data": record.to_dict()}

    @router.patch("/{claim_id}")
    async def update_claim(claim_id: str, body: ClaimUpdateRequest, ctx: TenantContext = Depends(tenant_context)):
        try:
            result = await service.update(claim_id, body.model_dump(exclude_unset=True), ctx)
        except WorkflowError as e:
            raise http_error(e)
        return result.to_dict()

    @router.post("/{claim_id}/approve")
    async def approve_claim(claim_id: str, body: ApproveRequest, ctx: TenantContext = Depends(tenant_context)):
        try:
            result = await service.approve(claim_id, body.approver_ref or ctx.user_ref, ctx)
        except WorkflowError as e:
            raise http_error(e)
        return result.to_dict()

    @router.post("/{claim_id}/reject")
    async def reject_claim(claim_id: str, body: ReasonRequest, ctx: TenantContext = Depends(tenant_context)):
        try:
            result = await service.reject(claim_id, body.reason, ctx)
        except WorkflowError as e:
            raise http_error(e)
        return result.to_dict()

    @router.post("/{claim_id}/cancel")
    async def cancel_claim(claim_id: str, body: ReasonRequest, ctx: TenantContext = Depends(tenant_context)):
        try:
            result = await service.cancel(claim_id, body.reason, ctx.user_ref, ctx)
        except WorkflowError as e:
            raise http_error(e)
        return result.to_dict()

    @router.post("/{claim_id}/pay")
    async def pay_claim(claim_id: str, ctx: TenantContext = Depends(tenant_context)):
        try:
            result = await service.mark_paid(claim_id, ctx.user_ref, ctx)
        except WorkflowError as e:
            raise http_error(e)
        return result.to_dict()

    @router.post("/{claim_id}/share-token")
    async def regenerate_share_token(claim_id: str, ctx: TenantContext = Depends(tenant_context)):
        try:
            result = await service.regenerate_share_token(claim_id, ctx)
        except WorkflowError as e:
            raise http_error(e)
        return result.to_dict()

    @router.delete("/{claim_id}")
    async def delete_claim(claim_id: str, ctx: TenantContext = Depends(tenant_context)):
        try:
            result = await service.remove(claim_id, ctx)
        except WorkflowError as e:
            raise http_error(e)
        return result.to_dict()

    @router.post("/{claim_id}/restore")
    async def restore_claim(claim_id: str, ctx: TenantContext = Depends(tenant_context)):
        try:
            result = await service.restore(claim_id, ctx)
        except WorkflowError as e:
            raise http_error(e)
        return result.to_dict()

    return router
