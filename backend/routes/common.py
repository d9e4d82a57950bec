"""
Ops Workflow Hub - Router Helpers

Tenant headers, shared request bodies and workflow error mapping.
"""

from typing import Optional

from fastapi import Header, HTTPException
from pydantic import BaseModel

from services.workflow_errors import (
    ConcurrentUpdateError,
    DuplicateRecordError,
    InvalidStateTransition,
    NotFoundError,
    ValidationError,
    WorkflowError,
)
from services.workflow_service import TenantContext


def tenant_context(
    x_organisation_id: Optional[str] = Header(None),
    x_branch_id: Optional[str] = Header(None),
    x_user_id: Optional[str] = Header(None),
) -> TenantContext:
    return TenantContext(
        organisation_id=x_organisation_id,
        branch_id=x_branch_id,
        user_ref=x_user_id,
    )


_STATUS_CODES = (
    (ValidationError, 400),
    (NotFoundError, 404),
    (InvalidStateTransition, 409),
    (ConcurrentUpdateError, 409),
    (DuplicateRecordError, 409),
)


def http_error(error: WorkflowError) -> HTTPException:
    status_code = 500
    for error_cls, code in _STATUS_CODES:
        if isinstance(error, error_cls):
            status_code = code
            break
    return HTTPException(status_code=status_code, detail=error.to_dict())


def page_response(page: dict) -> dict:
    return {
        "data": [r.to_dict() for r in page["data"]],
        "total": page["total"],
        "skip": page["skip"],
        "limit": page["limit"],
    }


# ==================== SHARED MODELS ====================

class ApproveRequest(BaseModel):
    approver_ref: Optional[str] = None


class ReasonRequest(BaseModel):
    reason: Optional[str] = None
