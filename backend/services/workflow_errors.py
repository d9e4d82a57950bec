"""
Ops Workflow Hub - Workflow Errors

Exception taxonomy shared by the claims and leave workflows.

- ValidationError, NotFoundError, InvalidStateTransition,
  ConcurrentUpdateError and DuplicateRecordError propagate to the caller.
- CollaboratorFailure is raised by adapters (approvals, rewards,
  notifications) and is always absorbed at the orchestrator boundary.
"""

from typing import Dict, Optional


class WorkflowError(Exception):
    """Base exception for workflow errors."""
    def __init__(self, message: str, details: Dict = None):
        self.message = message
        self.details = details or {}
        super().__init__(self.message)

    def to_dict(self) -> Dict:
        return {
            "error": type(self).__name__,
            "message": self.message,
            "details": self.details,
        }


class ValidationError(WorkflowError):
    """Raised when required input is missing or malformed."""
    def __init__(self, message: str, field: Optional[str] = None, details: Dict = None):
        self.field = field
        details = dict(details or {})
        if field:
            details.setdefault("field", field)
        super().__init__(message, details)


class NotFoundError(WorkflowError):
    """
    Raised when a record or user does not exist.
    Records outside the caller's tenant scope raise the same error.
    """
    pass


class InvalidStateTransition(WorkflowError):
    """Raised when an action is not allowed from the record's current status."""
    def __init__(self, current_status: str, attempted: str, message: str = None):
        self.current_status = current_status
        self.attempted = attempted
        super().__init__(
            message or f"Cannot {attempted} a record that is {current_status}",
            {"current_status": current_status, "attempted": attempted},
        )


class ConcurrentUpdateError(WorkflowError):
    """Raised when a record changed between read and write."""
    def __init__(self, record_id: str, expected_version: int):
        self.record_id = record_id
        self.expected_version = expected_version
        super().__init__(
            f"Record {record_id} was modified concurrently (expected version {expected_version})",
            {"record_id": record_id, "expected_version": expected_version},
        )


class DuplicateRecordError(WorkflowError):
    """Raised when a write collides with a unique field (for example claim_ref)."""
    def __init__(self, field: str, value: str = None):
        self.field = field
        self.value = value
        super().__init__(
            f"A record with {field} {value} already exists",
            {"field": field, "value": value},
        )


class CollaboratorFailure(WorkflowError):

    """Raised by an external collaborator adapter (approvals, rewards, notifications)."""
    def __init__(self, step: str, message: str, status_code: int = None):
        self.step = step
        self.status_code = status_code
        super().__init__(message, {"step": step, "status_code": status_code})
