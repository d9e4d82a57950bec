"""
Ops Workflow Hub - Workflow Configuration

All tunables for the claims and leave workflows live on one explicitly
constructed WorkflowConfig object. server.py builds it from the environment
at startup and hands it to every service; tests build it directly.
"""

import os
from dataclasses import dataclass, field
from typing import Dict, Optional, Tuple

from .email_service import EmailProvider


def _env_bool(name: str, default: str) -> bool:
    return os.environ.get(name, default).lower() in ("true", "1", "yes")


def _env_email_provider() -> str:
    provider = os.environ.get("EMAIL_PROVIDER", "mock").strip().lower()
    supported = [p.value for p in EmailProvider]
    if provider not in supported:
        raise ValueError(f"EMAIL_PROVIDER must be one of {supported}, got {provider!r}")
    return provider


DEFAULT_MESSAGES: Dict[str, str] = {
    "created": "{label} created successfully",
    "auto_rejected": "{label} created but automatically rejected due to conflicting dates",
    "updated": "{label} updated successfully",
    "approved": "{label} approved successfully",
    "rejected": "{label} rejected successfully",
    "cancelled": "{label} cancelled successfully",
    "paid": "{label} marked as paid",
    "deleted": "{label} deleted successfully",
    "restored": "{label} restored successfully",
    "share_token": "{label} share link regenerated",
    "info_requested": "Additional information requested: {details}",
}


@dataclass
class WorkflowConfig:
    """Runtime configuration for the workflow services."""
    # Database
    mongo_url: str = "mongodb://localhost:27017"
    db_name: str = "ops_workflow_hub"

    # Approval collaborator (in-process registry when approvals_api_url is None)
    approvals_api_url: Optional[str] = None
    approvals_api_token: Optional[str] = None
    approvals_timeout_seconds: float = 30.0

    # Claims
    claim_reward_points: int = 10
    claim_approval_deadline_days: int = 7
    claim_share_token_days: int = 30
    claim_signature_threshold: int = 10000
    default_currency: str = "ZAR"

    # Notifications
    app_url: str = "http://localhost:3000"
    admin_roles: Tuple[str, ...] = ("admin", "manager", "hr", "owner")
    email_provider: str = "mock"
    email_from_address: str = "Ops Workflow Hub <noreply@ops-hub.local>"

    # Listing
    default_page_size: int = 50
    max_page_size: int = 500

    # Optimistic concurrency on record writes
    record_version_guard: bool = True

    messages: Dict[str, str] = field(default_factory=lambda: dict(DEFAULT_MESSAGES))

    @classmethod
    def from_env(cls) -> "WorkflowConfig":
        """Build a config from environment variables (call load_dotenv() first)."""
        admin_roles = os.environ.get("ADMIN_ROLES", "admin,manager,hr,owner")
        return cls(
            mongo_url=os.environ.get("MONGO_URL", "mongodb://localhost:27017"),
            db_name=os.environ.get("DB_NAME", "ops_workflow_hub"),
            approvals_api_url=os.environ.get("APPROVALS_API_URL") or None,
            approvals_api_token=os.environ.get("APPROVALS_API_TOKEN") or None,
            approvals_timeout_seconds=float(os.environ.get("APPROVALS_TIMEOUT_SECONDS", "30")),
            claim_reward_points=int(os.environ.get("CLAIM_REWARD_POINTS", "10")),
            claim_approval_deadline_days=int(os.environ.get("CLAIM_APPROVAL_DEADLINE_DAYS", "7")),
            claim_share_token_days=int(os.environ.get("CLAIM_SHARE_TOKEN_DAYS", "30")),
            claim_signature_threshold=int(os.environ.get("CLAIM_SIGNATURE_THRESHOLD", "10000")),
            default_currency=os.environ.get("DEFAULT_CURRENCY", "ZAR").upper(),
            app_url=os.environ.get("APP_URL", "http://localhost:3000").rstrip("/"),
            admin_roles=tuple(r.strip().lower() for r in admin_roles.split(",") if r.strip()),
            email_provider=_env_email_provider(),
            email_from_address=os.environ.get(
                "EMAIL_FROM_ADDRESS", "Ops Workflow Hub <noreply@ops-hub.local>"
            ),
            default_page_size=int(os.environ.get("DEFAULT_PAGE_SIZE", "50")),
            max_page_size=int(os.environ.get("MAX_PAGE_SIZE", "500")),
            record_version_guard=_env_bool("RECORD_VERSION_GUARD", "true"),
        )

    def message(self, key: str, label: str = "", **values) -> str:
        """Render a user-facing operation message."""
        template = self.messages.get(key) or DEFAULT_MESSAGES.get(key, "{label} processed")
        return template.format(label=label, **values)

    def clamp_page_size(self, limit: Optional[int]) -> int:
        if not limit or limit <= 0:
            return self.default_page_size
        return min(limit, self.max_page_size)
