"""
Ops Workflow Hub - Email Service

Provides email sending functionality with a clean interface that can be
swapped between providers. Only the mock provider ships today; an unknown
provider name is rejected when the service is built.

Current implementation: Mock provider that logs emails and stores them in
MongoDB (email_logs) so claim and leave notifications can be verified.
Subjects and bodies for each workflow email type are rendered here.
"""

import logging
import uuid
from dataclasses import dataclass, asdict
from datetime import datetime, timezone
from enum import Enum
from html import escape
from typing import Any, Dict, List, Optional

logger = logging.getLogger(__name__)


class EmailProvider(str, Enum):
    """Supported email providers."""
    MOCK = "mock"


class EmailType(str, Enum):
    """Workflow email kinds."""
    CLAIM_CREATED = "claim_created"
    CLAIM_CREATED_ADMIN = "claim_created_admin"
    CLAIM_APPROVED = "claim_approved"
    CLAIM_REJECTED = "claim_rejected"
    CLAIM_CANCELLED = "claim_cancelled"
    CLAIM_PAID = "claim_paid"
    CLAIM_STATUS_UPDATE = "claim_status_update"
    LEAVE_APPLICATION_CONFIRMATION = "leave_application_confirmation"
    LEAVE_NEW_APPLICATION_ADMIN = "leave_new_application_admin"
    LEAVE_STATUS_UPDATE_USER = "leave_status_update_user"
    LEAVE_STATUS_UPDATE_ADMIN = "leave_status_update_admin"
    LEAVE_DELETED_NOTIFICATION = "leave_deleted_notification"


# Subject templates, formatted with the template data
EMAIL_SUBJECTS: Dict[str, str] = {
    EmailType.CLAIM_CREATED.value: "Claim {claimRef} submitted",
    EmailType.CLAIM_CREATED_ADMIN.value: "New claim {claimRef} from {name}",
    EmailType.CLAIM_APPROVED.value: "Claim {claimRef} approved",
    EmailType.CLAIM_REJECTED.value: "Claim {claimRef} declined",
    EmailType.CLAIM_CANCELLED.value: "Claim {claimRef} cancelled",
    EmailType.CLAIM_PAID.value: "Claim {claimRef} paid",
    EmailType.CLAIM_STATUS_UPDATE.value: "Claim {claimRef} is now {status}",
    EmailType.LEAVE_APPLICATION_CONFIRMATION.value: "Leave request received ({startDate} to {endDate})",
    EmailType.LEAVE_NEW_APPLICATION_ADMIN.value: "New leave request from {name}",
    EmailType.LEAVE_STATUS_UPDATE_USER.value: "Your leave request is {status}",
    EmailType.LEAVE_STATUS_UPDATE_ADMIN.value: "Leave request for {name} is {status}",
    EmailType.LEAVE_DELETED_NOTIFICATION.value: "Leave request deleted",
}


class _SafeDict(dict):
    def __missing__(self, key):
        return ""


def render_subject(email_type: str, template_data: Dict[str, Any]) -> str:
    """Render the subject line for an email type; missing fields render empty."""
    template = EMAIL_SUBJECTS.get(email_type, "Notification")
    return template.format_map(_SafeDict(template_data or {})).strip()


def render_html_body(email_type: str, template_data: Dict[str, Any]) -> str:
    """Render a minimal HTML body listing the template data."""
    rows = "".join(
        f"<tr><td>{escape(str(key))}</td><td>{escape(str(value))}</td></tr>"
        for key, value in (template_data or {}).items()
        if value is not None and not isinstance(value, (dict, list))
    )
    title = escape(render_subject(email_type, template_data))
    return f"<h2>{title}</h2><table>{rows}</table>"


@dataclass
class EmailMessage:
    """Email message structure."""
    to: List[str]
    subject: str
    html_body: str
    text_body: Optional[str] = None
    attachments: Optional[List[Dict[str, Any]]] = None
    from_address: str = "noreply@ops-hub.local"
    reply_to: Optional[str] = None
    email_type: Optional[str] = None

    def to_dict(self) -> Dict[str, Any]:
        return asdict(self)


@dataclass
class EmailResult:
    """Result of an email send operation."""
    success: bool
    message_id: Optional[str] = None
    provider: str = "mock"
    error: Optional[str] = None
    timestamp: str = None

    def __post_init__(self):
        if self.timestamp is None:
            self.timestamp = datetime.now(timezone.utc).isoformat()

    def to_dict(self) -> Dict[str, Any]:
        return asdict(self)


# =============================================================================
# MOCK EMAIL PROVIDER
# =============================================================================

class MockEmailProvider:
    """
    Mock email provider for development and testing.

    Stores emails in MongoDB collection 'email_logs' for verification.
    Also logs to console for immediate visibility.
    """

    def __init__(self, db=None):
        self.db = db
        self._sent_emails = []  # In-memory backup if no DB

    async def send(self, message: EmailMessage) -> EmailResult:
        """
        Send an email (mock - stores in DB and logs).

        Args:
            message: EmailMessage to send

        Returns:
            EmailResult with success status
        """
        message_id = f"mock_{uuid.uuid4().hex[:12]}"
        timestamp = datetime.now(timezone.utc).isoformat()

        email_record = {
            "message_id": message_id,
            "provider": "mock",
            "email_type": message.email_type,
            "to": message.to,
            "subject": message.subject,
            "from_address": message.from_address,
            "html_body": message.html_body,
            "text_body": message.text_body,
            "attachments": message.attachments,
            "sent_at": timestamp,
            "status": "sent",
        }

        logger.info(
            f"[MOCK EMAIL] To: {', '.join(message.to)} | "
            f"Subject: {message.subject} | ID: {message_id}"
        )

        self._sent_emails.append(email_record)

        if self.db is not None:
            try:
                await self.db.email_logs.insert_one(dict(email_record))
                logger.debug(f"Email logged to MongoDB: {message_id}")
            except Exception as e:
                logger.warning(f"Failed to log email to MongoDB: {e}")

        return EmailResult(
            success=True,
            message_id=message_id,
            provider="mock",
            timestamp=timestamp
        )

    def get_sent_emails(self) -> List[Dict[str, Any]]:
        """Get list of sent emails (in-memory)."""
        return self._sent_emails.copy()

    def clear_sent_emails(self):
        """Clear in-memory sent emails (for testing)."""
        self._sent_emails.clear()


# =============================================================================
# EMAIL SERVICE (Main Interface)
# =============================================================================

class EmailService:
    """
    Main email service class providing a unified interface for sending emails.

    Usage:
        service = EmailService(db=database, from_address=config.email_from_address)
        result = await service.send_templated(
            EmailType.CLAIM_APPROVED, ["user@example.com"], {"claimRef": "CLM-2026-000001"}
        )
    """

    def __init__(self, db=None, provider: EmailProvider = EmailProvider.MOCK, from_address: str = None):
        self.db = db
        try:
            self.provider_type = EmailProvider(provider)
        except ValueError:
            supported = ", ".join(p.value for p in EmailProvider)
            raise ValueError(f"Unknown email provider {provider!r} (supported: {supported})") from None
        self.from_address = from_address or "Ops Workflow Hub <noreply@ops-hub.local>"
        self._provider = None

    def _get_provider(self):
        """Get or create the email provider instance."""
        if self._provider is None:
            self._provider = MockEmailProvider(db=self.db)
        return self._provider

    async def send_email(
        self,
        to: List[str],
        subject: str,
        html_body: str,
        text_body: Optional[str] = None,
        attachments: Optional[List[Dict[str, Any]]] = None,
        reply_to: Optional[str] = None,
        email_type: Optional[str] = None
    ) -> EmailResult:
        """
        Send an email.

        Args:
            to: List of recipient email addresses
            subject: Email subject
            html_body: HTML content of the email
            text_body: Optional plain text version
            attachments: Optional list of attachments
            reply_to: Optional reply-to address
            email_type: Optional EmailType value stored with the log record

        Returns:
            EmailResult with success status and message ID
        """
        message = EmailMessage(
            to=to,
            subject=subject,
            html_body=html_body,
            text_body=text_body,
            attachments=attachments,
            from_address=self.from_address,
            reply_to=reply_to,
            email_type=email_type,
        )

        provider = self._get_provider()
        return await provider.send(message)

    async def send_templated(
        self,
        email_type: str,
        to: List[str],
        template_data: Dict[str, Any]
    ) -> EmailResult:
        """Render and send one of the workflow email types."""
        email_type = email_type.value if isinstance(email_type, EmailType) else email_type
        return await self.send_email(
            to=to,
            subject=render_subject(email_type, template_data),
            html_body=render_html_body(email_type, template_data),
            email_type=email_type,
        )

    async def get_email_logs(
        self,
        limit: int = 50,
        skip: int = 0,
        email_type: Optional[str] = None
    ) -> List[Dict[str, Any]]:
        """
        Get email logs, newest first.

        Args:
            limit: Maximum number of logs to return
            skip: Number of logs to skip (for pagination)
            email_type: Optional filter by EmailType value

        Returns:
            List of email log records
        """
        if self.db is None:
            provider = self._get_provider()
            emails = list(reversed(provider.get_sent_emails()))
            if email_type:
                emails = [e for e in emails if e.get("email_type") == email_type]
            return emails[skip:skip + limit]

        query = {}
        if email_type:
            query["email_type"] = email_type

        cursor = self.db.email_logs.find(
            query,
            {"_id": 0}
        ).sort("sent_at", -1).skip(skip).limit(limit)

        return await cursor.to_list(limit)
