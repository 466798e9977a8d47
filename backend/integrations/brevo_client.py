"""Brevo (Sendinblue) transactional email client for payment notifications.

This module provides a client for sending transactional emails via Brevo API.
Supports dry-run mode for testing and development.
"""

import hashlib
import logging
from dataclasses import dataclass
from datetime import UTC, datetime

import httpx

from backend.core.config import settings


@dataclass
class BrevoResponse:
    """Response from Brevo API."""

    success: bool
    message_id: str | None = None
    error: str | None = None
    status_code: int | None = None
    dry_run: bool = False


def generate_message_id(agency_id: str, reference: str | None, ts: datetime) -> str:
    """Deterministic RFC 5322 style Message-ID for outbound tracking."""
    digest = hashlib.sha256(f"{agency_id}:{reference or ''}:{ts.isoformat()}".encode()).hexdigest()[:24]
    domain = settings.BREVO_SENDER_EMAIL.partition("@")[2] or "localhost"
    return f"<{digest}@{domain}>"


class BrevoClient:
    """Brevo API client for transactional emails."""

    def __init__(self, client: httpx.Client | None = None):
        """Initialize Brevo client from settings.

        Args:
            client: Optional preconfigured ``httpx.Client`` (tests pass a
                ``MockTransport``-backed client)
        """
        self.logger = logging.getLogger(__name__)

        self.api_key = settings.BREVO_API_KEY
        self.sender_email = settings.BREVO_SENDER_EMAIL
        self.sender_name = settings.BREVO_SENDER_NAME
        self.base_url = settings.BREVO_BASE_URL

        if not self.api_key:
            self.logger.warning("BREVO_API_KEY not set - only dry-run mode available")

        self._client = client or httpx.Client(
            base_url=self.base_url,
            headers={
                "api-key": self.api_key or "dry-run",
                "Content-Type": "application/json",
                "Accept": "application/json",
            },
            timeout=settings.BREVO_TIMEOUT_MS / 1000.0,
        )

    def send_transactional(
        self,
        to: str,
        subject: str,
        text: str,
        agency_id: str,
        cc: list[str] | None = None,
        to_name: str | None = None,
        reference: str | None = None,
        dry_run: bool = False,
    ) -> BrevoResponse:
        """Send transactional email via Brevo API.

        Args:
            to: Recipient email address
            subject: Email subject
            text: Plain-text content
            agency_id: Agency identifier for tracking headers
            cc: Optional carbon-copy addresses
            to_name: Optional display name of the recipient
            reference: Optional installment/digest id for the Message-ID
            dry_run: If True, simulate sending without actual API call

        Returns:
            BrevoResponse with success status and details
        """
        if dry_run or not self.api_key:
            return self._handle_dry_run(to, subject, agency_id, reference)

        message_id = generate_message_id(agency_id, reference, datetime.now(UTC))
        recipient = {"email": to}
        if to_name:
            recipient["name"] = to_name
        email_data = {
            "sender": {"name": self.sender_name, "email": self.sender_email},
            "to": [recipient],
            "subject": subject,
            "textContent": text,
            "headers": {
                "X-Agency-ID": agency_id,
                "X-Message-ID": message_id,
            },
        }
        if cc:
            email_data["cc"] = [{"email": addr} for addr in cc]

        try:
            response = self._client.post("/smtp/email", json=email_data)
        except httpx.RequestError as e:
            error_msg = f"Network error sending email: {e}"
            self.logger.error(error_msg, extra={"agency_id": agency_id, "error": str(e)})
            return BrevoResponse(success=False, error=error_msg)

        if response.status_code in (200, 201, 202):
            try:
                remote_id = response.json().get("messageId")
            except ValueError:
                remote_id = None
            self.logger.info(
                "Email sent successfully via Brevo",
                extra={
                    "agency_id": agency_id,
                    "message_id": remote_id or message_id,
                    "subject": subject[:50] + "..." if len(subject) > 50 else subject,
                },
            )
            return BrevoResponse(success=True, message_id=remote_id or message_id, status_code=response.status_code)

        error_msg = f"Brevo API error: {response.status_code} - {response.text[:200]}"
        self.logger.error(
            "Failed to send email via Brevo",
            extra={"agency_id": agency_id, "status_code": response.status_code},
        )
        return BrevoResponse(success=False, error=error_msg, status_code=response.status_code)

    def _handle_dry_run(
        self, to: str, subject: str, agency_id: str, reference: str | None
    ) -> BrevoResponse:
        """Simulate sending without an API call."""
        self.logger.info(
            "DRY-RUN: Would send email via Brevo",
            extra={
                "agency_id": agency_id,
                "to": to,
                "subject": subject[:50] + "..." if len(subject) > 50 else subject,
                "dry_run": True,
            },
        )
        message_id = generate_message_id(agency_id, reference, datetime.now(UTC))
        return BrevoResponse(success=True, message_id=message_id, dry_run=True)

    def close(self):
        """Close HTTP client connection."""
        if hasattr(self, "_client"):
            self._client.close()

    def __enter__(self):
        return self

    def __exit__(self, exc_type, exc_val, exc_tb):
        self.close()
