"""Twilio SMS client for payment notifications.

Talks to the Twilio REST API over httpx; dry-run mode (or missing
credentials) logs instead of sending.
"""

import logging
from dataclasses import dataclass
from uuid import uuid4

import httpx

from backend.core.config import settings

SMS_SEGMENT_LENGTH = 160


@dataclass
class TwilioResponse:
    """Response from Twilio API."""

    success: bool
    message_sid: str | None = None
    error: str | None = None
    status_code: int | None = None
    dry_run: bool = False


class TwilioClient:
    """Minimal Twilio Messages API client."""

    def __init__(self, client: httpx.Client | None = None):
        self.logger = logging.getLogger(__name__)
        self.account_sid = settings.TWILIO_ACCOUNT_SID
        self.auth_token = settings.TWILIO_AUTH_TOKEN
        self.from_number = settings.TWILIO_FROM_NUMBER

        if not (self.account_sid and self.auth_token and self.from_number):
            self.logger.warning("Twilio credentials not set - only dry-run mode available")

        self._client = client or httpx.Client(
            base_url=settings.TWILIO_BASE_URL,
            auth=(self.account_sid or "dry-run", self.auth_token or "dry-run"),
            timeout=settings.TWILIO_TIMEOUT_MS / 1000.0,
        )

    @property
    def configured(self) -> bool:
        return bool(self.account_sid and self.auth_token and self.from_number)

    def send_sms(self, to: str, body: str, agency_id: str, dry_run: bool = False) -> TwilioResponse:
        """Send one SMS.

        Args:
            to: Recipient number in E.164 format
            body: Message text
            agency_id: Agency identifier for logging
            dry_run: If True, simulate sending without actual API call

        Returns:
            TwilioResponse with success status and message SID
        """
        if len(body) > SMS_SEGMENT_LENGTH:
            self.logger.warning(
                "SMS body exceeds one segment", extra={"agency_id": agency_id, "length": len(body)}
            )

        if dry_run or not self.configured:
            self.logger.info(
                "DRY-RUN: Would send SMS via Twilio",
                extra={"agency_id": agency_id, "to": to, "dry_run": True},
            )
            return TwilioResponse(success=True, message_sid=f"dry-run-{uuid4().hex[:16]}", dry_run=True)

        try:
            response = self._client.post(
                f"/Accounts/{self.account_sid}/Messages.json",
                data={"To": to, "From": self.from_number, "Body": body},
            )
        except httpx.RequestError as e:
            error_msg = f"Network error sending SMS: {e}"
            self.logger.error(error_msg, extra={"agency_id": agency_id, "error": str(e)})
            return TwilioResponse(success=False, error=error_msg)

        if response.status_code in (200, 201):
            try:
                sid = response.json().get("sid")
            except ValueError:
                sid = None
            self.logger.info("SMS sent via Twilio", extra={"agency_id": agency_id, "message_sid": sid})
            return TwilioResponse(success=True, message_sid=sid, status_code=response.status_code)

        error_msg = f"Twilio API error: {response.status_code} - {response.text[:200]}"
        self.logger.error(
            "Failed to send SMS via Twilio",
            extra={"agency_id": agency_id, "status_code": response.status_code},
        )
        return TwilioResponse(success=False, error=error_msg, status_code=response.status_code)

    def close(self):
        if hasattr(self, "_client"):
            self._client.close()

    def __enter__(self):
        return self

    def __exit__(self, exc_type, exc_val, exc_tb):
        self.close()
