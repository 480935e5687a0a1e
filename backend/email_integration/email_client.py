"""
Email Client - Resend Provider Implementation

Sends transactional email (password resets) via the Resend API.

Resend API Reference:
- Endpoint: POST https://api.resend.com/emails
- Auth: Bearer token in Authorization header
- Response: { id: "message_id" }
"""

import logging
import uuid
from typing import Optional, Dict, Any
from dataclasses import dataclass
from enum import Enum

import resend

logger = logging.getLogger(__name__)


class EmailStatus(str, Enum):
    """Email delivery status"""
    SENT = "sent"
    FAILED = "failed"


@dataclass
class EmailResult:
    """Result of an email operation"""
    success: bool
    message_id: Optional[str] = None
    provider_message_id: Optional[str] = None
    error: Optional[str] = None
    status: EmailStatus = EmailStatus.FAILED


class EmailClient:
    """
    Email Client - Resend Provider Implementation.

    Usage:
        client = EmailClient(api_key, from_address)
        result = client.send(
            to="user@example.com",
            subject="Hello",
            text="Welcome!",
            html="<p>Welcome!</p>",
        )

    ``send`` never raises; failures come back as an unsuccessful EmailResult.
    """

    def __init__(self, api_key: Optional[str] = None, from_address: Optional[str] = None):
        self.api_key = api_key or ""
        self.from_address = from_address or ""

        if self.api_key:
            resend.api_key = self.api_key
            logger.info("Email client initialized (provider: resend)")
        else:
            logger.warning("Email client not initialized - EMAIL_API_KEY not set")

    @classmethod
    def from_settings(cls, settings) -> "EmailClient":
        return cls(api_key=settings.EMAIL_API_KEY, from_address=settings.EMAIL_FROM_ADDRESS)

    def is_ready(self) -> bool:
        """Check if client is ready to send emails."""
        return bool(self.api_key and self.from_address)

    def send(
        self,
        to: str,
        subject: str,
        text: str,
        html: Optional[str] = None,
    ) -> EmailResult:
        """
        Send an email via Resend.

        Returns:
            EmailResult with send status
        """
        if not self.is_ready():
            return EmailResult(
                success=False,
                error="Email client not configured. Check EMAIL_API_KEY and EMAIL_FROM_ADDRESS.",
            )

        internal_id = str(uuid.uuid4())
        params: Dict[str, Any] = {
            "from": self.from_address,
            "to": [to],
            "subject": subject,
            "text": text,
        }
        if html:
            params["html"] = html

        try:
            logger.info(f"Sending email {internal_id} via Resend")
            response = resend.Emails.send(params)
        except resend.exceptions.ResendError as e:
            logger.error(f"Resend API error: {e}")
            return EmailResult(success=False, message_id=internal_id, error=str(e))

        provider_msg_id = None
        if isinstance(response, dict):
            provider_msg_id = response.get("id")
        elif hasattr(response, "id"):
            provider_msg_id = response.id

        logger.info(f"Email sent successfully: {provider_msg_id}")
        return EmailResult(
            success=True,
            message_id=internal_id,
            provider_message_id=provider_msg_id,
            status=EmailStatus.SENT,
        )
