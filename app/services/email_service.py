from typing import Optional
import asyncio
import logging

import resend

from app.core.config import settings
from app.core.exceptions import NotificationError

logger = logging.getLogger(__name__)


class EmailService:
    """Email delivery via Resend.

    Without a RESEND_API_KEY (development) messages are written to the log
    instead of being sent.
    """

    def __init__(self):
        self.api_key = settings.RESEND_API_KEY
        self.from_email = settings.FROM_EMAIL
        if self.api_key:
            resend.api_key = self.api_key

    async def send(self, to_email: str, subject: str, html: str, text: Optional[str] = None) -> None:
        if not self.api_key:
            logger.info(f"Email to {to_email}: {subject}\n{text or html}")
            return

        email_data = {
            "from": self.from_email,
            "to": [to_email],
            "subject": subject,
            "html": html,
        }
        if text:
            email_data["text"] = text

        try:
            # The SDK is blocking
            await asyncio.to_thread(resend.Emails.send, email_data)
        except Exception as e:
            raise NotificationError(f"Failed to send email to {to_email}: {e}")

        logger.info(f"Sent email '{subject}' to {to_email}")
