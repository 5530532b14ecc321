"""
SMS Module
==========
Sends booking confirmations through the Twilio Messages API.
"""

from __future__ import annotations

import logging
import os
from typing import Optional

from dotenv import load_dotenv
from pydantic import BaseModel
from twilio.rest import Client

from medibook.errors import NotConfiguredError, ProviderError

load_dotenv()
logger = logging.getLogger(__name__)


class SmsReceipt(BaseModel):
    success: bool
    sid: str


class SmsSender:
    """Twilio-backed SMS sender.

    Attributes:
        account_sid: Twilio account SID.
        from_number: Twilio phone number messages are sent from.
    """

    def __init__(
        self,
        account_sid: Optional[str] = None,
        auth_token: Optional[str] = None,
        from_number: Optional[str] = None,
    ) -> None:
        self.account_sid: str = account_sid or os.getenv("TWILIO_ACCOUNT_SID", "")
        self._auth_token: str = auth_token or os.getenv("TWILIO_AUTH_TOKEN", "")
        self.from_number: str = from_number or os.getenv("TWILIO_PHONE_NUMBER", "")

        if not self.is_configured:
            logger.warning("Twilio credentials not configured. SMS confirmations are disabled.")

    @property
    def is_configured(self) -> bool:
        return all(
            v and v != "your-key"
            for v in (self.account_sid, self._auth_token, self.from_number)
        )

    def send_sms(self, to: str, body: str) -> SmsReceipt:
        """Send one text message.

        Raises:
            NotConfiguredError: Twilio credentials are missing.
            ProviderError: Twilio rejected the message; details are logged only.
        """
        if not self.is_configured:
            logger.error("Twilio environment variables are not set.")
            raise NotConfiguredError("SMS service is not configured.")

        client = Client(self.account_sid, self._auth_token)
        try:
            message = client.messages.create(body=body, from_=self.from_number, to=to)
        except Exception as exc:
            logger.error("Failed to send SMS to %s: %s", to, exc)
            raise ProviderError("Could not send SMS.") from exc

        logger.info("SMS sent successfully to %s. Message SID: %s", to, message.sid)
        return SmsReceipt(success=True, sid=message.sid)
