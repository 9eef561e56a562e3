"""Twilio WhatsApp client for messaging and media download."""
from typing import Optional

import httpx
from twilio.request_validator import RequestValidator
from twilio.rest import Client

from src.config import settings
from src.services.retry import retry_on_api_error, retry_on_network_error
from src.utils.logger import log


def whatsapp_address(number: str) -> str:
    """Ensure a number is in Twilio's WhatsApp address format."""
    return number if number.startswith("whatsapp:") else f"whatsapp:{number}"


class TwilioClient:
    """Client for sending WhatsApp messages and fetching inbound media."""

    def __init__(self):
        self._client: Optional[Client] = None
        self.whatsapp_number = settings.twilio_whatsapp_number
        self.validator = RequestValidator(settings.twilio_auth_token)

    @property
    def client(self) -> Client:
        if self._client is None:
            self._client = Client(settings.twilio_account_sid, settings.twilio_auth_token)
            log.info("Twilio client initialized")
        return self._client

    @retry_on_network_error(max_attempts=3)
    def _create_message(self, to: str, body: str, from_number: Optional[str] = None):
        return self.client.messages.create(
            from_=whatsapp_address(from_number or self.whatsapp_number),
            to=whatsapp_address(to),
            body=body,
        )

    def send_message(self, to: str, body: str, from_number: Optional[str] = None) -> Optional[str]:
        """Send a WhatsApp message, retrying on network errors.

        Returns:
            Message SID if sent, None otherwise
        """
        try:
            message = self._create_message(to, body, from_number)
            log.info(f"📤 Message sent to {to}, SID: {message.sid}")
            return message.sid
        except Exception as e:
            log.error(f"❌ Error sending message to {to}: {e}")
            return None

    @retry_on_api_error(max_attempts=2)
    async def download_media(self, url: str) -> bytes:
        """Download inbound media; Twilio media URLs need basic auth."""
        auth = None
        if "api.twilio.com" in url:
            auth = (settings.twilio_account_sid, settings.twilio_auth_token)

        async with httpx.AsyncClient(follow_redirects=True) as client:
            response = await client.get(url, auth=auth, timeout=settings.media_timeout_seconds)
            response.raise_for_status()
            log.info(f"📎 Downloaded media: {len(response.content)} bytes")
            return response.content

    def validate_webhook(
        self,
        url: str,
        params: dict,
        signature: str,
    ) -> bool:
        """Validate that webhook request is from Twilio."""
        if not settings.verify_webhook_signature:
            return True

        return self.validator.validate(url, params, signature)


# Global instance
twilio_client = TwilioClient()
