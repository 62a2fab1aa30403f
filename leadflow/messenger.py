import logging
from typing import Protocol

import httpx

from .config import Settings
from .errors import TransientExternalError

logger = logging.getLogger(__name__)

WHATSAPP_PREFIX = "whatsapp:"


class Messenger(Protocol):
    def send(self, phone: str, text: str) -> str:
        """Deliver ``text`` to ``phone`` and return the provider's delivery id."""
        ...


def strip_channel_prefix(address: str | None) -> str:
    address = (address or "").strip()
    if address.lower().startswith(WHATSAPP_PREFIX):
        return address[len(WHATSAPP_PREFIX):].strip()
    return address


class TwilioWhatsAppMessenger:
    """
    Sends WhatsApp messages through Twilio's Messages REST endpoint.
    - Form-encoded From/To/Body, HTTP basic auth with the account SID/token.
    - Any transport error or non-2xx answer becomes TransientExternalError;
      nothing is retried.
    """

    def __init__(self, settings: Settings, client: httpx.Client | None = None):
        self.account_sid = settings.TWILIO_ACCOUNT_SID
        self.auth_token = settings.TWILIO_AUTH_TOKEN
        self.from_number = settings.TWILIO_WHATSAPP_NUMBER
        self.api_base = settings.TWILIO_API_BASE.rstrip("/")
        self._client = client or httpx.Client(timeout=settings.HTTP_TIMEOUT_SECONDS)

    @property
    def configured(self) -> bool:
        return bool(self.account_sid and self.auth_token and self.from_number)

    def send(self, phone: str, text: str) -> str:
        if not self.configured:
            raise TransientExternalError("Missing Twilio configuration")

        url = f"{self.api_base}/Accounts/{self.account_sid}/Messages.json"
        data = {
            "From": f"{WHATSAPP_PREFIX}{self.from_number}",
            "To": f"{WHATSAPP_PREFIX}{strip_channel_prefix(phone)}",
            "Body": text,
        }
        try:
            resp = self._client.post(url, data=data, auth=(self.account_sid, self.auth_token))
        except httpx.HTTPError as ex:
            logger.error("Twilio request to %s failed: %s", phone, ex)
            raise TransientExternalError("Failed to send WhatsApp message") from ex

        if resp.status_code >= 300:
            logger.error("Twilio API error %s: %s", resp.status_code, resp.text)
            raise TransientExternalError("Failed to send WhatsApp message")

        sid = resp.json().get("sid", "")
        logger.info("WhatsApp message sent to %s (sid=%s)", phone, sid)
        return sid

    def close(self) -> None:
        self._client.close()
