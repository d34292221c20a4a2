import logging
from typing import Optional

import httpx

from concierge.config import Settings
from concierge.metrics import record_outbound_message

logger = logging.getLogger(__name__)


class WhapiTransport:
    """Sends text messages through the Whapi gateway."""

    def __init__(self, settings: Settings, transport: Optional[httpx.BaseTransport] = None):
        self.token = settings.WHAPI_TOKEN
        self.url = settings.WHAPI_URL
        self.timeout = settings.WHAPI_TIMEOUT_SECONDS
        self._transport = transport

    def send_text(self, phone: str, text: str) -> Optional[dict]:
        """
        Send `text` to `phone`.

        Returns the gateway's JSON on success, an error dict on a non-2xx
        answer, and None when credentials are missing or the request could
        not be made. Never raises.
        """
        if not self.token:
            logger.error("Whapi credentials missing, message not sent")
            record_outbound_message("skipped")
            return None

        try:
            with httpx.Client(timeout=self.timeout, transport=self._transport) as client:
                response = client.post(
                    self.url,
                    headers={
                        "Content-Type": "application/json",
                        "Authorization": f"Bearer {self.token}",
                    },
                    json={"to": phone, "body": text, "typing_time": 0},
                )
        except httpx.HTTPError as e:
            logger.error(f"Whapi send error for {phone}: {e}")
            record_outbound_message("error")
            return None

        if not response.is_success:
            logger.error(f"Whapi API error ({response.status_code}): {response.text}")
            record_outbound_message("error")
            return {"status": "error", "code": response.status_code, "message": response.text}

        record_outbound_message("sent")
        logger.info(f"Reply sent to {phone}")
        try:
            return response.json()
        except ValueError:
            return {"status": "sent"}
