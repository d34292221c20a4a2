import logging
from dataclasses import dataclass
from typing import Any, Optional

from pydantic import ValidationError

from concierge.identity import normalize_phone
from concierge.metrics import record_webhook_item
from concierge.orchestrator import ReplyOrchestrator
from concierge.result import ReplyFailedError
from concierge.schemas import WebhookMessage, WebhookPayload
from concierge.transport import WhapiTransport

logger = logging.getLogger(__name__)


@dataclass
class DeliveryOutcome:
    status: str
    processed: int = 0
    filtered: int = 0
    failed: int = 0


class WebhookIngress:
    """
    Handles one webhook delivery.

    Items are dispatched one at a time in array order, so two messages from
    the same number in one delivery reach the session in order.
    """

    def __init__(
        self,
        orchestrator: ReplyOrchestrator,
        transport: WhapiTransport,
        country_code: str,
        assistant_phone: Optional[str] = None,
        isolate_failures: bool = True,
    ):
        self.orchestrator = orchestrator
        self.transport = transport
        self.country_code = country_code
        self.assistant_phone = normalize_phone(assistant_phone, country_code) if assistant_phone else None
        self.isolate_failures = isolate_failures

    def parse(self, body: Any) -> list[Any]:
        """Message items of a delivery; empty for status callbacks and junk."""
        if not isinstance(body, dict):
            return []
        try:
            payload = WebhookPayload.model_validate(body)
        except ValidationError:
            return []
        return payload.messages or []

    def accept(self, raw_item: Any) -> Optional[WebhookMessage]:
        """Validate one item; None means it is filtered."""
        try:
            item = WebhookMessage.model_validate(raw_item)
        except ValidationError:
            logger.debug("Dropping malformed webhook item")
            return None

        if item.from_me:
            return None
        if self.assistant_phone and item.sender:
            if normalize_phone(item.sender, self.country_code) == self.assistant_phone:
                return None
        if not item.chat_id or not item.body:
            return None
        return item

    def handle(self, body: Any) -> DeliveryOutcome:
        items = self.parse(body)
        if not items:
            logger.info("Delivery without message items ignored")
            return DeliveryOutcome(status="ignored")

        outcome = DeliveryOutcome(status="success")
        for raw_item in items:
            item = self.accept(raw_item)
            if item is None:
                outcome.filtered += 1
                continue
            if self.dispatch(item):
                outcome.processed += 1
            else:
                outcome.failed += 1

        record_webhook_item("dispatched", outcome.processed)
        record_webhook_item("filtered", outcome.filtered)
        record_webhook_item("failed", outcome.failed)
        logger.info(
            f"Delivery handled: processed={outcome.processed}, filtered={outcome.filtered}, failed={outcome.failed}"
        )
        return outcome

    def dispatch(self, item: WebhookMessage) -> bool:
        """Reply to one item. Returns False when the item failed and failures are isolated."""
        logger.info(f"Received WhatsApp message from {item.chat_id}")
        try:
            result = self.orchestrator.reply_to(item.body, item.chat_id)
            if not result.ok:
                raise ReplyFailedError(item.chat_id, result)
            self.transport.send_text(item.chat_id, result.value)
        except ReplyFailedError as e:
            if not self.isolate_failures:
                raise
            logger.error(str(e))
            return False
        except Exception:
            if not self.isolate_failures:
                raise
            logger.exception(f"Unexpected error while replying to {item.chat_id}")
            return False
        return True
