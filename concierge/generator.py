import logging
import time
from abc import ABC, abstractmethod
from typing import Optional

import httpx

from concierge.config import Settings
from concierge.metrics import observe_reply_generation
from concierge.prompts import build_system_prompt, to_chat_messages
from concierge.result import Result
from concierge.schemas import ReplyContext

logger = logging.getLogger(__name__)


class ReplyGenerator(ABC):
    """Turns a reply context into the text sent back to the customer."""

    @abstractmethod
    def generate(self, context: ReplyContext) -> Result[str]:
        """Generate a reply for one turn."""
        pass


class CompletionReplyGenerator(ReplyGenerator):
    """OpenAI-compatible chat completions client (OpenRouter by default)."""

    def __init__(self, settings: Settings, transport: Optional[httpx.BaseTransport] = None):
        self.settings = settings
        self.api_key = settings.LLM_API_KEY
        self.url = f"{settings.LLM_BASE_URL.rstrip('/')}/chat/completions"
        self._transport = transport

    def build_messages(self, context: ReplyContext) -> list[dict]:
        system_prompt = build_system_prompt(
            context,
            assistant_name=self.settings.ASSISTANT_NAME,
            salon_name=self.settings.SALON_NAME,
            greeting_phrase=self.settings.GREETING_PHRASE,
        )
        return to_chat_messages(context, system_prompt)

    def generate(self, context: ReplyContext) -> Result[str]:
        if not self.api_key:
            logger.error("Reply generator credentials missing (LLM_API_KEY)")
            return Result.failure("LLM_API_KEY is not configured", "config_error")

        messages = self.build_messages(context)
        payload = {
            "model": self.settings.LLM_MODEL,
            "messages": messages,
            "temperature": self.settings.LLM_TEMPERATURE,
            "max_tokens": self.settings.LLM_MAX_TOKENS,
        }
        logger.debug(f"Completion request: model={payload['model']}, messages_count={len(messages)}")

        started = time.perf_counter()
        try:
            with httpx.Client(timeout=self.settings.LLM_TIMEOUT_SECONDS, transport=self._transport) as client:
                response = client.post(
                    self.url,
                    headers={
                        "Authorization": f"Bearer {self.api_key}",
                        "Content-Type": "application/json",
                        "X-Title": self.settings.SALON_NAME,
                    },
                    json=payload,
                )
        except httpx.HTTPError as e:
            logger.error(f"Completion request failed: {e}")
            return Result.failure(str(e), "ai_error")
        finally:
            observe_reply_generation(time.perf_counter() - started)

        if response.status_code != 200:
            logger.error(f"Completion API error {response.status_code}: {response.text}")
            return Result.failure(f"Completion API error: {response.status_code} - {response.text}", "ai_error")

        try:
            data = response.json()
        except ValueError as e:
            logger.error(f"Completion API returned invalid JSON: {e}")
            return Result.failure("Completion API returned invalid JSON", "ai_error")

        content = ""
        choices = data.get("choices") or []
        if choices:
            content = (choices[0].get("message") or {}).get("content") or ""
        logger.debug(f"Completion content: {content[:100] if content else 'EMPTY'}")
        return Result.success(content.strip())
