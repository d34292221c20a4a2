import logging

from concierge.generator import ReplyGenerator
from concierge.identity import IdentityResolver
from concierge.result import Result
from concierge.schemas import MessageRole, ReplyContext
from concierge.storage import SessionStore

logger = logging.getLogger(__name__)


class ReplyOrchestrator:
    """
    Runs one conversational turn for a phone number.

    Stages: identify the client, get or create the session, link them,
    record the inbound message, generate a reply, record the reply.
    The inbound message and the reply are two separate writes so the
    customer's message is kept even when generation fails.
    """

    def __init__(
        self,
        identity: IdentityResolver,
        sessions: SessionStore,
        generator: ReplyGenerator,
        fallback_reply: str,
    ):
        self.identity = identity
        self.sessions = sessions
        self.generator = generator
        self.fallback_reply = fallback_reply

    def reply_to(self, inbound_text: str, raw_phone: str) -> Result[str]:
        phone_number = self.identity.normalize(raw_phone) or raw_phone

        identified = self.identity.resolve(raw_phone)
        client = identified.value if identified.ok else None
        if not identified.ok:
            logger.warning(f"Client lookup failed for {phone_number}, replying without personalization: {identified.error}")

        session_result = self.sessions.get_or_create(phone_number)
        if not session_result.ok:
            return session_result
        session = session_result.value
        is_first_contact = session.is_new

        if client is not None and session.client_id != client.id:
            linked = self.sessions.link_client(phone_number, client.id)
            if not linked.ok:
                logger.warning(f"Could not link client {client.id} to {phone_number}: {linked.error}")

        history_result = self.sessions.get_history(phone_number)
        if not history_result.ok:
            return Result.failure(history_result.error, history_result.error_code)
        history = history_result.value

        recorded = self.sessions.record_message(phone_number, MessageRole.USER, inbound_text)
        if not recorded.ok:
            return Result.failure(recorded.error, recorded.error_code)

        context = ReplyContext(
            inbound_text=inbound_text,
            history=history,
            identity=client,
            is_first_contact=is_first_contact,
        )
        generated = self.generator.generate(context)
        if not generated.ok:
            logger.error(f"Reply generation failed for {phone_number} ({generated.error_code}): {generated.error}")
            return generated
        reply = generated.value or self.fallback_reply

        saved = self.sessions.record_message(phone_number, MessageRole.ASSISTANT, reply)
        if not saved.ok:
            logger.error(f"Failed to record reply for {phone_number}: {saved.error}")

        logger.info(
            f"Reply ready for {phone_number}",
            extra={"first_contact": is_first_contact, "client_id": client.id if client else None},
        )
        return Result.success(reply)
