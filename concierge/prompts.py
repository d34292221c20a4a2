"""
System prompt for the WhatsApp receptionist.

Salon-specific values (names, greeting) come from configuration. The prompt
stays short on purpose: it is sent with every turn.
"""

from concierge.schemas import MessageRole, ReplyContext

RECEPTIONIST_RULES = """
Access: you may discuss the service list, prices and available appointment slots.
Tasks: answer questions, book new appointments, confirm existing bookings.
Language: very polite Algerian Darija, written in Arabic script.
Never discuss finances, revenue, costs, salaries or sales figures.
"""


def describe_client(context: ReplyContext) -> str:
    identity = context.identity
    if identity is None:
        return "Customer: new customer (not in our records)."
    line = f"Customer: {identity.name} ({identity.tier})."
    if identity.last_visit:
        line += f"\nLast visit: {identity.last_visit}."
    if identity.visit_count:
        line += f"\nVisits so far: {identity.visit_count}."
    return line


def to_chat_messages(context: ReplyContext, system_prompt: str) -> list[dict]:
    """Chat-completion messages: system prompt, bounded history, then the new text."""
    messages = [{"role": "system", "content": system_prompt}]
    for message in context.history:
        messages.append({"role": MessageRole(message.role).value, "content": message.content})
    messages.append({"role": MessageRole.USER.value, "content": context.inbound_text})
    return messages


def greeting_rule(context: ReplyContext, greeting_phrase: str) -> str:
    if context.is_first_contact:
        return f'This is the first message from this customer: start your reply with "{greeting_phrase}".'
    return f'The conversation is ongoing: do not say "{greeting_phrase}" again, just continue naturally.'


def build_system_prompt(
    context: ReplyContext,
    assistant_name: str,
    salon_name: str,
    greeting_phrase: str,
) -> str:
    """Assemble the system prompt for one turn."""
    sections = [
        f"You are {assistant_name}, the digital receptionist of the {salon_name} salon.",
        RECEPTIONIST_RULES.strip(),
        describe_client(context),
    ]
    sections.append(
        "Rules:\n"
        f"1. {greeting_rule(context, greeting_phrase)}\n"
        "2. Be brief and direct.\n"
        "3. For bookings, suggest a time slot.\n"
        "4. For prices, give the price directly."
    )
    return "\n\n".join(sections)
