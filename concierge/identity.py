"""
Client identification from WhatsApp chat identifiers.

Chat ids arrive as "213555123456@s.whatsapp.net" while the back office
stores phones as "555123456", "0555123456" or "+213555123456". Everything
is reduced to the canonical local number and matched against all three
stored forms in one query.
"""

import logging
import re
from typing import Callable, Optional

from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.orm import Session

from concierge.result import Result
from concierge.schemas import ClientIdentity

logger = logging.getLogger(__name__)

TRANSPORT_SUFFIXES = ("@s.whatsapp.net", "@c.us", "@g.us")
DEFAULT_COUNTRY_CODE = "213"

_NON_DIGITS = re.compile(r"\D")


def normalize_phone(raw: str, country_code: str = DEFAULT_COUNTRY_CODE) -> str:
    """
    Reduce a raw chat identifier to the canonical local number.

    >>> normalize_phone("213555123456@s.whatsapp.net")
    '555123456'
    >>> normalize_phone("0555123456")
    '555123456'
    """
    phone = (raw or "").strip()
    for suffix in TRANSPORT_SUFFIXES:
        if phone.endswith(suffix):
            phone = phone[: -len(suffix)]
            break
    phone = re.sub(rf"^\+?{re.escape(country_code)}", "", phone)
    phone = _NON_DIGITS.sub("", phone)
    if phone.startswith("0"):
        phone = phone[1:]
    return phone


def phone_variants(canonical: str, country_code: str = DEFAULT_COUNTRY_CODE) -> tuple[str, str, str]:
    """The stored representations considered equal to `canonical`."""
    return canonical, f"0{canonical}", f"+{country_code}{canonical}"


class IdentityResolver:
    """Looks up the client record behind a chat identifier."""

    def __init__(self, session_factory: Callable[[], Session], country_code: str = DEFAULT_COUNTRY_CODE):
        self._session_factory = session_factory
        self.country_code = country_code

    def normalize(self, raw: str) -> str:
        return normalize_phone(raw, self.country_code)

    def resolve(self, raw_phone: str) -> Result[Optional[ClientIdentity]]:
        """
        Find the client for `raw_phone`.

        Returns success(None) when no client matches; only query-layer
        errors are failures.
        """
        from concierge.models import Client

        canonical = self.normalize(raw_phone)
        if not canonical:
            logger.debug(f"No digits left in chat id {raw_phone!r}, skipping client lookup")
            return Result.success(None)

        variants = phone_variants(canonical, self.country_code)
        try:
            with self._session_factory() as db:
                client = db.query(Client).filter(Client.phone.in_(variants)).limit(1).first()
                if client is None:
                    logger.debug(f"No client record for {canonical}")
                    return Result.success(None)
                identity = ClientIdentity(
                    id=str(client.id),
                    name=f"{client.first_name or ''} {client.last_name or ''}".strip(),
                    tier=client.tier or "bronze",
                    total_spent=float(client.total_spent or 0),
                    last_visit=client.last_visit,
                    visit_count=client.visit_count or 0,
                )
        except SQLAlchemyError as e:
            logger.error(f"Client lookup failed for {canonical}: {e}")
            return Result.failure(str(e), "identity_error")

        logger.info(f"Identified client {identity.id} for {canonical}")
        return Result.success(identity)
