"""
SQLAlchemy ORM models for database tables.

This module contains database table definitions using SQLAlchemy.
For typed records and request/response schemas, see schemas.py.
"""

from sqlalchemy import JSON, Column, DateTime, Float, Integer, String, Text

from concierge.storage import Base


class WhatsAppSession(Base):
    """
    Conversation state for one phone number.

    Table: whatsapp_sessions
    Primary Key: phone_number (makes session creation idempotent)
    """
    __tablename__ = "whatsapp_sessions"

    phone_number = Column(String, primary_key=True, index=True)
    client_id = Column(String, nullable=True, index=True)
    last_messages = Column(JSON, nullable=False, default=list)  # [{role, content, timestamp}]
    message_count = Column(Integer, nullable=False, default=0)
    last_interaction = Column(DateTime(timezone=True), nullable=True, index=True)
    booking_context = Column(JSON, nullable=False, default=dict)
    created_at = Column(DateTime(timezone=True), nullable=False)


class Client(Base):
    """
    Salon customer record. Owned by the back-office app, read-only here.

    Table: clients
    """
    __tablename__ = "clients"

    id = Column(String, primary_key=True)
    first_name = Column(Text, nullable=False, default="")
    last_name = Column(Text, nullable=False, default="")
    phone = Column(String, nullable=True, index=True)  # stored as 555.., 0555.. or +213555..
    tier = Column(String, nullable=True)
    total_spent = Column(Float, nullable=True, default=0)
    last_visit = Column(String, nullable=True)  # ISO-8601 date
    visit_count = Column(Integer, nullable=True, default=0)
