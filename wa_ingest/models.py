"""
SQLAlchemy ORM models for database tables.

This module contains database table definitions using SQLAlchemy.
For Pydantic request/response and provider schemas, see schemas.py.
"""

import uuid

from sqlalchemy import JSON, Boolean, Column, DateTime, ForeignKey, Integer, String, Text

from wa_ingest.storage import Base, utcnow

DIRECTION_INBOUND = "inbound"
DIRECTION_OUTBOUND = "outbound"


def _uuid() -> str:
    return str(uuid.uuid4())


class Conversation(Base):
    """
    One row per counterpart phone number.

    Table: conversations
    Unique key: phone (E.164), target of the atomic upsert
    """
    __tablename__ = "conversations"

    id = Column(String(36), primary_key=True, default=_uuid)
    phone = Column(String(32), nullable=False, unique=True, index=True)
    display_name = Column(String(255), nullable=True)
    user_id = Column(String(64), nullable=True, index=True)
    opted_in = Column(Boolean, nullable=False, default=False)
    opted_in_at = Column(DateTime(timezone=True), nullable=True)
    opted_out_at = Column(DateTime(timezone=True), nullable=True)
    last_inbound_at = Column(DateTime(timezone=True), nullable=True)
    last_outbound_at = Column(DateTime(timezone=True), nullable=True)
    created_at = Column(DateTime(timezone=True), nullable=False, default=utcnow)
    updated_at = Column(DateTime(timezone=True), nullable=False, default=utcnow, onupdate=utcnow)


class MessageLogEntry(Base):
    """
    Append-only log of inbound and outbound messages.

    Table: message_log
    Unique key: provider_message_id (the idempotency boundary)
    """
    __tablename__ = "message_log"

    id = Column(String(36), primary_key=True, default=_uuid)
    provider_message_id = Column(String(255), nullable=False, unique=True, index=True)
    direction = Column(String(16), nullable=False)
    phone = Column(String(32), nullable=False, index=True)
    body = Column(Text, nullable=False)
    status = Column(String(32), nullable=True)
    conversation_id = Column(String(36), ForeignKey("conversations.id"), nullable=True, index=True)
    user_id = Column(String(64), nullable=True)
    message_type = Column(String(32), nullable=False, default="text")
    template_name = Column(String(255), nullable=True)
    raw_payload = Column(JSON, nullable=True)
    # Provider event time for inbound rows, send time for outbound rows
    created_at = Column(DateTime(timezone=True), nullable=False, default=utcnow, index=True)


class StatusEvent(Base):
    """
    Status callback history, one row per callback received.

    Table: status_events
    provider_message_id is not a foreign key: statuses may arrive before
    (or without) the message they refer to.
    """
    __tablename__ = "status_events"

    id = Column(Integer, primary_key=True, autoincrement=True)
    provider_message_id = Column(String(255), nullable=False, index=True)
    status = Column(String(32), nullable=False)
    occurred_at = Column(DateTime(timezone=True), nullable=False)
    recipient_phone = Column(String(32), nullable=True)
    error_code = Column(Integer, nullable=True)
    error_title = Column(Text, nullable=True)
    raw_payload = Column(JSON, nullable=True)
    recorded_at = Column(DateTime(timezone=True), nullable=False, default=utcnow)
