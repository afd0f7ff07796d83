"""
Message ledger: one row per provider message id.

The unique constraint on provider_message_id is the only deduplication
mechanism. Inserts are attempted blind and a constraint violation is read
as a redelivery.
"""

import enum
import logging
from datetime import datetime, timezone
from typing import Literal, Optional, Union

from sqlalchemy import select
from sqlalchemy.exc import IntegrityError, SQLAlchemyError
from sqlalchemy.orm import Session

from wa_ingest import directory
from wa_ingest.errors import DirectoryWriteFailed, LedgerWriteFailed
from wa_ingest.models import DIRECTION_INBOUND, DIRECTION_OUTBOUND, MessageLogEntry
from wa_ingest.phone import mask_phone, to_e164
from wa_ingest.schemas import InboundMessage
from wa_ingest.storage import utcnow

logger = logging.getLogger(__name__)

STATUS_RECEIVED = "received"
STATUS_SENT = "sent"


class LedgerResult(enum.Enum):
    DUPLICATE = "duplicate"


DUPLICATE = LedgerResult.DUPLICATE

InboundResult = Union[MessageLogEntry, Literal[LedgerResult.DUPLICATE]]


def provider_time(epoch_seconds: int) -> datetime:
    """Provider epoch seconds as an aware UTC datetime."""
    return datetime.fromtimestamp(int(epoch_seconds), tz=timezone.utc)


def get_entry(db: Session, provider_message_id: str) -> Optional[MessageLogEntry]:
    return db.scalars(
        select(MessageLogEntry)
        .where(MessageLogEntry.provider_message_id == provider_message_id)
        .execution_options(populate_existing=True)
    ).first()


def _exists(db: Session, provider_message_id: str) -> bool:
    return db.scalar(
        select(MessageLogEntry.id).where(MessageLogEntry.provider_message_id == provider_message_id)
    ) is not None


def save_inbound(
    db: Session,
    message: InboundMessage,
    text: Optional[str],
    conversation_id: Optional[str],
    user_id: Optional[str] = None,
    commit: bool = True,
) -> InboundResult:
    """
    Persist an inbound message exactly once.

    Args:
        db: Database session
        message: Decoded provider message
        text: Extracted text, or None for non-text types
        conversation_id: Owning conversation row id
        user_id: Linked internal user id, if any
        commit: When False the row is only flushed, and the caller commits it
            together with whatever else belongs to the same message

    Returns:
        The new MessageLogEntry, or DUPLICATE when the provider message id
        was already recorded.

    Raises:
        LedgerWriteFailed: insert failed for any other reason
    """
    entry = MessageLogEntry(
        provider_message_id=message.id,
        direction=DIRECTION_INBOUND,
        phone=to_e164(message.from_),
        body=text if text is not None else f"[{message.type}]",
        status=STATUS_RECEIVED,
        conversation_id=conversation_id,
        user_id=user_id,
        message_type=message.type,
        raw_payload=message.raw(),
        created_at=provider_time(message.timestamp),
    )

    try:
        db.add(entry)
        if commit:
            db.commit()
        else:
            db.flush()
    except IntegrityError as e:
        db.rollback()
        # Only the provider id constraint makes this a redelivery
        if _exists(db, message.id):
            logger.info(f"Duplicate message detected: {message.id}")
            return DUPLICATE
        raise LedgerWriteFailed(f"save_inbound failed for {message.id}: {e}") from e
    except SQLAlchemyError as e:
        db.rollback()
        raise LedgerWriteFailed(f"save_inbound failed for {message.id}: {e}") from e

    logger.info(f"Inbound message recorded: id={message.id}, type={message.type}")
    return entry


def save_outbound(
    db: Session,
    *,
    to: str,
    body: str,
    provider_message_id: str,
    message_type: str = "text",
    template_name: Optional[str] = None,
    user_id: Optional[str] = None,
    conversation_id: Optional[str] = None,
    raw_payload: Optional[dict] = None,
) -> MessageLogEntry:
    """
    Record a message this service sent, keyed by the send-response id.

    Links the conversation for the recipient and refreshes its
    last_outbound_at. Callers that already hold the conversation pass its
    id; otherwise it is looked up by phone. Recording the same provider id
    twice returns the existing row.

    Raises:
        LedgerWriteFailed: insert failed for any reason other than a repeat
    """
    phone = to_e164(to)
    sent_at = utcnow()
    if conversation_id is None:
        conversation = directory.get_conversation(db, phone)
        if conversation is not None:
            conversation_id = conversation.id
            if user_id is None:
                user_id = conversation.user_id

    entry = MessageLogEntry(
        provider_message_id=provider_message_id,
        direction=DIRECTION_OUTBOUND,
        phone=phone,
        body=body,
        status=STATUS_SENT,
        conversation_id=conversation_id,
        user_id=user_id,
        message_type=message_type,
        template_name=template_name,
        raw_payload=raw_payload,
        created_at=sent_at,
    )

    try:
        db.add(entry)
        db.commit()
    except IntegrityError as e:
        db.rollback()
        existing = get_entry(db, provider_message_id)
        if existing is not None:
            logger.info(f"Outbound message already recorded: {provider_message_id}")
            return existing
        raise LedgerWriteFailed(f"save_outbound failed for {provider_message_id}: {e}") from e
    except SQLAlchemyError as e:
        db.rollback()
        raise LedgerWriteFailed(f"save_outbound failed for {provider_message_id}: {e}") from e

    if conversation_id is not None:
        try:
            directory.touch_outbound(db, phone, sent_at)
        except DirectoryWriteFailed as e:
            logger.warning(f"Outbound {provider_message_id} recorded but last_outbound_at not updated: {e}")

    logger.info(f"Outbound message recorded: id={provider_message_id}, to={mask_phone(phone)}")
    return entry
