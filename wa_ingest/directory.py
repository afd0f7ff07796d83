"""
Conversation directory: one row per counterpart phone number.

Writes are single statements so concurrent webhook calls for the same phone
never race through a read-then-write.
"""

import logging
import uuid
from datetime import datetime
from typing import Optional

from sqlalchemy import func, select, update
from sqlalchemy.dialects.postgresql import insert as pg_insert
from sqlalchemy.dialects.sqlite import insert as sqlite_insert
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.orm import Session

from wa_ingest.errors import DirectoryWriteFailed
from wa_ingest.models import Conversation
from wa_ingest.phone import mask_phone, to_e164
from wa_ingest.schemas import Contact
from wa_ingest.storage import utcnow

logger = logging.getLogger(__name__)

_UPSERT_INSERTS = {
    "postgresql": pg_insert,
    "sqlite": sqlite_insert,
}


def _dialect_insert(db: Session):
    dialect = db.get_bind().dialect.name
    try:
        return _UPSERT_INSERTS[dialect]
    except KeyError:
        raise DirectoryWriteFailed(f"atomic upsert not supported on {dialect}") from None


def get_conversation(db: Session, phone: str) -> Optional[Conversation]:
    return db.scalars(
        select(Conversation)
        .where(Conversation.phone == to_e164(phone))
        .execution_options(populate_existing=True)
    ).first()


def upsert_conversation(
    db: Session,
    phone: str,
    contact: Optional[Contact] = None,
    *,
    seen_at: Optional[datetime] = None,
) -> Conversation:
    """
    Get or create the conversation for phone, recording an inbound contact.

    On insert the row starts opted out. On conflict the display name is
    overwritten only when the contact carries one, and last_inbound_at is
    refreshed.

    Raises:
        DirectoryWriteFailed: on any persistence error.
    """
    canonical = to_e164(phone)
    now = utcnow()
    display_name = contact.display_name if contact is not None else None

    try:
        insert = _dialect_insert(db)
        stmt = insert(Conversation).values(
            id=str(uuid.uuid4()),
            phone=canonical,
            display_name=display_name,
            opted_in=False,
            last_inbound_at=seen_at or now,
            created_at=now,
            updated_at=now,
        )
        stmt = stmt.on_conflict_do_update(
            index_elements=["phone"],
            set_={
                "display_name": func.coalesce(stmt.excluded.display_name, Conversation.display_name),
                "last_inbound_at": stmt.excluded.last_inbound_at,
                "updated_at": stmt.excluded.updated_at,
            },
        )
        db.execute(stmt)
        db.commit()
        conversation = get_conversation(db, canonical)
    except SQLAlchemyError as e:
        db.rollback()
        raise DirectoryWriteFailed(f"upsert_conversation failed for {mask_phone(canonical)}: {e}") from e

    if conversation is None:
        raise DirectoryWriteFailed(f"conversation for {mask_phone(canonical)} missing after upsert")

    logger.debug(f"Conversation upserted: id={conversation.id}, phone={mask_phone(canonical)}")
    return conversation


def _update_conversation(db: Session, operation: str, phone: str, values: dict) -> bool:
    canonical = to_e164(phone)
    values = {**values, "updated_at": utcnow()}
    try:
        result = db.execute(
            update(Conversation).where(Conversation.phone == canonical).values(**values)
        )
        db.commit()
    except SQLAlchemyError as e:
        db.rollback()
        raise DirectoryWriteFailed(f"{operation} failed for {mask_phone(canonical)}: {e}") from e

    if result.rowcount == 0:
        logger.info(f"{operation}: no conversation for {mask_phone(canonical)}")
        return False
    return True


def link_to_user(db: Session, phone: str, user_id: str) -> bool:
    """Link the conversation to an internal user id. Last write wins."""
    linked = _update_conversation(db, "link_to_user", phone, {"user_id": user_id})
    if linked:
        logger.info(f"Conversation {mask_phone(to_e164(phone))} linked to user {user_id}")
    return linked


def set_opt_in(db: Session, phone: str, opted_in: bool) -> bool:
    """
    Record an opt-in or opt-out.

    Opting in clears opted_out_at. Opting out clears the flag but keeps
    opted_in_at for audit.
    """
    now = utcnow()
    if opted_in:
        values = {"opted_in": True, "opted_in_at": now, "opted_out_at": None}
    else:
        values = {"opted_in": False, "opted_out_at": now}
    changed = _update_conversation(db, "set_opt_in", phone, values)
    if changed:
        logger.info(f"Conversation {mask_phone(to_e164(phone))} opted_in={opted_in}")
    return changed


def touch_outbound(db: Session, phone: str, at: Optional[datetime] = None) -> bool:
    """Refresh last_outbound_at after a message was sent to phone."""
    return _update_conversation(db, "touch_outbound", phone, {"last_outbound_at": at or utcnow()})
