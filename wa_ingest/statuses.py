"""
Status correlation: delivery/read/failure callbacks against the ledger.

Every callback is appended to status_events. The matching ledger row is
then updated on a best-effort basis; a callback for a message we have not
recorded (yet) is kept as an orphan.
"""

import enum
import logging

from sqlalchemy import update
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.orm import Session

from wa_ingest.errors import InvalidPhoneNumber, LedgerWriteFailed
from wa_ingest.ledger import get_entry, provider_time
from wa_ingest.models import MessageLogEntry, StatusEvent
from wa_ingest.phone import to_e164
from wa_ingest.schemas import StatusUpdate

logger = logging.getLogger(__name__)

POLICY_LAST_APPLIED = "last_applied"
POLICY_MONOTONIC = "monotonic"

# Progression used by the monotonic policy. Unlisted statuses always apply.
STATUS_RANK = {
    "received": 0,
    "sent": 1,
    "delivered": 2,
    "read": 3,
    "failed": 3,
}


class StatusOutcome(str, enum.Enum):
    APPLIED = "applied"
    ORPHAN = "orphan"
    STALE = "stale"
    RECORDED_ONLY = "recorded_only"


def is_regression(current: str | None, new: str) -> bool:
    """True if moving from current to new would go backwards."""
    if current not in STATUS_RANK or new not in STATUS_RANK:
        return False
    return STATUS_RANK[new] < STATUS_RANK[current]


def _recipient(status: StatusUpdate) -> str | None:
    if not status.recipient_id:
        return None
    try:
        return to_e164(status.recipient_id)
    except InvalidPhoneNumber:
        return None


def record_status_event(db: Session, status: StatusUpdate) -> StatusEvent:
    """Append the callback to the status history. Never deduplicated."""
    error = status.first_error
    event = StatusEvent(
        provider_message_id=status.id,
        status=status.status,
        occurred_at=provider_time(status.timestamp),
        recipient_phone=_recipient(status),
        error_code=error.code if error else None,
        error_title=error.title if error else None,
        raw_payload=status.raw(),
    )
    try:
        db.add(event)
        db.commit()
    except SQLAlchemyError as e:
        db.rollback()
        raise LedgerWriteFailed(f"status event insert failed for {status.id}: {e}") from e
    return event


def _update_ledger_status(db: Session, status: StatusUpdate, policy: str) -> StatusOutcome:
    stmt = update(MessageLogEntry).where(MessageLogEntry.provider_message_id == status.id)

    if policy == POLICY_MONOTONIC:
        entry = get_entry(db, status.id)
        if entry is None:
            return StatusOutcome.ORPHAN
        if is_regression(entry.status, status.status):
            return StatusOutcome.STALE
        # Compare-and-set so a concurrent advance is not overwritten
        if entry.status is None:
            stmt = stmt.where(MessageLogEntry.status.is_(None))
        else:
            stmt = stmt.where(MessageLogEntry.status == entry.status)

    result = db.execute(stmt.values(status=status.status))
    db.commit()

    if result.rowcount == 0:
        return StatusOutcome.ORPHAN if policy == POLICY_LAST_APPLIED else StatusOutcome.STALE
    return StatusOutcome.APPLIED


def apply_status(db: Session, status: StatusUpdate, policy: str = POLICY_LAST_APPLIED) -> StatusOutcome:
    """
    Record a status callback and reflect it on the ledger row.

    Args:
        db: Database session
        status: Decoded status update
        policy: "last_applied" overwrites unconditionally; "monotonic" skips
            updates that would move a message backwards (e.g. read -> sent)

    Returns:
        APPLIED, ORPHAN (no ledger row), STALE (skipped by policy) or
        RECORDED_ONLY (ledger update failed after the event was stored).

    Raises:
        LedgerWriteFailed: the status event itself could not be stored
    """
    record_status_event(db, status)

    try:
        outcome = _update_ledger_status(db, status, policy)
    except SQLAlchemyError as e:
        db.rollback()
        logger.warning(f"Status {status.status} for {status.id} recorded but ledger not updated: {e}")
        return StatusOutcome.RECORDED_ONLY

    if outcome is StatusOutcome.ORPHAN:
        logger.info(f"Orphan status {status.status} for message {status.id}")
    elif outcome is StatusOutcome.STALE:
        logger.info(f"Stale status {status.status} for message {status.id} not applied")
    else:
        logger.info(f"Status {status.status} applied to message {status.id}")
    return outcome
