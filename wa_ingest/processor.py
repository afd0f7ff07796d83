"""
Webhook batch processing.

Runs after the signature check and envelope parsing, in a worker thread.
Each message and each status is processed on its own: a failure is rolled
back, logged and counted, and the rest of the batch carries on.
"""

import logging
from dataclasses import dataclass
from typing import Callable, Optional

from sqlalchemy.orm import Session

from wa_ingest import directory, ledger, statuses
from wa_ingest.dispatcher import BackgroundDispatcher
from wa_ingest.envelope import KIND_INBOUND, ChangeBatch, RejectedItem, extract_text_body
from wa_ingest.gateway import OutboundGateway
from wa_ingest.metrics import record_webhook_event
from wa_ingest.phone import mask_phone, to_e164
from wa_ingest.router import InboundContext, InboundRouter
from wa_ingest.schemas import Contact, InboundMessage, StatusUpdate
from wa_ingest.storage import Database

logger = logging.getLogger(__name__)

IdentityResolver = Callable[[str], Optional[str]]


@dataclass
class ProcessingReport:
    messages: int = 0
    created: int = 0
    duplicates: int = 0
    statuses: int = 0
    statuses_applied: int = 0
    orphans: int = 0
    stale: int = 0
    failures: int = 0

    def as_log_fields(self) -> dict:
        return {
            "messages": self.messages,
            "duplicates": self.duplicates,
            "statuses": self.statuses,
            "failures": self.failures,
        }


class WebhookProcessor:
    def __init__(
        self,
        database: Database,
        router: InboundRouter,
        dispatcher: BackgroundDispatcher,
        gateway: OutboundGateway,
        identity_resolver: Optional[IdentityResolver] = None,
        status_policy: str = statuses.POLICY_LAST_APPLIED,
    ):
        self.database = database
        self.router = router
        self.dispatcher = dispatcher
        self.gateway = gateway
        self.identity_resolver = identity_resolver
        self.status_policy = status_policy

    def process(self, batches: list[ChangeBatch]) -> ProcessingReport:
        report = ProcessingReport()
        with self.database.session() as db:
            for batch in batches:
                for message in batch.messages:
                    report.messages += 1
                    self._process_message(db, message, batch.contact_for(message.from_), report)
                for status in batch.statuses:
                    report.statuses += 1
                    self._process_status(db, status, report)
                for rejected in batch.rejected:
                    self._count_rejected(rejected, report)
        return report

    def _count_rejected(self, rejected: RejectedItem, report: ProcessingReport) -> None:
        if rejected.kind == KIND_INBOUND:
            report.messages += 1
        else:
            report.statuses += 1
        report.failures += 1
        record_webhook_event(rejected.kind, "failed")

    def _process_message(
        self, db: Session, message: InboundMessage, contact: Optional[Contact], report: ProcessingReport
    ) -> None:
        try:
            created = self.handle_inbound(db, message, contact)
        except Exception:
            db.rollback()
            report.failures += 1
            record_webhook_event("inbound", "failed")
            logger.exception(f"Failed to process inbound message {message.id}")
            return

        if created:
            report.created += 1
            record_webhook_event("inbound", "created")
        else:
            report.duplicates += 1
            record_webhook_event("inbound", "duplicate")

    def _process_status(self, db: Session, status: StatusUpdate, report: ProcessingReport) -> None:
        try:
            outcome = statuses.apply_status(db, status, self.status_policy)
        except Exception:
            db.rollback()
            report.failures += 1
            record_webhook_event("status", "failed")
            logger.exception(f"Failed to record status {status.status} for {status.id}")
            return

        if outcome is statuses.StatusOutcome.APPLIED:
            report.statuses_applied += 1
        elif outcome is statuses.StatusOutcome.ORPHAN:
            report.orphans += 1
        elif outcome is statuses.StatusOutcome.STALE:
            report.stale += 1
        record_webhook_event("status", outcome.value)

    def handle_inbound(self, db: Session, message: InboundMessage, contact: Optional[Contact]) -> bool:
        """
        Persist one inbound message and trigger its side effects.

        Returns:
            True if the message was new, False for a redelivery (in which
            case no read receipt is sent and no handler runs).
        """
        phone = to_e164(message.from_)
        conversation = directory.upsert_conversation(db, phone, contact)

        if conversation.user_id is None and self.identity_resolver is not None:
            user_id = self._resolve_identity(phone)
            if user_id and directory.link_to_user(db, phone, user_id):
                conversation.user_id = user_id

        text = extract_text_body(message)
        result = ledger.save_inbound(
            db, message, text, conversation.id, conversation.user_id, commit=False
        )
        if result is ledger.DUPLICATE:
            return False

        # The ledger row commits together with the handler's state change.
        # If the handler fails both roll back and a redelivery runs it again.
        self.router.dispatch(
            InboundContext(db=db, phone=phone, conversation=conversation, message=message, text=text)
        )
        db.commit()

        self.dispatcher.submit("mark_read", self.gateway.mark_read, message.id)
        return True

    def _resolve_identity(self, phone: str) -> Optional[str]:
        try:
            return self.identity_resolver(phone)
        except Exception:
            logger.exception(f"Identity resolution failed for {mask_phone(phone)}")
            return None
