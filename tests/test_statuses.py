"""
Tests for status correlation.

Tests cover:
- Orphan tolerance (status before / without its message)
- Append-only status history, duplicates included
- last_applied vs monotonic policies
- Provider error capture
"""

from datetime import datetime, timezone

import pytest
from sqlalchemy import select

from wa_ingest import ledger, statuses
from wa_ingest.models import StatusEvent
from wa_ingest.schemas import StatusUpdate
from wa_ingest.statuses import StatusOutcome, apply_status, is_regression

from .payloads import status_update

PHONE = "+237670000000"


def decode(**kwargs) -> StatusUpdate:
    return StatusUpdate.model_validate(status_update(**kwargs))


def events_for(session, provider_message_id):
    return session.scalars(
        select(StatusEvent)
        .where(StatusEvent.provider_message_id == provider_message_id)
        .order_by(StatusEvent.id)
    ).all()


@pytest.fixture
def sent_message(session):
    return ledger.save_outbound(session, to=PHONE, body="Hi", provider_message_id="wamid.out.1")


class TestApplyStatus:
    def test_orphan_status_is_recorded(self, session):
        outcome = apply_status(session, decode(message_id="wamid.unknown", status="delivered"))

        assert outcome is StatusOutcome.ORPHAN
        events = events_for(session, "wamid.unknown")
        assert len(events) == 1
        assert events[0].status == "delivered"
        assert events[0].recipient_phone == PHONE
        assert ledger.get_entry(session, "wamid.unknown") is None

    def test_updates_ledger_status(self, session, sent_message):
        outcome = apply_status(session, decode(message_id="wamid.out.1", status="delivered"))

        assert outcome is StatusOutcome.APPLIED
        assert ledger.get_entry(session, "wamid.out.1").status == "delivered"

    def test_event_time_from_provider(self, session, sent_message):
        apply_status(session, decode(message_id="wamid.out.1", timestamp=1700000100))
        occurred_at = events_for(session, "wamid.out.1")[0].occurred_at
        occurred_at = occurred_at if occurred_at.tzinfo else occurred_at.replace(tzinfo=timezone.utc)
        assert occurred_at == datetime.fromtimestamp(1700000100, tz=timezone.utc)

    def test_repeated_status_not_deduplicated(self, session, sent_message):
        apply_status(session, decode(message_id="wamid.out.1", status="sent"))
        apply_status(session, decode(message_id="wamid.out.1", status="sent"))

        assert [e.status for e in events_for(session, "wamid.out.1")] == ["sent", "sent"]

    def test_last_applied_allows_regression(self, session, sent_message):
        apply_status(session, decode(message_id="wamid.out.1", status="read", timestamp=1700000200))
        outcome = apply_status(session, decode(message_id="wamid.out.1", status="sent", timestamp=1700000100))

        assert outcome is StatusOutcome.APPLIED
        assert ledger.get_entry(session, "wamid.out.1").status == "sent"

    def test_monotonic_skips_regression(self, session, sent_message):
        policy = statuses.POLICY_MONOTONIC
        apply_status(session, decode(message_id="wamid.out.1", status="read"), policy)
        outcome = apply_status(session, decode(message_id="wamid.out.1", status="sent"), policy)

        assert outcome is StatusOutcome.STALE
        assert ledger.get_entry(session, "wamid.out.1").status == "read"
        assert [e.status for e in events_for(session, "wamid.out.1")] == ["read", "sent"]

    def test_monotonic_advances(self, session, sent_message):
        policy = statuses.POLICY_MONOTONIC
        assert apply_status(session, decode(message_id="wamid.out.1", status="delivered"), policy) is StatusOutcome.APPLIED
        assert apply_status(session, decode(message_id="wamid.out.1", status="read"), policy) is StatusOutcome.APPLIED
        assert ledger.get_entry(session, "wamid.out.1").status == "read"

    def test_monotonic_orphan(self, session):
        outcome = apply_status(session, decode(message_id="wamid.none"), statuses.POLICY_MONOTONIC)
        assert outcome is StatusOutcome.ORPHAN

    def test_failed_status_keeps_first_error(self, session, sent_message):
        errors = [
            {"code": 131047, "title": "Re-engagement message"},
            {"code": 1, "title": "second"},
        ]
        apply_status(session, decode(message_id="wamid.out.1", status="failed", errors=errors))

        event = events_for(session, "wamid.out.1")[0]
        assert event.error_code == 131047
        assert event.error_title == "Re-engagement message"
        assert event.raw_payload["errors"][1]["code"] == 1
        assert ledger.get_entry(session, "wamid.out.1").status == "failed"


class TestIsRegression:
    @pytest.mark.parametrize(
        "current,new,expected",
        [
            ("sent", "delivered", False),
            ("delivered", "read", False),
            ("read", "delivered", True),
            ("read", "sent", True),
            ("delivered", "sent", True),
            ("sent", "sent", False),
            ("sent", "failed", False),
            ("read", "deleted", False),
            (None, "sent", False),
        ],
    )
    def test_ranking(self, current, new, expected):
        assert is_regression(current, new) is expected
