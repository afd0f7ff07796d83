"""
Tests for the /webhook endpoint.

Tests cover:
- GET subscription verification
- Signature rejection (401) and malformed bodies (400); invalid items skipped alone
- Unrelated envelopes acknowledged as no-ops
- New conversation + inbound ledger entry + status correlation scenario
- Idempotence under redelivery, including concurrent deliveries
- Keyword routing side effects and per-entry fault isolation
"""

import json
from concurrent.futures import ThreadPoolExecutor

from fastapi.testclient import TestClient
from sqlalchemy import func, select

from wa_ingest import directory, ledger
from wa_ingest.errors import DirectoryWriteFailed
from wa_ingest.main import create_app
from wa_ingest.models import Conversation, MessageLogEntry, StatusEvent

from .payloads import (
    PHONE_E164,
    TEST_VERIFY_TOKEN,
    contact,
    envelope,
    post_webhook,
    sign,
    status_update,
    text_message,
)


def count(app, model, **filters) -> int:
    query = select(func.count()).select_from(model)
    for column, value in filters.items():
        query = query.where(getattr(model, column) == value)
    with app.state.database.session() as db:
        return db.scalar(query)


def conversation(app, phone=PHONE_E164):
    with app.state.database.session() as db:
        return directory.get_conversation(db, phone)


def entry(app, provider_message_id):
    with app.state.database.session() as db:
        return ledger.get_entry(db, provider_message_id)


class TestWebhookVerification:
    def test_challenge_echoed(self, client):
        response = client.get("/webhook", params={
            "hub.mode": "subscribe",
            "hub.verify_token": TEST_VERIFY_TOKEN,
            "hub.challenge": "1158201444",
        })
        assert response.status_code == 200
        assert response.text == "1158201444"

    def test_wrong_token_forbidden(self, client):
        response = client.get("/webhook", params={
            "hub.mode": "subscribe",
            "hub.verify_token": "nope",
            "hub.challenge": "1158201444",
        })
        assert response.status_code == 403

    def test_wrong_mode_forbidden(self, client):
        response = client.get("/webhook", params={
            "hub.mode": "unsubscribe",
            "hub.verify_token": TEST_VERIFY_TOKEN,
            "hub.challenge": "1",
        })
        assert response.status_code == 403

    def test_missing_params_forbidden(self, client):
        assert client.get("/webhook").status_code == 403

    def test_unconfigured_token_forbidden(self, settings, gateway):
        settings.WHATSAPP_VERIFY_TOKEN = ""
        with TestClient(create_app(settings=settings, gateway=gateway)) as client:
            response = client.get("/webhook", params={"hub.mode": "subscribe", "hub.verify_token": ""})
        assert response.status_code == 403


class TestWebhookRejections:
    def test_missing_signature(self, client, app):
        body = json.dumps(envelope(messages=[text_message()])).encode()
        response = client.post("/webhook", content=body, headers={"Content-Type": "application/json"})

        assert response.status_code == 401
        assert response.json() == {"detail": "invalid signature"}
        assert count(app, MessageLogEntry) == 0
        assert count(app, Conversation) == 0

    def test_invalid_signature(self, client, app):
        response = post_webhook(client, envelope(messages=[text_message()]), signature="sha256=" + "0" * 64)
        assert response.status_code == 401
        assert count(app, MessageLogEntry) == 0

    def test_signature_for_different_body(self, client, app):
        signed = json.dumps(envelope(messages=[text_message(body="Hello")])).encode()
        tampered = signed.replace(b"Hello", b"Hellp")
        response = post_webhook(client, tampered, signature=sign(signed))
        assert response.status_code == 401
        assert count(app, MessageLogEntry) == 0

    def test_signature_with_different_secret(self, client):
        body = json.dumps(envelope(messages=[text_message()])).encode()
        response = post_webhook(client, body, signature=sign(body, "wrong-secret"))
        assert response.status_code == 401

    def test_invalid_json(self, client):
        response = post_webhook(client, b"{not json")
        assert response.status_code == 400
        assert response.json() == {"detail": "malformed payload"}

    def test_broken_structure_is_malformed(self, client, app):
        payload = {"object": "whatsapp_business_account", "entry": [{"changes": [{"value": {}}]}]}
        response = post_webhook(client, payload)
        assert response.status_code == 400
        assert count(app, Conversation) == 0

    def test_unrelated_object_ignored(self, client, app):
        response = post_webhook(client, {"object": "instagram", "entry": []})
        assert response.status_code == 200
        assert response.json() == {"status": "ignored"}
        assert count(app, MessageLogEntry) == 0

    def test_unsigned_accepted_without_secret_outside_production(self, settings, gateway):
        settings.WHATSAPP_APP_SECRET = ""
        app = create_app(settings=settings, gateway=gateway)
        body = json.dumps(envelope(messages=[text_message()])).encode()
        with TestClient(app) as client:
            response = client.post("/webhook", content=body, headers={"Content-Type": "application/json"})
        assert response.status_code == 200
        assert count(app, MessageLogEntry) == 1

    def test_unsigned_rejected_without_secret_in_production(self, settings, gateway):
        settings.WHATSAPP_APP_SECRET = ""
        settings.ENVIRONMENT = "production"
        app = create_app(settings=settings, gateway=gateway)
        body = json.dumps(envelope(messages=[text_message()])).encode()
        with TestClient(app) as client:
            response = client.post("/webhook", content=body, headers={"Content-Type": "application/json"})
        assert response.status_code == 401


class TestInboundScenario:
    def test_new_phone_creates_conversation_and_entry(self, client, app):
        payload = envelope(messages=[text_message("wamid.HBg1", body="Hello")], contacts=[contact(name="Amina")])

        response = post_webhook(client, payload)

        assert response.status_code == 200
        assert response.json() == {"status": "ok"}

        conv = conversation(app)
        assert conv is not None
        assert conv.opted_in is False
        assert conv.display_name == "Amina"

        logged = entry(app, "wamid.HBg1")
        assert logged.direction == "inbound"
        assert logged.phone == PHONE_E164
        assert logged.body == "Hello"
        assert logged.conversation_id == conv.id
        assert count(app, StatusEvent) == 0

    def test_status_post_updates_entry(self, client, app):
        post_webhook(client, envelope(messages=[text_message("wamid.HBg1")]))

        response = post_webhook(client, envelope(statuses=[status_update("wamid.HBg1", status="delivered")]))

        assert response.status_code == 200
        assert entry(app, "wamid.HBg1").status == "delivered"
        assert count(app, MessageLogEntry) == 1
        assert count(app, StatusEvent, provider_message_id="wamid.HBg1") == 1

    def test_orphan_status_accepted(self, client, app):
        response = post_webhook(client, envelope(statuses=[status_update("wamid.never-seen", status="read")]))

        assert response.status_code == 200
        assert count(app, StatusEvent, provider_message_id="wamid.never-seen") == 1
        assert count(app, MessageLogEntry) == 0

    def test_messages_and_statuses_in_one_change(self, client, app):
        payload = envelope(
            messages=[text_message("wamid.a"), text_message("wamid.b", body="Second")],
            statuses=[status_update("wamid.a", status="read")],
        )
        assert post_webhook(client, payload).status_code == 200

        assert count(app, MessageLogEntry) == 2
        assert count(app, Conversation) == 1
        assert entry(app, "wamid.a").status == "read"


class TestIdempotence:
    def test_redelivery_yields_one_entry_and_one_read_receipt(self, app, gateway):
        payload = envelope(messages=[text_message("wamid.dup")])

        with TestClient(app) as client:
            assert post_webhook(client, payload).status_code == 200
            assert post_webhook(client, payload).status_code == 200

        assert count(app, MessageLogEntry, provider_message_id="wamid.dup") == 1
        assert gateway.read == ["wamid.dup"]

    def test_redelivered_keyword_routed_once(self, app, gateway):
        payload = envelope(messages=[text_message("wamid.help", body="HELP")])

        with TestClient(app) as client:
            post_webhook(client, payload)
            post_webhook(client, payload)

        assert len(gateway.sent) == 1

    def test_concurrent_deliveries(self, client, app):
        payload = envelope(messages=[text_message("wamid.concurrent")])
        body = json.dumps(payload).encode()

        with ThreadPoolExecutor(max_workers=2) as pool:
            responses = list(pool.map(lambda _: post_webhook(client, body), range(2)))

        assert [r.status_code for r in responses] == [200, 200]
        assert count(app, MessageLogEntry, provider_message_id="wamid.concurrent") == 1
        assert count(app, Conversation) == 1


class TestRouting:
    def test_stop_opts_out_and_confirms(self, app, gateway, settings):
        with TestClient(app) as client:
            post_webhook(client, envelope(messages=[text_message("wamid.1", body="start")]))
            post_webhook(client, envelope(messages=[text_message("wamid.2", body="STOP", timestamp=1700000060)]))

        conv = conversation(app)
        assert conv.opted_in is False
        assert conv.opted_out_at is not None
        assert conv.opted_in_at is not None
        assert (PHONE_E164, settings.OPT_OUT_REPLY) in gateway.sent

    def test_start_opts_in_and_records_reply(self, app, gateway, settings):
        with TestClient(app) as client:
            post_webhook(client, envelope(messages=[text_message("wamid.1", body="OUI")]))

        conv = conversation(app)
        assert conv.opted_in is True
        assert conv.opted_out_at is None
        assert gateway.sent == [(PHONE_E164, settings.OPT_IN_REPLY)]

        reply = entry(app, "wamid.out.1")
        assert reply.direction == "outbound"
        assert reply.body == settings.OPT_IN_REPLY
        assert reply.conversation_id == conv.id
        assert conv.last_outbound_at is not None

    def test_plain_text_sends_nothing(self, app, gateway):
        with TestClient(app) as client:
            post_webhook(client, envelope(messages=[text_message("wamid.1", body="Is the job still open?")]))

        assert gateway.sent == []
        assert gateway.read == ["wamid.1"]

    def test_disabled_reply_not_sent(self, settings, gateway):
        settings.HELP_REPLY = ""
        app = create_app(settings=settings, gateway=gateway)
        with TestClient(app) as client:
            post_webhook(client, envelope(messages=[text_message("wamid.1", body="menu")]))
        assert gateway.sent == []


class TestFaultIsolation:
    def test_invalid_message_does_not_reject_siblings(self, client, app):
        bad = text_message("wamid.bad")
        bad["timestamp"] = "not-a-number"

        response = post_webhook(client, envelope(messages=[bad, text_message("wamid.good")]))

        assert response.status_code == 200
        assert entry(app, "wamid.bad") is None
        assert entry(app, "wamid.good") is not None

    def test_invalid_status_does_not_reject_siblings(self, client, app):
        bad = status_update("wamid.good")
        del bad["status"]
        payload = envelope(
            messages=[text_message("wamid.good")],
            statuses=[bad, status_update("wamid.good", status="read")],
        )

        response = post_webhook(client, payload)

        assert response.status_code == 200
        assert entry(app, "wamid.good").status == "read"
        assert count(app, StatusEvent) == 1

    def test_bad_entry_does_not_abort_siblings(self, client, app):
        payload = envelope(messages=[
            text_message("wamid.bad", wa_id="not-a-phone"),
            text_message("wamid.good"),
        ])

        response = post_webhook(client, payload)

        assert response.status_code == 200
        assert entry(app, "wamid.bad") is None
        assert entry(app, "wamid.good") is not None

    def test_read_receipt_failure_is_not_fatal(self, app, gateway):
        gateway.fail_reads = True
        with TestClient(app) as client:
            response = post_webhook(client, envelope(messages=[text_message("wamid.1")]))

        assert response.status_code == 200
        assert entry(app, "wamid.1") is not None

    def test_failing_handler_does_not_abort_siblings(self, settings, gateway):
        from wa_ingest.router import InboundRouter, Intent

        def explode(context):
            raise RuntimeError("handler failure")

        app = create_app(settings=settings, gateway=gateway, router=InboundRouter({Intent.HELP: explode}))
        payload = envelope(messages=[text_message("wamid.1", body="help"), text_message("wamid.2", body="hi")])
        with TestClient(app) as client:
            response = post_webhook(client, payload)

        assert response.status_code == 200
        assert entry(app, "wamid.2") is not None
        # left unrecorded so a redelivery runs the handler again
        assert entry(app, "wamid.1") is None

    def test_failed_opt_out_applied_on_redelivery(self, app, gateway, settings, monkeypatch):
        real_set_opt_in = directory.set_opt_in
        calls = []

        def flaky_set_opt_in(db, phone, opted_in):
            calls.append(opted_in)
            if len(calls) == 1:
                raise DirectoryWriteFailed("set_opt_in failed: database is locked")
            return real_set_opt_in(db, phone, opted_in)

        monkeypatch.setattr(directory, "set_opt_in", flaky_set_opt_in)
        payload = envelope(messages=[text_message("wamid.stop", body="STOP")])

        with TestClient(app) as client:
            assert post_webhook(client, payload).status_code == 200
            assert entry(app, "wamid.stop") is None
            assert conversation(app).opted_out_at is None

            assert post_webhook(client, payload).status_code == 200

        assert calls == [False, False]
        assert entry(app, "wamid.stop") is not None
        assert conversation(app).opted_out_at is not None
        assert gateway.sent == [(PHONE_E164, settings.OPT_OUT_REPLY)]
        assert gateway.read == ["wamid.stop"]


class TestIdentityResolution:
    def test_resolver_links_new_conversation(self, settings, gateway):
        lookups = []

        def resolver(phone):
            lookups.append(phone)
            return "user-42"

        app = create_app(settings=settings, gateway=gateway, identity_resolver=resolver)
        with TestClient(app) as client:
            post_webhook(client, envelope(messages=[text_message("wamid.1")]))
            post_webhook(client, envelope(messages=[text_message("wamid.2")]))

        assert lookups == [PHONE_E164]
        assert conversation(app).user_id == "user-42"
        assert entry(app, "wamid.1").user_id == "user-42"

    def test_resolver_failure_ignored(self, settings, gateway):
        def resolver(phone):
            raise LookupError("identity service down")

        app = create_app(settings=settings, gateway=gateway, identity_resolver=resolver)
        with TestClient(app) as client:
            response = post_webhook(client, envelope(messages=[text_message("wamid.1")]))

        assert response.status_code == 200
        assert entry(app, "wamid.1").user_id is None
