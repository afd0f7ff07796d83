"""
Webhook envelope decoding.

Turns the raw request body into one ChangeBatch per ``messages`` change,
each carrying the contact map, inbound messages and status updates of
that change. The envelope skeleton (entry -> changes -> value) must be
valid; messages and statuses are decoded one by one and an item that does
not validate is set aside on the batch instead of failing the request.
"""

import json
import logging
from dataclasses import dataclass, field
from typing import Any, Optional

from pydantic import TypeAdapter, ValidationError

from wa_ingest.errors import MalformedPayload, UnsupportedEnvelope
from wa_ingest.schemas import (
    WHATSAPP_OBJECT,
    ButtonMessage,
    Contact,
    InboundMessage,
    InteractiveMessage,
    StatusUpdate,
    TextMessage,
    WebhookEnvelope,
)

logger = logging.getLogger(__name__)

KIND_INBOUND = "inbound"
KIND_STATUS = "status"

_message_adapter = TypeAdapter(InboundMessage)


@dataclass
class RejectedItem:
    """A message or status that failed validation."""
    kind: str
    provider_message_id: Optional[str]
    reason: str


@dataclass
class ChangeBatch:
    contacts: dict[str, Contact] = field(default_factory=dict)
    messages: list[InboundMessage] = field(default_factory=list)
    statuses: list[StatusUpdate] = field(default_factory=list)
    rejected: list[RejectedItem] = field(default_factory=list)
    phone_number_id: Optional[str] = None

    def contact_for(self, wa_id: str) -> Optional[Contact]:
        return self.contacts.get(wa_id)


def decode_message(item: Any) -> InboundMessage:
    """Validate one inbound message object. Raises ValidationError."""
    return _message_adapter.validate_python(item)


def _item_id(item: Any) -> Optional[str]:
    if isinstance(item, dict) and isinstance(item.get("id"), str):
        return item["id"]
    return None


def _reject(batch: ChangeBatch, kind: str, item: Any, error: ValidationError) -> None:
    rejected = RejectedItem(kind, _item_id(item), f"{error.error_count()} validation error(s)")
    logger.warning(f"Rejected {kind} item {rejected.provider_message_id or '-'}: {rejected.reason}")
    batch.rejected.append(rejected)


def _build_batch(value) -> ChangeBatch:
    batch = ChangeBatch(phone_number_id=value.metadata.phone_number_id if value.metadata else None)

    for item in value.contacts:
        try:
            contact = Contact.model_validate(item)
        except ValidationError:
            logger.warning("Skipping contact without a valid wa_id")
            continue
        batch.contacts[contact.wa_id] = contact

    for item in value.messages:
        try:
            batch.messages.append(decode_message(item))
        except ValidationError as e:
            _reject(batch, KIND_INBOUND, item, e)

    for item in value.statuses:
        try:
            batch.statuses.append(StatusUpdate.model_validate(item))
        except ValidationError as e:
            _reject(batch, KIND_STATUS, item, e)

    return batch


def parse_envelope(raw: bytes) -> list[ChangeBatch]:
    """
    Decode a webhook body into change batches.

    Args:
        raw: Request body exactly as received

    Returns:
        One ChangeBatch per change whose field is "messages". Changes for
        other fields are skipped; absent arrays are treated as empty.
        Messages and statuses that fail validation are listed in
        ``ChangeBatch.rejected``.

    Raises:
        MalformedPayload: body is not JSON, not an object, or its
            entry/changes structure violates the schema
        UnsupportedEnvelope: object type is not a WhatsApp business account
    """
    try:
        data = json.loads(raw)
    except (UnicodeDecodeError, ValueError) as e:
        raise MalformedPayload(f"invalid JSON: {e}") from e

    if not isinstance(data, dict):
        raise MalformedPayload("envelope must be a JSON object")

    object_type = data.get("object")
    if object_type != WHATSAPP_OBJECT:
        raise UnsupportedEnvelope(object_type)

    try:
        envelope = WebhookEnvelope.model_validate(data)
    except ValidationError as e:
        raise MalformedPayload(f"envelope schema violation: {e.error_count()} error(s)") from e

    batches = []
    for entry in envelope.entry:
        for change in entry.changes:
            if change.field != "messages":
                logger.debug(f"Skipping change field: {change.field}")
                continue
            batches.append(_build_batch(change.value))

    logger.debug(f"Parsed envelope into {len(batches)} change batch(es)")
    return batches


def extract_text_body(message: InboundMessage) -> Optional[str]:
    """Text a user typed or tapped; None for media, location and other types."""
    if isinstance(message, TextMessage):
        return message.text.body
    if isinstance(message, ButtonMessage):
        return message.button.payload or message.button.text
    if isinstance(message, InteractiveMessage):
        for reply in (message.interactive.button_reply, message.interactive.list_reply):
            if reply is not None and reply.title:
                return reply.title
    return None
