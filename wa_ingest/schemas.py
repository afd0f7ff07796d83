"""
Pydantic schemas for provider payloads and API request/response bodies.

This module contains:
- Webhook envelope models (entry -> changes -> value)
- Inbound message variants, discriminated on ``type``
- Status update models
- Request/response models for the HTTP routes
"""

from typing import Annotated, Any, Literal, Optional, Union

from pydantic import BaseModel, ConfigDict, Discriminator, Field, Tag, model_validator


WHATSAPP_OBJECT = "whatsapp_business_account"

MEDIA_TYPES = ("image", "audio", "video", "document", "sticker")


class ProviderModel(BaseModel):
    """Base for provider payloads: unknown fields are kept for the raw payload."""

    model_config = ConfigDict(extra="allow", populate_by_name=True)

    def raw(self) -> dict[str, Any]:
        return self.model_dump(mode="json", by_alias=True, exclude_none=True)


# =============================================================================
# Contacts and metadata
# =============================================================================

class ContactProfile(ProviderModel):
    name: Optional[str] = None


class Contact(ProviderModel):
    """Sender profile attached to a change value."""
    wa_id: str
    profile: Optional[ContactProfile] = None

    @property
    def display_name(self) -> Optional[str]:
        return self.profile.name if self.profile and self.profile.name else None


class ChangeMetadata(ProviderModel):
    display_phone_number: Optional[str] = None
    phone_number_id: Optional[str] = None


# =============================================================================
# Inbound message variants
# =============================================================================

class TextBody(ProviderModel):
    body: str = ""


class ButtonBody(ProviderModel):
    payload: Optional[str] = None
    text: Optional[str] = None


class Reply(ProviderModel):
    id: Optional[str] = None
    title: Optional[str] = None
    description: Optional[str] = None


class InteractiveBody(ProviderModel):
    type: Optional[str] = None
    button_reply: Optional[Reply] = None
    list_reply: Optional[Reply] = None


class Media(ProviderModel):
    id: Optional[str] = None
    mime_type: Optional[str] = None
    sha256: Optional[str] = None
    caption: Optional[str] = None
    filename: Optional[str] = None


class Location(ProviderModel):
    latitude: Optional[float] = None
    longitude: Optional[float] = None
    name: Optional[str] = None
    address: Optional[str] = None


class Reaction(ProviderModel):
    message_id: Optional[str] = None
    emoji: Optional[str] = None


class MessageContext(ProviderModel):
    # 'from' is a reserved word in Python, so we use alias
    from_: Optional[str] = Field(None, alias="from")
    id: Optional[str] = None


class BaseInboundMessage(ProviderModel):
    """Fields shared by every inbound message type."""
    id: str = Field(..., min_length=1, description="Provider message id (wamid)")
    from_: str = Field(..., alias="from", min_length=1, description="Sender wa_id, digits only")
    timestamp: int = Field(..., ge=0, description="Seconds since epoch, provider clock")
    context: Optional[MessageContext] = None


class TextMessage(BaseInboundMessage):
    type: Literal["text"]
    text: TextBody


class ButtonMessage(BaseInboundMessage):
    type: Literal["button"]
    button: ButtonBody


class InteractiveMessage(BaseInboundMessage):
    type: Literal["interactive"]
    interactive: InteractiveBody


class MediaMessage(BaseInboundMessage):
    type: Literal["image", "audio", "video", "document", "sticker"]

    @property
    def media(self) -> Optional[Media]:
        value = (self.model_extra or {}).get(self.type)
        if isinstance(value, dict):
            return Media.model_validate(value)
        return None


class LocationMessage(BaseInboundMessage):
    type: Literal["location"]
    location: Location


class ReactionMessage(BaseInboundMessage):
    type: Literal["reaction"]
    reaction: Reaction


class OtherMessage(BaseInboundMessage):
    """Any message type without a dedicated model (e.g. ``unsupported``)."""
    type: str = "unsupported"


_TAGGED_TYPES = ("text", "button", "interactive", "location", "reaction")


def _message_tag(value: Any) -> str:
    message_type = value.get("type") if isinstance(value, dict) else getattr(value, "type", None)
    if message_type in _TAGGED_TYPES:
        return message_type
    if message_type in MEDIA_TYPES:
        return "media"
    return "other"


InboundMessage = Annotated[
    Union[
        Annotated[TextMessage, Tag("text")],
        Annotated[ButtonMessage, Tag("button")],
        Annotated[InteractiveMessage, Tag("interactive")],
        Annotated[MediaMessage, Tag("media")],
        Annotated[LocationMessage, Tag("location")],
        Annotated[ReactionMessage, Tag("reaction")],
        Annotated[OtherMessage, Tag("other")],
    ],
    Discriminator(_message_tag),
]


# =============================================================================
# Status updates
# =============================================================================

class ProviderError(ProviderModel):
    code: Optional[int] = None
    title: Optional[str] = None
    message: Optional[str] = None


class StatusUpdate(ProviderModel):
    """Delivery/read/failure callback for a message we sent."""
    id: str = Field(..., min_length=1, description="Provider message id the status refers to")
    status: str = Field(..., min_length=1)
    timestamp: int = Field(..., ge=0)
    recipient_id: Optional[str] = None
    errors: list[ProviderError] = Field(default_factory=list)

    @property
    def first_error(self) -> Optional[ProviderError]:
        return self.errors[0] if self.errors else None


# =============================================================================
# Envelope
# =============================================================================

class ChangeValue(ProviderModel):
    """
    Payload of one change.

    Contacts, messages and statuses stay undecoded here so that a single bad
    item can be rejected without failing its siblings.
    """
    messaging_product: Optional[str] = None
    metadata: Optional[ChangeMetadata] = None
    contacts: list[Any] = Field(default_factory=list)
    messages: list[Any] = Field(default_factory=list)
    statuses: list[Any] = Field(default_factory=list)


class Change(ProviderModel):
    field: str
    value: ChangeValue = Field(default_factory=ChangeValue)


class Entry(ProviderModel):
    id: Optional[str] = None
    changes: list[Change] = Field(default_factory=list)


class WebhookEnvelope(ProviderModel):
    object: str
    entry: list[Entry] = Field(default_factory=list)


# =============================================================================
# API Response/Request Models
# =============================================================================

class WebhookResponse(BaseModel):
    """Response model for an acknowledged webhook delivery."""
    status: str = Field(default="ok", description="ok, or ignored for unrelated envelopes")


class ErrorResponse(BaseModel):
    """Response model for error responses."""
    detail: str = Field(..., description="Error description")


class TemplateRequest(BaseModel):
    """An approved message template and its parameters."""
    name: str = Field(..., min_length=1, max_length=512, description="Template name")
    language: str = Field(default="en_US", min_length=2, max_length=15, description="Template language code")
    components: list[dict[str, Any]] = Field(default_factory=list, description="Header/body/button parameters")


class SendMessageRequest(BaseModel):
    """Operator request to send either a plain text message or a template."""
    to: str = Field(..., min_length=1, max_length=32, description="Recipient phone number")
    message: Optional[str] = Field(None, min_length=1, max_length=4096, description="Message text")
    template: Optional[TemplateRequest] = Field(None, description="Template to send instead of text")

    @model_validator(mode="after")
    def check_exactly_one_body(self) -> "SendMessageRequest":
        if (self.message is None) == (self.template is None):
            raise ValueError("provide exactly one of message or template")
        return self


class SendMessageResponse(BaseModel):
    status: str = "sent"
    message_id: str = Field(..., description="Provider message id of the sent message")


class HealthResponse(BaseModel):
    """Response model for health check endpoints."""
    status: str = Field(..., description="Health status")
    reason: Optional[str] = Field(None, description="Reason if not ready")
