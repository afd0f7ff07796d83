import asyncio
import hmac
import logging
from contextlib import asynccontextmanager
from typing import Annotated, Optional

from fastapi import FastAPI, Header, HTTPException, Query, Request, Response, status
from fastapi.responses import PlainTextResponse
from starlette.concurrency import run_in_threadpool

from wa_ingest.config import Settings, get_settings
from wa_ingest.dispatcher import BackgroundDispatcher
from wa_ingest.envelope import parse_envelope
from wa_ingest.errors import (
    AuthenticityFailure,
    GatewayError,
    InvalidPhoneNumber,
    MalformedPayload,
    UnsupportedEnvelope,
)
from wa_ingest.gateway import CloudApiGateway, OutboundGateway
from wa_ingest.handlers import ReplySender, build_default_handlers
from wa_ingest.logging_utils import RequestLoggingMiddleware, log_webhook_data, setup_logging
from wa_ingest.metrics import get_metrics, get_metrics_content_type, record_webhook_outcome
from wa_ingest.phone import to_e164
from wa_ingest.processor import IdentityResolver, WebhookProcessor
from wa_ingest.router import InboundRouter
from wa_ingest.schemas import (
    ErrorResponse,
    HealthResponse,
    SendMessageRequest,
    SendMessageResponse,
    WebhookResponse,
)
from wa_ingest.signature import check_request_signature
from wa_ingest.storage import Database

logger = logging.getLogger(__name__)


def create_app(
    settings: Optional[Settings] = None,
    gateway: Optional[OutboundGateway] = None,
    identity_resolver: Optional[IdentityResolver] = None,
    router: Optional[InboundRouter] = None,
) -> FastAPI:
    """
    Build the webhook service.

    Storage, the outbound gateway and the background dispatcher are created
    here, once, and shared by every request through ``app.state``.

    Args:
        settings: Configuration (defaults to environment settings)
        gateway: Outbound collaborator (defaults to the Cloud API client)
        identity_resolver: Optional phone -> internal user id lookup
        router: Inbound router (defaults to keyword routing with the default handlers)
    """
    settings = settings or get_settings()
    setup_logging(settings.LOG_LEVEL)

    database = Database(settings.DATABASE_URL, timeout_seconds=settings.DB_TIMEOUT_SECONDS)
    owns_gateway = gateway is None
    if gateway is None:
        gateway = CloudApiGateway.from_settings(settings)
        if not settings.gateway_configured:
            logger.warning("WhatsApp send API credentials not configured, outbound calls will fail")

    dispatcher = BackgroundDispatcher()
    replies = ReplySender(database, gateway, dispatcher)
    if router is None:
        router = InboundRouter(build_default_handlers(settings, replies))
    processor = WebhookProcessor(
        database,
        router,
        dispatcher,
        gateway,
        identity_resolver=identity_resolver,
        status_policy=settings.STATUS_POLICY,
    )

    @asynccontextmanager
    async def lifespan(app: FastAPI):
        database.init_db()
        dispatcher.bind(asyncio.get_running_loop())
        yield
        await dispatcher.drain(settings.SHUTDOWN_DRAIN_SECONDS)
        if owns_gateway:
            await gateway.aclose()
        database.dispose()

    app = FastAPI(
        title="WhatsApp Ingest",
        description="Webhook ingestion for the WhatsApp Business Cloud API",
        version="1.0.0",
        lifespan=lifespan,
    )
    app.state.settings = settings
    app.state.database = database
    app.state.gateway = gateway
    app.state.dispatcher = dispatcher
    app.state.processor = processor
    app.state.replies = replies

    app.add_middleware(RequestLoggingMiddleware)

    # =========================================================================
    # Health Check Routes
    # =========================================================================

    @app.get("/health/live", response_model=HealthResponse)
    async def health_live() -> HealthResponse:
        """Liveness probe - always returns 200 once the app is running."""
        return HealthResponse(status="ok")

    @app.get("/health/ready", response_model=HealthResponse)
    async def health_ready(response: Response) -> HealthResponse:
        """
        Readiness probe - returns 200 only if:
        1. WHATSAPP_VERIFY_TOKEN is set
        2. WHATSAPP_APP_SECRET is set, when running in production
        3. DB is reachable and schema is applied

        Otherwise returns 503 (Service Unavailable).
        """
        reason = None
        if not settings.WHATSAPP_VERIFY_TOKEN:
            reason = "WHATSAPP_VERIFY_TOKEN not configured"
        elif settings.is_production and not settings.WHATSAPP_APP_SECRET:
            reason = "WHATSAPP_APP_SECRET not configured"
        elif not await run_in_threadpool(database.check_health):
            reason = "Database not reachable or schema not applied"

        if reason:
            response.status_code = status.HTTP_503_SERVICE_UNAVAILABLE
            return HealthResponse(status="not_ready", reason=reason)
        return HealthResponse(status="ready")

    # =========================================================================
    # Webhook Routes
    # =========================================================================

    @app.get("/webhook", response_class=PlainTextResponse)
    async def webhook_verify(
        hub_mode: Annotated[Optional[str], Query(alias="hub.mode")] = None,
        hub_verify_token: Annotated[Optional[str], Query(alias="hub.verify_token")] = None,
        hub_challenge: Annotated[Optional[str], Query(alias="hub.challenge")] = None,
    ) -> PlainTextResponse:
        """
        One-time subscription verification.

        Echoes hub.challenge when hub.mode is "subscribe" and
        hub.verify_token matches WHATSAPP_VERIFY_TOKEN, else 403.
        """
        expected = settings.WHATSAPP_VERIFY_TOKEN
        token_ok = bool(expected) and hub_verify_token is not None and hmac.compare_digest(
            hub_verify_token.encode("utf-8"), expected.encode("utf-8")
        )
        if hub_mode == "subscribe" and token_ok:
            logger.info("Webhook subscription verified")
            return PlainTextResponse(hub_challenge or "", status_code=status.HTTP_200_OK)

        logger.warning(
            f"Webhook verification failed: mode={hub_mode or 'missing'}, "
            f"token_configured={bool(expected)}"
        )
        return PlainTextResponse("Forbidden", status_code=status.HTTP_403_FORBIDDEN)

    @app.post(
        "/webhook",
        response_model=WebhookResponse,
        responses={
            400: {"model": ErrorResponse, "description": "Malformed payload"},
            401: {"model": ErrorResponse, "description": "Invalid signature"},
        },
    )
    async def webhook(
        request: Request,
        x_hub_signature_256: Annotated[Optional[str], Header(alias="X-Hub-Signature-256")] = None,
    ) -> WebhookResponse:
        """
        Receive provider events.

        - Verifies X-Hub-Signature-256 over the raw body (401 on failure)
        - Decodes the envelope (400 if malformed, 200 no-op if unrelated)
        - Processes every message and status, isolating failures per entry
        """
        raw_body = await request.body()
        logger.debug(f"Webhook request received: {len(raw_body)} bytes")

        try:
            check_request_signature(raw_body, x_hub_signature_256, settings)
        except AuthenticityFailure:
            record_webhook_outcome("invalid_signature")
            log_webhook_data(request, "invalid_signature")
            raise HTTPException(status_code=status.HTTP_401_UNAUTHORIZED, detail="invalid signature")

        try:
            batches = parse_envelope(raw_body)
        except UnsupportedEnvelope as e:
            logger.info(f"Ignoring webhook for object {e.object_type!r}")
            record_webhook_outcome("ignored")
            log_webhook_data(request, "ignored")
            return WebhookResponse(status="ignored")
        except MalformedPayload as e:
            logger.warning(f"Malformed webhook payload: {e}")
            record_webhook_outcome("malformed")
            log_webhook_data(request, "malformed")
            raise HTTPException(status_code=status.HTTP_400_BAD_REQUEST, detail="malformed payload")

        report = await run_in_threadpool(processor.process, batches)

        record_webhook_outcome("ok")
        log_webhook_data(request, "ok", **report.as_log_fields())
        if report.failures:
            logger.warning(f"Webhook processed with {report.failures} failed entries")
        return WebhookResponse(status="ok")

    # =========================================================================
    # Operator Send Route
    # =========================================================================

    @app.post(
        "/messages/send",
        response_model=SendMessageResponse,
        responses={
            401: {"model": ErrorResponse, "description": "Missing or wrong bearer token"},
            502: {"model": ErrorResponse, "description": "Send API failure"},
            503: {"model": ErrorResponse, "description": "Send endpoint disabled"},
        },
    )
    async def send_message(
        payload: SendMessageRequest,
        authorization: Annotated[Optional[str], Header()] = None,
    ) -> SendMessageResponse:
        """Send a text message or an approved template and record it in the ledger."""
        token = settings.SEND_API_TOKEN
        if not token:
            raise HTTPException(status_code=status.HTTP_503_SERVICE_UNAVAILABLE, detail="send endpoint disabled")
        if not authorization or not hmac.compare_digest(
            authorization.encode("utf-8"), f"Bearer {token}".encode("utf-8")
        ):
            raise HTTPException(status_code=status.HTTP_401_UNAUTHORIZED, detail="invalid token")

        try:
            phone = to_e164(payload.to)
        except InvalidPhoneNumber:
            raise HTTPException(status_code=status.HTTP_422_UNPROCESSABLE_ENTITY, detail="invalid phone number")

        template = payload.template
        try:
            if template is not None:
                message_id = await replies.send_template(
                    phone, template.name, template.language, template.components
                )
            else:
                message_id = await replies.send(phone, payload.message.strip())
        except GatewayError as e:
            logger.error(f"Operator send failed: {e}")
            raise HTTPException(status_code=status.HTTP_502_BAD_GATEWAY, detail="send failed")

        return SendMessageResponse(message_id=message_id)

    # =========================================================================
    # Metrics Route
    # =========================================================================

    @app.get("/metrics")
    async def metrics() -> Response:
        """Expose Prometheus-style metrics."""
        return Response(content=get_metrics(), media_type=get_metrics_content_type())

    return app


app = create_app()
