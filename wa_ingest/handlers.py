"""
Default handlers for keyword intents.

Opt-in and opt-out are applied to the conversation synchronously, inside the
webhook call. Confirmation replies go out through the background dispatcher
and are recorded in the ledger once the provider returns a message id.
"""

import logging
from typing import Any, Optional

from starlette.concurrency import run_in_threadpool

from wa_ingest import directory, ledger
from wa_ingest.config import Settings
from wa_ingest.dispatcher import BackgroundDispatcher
from wa_ingest.gateway import OutboundGateway
from wa_ingest.phone import mask_phone
from wa_ingest.router import Handler, InboundContext, Intent, log_unhandled
from wa_ingest.storage import Database

logger = logging.getLogger(__name__)


class ReplySender:
    """Sends outbound messages and records them as outbound ledger entries."""

    def __init__(self, database: Database, gateway: OutboundGateway, dispatcher: BackgroundDispatcher):
        self.database = database
        self.gateway = gateway
        self.dispatcher = dispatcher

    def record(
        self,
        to: str,
        body: str,
        provider_message_id: str,
        user_id: Optional[str] = None,
        conversation_id: Optional[str] = None,
        message_type: str = "text",
        template_name: Optional[str] = None,
    ) -> None:
        with self.database.session() as db:
            ledger.save_outbound(
                db,
                to=to,
                body=body,
                provider_message_id=provider_message_id,
                message_type=message_type,
                template_name=template_name,
                user_id=user_id,
                conversation_id=conversation_id,
            )

    async def send(
        self, to: str, body: str, user_id: Optional[str] = None, conversation_id: Optional[str] = None
    ) -> str:
        provider_message_id = await self.gateway.send_text(to, body)
        await self._record_sent(to, body, provider_message_id, user_id=user_id, conversation_id=conversation_id)
        return provider_message_id

    async def send_template(
        self,
        to: str,
        template_name: str,
        language_code: str,
        components: Optional[list[dict[str, Any]]] = None,
        user_id: Optional[str] = None,
    ) -> str:
        provider_message_id = await self.gateway.send_template(to, template_name, language_code, components)
        await self._record_sent(
            to,
            f"[template:{template_name}]",
            provider_message_id,
            user_id=user_id,
            message_type="template",
            template_name=template_name,
        )
        return provider_message_id

    async def _record_sent(self, to: str, body: str, provider_message_id: str, **fields: Any) -> None:
        # A ledger failure after a successful send is logged only
        try:
            await run_in_threadpool(self.record, to, body, provider_message_id, **fields)
        except Exception:
            logger.exception(f"Message {provider_message_id} sent but not recorded")

    def send_later(self, context: InboundContext, body: str) -> None:
        if not body:
            return
        conversation = context.conversation
        self.dispatcher.submit("reply", self.send, context.phone, body, conversation.user_id, conversation.id)


def build_default_handlers(settings: Settings, replies: ReplySender) -> dict[Intent, Handler]:
    def opt_in(context: InboundContext) -> None:
        directory.set_opt_in(context.db, context.phone, True)
        logger.info(f"Opt-in request from {mask_phone(context.phone)}")
        replies.send_later(context, settings.OPT_IN_REPLY)

    def opt_out(context: InboundContext) -> None:
        directory.set_opt_in(context.db, context.phone, False)
        logger.info(f"Opt-out request from {mask_phone(context.phone)}")
        replies.send_later(context, settings.OPT_OUT_REPLY)

    def help_menu(context: InboundContext) -> None:
        logger.info(f"Help request from {mask_phone(context.phone)}")
        replies.send_later(context, settings.HELP_REPLY)

    return {
        Intent.OPT_IN: opt_in,
        Intent.OPT_OUT: opt_out,
        Intent.HELP: help_menu,
        Intent.UNHANDLED: log_unhandled,
    }
