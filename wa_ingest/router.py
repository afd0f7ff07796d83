"""
Keyword classification of inbound messages.

Each inbound message gets exactly one intent and exactly one handler call.
Opt-out keywords are checked first and always win.
"""

import enum
import logging
import string
import unicodedata
from dataclasses import dataclass
from typing import Callable, Iterable, Mapping, Optional

from sqlalchemy.orm import Session

from wa_ingest.models import Conversation
from wa_ingest.phone import mask_phone
from wa_ingest.schemas import InboundMessage

logger = logging.getLogger(__name__)

OPT_IN_KEYWORDS = frozenset({"start", "subscribe", "yes", "oui"})
OPT_OUT_KEYWORDS = frozenset({"stop", "unsubscribe", "no", "non"})
HELP_KEYWORDS = frozenset({"help", "aide", "menu"})

_STRIP_CHARS = string.whitespace + string.punctuation + "¡¿«»“”‘’…"


class Intent(str, enum.Enum):
    OPT_IN = "opt_in"
    OPT_OUT = "opt_out"
    HELP = "help"
    UNHANDLED = "unhandled"


@dataclass
class InboundContext:
    """Everything a handler gets about one newly recorded inbound message."""
    db: Session
    phone: str
    conversation: Conversation
    message: InboundMessage
    text: Optional[str]


Handler = Callable[[InboundContext], None]


def normalize_keyword(text: Optional[str]) -> str:
    """Lowercased, width/compatibility-folded text without surrounding punctuation."""
    if not text:
        return ""
    return unicodedata.normalize("NFKC", text).casefold().strip(_STRIP_CHARS)


def log_unhandled(context: InboundContext) -> None:
    logger.info(
        f"Unhandled message type={context.message.type} from={mask_phone(context.phone)} "
        f"id={context.message.id}"
    )


class InboundRouter:
    """
    Classifies message text into an Intent and calls that intent's handler.

    Handlers are injected; an intent without a handler falls through to the
    UNHANDLED handler, which defaults to a log line.
    """

    def __init__(
        self,
        handlers: Optional[Mapping[Intent, Handler]] = None,
        opt_in_keywords: Iterable[str] = OPT_IN_KEYWORDS,
        opt_out_keywords: Iterable[str] = OPT_OUT_KEYWORDS,
        help_keywords: Iterable[str] = HELP_KEYWORDS,
    ):
        self.handlers = dict(handlers or {})
        self.handlers.setdefault(Intent.UNHANDLED, log_unhandled)
        self.opt_in_keywords = frozenset(normalize_keyword(k) for k in opt_in_keywords)
        self.opt_out_keywords = frozenset(normalize_keyword(k) for k in opt_out_keywords)
        self.help_keywords = frozenset(normalize_keyword(k) for k in help_keywords)

    def classify(self, text: Optional[str]) -> Intent:
        keyword = normalize_keyword(text)
        if not keyword:
            return Intent.UNHANDLED
        if keyword in self.opt_out_keywords:
            return Intent.OPT_OUT
        if keyword in self.opt_in_keywords:
            return Intent.OPT_IN
        if keyword in self.help_keywords:
            return Intent.HELP
        return Intent.UNHANDLED

    def dispatch(self, context: InboundContext) -> Intent:
        intent = self.classify(context.text)
        handler = self.handlers.get(intent) or self.handlers[Intent.UNHANDLED]
        logger.debug(f"Routing message {context.message.id} as {intent.value}")
        handler(context)
        return intent
