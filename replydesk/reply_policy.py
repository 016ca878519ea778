"""
Reply policy: map inbound text to an outbound reply.

Evaluated in strict order:
1. ordering keyword  -> fixed ordering reply
2. hours keyword     -> fixed hours reply
3. AI configured     -> short completion, apology text on any failure
4. otherwise         -> fixed generic acknowledgment
"""

import logging
from dataclasses import dataclass
from typing import Optional

from replydesk.completion import CompletionClient
from replydesk.config import Settings
from replydesk.errors import CompletionError

logger = logging.getLogger(__name__)

PROMPT_TEMPLATE = (
    'A customer said: "{text}". Craft a short (max 40 words) friendly reply '
    "with a call to action to order."
)


@dataclass(frozen=True)
class Decision:
    text: str
    source: str  # order, hours, ai, ai_fallback, generic


@dataclass(frozen=True)
class ReplyTexts:
    order: str
    hours: str
    generic: str
    apology: str
    persona: str


class ReplyPolicy:
    def __init__(
        self,
        order_keywords: list[str],
        hours_keywords: list[str],
        texts: ReplyTexts,
        completion: Optional[CompletionClient] = None,
    ):
        self.order_keywords = [k.lower() for k in order_keywords if k]
        self.hours_keywords = [k.lower() for k in hours_keywords if k]
        self.texts = texts
        self.completion = completion

    @classmethod
    def from_settings(cls, settings: Settings, completion: Optional[CompletionClient] = None) -> "ReplyPolicy":
        return cls(
            order_keywords=settings.ORDER_KEYWORDS,
            hours_keywords=settings.HOURS_KEYWORDS,
            texts=ReplyTexts(
                order=settings.ORDER_REPLY,
                hours=settings.HOURS_REPLY,
                generic=settings.GENERIC_REPLY,
                apology=settings.APOLOGY_REPLY,
                persona=settings.AI_PERSONA,
            ),
            completion=completion,
        )

    async def decide(self, text: str) -> str:
        """Return the reply text for `text`. Never raises."""
        return (await self.evaluate(text)).text

    async def evaluate(self, text: str) -> Decision:
        lower = (text or "").lower()
        if any(k in lower for k in self.order_keywords):
            return Decision(self.texts.order, "order")
        if any(k in lower for k in self.hours_keywords):
            return Decision(self.texts.hours, "hours")
        if self.completion is None:
            return Decision(self.texts.generic, "generic")

        try:
            reply = await self.completion.complete(
                self.texts.persona, PROMPT_TEMPLATE.format(text=text)
            )
        except CompletionError as e:
            logger.warning(f"AI completion failed, using fallback reply: {e}")
            return Decision(self.texts.apology, "ai_fallback")
        except Exception:
            # Client bugs must not escape into the pipeline either
            logger.exception("Unexpected AI completion error, using fallback reply")
            return Decision(self.texts.apology, "ai_fallback")
        reply = (reply or "").strip()
        if not reply:
            return Decision(self.texts.apology, "ai_fallback")
        return Decision(reply, "ai")
