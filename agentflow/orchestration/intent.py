from __future__ import annotations

from typing import Protocol

from ..core.logging import get_logger
from ..schemas.intent import IntentResult

logger = get_logger(name=__name__)

FALLBACK_CONFIDENCE = 0.5


class IntentParser(Protocol):
    async def parse_intent(self, raw_text: str) -> IntentResult:
        ...


class PassthroughIntentParser:
    """Treat the raw prompt as the objective.

    Used when no language model is wired in, and as the shape any smarter parser
    falls back to when it cannot make sense of a prompt.
    """

    async def parse_intent(self, raw_text: str) -> IntentResult:
        text = raw_text.strip()
        logger.debug("intent_passthrough", length=len(text))
        return IntentResult(raw_input=raw_text, objective=text, confidence=FALLBACK_CONFIDENCE)


__all__ = ["FALLBACK_CONFIDENCE", "IntentParser", "PassthroughIntentParser"]
