"""
Canned and cached reply content.

Used when the generator cannot be reached (cache, common answers, generic
sentence), for instant conversational replies, and for the fixed redirect and
goodbye lines.
"""

from __future__ import annotations

import time
from dataclasses import dataclass
from typing import Callable, Dict, Optional, Tuple

import structlog

from src.voicedesk.text import strip_punctuation

logger = structlog.get_logger(__name__)

GENERIC_FALLBACK = (
    "I'm sorry, our system is experiencing high load right now. "
    "Please try your question again in a moment."
)


@dataclass(frozen=True)
class CommonAnswer:
    patterns: Tuple[str, ...]
    response: str


COMMON_ANSWERS: Tuple[CommonAnswer, ...] = (
    CommonAnswer(
        patterns=("reset password", "reset my password", "forgot password", "forgot my password",
                  "change password", "change my password", "password reset", "cant login", "can't login",
                  "can't log in", "cant log in"),
        response=(
            "To reset your password, go to the login page and choose Forgot Password. "
            "You'll get an email with a reset link in a few minutes."
        ),
    ),
    CommonAnswer(
        patterns=("locked out", "account locked", "account is locked"),
        response=(
            "Accounts unlock automatically after fifteen minutes. "
            "If you're still locked out after that, resetting your password will unlock it right away."
        ),
    ),
    CommonAnswer(
        patterns=("billing", "invoice", "charged twice", "refund"),
        response=(
            "You can find all of your invoices under Billing in your account settings. "
            "For refunds, our billing team replies to requests within one business day."
        ),
    ),
    CommonAnswer(
        patterns=("talk to a person", "speak to a person", "human agent", "real person", "speak to someone"),
        response=(
            "I can have a member of our support team follow up with you. "
            "They'll reach out at the number you're calling from."
        ),
    ),
)

QUICK_REPLIES: Dict[str, str] = {
    "i have more questions": "Of course, I'm happy to help. What would you like to know?",
    "can i ask another question": "Absolutely, go ahead!",
    "is that ok": "Yes, of course!",
    "do you understand": "Yes, I understand. Please continue.",
    "are you there": "Yes, I'm here and ready to help.",
    "can you hear me": "Yes, I can hear you. Go ahead.",
    "thank you": "You're welcome!",
    "got it": "What else would you like to know?",
}


def match_common_answer(query: str) -> Optional[str]:
    normalized = strip_punctuation(query)
    if not normalized:
        return None
    for answer in COMMON_ANSWERS:
        if any(pattern in normalized for pattern in answer.patterns):
            return answer.response
    return None


def quick_reply(query: str) -> Optional[str]:
    """Instant reply for short conversational phrases (exact match only)."""
    return QUICK_REPLIES.get(strip_punctuation(query))


def redirect_message(company_name: str) -> str:
    return (
        f"I'm here to help with questions about {company_name} and your account. "
        "What can I help you with today?"
    )


def goodbye_message(company_name: str) -> str:
    return f"Thanks for calling {company_name}. Have a great day, goodbye!"


@dataclass
class _CachedReply:
    response: str
    stored_at: float


class ResponseCache:
    """Recent replies keyed by normalized query text."""

    def __init__(
        self,
        ttl_seconds: float = 24 * 60 * 60,
        max_entries: int = 512,
        clock: Callable[[], float] = time.time,
    ):
        self.ttl_seconds = ttl_seconds
        self.max_entries = max_entries
        self._clock = clock
        self._entries: Dict[str, _CachedReply] = {}

    @staticmethod
    def key(query: str) -> str:
        return strip_punctuation(query)

    def get(self, query: str) -> Optional[str]:
        key = self.key(query)
        entry = self._entries.get(key)
        if entry is None:
            return None
        if self._clock() - entry.stored_at >= self.ttl_seconds:
            del self._entries[key]
            return None
        return entry.response

    def put(self, query: str, response: str) -> None:
        key = self.key(query)
        if not key or not response.strip():
            return
        self._entries.pop(key, None)
        self._entries[key] = _CachedReply(response=response, stored_at=self._clock())
        while len(self._entries) > self.max_entries:
            oldest = next(iter(self._entries))
            del self._entries[oldest]

    def __len__(self) -> int:
        return len(self._entries)


class FallbackResponder:
    """Resolves a reply when generation failed: cache, common answers, generic."""

    def __init__(self, cache: ResponseCache):
        self.cache = cache

    def resolve(self, query: str) -> Tuple[str, str]:
        cached = self.cache.get(query)
        if cached:
            logger.info("Using cached response as fallback")
            return cached, "cache"

        common = match_common_answer(query)
        if common:
            logger.info("Using common answer as fallback")
            return common, "common_answer"

        logger.warning("No fallback content matched, using generic reply")
        return GENERIC_FALLBACK, "generic"
