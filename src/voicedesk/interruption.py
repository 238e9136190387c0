"""
Interruption (barge-in) detection while a reply is in flight.

Two tiers:
- Soft: a credible interim transcript. Stop emitting new chunks and send a
  minimal "keep listening" update, but don't commit to a new utterance yet.
- Confirmed: a final transcript that is long enough, not filler, not thanks,
  and not too close to our own last dispatch. The current epoch is abandoned
  and a new generation begins from the interrupting text.
"""

from __future__ import annotations

import time
from dataclasses import dataclass
from enum import Enum
from typing import Dict, Optional

import structlog

from src.voicedesk.config import Config, get_config
from src.voicedesk.session import Session, TranscriptSegment
from src.voicedesk.text import phrase_pattern, strip_punctuation

logger = structlog.get_logger(__name__)


class InterruptionKind(str, Enum):
    NONE = "none"
    SOFT = "soft"
    CONFIRMED = "confirmed"


@dataclass
class InterruptionStats:
    soft: int = 0
    confirmed: int = 0
    ignored_filler: int = 0


class InterruptionMonitor:
    """Classifies transcript arrivals during an in-flight reply."""

    def __init__(self, config: Optional[Config] = None):
        if config is None:
            config = get_config()

        self.config = config
        self._fillers = frozenset(w.lower() for w in config.filler_words)
        self._gratitude_re = phrase_pattern(config.gratitude_phrases)
        self._grace_s = config.interrupt_grace_ms / 1000.0
        self._stats: Dict[str, InterruptionStats] = {}

    def is_filler(self, text: str) -> bool:
        """Filler fragments start with a filler token ("um", "uh", "okay", "oh")."""
        words = strip_punctuation(text).split(" ", 1)
        return bool(words and words[0] in self._fillers)

    def is_gratitude(self, text: str) -> bool:
        return bool(self._gratitude_re.search(strip_punctuation(text)))

    def assess(
        self,
        session: Session,
        segment: TranscriptSegment,
        now: Optional[float] = None,
    ) -> InterruptionKind:
        """Classify one transcript arrival against the session's in-flight reply."""
        if not session.reply_in_flight or session.is_ended:
            return InterruptionKind.NONE

        if now is None:
            now = segment.received_at or time.time()

        text = (segment.text or "").strip()
        if not text:
            return InterruptionKind.NONE

        stats = self._stats.setdefault(session.call_id, InterruptionStats())

        if self.is_filler(text):
            stats.ignored_filler += 1
            return InterruptionKind.NONE

        if not segment.is_final:
            if session.playback_paused:
                return InterruptionKind.NONE
            if len(text) > self.config.soft_interrupt_min_chars:
                stats.soft += 1
                logger.info(
                    "Soft interruption",
                    call_id=session.call_id,
                    epoch=session.generation_epoch,
                    chars=len(text),
                )
                return InterruptionKind.SOFT
            return InterruptionKind.NONE

        if len(text) <= self.config.confirmed_interrupt_min_chars:
            return InterruptionKind.NONE
        if self.is_gratitude(text):
            return InterruptionKind.NONE
        if session.last_reply_dispatch_at and now - session.last_reply_dispatch_at < self._grace_s:
            logger.debug(
                "Interruption within grace period ignored",
                call_id=session.call_id,
                since_dispatch_ms=round((now - session.last_reply_dispatch_at) * 1000, 2),
            )
            return InterruptionKind.NONE

        stats.confirmed += 1
        logger.info(
            "Interruption confirmed",
            call_id=session.call_id,
            epoch=session.generation_epoch,
            chars=len(text),
        )
        return InterruptionKind.CONFIRMED

    def stats(self, call_id: str) -> InterruptionStats:
        return self._stats.get(call_id, InterruptionStats())

    def forget(self, call_id: str) -> None:
        """Teardown hook: drop per-call bookkeeping."""
        stats = self._stats.pop(call_id, None)
        if stats is not None:
            logger.info(
                "Interruption stats",
                call_id=call_id,
                soft=stats.soft,
                confirmed=stats.confirmed,
                ignored_filler=stats.ignored_filler,
            )
