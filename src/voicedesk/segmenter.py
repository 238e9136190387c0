"""
Utterance segmentation.

Decides, from the accumulating transcript of a call, when the caller has said
enough to hand one complete utterance to reply generation. All heuristics live
here with their thresholds and phrase sets taken from `Config`, so every call
path (normal turns, interruptions, the silence tick) judges text the same way.
"""

from __future__ import annotations

import time
from dataclasses import dataclass
from enum import Enum
from typing import Optional

import structlog

from src.voicedesk.config import Config, get_config
from src.voicedesk.session import Session, SessionPhase, TranscriptSegment
from src.voicedesk.text import phrase_pattern, redact_for_logs, strip_punctuation

logger = structlog.get_logger(__name__)

_TERMINAL_PUNCTUATION = (".", "!", "?")
_TRAILING_CLOSERS = "\"')]"


class UtteranceVerdict(str, Enum):
    INCOMPLETE = "incomplete"
    COMPLETE = "complete"
    GOODBYE = "goodbye"


@dataclass(frozen=True)
class SegmentDecision:
    """Outcome of accepting one final segment into the pending buffer."""
    verdict: UtteranceVerdict
    buffer: str
    silence_s: float = 0.0


class UtteranceSegmenter:
    """Completeness, goodbye and cooldown rules for one deployment."""

    def __init__(self, config: Optional[Config] = None):
        if config is None:
            config = get_config()

        self.config = config
        self._silence_s = config.silence_threshold_ms / 1000.0
        self._cooldown_s = config.generation_cooldown_ms / 1000.0
        self._stems = frozenset(s.lower() for s in config.question_stems)
        self._courtesy_re = phrase_pattern(config.courtesy_phrases)
        self._goodbye_re = phrase_pattern(config.goodbye_phrases)
        self._continuation_re = phrase_pattern(config.continuation_cues)

    @staticmethod
    def ends_sentence(text: str) -> bool:
        """True when `text` ends in terminal punctuation (ignoring closing quotes)."""
        stripped = (text or "").rstrip().rstrip(_TRAILING_CLOSERS)
        return stripped.endswith(_TERMINAL_PUNCTUATION)

    def starts_with_question_stem(self, text: str) -> bool:
        words = strip_punctuation(text).split(" ", 1)
        return bool(words and words[0] in self._stems)

    def contains_courtesy_phrase(self, text: str) -> bool:
        return bool(self._courtesy_re.search(strip_punctuation(text)))

    def is_complete(self, buffer: str, silence_s: float = 0.0) -> bool:
        """
        Judge whether `buffer` is one complete utterance.

        Pure function of its arguments: the same buffer and silence always
        yield the same verdict.
        """
        text = (buffer or "").strip()
        if not text:
            return False

        if silence_s >= self._silence_s:
            return True

        if len(text) < self.config.min_utterance_chars:
            return False

        return (
            self.ends_sentence(text)
            or self.starts_with_question_stem(text)
            or self.contains_courtesy_phrase(text)
        )

    def is_goodbye(self, text: str) -> bool:
        """A goodbye phrase with no continuation cue ("another question", "help")."""
        normalized = strip_punctuation(text)
        if not normalized:
            return False
        if not self._goodbye_re.search(normalized):
            return False
        return not self._continuation_re.search(normalized)

    def accept(
        self,
        session: Session,
        segment: TranscriptSegment,
        now: Optional[float] = None,
    ) -> SegmentDecision:
        """
        Merge a final segment into the session's pending buffer and judge it.

        Interim segments only refresh the arrival timestamp; their text is
        never merged.
        """
        if now is None:
            now = segment.received_at or time.time()

        previous_arrival = session.last_transcript_at
        session.last_transcript_at = now

        if not segment.is_final:
            return SegmentDecision(UtteranceVerdict.INCOMPLETE, session.pending_transcript)

        text = (segment.text or "").strip()
        if text:
            session.pending_transcript = f"{session.pending_transcript} {text}".strip()

        buffer = session.pending_transcript
        silence_s = now - previous_arrival if previous_arrival else 0.0

        if buffer and self.is_goodbye(buffer):
            logger.info(
                "Goodbye detected",
                call_id=session.call_id,
                text=redact_for_logs(buffer),
            )
            return SegmentDecision(UtteranceVerdict.GOODBYE, buffer, silence_s)

        if self.is_complete(buffer, silence_s):
            return SegmentDecision(UtteranceVerdict.COMPLETE, buffer, silence_s)

        if buffer and session.phase == SessionPhase.LISTENING:
            session.transition(SessionPhase.SEGMENTING)
        return SegmentDecision(UtteranceVerdict.INCOMPLETE, buffer, silence_s)

    def silence_elapsed(self, session: Session, now: float) -> bool:
        """Silence rule for the periodic tick: a non-empty buffer gone quiet."""
        if not session.pending_transcript.strip() or not session.last_transcript_at:
            return False
        return self.is_complete(session.pending_transcript, now - session.last_transcript_at)

    def take_utterance(self, session: Session) -> str:
        """Copy the pending buffer out as the finalized utterance and clear it."""
        utterance = session.pending_transcript.strip()
        session.pending_transcript = ""
        session.utterance_ready = False
        return utterance

    def cooldown_remaining(self, session: Session, now: float) -> float:
        """Seconds until a new generation cycle may start for this session."""
        last = max(session.last_generation_started_at, session.last_reply_at)
        if not last:
            return 0.0
        return max(0.0, self._cooldown_s - (now - last))
